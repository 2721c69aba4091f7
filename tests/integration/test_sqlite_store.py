"""
Integration tests for the SQLite pin store.

Verifies documents, tags and pin state survive a reopen, and that the
marketplace runs unchanged on top of it.
"""

import pytest
from click.testing import CliRunner

from galerie.cli.main import cli
from galerie.core.errors import OffchainStoreError
from galerie.core.market import AuctionStatus, ListingKind, MarketplaceService
from galerie.core.store import RecordStore, SQLiteContentStore


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "store" / "pins.db"


class TestSQLiteContentStore:
    """Tests for SQLiteContentStore."""

    def test_put_get_find(self, db_path):
        store = SQLiteContentStore(db_path)
        first = store.put({"n": 1}, {"type": "bid", "assetCode": "A"})
        second = store.put({"n": 2}, {"type": "bid", "assetCode": "B"})

        assert store.get(first) == {"n": 1}
        assert store.find({"type": "bid"}) == [second, first]
        assert store.find({"type": "bid", "assetCode": "A"}) == [first]
        assert store.find({"type": "auction"}) == []

    def test_unpin_and_repin(self, db_path):
        store = SQLiteContentStore(db_path)
        content_id = store.put({"n": 1}, {"type": "bid"})
        store.unpin(content_id)
        assert store.find({"type": "bid"}) == []
        assert store.stats() == {"total": 1, "pinned": 0}

        assert store.put({"n": 1}, {"type": "bid"}) == content_id
        assert store.find({"type": "bid"}) == [content_id]

    def test_persists_across_reopen(self, db_path):
        store = SQLiteContentStore(db_path)
        kept = store.put({"n": 1}, {"type": "bid"})
        dropped = store.put({"n": 2}, {"type": "bid"})
        store.unpin(dropped)
        store.close()

        reopened = SQLiteContentStore(db_path)
        assert reopened.find({"type": "bid"}) == [kept]
        rows = reopened.list_pins(include_unpinned=True)
        assert [(r["content_id"], r["pinned"]) for r in rows] == [(dropped, False), (kept, True)]
        assert rows[1]["tags"] == {"type": "bid"}

    def test_missing_content(self, db_path):
        store = SQLiteContentStore(db_path)
        with pytest.raises(OffchainStoreError):
            store.get("0" * 64)


class TestMarketplaceOnSQLite:
    """The marketplace with a durable store."""

    def test_auction_records_survive_restart(self, db_path, ledger, signer, config, accounts, clock):
        market = MarketplaceService(ledger, signer, config, store=SQLiteContentStore(db_path))
        token, _ = market.issue_token("dawn-02", accounts.creator, name="Dawn", image="ipfs://dawn")
        market.list_token(token, accounts.creator, ListingKind.TIMED_AUCTION, "2", end_time=clock.now + 60)
        market.place_bid(token, accounts.collector, "5")

        # New service instance over the same database and ledger
        restarted = MarketplaceService(ledger, signer, config, store=SQLiteContentStore(db_path))
        assert [b.amount for b in restarted.get_bid_history(token)] == [5]
        clock.advance(60)

        result = restarted.check_and_finalize_auction(token, accounts.creator)
        assert result.status == AuctionStatus.COMPLETED
        assert result.winner == accounts.collector

        records = RecordStore(SQLiteContentStore(db_path))
        assert records.find_auction(token.code, token.issuer, accounts.creator).status == "completed"

    def test_store_cli(self, db_path):
        store = SQLiteContentStore(db_path)
        content_id = store.put({"n": 1}, {"type": "bid", "app": "Galerie"})
        store.close()

        runner = CliRunner()
        listed = runner.invoke(cli, ["store", "--db", str(db_path), "list"])
        assert listed.exit_code == 0, listed.output
        assert content_id[:16] in listed.output

        found = runner.invoke(cli, ["store", "--db", str(db_path), "find", "--tag", "type=bid", "--show"])
        assert found.exit_code == 0, found.output
        assert "1 match(es)" in found.output
        assert '"n": 1' in found.output

        bad = runner.invoke(cli, ["store", "--db", str(db_path), "find", "--tag", "type"])
        assert bad.exit_code != 0
