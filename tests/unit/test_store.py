"""
Unit tests for off-chain storage.

Tests cover:
1. In-memory content store (pin, find, unpin, outages)
2. Record validation
3. RecordStore versioning and active auction index
"""

import pytest
from pydantic import ValidationError

from galerie.core.cache import LRUCache
from galerie.core.errors import OffchainStoreError
from galerie.core.store import AuctionRecord, BidRecord, InMemoryContentStore, RecordStore, TokenMetadata, content_id_for
from galerie.crypto import random_address

ISSUER = random_address()
OWNER = random_address()


def auction_record(**overrides):
    fields = dict(
        asset_code="MYNFT23",
        issuer=ISSUER,
        owner=OWNER,
        kind="timed_auction",
        price="2",
        start_time=1000,
        end_time=2000,
        created_at=1000,
    )
    fields.update(overrides)
    return AuctionRecord(**fields)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def store():
    return InMemoryContentStore()


@pytest.fixture
def records(store):
    return RecordStore(store)


# =============================================================================
# Content Store Tests
# =============================================================================


class TestInMemoryContentStore:
    """Tests for the dict-backed content store."""

    def test_put_get(self, store):
        content_id = store.put({"a": 1}, {"type": "x"})
        assert content_id == content_id_for({"a": 1})
        assert store.get(content_id) == {"a": 1}

    def test_content_addressing_ignores_key_order(self):
        assert content_id_for({"a": 1, "b": 2}) == content_id_for({"b": 2, "a": 1})

    def test_find_newest_first(self, store):
        first = store.put({"n": 1}, {"type": "x"})
        second = store.put({"n": 2}, {"type": "x"})
        store.put({"n": 3}, {"type": "y"})
        assert store.find({"type": "x"}) == [second, first]

    def test_unpin_hides_from_find(self, store):
        content_id = store.put({"n": 1}, {"type": "x"})
        store.unpin(content_id)
        assert store.find({"type": "x"}) == []
        assert store.get(content_id) == {"n": 1}

        store.put({"n": 1}, {"type": "x"})
        assert store.find({"type": "x"}) == [content_id]

    def test_get_missing(self, store):
        with pytest.raises(OffchainStoreError):
            store.get("0" * 64)

    def test_outages(self, store):
        content_id = store.put({"n": 1}, {"type": "x"})
        store.fail_reads = True
        with pytest.raises(OffchainStoreError):
            store.find({"type": "x"})
        with pytest.raises(OffchainStoreError):
            store.get(content_id)

        store.fail_writes = True
        with pytest.raises(OffchainStoreError):
            store.put({"n": 2}, {})

    def test_returned_content_is_a_copy(self, store):
        content_id = store.put({"n": [1]}, {})
        store.get(content_id)["n"].append(2)
        assert store.get(content_id) == {"n": [1]}


# =============================================================================
# Record Tests
# =============================================================================


class TestRecords:
    """Tests for record validation."""

    def test_bid_amount_normalized(self):
        record = BidRecord(asset_code="MYNFT23", issuer=ISSUER, bidder=OWNER, amount="10.50", timestamp=1)
        assert record.amount == "10.5"

    def test_bid_amount_invalid(self):
        with pytest.raises(ValidationError):
            BidRecord(asset_code="MYNFT23", issuer=ISSUER, bidder=OWNER, amount="0", timestamp=1)

    def test_bad_address(self):
        with pytest.raises(ValidationError):
            BidRecord(asset_code="MYNFT23", issuer="GABC", bidder=OWNER, amount="1", timestamp=1)

    def test_auction_end_after_start(self):
        with pytest.raises(ValidationError):
            auction_record(end_time=1000)

    def test_auction_status_literal(self):
        with pytest.raises(ValidationError):
            auction_record(status="paused")

    def test_records_are_frozen(self):
        record = auction_record()
        with pytest.raises(ValidationError):
            record.status = "completed"

    def test_metadata_requires_image(self):
        with pytest.raises(ValidationError):
            TokenMetadata(asset_code="MYNFT23", issuer=ISSUER, name="Sunset", image="", created_at=1)


# =============================================================================
# Record Store Tests
# =============================================================================


class TestRecordStore:
    """Tests for RecordStore."""

    def test_bids_round_trip(self, records):
        records.pin_bid(BidRecord(asset_code="MYNFT23", issuer=ISSUER, bidder=OWNER, amount="3", timestamp=5))
        found = records.find_bids("MYNFT23", ISSUER)
        assert [(b.bidder, b.amount) for b in found] == [(OWNER, "3")]
        assert records.find_bids("OTHER", ISSUER) == []

    def test_supersede_keeps_one_pinned(self, records, store):
        records.supersede_auction(auction_record())
        records.supersede_auction(auction_record(status="cancelled", created_at=2500))

        versions = records.find_auctions("MYNFT23", ISSUER, OWNER)
        assert len(versions) == 1
        assert versions[0][1].status == "cancelled"
        assert store.pinned_count() == 1

    def test_newest_by_created_at(self, records):
        """A lagging older version pinned later does not win."""
        records.pin_auction(auction_record(status="completed", created_at=2500))
        records.pin_auction(auction_record())
        assert records.find_auction("MYNFT23", ISSUER, OWNER).status == "completed"

    def test_unpin_failure_only_warns(self, records, store, monkeypatch):
        records.supersede_auction(auction_record())

        def failing_unpin(content_id):
            raise OffchainStoreError("unpin refused")

        monkeypatch.setattr(store, "unpin", failing_unpin)
        records.supersede_auction(auction_record(status="cancelled", created_at=2500))
        assert store.pinned_count() == 2
        assert records.find_auction("MYNFT23", ISSUER, OWNER).status == "cancelled"

    def test_malformed_documents_skipped(self, records, store):
        store.put({"asset_code": "MYNFT23", "issuer": "junk"}, {
            "app": "Galerie", "type": "bid", "assetCode": "MYNFT23", "issuer": ISSUER,
        })
        assert records.find_bids("MYNFT23", ISSUER) == []

    def test_active_auctions(self, records):
        """Newest version per listing, timed, active and unexpired, soonest first."""
        other_owner = random_address()
        records.pin_auction(auction_record(end_time=5000))
        records.pin_auction(auction_record(owner=other_owner, end_time=3000))
        records.pin_auction(auction_record(asset_code="GONE", end_time=1500))
        records.pin_auction(auction_record(asset_code="DONE", status="completed", created_at=1200))
        records.pin_auction(auction_record(asset_code="FIXED", kind="fixed_price", end_time=None))

        active = records.list_active_auctions(now=1600)
        assert [(r.asset_code, r.owner) for r in active] == [("MYNFT23", other_owner), ("MYNFT23", OWNER)]

    def test_metadata_cached(self, store):
        cache = LRUCache()
        records = RecordStore(store, cache=cache)
        content_id = records.pin_token_metadata(
            TokenMetadata(asset_code="MYNFT23", issuer=ISSUER, name="Sunset", image="ipfs://x", created_at=1)
        )

        assert records.get_token_metadata(content_id).name == "Sunset"
        store.fail_reads = True
        assert records.get_token_metadata(content_id).name == "Sunset"
        assert cache.hits == 1
