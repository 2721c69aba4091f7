"""
Integration tests for end-to-end marketplace flows.

Tests cover:
1. Issue -> list -> buy through the escrow account
2. Open bids accepted by the owner
3. Re-bids, minimum bids and cancellations
4. Read models (listing, verification, active auctions)
5. Off-chain store outages around issuance
"""

from decimal import Decimal

import pytest
from click.testing import CliRunner

from galerie.cli.main import cli
from galerie.core.errors import (
    InsufficientBalance,
    ListingNotFound,
    OffchainStoreError,
    ResourceStateError,
    StaleOffer,
    ValidationFailed,
)
from galerie.core.ledger import ManageBuyOffer, OfferFilter, SignedEnvelope, TimeBounds, TransactionPlan
from galerie.core.market import AuctionStatus, BidOrigin, ListingKind, MarketplaceService, Token

FEE_PER_OP = Decimal("0.00001")


# =============================================================================
# Fixed Price Tests
# =============================================================================


class TestFixedPrice:
    """Tests for fixed-price listings."""

    def test_issue_list_buy(self, market, token, accounts, ledger):
        """A purchase pays the escrow, fills the ask and marks the listing sold."""
        assert market.is_verified(token)
        assert token.code == "MYNFT23"

        market.list_token(token, accounts.creator, ListingKind.FIXED_PRICE, "5.50")
        listing = market.get_listing(token, accounts.creator)
        assert listing.kind == ListingKind.FIXED_PRICE
        assert listing.price == "5.5"
        assert listing.verified
        assert not listing.sold

        settlement = market.buy(token, accounts.collector, "5.5")
        assert settlement.claimed_offers()[0].account == accounts.creator

        asset = token.as_asset()
        assert ledger.load_account(accounts.collector).balance_of(asset) == Decimal("1")
        assert ledger.load_account(accounts.escrow).native_balance == Decimal("1005.5")
        assert ledger.load_account(accounts.collector).native_balance == (
            Decimal("1000") - Decimal("11") - 3 * FEE_PER_OP
        )
        assert market.is_sold(token, accounts.creator)
        assert market.get_listing(token, accounts.creator).sold

        record = market.records.find_auction(token.code, token.issuer, accounts.creator)
        assert record.status == "completed"
        assert record.winner == accounts.collector

    def test_buy_below_ask(self, market, token, accounts, ledger):
        market.list_token(token, accounts.creator, ListingKind.FIXED_PRICE, "8")
        transactions = len(ledger.history)
        with pytest.raises(ListingNotFound):
            market.buy(token, accounts.collector, "5")
        assert len(ledger.history) == transactions

    def test_buy_invalid_price(self, market, token, accounts, ledger):
        transactions = len(ledger.history)
        with pytest.raises(ValidationFailed) as exc:
            market.buy(token, accounts.collector, "5.123456789")
        assert exc.value.intent == "buy"
        assert len(ledger.history) == transactions

    def test_relist_supersedes_ask(self, market, token, accounts, ledger):
        """One standing sell offer per listing."""
        market.list_token(token, accounts.creator, ListingKind.FIXED_PRICE, "8")
        market.list_token(token, accounts.creator, ListingKind.FIXED_PRICE, "6")
        asks = ledger.offers(OfferFilter(token=token.as_asset(), side="sell"))
        assert [a.price for a in asks] == ["6"]

    def test_cancel_listing(self, market, token, accounts, ledger):
        market.list_token(token, accounts.creator, ListingKind.FIXED_PRICE, "8")
        market.cancel_listing(token, accounts.creator)

        assert ledger.offers(OfferFilter(token=token.as_asset(), side="sell")) == []
        assert ledger.load_account(accounts.creator).data_value("done_MYNFT23") == "cancelled"
        listing = market.get_listing(token, accounts.creator)
        assert listing.status == AuctionStatus.CANCELLED
        with pytest.raises(ListingNotFound):
            market.buy(token, accounts.collector, "8")

    def test_list_unheld_token(self, market, token, accounts):
        with pytest.raises(ResourceStateError):
            market.list_token(token, accounts.collector, ListingKind.FIXED_PRICE, "1")

    def test_buy_underfunded(self, market, token, accounts):
        market.list_token(token, accounts.creator, ListingKind.FIXED_PRICE, "600")
        with pytest.raises(InsufficientBalance):
            market.buy(token, accounts.collector, "600")


# =============================================================================
# Open Bid Tests
# =============================================================================


class TestOpenBids:
    """Tests for open-bid listings."""

    def test_accept_highest_bid(self, market, token, accounts, ledger):
        market.list_token(token, accounts.creator, ListingKind.OPEN_BID, "1")
        market.place_bid(token, accounts.collector, "4")
        market.place_bid(token, accounts.rival, "7")

        settlement = market.accept_bid(token, accounts.creator)
        assert settlement.claimed_offers()[0].account == accounts.rival
        assert ledger.load_account(accounts.rival).balance_of(token.as_asset()) == Decimal("1")
        assert ledger.load_account(accounts.creator).data_value("winner_MYNFT23") == accounts.rival

    def test_open_bid_rests_no_ask(self, market, token, accounts, ledger):
        """A bid above the minimum does not fill by itself."""
        market.list_token(token, accounts.creator, ListingKind.OPEN_BID, "1")
        market.place_bid(token, accounts.collector, "4")
        assert ledger.load_account(accounts.creator).balance_of(token.as_asset()) == Decimal("1")

    def test_rebid_replaces_offer(self, market, token, accounts, ledger):
        market.list_token(token, accounts.creator, ListingKind.OPEN_BID, "1")
        market.place_bid(token, accounts.collector, "4")
        market.place_bid(token, accounts.collector, "6")

        offers = ledger.offers(OfferFilter(token=token.as_asset(), side="buy", account=accounts.collector))
        assert [o.price for o in offers] == ["6"]
        assert ledger.load_account(accounts.collector).native_liabilities == Decimal("6")
        live = [b for b in market.get_bids(token) if b.origin == BidOrigin.ORDER_BOOK]
        assert len(live) == 1

    def test_bid_below_minimum(self, market, token, accounts, ledger):
        market.list_token(token, accounts.creator, ListingKind.OPEN_BID, "5")
        transactions = len(ledger.history)
        with pytest.raises(ValidationFailed) as exc:
            market.place_bid(token, accounts.collector, "4.9999999")
        assert exc.value.field == "amount"
        assert len(ledger.history) == transactions

    def test_accept_without_bids(self, market, token, accounts):
        market.list_token(token, accounts.creator, ListingKind.OPEN_BID, "1")
        with pytest.raises(ListingNotFound):
            market.accept_bid(token, accounts.creator)

    def test_accept_withdrawn_bid(self, market, token, accounts, ledger):
        """Accepting a bid whose offer is gone fills nothing and reopens the listing."""
        market.list_token(token, accounts.creator, ListingKind.OPEN_BID, "1")
        market.place_bid(token, accounts.collector, "4")
        bid = market.get_highest_bid(token)

        account = ledger.load_account(accounts.collector)
        withdrawal = TransactionPlan(
            source=accounts.collector,
            sequence=account.sequence + 1,
            fee=100,
            time_bounds=TimeBounds(0, 0),
            operations=(ManageBuyOffer(ledger.native, token.as_asset(), "0", "4", bid.offer_id),),
        )
        ledger.submit(SignedEnvelope(plan=withdrawal, signer=accounts.collector))

        with pytest.raises(StaleOffer):
            market.accept_bid(token, accounts.creator, bid)

        creator = ledger.load_account(accounts.creator)
        assert creator.balance_of(token.as_asset()) == Decimal("1")
        assert creator.data_value("listing_MYNFT23") == "open_bid"
        assert creator.data_value("price_MYNFT23") == "1"
        assert creator.data_value("done_MYNFT23") is None
        assert creator.data_value("winner_MYNFT23") is None
        assert ledger.offers(OfferFilter(token=token.as_asset(), side="sell")) == []
        assert market.get_listing(token, accounts.creator).kind == ListingKind.OPEN_BID


# =============================================================================
# Auction & Read Model Tests
# =============================================================================


class TestAuctionFlow:
    """Tests for timed auctions through the service."""

    def test_full_auction(self, market, token, accounts, clock, ledger):
        end = clock.now + 600
        market.list_token(token, accounts.creator, ListingKind.TIMED_AUCTION, "2", end_time=end)

        listing = market.get_listing(token, accounts.creator)
        assert listing.kind == ListingKind.TIMED_AUCTION
        assert listing.end_time == end
        assert listing.offer_id is None
        assert [a.token for a in market.list_active_auctions()] == [token]

        market.place_bid(token, accounts.collector, "3")
        market.place_bid(token, accounts.rival, "4")
        clock.advance(600)
        assert market.list_active_auctions() == []

        result = market.check_and_finalize_auction(token, accounts.creator)
        assert (result.status, result.winner, result.amount) == (AuctionStatus.COMPLETED, accounts.rival, "4")
        assert ledger.load_account(accounts.creator).native_balance > Decimal("1003")

    def test_past_deadline_rejected(self, market, token, accounts, clock):
        with pytest.raises(ValidationFailed) as exc:
            market.list_token(token, accounts.creator, ListingKind.TIMED_AUCTION, "2", end_time=clock.now)
        assert exc.value.field == "end_time"

    def test_relist_after_cancel(self, market, token, accounts, clock, ledger):
        """A cancelled auction's marker does not block the next listing."""
        market.list_token(token, accounts.creator, ListingKind.TIMED_AUCTION, "2", end_time=clock.now + 60)
        clock.advance(60)
        market.check_and_finalize_auction(token, accounts.creator)

        market.list_token(token, accounts.creator, ListingKind.TIMED_AUCTION, "3", end_time=clock.now + 60)
        assert ledger.load_account(accounts.creator).data_value("done_MYNFT23") is None
        result = market.check_and_finalize_auction(token, accounts.creator)
        assert result.status == AuctionStatus.ACTIVE


# =============================================================================
# Issuance Tests
# =============================================================================


class TestIssuance:
    """Tests for issuance edge cases."""

    def test_issue_twice(self, market, token, accounts):
        with pytest.raises(ResourceStateError) as exc:
            market.issue_token("myNFT-23", accounts.creator, name="Again", image="ipfs://x")
        assert exc.value.code == "already_issued"

    def test_store_down_aborts_issuance(self, market, accounts, ledger, content_store):
        content_store.fail_writes = True
        with pytest.raises(OffchainStoreError):
            market.issue_token("dawn", accounts.creator, name="Dawn", image="ipfs://dawn")
        assert ledger.history == []

    def test_invalid_metadata(self, market, accounts, ledger):
        with pytest.raises(ValidationFailed) as exc:
            market.issue_token("dawn", accounts.creator, name="Dawn", image="")
        assert exc.value.field == "metadata"
        assert ledger.history == []

    def test_metadata_pointer_on_ledger(self, market, token, accounts, ledger):
        ref = ledger.load_account(accounts.creator).data_value("nft_MYNFT23")
        assert market.records.get_token_metadata(ref).name == "Sunset"

    def test_unverified_token(self, market, accounts):
        assert not market.is_verified(Token("OTHER", accounts.rival))

    def test_issue_requires_store(self, ledger, signer, config, accounts):
        market = MarketplaceService(ledger, signer, config)
        with pytest.raises(OffchainStoreError):
            market.issue_token("dawn", accounts.creator, name="Dawn", image="ipfs://dawn")


# =============================================================================
# CLI Tests
# =============================================================================


class TestCLI:
    """Tests for the command line interface."""

    def test_validate_code(self, tmp_path):
        runner = CliRunner()
        result = runner.invoke(cli, ["--env-file", str(tmp_path / "none.env"), "validate-code", "myNFT-23"])
        assert result.exit_code == 0
        assert "MYNFT23" in result.output

        result = runner.invoke(cli, ["--env-file", str(tmp_path / "none.env"), "validate-code", "xlmToken"])
        assert result.exit_code == 1

    def test_validate_price(self, tmp_path):
        runner = CliRunner()
        result = runner.invoke(cli, ["--env-file", str(tmp_path / "none.env"), "validate-price", "5.50"])
        assert result.exit_code == 0
        assert "5.5" in result.output

    def test_demo(self, tmp_path):
        runner = CliRunner()
        result = runner.invoke(cli, ["--env-file", str(tmp_path / "none.env"), "demo", "--duration", "60"])
        assert result.exit_code == 0, result.output
        assert "completed" in result.output
