"""
MarketplaceService - the public surface of the marketplace engine.

Wires validation, assembly, submission, bid reconciliation and the
auction lifecycle around one ledger client, one signing capability and
an optional off-chain content store. Every write returns a Settlement
(or FinalizeResult) or raises a MarketError subclass. Ledger reads go through
CheckedLedger, so a failed read surfaces as LedgerReadError.
"""

from decimal import Decimal
from typing import List, Optional, Tuple

from pydantic import ValidationError

from galerie.core.cache import Cache
from galerie.core.config import MarketConfig
from galerie.core.errors import (
    InputValidationError,
    InvalidPrice,
    ListingNotFound,
    OffchainStoreError,
    StaleOffer,
    ValidationFailed,
)
from galerie.core.ledger.client import AccountState, LedgerClient, OfferFilter, SigningCapability
from galerie.core.market import annotations as keys
from galerie.core.market.assembler import TransactionAssembler
from galerie.core.market.auction import AuctionLifecycleManager
from galerie.core.market.bids import BidReconciliationService
from galerie.core.market.intents import (
    AcceptBidIntent,
    BidIntent,
    BuyIntent,
    CancelIntent,
    IssueIntent,
    ListIntent,
    MarketplaceIntent,
)
from galerie.core.market.models import (
    Auction,
    AuctionStatus,
    Bid,
    FinalizeResult,
    Listing,
    ListingKind,
    Token,
)
from galerie.core.market.submission import CheckedLedger, Settlement, TransactionSubmitter
from galerie.core.store.content_store import ContentStore
from galerie.core.store.records import AuctionRecord, RecordStore, TokenMetadata
from galerie.utils.logger import get_logger
from galerie.utils.validation import normalize_price

logger = get_logger("market")


class MarketplaceService:
    """
    Marketplace facade.
    
    Args:
        ledger: Ledger read/submit client
        signer: Injected signing capability
        config: Marketplace configuration (defaults if None)
        store: Off-chain content store (None disables off-chain records)
        cache: Caller-owned cache for fetched off-chain documents
    """

    def __init__(
        self,
        ledger: LedgerClient,
        signer: SigningCapability,
        config: Optional[MarketConfig] = None,
        store: Optional[ContentStore] = None,
        cache: Optional[Cache] = None,
    ):
        self.config = config or MarketConfig()
        self.ledger = CheckedLedger.wrap(ledger)
        self.records = RecordStore(store, self.config.app_tag, cache) if store is not None else None
        self.assembler = TransactionAssembler(self.config)
        self.submitter = TransactionSubmitter(self.ledger, signer, self.config)
        self.bids = BidReconciliationService(self.ledger, self.records)
        self.auctions = AuctionLifecycleManager(self.ledger, self.submitter, self.assembler, self.bids, self.records)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _submit(self, source: str, intent: MarketplaceIntent, timeout: Optional[float] = None) -> Settlement:
        return self.submitter.submit(
            source, lambda account, now: self.assembler.build(intent, account, now), timeout
        )

    def _token(self, token: Token, label: str) -> Token:
        return self.assembler.normalize_token(token, label)

    def _standing_sell_offer(self, token: Token, seller: str):
        offers = self.ledger.offers(OfferFilter(token=token.as_asset(), side="sell", account=seller))
        return offers[0] if offers else None

    def _newest_record(self, token: Token, owner: Optional[str] = None) -> Optional[AuctionRecord]:
        if self.records is None:
            return None
        try:
            return self.records.find_auction(token.code, token.issuer, owner)
        except OffchainStoreError as e:
            logger.warning(f"Listing record for {token} unavailable: {e}")
            return None

    def _pin_listing(self, record: AuctionRecord) -> None:
        if self.records is None:
            return
        try:
            self.records.supersede_auction(record)
        except OffchainStoreError as e:
            logger.warning(f"Listing record for {record.asset_code} not persisted: {e}")

    # =========================================================================
    # Issuance & Listing
    # =========================================================================

    def issue_token(
        self,
        code: str,
        creator: str,
        name: str,
        image: str,
        description: str = "",
        timeout: Optional[float] = None,
    ) -> Tuple[Token, Settlement]:
        """
        Mint a single-unit token.
        
        The metadata document is pinned first; the ledger stores its
        content id, so a store failure aborts issuance.
        
        Raises:
            ValidationFailed, OffchainStoreError, ResourceStateError
        """
        token = self._token(Token(code=code, issuer=creator), "issue")
        if self.records is None:
            raise OffchainStoreError("a content store is required to pin token metadata")

        try:
            metadata = TokenMetadata(
                asset_code=token.code,
                issuer=token.issuer,
                name=name,
                image=image,
                description=description,
                created_at=self.ledger.ledger_time(),
            )
        except ValidationError as e:
            raise ValidationFailed("issue", InputValidationError("metadata", str(e.errors()[0]["msg"]))) from e

        metadata_ref = self.records.pin_token_metadata(metadata)
        settlement = self._submit(token.issuer, IssueIntent(token=token, metadata_ref=metadata_ref), timeout)
        logger.info(f"Issued {token} ({metadata_ref[:12]}...)")
        return token, settlement

    def list_token(
        self,
        token: Token,
        seller: str,
        kind: ListingKind,
        price,
        end_time: Optional[int] = None,
        metadata_ref: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Settlement:
        """List a held token; a new listing supersedes the standing sell offer."""
        token = self._token(token, "list")
        try:
            kind = ListingKind(kind)
        except ValueError as e:
            raise ValidationFailed("list", InputValidationError("kind", f"unknown listing kind {kind!r}")) from e
        if kind == ListingKind.TIMED_AUCTION:
            _, settlement = self.auctions.create_auction(token, seller, price, end_time, metadata_ref, timeout)
            return settlement

        standing = self._standing_sell_offer(token, seller)
        intent = ListIntent(
            kind=kind,
            token=token,
            seller=seller,
            price=price,
            end_time=end_time,
            metadata_ref=metadata_ref,
            offer_id=standing.offer_id if standing else 0,
        )
        settlement = self._submit(seller, intent, timeout)
        now = self.ledger.ledger_time()
        logger.info(f"Listed {token} as {kind.value} at {normalize_price(price)}")
        self._pin_listing(AuctionRecord(
            asset_code=token.code,
            issuer=token.issuer,
            owner=seller,
            kind=kind.value,
            price=price,
            start_time=now,
            metadata_ref=metadata_ref,
            created_at=now,
        ))
        return settlement

    def cancel_listing(self, token: Token, owner: str, timeout: Optional[float] = None) -> Settlement:
        token = self._token(token, "cancel")
        standing = self._standing_sell_offer(token, owner)
        intent = CancelIntent(token=token, owner=owner, offer_id=standing.offer_id if standing else 0)
        settlement = self._submit(owner, intent, timeout)
        logger.info(f"Cancelled listing of {token} by {owner[:8]}...")
        self._close_record(token, owner, AuctionStatus.CANCELLED, settlement)
        return settlement

    def _close_record(
        self,
        token: Token,
        owner: str,
        status: AuctionStatus,
        settlement: Settlement,
        winner: Optional[str] = None,
        amount: Optional[str] = None,
    ) -> None:
        record = self._newest_record(token, owner)
        if record is None or record.is_terminal:
            return
        self._pin_listing(record.model_copy(update={
            "status": status.value,
            "winner": winner,
            "winning_amount": amount,
            "settlement_ref": settlement.reference,
            "created_at": max(record.created_at, self.ledger.ledger_time()),
        }))

    # =========================================================================
    # Bidding & Buying
    # =========================================================================

    def place_bid(self, token: Token, bidder: str, amount, timeout: Optional[float] = None) -> Settlement:
        """
        Bid on a token (a buy offer for one unit).
        
        A bidder's new bid replaces their standing buy offer on the token.
        Bids below the listing's minimum are rejected up front.
        """
        token = self._token(token, "bid")
        try:
            normalized = normalize_price(amount, "amount")
        except InputValidationError as e:
            raise ValidationFailed("bid", e) from e
        self._check_minimum(token, Decimal(normalized))

        existing = self.bids.find_bid_offer(token, bidder)
        intent = BidIntent(
            token=token,
            bidder=bidder,
            amount=normalized,
            offer_id=existing.offer_id if existing else 0,
            offer_amount=Decimal(existing.price) * existing.amount if existing else Decimal("0"),
        )
        settlement = self._submit(bidder, intent, timeout)
        logger.info(f"Bid {normalized} on {token} by {bidder[:8]}...")
        self.bids.record_bid(token, bidder, normalized, self.ledger.ledger_time())
        return settlement

    def _check_minimum(self, token: Token, amount: Decimal) -> None:
        record = self._newest_record(token)
        owner = record.owner if record is not None else token.issuer
        account = self.ledger.load_account(owner)
        minimum = account.data_value(keys.price_key(token.code)) if account else None
        if minimum is not None and amount < Decimal(minimum):
            raise ValidationFailed("bid", InvalidPrice(f"bid {amount} is below the minimum {minimum}", "amount"))

    def buy(self, token: Token, buyer: str, price, timeout: Optional[float] = None) -> Settlement:
        """
        Buy a fixed-price listing (payment to escrow + crossing buy offer).
        
        Raises:
            ListingNotFound: no sell offer at or below `price`
            StaleOffer: the sell offer vanished before the trade settled
        """
        token = self._token(token, "buy")
        try:
            normalized = normalize_price(price)
        except InputValidationError as e:
            raise ValidationFailed("buy", e) from e

        asks = self.ledger.offers(OfferFilter(token=token.as_asset(), side="sell"))
        if not any(Decimal(ask.price) <= Decimal(normalized) for ask in asks):
            raise ListingNotFound(f"{token} is not offered at {normalized}", code="op_not_found")

        settlement = self._submit(buyer, BuyIntent(token=token, buyer=buyer, price=normalized), timeout)
        if not settlement.claimed_offers():
            raise StaleOffer(
                f"Buy of {token} settled ({settlement.reference[:10]}...) but no sell offer was filled; "
                f"buy offer {settlement.resting_offer_id()} is resting",
                code="op_not_found",
            )
        logger.info(f"{buyer[:8]}... bought {token} for {normalized}")
        seller = settlement.claimed_offers()[0].account
        self._close_record(token, seller, AuctionStatus.COMPLETED, settlement, buyer, normalized)
        return settlement

    def accept_bid(
        self, token: Token, owner: str, bid: Optional[Bid] = None, timeout: Optional[float] = None
    ) -> Settlement:
        """
        Sell to a bid (default: the highest live bid).
        
        Raises:
            ListingNotFound: no live bid to accept
            StaleOffer: the bid was withdrawn before the sale settled (the
                listing is reopened before raising)
        """
        token = self._token(token, "accept_bid")
        if bid is None:
            bid = self.bids.get_highest_fillable_bid(token)
            if bid is None:
                raise ListingNotFound(f"No live bids on {token}", code="op_not_found")

        standing = self._standing_sell_offer(token, owner)
        intent = AcceptBidIntent(token=token, owner=owner, bid=bid, offer_id=standing.offer_id if standing else 0)
        settlement = self._submit(owner, intent, timeout)

        claimed = settlement.claimed_offers()
        if not claimed:
            self.auctions.reopen(token, owner, timeout)
            raise StaleOffer(
                f"Bid by {bid.bidder[:8]}... on {token} was no longer live; listing reopened",
                code="op_not_found",
            )
        logger.info(f"{owner[:8]}... sold {token} to {claimed[0].account[:8]}... at {claimed[0].price}")
        self._close_record(token, owner, AuctionStatus.COMPLETED, settlement, claimed[0].account, claimed[0].price)
        return settlement

    # =========================================================================
    # Auctions
    # =========================================================================

    def check_and_finalize_auction(self, token: Token, owner: str, timeout: Optional[float] = None) -> FinalizeResult:
        """Finalize the (token, owner) auction if it has ended; idempotent."""
        auction = self.auctions.load_auction(token, owner)
        if auction is None:
            result = self.auctions.ledger_result(token, owner)
            if result is not None:
                return result
            raise ListingNotFound(f"No auction for {token.code} by {owner[:8]}...", code="listing_not_found")
        return self.auctions.check_and_finalize(auction, timeout)

    def list_active_auctions(self) -> List[Auction]:
        """Active timed auctions from the off-chain index; raises OffchainStoreError."""
        if self.records is None:
            raise OffchainStoreError("no content store configured")
        now = self.ledger.ledger_time()
        return [
            self.auctions.from_record(Token(r.asset_code, r.issuer), r)
            for r in self.records.list_active_auctions(now)
        ]

    # =========================================================================
    # Reads
    # =========================================================================

    def get_bids(self, token: Token) -> List[Bid]:
        return self.bids.get_bids(self._token(token, "bids"))

    def get_highest_bid(self, token: Token) -> Optional[Bid]:
        return self.bids.get_highest_bid(self._token(token, "bids"))

    def get_bid_history(self, token: Token) -> List[Bid]:
        return self.bids.get_bid_history(self._token(token, "bids"))

    def is_verified(self, token: Token) -> bool:
        """Issued through this marketplace: the issuer carries the issuance marker."""
        token = self._token(token, "verify")
        issuer = self.ledger.load_account(token.issuer)
        return issuer is not None and issuer.data_value(keys.issued_key(token.code)) == keys.ISSUED_FLAG

    def is_sold(self, token: Token, seller: str) -> bool:
        """Derived from the seller no longer holding the unit."""
        token = self._token(token, "sold")
        account = self.ledger.load_account(seller)
        return account is None or account.balance_of(token.as_asset()) < 1

    def get_listing(self, token: Token, seller: str) -> Optional[Listing]:
        """
        Combine ledger annotations, the standing sell offer and the newest
        off-chain record into one read model. None if never listed.
        """
        token = self._token(token, "listing")
        account = self.ledger.load_account(seller)
        if account is None:
            return None

        record = self._newest_record(token, seller)
        standing = self._standing_sell_offer(token, seller)
        kind, price = self._listing_kind(token, account, standing, record)
        if kind is None:
            return None

        schedule = keys.decode_schedule(account.data_value(keys.auction_key(token.code)))
        outcome = keys.decode_outcome(account.data_value(keys.outcome_key(token.code)))
        if self.auctions.sale_pending(token, account):
            outcome = None
        if outcome is not None:
            status = outcome[0]
        elif record is not None:
            status = AuctionStatus(record.status)
        else:
            status = AuctionStatus.ACTIVE

        if schedule is None and record is not None and record.end_time is not None:
            schedule = (record.start_time, record.end_time)

        return Listing(
            token=token,
            kind=kind,
            seller=seller,
            price=price,
            metadata_ref=account.data_value(keys.listing_meta_key(token.code))
            or (record.metadata_ref if record else None),
            start_time=schedule[0] if schedule else None,
            end_time=schedule[1] if schedule else None,
            offer_id=standing.offer_id if standing else None,
            verified=self.is_verified(token),
            sold=account.balance_of(token.as_asset()) < 1,
            status=status,
        )

    @staticmethod
    def _listing_kind(token: Token, account: AccountState, standing, record: Optional[AuctionRecord]):
        annotated = account.data_value(keys.listing_key(token.code))
        if annotated:
            return ListingKind(annotated), account.data_value(keys.price_key(token.code))
        # Accepted bid: the terms outlive the listing marker
        retained = account.data_value(keys.price_key(token.code))
        if retained is not None and keys.outcome_key(token.code) in account.data:
            if keys.auction_key(token.code) in account.data:
                return ListingKind.TIMED_AUCTION, retained
            return ListingKind.OPEN_BID, retained
        if standing is not None:
            return ListingKind.FIXED_PRICE, standing.price
        if record is not None:
            return ListingKind(record.kind), record.price
        return None, None
