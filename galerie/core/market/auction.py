"""
Auction Lifecycle Manager - timed auctions to an idempotent outcome.

State Machine:
-------------
    ACTIVE --(end time reached)--> ENDED --(no fillable bid)--> CANCELLED
                                         --(highest bid filled)--> COMPLETED

COMPLETED and CANCELLED are terminal. The end time is compared with
ledger time, so client clock skew cannot end an auction early.

Idempotency:
-----------
The finalizing transaction writes a `done_<C>` marker on the owner's
account in the same atomic transaction as the sale or cancellation.
Every finalization plan is built against fresh account state and
declines when the marker is already present, so redundant or
concurrent finalizers converge: the loser's sequence conflict leads to
a rebuild, which sees the marker and returns the existing outcome.

A sale marker only counts once the ledger confirms it (the owner no
longer holds the unit). An accept whose bid was withdrawn in flight
leaves an unconfirmed marker and a resting ask; any finalizer that
sees one reopens the listing first and then retries.

Persistence:
-----------
The ledger is the source of truth. Off-chain auction records are
written best-effort after each decision (pin new version, unpin old)
and repaired on the next check when they lag.
"""

from dataclasses import replace
from typing import Optional, Tuple

from galerie.core.errors import ListingNotFound, OffchainStoreError, StaleOffer
from galerie.core.ledger.client import AccountState, LedgerClient, OfferFilter
from galerie.core.ledger.operations import TransactionPlan
from galerie.core.market import annotations as keys
from galerie.core.market.assembler import TransactionAssembler
from galerie.core.market.bids import BidReconciliationService
from galerie.core.market.intents import AcceptBidIntent, CancelIntent, ListIntent, ReopenIntent
from galerie.core.market.models import (
    Auction,
    AuctionStatus,
    Bid,
    FinalizeResult,
    ListingKind,
    Token,
)
from galerie.core.market.submission import Settlement, TransactionSubmitter
from galerie.core.store.records import AuctionRecord, RecordStore
from galerie.utils.logger import get_logger

logger = get_logger("market.auction")

# Attempts at filling the highest bid before giving up
FILL_ATTEMPTS = 2


class AuctionLifecycleManager:
    """
    Creates, loads and finalizes timed auctions.
    
    Args:
        ledger: Ledger read interface
        submitter: Transaction submitter (sequence handling, decoding)
        assembler: Plan assembler
        bids: Bid reconciliation service
        records: Off-chain record store (optional)
    """

    def __init__(
        self,
        ledger: LedgerClient,
        submitter: TransactionSubmitter,
        assembler: TransactionAssembler,
        bids: BidReconciliationService,
        records: Optional[RecordStore] = None,
    ):
        self.ledger = ledger
        self.submitter = submitter
        self.assembler = assembler
        self.bids = bids
        self.records = records

    # =========================================================================
    # Creation & Loading
    # =========================================================================

    def create_auction(
        self,
        token: Token,
        owner: str,
        starting_price,
        end_time: int,
        metadata_ref: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Tuple[Auction, Settlement]:
        """
        List a token as a timed auction.
        
        Returns:
            (auction, settlement) - the auction in ACTIVE status
        """
        token = self.assembler.normalize_token(token, "list")
        standing = self._standing_offer_id(token, owner)
        intent = ListIntent(
            kind=ListingKind.TIMED_AUCTION,
            token=token,
            seller=owner,
            price=starting_price,
            end_time=end_time,
            metadata_ref=metadata_ref,
            offer_id=standing,
        )
        built = {}

        def build(account: AccountState, now: int) -> TransactionPlan:
            built["intent"] = self.assembler.normalize(intent, now)
            return self.assembler.build(intent, account, now)

        settlement = self.submitter.submit(owner, build, timeout)
        listed = built["intent"]
        auction = Auction(
            token=token,
            owner=listed.seller,
            starting_price=listed.price,
            start_time=listed.start_time,
            end_time=listed.end_time,
            metadata_ref=metadata_ref,
        )
        logger.info(f"Auction for {token} open until {auction.end_time} (starting at {auction.starting_price})")
        self._persist(auction)
        return auction, settlement

    def load_auction(self, token: Token, owner: str) -> Optional[Auction]:
        """
        Current auction state for (token, owner).
        
        Uses the newest off-chain record when available, falling back to
        the ledger annotations. A terminal marker on the ledger always
        overrides the record's status.
        """
        token = self.assembler.normalize_token(token, "load")
        auction = None
        if self.records is not None:
            try:
                record = self.records.find_auction(token.code, token.issuer, owner)
            except OffchainStoreError as e:
                logger.warning(f"Auction record for {token} unavailable, reading ledger: {e}")
                record = None
            if record is not None and record.kind == ListingKind.TIMED_AUCTION.value:
                auction = self.from_record(token, record)

        account = self.ledger.load_account(owner)
        if account is None:
            return auction

        if auction is None:
            schedule = keys.decode_schedule(account.data_value(keys.auction_key(token.code)))
            price = account.data_value(keys.price_key(token.code))
            if schedule is None or price is None:
                return None
            auction = Auction(
                token=token,
                owner=owner,
                starting_price=price,
                start_time=schedule[0],
                end_time=schedule[1],
                metadata_ref=account.data_value(keys.listing_meta_key(token.code)),
            )

        outcome = self._ledger_outcome(token, account)
        if outcome is not None and not auction.is_terminal:
            auction = self._apply_outcome(auction, *outcome)
        return auction

    # =========================================================================
    # Finalization
    # =========================================================================

    def check_and_finalize(self, auction: Auction, timeout: Optional[float] = None) -> FinalizeResult:
        """
        Drive an auction to its outcome if its end time has passed.
        
        - terminal auction: no-op, returns the stored outcome
        - end time in the future: ACTIVE with time remaining, no writes
        - otherwise: fill the highest live bid (COMPLETED) or cancel the
          listing when there is none (CANCELLED)
        
        Raises:
            StaleOffer: the chosen bid vanished twice in a row
            SubmissionError / ResourceStateError: ledger rejection
        """
        if auction.is_terminal:
            if self._stored_outcome(auction) is None:
                # Outcome came from the ledger; the record lags behind
                self._persist(auction)
            return self._result(auction, already_final=True)

        now = self.ledger.ledger_time()
        if now < auction.end_time:
            return FinalizeResult(status=AuctionStatus.ACTIVE, time_remaining=auction.end_time - now)

        ended = auction.transition(AuctionStatus.ENDED) if auction.status == AuctionStatus.ACTIVE else auction

        for attempt in range(1, FILL_ATTEMPTS + 1):
            account = self.ledger.load_account(auction.owner)
            outcome = self._ledger_outcome(auction.token, account) if account else None
            if outcome is not None:
                return self._adopt(ended, *outcome)
            if account is not None and self.sale_pending(auction.token, account):
                logger.warning(f"Accepted bid on {auction.token} never filled, reopening before retrying")
                self.reopen(auction.token, auction.owner, timeout)

            bid = self.bids.get_highest_fillable_bid(auction.token)
            if bid is None:
                return self._cancel(ended, timeout)

            try:
                settlement = self.submitter.submit(auction.owner, self._accept_builder(ended, bid), timeout)
            except StaleOffer as e:
                if attempt == FILL_ATTEMPTS:
                    raise
                logger.warning(f"Top bid on {auction.token} went stale ({e}), re-querying")
                continue

            if settlement is None:
                return self._adopt_from_ledger(ended)

            if settlement.claimed_offers():
                return self._complete(ended, bid, settlement)

            # Nothing filled: the bid was withdrawn after it was chosen
            if attempt == FILL_ATTEMPTS:
                self.reopen(auction.token, auction.owner, timeout)
                raise StaleOffer(
                    f"No bid on {auction.token} could be filled after {FILL_ATTEMPTS} attempts",
                    code="op_not_found",
                )
            logger.warning(f"Accepted bid on {auction.token} filled nothing, re-querying")

        raise AssertionError("unreachable")

    # =========================================================================
    # Plans
    # =========================================================================

    def _accept_builder(self, auction: Auction, bid: Bid):
        token = auction.token

        def build(account: AccountState, now: int) -> Optional[TransactionPlan]:
            if self._ledger_outcome(token, account) is not None:
                return None
            live = self.ledger.offers(OfferFilter(token=token.as_asset(), side="buy", account=bid.bidder))
            if not any(offer.offer_id == bid.offer_id for offer in live):
                raise StaleOffer(f"Bid offer {bid.offer_id} by {bid.bidder[:8]}... is gone", code="op_not_found")
            intent = AcceptBidIntent(
                token=token,
                owner=auction.owner,
                bid=bid,
                offer_id=self._standing_offer_id(token, auction.owner),
            )
            return self.assembler.build(intent, account, now)

        return build

    def _cancel(self, auction: Auction, timeout: Optional[float]) -> FinalizeResult:
        token = auction.token

        def build(account: AccountState, now: int) -> Optional[TransactionPlan]:
            if self._ledger_outcome(token, account) is not None:
                return None
            intent = CancelIntent(
                token=token,
                owner=auction.owner,
                offer_id=self._standing_offer_id(token, auction.owner),
            )
            return self.assembler.build(intent, account, now)

        settlement = self.submitter.submit(auction.owner, build, timeout)
        if settlement is None:
            return self._adopt_from_ledger(auction)

        final = auction.transition(AuctionStatus.CANCELLED, settlement_ref=settlement.reference)
        logger.info(f"Auction for {token} ended without bids, cancelled ({settlement.reference[:10]}...)")
        self._persist(final)
        return self._result(final)

    def _complete(self, auction: Auction, bid: Bid, settlement: Settlement) -> FinalizeResult:
        fill = settlement.claimed_offers()[0]
        if fill.account != bid.bidder:
            logger.warning(
                f"Sale of {auction.token} filled {fill.account[:8]}... instead of {bid.bidder[:8]}..."
            )
        final = auction.transition(
            AuctionStatus.COMPLETED,
            winner=fill.account,
            winning_amount=fill.price,
            settlement_ref=settlement.reference,
        )
        logger.info(f"Auction for {auction.token} won by {fill.account[:8]}... at {fill.price}")
        self._persist(final)
        return self._result(final)

    def reopen(self, token: Token, owner: str, timeout: Optional[float] = None) -> Optional[Settlement]:
        """
        Undo an accepted bid that filled nothing: drop the resting ask,
        clear the outcome and restore the listing marker.
        
        Returns None when fresh state shows nothing to undo (the sale
        filled meanwhile, or another caller already reopened).
        """
        def build(account: AccountState, now: int) -> Optional[TransactionPlan]:
            if not self.sale_pending(token, account):
                return None
            intent = ReopenIntent(token=token, owner=owner, offer_id=self._standing_offer_id(token, owner))
            return self.assembler.build(intent, account, now)

        settlement = self.submitter.submit(owner, build, timeout)
        if settlement is not None:
            logger.info(f"Reopened listing of {token} ({settlement.reference[:10]}...)")
        return settlement

    # =========================================================================
    # Ledger Outcome
    # =========================================================================

    @staticmethod
    def sale_pending(token: Token, account: AccountState) -> bool:
        """A completion marker the ledger does not confirm: the owner still holds the unit."""
        marker = keys.decode_outcome(account.data_value(keys.outcome_key(token.code)))
        return (
            marker is not None
            and marker[0] == AuctionStatus.COMPLETED
            and account.balance_of(token.as_asset()) >= 1
        )

    def _ledger_outcome(
        self, token: Token, account: AccountState
    ) -> Optional[Tuple[AuctionStatus, Optional[str], Optional[str]]]:
        """Terminal outcome on the owner's account; unconfirmed sales do not count."""
        marker = keys.decode_outcome(account.data_value(keys.outcome_key(token.code)))
        if marker is None or self.sale_pending(token, account):
            return None
        status, amount = marker
        winner = account.data_value(keys.winner_key(token.code)) if status == AuctionStatus.COMPLETED else None
        return status, winner, amount

    def _apply_outcome(
        self, auction: Auction, status: AuctionStatus, winner: Optional[str], amount: Optional[str]
    ) -> Auction:
        if auction.status == AuctionStatus.ACTIVE:
            auction = auction.transition(AuctionStatus.ENDED)
        return auction.transition(status, winner=winner, winning_amount=amount)

    def _adopt(
        self, auction: Auction, status: AuctionStatus, winner: Optional[str], amount: Optional[str]
    ) -> FinalizeResult:
        """Another finalizer already decided; repair the record and report."""
        final = self._apply_outcome(auction, status, winner, amount)
        logger.info(f"Auction for {auction.token} already {status.value} on the ledger")
        stored = self._stored_outcome(final)
        if stored is not None:
            final = replace(final, settlement_ref=stored.settlement_ref)
        else:
            self._persist(final)
        return self._result(final, already_final=True)

    def _stored_outcome(self, auction: Auction) -> Optional[AuctionRecord]:
        """Newest record if it already carries this terminal status."""
        if self.records is None:
            return None
        try:
            record = self.records.find_auction(auction.token.code, auction.token.issuer, auction.owner)
        except OffchainStoreError:
            return None
        if record is not None and record.status == auction.status.value:
            return record
        return None

    def ledger_result(self, token: Token, owner: str) -> Optional[FinalizeResult]:
        """Terminal outcome recorded on the owner's account, if any."""
        token = self.assembler.normalize_token(token, "load")
        account = self.ledger.load_account(owner)
        outcome = self._ledger_outcome(token, account) if account else None
        if outcome is None:
            return None
        status, winner, amount = outcome
        return FinalizeResult(status=status, winner=winner, amount=amount, already_final=True)

    def _adopt_from_ledger(self, auction: Auction) -> FinalizeResult:
        account = self.ledger.load_account(auction.owner)
        outcome = self._ledger_outcome(auction.token, account) if account else None
        if outcome is None:
            raise ListingNotFound(
                f"Outcome marker for {auction.token} changed while finalizing", code="op_name_not_found"
            )
        return self._adopt(auction, *outcome)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _standing_offer_id(self, token: Token, owner: str) -> int:
        offers = self.ledger.offers(OfferFilter(token=token.as_asset(), side="sell", account=owner))
        return offers[0].offer_id if offers else 0

    @staticmethod
    def _result(auction: Auction, already_final: bool = False) -> FinalizeResult:
        return FinalizeResult(
            status=auction.status,
            winner=auction.winner,
            amount=auction.winning_amount,
            settlement_ref=auction.settlement_ref,
            already_final=already_final,
        )

    @staticmethod
    def from_record(token: Token, record: AuctionRecord) -> Auction:
        return Auction(
            token=token,
            owner=record.owner,
            starting_price=record.price,
            start_time=record.start_time,
            end_time=record.end_time,
            status=AuctionStatus(record.status),
            winner=record.winner,
            winning_amount=record.winning_amount,
            settlement_ref=record.settlement_ref,
            metadata_ref=record.metadata_ref,
        )

    def _persist(self, auction: Auction) -> None:
        """Write the auction's current version off-chain; best-effort."""
        if self.records is None:
            return
        record = AuctionRecord(
            asset_code=auction.token.code,
            issuer=auction.token.issuer,
            owner=auction.owner,
            kind=ListingKind.TIMED_AUCTION.value,
            price=auction.starting_price,
            start_time=auction.start_time,
            end_time=auction.end_time,
            status=auction.status.value,
            winner=auction.winner,
            winning_amount=auction.winning_amount,
            settlement_ref=auction.settlement_ref,
            metadata_ref=auction.metadata_ref,
            created_at=self.ledger.ledger_time(),
        )
        try:
            self.records.supersede_auction(record)
        except OffchainStoreError as e:
            logger.warning(f"Auction record for {auction.token} not persisted ({auction.status.value}): {e}")
