"""
Bid Reconciliation Service - one ranked view over two bid sources.

Sources:
-------
1. Off-chain bid records: eventually consistent, may lag, may be
   unavailable, may hold bids that were since withdrawn
2. Order-book buy offers: authoritative and fillable

Merge Rule:
----------
An off-chain record and an order-book offer are the same bid iff the
bidder and the amount match exactly. The order-book entry wins. Records
of a bidder with a live offer that predate the offer's last change
were replaced by a re-bid and are dropped.
Result order: highest amount first, earliest timestamp on ties.
"""

from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from galerie.core.errors import OffchainStoreError
from galerie.core.ledger.client import LedgerClient, OfferFilter, OfferRecord
from galerie.core.market.models import Bid, BidOrigin, Token
from galerie.core.store.records import BidRecord, RecordStore
from galerie.utils.logger import get_logger

logger = get_logger("market.bids")


def rank_bids(bids: Iterable[Bid]) -> List[Bid]:
    return sorted(bids, key=lambda b: (-b.amount, b.timestamp))


def merge_bids(order_book: Iterable[Bid], offchain: Iterable[Bid]) -> List[Bid]:
    """
    Merge both sources into one ranked list without duplicates.
    
    A bidder's live offer also supersedes their off-chain records of
    other amounts made no later than the offer's last change (re-bids
    replace the offer in place).
    
    Args:
        order_book: Bids from live buy offers
        offchain: Bids from pinned records
        
    Returns:
        Deduplicated bids, highest first
    """
    merged: Dict[tuple, Bid] = {}
    live: Dict[str, int] = {}
    for bid in order_book:
        key = bid.dedupe_key()
        if key not in merged or bid.timestamp < merged[key].timestamp:
            merged[key] = bid
        live[bid.bidder] = max(live.get(bid.bidder, bid.timestamp), bid.timestamp)

    for bid in offchain:
        key = bid.dedupe_key()
        current = merged.get(key)
        if current is None:
            if bid.bidder in live and bid.timestamp <= live[bid.bidder]:
                continue
            merged[key] = bid
        elif current.origin == BidOrigin.OFFCHAIN and bid.timestamp > current.timestamp:
            # Repeated announcements: newest record wins
            merged[key] = bid

    return rank_bids(merged.values())


class BidReconciliationService:
    """
    Reads and records bids for tokens.
    
    Args:
        ledger: Order-book access
        records: Off-chain record store (None disables the off-chain source)
    """

    def __init__(self, ledger: LedgerClient, records: Optional[RecordStore] = None):
        self.ledger = ledger
        self.records = records

    # =========================================================================
    # Sources
    # =========================================================================

    def order_book_bids(self, token: Token) -> List[Bid]:
        offers = self.ledger.offers(OfferFilter(token=token.as_asset(), side="buy"))
        return [self._from_offer(token, offer) for offer in offers if offer.amount > 0]

    def offchain_bids(self, token: Token) -> List[Bid]:
        """Pinned bid records; raises OffchainStoreError."""
        if self.records is None:
            raise OffchainStoreError("no content store configured")
        return [self._from_record(token, r) for r in self.records.find_bids(token.code, token.issuer)]

    @staticmethod
    def _from_offer(token: Token, offer: OfferRecord) -> Bid:
        return Bid(
            token=token,
            bidder=offer.account,
            amount=Decimal(offer.price),
            timestamp=offer.last_modified_time,
            origin=BidOrigin.ORDER_BOOK,
            offer_id=offer.offer_id,
        )

    @staticmethod
    def _from_record(token: Token, record: BidRecord) -> Bid:
        return Bid(
            token=token,
            bidder=record.bidder,
            amount=Decimal(record.amount),
            timestamp=record.timestamp,
            origin=BidOrigin.OFFCHAIN,
        )

    # =========================================================================
    # Queries
    # =========================================================================

    def get_bids(self, token: Token) -> List[Bid]:
        """All known bids, order-book entries preferred, highest first."""
        offchain: List[Bid] = []
        if self.records is not None:
            try:
                offchain = self.offchain_bids(token)
            except OffchainStoreError as e:
                logger.warning(f"Off-chain bids for {token} unavailable, using order book only: {e}")
        return merge_bids(self.order_book_bids(token), offchain)

    def get_highest_bid(self, token: Token) -> Optional[Bid]:
        bids = self.get_bids(token)
        return bids[0] if bids else None

    def get_highest_fillable_bid(self, token: Token) -> Optional[Bid]:
        """Highest live buy offer; the only kind of bid a sale can fill."""
        bids = rank_bids(self.order_book_bids(token))
        return bids[0] if bids else None

    def get_bid_history(self, token: Token) -> List[Bid]:
        """
        Every announced bid, newest first.
        
        The off-chain store is the only source, so its failure fails
        the read.
        """
        return sorted(self.offchain_bids(token), key=lambda b: b.timestamp, reverse=True)

    def find_bid_offer(self, token: Token, bidder: str) -> Optional[OfferRecord]:
        """The bidder's live buy offer on this token, if any."""
        offers = self.ledger.offers(OfferFilter(token=token.as_asset(), side="buy", account=bidder))
        return offers[0] if offers else None

    # =========================================================================
    # Recording
    # =========================================================================

    def record_bid(self, token: Token, bidder: str, amount: str, timestamp: int) -> Optional[str]:
        """Pin a bid record; best-effort (the order book already holds the bid)."""
        if self.records is None:
            return None
        record = BidRecord(
            asset_code=token.code,
            issuer=token.issuer,
            bidder=bidder,
            amount=amount,
            timestamp=timestamp,
        )
        try:
            content_id = self.records.pin_bid(record)
        except OffchainStoreError as e:
            logger.warning(f"Could not pin bid record for {token}: {e}")
            return None
        logger.debug(f"Pinned bid {amount} on {token} by {bidder[:8]}... as {content_id[:12]}...")
        return content_id
