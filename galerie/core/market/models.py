"""
Marketplace domain models.

Token: a single-unit asset identified by (code, issuer)
Listing: token offered by a seller in one of three kinds
Bid: an observed bid from the off-chain store or the order book
Auction: timed listing with a monotonic status state machine
"""

from dataclasses import dataclass, replace
from decimal import Decimal
from enum import Enum
from typing import Dict, Optional, Set

from galerie.core.ledger.operations import Asset
from galerie.utils.validation import format_amount


# =============================================================================
# Enums
# =============================================================================


class ListingKind(str, Enum):
    """How a token is offered."""
    FIXED_PRICE = "fixed_price"      # Buy outright at the asking price
    OPEN_BID = "open_bid"            # Owner accepts any bid, no deadline
    TIMED_AUCTION = "timed_auction"  # Highest bid wins at the deadline


class BidOrigin(str, Enum):
    """Where a bid was observed."""
    OFFCHAIN = "offchain"      # Pinned bid record
    ORDER_BOOK = "order_book"  # Live buy offer (fillable)


class AuctionStatus(str, Enum):
    """Lifecycle status of a timed auction."""
    ACTIVE = "active"
    ENDED = "ended"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (AuctionStatus.COMPLETED, AuctionStatus.CANCELLED)


_TRANSITIONS: Dict[AuctionStatus, Set[AuctionStatus]] = {
    AuctionStatus.ACTIVE: {AuctionStatus.ENDED},
    AuctionStatus.ENDED: {AuctionStatus.COMPLETED, AuctionStatus.CANCELLED},
    AuctionStatus.COMPLETED: set(),
    AuctionStatus.CANCELLED: set(),
}


def can_transition(current: AuctionStatus, target: AuctionStatus) -> bool:
    return target in _TRANSITIONS[current]


# =============================================================================
# Token
# =============================================================================


@dataclass(frozen=True)
class Token:
    """A collectible: asset code + issuing account."""
    code: str
    issuer: str

    def as_asset(self) -> Asset:
        return Asset(code=self.code, issuer=self.issuer)

    def __str__(self) -> str:
        return f"{self.code}:{self.issuer[:6]}..."


# =============================================================================
# Bids
# =============================================================================


@dataclass(frozen=True)
class Bid:
    """
    One bid on a token.
    
    Attributes:
        token: Token bid on
        bidder: Bidding account
        amount: Native units offered
        timestamp: Epoch seconds (record time or offer's last change)
        origin: Off-chain record or live order-book offer
        offer_id: Order-book offer id (order-book bids only)
    """
    token: Token
    bidder: str
    amount: Decimal
    timestamp: int
    origin: BidOrigin
    offer_id: Optional[int] = None

    @property
    def price(self) -> str:
        """Canonical decimal string of the amount."""
        return format_amount(self.amount)

    @property
    def is_fillable(self) -> bool:
        return self.origin == BidOrigin.ORDER_BOOK

    def dedupe_key(self) -> tuple:
        return (self.bidder, self.amount)


# =============================================================================
# Listings & Auctions
# =============================================================================


@dataclass(frozen=True)
class Listing:
    """
    Read model of a token's listing as seen on the ledger.
    
    `verified` is derived from the issuer's issuance marker and `sold`
    from the seller's token balance; neither is stored.
    """
    token: Token
    kind: ListingKind
    seller: str
    price: Optional[str]
    metadata_ref: Optional[str] = None
    start_time: Optional[int] = None
    end_time: Optional[int] = None
    offer_id: Optional[int] = None
    verified: bool = False
    sold: bool = False
    status: Optional[AuctionStatus] = None


@dataclass(frozen=True)
class Auction:
    """Timed auction state; status only moves along _TRANSITIONS."""
    token: Token
    owner: str
    starting_price: str
    start_time: int
    end_time: int
    status: AuctionStatus = AuctionStatus.ACTIVE
    winner: Optional[str] = None
    winning_amount: Optional[str] = None
    settlement_ref: Optional[str] = None
    metadata_ref: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def transition(self, target: AuctionStatus, **changes) -> "Auction":
        """Return a copy in `target` status; raises ValueError on an illegal move."""
        if not can_transition(self.status, target):
            raise ValueError(f"Illegal auction transition {self.status.value} -> {target.value}")
        return replace(self, status=target, **changes)


@dataclass(frozen=True)
class FinalizeResult:
    """
    Outcome of check_and_finalize.
    
    Attributes:
        status: Status after the check
        winner: Winning bidder (COMPLETED only)
        amount: Winning amount (COMPLETED only)
        settlement_ref: Transaction hash of the finalizing transaction
        time_remaining: Seconds until end (ACTIVE only)
        already_final: True when no transaction was submitted by this call
    """
    status: AuctionStatus
    winner: Optional[str] = None
    amount: Optional[str] = None
    settlement_ref: Optional[str] = None
    time_remaining: int = 0
    already_final: bool = False


__all__ = [
    "ListingKind",
    "BidOrigin",
    "AuctionStatus",
    "can_transition",
    "Token",
    "Bid",
    "Listing",
    "Auction",
    "FinalizeResult",
]
