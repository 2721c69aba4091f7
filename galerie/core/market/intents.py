"""
Marketplace intents - the tagged union the assembler consumes.

Intents carry raw caller input; nothing here is validated. The
assembler normalizes every field before building operations.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Union

from galerie.core.market.models import Bid, ListingKind, Token


@dataclass(frozen=True)
class IssueIntent:
    """Mint a single-unit token; the creator is the issuer."""
    token: Token
    metadata_ref: str

    label = "issue"

    @property
    def actor(self) -> str:
        return self.token.issuer


@dataclass(frozen=True)
class ListIntent:
    """
    List a token for sale.
    
    Attributes:
        kind: Listing kind
        token: Token to list
        seller: Current holder
        price: Asking price / minimum bid
        end_time: Auction deadline (timed auctions only)
        start_time: Auction start, defaults to ledger time
        metadata_ref: Off-chain metadata pointer
        offer_id: Standing sell offer this listing supersedes (0 = none)
    """
    kind: ListingKind
    token: Token
    seller: str
    price: object
    end_time: Optional[int] = None
    start_time: Optional[int] = None
    metadata_ref: Optional[str] = None
    offer_id: int = 0

    label = "list"

    @property
    def actor(self) -> str:
        return self.seller


@dataclass(frozen=True)
class BidIntent:
    """
    Place (or raise) a bid as a buy offer.
    
    offer_id/offer_amount describe the bidder's existing buy offer on
    this token, which the new bid replaces.
    """
    token: Token
    bidder: str
    amount: object
    offer_id: int = 0
    offer_amount: Decimal = Decimal("0")

    label = "bid"

    @property
    def actor(self) -> str:
        return self.bidder


@dataclass(frozen=True)
class BuyIntent:
    """Buy a fixed-price listing through the escrow account."""
    token: Token
    buyer: str
    price: object

    label = "buy"

    @property
    def actor(self) -> str:
        return self.buyer


@dataclass(frozen=True)
class AcceptBidIntent:
    """Sell to a specific bid; offer_id is the owner's standing sell offer, if any."""
    token: Token
    owner: str
    bid: Bid
    offer_id: int = 0

    label = "accept_bid"

    @property
    def actor(self) -> str:
        return self.owner


@dataclass(frozen=True)
class CancelIntent:
    """Withdraw a listing; offer_id is the standing sell offer (0 = annotations only)."""
    token: Token
    owner: str
    offer_id: int = 0

    label = "cancel"

    @property
    def actor(self) -> str:
        return self.owner


@dataclass(frozen=True)
class ReopenIntent:
    """
    Undo an accepted bid that filled nothing.
    
    offer_id is the resting sell offer left by the accept (0 = none).
    The listing terms (price_, auction_) outlive the accept, so only
    the listing marker and the outcome annotations change.
    """
    token: Token
    owner: str
    offer_id: int = 0

    label = "reopen"

    @property
    def actor(self) -> str:
        return self.owner


MarketplaceIntent = Union[IssueIntent, ListIntent, BidIntent, BuyIntent, AcceptBidIntent, CancelIntent, ReopenIntent]
