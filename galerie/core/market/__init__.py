"""
Marketplace Module.

Provides the marketplace engine:
- Transaction assembly for issue/list/bid/buy/accept/cancel
- Submission with sequence-conflict rebuilds and timeout re-queries
- Bid reconciliation across off-chain records and the order book
- Timed auction lifecycle
"""

from galerie.core.market.models import (
    Auction,
    AuctionStatus,
    Bid,
    BidOrigin,
    FinalizeResult,
    Listing,
    ListingKind,
    Token,
)
from galerie.core.market.intents import (
    AcceptBidIntent,
    BidIntent,
    BuyIntent,
    CancelIntent,
    IssueIntent,
    ListIntent,
    MarketplaceIntent,
    ReopenIntent,
)
from galerie.core.market.assembler import TransactionAssembler
from galerie.core.market.submission import CheckedLedger, Settlement, TransactionSubmitter, decode_result_codes
from galerie.core.market.bids import BidReconciliationService, merge_bids
from galerie.core.market.auction import AuctionLifecycleManager
from galerie.core.market.service import MarketplaceService

__all__ = [
    "Auction",
    "AuctionStatus",
    "Bid",
    "BidOrigin",
    "FinalizeResult",
    "Listing",
    "ListingKind",
    "Token",
    "AcceptBidIntent",
    "BidIntent",
    "BuyIntent",
    "CancelIntent",
    "IssueIntent",
    "ListIntent",
    "MarketplaceIntent",
    "ReopenIntent",
    "TransactionAssembler",
    "CheckedLedger",
    "Settlement",
    "TransactionSubmitter",
    "decode_result_codes",
    "BidReconciliationService",
    "merge_bids",
    "AuctionLifecycleManager",
    "MarketplaceService",
]
