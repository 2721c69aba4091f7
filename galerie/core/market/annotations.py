"""
Ledger annotation keys.

Account data entries hold at most 64 bytes per name and value, so
listing state on the ledger is a handful of short keys per token code.
Bid timestamps live on the bidder's account, everything else on the
seller's (or issuer's) account.
"""

from typing import Optional, Tuple

from galerie.core.market.models import AuctionStatus

ISSUED_FLAG = "true"
BIDDER_PREFIX_LENGTH = 10


def metadata_key(code: str) -> str:
    return f"nft_{code}"


def issued_key(code: str) -> str:
    return f"nft_{code}_issued"


def listing_key(code: str) -> str:
    return f"listing_{code}"


def price_key(code: str) -> str:
    return f"price_{code}"


def auction_key(code: str) -> str:
    return f"auction_{code}"


def listing_meta_key(code: str) -> str:
    return f"meta_{code}"


def outcome_key(code: str) -> str:
    return f"done_{code}"


def winner_key(code: str) -> str:
    return f"winner_{code}"


def bid_key(code: str, bidder: str) -> str:
    return f"bid_{code}_{bidder[:BIDDER_PREFIX_LENGTH]}"


def listing_keys(code: str) -> Tuple[str, str, str]:
    """Keys that mark a listing as open."""
    return (listing_key(code), price_key(code), auction_key(code))


# =============================================================================
# Value Codecs
# =============================================================================


def encode_schedule(start_time: int, end_time: int) -> str:
    return f"{start_time}:{end_time}"


def decode_schedule(value: Optional[str]) -> Optional[Tuple[int, int]]:
    """Parse "<start>:<end>"; None if absent or malformed."""
    if not value:
        return None
    start, sep, end = value.partition(":")
    if not sep:
        return None
    try:
        return int(start), int(end)
    except ValueError:
        return None


def encode_outcome(status: AuctionStatus, amount: Optional[str] = None) -> str:
    if status == AuctionStatus.COMPLETED:
        return f"completed:{amount}"
    return status.value


def decode_outcome(value: Optional[str]) -> Optional[Tuple[AuctionStatus, Optional[str]]]:
    """Parse a terminal marker into (status, amount)."""
    if not value:
        return None
    if value == AuctionStatus.CANCELLED.value:
        return AuctionStatus.CANCELLED, None
    head, _, amount = value.partition(":")
    if head == AuctionStatus.COMPLETED.value:
        return AuctionStatus.COMPLETED, amount or None
    return None
