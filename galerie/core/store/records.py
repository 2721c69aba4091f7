"""
Typed off-chain records and the tag scheme used to find them.

Record kinds:
-------------
1. BidRecord: a bid as announced by the bidder (best-effort mirror of
   the order book; may be stale or missing)
2. AuctionRecord: listing/auction status document; a status change
   pins a new version and unpins the old ones
3. TokenMetadata: name/image/description document referenced from the
   ledger by content id

Every document is tagged {app, type, assetCode, issuer} plus a
role tag (bidder or owner), so a token's records can be found without
scanning. Pinned content is immutable, so fetched documents are cached
by content id when the caller supplies a cache.
"""

from typing import Dict, List, Literal, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel, Field, ValidationError, field_validator

from galerie.core.cache import Cache
from galerie.core.errors import OffchainStoreError
from galerie.core.store.content_store import ContentStore
from galerie.utils.logger import get_logger
from galerie.utils.validation import normalize_price, validate_address

logger = get_logger("store.records")

RecordT = TypeVar("RecordT", bound=BaseModel)


# =============================================================================
# Record Models
# =============================================================================


class _TokenRecord(BaseModel):
    asset_code: str = Field(..., min_length=1, max_length=12, description="Normalized asset code")
    issuer: str = Field(..., description="Issuing account of the token")

    model_config = {"frozen": True}

    @field_validator("issuer")
    @classmethod
    def validate_issuer(cls, v: str) -> str:
        return validate_address(v, "issuer")


class BidRecord(_TokenRecord):
    """Off-chain announcement of a bid."""

    bidder: str = Field(..., description="Bidding account")
    amount: str = Field(..., description="Bid in native units, canonical decimal string")
    timestamp: int = Field(..., ge=0, description="Ledger time of the bid (epoch seconds)")

    @field_validator("bidder")
    @classmethod
    def validate_bidder(cls, v: str) -> str:
        return validate_address(v, "bidder")

    @field_validator("amount", mode="before")
    @classmethod
    def normalize_amount(cls, v) -> str:
        return normalize_price(v, "amount")


class AuctionRecord(_TokenRecord):
    """Listing status document; the newest pinned version is authoritative."""

    owner: str = Field(..., description="Listing account")
    kind: Literal["fixed_price", "open_bid", "timed_auction"]
    price: str = Field(..., description="Starting price / minimum bid")
    start_time: int = Field(..., ge=0)
    end_time: Optional[int] = Field(None, ge=0, description="Timed auctions only")
    status: Literal["active", "ended", "completed", "cancelled"] = "active"
    winner: Optional[str] = None
    winning_amount: Optional[str] = None
    settlement_ref: Optional[str] = None
    metadata_ref: Optional[str] = None
    created_at: int = Field(..., ge=0, description="Ledger time this version was written")

    @field_validator("owner")
    @classmethod
    def validate_owner(cls, v: str) -> str:
        return validate_address(v, "owner")

    @field_validator("price", mode="before")
    @classmethod
    def normalize_starting_price(cls, v) -> str:
        return normalize_price(v)

    @field_validator("winning_amount", mode="before")
    @classmethod
    def normalize_winning_amount(cls, v) -> Optional[str]:
        return None if v is None else normalize_price(v, "winning_amount")

    @field_validator("end_time")
    @classmethod
    def validate_end_after_start(cls, v: Optional[int], info) -> Optional[int]:
        if v is not None and "start_time" in info.data and v <= info.data["start_time"]:
            raise ValueError(f"end_time {v} must be after start_time {info.data['start_time']}")
        return v

    @property
    def is_terminal(self) -> bool:
        return self.status in ("completed", "cancelled")


class TokenMetadata(_TokenRecord):
    """Collectible description pinned at issuance."""

    name: str = Field(..., min_length=1)
    image: str = Field(..., min_length=1, description="Image URL or content reference")
    description: str = ""
    created_at: int = Field(..., ge=0)


# =============================================================================
# Record Store
# =============================================================================


class RecordStore:
    """
    Typed access to marketplace documents in a ContentStore.
    
    Store failures surface as OffchainStoreError; callers decide whether
    the read/write is best-effort. Documents that fail validation are
    skipped with a warning (foreign or corrupt pins).
    """

    def __init__(self, store: ContentStore, app_tag: str = "Galerie", cache: Optional[Cache] = None):
        self.store = store
        self.app_tag = app_tag
        self.cache = cache

    def _tags(self, record_type: str, asset_code: str, issuer: str, **extra: str) -> Dict[str, str]:
        tags = {
            "app": self.app_tag,
            "type": record_type,
            "assetCode": asset_code,
            "issuer": issuer,
        }
        tags.update(extra)
        return tags

    def _fetch(self, content_id: str) -> dict:
        if self.cache is not None:
            cached = self.cache.get(content_id)
            if cached is not None:
                return cached
        content = self.store.get(content_id)
        if self.cache is not None:
            self.cache.put(content_id, content)
        return content

    def _load(self, content_id: str, model: Type[RecordT]) -> Optional[RecordT]:
        try:
            return model.model_validate(self._fetch(content_id))
        except ValidationError as e:
            logger.warning(f"Skipping malformed {model.__name__} {content_id[:12]}...: {e.error_count()} errors")
            return None

    # =========================================================================
    # Bids
    # =========================================================================

    def pin_bid(self, record: BidRecord) -> str:
        tags = self._tags("bid", record.asset_code, record.issuer, bidder=record.bidder)
        return self.store.put(record.model_dump(), tags)

    def find_bids(self, asset_code: str, issuer: str) -> List[BidRecord]:
        ids = self.store.find(self._tags("bid", asset_code, issuer))
        return [r for r in (self._load(i, BidRecord) for i in ids) if r is not None]

    # =========================================================================
    # Auctions / Listings
    # =========================================================================

    def pin_auction(self, record: AuctionRecord) -> str:
        tags = self._tags("auction", record.asset_code, record.issuer, owner=record.owner, status=record.status)
        return self.store.put(record.model_dump(), tags)

    def find_auctions(
        self, asset_code: str, issuer: str, owner: Optional[str] = None
    ) -> List[Tuple[str, AuctionRecord]]:
        """All pinned versions, newest first (created_at, then pin order)."""
        extra = {"owner": owner} if owner else {}
        ids = self.store.find(self._tags("auction", asset_code, issuer, **extra))
        loaded = [(i, self._load(i, AuctionRecord)) for i in ids]
        versions = [(i, r) for i, r in loaded if r is not None]
        # Stable sort keeps the store's newest-first order among equal timestamps
        versions.sort(key=lambda item: item[1].created_at, reverse=True)
        return versions

    def find_auction(self, asset_code: str, issuer: str, owner: Optional[str] = None) -> Optional[AuctionRecord]:
        versions = self.find_auctions(asset_code, issuer, owner)
        return versions[0][1] if versions else None

    def supersede_auction(self, record: AuctionRecord) -> str:
        """
        Pin a new version, then unpin the older ones.
        
        If unpinning fails both versions stay pinned; readers already
        prefer the newest, so this only logs.
        """
        new_id = self.pin_auction(record)
        for content_id, _ in self.find_auctions(record.asset_code, record.issuer, record.owner):
            if content_id == new_id:
                continue
            try:
                self.store.unpin(content_id)
            except OffchainStoreError as e:
                logger.warning(f"Could not unpin superseded record {content_id[:12]}...: {e}")
        return new_id

    def list_active_auctions(self, now: int) -> List[AuctionRecord]:
        """Newest version per (token, owner) that is an active, unexpired timed auction."""
        ids = self.store.find({"app": self.app_tag, "type": "auction"})
        newest: Dict[Tuple[str, str, str], AuctionRecord] = {}
        for content_id in ids:
            record = self._load(content_id, AuctionRecord)
            if record is None:
                continue
            key = (record.asset_code, record.issuer, record.owner)
            if key not in newest or record.created_at > newest[key].created_at:
                newest[key] = record

        active = [
            r for r in newest.values()
            if r.kind == "timed_auction" and r.status == "active" and r.end_time and r.end_time > now
        ]
        active.sort(key=lambda r: r.end_time)
        return active

    # =========================================================================
    # Metadata
    # =========================================================================

    def pin_token_metadata(self, metadata: TokenMetadata) -> str:
        tags = self._tags("metadata", metadata.asset_code, metadata.issuer)
        return self.store.put(metadata.model_dump(), tags)

    def get_token_metadata(self, content_id: str) -> Optional[TokenMetadata]:
        return self._load(content_id, TokenMetadata)
