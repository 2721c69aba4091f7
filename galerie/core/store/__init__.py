"""
Off-chain Storage Module.

Provides the content-store contract plus:
- In-memory and SQLite-backed pinning stores
- Typed bid / auction / metadata records
"""

from galerie.core.store.content_store import ContentStore, InMemoryContentStore, content_id_for
from galerie.core.store.sqlite_store import SQLiteContentStore
from galerie.core.store.records import AuctionRecord, BidRecord, RecordStore, TokenMetadata

__all__ = [
    "ContentStore",
    "InMemoryContentStore",
    "SQLiteContentStore",
    "content_id_for",
    "AuctionRecord",
    "BidRecord",
    "RecordStore",
    "TokenMetadata",
]
