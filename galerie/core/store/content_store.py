"""
Off-chain content store contract and an in-memory implementation.

The store is append-and-unpin: content is immutable and addressed by
its SHA-256; "updating" means pinning a new document and unpinning the
old one. Readers therefore see every still-pinned version and must
pick the newest one themselves.
"""

import json
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol

from galerie.core.errors import OffchainStoreError
from galerie.crypto import bytes_to_hex, sha256


class ContentStore(Protocol):
    """Pinning service interface (eventually consistent, no transactions)."""

    def put(self, content: dict, tags: Dict[str, str]) -> str:
        """Pin content with searchable tags, return its content id."""
        ...

    def get(self, content_id: str) -> dict:
        ...

    def find(self, tags: Dict[str, str]) -> List[str]:
        """Ids of pinned content carrying all given tags, newest first."""
        ...

    def unpin(self, content_id: str) -> None:
        ...


def content_id_for(content: dict) -> str:
    """Content address: hex SHA-256 of canonical JSON."""
    payload = json.dumps(content, sort_keys=True, separators=(",", ":")).encode("utf-8")
    return bytes_to_hex(sha256(payload))


@dataclass
class _Pin:
    content: dict
    tags: Dict[str, str]
    order: int
    pinned: bool = True


class InMemoryContentStore:
    """
    Dict-backed content store.
    
    Outages can be simulated with `fail_reads` / `fail_writes`; every
    call then raises OffchainStoreError.
    """

    def __init__(self):
        self._pins: Dict[str, _Pin] = {}
        self._order = 0
        self._lock = threading.Lock()
        self.fail_reads = False
        self.fail_writes = False

    def put(self, content: dict, tags: Dict[str, str]) -> str:
        if self.fail_writes:
            raise OffchainStoreError("content store unavailable (put)")
        content_id = content_id_for(content)
        with self._lock:
            self._order += 1
            existing = self._pins.get(content_id)
            if existing is not None:
                existing.pinned = True
                existing.tags.update(tags)
            else:
                self._pins[content_id] = _Pin(
                    content=json.loads(json.dumps(content)),
                    tags=dict(tags),
                    order=self._order,
                )
        return content_id

    def get(self, content_id: str) -> dict:
        if self.fail_reads:
            raise OffchainStoreError("content store unavailable (get)")
        pin = self._pins.get(content_id)
        if pin is None:
            raise OffchainStoreError(f"content {content_id[:12]}... not found")
        return json.loads(json.dumps(pin.content))

    def find(self, tags: Dict[str, str]) -> List[str]:
        if self.fail_reads:
            raise OffchainStoreError("content store unavailable (find)")
        with self._lock:
            matches = [
                (pin.order, content_id)
                for content_id, pin in self._pins.items()
                if pin.pinned and all(pin.tags.get(k) == v for k, v in tags.items())
            ]
        return [content_id for _, content_id in sorted(matches, reverse=True)]

    def unpin(self, content_id: str) -> None:
        if self.fail_writes:
            raise OffchainStoreError("content store unavailable (unpin)")
        with self._lock:
            pin = self._pins.get(content_id)
            if pin is not None:
                pin.pinned = False

    def pinned_count(self) -> int:
        return sum(1 for pin in self._pins.values() if pin.pinned)

    def tags_of(self, content_id: str) -> Optional[Dict[str, str]]:
        pin = self._pins.get(content_id)
        return dict(pin.tags) if pin else None
