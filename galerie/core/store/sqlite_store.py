import json
import sqlite3
import threading
import time
from pathlib import Path
from typing import Dict, List, Optional

from galerie.core.errors import OffchainStoreError
from galerie.core.store.content_store import content_id_for
from galerie.utils.logger import get_logger

logger = get_logger("store.sqlite")


class SQLiteContentStore:
    """
    SQLite backend for the content-store contract.
    
    Provides:
    1. Pins: content-addressed JSON documents with a pinned flag.
       Unpinning keeps the row so the history stays inspectable.
    2. Tags: (name, value) pairs per document for find().
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self._conn_local = threading.local()

        # Ensure directory exists
        if not self.db_path.parent.exists():
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._init_schema()

    def _get_conn(self) -> sqlite3.Connection:
        """Get or create connection for current thread."""
        if not hasattr(self._conn_local, "conn"):
            self._conn_local.conn = sqlite3.connect(
                self.db_path,
                timeout=30.0,
                check_same_thread=False
            )
            self._conn_local.conn.row_factory = sqlite3.Row
            # Enable WAL mode for better concurrency
            self._conn_local.conn.execute("PRAGMA journal_mode=WAL;")
            self._conn_local.conn.execute("PRAGMA synchronous=NORMAL;")
        return self._conn_local.conn

    def _init_schema(self):
        """Initialize database schema."""
        conn = self._get_conn()
        with conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS pins (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    content_id TEXT NOT NULL UNIQUE,
                    content TEXT NOT NULL,
                    created_at REAL NOT NULL,
                    pinned INTEGER NOT NULL DEFAULT 1
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS tags (
                    content_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    value TEXT NOT NULL,
                    PRIMARY KEY (content_id, name)
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_tags_name_value ON tags(name, value);")

    # =========================================================================
    # Content Store Operations
    # =========================================================================

    def put(self, content: dict, tags: Dict[str, str]) -> str:
        """Pin a document (re-pins it if it was unpinned)."""
        content_id = content_id_for(content)
        payload = json.dumps(content, sort_keys=True)
        try:
            conn = self._get_conn()
            with conn:
                conn.execute(
                    "INSERT INTO pins (content_id, content, created_at, pinned) VALUES (?, ?, ?, 1) "
                    "ON CONFLICT(content_id) DO UPDATE SET pinned = 1",
                    (content_id, payload, time.time())
                )
                conn.executemany(
                    "INSERT OR REPLACE INTO tags (content_id, name, value) VALUES (?, ?, ?)",
                    [(content_id, name, str(value)) for name, value in tags.items()]
                )
        except sqlite3.Error as e:
            raise OffchainStoreError(f"pin failed: {e}") from e
        return content_id

    def get(self, content_id: str) -> dict:
        try:
            conn = self._get_conn()
            cursor = conn.execute("SELECT content FROM pins WHERE content_id = ?", (content_id,))
            row = cursor.fetchone()
        except sqlite3.Error as e:
            raise OffchainStoreError(f"read failed: {e}") from e
        if row is None:
            raise OffchainStoreError(f"content {content_id[:12]}... not found")
        return json.loads(row["content"])

    def find(self, tags: Dict[str, str]) -> List[str]:
        """Pinned ids carrying all tags, newest first."""
        query = "SELECT p.content_id FROM pins p WHERE p.pinned = 1"
        params: List[str] = []
        for name, value in tags.items():
            query += (
                " AND EXISTS (SELECT 1 FROM tags t WHERE t.content_id = p.content_id"
                " AND t.name = ? AND t.value = ?)"
            )
            params.extend([name, str(value)])
        query += " ORDER BY p.seq DESC"
        try:
            conn = self._get_conn()
            return [row["content_id"] for row in conn.execute(query, params)]
        except sqlite3.Error as e:
            raise OffchainStoreError(f"query failed: {e}") from e

    def unpin(self, content_id: str) -> None:
        try:
            conn = self._get_conn()
            with conn:
                conn.execute("UPDATE pins SET pinned = 0 WHERE content_id = ?", (content_id,))
        except sqlite3.Error as e:
            raise OffchainStoreError(f"unpin failed: {e}") from e

    # =========================================================================
    # Inspection
    # =========================================================================

    def list_pins(self, include_unpinned: bool = False, limit: Optional[int] = None) -> List[dict]:
        """Rows as dicts (id, created_at, pinned, tags), newest first."""
        query = "SELECT content_id, created_at, pinned FROM pins"
        if not include_unpinned:
            query += " WHERE pinned = 1"
        query += " ORDER BY seq DESC"
        if limit is not None:
            query += f" LIMIT {int(limit)}"

        conn = self._get_conn()
        rows = []
        for row in conn.execute(query):
            tag_rows = conn.execute(
                "SELECT name, value FROM tags WHERE content_id = ? ORDER BY name",
                (row["content_id"],)
            )
            rows.append({
                "content_id": row["content_id"],
                "created_at": row["created_at"],
                "pinned": bool(row["pinned"]),
                "tags": {t["name"]: t["value"] for t in tag_rows},
            })
        return rows

    def stats(self) -> dict:
        conn = self._get_conn()
        row = conn.execute(
            "SELECT COUNT(*) AS total, COALESCE(SUM(pinned), 0) AS pinned FROM pins"
        ).fetchone()
        return {"total": row["total"], "pinned": row["pinned"]}

    def close(self):
        """Close connection for current thread."""
        if hasattr(self._conn_local, "conn"):
            self._conn_local.conn.close()
            del self._conn_local.conn
