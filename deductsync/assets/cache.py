"""Named response caches stored in SQLite."""

import json
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

logger = logging.getLogger(__name__)

CACHE_SCHEMA = """
-- Cache generations, in creation order
CREATE TABLE IF NOT EXISTS caches (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE,
    created_at TEXT NOT NULL
);

-- Stored responses, one per URL per cache
CREATE TABLE IF NOT EXISTS cache_entries (
    cache_name TEXT NOT NULL,
    url TEXT NOT NULL,
    status INTEGER NOT NULL,
    status_text TEXT NOT NULL DEFAULT '',
    headers TEXT NOT NULL,
    body BLOB NOT NULL,
    stored_at TEXT NOT NULL,
    PRIMARY KEY (cache_name, url)
);
"""


@dataclass
class AssetResponse:
    """An HTTP response as served to, or stored for, a client."""

    status: int
    body: bytes = b""
    headers: dict[str, str] = field(default_factory=dict)
    status_text: str = ""
    url: str = ""

    @property
    def ok(self) -> bool:
        return self.status == 200


class Cache:
    """One named cache generation."""

    def __init__(self, storage: "CacheStorage", name: str):
        self._storage = storage
        self.name = name

    def put(self, url: str, response: AssetResponse) -> None:
        """Store a response for a URL, replacing any previous one."""
        conn = self._storage._ensure_connected()
        conn.execute(
            """
            INSERT OR REPLACE INTO cache_entries (
                cache_name, url, status, status_text, headers, body, stored_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                self.name,
                url,
                response.status,
                response.status_text,
                json.dumps(response.headers),
                response.body,
                datetime.now().isoformat(),
            ),
        )
        conn.commit()

    def match(self, url: str) -> AssetResponse | None:
        conn = self._storage._ensure_connected()
        row = conn.execute(
            "SELECT * FROM cache_entries WHERE cache_name = ? AND url = ?",
            (self.name, url),
        ).fetchone()
        return _row_to_response(row) if row else None

    def delete(self, url: str) -> bool:
        conn = self._storage._ensure_connected()
        cursor = conn.execute(
            "DELETE FROM cache_entries WHERE cache_name = ? AND url = ?",
            (self.name, url),
        )
        conn.commit()
        return cursor.rowcount > 0

    def keys(self) -> list[str]:
        conn = self._storage._ensure_connected()
        cursor = conn.execute(
            "SELECT url FROM cache_entries WHERE cache_name = ? ORDER BY url",
            (self.name,),
        )
        return [row["url"] for row in cursor]


def _row_to_response(row: sqlite3.Row) -> AssetResponse:
    return AssetResponse(
        status=row["status"],
        body=bytes(row["body"]),
        headers=json.loads(row["headers"]),
        status_text=row["status_text"],
        url=row["url"],
    )


class CacheStorage:
    """Collection of named caches sharing one SQLite database."""

    def __init__(self, db_path: str | Path):
        """Initialize cache storage.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
        """
        self.db_path = Path(db_path).expanduser()
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> None:
        """Initialize database connection and schema."""
        if self._conn is not None:
            return

        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(CACHE_SCHEMA)
        self._conn.commit()

        logger.info(f"CacheStorage connected to {self.db_path}")

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def _ensure_connected(self) -> sqlite3.Connection:
        if self._conn is None:
            self.connect()
        return self._conn

    def open(self, name: str) -> Cache:
        """Open a cache generation, creating it if needed."""
        conn = self._ensure_connected()
        conn.execute(
            "INSERT OR IGNORE INTO caches (name, created_at) VALUES (?, ?)",
            (name, datetime.now().isoformat()),
        )
        conn.commit()
        return Cache(self, name)

    def has(self, name: str) -> bool:
        conn = self._ensure_connected()
        row = conn.execute("SELECT 1 FROM caches WHERE name = ?", (name,)).fetchone()
        return row is not None

    def keys(self) -> list[str]:
        """List cache generation names in creation order."""
        conn = self._ensure_connected()
        return [row["name"] for row in conn.execute("SELECT name FROM caches ORDER BY id")]

    def delete(self, name: str) -> bool:
        """Delete a cache generation and all its entries.

        Returns:
            True if the cache existed.
        """
        conn = self._ensure_connected()
        conn.execute("DELETE FROM cache_entries WHERE cache_name = ?", (name,))
        cursor = conn.execute("DELETE FROM caches WHERE name = ?", (name,))
        conn.commit()
        return cursor.rowcount > 0

    def match(self, url: str) -> AssetResponse | None:
        """Find a response for a URL in any cache, oldest cache first."""
        conn = self._ensure_connected()
        row = conn.execute(
            """
            SELECT e.* FROM cache_entries e
            JOIN caches c ON c.name = e.cache_name
            WHERE e.url = ?
            ORDER BY c.id
            LIMIT 1
            """,
            (url,),
        ).fetchone()
        return _row_to_response(row) if row else None

    def get_stats(self) -> dict[str, int]:
        conn = self._ensure_connected()
        cursor = conn.execute(
            """
            SELECT c.name AS name, COUNT(e.url) AS entries
            FROM caches c LEFT JOIN cache_entries e ON e.cache_name = c.name
            GROUP BY c.name
            """
        )
        return {row["name"]: row["entries"] for row in cursor}
