"""Local persistent key-value slots backed by SQLite.

The process-side counterpart of browser localStorage: string values stored
under string keys, overwritten wholesale on every write.
"""

import logging
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

SLOT_SCHEMA = """
CREATE TABLE IF NOT EXISTS kv_slots (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""


class LocalSlotStore:
    """SQLite-based string key-value slots."""

    def __init__(self, db_path: str | Path):
        """Initialize the slot store.

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
        self._conn.executescript(SLOT_SCHEMA)
        self._conn.commit()

        logger.info(f"LocalSlotStore connected to {self.db_path}")

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def _ensure_connected(self) -> sqlite3.Connection:
        """Ensure database connection exists."""
        if self._conn is None:
            self.connect()
        return self._conn

    def get_item(self, key: str) -> str | None:
        """Get the value stored under a key.

        Args:
            key: Slot name.

        Returns:
            Stored string, or None if the slot is empty.
        """
        conn = self._ensure_connected()
        row = conn.execute("SELECT value FROM kv_slots WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def set_item(self, key: str, value: str) -> None:
        """Overwrite the value stored under a key."""
        conn = self._ensure_connected()
        conn.execute(
            """
            INSERT INTO kv_slots (key, value, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
                value = excluded.value,
                updated_at = excluded.updated_at
            """,
            (key, value, datetime.now().isoformat()),
        )
        conn.commit()

    def remove_item(self, key: str) -> bool:
        """Delete a slot.

        Returns:
            True if the slot existed.
        """
        conn = self._ensure_connected()
        cursor = conn.execute("DELETE FROM kv_slots WHERE key = ?", (key,))
        conn.commit()
        return cursor.rowcount > 0

    def keys(self) -> list[str]:
        conn = self._ensure_connected()
        return [row["key"] for row in conn.execute("SELECT key FROM kv_slots ORDER BY key")]

    def get_stats(self) -> dict[str, Any]:
        """Get slot statistics."""
        conn = self._ensure_connected()
        row = conn.execute(
            "SELECT COUNT(*) AS slots, COALESCE(SUM(LENGTH(value)), 0) AS size FROM kv_slots"
        ).fetchone()
        return {
            "db_path": str(self.db_path),
            "slot_count": row["slots"],
            "total_bytes": row["size"],
        }
