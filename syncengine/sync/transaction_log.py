"""Append-only log of committed transaction batches.

Each batch is stored as a single row and assigned the next position by
SQLite's AUTOINCREMENT key, so positions start at 1, strictly increase and
are never reused.
"""

import logging
import sqlite3
import time

from ..errors import PersistenceError
from .models import LogEntry, Transaction
from .serialization import decode_batch, encode_batch

logger = logging.getLogger(__name__)

# Schema for the transaction log
LOG_SCHEMA = """
CREATE TABLE IF NOT EXISTS sync_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    actions TEXT NOT NULL,
    committed_at INTEGER NOT NULL
);
"""


def now_ms() -> int:
    """Current wall-clock time in Unix milliseconds."""
    return int(time.time() * 1000)


class TransactionLog:
    """Durable, ordered sequence of transaction batches.

    Operates on a connection owned by the caller; every append runs in its
    own SQLite transaction.
    """

    def __init__(self, conn: sqlite3.Connection):
        self._conn = conn

    def create_schema(self) -> None:
        """Create the log table if it does not exist."""
        try:
            self._conn.executescript(LOG_SCHEMA)
            self._conn.commit()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to create log schema: {e}") from e

    def append(self, batch: list[Transaction], committed_at: int | None = None) -> int:
        """Persist a batch as one entry and return its position.

        Args:
            batch: Transactions to store together.
            committed_at: Replay instant to record with the entry.
                Defaults to the current time.

        Returns:
            The position assigned to the batch.

        Raises:
            SerializationError: If the batch cannot be encoded. Nothing is
                written.
            PersistenceError: If the write fails. No entry is added.
        """
        actions = encode_batch(batch)
        if committed_at is None:
            committed_at = now_ms()

        try:
            with self._conn:
                cursor = self._conn.execute(
                    "INSERT INTO sync_history (actions, committed_at) VALUES (?, ?)",
                    (actions, committed_at),
                )
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to append batch: {e}") from e

        position = cursor.lastrowid
        logger.debug(f"Appended batch of {len(batch)} at position {position}")
        return position

    def read_range(
        self,
        from_position: int | None = None,
        to_position: int | None = None,
    ) -> list[LogEntry]:
        """Get entries whose position lies in [from_position, to_position].

        Args:
            from_position: Lowest position to include (default 1).
            to_position: Highest position to include (default unbounded).

        Returns:
            Matching entries ordered by position. Empty if none qualify.

        Raises:
            PersistenceError: If the query fails.
            SerializationError: If a stored batch cannot be decoded.
        """
        if from_position is None:
            from_position = 1

        sql = "SELECT id, actions, committed_at FROM sync_history WHERE id >= ?"
        params: tuple[int, ...] = (from_position,)
        if to_position is not None:
            sql += " AND id <= ?"
            params += (to_position,)
        sql += " ORDER BY id ASC"

        try:
            rows = self._conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to read log range: {e}") from e

        return [
            LogEntry(
                position=row[0],
                batch=decode_batch(row[1]),
                committed_at=row[2],
            )
            for row in rows
        ]

    def max_position(self) -> int:
        """Get the highest assigned position, or 0 if the log is empty."""
        return self._scalar("SELECT COALESCE(MAX(id), 0) FROM sync_history")

    def latest_commit_time(self) -> int:
        """Get the committed_at of the newest entry, or 0 if empty."""
        return self._scalar(
            "SELECT COALESCE(MAX(committed_at), 0) FROM sync_history"
        )

    def count(self) -> int:
        """Get the number of entries in the log."""
        return self._scalar("SELECT COUNT(*) FROM sync_history")

    def _scalar(self, sql: str) -> int:
        try:
            return self._conn.execute(sql).fetchone()[0]
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to query log: {e}") from e
