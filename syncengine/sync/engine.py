"""Sync engine: atomic batch ingestion plus the range and bootstrap reads.

The engine owns one SQLite connection shared by the transaction log and the
payload store. A single lock guards every log/store access, so no caller
ever observes a state that existed only in the middle of a batch.
"""

import logging
import sqlite3
import threading
from pathlib import Path
from typing import Any

from ..errors import (
    InvalidActionError,
    InvalidBatchError,
    PersistenceError,
    SerializationError,
    SyncError,
)
from .models import Action, LogEntry, Transaction
from .payload_store import PayloadStore
from .transaction_log import TransactionLog, now_ms

logger = logging.getLogger(__name__)

VALID_ACTIONS = tuple(a.value for a in Action)


class SyncEngine:
    """Append-only transaction log with a last-write-wins materialized view.

    Clients submit batches through ingest(), catch up with fetch_range(),
    and initialize from bootstrap().
    """

    def __init__(self, db_path: str | Path, recover_on_startup: bool = True):
        """Initialize the engine.

        Args:
            db_path: Path to SQLite database file (":memory:" for tests).
            recover_on_startup: Replay logged-but-unmaterialized batches
                when connecting.
        """
        self.db_path = Path(db_path).expanduser()
        self.recover_on_startup = recover_on_startup
        self._conn: sqlite3.Connection | None = None
        self._log: TransactionLog | None = None
        self._store: PayloadStore | None = None
        self._lock = threading.Lock()
        # Lock order: _connect_lock before _lock
        self._connect_lock = threading.Lock()
        self._clock: int = 0

    def connect(self) -> None:
        """Open the database, create the schema and optionally recover.

        Does nothing if the engine is already connected.
        """
        with self._connect_lock:
            if self._conn is not None:
                return

            self.db_path.parent.mkdir(parents=True, exist_ok=True)

            try:
                conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            except sqlite3.Error as e:
                raise PersistenceError(f"Failed to open {self.db_path}: {e}") from e

            log = TransactionLog(conn)
            store = PayloadStore(conn)
            log.create_schema()
            store.create_schema()

            with self._lock:
                self._conn, self._log, self._store = conn, log, store
                # Resume the commit clock from the newest logged batch
                self._clock = log.latest_commit_time()
                horizon = log.max_position()

            logger.info(f"SyncEngine connected to {self.db_path}, horizon={horizon}")

            if self.recover_on_startup:
                self.recover()

    def close(self) -> None:
        """Close database connection once any in-flight operation finishes."""
        with self._connect_lock, self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None
                self._log = None
                self._store = None

    def _ensure_connected(self) -> None:
        if self._conn is None:
            self.connect()

    def _tick(self) -> int:
        """Advance the commit clock; never moves backwards."""
        self._clock = max(self._clock, now_ms())
        return self._clock

    # ==================== Writes ====================

    def ingest(self, batch: list[Transaction]) -> int:
        """Commit a batch to the log and replay it into the store.

        Args:
            batch: Non-empty list of transactions.

        Returns:
            Position assigned to the batch.

        Raises:
            InvalidBatchError: If the batch is empty.
            InvalidActionError: If any transaction has an unknown action.
                Nothing is written.
            SerializationError: If a payload cannot be encoded. Nothing is
                written.
            PersistenceError: If the log append fails.
        """
        if not batch:
            raise InvalidBatchError("Batch must contain at least one transaction")

        for transaction in batch:
            if transaction.action not in VALID_ACTIONS:
                raise InvalidActionError(transaction.action)

        self._ensure_connected()

        with self._lock:
            # Keep replay order intact if an earlier batch never materialized
            self._materialize_pending()

            committed_at = self._tick()
            position = self._log.append(batch, committed_at)

            try:
                self._replay(LogEntry(position, batch, committed_at))
            except SyncError as e:
                # The log already holds the batch; recover() will finish it
                logger.error(
                    f"Batch {position} logged but not materialized: {e}"
                )

        logger.debug(f"Ingested {len(batch)} transactions at position {position}")
        return position

    def recover(self) -> int:
        """Replay every logged batch the store has not materialized yet.

        Returns:
            Number of batches replayed.
        """
        self._ensure_connected()

        with self._lock:
            replayed = self._materialize_pending()

        if replayed:
            logger.info(f"Recovered {replayed} unmaterialized batches")
        return replayed

    def rebuild(self) -> int:
        """Discard the store and rebuild it by replaying the whole log.

        Returns:
            Number of batches replayed.
        """
        self._ensure_connected()

        with self._lock:
            entries = self._log.read_range()
            try:
                with self._conn:
                    self._store.clear()
                    for entry in entries:
                        self._apply(entry)
            except sqlite3.Error as e:
                raise PersistenceError(f"Failed to rebuild store: {e}") from e

        logger.info(f"Rebuilt payload store from {len(entries)} batches")
        return len(entries)

    def _materialize_pending(self) -> int:
        """Replay entries above the store's marker. Caller holds the lock."""
        materialized = self._store.materialized_position()
        if materialized >= self._log.max_position():
            return 0

        pending = self._log.read_range(materialized + 1)
        for entry in pending:
            self._replay(entry)
        return len(pending)

    def _replay(self, entry: LogEntry) -> None:
        """Apply one entry and advance the marker in a single transaction."""
        try:
            with self._conn:
                self._apply(entry)
        except sqlite3.Error as e:
            raise PersistenceError(
                f"Failed to replay batch {entry.position}: {e}"
            ) from e

    def _apply(self, entry: LogEntry) -> None:
        """Write an entry's effects without committing."""
        for transaction in entry.batch:
            if transaction.action == Action.DELETE:
                self._store.delete(transaction.record_id)
            elif transaction.action in (Action.CREATE, Action.UPDATE):
                self._store.upsert(
                    transaction.record_id,
                    transaction.entity_type,
                    transaction.payload,
                    entry.committed_at,
                )
            else:
                raise SerializationError(
                    f"Batch {entry.position} holds invalid action "
                    f"{transaction.action!r}"
                )
        self._store.set_materialized_position(entry.position)

    # ==================== Reads ====================

    def fetch_range(
        self,
        from_position: int | None = None,
        to_position: int | None = None,
    ) -> tuple[int, list[Transaction]]:
        """Get every transaction logged in [from_position, to_position].

        Args:
            from_position: Lowest position to include (default 1).
            to_position: Highest position to include (default unbounded).

        Returns:
            Tuple of (horizon, transactions) where horizon is the highest
            position found in the range (0 if none) and transactions are
            flattened in position order, then batch order.
        """
        self._ensure_connected()

        with self._lock:
            entries = self._log.read_range(from_position, to_position)

        horizon = entries[-1].position if entries else 0
        transactions = [t for entry in entries for t in entry.batch]
        return horizon, transactions

    def bootstrap(self) -> tuple[int, dict[str, list[dict[str, Any]]]]:
        """Get a full snapshot of current records and the log horizon.

        Horizon and models are read under the same lock, so a client that
        stores the models and then fetches from horizon + 1 sees every later
        transaction exactly once.
        """
        self._ensure_connected()

        with self._lock:
            self._materialize_pending()
            horizon = self._log.max_position()
            models = self._store.list_all()

        return horizon, models

    def max_position(self) -> int:
        """Get the current sync horizon."""
        self._ensure_connected()

        with self._lock:
            return self._log.max_position()

    def pending_batches(self) -> int:
        """Get how many logged batches the store has not materialized."""
        self._ensure_connected()

        with self._lock:
            return self._log.max_position() - self._store.materialized_position()

    def get_stats(self) -> dict[str, Any]:
        """Get engine statistics.

        Returns:
            Dictionary with log and store counts.
        """
        self._ensure_connected()

        with self._lock:
            horizon = self._log.max_position()
            materialized = self._store.materialized_position()
            stats = {
                "horizon": horizon,
                "materialized_position": materialized,
                "pending_batches": horizon - materialized,
                "total_batches": self._log.count(),
                "records_by_type": self._store.count_by_type(),
            }

        stats["total_records"] = sum(stats["records_by_type"].values())

        if self.db_path.exists():
            stats["db_size_mb"] = round(
                self.db_path.stat().st_size / (1024 * 1024), 2
            )

        return stats
