"""Client-side mirror of the server's models, backed by SQLite.

The replica holds the current records, the sync cursor and an outbox of
local batches not yet accepted by the server. Pass a file path to keep all
three across restarts; the default ":memory:" database lasts as long as the
process.
"""

import logging
import sqlite3
from pathlib import Path
from typing import Any, Callable

from ..errors import PersistenceError
from ..sync.models import Action, Transaction
from ..sync.serialization import (
    decode_batch,
    decode_payload,
    encode_batch,
    encode_payload,
)

logger = logging.getLogger(__name__)

REPLICA_SCHEMA = """
-- Current value of every record the client knows about
CREATE TABLE IF NOT EXISTS replica_models (
    id TEXT PRIMARY KEY,
    model_name TEXT NOT NULL,
    data TEXT
);

CREATE INDEX IF NOT EXISTS idx_replica_models_name ON replica_models(model_name);

-- Sync cursor and bootstrap flag
CREATE TABLE IF NOT EXISTS replica_state (
    key TEXT PRIMARY KEY,
    value INTEGER NOT NULL
);

-- Local batches waiting to be pushed, oldest first
CREATE TABLE IF NOT EXISTS replica_outbox (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    batch TEXT NOT NULL
);
"""

SYNC_ID_KEY = "sync_id"
BOOTSTRAPPED_KEY = "bootstrapped"

SOURCE_SERVER = "server"
SOURCE_LOCAL = "local"

ChangeCallback = Callable[[dict[str, Any]], None]


class LocalReplica:
    """Client copy of the current models plus the sync cursor.

    Applies the same last-write-wins rules as the server's payload store,
    so a replica bootstrapped at horizon N and fed every transaction after N
    converges to the server state.

    Subscribers receive one change dict per applied transaction (the wire
    fields plus "source", either "server" or "local") and
    {"action": "bootstrap", "data": models} when a snapshot is loaded.
    """

    def __init__(self, db_path: str | Path = ":memory:"):
        """Initialize the replica.

        Args:
            db_path: SQLite file holding replica state (":memory:" keeps
                nothing across restarts).
        """
        self.db_path = Path(db_path).expanduser()
        self._conn: sqlite3.Connection | None = None
        self._subscribers: list[ChangeCallback] = []

    def connect(self) -> None:
        """Open the database and create the schema."""
        if self._conn is not None:
            return

        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.executescript(REPLICA_SCHEMA)
            self._conn.commit()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to open replica {self.db_path}: {e}") from e

        logger.debug(f"LocalReplica connected to {self.db_path}")

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def _ensure_connected(self) -> sqlite3.Connection:
        if self._conn is None:
            self.connect()
        return self._conn

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        try:
            return self._ensure_connected().execute(sql, params)
        except sqlite3.Error as e:
            raise PersistenceError(f"Replica query failed: {e}") from e

    # ==================== State ====================

    def _get_state(self, key: str) -> int:
        row = self._execute(
            "SELECT value FROM replica_state WHERE key = ?", (key,)
        ).fetchone()
        return row[0] if row else 0

    def _set_state(self, key: str, value: int) -> None:
        self._execute(
            """
            INSERT INTO replica_state (key, value) VALUES (?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value
            """,
            (key, value),
        )

    @property
    def sync_id(self) -> int:
        """Highest log position reflected in the replica."""
        return self._get_state(SYNC_ID_KEY)

    @sync_id.setter
    def sync_id(self, value: int) -> None:
        with self._ensure_connected():
            self._set_state(SYNC_ID_KEY, value)

    @property
    def bootstrapped(self) -> bool:
        """Whether the replica holds a snapshot that pulls can build on."""
        return bool(self._get_state(BOOTSTRAPPED_KEY))

    def invalidate(self) -> None:
        """Mark the replica as needing a fresh bootstrap."""
        with self._ensure_connected():
            self._set_state(BOOTSTRAPPED_KEY, 0)
        logger.info("Replica invalidated, next sync will bootstrap")

    # ==================== Subscriptions ====================

    def subscribe(self, callback: ChangeCallback) -> Callable[[], None]:
        """Register a change callback.

        Returns:
            Function that removes the callback again.
        """
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _notify(self, changes: list[dict[str, Any]]) -> None:
        for change in changes:
            for callback in list(self._subscribers):
                try:
                    callback(change)
                except Exception as e:
                    logger.error(f"Replica subscriber failed: {e}")

    # ==================== Models ====================

    def load_bootstrap(
        self, sync_id: int, models: dict[str, list[dict[str, Any]]]
    ) -> None:
        """Replace the replica contents with a bootstrap snapshot.

        Batches still waiting in the outbox are re-applied on top, so local
        mutations the server has not accepted yet stay visible.
        """
        queued = self.queued_batches()
        changes: list[dict[str, Any]] = []

        with self._ensure_connected():
            self._execute("DELETE FROM replica_models")
            for entity_type, items in models.items():
                for item in items:
                    self._upsert(item["id"], entity_type, item.get("data"))
            self._set_state(SYNC_ID_KEY, sync_id)
            self._set_state(BOOTSTRAPPED_KEY, 1)
            for batch in queued:
                changes.extend(self._apply_batch(batch, SOURCE_LOCAL))

        logger.debug(f"Loaded {len(self)} records at sync_id={sync_id}")
        self._notify([{"action": "bootstrap", "data": models}, *changes])

    def apply(
        self, transactions: list[Transaction], source: str = SOURCE_SERVER
    ) -> int:
        """Apply transactions in order.

        Args:
            transactions: Transactions to apply.
            source: "server" for pulled transactions, "local" for the
                client's own mutations.

        Returns:
            Number of transactions applied. Unknown actions are skipped.
        """
        with self._ensure_connected():
            changes = self._apply_batch(transactions, source)

        self._notify(changes)
        return len(changes)

    def _apply_batch(
        self, transactions: list[Transaction], source: str
    ) -> list[dict[str, Any]]:
        """Write transactions without committing; returns the applied changes."""
        changes = []
        for t in transactions:
            if t.action in (Action.CREATE, Action.UPDATE):
                self._upsert(t.record_id, t.entity_type, t.payload)
            elif t.action == Action.DELETE:
                self._execute("DELETE FROM replica_models WHERE id = ?", (t.record_id,))
            else:
                logger.warning(f"Skipping transaction with action {t.action!r}")
                continue
            changes.append({**t.to_dict(), "source": source})
        return changes

    def _upsert(self, record_id: str, entity_type: str, data: Any) -> None:
        self._execute(
            """
            INSERT INTO replica_models (id, model_name, data) VALUES (?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                model_name = excluded.model_name,
                data = excluded.data
            """,
            (record_id, entity_type, encode_payload(data)),
        )

    def get(self, record_id: str) -> dict[str, Any] | None:
        row = self._execute(
            "SELECT id, model_name, data FROM replica_models WHERE id = ?",
            (record_id,),
        ).fetchone()
        return self._row_to_model(row) if row else None

    def get_all(self, entity_type: str) -> list[dict[str, Any]]:
        """Get all records of a type, ordered by id."""
        rows = self._execute(
            """
            SELECT id, model_name, data FROM replica_models
            WHERE model_name = ? ORDER BY id
            """,
            (entity_type,),
        ).fetchall()
        return [self._row_to_model(row) for row in rows]

    @staticmethod
    def _row_to_model(row: tuple) -> dict[str, Any]:
        return {"id": row[0], "type": row[1], "data": decode_payload(row[2])}

    def __len__(self) -> int:
        return self._execute("SELECT COUNT(*) FROM replica_models").fetchone()[0]

    # ==================== Outbox ====================

    def enqueue(self, batch: list[Transaction]) -> int:
        """Queue a local batch for pushing. Returns its outbox id."""
        with self._ensure_connected():
            cursor = self._execute(
                "INSERT INTO replica_outbox (batch) VALUES (?)",
                (encode_batch(batch),),
            )
        return cursor.lastrowid

    def next_batch(self) -> tuple[int, list[Transaction]] | None:
        """Get the oldest queued batch and its outbox id, or None."""
        row = self._execute(
            "SELECT id, batch FROM replica_outbox ORDER BY id LIMIT 1"
        ).fetchone()
        if row is None:
            return None
        return row[0], decode_batch(row[1])

    def dequeue(self, batch_id: int) -> None:
        """Remove a batch from the outbox."""
        with self._ensure_connected():
            self._execute("DELETE FROM replica_outbox WHERE id = ?", (batch_id,))

    def queued_batches(self) -> list[list[Transaction]]:
        """Get all queued batches, oldest first."""
        rows = self._execute("SELECT batch FROM replica_outbox ORDER BY id").fetchall()
        return [decode_batch(row[0]) for row in rows]

    @property
    def pending(self) -> int:
        """Number of queued transactions across all batches."""
        return sum(len(batch) for batch in self.queued_batches())
