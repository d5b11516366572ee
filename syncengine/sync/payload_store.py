"""Materialized current state of every record, derived from the log."""

import logging
import sqlite3
from typing import Any

from ..errors import PersistenceError
from .models import Record
from .serialization import decode_payload, encode_payload

logger = logging.getLogger(__name__)

# Schema for materialized records and replay bookkeeping
STORE_SCHEMA = """
CREATE TABLE IF NOT EXISTS model_data (
    id TEXT PRIMARY KEY,
    model_name TEXT NOT NULL,
    data TEXT NOT NULL,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_model_data_name ON model_data(model_name);

-- Highest log position whose batch has been replayed into model_data
CREATE TABLE IF NOT EXISTS sync_state (
    key TEXT PRIMARY KEY,
    value INTEGER NOT NULL
);
"""

MATERIALIZED_KEY = "materialized_position"


class PayloadStore:
    """Record storage keyed by record id.

    Writes join whatever transaction is open on the connection; the caller
    decides when to commit so a whole batch lands atomically.
    """

    def __init__(self, conn: sqlite3.Connection):
        self._conn = conn

    def create_schema(self) -> None:
        """Create the record and bookkeeping tables if missing."""
        try:
            self._conn.executescript(STORE_SCHEMA)
            self._conn.commit()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to create store schema: {e}") from e

    def upsert(
        self,
        record_id: str,
        entity_type: str,
        payload: Any,
        now: int,
    ) -> None:
        """Insert a record or replace its payload and type.

        A new record gets created_at = updated_at = now. An existing one
        keeps its created_at and gets updated_at = now.
        """
        data = encode_payload(payload)
        self._execute(
            """
            INSERT INTO model_data (id, model_name, data, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                model_name = excluded.model_name,
                data = excluded.data,
                updated_at = excluded.updated_at
            """,
            (record_id, entity_type, data, now, now),
        )

    def delete(self, record_id: str) -> bool:
        """Remove a record. Returns False if it was not present."""
        cursor = self._execute("DELETE FROM model_data WHERE id = ?", (record_id,))
        return cursor.rowcount > 0

    def get(self, record_id: str) -> Record | None:
        """Get a single record by id."""
        row = self._execute(
            """
            SELECT id, model_name, data, created_at, updated_at
            FROM model_data WHERE id = ?
            """,
            (record_id,),
        ).fetchone()
        return self._row_to_record(row) if row else None

    def list_all(self) -> dict[str, list[dict[str, Any]]]:
        """Snapshot every record, grouped by entity type.

        Returns:
            Mapping of entity type to [{"id", "data"}, ...], ordered by id
            within each type.
        """
        models: dict[str, list[dict[str, Any]]] = {}
        for record in self.list_records():
            models.setdefault(record.entity_type, []).append(record.to_model())
        return models

    def list_records(self) -> list[Record]:
        """Get every record with its timestamps, ordered by type then id."""
        rows = self._execute(
            """
            SELECT id, model_name, data, created_at, updated_at
            FROM model_data
            ORDER BY model_name ASC, id ASC
            """
        ).fetchall()
        return [self._row_to_record(row) for row in rows]

    def count_by_type(self) -> dict[str, int]:
        """Get the number of records per entity type."""
        rows = self._execute(
            "SELECT model_name, COUNT(*) FROM model_data GROUP BY model_name"
        ).fetchall()
        return {row[0]: row[1] for row in rows}

    def clear(self) -> None:
        """Remove every record and reset the replay marker."""
        self._execute("DELETE FROM model_data")
        self.set_materialized_position(0)

    def materialized_position(self) -> int:
        """Get the position of the last batch replayed into the store."""
        row = self._execute(
            "SELECT value FROM sync_state WHERE key = ?", (MATERIALIZED_KEY,)
        ).fetchone()
        return row[0] if row else 0

    def set_materialized_position(self, position: int) -> None:
        self._execute(
            """
            INSERT INTO sync_state (key, value) VALUES (?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value
            """,
            (MATERIALIZED_KEY, position),
        )

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        try:
            return self._conn.execute(sql, params)
        except sqlite3.Error as e:
            raise PersistenceError(f"Payload store operation failed: {e}") from e

    @staticmethod
    def _row_to_record(row: Any) -> Record:
        return Record(
            record_id=row[0],
            entity_type=row[1],
            payload=decode_payload(row[2]),
            created_at=row[3],
            updated_at=row[4],
        )
