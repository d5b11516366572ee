"""Tests for the materialized payload store."""

import sqlite3

import pytest

from syncengine.errors import PersistenceError, SerializationError
from syncengine.sync import PayloadStore


@pytest.fixture
def conn():
    """Create an in-memory SQLite connection."""
    conn = sqlite3.connect(":memory:")
    yield conn
    conn.close()


@pytest.fixture
def store(conn):
    """Create a payload store with its schema."""
    store = PayloadStore(conn)
    store.create_schema()
    return store


class TestPayloadStoreSchema:
    """Tests for schema initialization."""

    def test_creates_tables(self, conn, store):
        """Test that create_schema() creates the record and state tables."""
        tables = conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table'"
        ).fetchall()
        table_names = [t[0] for t in tables]

        assert "model_data" in table_names
        assert "sync_state" in table_names

    def test_create_schema_is_idempotent(self, store):
        """Test calling create_schema() twice is harmless."""
        store.upsert("a", "Todo", {"title": "t"}, 100)
        store.create_schema()

        assert store.get("a") is not None


class TestUpsert:
    """Tests for inserting and replacing records."""

    def test_insert_sets_both_timestamps(self, store):
        """Test a new record gets created_at == updated_at == now."""
        store.upsert("a", "Todo", {"title": "t"}, 100)

        record = store.get("a")
        assert record.entity_type == "Todo"
        assert record.payload == {"title": "t"}
        assert record.created_at == 100
        assert record.updated_at == 100

    def test_replace_preserves_created_at(self, store):
        """Test an existing record keeps created_at and refreshes the rest."""
        store.upsert("a", "Todo", {"title": "t"}, 100)
        store.upsert("a", "Todo", {"title": "t2"}, 200)

        record = store.get("a")
        assert record.payload == {"title": "t2"}
        assert record.created_at == 100
        assert record.updated_at == 200

    def test_replace_changes_entity_type(self, store):
        """Test records are keyed by id alone; type follows the last write."""
        store.upsert("a", "Todo", {"title": "t"}, 100)
        store.upsert("a", "Note", {"body": "b"}, 200)

        assert store.list_all() == {"Note": [{"id": "a", "data": {"body": "b"}}]}

    def test_repeat_is_idempotent(self, store):
        """Test repeating the same upsert leaves one identical record."""
        store.upsert("a", "Todo", {"title": "t"}, 100)
        store.upsert("a", "Todo", {"title": "t"}, 100)

        records = store.list_records()
        assert len(records) == 1
        assert records[0].created_at == 100

    def test_null_payload(self, store):
        """Test a null payload is stored and returned as None."""
        store.upsert("a", "Todo", None, 100)

        assert store.get("a").payload is None

    def test_unserializable_payload(self, store):
        """Test non-JSON payloads raise SerializationError."""
        with pytest.raises(SerializationError):
            store.upsert("a", "Todo", {"bad": object()}, 100)


class TestDelete:
    """Tests for removing records."""

    def test_delete_existing(self, store):
        """Test deleting a present record removes it."""
        store.upsert("a", "Todo", {}, 100)

        assert store.delete("a") is True
        assert store.get("a") is None

    def test_delete_absent_is_noop(self, store):
        """Test deleting an absent record is not an error."""
        assert store.delete("missing") is False

    def test_resurrect_after_delete(self, store):
        """Test a record created after deletion gets fresh timestamps."""
        store.upsert("a", "Todo", {"v": 1}, 100)
        store.delete("a")
        store.upsert("a", "Todo", {"v": 2}, 300)

        record = store.get("a")
        assert record.created_at == 300
        assert record.payload == {"v": 2}


class TestListAll:
    """Tests for the grouped snapshot."""

    def test_empty(self, store):
        """Test an empty store lists nothing."""
        assert store.list_all() == {}

    def test_grouped_by_type(self, store):
        """Test records are grouped by entity type and ordered by id."""
        store.upsert("b", "Todo", {"n": 2}, 100)
        store.upsert("a", "Todo", {"n": 1}, 100)
        store.upsert("x", "Note", {"n": 3}, 100)

        models = store.list_all()

        assert models == {
            "Note": [{"id": "x", "data": {"n": 3}}],
            "Todo": [
                {"id": "a", "data": {"n": 1}},
                {"id": "b", "data": {"n": 2}},
            ],
        }

    def test_count_by_type(self, store):
        """Test per-type counts."""
        store.upsert("a", "Todo", {}, 100)
        store.upsert("b", "Todo", {}, 100)
        store.upsert("c", "Note", {}, 100)

        assert store.count_by_type() == {"Todo": 2, "Note": 1}


class TestMaterializedPosition:
    """Tests for the replay marker."""

    def test_defaults_to_zero(self, store):
        """Test a fresh store has replayed nothing."""
        assert store.materialized_position() == 0

    def test_set_and_get(self, store):
        """Test the marker can be advanced."""
        store.set_materialized_position(3)
        store.set_materialized_position(7)

        assert store.materialized_position() == 7

    def test_clear_resets_everything(self, store):
        """Test clear() removes records and resets the marker."""
        store.upsert("a", "Todo", {}, 100)
        store.set_materialized_position(4)

        store.clear()

        assert store.list_all() == {}
        assert store.materialized_position() == 0


class TestFailures:
    """Tests for storage and data-integrity faults."""

    def test_storage_failure(self, conn, store):
        """Test a broken table surfaces as PersistenceError."""
        conn.execute("DROP TABLE model_data")

        with pytest.raises(PersistenceError):
            store.upsert("a", "Todo", {}, 100)

    def test_corrupt_payload(self, conn, store):
        """Test a corrupt stored payload raises SerializationError."""
        store.upsert("a", "Todo", {}, 100)
        conn.execute("UPDATE model_data SET data = '{oops' WHERE id = 'a'")

        with pytest.raises(SerializationError):
            store.list_all()
