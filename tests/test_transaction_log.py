"""Tests for the transaction log and batch serialization."""

import sqlite3

import pytest

from syncengine.errors import (
    InvalidActionError,
    InvalidBatchError,
    PersistenceError,
    SerializationError,
)
from syncengine.sync import LogEntry, Transaction, TransactionLog
from syncengine.sync.serialization import (
    decode_batch,
    decode_payload,
    encode_batch,
    encode_payload,
)


@pytest.fixture
def conn():
    """Create an in-memory SQLite connection."""
    conn = sqlite3.connect(":memory:")
    yield conn
    conn.close()


@pytest.fixture
def log(conn):
    """Create a transaction log with its schema."""
    log = TransactionLog(conn)
    log.create_schema()
    return log


def make_txn(record_id="a", action="create", data=None):
    return Transaction(
        entity_type="Todo",
        record_id=record_id,
        action=action,
        payload=data if data is not None else {"title": "t", "completed": False},
    )


class TestTransaction:
    """Tests for the Transaction dataclass."""

    def test_to_dict_uses_wire_names(self):
        """Test serializing uses type/id/action/data keys."""
        d = make_txn().to_dict()

        assert d == {
            "type": "Todo",
            "id": "a",
            "action": "create",
            "data": {"title": "t", "completed": False},
        }

    def test_from_dict(self):
        """Test deserializing from wire format."""
        t = Transaction.from_dict(
            {"type": "Note", "id": "n1", "action": "update", "data": [1, 2]}
        )

        assert t.entity_type == "Note"
        assert t.record_id == "n1"
        assert t.action == "update"
        assert t.payload == [1, 2]

    def test_from_dict_missing_data_is_none(self):
        """Test that a delete without data decodes with a null payload."""
        t = Transaction.from_dict({"type": "Todo", "id": "a", "action": "delete"})

        assert t.payload is None

    def test_from_dict_keeps_unknown_action(self):
        """Test that action validation is left to the engine."""
        t = Transaction.from_dict({"type": "Todo", "id": "a", "action": "bogus"})

        assert t.action == "bogus"

    @pytest.mark.parametrize("action", [5, None, ["create"]])
    def test_from_dict_non_string_action(self, action):
        """Test a non-string action is reported as an invalid action."""
        with pytest.raises(InvalidActionError) as exc_info:
            Transaction.from_dict({"type": "Todo", "id": "a", "action": action})

        assert exc_info.value.action == action

    @pytest.mark.parametrize(
        "data",
        [
            "not an object",
            {"id": "a", "action": "create"},
            {"type": "Todo", "action": "create"},
            {"type": "Todo", "id": 5, "action": "create"},
        ],
    )
    def test_from_dict_rejects_malformed(self, data):
        """Test malformed transactions raise InvalidBatchError."""
        with pytest.raises(InvalidBatchError):
            Transaction.from_dict(data)


class TestSerialization:
    """Tests for payload and batch encoding."""

    def test_nested_payload_preserved(self):
        """Test arbitrary nested shapes survive encoding."""
        payload = {"a": [1, {"b": None, "c": [True, 2.5]}], "d": "x"}

        assert decode_payload(encode_payload(payload)) == payload

    def test_unserializable_payload(self):
        """Test non-JSON values raise SerializationError."""
        with pytest.raises(SerializationError):
            encode_payload({"bad": {1, 2}})

    def test_nan_payload_rejected(self):
        """Test NaN is rejected to keep stored JSON portable."""
        with pytest.raises(SerializationError):
            encode_payload(float("nan"))

    def test_batch_preserves_order(self):
        """Test a decoded batch keeps intra-batch order."""
        batch = [make_txn("a"), make_txn("b", "update"), make_txn("a", "delete", {})]

        decoded = decode_batch(encode_batch(batch))

        assert [(t.record_id, t.action) for t in decoded] == [
            ("a", "create"),
            ("b", "update"),
            ("a", "delete"),
        ]

    def test_decode_corrupt_json(self):
        """Test corrupt stored text raises SerializationError."""
        with pytest.raises(SerializationError):
            decode_batch("[{not json")

    def test_decode_non_array(self):
        """Test a stored batch must be an array."""
        with pytest.raises(SerializationError):
            decode_batch('{"type": "Todo"}')

    def test_decode_malformed_transaction(self):
        """Test a stored transaction missing fields is a SerializationError."""
        with pytest.raises(SerializationError):
            decode_batch('[{"type": "Todo"}]')


class TestTransactionLogAppend:
    """Tests for appending batches."""

    def test_connect_creates_table(self, conn, log):
        """Test that create_schema() creates the sync_history table."""
        tables = conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table'"
        ).fetchall()
        table_names = [t[0] for t in tables]

        assert "sync_history" in table_names

    def test_first_position_is_one(self, log):
        """Test the first batch is assigned position 1."""
        assert log.append([make_txn()]) == 1

    def test_positions_increase_by_one(self, log):
        """Test positions are gapless and increasing."""
        positions = [log.append([make_txn(str(i))]) for i in range(5)]

        assert positions == [1, 2, 3, 4, 5]

    def test_append_records_commit_time(self, log):
        """Test committed_at is stored with the entry."""
        log.append([make_txn()], committed_at=12345)

        entry = log.read_range()[0]
        assert entry.committed_at == 12345
        assert log.latest_commit_time() == 12345

    def test_unserializable_batch_not_written(self, log):
        """Test that an encode failure leaves the log unchanged."""
        with pytest.raises(SerializationError):
            log.append([make_txn(data={"bad": object()})])

        assert log.max_position() == 0

    def test_storage_failure_raises_persistence_error(self, conn, log):
        """Test that a failed write surfaces as PersistenceError."""
        conn.execute("DROP TABLE sync_history")

        with pytest.raises(PersistenceError):
            log.append([make_txn()])


class TestTransactionLogReads:
    """Tests for range reads and the horizon."""

    def test_max_position_empty(self, log):
        """Test max position of an empty log is 0."""
        assert log.max_position() == 0

    def test_max_position(self, log):
        """Test max position tracks the latest append."""
        log.append([make_txn("a")])
        log.append([make_txn("b")])

        assert log.max_position() == 2

    def test_read_range_inclusive(self, log):
        """Test both bounds are inclusive."""
        for i in range(5):
            log.append([make_txn(str(i))])

        entries = log.read_range(2, 4)

        assert [e.position for e in entries] == [2, 3, 4]

    def test_read_range_defaults_open_ended(self, log):
        """Test unset bounds cover the whole log."""
        for i in range(3):
            log.append([make_txn(str(i))])

        assert [e.position for e in log.read_range()] == [1, 2, 3]
        assert [e.position for e in log.read_range(2)] == [2, 3]
        assert [e.position for e in log.read_range(None, 2)] == [1, 2]

    def test_read_range_from_zero(self, log):
        """Test a lower bound of 0 behaves like 1."""
        log.append([make_txn()])

        assert [e.position for e in log.read_range(0, 1)] == [1]

    def test_read_range_empty(self, log):
        """Test an empty range returns an empty list."""
        log.append([make_txn()])

        assert log.read_range(5, 10) == []

    def test_read_range_returns_batches(self, log):
        """Test entries carry their decoded batches."""
        log.append([make_txn("a"), make_txn("b")])

        entry = log.read_range()[0]

        assert isinstance(entry, LogEntry)
        assert [t.record_id for t in entry.batch] == ["a", "b"]

    def test_read_range_corrupt_entry(self, conn, log):
        """Test a corrupt stored batch is not silently skipped."""
        log.append([make_txn()])
        conn.execute("UPDATE sync_history SET actions = 'garbage' WHERE id = 1")
        conn.commit()

        with pytest.raises(SerializationError):
            log.read_range()
