"""Data types shared by the transaction log, payload store and engine."""

from dataclasses import dataclass
from enum import Enum
from typing import Any

from ..errors import InvalidActionError, InvalidBatchError


class Action(str, Enum):
    """Mutation kinds a client may submit."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass
class Transaction:
    """A single client mutation against one record."""

    entity_type: str
    record_id: str
    action: str  # validated against Action at ingest time
    payload: Any = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to the wire/storage representation."""
        return {
            "type": self.entity_type,
            "id": self.record_id,
            "action": self.action,
            "data": self.payload,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "Transaction":
        """Create from the wire/storage representation.

        Raises:
            InvalidBatchError: If required fields are missing or mistyped.
            InvalidActionError: If the action is present but not a string.
        """
        if not isinstance(data, dict):
            raise InvalidBatchError(
                f"Transaction must be an object, got {type(data).__name__}"
            )

        for key in ("type", "id", "action"):
            if key not in data:
                raise InvalidBatchError(f"Transaction is missing '{key}'")

        for key in ("type", "id"):
            if not isinstance(data[key], str):
                raise InvalidBatchError(f"Transaction '{key}' must be a string")

        # Unknown string actions are rejected later by the engine
        if not isinstance(data["action"], str):
            raise InvalidActionError(data["action"])

        return cls(
            entity_type=data["type"],
            record_id=data["id"],
            action=data["action"],
            payload=data.get("data"),
        )


@dataclass
class LogEntry:
    """A committed batch and the position it was assigned."""

    position: int
    batch: list[Transaction]
    committed_at: int  # Unix milliseconds, replay instant for the batch

    def to_dict(self) -> dict[str, Any]:
        return {
            "position": self.position,
            "batch": [t.to_dict() for t in self.batch],
            "committed_at": self.committed_at,
        }


@dataclass
class Record:
    """Materialized current value of a record."""

    record_id: str
    entity_type: str
    payload: Any
    created_at: int
    updated_at: int

    def to_model(self) -> dict[str, Any]:
        """Shape used in bootstrap responses."""
        return {"id": self.record_id, "data": self.payload}

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.record_id,
            "type": self.entity_type,
            "data": self.payload,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
