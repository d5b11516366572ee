"""JSON encoding of batches and payloads for storage.

Payloads are schemaless: any JSON value (objects, arrays, strings, numbers,
booleans, null) round-trips with its nested shape intact.
"""

import json
from typing import Any

from ..errors import InvalidBatchError, SerializationError
from .models import Transaction


def encode_payload(payload: Any) -> str:
    """Encode a payload value as JSON text.

    Raises:
        SerializationError: If the value is not representable as JSON.
    """
    try:
        return json.dumps(payload, allow_nan=False)
    except (TypeError, ValueError) as e:
        raise SerializationError(f"Payload is not JSON-serializable: {e}") from e


def decode_payload(text: str) -> Any:
    """Decode JSON text produced by encode_payload."""
    try:
        return json.loads(text)
    except (TypeError, ValueError) as e:
        raise SerializationError(f"Stored payload is corrupt: {e}") from e


def encode_batch(batch: list[Transaction]) -> str:
    """Encode a batch of transactions as a JSON array."""
    return encode_payload([t.to_dict() for t in batch])


def decode_batch(text: str) -> list[Transaction]:
    """Decode a batch stored by encode_batch.

    Raises:
        SerializationError: If the text is not a JSON array of transactions.
    """
    data = decode_payload(text)
    if not isinstance(data, list):
        raise SerializationError(
            f"Stored batch must be a JSON array, got {type(data).__name__}"
        )

    try:
        return [Transaction.from_dict(item) for item in data]
    except InvalidBatchError as e:
        raise SerializationError(f"Stored batch is corrupt: {e}") from e
