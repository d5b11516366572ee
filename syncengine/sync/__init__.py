"""Core synchronization engine.

Provides the append-only transaction log, the materialized payload store
derived from it, and the engine that ingests batches and serves range and
bootstrap reads to offline-first clients.
"""

from .engine import SyncEngine
from .models import Action, LogEntry, Record, Transaction
from .payload_store import PayloadStore
from .transaction_log import TransactionLog

__all__ = [
    "Action",
    "LogEntry",
    "PayloadStore",
    "Record",
    "SyncEngine",
    "Transaction",
    "TransactionLog",
]
