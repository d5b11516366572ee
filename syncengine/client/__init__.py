"""Python client for the sync server.

Mirrors server state locally through bootstrap and incremental pulls, and
pushes local mutations, queueing them while the server is unreachable.
"""

from .replica import LocalReplica
from .sync_client import SyncClient, SyncResult, SyncStatus

__all__ = ["LocalReplica", "SyncClient", "SyncResult", "SyncStatus"]
