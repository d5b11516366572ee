"""Sync client for offline-first applications talking to a sync server.

Keeps a LocalReplica up to date via bootstrap and incremental pulls, and
pushes local mutations with retry logic. Mutations made while the server is
unreachable wait in the replica's outbox until the next successful push.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

import httpx

from ..errors import SyncError
from ..sync.models import Action, Transaction
from .replica import SOURCE_LOCAL, LocalReplica

logger = logging.getLogger(__name__)


class SyncStatus(Enum):
    """Status of a sync operation."""

    SUCCESS = "success"
    SKIPPED = "skipped"  # Nothing needed doing
    FAILED = "failed"
    OFFLINE = "offline"  # Remote unavailable


@dataclass
class SyncResult:
    """Result of a sync operation."""

    status: SyncStatus
    entries_pushed: int = 0
    entries_pulled: int = 0
    sync_id: int | None = None
    error: str | None = None
    timestamp: datetime | None = None


class SyncClient:
    """Client that keeps a LocalReplica in sync with a server.

    Supports:
    - Bootstrap: Load a full snapshot when the replica is empty
    - Pull: Fetch transactions logged after the replica's cursor
    - Push: Send local mutations, queueing them while offline
    """

    def __init__(
        self,
        base_url: str | None = None,
        replica: LocalReplica | None = None,
        max_retries: int = 3,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the sync client.

        Args:
            base_url: Base URL of the sync server (e.g., "http://sync:8080").
            replica: Local replica to maintain. A new one is created if None.
            max_retries: Maximum retry attempts per request.
            timeout: Request timeout in seconds.
            transport: Optional httpx transport (e.g. ASGITransport for an
                in-process server).
        """
        self.base_url = base_url
        self.replica = replica if replica is not None else LocalReplica()
        self.max_retries = max_retries
        self.timeout = timeout
        self._transport = transport
        self._flush_lock = asyncio.Lock()
        self._last_sync: datetime | None = None
        self._consecutive_failures = 0

    async def _request_with_retry(
        self,
        method: str,
        path: str,
        json_data: Any = None,
        params: dict[str, Any] | None = None,
    ) -> tuple[Any, str | None]:
        """Make HTTP request with exponential backoff retry.

        Args:
            method: HTTP method (GET, POST).
            path: URL path to append to base_url.
            json_data: Optional JSON body.
            params: Optional query parameters.

        Returns:
            Tuple of (response_data, error_message).
        """
        if not self.base_url:
            return None, "No server URL configured"

        url = f"{self.base_url.rstrip('/')}{path}"
        backoff = 1.0
        last_error = "Connection failed"

        async with httpx.AsyncClient(
            timeout=self.timeout, transport=self._transport
        ) as client:
            for attempt in range(self.max_retries):
                try:
                    if method == "GET":
                        response = await client.get(url, params=params)
                    elif method == "POST":
                        response = await client.post(url, json=json_data)
                    else:
                        return None, f"Unsupported method: {method}"

                    if response.status_code == 200:
                        self._consecutive_failures = 0
                        return response.json(), None
                    elif response.status_code >= 500:
                        # Server error, retry
                        last_error = f"HTTP {response.status_code}"
                        logger.warning(
                            f"Server error {response.status_code}, "
                            f"attempt {attempt + 1}/{self.max_retries}"
                        )
                    else:
                        # Client error, don't retry
                        return None, f"HTTP {response.status_code}: {response.text}"

                except httpx.ConnectError:
                    last_error = "Connection failed"
                    logger.warning(
                        f"Connection failed, attempt {attempt + 1}/{self.max_retries}"
                    )
                except httpx.TimeoutException:
                    last_error = "Connection timed out"
                    logger.warning(
                        f"Request timeout, attempt {attempt + 1}/{self.max_retries}"
                    )

                # Exponential backoff
                if attempt < self.max_retries - 1:
                    await asyncio.sleep(backoff)
                    backoff *= 2

        self._consecutive_failures += 1
        return None, f"{last_error} after {self.max_retries} attempts"

    @staticmethod
    def _failure(error: str) -> SyncResult:
        return SyncResult(
            status=SyncStatus.OFFLINE if "Connection" in error else SyncStatus.FAILED,
            error=error,
        )

    async def bootstrap(self, force: bool = False) -> SyncResult:
        """Load a full snapshot into the replica.

        Args:
            force: Bootstrap even if the replica was already loaded.

        Returns:
            SyncResult with the new sync_id.
        """
        if self.replica.bootstrapped and not force:
            logger.debug("Replica already has data, skipping bootstrap")
            return SyncResult(status=SyncStatus.SKIPPED, sync_id=self.replica.sync_id)

        data, error = await self._request_with_retry("GET", "/api/bootstrap")
        if error:
            return self._failure(error)

        self.replica.load_bootstrap(data["sync_id"], data.get("models", {}))
        self._last_sync = datetime.now()

        return SyncResult(
            status=SyncStatus.SUCCESS,
            entries_pulled=len(self.replica),
            sync_id=self.replica.sync_id,
            timestamp=self._last_sync,
        )

    async def pull(self) -> SyncResult:
        """Fetch and apply transactions logged after the replica's cursor."""
        data, error = await self._request_with_retry(
            "GET", "/api/transactions", params={"from": self.replica.sync_id + 1}
        )
        if error:
            return self._failure(error)

        transactions = [Transaction.from_dict(t) for t in data.get("transactions", [])]
        if transactions:
            self.replica.apply(transactions)
            self.replica.sync_id = data["sync_id"]

        self._last_sync = datetime.now()

        return SyncResult(
            status=SyncStatus.SUCCESS,
            entries_pulled=len(transactions),
            sync_id=self.replica.sync_id,
            timestamp=self._last_sync,
        )

    async def push(self, transactions: list[Transaction]) -> SyncResult:
        """Apply mutations locally, queue them as one batch and flush the outbox.

        The replica cursor is not advanced; pushed transactions come back
        through pull() along with anything other clients logged meanwhile.
        """
        self.replica.apply(transactions, source=SOURCE_LOCAL)
        self.replica.enqueue(transactions)
        return await self.flush()

    async def flush(self) -> SyncResult:
        """Send queued batches to the server, oldest first.

        Each push() is posted as its own batch, so a batch the server rejects
        is dropped without taking other queued mutations with it. A rejection
        invalidates the replica and re-bootstraps it, which discards the
        rejected batch's local effects.
        """
        async with self._flush_lock:
            pushed = 0
            sync_id = None
            rejected = None

            while True:
                queued = self.replica.next_batch()
                if queued is None:
                    break

                batch_id, batch = queued
                data, error = await self._request_with_retry(
                    "POST", "/api/transactions", [t.to_dict() for t in batch]
                )

                if error and not error.startswith("HTTP 4"):
                    logger.info(
                        f"Push failed, {self.pending} transactions queued: {error}"
                    )
                    result = self._failure(error)
                    result.entries_pushed = pushed
                    return result

                self.replica.dequeue(batch_id)

                if error:
                    logger.error(f"Server rejected {len(batch)} transactions: {error}")
                    rejected = error
                    self.replica.invalidate()
                    continue

                pushed += len(batch)
                sync_id = data["sync_id"]

        if rejected:
            # Snapshot drops the rejected writes; queued batches are re-applied
            await self.bootstrap()
            return SyncResult(
                status=SyncStatus.FAILED,
                entries_pushed=pushed,
                error=rejected,
                timestamp=datetime.now(),
            )

        if not pushed:
            return SyncResult(status=SyncStatus.SKIPPED)

        return SyncResult(
            status=SyncStatus.SUCCESS,
            entries_pushed=pushed,
            sync_id=sync_id,
            timestamp=datetime.now(),
        )

    async def create(self, entity_type: str, data: Any) -> str:
        """Create a record with a fresh id and push it. Returns the id."""
        record_id = str(uuid.uuid4())
        await self.push([Transaction(entity_type, record_id, Action.CREATE.value, data)])
        return record_id

    async def update(self, entity_type: str, record_id: str, data: Any) -> SyncResult:
        return await self.push(
            [Transaction(entity_type, record_id, Action.UPDATE.value, data)]
        )

    async def delete(self, entity_type: str, record_id: str) -> SyncResult:
        return await self.push(
            [Transaction(entity_type, record_id, Action.DELETE.value, {})]
        )

    async def full_sync(self) -> SyncResult:
        """Bootstrap if needed, flush queued mutations, then pull.

        Returns:
            Combined SyncResult.
        """
        boot_result = await self.bootstrap()
        if boot_result.status in (SyncStatus.OFFLINE, SyncStatus.FAILED):
            return boot_result

        push_result = await self.flush()
        if push_result.status == SyncStatus.OFFLINE:
            return push_result

        pull_result = await self.pull()

        return SyncResult(
            status=pull_result.status,
            entries_pushed=push_result.entries_pushed,
            entries_pulled=pull_result.entries_pulled,
            sync_id=self.replica.sync_id,
            error=pull_result.error or push_result.error,
            timestamp=datetime.now(),
        )

    async def sync_loop(
        self,
        interval_seconds: float = 1.0,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        """Run continuous sync loop.

        Args:
            interval_seconds: Seconds between sync attempts.
            stop_event: Event to signal loop should stop.
        """
        logger.info(f"Starting sync loop with {interval_seconds}s interval")

        while True:
            if stop_event and stop_event.is_set():
                break

            try:
                result = await self.full_sync()
                logger.debug(
                    f"Sync: {result.status.value}, "
                    f"pushed={result.entries_pushed}, "
                    f"pulled={result.entries_pulled}"
                )
            except (httpx.HTTPError, KeyError, ValueError, SyncError) as e:
                logger.error(f"Sync loop error: {e}")

            # Adaptive interval: back off if consecutive failures
            wait_time = interval_seconds
            if self._consecutive_failures > 0:
                wait_time = min(
                    interval_seconds * (2 ** self._consecutive_failures),
                    3600,  # Max 1 hour
                )
                logger.debug(f"Backing off sync for {wait_time}s")

            if stop_event:
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=wait_time)
                    break  # Stop event was set
                except asyncio.TimeoutError:
                    pass  # Normal timeout, continue loop
            else:
                await asyncio.sleep(wait_time)

        logger.info("Sync loop stopped")

    @property
    def last_sync(self) -> datetime | None:
        """Get timestamp of last successful sync."""
        return self._last_sync

    @property
    def pending(self) -> int:
        """Number of mutations waiting to be pushed."""
        return self.replica.pending

    def get_sync_status(self) -> dict[str, Any]:
        """Get current sync status."""
        return {
            "base_url": self.base_url,
            "sync_id": self.replica.sync_id,
            "last_sync": self._last_sync.isoformat() if self._last_sync else None,
            "consecutive_failures": self._consecutive_failures,
            "pending_transactions": self.replica.pending,
            "records": len(self.replica),
        }
