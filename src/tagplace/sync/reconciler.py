"""Sync reconciler: local placement queue -> remote service.

State machine::

    IDLE → SYNCING → IDLE

Each attempt ends back in IDLE whatever happened, and its outcome
(SUCCESS or FAILED) is kept in ``last_result``. A "retry scheduled" flag
owned by a ``RetryTimer`` runs alongside the state.

Every store mutation and every remote call runs on one worker task that
drains a command queue, so they never interleave. ``attempt_sync`` calls
that arrive while a batch is in flight are coalesced, not queued.

Transport faults back off exponentially (``initial * 2**(attempt-1)``,
capped at ``max_delay``) for at most ``max_attempts`` retries, after which
the reconciler waits for ``on_network_restored`` or ``force_sync_now``.
A server that answers but declines the batch is not retried: resending the
same data would get the same answer.
"""

import asyncio
import enum
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from sqlalchemy.engine import Engine
from sqlmodel import Session

from tagplace.store import placements
from tagplace.store.models import PlacementRecord
from tagplace.sync.client import ResetResponse, SyncClient, SyncResponse, SyncTransportError
from tagplace.sync.timer import RetryTimer

logger = logging.getLogger(__name__)

DEFAULT_SYNC_THRESHOLD = 1
DEFAULT_INITIAL_DELAY_MS = 2000
DEFAULT_MAX_DELAY_MS = 60000
DEFAULT_MAX_ATTEMPTS = 5


class SyncState(enum.StrEnum):
    idle = "idle"
    syncing = "syncing"
    success = "success"
    failed = "failed"


@dataclass(frozen=True)
class SyncCounters:
    """Counters as reported by the server, which is authoritative for them."""

    last_number: int = 0
    pallet_count: int = 0
    placement_count: int = 0

    @classmethod
    def from_response(cls, response: SyncResponse) -> "SyncCounters":
        return cls(
            last_number=response.last_number,
            pallet_count=response.pallet_count,
            placement_count=response.placement_count,
        )


class SyncListener:
    """Receives reconciler events. Override the methods you care about."""

    def on_sync_started(self) -> None: ...

    def on_sync_success(self, counters: SyncCounters) -> None: ...

    def on_sync_failed(self, error: str) -> None: ...

    def on_sync_retrying(self, attempt: int, delay_ms: int) -> None: ...

    def on_counter_updated(self, unsynced_count: int) -> None: ...


def backoff_delay_ms(
    attempt: int,
    initial_delay_ms: int = DEFAULT_INITIAL_DELAY_MS,
    max_delay_ms: int = DEFAULT_MAX_DELAY_MS,
) -> int:
    """Delay before retry number ``attempt`` (1-based)."""
    return min(initial_delay_ms * 2 ** (attempt - 1), max_delay_ms)


Command = Callable[[], Awaitable[Any]]


class SyncReconciler:
    def __init__(
        self,
        db: Engine,
        client: SyncClient | None,
        listener: SyncListener | None = None,
        sync_threshold: int = DEFAULT_SYNC_THRESHOLD,
        initial_delay_ms: int = DEFAULT_INITIAL_DELAY_MS,
        max_delay_ms: int = DEFAULT_MAX_DELAY_MS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        post: Callable[[Callable[[], None]], object] | None = None,
        timer_factory: Callable[[Callable[[], None]], RetryTimer] = RetryTimer,
    ) -> None:
        self._db = db
        self.client = client
        self.listener = listener or SyncListener()
        self.sync_threshold = sync_threshold
        self.initial_delay_ms = initial_delay_ms
        self.max_delay_ms = max_delay_ms
        self.max_attempts = max_attempts
        self._post = post
        self._retry_timer = timer_factory(self.attempt_sync)

        self.state = SyncState.idle
        self.last_result: SyncState | None = None
        self.counters = SyncCounters()
        self.unsynced_count = 0
        self.retry_attempts = 0
        self._sync_queued = False

        self._queue: asyncio.Queue[tuple[Command, asyncio.Future[Any]]] = asyncio.Queue()
        self._worker: asyncio.Task[None] | None = None

    async def start(self) -> None:
        if self._worker is not None:
            return
        loop = asyncio.get_running_loop()
        if self._post is None:
            self._post = loop.call_soon
        self._worker = loop.create_task(self._run())
        with Session(self._db) as session:
            self.unsynced_count = placements.query_unsynced_count(session)
        logger.info("Sync reconciler started (%d unsynced)", self.unsynced_count)

    async def stop(self) -> None:
        self._retry_timer.cancel()
        if self._worker:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        logger.info("Sync reconciler stopped")

    @property
    def is_syncing(self) -> bool:
        return self.state == SyncState.syncing

    @property
    def retry_scheduled(self) -> bool:
        return self._retry_timer.armed

    def add_record(self, record: PlacementRecord) -> asyncio.Future[int]:
        """Queue a record for persistence; resolves to its surrogate id."""
        return self._submit(lambda: self._add_record(record))

    def attempt_sync(self) -> None:
        """Start a sync unless one is in flight or already queued."""
        if self.is_syncing or self._sync_queued:
            logger.debug("Sync already in progress, skipping")
            return
        self._sync_queued = True
        self._submit(self._sync_once)

    def on_network_restored(self) -> None:
        """Reset backoff and sync right away if anything is waiting."""
        logger.info("Network restored, resetting retry counter")
        self.retry_attempts = 0
        self._cancel_pending_retry()
        self._submit(self._sync_if_pending)

    def force_sync_now(self) -> None:
        """Skip any pending backoff delay and sync now."""
        self.retry_attempts = 0
        self._cancel_pending_retry()
        self.attempt_sync()

    def clear_local(self) -> asyncio.Future[int]:
        """Drop every local record (operator reset). Resolves to the number removed."""
        return self._submit(self._clear_local)

    def fetch_last_count(self, owner_id: str) -> asyncio.Future[SyncCounters | None]:
        """Bootstrap counters from the server at session start."""
        return self._submit(lambda: self._fetch_last_count(owner_id))

    def reset_profile(self, owner_id: str) -> asyncio.Future[ResetResponse | None]:
        """Wipe an owner's placements on the server, then locally.

        Resolves to the server's answer, or None when it could not be reached.
        """
        return self._submit(lambda: self._reset_profile(owner_id))

    async def drain(self) -> None:
        """Wait until every queued command has run, including commands queued meanwhile."""
        if self._worker is None:
            raise RuntimeError("SyncReconciler.start() has not been called")
        await self._queue.join()

    def _submit(self, command: Command) -> asyncio.Future[Any]:
        if self._worker is None:
            raise RuntimeError("SyncReconciler.start() has not been called")
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._queue.put_nowait((command, future))
        return future

    async def _run(self) -> None:
        while True:
            command, future = await self._queue.get()
            try:
                result = await command()
            except asyncio.CancelledError:
                future.cancel()
                raise
            except Exception as e:
                logger.exception("Sync worker command failed")
                if not future.cancelled():
                    future.set_exception(e)
            else:
                if not future.cancelled():
                    future.set_result(result)
            finally:
                self._queue.task_done()

    def _notify(self, method: str, *args: Any) -> None:
        callback = getattr(self.listener, method)

        def _deliver() -> None:
            try:
                callback(*args)
            except Exception:
                logger.exception("Sync listener %s failed", method)

        assert self._post is not None
        self._post(_deliver)

    async def _add_record(self, record: PlacementRecord) -> int:
        with Session(self._db) as session:
            record_id = placements.insert(session, record)
            self.unsynced_count = placements.query_unsynced_count(session)
        self._notify("on_counter_updated", self.unsynced_count)

        if self.unsynced_count >= self.sync_threshold:
            self.attempt_sync()
        return record_id

    async def _sync_if_pending(self) -> None:
        with Session(self._db) as session:
            count = placements.query_unsynced_count(session)
        if count > 0:
            logger.info("Network restored with %d unsynced placements, attempting sync", count)
            self.attempt_sync()

    async def _sync_once(self) -> None:
        self._sync_queued = False
        with Session(self._db) as session:
            pending = placements.query_unsynced(session)
        if not pending:
            logger.debug("No placements to sync")
            return

        # One batch per owner; the oldest record's owner goes first
        owner_id = pending[0].owner_id
        batch = [r for r in pending if r.owner_id == owner_id]
        more_owners = len(batch) < len(pending)

        self.state = SyncState.syncing
        self._notify("on_sync_started")
        logger.info("Starting sync for %d placements (%s)", len(batch), owner_id)

        try:
            succeeded = await self._send_batch(owner_id, batch)
        except Exception as e:
            succeeded = False
            logger.exception("Sync failed unexpectedly")
            self._notify("on_sync_failed", f"Sync failed: {e}")
        finally:
            # Every attempt ends in idle, whatever happened above
            self.state = SyncState.idle
        self.last_result = SyncState.success if succeeded else SyncState.failed

        if succeeded and more_owners:
            self.attempt_sync()

    async def _send_batch(self, owner_id: str, batch: list[PlacementRecord]) -> bool:
        """Transmit one batch and settle the local queue. Returns True on success."""
        if self.client is None:
            logger.error("API client not configured")
            self._notify("on_sync_failed", "Backend API not configured")
            return False

        try:
            response = await self.client.sync_placements(owner_id, batch)
        except SyncTransportError as e:
            logger.warning("Sync failed (network): %s", e)
            self._schedule_retry()
            self._notify("on_sync_failed", str(e))
            return False

        if not response.success:
            # Server reachable but declined: a data problem, retrying won't help
            error = f"Sync failed: {response.message or 'Unknown error'}"
            logger.error(error)
            self._notify("on_sync_failed", error)
            return False

        with Session(self._db) as session:
            placements.mark_synced(session, [r.id for r in batch if r.id is not None])
            pruned = placements.delete_synced(session)
            self.unsynced_count = placements.query_unsynced_count(session)

        self.counters = SyncCounters.from_response(response)
        self.retry_attempts = 0
        self._cancel_pending_retry()
        logger.info(
            "Sync successful: %d placements, %d pruned, server total %d",
            len(batch),
            pruned,
            self.counters.last_number,
        )
        self._notify("on_sync_success", self.counters)
        self._notify("on_counter_updated", self.unsynced_count)
        return True

    async def _clear_local(self) -> int:
        with Session(self._db) as session:
            removed = placements.delete_all(session)
        self.unsynced_count = 0
        self._notify("on_counter_updated", 0)
        return removed

    async def _fetch_last_count(self, owner_id: str) -> SyncCounters | None:
        if self.client is None:
            logger.error("API client not configured")
            return None
        try:
            response = await self.client.fetch_last_count(owner_id)
        except SyncTransportError as e:
            logger.warning("Failed to fetch last count for %s: %s", owner_id, e)
            return None
        if not response.success:
            logger.warning("Server declined last-count request: %s", response.message)
            return None
        self.counters = SyncCounters.from_response(response)
        logger.info("Bootstrapped counters for %s: %s", owner_id, self.counters)
        return self.counters

    async def _reset_profile(self, owner_id: str) -> ResetResponse | None:
        if self.client is None:
            logger.error("API client not configured")
            return None
        try:
            response = await self.client.reset_profile(owner_id)
        except SyncTransportError as e:
            logger.warning("Failed to reset profile for %s: %s", owner_id, e)
            return None
        if not response.success:
            logger.warning("Server declined profile reset: %s", response.message)
            return response

        # The server copy is gone, so unsynced local records would only resurrect it
        with Session(self._db) as session:
            removed = placements.delete_for_owner(session, owner_id)
            self.unsynced_count = placements.query_unsynced_count(session)
        self.counters = SyncCounters()
        logger.info(
            "Reset profile %s: %d server records, %d local records",
            owner_id,
            response.deleted_count,
            removed,
        )
        self._notify("on_counter_updated", self.unsynced_count)
        return response

    def _schedule_retry(self) -> None:
        if self._retry_timer.armed:
            return
        if self.retry_attempts >= self.max_attempts:
            logger.warning(
                "Max retry attempts reached (%d), waiting for network restore", self.max_attempts
            )
            return

        self.retry_attempts += 1
        delay_ms = backoff_delay_ms(self.retry_attempts, self.initial_delay_ms, self.max_delay_ms)
        logger.info(
            "Scheduling retry attempt %d/%d in %dms",
            self.retry_attempts,
            self.max_attempts,
            delay_ms,
        )
        self._notify("on_sync_retrying", self.retry_attempts, delay_ms)
        self._retry_timer.arm(delay_ms / 1000)

    def _cancel_pending_retry(self) -> None:
        if self._retry_timer.cancel():
            logger.debug("Cancelled pending retry")

