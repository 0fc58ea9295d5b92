"""Tests for the sync reconciler: batching, backoff and recovery."""

from collections.abc import Callable

import pytest
from conftest import make_record
from sqlmodel import Session

from tagplace.store import placements
from tagplace.store.models import PlacementRecord
from tagplace.sync.client import ResetResponse, SyncResponse, SyncTransportError
from tagplace.sync.reconciler import (
    SyncCounters,
    SyncListener,
    SyncReconciler,
    SyncState,
    backoff_delay_ms,
)


class FakeClient:
    """Stands in for SyncClient; answers every call with ``response`` or raises ``error``."""

    def __init__(
        self,
        response: SyncResponse | None = None,
        error: Exception | None = None,
    ) -> None:
        self.response = response or SyncResponse(
            success=True, last_number=10, pallet_count=2, placement_count=8
        )
        self.error = error
        self.reset_response = ResetResponse(success=True, deleted_count=4)
        self.calls: list[tuple[str, list[str]]] = []

    async def sync_placements(self, owner_id: str, records: list[PlacementRecord]) -> SyncResponse:
        self.calls.append((owner_id, [r.identifier for r in records]))
        if self.error is not None:
            raise self.error
        return self.response

    async def fetch_last_count(self, owner_id: str) -> SyncResponse:
        if self.error is not None:
            raise self.error
        return self.response

    async def reset_profile(self, owner_id: str) -> ResetResponse:
        self.calls.append((owner_id, []))
        if self.error is not None:
            raise self.error
        return self.reset_response


class FakeTimer:
    """Records requested delays and fires only when the test says so."""

    def __init__(self) -> None:
        self.callback: Callable[[], None] | None = None
        self.delays: list[float] = []
        self._armed = False

    def bind(self, callback: Callable[[], None]) -> "FakeTimer":
        self.callback = callback
        return self

    @property
    def armed(self) -> bool:
        return self._armed

    def arm(self, delay: float) -> bool:
        if self._armed:
            return False
        self._armed = True
        self.delays.append(delay)
        return True

    def cancel(self) -> bool:
        was_armed = self._armed
        self._armed = False
        return was_armed

    def fire(self) -> None:
        assert self.callback is not None
        self._armed = False
        self.callback()


class RecordingListener(SyncListener):
    def __init__(self) -> None:
        self.events: list[tuple] = []

    def on_sync_started(self) -> None:
        self.events.append(("started",))

    def on_sync_success(self, counters: SyncCounters) -> None:
        self.events.append(("success", counters))

    def on_sync_failed(self, error: str) -> None:
        self.events.append(("failed", error))

    def on_sync_retrying(self, attempt: int, delay_ms: int) -> None:
        self.events.append(("retrying", attempt, delay_ms))

    def on_counter_updated(self, unsynced_count: int) -> None:
        self.events.append(("counter", unsynced_count))

    def of(self, kind: str) -> list[tuple]:
        return [e for e in self.events if e[0] == kind]


def _reconciler(engine, client, timer: FakeTimer | None = None, **kwargs):
    listener = RecordingListener()
    timer = timer or FakeTimer()
    reconciler = SyncReconciler(
        engine,
        client,
        listener=listener,
        post=lambda fn: fn(),
        timer_factory=timer.bind,
        **kwargs,
    )
    return reconciler, listener, timer


class TestBackoffDelay:
    def test_doubles_from_initial(self):
        assert [backoff_delay_ms(n) for n in range(1, 6)] == [2000, 4000, 8000, 16000, 32000]

    def test_capped(self):
        assert backoff_delay_ms(6) == 60000
        assert backoff_delay_ms(10, initial_delay_ms=1000, max_delay_ms=5000) == 5000


class TestSuccessfulSync:
    @pytest.mark.asyncio
    async def test_threshold_triggers_sync_and_prunes(self, engine):
        client = FakeClient()
        reconciler, listener, _ = _reconciler(engine, client)
        await reconciler.start()

        await reconciler.add_record(make_record("A1"))
        await reconciler.drain()

        assert client.calls == [("M1", ["A1"])]
        assert reconciler.state == SyncState.idle
        assert reconciler.last_result == SyncState.success
        assert reconciler.unsynced_count == 0
        assert reconciler.counters == SyncCounters(10, 2, 8)
        assert listener.of("success") == [("success", SyncCounters(10, 2, 8))]
        with Session(engine) as session:
            # Synced records are pruned
            assert placements.list_placements(session) == []
        await reconciler.stop()

    @pytest.mark.asyncio
    async def test_below_threshold_waits(self, engine):
        client = FakeClient()
        reconciler, listener, _ = _reconciler(engine, client, sync_threshold=3)
        await reconciler.start()

        await reconciler.add_record(make_record("A1", sequence=1))
        await reconciler.add_record(make_record("B2", sequence=2))
        await reconciler.drain()
        assert client.calls == []
        assert reconciler.unsynced_count == 2
        assert listener.of("counter") == [("counter", 1), ("counter", 2)]

        reconciler.force_sync_now()
        await reconciler.drain()
        assert client.calls == [("M1", ["A1", "B2"])]
        await reconciler.stop()

    @pytest.mark.asyncio
    async def test_concurrent_requests_coalesce(self, engine):
        client = FakeClient()
        reconciler, _, _ = _reconciler(engine, client, sync_threshold=10)
        await reconciler.start()
        await reconciler.add_record(make_record("A1"))

        reconciler.attempt_sync()
        reconciler.attempt_sync()
        reconciler.attempt_sync()
        await reconciler.drain()

        assert len(client.calls) == 1
        await reconciler.stop()

    @pytest.mark.asyncio
    async def test_one_batch_per_owner(self, engine):
        client = FakeClient()
        reconciler, _, _ = _reconciler(engine, client, sync_threshold=10)
        await reconciler.start()
        await reconciler.add_record(make_record("A1", owner_id="M2"))
        await reconciler.add_record(make_record("B2", owner_id="M1"))
        await reconciler.add_record(make_record("C3", owner_id="M2"))

        reconciler.attempt_sync()
        await reconciler.drain()

        assert client.calls == [("M2", ["A1", "C3"]), ("M1", ["B2"])]
        assert reconciler.unsynced_count == 0
        await reconciler.stop()

    @pytest.mark.asyncio
    async def test_start_loads_existing_backlog(self, engine):
        with Session(engine) as session:
            placements.insert(session, make_record("A1"))
            placements.insert(session, make_record("B2"))

        reconciler, _, _ = _reconciler(engine, FakeClient())
        await reconciler.start()
        assert reconciler.unsynced_count == 2
        await reconciler.stop()


class TestTransportFailures:
    @pytest.mark.asyncio
    async def test_backoff_schedule_then_give_up(self, engine):
        client = FakeClient(error=SyncTransportError("connection refused"))
        reconciler, listener, timer = _reconciler(engine, client)
        await reconciler.start()

        await reconciler.add_record(make_record("A1"))
        await reconciler.drain()
        for _ in range(5):
            timer.fire()
            await reconciler.drain()

        assert timer.delays == [2.0, 4.0, 8.0, 16.0, 32.0]
        assert [e[2] for e in listener.of("retrying")] == [2000, 4000, 8000, 16000, 32000]
        # Sixth failure schedules nothing
        assert not reconciler.retry_scheduled
        assert len(client.calls) == 6
        assert reconciler.state == SyncState.idle
        assert reconciler.last_result == SyncState.failed
        assert reconciler.unsynced_count == 1
        assert listener.of("failed")[-1] == ("failed", "connection refused")
        await reconciler.stop()

    @pytest.mark.asyncio
    async def test_network_restored_resets_and_syncs(self, engine):
        client = FakeClient(error=SyncTransportError("timeout"))
        reconciler, _, timer = _reconciler(engine, client, max_attempts=1)
        await reconciler.start()

        await reconciler.add_record(make_record("A1"))
        await reconciler.drain()
        timer.fire()
        await reconciler.drain()
        assert reconciler.retry_attempts == 1
        assert not reconciler.retry_scheduled

        client.error = None
        reconciler.on_network_restored()
        await reconciler.drain()

        assert reconciler.retry_attempts == 0
        assert reconciler.state == SyncState.idle
        assert reconciler.last_result == SyncState.success
        assert reconciler.unsynced_count == 0
        await reconciler.stop()

    @pytest.mark.asyncio
    async def test_network_restored_with_nothing_pending(self, engine):
        client = FakeClient()
        reconciler, _, _ = _reconciler(engine, client)
        await reconciler.start()

        reconciler.on_network_restored()
        await reconciler.drain()
        assert client.calls == []
        await reconciler.stop()

    @pytest.mark.asyncio
    async def test_force_sync_skips_pending_delay(self, engine):
        client = FakeClient(error=SyncTransportError("refused"))
        reconciler, _, timer = _reconciler(engine, client)
        await reconciler.start()

        await reconciler.add_record(make_record("A1"))
        await reconciler.drain()
        assert reconciler.retry_scheduled

        reconciler.force_sync_now()
        await reconciler.drain()

        assert len(client.calls) == 2
        # Attempts were reset, so the new failure starts the schedule over
        assert timer.delays == [2.0, 2.0]
        await reconciler.stop()


class TestApplicationFailures:
    @pytest.mark.asyncio
    async def test_declined_batch_not_retried(self, engine):
        client = FakeClient(response=SyncResponse(success=False, message="Unknown mason"))
        reconciler, listener, timer = _reconciler(engine, client)
        await reconciler.start()

        await reconciler.add_record(make_record("A1"))
        await reconciler.drain()

        assert reconciler.state == SyncState.idle
        assert reconciler.last_result == SyncState.failed
        assert not reconciler.retry_scheduled
        assert timer.delays == []
        assert listener.of("failed") == [("failed", "Sync failed: Unknown mason")]
        assert reconciler.unsynced_count == 1
        await reconciler.stop()

    @pytest.mark.asyncio
    async def test_missing_client(self, engine):
        reconciler, listener, _ = _reconciler(engine, None)
        await reconciler.start()

        await reconciler.add_record(make_record("A1"))
        await reconciler.drain()

        assert reconciler.state == SyncState.idle
        assert reconciler.last_result == SyncState.failed
        assert listener.of("failed") == [("failed", "Backend API not configured")]
        await reconciler.stop()

    @pytest.mark.asyncio
    async def test_unexpected_client_error_not_retried(self, engine):
        client = FakeClient(error=RuntimeError("malformed response"))
        reconciler, listener, timer = _reconciler(engine, client)
        await reconciler.start()

        await reconciler.add_record(make_record("A1"))
        await reconciler.drain()

        assert reconciler.state == SyncState.idle
        assert reconciler.last_result == SyncState.failed
        assert listener.of("failed") == [("failed", "Sync failed: malformed response")]
        assert timer.delays == []
        await reconciler.stop()

    @pytest.mark.asyncio
    async def test_store_error_after_confirmed_batch(self, engine, monkeypatch):
        client = FakeClient()
        reconciler, listener, _ = _reconciler(engine, client)
        original_mark_synced = placements.mark_synced
        failures = [RuntimeError("database is locked")]

        def flaky_mark_synced(session, ids):
            if failures:
                raise failures.pop()
            return original_mark_synced(session, ids)

        monkeypatch.setattr(placements, "mark_synced", flaky_mark_synced)
        await reconciler.start()

        await reconciler.add_record(make_record("A1"))
        await reconciler.drain()

        # The attempt ends instead of wedging the reconciler in syncing
        assert not reconciler.is_syncing
        assert reconciler.state == SyncState.idle
        assert reconciler.last_result == SyncState.failed
        assert listener.of("failed") == [("failed", "Sync failed: database is locked")]
        assert reconciler.unsynced_count == 1

        reconciler.force_sync_now()
        await reconciler.drain()

        assert client.calls == [("M1", ["A1"]), ("M1", ["A1"])]
        assert reconciler.last_result == SyncState.success
        assert reconciler.unsynced_count == 0
        assert len(listener.of("started")) == 2
        await reconciler.stop()


class TestLocalOperations:
    @pytest.mark.asyncio
    async def test_clear_local(self, engine):
        reconciler, listener, _ = _reconciler(engine, FakeClient(), sync_threshold=10)
        await reconciler.start()
        await reconciler.add_record(make_record("A1"))
        await reconciler.add_record(make_record("B2"))

        assert await reconciler.clear_local() == 2
        assert reconciler.unsynced_count == 0
        assert listener.of("counter")[-1] == ("counter", 0)
        await reconciler.stop()

    @pytest.mark.asyncio
    async def test_fetch_last_count(self, engine):
        client = FakeClient(response=SyncResponse(success=True, last_number=99))
        reconciler, _, _ = _reconciler(engine, client)
        await reconciler.start()

        counters = await reconciler.fetch_last_count("M1")
        assert counters is not None
        assert counters.last_number == 99
        assert reconciler.counters.last_number == 99
        await reconciler.stop()

    @pytest.mark.asyncio
    async def test_fetch_last_count_offline(self, engine):
        client = FakeClient(error=SyncTransportError("refused"))
        reconciler, _, _ = _reconciler(engine, client)
        await reconciler.start()

        assert await reconciler.fetch_last_count("M1") is None
        await reconciler.stop()

    @pytest.mark.asyncio
    async def test_commands_require_start(self, engine):
        reconciler, _, _ = _reconciler(engine, FakeClient())
        with pytest.raises(RuntimeError):
            reconciler.add_record(make_record())

    @pytest.mark.asyncio
    async def test_reset_profile_clears_owner_records(self, engine):
        client = FakeClient()
        reconciler, listener, _ = _reconciler(engine, client, sync_threshold=10)
        await reconciler.start()
        await reconciler.add_record(make_record("A1", owner_id="M1"))
        await reconciler.add_record(make_record("B2", owner_id="M2"))

        result = await reconciler.reset_profile("M1")

        assert result is not None
        assert result.deleted_count == 4
        assert client.calls == [("M1", [])]
        assert reconciler.unsynced_count == 1
        assert listener.of("counter")[-1] == ("counter", 1)
        with Session(engine) as session:
            assert [r.identifier for r in placements.list_placements(session)] == ["B2"]
        await reconciler.stop()

    @pytest.mark.asyncio
    async def test_declined_reset_keeps_local_records(self, engine):
        client = FakeClient()
        client.reset_response = ResetResponse(success=False, message="Unknown mason")
        reconciler, _, _ = _reconciler(engine, client, sync_threshold=10)
        await reconciler.start()
        await reconciler.add_record(make_record("A1"))

        result = await reconciler.reset_profile("M1")

        assert result is not None
        assert not result.success
        assert reconciler.unsynced_count == 1
        await reconciler.stop()

    @pytest.mark.asyncio
    async def test_reset_profile_offline(self, engine):
        client = FakeClient(error=SyncTransportError("refused"))
        reconciler, _, timer = _reconciler(engine, client, sync_threshold=10)
        await reconciler.start()
        await reconciler.add_record(make_record("A1"))

        assert await reconciler.reset_profile("M1") is None
        assert reconciler.unsynced_count == 1
        assert timer.delays == []
        await reconciler.stop()
