"""Scan decision engine.

Raw reads from the driver thread are handed to the event loop and drained
by a single consumer task, which feeds the capture window. When a window
closes, its reads run through candidate selection, the cooldown filter and
duplicate suppression, and exactly one ``Decision`` comes out. Accepted
decisions become ``PlacementRecord``s handed to the sync reconciler.

Listener callbacks are posted to the loop (never run inline on the
decision path) so a slow or failing listener cannot stall a window.
"""

import asyncio
import logging
import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from tagplace.engine.filters import (
    DEFAULT_COOLDOWN,
    DEFAULT_DUPLICATE_DISTANCE_M,
    DEFAULT_DUPLICATE_WINDOW,
    CooldownFilter,
    DuplicateSuppressor,
)
from tagplace.engine.models import Decision, ReasonCode
from tagplace.engine.selector import select_candidate
from tagplace.engine.window import DEFAULT_WINDOW_MS, CaptureWindow, CaptureWindowAggregator
from tagplace.location import SENTINEL_ACCURACY_M, LocationTracker
from tagplace.reader.base import BaseReader, TagRead, normalize_identifier, parse_signal_strength
from tagplace.store.models import PlacementRecord, ScanCategory
from tagplace.sync.reconciler import SyncReconciler

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 1024


class DecisionListener:
    """Receives engine outcomes. Override the methods you care about."""

    def on_decision(self, decision: Decision) -> None: ...

    def on_placement(self, record: PlacementRecord) -> None: ...


@dataclass(frozen=True)
class SessionInfo:
    session_id: str
    started_at: datetime
    reader_started: bool
    power_applied: bool


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ScanEngine:
    def __init__(
        self,
        owner_id: str,
        location: LocationTracker,
        reconciler: SyncReconciler | None = None,
        reader: BaseReader | None = None,
        listener: DecisionListener | None = None,
        *,
        is_admin: bool = False,
        power_level_dbm: int = 28,
        scan_category: ScanCategory = ScanCategory.placement,
        window_ms: int = DEFAULT_WINDOW_MS,
        rssi_threshold_db: int = 5,
        count_threshold: int = 1,
        cooldown: timedelta = DEFAULT_COOLDOWN,
        cooldown_arm_on_pass: bool = True,
        duplicate_window: timedelta = DEFAULT_DUPLICATE_WINDOW,
        duplicate_distance_m: float = DEFAULT_DUPLICATE_DISTANCE_M,
        queue_size: int = DEFAULT_QUEUE_SIZE,
        clock: Callable[[], datetime] = _utcnow,
        post: Callable[[Callable[[], None]], object] | None = None,
    ) -> None:
        self.owner_id = owner_id
        self.location = location
        self.reconciler = reconciler
        self.reader = reader
        self.listener = listener or DecisionListener()
        self.is_admin = is_admin
        self.power_level_dbm = power_level_dbm
        self.scan_category = scan_category
        self.rssi_threshold_db = rssi_threshold_db
        self.count_threshold = count_threshold
        self.cooldown = CooldownFilter(cooldown, arm_on_pass=cooldown_arm_on_pass)
        self.duplicates = DuplicateSuppressor(duplicate_window, duplicate_distance_m)
        self._clock = clock
        self._post = post

        self.scanning = False
        self.session: SessionInfo | None = None
        self._session_power_level = power_level_dbm
        self._seq = 0
        self._seq_lock = threading.Lock()

        self._queue: asyncio.Queue[TagRead] = asyncio.Queue(maxsize=queue_size)
        self._loop: asyncio.AbstractEventLoop | None = None
        self._consumer: asyncio.Task[None] | None = None
        self.aggregator = CaptureWindowAggregator(self._on_window_closed, window_ms)
        self.dropped_reads = 0

    async def start(self) -> None:
        if self._consumer is not None:
            return
        self._loop = asyncio.get_running_loop()
        if self._post is None:
            self._post = self._loop.call_soon
        self._consumer = self._loop.create_task(self._consume())
        if self.reader is not None:
            self.reader.on_tag_read(self.submit_read)
        logger.info("Scan engine started (window=%dms)", self.window_ms)

    async def stop(self) -> None:
        if self.scanning:
            self.stop_session(clear_admin_data=False)
        if self._consumer:
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
            self._consumer = None
        logger.info("Scan engine stopped")

    @property
    def window_ms(self) -> int:
        return self.aggregator.window_ms

    @window_ms.setter
    def window_ms(self, value: int) -> None:
        self.aggregator.set_window_ms(value)

    @property
    def sequence(self) -> int:
        with self._seq_lock:
            return self._seq

    def start_session(self) -> SessionInfo:
        """Begin a scanning session: fresh id, sequence reset, reader on."""
        power_applied = reader_started = False
        self._session_power_level = self.power_level_dbm
        if self.reader is not None:
            power_applied = self.reader.set_power_level(self.power_level_dbm)
            if not power_applied:
                logger.warning("Failed to set power to %d dBm", self.power_level_dbm)
            reader_started = self.reader.start_continuous_read()
            if not reader_started:
                logger.error("Failed to start continuous read - check reader connection")

        with self._seq_lock:
            self._seq = 0
        self.session = SessionInfo(
            session_id=str(uuid.uuid4()),
            started_at=self._clock(),
            reader_started=reader_started,
            power_applied=power_applied,
        )
        self.scanning = True
        logger.info(
            "Started session %s (power=%d dBm)", self.session.session_id, self._session_power_level
        )
        return self.session

    def stop_session(self, clear_admin_data: bool = True) -> None:
        """End the session.

        Elevated operators start every session clean: their duplicate table
        is cleared and, on a manual stop, unsynced local records are dropped.
        Regular operators keep the duplicate table so the same tag cannot be
        placed twice by stopping and restarting.
        """
        if self.reader is not None:
            self.reader.stop_continuous_read()
        self.scanning = False
        self.aggregator.discard()

        if self.is_admin:
            cleared = len(self.duplicates)
            self.duplicates.clear()
            self.cooldown.clear()
            logger.info("Admin: cleared %d recent placements", cleared)
            if clear_admin_data and self.reconciler is not None:
                self._watch(self.reconciler.clear_local(), "clear local records")
        else:
            logger.info("Session stopped - %d recent placements retained", len(self.duplicates))

    def submit_read(self, identifier: str | None, signal_strength: str | None) -> None:
        """Driver callback. Safe to call from any thread."""
        tag_id = normalize_identifier(identifier)
        if not tag_id:
            return
        read = TagRead(
            identifier=tag_id,
            signal_strength=parse_signal_strength(signal_strength),
            timestamp=self._clock(),
        )
        if self._loop is None:
            logger.warning("Read for %s arrived before engine start, dropped", tag_id)
            return
        self._loop.call_soon_threadsafe(self._enqueue, read)

    def _enqueue(self, read: TagRead) -> None:
        try:
            self._queue.put_nowait(read)
        except asyncio.QueueFull:
            self.dropped_reads += 1
            logger.warning("Read queue full, dropped read for %s", read.identifier)

    async def _consume(self) -> None:
        while True:
            read = await self._queue.get()
            try:
                if not self.scanning:
                    logger.debug("Read for %s ignored, no active session", read.identifier)
                    continue
                self.aggregator.on_read(read)
            except Exception:
                logger.exception("Error handling read for %s", read.identifier)
            finally:
                self._queue.task_done()

    def _on_window_closed(self, window: CaptureWindow) -> None:
        if not self.scanning:
            return
        try:
            self.process_window(window)
        except Exception:
            logger.exception("Error processing capture window")

    def process_window(self, window: CaptureWindow, now: datetime | None = None) -> Decision | None:
        """Turn a closed window into one Decision. Empty windows yield None."""
        now = now or self._clock()
        selection = select_candidate(window, self.rssi_threshold_db, self.count_threshold)
        if selection is None:
            logger.debug("Window empty - no tags in range")
            return None

        winner = selection.winner
        if selection.ambiguous:
            runner_up = selection.runner_up
            assert runner_up is not None
            logger.info(
                "AMBIGUOUS - Winner: %s (count=%d, rssi=%d) vs Runner-up: %s (count=%d, rssi=%d)",
                winner.identifier,
                winner.count,
                winner.avg_strength,
                runner_up.identifier,
                runner_up.count,
                runner_up.avg_strength,
            )
            return self._finish(
                Decision(
                    reason=ReasonCode.ambiguous,
                    identifier=winner.identifier,
                    stats=winner,
                    runner_up=runner_up,
                )
            )

        logger.debug(
            "WINNER - %s | Count=%d | AvgRSSI=%d | MaxRSSI=%d",
            winner.identifier,
            winner.count,
            winner.avg_strength,
            winner.peak_strength,
        )

        if not self.cooldown.check(winner.identifier, now):
            return self._finish(
                Decision(reason=ReasonCode.cooldown, identifier=winner.identifier, stats=winner)
            )

        position = self.location.last_known()
        if not self.duplicates.check(winner.identifier, now, position):
            return self._finish(
                Decision(
                    reason=ReasonCode.duplicate,
                    identifier=winner.identifier,
                    stats=winner,
                    position=position,
                )
            )

        if not self.cooldown.arm_on_pass:
            self.cooldown.record(winner.identifier, now)

        reason = ReasonCode.accepted if position is not None else ReasonCode.accepted_no_position
        decision = Decision(
            reason=reason, identifier=winner.identifier, stats=winner, position=position
        )
        self._emit(decision, now)
        return self._finish(decision)

    def _emit(self, decision: Decision, now: datetime) -> PlacementRecord:
        """Stamp an accepted decision into a record and hand it to persistence."""
        assert decision.identifier is not None and decision.stats is not None
        with self._seq_lock:
            self._seq += 1
            seq = self._seq

        session_id = self.session.session_id if self.session else ""
        position = decision.position
        record = PlacementRecord(
            owner_id=self.owner_id,
            identifier=decision.identifier,
            timestamp=now,
            session_id=session_id,
            sequence=seq,
            latitude=position.latitude if position else 0.0,
            longitude=position.longitude if position else 0.0,
            altitude=position.altitude if position else 0.0,
            accuracy=position.accuracy if position else SENTINEL_ACCURACY_M,
            rssi_avg=decision.stats.avg_strength,
            rssi_peak=decision.stats.peak_strength,
            reads_in_window=decision.stats.count,
            power_level=self._session_power_level,
            decision_reason=decision.reason,
            scan_category=self.scan_category,
        )
        logger.info(
            "%s - %s | Session: %s | Seq: %d | RSSI: %d/%d | Reads: %d | Power: %d dBm",
            decision.reason,
            decision.identifier,
            session_id,
            seq,
            record.rssi_avg,
            record.rssi_peak,
            record.reads_in_window,
            record.power_level,
        )

        if self.reconciler is not None:
            self._watch(self.reconciler.add_record(record), f"persist {decision.identifier}")
        self._notify("on_placement", record)
        return record

    def _finish(self, decision: Decision) -> Decision:
        self._notify("on_decision", decision)
        return decision

    def _notify(self, method: str, *args: Any) -> None:
        callback = getattr(self.listener, method)

        def _deliver() -> None:
            try:
                callback(*args)
            except Exception:
                logger.exception("Decision listener %s failed", method)

        if self._post is None:
            # Not started: no loop to post to
            _deliver()
        else:
            self._post(_deliver)

    @staticmethod
    def _watch(future: asyncio.Future[Any], what: str) -> None:
        """Log failures of fire-and-forget reconciler commands."""

        def _done(f: asyncio.Future[Any]) -> None:
            if not f.cancelled() and f.exception() is not None:
                logger.error("Failed to %s: %s", what, f.exception())

        future.add_done_callback(_done)
