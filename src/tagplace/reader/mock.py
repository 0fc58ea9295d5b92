"""Mock reader for development and testing.

Produces fake tag reads on a timer the way a handheld reader does when the
operator points it at a pallet: a strong "target" tag read several times
per sweep, plus weaker neighbouring tags read occasionally.
"""

import asyncio
import logging
import random
from collections.abc import Callable

from tagplace.reader.base import BaseReader, ConnectionState

logger = logging.getLogger(__name__)

_TARGET_TAGS = [
    "E2801160600002084A3B1C01",
    "E2801160600002084A3B1C02",
    "E2801160600002084A3B1C03",
    "E2801160600002084A3B1C04",
]

_NEIGHBOUR_TAGS = [
    "E2801160600002084A3B2D10",
    "E2801160600002084A3B2D11",
]


class MockReader(BaseReader):
    """Generates fake continuous-read callbacks for development."""

    def __init__(self, sweep_interval: float = 2.0, reads_per_sweep: int = 4) -> None:
        self.sweep_interval = sweep_interval
        self.reads_per_sweep = reads_per_sweep
        self._callbacks: list[Callable[[str, str], None]] = []
        self._state = ConnectionState.connected
        self._power_level = 28
        self._battery = 87
        self._running = False
        self._task: asyncio.Task[None] | None = None
        self._tick = 0

    def start_continuous_read(self) -> bool:
        if self._state != ConnectionState.connected:
            logger.warning("Mock reader not connected, cannot start")
            return False
        if self._running:
            return True
        logger.info("Starting mock reader (interval=%.1fs)", self.sweep_interval)
        self._running = True
        self._task = asyncio.get_running_loop().create_task(self._sweep_loop())
        return True

    def stop_continuous_read(self) -> bool:
        logger.info("Stopping mock reader")
        self._running = False
        if self._task:
            self._task.cancel()
            self._task = None
        return True

    def get_connection_state(self) -> ConnectionState:
        return self._state

    def set_connection_state(self, state: ConnectionState) -> None:
        """Simulate the reader dropping or re-pairing."""
        self._state = state
        if state != ConnectionState.connected:
            self.stop_continuous_read()

    def set_power_level(self, dbm: int) -> bool:
        if not 5 <= dbm <= 33:
            return False
        self._power_level = dbm
        return True

    def get_battery_percent(self) -> int:
        if self._state != ConnectionState.connected:
            return -1
        return self._battery

    def on_tag_read(self, callback: Callable[[str, str], None]) -> None:
        self._callbacks.append(callback)

    async def _sweep_loop(self) -> None:
        while self._running:
            try:
                for identifier, rssi in self._generate_reads():
                    for cb in self._callbacks:
                        cb(identifier, rssi)
                    await asyncio.sleep(0.03)
                self._tick += 1
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Mock reader error")

            await asyncio.sleep(self.sweep_interval)

    def _generate_reads(self) -> list[tuple[str, str]]:
        """One sweep: the target dominates, neighbours bleed through."""
        reads: list[tuple[str, str]] = []
        target = _TARGET_TAGS[self._tick % len(_TARGET_TAGS)]
        # Closer tags read more often at higher power
        base = -40 - (33 - self._power_level)

        for _ in range(self.reads_per_sweep):
            reads.append((target, f"{base + random.uniform(-3, 3):.2f}"))

        for identifier in _NEIGHBOUR_TAGS:
            if random.random() < 0.3:
                reads.append((identifier, f"{base - 20 + random.uniform(-5, 5):.2f}"))

        random.shuffle(reads)
        return reads
