"""Connectivity monitor: polls the remote health endpoint and reports restores."""

import asyncio
import logging
from collections.abc import Callable

from tagplace.sync.client import SyncClient

logger = logging.getLogger(__name__)


class NetworkMonitor:
    """Polls the service health endpoint and fires callbacks on transitions.

    The first check only establishes the baseline; ``on_available`` fires
    on each later lost -> available transition.
    """

    def __init__(self, client: SyncClient, poll_interval: float = 15.0) -> None:
        self.client = client
        self.poll_interval = poll_interval
        self.is_connected: bool | None = None
        self._available_callbacks: list[Callable[[], None]] = []
        self._lost_callbacks: list[Callable[[], None]] = []
        self._running = False
        self._task: asyncio.Task[None] | None = None

    def on_available(self, callback: Callable[[], None]) -> None:
        self._available_callbacks.append(callback)

    def on_lost(self, callback: Callable[[], None]) -> None:
        self._lost_callbacks.append(callback)

    async def start(self) -> None:
        logger.info("Starting network monitor (interval=%.0fs)", self.poll_interval)
        self._running = True
        self._task = asyncio.create_task(self._poll_loop())

    async def stop(self) -> None:
        logger.info("Stopping network monitor")
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    async def check_once(self) -> bool:
        connected = await self.client.check_health()
        previous = self.is_connected
        self.is_connected = connected

        if previous is None or previous == connected:
            return connected

        if connected:
            logger.info("Network available")
            callbacks = self._available_callbacks
        else:
            logger.warning("Network lost")
            callbacks = self._lost_callbacks
        for cb in callbacks:
            try:
                cb()
            except Exception:
                logger.exception("Network monitor callback failed")
        return connected

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                await self.check_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Network monitor error")

            await asyncio.sleep(self.poll_interval)
