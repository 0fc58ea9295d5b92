"""Capture window aggregation.

Reads are grouped per identifier during a fixed-duration window that opens
on the first read after the previous window closed. The window length is
fixed once opened: a strong early read does not close it sooner.
"""

import asyncio
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from tagplace.reader.base import TagRead

logger = logging.getLogger(__name__)

MIN_WINDOW_MS = 250
MAX_WINDOW_MS = 500
DEFAULT_WINDOW_MS = 350


def _check_window_ms(window_ms: int) -> int:
    if not MIN_WINDOW_MS <= window_ms <= MAX_WINDOW_MS:
        raise ValueError(
            f"window_ms must be between {MIN_WINDOW_MS} and {MAX_WINDOW_MS}, got {window_ms}"
        )
    return window_ms


@dataclass
class CaptureWindow:
    """Reads collected during one window, bucketed by identifier.

    Dict insertion order records which identifier was seen first; the
    candidate selector uses it to break exact ties.
    """

    started_at: datetime
    reads: dict[str, list[TagRead]] = field(default_factory=dict)
    closed: bool = False

    def add(self, read: TagRead) -> None:
        self.reads.setdefault(read.identifier, []).append(read)

    @property
    def total_reads(self) -> int:
        return sum(len(bucket) for bucket in self.reads.values())

    def is_empty(self) -> bool:
        return not self.reads


class CaptureWindowAggregator:
    """Owns the single open window and its close timer.

    ``on_read`` and the close timer both run on ``loop``; the lock guards the
    window against callers that inspect it from other threads.
    """

    def __init__(
        self,
        on_window_closed: Callable[[CaptureWindow], None],
        window_ms: int = DEFAULT_WINDOW_MS,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        self.window_ms = _check_window_ms(window_ms)
        self._on_window_closed = on_window_closed
        self._loop = loop
        self._lock = threading.Lock()
        self._window: CaptureWindow | None = None
        self._timer: asyncio.TimerHandle | None = None

    def set_window_ms(self, window_ms: int) -> None:
        """Change the length of windows opened from now on."""
        self.window_ms = _check_window_ms(window_ms)

    @property
    def is_open(self) -> bool:
        with self._lock:
            return self._window is not None

    def on_read(self, read: TagRead) -> None:
        """Append a read, opening a window (and arming its close) if none is open."""
        with self._lock:
            opened = self._window is None
            if opened:
                self._window = CaptureWindow(started_at=read.timestamp)
            self._window.add(read)

        if opened:
            loop = self._loop or asyncio.get_running_loop()
            self._timer = loop.call_later(self.window_ms / 1000, self.close)
            logger.debug("Started capture window (%dms)", self.window_ms)

    def close(self) -> CaptureWindow | None:
        """Close the open window and hand it to the selector. Fires once per window."""
        with self._lock:
            window = self._window
            self._window = None
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            if window is None:
                return None
            window.closed = True

        logger.debug(
            "Closed capture window: %d reads, %d identifiers",
            window.total_reads,
            len(window.reads),
        )
        self._on_window_closed(window)
        return window

    def discard(self) -> None:
        """Drop any open window without processing it (scanning stopped)."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            if self._window is not None:
                logger.debug("Discarded open capture window")
            self._window = None
