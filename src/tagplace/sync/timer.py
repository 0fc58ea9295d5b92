"""Cancellable one-shot timer on the event loop."""

import asyncio
import logging
from collections.abc import Callable

logger = logging.getLogger(__name__)


class RetryTimer:
    """Fires ``callback`` once, ``delay`` seconds after ``arm``.

    Only one firing can be pending at a time. ``cancel`` is safe to call
    whether or not the timer is armed.
    """

    def __init__(
        self,
        callback: Callable[[], None],
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        self._callback = callback
        self._loop = loop
        self._handle: asyncio.TimerHandle | None = None

    @property
    def armed(self) -> bool:
        return self._handle is not None

    def arm(self, delay: float) -> bool:
        """Schedule the callback. Returns False if a firing is already pending."""
        if self._handle is not None:
            return False
        loop = self._loop or asyncio.get_running_loop()
        self._handle = loop.call_later(delay, self._fire)
        return True

    def cancel(self) -> bool:
        """Drop the pending firing. Returns True if one was pending."""
        if self._handle is None:
            return False
        self._handle.cancel()
        self._handle = None
        return True

    def _fire(self) -> None:
        self._handle = None
        try:
            self._callback()
        except Exception:
            logger.exception("Retry timer callback failed")
