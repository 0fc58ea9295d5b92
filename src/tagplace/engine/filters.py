"""Cooldown and duplicate-placement filters applied to a window's winner."""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta

from tagplace.location import Position, distance_between

logger = logging.getLogger(__name__)

DEFAULT_COOLDOWN = timedelta(milliseconds=500)
DEFAULT_DUPLICATE_WINDOW = timedelta(minutes=5)
DEFAULT_DUPLICATE_DISTANCE_M = 10.0


class CooldownFilter:
    """Refuses an identifier accepted less than ``cooldown`` ago.

    With ``arm_on_pass`` the timestamp is recorded as soon as the check
    passes, so back-to-back windows for the same tag are absorbed even if the
    later stages reject the first one. Otherwise the caller records the
    timestamp with ``record`` once the decision is final.
    """

    def __init__(self, cooldown: timedelta = DEFAULT_COOLDOWN, arm_on_pass: bool = True) -> None:
        self.cooldown = cooldown
        self.arm_on_pass = arm_on_pass
        self._lock = threading.Lock()
        self._last_accepted: dict[str, datetime] = {}

    def check(self, identifier: str, now: datetime) -> bool:
        """Return True if the identifier may proceed."""
        with self._lock:
            last = self._last_accepted.get(identifier)
            if last is not None and now - last < self.cooldown:
                logger.debug("COOLDOWN - %s (%.0fms ago)", identifier, (now - last).total_seconds() * 1000)
                return False
            if self.arm_on_pass:
                self._last_accepted[identifier] = now
            return True

    def record(self, identifier: str, now: datetime) -> None:
        with self._lock:
            self._last_accepted[identifier] = now

    def last_accepted(self, identifier: str) -> datetime | None:
        with self._lock:
            return self._last_accepted.get(identifier)

    def clear(self) -> None:
        with self._lock:
            self._last_accepted.clear()


@dataclass(frozen=True)
class RecentPlacement:
    """Last acceptance of an identifier, for duplicate suppression."""

    timestamp: datetime
    position: Position | None


class DuplicateSuppressor:
    """Rejects a winner placed again at (nearly) the same spot shortly after.

    The distance threshold widens with poor accuracy: ``max(min_distance_m,
    2 x current accuracy)``. Without a current position the check cannot be
    evaluated and the read passes.
    """

    def __init__(
        self,
        window: timedelta = DEFAULT_DUPLICATE_WINDOW,
        min_distance_m: float = DEFAULT_DUPLICATE_DISTANCE_M,
    ) -> None:
        self.window = window
        self.min_distance_m = min_distance_m
        self._lock = threading.Lock()
        self._recent: dict[str, RecentPlacement] = {}

    def check(self, identifier: str, now: datetime, position: Position | None) -> bool:
        """Return True if the placement is new; records it as the latest on pass."""
        with self._lock:
            recent = self._recent.get(identifier)
            if recent is not None and position is not None and recent.position is not None:
                elapsed = now - recent.timestamp
                distance = distance_between(recent.position, position)
                threshold = max(self.min_distance_m, position.accuracy * 2.0)
                if elapsed < self.window and distance < threshold:
                    logger.info(
                        "DUPLICATE - %s | Time: %ds | Distance: %.1fm | Threshold: %.1fm",
                        identifier,
                        int(elapsed.total_seconds()),
                        distance,
                        threshold,
                    )
                    return False
            elif position is None:
                logger.debug("No position - duplicate check skipped for %s", identifier)

            self._recent[identifier] = RecentPlacement(timestamp=now, position=position)
            return True

    def get(self, identifier: str) -> RecentPlacement | None:
        with self._lock:
            return self._recent.get(identifier)

    def __len__(self) -> int:
        with self._lock:
            return len(self._recent)

    def clear(self) -> None:
        with self._lock:
            self._recent.clear()
