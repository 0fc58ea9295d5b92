"""Position fixes from the positioning provider and great-circle distance."""

import logging
import math
import threading
from dataclasses import dataclass
from datetime import UTC, datetime

logger = logging.getLogger(__name__)

EARTH_RADIUS_M = 6_371_000.0

# Stored in place of a real fix when positioning is unavailable
SENTINEL_ACCURACY_M = 999.0


@dataclass(frozen=True)
class Position:
    """A single position fix."""

    latitude: float
    longitude: float
    altitude: float
    accuracy: float  # metres, 1-sigma horizontal
    timestamp: datetime


def haversine_m(a: tuple[float, float], b: tuple[float, float]) -> float:
    """Great-circle distance in metres between two (lat, lon) points in degrees."""
    lat1, lon1 = a
    lat2, lon2 = b
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = phi2 - phi1
    d_lam = math.radians(lon2 - lon1)
    h = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lam / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def distance_between(a: Position, b: Position) -> float:
    return haversine_m((a.latitude, a.longitude), (b.latitude, b.longitude))


class LocationTracker:
    """Holds the last fix delivered by the positioning provider.

    ``on_position`` is called from the provider's own thread; readers take a
    snapshot through ``last_known``.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._last: Position | None = None

    def on_position(
        self,
        latitude: float,
        longitude: float,
        altitude: float,
        accuracy: float,
        timestamp: datetime | None = None,
    ) -> None:
        fix = Position(
            latitude=latitude,
            longitude=longitude,
            altitude=altitude,
            accuracy=accuracy,
            timestamp=timestamp or datetime.now(UTC),
        )
        with self._lock:
            self._last = fix
        logger.debug("Position fix: %.6f, %.6f ±%.1fm", latitude, longitude, accuracy)

    def last_known(self) -> Position | None:
        with self._lock:
            return self._last

    def clear(self) -> None:
        """Forget the last fix (permission revoked, provider stopped)."""
        with self._lock:
            self._last = None
