"""Base interface for handheld tag reader drivers."""

import enum
import logging
import math
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

logger = logging.getLogger(__name__)

# Substituted for a signal strength the driver reported but we could not parse
INVALID_RSSI = -999


@dataclass(frozen=True)
class TagRead:
    """A single observation of a tag identifier."""

    identifier: str
    signal_strength: int  # dBm (negative, e.g. -45)
    timestamp: datetime


class ConnectionState(enum.StrEnum):
    connected = "connected"
    connecting = "connecting"
    disconnected = "disconnected"


def normalize_identifier(raw: str | None) -> str:
    """Trim and upper-case a tag identifier. Returns "" for missing values."""
    if raw is None:
        return ""
    return raw.strip().upper()


def parse_signal_strength(raw: str | None) -> int:
    """Parse the driver's decimal dBm string (e.g. "-75.80") to a rounded int.

    Missing values map to 0, unparseable values to INVALID_RSSI.
    """
    if raw is None or not raw.strip():
        return 0
    try:
        value = float(raw.strip())
    except ValueError:
        logger.warning("Failed to parse RSSI: %r", raw)
        return INVALID_RSSI
    if not math.isfinite(value):
        logger.warning("Non-finite RSSI: %r", raw)
        return INVALID_RSSI
    # Round half up (-75.5 -> -75), not banker's rounding
    return int(math.floor(value + 0.5))


class BaseReader(ABC):
    """Abstract base for all reader drivers.

    Drivers deliver reads through ``on_tag_read`` callbacks, possibly from
    their own thread. Callbacks receive the raw identifier and the raw
    signal strength string exactly as the hardware reported them.
    """

    @abstractmethod
    def start_continuous_read(self) -> bool:
        """Begin continuous inventory. Returns False if the reader refused."""

    @abstractmethod
    def stop_continuous_read(self) -> bool:
        """Stop continuous inventory."""

    @abstractmethod
    def get_connection_state(self) -> ConnectionState: ...

    @abstractmethod
    def set_power_level(self, dbm: int) -> bool: ...

    @abstractmethod
    def get_battery_percent(self) -> int:
        """Battery charge in percent; negative values mean the read was invalid."""

    @abstractmethod
    def on_tag_read(self, callback: Callable[[str, str], None]) -> None:
        """Register a callback for raw tag reads."""
