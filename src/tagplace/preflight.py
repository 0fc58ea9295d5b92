"""Pre-scan readiness checks: reader battery, reader link, position fix.

A failed check does not block scanning; the decision engine keeps working
without a position (placements are then ACCEPTED_NO_POSITION). The result
tells the operator what is degraded before they start.
"""

import enum
import logging
from collections import deque
from dataclasses import dataclass

from tagplace.location import LocationTracker
from tagplace.reader.base import BaseReader, ConnectionState

logger = logging.getLogger(__name__)

MIN_BATTERY_PERCENT = 20
LOW_BATTERY_WARNING = 30
MAX_POSITION_ACCURACY_M = 15.0
GOOD_POSITION_ACCURACY_M = 8.0

BATTERY_SMOOTHING_WINDOW = 5


class CheckStatus(enum.StrEnum):
    passed = "passed"
    warning = "warning"
    failed = "failed"


@dataclass
class CheckResult:
    status: CheckStatus
    message: str


@dataclass
class ValidationResult:
    battery: CheckResult
    connection: CheckResult
    position: CheckResult
    battery_level: int | None = None
    position_accuracy: float | None = None

    def _results(self) -> tuple[CheckResult, ...]:
        return (self.battery, self.connection, self.position)

    @property
    def ready(self) -> bool:
        """True when nothing failed outright (warnings are allowed)."""
        return all(r.status != CheckStatus.failed for r in self._results())

    @property
    def has_warnings(self) -> bool:
        return any(r.status == CheckStatus.warning for r in self._results())


class BatteryMonitor:
    """Rolling average over the last few valid battery readings.

    Reader battery reads are noisy and occasionally negative (invalid);
    invalid readings are skipped rather than averaged in.
    """

    def __init__(self, window: int = BATTERY_SMOOTHING_WINDOW) -> None:
        self._readings: deque[int] = deque(maxlen=window)

    def add(self, raw: int) -> int | None:
        if raw < 0:
            logger.debug("Skipping invalid battery reading %d", raw)
            return self.level
        self._readings.append(raw)
        return self.level

    @property
    def level(self) -> int | None:
        if not self._readings:
            return None
        return sum(self._readings) // len(self._readings)

    def poll(self, reader: BaseReader) -> int | None:
        """Read the battery if the reader is connected and fold it in."""
        if reader.get_connection_state() != ConnectionState.connected:
            return self.level
        try:
            return self.add(reader.get_battery_percent())
        except Exception:
            logger.exception("Battery query failed")
            return self.level


def check_battery(level: int | None) -> CheckResult:
    if level is None or level < 0:
        return CheckResult(CheckStatus.failed, "Battery level unavailable")
    if level < MIN_BATTERY_PERCENT:
        return CheckResult(CheckStatus.failed, f"Battery too low ({level}%)")
    if level < LOW_BATTERY_WARNING:
        return CheckResult(CheckStatus.warning, f"Low battery ({level}%)")
    return CheckResult(CheckStatus.passed, f"{level}%")


def check_connection(state: ConnectionState) -> CheckResult:
    if state == ConnectionState.connected:
        return CheckResult(CheckStatus.passed, "Scanner connected")
    if state == ConnectionState.connecting:
        return CheckResult(CheckStatus.warning, "Scanner connecting")
    return CheckResult(CheckStatus.failed, "Scanner not connected")


def check_position(accuracy: float | None) -> CheckResult:
    if accuracy is None:
        return CheckResult(CheckStatus.failed, "No position fix")
    if accuracy <= GOOD_POSITION_ACCURACY_M:
        return CheckResult(CheckStatus.passed, f"±{accuracy:.1f}m")
    if accuracy <= MAX_POSITION_ACCURACY_M:
        return CheckResult(CheckStatus.warning, f"Weak fix (±{accuracy:.1f}m)")
    return CheckResult(CheckStatus.failed, f"Position too inaccurate (±{accuracy:.1f}m)")


def validate_readiness(
    reader: BaseReader | None,
    location: LocationTracker,
    battery: BatteryMonitor | None = None,
) -> ValidationResult:
    """Run every readiness check once."""
    if reader is None:
        state = ConnectionState.disconnected
        level = None
    else:
        state = reader.get_connection_state()
        if battery is not None:
            level = battery.poll(reader)
        elif state == ConnectionState.connected:
            level = reader.get_battery_percent()
        else:
            level = None

    fix = location.last_known()
    accuracy = fix.accuracy if fix is not None else None

    result = ValidationResult(
        battery=check_battery(level),
        connection=check_connection(state),
        position=check_position(accuracy),
        battery_level=level,
        position_accuracy=accuracy,
    )
    logger.info(
        "Preflight: battery=%s connection=%s position=%s",
        result.battery.status,
        result.connection.status,
        result.position.status,
    )
    return result
