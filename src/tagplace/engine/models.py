"""Window statistics and decision outcomes."""

import enum
from dataclasses import dataclass

from tagplace.location import Position


class ReasonCode(enum.StrEnum):
    accepted = "ACCEPTED"
    accepted_no_position = "ACCEPTED_NO_POSITION"
    ambiguous = "AMBIGUOUS"
    cooldown = "COOLDOWN"
    duplicate = "DUPLICATE"


ACCEPTED_REASONS = frozenset({ReasonCode.accepted, ReasonCode.accepted_no_position})


@dataclass(frozen=True)
class CandidateStats:
    """Read statistics for one identifier within a closed window."""

    identifier: str
    count: int
    avg_strength: int
    peak_strength: int

    def is_better_than(self, other: "CandidateStats") -> bool:
        """Higher read count wins; average strength breaks ties."""
        if self.count != other.count:
            return self.count > other.count
        return self.avg_strength > other.avg_strength

    def is_ambiguous_with(
        self,
        other: "CandidateStats",
        rssi_threshold_db: int,
        count_threshold: int,
    ) -> bool:
        if abs(self.count - other.count) > count_threshold:
            return False
        return abs(self.avg_strength - other.avg_strength) <= rssi_threshold_db


@dataclass(frozen=True)
class Decision:
    """Outcome of one closed capture window.

    ``identifier`` and ``stats`` describe the winning candidate when one was
    picked (also for COOLDOWN and DUPLICATE rejections). For AMBIGUOUS they
    describe the winner that could not be separated from ``runner_up``.
    """

    reason: ReasonCode
    identifier: str | None = None
    stats: CandidateStats | None = None
    position: Position | None = None
    runner_up: CandidateStats | None = None

    @property
    def accepted(self) -> bool:
        return self.reason in ACCEPTED_REASONS
