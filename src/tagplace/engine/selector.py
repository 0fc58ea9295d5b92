"""Candidate statistics and winner selection for a closed capture window."""

import logging
from dataclasses import dataclass

from tagplace.engine.models import CandidateStats
from tagplace.engine.window import CaptureWindow
from tagplace.reader.base import TagRead

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Selection:
    """Winner and runner-up of one window."""

    winner: CandidateStats
    runner_up: CandidateStats | None
    ambiguous: bool


def _truncating_mean(total: int, count: int) -> int:
    """Integer mean truncated toward zero (-121 / 3 -> -40, not -41)."""
    quotient = abs(total) // count
    return quotient if total >= 0 else -quotient


def compute_stats(identifier: str, reads: list[TagRead]) -> CandidateStats:
    strengths = [r.signal_strength for r in reads]
    return CandidateStats(
        identifier=identifier,
        count=len(strengths),
        avg_strength=_truncating_mean(sum(strengths), len(strengths)),
        peak_strength=max(strengths),
    )


def rank_candidates(window: CaptureWindow) -> list[CandidateStats]:
    """All candidates of the window, best first.

    Ties on (count, average) keep first-seen order, so the result is
    deterministic for a given read sequence.
    """
    candidates = [compute_stats(identifier, reads) for identifier, reads in window.reads.items()]
    for c in candidates:
        logger.debug(
            "Candidate: %s | Count=%d | AvgRSSI=%d | MaxRSSI=%d",
            c.identifier,
            c.count,
            c.avg_strength,
            c.peak_strength,
        )
    # sorted() is stable, which preserves insertion order on ties
    return sorted(candidates, key=lambda c: (c.count, c.avg_strength), reverse=True)


def select_candidate(
    window: CaptureWindow,
    rssi_threshold_db: int = 5,
    count_threshold: int = 1,
) -> Selection | None:
    """Pick the window's winner. Returns None for an empty window."""
    ranked = rank_candidates(window)
    if not ranked:
        return None

    winner = ranked[0]
    runner_up = ranked[1] if len(ranked) > 1 else None
    ambiguous = runner_up is not None and winner.is_ambiguous_with(
        runner_up, rssi_threshold_db, count_threshold
    )
    return Selection(winner=winner, runner_up=runner_up, ambiguous=ambiguous)
