"""
Candidate selection: keep the smallest valid candidate seen so far.
"""
from functools import reduce
from typing import Iterable, Optional

from imageopt.models import CompressionCandidate, StageOutcome


def keep_smaller(best: Optional[CompressionCandidate], outcome: StageOutcome) -> Optional[CompressionCandidate]:
    """
    Reducer step. A new candidate replaces ``best`` only when it is
    non-empty and strictly smaller; failed outcomes never win.
    """
    candidate = outcome.candidate
    if candidate is None or candidate.size == 0:
        return best
    if best is None or candidate.size < best.size:
        return candidate
    return best


def select_best(
    outcomes: Iterable[StageOutcome],
    initial: Optional[CompressionCandidate] = None,
) -> Optional[CompressionCandidate]:
    """Fold ``outcomes`` into the smallest candidate, starting from ``initial``."""
    return reduce(keep_smaller, outcomes, initial)
