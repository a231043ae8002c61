"""
Progress reporting for a single optimization call.

Stages of unknown duration are mapped onto one external 0-100 scale:

    start                  5
    compression begins    15
    compression running   15 + internal * 0.5   (15-65)
    compression complete  70
    transcode begins      75
    bitmap drawn          85
    transcode complete    90
    result ready         100   (always last, exactly once)
"""
import logging
import threading
from typing import Callable, List, Optional


logger = logging.getLogger(__name__)

PROGRESS_START = 5
PROGRESS_COMPRESS_BEGIN = 15
PROGRESS_COMPRESS_SCALE = 0.5
PROGRESS_COMPRESS_DONE = 70
PROGRESS_TRANSCODE_BEGIN = 75
PROGRESS_TRANSCODE_DRAWN = 85
PROGRESS_TRANSCODE_DONE = 90
PROGRESS_COMPLETE = 100


def compression_band(internal_progress: float) -> float:
    """Map the compressor's own 0-100 progress into the 15-65 band."""
    internal = min(max(internal_progress, 0), 100)
    return PROGRESS_COMPRESS_BEGIN + internal * PROGRESS_COMPRESS_SCALE


class ProgressReporter:
    """
    Monotonic progress tracker feeding an optional sink.

    Values are rounded and only strictly increasing values are forwarded.
    100 is reserved for ``complete()`` so the terminal value is emitted
    exactly once. Updates may arrive from the compression worker thread.
    """

    def __init__(self, sink: Optional[Callable[[int], None]] = None):
        self._sink = sink
        self._lock = threading.RLock()
        self._value = 0
        self._history: List[int] = []
        self._completed = False

    @property
    def value(self) -> int:
        return self._value

    @property
    def history(self) -> List[int]:
        with self._lock:
            return list(self._history)

    @property
    def completed(self) -> bool:
        return self._completed

    def update(self, progress: float) -> None:
        value = min(int(round(progress)), PROGRESS_COMPLETE - 1)
        with self._lock:
            if self._completed or value <= self._value:
                return
            self._value = value
            self._history.append(value)
            self._emit(value)

    def complete(self) -> None:
        with self._lock:
            if self._completed:
                return
            self._completed = True
            self._value = PROGRESS_COMPLETE
            self._history.append(PROGRESS_COMPLETE)
            self._emit(PROGRESS_COMPLETE)

    def _emit(self, value: int) -> None:
        if self._sink is None:
            return
        try:
            self._sink(value)
        except Exception:
            # A broken UI callback must not abort the optimization
            logger.exception('Progress sink raised', extra={'progress': value})
