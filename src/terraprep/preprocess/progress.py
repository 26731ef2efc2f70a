"""Progress reporting passed explicitly into each stage."""

from __future__ import annotations

import threading
from typing import Callable

ProgressCallback = Callable[[str, int, int], None]


class ProgressReporter:
    """Monotonic completed/total counter forwarding to a callback.

    Stages call :meth:`start` once with the work already done (resumed units)
    and :meth:`advance` after each unit is durably written, so reported
    progress never runs ahead of what is on disk.

    Args:
        callback: Optional callback(stage, completed, total)
    """

    def __init__(self, callback: ProgressCallback | None = None) -> None:
        self._callback = callback
        self._lock = threading.Lock()
        self._stage = ""
        self._completed = 0
        self._total = 0

    @property
    def completed(self) -> int:
        with self._lock:
            return self._completed

    @property
    def total(self) -> int:
        with self._lock:
            return self._total

    @property
    def stage(self) -> str:
        with self._lock:
            return self._stage

    def start(self, stage: str, completed: int, total: int) -> None:
        with self._lock:
            self._stage = stage
            self._completed = completed
            self._total = total
            self._emit()

    def advance(self, count: int = 1) -> int:
        """Record ``count`` more finished units and return the new total."""
        with self._lock:
            self._completed += count
            self._emit()
            return self._completed

    def _emit(self) -> None:
        if self._callback is not None:
            self._callback(self._stage, self._completed, self._total)
