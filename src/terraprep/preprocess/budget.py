"""Shared accounting of transient memory reserved by the stages."""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Iterator

from terraprep.config import MEMORY_BUDGET_MB

logger = logging.getLogger(__name__)


class MemoryBudget:
    """Counter of reserved bytes with an optional upper limit.

    ``alloc_user_bytes`` blocks while the reservation would push the total past
    the limit. A single reservation larger than the whole limit is admitted once
    nothing else is reserved, so an oversized batch still makes progress.

    Args:
        limit_bytes: Upper bound on reserved bytes, or None for no limit
    """

    def __init__(self, limit_bytes: int | None = None) -> None:
        self.limit_bytes = limit_bytes
        self._reserved = 0
        self._peak = 0
        self._cond = threading.Condition()

    @property
    def reserved(self) -> int:
        with self._cond:
            return self._reserved

    @property
    def peak(self) -> int:
        """Largest total reserved at any point."""
        with self._cond:
            return self._peak

    def alloc_user_bytes(self, nbytes: int) -> None:
        """Reserve ``nbytes``, waiting for other holders to release if needed."""
        if nbytes < 0:
            raise ValueError(f"cannot reserve {nbytes} bytes")
        with self._cond:
            if self.limit_bytes is not None:
                while (
                    self._reserved > 0
                    and self._reserved + nbytes > self.limit_bytes
                ):
                    logger.debug(
                        "Waiting for %d bytes (%d of %d reserved)",
                        nbytes, self._reserved, self.limit_bytes,
                    )
                    self._cond.wait()
            self._reserved += nbytes
            self._peak = max(self._peak, self._reserved)

    def free_user_bytes(self, nbytes: int) -> None:
        """Release a reservation made with :meth:`alloc_user_bytes`."""
        with self._cond:
            if nbytes > self._reserved:
                raise ValueError(
                    f"releasing {nbytes} bytes but only {self._reserved} are reserved"
                )
            self._reserved -= nbytes
            self._cond.notify_all()

    @contextmanager
    def reserve(self, nbytes: int) -> Iterator[None]:
        """Hold a reservation for the duration of a ``with`` block."""
        self.alloc_user_bytes(nbytes)
        try:
            yield
        finally:
            self.free_user_bytes(nbytes)


_default_budget = MemoryBudget(MEMORY_BUDGET_MB * 1024 * 1024 or None)


def default_budget() -> MemoryBudget:
    """Process-wide budget shared by stages that are not given one."""
    return _default_budget
