"""Bounded cache of decoded sector levels shared by concurrent tile extractions.

Tiles near each other read mostly the same sectors. The cache hands out one
future per ``(sector, level)`` so that however many extractions ask for a
sector at once, its file is read and decoded a single time.

Usage:
    cache = SectorCache(directory, "etopo")
    heights = await cache.get(Sector(0, 16, 40), 3)
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Callable

import numpy as np

from terraprep.config import CPU_WORKERS, IO_WORKERS, SECTOR_CACHE_SIZE
from terraprep.core.paths import sector_filename
from terraprep.core.types import Sector, SectorKey
from terraprep.errors import CodecError, SectorDecodeError, SectorMissingError, StageIOError

from .backends import VIPSBackend

logger = logging.getLogger(__name__)

Decoder = Callable[[bytes], np.ndarray]


class SectorCache:
    """LRU of decoded sector levels with in-flight request deduplication.

    Resolved entries are bounded by ``capacity``; loads still in flight are
    tracked separately and never evicted. Returned arrays are read-only and
    may be shared freely between tasks.

    Args:
        directory: The dataset's ``_reprojected`` directory
        dataset: Dataset name used in sector file names
        capacity: Maximum number of resolved entries kept
        decoder: Converts file contents to an array (default: TIFF via libvips)
        io_executor: Pool for file reads (created if not given)
        cpu_executor: Pool for decoding (created if not given)
    """

    def __init__(
        self,
        directory: Path,
        dataset: str,
        capacity: int = SECTOR_CACHE_SIZE,
        decoder: Decoder | None = None,
        io_executor: ThreadPoolExecutor | None = None,
        cpu_executor: ThreadPoolExecutor | None = None,
    ) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self.directory = Path(directory)
        self.dataset = dataset
        self.capacity = capacity
        self._decoder = decoder or VIPSBackend.decode_tiff

        self._owns_io = io_executor is None
        self._owns_cpu = cpu_executor is None
        self._io = io_executor or ThreadPoolExecutor(
            max_workers=IO_WORKERS, thread_name_prefix="sector-io"
        )
        self._cpu = cpu_executor or ThreadPoolExecutor(
            max_workers=CPU_WORKERS, thread_name_prefix="sector-decode"
        )

        self._lock = threading.Lock()
        self._entries: OrderedDict[SectorKey, np.ndarray] = OrderedDict()
        self._pending: dict[SectorKey, asyncio.Future] = {}

        self.hits = 0
        self.misses = 0
        self.decodes = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    @property
    def in_flight(self) -> int:
        """Loads started but not yet resolved."""
        with self._lock:
            return len(self._pending)

    def get(self, sector: Sector, level: int) -> asyncio.Future:
        """Future resolving to the decoded samples of ``sector`` at ``level``.

        Must be called from a running event loop. A request for a key already
        loading returns the same future as the first request.
        """
        loop = asyncio.get_running_loop()
        key = SectorKey(sector, level)
        with self._lock:
            cached = self._entries.get(key)
            if cached is not None:
                self._entries.move_to_end(key)
                self.hits += 1
                future = loop.create_future()
                future.set_result(cached)
                return future

            pending = self._pending.get(key)
            if pending is not None:
                self.hits += 1
                return pending

            self.misses += 1
            future = loop.create_task(self._load(key))
            self._pending[key] = future
            return future

    def clear(self) -> None:
        """Drop all resolved entries; in-flight loads are unaffected."""
        with self._lock:
            self._entries.clear()

    def close(self) -> None:
        """Shut down the executors this cache created."""
        if self._owns_io:
            self._io.shutdown(wait=True)
        if self._owns_cpu:
            self._cpu.shutdown(wait=True)

    async def _load(self, key: SectorKey) -> np.ndarray:
        loop = asyncio.get_running_loop()
        sector, level = key
        path = self.directory / sector_filename(self.dataset, sector, level)
        unit = f"sector {sector.face}/{sector.x}x{sector.y} level {level}"
        try:
            try:
                data = await loop.run_in_executor(self._io, path.read_bytes)
            except FileNotFoundError:
                raise SectorMissingError(
                    f"{path.name} not found in {self.directory}",
                    dataset=self.dataset,
                    unit=unit,
                ) from None
            except OSError as e:
                raise StageIOError(
                    f"reading {path.name} failed: {e}", dataset=self.dataset, unit=unit
                ) from e

            try:
                samples = await loop.run_in_executor(self._cpu, self._decode, data)
            except (CodecError, ValueError) as e:
                raise SectorDecodeError(
                    f"cannot decode {path.name}: {e}", dataset=self.dataset, unit=unit
                ) from e

            with self._lock:
                self.decodes += 1
                self._entries[key] = samples
                self._entries.move_to_end(key)
                while len(self._entries) > self.capacity:
                    evicted, _ = self._entries.popitem(last=False)
                    logger.debug("Evicted %s from sector cache", evicted)
            return samples
        finally:
            with self._lock:
                self._pending.pop(key, None)

    def _decode(self, data: bytes) -> np.ndarray:
        samples = np.asarray(self._decoder(data))
        if samples.ndim != 2 or samples.shape[0] != samples.shape[1]:
            raise ValueError(f"expected a square raster, got shape {samples.shape}")
        samples.flags.writeable = False
        return samples
