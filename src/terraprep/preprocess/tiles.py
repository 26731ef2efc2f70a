"""Tile extraction from reprojected sector pyramids.

Every quadtree node down to ``max_level`` gets one tile of
``LayerParams.resolution`` pixels per side, border included. A tile is
composited from the sectors it overlaps at the node's sector level; nodes above
the sector pyramid's minimum level sample the minimum level with a stride.

Extractions run concurrently in a bounded window. Sector reads go through a
shared :class:`SectorCache`; compositing and encoding run on a CPU pool; each
tile is written atomically before progress advances.
"""

from __future__ import annotations

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable

import numpy as np

from terraprep.config import CPU_WORKERS, IO_WORKERS, MAX_IN_FLIGHT_TILES
from terraprep.core.grid import SectorGrid
from terraprep.core.paths import (
    atomic_write_bytes,
    reprojected_dirname,
    tile_filename,
    tiles_dirname,
)
from terraprep.core.samples import SampleKind
from terraprep.core.types import LayerParams, Node, Sector
from terraprep.errors import CodecError, StageIOError

from .backends import VIPSBackend
from .cache import SectorCache
from .metadata import DatasetManifest, prepare_stage_directory
from .progress import ProgressReporter

logger = logging.getLogger(__name__)


@dataclass
class TileResult:
    """Outcome of a tile extraction run."""

    processed: int
    skipped: int
    total: int
    empty: int = 0


@dataclass(frozen=True)
class TileWindow:
    """Where a node's tile pixels fall in its sector level.

    Attributes:
        sector_level: Pyramid level the tile is sampled from
        step: Sector pixels between adjacent tile pixels
        root_x: Sector-level pixel of the tile's first column
        root_y: Sector-level pixel of the tile's first row
        sector_inner: Pixels between two sector origins at ``sector_level``
        sector_resolution: Stored width/height of a sector at ``sector_level``
        resolution: Tile width/height in pixels
    """

    sector_level: int
    step: int
    root_x: int
    root_y: int
    sector_inner: int
    sector_resolution: int
    resolution: int

    def columns(self) -> np.ndarray:
        return self.root_x + np.arange(self.resolution, dtype=np.int64) * self.step

    def rows(self) -> np.ndarray:
        return self.root_y + np.arange(self.resolution, dtype=np.int64) * self.step

    def sector_range(self) -> tuple[range, range]:
        """Sector columns and rows the tile overlaps."""
        span = (self.resolution - 1) * self.step
        inner = self.sector_inner
        xs = range(self.root_x // inner, (self.root_x + span) // inner + 1)
        ys = range(self.root_y // inner, (self.root_y + span) // inner + 1)
        return xs, ys


class TileExtractor:
    """Cuts the tiles of one dataset out of its sector pyramids.

    Args:
        base_directory: Directory holding ``{dataset}_reprojected/`` and
            ``tiles/``
        dataset: Dataset name
        max_level: Deepest node level to produce tiles for
        grid_registration: Registration the sectors were built with
        no_data: Sentinel marking uncovered samples
        sample_kind: Numeric type of the samples
        layer: Tile resolution and border; its inner resolution must match
            the sector grid's
        cache: Sector cache to read through (created if not given)
        max_in_flight: Extractions admitted at once
        cpu_workers: Threads for decoding, compositing and encoding
        io_workers: Threads for file reads and writes
    """

    def __init__(
        self,
        base_directory: Path,
        dataset: str,
        max_level: int,
        grid_registration: bool,
        no_data,
        sample_kind: SampleKind,
        layer: LayerParams | None = None,
        cache: SectorCache | None = None,
        max_in_flight: int = MAX_IN_FLIGHT_TILES,
        cpu_workers: int = CPU_WORKERS,
        io_workers: int = IO_WORKERS,
    ) -> None:
        self.base_directory = Path(base_directory)
        self.dataset = dataset
        self.layer = layer or LayerParams()
        self.grid = SectorGrid(max_level, grid_registration)
        if self.layer.inner_resolution != self.grid.inner_resolution:
            raise ValueError(
                f"tile inner resolution {self.layer.inner_resolution} does not match "
                f"the sector grid's {self.grid.inner_resolution}"
            )
        self.sample_kind = sample_kind
        self.no_data = sample_kind.cast(no_data)
        self.max_in_flight = max(1, max_in_flight)

        self._cpu = ThreadPoolExecutor(
            max_workers=cpu_workers, thread_name_prefix="tile-cpu"
        )
        self._io = ThreadPoolExecutor(max_workers=io_workers, thread_name_prefix="tile-io")
        self.cache = cache or SectorCache(
            self.base_directory / reprojected_dirname(dataset),
            dataset,
            io_executor=self._io,
            cpu_executor=self._cpu,
        )

    def close(self) -> None:
        """Shut down the worker pools."""
        self._cpu.shutdown(wait=True)
        self._io.shutdown(wait=True)

    def __enter__(self) -> TileExtractor:
        return self

    def __exit__(self, *args) -> None:
        self.close()

    def manifest(self) -> DatasetManifest:
        return DatasetManifest(
            dataset=self.dataset,
            stage="tiles",
            sample_kind=self.sample_kind.value,
            grid_registration=self.grid.grid_registration,
            max_level=self.grid.max_level,
            min_level=self.grid.min_level,
            no_data=self.no_data.item(),
            inner_resolution=self.grid.inner_resolution,
            tile_resolution=self.layer.resolution,
            tile_border=self.layer.border,
        )

    def window(self, node: Node) -> TileWindow:
        """Sector-level pixel window covered by ``node``'s tile."""
        min_level = self.grid.min_level
        step = 1 << max(0, min_level - node.level)
        sector_level = max(node.level, min_level)
        sector_inner = self.grid.sector_inner_resolution(sector_level)
        sector_resolution = self.grid.sector_resolution(sector_level)
        inner = self.grid.inner_resolution
        offset = sector_resolution // 2 - self.layer.border * step
        return TileWindow(
            sector_level=sector_level,
            step=step,
            root_x=node.x * inner * step + offset,
            root_y=node.y * inner * step + offset,
            sector_inner=sector_inner,
            sector_resolution=sector_resolution,
            resolution=self.layer.resolution,
        )

    def sectors_for(self, node: Node) -> list[Sector]:
        """Sectors a node's tile is composited from, row-major."""
        xs, ys = self.window(node).sector_range()
        return [Sector(node.face, x, y) for y in ys for x in xs]

    async def extract_tile(self, node: Node) -> np.ndarray:
        """Composite ``node``'s tile from its sectors.

        Each overlapping sector is requested from the cache once; compositing
        starts when all of them have resolved.
        """
        window = self.window(node)
        sectors = self.sectors_for(node)
        arrays = await asyncio.gather(
            *(self.cache.get(sector, window.sector_level) for sector in sectors)
        )
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            self._cpu, self.composite, window, dict(zip(sectors, arrays))
        )

    def composite(self, window: TileWindow, sectors: dict[Sector, np.ndarray]) -> np.ndarray:
        """Assemble a tile from resolved sectors.

        A single-pixel sector is uniform and contributes its value everywhere
        it covers.
        """
        inner = window.sector_inner
        columns = window.columns()
        rows = window.rows()
        sector_x, local_x = np.divmod(columns, inner)
        sector_y, local_y = np.divmod(rows, inner)

        tile = np.empty((window.resolution, window.resolution), dtype=self.sample_kind.dtype)
        for sector, samples in sectors.items():
            cols = np.flatnonzero(sector_x == sector.x)
            rws = np.flatnonzero(sector_y == sector.y)
            if cols.size == 0 or rws.size == 0:
                continue
            if samples.size == 1:
                tile[np.ix_(rws, cols)] = samples.flat[0]
            else:
                tile[np.ix_(rws, cols)] = samples[np.ix_(local_y[rws], local_x[cols])]
        return tile

    def encode_tile(self, tile: np.ndarray) -> bytes:
        """TIFF bytes of a tile, or empty bytes if it holds only no-data."""
        if self.sample_kind.matches(tile, self.no_data).all():
            return b""
        return VIPSBackend.encode_tiff(tile)

    async def run(
        self,
        progress: ProgressReporter | None = None,
        faces: Iterable[int] | None = None,
    ) -> TileResult:
        """Extract every missing tile of ``faces``, deepest level first.

        Args:
            progress: Reporter advanced once per written tile
            faces: Faces to cover (all six by default)

        Returns:
            TileResult with processed/skipped/empty counts
        """
        progress = progress or ProgressReporter()
        directory, existing = prepare_stage_directory(
            self.base_directory, tiles_dirname(self.dataset), self.manifest()
        )

        faces = sorted(set(faces)) if faces is not None else None
        nodes = Node.to_level(self.grid.max_level, faces)
        missing = [
            node for node in nodes if tile_filename(self.dataset, node) not in existing
        ]
        # Breadth-first order is kept within a level.
        missing.sort(key=lambda node: -node.level)
        total = len(nodes)
        skipped = total - len(missing)

        logger.info(
            "Extracting tiles for %s: %d of %d missing", self.dataset, len(missing), total
        )
        progress.start(f"extracting tiles for {self.dataset}...", skipped, total)

        empty = 0
        pending: set[asyncio.Task] = set()
        try:
            for node in missing:
                if len(pending) >= self.max_in_flight:
                    done, pending = await asyncio.wait(
                        pending, return_when=asyncio.FIRST_COMPLETED
                    )
                    empty += _count_empty(done)
                pending.add(asyncio.ensure_future(self.write_tile(node, directory, progress)))
            if pending:
                done, pending = await asyncio.wait(pending)
                empty += _count_empty(done)
        except BaseException:
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            raise

        logger.info(
            "Extracted %d tiles for %s (%d empty, hits=%d, misses=%d)",
            len(missing), self.dataset, empty, self.cache.hits, self.cache.misses,
        )
        return TileResult(
            processed=len(missing), skipped=skipped, total=total, empty=empty
        )

    async def write_tile(
        self,
        node: Node,
        directory: Path,
        progress: ProgressReporter | None = None,
    ) -> bool:
        """Extract, encode and atomically write one tile.

        Returns:
            True if the tile held only no-data and was written empty
        """
        loop = asyncio.get_running_loop()
        unit = f"tile {node.face}/{node.level}/{node.x}x{node.y}"
        tile = await self.extract_tile(node)
        try:
            data = await loop.run_in_executor(self._cpu, self.encode_tile, tile)
        except CodecError as e:
            raise StageIOError(
                f"encoding failed: {e.message}", dataset=self.dataset, unit=unit
            ) from e

        path = directory / tile_filename(self.dataset, node)
        try:
            await loop.run_in_executor(self._io, atomic_write_bytes, path, data)
        except OSError as e:
            raise StageIOError(
                f"writing {path.name} failed: {e}", dataset=self.dataset, unit=unit
            ) from e
        if progress is not None:
            progress.advance()
        logger.debug("Wrote %s (%d bytes)", path.name, len(data))
        return not data


def _count_empty(done: set[asyncio.Task]) -> int:
    """Empty tiles among finished writes; raises the first failure.

    Every exception in ``done`` is retrieved before raising so none is
    reported as unhandled.
    """
    errors = [task.exception() for task in done]
    for error in errors:
        if error is not None:
            raise error
    return sum(task.result() for task in done)


def merge_datasets_to_tiles(
    base_directory: Path,
    dataset: str,
    max_level: int,
    grid_registration: bool,
    no_data,
    sample_kind: SampleKind,
    progress_callback: Callable[[str, int, int], None] | None = None,
    faces: Iterable[int] | None = None,
    layer: LayerParams | None = None,
) -> TileResult:
    """Extract all tiles of ``dataset`` from its reprojected sectors.

    Args:
        base_directory: Base directory of both stages
        dataset: Dataset name
        max_level: Deepest node level
        grid_registration: Registration the sectors were built with
        no_data: Sentinel marking uncovered samples
        sample_kind: Numeric type of the samples
        progress_callback: Optional callback(stage, completed, total)
        faces: Faces to cover (all six by default)
        layer: Tile resolution and border

    Returns:
        TileResult with processed/skipped/empty counts
    """
    with TileExtractor(
        base_directory,
        dataset,
        max_level,
        grid_registration,
        no_data,
        sample_kind,
        layer=layer,
    ) as extractor:
        return asyncio.run(
            extractor.run(ProgressReporter(progress_callback), faces=faces)
        )


def load_tile(
    path: Path,
    sample_kind: SampleKind,
    no_data,
    layer: LayerParams | None = None,
) -> np.ndarray:
    """Read a tile file; an empty file yields a tile filled with ``no_data``."""
    layer = layer or LayerParams()
    data = Path(path).read_bytes()
    if not data:
        return np.full(
            (layer.resolution, layer.resolution),
            sample_kind.cast(no_data),
            dtype=sample_kind.dtype,
        )
    return VIPSBackend.decode_tiff(data)
