"""Reprojection of a source raster onto the cube-sphere sector grid."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable

import numpy as np

from terraprep.config import CPU_WORKERS, REPROJECT_BATCH_SIZE, REPROJECT_SCRATCH_BYTES
from terraprep.core import addressing
from terraprep.core.grid import SectorGrid
from terraprep.core.paths import (
    atomic_write_bytes,
    reprojected_dirname,
    sector_filename,
)
from terraprep.core.samples import Reducer, SampleKind, downsample
from terraprep.core.types import Sector
from terraprep.errors import CodecError, StageIOError

from .backends import VIPSBackend
from .budget import MemoryBudget, default_budget
from .metadata import DatasetManifest, prepare_stage_directory
from .progress import ProgressReporter
from .sampler import Geotransform, SourceRaster

logger = logging.getLogger(__name__)


@dataclass
class ReprojectResult:
    """Outcome of a reprojection run."""

    processed: int
    skipped: int
    total: int


class SectorReprojector:
    """Builds the sector pyramids of one dataset.

    Each missing sector is sampled from the source at its finest resolution,
    halved level by level down to the grid's minimum level, and every level is
    written as its own TIFF. A sector counts as done once all of its levels
    exist on disk.

    Args:
        base_directory: Directory holding ``{dataset}_reprojected/``
        dataset: Dataset name used in file names
        source: Raster with a geotransform and batched lookups
        max_level: Finest quadtree level to reproject for
        grid_registration: True if samples sit on cell corners
        no_data: Value for samples the source does not cover
        sample_kind: Numeric type of the samples
        reducer: 2x2 reducer for cell-registered datasets
        budget: Memory budget the sampling scratch space is reserved on
        batch_size: Sectors processed per batch
        workers: Worker threads per batch
    """

    def __init__(
        self,
        base_directory: Path,
        dataset: str,
        source: SourceRaster,
        max_level: int,
        grid_registration: bool,
        no_data,
        sample_kind: SampleKind,
        reducer: Reducer | None = None,
        budget: MemoryBudget | None = None,
        batch_size: int = REPROJECT_BATCH_SIZE,
        workers: int = CPU_WORKERS,
    ) -> None:
        if not grid_registration and reducer is None:
            raise ValueError("cell-registered datasets need a reducer")
        self.base_directory = Path(base_directory)
        self.dataset = dataset
        self.source = source
        self.grid = SectorGrid(max_level, grid_registration)
        self.sample_kind = sample_kind
        self.no_data = sample_kind.cast(no_data)
        self.reducer = reducer
        self.budget = budget if budget is not None else default_budget()
        self.batch_size = batch_size
        self.workers = workers

        self.grid.check_resolution()
        self.transform = Geotransform.from_gdal(source.geotransform(), dataset=dataset)
        self.directory = self.base_directory / reprojected_dirname(dataset)

    @property
    def scratch_bytes(self) -> int:
        """Upper bound on transient memory used by one batch."""
        r = self.grid.base_resolution
        return (
            r * r
            * (REPROJECT_SCRATCH_BYTES + self.sample_kind.byte_width)
            * self.batch_size
        )

    def manifest(self) -> DatasetManifest:
        return DatasetManifest(
            dataset=self.dataset,
            stage="sectors",
            sample_kind=self.sample_kind.value,
            grid_registration=self.grid.grid_registration,
            max_level=self.grid.max_level,
            min_level=self.grid.min_level,
            no_data=self.no_data.item(),
            inner_resolution=self.grid.inner_resolution,
        )

    def run(
        self,
        progress: ProgressReporter | None = None,
        faces: Iterable[int] | None = None,
        sectors: Iterable[Sector] | None = None,
    ) -> ReprojectResult:
        """Reproject every sector of ``faces`` that is not already on disk.

        Args:
            progress: Reporter advanced once per finished sector
            faces: Faces to cover (all six by default)
            sectors: Restrict the run to these sectors (e.g. to rebuild a region)

        Returns:
            ReprojectResult with processed/skipped counts
        """
        progress = progress or ProgressReporter()
        _, existing = prepare_stage_directory(
            self.base_directory, reprojected_dirname(self.dataset), self.manifest()
        )

        faces = sorted(set(faces)) if faces is not None else None
        all_sectors = list(self.grid.sectors(faces))
        if sectors is not None:
            wanted = set(sectors)
            all_sectors = [sector for sector in all_sectors if sector in wanted]
        missing = self.find_missing(all_sectors, existing)
        total = len(all_sectors)
        skipped = total - len(missing)

        logger.info(
            "Reprojecting %s: %d of %d sectors missing (levels %d-%d, %d px)",
            self.dataset, len(missing), total,
            self.grid.min_level, self.grid.max_level, self.grid.base_resolution,
        )
        progress.start(f"reprojecting {self.dataset}...", skipped, total)
        if not missing:
            return ReprojectResult(processed=0, skipped=skipped, total=total)

        with ThreadPoolExecutor(max_workers=self.workers) as executor:
            for start in range(0, len(missing), self.batch_size):
                batch = missing[start : start + self.batch_size]
                with self.budget.reserve(self.scratch_bytes):
                    for _ in executor.map(self.process_sector, batch):
                        progress.advance()

        logger.info("Reprojected %d sectors for %s", len(missing), self.dataset)
        return ReprojectResult(processed=len(missing), skipped=skipped, total=total)

    def find_missing(self, sectors: list[Sector], existing: set[str]) -> list[Sector]:
        """Sectors with at least one pyramid level absent from ``existing``."""
        return [
            sector
            for sector in sectors
            if any(
                sector_filename(self.dataset, sector, level) not in existing
                for level in self.grid.levels
            )
        ]

    def process_sector(self, sector: Sector) -> None:
        """Sample, downsample, encode and write all levels of one sector."""
        heights = self.sample_sector(sector)
        outputs = []
        for level, samples in self.build_pyramid(heights):
            path = self.directory / sector_filename(self.dataset, sector, level)
            try:
                outputs.append((level, path, self.encode_level(samples)))
            except CodecError as e:
                raise StageIOError(
                    f"encoding failed: {e.message}",
                    dataset=self.dataset,
                    unit=_describe(sector, level),
                ) from e

        # Coarsest first: the finest level landing last marks the sector done.
        for level, path, data in reversed(outputs):
            try:
                atomic_write_bytes(path, data)
            except OSError as e:
                raise StageIOError(
                    f"writing {path.name} failed: {e}",
                    dataset=self.dataset,
                    unit=_describe(sector, level),
                ) from e
        logger.debug("Wrote sector %s of %s", sector, self.dataset)

    def sample_sector(self, sector: Sector) -> np.ndarray:
        """Sample the source at every base-resolution position of ``sector``."""
        r = self.grid.base_resolution
        cspace = self.grid.sector_cspace(sector)
        latitude, longitude = addressing.cspace_to_polar(cspace)
        del cspace
        px, py = self.transform.to_pixel(np.degrees(latitude), np.degrees(longitude))
        points = np.column_stack([px, py])
        del px, py, latitude, longitude

        heights = np.full(r * r, self.no_data, dtype=self.sample_kind.dtype)
        self.source.batch_lookup(points, heights)
        return heights.reshape(r, r)

    def build_pyramid(self, heights: np.ndarray) -> list[tuple[int, np.ndarray]]:
        """Levels from ``max_level`` down to ``min_level``, finest first."""
        levels = []
        current = heights
        for level in reversed(self.grid.levels):
            levels.append((level, current))
            if level != self.grid.min_level:
                current = downsample(current, self.grid.grid_registration, self.reducer)
        return levels

    def encode_level(self, samples: np.ndarray) -> bytes:
        """TIFF bytes for a level; uniform levels collapse to a single pixel."""
        if self.sample_kind.is_uniform(samples):
            return VIPSBackend.encode_tiff(np.ascontiguousarray(samples[:1, :1]))
        return VIPSBackend.encode_tiff(samples)


def _describe(sector: Sector, level: int) -> str:
    return f"sector {sector.face}/{sector.x}x{sector.y} level {level}"


def reproject_dataset(
    base_directory: Path,
    dataset: str,
    source: SourceRaster,
    max_level: int,
    grid_registration: bool,
    no_data,
    sample_kind: SampleKind,
    reducer: Reducer | None = None,
    progress_callback: Callable[[str, int, int], None] | None = None,
    faces: Iterable[int] | None = None,
    budget: MemoryBudget | None = None,
    sectors: Iterable[Sector] | None = None,
) -> ReprojectResult:
    """Reproject ``source`` into per-sector pyramids under ``base_directory``.

    Args:
        base_directory: Output base directory
        dataset: Dataset name
        source: Source raster
        max_level: Finest quadtree level
        grid_registration: Sampling convention of the dataset
        no_data: Sentinel for uncovered samples
        sample_kind: Numeric type of the samples
        reducer: 2x2 reducer (required for cell registration)
        progress_callback: Optional callback(stage, completed, total)
        faces: Faces to cover (all six by default)
        budget: Memory budget shared with concurrent stages
        sectors: Restrict the run to these sectors

    Returns:
        ReprojectResult with processed/skipped counts
    """
    reprojector = SectorReprojector(
        base_directory,
        dataset,
        source,
        max_level,
        grid_registration,
        no_data,
        sample_kind,
        reducer=reducer,
        budget=budget,
    )
    return reprojector.run(
        ProgressReporter(progress_callback), faces=faces, sectors=sectors
    )
