"""Fixed per-face sector grid shared by reprojection and tile extraction.

Each face is covered by ``SECTORS_PER_SIDE`` x ``SECTORS_PER_SIDE`` sectors.
The grid is offset by half a sector so that the outer ring of sectors straddles
the face edge; this leaves room for tile borders on every node without reading
across faces.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Iterator

import numpy as np

from terraprep.config import MAX_SECTOR_PIXELS, SECTORS_PER_SIDE, TILE_INNER_RESOLUTION
from terraprep.errors import ResolutionOverflowError

from . import addressing
from .addressing import LEVEL_CELL_1KM
from .types import NUM_FACES, Node, Sector


@dataclass(frozen=True)
class SectorGrid:
    """Sector geometry for one dataset.

    Attributes:
        max_level: Finest quadtree level the dataset is reprojected for
        grid_registration: True if samples sit on cell corners (shared borders)
        inner_resolution: Tile inner resolution the grid is derived from
        sectors_per_side: Sectors along one face edge
    """

    max_level: int
    grid_registration: bool
    inner_resolution: int = TILE_INNER_RESOLUTION
    sectors_per_side: int = SECTORS_PER_SIDE

    def __post_init__(self) -> None:
        if self.max_level < 0:
            raise ValueError(f"max_level must be >= 0, got {self.max_level}")

    @property
    def min_level(self) -> int:
        """Coarsest pyramid level written for each sector."""
        return min(LEVEL_CELL_1KM, self.max_level)

    @property
    def levels(self) -> range:
        return range(self.min_level, self.max_level + 1)

    def sector_inner_resolution(self, level: int) -> int:
        """Pixels between the origins of two adjacent sectors at ``level``."""
        return (self.inner_resolution << level) // (self.sectors_per_side - 1)

    def sector_resolution(self, level: int) -> int:
        """Stored width/height of a sector at ``level``."""
        inner = self.sector_inner_resolution(level)
        return inner + 1 if self.grid_registration else inner

    @property
    def base_resolution(self) -> int:
        """Sector resolution at ``max_level``."""
        return self.sector_resolution(self.max_level)

    @property
    def border(self) -> int:
        """Samples of the half-sector border outside each face edge."""
        return self.base_resolution // 2

    @property
    def root_resolution(self) -> int:
        """Samples across the whole face grid at ``max_level``, border included."""
        r = self.base_resolution
        if self.grid_registration:
            return (r - 1) * self.sectors_per_side + 1
        return r * self.sectors_per_side

    def check_resolution(self) -> int:
        """Return the pixel count of a base sector, or raise if it overflows."""
        pixels = self.base_resolution * self.base_resolution
        if pixels > MAX_SECTOR_PIXELS:
            raise ResolutionOverflowError(
                f"sector resolution {self.base_resolution} at level {self.max_level} "
                f"overflows the pixel counter"
            )
        return pixels

    def sectors(self, faces: Iterable[int] | None = None) -> Iterator[Sector]:
        """Every sector of the given faces, row-major per face."""
        if faces is None:
            faces = range(NUM_FACES)
        for face in faces:
            for y in range(self.sectors_per_side):
                for x in range(self.sectors_per_side):
                    yield Sector(face, x, y)

    def sector_origin(self, sector: Sector) -> tuple[int, int]:
        """Root-grid index of a sector's first sample at ``max_level``."""
        r = self.base_resolution
        stride = r - 1 if self.grid_registration else r
        return sector.x * stride, sector.y * stride

    def sector_cspace(self, sector: Sector) -> np.ndarray:
        """Cube-space position of every base-resolution sample, row-major ``(r*r, 3)``."""
        r = self.base_resolution
        x0, y0 = self.sector_origin(sector)
        index = np.arange(r * r, dtype=np.int64)
        gx = x0 + index % r
        gy = y0 + index // r
        root = Node.root(sector.face)
        if self.grid_registration:
            return addressing.grid_position_cspace(
                root, gx, gy, self.border, self.root_resolution
            )
        return addressing.cell_position_cspace(
            root, gx, gy, self.border, self.root_resolution
        )

    def sector_position(
        self, sector: Sector, cspace: np.ndarray
    ) -> tuple[np.ndarray, np.ndarray]:
        """Fractional sample position inside ``sector`` of cube-space points."""
        root = Node.root(sector.face)
        if self.grid_registration:
            gx, gy = addressing.cspace_to_grid_position(
                root, cspace, self.border, self.root_resolution
            )
        else:
            gx, gy = addressing.cspace_to_cell_position(
                root, cspace, self.border, self.root_resolution
            )
        x0, y0 = self.sector_origin(sector)
        return gx - x0, gy - y0
