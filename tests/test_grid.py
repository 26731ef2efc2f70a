"""Tests for the per-face sector grid."""

from __future__ import annotations

import numpy as np
import pytest

from terraprep.core import addressing
from terraprep.core.grid import SectorGrid
from terraprep.core.types import Sector
from terraprep.errors import ResolutionOverflowError
from terraprep.preprocess.sampler import Geotransform

GLOBAL_TRANSFORM = (-180.0, 1.0, 0.0, 90.0, 0.0, -1.0)


class TestSectorGridDimensions:
    """Tests for resolutions and levels derived from max_level."""

    @pytest.mark.parametrize(
        "max_level, grid, expected",
        [
            (0, True, 9),
            (0, False, 8),
            (3, True, 65),
            (3, False, 64),
            (8, True, 2049),
        ],
        ids=["l0-grid", "l0-cell", "l3-grid", "l3-cell", "l8-grid"],
    )
    def test_base_resolution(self, max_level, grid, expected):
        assert SectorGrid(max_level, grid).base_resolution == expected

    @pytest.mark.parametrize(
        "max_level, expected", [(0, 0), (3, 3), (4, 4), (10, 4)]
    )
    def test_min_level_caps_at_1km(self, max_level, expected):
        assert SectorGrid(max_level, True).min_level == expected

    def test_levels_span_min_to_max(self):
        assert list(SectorGrid(6, True).levels) == [4, 5, 6]

    def test_border_is_half_a_sector(self):
        grid = SectorGrid(3, True)
        assert grid.border == 32

    def test_root_resolution_shares_grid_edges(self):
        """Grid sectors overlap by one sample, cell sectors tile exactly."""
        assert SectorGrid(3, True).root_resolution == 64 * 65 + 1
        assert SectorGrid(3, False).root_resolution == 64 * 65

    def test_sector_resolution_per_level(self):
        grid = SectorGrid(6, True)
        assert [grid.sector_resolution(level) for level in grid.levels] == [129, 257, 513]
        assert grid.sector_inner_resolution(4) == 128

    def test_pyramid_halving_matches_resolutions(self):
        """Halving a level should give the stored size of the level below."""
        for grid_registration in (True, False):
            grid = SectorGrid(6, grid_registration)
            for level in range(grid.min_level + 1, grid.max_level + 1):
                r = grid.sector_resolution(level)
                halved = (r - 1) // 2 + 1 if grid_registration else r // 2
                assert halved == grid.sector_resolution(level - 1)

    def test_negative_level_rejected(self):
        with pytest.raises(ValueError):
            SectorGrid(-1, True)


class TestResolutionOverflow:
    """Tests for the sector pixel count guard."""

    def test_largest_level_fits(self):
        grid = SectorGrid(12, True)
        assert grid.check_resolution() == 32769 * 32769

    def test_overflow_raises(self):
        with pytest.raises(ResolutionOverflowError, match="level 13"):
            SectorGrid(13, True).check_resolution()


class TestSectorGeometry:
    """Tests for sector positions on the face."""

    def test_sectors_enumeration(self):
        grid = SectorGrid(0, True)
        sectors = list(grid.sectors([0, 4]))
        assert len(sectors) == 2 * 65 * 65
        assert sectors[0] == Sector(0, 0, 0)
        assert sectors[1] == Sector(0, 1, 0)
        assert sectors[-1] == Sector(4, 64, 64)

    def test_center_sector_contains_face_center(self):
        grid = SectorGrid(3, True)
        r = grid.base_resolution
        cspace = grid.sector_cspace(Sector(0, 32, 32)).reshape(r, r, 3)
        np.testing.assert_allclose(cspace[32, 32], [1.0, 0.0, 0.0], atol=1e-15)

    def test_first_sector_starts_outside_the_face(self):
        grid = SectorGrid(3, True)
        cspace = grid.sector_cspace(Sector(0, 0, 0))
        u, v = addressing.cspace_to_face(0, cspace[:1])
        assert u[0] < -1.0
        assert v[0] < -1.0

    def test_grid_neighbours_share_an_edge(self):
        """Adjacent grid-registered sectors should store identical edge samples."""
        grid = SectorGrid(2, True)
        r = grid.base_resolution
        left = grid.sector_cspace(Sector(1, 10, 20)).reshape(r, r, 3)
        right = grid.sector_cspace(Sector(1, 11, 20)).reshape(r, r, 3)
        below = grid.sector_cspace(Sector(1, 10, 21)).reshape(r, r, 3)
        np.testing.assert_array_equal(left[:, -1], right[:, 0])
        np.testing.assert_array_equal(left[-1, :], below[0, :])

    def test_cell_neighbours_do_not_overlap(self):
        grid = SectorGrid(2, False)
        r = grid.base_resolution
        left = grid.sector_cspace(Sector(0, 5, 5)).reshape(r, r, 3)
        right = grid.sector_cspace(Sector(0, 6, 5)).reshape(r, r, 3)
        step = left[0, 1] - left[0, 0]
        np.testing.assert_allclose(right[0, 0] - left[0, -1], step)

    @pytest.mark.parametrize(
        "grid_registration, sector",
        [
            (True, Sector(0, 20, 30)),
            (True, Sector(4, 40, 12)),
            (False, Sector(2, 33, 50)),
            (False, Sector(5, 3, 61)),
        ],
        ids=["grid-equator", "grid-north", "cell-equator", "cell-south"],
    )
    def test_coordinate_round_trip(self, grid_registration, sector):
        """Sector position -> lat/lon -> source pixel -> lat/lon -> sector position."""
        grid = SectorGrid(3, grid_registration)
        r = grid.base_resolution
        transform = Geotransform.from_gdal(GLOBAL_TRANSFORM)

        cspace = grid.sector_cspace(sector)
        latitude, longitude = addressing.cspace_to_polar(cspace)
        px, py = transform.to_pixel(np.degrees(latitude), np.degrees(longitude))

        lat_deg, lon_deg = transform.to_geographic(px, py)
        restored = addressing.polar_to_cspace(np.radians(lat_deg), np.radians(lon_deg))
        x, y = grid.sector_position(sector, restored)

        index = np.arange(r * r)
        np.testing.assert_allclose(x, index % r, atol=1e-6)
        np.testing.assert_allclose(y, index // r, atol=1e-6)
