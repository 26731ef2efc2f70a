"""Test fixtures for terraprep tests."""

from __future__ import annotations

import tempfile
from pathlib import Path
from typing import Generator, Iterable

import numpy as np
import pytest

from terraprep.core.paths import reprojected_dirname, sector_filename
from terraprep.core.types import Sector
from terraprep.preprocess.backends import VIPSBackend
from terraprep.preprocess.sampler import ArrayRaster

#: One sample per degree, north-up, covering the whole globe
GLOBAL_TRANSFORM = (-180.0, 1.0, 0.0, 90.0, 0.0, -1.0)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Provide a temporary directory that's cleaned up after tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def global_elevation() -> np.ndarray:
    """180x360 int16 raster whose value encodes its row and column."""
    rows = np.arange(180, dtype=np.int16)[:, None]
    cols = np.arange(360, dtype=np.int16)[None, :]
    return (rows * 10 + cols % 10).astype(np.int16)


@pytest.fixture
def global_raster(global_elevation: np.ndarray) -> ArrayRaster:
    """Whole-globe source raster with non-uniform samples."""
    return ArrayRaster(global_elevation, GLOBAL_TRANSFORM)


@pytest.fixture
def flat_raster() -> ArrayRaster:
    """Whole-globe source raster where every sample is 42."""
    return ArrayRaster(np.full((180, 360), 42, dtype=np.int16), GLOBAL_TRANSFORM)


def write_uniform_sectors(
    base: Path,
    dataset: str,
    sectors: Iterable[Sector],
    level: int,
    value,
    dtype=np.int16,
) -> Path:
    """Write 1x1 sector files holding ``value`` and return their directory.

    The TIFF is encoded once and copied, so covering a whole face stays cheap.
    """
    directory = base / reprojected_dirname(dataset)
    directory.mkdir(parents=True, exist_ok=True)
    data = VIPSBackend.encode_tiff(np.full((1, 1), value, dtype=dtype))
    for sector in sectors:
        (directory / sector_filename(dataset, sector, level)).write_bytes(data)
    return directory


@pytest.fixture
def uniform_sectors():
    """Writer for cheap 1x1 sector files (see :func:`write_uniform_sectors`)."""
    return write_uniform_sectors
