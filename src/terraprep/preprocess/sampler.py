"""Geotransform sampling of large source rasters.

Source rasters are addressed through a GDAL-style affine geotransform
``(origin_x, pixel_width, row_rotation, origin_y, column_rotation, pixel_height)``
in geographic degrees (x = longitude, y = latitude). Lookups are batched: a
whole sector's worth of pixel coordinates is resolved in one call, reading the
raster block by block so that rasters far larger than memory can be sampled.
"""

from __future__ import annotations

import logging
import math
import threading
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, Sequence

import numpy as np
import rasterio
from rasterio.windows import Window

from terraprep.errors import GeotransformError

logger = logging.getLogger(__name__)

#: Supported lookup modes
SAMPLING_MODES: tuple[str, ...] = ("nearest", "bilinear")


class SourceRaster(Protocol):
    """What the reprojection stage needs from a source dataset."""

    def geotransform(self) -> tuple[float, float, float, float, float, float]: ...

    def batch_lookup(self, points: np.ndarray, out: np.ndarray) -> None:
        """Write samples at ``points`` (``(N, 2)`` pixel x/y) into ``out``.

        Points outside the raster's coverage leave ``out`` untouched, so the
        caller pre-fills it with its no-data value.
        """
        ...


@dataclass(frozen=True)
class Geotransform:
    """Validated north-up affine geotransform."""

    origin_x: float
    pixel_width: float
    row_rotation: float
    origin_y: float
    column_rotation: float
    pixel_height: float

    @classmethod
    def from_gdal(
        cls, values: Sequence[float], dataset: str | None = None
    ) -> Geotransform:
        """Build from a 6-element GDAL geotransform, rejecting unusable ones.

        Raises:
            GeotransformError: Wrong arity, non-finite values, zero pixel size
                or rotation terms
        """
        values = tuple(values)
        if len(values) != 6:
            raise GeotransformError(
                f"geotransform needs 6 values, got {len(values)}", dataset=dataset
            )
        try:
            values = tuple(float(v) for v in values)
        except (TypeError, ValueError) as e:
            raise GeotransformError(f"non-numeric geotransform: {e}", dataset=dataset) from e
        if not all(math.isfinite(v) for v in values):
            raise GeotransformError(
                f"non-finite geotransform {values}", dataset=dataset
            )
        transform = cls(*values)
        if transform.pixel_width == 0 or transform.pixel_height == 0:
            raise GeotransformError(
                f"zero pixel size in geotransform {values}", dataset=dataset
            )
        if transform.row_rotation != 0 or transform.column_rotation != 0:
            raise GeotransformError(
                f"rotated geotransforms are not supported: {values}", dataset=dataset
            )
        return transform

    def as_gdal(self) -> tuple[float, float, float, float, float, float]:
        return (
            self.origin_x,
            self.pixel_width,
            self.row_rotation,
            self.origin_y,
            self.column_rotation,
            self.pixel_height,
        )

    def to_pixel(
        self, latitude: np.ndarray, longitude: np.ndarray
    ) -> tuple[np.ndarray, np.ndarray]:
        """Fractional pixel x/y of latitude/longitude in degrees."""
        px = (np.asarray(longitude) - self.origin_x) / self.pixel_width
        py = (np.asarray(latitude) - self.origin_y) / self.pixel_height
        return px, py

    def to_geographic(
        self, px: np.ndarray, py: np.ndarray
    ) -> tuple[np.ndarray, np.ndarray]:
        """Inverse of :meth:`to_pixel`: latitude/longitude in degrees."""
        longitude = self.origin_x + np.asarray(px) * self.pixel_width
        latitude = self.origin_y + np.asarray(py) * self.pixel_height
        return latitude, longitude


class GeoRaster(ABC):
    """Block-virtualized raster with batched nearest or bilinear lookups.

    Subclasses only provide :meth:`_read_window`. Recently read blocks are kept
    in a small LRU so that neighbouring sectors don't reread the same data.

    Args:
        width: Raster width in pixels
        height: Raster height in pixels
        transform: GDAL geotransform
        mode: ``"nearest"`` or ``"bilinear"``
        source_no_data: Value marking voids in the source; voids are left
            unresolved so they become the dataset's no-data value
        block_size: Edge length of the blocks read from the source
        cache_blocks: Blocks kept in memory between lookups
    """

    #: Sample type of the source band, set by subclasses
    dtype: np.dtype

    def __init__(
        self,
        width: int,
        height: int,
        transform: Sequence[float],
        mode: str = "nearest",
        source_no_data: float | None = None,
        block_size: int = 1024,
        cache_blocks: int = 16,
    ) -> None:
        if mode not in SAMPLING_MODES:
            raise ValueError(f"unknown sampling mode {mode!r}, expected {SAMPLING_MODES}")
        self.width = width
        self.height = height
        self.transform = Geotransform.from_gdal(transform)
        self.mode = mode
        self.source_no_data = source_no_data
        self.block_size = block_size
        self._cache_blocks = cache_blocks
        self._blocks: OrderedDict[tuple[int, int], np.ndarray] = OrderedDict()
        self._blocks_lock = threading.Lock()

    @abstractmethod
    def _read_window(self, row: int, col: int, height: int, width: int) -> np.ndarray:
        """Read ``height`` x ``width`` samples starting at ``(row, col)``."""

    def geotransform(self) -> tuple[float, float, float, float, float, float]:
        return self.transform.as_gdal()

    def batch_lookup(self, points: np.ndarray, out: np.ndarray) -> None:
        """Sample the raster at ``points`` (``(N, 2)`` fractional pixel x/y).

        Only resolved samples are written to ``out``.
        """
        points = np.asarray(points, dtype=np.float64).reshape(-1, 2)
        if out.shape[0] != points.shape[0]:
            raise ValueError(
                f"output holds {out.shape[0]} samples for {points.shape[0]} points"
            )
        if self.mode == "bilinear":
            self._lookup_bilinear(points, out)
        else:
            self._lookup_nearest(points, out)

    def _lookup_nearest(self, points: np.ndarray, out: np.ndarray) -> None:
        px, py = points[:, 0], points[:, 1]
        valid = np.isfinite(px) & np.isfinite(py)
        valid &= (px >= 0) & (px < self.width) & (py >= 0) & (py < self.height)
        index = np.flatnonzero(valid)
        if index.size == 0:
            return
        cols = np.floor(px[index]).astype(np.int64)
        rows = np.floor(py[index]).astype(np.int64)
        values = self._gather(rows, cols)
        keep = self._not_void(values)
        out[index[keep]] = values[keep]

    def _lookup_bilinear(self, points: np.ndarray, out: np.ndarray) -> None:
        px, py = points[:, 0], points[:, 1]
        valid = np.isfinite(px) & np.isfinite(py)
        valid &= (px >= 0) & (px < self.width) & (py >= 0) & (py < self.height)
        index = np.flatnonzero(valid)
        if index.size == 0:
            return
        # Sample centers sit at half-pixel offsets.
        x = px[index] - 0.5
        y = py[index] - 0.5
        x0 = np.clip(np.floor(x), 0, self.width - 1).astype(np.int64)
        y0 = np.clip(np.floor(y), 0, self.height - 1).astype(np.int64)
        x1 = np.minimum(x0 + 1, self.width - 1)
        y1 = np.minimum(y0 + 1, self.height - 1)
        fx = np.clip(x - x0, 0.0, 1.0)
        fy = np.clip(y - y0, 0.0, 1.0)

        corners = [self._gather(r, c) for r, c in ((y0, x0), (y0, x1), (y1, x0), (y1, x1))]
        keep = np.ones(index.size, dtype=bool)
        for corner in corners:
            keep &= self._not_void(corner)
        a, b, c, d = (corner.astype(np.float64) for corner in corners)
        value = (
            a * (1 - fx) * (1 - fy)
            + b * fx * (1 - fy)
            + c * (1 - fx) * fy
            + d * fx * fy
        )
        if np.issubdtype(out.dtype, np.integer):
            info = np.iinfo(out.dtype)
            value = np.clip(np.rint(value), info.min, info.max)
        out[index[keep]] = value[keep].astype(out.dtype)

    def _not_void(self, values: np.ndarray) -> np.ndarray:
        if self.source_no_data is None:
            return np.ones(values.shape, dtype=bool)
        if isinstance(self.source_no_data, float) and math.isnan(self.source_no_data):
            return ~np.isnan(values)
        return values != self.source_no_data

    def _gather(self, rows: np.ndarray, cols: np.ndarray) -> np.ndarray:
        """Read samples at integer positions, one block at a time."""
        bs = self.block_size
        block_rows = rows // bs
        block_cols = cols // bs
        blocks_across = (self.width + bs - 1) // bs
        block_ids = block_rows * blocks_across + block_cols

        if rows.size == 0:
            return np.empty(0, dtype=self.dtype)

        values = np.empty(rows.size, dtype=self.dtype)
        for block_id in np.unique(block_ids):
            members = np.flatnonzero(block_ids == block_id)
            br, bc = divmod(int(block_id), blocks_across)
            block = self._block(br, bc)
            values[members] = block[rows[members] - br * bs, cols[members] - bc * bs]
        return values

    def _block(self, block_row: int, block_col: int) -> np.ndarray:
        key = (block_row, block_col)
        with self._blocks_lock:
            block = self._blocks.get(key)
            if block is not None:
                self._blocks.move_to_end(key)
                return block

        bs = self.block_size
        row, col = block_row * bs, block_col * bs
        block = self._read_window(
            row, col, min(bs, self.height - row), min(bs, self.width - col)
        )
        block.setflags(write=False)

        with self._blocks_lock:
            self._blocks[key] = block
            self._blocks.move_to_end(key)
            while len(self._blocks) > self._cache_blocks:
                self._blocks.popitem(last=False)
        return block


class ArrayRaster(GeoRaster):
    """Source raster held in memory as a 2-D numpy array."""

    def __init__(
        self,
        data: np.ndarray,
        transform: Sequence[float],
        mode: str = "nearest",
        source_no_data: float | None = None,
        block_size: int = 1024,
    ) -> None:
        if data.ndim != 2:
            raise ValueError(f"expected a 2-D array, got shape {data.shape}")
        super().__init__(
            width=data.shape[1],
            height=data.shape[0],
            transform=transform,
            mode=mode,
            source_no_data=source_no_data,
            block_size=block_size,
        )
        self._data = data
        self.dtype = data.dtype

    def _read_window(self, row: int, col: int, height: int, width: int) -> np.ndarray:
        return np.array(self._data[row : row + height, col : col + width])


class RasterioRaster(GeoRaster):
    """Source raster read through rasterio (GeoTIFF, VRT mosaics, ...).

    The dataset must be in geographic coordinates (longitude/latitude degrees).

    Args:
        path: Path to any raster rasterio can open
        band: 1-based band index to sample
        mode: ``"nearest"`` or ``"bilinear"``
        block_size: Edge length of windows read from the file
    """

    def __init__(
        self,
        path: Path,
        band: int = 1,
        mode: str = "nearest",
        block_size: int = 1024,
        cache_blocks: int = 16,
    ) -> None:
        self.path = Path(path)
        self._dataset = rasterio.open(self.path)
        try:
            crs = self._dataset.crs
            if crs is not None and not crs.is_geographic:
                raise GeotransformError(
                    f"{self.path.name} is not in geographic coordinates ({crs})"
                )
            super().__init__(
                width=self._dataset.width,
                height=self._dataset.height,
                transform=self._dataset.transform.to_gdal(),
                mode=mode,
                source_no_data=self._dataset.nodata,
                block_size=block_size,
                cache_blocks=cache_blocks,
            )
        except BaseException:
            self._dataset.close()
            raise
        self.band = band
        self.dtype = np.dtype(self._dataset.dtypes[band - 1])
        # rasterio dataset handles are not safe for concurrent reads
        self._read_lock = threading.Lock()
        logger.info(
            "Opened %s: %d x %d px, %s", self.path.name, self.width, self.height, self.dtype
        )

    def _read_window(self, row: int, col: int, height: int, width: int) -> np.ndarray:
        with self._read_lock:
            return self._dataset.read(self.band, window=Window(col, row, width, height))

    def close(self) -> None:
        """Close the underlying dataset."""
        self._dataset.close()

    def __enter__(self) -> RasterioRaster:
        return self

    def __exit__(self, *args) -> None:
        self.close()
