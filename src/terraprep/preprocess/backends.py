"""Raster codec backend using PyVIPS.

Sectors and tiles are single-band TIFFs with LZW-compressed strips. libvips
does the encoding and decoding; this module converts between its images and
numpy arrays of the dataset's sample kind.

Usage:
    from terraprep.preprocess.backends import VIPSBackend

    data = VIPSBackend.encode_tiff(heights)
    heights = VIPSBackend.decode_tiff(data)
"""

from __future__ import annotations

import os
from typing import Any

import numpy as np

from terraprep.config import TIFF_COMPRESSION
from terraprep.core.samples import SampleKind
from terraprep.errors import CodecError

# pyvips is first imported quietly in terraprep/__init__.py
_HAS_VIPS = False
_vips_import_error: str | None = None
pyvips: Any = None

try:
    import pyvips
    _HAS_VIPS = True
except (ImportError, OSError) as e:
    _vips_import_error = str(e)

_DTYPES_BY_FORMAT: dict[str, np.dtype] = {
    kind.vips_format: kind.dtype for kind in SampleKind
}


def is_vips_available() -> bool:
    """Check if PyVIPS is available.

    Returns:
        True if pyvips is installed and working
    """
    return _HAS_VIPS


def get_vips_import_error() -> str | None:
    """Get the error message if PyVIPS failed to import.

    Returns:
        Error message string, or None if pyvips is available
    """
    return _vips_import_error


def _require_vips() -> None:
    if not _HAS_VIPS:
        raise RuntimeError(f"PyVIPS is not available: {_vips_import_error}")


class VIPSBackend:
    """PyVIPS-based raster codec.

    Requires pyvips to be installed: pip install pyvips
    """

    @staticmethod
    def from_numpy(arr: np.ndarray) -> "pyvips.Image":
        """Convert a 2-D numpy array to a single-band pyvips image.

        Args:
            arr: numpy array (H, W) of uint8, int16 or float32

        Returns:
            pyvips.Image with the matching band format
        """
        _require_vips()
        if arr.ndim != 2:
            raise ValueError(f"expected a 2-D array, got shape {arr.shape}")

        kind = SampleKind.from_dtype(arr.dtype)
        height, width = arr.shape
        arr = np.ascontiguousarray(arr)

        return pyvips.Image.new_from_memory(
            arr.tobytes(), width, height, 1, kind.vips_format
        )

    @staticmethod
    def to_numpy(img: "pyvips.Image") -> np.ndarray:
        """Convert a single-band pyvips image to a read-only numpy array.

        Args:
            img: pyvips.Image

        Returns:
            numpy array (H, W) in the image's sample type
        """
        if img.bands != 1:
            raise ValueError(f"expected a single band image, got {img.bands} bands")
        try:
            dtype = _DTYPES_BY_FORMAT[img.format]
        except KeyError:
            raise ValueError(f"unsupported band format {img.format!r}") from None

        data = img.write_to_memory()
        return np.ndarray(buffer=data, dtype=dtype, shape=(img.height, img.width))

    @staticmethod
    def encode_tiff(arr: np.ndarray, compression: str = TIFF_COMPRESSION) -> bytes:
        """Encode a 2-D array as a strip-organised TIFF.

        Args:
            arr: Samples to encode
            compression: TIFF compression name understood by libvips

        Returns:
            TIFF file contents
        """
        img = VIPSBackend.from_numpy(arr)
        try:
            return img.write_to_buffer(".tif", compression=compression, tile=False)
        except pyvips.error.Error as e:
            raise CodecError(f"TIFF encode failed: {e}") from e

    @staticmethod
    def decode_tiff(data: bytes) -> np.ndarray:
        """Decode TIFF bytes into a read-only numpy array.

        Args:
            data: TIFF file contents

        Returns:
            numpy array (H, W)
        """
        _require_vips()
        try:
            img = pyvips.Image.new_from_buffer(data, "", access="sequential")
            return VIPSBackend.to_numpy(img)
        except pyvips.error.Error as e:
            raise CodecError(f"TIFF decode failed: {e}") from e


def get_backend() -> type[VIPSBackend]:
    """Get the raster codec backend.

    Returns:
        VIPSBackend class

    Raises:
        RuntimeError: If PyVIPS is not available
    """
    if not _HAS_VIPS:
        raise RuntimeError(
            f"PyVIPS is required but not available: {_vips_import_error}\n"
            "Install pyvips and libvips: pip install pyvips[binary]"
        )
    return VIPSBackend


def set_vips_concurrency(num_threads: int | str) -> None:
    """Set the number of threads VIPS uses internally.

    This affects VIPS's internal parallelism, separate from the stages'
    ThreadPoolExecutor workers.

    Raises:
        RuntimeError: If PyVIPS is not available
    """
    _require_vips()
    os.environ["VIPS_CONCURRENCY"] = str(num_threads)
    pyvips.concurrency_set(int(num_threads))
