"""Centralized configuration for terraprep.

All tunable parameters are defined here with sensible defaults.
Values can be overridden via environment variables.

Environment Variables:
    TERRAPREP_SECTOR_CACHE_SIZE: Decoded sectors kept by the sector cache (default: 32)
    TERRAPREP_REPROJECT_BATCH: Sectors reprojected per batch (default: 16)
    TERRAPREP_MAX_IN_FLIGHT_TILES: Tile extractions admitted at once (default: 16)
    TERRAPREP_WORKERS: CPU worker threads (default: cpu count)
    TERRAPREP_IO_WORKERS: Threads used for file reads (default: 4)
    TERRAPREP_MEMORY_BUDGET_MB: Transient memory budget in MB, 0 = unlimited (default: 0)
    TERRAPREP_VIPS_CONCURRENCY: VIPS internal thread count (default: 4)
"""

from __future__ import annotations

import logging
import os

logger = logging.getLogger(__name__)


def _get_env_int(name: str, default: int) -> int:
    """Get an integer from environment variable with fallback."""
    value = os.environ.get(name)
    if value is not None:
        try:
            return int(value)
        except ValueError:
            logger.warning(
                "Invalid integer for %s: %r, using default %d", name, value, default
            )
    return default


def _get_env_str(name: str, default: str) -> str:
    """Get a string from environment variable with fallback."""
    return os.environ.get(name, default)


# =============================================================================
# Cube-sphere grid
# =============================================================================

#: Sectors along each side of a cube face
SECTORS_PER_SIDE: int = 65

#: Default tile resolution in pixels, border included
TILE_RESOLUTION: int = 516

#: Default tile border in pixels
TILE_BORDER: int = 2

#: Pixels spanned by one node at its own level (tile minus both borders)
TILE_INNER_RESOLUTION: int = TILE_RESOLUTION - 2 * TILE_BORDER

#: Largest value a sector pixel count may take
MAX_SECTOR_PIXELS: int = 2**32 - 1


# =============================================================================
# Encoding
# =============================================================================

#: TIFF compression used for sectors and tiles
TIFF_COMPRESSION: str = "lzw"

#: Extension of sector and tile files
RASTER_SUFFIX: str = ".tiff"


# =============================================================================
# Concurrency
# =============================================================================

#: Sectors processed per reprojection batch
REPROJECT_BATCH_SIZE: int = _get_env_int("TERRAPREP_REPROJECT_BATCH", 16)

#: Tile extractions allowed in flight
MAX_IN_FLIGHT_TILES: int = _get_env_int("TERRAPREP_MAX_IN_FLIGHT_TILES", 16)

#: CPU worker threads for resampling, compositing and encoding
CPU_WORKERS: int = _get_env_int("TERRAPREP_WORKERS", os.cpu_count() or 4)

#: Threads for sector file reads
IO_WORKERS: int = _get_env_int("TERRAPREP_IO_WORKERS", 4)

#: Decoded sectors kept resident by the sector cache
SECTOR_CACHE_SIZE: int = _get_env_int("TERRAPREP_SECTOR_CACHE_SIZE", 32)

#: Transient memory budget in MB (0 disables the limit)
MEMORY_BUDGET_MB: int = _get_env_int("TERRAPREP_MEMORY_BUDGET_MB", 0)

#: Per-sample scratch bytes reserved during reprojection (coordinates + index)
REPROJECT_SCRATCH_BYTES: int = 16

#: VIPS internal concurrency (threads)
VIPS_CONCURRENCY: str = _get_env_str("TERRAPREP_VIPS_CONCURRENCY", "4")


# =============================================================================
# Validation
# =============================================================================


def _validate_config() -> None:
    """Validate configuration values and log warnings for out-of-range settings."""
    global REPROJECT_BATCH_SIZE, MAX_IN_FLIGHT_TILES, CPU_WORKERS, IO_WORKERS
    global SECTOR_CACHE_SIZE, MEMORY_BUDGET_MB

    if REPROJECT_BATCH_SIZE < 1:
        logger.warning(
            "REPROJECT_BATCH_SIZE=%d is too low, clamping to 1", REPROJECT_BATCH_SIZE
        )
        REPROJECT_BATCH_SIZE = 1

    if MAX_IN_FLIGHT_TILES < 1:
        logger.warning(
            "MAX_IN_FLIGHT_TILES=%d is too low, clamping to 1", MAX_IN_FLIGHT_TILES
        )
        MAX_IN_FLIGHT_TILES = 1

    if CPU_WORKERS < 1:
        logger.warning("CPU_WORKERS=%d is too low, clamping to 1", CPU_WORKERS)
        CPU_WORKERS = 1

    if IO_WORKERS < 1:
        logger.warning("IO_WORKERS=%d is too low, clamping to 1", IO_WORKERS)
        IO_WORKERS = 1

    if SECTOR_CACHE_SIZE < 1:
        logger.warning(
            "SECTOR_CACHE_SIZE=%d is too low, clamping to 1", SECTOR_CACHE_SIZE
        )
        SECTOR_CACHE_SIZE = 1

    if MEMORY_BUDGET_MB < 0:
        logger.warning(
            "MEMORY_BUDGET_MB=%d is negative, disabling the limit", MEMORY_BUDGET_MB
        )
        MEMORY_BUDGET_MB = 0


_validate_config()
