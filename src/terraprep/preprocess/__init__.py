"""Preprocessing pipeline: source raster -> sector pyramids -> node tiles."""

from .backends import (
    is_vips_available,
    VIPSBackend,
)
from .budget import MemoryBudget, default_budget
from .cache import SectorCache
from .metadata import (
    DatasetManifest,
    ManifestStatus,
    check_manifest_status,
)
from .progress import ProgressReporter
from .reproject import (
    ReprojectResult,
    SectorReprojector,
    reproject_dataset,
)
from .sampler import (
    ArrayRaster,
    Geotransform,
    RasterioRaster,
)
from .tiles import (
    TileExtractor,
    TileResult,
    load_tile,
    merge_datasets_to_tiles,
)

__all__ = [
    "ArrayRaster",
    "DatasetManifest",
    "Geotransform",
    "ManifestStatus",
    "MemoryBudget",
    "ProgressReporter",
    "RasterioRaster",
    "ReprojectResult",
    "SectorCache",
    "SectorReprojector",
    "TileExtractor",
    "TileResult",
    "VIPSBackend",
    "check_manifest_status",
    "default_budget",
    "is_vips_available",
    "load_tile",
    "merge_datasets_to_tiles",
    "reproject_dataset",
]
