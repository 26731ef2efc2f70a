"""Exception types raised by the preprocessing stages.

Every error carries the dataset and the unit (sector or tile) that was being
worked on when it was raised, so a failed run reports what it last attempted.
"""

from __future__ import annotations


class TerrainPrepError(Exception):
    """Base class for pipeline failures.

    Args:
        message: Human readable description
        dataset: Dataset name, if known
        unit: Sector/tile description, if known
    """

    def __init__(
        self,
        message: str,
        dataset: str | None = None,
        unit: str | None = None,
    ) -> None:
        self.message = message
        self.dataset = dataset
        self.unit = unit
        super().__init__(self._format())

    def _format(self) -> str:
        context = []
        if self.dataset is not None:
            context.append(f"dataset={self.dataset}")
        if self.unit is not None:
            context.append(self.unit)
        if context:
            return f"{self.message} [{', '.join(context)}]"
        return self.message


class ResolutionOverflowError(TerrainPrepError):
    """Sector resolution squared does not fit the pixel counter."""


class GeotransformError(TerrainPrepError):
    """Source raster geotransform cannot be used for sampling."""


class SectorMissingError(TerrainPrepError):
    """A sector pyramid level expected on disk does not exist."""


class SectorDecodeError(TerrainPrepError):
    """A sector file exists but could not be decoded."""


class ManifestMismatchError(TerrainPrepError):
    """Output directory was produced with different dataset parameters."""


class StageIOError(TerrainPrepError):
    """Reading, encoding or writing an output file failed."""


class CodecError(TerrainPrepError):
    """libvips failed to encode or decode a raster."""
