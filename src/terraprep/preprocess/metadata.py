"""Manifest types and validation for stage output directories.

Every stage directory carries a ``manifest.json`` recording the parameters its
files were produced with. Resuming is only safe with the same parameters, so a
mismatch is an error rather than a silent mix of incompatible files.
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

from terraprep.core.paths import atomic_json_save, scan_directory
from terraprep.errors import ManifestMismatchError, StageIOError

logger = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.json"
MANIFEST_VERSION = "1.0"


class ManifestStatus(Enum):
    """Status of a stage directory's manifest."""

    NOT_EXISTS = "not_exists"  # No manifest written yet
    COMPLETE = "complete"  # Readable and has all fields
    CORRUPTED = "corrupted"  # Invalid JSON or missing fields


_REQUIRED_FIELDS = (
    "version",
    "dataset",
    "stage",
    "sample_kind",
    "grid_registration",
    "max_level",
    "min_level",
    "no_data",
)


def check_manifest_status(directory: Path) -> ManifestStatus:
    """Check the manifest of a stage directory.

    Args:
        directory: Stage output directory

    Returns:
        ManifestStatus indicating the state
    """
    path = directory / MANIFEST_NAME
    if not path.exists():
        return ManifestStatus.NOT_EXISTS
    try:
        with open(path) as f:
            data = json.load(f)
        for name in _REQUIRED_FIELDS:
            if name not in data:
                return ManifestStatus.CORRUPTED
    except (json.JSONDecodeError, TypeError, UnicodeDecodeError):
        return ManifestStatus.CORRUPTED
    return ManifestStatus.COMPLETE


@dataclass
class DatasetManifest:
    """Parameters a stage directory was produced with."""

    dataset: str
    stage: str
    sample_kind: str
    grid_registration: bool
    max_level: int
    min_level: int
    no_data: float
    inner_resolution: int | None = None
    tile_resolution: int | None = None
    tile_border: int | None = None
    version: str = MANIFEST_VERSION
    created_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "dataset": self.dataset,
            "stage": self.stage,
            "sample_kind": self.sample_kind,
            "grid_registration": self.grid_registration,
            "max_level": self.max_level,
            "min_level": self.min_level,
            "no_data": self.no_data,
            "inner_resolution": self.inner_resolution,
            "tile_resolution": self.tile_resolution,
            "tile_border": self.tile_border,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> DatasetManifest:
        return cls(
            version=data["version"],
            dataset=data["dataset"],
            stage=data["stage"],
            sample_kind=data["sample_kind"],
            grid_registration=data["grid_registration"],
            max_level=data["max_level"],
            min_level=data["min_level"],
            no_data=data["no_data"],
            inner_resolution=data.get("inner_resolution"),
            tile_resolution=data.get("tile_resolution"),
            tile_border=data.get("tile_border"),
            created_at=data.get("created_at", ""),
        )

    def differences(self, other: DatasetManifest) -> list[str]:
        """Names of the parameters that differ, ignoring timestamps."""
        names = [
            "dataset",
            "stage",
            "sample_kind",
            "grid_registration",
            "max_level",
            "min_level",
            "inner_resolution",
            "tile_resolution",
            "tile_border",
        ]
        diffs = [n for n in names if getattr(self, n) != getattr(other, n)]
        if not _same_value(self.no_data, other.no_data):
            diffs.append("no_data")
        return diffs


def _same_value(a: float, b: float) -> bool:
    if isinstance(a, float) and isinstance(b, float) and math.isnan(a) and math.isnan(b):
        return True
    return a == b


def ensure_manifest(directory: Path, manifest: DatasetManifest) -> None:
    """Write ``manifest`` to ``directory``, or verify the one already there.

    A corrupted manifest is replaced; the data files it described are trusted
    by name as usual.

    Raises:
        ManifestMismatchError: If the directory was built with other parameters
    """
    path = directory / MANIFEST_NAME
    status = check_manifest_status(directory)

    if status == ManifestStatus.COMPLETE:
        with open(path) as f:
            existing = DatasetManifest.from_dict(json.load(f))
        diffs = existing.differences(manifest)
        if diffs:
            raise ManifestMismatchError(
                f"{directory} was built with different {', '.join(diffs)}",
                dataset=manifest.dataset,
            )
        return

    if status == ManifestStatus.CORRUPTED:
        logger.warning("Found corrupted manifest in %s, rewriting", directory)
    atomic_json_save(path, manifest.to_dict())


def prepare_stage_directory(
    base: Path, suffix: str, manifest: DatasetManifest
) -> tuple[Path, set[str]]:
    """Create and list a stage directory, then check or write its manifest.

    Returns:
        The directory and the names of the files already in it

    Raises:
        ManifestMismatchError: If the directory was built with other parameters
        StageIOError: If the directory cannot be created, listed or written
    """
    try:
        directory, existing = scan_directory(base, suffix)
        ensure_manifest(directory, manifest)
    except OSError as e:
        raise StageIOError(
            f"cannot prepare {Path(base) / suffix}: {e}", dataset=manifest.dataset
        ) from e
    return directory, existing
