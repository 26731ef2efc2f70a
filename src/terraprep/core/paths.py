"""Output layout, canonical file names and atomic writes."""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any

from terraprep.config import RASTER_SUFFIX

from .types import Node, Sector


def reprojected_dirname(dataset: str) -> str:
    return f"{dataset}_reprojected"


def tiles_dirname(dataset: str) -> str:
    return f"tiles/{dataset}"


def sector_filename(dataset: str, sector: Sector, level: int) -> str:
    """Canonical name of one pyramid level of a sector."""
    return (
        f"{dataset}_S-{sector.face}-{level:02d}x{sector.x:02d}x{sector.y:02d}"
        f"{RASTER_SUFFIX}"
    )


def tile_filename(dataset: str, node: Node) -> str:
    """Canonical name of a node's tile."""
    return f"{dataset}_{node.level}_{node.face}_{node.x}x{node.y}{RASTER_SUFFIX}"


def scan_directory(base: Path, suffix: str | Path) -> tuple[Path, set[str]]:
    """Create ``base/suffix`` if needed and list the names already inside it.

    The listing is taken once, up front; anything named in it is treated as
    complete by the caller.
    """
    directory = Path(base) / suffix
    directory.mkdir(parents=True, exist_ok=True)
    existing = {entry.name for entry in directory.iterdir() if entry.is_file()}
    return directory, existing


def atomic_write_bytes(path: Path, data: bytes) -> None:
    """Atomically write bytes to a file.

    Writes to a temp file in the same directory, then replaces the target.
    ``os.replace()`` is atomic on both POSIX and Windows (same filesystem).
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=path.parent, suffix=".tmp", prefix=f".{path.stem}"
    )
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def atomic_json_save(path: Path, data: Any) -> None:
    """Atomically write JSON data to a file."""
    atomic_write_bytes(path, json.dumps(data, indent=2).encode("utf-8"))
