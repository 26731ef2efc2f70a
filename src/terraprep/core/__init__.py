"""Cube-sphere addressing, sector geometry and shared types."""

from .types import LayerParams, Node, Sector, SectorKey
from .grid import SectorGrid
from .samples import SampleKind, Reducer, get_reducer

__all__ = [
    "LayerParams",
    "Node",
    "Sector",
    "SectorKey",
    "SectorGrid",
    "SampleKind",
    "Reducer",
    "get_reducer",
]
