"""Shared type definitions for terraprep core module."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Callable, Iterable, NamedTuple

from terraprep.config import TILE_BORDER, TILE_RESOLUTION

#: Number of cube-sphere root faces
NUM_FACES: int = 6


class Node(NamedTuple):
    """Quadtree node on the cube-sphere.

    Attributes:
        face: Root face (0-5)
        level: Depth below the face root (0 = whole face)
        x: Column index in [0, 2**level)
        y: Row index in [0, 2**level)
    """

    face: int
    level: int
    x: int
    y: int

    @classmethod
    def root(cls, face: int) -> Node:
        return cls(face, 0, 0, 0)

    @classmethod
    def roots(cls, faces: Iterable[int] | None = None) -> list[Node]:
        """Root nodes of the given faces (all six by default)."""
        if faces is None:
            faces = range(NUM_FACES)
        return [cls.root(face) for face in faces]

    def children(self) -> list[Node]:
        """The four nodes one level deeper, row-major."""
        return [
            Node(self.face, self.level + 1, self.x * 2 + dx, self.y * 2 + dy)
            for dy in (0, 1)
            for dx in (0, 1)
        ]

    @classmethod
    def breadth_first(
        cls,
        visit: Callable[[Node], bool],
        faces: Iterable[int] | None = None,
    ) -> None:
        """Visit nodes level by level, descending where ``visit`` returns True."""
        pending = deque(cls.roots(faces))
        while pending:
            node = pending.popleft()
            if visit(node):
                pending.extend(node.children())

    @classmethod
    def to_level(
        cls, max_level: int, faces: Iterable[int] | None = None
    ) -> list[Node]:
        """All nodes with ``level <= max_level`` in breadth-first order."""
        nodes: list[Node] = []

        def collect(node: Node) -> bool:
            nodes.append(node)
            return node.level < max_level

        cls.breadth_first(collect, faces)
        return nodes


class Sector(NamedTuple):
    """Fixed-grid reprojection cell of a face, independent of level.

    Attributes:
        face: Root face (0-5)
        x: Column in [0, SECTORS_PER_SIDE)
        y: Row in [0, SECTORS_PER_SIDE)
    """

    face: int
    x: int
    y: int


class SectorKey(NamedTuple):
    """Sector cache key: one pyramid level of one sector."""

    sector: Sector
    level: int


@dataclass(frozen=True)
class LayerParams:
    """Texture parameters of the layer tiles are cut for.

    Attributes:
        resolution: Tile width/height in pixels, border included
        border: Border pixels on each side
    """

    resolution: int = TILE_RESOLUTION
    border: int = TILE_BORDER

    @property
    def inner_resolution(self) -> int:
        """Pixels covering the node itself."""
        return self.resolution - 2 * self.border
