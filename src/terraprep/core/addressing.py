"""Cube-sphere addressing: node grid positions, cube space and polar coordinates.

Cube space ("cspace") is the surface of the cube ``[-1, 1]^3``. Each face is a
plane with one coordinate fixed at +/-1; the other two are the face-local
``(u, v)`` coordinates in ``[-1, 1]``. Positions outside a face's square (the
borders around it) stay on the same plane, so they can be inverted back to that
face without ambiguity.

All functions take and return numpy arrays so whole sectors are converted in
one call.
"""

from __future__ import annotations

import math

import numpy as np

from .types import Node

#: Approximate length of a cube face edge projected on the Earth, in meters
FACE_SIDE_METERS: float = 10_018_000.0

# Cell-size named levels: at level L a 512 px tile spans FACE_SIDE / 2**L,
# so one cell is FACE_SIDE / (512 << L).
LEVEL_CELL_10KM: int = 1
LEVEL_CELL_5KM: int = 2
LEVEL_CELL_2KM: int = 3
LEVEL_CELL_1KM: int = 4
LEVEL_CELL_610M: int = 5
LEVEL_CELL_305M: int = 6
LEVEL_CELL_153M: int = 7
LEVEL_CELL_76M: int = 8
LEVEL_CELL_38M: int = 9
LEVEL_CELL_19M: int = 10
LEVEL_CELL_10M: int = 11
LEVEL_CELL_5M: int = 12
LEVEL_CELL_1M: int = 14

# face -> (normal axis, normal sign, u axis, u sign, v axis, v sign)
_FACE_AXES: dict[int, tuple[int, int, int, int, int, int]] = {
    0: (0, 1, 1, 1, 2, -1),
    1: (0, -1, 1, -1, 2, -1),
    2: (1, 1, 0, 1, 2, 1),
    3: (1, -1, 0, -1, 2, 1),
    4: (2, 1, 0, 1, 1, -1),
    5: (2, -1, 0, -1, 1, -1),
}


def cell_size_meters(level: int, inner_resolution: int = 512) -> float:
    """Approximate ground size of one tile cell at ``level``."""
    return FACE_SIDE_METERS / (inner_resolution << level)


def face_to_cspace(face: int, u: np.ndarray, v: np.ndarray) -> np.ndarray:
    """Map face-local ``(u, v)`` to cube-space points, shape ``(N, 3)``."""
    axis, sign, u_axis, u_sign, v_axis, v_sign = _FACE_AXES[face]
    u = np.asarray(u, dtype=np.float64).ravel()
    v = np.asarray(v, dtype=np.float64).ravel()
    out = np.empty((u.size, 3), dtype=np.float64)
    out[:, axis] = sign
    out[:, u_axis] = u_sign * u
    out[:, v_axis] = v_sign * v
    return out


def cspace_to_face(face: int, cspace: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """Project points onto ``face``'s plane and return its ``(u, v)``.

    Points must lie in the face's hemisphere (positive component along the
    face normal); anything else has no projection onto that face.
    """
    axis, sign, u_axis, u_sign, v_axis, v_sign = _FACE_AXES[face]
    cspace = np.atleast_2d(np.asarray(cspace, dtype=np.float64))
    normal = cspace[:, axis] * sign
    if np.any(normal <= 0):
        raise ValueError(f"points do not project onto face {face}")
    scale = 1.0 / normal
    u = u_sign * cspace[:, u_axis] * scale
    v = v_sign * cspace[:, v_axis] * scale
    return u, v


def grid_position_cspace(
    node: Node,
    x: np.ndarray,
    y: np.ndarray,
    skirt: int,
    resolution: int,
) -> np.ndarray:
    """Cube-space position of grid-registered samples of ``node``.

    A grid of ``resolution`` samples spans the node from corner to corner, with
    ``skirt`` extra samples outside each edge.
    """
    spacing = resolution - 1 - 2 * skirt
    fx = (np.asarray(x, dtype=np.float64) - skirt) / spacing
    fy = (np.asarray(y, dtype=np.float64) - skirt) / spacing
    return _node_to_cspace(node, fx, fy)


def cell_position_cspace(
    node: Node,
    x: np.ndarray,
    y: np.ndarray,
    skirt: int,
    resolution: int,
) -> np.ndarray:
    """Cube-space position of the centers of cell-registered samples of ``node``."""
    spacing = resolution - 2 * skirt
    fx = (np.asarray(x, dtype=np.float64) - skirt + 0.5) / spacing
    fy = (np.asarray(y, dtype=np.float64) - skirt + 0.5) / spacing
    return _node_to_cspace(node, fx, fy)


def cspace_to_grid_position(
    node: Node,
    cspace: np.ndarray,
    skirt: int,
    resolution: int,
) -> tuple[np.ndarray, np.ndarray]:
    """Inverse of :func:`grid_position_cspace` (fractional grid indices)."""
    fx, fy = _cspace_to_node(node, cspace)
    spacing = resolution - 1 - 2 * skirt
    return fx * spacing + skirt, fy * spacing + skirt


def cspace_to_cell_position(
    node: Node,
    cspace: np.ndarray,
    skirt: int,
    resolution: int,
) -> tuple[np.ndarray, np.ndarray]:
    """Inverse of :func:`cell_position_cspace` (fractional cell indices)."""
    fx, fy = _cspace_to_node(node, cspace)
    spacing = resolution - 2 * skirt
    return fx * spacing + skirt - 0.5, fy * spacing + skirt - 0.5


def cspace_to_polar(cspace: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """Latitude and longitude in radians of cube-space points."""
    cspace = np.atleast_2d(np.asarray(cspace, dtype=np.float64))
    norm = np.linalg.norm(cspace, axis=1)
    latitude = np.arcsin(np.clip(cspace[:, 2] / norm, -1.0, 1.0))
    longitude = np.arctan2(cspace[:, 1], cspace[:, 0])
    return latitude, longitude


def polar_to_cspace(latitude: np.ndarray, longitude: np.ndarray) -> np.ndarray:
    """Unit-sphere points for latitude/longitude in radians, shape ``(N, 3)``."""
    latitude = np.asarray(latitude, dtype=np.float64).ravel()
    longitude = np.asarray(longitude, dtype=np.float64).ravel()
    cos_lat = np.cos(latitude)
    return np.stack(
        [cos_lat * np.cos(longitude), cos_lat * np.sin(longitude), np.sin(latitude)],
        axis=1,
    )


def node_center_polar(node: Node) -> tuple[float, float]:
    """Latitude/longitude in degrees of a node's center."""
    cspace = _node_to_cspace(node, np.array([0.5]), np.array([0.5]))
    lat, lon = cspace_to_polar(cspace)
    return math.degrees(float(lat[0])), math.degrees(float(lon[0]))


def _node_to_cspace(node: Node, fx: np.ndarray, fy: np.ndarray) -> np.ndarray:
    scale = 2.0 / (1 << node.level)
    u = (node.x + fx) * scale - 1.0
    v = (node.y + fy) * scale - 1.0
    return face_to_cspace(node.face, u, v)


def _cspace_to_node(node: Node, cspace: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    u, v = cspace_to_face(node.face, cspace)
    scale = 2.0 / (1 << node.level)
    return (u + 1.0) / scale - node.x, (v + 1.0) / scale - node.y
