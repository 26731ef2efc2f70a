"""Tests for cube-sphere node addressing and coordinate conversions."""

from __future__ import annotations

import math

import numpy as np
import pytest

from terraprep.core import addressing
from terraprep.core.addressing import (
    LEVEL_CELL_1KM,
    LEVEL_CELL_76M,
    cell_size_meters,
    cspace_to_face,
    cspace_to_polar,
    face_to_cspace,
    node_center_polar,
    polar_to_cspace,
)
from terraprep.core.types import NUM_FACES, Node


class TestNode:
    """Tests for the quadtree node type."""

    def test_children_are_row_major(self):
        """Children should be ordered left to right, then top to bottom."""
        node = Node(face=2, level=1, x=1, y=0)
        assert node.children() == [
            Node(2, 2, 2, 0),
            Node(2, 2, 3, 0),
            Node(2, 2, 2, 1),
            Node(2, 2, 3, 1),
        ]

    def test_roots_default_to_all_faces(self):
        assert Node.roots() == [Node(face, 0, 0, 0) for face in range(NUM_FACES)]

    def test_to_level_is_breadth_first(self):
        """Every node of a level should come before any node of the next."""
        nodes = Node.to_level(2, faces=[0, 4])
        assert len(nodes) == 2 * (1 + 4 + 16)
        levels = [node.level for node in nodes]
        assert levels == sorted(levels)
        assert nodes[:2] == [Node.root(0), Node.root(4)]

    def test_to_level_covers_all_faces(self):
        assert len(Node.to_level(1)) == NUM_FACES * 5

    def test_breadth_first_only_descends_when_asked(self):
        """A visit returning False should prune that subtree."""
        visited = []

        def visit(node: Node) -> bool:
            visited.append(node)
            return node.level < 2 and node.x == 0 and node.y == 0

        Node.breadth_first(visit, faces=[1])
        assert Node(1, 2, 0, 0) in visited
        assert Node(1, 2, 2, 0) not in visited
        assert len(visited) == 1 + 4 + 4

    def test_nodes_are_hashable(self):
        assert len({Node(0, 1, 0, 0), Node(0, 1, 0, 0), Node(0, 1, 1, 0)}) == 2


class TestCellSize:
    """Tests for the named cell-size levels."""

    def test_named_levels(self):
        assert 1000 < cell_size_meters(LEVEL_CELL_1KM) < 1500
        assert 70 < cell_size_meters(LEVEL_CELL_76M) < 80

    def test_each_level_halves_cell_size(self):
        assert cell_size_meters(5) == pytest.approx(cell_size_meters(4) / 2)


class TestFaces:
    """Tests for face-local to cube-space conversions."""

    @pytest.mark.parametrize(
        "face, latitude, longitude",
        [
            (0, 0.0, 0.0),
            (2, 0.0, 90.0),
            (3, 0.0, -90.0),
            (4, 90.0, None),
            (5, -90.0, None),
        ],
        ids=["+x", "+y", "-y", "north", "south"],
    )
    def test_face_centers(self, face, latitude, longitude):
        """Face roots should be centered on the cube axes."""
        lat, lon = node_center_polar(Node.root(face))
        assert lat == pytest.approx(latitude, abs=1e-9)
        if longitude is not None:
            assert lon == pytest.approx(longitude, abs=1e-9)

    def test_antimeridian_face_center(self):
        lat, lon = node_center_polar(Node.root(1))
        assert lat == pytest.approx(0.0, abs=1e-9)
        assert abs(lon) == pytest.approx(180.0)

    @pytest.mark.parametrize("face", range(NUM_FACES))
    def test_face_round_trip(self, face):
        """Projecting cube-space points back onto their face should recover (u, v)."""
        rng = np.random.default_rng(face)
        u = rng.uniform(-1.2, 1.2, 100)
        v = rng.uniform(-1.2, 1.2, 100)
        cspace = face_to_cspace(face, u, v)
        # Points off the cube surface project along the ray from the center.
        ru, rv = cspace_to_face(face, cspace * 3.0)
        np.testing.assert_allclose(ru, u, atol=1e-12)
        np.testing.assert_allclose(rv, v, atol=1e-12)

    def test_opposite_hemisphere_rejected(self):
        with pytest.raises(ValueError, match="face 0"):
            cspace_to_face(0, np.array([[-1.0, 0.0, 0.0]]))

    def test_faces_share_edges(self):
        """The u=1 edge of the +x face should also be an edge of the +y face."""
        v = np.linspace(-1, 1, 5)
        edge_of_x = face_to_cspace(0, np.ones(5), v)
        edge_of_y = face_to_cspace(2, np.ones(5), v)
        np.testing.assert_allclose(
            np.sort(edge_of_x, axis=0), np.sort(edge_of_y, axis=0)
        )


class TestPositions:
    """Tests for grid- and cell-registered sample positions."""

    def test_grid_corners_and_center(self):
        """A 3x3 grid spans the face from corner to corner."""
        root = Node.root(0)
        cspace = addressing.grid_position_cspace(
            root, np.array([0, 1, 2]), np.array([0, 1, 2]), 0, 3
        )
        np.testing.assert_allclose(cspace[0], [1.0, -1.0, 1.0])
        np.testing.assert_allclose(cspace[1], [1.0, 0.0, 0.0])
        np.testing.assert_allclose(cspace[2], [1.0, 1.0, -1.0])

    def test_cell_positions_are_centers(self):
        root = Node.root(0)
        cspace = addressing.cell_position_cspace(root, np.array([0]), np.array([1]), 0, 2)
        u, v = cspace_to_face(0, cspace)
        assert u[0] == pytest.approx(-0.5)
        assert v[0] == pytest.approx(0.5)

    def test_skirt_extends_past_edge(self):
        """Samples inside the skirt should lie outside the face square."""
        root = Node.root(3)
        cspace = addressing.grid_position_cspace(root, np.array([2]), np.array([2]), 4, 17)
        u, v = cspace_to_face(3, cspace)
        assert u[0] == pytest.approx(-1.5)
        assert v[0] == pytest.approx(-1.5)

    @pytest.mark.parametrize(
        "to_cspace, from_cspace",
        [
            (addressing.grid_position_cspace, addressing.cspace_to_grid_position),
            (addressing.cell_position_cspace, addressing.cspace_to_cell_position),
        ],
        ids=["grid", "cell"],
    )
    def test_position_round_trip(self, to_cspace, from_cspace):
        node = Node(face=5, level=3, x=6, y=1)
        x = np.arange(0, 40, 3)
        y = np.arange(40, 0, -3)
        cspace = to_cspace(node, x, y, 4, 41)
        rx, ry = from_cspace(node, cspace, 4, 41)
        np.testing.assert_allclose(rx, x, atol=1e-9)
        np.testing.assert_allclose(ry, y, atol=1e-9)


class TestPolar:
    """Tests for cube-space to latitude/longitude conversions."""

    def test_polar_round_trip(self):
        latitude = np.radians(np.array([-89.0, -45.0, 0.0, 30.0, 89.5]))
        longitude = np.radians(np.array([-179.0, -90.0, 0.0, 45.0, 179.0]))
        lat, lon = cspace_to_polar(polar_to_cspace(latitude, longitude))
        np.testing.assert_allclose(lat, latitude, atol=1e-12)
        np.testing.assert_allclose(lon, longitude, atol=1e-12)

    def test_polar_ignores_vector_length(self):
        lat, lon = cspace_to_polar(np.array([[1.0, 1.0, 0.0], [3.0, 3.0, 0.0]]))
        np.testing.assert_allclose(lon, [math.pi / 4, math.pi / 4])
        np.testing.assert_allclose(lat, [0.0, 0.0], atol=1e-15)
