"""Shared fixtures: tiny synthetic meshes and a plane collider."""

import logging

import numpy as np
import pytest

from fur_mask_baker.core.mesh_data import MeshSnapshot, Submesh


def build_snapshot(vertices, uvs, triangle_lists, normals=None, mesh_id="test-mesh",
                   materials=None, renderer_path="Body", tangents=None):
    vertices = np.asarray(vertices, dtype=np.float64)
    if normals is None:
        normals = np.tile([0.0, 0.0, 1.0], (len(vertices), 1))
    materials = materials or [f"Mat{i}" for i in range(len(triangle_lists))]
    submeshes = tuple(
        Submesh(np.asarray(tris), materials[i], renderer_path, i)
        for i, tris in enumerate(triangle_lists)
    )
    return MeshSnapshot(mesh_id, vertices, normals, uvs, submeshes, tangents=tangents)


class PlaneCollider:
    """Infinite plane z = height; counts every ray it is asked to cast."""

    def __init__(self, height):
        self.height = height
        self.rays = 0

    def raycast_batch(self, origins, directions, max_distance):
        origins = np.asarray(origins, dtype=np.float64)
        directions = np.asarray(directions, dtype=np.float64)
        self.rays += len(origins)
        dz = directions[:, 2]
        with np.errstate(divide="ignore", invalid="ignore"):
            t = (self.height - origins[:, 2]) / dz
        hit = (dz != 0) & (t >= 0) & (t <= max_distance)
        return np.where(hit, t, np.inf)

    def raycast(self, origin, direction, max_distance):
        d = self.raycast_batch([origin], [direction], max_distance)[0]
        return None if np.isinf(d) else float(d)


class FailingCollider:
    def raycast_batch(self, origins, directions, max_distance):
        raise RuntimeError("collider exploded")

    def raycast(self, origin, direction, max_distance):
        raise RuntimeError("collider exploded")


@pytest.fixture(autouse=True)
def reset_package_logger():
    """Drop handlers setup_logging() attached during a test."""
    yield
    logger = logging.getLogger("fur_mask_baker")
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def make_snapshot():
    return build_snapshot


@pytest.fixture
def unit_square():
    """Two triangles covering UV space, lying in the z = 0 plane."""
    verts = [(0, 0, 0), (1, 0, 0), (1, 1, 0), (0, 1, 0)]
    uvs = [(0, 0), (1, 0), (1, 1), (0, 1)]
    return build_snapshot(verts, uvs, [[[0, 1, 2], [0, 2, 3]]], materials=["Body"])


@pytest.fixture
def grid_mesh():
    """4x4 vertex grid (18 triangles) over UV space, one submesh."""
    n = 4
    verts, uvs = [], []
    for j in range(n):
        for i in range(n):
            u, v = i / (n - 1), j / (n - 1)
            verts.append((u, v, 0.0))
            uvs.append((u, v))
    tris = []
    for j in range(n - 1):
        for i in range(n - 1):
            a = j * n + i
            b, c, d = a + 1, a + n + 1, a + n
            tris += [[a, b, c], [a, c, d]]
    return build_snapshot(verts, uvs, [tris], materials=["Body"])


@pytest.fixture
def two_islands():
    """Two disjoint quads: one in the left half of UV space, one in the right."""
    verts = [(0, 0, 0), (1, 0, 0), (1, 1, 0), (0, 1, 0),
             (2, 0, 0), (3, 0, 0), (3, 1, 0), (2, 1, 0)]
    uvs = [(0.0, 0.0), (0.4, 0.0), (0.4, 1.0), (0.0, 1.0),
           (0.6, 0.0), (1.0, 0.0), (1.0, 1.0), (0.6, 1.0)]
    tris = [[0, 1, 2], [0, 2, 3], [4, 5, 6], [4, 6, 7]]
    return build_snapshot(verts, uvs, [tris], materials=["Body"])


@pytest.fixture
def plane_collider():
    return PlaneCollider


@pytest.fixture
def failing_collider():
    return FailingCollider()
