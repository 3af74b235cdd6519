"""
Exclusion geometry for Fur Mask Baker.

Fur is shortened wherever another surface (clothing, accessories, a second
body mesh) sits close above the skin. The distance field asks the collider how
far each vertex can see along its ray direction before hitting that geometry.

ExclusionCollider is the interface the solver depends on. Implementations
answer single and batched ray queries; a miss is reported as None (single) or
np.inf (batch). Open3DCollider is the production implementation: it merges
any number of meshes into one Open3D RaycastingScene (Embree BVH) and casts
each batch of rays in a single call.
"""

import logging
from typing import Protocol

import numpy as np

logger = logging.getLogger(__name__)


class ExclusionCollider(Protocol):
    """Ray-intersection query against combined exclusion geometry."""

    def raycast(self, origin, direction, max_distance):
        """Distance to the first hit within max_distance, or None."""
        ...

    def raycast_batch(self, origins, directions, max_distance):
        """(N,) hit distances for (N, 3) rays; np.inf where nothing is hit."""
        ...


class Open3DCollider:
    """
    ExclusionCollider backed by open3d.t.geometry.RaycastingScene.

    Args:
        meshes: Iterable of trimesh.Trimesh, or of (vertices, triangles)
                array pairs, in world space.
    """

    def __init__(self, meshes):
        import open3d as o3d

        self._o3d = o3d
        self.scene = o3d.t.geometry.RaycastingScene()
        self.triangle_count = 0

        for mesh in meshes:
            if hasattr(mesh, "faces"):
                vertices, triangles = mesh.vertices, mesh.faces
            else:
                vertices, triangles = mesh
            vertices = np.asarray(vertices, dtype=np.float64).reshape(-1, 3)
            triangles = np.asarray(triangles, dtype=np.int32).reshape(-1, 3)
            if len(triangles) == 0:
                continue

            mesh_o3d = o3d.geometry.TriangleMesh()
            mesh_o3d.vertices = o3d.utility.Vector3dVector(vertices)
            mesh_o3d.triangles = o3d.utility.Vector3iVector(triangles)
            self.scene.add_triangles(o3d.t.geometry.TriangleMesh.from_legacy(mesh_o3d))
            self.triangle_count += len(triangles)

        logger.info("Exclusion collider built with %s triangles", f"{self.triangle_count:,}")

    @property
    def is_empty(self) -> bool:
        return self.triangle_count == 0

    def raycast_batch(self, origins, directions, max_distance):
        origins = np.asarray(origins, dtype=np.float32).reshape(-1, 3)
        directions = np.asarray(directions, dtype=np.float32).reshape(-1, 3)
        if len(origins) == 0:
            return np.zeros(0, dtype=np.float64)

        rays = np.concatenate([origins, directions], axis=1)
        rays_tensor = self._o3d.core.Tensor(rays, dtype=self._o3d.core.Dtype.Float32)
        t_hit = self.scene.cast_rays(rays_tensor)["t_hit"].numpy().astype(np.float64)

        # RaycastingScene reports distances in units of the direction length.
        lengths = np.linalg.norm(directions, axis=1).astype(np.float64)
        distances = t_hit * lengths
        distances[~np.isfinite(distances) | (distances > max_distance)] = np.inf
        return distances

    def raycast(self, origin, direction, max_distance):
        distance = self.raycast_batch([origin], [direction], max_distance)[0]
        return None if not np.isfinite(distance) else float(distance)
