"""
Per-vertex distance field for Fur Mask Baker.

Every vertex gets a value in [0, 1] (0 = no fur, 1 = full length) from three
sources, combined with a minimum rule so the most restrictive source wins:

    influence mask  min(sphere masks, bone mask), see influence.py
    distance mask   clearance to the exclusion geometry along the vertex ray,
                    normalized by max_distance

For vertex i:

    min_mask = min(combined_sphere_mask(pos[i]), bone_mask(control[i]))
    if min_mask <= MASK_EPSILON:       value = 0      (no ray is cast)
    elif no collider:                  value = min_mask
    else:
        origin = pos[i] - dir * RAY_OFFSET   (starts just behind the surface
                                              so the skin cannot self-hit)
        hit    = collider ray of length max_distance + RAY_OFFSET
        clear  = hit - RAY_OFFSET if hit else max_distance
        value  = min(min_mask, clamp(clear, 0, max_distance) / max_distance)

The ray direction is the vertex normal unless the vertex's material has a
direction map (direction_map.py).

The solver is resumable: solve_range() computes one batch of vertices, and
every computed value is memoized for the lifetime of the solver, so a bake
job can feed it one batch per step without ever recomputing a vertex.

After the field is complete, apply_uv_anchors() pins every vertex of every
anchored UV island to 0 and returns the anchor flags the smoother must
respect. apply_gamma() runs last, after smoothing.
"""

import logging
from dataclasses import dataclass

import numpy as np

from fur_mask_baker.core.direction_map import (
    AUTO_DETECT_SAMPLES,
    detect_packed_ag,
    sample_ray_directions,
)
from fur_mask_baker.core.influence import bone_mask, combined_sphere_mask
from fur_mask_baker.core.mesh_data import vertex_material_names
from fur_mask_baker.core.uv_islands import DEFAULT_UV_THRESHOLD, island_vertices

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

# Default clearance (scene units) at which fur reaches full length.
DEFAULT_MAX_DISTANCE = 0.04

# Rays start this far behind the vertex along the ray direction.
RAY_OFFSET = 1e-3

# Influence values at or below this are treated as fully masked.
MASK_EPSILON = 1e-3

# Memo sentinel for vertices not yet computed.
UNCOMPUTED = -1.0


@dataclass
class UVIslandAnchor:
    """A user-placed marker pinning one UV island of one submesh to zero."""
    renderer_path: str
    submesh_index: int
    seed_uv: tuple
    threshold: float | None = None   # None -> the bake's default threshold


class DistanceFieldSolver:
    """
    Memoizing, batch-resumable solver for the raw per-vertex field.

    Args:
        snapshot:       MeshSnapshot being baked.
        spheres:        SphereInfluence list.
        bone_control:   Optional (N,) resolved bone control array.
        collider:       Optional ExclusionCollider; None skips ray casting.
        max_distance:   Ray length M.
        direction_maps: Optional {material name: DirectionMap}.
    """

    def __init__(self, snapshot, spheres=(), bone_control=None, collider=None,
                 max_distance=DEFAULT_MAX_DISTANCE, direction_maps=None):
        if max_distance <= 0:
            raise ValueError(f"max_distance must be positive, got {max_distance}")

        self.snapshot = snapshot
        self.spheres = list(spheres)
        self.bone_control = (
            np.asarray(bone_control, dtype=np.float64) if bone_control is not None else None
        )
        self.collider = collider
        self.max_distance = float(max_distance)
        self.direction_maps = dict(direction_maps or {})

        n = snapshot.vertex_count
        self.values = np.full(n, UNCOMPUTED, dtype=np.float64)
        self.rays_cast = 0

        self._normals = self._unit_normals(snapshot.normals)
        self._vertex_materials = None
        if self.collider is not None and self.direction_maps:
            self._vertex_materials = np.array(
                [m if m is not None else "" for m in vertex_material_names(snapshot)],
                dtype=object,
            )
            self._resolve_map_layouts()

    @staticmethod
    def _unit_normals(normals):
        normals = np.asarray(normals, dtype=np.float64)
        length = np.linalg.norm(normals, axis=1, keepdims=True)
        return normals / np.where(length > 0.0, length, 1.0)

    def _resolve_map_layouts(self):
        snap = self.snapshot
        for name, dmap in self.direction_maps.items():
            if dmap.packed_ag is not None:
                continue
            members = np.flatnonzero(self._vertex_materials == name)[:AUTO_DETECT_SAMPLES]
            tangents = snap.tangents[members] if snap.tangents is not None else None
            dmap.packed_ag = detect_packed_ag(dmap, snap.normals[members], snap.uvs[members], tangents)

    @property
    def vertex_count(self) -> int:
        return len(self.values)

    @property
    def computed_count(self) -> int:
        return int(np.count_nonzero(self.values != UNCOMPUTED))

    @property
    def is_complete(self) -> bool:
        return self.computed_count == self.vertex_count

    # -----------------------------------------------------------------------

    def influence_mask(self, indices):
        """min(sphere mask, bone mask) for the given vertex indices."""
        indices = np.asarray(indices, dtype=np.int64)
        positions = self.snapshot.vertices[indices]
        mask = (combined_sphere_mask(positions, self.spheres) if self.spheres
                else np.ones(len(indices), dtype=np.float64))
        if self.bone_control is not None:
            mask = np.minimum(mask, bone_mask(self.bone_control[indices]))
        return mask

    def ray_directions(self, indices):
        """Normal, or direction-map direction, for each vertex index."""
        indices = np.asarray(indices, dtype=np.int64)
        directions = self._normals[indices].copy()
        if self._vertex_materials is None:
            return directions

        snap = self.snapshot
        materials = self._vertex_materials[indices]
        for name, dmap in self.direction_maps.items():
            rows = np.flatnonzero(materials == name)
            if len(rows) == 0:
                continue
            vi = indices[rows]
            tangents = snap.tangents[vi] if snap.tangents is not None else None
            directions[rows] = sample_ray_directions(dmap, snap.uvs[vi], snap.normals[vi], tangents)
        return directions

    def solve_range(self, start, stop):
        """
        Compute field values for vertices [start, stop).

        Already-computed vertices are left untouched.

        Returns:
            Number of vertices computed by this call.
        """
        stop = min(stop, self.vertex_count)
        if start >= stop:
            return 0
        indices = np.arange(start, stop, dtype=np.int64)
        indices = indices[self.values[indices] == UNCOMPUTED]
        if len(indices) == 0:
            return 0

        min_mask = self.influence_mask(indices)
        result = min_mask.copy()
        result[min_mask <= MASK_EPSILON] = 0.0

        if self.collider is not None:
            cast = np.flatnonzero(min_mask > MASK_EPSILON)
            if len(cast):
                vi = indices[cast]
                directions = self.ray_directions(vi)
                origins = self.snapshot.vertices[vi] - directions * RAY_OFFSET
                hits = np.asarray(
                    self.collider.raycast_batch(origins, directions, self.max_distance + RAY_OFFSET),
                    dtype=np.float64,
                )
                clearance = np.where(np.isfinite(hits), hits - RAY_OFFSET, self.max_distance)
                distance_mask = np.clip(clearance, 0.0, self.max_distance) / self.max_distance
                result[cast] = np.minimum(min_mask[cast], distance_mask)
                self.rays_cast += len(cast)

        self.values[indices] = result
        return len(indices)

    def solve(self):
        """Compute every remaining vertex and return the field."""
        self.solve_range(0, self.vertex_count)
        return self.values


# ---------------------------------------------------------------------------
# Post-passes
# ---------------------------------------------------------------------------

def apply_uv_anchors(values, snapshot, anchors, island_cache,
                     default_threshold=DEFAULT_UV_THRESHOLD):
    """
    Pin every vertex of every anchored UV island to 0.

    Anchors are matched to snapshot submeshes by (renderer_path,
    submesh_index). Anchors naming no submesh are logged and ignored.

    Args:
        values:            (N,) field, modified in place.
        snapshot:          MeshSnapshot.
        anchors:           UVIslandAnchor list.
        island_cache:      UVIslandCache used to locate islands.
        default_threshold: Threshold for anchors that do not set one.

    Returns:
        (N,) bool anchor flags.
    """
    flags = np.zeros(snapshot.vertex_count, dtype=bool)
    for anchor in anchors:
        threshold = default_threshold if anchor.threshold is None else anchor.threshold
        matched = False
        for i, sub in enumerate(snapshot.submeshes):
            if sub.renderer_path != anchor.renderer_path or sub.submesh_index != anchor.submesh_index:
                continue
            matched = True
            island = island_cache.find_island(
                snapshot.mesh_id, i, sub.triangles, snapshot.uvs, anchor.seed_uv, threshold,
            )
            flags[island_vertices(sub.triangles, island)] = True
        if not matched:
            logger.warning(
                "UV island anchor on %s submesh %d matches no submesh; ignored",
                anchor.renderer_path or "<root>", anchor.submesh_index,
            )

    values[flags] = 0.0
    if np.any(flags):
        logger.info("Anchored %s vertices to zero", f"{int(np.count_nonzero(flags)):,}")
    return flags


def apply_gamma(values, gamma):
    """
    Clamp to [0, 1] and raise to `gamma`.

    gamma == 1.0 returns `values` itself, untouched.
    """
    if gamma == 1.0:
        return values
    return np.power(np.clip(values, 0.0, 1.0), gamma)
