"""
UV island location for Fur Mask Baker.

A UV island anchor is authored as a single UV coordinate on one submesh. The
bake turns it into a set of triangles in three steps:

    1. find_seed_triangle() — the triangle whose UV footprint contains the
       seed coordinate, or the triangle with the nearest UV centroid when no
       triangle contains it (the seed may sit in a gap between islands).
    2. enumerate_island() — stack-based flood fill over the triangle adjacency
       graph. A mesh-adjacent neighbour joins the island only if the two
       triangles are also close in UV space (are_uv_connected), which stops the
       fill at UV seams where 3D neighbours are cut apart in the texture.
    3. island_vertices() — the unique vertices of the island, which the
       distance field pins to zero.

Caching:
    Building triangle adjacency is the expensive part, and a user typically
    places several anchors on the same mesh. UVIslandCache keeps one entry per
    (mesh identity, submesh index) holding the adjacency graph and every island
    computed so far. An entry is only reused when the mesh still reports the
    vertex and triangle counts it was built with. Entries are evicted in LRU
    order until both the entry-count and the estimated-byte budgets hold.

    The cache is an ordinary object owned by the engine (see engine.py), not a
    module-level global, so separate engines never share state.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass, field

import numpy as np

from fur_mask_baker.core.adjacency import build_triangle_adjacency
from fur_mask_baker.core.mesh_data import valid_triangle_mask

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

# Default UV-space distance under which two triangle corners count as
# touching. Normalized UV units.
DEFAULT_UV_THRESHOLD = 0.1

# Barycentric denominators smaller than this mark a degenerate UV triangle,
# which is classified as not containing the seed point.
BARY_DENOMINATOR_EPSILON = 1e-12

# Cache budgets.
MAX_CACHE_ENTRIES = 10
MAX_CACHE_BYTES = 50 * 1024 * 1024

# Per-item byte estimates used by UVIslandCacheEntry.estimated_bytes.
# One island-map slot: int key + set reference. One adjacency link: int.
# One triangle record: three int32 indices.
ISLAND_SLOT_BYTES = 4 + 16
ADJACENCY_LINK_BYTES = 4
TRIANGLE_RECORD_BYTES = 12


# ---------------------------------------------------------------------------
# Seed search and connectivity
# ---------------------------------------------------------------------------

def _barycentric_2d(a, b, c, p):
    """
    Vectorized 2D barycentric coordinates of point p against triangles (a, b, c).

    Returns:
        (w0, w1, w2, degenerate) arrays. Degenerate triangles get NaN weights.
    """
    v0 = b - a
    v1 = c - a
    v2 = p - a
    d00 = np.einsum("ij,ij->i", v0, v0)
    d01 = np.einsum("ij,ij->i", v0, v1)
    d11 = np.einsum("ij,ij->i", v1, v1)
    d20 = np.einsum("ij,ij->i", v2, v0)
    d21 = np.einsum("ij,ij->i", v2, v1)
    denom = d00 * d11 - d01 * d01
    degenerate = np.abs(denom) < BARY_DENOMINATOR_EPSILON
    safe = np.where(degenerate, 1.0, denom)
    w1 = (d11 * d20 - d01 * d21) / safe
    w2 = (d00 * d21 - d01 * d20) / safe
    w0 = 1.0 - w1 - w2
    return w0, w1, w2, degenerate


def find_seed_triangle(triangles, uvs, seed_uv):
    """
    Find the triangle an anchor's seed UV belongs to.

    Prefers the lowest-index triangle whose UV footprint contains seed_uv
    (all barycentric weights >= 0). Falls back to the triangle whose UV
    centroid is nearest to seed_uv by squared distance.

    Args:
        triangles: (T, 3) int vertex indices.
        uvs:       (N, 2) float UV coordinates.
        seed_uv:   (u, v) seed coordinate.

    Returns:
        Triangle index, or -1 when the submesh has no valid triangle.
    """
    triangles = np.asarray(triangles, dtype=np.int64).reshape(-1, 3)
    uvs = np.asarray(uvs, dtype=np.float64)
    candidates = np.flatnonzero(valid_triangle_mask(triangles, len(uvs)))
    if len(candidates) == 0:
        return -1

    tris = triangles[candidates]
    a, b, c = uvs[tris[:, 0]], uvs[tris[:, 1]], uvs[tris[:, 2]]
    p = np.asarray(seed_uv, dtype=np.float64).reshape(1, 2)

    w0, w1, w2, degenerate = _barycentric_2d(a, b, c, p)
    inside = (~degenerate) & (w0 >= 0.0) & (w1 >= 0.0) & (w2 >= 0.0)
    if np.any(inside):
        return int(candidates[np.argmax(inside)])

    centroids = (a + b + c) / 3.0
    d2 = np.sum((centroids - p) ** 2, axis=1)
    return int(candidates[np.argmin(d2)])


def are_uv_connected(uvs, tri_a, tri_b, threshold=DEFAULT_UV_THRESHOLD):
    """
    True if any of the 9 corner pairs of two triangles lie within `threshold`
    of each other in UV space.

    Reflexive (a corner is at distance 0 from itself) and symmetric.

    Args:
        uvs:       (N, 2) UV coordinates.
        tri_a:     Three vertex indices of the first triangle.
        tri_b:     Three vertex indices of the second triangle.
        threshold: Maximum UV distance for two corners to count as touching.
    """
    ua = uvs[np.asarray(tri_a)]
    ub = uvs[np.asarray(tri_b)]
    diff = ua[:, None, :] - ub[None, :, :]
    d2 = np.sum(diff * diff, axis=2)
    return bool(np.any(d2 <= threshold * threshold))


def enumerate_island(adjacency, seed_triangle, connected):
    """
    Flood-fill the UV island containing `seed_triangle`.

    Args:
        adjacency:     Triangle adjacency list (build_triangle_adjacency).
        seed_triangle: Starting triangle index.
        connected:     Predicate (tri_i, tri_j) -> bool; a neighbour is only
                       visited when it holds.

    Returns:
        set[int] of triangle indices, always containing the seed.
    """
    if seed_triangle < 0 or seed_triangle >= len(adjacency):
        return set()

    island = {seed_triangle}
    stack = [seed_triangle]
    while stack:
        current = stack.pop()
        for neighbour in adjacency[current]:
            if neighbour in island:
                continue
            if connected(current, neighbour):
                island.add(neighbour)
                stack.append(neighbour)
    return island


def island_vertices(triangles, island):
    """Sorted unique vertex indices used by the triangles of an island."""
    if not island:
        return np.zeros(0, dtype=np.int64)
    triangles = np.asarray(triangles, dtype=np.int64).reshape(-1, 3)
    members = np.fromiter(island, dtype=np.int64, count=len(island))
    return np.unique(triangles[members])


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------

@dataclass
class UVIslandCacheEntry:
    """
    Cached topology for one submesh.

    island_maps holds, per connectivity threshold, a triangle -> island map.
    Every member triangle of a computed island points at the same frozenset,
    so a later lookup seeded anywhere inside the island returns it unchanged.
    """
    vertex_count: int
    triangle_count: int
    triangle_adjacency: list
    island_maps: dict = field(default_factory=dict)

    def is_valid(self, vertex_count, triangle_count) -> bool:
        return self.vertex_count == vertex_count and self.triangle_count == triangle_count

    def island(self, triangles, uvs, seed_triangle, threshold=DEFAULT_UV_THRESHOLD):
        """Return (and remember) the island containing seed_triangle."""
        island_map = self.island_maps.setdefault(float(threshold), {})
        found = island_map.get(seed_triangle)
        if found is not None:
            return found

        triangles = np.asarray(triangles, dtype=np.int64).reshape(-1, 3)

        def connected(ti, tj):
            return are_uv_connected(uvs, triangles[ti], triangles[tj], threshold)

        members = frozenset(enumerate_island(self.triangle_adjacency, seed_triangle, connected))
        for ti in members:
            island_map[ti] = members
        return members

    @property
    def estimated_bytes(self) -> int:
        slots = sum(len(m) for m in self.island_maps.values())
        links = sum(len(s) for s in self.triangle_adjacency)
        return (slots * ISLAND_SLOT_BYTES
                + links * ADJACENCY_LINK_BYTES
                + self.triangle_count * TRIANGLE_RECORD_BYTES)


class UVIslandCache:
    """
    LRU cache of UVIslandCacheEntry keyed by (mesh_id, submesh_index).

    Bounded by max_entries and by max_bytes (sum of estimated_bytes).
    Eviction removes the least recently used entry first until both bounds
    hold.
    """

    def __init__(self, max_entries=MAX_CACHE_ENTRIES, max_bytes=MAX_CACHE_BYTES):
        self.max_entries = max_entries
        self.max_bytes = max_bytes
        self._entries = OrderedDict()
        self.hits = 0
        self.misses = 0

    def __len__(self):
        return len(self._entries)

    def __contains__(self, key):
        return key in self._entries

    @property
    def total_bytes(self) -> int:
        return sum(entry.estimated_bytes for entry in self._entries.values())

    def keys(self):
        """Keys from least to most recently used."""
        return list(self._entries.keys())

    def get(self, mesh_id, submesh_index, vertex_count, triangle_count):
        """
        Return the cached entry if it is still valid for the given counts,
        else None. A stale entry is dropped.
        """
        key = (mesh_id, submesh_index)
        entry = self._entries.get(key)
        if entry is None:
            return None
        if not entry.is_valid(vertex_count, triangle_count):
            logger.debug(
                "UV island cache entry %s is stale (%d/%d -> %d/%d vertices/triangles)",
                key, entry.vertex_count, entry.triangle_count, vertex_count, triangle_count,
            )
            del self._entries[key]
            return None
        self._entries.move_to_end(key)
        return entry

    def get_or_build(self, mesh_id, submesh_index, triangles, vertex_count):
        """Return a valid entry for this submesh, building it on a miss."""
        triangles = np.asarray(triangles, dtype=np.int64).reshape(-1, 3)
        entry = self.get(mesh_id, submesh_index, vertex_count, len(triangles))
        if entry is not None:
            self.hits += 1
            logger.debug("UV island cache hit for %s", (mesh_id, submesh_index))
            return entry

        self.misses += 1
        logger.debug(
            "Building triangle adjacency for %s (%s triangles)",
            (mesh_id, submesh_index), f"{len(triangles):,}",
        )
        entry = UVIslandCacheEntry(
            vertex_count=vertex_count,
            triangle_count=len(triangles),
            triangle_adjacency=build_triangle_adjacency(triangles, vertex_count),
        )
        self._entries[(mesh_id, submesh_index)] = entry
        self._enforce_budget()
        return entry

    def find_island(self, mesh_id, submesh_index, triangles, uvs, seed_uv,
                    threshold=DEFAULT_UV_THRESHOLD):
        """
        Locate the island under seed_uv on one submesh.

        Returns:
            frozenset of triangle indices (empty if the submesh has no valid
            triangle).
        """
        uvs = np.asarray(uvs, dtype=np.float64)
        entry = self.get_or_build(mesh_id, submesh_index, triangles, len(uvs))
        seed = find_seed_triangle(triangles, uvs, seed_uv)
        if seed < 0:
            return frozenset()
        island = entry.island(triangles, uvs, seed, threshold)
        # Islands grow the entry, so the byte budget is rechecked.
        self._enforce_budget()
        return island

    def invalidate(self, mesh_id=None):
        """Drop every entry for mesh_id, or everything when mesh_id is None."""
        if mesh_id is None:
            self._entries.clear()
            return
        for key in [k for k in self._entries if k[0] == mesh_id]:
            del self._entries[key]

    def clear(self):
        self._entries.clear()
        self.hits = 0
        self.misses = 0

    def _enforce_budget(self):
        while self._entries and (
            len(self._entries) > self.max_entries or self.total_bytes > self.max_bytes
        ):
            key, _ = self._entries.popitem(last=False)
            logger.debug("Evicted UV island cache entry %s", key)
