"""
Mesh snapshot container, validation and preparation for Fur Mask Baker.

A bake never reads a live mesh. The Mesh Source (see mesh_loader.py) flattens
every renderer into one immutable MeshSnapshot: world-space positions, normals,
UVs and optional tangents in a single shared vertex-index space, plus a list of
submeshes, each carrying its triangle index array and material name.

Invariants every consumer relies on:
    - vertices, normals and uvs all have the same length.
    - Triangle indices are global vertex indices. Indices outside the vertex
      range are tolerated here but skipped by every algorithm downstream; the
      validator counts them so the host can warn once before the bake starts.

Preparation:
    subdivide_snapshot() performs optional midpoint subdivision before a bake.
    Denser meshes give the per-vertex distance field more samples across large
    triangles, which noticeably smooths the baked gradients. The number of
    passes is reduced automatically so the triangle total never exceeds
    MAX_TRIANGLE_COUNT.
"""

import logging
from dataclasses import dataclass, field

import numpy as np

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

# Upper bound on the triangle count produced by subdivision (one million).
MAX_TRIANGLE_COUNT = 1_000_000

# Tangent used for vertices whose source mesh carried no tangent data.
# (x, y, z, handedness)
DEFAULT_TANGENT = (1.0, 0.0, 0.0, 1.0)

# Material name prefix for submeshes that have no material assigned.
SUBMESH_NAME_PREFIX = "Submesh_"


class MeshValidationError(Exception):
    """
    Raised when a mesh snapshot violates an invariant the bake cannot work
    around (mismatched per-vertex array lengths, no geometry at all).

    Raised once by BakeJob.start(), never mid-bake.
    """
    pass


@dataclass(frozen=True)
class Submesh:
    """One triangle list of the snapshot and the material it renders with."""
    triangles: np.ndarray            # (T, 3) int, global vertex indices
    material: str                    # Material name used to group output textures
    renderer_path: str = ""          # Scene path of the owning renderer
    submesh_index: int = 0           # Index of this submesh within its renderer

    @property
    def triangle_count(self) -> int:
        return int(len(self.triangles))


@dataclass(frozen=True)
class MeshSnapshot:
    """
    Immutable per-bake mesh input.

    Arrays are copied to contiguous numpy arrays and flagged read-only on
    construction so no bake stage can mutate the shared input by accident.
    """
    mesh_id: str                     # Identity used as the cache key
    vertices: np.ndarray             # (N, 3) float64 world-space positions
    normals: np.ndarray              # (N, 3) float64 world-space normals
    uvs: np.ndarray                  # (N, 2) float64 UV coordinates
    submeshes: tuple = ()            # tuple[Submesh, ...]
    tangents: np.ndarray | None = None  # (N, 4) float64, w = handedness
    metadata: dict = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "vertices", _frozen_array(self.vertices, np.float64, 3))
        object.__setattr__(self, "normals", _frozen_array(self.normals, np.float64, 3))
        object.__setattr__(self, "uvs", _frozen_array(self.uvs, np.float64, 2))
        if self.tangents is not None:
            object.__setattr__(self, "tangents", _frozen_array(self.tangents, np.float64, 4))

        subs = []
        for sub in self.submeshes:
            tris = _frozen_array(sub.triangles, np.int64, 3)
            subs.append(Submesh(tris, sub.material, sub.renderer_path, sub.submesh_index))
        object.__setattr__(self, "submeshes", tuple(subs))

    @property
    def vertex_count(self) -> int:
        return int(len(self.vertices))

    @property
    def triangle_count(self) -> int:
        return sum(sub.triangle_count for sub in self.submeshes)

    def submeshes_for_renderer(self, renderer_path):
        """Return [(snapshot_submesh_index, Submesh)] belonging to one renderer."""
        return [
            (i, sub) for i, sub in enumerate(self.submeshes)
            if sub.renderer_path == renderer_path
        ]


def _frozen_array(values, dtype, columns):
    arr = np.array(values, dtype=dtype, copy=True)
    if arr.size == 0:
        arr = arr.reshape(0, columns)
    arr.setflags(write=False)
    return arr


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def valid_triangle_mask(triangles, vertex_count):
    """
    Boolean mask of triangles whose three indices are all inside
    [0, vertex_count). Every algorithm uses this to skip malformed triangles.
    """
    triangles = np.asarray(triangles)
    if triangles.size == 0:
        return np.zeros(0, dtype=bool)
    return np.all((triangles >= 0) & (triangles < vertex_count), axis=1)


def validate_snapshot(snapshot: MeshSnapshot) -> int:
    """
    Check the snapshot invariants before a bake starts.

    Returns:
        Number of triangles with out-of-range indices. These are not fatal;
        every stage skips them, and the caller reports them once.

    Raises:
        MeshValidationError: On array length mismatches, non-finite positions
                             or a snapshot without any triangles.
    """
    n = snapshot.vertex_count
    if n == 0:
        raise MeshValidationError("Mesh has no vertices.")
    if len(snapshot.uvs) != n:
        raise MeshValidationError(
            f"UV count ({len(snapshot.uvs)}) does not match vertex count ({n}). "
            "The mesh needs exactly one UV per vertex."
        )
    if len(snapshot.normals) != n:
        raise MeshValidationError(
            f"Normal count ({len(snapshot.normals)}) does not match vertex count ({n})."
        )
    if snapshot.tangents is not None and len(snapshot.tangents) != n:
        raise MeshValidationError(
            f"Tangent count ({len(snapshot.tangents)}) does not match vertex count ({n})."
        )
    if not np.all(np.isfinite(snapshot.vertices)):
        raise MeshValidationError("Mesh contains non-finite vertex positions.")
    if snapshot.triangle_count == 0:
        raise MeshValidationError("Mesh has no triangles.")

    invalid = 0
    for sub in snapshot.submeshes:
        invalid += int(np.count_nonzero(~valid_triangle_mask(sub.triangles, n)))
    return invalid


def vertex_material_names(snapshot: MeshSnapshot):
    """
    Map each vertex to the material of the first submesh that references it.

    Returns:
        list[str | None] of length vertex_count. Vertices no triangle uses map
        to None.
    """
    names = [None] * snapshot.vertex_count
    n = snapshot.vertex_count
    for sub in snapshot.submeshes:
        tris = sub.triangles[valid_triangle_mask(sub.triangles, n)]
        for vi in np.unique(tris):
            if names[vi] is None:
                names[vi] = sub.material
    return names


# ---------------------------------------------------------------------------
# Midpoint subdivision
# ---------------------------------------------------------------------------

def limit_subdivision_iterations(triangle_count, iterations,
                                 max_triangles=MAX_TRIANGLE_COUNT):
    """Largest k <= iterations such that triangle_count * 4**k <= max_triangles."""
    k = max(0, int(iterations))
    while k > 0 and triangle_count * (4 ** k) > max_triangles:
        k -= 1
    return k


def subdivide_snapshot(snapshot: MeshSnapshot, iterations, bone_control=None,
                       max_triangles=MAX_TRIANGLE_COUNT):
    """
    Split every triangle into four using shared edge midpoints.

    Each pass adds one vertex per unique undirected edge. Midpoint attributes:
        position, UV, tangent, bone control — average of the two endpoints
        normal — normalized sum of the two endpoint normals

    Triangles with out-of-range indices are dropped. Submesh material and
    renderer bookkeeping is preserved.

    Args:
        snapshot:      MeshSnapshot to subdivide.
        iterations:    Requested number of passes.
        bone_control:  Optional (N,) per-vertex bone control array carried
                       through the subdivision.
        max_triangles: Cap on the resulting triangle total.

    Returns:
        (MeshSnapshot, bone_control or None)
    """
    passes = limit_subdivision_iterations(snapshot.triangle_count, iterations, max_triangles)
    if passes < int(iterations):
        logger.warning(
            "Subdividing %d times would exceed %s triangles; using %d passes",
            int(iterations), f"{max_triangles:,}", passes,
        )
    if passes == 0:
        return snapshot, bone_control

    vertices = np.array(snapshot.vertices)
    normals = np.array(snapshot.normals)
    uvs = np.array(snapshot.uvs)
    tangents = np.array(snapshot.tangents) if snapshot.tangents is not None else None
    control = np.array(bone_control, dtype=np.float64) if bone_control is not None else None
    triangle_blocks = [
        sub.triangles[valid_triangle_mask(sub.triangles, len(vertices))]
        for sub in snapshot.submeshes
    ]

    for _ in range(passes):
        n = len(vertices)
        counts = [len(block) for block in triangle_blocks]
        all_tris = (np.concatenate(triangle_blocks) if triangle_blocks
                    else np.zeros((0, 3), dtype=np.int64))
        t = len(all_tris)
        if t == 0:
            break

        # Edges grouped by type: all AB edges, then BC, then CA.
        edges = np.concatenate([all_tris[:, [0, 1]], all_tris[:, [1, 2]], all_tris[:, [2, 0]]])
        edges.sort(axis=1)
        unique_edges, inverse = np.unique(edges, axis=0, return_inverse=True)
        inverse = inverse.reshape(-1)
        mid = (n + inverse).reshape(3, t).T  # columns: ab, bc, ca

        ea, eb = unique_edges[:, 0], unique_edges[:, 1]
        vertices = np.concatenate([vertices, 0.5 * (vertices[ea] + vertices[eb])])
        uvs = np.concatenate([uvs, 0.5 * (uvs[ea] + uvs[eb])])

        summed = normals[ea] + normals[eb]
        lengths = np.linalg.norm(summed, axis=1, keepdims=True)
        summed = np.where(lengths > 1e-12, summed / np.where(lengths > 1e-12, lengths, 1.0), normals[ea])
        normals = np.concatenate([normals, summed])

        if tangents is not None:
            tangents = np.concatenate([tangents, 0.5 * (tangents[ea] + tangents[eb])])
        if control is not None:
            control = np.concatenate([control, 0.5 * (control[ea] + control[eb])])

        a, b, c = all_tris[:, 0], all_tris[:, 1], all_tris[:, 2]
        ab, bc, ca = mid[:, 0], mid[:, 1], mid[:, 2]
        children = np.stack([
            np.stack([a, ab, ca], axis=1),
            np.stack([ab, b, bc], axis=1),
            np.stack([ca, bc, c], axis=1),
            np.stack([ab, bc, ca], axis=1),
        ], axis=1).reshape(-1, 3)

        triangle_blocks = []
        start = 0
        for count in counts:
            triangle_blocks.append(children[start * 4:(start + count) * 4])
            start += count

    submeshes = tuple(
        Submesh(block, sub.material, sub.renderer_path, sub.submesh_index)
        for block, sub in zip(triangle_blocks, snapshot.submeshes)
    )
    subdivided = MeshSnapshot(
        mesh_id=f"{snapshot.mesh_id}@subdiv{passes}",
        vertices=vertices,
        normals=normals,
        uvs=uvs,
        submeshes=submeshes,
        tangents=tangents,
        metadata=dict(snapshot.metadata, subdivision_passes=passes),
    )
    logger.info(
        "Subdivided %s: %s -> %s vertices, %s -> %s triangles",
        snapshot.mesh_id, f"{snapshot.vertex_count:,}", f"{subdivided.vertex_count:,}",
        f"{snapshot.triangle_count:,}", f"{subdivided.triangle_count:,}",
    )
    return subdivided, control
