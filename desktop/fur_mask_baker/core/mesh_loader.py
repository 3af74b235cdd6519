"""
Mesh source for Fur Mask Baker.

Loads character meshes through trimesh and flattens them into the single
world-space MeshSnapshot a bake consumes. Any format trimesh reads works
(GLB/glTF, OBJ, PLY, ...); FBX avatars are expected to be converted to GLB
by the host first.

trimesh.load() returns a Trimesh for single-geometry files and a Scene for
multi-node files. Scenes are walked node by node: every geometry instance is
transformed to world space with its node transform (this is the
"bake to static snapshot" step for posed exports) and becomes one submesh,
identified by its node name. Vertex arrays of all nodes are concatenated into
one shared index space.

Files are loaded with process=False so trimesh keeps UV-seam vertices split;
merging them would leave one UV per position and corrupt the islands.

Vertex tangents are computed here when the source has UVs, using the UV
partial-derivative method, so direction maps have a proper TBN frame.
"""

import logging
from pathlib import Path

import numpy as np
import trimesh

from fur_mask_baker.core.mesh_data import (
    SUBMESH_NAME_PREFIX,
    MeshSnapshot,
    MeshValidationError,
    Submesh,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Vertex tangents
# ---------------------------------------------------------------------------

def compute_vertex_tangents(vertices, normals, uvs, faces):
    """
    Per-vertex tangents from UV partial derivatives.

    Per-face tangent T and bitangent B align with the U and V axes:

        r = 1 / (dU1*dV2 - dU2*dV1)
        T = (dV2 * edge1 - dV1 * edge2) * r
        B = (dU1 * edge2 - dU2 * edge1) * r

    Face values are summed per vertex, T is Gram-Schmidt orthogonalized
    against the normal, and w = sign((N × T) · B) records handedness.

    Returns:
        (N, 4) float64 tangents. Vertices with no usable UV gradient get a
        stable axis perpendicular to their normal.
    """
    vertices = np.asarray(vertices, dtype=np.float64)
    normals = np.asarray(normals, dtype=np.float64)
    uvs = np.asarray(uvs, dtype=np.float64)
    faces = np.asarray(faces, dtype=np.int64).reshape(-1, 3)
    n = len(vertices)

    tan1 = np.zeros((n, 3), dtype=np.float64)
    tan2 = np.zeros((n, 3), dtype=np.float64)

    if len(faces):
        edge1 = vertices[faces[:, 1]] - vertices[faces[:, 0]]
        edge2 = vertices[faces[:, 2]] - vertices[faces[:, 0]]
        duv1 = uvs[faces[:, 1]] - uvs[faces[:, 0]]
        duv2 = uvs[faces[:, 2]] - uvs[faces[:, 0]]

        denom = duv1[:, 0] * duv2[:, 1] - duv2[:, 0] * duv1[:, 1]
        valid = np.abs(denom) > 1e-12
        r = np.where(valid, 1.0 / np.where(valid, denom, 1.0), 0.0)[:, np.newaxis]

        tang = (duv2[:, 1:2] * edge1 - duv1[:, 1:2] * edge2) * r
        bitan = (duv1[:, 0:1] * edge2 - duv2[:, 0:1] * edge1) * r
        for corner in range(3):
            np.add.at(tan1, faces[:, corner], tang)
            np.add.at(tan2, faces[:, corner], bitan)

    tangents = tan1 - normals * np.sum(normals * tan1, axis=1, keepdims=True)
    lengths = np.linalg.norm(tangents, axis=1, keepdims=True)
    degenerate = lengths[:, 0] <= 1e-12
    tangents = tangents / np.where(lengths > 1e-12, lengths, 1.0)

    if degenerate.any():
        # [1,0,0] unless the normal is nearly parallel to X, then [0,1,0].
        parallel_to_x = np.abs(normals[:, 0]) >= 0.9
        fallback = np.where(parallel_to_x[:, np.newaxis], [[0.0, 1.0, 0.0]], [[1.0, 0.0, 0.0]])
        fallback = fallback - normals * np.sum(normals * fallback, axis=1, keepdims=True)
        fb_len = np.linalg.norm(fallback, axis=1, keepdims=True)
        fallback = fallback / np.where(fb_len > 1e-12, fb_len, 1.0)
        tangents[degenerate] = fallback[degenerate]

    handedness = np.sign(np.sum(np.cross(normals, tangents) * tan2, axis=1))
    handedness = np.where(handedness == 0, 1.0, handedness)
    return np.concatenate([tangents, handedness[:, np.newaxis]], axis=1)


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------

def _material_name(mesh, fallback_index):
    material = getattr(mesh.visual, "material", None)
    name = getattr(material, "name", None)
    return name if name else f"{SUBMESH_NAME_PREFIX}{fallback_index}"


def _scene_parts(geometry):
    """Yield (node_name, world-space Trimesh) for every mesh instance."""
    if isinstance(geometry, trimesh.Trimesh):
        yield "", geometry
        return

    for node_name in geometry.graph.nodes_geometry:
        transform, geometry_name = geometry.graph[node_name]
        mesh = geometry.geometry.get(geometry_name)
        if not isinstance(mesh, trimesh.Trimesh) or len(mesh.faces) == 0:
            continue
        mesh = mesh.copy()
        mesh.apply_transform(transform)
        yield node_name, mesh


def snapshot_from_trimesh(geometry, mesh_id="mesh"):
    """
    Flatten a trimesh.Trimesh or trimesh.Scene into one MeshSnapshot.

    Raises:
        MeshValidationError: A mesh part has no UV coordinates, or the input
                             has no triangles.
    """
    vertices, normals, uvs, tangents = [], [], [], []
    submeshes = []
    offset = 0
    renderer_counts = {}

    for node_name, mesh in _scene_parts(geometry):
        uv = getattr(mesh.visual, "uv", None)
        if uv is None or len(uv) != len(mesh.vertices):
            raise MeshValidationError(
                f"Mesh part '{node_name or mesh_id}' has no per-vertex UV coordinates. "
                "Fur masks are baked in UV space, so every part needs a UV map."
            )

        part_vertices = np.asarray(mesh.vertices, dtype=np.float64)
        part_normals = np.asarray(mesh.vertex_normals, dtype=np.float64)
        part_uvs = np.asarray(uv, dtype=np.float64)
        part_faces = np.asarray(mesh.faces, dtype=np.int64)

        vertices.append(part_vertices)
        normals.append(part_normals)
        uvs.append(part_uvs)
        tangents.append(compute_vertex_tangents(part_vertices, part_normals, part_uvs, part_faces))

        index_in_renderer = renderer_counts.get(node_name, 0)
        renderer_counts[node_name] = index_in_renderer + 1
        submeshes.append(Submesh(
            triangles=part_faces + offset,
            material=_material_name(mesh, len(submeshes)),
            renderer_path=node_name,
            submesh_index=index_in_renderer,
        ))
        offset += len(part_vertices)

    if not submeshes:
        raise MeshValidationError(f"'{mesh_id}' contains no triangle meshes.")

    snapshot = MeshSnapshot(
        mesh_id=mesh_id,
        vertices=np.concatenate(vertices),
        normals=np.concatenate(normals),
        uvs=np.concatenate(uvs),
        submeshes=tuple(submeshes),
        tangents=np.concatenate(tangents),
    )
    logger.info(
        "Loaded %s: %s vertices, %s triangles, %d submesh(es)",
        mesh_id, f"{snapshot.vertex_count:,}", f"{snapshot.triangle_count:,}", len(submeshes),
    )
    return snapshot


def load_mesh_snapshot(path):
    """Load a mesh file into a MeshSnapshot keyed by its resolved path."""
    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"Mesh file not found: {path}")
    geometry = trimesh.load(str(path), process=False)
    return snapshot_from_trimesh(geometry, mesh_id=str(path.resolve()))


def load_collider_meshes(paths):
    """
    Load exclusion geometry files as world-space trimesh.Trimesh objects.

    Scenes are collapsed into one mesh per file.
    """
    meshes = []
    for path in paths:
        path = Path(path)
        if not path.is_file():
            raise FileNotFoundError(f"Collider mesh not found: {path}")
        mesh = trimesh.load(str(path), force="mesh")
        logger.info("Loaded collider %s (%s triangles)", path.name, f"{len(mesh.faces):,}")
        meshes.append(mesh)
    return meshes
