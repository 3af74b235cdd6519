"""
Mesh connectivity for Fur Mask Baker.

Two graphs are derived from the snapshot's triangle lists:

    Triangle adjacency — triangle i maps to every triangle sharing an
        undirected edge (min(a, b), max(a, b)) with it. Used by the UV island
        flood fill. Non-manifold edges (three or more triangles on one edge)
        simply contribute more neighbours; set semantics deduplicate triangles
        adjacent through more than one edge.

    Vertex adjacency — vertex v maps to every vertex it shares a triangle
        edge with, across all submeshes. Used by the diffusion smoother, which
        consumes it as a sparse matrix (adjacency_matrix) so one Jacobi sweep
        over a batch of vertices is a single sparse mat-vec.

Triangles with an index outside the vertex range are skipped silently.
Both graphs depend only on topology, so they are built once per mesh and
shared read-only by every bake on that mesh.
"""

from collections import defaultdict

import numpy as np
import scipy.sparse as sp

from fur_mask_baker.core.mesh_data import valid_triangle_mask


def build_triangle_adjacency(triangles, vertex_count=None):
    """
    Build the triangle-to-triangle adjacency graph through shared edges.

    Args:
        triangles:    (T, 3) int array of vertex indices.
        vertex_count: When given, triangles referencing an index outside
                      [0, vertex_count) are skipped and get no neighbours.

    Returns:
        list[set[int]] of length T. Triangle i's set never contains i.
    """
    triangles = np.asarray(triangles, dtype=np.int64).reshape(-1, 3)
    t = len(triangles)
    adjacency = [set() for _ in range(t)]
    if t == 0:
        return adjacency

    if vertex_count is None:
        valid = np.all(triangles >= 0, axis=1)
    else:
        valid = valid_triangle_mask(triangles, vertex_count)

    edge_map = defaultdict(list)
    for ti in np.flatnonzero(valid):
        a, b, c = (int(x) for x in triangles[ti])
        for e0, e1 in ((a, b), (b, c), (c, a)):
            key = (e0, e1) if e0 < e1 else (e1, e0)
            edge_map[key].append(int(ti))

    for shared in edge_map.values():
        if len(shared) < 2:
            continue
        for ti in shared:
            for tj in shared:
                if ti != tj:
                    adjacency[ti].add(tj)
    return adjacency


def build_vertex_adjacency(submeshes, vertex_count):
    """
    Build the vertex-to-vertex adjacency graph across all submeshes.

    Args:
        submeshes:    Iterable of Submesh (or raw (T, 3) triangle arrays).
        vertex_count: Number of vertices in the snapshot.

    Returns:
        list[set[int]] of length vertex_count.
    """
    adjacency = [set() for _ in range(vertex_count)]
    for sub in submeshes:
        tris = np.asarray(getattr(sub, "triangles", sub), dtype=np.int64).reshape(-1, 3)
        tris = tris[valid_triangle_mask(tris, vertex_count)]
        for a, b, c in tris.tolist():
            adjacency[a].update((b, c))
            adjacency[b].update((a, c))
            adjacency[c].update((a, b))
    # Degenerate triangles with a repeated index would make a vertex its own neighbour.
    for v, neighbours in enumerate(adjacency):
        neighbours.discard(v)
    return adjacency


def adjacency_matrix(vertex_adjacency):
    """
    Convert a vertex adjacency list into a symmetric 0/1 CSR matrix.

    Row i holds a 1 in every neighbour column of vertex i, so
    ``A[rows] @ field`` yields the neighbour sums for a batch of vertices
    and ``A.getnnz(axis=1)`` the neighbour counts.
    """
    n = len(vertex_adjacency)
    counts = np.fromiter((len(s) for s in vertex_adjacency), dtype=np.int64, count=n)
    rows = np.repeat(np.arange(n, dtype=np.int64), counts)
    cols = np.fromiter(
        (j for s in vertex_adjacency for j in sorted(s)),
        dtype=np.int64, count=int(counts.sum()),
    )
    data = np.ones(len(cols), dtype=np.float64)
    return sp.csr_matrix((data, (rows, cols)), shape=(n, n))
