"""Tests for triangle and vertex adjacency graphs."""

import numpy as np

from fur_mask_baker.core.adjacency import (
    adjacency_matrix,
    build_triangle_adjacency,
    build_vertex_adjacency,
)


def test_triangles_sharing_an_edge_are_adjacent():
    adj = build_triangle_adjacency([[0, 1, 2], [0, 2, 3]])
    assert adj == [{1}, {0}]


def test_edge_direction_does_not_matter():
    # Second triangle walks the shared edge in the same direction.
    adj = build_triangle_adjacency([[0, 1, 2], [1, 2, 3]])
    assert adj == [{1}, {0}]


def test_sharing_only_a_vertex_is_not_adjacent():
    adj = build_triangle_adjacency([[0, 1, 2], [2, 3, 4]])
    assert adj == [set(), set()]


def test_non_manifold_edge():
    adj = build_triangle_adjacency([[0, 1, 2], [0, 1, 3], [1, 0, 4]])
    assert adj == [{1, 2}, {0, 2}, {0, 1}]


def test_out_of_range_triangles_skipped():
    adj = build_triangle_adjacency([[0, 1, 2], [0, 2, 9], [0, 2, 3]], vertex_count=4)
    assert adj[0] == {2}
    assert adj[1] == set()


def test_empty_triangle_list():
    assert build_triangle_adjacency(np.zeros((0, 3), dtype=int)) == []


def test_vertex_adjacency_unions_submeshes(make_snapshot):
    verts = [(0, 0, 0), (1, 0, 0), (0, 1, 0), (1, 1, 0)]
    uvs = [(0, 0), (1, 0), (0, 1), (1, 1)]
    snap = make_snapshot(verts, uvs, [[[0, 1, 2]], [[1, 3, 2]]])
    adj = build_vertex_adjacency(snap.submeshes, snap.vertex_count)
    assert adj[0] == {1, 2}
    assert adj[1] == {0, 2, 3}
    assert adj[3] == {1, 2}


def test_vertex_adjacency_skips_bad_and_degenerate_triangles():
    adj = build_vertex_adjacency([np.array([[0, 1, 5], [0, 0, 1]])], 3)
    assert adj == [{1}, {0}, set()]


def test_adjacency_matrix_is_symmetric(grid_mesh):
    adj = build_vertex_adjacency(grid_mesh.submeshes, grid_mesh.vertex_count)
    m = adjacency_matrix(adj)
    dense = m.toarray()
    np.testing.assert_array_equal(dense, dense.T)
    np.testing.assert_array_equal(np.diff(m.indptr), [len(s) for s in adj])
    assert np.all(np.diag(dense) == 0)
