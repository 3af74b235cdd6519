"""Tests for UV seed search, island flood fill and the island cache."""

import numpy as np
import pytest

from fur_mask_baker.core.adjacency import build_triangle_adjacency
from fur_mask_baker.core.uv_islands import (
    UVIslandCache,
    are_uv_connected,
    enumerate_island,
    find_seed_triangle,
    island_vertices,
)


def _tris(snap):
    return snap.submeshes[0].triangles


class TestSeedTriangle:

    def test_containing_triangle(self, unit_square):
        # Below the diagonal u = v lies triangle 0.
        assert find_seed_triangle(_tris(unit_square), unit_square.uvs, (0.8, 0.2)) == 0
        assert find_seed_triangle(_tris(unit_square), unit_square.uvs, (0.2, 0.8)) == 1

    def test_falls_back_to_nearest_centroid(self, two_islands):
        # The gap between the two quads; nearest centroid is on the right quad.
        tri = find_seed_triangle(_tris(two_islands), two_islands.uvs, (0.58, 0.9))
        assert tri in (2, 3)

    def test_point_far_outside(self, unit_square):
        assert find_seed_triangle(_tris(unit_square), unit_square.uvs, (5.0, 5.0)) in (0, 1)

    def test_degenerate_triangle_counts_as_outside(self):
        uvs = np.array([(0, 0), (1, 0), (2, 0), (0, 0), (1, 0), (0, 1)], dtype=float)
        tris = np.array([[0, 1, 2], [3, 4, 5]])
        # On the zero-area triangle's line; the real triangle contains it too.
        assert find_seed_triangle(tris, uvs, (0.5, 0.0)) == 1

    def test_no_valid_triangle(self):
        uvs = np.array([(0, 0), (1, 0)], dtype=float)
        assert find_seed_triangle(np.array([[0, 1, 5]]), uvs, (0.5, 0.5)) == -1


class TestConnectivity:

    def test_reflexive(self, two_islands):
        uvs = two_islands.uvs
        for tri in _tris(two_islands):
            assert are_uv_connected(uvs, tri, tri, threshold=0.0)

    def test_symmetric(self, two_islands):
        uvs = two_islands.uvs
        tris = _tris(two_islands)
        for threshold in (0.0, 0.1, 0.25):
            for a in tris:
                for b in tris:
                    assert are_uv_connected(uvs, a, b, threshold) == are_uv_connected(uvs, b, a, threshold)

    def test_threshold(self, two_islands):
        uvs = two_islands.uvs
        left, right = _tris(two_islands)[0], _tris(two_islands)[2]
        assert not are_uv_connected(uvs, left, right, threshold=0.1)
        assert are_uv_connected(uvs, left, right, threshold=0.25)


class TestEnumerateIsland:

    def test_whole_connected_grid(self, grid_mesh):
        tris = _tris(grid_mesh)
        adj = build_triangle_adjacency(tris)
        island = enumerate_island(adj, 0, lambda a, b: are_uv_connected(grid_mesh.uvs, tris[a], tris[b]))
        assert island == set(range(len(tris)))

    def test_disjoint_islands_stay_separate(self, two_islands):
        tris = _tris(two_islands)
        adj = build_triangle_adjacency(tris)
        island = enumerate_island(adj, 0, lambda a, b: True)
        assert island == {0, 1}

    def test_predicate_blocks_neighbours(self, grid_mesh):
        adj = build_triangle_adjacency(_tris(grid_mesh))
        assert enumerate_island(adj, 4, lambda a, b: False) == {4}

    def test_idempotent_from_any_member(self, grid_mesh):
        tris = _tris(grid_mesh)
        adj = build_triangle_adjacency(tris)
        # Only join triangles whose first corner lies in the left column of cells.
        left = {i for i, t in enumerate(tris) if grid_mesh.uvs[t[0], 0] < 0.3}

        def connected(a, b):
            return a in left and b in left

        island = enumerate_island(adj, min(left), connected)
        for seed in island:
            assert enumerate_island(adj, seed, connected) == island

    def test_invalid_seed(self, grid_mesh):
        adj = build_triangle_adjacency(_tris(grid_mesh))
        assert enumerate_island(adj, -1, lambda a, b: True) == set()

    def test_island_vertices(self, two_islands):
        verts = island_vertices(_tris(two_islands), {2, 3})
        assert verts.tolist() == [4, 5, 6, 7]
        assert island_vertices(_tris(two_islands), set()).size == 0


class TestIslandCache:

    def test_hit_reuses_entry(self, unit_square):
        cache = UVIslandCache()
        a = cache.get_or_build("m", 0, _tris(unit_square), 4)
        b = cache.get_or_build("m", 0, _tris(unit_square), 4)
        assert a is b
        assert cache.hits == 1 and cache.misses == 1

    def test_vertex_count_change_forces_rebuild(self, unit_square):
        cache = UVIslandCache()
        first = cache.get_or_build("m", 0, _tris(unit_square), 4)
        first.island(_tris(unit_square), unit_square.uvs, 0)
        assert cache.get("m", 0, 5, 2) is None
        rebuilt = cache.get_or_build("m", 0, _tris(unit_square), 5)
        assert rebuilt is not first
        assert rebuilt.vertex_count == 5
        assert rebuilt.island_maps == {}

    def test_triangle_count_change_forces_rebuild(self, unit_square):
        cache = UVIslandCache()
        first = cache.get_or_build("m", 0, _tris(unit_square), 4)
        again = cache.get_or_build("m", 0, _tris(unit_square)[:1], 4)
        assert again is not first
        assert again.triangle_count == 1

    def test_find_island(self, two_islands):
        cache = UVIslandCache()
        island = cache.find_island("m", 0, _tris(two_islands), two_islands.uvs, (0.8, 0.5))
        assert island == frozenset({2, 3})
        # Seeded anywhere inside, the same island comes back.
        again = cache.find_island("m", 0, _tris(two_islands), two_islands.uvs, (0.9, 0.1))
        assert again == island

    def test_find_island_respects_threshold(self, two_islands):
        cache = UVIslandCache()
        tris = _tris(two_islands)
        # Disjoint in index space, so no threshold merges them.
        assert cache.find_island("m", 0, tris, two_islands.uvs, (0.2, 0.5), threshold=1.0) == {0, 1}

    def test_lru_entry_limit(self, unit_square):
        cache = UVIslandCache(max_entries=2)
        for i in range(3):
            cache.get_or_build("m", i, _tris(unit_square), 4)
        assert cache.keys() == [("m", 1), ("m", 2)]

    def test_recent_use_protects_entry(self, unit_square):
        cache = UVIslandCache(max_entries=2)
        cache.get_or_build("a", 0, _tris(unit_square), 4)
        cache.get_or_build("b", 0, _tris(unit_square), 4)
        cache.get_or_build("a", 0, _tris(unit_square), 4)
        cache.get_or_build("c", 0, _tris(unit_square), 4)
        assert ("a", 0) in cache
        assert ("b", 0) not in cache

    def test_byte_budget(self, grid_mesh):
        tris = _tris(grid_mesh)
        probe = UVIslandCache()
        size = probe.get_or_build("x", 0, tris, grid_mesh.vertex_count).estimated_bytes
        cache = UVIslandCache(max_entries=10, max_bytes=size * 2)
        for i in range(4):
            cache.get_or_build("m", i, tris, grid_mesh.vertex_count)
        assert len(cache) == 2
        assert cache.total_bytes <= size * 2

    def test_invalidate(self, unit_square):
        cache = UVIslandCache()
        cache.get_or_build("a", 0, _tris(unit_square), 4)
        cache.get_or_build("a", 1, _tris(unit_square), 4)
        cache.get_or_build("b", 0, _tris(unit_square), 4)
        cache.invalidate("a")
        assert cache.keys() == [("b", 0)]
        cache.invalidate()
        assert len(cache) == 0

    def test_estimated_bytes_grows_with_islands(self, grid_mesh):
        cache = UVIslandCache()
        tris = _tris(grid_mesh)
        entry = cache.get_or_build("m", 0, tris, grid_mesh.vertex_count)
        before = entry.estimated_bytes
        entry.island(tris, grid_mesh.uvs, 0)
        assert entry.estimated_bytes > before


@pytest.mark.parametrize("seed", [(0.1, 0.1), (0.9, 0.9), (0.5, 0.5)])
def test_grid_island_is_whole_grid(grid_mesh, seed):
    cache = UVIslandCache()
    island = cache.find_island("g", 0, _tris(grid_mesh), grid_mesh.uvs, seed)
    assert len(island) == grid_mesh.triangle_count
