"""Tests for the per-vertex distance field, anchors and gamma."""

import numpy as np
import pytest

from fur_mask_baker.core.direction_map import DirectionMap
from fur_mask_baker.core.distance_field import (
    DistanceFieldSolver,
    UVIslandAnchor,
    apply_gamma,
    apply_uv_anchors,
)
from fur_mask_baker.core.influence import SphereInfluence
from fur_mask_baker.core.uv_islands import UVIslandCache


class TestSolver:

    def test_no_influences_no_collider_is_one(self, unit_square):
        values = DistanceFieldSolver(unit_square).solve()
        np.testing.assert_array_equal(values, np.ones(4))

    def test_without_collider_uses_min_mask(self, unit_square):
        sphere = SphereInfluence((0.0, 0.0, 0.0), radius=1.0, gradient_width=0.5)
        control = [0.0, 0.9, 0.0, 0.0]
        values = DistanceFieldSolver(unit_square, [sphere], bone_control=control).solve()
        # Vertex 0 sits inside the core; 1 is bone-masked; 2 is outside; 3 at the radius.
        np.testing.assert_allclose(values, [0.0, 0.1, 1.0, 1.0])

    def test_plane_clearance(self, unit_square, plane_collider):
        collider = plane_collider(0.01)
        values = DistanceFieldSolver(unit_square, collider=collider, max_distance=0.04).solve()
        np.testing.assert_allclose(values, np.full(4, 0.25))
        assert collider.rays == 4

    def test_miss_is_full_length(self, unit_square, plane_collider):
        values = DistanceFieldSolver(unit_square, collider=plane_collider(5.0)).solve()
        np.testing.assert_allclose(values, np.ones(4))

    def test_masked_vertices_cast_no_rays(self, unit_square, plane_collider):
        collider = plane_collider(0.01)
        solver = DistanceFieldSolver(unit_square, bone_control=[1.0, 1.0, 0.0, 1.0],
                                     collider=collider, max_distance=0.04)
        values = solver.solve()
        assert collider.rays == 1
        assert solver.rays_cast == 1
        np.testing.assert_allclose(values, [0.0, 0.0, 0.25, 0.0])

    def test_values_are_memoized(self, grid_mesh, plane_collider):
        collider = plane_collider(0.02)
        solver = DistanceFieldSolver(grid_mesh, collider=collider)
        assert solver.solve_range(0, 10) == 10
        assert solver.solve_range(5, 12) == 2
        assert solver.computed_count == 12
        assert not solver.is_complete
        solver.solve()
        solver.solve()
        assert solver.is_complete
        assert collider.rays == grid_mesh.vertex_count

    def test_solve_range_clamps_stop(self, unit_square):
        solver = DistanceFieldSolver(unit_square)
        assert solver.solve_range(2, 100) == 2
        assert solver.solve_range(4, 8) == 0

    def test_rejects_non_positive_max_distance(self, unit_square):
        with pytest.raises(ValueError):
            DistanceFieldSolver(unit_square, max_distance=0.0)

    def test_direction_map_redirects_rays(self, make_snapshot, plane_collider):
        verts = [(0, 0, 0), (1, 0, 0), (1, 1, 0)]
        uvs = [(0, 0), (1, 0), (1, 1)]
        tangents = np.tile([1.0, 0.0, 0.0, 1.0], (3, 1))
        snap = make_snapshot(verts, uvs, [[[0, 1, 2]]], materials=["Fur"], tangents=tangents)
        # R = 0.75 tilts the ray 30 degrees off the normal, so it travels
        # further before reaching the plane.
        pixels = np.tile(np.array([0.75, 0.5, 1.0, 1.0], dtype=np.float32), (4, 4, 1))
        dmap = DirectionMap(pixels, packed_ag=False)
        straight = DistanceFieldSolver(snap, collider=plane_collider(0.02)).solve()
        tilted = DistanceFieldSolver(snap, collider=plane_collider(0.02),
                                     direction_maps={"Fur": dmap}).solve()
        assert np.all(tilted > straight)

    def test_direction_map_layout_resolved(self, unit_square, plane_collider):
        pixels = np.tile(np.array([1.0, 0.5, 1.0, 0.5], dtype=np.float32), (4, 4, 1))
        dmap = DirectionMap(pixels)
        DistanceFieldSolver(unit_square, collider=plane_collider(1.0), direction_maps={"Body": dmap})
        assert dmap.packed_ag is True


class TestAnchors:

    def test_island_vertices_are_zero(self, two_islands, plane_collider):
        values = DistanceFieldSolver(two_islands, collider=plane_collider(5.0)).solve()
        anchors = [UVIslandAnchor("Body", 0, (0.2, 0.5))]
        flags = apply_uv_anchors(values, two_islands, anchors, UVIslandCache())
        assert flags.tolist() == [True] * 4 + [False] * 4
        assert np.all(values[:4] == 0.0)
        np.testing.assert_array_equal(values[4:], np.ones(4))

    def test_unmatched_anchor_is_ignored(self, two_islands, caplog):
        values = np.ones(8)
        flags = apply_uv_anchors(values, two_islands, [UVIslandAnchor("Hat", 0, (0.5, 0.5))],
                                 UVIslandCache())
        assert not flags.any()
        assert "matches no submesh" in caplog.text

    def test_anchor_threshold_override(self, make_snapshot):
        # Two triangles that share no edge never join, whatever the threshold.
        verts = [(0, 0, 0), (1, 0, 0), (0, 1, 0), (2, 0, 0), (3, 0, 0), (2, 1, 0)]
        uvs = [(0, 0), (0.3, 0), (0, 0.3), (0.31, 0), (0.6, 0), (0.31, 0.3)]
        snap = make_snapshot(verts, uvs, [[[0, 1, 2], [3, 4, 5]]], renderer_path="")
        values = np.ones(6)
        flags = apply_uv_anchors(values, snap, [UVIslandAnchor("", 0, (0.05, 0.05), threshold=0.5)],
                                 UVIslandCache())
        assert flags.tolist() == [True, True, True, False, False, False]

    def test_uses_cache(self, two_islands):
        cache = UVIslandCache()
        anchors = [UVIslandAnchor("Body", 0, (0.2, 0.5)), UVIslandAnchor("Body", 0, (0.8, 0.5))]
        flags = apply_uv_anchors(np.ones(8), two_islands, anchors, cache)
        assert flags.all()
        assert cache.misses == 1
        assert cache.hits == 1


class TestGamma:

    def test_gamma_one_is_identity(self):
        values = np.array([0.1, 0.33333, 0.7, 1.2])
        out = apply_gamma(values, 1.0)
        assert out is values
        np.testing.assert_array_equal(out, [0.1, 0.33333, 0.7, 1.2])

    def test_gamma_clamps_and_powers(self):
        out = apply_gamma(np.array([-0.5, 0.5, 2.0]), 2.0)
        np.testing.assert_allclose(out, [0.0, 0.25, 1.0])
