"""Tests for mesh snapshot validation and subdivision."""

import numpy as np
import pytest

from fur_mask_baker.core.mesh_data import (
    MeshSnapshot,
    MeshValidationError,
    Submesh,
    limit_subdivision_iterations,
    subdivide_snapshot,
    valid_triangle_mask,
    validate_snapshot,
    vertex_material_names,
)


def test_snapshot_arrays_are_read_only(unit_square):
    with pytest.raises(ValueError):
        unit_square.vertices[0, 0] = 5.0
    with pytest.raises(ValueError):
        unit_square.submeshes[0].triangles[0, 0] = 1


def test_counts(unit_square):
    assert unit_square.vertex_count == 4
    assert unit_square.triangle_count == 2


def test_validate_clean_mesh(unit_square):
    assert validate_snapshot(unit_square) == 0


def test_validate_uv_length_mismatch(make_snapshot):
    snap = make_snapshot([(0, 0, 0), (1, 0, 0), (0, 1, 0)], [(0, 0), (1, 0)], [[[0, 1, 2]]])
    with pytest.raises(MeshValidationError, match="UV count"):
        validate_snapshot(snap)


def test_validate_normal_length_mismatch(make_snapshot):
    snap = make_snapshot([(0, 0, 0), (1, 0, 0), (0, 1, 0)], [(0, 0), (1, 0), (0, 1)],
                         [[[0, 1, 2]]], normals=[(0, 0, 1)])
    with pytest.raises(MeshValidationError, match="Normal count"):
        validate_snapshot(snap)


def test_validate_no_triangles(make_snapshot):
    snap = make_snapshot([(0, 0, 0)], [(0, 0)], [])
    with pytest.raises(MeshValidationError, match="no triangles"):
        validate_snapshot(snap)


def test_validate_non_finite_positions(make_snapshot):
    snap = make_snapshot([(0, 0, 0), (np.nan, 0, 0), (0, 1, 0)], [(0, 0), (1, 0), (0, 1)],
                         [[[0, 1, 2]]])
    with pytest.raises(MeshValidationError, match="non-finite"):
        validate_snapshot(snap)


def test_validate_counts_out_of_range_triangles(make_snapshot):
    snap = make_snapshot([(0, 0, 0), (1, 0, 0), (0, 1, 0)], [(0, 0), (1, 0), (0, 1)],
                         [[[0, 1, 2], [0, 1, 7], [-1, 0, 1]]])
    assert validate_snapshot(snap) == 2


def test_valid_triangle_mask():
    mask = valid_triangle_mask([[0, 1, 2], [0, 1, 3], [-1, 1, 2]], 3)
    assert mask.tolist() == [True, False, False]


def test_vertex_material_names_first_submesh_wins(make_snapshot):
    verts = [(0, 0, 0), (1, 0, 0), (0, 1, 0), (1, 1, 0), (2, 2, 0)]
    uvs = [(0, 0), (1, 0), (0, 1), (1, 1), (0.5, 0.5)]
    snap = make_snapshot(verts, uvs, [[[0, 1, 2]], [[1, 3, 2]]], materials=["Skin", "Hair"])
    assert vertex_material_names(snap) == ["Skin", "Skin", "Skin", "Hair", None]


def test_submeshes_for_renderer(make_snapshot):
    verts = [(0, 0, 0), (1, 0, 0), (0, 1, 0)]
    uvs = [(0, 0), (1, 0), (0, 1)]
    snap = MeshSnapshot(
        "m", verts, np.tile([0, 0, 1.0], (3, 1)), uvs,
        (Submesh([[0, 1, 2]], "A", "Body", 0), Submesh([[0, 2, 1]], "B", "Hat", 0)),
    )
    found = snap.submeshes_for_renderer("Hat")
    assert [(i, s.material) for i, s in found] == [(1, "B")]


class TestSubdivision:

    def test_one_pass_counts(self, unit_square):
        sub, _ = subdivide_snapshot(unit_square, 1)
        # 4 corners + 5 unique edges.
        assert sub.vertex_count == 9
        assert sub.triangle_count == 8
        assert validate_snapshot(sub) == 0

    def test_two_passes_counts(self, unit_square):
        sub, _ = subdivide_snapshot(unit_square, 2)
        assert sub.triangle_count == 32
        assert sub.vertex_count == 25

    def test_zero_passes_returns_input(self, unit_square):
        sub, control = subdivide_snapshot(unit_square, 0, bone_control=[0, 1, 0, 1])
        assert sub is unit_square
        assert control == [0, 1, 0, 1]

    def test_midpoint_attributes(self, unit_square):
        control = np.array([0.0, 1.0, 1.0, 0.0])
        sub, sub_control = subdivide_snapshot(unit_square, 1, bone_control=control)
        # Every new vertex lies halfway between two originals.
        new_uvs = sub.uvs[4:]
        np.testing.assert_allclose(sub.vertices[4:, :2], new_uvs)
        np.testing.assert_allclose(np.linalg.norm(sub.normals, axis=1), 1.0)
        assert len(sub_control) == sub.vertex_count
        assert np.all((sub_control >= 0) & (sub_control <= 1))
        np.testing.assert_array_equal(sub_control[:4], control)

    def test_preserves_submesh_bookkeeping(self, make_snapshot):
        verts = [(0, 0, 0), (1, 0, 0), (0, 1, 0), (1, 1, 0)]
        uvs = [(0, 0), (1, 0), (0, 1), (1, 1)]
        snap = make_snapshot(verts, uvs, [[[0, 1, 2]], [[1, 3, 2]]], materials=["A", "B"])
        sub, _ = subdivide_snapshot(snap, 1)
        assert [s.material for s in sub.submeshes] == ["A", "B"]
        assert [s.triangle_count for s in sub.submeshes] == [4, 4]
        # The shared edge 1-2 gets one midpoint used by both submeshes.
        used_a = set(np.unique(sub.submeshes[0].triangles).tolist())
        used_b = set(np.unique(sub.submeshes[1].triangles).tolist())
        assert len(used_a & used_b) == 3

    def test_drops_out_of_range_triangles(self, make_snapshot):
        snap = make_snapshot([(0, 0, 0), (1, 0, 0), (0, 1, 0)], [(0, 0), (1, 0), (0, 1)],
                             [[[0, 1, 2], [0, 1, 9]]])
        sub, _ = subdivide_snapshot(snap, 1)
        assert sub.triangle_count == 4

    def test_triangle_cap_limits_passes(self, unit_square):
        sub, _ = subdivide_snapshot(unit_square, 3, max_triangles=40)
        assert sub.triangle_count == 32

    def test_limit_subdivision_iterations(self):
        assert limit_subdivision_iterations(100, 3, max_triangles=1_000_000) == 3
        assert limit_subdivision_iterations(300_000, 3, max_triangles=1_000_000) == 0
        assert limit_subdivision_iterations(100_000, 3, max_triangles=1_000_000) == 1
