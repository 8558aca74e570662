import numpy as np
import pytest

from pko_export.skinning import build_skinning, resolve_bone_count, transpose_inverse_bind

from helpers import skeleton, skinned_quad, translation


def test_joints_clamped_to_valid_matrix_count():
    geom = skinned_quad([9, 9, 2, 0])
    skin = build_skinning(geom, skeleton(10, valid_matrices=5))

    assert skin.bone_count == 5
    assert skin.inverse_bind.shape == (5, 16)
    assert int(skin.joints.max()) <= 4
    assert skin.joints[0, 0] == 4


def test_weights_normalized_to_one():
    geom = skinned_quad([0, 1, 2, 3], weights=[[0.2, 0.2, 0.0, 0.0], [2.0, 1.0, 1.0, 0.0], [1.0, 0.0, 0.0, 0.0], [0.5, 0.0, 0.0, 0.0]])
    skin = build_skinning(geom, skeleton(4))

    np.testing.assert_allclose(skin.weights.sum(axis=1), 1.0, rtol=1e-6)
    np.testing.assert_allclose(skin.weights[0], [0.5, 0.5, 0.0, 0.0])
    np.testing.assert_allclose(skin.weights[1], [0.5, 0.25, 0.25, 0.0])


def test_zero_weights_rebind_to_joint_zero():
    geom = skinned_quad([3, 3, 3, 3], weights=[[0.0, 0.0, 0.0, 0.0]] * 4)
    skin = build_skinning(geom, skeleton(4))

    assert skin.rebound_vertices == 4
    assert skin.joints.tolist() == [[0, 0, 0, 0]] * 4
    assert skin.weights.tolist() == [[1.0, 0.0, 0.0, 0.0]] * 4


def test_vertices_without_blend_rows_get_default_binding():
    geom = skinned_quad([1, 1])
    skin = build_skinning(geom, skeleton(2))

    assert skin.joints.shape == (4, 4)
    assert skin.weights[2:].tolist() == [[1.0, 0.0, 0.0, 0.0]] * 2


def test_influence_factor_limits_slots():
    geom = skinned_quad([1, 1, 1, 1], weights=[[0.5, 0.5, 0.0, 0.0]] * 4, factor=1)
    geom.blend_indices[:, 1] = 1
    skin = build_skinning(geom, skeleton(2))

    assert skin.weights.tolist() == [[1.0, 0.0, 0.0, 0.0]] * 4
    assert skin.joints[:, 1].tolist() == [0, 0, 0, 0]


def test_bone_table_maps_local_slots_to_global_ids():
    geom = skinned_quad([0, 1, 2, 0], bone_index_table=[5, 7])
    skin = build_skinning(geom, skeleton(8))

    # Slot 2 is outside the two-entry table and falls back to bone 0.
    assert skin.joints[:, 0].tolist() == [5, 7, 0, 5]


def test_bone_count_without_skeleton_comes_from_table():
    geom = skinned_quad([0, 1, 0, 1], bone_index_table=[2, 6])
    assert resolve_bone_count(geom, None) == 7
    skin = build_skinning(geom)
    assert skin.inverse_bind.shape == (7, 16)
    np.testing.assert_array_equal(skin.inverse_bind, np.tile(np.eye(4).reshape(16), (7, 1)))


def test_empty_matrix_list_yields_identity_per_bone():
    sk = skeleton(4)
    sk.inverse_bind_matrices = []
    skin = build_skinning(skinned_quad([0, 1, 2, 3]), sk)

    assert skin.bone_count == 4
    assert skin.invalid_matrices == 4
    assert skin.inverse_bind.shape == (4, 16)
    np.testing.assert_array_equal(skin.inverse_bind[3], np.eye(4).reshape(16))


def test_inverse_bind_is_transposed_and_invalid_is_identity():
    row_major = translation(1.0, 2.0, 3.0)
    out = transpose_inverse_bind(row_major)
    assert out[[3, 7, 11]].tolist() == pytest.approx([1.0, 2.0, 3.0])
    assert out[1] == row_major[4]

    np.testing.assert_array_equal(transpose_inverse_bind([1.0] * 15), np.eye(4).reshape(16))
    np.testing.assert_array_equal(transpose_inverse_bind(None), np.eye(4).reshape(16))


def test_malformed_matrices_counted():
    sk = skeleton(3)
    sk.inverse_bind_matrices[1] = [0.0] * 4
    skin = build_skinning(skinned_quad([0, 1, 2, 0]), sk)
    # Only two of three matrices are valid, so the bone count clamps to 2.
    assert skin.bone_count == 2
    assert skin.invalid_matrices == 1
    np.testing.assert_array_equal(skin.inverse_bind[1], np.eye(4).reshape(16))
