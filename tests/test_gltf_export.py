import json

import numpy as np
import pytest

import pko_export.gltf_export as gltf_export
from pko_export.classify import ModelCategory
from pko_export.gltf_export import GltfExportOptions, export_gltf, export_model_gltf
from pko_export.gltf_layout import UVStrategy, plan_layout
from pko_export.model import Geometry, ModelObject, Subset

from helpers import accessor_data, load_gltf, material, quad, skeleton, skinned_quad, translation, two_subset_quad, write_bmp


def assert_contiguous(doc, blob):
    views = doc["bufferViews"]
    for k in range(len(views) - 1):
        assert views[k]["byteOffset"] + views[k]["byteLength"] == views[k + 1]["byteOffset"]
    assert views[0]["byteOffset"] == 0
    assert sum(v["byteLength"] for v in views) == len(blob) == doc["buffers"][0]["byteLength"]


def test_static_quad_layout(tmp_path):
    result = export_gltf(quad(), tmp_path / "quad.gltf")
    doc, blob = load_gltf(tmp_path / "quad.gltf")

    assert result.ok and result.category is ModelCategory.ITEM
    assert doc["asset"]["version"] == "2.0"
    assert_contiguous(doc, blob)
    assert [v["name"] for v in doc["bufferViews"]] == ["POSITION", "NORMAL", "INDICES_0"]

    prim = doc["meshes"][0]["primitives"][0]
    assert set(prim["attributes"]) == {"POSITION", "NORMAL"}
    indices = accessor_data(doc, blob, prim["indices"])
    assert indices.reshape(-1).tolist() == [0, 1, 2, 0, 2, 3]
    # Synthesized normals point straight up.
    normals = accessor_data(doc, blob, prim["attributes"]["NORMAL"])
    assert normals.tolist() == [[0.0, 0.0, 1.0]] * 4
    assert doc["accessors"][0]["max"] == [100.0, 100.0, 0.0]
    assert "skins" not in doc
    assert (tmp_path / "quad.txt").exists()


def test_odd_index_block_is_padded_but_offsets_stay_contiguous(tmp_path):
    geom = Geometry(positions=[[0, 0, 0], [1, 0, 0], [0, 1, 0]], indices=[0, 1, 2], subsets=[Subset(0, 1, 0, 3)], materials=[material()])
    export_gltf(geom, tmp_path / "tri.gltf")
    doc, blob = load_gltf(tmp_path / "tri.gltf")

    assert_contiguous(doc, blob)
    index_view = doc["bufferViews"][-1]
    assert index_view["byteLength"] == 8
    assert doc["accessors"][-1]["count"] == 3


def test_effects_subsets_are_excluded(tmp_path):
    result = export_gltf(two_subset_quad("1.BMP"), tmp_path / "fx.gltf")
    doc, blob = load_gltf(tmp_path / "fx.gltf")

    assert result.primitive_count == 1
    prims = doc["meshes"][0]["primitives"]
    assert len(prims) == 1
    assert [v["name"] for v in doc["bufferViews"] if v["name"].startswith("INDICES")] == ["INDICES_0"]
    assert accessor_data(doc, blob, prims[0]["indices"]).reshape(-1).tolist() == [0, 1, 2]
    assert_contiguous(doc, blob)


def test_all_effects_subsets_leave_fallback_primitive(tmp_path):
    geom = two_subset_quad("1.bmp", first_texture="1.Bmp")
    export_gltf(geom, tmp_path / "fx.gltf")
    doc, blob = load_gltf(tmp_path / "fx.gltf")

    prims = doc["meshes"][0]["primitives"]
    assert len(prims) == 1
    assert "indices" not in prims[0]
    assert set(prims[0]["attributes"]) == {"POSITION", "NORMAL"}
    assert doc["materials"][prims[0]["material"]]["name"].endswith("_fallback")
    assert_contiguous(doc, blob)


def test_out_of_range_triangles_dropped(tmp_path):
    geom = quad()
    geom.indices[5] = 99
    plan = plan_layout(geom)
    assert plan.primitives[0].triangle_count == 1
    assert plan.dropped_triangles == {0: 1}


def test_large_meshes_use_32_bit_indices():
    n = 70000
    geom = Geometry(positions=np.zeros((n, 3)), indices=[0, 1, n - 1], subsets=[Subset(0, 1, 0, n)])
    plan = plan_layout(geom)
    block = plan.blocks[plan.primitives[0].indices]
    assert block.component_type == 5125


def test_skinned_export(tmp_path):
    geom = skinned_quad([9, 3, 1, 0], weights=[[0.3, 0.3, 0, 0], [1, 0, 0, 0], [0, 0, 0, 0], [2, 2, 0, 0]])
    geom.blend_indices[:, 1] = [1, 0, 0, 2]
    result = export_gltf(geom, tmp_path / "skin.gltf", skeleton=skeleton(10, valid_matrices=5), options=GltfExportOptions(debug_variants=False))
    doc, blob = load_gltf(tmp_path / "skin.gltf")

    assert result.skinned
    assert_contiguous(doc, blob)
    skin = doc["skins"][0]
    ibm = accessor_data(doc, blob, skin["inverseBindMatrices"])
    assert ibm.shape == (5, 16)
    assert skin["joints"] == [1, 2, 3, 4, 5]
    assert doc["nodes"][0]["skin"] == 0
    assert doc["nodes"][1]["children"] == [2]

    attrs = doc["meshes"][0]["primitives"][0]["attributes"]
    joints = accessor_data(doc, blob, attrs["JOINTS_0"])
    weights = accessor_data(doc, blob, attrs["WEIGHTS_0"])
    assert int(joints.max()) <= len(ibm) - 1
    np.testing.assert_allclose(weights.sum(axis=1), 1.0, rtol=1e-6)
    assert weights[2].tolist() == [1.0, 0.0, 0.0, 0.0]


def test_skin_without_matrices_gets_identity_per_joint(tmp_path):
    sk = skeleton(4)
    sk.inverse_bind_matrices = []
    export_gltf(skinned_quad([0, 1, 2, 3]), tmp_path / "bare.gltf", skeleton=sk, options=GltfExportOptions(debug_variants=False))
    doc, blob = load_gltf(tmp_path / "bare.gltf")

    skin = doc["skins"][0]
    assert "inverseBindMatrices" in skin
    ibm = accessor_data(doc, blob, skin["inverseBindMatrices"])
    assert ibm.shape == (4, 16)
    np.testing.assert_array_equal(ibm, np.tile(np.eye(4).reshape(16), (4, 1)))
    joints = accessor_data(doc, blob, doc["meshes"][0]["primitives"][0]["attributes"]["JOINTS_0"])
    assert int(joints.max()) <= len(ibm) - 1
    assert_contiguous(doc, blob)


def test_skin_without_skeleton_sizes_matrices_from_bone_table(tmp_path):
    geom = skinned_quad([0, 1, 0, 1], bone_index_table=[3, 5])
    export_gltf(geom, tmp_path / "loose.gltf", options=GltfExportOptions(debug_variants=False))
    doc, blob = load_gltf(tmp_path / "loose.gltf")

    skin = doc["skins"][0]
    ibm = accessor_data(doc, blob, skin["inverseBindMatrices"])
    assert ibm.shape == (6, 16)
    joints = accessor_data(doc, blob, doc["meshes"][0]["primitives"][0]["attributes"]["JOINTS_0"])
    assert joints[:, 0].tolist() == [3, 5, 3, 5]
    assert int(joints.max()) <= len(ibm) - 1


def test_opacity_becomes_blend_and_diffuse_is_ignored(tmp_path):
    geom = quad()
    geom.materials = [material(opacity=0.25, diffuse=(0.1, 0.2, 0.3, 1.0))]
    export_gltf(geom, tmp_path / "glass.gltf")
    doc, _ = load_gltf(tmp_path / "glass.gltf")

    mat = doc["materials"][0]
    assert mat["alphaMode"] == "BLEND"
    assert mat["pbrMetallicRoughness"]["baseColorFactor"] == [1.0, 1.0, 1.0, 0.25]
    assert mat["doubleSided"] is True


def test_textures_copied_and_referenced(tmp_path):
    client = tmp_path / "client"
    write_bmp(client / "texture" / "item" / "SWORD.BMP")
    model_path = client / "model" / "item" / "sword.lgo"
    out = tmp_path / "out"

    geom = two_subset_quad("sword.bmp", first_texture="sword")
    export_gltf(geom, out / "sword.gltf", model_path=str(model_path))
    doc, _ = load_gltf(out / "sword.gltf")

    assert (out / "sword.bmp").exists()
    assert doc["images"] == [{"uri": "sword.bmp", "name": "sword.bmp"}]
    assert len(doc["textures"]) == 1
    assert len(doc["samplers"]) == 1
    for mat in doc["materials"]:
        assert mat["pbrMetallicRoughness"]["baseColorTexture"]["index"] == 0


def test_missing_texture_emits_no_image(tmp_path):
    geom = quad("nowhere.bmp")
    export_gltf(geom, tmp_path / "q.gltf", model_path=str(tmp_path / "model" / "item" / "q.lgo"))
    doc, _ = load_gltf(tmp_path / "q.gltf")
    assert "images" not in doc
    assert "nowhere.bmp (missing)" in (tmp_path / "q.txt").read_text()


def test_character_writes_uv_variants(tmp_path):
    geom = skinned_quad([0, 1, 0, 1], bone_index_table=[0, 1], factor=2)
    result = export_gltf(geom, tmp_path / "hero.gltf", skeleton=skeleton(3))

    assert result.category is ModelCategory.CHARACTER
    names = sorted(p.name for p in result.variants)
    assert names == ["hero_flipped.gltf", "hero_offset.gltf", "hero_rotated.gltf", "hero_texcoord1.gltf"]
    doc, blob = load_gltf(tmp_path / "hero_flipped.gltf")
    uv = accessor_data(doc, blob, doc["meshes"][0]["primitives"][0]["attributes"]["TEXCOORD_0"])
    assert uv[0].tolist() == [0.0, 1.0]


def test_explicit_uv_strategy(tmp_path):
    options = GltfExportOptions(uv_strategy=UVStrategy.ROTATE_90)
    export_gltf(quad(uvs=True), tmp_path / "r.gltf", options=options)
    doc, blob = load_gltf(tmp_path / "r.gltf")
    uv = accessor_data(doc, blob, doc["meshes"][0]["primitives"][0]["attributes"]["TEXCOORD_0"])
    assert uv[1].tolist() == [1.0, 1.0]
    assert uv[3].tolist() == [0.0, 0.0]


def test_failure_writes_error_report_and_static_fallback(tmp_path, monkeypatch):
    def boom(*args, **kwargs):
        raise RuntimeError("bone table exploded")

    monkeypatch.setattr(gltf_export, "build_skinning", boom)
    result = export_gltf(skinned_quad([0, 1, 0, 1]), tmp_path / "broken.gltf", skeleton=skeleton(2))

    assert result.status == "static-fallback"
    error_text = result.error_path.read_text()
    assert "bone table exploded" in error_text
    assert "RuntimeError" in error_text
    doc, blob = load_gltf(tmp_path / "broken.gltf")
    assert "skins" not in doc
    assert_contiguous(doc, blob)


def test_total_failure_writes_empty_scene(tmp_path, monkeypatch):
    def boom(*args, **kwargs):
        raise ValueError("no layout")

    monkeypatch.setattr(gltf_export, "plan_layout", boom)
    result = export_gltf(quad(), tmp_path / "dead.gltf")

    assert result.status == "empty-fallback"
    doc = json.loads((tmp_path / "dead.gltf").read_text())
    assert doc["asset"]["version"] == "2.0"
    assert doc["scene"] == 0 and len(doc["scenes"]) == 1
    assert "buffers" not in doc
    assert not (tmp_path / "dead.bin").exists()
    assert (tmp_path / "dead_error.txt").exists()


def test_report_failure_keeps_full_export(tmp_path, monkeypatch):
    def boom(*args, **kwargs):
        raise RuntimeError("report exploded")

    monkeypatch.setattr(gltf_export, "build_export_report", boom)
    result = export_gltf(two_subset_quad("a.bmp"), tmp_path / "kept.gltf")

    assert result.status == "ok"
    assert result.report_path is None
    assert result.error_path is None
    assert not (tmp_path / "kept_error.txt").exists()
    doc, blob = load_gltf(tmp_path / "kept.gltf")
    assert len(doc["meshes"][0]["primitives"]) == 2
    assert_contiguous(doc, blob)


def test_no_partial_files_left_behind(tmp_path):
    export_gltf(quad(), tmp_path / "clean.gltf")
    assert not list(tmp_path.glob(".*.part"))


def test_model_object_bakes_local_matrices(tmp_path):
    a = quad()
    b = quad(local_matrix=translation(10.0, 0.0, 0.0))
    result = export_model_gltf(ModelObject([a, b], "client/model/scene/house.lmo"), tmp_path / "house.gltf")
    doc, blob = load_gltf(tmp_path / "house.gltf")

    assert result.category is ModelCategory.MAP_OBJECT
    positions = accessor_data(doc, blob, 0)
    assert len(positions) == 8
    assert positions[4].tolist() == pytest.approx([10.0, 0.0, 0.0])
    second = accessor_data(doc, blob, doc["meshes"][0]["primitives"][1]["indices"])
    assert second.reshape(-1).tolist() == [4, 5, 6, 4, 6, 7]
