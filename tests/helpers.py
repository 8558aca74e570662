from __future__ import annotations

import json
from pathlib import Path

import numpy as np
from PIL import Image

from pko_export.model import (
    FVF_LASTBETA_UBYTE4,
    FVF_NORMAL,
    FVF_TEX1,
    FVF_TEX2,
    Bone,
    Geometry,
    Material,
    Skeleton,
    Subset,
    TextureRef,
)


DTYPES = {5126: "<f4", 5123: "<u2", 5125: "<u4"}
WIDTHS = {"SCALAR": 1, "VEC2": 2, "VEC3": 3, "VEC4": 4, "MAT4": 16}

QUAD_POSITIONS = [[0.0, 0.0, 0.0], [100.0, 0.0, 0.0], [100.0, 100.0, 0.0], [0.0, 100.0, 0.0]]
QUAD_INDICES = [0, 1, 2, 0, 2, 3]


def material(texture: str = "", opacity: float = 1.0, **kwargs) -> Material:
    textures = (TextureRef(texture),) if texture else ()
    return Material(opacity=opacity, textures=textures, **kwargs)


def quad(texture: str = "", *, normals: bool = False, uvs: bool = False, **kwargs) -> Geometry:
    fvf = 0
    extra = {}
    if normals:
        fvf |= FVF_NORMAL
        extra["normals"] = [[0.0, 1.0, 0.0]] * 4
    if uvs:
        fvf |= FVF_TEX1
        extra["texcoords"] = [[[0.0, 0.0], [1.0, 0.0], [1.0, 1.0], [0.0, 1.0]]]
    extra.update(kwargs)
    return Geometry(
        positions=QUAD_POSITIONS,
        indices=QUAD_INDICES,
        fvf=fvf,
        subsets=[Subset(0, 2, 0, 4)],
        materials=[material(texture)],
        **extra,
    )


def two_subset_quad(second_texture: str, first_texture: str = "") -> Geometry:
    return Geometry(
        positions=QUAD_POSITIONS,
        indices=QUAD_INDICES,
        subsets=[Subset(0, 1, 0, 3), Subset(3, 1, 0, 4)],
        materials=[material(first_texture), material(second_texture)],
    )


def skinned_quad(bone_ids: list[int], weights: list[list[float]] | None = None, factor: int = 4, **kwargs) -> Geometry:
    blend_indices = [[b, 0, 0, 0] for b in bone_ids]
    blend_weights = weights or [[1.0, 0.0, 0.0, 0.0]] * len(bone_ids)
    return Geometry(
        positions=QUAD_POSITIONS,
        indices=QUAD_INDICES,
        fvf=FVF_TEX1 | FVF_TEX2 | FVF_LASTBETA_UBYTE4,
        texcoords=[[[0.0, 0.0], [1.0, 0.0], [1.0, 1.0], [0.0, 1.0]]] * 2,
        subsets=[Subset(0, 2, 0, 4)],
        materials=[material()],
        blend_indices=blend_indices,
        blend_weights=blend_weights,
        bone_influence_factor=factor,
        **kwargs,
    )


def translation(x: float, y: float, z: float) -> list[float]:
    # Row-major, row-vector convention: translation lives in the last row.
    m = np.eye(4, dtype=np.float32)
    m[3, :3] = (x, y, z)
    return m.reshape(16).tolist()


def skeleton(bone_count: int, valid_matrices: int | None = None) -> Skeleton:
    valid = bone_count if valid_matrices is None else valid_matrices
    bones = [Bone(f"bone{i}", i, 0xFFFFFFFF if i == 0 else i - 1) for i in range(bone_count)]
    matrices = [translation(i, 0, 0) if i < valid else [] for i in range(bone_count)]
    return Skeleton(bone_count=bone_count, bones=bones, inverse_bind_matrices=matrices)


def write_bmp(path: Path, color: tuple[int, int, int] = (255, 0, 0)) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    Image.new("RGB", (4, 4), color).save(path, format="BMP")
    return path


def load_gltf(path: Path) -> tuple[dict, bytes]:
    doc = json.loads(path.read_text(encoding="utf-8"))
    blob = b""
    if doc.get("buffers"):
        blob = (path.parent / doc["buffers"][0]["uri"]).read_bytes()
    return doc, blob


def accessor_data(doc: dict, blob: bytes, k: int) -> np.ndarray:
    acc = doc["accessors"][k]
    view = doc["bufferViews"][acc["bufferView"]]
    width = WIDTHS[acc["type"]]
    data = np.frombuffer(blob, dtype=DTYPES[acc["componentType"]], count=acc["count"] * width, offset=view["byteOffset"])
    return data.reshape(acc["count"], width)
