"""In-memory records for loaded engine models.

These mirror what the `.lgo`/`.lmo`/`.lab` readers hand over: a vertex soup with
FVF flags, subsets partitioning the index buffer by material, optional blend
data, and an optional skeleton. Exporters treat every record as read-only.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from pathlib import Path

import numpy as np


FVF_NORMAL = 0x010
FVF_DIFFUSE = 0x040
FVF_TEX1 = 0x100
FVF_TEX2 = 0x200
FVF_TEX3 = 0x300
FVF_TEX4 = 0x400
FVF_TEXCOUNT_MASK = 0xF00
FVF_LASTBETA_UBYTE4 = 0x1000

ROOT_PARENT_ID = 0xFFFFFFFF
MAX_TEXCOORD_CHANNELS = 4
MAX_INFLUENCES = 4


class TransparencyMode(IntEnum):
    FILTER = 0
    ADDITIVE = 1
    ADDITIVE1 = 2
    ADDITIVE2 = 3
    ADDITIVE3 = 4
    SUBTRACTIVE = 5
    SUBTRACTIVE1 = 6
    SUBTRACTIVE2 = 7
    SUBTRACTIVE3 = 8


def describe_fvf(fvf: int) -> list[str]:
    features: list[str] = ["POSITION"]
    if fvf & FVF_NORMAL:
        features.append("NORMAL")
    if fvf & FVF_DIFFUSE:
        features.append("DIFFUSE")
    tex_count = (fvf & FVF_TEXCOUNT_MASK) >> 8
    if tex_count:
        features.append(f"TEX{tex_count}")
    if fvf & FVF_LASTBETA_UBYTE4:
        features.append("BLEND")
    return features


def strip_c_string(raw: str) -> str:
    return raw.split("\0", 1)[0].strip()


@dataclass(frozen=True)
class TextureRef:
    file_name: str
    stage: int = 0
    width: int = 0
    height: int = 0
    format: int = 0

    @property
    def name(self) -> str:
        return strip_c_string(self.file_name)


@dataclass(frozen=True)
class Material:
    ambient: tuple[float, float, float, float] = (0.2, 0.2, 0.2, 1.0)
    diffuse: tuple[float, float, float, float] = (0.8, 0.8, 0.8, 1.0)
    specular: tuple[float, float, float, float] = (0.0, 0.0, 0.0, 1.0)
    emissive: tuple[float, float, float, float] = (0.0, 0.0, 0.0, 1.0)
    power: float = 0.0
    opacity: float = 1.0
    transparency: TransparencyMode = TransparencyMode.FILTER
    textures: tuple[TextureRef, ...] = ()

    @property
    def primary_texture_name(self) -> str:
        if not self.textures:
            return ""
        return self.textures[0].name


@dataclass(frozen=True)
class Subset:
    start_index: int
    primitive_count: int
    min_index: int = 0
    vertex_count: int = 0

    @property
    def index_count(self) -> int:
        return self.primitive_count * 3


@dataclass
class Geometry:
    positions: np.ndarray  # float32 [N, 3]
    indices: np.ndarray  # uint32 [M]
    fvf: int = 0
    normals: np.ndarray | None = None  # float32 [N, 3]
    texcoords: list[np.ndarray] = field(default_factory=list)  # float32 [N, 2] per channel
    subsets: list[Subset] = field(default_factory=list)
    materials: list[Material] = field(default_factory=list)
    blend_indices: np.ndarray | None = None  # uint8 [K, 4], local bone slots
    blend_weights: np.ndarray | None = None  # float32 [K, 4]
    bone_index_table: np.ndarray | None = None  # uint32 [B]
    bone_influence_factor: int = 0
    local_matrix: np.ndarray | None = None  # float32 [16], row-major
    name: str = ""
    object_id: int = 0

    def __post_init__(self) -> None:
        self.positions = np.asarray(self.positions, dtype=np.float32).reshape(-1, 3)
        self.indices = np.asarray(self.indices, dtype=np.uint32).reshape(-1)
        if self.normals is not None:
            self.normals = np.asarray(self.normals, dtype=np.float32).reshape(-1, 3)
        self.texcoords = [np.asarray(t, dtype=np.float32).reshape(-1, 2) for t in self.texcoords[:MAX_TEXCOORD_CHANNELS]]
        if self.blend_indices is not None:
            self.blend_indices = np.asarray(self.blend_indices, dtype=np.int64).reshape(-1, MAX_INFLUENCES)
        if self.blend_weights is not None:
            self.blend_weights = np.asarray(self.blend_weights, dtype=np.float32).reshape(-1, MAX_INFLUENCES)
        if self.bone_index_table is not None:
            self.bone_index_table = np.asarray(self.bone_index_table, dtype=np.int64).reshape(-1)
        if self.local_matrix is not None:
            self.local_matrix = np.asarray(self.local_matrix, dtype=np.float32).reshape(-1)

    @property
    def vertex_count(self) -> int:
        return int(self.positions.shape[0])

    @property
    def index_count(self) -> int:
        return int(self.indices.shape[0])

    @property
    def triangle_count(self) -> int:
        return self.index_count // 3

    @property
    def has_normals(self) -> bool:
        return bool(self.fvf & FVF_NORMAL) and self.normals is not None and len(self.normals) > 0

    @property
    def has_texcoords(self) -> bool:
        return bool(self.fvf & FVF_TEXCOUNT_MASK) and bool(self.texcoords) and len(self.texcoords[0]) > 0

    @property
    def has_blend_data(self) -> bool:
        return (
            self.blend_indices is not None
            and self.blend_weights is not None
            and len(self.blend_indices) > 0
            and len(self.blend_weights) > 0
        )

    @property
    def has_bone_mapping(self) -> bool:
        return self.bone_index_table is not None and len(self.bone_index_table) > 0

    @property
    def blend_count(self) -> int:
        if not self.has_blend_data:
            return 0
        return min(len(self.blend_indices), len(self.blend_weights))

    @property
    def has_valid_local_matrix(self) -> bool:
        m = self.local_matrix
        if m is None or len(m) < 16:
            return False
        return bool(m[0] != 0.0 or m[5] != 0.0 or m[10] != 0.0)

    def material_for(self, subset_index: int) -> Material | None:
        if 0 <= subset_index < len(self.materials):
            return self.materials[subset_index]
        return None


@dataclass
class ModelObject:
    geometries: list[Geometry] = field(default_factory=list)
    origin_path: str | None = None


@dataclass(frozen=True)
class Bone:
    name: str
    id: int
    parent_id: int = ROOT_PARENT_ID

    @property
    def is_root(self) -> bool:
        return self.parent_id == ROOT_PARENT_ID


@dataclass
class Skeleton:
    bone_count: int
    frame_count: int = 0
    key_type: int = 0
    dummy_count: int = 0
    bones: list[Bone] = field(default_factory=list)
    inverse_bind_matrices: list[list[float] | np.ndarray | None] = field(default_factory=list)

    @staticmethod
    def is_valid_matrix(matrix: list[float] | np.ndarray | None) -> bool:
        return matrix is not None and len(matrix) >= 16

    @property
    def valid_matrix_count(self) -> int:
        return sum(1 for m in self.inverse_bind_matrices if self.is_valid_matrix(m))


@dataclass
class ExportGroup:
    """Selection handed to one OBJ export: loose geometries, model objects, and their origin paths."""

    geometries: list[Geometry] = field(default_factory=list)
    models: list[ModelObject] = field(default_factory=list)
    origin_paths: list[str] = field(default_factory=list)

    def add_geometry(self, geometry: Geometry, origin_path: str | None = None) -> None:
        self.geometries.append(geometry)
        self.origin_paths.append(origin_path or "")

    def add_model(self, model: ModelObject) -> None:
        self.models.append(model)

    @property
    def first_origin_path(self) -> str | None:
        for p in self.origin_paths:
            if p:
                return p
        for m in self.models:
            if m.origin_path:
                return m.origin_path
        return None

    def base_name(self, default_name: str | None = None) -> str | None:
        if default_name:
            return default_name
        first = self.first_origin_path
        if first:
            return Path(first.replace("\\", "/")).stem
        return None

    def is_empty(self) -> bool:
        return not self.geometries and not any(m.geometries for m in self.models)
