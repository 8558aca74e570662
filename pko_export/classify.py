from __future__ import annotations

from enum import Enum
from pathlib import PurePosixPath

from .model import FVF_LASTBETA_UBYTE4, Geometry, Skeleton


MAP_OBJECT_EXTENSIONS = {".lmo"}


class ModelCategory(Enum):
    CHARACTER = "character"
    ITEM = "item"
    MAP_OBJECT = "map_object"
    SKINNED_ITEM = "skinned_item"
    STATIC = "static"

    @property
    def wants_debug_variants(self) -> bool:
        return self is ModelCategory.CHARACTER


def source_extension(source_path: str | None) -> str:
    if not source_path:
        return ""
    return PurePosixPath(source_path.replace("\\", "/")).suffix.lower()


def classify_model(geometry: Geometry, skeleton: Skeleton | None = None, source_path: str | None = None) -> ModelCategory:
    if source_extension(source_path) in MAP_OBJECT_EXTENSIONS:
        return ModelCategory.MAP_OBJECT

    bone_count = skeleton.bone_count if skeleton is not None else 0
    if (
        bone_count > 1
        and geometry.has_blend_data
        and geometry.has_bone_mapping
        and geometry.bone_influence_factor > 0
        and geometry.fvf & FVF_LASTBETA_UBYTE4
    ):
        return ModelCategory.CHARACTER

    if skeleton is not None and bone_count <= 2 and (geometry.has_blend_data or geometry.has_bone_mapping):
        return ModelCategory.SKINNED_ITEM

    if geometry.vertex_count == 0:
        return ModelCategory.STATIC
    return ModelCategory.ITEM
