"""Joint/weight attributes and inverse-bind matrices for skinned exports."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np

from .model import MAX_INFLUENCES, Geometry, Skeleton


logger = logging.getLogger(__name__)

WEIGHT_EPSILON = 0.001
IDENTITY_MATRIX = np.eye(4, dtype=np.float32).reshape(16)


@dataclass
class SkinningResult:
    joints: np.ndarray  # uint16 [N, 4]
    weights: np.ndarray  # float32 [N, 4]
    bone_count: int
    inverse_bind: np.ndarray  # float32 [bone_count, 16], column-major
    invalid_matrices: int = 0
    rebound_vertices: int = 0


def resolve_bone_count(geometry: Geometry, skeleton: Skeleton | None) -> int:
    count = 0
    if skeleton is not None and skeleton.bone_count > 0:
        count = skeleton.bone_count
    elif geometry.has_bone_mapping:
        count = int(geometry.bone_index_table.max()) + 1
    elif geometry.has_blend_data:
        count = int(geometry.blend_indices[: geometry.blend_count].max()) + 1

    if skeleton is not None:
        valid = skeleton.valid_matrix_count
        if 0 < valid < count:
            logger.warning(f"Clamping bone count {count} to {valid} valid inverse-bind matrices")
            count = valid
    return max(count, 1)


def transpose_inverse_bind(matrix: list[float] | np.ndarray | None) -> np.ndarray:
    if not Skeleton.is_valid_matrix(matrix):
        return IDENTITY_MATRIX.copy()
    m = np.asarray(matrix[:16], dtype=np.float32).reshape(4, 4)
    return np.ascontiguousarray(m.T).reshape(16)


def influence_count(geometry: Geometry) -> int:
    factor = geometry.bone_influence_factor
    if factor > 0:
        return min(factor, MAX_INFLUENCES)
    return MAX_INFLUENCES


def map_joints(geometry: Geometry, bone_count: int) -> np.ndarray:
    count = geometry.blend_count
    local = geometry.blend_indices[:count]
    if geometry.has_bone_mapping:
        table = geometry.bone_index_table
        in_range = (local >= 0) & (local < len(table))
        mapped = np.where(in_range, table[np.clip(local, 0, len(table) - 1)], 0)
    else:
        mapped = local
    return np.clip(mapped, 0, bone_count - 1)


def build_skinning(geometry: Geometry, skeleton: Skeleton | None = None) -> SkinningResult:
    n = geometry.vertex_count
    bone_count = resolve_bone_count(geometry, skeleton)

    joints = np.zeros((n, MAX_INFLUENCES), dtype=np.uint16)
    weights = np.zeros((n, MAX_INFLUENCES), dtype=np.float32)
    weights[:, 0] = 1.0
    rebound = 0

    count = min(geometry.blend_count, n)
    if count > 0:
        active = influence_count(geometry)
        src_joints = map_joints(geometry, bone_count)[:count].copy()
        src_weights = geometry.blend_weights[:count].astype(np.float64)
        src_joints[:, active:] = 0
        src_weights[:, active:] = 0.0
        src_weights = np.where(np.isfinite(src_weights), src_weights, 0.0)

        totals = src_weights.sum(axis=1)
        good = totals > WEIGHT_EPSILON
        rebound = int(np.count_nonzero(~good))

        normalized = np.zeros_like(src_weights)
        normalized[good] = src_weights[good] / totals[good, None]
        normalized[~good] = (1.0, 0.0, 0.0, 0.0)
        src_joints[~good] = 0

        joints[:count] = src_joints.astype(np.uint16)
        weights[:count] = normalized.astype(np.float32)

    # One matrix per exported joint, so every joint index has a matrix behind it.
    source = skeleton.inverse_bind_matrices if skeleton is not None else []
    rows = []
    invalid = 0
    for bone in range(bone_count):
        matrix = source[bone] if bone < len(source) else None
        if not Skeleton.is_valid_matrix(matrix):
            invalid += 1
        rows.append(transpose_inverse_bind(matrix))
    inverse_bind = np.stack(rows).astype(np.float32)
    if invalid:
        logger.warning(f"{invalid} inverse-bind matrices missing or malformed, using identity")

    return SkinningResult(
        joints=joints,
        weights=weights,
        bone_count=bone_count,
        inverse_bind=inverse_bind,
        invalid_matrices=invalid,
        rebound_vertices=rebound,
    )
