"""Local-matrix baking and concatenation of several geometries into one."""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np

from .gltf_layout import UP_NORMAL, effective_subsets, fit_rows
from .model import FVF_NORMAL, MAX_INFLUENCES, Geometry, Material, Subset


def local_positions(geometry: Geometry) -> np.ndarray:
    """Positions multiplied by the geometry's row-major local matrix (row-vector convention)."""
    if not geometry.has_valid_local_matrix:
        return geometry.positions
    m = geometry.local_matrix[:16].reshape(4, 4)
    return (geometry.positions @ m[:3, :3] + m[3, :3]).astype(np.float32)


def local_normals(geometry: Geometry) -> np.ndarray | None:
    if not geometry.has_normals:
        return None
    if not geometry.has_valid_local_matrix:
        return geometry.normals
    m = geometry.local_matrix[:16].reshape(4, 4)
    out = geometry.normals @ m[:3, :3]
    lengths = np.linalg.norm(out, axis=1, keepdims=True)
    return np.where(lengths > 0, out / np.maximum(lengths, 1e-12), out).astype(np.float32)


@dataclass
class UnifiedGeometry:
    geometry: Geometry
    # (part index, subset index within that part) for every unified subset
    subset_origins: list[tuple[int, int]] = field(default_factory=list)
    vertex_offsets: list[int] = field(default_factory=list)


def _part_bone_table(part: Geometry) -> np.ndarray:
    if part.has_bone_mapping:
        return part.bone_index_table
    if part.has_blend_data:
        return np.arange(int(part.blend_indices[: part.blend_count].max()) + 1, dtype=np.int64)
    return np.zeros(0, dtype=np.int64)


def unify_geometries(parts: list[Geometry], *, name: str = "unified", bake_local: bool = False) -> UnifiedGeometry:
    """Concatenate `parts` into one geometry.

    Indices are rebased by the running vertex count and subset starts by the running
    index count. Blend slots are rebased by the running bone-table length so that each
    part keeps resolving to its own global bone ids through the concatenated table.
    """
    if not parts:
        raise ValueError("unify_geometries needs at least one geometry")

    any_normals = any(p.has_normals for p in parts)
    channels = max((len(p.texcoords) for p in parts if p.has_texcoords), default=0)
    any_blend = any(p.has_blend_data for p in parts)

    positions, normals, indices = [], [], []
    texcoords: list[list[np.ndarray]] = [[] for _ in range(channels)]
    subsets: list[Subset] = []
    materials: list[Material] = []
    blend_idx, blend_w, tables = [], [], []
    origins: list[tuple[int, int]] = []
    vertex_offsets: list[int] = []

    vertex_offset = 0
    index_offset = 0
    table_offset = 0
    fvf = 0
    for part_no, part in enumerate(parts):
        n = part.vertex_count
        vertex_offsets.append(vertex_offset)
        fvf |= part.fvf
        positions.append(local_positions(part) if bake_local else part.positions)

        if any_normals:
            src = (local_normals(part) if bake_local else part.normals) if part.has_normals else None
            if src is None or len(src) == 0:
                src = np.tile(np.asarray(UP_NORMAL, dtype=np.float32), (n, 1))
            normals.append(fit_rows(src, n))

        for c in range(channels):
            if part.has_texcoords and c < len(part.texcoords):
                texcoords[c].append(fit_rows(part.texcoords[c], n))
            else:
                texcoords[c].append(np.zeros((n, 2), dtype=np.float32))

        # Out-of-range indices must stay out of range after rebasing.
        indices.append(np.where(part.indices < n, part.indices + np.uint32(vertex_offset), np.uint32(0xFFFFFFFF)).astype(np.uint32))

        for local_no, subset in enumerate(effective_subsets(part)):
            subsets.append(Subset(subset.start_index + index_offset, subset.primitive_count, subset.min_index + vertex_offset, subset.vertex_count))
            materials.append(part.material_for(local_no) or Material())
            origins.append((part_no, local_no))

        if any_blend:
            table = _part_bone_table(part)
            rows_i = np.zeros((n, MAX_INFLUENCES), dtype=np.int64)
            rows_w = np.zeros((n, MAX_INFLUENCES), dtype=np.float32)
            count = min(part.blend_count, n)
            if count:
                local = part.blend_indices[:count]
                # Slots outside the part's own table must not land in a neighbour's table.
                rows_i[:count] = np.where((local >= 0) & (local < len(table)), local + table_offset, -1)
                rows_w[:count] = part.blend_weights[:count]
            blend_idx.append(rows_i)
            blend_w.append(rows_w)
            tables.append(table)
            table_offset += len(table)

        vertex_offset += n
        index_offset += part.index_count

    if any_normals:
        fvf |= FVF_NORMAL
    unified = Geometry(
        positions=np.concatenate(positions, axis=0),
        indices=np.concatenate(indices),
        fvf=fvf,
        normals=np.concatenate(normals, axis=0) if any_normals else None,
        texcoords=[np.concatenate(ch, axis=0) for ch in texcoords],
        subsets=subsets,
        materials=materials,
        blend_indices=np.concatenate(blend_idx, axis=0) if any_blend else None,
        blend_weights=np.concatenate(blend_w, axis=0) if any_blend else None,
        bone_index_table=np.concatenate(tables) if any_blend and table_offset else None,
        bone_influence_factor=max(p.bone_influence_factor for p in parts),
        name=name,
    )
    return UnifiedGeometry(unified, origins, vertex_offsets)

