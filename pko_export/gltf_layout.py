"""Layout plan shared by the glTF JSON builder and the .bin writer.

A plan is an ordered list of blocks. Block k owns accessor k and bufferView k, and
sits at the running sum of the padded lengths of blocks 0..k-1 inside the buffer.
Both writers walk the same list, so the JSON offsets and the buffer bytes cannot
drift apart.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

import numpy as np

from .errors import LayoutError
from .model import Geometry, Subset
from .skinning import SkinningResult
from .textures import is_effects_sentinel


logger = logging.getLogger(__name__)

COMPONENT_FLOAT = 5126
COMPONENT_UNSIGNED_SHORT = 5123
COMPONENT_UNSIGNED_INT = 5125

TARGET_ARRAY_BUFFER = 34962
TARGET_ELEMENT_ARRAY_BUFFER = 34963

BLOCK_ALIGNMENT = 4
UP_NORMAL = (0.0, 0.0, 1.0)
U16_MAX_INDEX = 0xFFFF


class UVStrategy(Enum):
    IDENTITY = "identity"
    FLIP_V = "flipped"
    OFFSET = "offset"
    ROTATE_90 = "rotated"
    ALTERNATE_CHANNEL = "texcoord1"

    @property
    def file_suffix(self) -> str:
        if self is UVStrategy.IDENTITY:
            return ""
        return f"_{self.value}"


def apply_uv_strategy(uv: np.ndarray, strategy: UVStrategy) -> np.ndarray:
    out = np.array(uv, dtype=np.float32, copy=True)
    if strategy is UVStrategy.FLIP_V:
        out[:, 1] = 1.0 - out[:, 1]
    elif strategy is UVStrategy.OFFSET:
        out += 0.5
    elif strategy is UVStrategy.ROTATE_90:
        out = np.stack([1.0 - uv[:, 1], uv[:, 0]], axis=1).astype(np.float32)
    return out


def fit_rows(data: np.ndarray, rows: int, fill: np.ndarray | None = None) -> np.ndarray:
    """Truncate or pad `data` to exactly `rows` rows. Padding repeats `fill` (zeros by default)."""
    if len(data) >= rows:
        return data[:rows]
    pad_row = np.zeros(data.shape[1], dtype=data.dtype) if fill is None else fill
    pad = np.tile(pad_row, (rows - len(data), 1)).astype(data.dtype)
    return np.concatenate([data, pad], axis=0)


@dataclass
class Block:
    name: str
    data: np.ndarray
    component_type: int
    element_type: str
    target: int | None = None
    minimum: list[float] | None = None
    maximum: list[float] | None = None

    @property
    def count(self) -> int:
        return int(self.data.shape[0])

    @property
    def payload_length(self) -> int:
        return int(self.data.nbytes)

    @property
    def byte_length(self) -> int:
        n = self.payload_length
        return (n + BLOCK_ALIGNMENT - 1) // BLOCK_ALIGNMENT * BLOCK_ALIGNMENT

    def to_bytes(self) -> bytes:
        raw = np.ascontiguousarray(self.data).tobytes()
        return raw + b"\x00" * (self.byte_length - len(raw))


@dataclass
class PrimitivePlan:
    attributes: dict[str, int]
    subset_index: int | None = None
    indices: int | None = None
    triangle_count: int = 0


@dataclass
class LayoutPlan:
    blocks: list[Block]
    primitives: list[PrimitivePlan]
    uv_strategy: UVStrategy = UVStrategy.IDENTITY
    skinning: SkinningResult | None = None
    inverse_bind_block: int | None = None
    normals_synthesized: bool = False
    excluded_subsets: dict[int, str] = field(default_factory=dict)
    dropped_triangles: dict[int, int] = field(default_factory=dict)

    def offsets(self) -> list[int]:
        out: list[int] = []
        cursor = 0
        for block in self.blocks:
            out.append(cursor)
            cursor += block.byte_length
        return out

    @property
    def total_length(self) -> int:
        return sum(b.byte_length for b in self.blocks)

    @property
    def is_fallback(self) -> bool:
        return len(self.primitives) == 1 and self.primitives[0].subset_index is None

    def check(self) -> None:
        cursor = 0
        for k, (block, offset) in enumerate(zip(self.blocks, self.offsets())):
            if offset != cursor or offset % BLOCK_ALIGNMENT:
                raise LayoutError(f"Block {k} ({block.name}) at offset {offset}, expected {cursor}")
            if block.count == 0:
                raise LayoutError(f"Block {k} ({block.name}) is empty")
            cursor += block.byte_length
        if cursor != self.total_length:
            raise LayoutError(f"Buffer length {self.total_length} does not match block sum {cursor}")


def subset_triangles(geometry: Geometry, subset: Subset) -> tuple[np.ndarray, int]:
    """Triangles of one subset that stay inside the index buffer and reference real vertices."""
    start = subset.start_index
    total = geometry.index_count
    if subset.primitive_count <= 0 or start < 0 or start >= total:
        return np.zeros((0, 3), dtype=np.uint32), max(subset.primitive_count, 0)
    available = (total - start) // 3
    tri_count = min(subset.primitive_count, available)
    tris = geometry.indices[start : start + tri_count * 3].reshape(-1, 3)
    ok = (tris < geometry.vertex_count).all(axis=1)
    dropped = subset.primitive_count - tri_count + int(np.count_nonzero(~ok))
    return tris[ok], dropped


def effective_subsets(geometry: Geometry) -> list[Subset]:
    if geometry.subsets:
        return list(geometry.subsets)
    if geometry.index_count >= 3:
        return [Subset(0, geometry.index_count // 3, 0, geometry.vertex_count)]
    return []


def _uv_source(geometry: Geometry, strategy: UVStrategy) -> np.ndarray | None:
    if not geometry.has_texcoords:
        return None
    if strategy is UVStrategy.ALTERNATE_CHANNEL:
        if len(geometry.texcoords) > 1 and len(geometry.texcoords[1]) > 0:
            return geometry.texcoords[1]
        logger.warning("No second texcoord channel, alternate-channel export uses channel 0")
    return geometry.texcoords[0]


def plan_layout(
    geometry: Geometry,
    *,
    skinning: SkinningResult | None = None,
    uv_strategy: UVStrategy = UVStrategy.IDENTITY,
) -> LayoutPlan:
    n = geometry.vertex_count
    blocks: list[Block] = []
    attributes: dict[str, int] = {}

    positions = np.ascontiguousarray(geometry.positions, dtype="<f4")
    lo = positions.min(axis=0) if n else np.zeros(3, dtype=np.float32)
    hi = positions.max(axis=0) if n else np.zeros(3, dtype=np.float32)
    attributes["POSITION"] = len(blocks)
    blocks.append(
        Block("POSITION", positions, COMPONENT_FLOAT, "VEC3", TARGET_ARRAY_BUFFER, [float(x) for x in lo], [float(x) for x in hi])
    )

    uv = _uv_source(geometry, uv_strategy)
    if uv is not None:
        uv = fit_rows(apply_uv_strategy(uv, uv_strategy), n)
        attributes["TEXCOORD_0"] = len(blocks)
        blocks.append(Block("TEXCOORD_0", np.ascontiguousarray(uv, dtype="<f4"), COMPONENT_FLOAT, "VEC2", TARGET_ARRAY_BUFFER))

    synthesized = not geometry.has_normals
    if synthesized:
        normals = np.tile(np.asarray(UP_NORMAL, dtype=np.float32), (n, 1))
    else:
        normals = fit_rows(geometry.normals, n, fill=geometry.normals[-1])
    attributes["NORMAL"] = len(blocks)
    blocks.append(Block("NORMAL", np.ascontiguousarray(normals, dtype="<f4"), COMPONENT_FLOAT, "VEC3", TARGET_ARRAY_BUFFER))

    if skinning is not None:
        attributes["JOINTS_0"] = len(blocks)
        blocks.append(
            Block("JOINTS_0", np.ascontiguousarray(skinning.joints, dtype="<u2"), COMPONENT_UNSIGNED_SHORT, "VEC4", TARGET_ARRAY_BUFFER)
        )
        attributes["WEIGHTS_0"] = len(blocks)
        blocks.append(
            Block("WEIGHTS_0", np.ascontiguousarray(skinning.weights, dtype="<f4"), COMPONENT_FLOAT, "VEC4", TARGET_ARRAY_BUFFER)
        )

    primitives: list[PrimitivePlan] = []
    excluded: dict[int, str] = {}
    dropped_by_subset: dict[int, int] = {}
    for i, subset in enumerate(effective_subsets(geometry)):
        material = geometry.material_for(i)
        if material is not None and is_effects_sentinel(material.primary_texture_name):
            excluded[i] = "effects texture"
            continue
        tris, dropped = subset_triangles(geometry, subset)
        if dropped:
            dropped_by_subset[i] = dropped
            logger.warning(f"Subset {i}: dropped {dropped} triangles with out-of-range indices")
        if len(tris) == 0:
            excluded[i] = "no valid triangles"
            continue
        flat = tris.reshape(-1)
        if int(flat.max()) > U16_MAX_INDEX:
            data, component = np.ascontiguousarray(flat, dtype="<u4"), COMPONENT_UNSIGNED_INT
        else:
            data, component = np.ascontiguousarray(flat, dtype="<u2"), COMPONENT_UNSIGNED_SHORT
        block_index = len(blocks)
        blocks.append(Block(f"INDICES_{i}", data, component, "SCALAR", TARGET_ELEMENT_ARRAY_BUFFER))
        primitives.append(PrimitivePlan(dict(attributes), i, block_index, len(tris)))

    if not primitives:
        logger.warning("No exportable subsets, emitting a position+normal fallback primitive")
        fallback_attrs = {"POSITION": attributes["POSITION"], "NORMAL": attributes["NORMAL"]}
        primitives.append(PrimitivePlan(fallback_attrs))

    inverse_bind_block = None
    if skinning is not None:
        inverse_bind_block = len(blocks)
        blocks.append(Block("INVERSE_BIND", np.ascontiguousarray(skinning.inverse_bind, dtype="<f4"), COMPONENT_FLOAT, "MAT4"))

    plan = LayoutPlan(
        blocks=blocks,
        primitives=primitives,
        uv_strategy=uv_strategy,
        skinning=skinning,
        inverse_bind_block=inverse_bind_block,
        normals_synthesized=synthesized,
        excluded_subsets=excluded,
        dropped_triangles=dropped_by_subset,
    )
    plan.check()
    return plan
