"""glTF 2.0 object model and the builder that fills it from a layout plan.

Each glTF object is a dataclass. `encode()` turns a tree of them into plain dicts:
snake_case fields become camelCase keys, and None or empty collections are left out.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field, fields, is_dataclass
from typing import Any

import numpy as np

from .gltf_layout import LayoutPlan
from .model import Geometry, Skeleton
from .textures import ResolvedTexture


GENERATOR = "pko-model-export"

FILTER_LINEAR = 9729
FILTER_LINEAR_MIPMAP_LINEAR = 9987
WRAP_REPEAT = 10497


@dataclass
class Asset:
    version: str = "2.0"
    generator: str = GENERATOR


@dataclass
class Scene:
    nodes: list[int] = field(default_factory=list)
    name: str | None = None


@dataclass
class Node:
    name: str | None = None
    mesh: int | None = None
    skin: int | None = None
    children: list[int] = field(default_factory=list)


@dataclass
class Primitive:
    attributes: dict[str, int]
    indices: int | None = None
    material: int | None = None


@dataclass
class Mesh:
    primitives: list[Primitive]
    name: str | None = None


@dataclass
class TextureInfo:
    index: int
    tex_coord: int | None = None


@dataclass
class PbrMetallicRoughness:
    base_color_factor: list[float]
    base_color_texture: TextureInfo | None = None
    metallic_factor: float = 0.0
    roughness_factor: float = 0.5


@dataclass
class Material:
    name: str
    pbr_metallic_roughness: PbrMetallicRoughness
    alpha_mode: str | None = None
    double_sided: bool = True


@dataclass
class Sampler:
    mag_filter: int = FILTER_LINEAR
    min_filter: int = FILTER_LINEAR_MIPMAP_LINEAR
    wrap_s: int = WRAP_REPEAT
    wrap_t: int = WRAP_REPEAT


@dataclass
class Texture:
    source: int
    sampler: int | None = 0


@dataclass
class Image:
    uri: str
    name: str | None = None


@dataclass
class Accessor:
    buffer_view: int
    component_type: int
    count: int
    type: str
    min: list[float] | None = None
    max: list[float] | None = None


@dataclass
class BufferView:
    buffer: int
    byte_offset: int
    byte_length: int
    target: int | None = None
    name: str | None = None


@dataclass
class Buffer:
    byte_length: int
    uri: str | None = None


@dataclass
class Skin:
    joints: list[int]
    inverse_bind_matrices: int | None = None
    skeleton: int | None = None
    name: str | None = None


@dataclass
class Document:
    asset: Asset = field(default_factory=Asset)
    scene: int | None = 0
    scenes: list[Scene] = field(default_factory=lambda: [Scene()])
    nodes: list[Node] = field(default_factory=list)
    meshes: list[Mesh] = field(default_factory=list)
    skins: list[Skin] = field(default_factory=list)
    materials: list[Material] = field(default_factory=list)
    textures: list[Texture] = field(default_factory=list)
    samplers: list[Sampler] = field(default_factory=list)
    images: list[Image] = field(default_factory=list)
    accessors: list[Accessor] = field(default_factory=list)
    buffer_views: list[BufferView] = field(default_factory=list)
    buffers: list[Buffer] = field(default_factory=list)


_CAMEL_RE = re.compile(r"_([a-z])")


def camel_case(name: str) -> str:
    return _CAMEL_RE.sub(lambda m: m.group(1).upper(), name)


def encode(value: Any) -> Any:
    if is_dataclass(value) and not isinstance(value, type):
        out: dict[str, Any] = {}
        for f in fields(value):
            item = getattr(value, f.name)
            if item is None or (isinstance(item, (list, tuple, dict)) and not item):
                continue
            out[camel_case(f.name)] = encode(item)
        return out
    if isinstance(value, dict):
        return {str(k): encode(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [encode(v) for v in value]
    if isinstance(value, np.generic):
        return value.item()
    return value


def to_json(document: Document) -> str:
    return json.dumps(encode(document), indent=2, allow_nan=False) + "\n"


def empty_document() -> Document:
    return Document(scenes=[Scene(name="empty")])


def joint_hierarchy(skeleton: Skeleton | None, bone_count: int) -> tuple[list[str], list[int | None]]:
    """Joint names and parent joint positions for the first `bone_count` bones."""
    bones = skeleton.bones[:bone_count] if skeleton is not None else []
    names = [bones[i].name if i < len(bones) and bones[i].name else f"Bone_{i}" for i in range(bone_count)]
    by_id = {bone.id: i for i, bone in enumerate(bones)}
    parents: list[int | None] = []
    for i in range(bone_count):
        parent = None
        if i < len(bones) and not bones[i].is_root:
            p = by_id.get(bones[i].parent_id)
            # Parents precede children in the bone table; anything else would form a cycle.
            if p is not None and p < i:
                parent = p
        parents.append(parent)
    return names, parents


def build_document(
    plan: LayoutPlan,
    geometry: Geometry,
    *,
    model_name: str,
    bin_uri: str,
    textures: list[ResolvedTexture | None] | None = None,
    skeleton: Skeleton | None = None,
) -> Document:
    doc = Document()
    offsets = plan.offsets()

    for k, block in enumerate(plan.blocks):
        doc.buffer_views.append(BufferView(0, offsets[k], block.byte_length, block.target, block.name))
        doc.accessors.append(Accessor(k, block.component_type, block.count, block.element_type, block.minimum, block.maximum))
    doc.buffers.append(Buffer(plan.total_length, bin_uri))

    image_index: dict[str, int] = {}
    primitives: list[Primitive] = []
    for prim in plan.primitives:
        if prim.subset_index is None:
            doc.materials.append(Material(f"{model_name}_fallback", PbrMetallicRoughness([1.0, 1.0, 1.0, 1.0])))
            primitives.append(Primitive(dict(prim.attributes), None, len(doc.materials) - 1))
            continue

        source = geometry.material_for(prim.subset_index)
        opacity = float(np.clip(source.opacity, 0.0, 1.0)) if source is not None else 1.0
        pbr = PbrMetallicRoughness([1.0, 1.0, 1.0, opacity])

        resolved = textures[prim.subset_index] if textures and prim.subset_index < len(textures) else None
        if resolved is not None and resolved.found and resolved.copied:
            key = resolved.name.lower()
            if key not in image_index:
                image_index[key] = len(doc.images)
                doc.images.append(Image(resolved.name, resolved.name))
                doc.textures.append(Texture(image_index[key]))
            pbr.base_color_texture = TextureInfo(image_index[key])

        doc.materials.append(
            Material(
                f"{model_name}_material_{prim.subset_index}",
                pbr,
                alpha_mode="BLEND" if opacity < 1.0 else None,
            )
        )
        primitives.append(Primitive(dict(prim.attributes), prim.indices, len(doc.materials) - 1))

    if doc.textures:
        doc.samplers.append(Sampler())

    doc.meshes.append(Mesh(primitives, model_name))
    doc.nodes.append(Node(name=model_name, mesh=0))
    scene_nodes = [0]

    # A fallback primitive carries no JOINTS_0/WEIGHTS_0, so it cannot be skinned.
    if plan.skinning is not None and not plan.is_fallback:
        names, parents = joint_hierarchy(skeleton, plan.skinning.bone_count)
        joints = [1 + i for i in range(len(names))]
        doc.nodes.extend(Node(name=name) for name in names)
        for i, parent in enumerate(parents):
            if parent is None:
                scene_nodes.append(1 + i)
            else:
                doc.nodes[1 + parent].children.append(1 + i)
        roots = scene_nodes[1:]
        doc.nodes[0].skin = 0
        doc.skins.append(Skin(joints, plan.inverse_bind_block, roots[0] if len(roots) == 1 else None, f"{model_name}_skin"))

    doc.scenes = [Scene(scene_nodes, model_name)]
    return doc
