"""Human-readable sidecars written next to exports: `<name>.txt`, `<name>_error.txt`
and the `<stem>_assembly.txt` summary of a combined character."""

from __future__ import annotations

import traceback
from datetime import datetime
from pathlib import Path

import numpy as np

from .fileio import write_text_atomic
from .gltf_layout import LayoutPlan, effective_subsets
from .model import Geometry, Skeleton, describe_fvf
from .textures import ResolvedTexture


def _geometry_lines(geometry: Geometry) -> list[str]:
    return [
        f"  Vertices: {geometry.vertex_count}",
        f"  Indices: {geometry.index_count}",
        f"  Triangles: {geometry.triangle_count}",
        f"  Subsets: {len(geometry.subsets)}",
        f"  Materials: {len(geometry.materials)}",
        f"  FVF: 0x{geometry.fvf:X} ({' '.join(describe_fvf(geometry.fvf))})",
        f"  Blend records: {geometry.blend_count}",
        f"  Bone table entries: {len(geometry.bone_index_table) if geometry.has_bone_mapping else 0}",
        f"  Bone influence factor: {geometry.bone_influence_factor}",
    ]


def _uv_range(geometry: Geometry, tris: np.ndarray | None = None) -> str:
    if not geometry.has_texcoords:
        return "n/a"
    uv = geometry.texcoords[0]
    if tris is not None:
        used = np.unique(tris)
        used = used[used < len(uv)]
        uv = uv[used]
    if len(uv) == 0:
        return "n/a"
    lo = uv.min(axis=0)
    hi = uv.max(axis=0)
    return f"u[{lo[0]:.3f}, {hi[0]:.3f}] v[{lo[1]:.3f}, {hi[1]:.3f}]"


def _texture_status(resolved: ResolvedTexture | None) -> str:
    if resolved is None:
        return "none"
    if not resolved.found:
        return f"{resolved.name} (missing)"
    if not resolved.copied:
        return f"{resolved.name} (found, not copied)"
    return f"{resolved.name} (copied)"


def build_export_report(
    geometry: Geometry,
    *,
    model_name: str,
    category: str,
    source_path: str | None = None,
    plan: LayoutPlan | None = None,
    textures: list[ResolvedTexture | None] | None = None,
    outputs: list[Path] | None = None,
) -> str:
    lines = [
        "PKO Model Export Report",
        "=======================",
        f"Model: {model_name}",
        f"Category: {category}",
        f"Source: {source_path or 'n/a'}",
        f"Export Time: {datetime.now().isoformat(timespec='seconds')}",
        "",
        "Geometry",
        *_geometry_lines(geometry),
    ]

    if plan is not None:
        lines += [
            "",
            "Layout",
            f"  UV strategy: {plan.uv_strategy.value}",
            f"  Normals: {'synthesized (0, 0, 1)' if plan.normals_synthesized else 'source'}",
            f"  Primitives: {len(plan.primitives)}{' (fallback)' if plan.is_fallback else ''}",
            f"  Buffer bytes: {plan.total_length}",
        ]
        for k, block in enumerate(plan.blocks):
            lines.append(f"  [{k}] {block.name}: {block.count} x {block.element_type}, {block.byte_length} bytes")
        if plan.skinning is not None:
            skin = plan.skinning
            lines += [
                "",
                "Skinning",
                f"  Bones exported: {skin.bone_count}",
                f"  Inverse-bind matrices: {len(skin.inverse_bind)}",
                f"  Matrices replaced by identity: {skin.invalid_matrices}",
                f"  Vertices rebound to joint 0: {skin.rebound_vertices}",
            ]

    lines += ["", "Subsets"]
    for i, subset in enumerate(effective_subsets(geometry)):
        material = geometry.material_for(i)
        end = min(subset.start_index + subset.index_count, geometry.index_count)
        tris = geometry.indices[subset.start_index : end] if subset.start_index < end else None
        resolved = textures[i] if textures and i < len(textures) else None
        lines.append(
            f"  [{i}] triangles={subset.primitive_count} start={subset.start_index} "
            f"min={subset.min_index} vertices={subset.vertex_count}"
        )
        lines.append(f"      uv: {_uv_range(geometry, tris)}")
        if material is not None:
            lines.append(f"      opacity: {material.opacity:.3f} transparency: {material.transparency.name}")
            declared = [t.name for t in material.textures if t.name]
            lines.append(f"      declared textures: {', '.join(declared) if declared else 'none'}")
        lines.append(f"      texture: {_texture_status(resolved)}")
        if plan is not None:
            if i in plan.excluded_subsets:
                lines.append(f"      excluded: {plan.excluded_subsets[i]}")
            if i in plan.dropped_triangles:
                lines.append(f"      dropped triangles: {plan.dropped_triangles[i]}")

    if outputs:
        lines += ["", "Files"] + [f"  {p}" for p in outputs]
    return "\n".join(lines) + "\n"


def build_error_report(exc: BaseException, geometry: Geometry | None, *, model_name: str, stage: str) -> str:
    lines = [
        f"Export failed: {model_name}",
        f"Stage: {stage}",
        f"Time: {datetime.now().isoformat(timespec='seconds')}",
        f"Error: {exc}",
        f"Type: {type(exc).__name__}",
        "",
        "Traceback:",
        "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)).rstrip(),
    ]
    if geometry is not None:
        lines += ["", "Geometry", *_geometry_lines(geometry)]
    return "\n".join(lines) + "\n"


def write_error_report(
    output_dir: Path,
    model_name: str,
    exc: BaseException,
    geometry: Geometry | None = None,
    stage: str = "export",
) -> Path:
    path = output_dir / f"{model_name}_error.txt"
    return write_text_atomic(path, build_error_report(exc, geometry, model_name=model_name, stage=stage))


def build_assembly_report(
    stem: str,
    *,
    strategy: str,
    parts: list[Geometry],
    part_names: list[str],
    part_paths: list[str | None],
    vertex_offsets: list[int],
    skeleton: Skeleton | None = None,
    outputs: list[tuple[Path, str]] | None = None,
    failures: dict[str, str] | None = None,
) -> str:
    """Describe how a combined character was assembled: which parts went in, where
    their vertices landed in the merged buffer, and the skeleton they share."""
    lines = [
        "PKO Character Assembly Report",
        "=============================",
        f"Character: {stem}",
        f"Strategy: {strategy}",
        f"Export Time: {datetime.now().isoformat(timespec='seconds')}",
        "",
        f"Parts ({len(parts)})",
    ]
    for i, (part, name, path) in enumerate(zip(parts, part_names, part_paths)):
        offset = vertex_offsets[i] if i < len(vertex_offsets) else 0
        lines.append(f"  [{i}] {name}: {path or 'n/a'}")
        lines.append(
            f"      vertices={part.vertex_count} indices={part.index_count} "
            f"subsets={len(part.subsets)} vertex offset={offset}"
        )

    lines += ["", "Skeleton"]
    if skeleton is None:
        lines.append("  none")
    else:
        lines += [
            f"  Bones: {skeleton.bone_count}",
            f"  Frames: {skeleton.frame_count}",
            f"  Key type: {skeleton.key_type}",
            f"  Dummies: {skeleton.dummy_count}",
            f"  Valid inverse-bind matrices: {skeleton.valid_matrix_count}/{len(skeleton.inverse_bind_matrices)}",
        ]

    if failures:
        lines += ["", "Failures"] + [f"  {name}: {reason}" for name, reason in failures.items()]
    if outputs:
        lines += ["", "Files"] + [f"  {path} ({status})" for path, status in outputs]
    return "\n".join(lines) + "\n"


def write_assembly_report(output_dir: Path, stem: str, **kwargs) -> Path:
    return write_text_atomic(output_dir / f"{stem}_assembly.txt", build_assembly_report(stem, **kwargs))
