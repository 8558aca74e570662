"""Export several character parts that share one skeleton as a single asset.

Strategies, in order:
  A. more than one part: merge into one geometry and write `<stem>_unified.gltf`
  B. a single part: export it as-is
  C. A failed: one `<stem>_<part>.gltf` per part, each part isolated from the others

Whichever strategy ran, `<stem>_assembly.txt` records the parts, their vertex offsets
and the shared skeleton.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .gltf_export import GltfExportOptions, GltfExportResult, export_gltf, gltf_output_path, resolve_unified_textures
from .merge import unify_geometries
from .model import Geometry, Skeleton
from .reports import write_assembly_report, write_error_report


logger = logging.getLogger(__name__)

DEFAULT_PART_NAMES = ("hair", "face", "body", "hands", "boots")


class CombineStrategy(Enum):
    UNIFIED = "unified"
    SINGLE = "single"
    PER_PART = "per_part"


@dataclass
class CombinedExportResult:
    strategy: CombineStrategy
    exports: list[GltfExportResult] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)
    assembly_path: Path | None = None

    @property
    def files(self) -> list[Path]:
        return [r.gltf_path for r in self.exports]


def part_names_for(count: int, names: list[str] | None = None) -> list[str]:
    out = []
    for i in range(count):
        if names and i < len(names) and names[i]:
            out.append(names[i])
        elif i < len(DEFAULT_PART_NAMES):
            out.append(DEFAULT_PART_NAMES[i])
        else:
            out.append(f"part_{i}")
    return out


def running_vertex_offsets(parts: list[Geometry]) -> list[int]:
    offsets, cursor = [], 0
    for part in parts:
        offsets.append(cursor)
        cursor += part.vertex_count
    return offsets


def export_combined_character(
    parts: list[Geometry],
    output_path: str | Path,
    skeleton: Skeleton | None = None,
    *,
    part_names: list[str] | None = None,
    part_paths: list[str | None] | None = None,
    options: GltfExportOptions | None = None,
) -> CombinedExportResult:
    options = options or GltfExportOptions()
    if not parts:
        raise ValueError("No character parts to export")

    gltf_path = gltf_output_path(output_path)
    stem = gltf_path.stem
    names = part_names_for(len(parts), part_names)
    paths = list(part_paths or []) + [None] * (len(parts) - len(part_paths or []))
    vertex_offsets = running_vertex_offsets(parts)

    def finish(combined: CombinedExportResult) -> CombinedExportResult:
        try:
            combined.assembly_path = write_assembly_report(
                gltf_path.parent,
                stem,
                strategy=combined.strategy.value,
                parts=parts,
                part_names=names,
                part_paths=paths,
                vertex_offsets=vertex_offsets,
                skeleton=skeleton,
                outputs=[(r.gltf_path, r.status) for r in combined.exports],
                failures=combined.failures,
            )
        except Exception:
            logger.exception(f"Assembly report for {stem} failed")
        return combined

    if len(parts) == 1:
        result = export_gltf(parts[0], gltf_path, model_name=stem, model_path=paths[0], skeleton=skeleton, options=options)
        return finish(CombinedExportResult(CombineStrategy.SINGLE, [result]))

    unified_path = gltf_path.with_name(f"{stem}_unified.gltf")
    try:
        unified = unify_geometries(parts, name=f"{stem}_unified")
        vertex_offsets = unified.vertex_offsets
        textures = resolve_unified_textures(unified, parts, paths, gltf_path.parent, options)
        logger.info(
            f"Unified {len(parts)} parts into {unified.geometry.vertex_count} vertices, {len(unified.geometry.subsets)} subsets"
        )
    except Exception as exc:
        logger.exception(f"Could not unify {stem}, exporting parts separately")
        write_error_report(gltf_path.parent, f"{stem}_unified", exc, stage="unify")
    else:
        result = export_gltf(
            unified.geometry,
            unified_path,
            model_name=f"{stem}_unified",
            model_path=next((p for p in paths if p), None),
            skeleton=skeleton,
            options=options,
            textures=textures,
        )
        if result.ok:
            return finish(CombinedExportResult(CombineStrategy.UNIFIED, [result]))
        logger.warning(f"Unified export of {stem} degraded to {result.status}, exporting parts separately")

    combined = CombinedExportResult(CombineStrategy.PER_PART)
    for part, name, path in zip(parts, names, paths):
        part_path = gltf_path.with_name(f"{stem}_{name}.gltf")
        try:
            combined.exports.append(export_gltf(part, part_path, model_name=f"{stem}_{name}", model_path=path, skeleton=skeleton, options=options))
        except Exception as exc:
            logger.exception(f"Part {name} of {stem} failed")
            combined.failures[name] = f"{type(exc).__name__}: {exc}"
    return finish(combined)
