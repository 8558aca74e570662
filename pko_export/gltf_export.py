"""glTF 2.0 export entry points.

`export_gltf()` writes `<name>.gltf` + `<name>.bin`, stages textures beside them and
writes a `<name>.txt` report. If assembly fails it records `<name>_error.txt`, retries
as a static untextured mesh, and as a last resort writes an empty scene, so a
loadable `.gltf` is always left behind.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from .classify import ModelCategory, classify_model
from .fileio import write_text_atomic
from .gltf_binary import write_buffer
from .gltf_document import build_document, empty_document, to_json
from .gltf_layout import LayoutPlan, UVStrategy, effective_subsets, plan_layout
from .merge import UnifiedGeometry, unify_geometries
from .model import Geometry, ModelObject, Skeleton
from .reports import build_export_report, write_error_report
from .skinning import SkinningResult, build_skinning
from .textures import ResolvedTexture, TextureResolver, is_effects_sentinel


logger = logging.getLogger(__name__)

DEBUG_STRATEGIES = (UVStrategy.FLIP_V, UVStrategy.OFFSET, UVStrategy.ROTATE_90, UVStrategy.ALTERNATE_CHANNEL)


@dataclass(frozen=True)
class GltfExportOptions:
    copy_textures: bool = True
    uv_strategy: UVStrategy = UVStrategy.IDENTITY
    debug_variants: bool = True
    write_report: bool = True
    texture_workers: int = 4


@dataclass
class GltfExportResult:
    gltf_path: Path
    bin_path: Path | None
    category: ModelCategory
    status: str = "ok"
    primitive_count: int = 0
    skinned: bool = False
    report_path: Path | None = None
    error_path: Path | None = None
    variants: list[Path] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == "ok"


def gltf_output_path(output_path: str | Path) -> Path:
    path = Path(output_path)
    if path.suffix.lower() != ".gltf":
        path = path.with_suffix(".gltf")
    return path


def resolve_subset_textures(
    geometry: Geometry,
    model_path: str | Path | None,
    output_dir: Path,
    options: GltfExportOptions,
    resolver: TextureResolver | None = None,
) -> list[ResolvedTexture | None]:
    resolver = resolver or TextureResolver(output_dir, options.copy_textures)
    requests = []
    slots = []
    for i, _ in enumerate(effective_subsets(geometry)):
        material = geometry.material_for(i)
        if material is not None and is_effects_sentinel(material.primary_texture_name):
            continue
        requests.append((i, material, model_path))
        slots.append(i)
    resolved = resolver.resolve_many(requests, options.texture_workers)
    out: list[ResolvedTexture | None] = [None] * len(effective_subsets(geometry))
    for slot, result in zip(slots, resolved):
        out[slot] = result
    return out


def resolve_unified_textures(
    unified: UnifiedGeometry,
    parts: list[Geometry],
    part_paths: list[str | None],
    output_dir: Path,
    options: GltfExportOptions,
) -> list[ResolvedTexture | None]:
    """Resolve each unified subset against the part and source file it came from."""
    resolver = TextureResolver(output_dir, options.copy_textures)
    out: list[ResolvedTexture | None] = []
    for part_no, local_no in unified.subset_origins:
        material = parts[part_no].material_for(local_no)
        if material is not None and is_effects_sentinel(material.primary_texture_name):
            out.append(None)
            continue
        path = part_paths[part_no] if part_no < len(part_paths) else None
        out.append(resolver.resolve(local_no, material, path))
    return out


def write_gltf_pair(
    plan: LayoutPlan,
    geometry: Geometry,
    gltf_path: Path,
    *,
    model_name: str,
    textures: list[ResolvedTexture | None] | None = None,
    skeleton: Skeleton | None = None,
) -> tuple[Path, Path]:
    bin_path = gltf_path.with_suffix(".bin")
    document = build_document(plan, geometry, model_name=model_name, bin_uri=bin_path.name, textures=textures, skeleton=skeleton)
    text = to_json(document)
    write_buffer(plan, bin_path)
    write_text_atomic(gltf_path, text)
    logger.info(f"Wrote {gltf_path} ({len(plan.primitives)} primitives, {plan.total_length} buffer bytes)")
    return gltf_path, bin_path


def write_debug_variants(
    geometry: Geometry,
    gltf_path: Path,
    *,
    model_name: str,
    skinning: SkinningResult | None,
    textures: list[ResolvedTexture | None] | None,
    skeleton: Skeleton | None,
) -> list[Path]:
    """Write one copy per alternate UV convention so mismatches can be compared side by side."""
    if not geometry.has_texcoords:
        return []
    written: list[Path] = []
    for strategy in DEBUG_STRATEGIES:
        if strategy is UVStrategy.ALTERNATE_CHANNEL and len(geometry.texcoords) < 2:
            continue
        variant_path = gltf_path.with_name(f"{gltf_path.stem}{strategy.file_suffix}.gltf")
        try:
            plan = plan_layout(geometry, skinning=skinning, uv_strategy=strategy)
            write_gltf_pair(
                plan,
                geometry,
                variant_path,
                model_name=f"{model_name}{strategy.file_suffix}",
                textures=textures,
                skeleton=skeleton,
            )
        except Exception:
            logger.exception(f"UV variant {strategy.value} of {model_name} failed")
            continue
        written.append(variant_path)
    return written


def _export_full(
    geometry: Geometry,
    gltf_path: Path,
    *,
    model_name: str,
    model_path: str | Path | None,
    skeleton: Skeleton | None,
    category: ModelCategory,
    options: GltfExportOptions,
    textures: list[ResolvedTexture | None] | None,
) -> GltfExportResult:
    if textures is None:
        textures = resolve_subset_textures(geometry, model_path, gltf_path.parent, options)
    skinning = build_skinning(geometry, skeleton) if geometry.has_blend_data else None
    plan = plan_layout(geometry, skinning=skinning, uv_strategy=options.uv_strategy)
    _, bin_path = write_gltf_pair(plan, geometry, gltf_path, model_name=model_name, textures=textures, skeleton=skeleton)

    result = GltfExportResult(gltf_path, bin_path, category, "ok", len(plan.primitives), skinning is not None)
    if options.debug_variants and category.wants_debug_variants and options.uv_strategy is UVStrategy.IDENTITY:
        result.variants = write_debug_variants(
            geometry, gltf_path, model_name=model_name, skinning=skinning, textures=textures, skeleton=skeleton
        )
    if options.write_report:
        # The glTF pair is already on disk; a broken report must not demote it.
        try:
            result.report_path = write_text_atomic(
                gltf_path.with_suffix(".txt"),
                build_export_report(
                    geometry,
                    model_name=model_name,
                    category=category.value,
                    source_path=str(model_path) if model_path else None,
                    plan=plan,
                    textures=textures,
                    outputs=[gltf_path, bin_path, *result.variants],
                ),
            )
        except Exception:
            logger.exception(f"Report for {model_name} failed")
    return result


def _export_fallback(geometry: Geometry, gltf_path: Path, *, model_name: str, category: ModelCategory) -> GltfExportResult:
    try:
        plan = plan_layout(geometry)
        _, bin_path = write_gltf_pair(plan, geometry, gltf_path, model_name=model_name)
        logger.warning(f"Wrote static fallback for {model_name}")
        return GltfExportResult(gltf_path, bin_path, category, "static-fallback", len(plan.primitives))
    except Exception:
        logger.exception(f"Static fallback for {model_name} failed, writing an empty scene")
    write_text_atomic(gltf_path, to_json(empty_document()))
    gltf_path.with_suffix(".bin").unlink(missing_ok=True)
    return GltfExportResult(gltf_path, None, category, "empty-fallback")


def export_gltf(
    geometry: Geometry,
    output_path: str | Path,
    *,
    model_name: str | None = None,
    model_path: str | Path | None = None,
    skeleton: Skeleton | None = None,
    options: GltfExportOptions | None = None,
    textures: list[ResolvedTexture | None] | None = None,
) -> GltfExportResult:
    """Export one geometry. `textures` skips resolution when the caller already resolved per subset."""
    options = options or GltfExportOptions()
    gltf_path = gltf_output_path(output_path)
    name = model_name or gltf_path.stem
    category = classify_model(geometry, skeleton, str(model_path) if model_path else None)
    logger.info(f"Exporting {name} as {category.value} to {gltf_path}")

    try:
        return _export_full(
            geometry,
            gltf_path,
            model_name=name,
            model_path=model_path,
            skeleton=skeleton,
            category=category,
            options=options,
            textures=textures,
        )
    except Exception as exc:
        logger.exception(f"glTF export of {name} failed")
        error_path = write_error_report(gltf_path.parent, gltf_path.stem, exc, geometry, stage="gltf")
        result = _export_fallback(geometry, gltf_path, model_name=name, category=category)
        result.error_path = error_path
        return result


def export_model_gltf(
    model: ModelObject,
    output_path: str | Path,
    *,
    model_name: str | None = None,
    skeleton: Skeleton | None = None,
    options: GltfExportOptions | None = None,
) -> GltfExportResult:
    """Export a composite scene object as one mesh, baking each part's local matrix."""
    options = options or GltfExportOptions()
    if not model.geometries:
        raise ValueError("Model object has no geometries")
    gltf_path = gltf_output_path(output_path)
    name = model_name or gltf_path.stem
    unified = unify_geometries(model.geometries, name=name, bake_local=True)
    paths = [model.origin_path] * len(model.geometries)
    textures = resolve_unified_textures(unified, model.geometries, paths, gltf_path.parent, options)
    return export_gltf(
        unified.geometry,
        gltf_path,
        model_name=name,
        model_path=model.origin_path,
        skeleton=skeleton,
        options=options,
        textures=textures,
    )
