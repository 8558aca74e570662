"""Wavefront OBJ/MTL export of a selection of geometries and model objects.

Everything in one export group lands in a single `.obj`/`.mtl` pair. Each geometry
is a named group; face indices are offset by the running v/vt/vn totals so the
groups can be concatenated. Engine triangles are clockwise, so faces are written in
reverse order.
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path, PurePosixPath
from typing import IO

import numpy as np

from .fileio import atomic_outputs
from .gltf_layout import fit_rows
from .merge import local_normals, local_positions
from .model import ExportGroup, Geometry, Material, describe_fvf
from .reports import write_error_report
from .textures import ResolvedTexture, TextureResolver, is_effects_sentinel


logger = logging.getLogger(__name__)

AMBIENT_FLOOR = 0.1
DIFFUSE_FLOOR = 0.5
DEFAULT_AMBIENT = (0.2, 0.2, 0.2)
DEFAULT_DIFFUSE = (0.8, 0.8, 0.8)
DEFAULT_SPECULAR = (0.0, 0.0, 0.0)


@dataclass(frozen=True)
class ObjExportOptions:
    axis_remap: bool = False
    flip_v: bool = False
    copy_textures: bool = True
    scale: float = 0.01
    apply_local_matrix: bool = True
    texture_workers: int = 4


@dataclass
class ObjExportResult:
    obj_path: Path
    mtl_path: Path
    status: str = "ok"
    vertex_count: int = 0
    normal_count: int = 0
    texcoord_count: int = 0
    face_count: int = 0
    skipped_faces: int = 0
    skipped_subsets: int = 0
    groups: list[str] = field(default_factory=list)
    textures: list[str] = field(default_factory=list)
    error_path: Path | None = None


def _stem(path: str | None) -> str:
    return PurePosixPath(path.replace("\\", "/")).stem if path else ""


def _rgb(color: tuple[float, ...] | None, default: tuple[float, float, float], floor: float = 0.0) -> str:
    rgb = default if color is None else tuple(color[:3])
    return " ".join(f"{max(floor, float(c)):.4f}" for c in rgb)


def material_block(name: str, material: Material | None, texture_ref: str | None) -> list[str]:
    lines = [
        f"newmtl {name}",
        f"Ka {_rgb(material.ambient if material else None, DEFAULT_AMBIENT, AMBIENT_FLOOR)}",
        f"Kd {_rgb(material.diffuse if material else None, DEFAULT_DIFFUSE, DIFFUSE_FLOOR)}",
        f"Ks {_rgb(material.specular if material else None, DEFAULT_SPECULAR)}",
        "Ns 32.0000",
        "d 1.0000",
        "illum 2",
    ]
    if texture_ref:
        lines.append(f"map_Kd {texture_ref}")
    return lines


class ObjStream:
    """Appends geometries to an open .obj/.mtl pair, tracking the running v/vt/vn totals."""

    def __init__(self, obj: IO[str], mtl: IO[str], obj_dir: Path, options: ObjExportOptions, resolver: TextureResolver) -> None:
        self.obj = obj
        self.mtl = mtl
        self.obj_dir = obj_dir
        self.options = options
        self.resolver = resolver
        self._lock = threading.Lock()
        self.vertex_total = 0
        self.normal_total = 0
        self.texcoord_total = 0
        self.face_count = 0
        self.skipped_faces = 0
        self.skipped_subsets = 0
        self.groups: list[str] = []
        self.textures: list[str] = []

    def write_header(self, base_name: str) -> None:
        with self._lock:
            self.obj.write(f"# PKO model export\n# Exported: {datetime.now().isoformat(timespec='seconds')}\n")
            self.obj.write(f"mtllib {base_name}.mtl\n")
            self.obj.write(f"o {base_name}\n")
            self.mtl.write(f"# Materials for {base_name}\n")

    def _transform(self, data: np.ndarray, scale: float) -> np.ndarray:
        out = data * scale
        if self.options.axis_remap:
            out = np.stack([out[:, 0], out[:, 2], -out[:, 1]], axis=1)
        # Adding zero turns -0.0 into 0.0 so negated zeros print without a sign.
        return out + 0.0

    def _texture_ref(self, resolved: ResolvedTexture | None) -> str | None:
        if resolved is None:
            return None
        return Path(os.path.relpath(self.resolver.destination_dir / resolved.name, self.obj_dir)).as_posix()

    def append_geometry(self, geometry: Geometry, group_name: str, model_path: str | None) -> None:
        n = geometry.vertex_count
        use_local = self.options.apply_local_matrix
        positions = self._transform(local_positions(geometry) if use_local else geometry.positions, self.options.scale)
        has_n = geometry.has_normals
        has_t = geometry.has_texcoords

        requests = []
        for i in range(len(geometry.subsets)):
            material = geometry.material_for(i)
            if material is not None and is_effects_sentinel(material.primary_texture_name):
                continue
            requests.append((i, material, model_path))
        resolved = dict(zip((r[0] for r in requests), self.resolver.resolve_many(requests, self.options.texture_workers)))

        lines = [
            "",
            f"# Model: {group_name}",
            f"# Vertices: {n}",
            f"# Triangles: {geometry.triangle_count}",
            f"# Materials: {len(geometry.materials)}",
            f"# FVF: 0x{geometry.fvf:X} ({' '.join(describe_fvf(geometry.fvf))})",
            f"# Matrix Local: {'applied' if use_local and geometry.has_valid_local_matrix else 'none'}",
        ]
        lines += [f"v {p[0]:.4f} {p[1]:.4f} {p[2]:.4f}" for p in positions]
        if has_n:
            normals = fit_rows(local_normals(geometry) if use_local else geometry.normals, n, fill=geometry.normals[-1])
            lines += [f"vn {q[0]:.4f} {q[1]:.4f} {q[2]:.4f}" for q in self._transform(normals, 1.0)]
        if has_t:
            for u, v in fit_rows(geometry.texcoords[0], n):
                if self.options.flip_v:
                    v = 1.0 - v
                lines.append(f"vt {u:.4f} {v:.4f}")

        mtl_lines: list[str] = []
        face_count = 0
        skipped_faces = 0
        skipped_subsets = 0
        for i, subset in enumerate(geometry.subsets):
            mat_name = f"{group_name}-{i}"
            ref = self._texture_ref(resolved.get(i))
            mtl_lines += [""] + material_block(mat_name, geometry.material_for(i), ref)
            if ref:
                self.textures.append(ref)

            lines += [f"g {group_name}_{i}", f"usemtl {mat_name}", "s off"]
            lines.append(f"# Subset {i}: {subset.primitive_count} triangles from index {subset.start_index}")
            if subset.primitive_count <= 0 or subset.start_index < 0 or subset.start_index >= geometry.index_count:
                lines.append(f"# Skipped subset {i}: empty or start index out of range")
                logger.warning(f"{group_name}: skipped subset {i} (start {subset.start_index}, {subset.primitive_count} triangles)")
                skipped_subsets += 1
                continue

            for t in range(subset.primitive_count):
                base = subset.start_index + t * 3
                if base + 2 >= geometry.index_count:
                    lines.append(f"# Warning: subset {i} runs past the index buffer at triangle {t}")
                    skipped_faces += subset.primitive_count - t
                    break
                tri = [int(geometry.indices[base + k]) for k in (2, 1, 0)]
                if any(idx >= n for idx in tri):
                    lines.append(f"# Warning: Invalid vertex indices {tri[2]} {tri[1]} {tri[0]} (vertex count {n})")
                    skipped_faces += 1
                    continue
                lines.append("f " + " ".join(self._face_ref(idx, has_t, has_n) for idx in tri))
                face_count += 1

        if skipped_faces:
            logger.warning(f"{group_name}: omitted {skipped_faces} faces with invalid indices")

        with self._lock:
            self.obj.write("\n".join(lines) + "\n")
            self.mtl.write("\n".join(mtl_lines) + "\n")
            self.vertex_total += n
            if has_n:
                self.normal_total += n
            if has_t:
                self.texcoord_total += n
            self.face_count += face_count
            self.skipped_faces += skipped_faces
            self.skipped_subsets += skipped_subsets
            self.groups.append(group_name)

    def _face_ref(self, idx: int, has_t: bool, has_n: bool) -> str:
        v = idx + 1 + self.vertex_total
        t = idx + 1 + self.texcoord_total
        nn = idx + 1 + self.normal_total
        if has_t and has_n:
            return f"{v}/{t}/{nn}"
        if has_n:
            return f"{v}//{nn}"
        if has_t:
            return f"{v}/{t}"
        return str(v)


def write_minimal_obj(obj_path: Path, mtl_path: Path, base_name: str) -> None:
    with atomic_outputs(obj_path, mtl_path) as (obj, mtl):
        obj.write(f"# PKO model export (fallback)\nmtllib {mtl_path.name}\no {base_name}\nusemtl default\n")
        mtl.write("\n".join(material_block("default", None, None)) + "\n")


def export_obj(
    group: ExportGroup,
    output_dir: str | Path,
    options: ObjExportOptions | None = None,
    default_name: str | None = None,
) -> ObjExportResult | None:
    options = options or ObjExportOptions()
    output_dir = Path(output_dir)
    base = group.base_name(default_name)
    if not base or group.is_empty():
        logger.warning("Nothing to export: empty selection or no output name")
        return None

    obj_path = output_dir / f"{base}.obj"
    mtl_path = output_dir / f"{base}.mtl"
    resolver = TextureResolver(output_dir, options.copy_textures)
    origin_paths = list(group.origin_paths) + [""] * (len(group.geometries) - len(group.origin_paths))

    try:
        with atomic_outputs(obj_path, mtl_path) as (obj, mtl):
            stream = ObjStream(obj, mtl, output_dir, options, resolver)
            stream.write_header(base)
            for geometry, path in zip(group.geometries, origin_paths):
                stem = _stem(path) or base
                stream.append_geometry(geometry, f"{stem}_{geometry.object_id}", path or None)
            for model in group.models:
                stem = _stem(model.origin_path) or base
                for i, geometry in enumerate(model.geometries):
                    stream.append_geometry(geometry, f"{stem}-{i}_{geometry.object_id}", model.origin_path)
    except Exception as exc:
        logger.exception(f"OBJ export of {base} failed")
        error_path = write_error_report(output_dir, base, exc, stage="obj")
        write_minimal_obj(obj_path, mtl_path, base)
        return ObjExportResult(obj_path, mtl_path, status="fallback", error_path=error_path)

    logger.info(f"Wrote {obj_path} ({stream.vertex_total} vertices, {stream.face_count} faces)")
    return ObjExportResult(
        obj_path,
        mtl_path,
        vertex_count=stream.vertex_total,
        normal_count=stream.normal_total,
        texcoord_count=stream.texcoord_total,
        face_count=stream.face_count,
        skipped_faces=stream.skipped_faces,
        skipped_subsets=stream.skipped_subsets,
        groups=stream.groups,
        textures=stream.textures,
    )
