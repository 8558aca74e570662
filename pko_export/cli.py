"""Command-line front end: convert a JSON model dump to OBJ/MTL or glTF.

The dump is what a model reader writes after decoding `.lgo`/`.lmo`/`.lab` files:

    {
      "geometries": [{"path": ".../model/character/0001.lgo", "fvf": 4370,
                      "positions": [[x, y, z], ...], "indices": [...],
                      "subsets": [[start, triangles, min_index, vertex_count], ...],
                      "materials": [{"opacity": 1.0, "textures": ["hair.bmp"]}], ...}],
      "skeleton": {"bone_count": 2, "bones": [{"name": "root", "id": 0, "parent_id": 4294967295}],
                   "inverse_bind_matrices": [[16 floats], ...]}
    }
"""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Any

from .combined import export_combined_character
from .gltf_export import GltfExportOptions, export_gltf, export_model_gltf
from .gltf_layout import UVStrategy
from .model import Bone, ExportGroup, Geometry, Material, ModelObject, Skeleton, Subset, TextureRef, TransparencyMode
from .obj_writer import ObjExportOptions, export_obj


def _rgba(value: Any, default: tuple[float, float, float, float]) -> tuple[float, float, float, float]:
    if not value:
        return default
    vals = [float(x) for x in value] + [1.0] * 4
    return (vals[0], vals[1], vals[2], vals[3])


def material_from_dict(data: dict[str, Any]) -> Material:
    defaults = Material()
    textures = []
    for t in data.get("textures", []):
        if isinstance(t, str):
            textures.append(TextureRef(t))
        else:
            textures.append(TextureRef(t.get("file_name", ""), int(t.get("stage", 0)), int(t.get("width", 0)), int(t.get("height", 0)), int(t.get("format", 0))))
    return Material(
        ambient=_rgba(data.get("ambient"), defaults.ambient),
        diffuse=_rgba(data.get("diffuse"), defaults.diffuse),
        specular=_rgba(data.get("specular"), defaults.specular),
        emissive=_rgba(data.get("emissive"), defaults.emissive),
        power=float(data.get("power", 0.0)),
        opacity=float(data.get("opacity", 1.0)),
        transparency=TransparencyMode(int(data.get("transparency", 0))),
        textures=tuple(textures),
    )


def geometry_from_dict(data: dict[str, Any]) -> Geometry:
    return Geometry(
        positions=data["positions"],
        indices=data.get("indices", []),
        fvf=int(data.get("fvf", 0)),
        normals=data.get("normals"),
        texcoords=data.get("texcoords", []),
        subsets=[Subset(*[int(x) for x in s]) for s in data.get("subsets", [])],
        materials=[material_from_dict(m) for m in data.get("materials", [])],
        blend_indices=data.get("blend_indices"),
        blend_weights=data.get("blend_weights"),
        bone_index_table=data.get("bone_index_table"),
        bone_influence_factor=int(data.get("bone_influence_factor", 0)),
        local_matrix=data.get("local_matrix"),
        name=data.get("name", ""),
        object_id=int(data.get("object_id", 0)),
    )


def skeleton_from_dict(data: dict[str, Any]) -> Skeleton:
    bones = [Bone(b.get("name", ""), int(b["id"]), int(b.get("parent_id", 0xFFFFFFFF))) for b in data.get("bones", [])]
    return Skeleton(
        bone_count=int(data.get("bone_count", len(bones))),
        frame_count=int(data.get("frame_count", 0)),
        key_type=int(data.get("key_type", 0)),
        dummy_count=int(data.get("dummy_count", 0)),
        bones=bones,
        inverse_bind_matrices=data.get("inverse_bind_matrices", []),
    )


def load_dump(path: Path) -> tuple[list[tuple[Geometry, str | None]], Skeleton | None]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise SystemExit(f"Cannot read model dump {path}: {exc}")
    try:
        geometries = [(geometry_from_dict(g), g.get("path")) for g in data.get("geometries", [])]
        skeleton = skeleton_from_dict(data["skeleton"]) if data.get("skeleton") else None
    except (KeyError, TypeError, ValueError) as exc:
        raise SystemExit(f"Malformed model dump {path}: {exc}")
    if not geometries:
        raise SystemExit(f"No geometries in {path}")
    return geometries, skeleton


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Convert PKO model dumps to OBJ/MTL or glTF 2.0.")
    parser.add_argument("--verbose", "-v", action="store_true")
    sub = parser.add_subparsers(dest="command", required=True)

    def common(p: argparse.ArgumentParser) -> None:
        p.add_argument("dump", type=Path, help="JSON model dump")
        p.add_argument("--out-dir", type=Path, default=Path("export"))
        p.add_argument("--name", default=None, help="Output base name (default: first source file stem)")
        p.add_argument("--no-textures", action="store_true", help="Do not copy textures beside the output")

    p_obj = sub.add_parser("obj", help="Write one .obj/.mtl for every geometry in the dump")
    common(p_obj)
    p_obj.add_argument("--axis-remap", action="store_true", help="Convert engine Y-up to Z-up")
    p_obj.add_argument("--flip-v", action="store_true")
    p_obj.add_argument("--as-model", action="store_true", help="Treat the geometries as one model object")
    p_obj.add_argument("--scale", type=float, default=0.01)

    p_gltf = sub.add_parser("gltf", help="Write .gltf/.bin per geometry")
    common(p_gltf)
    p_gltf.add_argument("--uv-strategy", choices=[s.value for s in UVStrategy], default=UVStrategy.IDENTITY.value)
    p_gltf.add_argument("--no-variants", action="store_true", help="Skip UV debug variants for characters")
    p_gltf.add_argument("--as-model", action="store_true", help="Merge the geometries into one mesh")

    p_char = sub.add_parser("character", help="Merge character parts that share the dump's skeleton")
    common(p_char)
    p_char.add_argument("--parts", default=None, help="Comma-separated part names (default: hair,face,body,hands,boots)")
    return parser


def main() -> int:
    args = build_parser().parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    geometries, skeleton = load_dump(args.dump)
    first_path = next((p for _, p in geometries if p), None)
    name = args.name or (Path(first_path.replace("\\", "/")).stem if first_path else args.dump.stem)
    summary: dict[str, Any] = {"command": args.command, "dump": str(args.dump), "geometries": len(geometries)}

    if args.command == "obj":
        options = ObjExportOptions(
            axis_remap=args.axis_remap, flip_v=args.flip_v, copy_textures=not args.no_textures, scale=args.scale
        )
        group = ExportGroup()
        if args.as_model:
            group.add_model(ModelObject([g for g, _ in geometries], first_path))
        else:
            for geometry, path in geometries:
                group.add_geometry(geometry, path)
        result = export_obj(group, args.out_dir, options, default_name=name)
        if result is None:
            raise SystemExit("Nothing exported")
        summary.update(
            obj=str(result.obj_path),
            mtl=str(result.mtl_path),
            status=result.status,
            vertices=result.vertex_count,
            faces=result.face_count,
            skipped_faces=result.skipped_faces,
        )

    elif args.command == "gltf":
        options = GltfExportOptions(
            copy_textures=not args.no_textures,
            uv_strategy=UVStrategy(args.uv_strategy),
            debug_variants=not args.no_variants,
        )
        if args.as_model:
            results = [export_model_gltf(ModelObject([g for g, _ in geometries], first_path), args.out_dir / f"{name}.gltf", skeleton=skeleton, options=options)]
        else:
            results = []
            for i, (geometry, path) in enumerate(geometries):
                stem = name if len(geometries) == 1 else f"{name}_{i}"
                results.append(export_gltf(geometry, args.out_dir / f"{stem}.gltf", model_path=path, skeleton=skeleton, options=options))
        summary["exports"] = [
            {"gltf": str(r.gltf_path), "status": r.status, "category": r.category.value, "variants": [str(v) for v in r.variants]}
            for r in results
        ]

    else:
        part_names = [p.strip() for p in args.parts.split(",")] if args.parts else None
        combined = export_combined_character(
            [g for g, _ in geometries],
            args.out_dir / f"{name}.gltf",
            skeleton,
            part_names=part_names,
            part_paths=[p for _, p in geometries],
            options=GltfExportOptions(copy_textures=not args.no_textures),
        )
        summary.update(
            strategy=combined.strategy.value,
            files=[str(p) for p in combined.files],
            failures=combined.failures,
            assembly=str(combined.assembly_path) if combined.assembly_path else None,
        )

    print(json.dumps(summary, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
