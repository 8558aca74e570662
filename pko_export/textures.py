"""Locate subset textures in the client's texture tree and stage them beside an export.

The client keeps models and textures in parallel trees:

    <client>/model/character/0001000000.lgo  ->  <client>/texture/character/
    <client>/model/item/01010001.lgo          ->  <client>/texture/item/
    <client>/model/scene/house01.lmo          ->  <client>/texture/scene/

A subset names its texture in the first texture slot of its material. When the slot
is empty the client falls back to `<model>_<NN>.bmp` and then `<model>.bmp`.
"""

from __future__ import annotations

import logging
import os
import shutil
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Iterable

from PIL import Image

from .model import Material, strip_c_string


logger = logging.getLogger(__name__)

EFFECTS_SENTINEL = "1.bmp"
CONVERTIBLE_EXTENSIONS = (".dds", ".tga", ".png", ".jpg")


@dataclass(frozen=True)
class ResolvedTexture:
    name: str
    source: Path | None = None
    copied: bool = False

    @property
    def found(self) -> bool:
        return self.source is not None


def is_effects_sentinel(name: str) -> bool:
    return strip_c_string(name).lower() == EFFECTS_SENTINEL


def normalize_texture_name(declared: str) -> str:
    name = PurePosixPath(strip_c_string(declared).replace("\\", "/")).name
    # The client always loads a .bmp, whatever the material declares.
    if name and not name.lower().endswith(".bmp"):
        name += ".bmp"
    return name


def texture_root_for(model_path: str | Path) -> Path:
    norm = str(model_path).replace("\\", "/")
    lower = norm.lower()
    model_dir = norm.rsplit("/", 1)[0] if "/" in norm else "."

    idx = lower.rfind("/model/")
    if idx >= 0:
        base = norm[: idx + 1]
        if "/model/item/" in lower:
            return Path(base) / "texture" / "item"
        if "/model/character/" in lower:
            return Path(base) / "texture" / "character"
        dir_lower = model_dir.lower() + "/"
        dir_idx = dir_lower.rfind("/model/")
        if dir_idx >= 0:
            rest = model_dir[dir_idx + len("/model/") :]
            return Path(model_dir[:dir_idx]) / "texture" / rest
    return Path(model_dir).parent / "texture"


def sniff_texture_extension(path: Path) -> str | None:
    try:
        with path.open("rb") as f:
            head = f.read(64)
    except OSError:
        return None
    if len(head) < 4:
        return None
    if head.startswith(b"DDS "):
        return ".dds"
    if head.startswith(b"BM"):
        return ".bmp"
    if head.startswith(b"\x89PNG\r\n\x1a\n"):
        return ".png"
    if head.startswith(b"\xff\xd8\xff"):
        return ".jpg"
    if len(head) >= 18:
        cmap = head[1]
        image_type = head[2]
        width = int.from_bytes(head[12:14], "little", signed=False)
        height = int.from_bytes(head[14:16], "little", signed=False)
        bpp = head[16]
        if cmap in {0, 1} and image_type in {1, 2, 3, 9, 10, 11} and 0 < width <= 16384 and 0 < height <= 16384 and bpp in {8, 16, 24, 32}:
            return ".tga"
    return None


def is_up_to_date(source: Path, dest: Path) -> bool:
    try:
        return dest.stat().st_mtime >= source.stat().st_mtime
    except FileNotFoundError:
        return False


class TextureResolver:
    """Resolve and stage textures for one export call.

    Every filename is processed at most once per resolver. Resolutions for different
    names may run on worker threads; the same name is serialized on its own lock.
    """

    def __init__(self, destination_dir: Path, copy_textures: bool = True) -> None:
        self.destination_dir = Path(destination_dir)
        self.copy_textures = copy_textures
        self._lock = threading.Lock()
        self._name_locks: dict[str, threading.Lock] = {}
        self._results: dict[str, ResolvedTexture] = {}
        self._listings: dict[Path, dict[str, Path]] = {}

    @property
    def processed(self) -> list[ResolvedTexture]:
        with self._lock:
            return list(self._results.values())

    def resolve(self, subset_index: int, material: Material | None, model_path: str | Path | None) -> ResolvedTexture | None:
        declared = material.primary_texture_name if material is not None else ""
        if is_effects_sentinel(declared):
            declared = ""
        declared = normalize_texture_name(declared) if declared else ""

        if model_path is None:
            return ResolvedTexture(declared) if declared else None

        model_stem = PurePosixPath(str(model_path).replace("\\", "/")).stem
        root = texture_root_for(model_path)
        if declared:
            candidates = [declared]
        else:
            candidates = [f"{model_stem}_{subset_index:02d}.bmp", f"{model_stem}.bmp"]

        for name in candidates:
            source = self._find(root, name)
            if source is not None:
                return self._stage(name, source)

        if declared:
            logger.warning(f"Texture {declared} not found under {root}")
            return ResolvedTexture(declared)
        return None

    def resolve_many(
        self,
        requests: Iterable[tuple[int, Material | None, str | Path | None]],
        max_workers: int = 4,
    ) -> list[ResolvedTexture | None]:
        requests = list(requests)
        if max_workers <= 1 or len(requests) <= 1:
            return [self.resolve(*r) for r in requests]
        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="texture") as pool:
            return list(pool.map(lambda r: self.resolve(*r), requests))

    def _find(self, root: Path, name: str) -> Path | None:
        listing = self._listing(root)
        hit = listing.get(name.lower())
        if hit is not None:
            return hit
        stem = PurePosixPath(name).stem.lower()
        # "hair.tga.bmp" may still sit on disk as "hair.tga".
        for alt_name in (stem, *(stem + ext for ext in CONVERTIBLE_EXTENSIONS)):
            alt = listing.get(alt_name)
            if alt is not None and sniff_texture_extension(alt) is not None:
                return alt
        return None

    def _listing(self, root: Path) -> dict[str, Path]:
        with self._lock:
            cached = self._listings.get(root)
            if cached is not None:
                return cached
            listing: dict[str, Path] = {}
            if root.is_dir():
                with os.scandir(root) as entries:
                    for entry in entries:
                        if entry.is_file():
                            listing.setdefault(entry.name.lower(), Path(entry.path))
            self._listings[root] = listing
            return listing

    def _stage(self, name: str, source: Path) -> ResolvedTexture:
        key = name.lower()
        with self._lock:
            name_lock = self._name_locks.setdefault(key, threading.Lock())
        with name_lock:
            cached = self._results.get(key)
            if cached is not None:
                return cached
            result = ResolvedTexture(name, source, self._copy(source, name))
            with self._lock:
                self._results[key] = result
            return result

    def _copy(self, source: Path, name: str) -> bool:
        if not self.copy_textures:
            return False
        dest = self.destination_dir / name
        try:
            if dest.exists() and dest.resolve() == source.resolve():
                return True
            if is_up_to_date(source, dest):
                return True
            self.destination_dir.mkdir(parents=True, exist_ok=True)
            if source.suffix.lower() == dest.suffix.lower():
                shutil.copy2(source, dest)
            else:
                with Image.open(source) as img:
                    mode = "RGBA" if "A" in img.getbands() else "RGB"
                    img.convert(mode).save(dest, format="BMP")
            logger.info(f"Staged texture {source} -> {dest}")
            return True
        except (OSError, ValueError) as exc:
            logger.warning(f"Failed to stage texture {source}: {exc}")
            return False
