"""Catalog of bootable root filesystem images kept in the asset directory."""

from __future__ import annotations

from pathlib import Path
from typing import List

from stoker.constants import IMAGE_SUFFIX
from stoker.exceptions import StokerError
from stoker.models import Image


class ImageNotFound(StokerError):
    category = "ImageNotFound"


class ImageStore:
    def __init__(self, asset_dir: Path) -> None:
        self.asset_dir = asset_dir

    def path_for(self, name: str) -> Path:
        return self.asset_dir / f"{name}{IMAGE_SUFFIX}"

    def list(self) -> List[Image]:
        if not self.asset_dir.is_dir():
            return []
        images = []
        for path in sorted(self.asset_dir.glob(f"*{IMAGE_SUFFIX}")):
            if path.is_file():
                images.append(Image(name=path.name[: -len(IMAGE_SUFFIX)], path=path, size_bytes=path.stat().st_size))
        return images

    def get(self, name: str) -> Image:
        path = self.path_for(name)
        if not path.is_file():
            raise ImageNotFound(
                f"Rootfs image '{name}' not found at {path}. Run `stoker build` or `stoker download-assets`."
            )
        return Image(name=name, path=path, size_bytes=path.stat().st_size)
