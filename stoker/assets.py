"""Kernel, rootfs, SSH key and firecracker binary downloads."""

from __future__ import annotations

import os
import tarfile
import tempfile
import time
from pathlib import Path
from typing import Dict, List, Optional

import requests

from stoker.constants import (
    ASSET_URLS,
    DEFAULT_IMAGE,
    FIRECRACKER_NAME,
    FIRECRACKER_VERSION,
    IMAGE_SUFFIX,
    KERNEL_NAME,
    SSH_KEY_NAME,
)
from stoker.exceptions import AssetError
from stoker.utils import ensure_directory, log

USER_AGENT = "stoker/0.1"
REQUEST_TIMEOUT = 60
CHUNK_SIZE = 1024 * 256  # 256 KiB


def asset_urls(arch: str, version: str = FIRECRACKER_VERSION) -> Dict[str, str]:
    if arch not in ("x86_64", "aarch64"):
        raise AssetError(f"No firecracker assets published for architecture '{arch}'")
    return {key: template.format(arch=arch, version=version) for key, template in ASSET_URLS.items()}


def _progress(downloaded: int, total_bytes: Optional[int], start_time: float) -> None:
    elapsed = time.time() - start_time
    speed = downloaded / elapsed if elapsed > 0 else 0
    downloaded_mb = downloaded / (1024 * 1024)
    if total_bytes:
        pct = downloaded * 100 / total_bytes
        bar_len = 30
        filled = int(bar_len * downloaded / total_bytes)
        bar = "#" * filled + "-" * (bar_len - filled)
        print(
            f"\r  [{bar}] {pct:5.1f}% {downloaded_mb:.1f}/{total_bytes / (1024 * 1024):.1f} MiB "
            f"({speed / (1024 * 1024):.1f} MiB/s)",
            end="",
            flush=True,
        )
    else:
        print(f"\r  {downloaded_mb:.1f} MiB downloaded ({speed / (1024 * 1024):.1f} MiB/s)", end="", flush=True)


class AssetDownloader:
    def __init__(
        self,
        asset_dir: Path,
        arch: str,
        session: Optional[requests.Session] = None,
        show_progress: bool = True,
    ) -> None:
        self.asset_dir = asset_dir
        self.arch = arch
        self.urls = asset_urls(arch)
        self.session = session or requests.Session()
        self.session.headers["User-Agent"] = USER_AGENT
        self.show_progress = show_progress

    def download(self, url: str, destination: Path) -> bool:
        """Fetch ``url`` into ``destination``; returns False when it was already there."""
        if destination.exists():
            log("INFO", f"{destination} already exists. Skipping.")
            return False
        log("INFO", f"Downloading {url}")
        try:
            response = self.session.get(url, stream=True, timeout=REQUEST_TIMEOUT)
            response.raise_for_status()
        except requests.RequestException as exc:
            raise AssetError(f"Failed to download {url}: {exc}") from exc

        total = response.headers.get("Content-Length")
        total_bytes = int(total) if total and total.isdigit() else None
        downloaded = 0
        start_time = time.time()
        with tempfile.NamedTemporaryFile(delete=False, dir=destination.parent) as tmp:
            tmp_path = Path(tmp.name)
            try:
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    tmp.write(chunk)
                    downloaded += len(chunk)
                    if self.show_progress:
                        _progress(downloaded, total_bytes, start_time)
            except requests.RequestException as exc:
                tmp_path.unlink(missing_ok=True)
                raise AssetError(f"Download of {url} interrupted: {exc}") from exc
            finally:
                response.close()
                if self.show_progress:
                    print(flush=True)
        os.replace(tmp_path, destination)
        log("INFO", f"Saved {destination} ({downloaded / (1024 * 1024):.1f} MiB)")
        return True

    def _extract_firecracker(self, archive: Path, destination: Path) -> None:
        member_name = f"firecracker-{FIRECRACKER_VERSION}-{self.arch}"
        log("INFO", "Extracting firecracker binary...")
        try:
            with tarfile.open(archive, "r:gz") as tar:
                member = next(
                    (m for m in tar.getmembers() if m.isfile() and Path(m.name).name == member_name),
                    None,
                )
                if member is None:
                    raise AssetError(f"{archive} does not contain {member_name}")
                source = tar.extractfile(member)
                assert source is not None
                with source, open(destination, "wb") as target:
                    target.write(source.read())
        except (OSError, tarfile.TarError) as exc:
            destination.unlink(missing_ok=True)
            raise AssetError(f"Failed to extract firecracker from {archive}: {exc}") from exc
        destination.chmod(0o755)

    def download_all(self) -> List[Path]:
        """Fetch everything `stoker run` needs; files already present are kept."""
        ensure_directory(self.asset_dir)
        fetched: List[Path] = []
        targets = [
            ("kernel", self.asset_dir / KERNEL_NAME),
            ("rootfs", self.asset_dir / f"{DEFAULT_IMAGE}{IMAGE_SUFFIX}"),
            ("ssh_key", self.asset_dir / SSH_KEY_NAME),
        ]
        for key, destination in targets:
            if self.download(self.urls[key], destination):
                fetched.append(destination)

        key_path = self.asset_dir / SSH_KEY_NAME
        # ssh refuses keys readable by others
        key_path.chmod(0o400)

        binary = self.asset_dir / FIRECRACKER_NAME
        if binary.exists():
            log("INFO", f"{binary} already exists. Skipping.")
        else:
            archive = self.asset_dir / f"firecracker-{FIRECRACKER_VERSION}-{self.arch}.tgz"
            self.download(self.urls["firecracker"], archive)
            self._extract_firecracker(archive, binary)
            archive.unlink(missing_ok=True)
            fetched.append(binary)
        return fetched
