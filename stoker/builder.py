"""Custom rootfs images: clone a base image and run a script inside it."""

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

from stoker.constants import BUILD_GROW_SIZE, DEFAULT_IMAGE
from stoker.exceptions import BuildError
from stoker.images import ImageStore
from stoker.models import Image
from stoker.utils import ensure_directory, log, run, validate_name

GUEST_SCRIPT_NAME = "stoker-build.sh"


class ImageBuilder:
    def __init__(self, images: ImageStore, mount_root: Path = Path("/tmp")) -> None:
        self.images = images
        self.mount_root = mount_root

    def _run(self, cmd, what: str) -> None:
        try:
            run(cmd)
        except FileNotFoundError as exc:
            raise BuildError(f"{cmd[0]} is not installed; it is needed to {what}") from exc
        except subprocess.CalledProcessError as exc:
            raise BuildError(f"Failed to {what} (exit code {exc.returncode})") from exc

    def build(self, image_name: str, script_path: Path, base: str = DEFAULT_IMAGE, force: bool = False) -> Image:
        validate_name(image_name)
        if not script_path.is_file():
            raise BuildError(f"Build script not found: {script_path}")
        source = self.images.get(base)
        target = self.images.path_for(image_name)
        if target.exists() and not force:
            raise BuildError(f"Image '{image_name}' already exists at {target}")

        log("INFO", f"Building image {image_name} from {base}...")
        try:
            shutil.copy2(source.path, target)
        except OSError as exc:
            raise BuildError(f"Failed to clone {source.path}: {exc}") from exc

        try:
            self._grow(target)
            self._run_script(image_name, target, script_path)
        except BuildError:
            target.unlink(missing_ok=True)
            raise

        image = self.images.get(image_name)
        log("SUCCESS", f"Built image {image_name} ({image.size_mb} MB)")
        return image

    def _grow(self, target: Path) -> None:
        log("INFO", f"Expanding image by {BUILD_GROW_SIZE} for build space...")
        self._run(["truncate", "-s", BUILD_GROW_SIZE, str(target)], "grow the image file")
        # e2fsck exits 1 when it fixed something, which is fine before a resize
        try:
            result = run(["e2fsck", "-f", "-y", str(target)], check=False, capture_output=True)
        except FileNotFoundError as exc:
            raise BuildError("e2fsck is not installed; it is needed to check the filesystem") from exc
        if result.returncode > 1:
            raise BuildError(f"e2fsck reported errors on {target} (exit code {result.returncode})")
        self._run(["resize2fs", str(target)], "resize the filesystem")

    def _run_script(self, image_name: str, target: Path, script_path: Path) -> None:
        mount_dir = self.mount_root / f"stoker-build-{image_name}"
        ensure_directory(mount_dir)
        mounted = False
        try:
            self._run(["mount", "-o", "loop", str(target), str(mount_dir)], "loop-mount the image (are you root?)")
            mounted = True
            # systemd-nspawn mounts a tmpfs over /tmp, so the script lives at /
            guest_script = mount_dir / GUEST_SCRIPT_NAME
            guest_script.write_bytes(script_path.read_bytes())
            guest_script.chmod(0o755)
            log("INFO", "Executing build script inside systemd-nspawn...")
            self._run(
                ["systemd-nspawn", "-D", str(mount_dir), "--as-pid2", f"/{GUEST_SCRIPT_NAME}"],
                "run the build script",
            )
            guest_script.unlink(missing_ok=True)
        except OSError as exc:
            raise BuildError(f"Could not stage build script: {exc}") from exc
        finally:
            if not mounted or self._unmount(mount_dir):
                try:
                    mount_dir.rmdir()
                except OSError:
                    log("DEBUG", f"Leaving {mount_dir} in place")

    def _unmount(self, mount_dir: Path) -> bool:
        log("INFO", "Unmounting loop filesystem...")
        try:
            run(["umount", str(mount_dir)])
        except (OSError, subprocess.CalledProcessError) as exc:
            log("WARN", f"Failed to unmount {mount_dir}: {exc}")
            return False
        return True
