"""Execution relay: run stoker natively, or forward it into a Lima Linux VM."""

from __future__ import annotations

import abc
import json
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from stoker.config import Settings
from stoker.constants import LIMA_CPUS, LIMA_IMAGES, LIMA_MEMORY
from stoker.exceptions import RelayError
from stoker.runtime import HostCapabilities
from stoker.utils import get_env_bool, log, run

Handler = Callable[[List[str]], int]

PROVISION_SCRIPT = """#!/bin/bash
set -e
export DEBIAN_FRONTEND=noninteractive
apt-get update
apt-get install -y iptables iproute2 e2fsprogs systemd-container curl python3-pip python3-venv
"""

REMOTE_SOURCE_DIR = "/tmp/stoker-src"


@dataclass
class RelayResult:
    stdout: str
    stderr: str
    exit_code: int


def lima_template(mount_dir: Optional[Path] = None) -> Dict[str, object]:
    """Lima instance definition: Ubuntu with nested virtualization for KVM."""
    return {
        "images": [{"location": url, "arch": arch} for arch, url in LIMA_IMAGES.items()],
        "cpus": LIMA_CPUS,
        "memory": LIMA_MEMORY,
        "vmType": "vz",
        "nestedVirtualization": True,
        "mounts": [{"location": str(mount_dir) if mount_dir else "~", "writable": False}],
        "containerd": {"system": False, "user": False},
        "provision": [{"mode": "system", "script": PROVISION_SCRIPT}],
    }


class LimaEnvironment:
    """The Linux VM that hosts firecracker on machines without KVM."""

    def __init__(self, instance: str) -> None:
        self.instance = instance

    def _limactl(self, args: List[str], **kwargs) -> subprocess.CompletedProcess:
        try:
            return run(["limactl", *args], **kwargs)
        except FileNotFoundError as exc:
            raise RelayError("limactl not found on PATH; install Lima first") from exc
        except subprocess.CalledProcessError as exc:
            detail = (exc.stderr or "").strip() if isinstance(exc.stderr, str) else ""
            raise RelayError(f"limactl {args[0]} failed with exit code {exc.returncode}: {detail}") from exc

    def status(self) -> Optional[str]:
        """Lima status of our instance (``Running``, ``Stopped``...), or None if it does not exist."""
        result = self._limactl(["list", "--json"], capture_output=True)
        for line in result.stdout.splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                entry = json.loads(line)
            except ValueError as exc:
                raise RelayError(f"Unexpected output from limactl list: {line!r}") from exc
            if entry.get("name") == self.instance:
                return entry.get("status")
        return None

    def create(self, mount_dir: Optional[Path] = None) -> None:
        log("INFO", f"Creating Lima VM '{self.instance}' (this may take a few minutes)...")
        with tempfile.NamedTemporaryFile("w", suffix=".yaml", prefix="stoker-lima-", delete=False) as handle:
            yaml.safe_dump(lima_template(mount_dir), handle, sort_keys=False)
            template_path = Path(handle.name)
        try:
            self._limactl(["start", f"--name={self.instance}", "--tty=false", str(template_path)])
        finally:
            template_path.unlink(missing_ok=True)

    def ensure(self, mount_dir: Optional[Path] = None) -> None:
        """Idempotent: create the VM if missing, start it if stopped."""
        status = self.status()
        if status is None:
            self.create(mount_dir)
        elif status == "Stopped":
            log("DEBUG", f"Starting Lima VM '{self.instance}'")
            self._limactl(["start", "--tty=false", self.instance])
        elif status != "Running":
            raise RelayError(f"Lima VM '{self.instance}' is in state {status}; fix it with limactl")

    def shell_command(self, argv: Sequence[str]) -> List[str]:
        remote = ["sudo"]
        if get_env_bool("LOG_VERBOSE", False):
            remote.append("LOG_VERBOSE=1")
        remote += ["stoker", *argv]
        return ["limactl", "shell", self.instance, *remote]

    def relay(self, argv: Sequence[str], capture: bool = True) -> RelayResult:
        """Run ``stoker <argv>`` inside the VM; output is passed through untouched."""
        cmd = self.shell_command(argv)
        log("DEBUG", f"Relaying to Lima VM '{self.instance}': {' '.join(argv)}")
        try:
            if capture:
                result = subprocess.run(cmd, capture_output=True, text=True)
                return RelayResult(stdout=result.stdout, stderr=result.stderr, exit_code=result.returncode)
            result = subprocess.run(cmd)
        except FileNotFoundError as exc:
            raise RelayError("limactl not found on PATH; install Lima first") from exc
        return RelayResult(stdout="", stderr="", exit_code=result.returncode)

    def installed(self) -> bool:
        result = self._limactl(["shell", self.instance, "sudo", "which", "stoker"], check=False, capture_output=True)
        return result.returncode == 0

    def install(self, project_dir: Path) -> None:
        """Install stoker from the mounted project directory into the VM's system Python."""
        log("INFO", f"Installing stoker inside Lima VM '{self.instance}'...")
        script = (
            f"rm -rf {REMOTE_SOURCE_DIR} && cp -r '{project_dir}' {REMOTE_SOURCE_DIR} && "
            f"sudo pip install --break-system-packages {REMOTE_SOURCE_DIR}"
        )
        self._limactl(["shell", self.instance, "bash", "-lc", script])


class Executor(abc.ABC):
    """Runs one parsed stoker command line; returns the process exit code."""

    @abc.abstractmethod
    def execute(self, argv: List[str], handler: Handler) -> int:
        ...


class NativeExecutor(Executor):
    def execute(self, argv: List[str], handler: Handler) -> int:
        return handler(argv)


class RelayedExecutor(Executor):
    def __init__(self, environment: LimaEnvironment) -> None:
        self.environment = environment

    def execute(self, argv: List[str], handler: Handler) -> int:
        self.environment.ensure()
        if not self.environment.installed():
            raise RelayError(
                f"stoker is not installed in Lima VM '{self.environment.instance}'; run `stoker setup` first"
            )
        return self.environment.relay(argv, capture=False).exit_code


def select_executor(settings: Settings, capabilities: HostCapabilities) -> Executor:
    """Pick the execution strategy once, at startup."""
    if capabilities.native:
        return NativeExecutor()
    if capabilities.can_relay:
        log("DEBUG", f"No usable KVM on this {capabilities.system} host; relaying to '{settings.lima_instance}'")
        return RelayedExecutor(LimaEnvironment(settings.lima_instance))
    if capabilities.system == "linux":
        # Let the command fail with its own, more specific error.
        log("DEBUG", "/dev/kvm unavailable and limactl missing; running natively anyway")
        return NativeExecutor()
    raise RelayError(
        f"stoker needs Linux with KVM; on {capabilities.system} install Lima and run `stoker setup`"
    )


def setup(settings: Settings, project_dir: Path, capabilities: HostCapabilities) -> None:
    """Provision the Lima VM and install stoker inside it (host side only)."""
    if not capabilities.limactl:
        raise RelayError("`stoker setup` needs limactl on the host; install Lima first")
    environment = LimaEnvironment(settings.lima_instance)
    environment.ensure(mount_dir=project_dir)
    environment.install(project_dir)
    log("SUCCESS", "stoker setup complete! You can now run `stoker download-assets`.")
