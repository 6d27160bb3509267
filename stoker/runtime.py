"""Host capability detection for stoker."""

from __future__ import annotations

import os
import platform
import shutil
from dataclasses import dataclass
from pathlib import Path

from stoker.constants import ARCH_ALIASES
from stoker.utils import kvm_available, log


@dataclass
class HostCapabilities:
    system: str  # "linux", "darwin", ...
    arch: str  # "x86_64" or "aarch64"
    kvm: bool
    limactl: bool
    root: bool

    @property
    def native(self) -> bool:
        """Firecracker can run directly on this machine."""
        return self.system == "linux" and self.kvm

    @property
    def can_relay(self) -> bool:
        return self.limactl


def _detect_arch() -> str:
    machine = platform.machine().lower()
    return ARCH_ALIASES.get(machine, machine)


def _inside_lima() -> bool:
    """Lima guests carry their cidata mount; never relay from inside one."""
    return Path("/mnt/lima-cidata").exists()


def detect_host() -> HostCapabilities:
    """Detect operating system, architecture, KVM access and Lima availability."""
    system = platform.system().lower()
    kvm = system == "linux" and kvm_available()
    limactl = shutil.which("limactl") is not None and not _inside_lima()
    root = hasattr(os, "geteuid") and os.geteuid() == 0

    if system == "linux" and not kvm:
        log("DEBUG", "/dev/kvm is not accessible on this host")
    if system == "linux" and kvm and not root:
        log("DEBUG", "Not running as root; tap and bridge setup will likely fail")

    return HostCapabilities(system=system, arch=_detect_arch(), kvm=kvm, limactl=limactl, root=root)
