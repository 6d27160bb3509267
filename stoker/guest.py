"""Guest-side helpers: boot readiness probe and interactive SSH."""

from __future__ import annotations

import socket
import subprocess
from pathlib import Path
from typing import Callable, List, Sequence

from stoker.exceptions import StokerError
from stoker.models import Instance, InstanceState
from stoker.utils import log

SSH_PORT = 22


def ssh_port_open(address: str, port: int = SSH_PORT, timeout: float = 1.0) -> bool:
    """Return True once a TCP connection to the guest's SSH port succeeds."""
    try:
        with socket.create_connection((address, port), timeout=timeout):
            return True
    except OSError:
        return False


def ssh_probe(address: str) -> Callable[[], bool]:
    """Default readiness predicate: the guest answers on its SSH port."""
    return lambda: ssh_port_open(address)


def ssh_command(instance: Instance, key_path: Path, extra: Sequence[str] = ()) -> List[str]:
    return [
        "ssh",
        "-i",
        str(key_path),
        "-o",
        "StrictHostKeyChecking=no",
        "-o",
        "UserKnownHostsFile=/dev/null",
        "-o",
        "LogLevel=ERROR",
        f"root@{instance.guest_address}",
        *extra,
    ]


def interactive_ssh(instance: Instance, key_path: Path) -> int:
    """Hand the terminal to ``ssh`` and return its exit status."""
    if instance.state != InstanceState.RUNNING or instance.guest_address is None:
        raise StokerError(f"Instance '{instance.name}' is {instance.state.value}, not running")
    if not key_path.exists():
        raise StokerError(f"SSH key not found at {key_path}. Run `stoker download-assets` first.")
    log("INFO", f"Connecting to {instance.name} at {instance.guest_address}...")
    return subprocess.call(ssh_command(instance, key_path))
