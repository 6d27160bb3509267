"""Shared test fixtures: isolated settings and fake host backends."""

from __future__ import annotations

import signal
import threading
from ipaddress import IPv4Interface, IPv4Network
from pathlib import Path
from typing import Dict, List, Optional, Set

import pytest

from stoker.config import Settings
from stoker.exceptions import BootTimeout, ChannelClosed
from stoker.network import NetworkAllocator
from stoker.registry import InstanceRegistry
from stoker.supervisor import ProcessSupervisor


class FakeHostNetwork:
    """In-memory stand-in for ``HostNetwork``; ``fail`` maps method name -> exception."""

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.links: Set[str] = set()
        self.masters: Dict[str, str] = {}
        self.addrs: Dict[str, List[IPv4Interface]] = {}
        self.bridges_ensured = 0
        self.fail: Dict[str, Exception] = {}
        self.calls: List[str] = []

    def _maybe_fail(self, method: str) -> None:
        self.calls.append(method)
        if method in self.fail:
            raise self.fail[method]

    def link_exists(self, name: str) -> bool:
        with self.lock:
            return name in self.links

    def addresses(self, device: str) -> List[IPv4Interface]:
        with self.lock:
            return list(self.addrs.get(device, []))

    def default_uplink(self) -> Optional[str]:
        return "eth0"

    def ensure_bridge(self, bridge: str, network: IPv4Network, uplink: Optional[str]) -> None:
        with self.lock:
            self._maybe_fail("ensure_bridge")
            self.links.add(bridge)
            self.bridges_ensured += 1

    def create_tap(self, name: str) -> None:
        with self.lock:
            self._maybe_fail("create_tap")
            self.links.add(name)

    def attach(self, name: str, bridge: str) -> None:
        with self.lock:
            self._maybe_fail("attach")
            self.masters[name] = bridge

    def add_address(self, device: str, address: str) -> None:
        with self.lock:
            self._maybe_fail("add_address")
            self.addrs.setdefault(device, []).append(IPv4Interface(address))

    def delete_address(self, device: str, address: str) -> None:
        with self.lock:
            self._maybe_fail("delete_address")
            current = self.addrs.get(device, [])
            if IPv4Interface(address) in current:
                current.remove(IPv4Interface(address))

    def delete_link(self, name: str) -> None:
        with self.lock:
            self._maybe_fail("delete_link")
            self.links.discard(name)
            self.masters.pop(name, None)

    def taps(self) -> Set[str]:
        return {link for link in self.links if link.startswith("stk-")}


class FakeProcesses:
    """Pretends to spawn firecracker: creates the API socket file and tracks pids."""

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.next_pid = 40000
        self.running: Set[int] = set()
        self.sockets: Dict[int, Path] = {}
        self.commands: List[List[str]] = []
        self.signals: List[tuple] = []
        self.ignore_sigterm = False
        self.unkillable = False
        self.spawn_error: Optional[Exception] = None

    def spawn(self, cmd: List[str], output_path: Path) -> int:
        if self.spawn_error is not None:
            raise self.spawn_error
        socket_path = Path(cmd[cmd.index("--api-sock") + 1])
        socket_path.touch()
        with self.lock:
            self.next_pid += 1
            pid = self.next_pid
            self.running.add(pid)
            self.sockets[pid] = socket_path
            self.commands.append(cmd)
        return pid

    def alive(self, pid: Optional[int]) -> bool:
        with self.lock:
            return pid in self.running

    def exit(self, pid: int) -> None:
        with self.lock:
            self.running.discard(pid)

    def signal(self, pid: int, signum: int) -> None:
        self.signals.append((pid, signum))
        if self.unkillable:
            return
        if signum == signal.SIGTERM and self.ignore_sigterm:
            return
        self.exit(pid)

    def wait_exit(self, pid: int, timeout: float, interval: float = 0.1) -> bool:
        return not self.alive(pid)

    def pid_for_socket(self, socket_path: Path) -> Optional[int]:
        with self.lock:
            for pid, path in self.sockets.items():
                if path == socket_path and pid in self.running:
                    return pid
        return None


class FakeClient:
    def __init__(self, vmm: "FakeVmm", socket_path: Path) -> None:
        self.vmm = vmm
        self.socket_path = socket_path

    def __enter__(self) -> "FakeClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        pass

    def close(self) -> None:
        pass

    def _check(self, action: str) -> None:
        self.vmm.calls.append((action, self.socket_path))
        if action in self.vmm.fail:
            raise self.vmm.fail[action]
        if self.vmm.processes.pid_for_socket(self.socket_path) is None:
            raise ChannelClosed(f"{self.socket_path} is gone")

    def describe(self) -> dict:
        self._check("describe")
        return {"state": "Not started", "id": "fake"}

    def configure_boot(self, spec) -> None:
        self._check("configure_boot")
        self.vmm.boot_specs.append(spec)

    def start(self) -> None:
        self._check("start")

    def wait_ready(self, timeout, probe, process_alive=lambda: True, interval=0.5) -> None:
        self._check("wait_ready")
        if self.vmm.boot_hangs:
            raise BootTimeout(f"Guest did not become reachable within {timeout:.0f}s")
        if self.vmm.crash_on_boot:
            self.vmm.processes.exit(self.vmm.processes.pid_for_socket(self.socket_path))
            raise ChannelClosed("firecracker exited during boot")

    def shutdown(self) -> None:
        self._check("shutdown")
        if self.vmm.guest_honours_shutdown:
            self.vmm.processes.exit(self.vmm.processes.pid_for_socket(self.socket_path))


class FakeVmm:
    """Client factory standing in for firecracker's API."""

    def __init__(self, processes: FakeProcesses) -> None:
        self.processes = processes
        self.calls: List[tuple] = []
        self.boot_specs: list = []
        self.fail: Dict[str, Exception] = {}
        self.boot_hangs = False
        self.crash_on_boot = False
        self.guest_honours_shutdown = True

    def __call__(self, socket_path: Path) -> FakeClient:
        return FakeClient(self, socket_path)

    def actions(self) -> List[str]:
        return [action for action, _ in self.calls]


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        state_dir=tmp_path / "state",
        asset_dir=tmp_path / "assets",
        run_dir=tmp_path / "run",
        network=IPv4Network("172.16.0.0/16"),
        boot_timeout=5.0,
        shutdown_grace=1.0,
    )


@pytest.fixture
def registry(settings) -> InstanceRegistry:
    return InstanceRegistry(settings)


@pytest.fixture
def fake_network() -> FakeHostNetwork:
    return FakeHostNetwork()


@pytest.fixture
def allocator(settings, registry, fake_network) -> NetworkAllocator:
    return NetworkAllocator(settings, registry, host=fake_network)


@pytest.fixture
def fake_processes() -> FakeProcesses:
    return FakeProcesses()


@pytest.fixture
def fake_vmm(fake_processes) -> FakeVmm:
    return FakeVmm(fake_processes)


@pytest.fixture
def assets(settings) -> Path:
    """Asset dir with a kernel, firecracker binary and the default rootfs."""
    settings.asset_dir.mkdir(parents=True)
    (settings.asset_dir / "vmlinux.bin").write_bytes(b"kernel")
    (settings.asset_dir / "firecracker").write_bytes(b"#!/bin/sh\n")
    (settings.asset_dir / "ubuntu-rootfs.ext4").write_bytes(b"\0" * 4096)
    return settings.asset_dir


@pytest.fixture
def supervisor(settings, fake_processes, fake_vmm, fake_network, assets) -> ProcessSupervisor:
    registry = InstanceRegistry(settings, is_alive=fake_processes.alive)
    allocator = NetworkAllocator(settings, registry, host=fake_network)
    return ProcessSupervisor(
        settings,
        registry,
        allocator,
        processes=fake_processes,
        client_factory=fake_vmm,
        probe_factory=lambda address: (lambda: True),
    )


@pytest.fixture
def mock_env(monkeypatch):
    """Helper to set environment variables for tests."""

    def _set(**kwargs):
        for key, value in kwargs.items():
            if value is None:
                monkeypatch.delenv(key, raising=False)
            else:
                monkeypatch.setenv(key, str(value))

    return _set


_STOKER_ENV_VARS = [
    "STOKER_CONFIG",
    "STOKER_STATE_DIR",
    "STOKER_ASSET_DIR",
    "STOKER_RUN_DIR",
    "STOKER_NETWORK",
    "STOKER_BRIDGE",
    "STOKER_UPLINK",
    "STOKER_FIRECRACKER",
    "STOKER_BOOT_TIMEOUT",
    "STOKER_SHUTDOWN_GRACE",
    "STOKER_REQUEST_TIMEOUT",
    "STOKER_LIMA_INSTANCE",
]


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """Clear every STOKER_* variable and point the config file somewhere empty."""
    for key in _STOKER_ENV_VARS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("STOKER_CONFIG", str(tmp_path / "absent.yaml"))

