"""MicroVM lifecycle management for stoker."""

from __future__ import annotations

import os
import shutil
import signal
import subprocess
import time
from contextlib import ExitStack
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from stoker.config import Settings
from stoker.constants import DEFAULT_IMAGE, DEFAULT_MEMORY_MIB, DEFAULT_VCPUS, SOCKET_WAIT_TIMEOUT
from stoker.control import ControlPlaneClient
from stoker.exceptions import (
    AllocationError,
    BootTimeout,
    ChannelClosed,
    CleanupError,
    ControlError,
    InstanceNotFound,
    StokerError,
    SupervisionError,
)
from stoker.guest import ssh_probe
from stoker.images import ImageStore
from stoker.models import BootSpec, Instance, InstanceState
from stoker.network import NetworkAllocator
from stoker.registry import InstanceRegistry
from stoker.utils import ensure_directory, log, pid_alive, remove_file, validate_name

TERMINATE_WAIT = 3.0


class HostProcesses:
    """Spawns firecracker detached from the CLI and tracks liveness by pid."""

    def __init__(self) -> None:
        self._children: Dict[int, subprocess.Popen] = {}

    def spawn(self, cmd: List[str], output_path: Path) -> int:
        log("DEBUG", f"Spawning: {' '.join(cmd)}")
        try:
            with open(output_path, "ab") as output:
                proc = subprocess.Popen(
                    cmd,
                    stdin=subprocess.DEVNULL,
                    stdout=output,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
        except OSError as exc:
            raise SupervisionError(f"Failed to spawn {cmd[0]}: {exc}") from exc
        self._children[proc.pid] = proc
        return proc.pid

    def alive(self, pid: Optional[int]) -> bool:
        if pid is None:
            return False
        child = self._children.get(pid)
        if child is not None:
            # Reap our own children so they do not linger as zombies.
            return child.poll() is None
        return pid_alive(pid)

    def signal(self, pid: int, signum: int) -> None:
        try:
            os.kill(pid, signum)
        except ProcessLookupError:
            pass
        except PermissionError as exc:
            raise SupervisionError(f"Not permitted to signal process {pid}: {exc}") from exc

    def wait_exit(self, pid: int, timeout: float, interval: float = 0.1) -> bool:
        deadline = time.monotonic() + timeout
        while self.alive(pid):
            if time.monotonic() >= deadline:
                return False
            time.sleep(interval)
        return True


class ProcessSupervisor:
    """Drives instances through creating -> booting -> running -> stopping -> stopped."""

    def __init__(
        self,
        settings: Settings,
        registry: InstanceRegistry,
        allocator: NetworkAllocator,
        processes: Optional[HostProcesses] = None,
        client_factory: Optional[Callable[[Path], ControlPlaneClient]] = None,
        probe_factory: Callable[[str], Callable[[], bool]] = ssh_probe,
    ) -> None:
        self.settings = settings
        self.registry = registry
        self.allocator = allocator
        self.processes = processes or HostProcesses()
        self.client_factory = client_factory or (
            lambda socket_path: ControlPlaneClient(socket_path, timeout=settings.request_timeout)
        )
        self.probe_factory = probe_factory
        self.images = ImageStore(settings.asset_dir)

    # Queries

    def list(self) -> List[Instance]:
        return self.registry.list()

    def get(self, name: str) -> Instance:
        return self.registry.require(name)

    # Run

    def _firecracker_binary(self) -> str:
        if self.settings.firecracker_path.exists():
            return str(self.settings.firecracker_path)
        found = shutil.which("firecracker")
        if found:
            return found
        raise SupervisionError(
            f"firecracker binary not found at {self.settings.firecracker_path} or on PATH. "
            "Run `stoker download-assets` first."
        )

    def run(
        self,
        name: str,
        image: str = DEFAULT_IMAGE,
        vcpus: int = DEFAULT_VCPUS,
        memory_mib: int = DEFAULT_MEMORY_MIB,
        boot_timeout: Optional[float] = None,
    ) -> Instance:
        validate_name(name)
        source = self.images.get(image)
        if not self.settings.kernel_path.exists():
            raise SupervisionError(
                f"Kernel not found at {self.settings.kernel_path}. Run `stoker download-assets` first."
            )
        binary = self._firecracker_binary()
        timeout = boot_timeout or self.settings.boot_timeout

        instance = self.registry.create(name, image, vcpus, memory_mib)
        log("INFO", f"Creating {instance.id} ({name}) from image {image}")
        failures: List[str] = []

        with self.registry.instance_lock(instance.id), ExitStack() as rollback:
            rollback.callback(self._finish_rollback, instance.id, failures)

            network = self.allocator.allocate(instance.id)
            rollback.callback(self._undo, failures, "release network", self.allocator.release, network)
            instance = self.registry.update(instance.id, network=network)

            rollback.callback(self._undo, failures, "remove work dir", self._remove_workdir, instance)
            self._prepare_rootfs(source.path, instance)

            rollback.callback(self._undo, failures, "remove socket", remove_file, instance.control_socket_path)
            pid = self._spawn(instance, binary)
            rollback.callback(self._undo, failures, "terminate firecracker", self._terminate, pid)
            instance = self.registry.update(instance.id, pid=pid)

            self._wait_for_socket(instance, pid)
            instance = self.registry.transition(instance.id, InstanceState.BOOTING)

            with self.client_factory(instance.control_socket_path) as client:
                client.configure_boot(BootSpec.for_instance(instance, self.settings.kernel_path))
                client.start()
                log("INFO", f"Booting {name} at {instance.guest_address}...")
                try:
                    client.wait_ready(
                        timeout,
                        probe=self.probe_factory(str(instance.guest_address)),
                        process_alive=lambda: self.processes.alive(pid),
                    )
                except BootTimeout:
                    # Leave the process and record in place; the caller decides.
                    rollback.pop_all()
                    log("WARN", f"{name} is still booting after {timeout:.0f}s; remove it with `stoker rm {name}`")
                    raise

            instance = self.registry.transition(instance.id, InstanceState.RUNNING)
            rollback.pop_all()

        log("SUCCESS", f"{name} is running at {instance.guest_address} (PID {instance.pid})")
        return instance

    def _undo(self, failures: List[str], label: str, step: Callable, *args) -> None:
        try:
            step(*args)
        except (StokerError, OSError, subprocess.CalledProcessError) as exc:
            log("WARN", f"Rollback step '{label}' failed: {exc}")
            failures.append(f"{label}: {exc}")

    def _finish_rollback(self, instance_id: str, failures: List[str]) -> None:
        """Last rollback step: drop the record, or keep it as failed if anything is left behind."""
        try:
            if failures:
                self.registry.transition(instance_id, InstanceState.FAILED)
                log("WARN", f"Kept {instance_id} as failed; run `stoker rm` to finish cleanup")
            else:
                self.registry.delete(instance_id)
        except (StokerError, OSError) as exc:
            log("WARN", f"Could not update registry record {instance_id} after a failed run: {exc}")

    def _prepare_rootfs(self, source: Path, instance: Instance) -> None:
        assert instance.rootfs_path is not None and instance.log_path is not None
        try:
            ensure_directory(instance.rootfs_path.parent)
            shutil.copy2(source, instance.rootfs_path)
            # firecracker refuses to open a logger path that does not exist yet
            instance.log_path.touch()
        except OSError as exc:
            raise SupervisionError(f"Could not prepare rootfs for {instance.name}: {exc}") from exc

    def _remove_workdir(self, instance: Instance) -> None:
        if instance.rootfs_path is not None and instance.rootfs_path.parent.exists():
            shutil.rmtree(instance.rootfs_path.parent)

    def _spawn(self, instance: Instance, binary: str) -> int:
        assert instance.rootfs_path is not None
        ensure_directory(instance.control_socket_path.parent)
        remove_file(instance.control_socket_path)
        cmd = [
            binary,
            "--api-sock",
            str(instance.control_socket_path),
            "--id",
            instance.id.replace("_", "-"),
        ]
        return self.processes.spawn(cmd, instance.rootfs_path.parent / "console.log")

    def _wait_for_socket(self, instance: Instance, pid: int, timeout: float = SOCKET_WAIT_TIMEOUT) -> None:
        """Block until firecracker is listening on its API socket."""
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if not self.processes.alive(pid):
                raise SupervisionError(
                    f"firecracker exited before opening {instance.control_socket_path}; "
                    f"check console.log in {self.settings.work_dir / instance.id}"
                )
            if instance.control_socket_path.exists():
                try:
                    with self.client_factory(instance.control_socket_path) as client:
                        client.describe()
                    return
                except ChannelClosed:
                    pass
            time.sleep(0.05)
        raise SupervisionError(f"firecracker did not open {instance.control_socket_path} within {timeout:.0f}s")

    def _terminate(self, pid: int) -> None:
        for signum in (signal.SIGTERM, signal.SIGKILL):
            if not self.processes.alive(pid):
                return
            self.processes.signal(pid, signum)
            if self.processes.wait_exit(pid, TERMINATE_WAIT):
                return
        raise SupervisionError(f"Process {pid} survived SIGKILL")

    # Stop / remove

    def _stop_process(self, instance: Instance, grace: float, failures: List[str]) -> bool:
        """Graceful shutdown first, then signals. Returns True once the process is gone."""
        pid = instance.pid
        if pid is None or not self.processes.alive(pid):
            return True
        try:
            with self.client_factory(instance.control_socket_path) as client:
                client.shutdown()
            if self.processes.wait_exit(pid, grace):
                log("INFO", f"{instance.name} shut down cleanly")
                return True
            log("WARN", f"{instance.name} did not shut down within {grace:.0f}s; terminating")
        except ChannelClosed:
            log("DEBUG", f"Control channel of {instance.name} is gone; terminating PID {pid}")
        except ControlError as exc:
            log("DEBUG", f"Graceful shutdown of {instance.name} unavailable ({exc}); terminating")
        try:
            self._terminate(pid)
        except SupervisionError as exc:
            failures.append(str(exc))
            return False
        log("INFO", f"Terminated firecracker (PID {pid})")
        return True

    def _teardown(self, instance: Instance, grace: float) -> Tuple[Instance, List[str]]:
        failures: List[str] = []
        instance = self.registry.transition(instance.id, InstanceState.STOPPING)
        process_gone = self._stop_process(instance, grace, failures)

        changes: Dict[str, object] = {"pid": None if process_gone else instance.pid}
        try:
            self.allocator.release(instance.network)
            changes["network"] = None
        except AllocationError as exc:
            failures.append(str(exc))
        try:
            remove_file(instance.control_socket_path)
        except OSError as exc:
            failures.append(f"socket {instance.control_socket_path}: {exc}")

        state = InstanceState.STOPPED if process_gone else InstanceState.FAILED
        instance = self.registry.transition(instance.id, state, **changes)
        return instance, failures

    def stop(self, name: str, grace: Optional[float] = None) -> Instance:
        grace = self.settings.shutdown_grace if grace is None else grace
        instance = self.registry.require(name)
        with self.registry.instance_lock(instance.id):
            current = self.registry.get(instance.id)
            if current is None:
                raise InstanceNotFound(f"Instance '{name}' was removed concurrently")
            if current.state == InstanceState.STOPPED and current.network is None:
                log("INFO", f"{name} is already stopped")
                return current
            log("INFO", f"Stopping {name}...")
            current, failures = self._teardown(current, grace)
        if failures:
            raise CleanupError(name, failures)
        log("SUCCESS", f"{name} stopped")
        return current

    def remove(self, name: str, grace: Optional[float] = None) -> None:
        grace = self.settings.shutdown_grace if grace is None else grace
        instance = self.registry.require(name)
        failures: List[str] = []
        with self.registry.instance_lock(instance.id):
            current = self.registry.get(instance.id)
            if current is None:
                raise InstanceNotFound(f"Instance '{name}' was removed concurrently")
            if current.pid is not None or current.network is not None or current.state != InstanceState.STOPPED:
                try:
                    current, failures = self._teardown(current, grace)
                except StokerError as exc:
                    failures.append(str(exc))
            try:
                self._remove_workdir(current)
            except OSError as exc:
                failures.append(f"work dir: {exc}")
            self.registry.delete(current.id)
        if failures:
            raise CleanupError(name, failures)
        log("SUCCESS", f"Removed {name}")
