"""Durable instance registry for stoker.

Every instance is one JSON document under ``<state_dir>/instances/<id>.json``.
Documents are replaced atomically, so readers never need a lock; writers
serialize through the registry lock (creation, deletion) or the per-instance
lock (lifecycle transitions).
"""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Callable, Iterable, List, Optional

from stoker.config import Settings
from stoker.constants import INSTANCE_ID_PREFIX, INSTANCE_ID_RE, MAX_INSTANCES
from stoker.exceptions import InstanceNotFound, InvalidTransition, NameConflict, RegistryError
from stoker.locking import FileLock, LockTimeout
from stoker.models import TRANSITIONS, Instance, InstanceState
from stoker.utils import ensure_directory, log, pid_alive, utc_now


class InstanceRegistry:
    def __init__(self, settings: Settings, is_alive: Callable[[Optional[int]], bool] = pid_alive) -> None:
        self.settings = settings
        self.is_alive = is_alive
        self.root = settings.instances_dir
        ensure_directory(self.root)
        ensure_directory(settings.locks_dir)

    # Locks

    def registry_lock(self, timeout: Optional[float] = None) -> FileLock:
        return FileLock(self.settings.locks_dir / "registry.lock", timeout=timeout)

    def instance_lock(self, instance_id: str, timeout: Optional[float] = None) -> FileLock:
        return FileLock(self.settings.locks_dir / f"{instance_id}.lock", timeout=timeout)

    # Storage

    def _path(self, instance_id: str) -> Path:
        return self.root / f"{instance_id}.json"

    def _read(self, path: Path) -> Optional[Instance]:
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            log("WARN", f"Skipping unreadable registry record {path}: {exc}")
            return None
        try:
            return Instance.from_dict(data)
        except (KeyError, TypeError, ValueError) as exc:
            log("WARN", f"Skipping malformed registry record {path}: {exc}")
            return None

    def _write(self, instance: Instance) -> None:
        instance.updated_at = utc_now()
        payload = json.dumps(instance.to_dict(), indent=2, sort_keys=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.root, prefix=f".{instance.id}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as handle:
                handle.write(payload + "\n")
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self._path(instance.id))
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _records(self) -> List[Instance]:
        records = []
        for path in sorted(self.root.glob(f"{INSTANCE_ID_PREFIX}*.json")):
            instance = self._read(path)
            if instance is not None:
                records.append(instance)
        return records

    def _find(self, id_or_name: str) -> Optional[Instance]:
        if INSTANCE_ID_RE.match(id_or_name):
            instance = self._read(self._path(id_or_name))
            if instance is not None:
                return instance
        for candidate in self._records():
            if candidate.name == id_or_name:
                return candidate
        return None

    def _next_id(self, taken: Iterable[str]) -> str:
        taken = set(taken)
        for index in range(MAX_INSTANCES):
            candidate = f"{INSTANCE_ID_PREFIX}{index:02x}"
            if candidate not in taken:
                return candidate
        raise RegistryError(f"All {MAX_INSTANCES} instance ids are in use")

    # Public API

    def create(
        self,
        name: str,
        image: str,
        vcpus: int,
        memory_mib: int,
    ) -> Instance:
        """Reserve ``name`` and the lowest free id, and persist a provisional ``creating`` record."""
        with self.registry_lock():
            records = self._records()
            if any(record.name == name for record in records):
                raise NameConflict(f"An instance named '{name}' already exists")
            instance_id = self._next_id(record.id for record in records)
            vm_dir = self.settings.work_dir / instance_id
            instance = Instance(
                id=instance_id,
                name=name,
                image=image,
                state=InstanceState.CREATING,
                control_socket_path=self.settings.run_dir / f"{instance_id}.socket",
                created_at=utc_now(),
                vcpus=vcpus,
                memory_mib=memory_mib,
                rootfs_path=vm_dir / "rootfs.ext4",
                log_path=vm_dir / "firecracker.log",
            )
            self._write(instance)
        log("DEBUG", f"Registered {instance.id} ({name}) as {instance.state.value}")
        return instance

    def upsert(self, instance: Instance) -> Instance:
        with self.registry_lock():
            existing = self._read(self._path(instance.id))
            if existing is None:
                for record in self._records():
                    if record.name == instance.name:
                        raise NameConflict(f"An instance named '{instance.name}' already exists")
            self._write(instance)
        return instance

    def update(self, instance_id: str, **changes) -> Instance:
        """Persist field changes that do not move the state machine."""
        instance = self._read(self._path(instance_id))
        if instance is None:
            raise InstanceNotFound(f"No instance with id '{instance_id}'")
        for key, value in changes.items():
            setattr(instance, key, value)
        self._write(instance)
        return instance

    def transition(self, instance_id: str, state: InstanceState, **changes) -> Instance:
        """Move an instance to ``state``; the caller holds the instance lock."""
        instance = self._read(self._path(instance_id))
        if instance is None:
            raise InstanceNotFound(f"No instance with id '{instance_id}'")
        if state != instance.state and state not in TRANSITIONS[instance.state]:
            raise InvalidTransition(
                f"Instance '{instance.name}' cannot go from {instance.state.value} to {state.value}"
            )
        instance.state = state
        for key, value in changes.items():
            setattr(instance, key, value)
        self._write(instance)
        log("DEBUG", f"{instance.id} ({instance.name}) -> {state.value}")
        return instance

    def get(self, id_or_name: str) -> Optional[Instance]:
        instance = self._find(id_or_name)
        if instance is None:
            return None
        return self.reconcile(instance)

    def require(self, id_or_name: str) -> Instance:
        instance = self.get(id_or_name)
        if instance is None:
            raise InstanceNotFound(f"No instance found with name or id '{id_or_name}'")
        return instance

    def list(self) -> List[Instance]:
        return [self.reconcile(instance) for instance in self._records()]

    def peek(self) -> List[Instance]:
        """All records as stored, without the liveness check."""
        return self._records()

    def delete(self, instance_id: str) -> None:
        with self.registry_lock():
            self._path(instance_id).unlink(missing_ok=True)
        log("DEBUG", f"Deleted registry record {instance_id}")

    # Reconciliation

    def _drifted_state(self, instance: Instance) -> Optional[InstanceState]:
        if instance.pid is None or self.is_alive(instance.pid):
            return None
        if instance.state == InstanceState.RUNNING:
            return InstanceState.STOPPED
        if instance.state in (InstanceState.CREATING, InstanceState.BOOTING):
            return InstanceState.FAILED
        return None

    def reconcile(self, instance: Instance) -> Instance:
        """Heal a record whose process has died; never raises."""
        if self._drifted_state(instance) is None:
            return instance
        try:
            with self.instance_lock(instance.id, timeout=0):
                current = self._read(self._path(instance.id))
                if current is None:
                    return instance
                target = self._drifted_state(current)
                if target is None:
                    return current
                log("DEBUG", f"Process {current.pid} of {current.name} is gone; marking {target.value}")
                return self.transition(current.id, target, pid=None)
        except LockTimeout:
            # A lifecycle operation owns this instance right now.
            return instance
        except (OSError, RegistryError) as exc:
            log("DEBUG", f"Could not reconcile {instance.id}: {exc}")
            return instance
