"""Data models for stoker."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from ipaddress import IPv4Address, IPv4Network
from pathlib import Path
from typing import Dict, Optional

from stoker.constants import BASE_BOOT_ARGS, GUEST_DNS, GUEST_IFACE


class InstanceState(str, enum.Enum):
    CREATING = "creating"
    BOOTING = "booting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"


# Allowed lifecycle transitions; anything else is a bug in the caller.
TRANSITIONS = {
    InstanceState.CREATING: {InstanceState.BOOTING, InstanceState.FAILED, InstanceState.STOPPING},
    InstanceState.BOOTING: {InstanceState.RUNNING, InstanceState.FAILED, InstanceState.STOPPING},
    InstanceState.RUNNING: {InstanceState.STOPPING, InstanceState.STOPPED, InstanceState.FAILED},
    InstanceState.STOPPING: {InstanceState.STOPPED, InstanceState.FAILED},
    InstanceState.STOPPED: {InstanceState.STOPPING},
    InstanceState.FAILED: {InstanceState.STOPPING},
}


@dataclass(frozen=True)
class NetworkAssignment:
    segment: IPv4Network
    tap_device: str
    mac_address: str

    @property
    def gateway_address(self) -> IPv4Address:
        return self.segment.network_address + 1

    @property
    def guest_address(self) -> IPv4Address:
        return self.segment.network_address + 2

    @property
    def netmask(self) -> IPv4Address:
        return self.segment.netmask

    @property
    def gateway_interface(self) -> str:
        """Gateway address in CIDR form, as configured on the bridge."""
        return f"{self.gateway_address}/{self.segment.prefixlen}"

    def to_dict(self) -> Dict[str, str]:
        return {
            "segment": str(self.segment),
            "tap_device": self.tap_device,
            "mac_address": self.mac_address,
            "gateway_address": str(self.gateway_address),
            "guest_address": str(self.guest_address),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, str]) -> "NetworkAssignment":
        return cls(
            segment=IPv4Network(data["segment"]),
            tap_device=data["tap_device"],
            mac_address=data["mac_address"],
        )


@dataclass
class Instance:
    id: str
    name: str
    image: str
    state: InstanceState
    control_socket_path: Path
    created_at: str
    pid: Optional[int] = None
    network: Optional[NetworkAssignment] = None
    vcpus: int = 1
    memory_mib: int = 512
    rootfs_path: Optional[Path] = None
    log_path: Optional[Path] = None
    updated_at: Optional[str] = None

    @property
    def guest_address(self) -> Optional[str]:
        if self.network is None:
            return None
        return str(self.network.guest_address)

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "image": self.image,
            "state": self.state.value,
            "pid": self.pid,
            "control_socket_path": str(self.control_socket_path),
            "network": self.network.to_dict() if self.network else None,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "vcpus": self.vcpus,
            "memory_mib": self.memory_mib,
            "rootfs_path": str(self.rootfs_path) if self.rootfs_path else None,
            "log_path": str(self.log_path) if self.log_path else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, object]) -> "Instance":
        network = data.get("network")
        rootfs = data.get("rootfs_path")
        log_path = data.get("log_path")
        return cls(
            id=str(data["id"]),
            name=str(data["name"]),
            image=str(data["image"]),
            state=InstanceState(data["state"]),
            pid=data.get("pid"),  # type: ignore[arg-type]
            control_socket_path=Path(str(data["control_socket_path"])),
            network=NetworkAssignment.from_dict(network) if network else None,  # type: ignore[arg-type]
            created_at=str(data["created_at"]),
            updated_at=data.get("updated_at"),  # type: ignore[arg-type]
            vcpus=int(data.get("vcpus", 1)),  # type: ignore[arg-type]
            memory_mib=int(data.get("memory_mib", 512)),  # type: ignore[arg-type]
            rootfs_path=Path(str(rootfs)) if rootfs else None,
            log_path=Path(str(log_path)) if log_path else None,
        )


@dataclass(frozen=True)
class Image:
    name: str
    path: Path
    size_bytes: int

    @property
    def size_mb(self) -> float:
        return self.size_bytes / 1_048_576


@dataclass
class BootSpec:
    kernel_image_path: Path
    rootfs_path: Path
    boot_args: str
    vcpus: int
    memory_mib: int
    tap_device: str
    guest_mac: str
    log_path: Optional[Path] = None

    @staticmethod
    def kernel_ip_arg(network: NetworkAssignment, hostname: str) -> str:
        """Kernel ``ip=`` parameter: client::gateway:netmask:hostname:device:autoconf:dns."""
        return (
            f"ip={network.guest_address}::{network.gateway_address}:{network.netmask}"
            f":{hostname}:{GUEST_IFACE}:off:{GUEST_DNS}"
        )

    @classmethod
    def for_instance(cls, instance: Instance, kernel_image_path: Path) -> "BootSpec":
        if instance.network is None or instance.rootfs_path is None:
            raise ValueError(f"Instance {instance.id} has no network or rootfs assigned")
        boot_args = f"{BASE_BOOT_ARGS} {cls.kernel_ip_arg(instance.network, instance.name)}"
        return cls(
            kernel_image_path=kernel_image_path,
            rootfs_path=instance.rootfs_path,
            boot_args=boot_args,
            vcpus=instance.vcpus,
            memory_mib=instance.memory_mib,
            tap_device=instance.network.tap_device,
            guest_mac=instance.network.mac_address,
            log_path=instance.log_path,
        )
