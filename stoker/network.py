"""Network segment allocation and host interface plumbing for stoker.

Each instance gets one /30 carved from the configured private range: the
first host address is the gateway (configured on the shared NAT bridge), the
second is handed to the guest. The guest's tap device is attached to the same
bridge.
"""

from __future__ import annotations

import json
import subprocess
from ipaddress import IPv4Interface, IPv4Network
from pathlib import Path
from typing import Callable, List, Optional, Set, Tuple

from stoker.config import Settings
from stoker.constants import SEGMENT_PREFIX, TAP_PREFIX
from stoker.exceptions import (
    AllocationError,
    InterfaceNameCollision,
    NetworkSetupFailed,
    PoolExhausted,
)
from stoker.locking import FileLock
from stoker.models import NetworkAssignment
from stoker.registry import InstanceRegistry
from stoker.utils import guest_mac, log, run

IP_FORWARD_PATH = Path("/proc/sys/net/ipv4/ip_forward")


class HostNetwork:
    """Thin wrapper over ``ip`` and ``iptables`` for the host side of instance networking."""

    def _ip_json(self, args: List[str]) -> list:
        result = run(["ip", "-j", *args], capture_output=True, check=False)
        if result.returncode != 0 or not result.stdout.strip():
            return []
        return json.loads(result.stdout)

    def link_exists(self, name: str) -> bool:
        result = run(["ip", "link", "show", "dev", name], capture_output=True, check=False)
        return result.returncode == 0

    def addresses(self, device: str) -> List[IPv4Interface]:
        found = []
        for link in self._ip_json(["-4", "addr", "show", "dev", device]):
            for info in link.get("addr_info", []):
                if info.get("family", "inet") == "inet" and "local" in info:
                    found.append(IPv4Interface(f"{info['local']}/{info['prefixlen']}"))
        return found

    def default_uplink(self) -> Optional[str]:
        for route in self._ip_json(["route", "show", "default"]):
            if route.get("dev"):
                return route["dev"]
        return None

    def ensure_bridge(self, bridge: str, network: IPv4Network, uplink: Optional[str]) -> None:
        if not self.link_exists(bridge):
            log("INFO", f"Creating NAT bridge {bridge}")
            run(["ip", "link", "add", "name", bridge, "type", "bridge"], capture_output=True)
        run(["ip", "link", "set", "dev", bridge, "up"], capture_output=True)
        IP_FORWARD_PATH.write_text("1\n")
        uplink = uplink or self.default_uplink()
        if uplink is None:
            log("WARN", "No default route found; instances will not reach the outside network")
            return
        self._ensure_rule("nat", "POSTROUTING", ["-s", str(network), "-o", uplink, "-j", "MASQUERADE"])
        self._ensure_rule("filter", "FORWARD", ["-i", bridge, "-o", uplink, "-j", "ACCEPT"])
        self._ensure_rule(
            "filter",
            "FORWARD",
            ["-i", uplink, "-o", bridge, "-m", "conntrack", "--ctstate", "RELATED,ESTABLISHED", "-j", "ACCEPT"],
        )

    def _ensure_rule(self, table: str, chain: str, rule: List[str]) -> None:
        check = run(["iptables", "-t", table, "-C", chain, *rule], capture_output=True, check=False)
        if check.returncode != 0:
            run(["iptables", "-t", table, "-A", chain, *rule], capture_output=True)

    def create_tap(self, name: str) -> None:
        run(["ip", "tuntap", "add", "dev", name, "mode", "tap"], capture_output=True)

    def attach(self, name: str, bridge: str) -> None:
        run(["ip", "link", "set", "dev", name, "master", bridge], capture_output=True)
        run(["ip", "link", "set", "dev", name, "up"], capture_output=True)

    def add_address(self, device: str, address: str) -> None:
        run(["ip", "addr", "add", address, "dev", device], capture_output=True)

    def delete_address(self, device: str, address: str) -> None:
        if IPv4Interface(address) in self.addresses(device):
            run(["ip", "addr", "del", address, "dev", device], capture_output=True)

    def delete_link(self, name: str) -> None:
        if self.link_exists(name):
            run(["ip", "link", "del", "dev", name], capture_output=True)


def _describe(exc: Exception) -> str:
    if isinstance(exc, subprocess.CalledProcessError):
        stderr = (exc.stderr or "").strip()
        return f"{' '.join(exc.cmd)} exited with {exc.returncode}" + (f": {stderr}" if stderr else "")
    return str(exc)


class NetworkAllocator:
    """Hands out /30 segments lowest-first and owns their host-side interfaces."""

    def __init__(self, settings: Settings, registry: InstanceRegistry, host: Optional[HostNetwork] = None) -> None:
        self.settings = settings
        self.registry = registry
        self.host = host or HostNetwork()
        self.segments: List[IPv4Network] = list(settings.network.subnets(new_prefix=SEGMENT_PREFIX))

    @property
    def capacity(self) -> int:
        return len(self.segments)

    def pool_lock(self) -> FileLock:
        return FileLock(self.settings.locks_dir / "pool.lock")

    @staticmethod
    def tap_name(instance_id: str) -> str:
        return f"{TAP_PREFIX}{instance_id.replace('_', '-')}"

    def used_segments(self) -> Set[IPv4Network]:
        """Segments held by registry records or still configured on the bridge."""
        used = {record.network.segment for record in self.registry.peek() if record.network is not None}
        for address in self.host.addresses(self.settings.bridge):
            if address.ip in self.settings.network:
                used.add(IPv4Network(f"{address.ip}/{SEGMENT_PREFIX}", strict=False))
        return used

    def available(self) -> int:
        return self.capacity - len(self.used_segments() & set(self.segments))

    def allocate(self, instance_id: str) -> NetworkAssignment:
        tap = self.tap_name(instance_id)
        with self.pool_lock():
            used = self.used_segments()
            segment = next((candidate for candidate in self.segments if candidate not in used), None)
            if segment is None:
                raise PoolExhausted(f"No free /{SEGMENT_PREFIX} segment left in {self.settings.network}")
            if self.host.link_exists(tap):
                self._reclaim_tap(tap, instance_id)
            assignment = NetworkAssignment(
                segment=segment,
                tap_device=tap,
                mac_address=guest_mac(segment.network_address + 2),
            )
            self._plumb(assignment)
        log("DEBUG", f"Allocated {segment} on {tap} for {instance_id}")
        return assignment

    def _reclaim_tap(self, tap: str, instance_id: str) -> None:
        """Delete a leftover tap that no record owns; a tap some other record owns is a collision."""
        owners = [
            record.id
            for record in self.registry.peek()
            if record.id != instance_id and record.network is not None and record.network.tap_device == tap
        ]
        if owners:
            raise InterfaceNameCollision(f"Interface {tap} already exists on this host (held by {owners[0]})")
        log("WARN", f"Removing leftover interface {tap} from an earlier run")
        try:
            self.host.delete_link(tap)
        except (subprocess.CalledProcessError, OSError) as exc:
            raise NetworkSetupFailed(f"Could not remove leftover interface {tap}: {_describe(exc)}", exc) from exc

    def _plumb(self, assignment: NetworkAssignment) -> None:
        bridge = self.settings.bridge
        try:
            self.host.ensure_bridge(bridge, self.settings.network, self.settings.uplink)
        except (subprocess.CalledProcessError, OSError) as exc:
            raise NetworkSetupFailed(f"Could not prepare bridge {bridge}: {_describe(exc)}", exc) from exc

        undo: List[Tuple[str, Callable[[], None]]] = []
        try:
            self.host.create_tap(assignment.tap_device)
            undo.append((f"delete {assignment.tap_device}", lambda: self.host.delete_link(assignment.tap_device)))
            self.host.attach(assignment.tap_device, bridge)
            self.host.add_address(bridge, assignment.gateway_interface)
            undo.append(
                (
                    f"remove {assignment.gateway_interface} from {bridge}",
                    lambda: self.host.delete_address(bridge, assignment.gateway_interface),
                )
            )
        except (subprocess.CalledProcessError, OSError) as exc:
            for label, step in reversed(undo):
                try:
                    step()
                except (subprocess.CalledProcessError, OSError) as undo_exc:
                    log("WARN", f"Rollback step '{label}' failed: {_describe(undo_exc)}")
            raise NetworkSetupFailed(
                f"Could not set up {assignment.tap_device} on {bridge}: {_describe(exc)}", exc
            ) from exc

    def release(self, assignment: Optional[NetworkAssignment]) -> None:
        """Tear down the interface and gateway address; missing pieces are ignored."""
        if assignment is None:
            return
        failures = []
        with self.pool_lock():
            try:
                self.host.delete_link(assignment.tap_device)
            except (subprocess.CalledProcessError, OSError) as exc:
                failures.append(_describe(exc))
            try:
                self.host.delete_address(self.settings.bridge, assignment.gateway_interface)
            except (subprocess.CalledProcessError, OSError) as exc:
                failures.append(_describe(exc))
        if failures:
            raise AllocationError(f"Releasing {assignment.segment}: {'; '.join(failures)}")
        log("DEBUG", f"Released {assignment.segment} ({assignment.tap_device})")
