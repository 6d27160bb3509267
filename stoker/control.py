"""Client for the Firecracker REST API exposed on a per-instance unix socket."""

from __future__ import annotations

import time
from pathlib import Path
from typing import Callable, Dict, Optional

import httpx

from stoker.constants import DEFAULT_REQUEST_TIMEOUT, GUEST_IFACE, READY_POLL_INTERVAL
from stoker.exceptions import BootTimeout, ChannelClosed, ProtocolRejected, RequestTimeout
from stoker.models import BootSpec
from stoker.utils import log


class ControlPlaneClient:
    """Synchronous request/response client: every call is exactly one round trip.

    The firecracker process must already be listening on ``socket_path``.
    Configuration calls are only valid before ``start()``; after that the only
    way to change the machine is to tear the process down.
    """

    def __init__(
        self,
        socket_path: Path,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.socket_path = socket_path
        self.timeout = timeout
        self._client = httpx.Client(
            transport=transport or httpx.HTTPTransport(uds=str(socket_path)),
            base_url="http://localhost",
            headers={"Accept": "application/json"},
            timeout=timeout,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "ControlPlaneClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _request(self, method: str, path: str, payload: Optional[Dict[str, object]] = None) -> httpx.Response:
        log("DEBUG", f"{method} {path} via {self.socket_path}")
        try:
            response = self._client.request(method, path, json=payload)
        except httpx.TimeoutException as exc:
            raise RequestTimeout(f"{method} {path} timed out after {self.timeout}s") from exc
        except httpx.TransportError as exc:
            raise ChannelClosed(f"Control channel {self.socket_path} closed during {method} {path}: {exc}") from exc
        if response.is_success:
            return response
        detail = response.text
        try:
            detail = response.json().get("fault_message", detail)
        except ValueError:
            pass
        raise ProtocolRejected(
            f"{method} {path} rejected ({response.status_code}): {detail}",
            status_code=response.status_code,
            detail=detail,
        )

    def _put(self, path: str, payload: Dict[str, object]) -> None:
        self._request("PUT", path, payload)

    def describe(self) -> Dict[str, object]:
        """Instance info (``state``, ``vmm_version``, ``id``)."""
        response = self._request("GET", "/")
        try:
            return response.json()
        except ValueError as exc:
            raise ProtocolRejected(f"GET / returned a non-JSON body: {response.text!r}") from exc

    def configure_boot(self, spec: BootSpec) -> None:
        if spec.log_path is not None:
            self._put(
                "/logger",
                {
                    "log_path": str(spec.log_path),
                    "level": "Debug",
                    "show_level": True,
                    "show_log_origin": True,
                },
            )
        self._put(
            "/boot-source",
            {"kernel_image_path": str(spec.kernel_image_path), "boot_args": spec.boot_args},
        )
        self._put(
            "/drives/rootfs",
            {
                "drive_id": "rootfs",
                "path_on_host": str(spec.rootfs_path),
                "is_root_device": True,
                "is_read_only": False,
            },
        )
        self._put("/machine-config", {"vcpu_count": spec.vcpus, "mem_size_mib": spec.memory_mib})
        self._put(
            f"/network-interfaces/{GUEST_IFACE}",
            {"iface_id": GUEST_IFACE, "guest_mac": spec.guest_mac, "host_dev_name": spec.tap_device},
        )

    def start(self) -> None:
        self._put("/actions", {"action_type": "InstanceStart"})

    def shutdown(self) -> None:
        """Ask the guest to power off (Ctrl+Alt+Del); the process exits once it has."""
        self._put("/actions", {"action_type": "SendCtrlAltDel"})

    def wait_ready(
        self,
        timeout: float,
        probe: Callable[[], bool],
        process_alive: Callable[[], bool] = lambda: True,
        interval: float = READY_POLL_INTERVAL,
    ) -> None:
        """Poll until the VMM reports ``Running`` and ``probe()`` succeeds.

        Raises ``ChannelClosed`` if the process exits, ``BootTimeout`` when the
        deadline passes. Never terminates the process itself.
        """
        deadline = time.monotonic() + timeout
        while True:
            if not process_alive():
                raise ChannelClosed(f"firecracker behind {self.socket_path} exited during boot")
            try:
                state = self.describe().get("state")
            except RequestTimeout:
                state = None
            if state == "Running" and probe():
                return
            if time.monotonic() >= deadline:
                raise BootTimeout(f"Guest did not become reachable within {timeout:.0f}s")
            time.sleep(interval)
