"""Custom exceptions for stoker."""

from __future__ import annotations

from typing import List


class StokerError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""

    category = "Error"


class ConfigError(StokerError):
    category = "ConfigError"


class AllocationError(StokerError):
    """Network segment or interface could not be allocated."""

    category = "AllocationError"


class PoolExhausted(AllocationError):
    pass


class InterfaceNameCollision(AllocationError):
    pass


class NetworkSetupFailed(AllocationError):
    def __init__(self, message: str, cause: Exception | None = None) -> None:
        super().__init__(message)
        self.cause = cause


class ControlError(StokerError):
    """Failure talking to a firecracker process over its API socket."""

    category = "ControlError"


class ProtocolRejected(ControlError):
    def __init__(self, message: str, status_code: int | None = None, detail: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


class ChannelClosed(ControlError):
    pass


class RequestTimeout(ControlError):
    pass


class BootTimeout(ControlError):
    pass


class RegistryError(StokerError):
    category = "RegistryError"


class NameConflict(RegistryError):
    pass


class InstanceNotFound(RegistryError):
    pass


class InvalidTransition(RegistryError):
    pass


class SupervisionError(StokerError):
    """Hypervisor process could not be spawned or terminated."""

    category = "SupervisionError"


class CleanupError(SupervisionError):
    """Collects every failure seen while tearing an instance down."""

    def __init__(self, instance: str, failures: List[str]) -> None:
        joined = "; ".join(failures)
        super().__init__(f"Cleanup of '{instance}' finished with errors: {joined}")
        self.instance = instance
        self.failures = failures


class RelayError(StokerError):
    """Linux execution environment unreachable or provisioning failed."""

    category = "RelayError"


class BuildError(StokerError):
    category = "BuildError"


class AssetError(StokerError):
    category = "AssetError"
