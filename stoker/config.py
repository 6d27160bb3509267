"""Configuration loading and environment variable parsing for stoker."""

from __future__ import annotations

from dataclasses import dataclass
from ipaddress import IPv4Network
from pathlib import Path
from typing import Dict, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from stoker.constants import (
    DEFAULT_ASSET_DIR,
    DEFAULT_BOOT_TIMEOUT,
    DEFAULT_BRIDGE,
    DEFAULT_CONFIG_PATH,
    DEFAULT_LIMA_INSTANCE,
    DEFAULT_NETWORK,
    DEFAULT_REQUEST_TIMEOUT,
    DEFAULT_RUN_DIR,
    DEFAULT_SHUTDOWN_GRACE,
    DEFAULT_STATE_DIR,
    FIRECRACKER_NAME,
    IFNAMSIZ,
    INSTANCES_DIR_NAME,
    KERNEL_NAME,
    LOCKS_DIR_NAME,
    SEGMENT_PREFIX,
    SSH_KEY_NAME,
    WORKDIR_NAME,
)
from stoker.exceptions import ConfigError
from stoker.utils import get_env, log, parse_seconds


@dataclass
class Settings:
    state_dir: Path = DEFAULT_STATE_DIR
    asset_dir: Path = DEFAULT_ASSET_DIR
    run_dir: Path = DEFAULT_RUN_DIR
    network: IPv4Network = IPv4Network(DEFAULT_NETWORK)
    bridge: str = DEFAULT_BRIDGE
    uplink: Optional[str] = None
    firecracker_bin: Optional[Path] = None
    boot_timeout: float = DEFAULT_BOOT_TIMEOUT
    shutdown_grace: float = DEFAULT_SHUTDOWN_GRACE
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    lima_instance: str = DEFAULT_LIMA_INSTANCE

    @property
    def instances_dir(self) -> Path:
        return self.state_dir / INSTANCES_DIR_NAME

    @property
    def locks_dir(self) -> Path:
        return self.state_dir / LOCKS_DIR_NAME

    @property
    def work_dir(self) -> Path:
        return self.state_dir / WORKDIR_NAME

    @property
    def kernel_path(self) -> Path:
        return self.asset_dir / KERNEL_NAME

    @property
    def ssh_key_path(self) -> Path:
        return self.asset_dir / SSH_KEY_NAME

    @property
    def firecracker_path(self) -> Path:
        return self.firecracker_bin or self.asset_dir / FIRECRACKER_NAME


# YAML key -> environment variable
_SETTING_SOURCES = {
    "state_dir": "STOKER_STATE_DIR",
    "asset_dir": "STOKER_ASSET_DIR",
    "run_dir": "STOKER_RUN_DIR",
    "network": "STOKER_NETWORK",
    "bridge": "STOKER_BRIDGE",
    "uplink": "STOKER_UPLINK",
    "firecracker_bin": "STOKER_FIRECRACKER",
    "boot_timeout": "STOKER_BOOT_TIMEOUT",
    "shutdown_grace": "STOKER_SHUTDOWN_GRACE",
    "request_timeout": "STOKER_REQUEST_TIMEOUT",
    "lima_instance": "STOKER_LIMA_INSTANCE",
}


def load_config_file(config_path: Optional[Path] = None) -> Dict[str, object]:
    """Read the optional YAML settings file; a missing file means defaults."""
    if config_path is None:
        config_path = Path(get_env("STOKER_CONFIG") or DEFAULT_CONFIG_PATH)
    if not config_path.exists():
        return {}
    try:
        data = yaml.safe_load(config_path.read_text())
    except yaml.YAMLError as exc:
        raise ConfigError(f"{config_path} contains invalid YAML: {exc}")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{config_path} must contain a YAML mapping, got {type(data).__name__}")
    unknown = sorted(set(data) - set(_SETTING_SOURCES))
    if unknown:
        log("WARN", f"Ignoring unknown settings in {config_path}: {', '.join(unknown)}")
    return {key: value for key, value in data.items() if key in _SETTING_SOURCES}


def _parse_network(raw: object) -> IPv4Network:
    try:
        network = IPv4Network(str(raw))
    except ValueError as exc:
        raise ConfigError(f"STOKER_NETWORK must be an IPv4 network (got '{raw}'): {exc}")
    if not network.is_private:
        raise ConfigError(f"STOKER_NETWORK must be a private range (got {network})")
    if network.prefixlen > SEGMENT_PREFIX:
        raise ConfigError(f"STOKER_NETWORK must be /{SEGMENT_PREFIX} or larger (got {network})")
    return network


def _parse_ifname(name: str, raw: object) -> str:
    value = str(raw).strip()
    if not value or len(value) > IFNAMSIZ or "/" in value or " " in value:
        raise ConfigError(f"{name} is not a valid interface name: '{raw}'")
    return value


def load_settings(config_path: Optional[Path] = None) -> Settings:
    """Resolve settings: defaults, then the YAML file, then STOKER_* environment variables."""
    raw: Dict[str, object] = load_config_file(config_path)
    for key, env_name in _SETTING_SOURCES.items():
        value = get_env(env_name)
        if value is not None and value.strip():
            raw[key] = value.strip()

    settings = Settings()
    for key in ("state_dir", "asset_dir", "run_dir"):
        if key in raw:
            setattr(settings, key, Path(str(raw[key])).expanduser())
    if "firecracker_bin" in raw:
        settings.firecracker_bin = Path(str(raw["firecracker_bin"])).expanduser()
    if "network" in raw:
        settings.network = _parse_network(raw["network"])
    if "bridge" in raw:
        settings.bridge = _parse_ifname("STOKER_BRIDGE", raw["bridge"])
    if raw.get("uplink"):
        settings.uplink = _parse_ifname("STOKER_UPLINK", raw["uplink"])
    for key in ("boot_timeout", "shutdown_grace", "request_timeout"):
        if key in raw:
            setattr(settings, key, parse_seconds(_SETTING_SOURCES[key], raw[key]))
    if "lima_instance" in raw:
        settings.lima_instance = str(raw["lima_instance"]).strip()
    return settings
