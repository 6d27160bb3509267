"""Utility functions for stoker."""

from __future__ import annotations

import errno
import os
import subprocess
from datetime import datetime, timezone
from ipaddress import IPv4Address
from pathlib import Path
from typing import List, Optional

from stoker.constants import (
    _LOG_VERBOSE,
    GUEST_MAC_PREFIX,
    NAME_RE,
    TRUTHY,
)
from stoker.exceptions import ConfigError


def log(level: str, message: str) -> None:
    """Lightweight structured logging compatible with existing colour expectation."""
    if level == "DEBUG" and not _LOG_VERBOSE:
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    print(f"{colour}[{level}]{reset} {message}", flush=True)


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def get_env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.lower() in TRUTHY


def parse_int(name: str, raw: object, min_val: int = 1, max_val: Optional[int] = None) -> int:
    try:
        value = int(str(raw))
    except ValueError:
        raise ConfigError(f"{name} must be an integer (got '{raw}')")
    if value < min_val:
        raise ConfigError(f"{name} must be >= {min_val} (got {value})")
    if max_val is not None and value > max_val:
        raise ConfigError(f"{name} must be <= {max_val} (got {value})")
    return value


def parse_seconds(name: str, raw: object) -> float:
    try:
        value = float(str(raw))
    except ValueError:
        raise ConfigError(f"{name} must be a number of seconds (got '{raw}')")
    if value <= 0:
        raise ConfigError(f"{name} must be > 0 (got {value})")
    return value


def validate_name(name: str) -> str:
    if not NAME_RE.match(name):
        raise ConfigError(
            f"Invalid name '{name}'. Use letters, digits, '.', '_' or '-' (max 63 chars, no leading symbol)"
        )
    return name


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def kvm_available() -> bool:
    """Return True if /dev/kvm exists and can be opened."""
    kvm_path = Path("/dev/kvm")
    if not kvm_path.exists():
        return False
    try:
        fd = os.open(kvm_path, os.O_RDWR)
    except OSError:
        return False
    else:
        os.close(fd)
        return True


def pid_alive(pid: Optional[int]) -> bool:
    """Return True if a process with this pid exists."""
    if not pid or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except OSError as exc:
        # EPERM: the process exists but belongs to someone else
        return exc.errno == errno.EPERM
    return True


def guest_mac(address: IPv4Address) -> str:
    """Locally administered MAC derived from the guest address (06:00:AC:10:xx:yy)."""
    octets = list(GUEST_MAC_PREFIX) + list(address.packed)
    return ":".join(f"{octet:02x}" for octet in octets)


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def remove_file(path: Optional[Path]) -> None:
    if path is None:
        return
    path.unlink(missing_ok=True)


def run(cmd: List[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess:
    """Run command with logging."""
    log("DEBUG", f"Running: {' '.join(cmd)}")
    result = subprocess.run(cmd, check=check, text=True, **kwargs)
    return result
