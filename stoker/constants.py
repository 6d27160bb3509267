"""Global constants and path configuration for stoker."""

from __future__ import annotations

import os
import re
from pathlib import Path

DEFAULT_CONFIG_PATH = Path("/etc/stoker/config.yaml")

DEFAULT_STATE_DIR = Path("/var/lib/stoker")
DEFAULT_ASSET_DIR = DEFAULT_STATE_DIR / "assets"
DEFAULT_RUN_DIR = Path("/run/stoker")

INSTANCES_DIR_NAME = "instances"
LOCKS_DIR_NAME = "locks"
WORKDIR_NAME = "vms"

# Private range reserved for instance segments; every instance gets one /30.
DEFAULT_NETWORK = "172.16.0.0/16"
SEGMENT_PREFIX = 30
DEFAULT_BRIDGE = "stoker0"
TAP_PREFIX = "stk-"
IFNAMSIZ = 15
GUEST_MAC_PREFIX = (0x06, 0x00)
GUEST_DNS = "8.8.8.8"
GUEST_IFACE = "eth0"

INSTANCE_ID_PREFIX = "fc_"
MAX_INSTANCES = 256

DEFAULT_IMAGE = "ubuntu-rootfs"
DEFAULT_VCPUS = 1
DEFAULT_MEMORY_MIB = 512
KERNEL_NAME = "vmlinux.bin"
FIRECRACKER_NAME = "firecracker"
SSH_KEY_NAME = "id_rsa"
IMAGE_SUFFIX = ".ext4"
BUILD_GROW_SIZE = "+2G"

BASE_BOOT_ARGS = "console=ttyS0 reboot=k panic=1 pci=off"

# Seconds
DEFAULT_BOOT_TIMEOUT = 60.0
DEFAULT_SHUTDOWN_GRACE = 10.0
DEFAULT_REQUEST_TIMEOUT = 5.0
SOCKET_WAIT_TIMEOUT = 5.0
READY_POLL_INTERVAL = 0.5

DEFAULT_LIMA_INSTANCE = "stoker-vm"
LIMA_CPUS = 4
LIMA_MEMORY = "8GiB"
LIMA_IMAGES = {
    "x86_64": "https://cloud-images.ubuntu.com/releases/24.04/release/ubuntu-24.04-server-cloudimg-amd64.img",
    "aarch64": "https://cloud-images.ubuntu.com/releases/24.04/release/ubuntu-24.04-server-cloudimg-arm64.img",
}

FIRECRACKER_VERSION = "v1.10.1"
ASSET_URLS = {
    "kernel": "https://s3.amazonaws.com/spec.ccfc.min/firecracker-ci/v1.13/{arch}/vmlinux-5.10.239",
    "rootfs": "https://s3.amazonaws.com/spec.ccfc.min/img/{arch}/ubuntu_with_ssh/fsfiles/xenial.rootfs.ext4",
    "ssh_key": "https://s3.amazonaws.com/spec.ccfc.min/img/{arch}/ubuntu_with_ssh/fsfiles/xenial.rootfs.id_rsa",
    "firecracker": (
        "https://github.com/firecracker-microvm/firecracker/releases/download/"
        "{version}/firecracker-{version}-{arch}.tgz"
    ),
}

ARCH_ALIASES = {
    "amd64": "x86_64",
    "arm64": "aarch64",
}

TRUTHY = {"1", "true", "yes", "on"}
_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in TRUTHY

NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,62}$")
INSTANCE_ID_RE = re.compile(r"^fc_[0-9a-f]{2}$")
