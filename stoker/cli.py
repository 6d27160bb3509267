"""CLI entry points for stoker."""

from __future__ import annotations

import argparse
import sys
import uuid
from pathlib import Path
from typing import List, Optional

from stoker.assets import AssetDownloader
from stoker.builder import ImageBuilder
from stoker.config import Settings, load_settings
from stoker.constants import DEFAULT_IMAGE, DEFAULT_MEMORY_MIB, DEFAULT_VCPUS
from stoker.exceptions import StokerError
from stoker.guest import interactive_ssh
from stoker.images import ImageStore
from stoker.models import Instance
from stoker.network import NetworkAllocator
from stoker.registry import InstanceRegistry
from stoker.relay import select_executor, setup
from stoker.runtime import detect_host
from stoker.supervisor import ProcessSupervisor
from stoker.utils import log, parse_int, parse_seconds


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="stoker", description="A docker-like CLI for Firecracker microVMs")
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")
    sub.required = True

    run_p = sub.add_parser("run", help="Start a microVM")
    run_p.add_argument("--name", help="Name for the VM (default: random)")
    run_p.add_argument("--image", default=DEFAULT_IMAGE, help=f"Rootfs image to boot (default: {DEFAULT_IMAGE})")
    run_p.add_argument("--cpus", default=str(DEFAULT_VCPUS), help="vCPU count")
    run_p.add_argument("--memory", default=str(DEFAULT_MEMORY_MIB), help="Memory in MiB")
    run_p.add_argument("--boot-timeout", default=None, help="Seconds to wait for the guest to answer on SSH")

    sub.add_parser("list", help="List microVMs")

    stop_p = sub.add_parser("stop", help="Shut a microVM down, keeping its record")
    stop_p.add_argument("name", help="Name or ID of the VM")
    stop_p.add_argument("--grace", default=None, help="Seconds to wait for a clean shutdown")

    rm_p = sub.add_parser("rm", help="Remove a microVM and release its network")
    rm_p.add_argument("name", help="Name or ID of the VM")
    rm_p.add_argument("--grace", default=None, help="Seconds to wait for a clean shutdown")

    ssh_p = sub.add_parser("ssh", help="Open an interactive SSH session")
    ssh_p.add_argument("name", help="Name or ID of the VM")

    build_p = sub.add_parser("build", help="Build a custom rootfs image with a bash script")
    build_p.add_argument("--image-name", required=True, help="Name of the resulting image")
    build_p.add_argument("--script-path", required=True, help="Script to run inside the image")
    build_p.add_argument("--base", default=DEFAULT_IMAGE, help=f"Image to start from (default: {DEFAULT_IMAGE})")
    build_p.add_argument("--force", action="store_true", help="Overwrite an existing image")

    sub.add_parser("download-assets", help="Download kernel, rootfs, SSH key and firecracker")
    sub.add_parser("images", help="List available rootfs images")

    setup_p = sub.add_parser("setup", help="Provision the Lima VM used on hosts without KVM")
    setup_p.add_argument("--project-dir", default=None, help="stoker source tree to install (default: cwd)")
    return parser


def make_supervisor(settings: Settings) -> ProcessSupervisor:
    registry = InstanceRegistry(settings)
    return ProcessSupervisor(settings, registry, NetworkAllocator(settings, registry))


def print_instances(instances: List[Instance]) -> None:
    print(f"{'CONTAINER ID':<15} {'IMAGE':<20} {'STATUS':<10} {'NAMES':<20} {'IP':<15}")
    for instance in instances:
        print(
            f"{instance.id:<15} {instance.image:<20} {instance.state.value:<10} "
            f"{instance.name:<20} {instance.guest_address or '-':<15}"
        )


def print_images(store: ImageStore) -> None:
    print(f"{'IMAGE':<30} {'SIZE':<15}")
    for image in store.list():
        print(f"{image.name:<30} {f'{image.size_mb:.2f} MB':<15}")


def _optional_seconds(name: str, raw: Optional[str]) -> Optional[float]:
    return None if raw is None else parse_seconds(name, raw)


def dispatch(args: argparse.Namespace, settings: Settings) -> int:
    """Run one parsed command on this machine."""
    if args.command == "run":
        name = args.name or f"vm-{uuid.uuid4().hex[:6]}"
        vcpus = parse_int("--cpus", args.cpus, min_val=1, max_val=32)
        memory_mib = parse_int("--memory", args.memory, min_val=128)
        boot_timeout = _optional_seconds("--boot-timeout", args.boot_timeout)
        instance = make_supervisor(settings).run(
            name, image=args.image, vcpus=vcpus, memory_mib=memory_mib, boot_timeout=boot_timeout
        )
        print(f"ssh -i {settings.ssh_key_path} root@{instance.guest_address}")
        return 0
    if args.command == "list":
        print_instances(InstanceRegistry(settings).list())
        return 0
    if args.command == "stop":
        make_supervisor(settings).stop(args.name, grace=_optional_seconds("--grace", args.grace))
        return 0
    if args.command == "rm":
        make_supervisor(settings).remove(args.name, grace=_optional_seconds("--grace", args.grace))
        return 0
    if args.command == "ssh":
        instance = InstanceRegistry(settings).require(args.name)
        return interactive_ssh(instance, settings.ssh_key_path)
    if args.command == "build":
        ImageBuilder(ImageStore(settings.asset_dir)).build(
            args.image_name, Path(args.script_path), base=args.base, force=args.force
        )
        return 0
    if args.command == "download-assets":
        AssetDownloader(settings.asset_dir, detect_host().arch).download_all()
        log("SUCCESS", "Assets downloaded successfully.")
        return 0
    if args.command == "images":
        print_images(ImageStore(settings.asset_dir))
        return 0
    raise StokerError(f"Unknown command '{args.command}'")


def main(argv: Optional[List[str]] = None) -> int:
    if argv is None:
        argv = sys.argv[1:]
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = load_settings()
        capabilities = detect_host()
        if args.command == "setup":
            project_dir = Path(args.project_dir) if args.project_dir else Path.cwd()
            setup(settings, project_dir.resolve(), capabilities)
            return 0
        executor = select_executor(settings, capabilities)
        return executor.execute(argv, lambda forwarded: dispatch(parser.parse_args(forwarded), settings))
    except StokerError as exc:
        log("ERROR", f"{exc.category}: {exc}")
        return 1
    except KeyboardInterrupt:
        log("WARN", "Interrupted")
        return 130
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        import traceback

        traceback.print_exc()
        return 1
