"""CLI entry points for kernel-vm-runner."""

from __future__ import annotations

import argparse
import dataclasses
from typing import List, Optional

from kernel_vm.config import parse_env
from kernel_vm.constants import _SENSITIVE_FIELDS, VARIANT_FULL
from kernel_vm.exceptions import RunnerError, UnknownArgumentError
from kernel_vm.launcher import build_qemu_command
from kernel_vm.models import RunnerConfig, VMProcess
from kernel_vm.orchestrator import Orchestrator
from kernel_vm.utils import log


class _ArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that raises instead of exiting with status 2."""

    def error(self, message: str):  # type: ignore[override]
        raise UnknownArgumentError(f"Invalid argument: {message}")


def build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(
        prog="kernel-vm",
        description="Boot a throwaway Fedora VM and optionally install a custom kernel into it",
        allow_abbrev=False,
    )
    parser.add_argument("--install-kernel", action="store_true", help="Install the custom kernel after boot")
    parser.add_argument("--run-tests", action="store_true", help="Reserved; accepted but has no effect yet")
    parser.add_argument("--show-config", action="store_true", help="Show resolved configuration and exit")
    parser.add_argument("--dry-run", action="store_true", help="Print the QEMU command line without running it")
    return parser


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    args, unknown = build_parser().parse_known_args(argv)
    if unknown:
        raise UnknownArgumentError(f"Unknown argument: {unknown[0]}")
    return args


def show_config(cfg: RunnerConfig) -> None:
    """Print the resolved configuration."""
    for field in dataclasses.fields(cfg):
        value = getattr(cfg, field.name)
        if field.name in _SENSITIVE_FIELDS:
            print(f"  {field.name}: ********")
        elif field.name == "shared_folders":
            print(f"  {field.name}:")
            for folder in value:
                print(f"    {folder.tag}: {folder.source} ({folder.security_model})")
        else:
            print(f"  {field.name}: {value}")


def print_startup_banner(cfg: RunnerConfig, vm: VMProcess) -> None:
    """Print the access-info banner once the VM is up."""
    lines: List[str] = []
    lines.append(f"  VM: {cfg.vm_name} (PID {vm.pid})")
    lines.append(f"  Memory: {cfg.memory_mb} MiB | CPUs: {cfg.cpus} | Disk: {cfg.disk_image.name}")
    lines.append(f"  SSH:  ssh -p {cfg.ssh_port} {cfg.login_user}@localhost")
    lines.append(f"  User: {cfg.login_user}  Pass: {cfg.password}")
    for folder in cfg.shared_folders:
        lines.append(f"  Share: {folder.source} -> mount tag '{folder.tag}'")
    if vm.console_log is not None:
        lines.append(f"  Console log: {vm.console_log}")
    lines.append(f"  Stop:  kill {vm.pid}")

    border_len = max(len(line) for line in lines) + 2
    banner_colour = "\033[0;36m"
    reset = "\033[0m"
    print(f"{banner_colour}{'=' * border_len}{reset}", flush=True)
    for line in lines:
        print(f"{banner_colour}{line}{reset}", flush=True)
    print(f"{banner_colour}{'=' * border_len}{reset}", flush=True)


def main(argv: Optional[List[str]] = None) -> int:
    try:
        args = parse_args(argv)
        cfg = parse_env(install_kernel=args.install_kernel, run_tests=args.run_tests)
    except RunnerError as exc:
        log("ERROR", str(exc))
        return 1

    if args.show_config:
        show_config(cfg)
        return 0

    if args.dry_run:
        log("INFO", "=== Configuration ===")
        show_config(cfg)
        log("INFO", "=== QEMU command ===")
        print("  " + " ".join(build_qemu_command(cfg)))
        log("INFO", "=== Dry-run complete (no VM started) ===")
        return 0

    if cfg.run_tests:
        log("DEBUG", "--run-tests accepted; no test runner is wired up")

    log("INFO", f"Variant: {cfg.variant} | Work dir: {cfg.base_dir}")
    orchestrator = Orchestrator(cfg)
    try:
        vm = orchestrator.run()
    except RunnerError as exc:
        log("ERROR", str(exc))
        return 1
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        import traceback

        traceback.print_exc()
        return 1

    print_startup_banner(cfg, vm)
    if cfg.install_kernel:
        if cfg.variant == VARIANT_FULL:
            log("INFO", f"After reboot, SSH back into the VM with: ssh -p {cfg.ssh_port} {cfg.login_user}@localhost")
        else:
            log("INFO", "To boot the new kernel, SSH into the VM and run: sudo reboot")
    else:
        log("INFO", f"VM is running. Connect via SSH with: ssh -p {cfg.ssh_port} {cfg.login_user}@localhost")
    return 0
