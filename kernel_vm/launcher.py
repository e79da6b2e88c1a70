"""QEMU command rendering and VM launch for kernel-vm-runner."""

from __future__ import annotations

import time
from typing import List, Optional

from kernel_vm.constants import VARIANT_FULL
from kernel_vm.exceptions import LaunchError
from kernel_vm.models import RunnerConfig, VMProcess
from kernel_vm.tools import Hypervisor
from kernel_vm.utils import ensure_directory, kvm_available, log, tail_file


def build_qemu_command(cfg: RunnerConfig) -> List[str]:
    """Render the qemu-system argument vector for the configured guest.

    ``-boot d`` puts the seed CD first: cloud-init consumes it on first
    boot, and since the CD is not bootable the firmware falls through to
    the disk on every boot.
    """
    drive = f"file={cfg.disk_image},format=qcow2"
    if cfg.variant == VARIANT_FULL:
        drive += ",if=virtio"

    cmd = [cfg.qemu_binary]
    if cfg.enable_kvm:
        cmd.append("-enable-kvm")
    cmd.extend(
        [
            "-m",
            str(cfg.memory_mb),
            "-smp",
            str(cfg.cpus),
            "-drive",
            drive,
            "-cdrom",
            str(cfg.seed_iso),
            "-boot",
            "d",
            "-net",
            f"user,hostfwd=tcp::{cfg.ssh_port}-:{cfg.guest_ssh_port}",
            "-net",
            "nic",
        ]
    )
    for folder in cfg.shared_folders:
        cmd.extend(
            [
                "-fsdev",
                f"local,id={folder.tag},path={folder.source},security_model={folder.security_model}",
                "-device",
                f"virtio-9p-pci,fsdev={folder.tag},mount_tag={folder.tag}",
            ]
        )
    cmd.append("-nographic")
    return cmd


class VMLauncher:
    def __init__(self, cfg: RunnerConfig, hypervisor: Optional[Hypervisor] = None) -> None:
        self.cfg = cfg
        self.hypervisor = hypervisor or Hypervisor()

    def launch(self) -> VMProcess:
        if self.cfg.enable_kvm and not kvm_available():
            log("WARN", "/dev/kvm is not accessible; QEMU will refuse -enable-kvm (set ENABLE_KVM=0 to use TCG)")
        for folder in self.cfg.shared_folders:
            if not folder.source.exists():
                log("INFO", f"Creating shared folder {folder.source} ({folder.tag})")
                ensure_directory(folder.source)

        log("INFO", f"Launching QEMU VM with {self.cfg.memory_mb}MB RAM and {self.cfg.cpus} vCPUs...")
        cmd = build_qemu_command(self.cfg)
        try:
            vm = self.hypervisor.spawn(cmd, console_log=self.cfg.console_log)
        except OSError as exc:
            raise LaunchError(f"Could not start {self.cfg.qemu_binary}: {exc}") from exc
        self._assert_running(vm)
        log("SUCCESS", f"VM launched (PID {vm.pid}).")
        return vm

    def _assert_running(self, vm: VMProcess) -> None:
        if self.cfg.launch_grace > 0:
            time.sleep(self.cfg.launch_grace)
        if vm.is_alive():
            return
        code = vm.proc.returncode if vm.proc is not None else None
        message = f"QEMU VM failed to start (exit code {code})"
        if vm.console_log is not None:
            output = tail_file(vm.console_log)
            if output:
                message += f"\n{output}"
        raise LaunchError(message)
