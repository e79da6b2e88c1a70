"""Custom kernel installation inside the guest for kernel-vm-runner.

The installation is an ordered list of named steps executed over a single
remote session. Each step raises its own ``InstallStepError`` subclass, and
the first failure aborts the remaining steps.
"""

from __future__ import annotations

import re
import shlex
from dataclasses import dataclass
from typing import Callable, List, Optional, Type

from kernel_vm.constants import (
    ARTIFACT_IMAGE_NAMES,
    CUSTOM_KERNEL_MARKER,
    GUEST_ARTIFACT_ROOT,
    GUEST_GRUB_CONFIG,
    GUEST_INITRAMFS_PATH,
    GUEST_KERNEL_PATH,
    GUEST_OUT_MOUNT,
    INITRAMFS_DRIVERS,
    KERNEL_ARGS_TEMPLATE,
    TAG_HOST_OUT,
    VARIANT_FULL,
)
from kernel_vm.exceptions import (
    ArtifactMissingError,
    BootLoaderRegistrationError,
    ConnectionDropped,
    CopyError,
    DefaultEntryError,
    InitramfsError,
    InstallStepError,
    MountError,
    RebootError,
    RemountError,
    UuidResolutionError,
    VersionDetectionError,
)
from kernel_vm.models import CommandResult, InstallContext, RunnerConfig
from kernel_vm.remote import RemoteExecutor
from kernel_vm.utils import log, select_latest_version

_SUBVOLUME_SUFFIX_RE = re.compile(r"\[.*\]")


@dataclass(frozen=True)
class InstallStep:
    name: str
    action: Callable[[InstallContext], None]


class KernelInstaller:
    def __init__(self, cfg: RunnerConfig, executor: RemoteExecutor) -> None:
        self.cfg = cfg
        self.executor = executor
        self.full = cfg.variant == VARIANT_FULL

    def steps(self) -> List[InstallStep]:
        plan = [
            InstallStep("mount", self.mount_shared_folder),
            InstallStep("detect-version", self.detect_version),
            InstallStep("validate-artifact", self.validate_artifact),
        ]
        if self.full:
            plan.append(InstallStep("resolve-uuid", self.resolve_root_uuid))
        plan += [
            InstallStep("remount-boot", self.remount_boot),
            InstallStep("copy-files", self.copy_files),
            InstallStep("regenerate-initramfs", self.regenerate_initramfs),
            InstallStep("register-boot-entry", self.register_boot_entry),
            InstallStep("verify-default", self.verify_default),
            InstallStep("reboot", self.reboot),
        ]
        return plan

    def install(self, context: Optional[InstallContext] = None) -> InstallContext:
        ctx = context or InstallContext()
        for step in self.steps():
            log("DEBUG", f"Install step: {step.name}")
            try:
                step.action(ctx)
            except InstallStepError as exc:
                status = f" (remote exit status {exc.exit_status})" if exc.exit_status is not None else ""
                log("ERROR", f"Step '{step.name}' failed{status}: {exc}")
                raise
            ctx.completed.append(step.name)
        return ctx

    def _exec(self, command: str) -> CommandResult:
        return self.executor.run(command)

    def _check(self, command: str, error: Type[InstallStepError], message: str) -> CommandResult:
        result = self._exec(command)
        if not result.ok:
            detail = result.stderr.strip() or result.stdout.strip()
            suffix = f": {detail}" if detail else ""
            raise error(f"{message}{suffix}", exit_status=result.returncode)
        return result

    def mount_shared_folder(self, ctx: InstallContext) -> None:
        log("INFO", f"Ensuring shared folder is mounted at {GUEST_OUT_MOUNT}...")
        if self._exec(f"mountpoint -q {GUEST_OUT_MOUNT}").ok:
            log("DEBUG", f"{GUEST_OUT_MOUNT} already mounted")
            return
        self._check(f"sudo mkdir -p {GUEST_OUT_MOUNT}", MountError, f"Error creating {GUEST_OUT_MOUNT}")
        self._check(
            f"sudo mount -t 9p -o trans=virtio {TAG_HOST_OUT} {GUEST_OUT_MOUNT}",
            MountError,
            "Error mounting shared folder",
        )

    def detect_version(self, ctx: InstallContext) -> None:
        log("INFO", "Detecting kernel version from artifact directory...")
        if self.full:
            listing = self._exec(
                f"find {GUEST_ARTIFACT_ROOT} -mindepth 1 -maxdepth 1 -type d -name 'v*' -printf '%f\\n'"
            )
            names = [line.strip()[1:] for line in listing.stdout.splitlines() if line.strip()] if listing.ok else []
            version = select_latest_version(names)
            source = f"{GUEST_ARTIFACT_ROOT}/"
        else:
            modules_root = f"{GUEST_ARTIFACT_ROOT}/lib/modules"
            listing = self._exec(f"ls -1 {modules_root}")
            names = sorted(line.strip() for line in listing.stdout.splitlines() if line.strip()) if listing.ok else []
            version = names[0] if names else None
            source = modules_root
        if not version:
            raise VersionDetectionError(
                f"Could not detect kernel version from {source}",
                exit_status=None if listing.ok else listing.returncode,
            )
        ctx.version = version
        ctx.artifact_dir = f"{GUEST_ARTIFACT_ROOT}/v{version}" if self.full else GUEST_ARTIFACT_ROOT
        log("INFO", f"Detected custom kernel version: {version}")

    def _artifact_image(self, ctx: InstallContext) -> str:
        return f"{ctx.artifact_dir}/{ARTIFACT_IMAGE_NAMES[self.cfg.variant]}"

    def validate_artifact(self, ctx: InstallContext) -> None:
        image = self._artifact_image(ctx)
        self._check(f"test -f {shlex.quote(image)}", ArtifactMissingError, f"Kernel image not found at {image}")

    def resolve_root_uuid(self, ctx: InstallContext) -> None:
        log("INFO", "Retrieving UUID of the root filesystem...")
        source = self._check(
            "findmnt -n -o SOURCE --target /", UuidResolutionError, "Could not determine the root device"
        )
        # btrfs reports the subvolume as "/dev/vda5[/root]"
        device = _SUBVOLUME_SUFFIX_RE.sub("", source.stdout.strip())
        if not device:
            raise UuidResolutionError("Could not determine the root device")
        result = self._exec(f"sudo blkid -s UUID -o value {shlex.quote(device)}")
        uuid = result.stdout.strip() if result.ok else ""
        if not uuid:
            raise UuidResolutionError(
                "Could not determine root filesystem UUID",
                exit_status=result.returncode if not result.ok else None,
            )
        ctx.root_uuid = uuid
        log("INFO", f"Root filesystem UUID: {uuid}")

    def remount_boot(self, ctx: InstallContext) -> None:
        log("INFO", "Remounting /boot as read-write...")
        self._check("sudo mount -o remount,rw /boot", RemountError, "Failed to remount /boot as read-write")

    def copy_files(self, ctx: InstallContext) -> None:
        version = shlex.quote(ctx.version or "")
        log("INFO", f"Copying new kernel image to {GUEST_KERNEL_PATH}...")
        self._check(
            f"sudo cp {shlex.quote(self._artifact_image(ctx))} {GUEST_KERNEL_PATH}",
            CopyError,
            "Failed to copy kernel image",
        )
        log("INFO", "Installing kernel modules...")
        modules_src = shlex.quote(f"{ctx.artifact_dir}/lib/modules/{ctx.version}")
        self._check(f"sudo mkdir -p /lib/modules/{version}", CopyError, "Failed to create module directory")
        self._check(
            f"sudo cp -r {modules_src}/. /lib/modules/{version}/",
            CopyError,
            "Failed to copy kernel modules",
        )

    def regenerate_initramfs(self, ctx: InstallContext) -> None:
        log("INFO", "Generating initramfs for the new kernel...")
        # The virtio disk must be visible before the real root is mounted.
        cmd = (
            f"sudo dracut -f --add-drivers {shlex.quote(INITRAMFS_DRIVERS)} "
            f"{GUEST_INITRAMFS_PATH} {shlex.quote(ctx.version or '')}"
        )
        self._check(cmd, InitramfsError, "dracut failed")

    def register_boot_entry(self, ctx: InstallContext) -> None:
        log("INFO", "Adding new kernel entry to the bootloader...")
        title = f"Custom Kernel {ctx.version}"
        cmd = (
            f"sudo grubby --add-kernel={GUEST_KERNEL_PATH} --initrd={GUEST_INITRAMFS_PATH} "
            f"--title={shlex.quote(title)}"
        )
        if self.full:
            args = KERNEL_ARGS_TEMPLATE.format(uuid=ctx.root_uuid)
            cmd += f" --args={shlex.quote(args)}"
        cmd += " --make-default"
        if self._exec(cmd).ok:
            return
        log("WARN", "grubby failed; updating bootloader configuration manually...")
        self._check(
            f"sudo grub2-mkconfig -o {GUEST_GRUB_CONFIG}",
            BootLoaderRegistrationError,
            "grubby and grub2-mkconfig both failed",
        )

    def verify_default(self, ctx: InstallContext) -> None:
        result = self._exec("sudo grubby --default-kernel")
        current = result.stdout.strip() if result.ok and result.stdout.strip() else "unknown"
        ctx.default_kernel = current
        log("INFO", f"Current default kernel: {current}")
        if CUSTOM_KERNEL_MARKER in current:
            log("SUCCESS", "Custom kernel is now set as the default.")
            return
        log("WARN", "Custom kernel not set as default. Setting manually...")
        self._check(
            f"sudo grubby --set-default={GUEST_KERNEL_PATH}",
            DefaultEntryError,
            "Failed to set the custom kernel as default",
        )
        ctx.default_kernel = GUEST_KERNEL_PATH

    def reboot(self, ctx: InstallContext) -> None:
        log("INFO", "Kernel installation complete. Rebooting to test the custom kernel...")
        try:
            result = self._exec("sudo reboot")
        except ConnectionDropped:
            return
        # A channel torn down by the reboot reports -1 instead of an exit code.
        if result.returncode > 0:
            detail = result.stderr.strip() or result.stdout.strip()
            raise RebootError(f"Reboot command failed: {detail}", exit_status=result.returncode)
