"""Global constants and default paths for kernel-vm-runner."""

from __future__ import annotations

import os
import re
from pathlib import Path

# Project root: the full variant resolves every artifact relative to it.
PACKAGE_ROOT = Path(__file__).resolve().parent.parent

VARIANT_FULL = "full"
VARIANT_BASIC = "basic"
SUPPORTED_VARIANTS = {VARIANT_FULL, VARIANT_BASIC}

DEFAULT_VM_NAME = "fedora-vm"
DEFAULT_DISK_IMAGE = "fedora_vm.qcow2"
DEFAULT_BASE_IMAGE = "Fedora-Cloud-Base-38-1.6.x86_64.qcow2"
DEFAULT_BASE_IMAGE_URL = (
    "https://download.fedoraproject.org/pub/fedora/linux/releases/38/Cloud/x86_64/images/"
    + DEFAULT_BASE_IMAGE
)
DEFAULT_SEED_ISO = "seed.iso"
DEFAULT_OUT_DIRS = {
    VARIANT_FULL: Path("container_kernel_workspace") / "out",
    VARIANT_BASIC: Path("out"),
}
DEFAULT_TESTS_DIR = "tests"

DEFAULT_MEMORY_MB = "20480"
DEFAULT_CPUS = "16"
DEFAULT_DISK_SIZE = "35G"
DEFAULT_LOGIN_USER = "user"
DEFAULT_PASSWORD = "fedora"

SSH_HOST = "localhost"
DEFAULT_SSH_PORT = "2222"
GUEST_SSH_PORT = 22

DEFAULT_BOOT_WAIT_ATTEMPTS = "30"
DEFAULT_BOOT_WAIT_INTERVAL = "10"
DEFAULT_LAUNCH_GRACE = {VARIANT_FULL: "10", VARIANT_BASIC: "0"}
DEFAULT_QEMU_BINARY = "qemu-system-x86_64"
DEFAULT_DOWNLOAD_RETRIES = "3"

# cloud-init NoCloud datasource looks the seed volume up by this label.
SEED_VOLUME_ID = "cidata"

# 9p mount tags; guest-side mount commands must use them verbatim.
TAG_HOST_OUT = "host_out"
TAG_HOST_TESTS = "host_tests"

GUEST_OUT_MOUNT = "/host_out"
GUEST_ARTIFACT_ROOT = GUEST_OUT_MOUNT + "/kernel_artifacts"
GUEST_KERNEL_PATH = "/boot/vmlinuz-custom"
GUEST_INITRAMFS_PATH = "/boot/initramfs-custom.img"
GUEST_GRUB_CONFIG = "/boot/grub2/grub.cfg"
CUSTOM_KERNEL_MARKER = "vmlinuz-custom"
INITRAMFS_DRIVERS = "virtio_blk virtio_pci"
KERNEL_ARGS_TEMPLATE = "root=UUID={uuid} rootflags=subvol=root console=ttyS0"

ARTIFACT_IMAGE_NAMES = {
    VARIANT_FULL: "bzImage-custom",
    VARIANT_BASIC: "bzImage",
}

TRUTHY = {"1", "true", "yes", "on"}
_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in TRUTHY

DISK_SIZE_RE = re.compile(r"^\d+[KMGTkmgt]?$")

_SENSITIVE_FIELDS = {"password"}
