"""Disk and cloud-init seed image preparation for kernel-vm-runner."""

from __future__ import annotations

import tempfile
from pathlib import Path
from typing import Dict, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from kernel_vm.constants import SEED_VOLUME_ID
from kernel_vm.exceptions import ImageCreateError, IsoBuildError
from kernel_vm.models import RunnerConfig
from kernel_vm.tools import ImageTool, IsoTool
from kernel_vm.utils import ensure_directory, hash_password, log


class ArtifactPreparer:
    """Guarantees the qcow2 overlay disk exists, fetching its backing image if needed.

    An existing overlay is never touched: it carries the guest's state across
    runs. A half-written overlay left behind by a failed ``qemu-img`` call is
    not detected and has to be removed by hand.
    """

    def __init__(self, cfg: RunnerConfig, image_tool: Optional[ImageTool] = None) -> None:
        self.cfg = cfg
        self.image_tool = image_tool or ImageTool(download_retries=cfg.download_retries)

    def ensure_disk_image(self) -> Path:
        disk = self.cfg.disk_image
        if disk.exists():
            log("INFO", f"Reusing disk image {disk}")
            return disk

        log("INFO", f"Disk image '{disk}' not found; creating a new {self.cfg.disk_size} disk image...")
        self._ensure_base_image()

        ensure_directory(disk.parent)
        log("INFO", f"Creating qcow2 disk backed by {self.cfg.base_image.name}...")
        result = self.image_tool.create_overlay(self.cfg.base_image, disk, self.cfg.disk_size)
        if not result.ok:
            detail = result.stderr.strip() or result.stdout.strip()
            raise ImageCreateError(f"Error creating disk image {disk} (exit {result.returncode}): {detail}")
        log("SUCCESS", f"Disk image ready: {disk}")
        return disk

    def _ensure_base_image(self) -> None:
        base = self.cfg.base_image
        if base.exists():
            log("INFO", f"Using cached base image: {base}")
            return
        ensure_directory(base.parent)
        self.image_tool.download(self.cfg.base_image_url, base)


class SeedImageBuilder:
    """Packages cloud-init NoCloud ``user-data``/``meta-data`` into the seed ISO."""

    def __init__(self, cfg: RunnerConfig, iso_tool: Optional[IsoTool] = None) -> None:
        self.cfg = cfg
        self.iso_tool = iso_tool or IsoTool()

    def render_user_data(self) -> str:
        user = self.cfg.login_user
        user_cfg: Dict[str, object] = {
            "users": [
                {
                    "name": user,
                    "sudo": "ALL=(ALL) NOPASSWD:ALL",
                    "groups": "wheel",
                    "shell": "/bin/bash",
                    "ssh_pwauth": True,
                    "lock_passwd": False,
                    "passwd": hash_password(self.cfg.password),
                }
            ],
            # Older cloud-init releases ignore ``passwd`` but honour chpasswd.
            "chpasswd": {
                "list": f"{user}:{self.cfg.password}\n",
                "expire": False,
            },
            "ssh_pwauth": True,
        }
        return "#cloud-config\n" + yaml.safe_dump(user_cfg, sort_keys=False, default_flow_style=False)

    def render_meta_data(self) -> str:
        meta = {
            "instance-id": self.cfg.vm_name,
            "local-hostname": self.cfg.vm_name,
        }
        return yaml.safe_dump(meta, sort_keys=False, default_flow_style=False)

    def ensure_seed_image(self) -> Path:
        seed = self.cfg.seed_iso
        if seed.exists():
            log("INFO", f"Reusing cloud-init seed {seed} (credentials from first creation stay in effect)")
            return seed

        log("INFO", "Creating cloud-init ISO for initial VM configuration...")
        ensure_directory(seed.parent)
        # Only a complete ISO may appear at ``seed``: an existing file is never rebuilt.
        partial = seed.with_name(f".{seed.name}.partial")
        partial.unlink(missing_ok=True)
        with tempfile.TemporaryDirectory(prefix="cloudinit-") as tmpdir:
            tmp = Path(tmpdir)
            user_data = tmp / "user-data"
            meta_data = tmp / "meta-data"
            user_data.write_text(self.render_user_data(), encoding="utf-8")
            meta_data.write_text(self.render_meta_data(), encoding="utf-8")
            result = self.iso_tool.build(partial, SEED_VOLUME_ID, [user_data, meta_data])
        if not result.ok:
            partial.unlink(missing_ok=True)
            detail = result.stderr.strip() or result.stdout.strip()
            raise IsoBuildError(f"Error creating cloud-init ISO {seed} (exit {result.returncode}): {detail}")
        partial.replace(seed)
        log("SUCCESS", f"Cloud-init seed ready: {seed}")
        return seed
