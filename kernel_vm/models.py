"""Data models for kernel-vm-runner."""

from __future__ import annotations

import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, NamedTuple, Optional, Tuple


class CommandResult(NamedTuple):
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


@dataclass(frozen=True)
class SharedFolder:
    source: Path
    tag: str
    security_model: str = "passthrough"


@dataclass(frozen=True)
class RunnerConfig:
    variant: str
    vm_name: str
    base_dir: Path
    disk_image: Path
    base_image: Path
    base_image_url: str
    seed_iso: Path
    out_dir: Path
    shared_folders: Tuple[SharedFolder, ...]
    memory_mb: int
    cpus: int
    disk_size: str
    ssh_host: str
    ssh_port: int
    guest_ssh_port: int
    login_user: str
    password: str
    boot_wait_attempts: int
    boot_wait_interval: float
    launch_grace: float
    qemu_binary: str
    enable_kvm: bool = True
    console_log: Optional[Path] = None
    download_retries: int = 3
    install_kernel: bool = False
    run_tests: bool = False


@dataclass
class VMProcess:
    pid: int
    command: List[str]
    proc: Optional[subprocess.Popen] = None
    console_log: Optional[Path] = None

    def is_alive(self) -> bool:
        if self.proc is None:
            return False
        return self.proc.poll() is None


@dataclass
class InstallContext:
    """Values discovered by earlier install steps and consumed by later ones."""

    version: Optional[str] = None
    artifact_dir: Optional[str] = None
    root_uuid: Optional[str] = None
    default_kernel: Optional[str] = None
    completed: List[str] = field(default_factory=list)
