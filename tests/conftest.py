"""Shared test fixtures and fake tool collaborators."""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional, Sequence
from unittest.mock import MagicMock

import pytest

from kernel_vm.models import CommandResult, RunnerConfig, SharedFolder, VMProcess
from kernel_vm.remote import RemoteExecutor


def make_config(tmp_path: Path, **overrides) -> RunnerConfig:
    values = dict(
        variant="full",
        vm_name="fedora-vm",
        base_dir=tmp_path,
        disk_image=tmp_path / "fedora_vm.qcow2",
        base_image=tmp_path / "base.qcow2",
        base_image_url="https://example.com/base.qcow2",
        seed_iso=tmp_path / "seed.iso",
        out_dir=tmp_path / "out",
        shared_folders=(
            SharedFolder(source=tmp_path / "out", tag="host_out"),
            SharedFolder(source=tmp_path / "tests", tag="host_tests"),
        ),
        memory_mb=2048,
        cpus=2,
        disk_size="35G",
        ssh_host="127.0.0.1",
        ssh_port=2222,
        guest_ssh_port=22,
        login_user="user",
        password="fedora",
        boot_wait_attempts=3,
        boot_wait_interval=0.0,
        launch_grace=0.0,
        qemu_binary="qemu-system-x86_64",
        enable_kvm=True,
    )
    values.update(overrides)
    return RunnerConfig(**values)


@pytest.fixture
def default_runner_config(tmp_path) -> RunnerConfig:
    """Return a RunnerConfig rooted in the test's temporary directory."""
    return make_config(tmp_path)


class FakeImageTool:
    def __init__(self, create_status: int = 0) -> None:
        self.create_status = create_status
        self.downloads: List[tuple] = []
        self.creates: List[tuple] = []

    def download(self, url: str, destination: Path) -> None:
        self.downloads.append((url, destination))
        destination.write_bytes(b"base-image")

    def create_overlay(self, backing: Path, destination: Path, size: str, fmt: str = "qcow2") -> CommandResult:
        self.creates.append((backing, destination, size))
        if self.create_status != 0:
            return CommandResult(self.create_status, "", "qemu-img: boom")
        destination.write_bytes(b"overlay")
        return CommandResult(0)


class FakeIsoTool:
    def __init__(self, status: int = 0, partial: Optional[bytes] = None) -> None:
        self.status = status
        self.partial = partial
        self.builds: List[dict] = []

    def build(self, output: Path, volume_id: str, files: Sequence[Path]) -> CommandResult:
        contents = {path.name: path.read_text() for path in files}
        self.builds.append({"output": output, "volume_id": volume_id, "files": contents})
        if self.status != 0:
            if self.partial is not None:
                output.write_bytes(self.partial)
            return CommandResult(self.status, "", "genisoimage: boom")
        output.write_bytes(repr(sorted(contents.items())).encode())
        return CommandResult(0)


class FakeHypervisor:
    def __init__(self, alive: bool = True, returncode: Optional[int] = None) -> None:
        self.alive = alive
        self.returncode = returncode
        self.commands: List[List[str]] = []

    def spawn(self, cmd: List[str], console_log: Optional[Path] = None) -> VMProcess:
        self.commands.append(cmd)
        proc = MagicMock()
        proc.poll.return_value = None if self.alive else self.returncode
        proc.returncode = None if self.alive else self.returncode
        return VMProcess(pid=4242, command=cmd, proc=proc, console_log=console_log)


class FakeExecutor(RemoteExecutor):
    """Answers remote commands from a prefix -> CommandResult (or exception) table."""

    def __init__(self, responses: Optional[Dict[str, object]] = None) -> None:
        self.responses = responses or {}
        self.commands: List[str] = []
        self.closed = False

    def run(self, command: str) -> CommandResult:
        self.commands.append(command)
        for prefix, result in self.responses.items():
            if command.startswith(prefix):
                if isinstance(result, Exception):
                    raise result
                return result  # type: ignore[return-value]
        return CommandResult(0)

    def close(self) -> None:
        self.closed = True

    def ran(self, prefix: str) -> List[str]:
        return [cmd for cmd in self.commands if cmd.startswith(prefix)]


# Every environment variable parse_env() reads.
_PARSE_ENV_VARS = [
    "VM_CONFIG_FILE",
    "VM_VARIANT",
    "VM_WORK_DIR",
    "VM_NAME",
    "DISK_IMAGE",
    "BASE_IMAGE",
    "BASE_IMAGE_URL",
    "SEED_ISO",
    "OUT_DIR",
    "TESTS_DIR",
    "CONSOLE_LOG",
    "MEMORY",
    "CPUS",
    "DISK_SIZE",
    "SSH_PORT",
    "GUEST_USER",
    "GUEST_PASSWORD",
    "BOOT_WAIT_ATTEMPTS",
    "BOOT_WAIT_INTERVAL",
    "LAUNCH_GRACE",
    "QEMU_BINARY",
    "ENABLE_KVM",
    "DOWNLOAD_RETRIES",
]


@pytest.fixture
def clean_env(monkeypatch):
    """Clear all environment variables that parse_env() reads."""
    for key in _PARSE_ENV_VARS:
        monkeypatch.delenv(key, raising=False)
