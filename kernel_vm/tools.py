"""External tool wrappers (qemu-img, genisoimage, qemu-system) for kernel-vm-runner.

Each wrapper takes arguments in and hands back a ``CommandResult`` (or a
``VMProcess`` for the hypervisor), so the orchestration code can be driven
by fakes in tests.
"""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import List, Optional, Sequence

from kernel_vm.models import CommandResult, VMProcess
from kernel_vm.utils import download_file_with_retry, log, run


class ImageTool:
    """Base image download and copy-on-write overlay creation."""

    def __init__(self, binary: str = "qemu-img", download_retries: int = 3) -> None:
        self.binary = binary
        self.download_retries = download_retries

    def download(self, url: str, destination: Path) -> None:
        download_file_with_retry(
            url,
            destination,
            label="Downloading base image",
            retries=self.download_retries,
        )

    def create_overlay(self, backing: Path, destination: Path, size: str, fmt: str = "qcow2") -> CommandResult:
        cmd = [
            self.binary,
            "create",
            "-f",
            fmt,
            "-b",
            str(backing),
            "-F",
            fmt,
            str(destination),
            size,
        ]
        return run(cmd)


class IsoTool:
    def __init__(self, binary: str = "genisoimage") -> None:
        self.binary = binary

    def build(self, output: Path, volume_id: str, files: Sequence[Path]) -> CommandResult:
        cmd = [
            self.binary,
            "-output",
            str(output),
            "-volid",
            volume_id,
            "-joliet",
            "-rock",
        ]
        cmd.extend(str(path) for path in files)
        return run(cmd)


class Hypervisor:
    """Starts the QEMU process detached from the orchestrator."""

    def spawn(self, cmd: List[str], console_log: Optional[Path] = None) -> VMProcess:
        log("DEBUG", f"Spawning: {' '.join(cmd)}")
        if console_log is not None:
            console_log.parent.mkdir(parents=True, exist_ok=True)
            with open(console_log, "ab") as sink:
                proc = subprocess.Popen(
                    cmd,
                    stdin=subprocess.DEVNULL,
                    stdout=sink,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
        else:
            proc = subprocess.Popen(cmd, stdin=subprocess.DEVNULL, start_new_session=True)
        return VMProcess(pid=proc.pid, command=list(cmd), proc=proc, console_log=console_log)
