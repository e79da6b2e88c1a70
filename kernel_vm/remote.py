"""Remote command execution over SSH for kernel-vm-runner."""

from __future__ import annotations

import socket
import time
from typing import Optional, Tuple

import paramiko

from kernel_vm.exceptions import ConnectionDropped, RunnerError
from kernel_vm.models import CommandResult
from kernel_vm.utils import log

_CHUNK_SIZE = 32768


def _drain(chan: paramiko.Channel) -> Tuple[bytes, bytes]:
    """Read stdout and stderr side by side until the command exits.

    Reading one stream to EOF first lets the other fill the channel window
    and stall the remote command.
    """
    out = bytearray()
    err = bytearray()
    while True:
        idle = True
        if chan.recv_ready():
            out += chan.recv(_CHUNK_SIZE)
            idle = False
        if chan.recv_stderr_ready():
            err += chan.recv_stderr(_CHUNK_SIZE)
            idle = False
        if idle:
            # A closed channel also reports its exit status as ready (-1).
            if chan.exit_status_ready() and not chan.recv_ready() and not chan.recv_stderr_ready():
                return bytes(out), bytes(err)
            time.sleep(0.01)


class RemoteExecutor:
    """Runs shell commands inside the guest; one instance per session."""

    def run(self, command: str) -> CommandResult:
        raise NotImplementedError

    def close(self) -> None:
        pass

    def __enter__(self) -> "RemoteExecutor":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class SSHExecutor(RemoteExecutor):
    """Password-authenticated paramiko session to the forwarded guest port.

    Host keys are accepted automatically: every fresh guest generates new
    ones behind the same ``localhost:<port>`` address.
    """

    def __init__(self, host: str, port: int, user: str, password: str, connect_timeout: float = 30.0) -> None:
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.connect_timeout = connect_timeout
        self.cli: Optional[paramiko.SSHClient] = None

    def connect(self) -> None:
        cli = paramiko.SSHClient()
        cli.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            cli.connect(
                self.host,
                port=self.port,
                username=self.user,
                password=self.password,
                timeout=self.connect_timeout,
                banner_timeout=self.connect_timeout,
                auth_timeout=self.connect_timeout,
                look_for_keys=False,
                allow_agent=False,
            )
        except (paramiko.SSHException, OSError) as exc:
            cli.close()
            raise RunnerError(f"SSH connection to {self.user}@{self.host}:{self.port} failed: {exc}") from exc
        self.cli = cli
        log("DEBUG", f"SSH session opened to {self.user}@{self.host}:{self.port}")

    def run(self, command: str) -> CommandResult:
        if self.cli is None:
            self.connect()
        assert self.cli is not None
        log("DEBUG", f"Remote: {command}")
        transport = self.cli.get_transport()
        if transport is None or not transport.is_active():
            raise ConnectionDropped(f"SSH connection lost before running '{command}'")
        try:
            chan = transport.open_session()
            chan.exec_command(command)
            out, err = _drain(chan)
            status = chan.recv_exit_status()
        except (paramiko.SSHException, EOFError, socket.error) as exc:
            raise ConnectionDropped(f"SSH connection lost while running '{command}': {exc}") from exc
        return CommandResult(status, out.decode("utf-8", errors="replace"), err.decode("utf-8", errors="replace"))

    def close(self) -> None:
        if self.cli is not None:
            self.cli.close()
            self.cli = None
