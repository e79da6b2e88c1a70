"""SSH readiness polling for kernel-vm-runner."""

from __future__ import annotations

import socket
import time
from typing import Callable, Optional

import paramiko

from kernel_vm.exceptions import LaunchError, ReadinessTimeoutError
from kernel_vm.utils import log


def port_open(host: str, port: int, timeout: float = 1.0) -> bool:
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


def ssh_ready(host: str, port: int, user: str, password: str, timeout: float = 10.0) -> bool:
    """Return True once a full SSH login to ``host:port`` succeeds.

    QEMU's user-mode ``hostfwd`` accepts TCP connections as soon as the
    hypervisor starts, so an open port alone says nothing about the guest's
    sshd.
    """
    if not port_open(host, port):
        return False
    cli = paramiko.SSHClient()
    cli.set_missing_host_key_policy(paramiko.AutoAddPolicy())
    try:
        cli.connect(
            host,
            port=port,
            username=user,
            password=password,
            timeout=timeout,
            banner_timeout=timeout,
            auth_timeout=timeout,
            look_for_keys=False,
            allow_agent=False,
        )
    except (paramiko.SSHException, EOFError, OSError) as exc:
        log("DEBUG", f"SSH handshake not ready yet: {exc}")
        return False
    finally:
        cli.close()
    return True


def wait_for_port(
    host: str,
    port: int,
    attempts: int,
    interval: float,
    is_alive: Optional[Callable[[], bool]] = None,
    check: Optional[Callable[[], bool]] = None,
) -> int:
    """Poll ``host:port`` a fixed number of times; return the successful attempt number.

    ``check`` replaces the plain TCP check when given. Attempts are spaced
    ``interval`` seconds apart with no backoff. Raises
    ``ReadinessTimeoutError`` once the budget is spent, and
    ``LaunchError`` if ``is_alive`` reports that the hypervisor died.
    """
    log("INFO", f"Waiting for SSH on port {port}...")
    for attempt in range(1, attempts + 1):
        ready = check() if check is not None else port_open(host, port)
        if ready:
            log("SUCCESS", "SSH is available!")
            return attempt
        if is_alive is not None and not is_alive():
            raise LaunchError("QEMU process died while waiting for SSH")
        log("DEBUG", f"SSH not reachable yet (attempt {attempt}/{attempts})")
        if attempt < attempts:
            time.sleep(interval)
    raise ReadinessTimeoutError(
        f"SSH did not become available on {host}:{port} after {attempts} attempts; "
        "the VM is left running for inspection"
    )


def wait_for_ssh(
    host: str,
    port: int,
    user: str,
    password: str,
    attempts: int,
    interval: float,
    is_alive: Optional[Callable[[], bool]] = None,
) -> int:
    return wait_for_port(
        host,
        port,
        attempts=attempts,
        interval=interval,
        is_alive=is_alive,
        check=lambda: ssh_ready(host, port, user, password),
    )
