"""Utility functions for kernel-vm-runner."""

from __future__ import annotations

import http.client
import os
import re
import subprocess
import tempfile
import time
from pathlib import Path
from typing import Iterable, List, Optional, Tuple
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

try:
    import bcrypt  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("bcrypt is required but not installed") from exc

from kernel_vm.constants import (
    _LOG_VERBOSE,
    DISK_SIZE_RE,
)
from kernel_vm.exceptions import ConfigError, DownloadError
from kernel_vm.models import CommandResult


def log(level: str, message: str) -> None:
    """Timestamped, coloured status line."""
    if level == "DEBUG" and not _LOG_VERBOSE:
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    stamp = time.strftime("%Y-%m-%d %H:%M:%S")
    print(f"{colour}[{stamp}] [{level}]{reset} {message}", flush=True)


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def parse_int(name: str, raw: str, min_val: int = 1, max_val: Optional[int] = None) -> int:
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer (got '{raw}')")
    if value < min_val:
        raise ConfigError(f"{name} must be >= {min_val} (got {value})")
    if max_val is not None and value > max_val:
        raise ConfigError(f"{name} must be <= {max_val} (got {value})")
    return value


def parse_seconds(name: str, raw: str) -> float:
    try:
        value = float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number of seconds (got '{raw}')")
    if value < 0:
        raise ConfigError(f"{name} must be >= 0 (got {value})")
    return value


def validate_disk_size(raw: str) -> str:
    if not DISK_SIZE_RE.match(raw):
        raise ConfigError(
            f"Invalid DISK_SIZE '{raw}'. Use a number with optional suffix: K, M, G, T (e.g. '35G')"
        )
    return raw


def download_file(url: str, destination: Path, label: str = "Downloading") -> None:
    """Download a file with a progress bar using Python urllib."""
    log("INFO", f"{label}: {url}")
    req = Request(url, headers={"User-Agent": "kernel-vm-runner/1.0"})
    try:
        response = urlopen(req, timeout=60)
    except HTTPError as exc:
        raise DownloadError(f"HTTP error downloading {url}: {exc.code} {exc.reason}")
    except URLError as exc:
        raise DownloadError(f"Failed to download {url}: {exc.reason}")

    total = response.headers.get("Content-Length")
    total_bytes = int(total) if total else None
    downloaded = 0
    start_time = time.time()

    with tempfile.NamedTemporaryFile(delete=False, dir=destination.parent) as tmp:
        tmp_path = Path(tmp.name)
        try:
            chunk_size = 1024 * 256  # 256 KiB
            while True:
                chunk = response.read(chunk_size)
                if not chunk:
                    break
                tmp.write(chunk)
                downloaded += len(chunk)

                elapsed = time.time() - start_time
                speed = downloaded / elapsed if elapsed > 0 else 0
                downloaded_mb = downloaded / (1024 * 1024)

                if total_bytes:
                    total_mb = total_bytes / (1024 * 1024)
                    pct = downloaded * 100 / total_bytes
                    bar_len = 30
                    filled = int(bar_len * downloaded / total_bytes)
                    bar = "#" * filled + "-" * (bar_len - filled)
                    print(
                        f"\r  [{bar}] {pct:5.1f}% {downloaded_mb:.1f}/{total_mb:.1f} MiB "
                        f"({speed / (1024 * 1024):.1f} MiB/s)",
                        end="", flush=True,
                    )
                else:
                    print(
                        f"\r  {downloaded_mb:.1f} MiB downloaded ({speed / (1024 * 1024):.1f} MiB/s)",
                        end="", flush=True,
                    )
            print(flush=True)
            tmp.flush()
        except (OSError, http.client.HTTPException) as exc:
            tmp_path.unlink(missing_ok=True)
            raise DownloadError(f"Transfer of {url} interrupted: {exc}") from exc
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise
    tmp_path.replace(destination)
    elapsed = time.time() - start_time
    log("SUCCESS", f"Downloaded {downloaded / (1024 * 1024):.1f} MiB in {elapsed:.1f}s")


def download_file_with_retry(
    url: str,
    destination: Path,
    label: str = "Downloading",
    retries: int = 3,
    delay: float = 5.0,
) -> None:
    """Retry ``download_file`` with a linear backoff; re-raise the last failure."""
    attempts = max(retries, 1)
    for attempt in range(1, attempts + 1):
        try:
            download_file(url, destination, label=label)
            return
        except DownloadError as exc:
            if attempt == attempts:
                raise
            log("WARN", f"{exc} (attempt {attempt}/{attempts}); retrying in {delay * attempt:.0f}s")
            time.sleep(delay * attempt)


def kvm_available() -> bool:
    """Return True if /dev/kvm exists and can be opened."""
    kvm_path = Path("/dev/kvm")
    if not kvm_path.exists():
        return False
    try:
        fd = os.open(kvm_path, os.O_RDONLY)
    except OSError:
        return False
    else:
        os.close(fd)
        return True


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def hash_password(password: str) -> str:
    """Generate a bcrypt hash for cloud-init."""
    hashed = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt())
    return hashed.decode("utf-8")


def tail_file(path: Path, lines: int = 20) -> str:
    try:
        content = path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return ""
    return "\n".join(content.splitlines()[-lines:])


_VERSION_TOKEN_RE = re.compile(r"(\d+)")


def version_key(version: str) -> Tuple[Tuple[int, object], ...]:
    """Sort key comparing digit runs numerically, like ``sort -V``."""
    key = []
    for token in _VERSION_TOKEN_RE.split(version):
        if not token:
            continue
        if token.isdigit():
            key.append((1, int(token)))
        else:
            key.append((0, token))
    return tuple(key)


def select_latest_version(candidates: Iterable[str]) -> Optional[str]:
    versions = [c for c in candidates if c]
    if not versions:
        return None
    return max(versions, key=version_key)


def run(cmd: List[str], **kwargs) -> CommandResult:
    """Run command with logging; a missing binary maps to exit status 127."""
    log("DEBUG", f"Running: {' '.join(cmd)}")
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, check=False, **kwargs)
    except FileNotFoundError as exc:
        return CommandResult(127, "", f"{cmd[0]}: command not found ({exc})")
    return CommandResult(result.returncode, result.stdout or "", result.stderr or "")
