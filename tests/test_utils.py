"""Tests for kernel_vm.utils module."""

from __future__ import annotations

import http.client
import io
import re
from unittest.mock import MagicMock, patch
from urllib.error import HTTPError, URLError

import bcrypt
import pytest

from kernel_vm.exceptions import ConfigError, DownloadError
from kernel_vm.utils import (
    download_file,
    download_file_with_retry,
    get_env,
    hash_password,
    log,
    parse_int,
    parse_seconds,
    run,
    select_latest_version,
    tail_file,
    validate_disk_size,
    version_key,
)


class TestLog:
    def test_info_level(self, capsys):
        log("INFO", "test message")
        captured = capsys.readouterr()
        assert "[INFO]" in captured.out
        assert "test message" in captured.out

    def test_has_timestamp(self, capsys):
        log("SUCCESS", "done")
        out = capsys.readouterr().out
        assert re.search(r"\[\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}\]", out)

    def test_debug_suppressed_by_default(self, capsys):
        log("DEBUG", "should not appear")
        captured = capsys.readouterr()
        assert captured.out == ""


class TestGetEnv:
    def test_returns_value(self, monkeypatch):
        monkeypatch.setenv("TEST_VAR", "hello")
        assert get_env("TEST_VAR") == "hello"

    def test_returns_default(self, monkeypatch):
        monkeypatch.delenv("TEST_VAR", raising=False)
        assert get_env("TEST_VAR", "fallback") == "fallback"


class TestParseInt:
    def test_valid_value(self):
        assert parse_int("MEMORY", "4096") == 4096

    def test_non_integer_raises(self):
        with pytest.raises(ConfigError, match="must be an integer"):
            parse_int("CPUS", "abc")

    def test_below_min_raises(self):
        with pytest.raises(ConfigError, match="must be >= 1"):
            parse_int("CPUS", "0")

    def test_above_max_raises(self):
        with pytest.raises(ConfigError, match="must be <= 65535"):
            parse_int("SSH_PORT", "70000", max_val=65535)


class TestParseSeconds:
    def test_float_accepted(self):
        assert parse_seconds("BOOT_WAIT_INTERVAL", "2.5") == 2.5

    def test_negative_rejected(self):
        with pytest.raises(ConfigError, match=">= 0"):
            parse_seconds("LAUNCH_GRACE", "-1")

    def test_garbage_rejected(self):
        with pytest.raises(ConfigError, match="number of seconds"):
            parse_seconds("LAUNCH_GRACE", "soon")


class TestValidateDiskSize:
    @pytest.mark.parametrize("size", ["35G", "500M", "1T", "1024K", "100", "20g"])
    def test_valid_sizes(self, size):
        assert validate_disk_size(size) == size

    @pytest.mark.parametrize("size", ["abc", "", "-1G", "10X"])
    def test_invalid_sizes(self, size):
        with pytest.raises(ConfigError, match="Invalid DISK_SIZE"):
            validate_disk_size(size)


class TestHashPassword:
    def test_hash_verifies(self):
        hashed = hash_password("fedora")
        assert hashed.startswith("$2")
        assert bcrypt.checkpw(b"fedora", hashed.encode())

    def test_salted(self):
        assert hash_password("fedora") != hash_password("fedora")


class TestVersionOrdering:
    def test_numeric_not_lexical(self):
        assert select_latest_version(["5.10", "5.12", "5.9"]) == "5.12"

    def test_longer_release_sorts_after_prefix(self):
        assert version_key("6.1") < version_key("6.1.3")

    def test_suffixes(self):
        assert select_latest_version(["6.1.0-rc1", "6.1.0-rc10", "6.1.0-rc2"]) == "6.1.0-rc10"

    def test_empty(self):
        assert select_latest_version([]) is None
        assert select_latest_version(["", ""]) is None


class TestTailFile:
    def test_returns_last_lines(self, tmp_path):
        path = tmp_path / "console.log"
        path.write_text("\n".join(f"line {i}" for i in range(50)))
        assert tail_file(path, lines=2) == "line 48\nline 49"

    def test_missing_file(self, tmp_path):
        assert tail_file(tmp_path / "nope.log") == ""


def _response(payload: bytes, length: bool = True):
    response = MagicMock()
    stream = io.BytesIO(payload)
    response.read.side_effect = lambda size=-1: stream.read(size)
    response.headers = {"Content-Length": str(len(payload))} if length else {}
    return response


class TestDownloadFile:
    def test_writes_destination(self, tmp_path, capsys):
        dest = tmp_path / "base.qcow2"
        with patch("kernel_vm.utils.urlopen", return_value=_response(b"x" * 1000)):
            download_file("https://example.com/base.qcow2", dest)
        assert dest.read_bytes() == b"x" * 1000
        assert list(tmp_path.iterdir()) == [dest]

    def test_unknown_length(self, tmp_path):
        dest = tmp_path / "base.qcow2"
        with patch("kernel_vm.utils.urlopen", return_value=_response(b"abc", length=False)):
            download_file("https://example.com/base.qcow2", dest)
        assert dest.read_bytes() == b"abc"

    def test_http_error_raises_download_error(self, tmp_path):
        err = HTTPError("https://example.com/x", 404, "Not Found", {}, None)
        with patch("kernel_vm.utils.urlopen", side_effect=err):
            with pytest.raises(DownloadError, match="404"):
                download_file("https://example.com/x", tmp_path / "x")
        assert not (tmp_path / "x").exists()

    def test_url_error_raises_download_error(self, tmp_path):
        with patch("kernel_vm.utils.urlopen", side_effect=URLError("no route")):
            with pytest.raises(DownloadError, match="no route"):
                download_file("https://example.com/x", tmp_path / "x")

    def test_interrupted_transfer_leaves_no_partial_file(self, tmp_path):
        response = MagicMock()
        response.headers = {}
        response.read.side_effect = [b"partial", ConnectionResetError("reset")]
        with patch("kernel_vm.utils.urlopen", return_value=response):
            with pytest.raises(DownloadError, match="interrupted"):
                download_file("https://example.com/x", tmp_path / "x")
        assert list(tmp_path.iterdir()) == []

    def test_short_read_raises_download_error(self, tmp_path):
        response = MagicMock()
        response.headers = {"Content-Length": "100"}
        response.read.side_effect = [b"x" * 10, http.client.IncompleteRead(b"", 90)]
        with patch("kernel_vm.utils.urlopen", return_value=response):
            with pytest.raises(DownloadError, match="interrupted"):
                download_file("https://example.com/x", tmp_path / "x")
        assert list(tmp_path.iterdir()) == []


class TestDownloadRetry:
    def test_short_read_is_retried(self, tmp_path):
        short = MagicMock()
        short.headers = {}
        short.read.side_effect = http.client.IncompleteRead(b"", 5)
        with (
            patch("kernel_vm.utils.urlopen", side_effect=[short, _response(b"whole")]),
            patch("kernel_vm.utils.time.sleep"),
        ):
            download_file_with_retry("https://example.com/x", tmp_path / "x", retries=3)
        assert (tmp_path / "x").read_bytes() == b"whole"

    def test_retries_then_succeeds(self, tmp_path):
        calls = []

        def _flaky(url, destination, label="Downloading"):
            calls.append(url)
            if len(calls) < 2:
                raise DownloadError("flaky")

        with patch("kernel_vm.utils.download_file", side_effect=_flaky), patch("kernel_vm.utils.time.sleep"):
            download_file_with_retry("https://example.com/x", tmp_path / "x", retries=3)
        assert len(calls) == 2

    def test_gives_up_after_budget(self, tmp_path):
        with (
            patch("kernel_vm.utils.download_file", side_effect=DownloadError("down")) as mock_dl,
            patch("kernel_vm.utils.time.sleep"),
        ):
            with pytest.raises(DownloadError, match="down"):
                download_file_with_retry("https://example.com/x", tmp_path / "x", retries=3)
        assert mock_dl.call_count == 3


class TestRun:
    def test_captures_output(self):
        result = run(["sh", "-c", "echo out; echo err >&2; exit 3"])
        assert result.returncode == 3
        assert result.stdout.strip() == "out"
        assert result.stderr.strip() == "err"
        assert not result.ok

    def test_missing_binary_maps_to_127(self):
        result = run(["definitely-not-a-real-binary-xyz"])
        assert result.returncode == 127
        assert "command not found" in result.stderr
