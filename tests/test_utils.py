"""Tests for dhyve.utils module."""

from __future__ import annotations

import os
import subprocess
from unittest.mock import MagicMock, patch

import pytest

from dhyve.constants import MAC_ADDRESS_RE
from dhyve.exceptions import IOFailure, ManagerError
from dhyve.utils import (
    atomic_write_text,
    derive_mac,
    download_file,
    get_env,
    get_env_bool,
    log,
    parse_float_env,
    parse_int_env,
    pid_alive,
    process_command,
    validate_memory,
)


class TestLog:
    def test_info_level(self, capsys):
        log("INFO", "test message")
        captured = capsys.readouterr()
        assert "[INFO]" in captured.out
        assert "test message" in captured.out

    def test_debug_suppressed_by_default(self, capsys):
        with patch("dhyve.utils._LOG_VERBOSE", False):
            log("DEBUG", "should not appear")
        assert capsys.readouterr().out == ""


class TestGetEnv:
    def test_returns_default(self, monkeypatch):
        monkeypatch.delenv("TEST_VAR", raising=False)
        assert get_env("TEST_VAR", "fallback") == "fallback"

    @pytest.mark.parametrize("value", ["1", "true", "yes", "on", "TRUE", "Yes"])
    def test_truthy_values(self, monkeypatch, value):
        monkeypatch.setenv("TEST_BOOL", value)
        assert get_env_bool("TEST_BOOL") is True

    @pytest.mark.parametrize("value", ["0", "false", "no", "off", "random"])
    def test_falsy_values(self, monkeypatch, value):
        monkeypatch.setenv("TEST_BOOL", value)
        assert get_env_bool("TEST_BOOL", True) is False


class TestParseEnv:
    def test_int_bounds(self, monkeypatch):
        monkeypatch.setenv("TEST_INT", "0")
        with pytest.raises(ManagerError, match="TEST_INT must be >= 1"):
            parse_int_env("TEST_INT", "1")

    def test_int_not_a_number(self, monkeypatch):
        monkeypatch.setenv("TEST_INT", "lots")
        with pytest.raises(ManagerError, match="must be an integer"):
            parse_int_env("TEST_INT", "1")

    def test_float_default_none(self, monkeypatch):
        monkeypatch.delenv("TEST_FLOAT", raising=False)
        assert parse_float_env("TEST_FLOAT", None) is None

    def test_float_value(self, monkeypatch):
        monkeypatch.setenv("TEST_FLOAT", "2.5")
        assert parse_float_env("TEST_FLOAT", "1") == 2.5

    def test_float_negative(self, monkeypatch):
        monkeypatch.setenv("TEST_FLOAT", "-1")
        with pytest.raises(ManagerError, match=">= 0"):
            parse_float_env("TEST_FLOAT", "1")


class TestValidateMemory:
    @pytest.mark.parametrize("raw, expected", [("1G", "1G"), ("512m", "512M"), ("2048", "2048")])
    def test_valid(self, raw, expected):
        assert validate_memory(raw) == expected

    @pytest.mark.parametrize("raw", ["", "1GB", "lots", "-1G"])
    def test_invalid(self, raw):
        with pytest.raises(ManagerError, match="Invalid memory size"):
            validate_memory(raw)


class TestDeriveMac:
    def test_stable_per_seed(self):
        assert derive_mac("1b4e28ba-2fa1-11d2-883f-0016d3cca427") == derive_mac(
            "1b4e28ba-2fa1-11d2-883f-0016d3cca427"
        )

    @pytest.mark.parametrize("seed", [f"seed-{i}" for i in range(32)])
    def test_unicast_locally_administered(self, seed):
        mac = derive_mac(seed)
        assert MAC_ADDRESS_RE.match(mac)
        first = int(mac.split(":")[0], 16)
        assert first & 0x01 == 0
        assert first & 0x02 == 0x02


class TestAtomicWrite:
    def test_replaces_content(self, tmp_path):
        target = tmp_path / "file"
        target.write_text("old")
        atomic_write_text(target, "new")
        assert target.read_text() == "new"
        assert [p.name for p in tmp_path.iterdir()] == ["file"]

    def test_missing_directory(self, tmp_path):
        with pytest.raises(IOFailure):
            atomic_write_text(tmp_path / "missing" / "file", "x")


class TestProcesses:
    def test_own_pid_is_alive(self):
        assert pid_alive(os.getpid()) is True

    def test_reaped_child_is_dead(self):
        proc = subprocess.Popen(["true"])
        proc.wait()
        assert pid_alive(proc.pid) is False

    def test_permission_error_means_alive(self):
        with (
            patch("dhyve.utils.os.waitpid", side_effect=ChildProcessError),
            patch("dhyve.utils.os.kill", side_effect=PermissionError),
        ):
            assert pid_alive(1) is True

    def test_process_command(self):
        result = subprocess.CompletedProcess(args=["ps"], returncode=0, stdout="xhyve -U abc\n", stderr="")
        with patch("dhyve.utils.subprocess.run", return_value=result) as mock_run:
            assert process_command(99) == "xhyve -U abc"
        assert mock_run.call_args[0][0] == ["ps", "-ww", "-p", "99", "-o", "command="]

    def test_process_command_gone(self):
        result = subprocess.CompletedProcess(args=["ps"], returncode=1, stdout="", stderr="")
        with patch("dhyve.utils.subprocess.run", return_value=result):
            assert process_command(99) == ""

    def test_process_command_without_ps(self):
        with patch("dhyve.utils.subprocess.run", side_effect=FileNotFoundError):
            assert process_command(99) is None


class TestDownloadFile:
    def test_writes_destination(self, tmp_path, capsys):
        response = MagicMock()
        response.headers.get.return_value = "6"
        response.read.side_effect = [b"abc", b"def", b""]
        dest = tmp_path / "vmlinuz"
        with patch("dhyve.utils.urlopen", return_value=response):
            download_file("https://example.com/vmlinuz", dest)
        assert dest.read_bytes() == b"abcdef"
        assert [p.name for p in tmp_path.iterdir()] == ["vmlinuz"]
        response.close.assert_called_once()

    def test_url_error(self, tmp_path):
        from urllib.error import URLError

        with patch("dhyve.utils.urlopen", side_effect=URLError("no route")):
            with pytest.raises(ManagerError, match="Failed to download"):
                download_file("https://example.com/x", tmp_path / "x")

    def test_partial_download_is_removed(self, tmp_path):
        response = MagicMock()
        response.headers.get.return_value = None
        response.read.side_effect = [b"abc", OSError("reset")]
        with patch("dhyve.utils.urlopen", return_value=response):
            with pytest.raises(ManagerError, match="interrupted after"):
                download_file("https://example.com/x", tmp_path / "x")
        assert list(tmp_path.iterdir()) == []

    def test_short_body_is_rejected(self, tmp_path):
        response = MagicMock()
        response.headers.get.return_value = "10"
        response.read.side_effect = [b"abc", b""]
        with patch("dhyve.utils.urlopen", return_value=response):
            with pytest.raises(ManagerError, match="truncated"):
                download_file("https://example.com/x", tmp_path / "x")
        assert list(tmp_path.iterdir()) == []
