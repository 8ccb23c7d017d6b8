"""Utility functions for dhyve."""

from __future__ import annotations

import contextlib
import errno
import hashlib
import os
import subprocess
import sys
import tempfile
import time
from pathlib import Path
from typing import List, Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from dhyve.constants import _LOG_VERBOSE, MEMORY_RE, TRUTHY
from dhyve.exceptions import IOFailure, ManagerError


def log(level: str, message: str) -> None:
    """Lightweight structured logging compatible with existing colour expectation."""
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
    print(f"{colour}[{level}]{reset} {message}", flush=True)


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def get_env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.lower() in TRUTHY


def parse_int_env(name: str, default: str, min_val: int = 1, max_val: Optional[int] = None) -> int:
    raw = get_env(name, default)
    assert raw is not None
    return parse_int(name, raw, min_val=min_val, max_val=max_val)


def parse_int(name: str, raw: str, min_val: int = 1, max_val: Optional[int] = None) -> int:
    try:
        value = int(raw)
    except ValueError:
        raise ManagerError(f"{name} must be an integer (got '{raw}')")
    if value < min_val:
        raise ManagerError(f"{name} must be >= {min_val} (got {value})")
    if max_val is not None and value > max_val:
        raise ManagerError(f"{name} must be <= {max_val} (got {value})")
    return value


def parse_float_env(name: str, default: Optional[str]) -> Optional[float]:
    """Parse a non-negative number of seconds; an unset variable with no default yields None."""
    raw = get_env(name, default)
    if raw is None or not raw.strip():
        return None
    try:
        value = float(raw)
    except ValueError:
        raise ManagerError(f"{name} must be a number of seconds (got '{raw}')")
    if value < 0:
        raise ManagerError(f"{name} must be >= 0 (got {value})")
    return value


def validate_memory(raw: str) -> str:
    if not MEMORY_RE.match(raw):
        raise ManagerError(
            f"Invalid memory size '{raw}'. Use a number with optional suffix: K, M, G, T (e.g. '1G')"
        )
    return raw.upper()


def _mib(size: float) -> float:
    return size / (1024 * 1024)


def _progress_line(done: int, total: Optional[int], elapsed: float) -> str:
    rate = done / elapsed if elapsed > 0 else 0.0
    if not total:
        return f"  {_mib(done):.1f} MiB ({_mib(rate):.1f} MiB/s)"
    width = 30
    filled = min(width, width * done // total)
    eta = f"{(total - done) / rate:.0f}s" if rate else "--"
    return (
        f"  [{'#' * filled}{'.' * (width - filled)}] {done * 100 / total:5.1f}% "
        f"{_mib(done):.1f}/{_mib(total):.1f} MiB, eta {eta}"
    )


def download_file(url: str, destination: Path, label: str = "Downloading") -> None:
    """Stream ``url`` into ``destination``; the file only appears once the transfer is complete.

    Progress is redrawn in place when stdout is a terminal.
    """
    log("INFO", f"{label}: {url}")
    try:
        response = urlopen(Request(url, headers={"User-Agent": "dhyve"}), timeout=60)
    except HTTPError as exc:
        raise ManagerError(f"HTTP error downloading {url}: {exc.code} {exc.reason}")
    except URLError as exc:
        raise ManagerError(f"Failed to download {url}: {exc.reason}")

    length = response.headers.get("Content-Length")
    total = int(length) if length else None
    interactive = sys.stdout.isatty()
    started = time.monotonic()
    done = 0
    with contextlib.closing(response), tempfile.NamedTemporaryFile(
        delete=False, dir=destination.parent, prefix=f".{destination.name}."
    ) as tmp:
        partial = Path(tmp.name)
        try:
            for chunk in iter(lambda: response.read(256 * 1024), b""):
                tmp.write(chunk)
                done += len(chunk)
                if interactive:
                    print(f"\r{_progress_line(done, total, time.monotonic() - started)}", end="", flush=True)
            if interactive:
                print(flush=True)
        except OSError as exc:
            partial.unlink(missing_ok=True)
            raise ManagerError(f"Download of {url} interrupted after {_mib(done):.1f} MiB: {exc}")
        except BaseException:
            partial.unlink(missing_ok=True)
            raise
    if total is not None and done != total:
        partial.unlink(missing_ok=True)
        raise ManagerError(f"Download of {url} truncated: got {done} of {total} bytes")
    partial.replace(destination)
    log("SUCCESS", f"{label}: {_mib(done):.1f} MiB in {time.monotonic() - started:.1f}s")


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def atomic_write_text(path: Path, content: str) -> None:
    """Replace ``path`` with ``content`` so readers never see a half-written file."""
    try:
        with tempfile.NamedTemporaryFile("w", delete=False, dir=path.parent, prefix=f".{path.name}.") as tmp:
            tmp.write(content)
        Path(tmp.name).replace(path)
    except OSError as exc:
        raise IOFailure(f"Cannot write {path}: {exc}")


def derive_mac(seed: str) -> str:
    """Derive a stable, unicast, locally-administered MAC address from ``seed``."""
    digest = hashlib.sha256(seed.encode("utf-8")).digest()
    first = (digest[0] | 0x02) & 0xFE  # locally administered, not multicast
    octets = [first] + list(digest[1:6])
    return ":".join(f"{octet:02x}" for octet in octets)


def pid_alive(pid: int) -> bool:
    """Return True if ``pid`` refers to an existing (non-zombie child) process."""
    try:
        reaped, _ = os.waitpid(pid, os.WNOHANG)
    except ChildProcessError:
        pass  # not our child
    else:
        if reaped == pid:
            return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True  # exists, owned by someone else (e.g. root via sudo)
    except OSError as exc:
        if exc.errno == errno.ESRCH:
            return False
        raise
    return True


def process_command(pid: int) -> Optional[str]:
    """Return the full command line of ``pid`` as reported by ps, or None if unknown."""
    try:
        result = subprocess.run(
            ["ps", "-ww", "-p", str(pid), "-o", "command="],
            capture_output=True,
            text=True,
            check=False,
        )
    except FileNotFoundError:
        return None
    if result.returncode != 0:
        return ""
    return result.stdout.strip()


def run(cmd: List[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess:
    """Run command with logging."""
    log("DEBUG", f"Running: {' '.join(cmd)}")
    result = subprocess.run(cmd, check=check, text=True, **kwargs)
    return result
