"""ssh/scp access to the guest."""

from __future__ import annotations

import signal
import subprocess
from typing import Dict, List, Optional, Sequence

from dhyve.constants import CERT_FILES, GUEST_CERT_DIR
from dhyve.exceptions import SubprocessLaunchFailure
from dhyve.store import ConfigStore
from dhyve.utils import ensure_directory, log, run


def ssh_options(store: ConfigStore) -> List[str]:
    # The guest regenerates its host key on every boot; the generated key
    # pair and the host-only network are what we trust instead.
    return [
        "-i", str(store.private_key),
        "-o", "StrictHostKeyChecking=no",
        "-o", "UserKnownHostsFile=/dev/null",
        "-o", "LogLevel=quiet",
        "-o", "ConnectTimeout=5",
        "-o", "IdentitiesOnly=yes",
    ]


def copy_certs(store: ConfigStore, ip: str, user: str) -> bool:
    """Fetch the docker client credentials from the guest; False if it is not ready yet."""
    ensure_directory(store.certs_dir)
    sources = [f"{user}@{ip}:{GUEST_CERT_DIR}/{name}" for name in CERT_FILES]
    cmd = ["scp", "-q", *ssh_options(store), *sources, str(store.certs_dir)]
    try:
        result = run(cmd, check=False, capture_output=True, timeout=30)
    except subprocess.TimeoutExpired:
        log("DEBUG", f"scp from {ip} timed out")
        return False
    except FileNotFoundError:
        raise SubprocessLaunchFailure("scp not found; install an OpenSSH client")
    if result.returncode != 0:
        log("DEBUG", f"scp from {ip} failed ({result.returncode}): {(result.stderr or '').strip()}")
        return False
    return all((store.certs_dir / name).is_file() for name in CERT_FILES)


def ssh_command(store: ConfigStore, ip: str, user: str, command: Optional[Sequence[str]] = None) -> List[str]:
    cmd = ["ssh", *ssh_options(store)]
    if command:
        cmd.append("-t")
    cmd.append(f"{user}@{ip}")
    cmd.extend(command or [])
    return cmd


def run_ssh(store: ConfigStore, ip: str, user: str, command: Optional[Sequence[str]] = None) -> int:
    """Attach an interactive ssh session (or run ``command``) and return its exit status."""
    cmd = ssh_command(store, ip, user, command)
    log("DEBUG", f"Running: {' '.join(cmd)}")
    try:
        proc = subprocess.Popen(cmd)
    except FileNotFoundError:
        raise SubprocessLaunchFailure("ssh not found; install an OpenSSH client")

    def _terminate_session(signum, frame):
        proc.terminate()

    prev_sigterm = signal.signal(signal.SIGTERM, _terminate_session)
    try:
        return proc.wait()
    except KeyboardInterrupt:
        proc.send_signal(signal.SIGINT)
        return proc.wait()
    finally:
        signal.signal(signal.SIGTERM, prev_sigterm)


def docker_env(store: ConfigStore, ip: str, port: int) -> Dict[str, str]:
    return {
        "DOCKER_HOST": f"tcp://{ip}:{port}",
        "DOCKER_CERT_PATH": str(store.certs_dir),
        "DOCKER_TLS_VERIFY": "1",
    }
