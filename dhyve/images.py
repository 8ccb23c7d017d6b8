"""Boot image, key pair and data disk provisioning for dhyve."""

from __future__ import annotations

import io
import subprocess
import tarfile
import time
from pathlib import Path

from dhyve.constants import DISK_FORMAT_MAGIC
from dhyve.exceptions import AlreadyExists, AlreadyRunning, IOFailure, ManagerError, SubprocessLaunchFailure
from dhyve.models import Settings, VMConfig
from dhyve.store import ConfigStore
from dhyve.utils import download_file, ensure_directory, log, pid_alive, run


def download_boot_images(store: ConfigStore, settings: Settings) -> None:
    """Fetch kernel and initrd; existing images are replaced only once both arrived."""
    pending = [
        (settings.kernel_url, store.kernel_path, "Downloading kernel"),
        (settings.initrd_url, store.initrd_path, "Downloading initrd"),
    ]
    fetched = []
    try:
        for url, target, label in pending:
            partial = target.with_name(f".{target.name}.new")
            download_file(url, partial, label=label)
            fetched.append((partial, target))
        for partial, target in fetched:
            partial.replace(target)
    finally:
        for partial, _ in fetched:
            partial.unlink(missing_ok=True)


def generate_keypair(private_key: Path) -> None:
    """Create a passphrase-less RSA key pair used for ssh/scp into the guest."""
    private_key.unlink(missing_ok=True)
    private_key.with_suffix(".pub").unlink(missing_ok=True)
    try:
        run(
            ["ssh-keygen", "-t", "rsa", "-b", "4096", "-N", "", "-q", "-C", "dhyve", "-f", str(private_key)],
            capture_output=True,
        )
    except FileNotFoundError:
        raise SubprocessLaunchFailure("ssh-keygen not found; install an OpenSSH client")
    except subprocess.CalledProcessError as exc:
        raise SubprocessLaunchFailure(f"ssh-keygen failed: {(exc.stderr or '').strip()}")


def create_disk_image(path: Path, size_gb: int, public_key: Path) -> None:
    """Write a sparse data disk that the guest formats on first boot.

    The guest looks for the format marker at offset 0 and extracts the tar
    stream that follows into the docker user's home, which is how our public
    key reaches ``~/.ssh/authorized_keys``.
    """
    try:
        key = public_key.read_bytes()
    except OSError as exc:
        raise IOFailure(f"Cannot read {public_key}: {exc}")

    archive = io.BytesIO()
    with tarfile.open(fileobj=archive, mode="w") as tar:
        now = time.time()
        ssh_dir = tarfile.TarInfo(".ssh")
        ssh_dir.type = tarfile.DIRTYPE
        ssh_dir.mode = 0o700
        ssh_dir.mtime = now
        tar.addfile(ssh_dir)
        for name in ("authorized_keys", "authorized_keys2"):
            info = tarfile.TarInfo(f".ssh/{name}")
            info.size = len(key)
            info.mode = 0o600
            info.mtime = now
            tar.addfile(info, io.BytesIO(key))

    try:
        with open(path, "wb") as disk:
            disk.write(DISK_FORMAT_MAGIC)
            disk.write(archive.getvalue())
            disk.truncate(size_gb * 1024**3)
    except OSError as exc:
        raise IOFailure(f"Cannot create disk image {path}: {exc}")
    log("INFO", f"Created {size_gb}G data disk")


def initialize(store: ConfigStore, cfg: VMConfig, settings: Settings, force: bool = False) -> None:
    """Create a VM from scratch; nothing is published unless every step succeeds."""
    with store.lock():
        if store.is_initialized():
            if not force:
                raise AlreadyExists(f"VM already initialized at {store.root} (use --force to recreate it)")
            pid = store.read_pid()
            if pid is not None and pid_alive(pid):
                raise AlreadyRunning(f"VM is running (pid {pid}); stop it before re-initializing")

        log("INFO", f"Initializing VM in {store.root}")
        with store.staging() as stage:
            identity = stage.create_identity()
            log("INFO", f"UUID: {identity.uuid}  MAC: {identity.mac}")
            stage.save_config(cfg)
            ensure_directory(stage.certs_dir)
            generate_keypair(stage.private_key)
            create_disk_image(stage.disk_path, cfg.disk_size_gb, stage.public_key)
            download_boot_images(stage, settings)
        log("SUCCESS", f"VM initialized (memory={cfg.memory}, cpus={cfg.cpu_count}, disk={cfg.disk_size_gb}G)")


def upgrade(store: ConfigStore, settings: Settings) -> None:
    """Replace the boot images of a stopped VM with the latest release."""
    with store.lock():
        store.load_identity()
        pid = store.read_pid()
        if pid is not None and pid_alive(pid):
            raise AlreadyRunning(f"VM is running (pid {pid}); stop it before upgrading")
        try:
            download_boot_images(store, settings)
        except ManagerError:
            log("WARN", "Upgrade failed; the previous boot images were kept")
            raise
        log("SUCCESS", "Boot images upgraded")
