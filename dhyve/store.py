"""On-disk identity, configuration and runtime state of one VM."""

from __future__ import annotations

import contextlib
import dataclasses
import fcntl
import shlex
import shutil
import tempfile
import uuid as uuidlib
from pathlib import Path
from typing import Callable, Iterator, List, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from dhyve.constants import (
    ARGS_FILE,
    CERTS_DIR,
    CMDLINE_FILE,
    CONFIG_FILE,
    CONSOLE_LOG_FILE,
    DISK_FILE,
    IDENTITY_FILE,
    INITRD_FILE,
    KERNEL_FILE,
    MAC_ADDRESS_RE,
    PID_FILE,
    PRIVATE_KEY_FILE,
    PUBLIC_KEY_FILE,
)
from dhyve.exceptions import AlreadyExists, IOFailure, LockBusy, ManagerError, NotInitialized
from dhyve.models import VMConfig, VMIdentity
from dhyve.utils import atomic_write_text, derive_mac, ensure_directory, log


class ConfigStore:
    """Owns every file under one VM config root.

    Nothing in dhyve reads a global path: the controller, provisioning and CLI
    all receive a store, so several named VMs can live side by side and tests
    can point a store at a temporary directory.
    """

    def __init__(self, root: Path, mac_factory: Optional[Callable[[str], str]] = None) -> None:
        self.root = Path(root)
        self.mac_factory = mac_factory or derive_mac

    # Paths -----------------------------------------------------------------

    @property
    def identity_path(self) -> Path:
        return self.root / IDENTITY_FILE

    @property
    def config_path(self) -> Path:
        return self.root / CONFIG_FILE

    @property
    def args_path(self) -> Path:
        return self.root / ARGS_FILE

    @property
    def cmdline_path(self) -> Path:
        return self.root / CMDLINE_FILE

    @property
    def pid_path(self) -> Path:
        return self.root / PID_FILE

    @property
    def private_key(self) -> Path:
        return self.root / PRIVATE_KEY_FILE

    @property
    def public_key(self) -> Path:
        return self.root / PUBLIC_KEY_FILE

    @property
    def certs_dir(self) -> Path:
        return self.root / CERTS_DIR

    @property
    def kernel_path(self) -> Path:
        return self.root / KERNEL_FILE

    @property
    def initrd_path(self) -> Path:
        return self.root / INITRD_FILE

    @property
    def disk_path(self) -> Path:
        return self.root / DISK_FILE

    @property
    def console_log(self) -> Path:
        return self.root / CONSOLE_LOG_FILE

    @property
    def lock_path(self) -> Path:
        # Sibling of the root so the lock outlives the rename done by staging().
        return self.root.parent / f".{self.root.name}.lock"

    # Identity / configuration ------------------------------------------------

    def is_initialized(self) -> bool:
        return self.identity_path.is_file()

    def create_identity(self, overwrite: bool = False) -> VMIdentity:
        if self.is_initialized() and not overwrite:
            raise AlreadyExists(f"VM already initialized at {self.root} (use --force to recreate it)")
        vm_uuid = str(uuidlib.uuid4())
        mac = self.mac_factory(vm_uuid).lower()
        if not MAC_ADDRESS_RE.match(mac):
            raise ManagerError(f"Invalid MAC address '{mac}' derived for {vm_uuid}")
        identity = VMIdentity(uuid=vm_uuid, mac=mac)
        ensure_directory(self.root)
        self._write_yaml(self.identity_path, dataclasses.asdict(identity))
        log("DEBUG", f"Created identity uuid={identity.uuid} mac={identity.mac}")
        return identity

    def load_identity(self) -> VMIdentity:
        data = self._read_yaml(self.identity_path)
        try:
            return VMIdentity(uuid=str(data["uuid"]), mac=str(data["mac"]))
        except (KeyError, TypeError):
            raise IOFailure(f"Malformed identity file {self.identity_path}")

    def save_config(self, cfg: VMConfig) -> None:
        """Persist ``cfg`` and the hypervisor arguments rendered from it, replacing any prior copy."""
        identity = self.load_identity()
        self._write_yaml(self.config_path, dataclasses.asdict(cfg))
        args = render_hypervisor_args(cfg, identity)
        atomic_write_text(self.args_path, "\n".join(args) + "\n")
        atomic_write_text(self.cmdline_path, cfg.kernel_cmdline.strip() + "\n")

    def load_config(self) -> VMConfig:
        if not self.is_initialized():
            raise NotInitialized(f"VM not initialized at {self.root} (run 'dhyve init' first)")
        data = self._read_yaml(self.config_path)
        try:
            return VMConfig(**data)
        except TypeError:
            raise IOFailure(f"Malformed config file {self.config_path}")

    def hypervisor_args(self) -> List[str]:
        text = self._read_text(self.args_path)
        return [line for line in text.splitlines() if line.strip()]

    def kernel_cmdline(self) -> str:
        return self._read_text(self.cmdline_path).strip()

    # Runtime state -----------------------------------------------------------

    def read_pid(self) -> Optional[int]:
        try:
            raw = self.pid_path.read_text().strip()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise IOFailure(f"Cannot read {self.pid_path}: {exc}")
        try:
            pid = int(raw)
        except ValueError:
            log("WARN", f"Ignoring malformed pid file {self.pid_path}: '{raw}'")
            return None
        return pid if pid > 0 else None

    def write_pid(self, pid: int) -> None:
        atomic_write_text(self.pid_path, f"{pid}\n")

    def clear_pid(self) -> None:
        try:
            self.pid_path.unlink(missing_ok=True)
        except OSError as exc:
            raise IOFailure(f"Cannot remove {self.pid_path}: {exc}")

    # Whole-root operations -----------------------------------------------

    @contextlib.contextmanager
    def lock(self) -> Iterator[None]:
        """Hold an exclusive advisory lock for the duration of a state transition."""
        ensure_directory(self.lock_path.parent)
        fh = open(self.lock_path, "a")
        try:
            try:
                fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                raise LockBusy(f"Another dhyve command is already operating on {self.root}")
            try:
                yield
            finally:
                fcntl.flock(fh.fileno(), fcntl.LOCK_UN)
        finally:
            fh.close()

    @contextlib.contextmanager
    def staging(self) -> Iterator["ConfigStore"]:
        """Build a replacement root aside and publish it only if the block succeeds."""
        ensure_directory(self.root.parent)
        stage_dir = Path(tempfile.mkdtemp(prefix=f".{self.root.name}-staging-", dir=self.root.parent))
        try:
            yield ConfigStore(stage_dir, mac_factory=self.mac_factory)
        except BaseException:
            shutil.rmtree(stage_dir, ignore_errors=True)
            raise
        self._publish(stage_dir)

    def _publish(self, stage_dir: Path) -> None:
        retired: Optional[Path] = None
        try:
            if self.root.exists():
                retired = Path(tempfile.mkdtemp(prefix=f".{self.root.name}-old-", dir=self.root.parent))
                self.root.rename(retired / self.root.name)
            stage_dir.rename(self.root)
        except OSError as exc:
            if retired is not None and not self.root.exists():
                (retired / self.root.name).rename(self.root)
                retired.rmdir()
            shutil.rmtree(stage_dir, ignore_errors=True)
            raise IOFailure(f"Cannot publish {self.root}: {exc}")
        if retired is not None:
            shutil.rmtree(retired, ignore_errors=True)

    def destroy(self) -> None:
        """Delete the root and its lock file; callers hold :meth:`lock`."""
        if not self.root.exists():
            raise NotInitialized(f"Nothing to destroy at {self.root}")
        try:
            shutil.rmtree(self.root)
            self.lock_path.unlink(missing_ok=True)
        except OSError as exc:
            raise IOFailure(f"Cannot remove {self.root}: {exc}")

    # Helpers -------------------------------------------------------------

    def _read_text(self, path: Path) -> str:
        try:
            return path.read_text()
        except FileNotFoundError:
            raise NotInitialized(f"VM not initialized at {self.root} (run 'dhyve init' first)")
        except OSError as exc:
            raise IOFailure(f"Cannot read {path}: {exc}")

    def _read_yaml(self, path: Path) -> dict:
        text = self._read_text(path)
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise IOFailure(f"{path} contains invalid YAML: {exc}")
        if not isinstance(data, dict):
            raise IOFailure(f"{path} should contain a YAML mapping, got {type(data).__name__}")
        return data

    def _write_yaml(self, path: Path, data: dict) -> None:
        atomic_write_text(path, yaml.safe_dump(data, default_flow_style=False, sort_keys=False))


def render_hypervisor_args(cfg: VMConfig, identity: VMIdentity) -> List[str]:
    """Hypervisor flags for ``cfg``; paths are relative to the config root."""
    args = [
        "-A",
        "-m", cfg.memory,
        "-c", str(cfg.cpu_count),
        "-s", "0:0,hostbridge",
        "-s", "31,lpc",
        "-l", "com1,stdio",
        "-s", f"2:0,virtio-net,mac={identity.mac}",
        "-s", f"4,virtio-blk,{DISK_FILE}",
        "-U", identity.uuid,
    ]
    if cfg.boot_args.strip():
        args.extend(shlex.split(cfg.boot_args))
    return args
