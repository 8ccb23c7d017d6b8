"""Settings and VM configuration parsing for dhyve."""

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path
from typing import Callable, Optional

from dhyve.constants import (
    DEFAULT_CPUS,
    DEFAULT_DISK_SIZE_GB,
    DEFAULT_DOCKER_PORT,
    DEFAULT_GUEST_USER,
    DEFAULT_HOME,
    DEFAULT_HYPERVISOR,
    DEFAULT_INITRD_URL,
    DEFAULT_KERNEL_CMDLINE,
    DEFAULT_KERNEL_URL,
    DEFAULT_LEASE_FILE,
    DEFAULT_MEMORY,
    DEFAULT_POLL_INTERVAL,
    DEFAULT_START_TIMEOUT,
    DEFAULT_STOP_INTERVAL,
    DEFAULT_VM_NAME,
    LAUNCH_GRACE_PERIOD,
    UUID2MAC_HELPER,
)
from dhyve.exceptions import ManagerError, SubprocessLaunchFailure
from dhyve.models import RetryPolicy, Settings, VMConfig
from dhyve.store import ConfigStore
from dhyve.utils import (
    get_env,
    get_env_bool,
    parse_float_env,
    parse_int,
    parse_int_env,
    run,
    validate_memory,
)


def load_settings(home: Optional[str] = None, name: Optional[str] = None) -> Settings:
    """Build runtime settings from the environment; explicit arguments win."""
    home_raw = home or get_env("DHYVE_HOME")
    home_path = Path(home_raw).expanduser() if home_raw else DEFAULT_HOME
    vm_name = (name or get_env("DHYVE_NAME") or DEFAULT_VM_NAME).strip()
    if not vm_name or "/" in vm_name or vm_name.startswith("."):
        raise ManagerError(f"Invalid VM name '{vm_name}'")

    start_timeout = parse_float_env("DHYVE_START_TIMEOUT", str(DEFAULT_START_TIMEOUT))
    poll_interval = parse_float_env("DHYVE_POLL_INTERVAL", str(DEFAULT_POLL_INTERVAL))
    stop_interval = parse_float_env("DHYVE_STOP_INTERVAL", str(DEFAULT_STOP_INTERVAL))
    stop_timeout = parse_float_env("DHYVE_STOP_TIMEOUT", None)

    # without a helper the store falls back to derive_mac
    uuid2mac = (get_env("DHYVE_UUID2MAC") or "").strip() or shutil.which(UUID2MAC_HELPER)

    return Settings(
        home=home_path,
        name=vm_name,
        hypervisor=(get_env("DHYVE_HYPERVISOR") or DEFAULT_HYPERVISOR).strip(),
        use_sudo=get_env_bool("DHYVE_SUDO", False),
        lease_file=Path(get_env("DHYVE_LEASE_FILE") or str(DEFAULT_LEASE_FILE)),
        guest_user=(get_env("DHYVE_GUEST_USER") or DEFAULT_GUEST_USER).strip(),
        docker_port=parse_int_env("DHYVE_DOCKER_PORT", str(DEFAULT_DOCKER_PORT), min_val=1, max_val=65535),
        kernel_url=get_env("DHYVE_KERNEL_URL") or DEFAULT_KERNEL_URL,
        initrd_url=get_env("DHYVE_INITRD_URL") or DEFAULT_INITRD_URL,
        start_policy=RetryPolicy(interval=poll_interval or DEFAULT_POLL_INTERVAL, timeout=start_timeout),
        stop_policy=RetryPolicy(interval=stop_interval or DEFAULT_STOP_INTERVAL, timeout=stop_timeout),
        uuid2mac=uuid2mac,
        launch_grace=LAUNCH_GRACE_PERIOD,
    )


def build_vm_config(
    memory: Optional[str] = None,
    disk_size_gb: Optional[str] = None,
    cpu_count: Optional[str] = None,
    boot_args: Optional[str] = None,
) -> VMConfig:
    """Resolve ``init`` options, falling back to DHYVE_* variables and then defaults."""
    memory_raw = (memory or get_env("DHYVE_MEMORY") or DEFAULT_MEMORY).strip()
    disk_raw = str(disk_size_gb or get_env("DHYVE_DISK_SIZE") or DEFAULT_DISK_SIZE_GB).strip()
    cpus_raw = str(cpu_count or get_env("DHYVE_CPUS") or DEFAULT_CPUS).strip()
    return VMConfig(
        memory=validate_memory(memory_raw),
        disk_size_gb=parse_int("disk size", disk_raw, min_val=1, max_val=2048),
        cpu_count=parse_int("cpu count", cpus_raw, min_val=1, max_val=64),
        boot_args=(boot_args if boot_args is not None else get_env("DHYVE_BOOT_ARGS", "")) or "",
        kernel_cmdline=get_env("DHYVE_KERNEL_CMDLINE") or DEFAULT_KERNEL_CMDLINE,
    )


def uuid2mac_factory(helper: str) -> Callable[[str], str]:
    """Ask an external helper (e.g. vmnet's uuid2mac) which MAC the hypervisor will use."""

    def _derive(vm_uuid: str) -> str:
        try:
            result = run([helper, vm_uuid], capture_output=True)
        except FileNotFoundError:
            raise SubprocessLaunchFailure(f"{helper} not found (DHYVE_UUID2MAC)")
        except subprocess.CalledProcessError as exc:
            raise SubprocessLaunchFailure(f"{helper} failed: {(exc.stderr or '').strip()}")
        return result.stdout.strip()

    return _derive


def make_store(settings: Settings) -> ConfigStore:
    mac_factory = uuid2mac_factory(settings.uuid2mac) if settings.uuid2mac else None
    return ConfigStore(settings.root, mac_factory=mac_factory)
