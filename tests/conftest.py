"""Shared test fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

from dhyve.models import RetryPolicy, Settings, VMConfig
from dhyve.store import ConfigStore


@pytest.fixture
def vm_config() -> VMConfig:
    """Return a small VMConfig with sensible defaults."""
    return VMConfig(
        memory="1G",
        disk_size_gb=2,
        cpu_count=1,
        boot_args="",
        kernel_cmdline="earlyprintk=serial console=ttyS0 user=docker",
    )


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        home=tmp_path / "home",
        name="test-vm",
        hypervisor="xhyve",
        use_sudo=False,
        lease_file=tmp_path / "dhcpd_leases",
        guest_user="docker",
        docker_port=2376,
        kernel_url="https://example.com/vmlinuz",
        initrd_url="https://example.com/initrd.img",
        start_policy=RetryPolicy(interval=0.01, timeout=5),
        stop_policy=RetryPolicy(interval=0.01, timeout=None),
        launch_grace=0,
    )


@pytest.fixture
def store(settings) -> ConfigStore:
    return ConfigStore(settings.root)


@pytest.fixture
def initialized_store(store, vm_config) -> ConfigStore:
    store.create_identity()
    store.save_config(vm_config)
    return store


@pytest.fixture
def write_leases():
    """Write lease records given as (ip, mac) tuples in the bootpd layout."""

    def _write(path: Path, *records) -> None:
        lines = []
        for ip, mac in records:
            lines.append("{")
            lines.append("\tname=boot2docker")
            if ip is not None:
                lines.append(f"\tip_address={ip}")
            if mac is not None:
                lines.append(f"\thw_address=1,{mac}")
                lines.append(f"\tidentifier=1,{mac}")
            lines.append("\tlease=0x5c1e4f2a")
            lines.append("}")
        path.write_text("\n".join(lines) + "\n")

    return _write


# All environment variables that load_settings()/build_vm_config() read.
_DHYVE_ENV_VARS = [
    "DHYVE_HOME",
    "DHYVE_NAME",
    "DHYVE_HYPERVISOR",
    "DHYVE_SUDO",
    "DHYVE_LEASE_FILE",
    "DHYVE_GUEST_USER",
    "DHYVE_DOCKER_PORT",
    "DHYVE_START_TIMEOUT",
    "DHYVE_POLL_INTERVAL",
    "DHYVE_STOP_INTERVAL",
    "DHYVE_STOP_TIMEOUT",
    "DHYVE_KERNEL_URL",
    "DHYVE_INITRD_URL",
    "DHYVE_MEMORY",
    "DHYVE_DISK_SIZE",
    "DHYVE_CPUS",
    "DHYVE_BOOT_ARGS",
    "DHYVE_KERNEL_CMDLINE",
    "DHYVE_UUID2MAC",
]


@pytest.fixture
def clean_env(monkeypatch):
    """Clear all environment variables dhyve reads."""
    for key in _DHYVE_ENV_VARS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setattr("dhyve.config.shutil.which", lambda name: None)
