"""Data models for dhyve."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


@dataclass(frozen=True)
class VMIdentity:
    uuid: str
    mac: str


@dataclass
class VMConfig:
    memory: str
    disk_size_gb: int
    cpu_count: int
    boot_args: str = ""
    kernel_cmdline: str = ""


@dataclass
class RetryPolicy:
    interval: float
    timeout: Optional[float] = None  # None waits forever


class VMState(str, enum.Enum):
    UNINITIALIZED = "not initialized"
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    CRASHED = "crashed"


@dataclass
class VMStatus:
    state: VMState
    pid: Optional[int] = None
    ip: Optional[str] = None

    def describe(self) -> str:
        if self.state == VMState.RUNNING:
            return f"running (pid {self.pid}, ip {self.ip})"
        if self.state == VMState.STARTING:
            return f"starting (pid {self.pid}, waiting for a DHCP lease)"
        if self.state == VMState.CRASHED:
            return f"crashed (stale pid {self.pid})"
        return self.state.value


@dataclass
class Settings:
    home: Path
    name: str
    hypervisor: str
    use_sudo: bool
    lease_file: Path
    guest_user: str
    docker_port: int
    kernel_url: str
    initrd_url: str
    start_policy: RetryPolicy
    stop_policy: RetryPolicy
    uuid2mac: Optional[str] = None
    launch_grace: float = 0.5

    @property
    def root(self) -> Path:
        return self.home / self.name
