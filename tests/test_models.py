"""Tests for dhyve.models module."""

from __future__ import annotations

from pathlib import Path

from dhyve.models import RetryPolicy, Settings, VMState, VMStatus


class TestVMStatus:
    def test_running(self):
        assert VMStatus(VMState.RUNNING, pid=42, ip="192.168.64.2").describe() == "running (pid 42, ip 192.168.64.2)"

    def test_starting(self):
        assert "waiting for a DHCP lease" in VMStatus(VMState.STARTING, pid=42).describe()

    def test_crashed(self):
        assert VMStatus(VMState.CRASHED, pid=42).describe() == "crashed (stale pid 42)"

    def test_plain_states(self):
        assert VMStatus(VMState.STOPPED).describe() == "stopped"
        assert VMStatus(VMState.UNINITIALIZED).describe() == "not initialized"


class TestRetryPolicy:
    def test_unbounded_by_default(self):
        assert RetryPolicy(interval=1).timeout is None


def test_settings_root_combines_home_and_name():
    settings = Settings(
        home=Path("/tmp/dhyve-home"),
        name="dev",
        hypervisor="xhyve",
        use_sudo=False,
        lease_file=Path("/var/db/dhcpd_leases"),
        guest_user="docker",
        docker_port=2376,
        kernel_url="k",
        initrd_url="i",
        start_policy=RetryPolicy(1, 300),
        stop_policy=RetryPolicy(0.5),
    )
    assert settings.root == Path("/tmp/dhyve-home/dev")
