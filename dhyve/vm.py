"""Hypervisor process lifecycle for dhyve."""

from __future__ import annotations

import os
import signal
import subprocess
import time
from typing import Callable, List, Optional

from dhyve.constants import INITRD_FILE, KERNEL_FILE
from dhyve.exceptions import (
    AlreadyRunning,
    ManagerError,
    NotRunning,
    OperationCancelled,
    StartupTimeout,
    SubprocessLaunchFailure,
)
from dhyve.leases import LeaseResolver
from dhyve.models import RetryPolicy, Settings, VMIdentity, VMState, VMStatus
from dhyve.remote import copy_certs
from dhyve.store import ConfigStore
from dhyve.utils import log, pid_alive, process_command, run


class VMController:
    """Start, stop and inspect the hypervisor recorded in a :class:`ConfigStore`.

    States move ``Stopped -> Starting -> Running -> Stopping -> Stopped``.
    ``Stopping`` only lasts while :meth:`stop` holds the lock, so
    :meth:`status` never reports it.
    The pid file is the only shared state: it is written as soon as the
    hypervisor is spawned and removed only once the process is confirmed
    gone, so a VM that is still booting (or whose readiness wait was
    interrupted) stays discoverable by ``status``.
    """

    def __init__(
        self,
        store: ConfigStore,
        settings: Settings,
        resolver: Optional[Callable[[str], Optional[str]]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.resolver = resolver or LeaseResolver(settings.lease_file)

    # Queries ---------------------------------------------------------------

    def ip_address(self) -> Optional[str]:
        identity = self.store.load_identity()
        return self.resolver(identity.mac)

    def is_hypervisor(self, pid: int, identity: VMIdentity) -> bool:
        """Return True if ``pid`` is alive and is the hypervisor launched for ``identity``."""
        if not pid_alive(pid):
            return False
        command = process_command(pid)
        if command is None:
            # ps unavailable; liveness is the best we can do
            return True
        return identity.uuid in command

    def status(self) -> VMStatus:
        if not self.store.is_initialized():
            return VMStatus(VMState.UNINITIALIZED)
        pid = self.store.read_pid()
        if pid is None:
            return VMStatus(VMState.STOPPED)
        identity = self.store.load_identity()
        if not self.is_hypervisor(pid, identity):
            return VMStatus(VMState.CRASHED, pid=pid)
        ip = self.resolver(identity.mac)
        if ip is None:
            return VMStatus(VMState.STARTING, pid=pid)
        return VMStatus(VMState.RUNNING, pid=pid, ip=ip)

    # Transitions ---------------------------------------------------------

    def build_command(self) -> List[str]:
        cmdline = self.store.kernel_cmdline()
        cmd = [self.settings.hypervisor, *self.store.hypervisor_args()]
        cmd += ["-f", f"kexec,{KERNEL_FILE},{INITRD_FILE},{cmdline}"]
        if self.settings.use_sudo:
            cmd = ["sudo", *cmd]
        return cmd

    def start(self) -> VMStatus:
        with self.store.lock():
            identity = self.store.load_identity()
            pid = self.store.read_pid()
            if pid is not None:
                if self.is_hypervisor(pid, identity):
                    raise AlreadyRunning(f"VM is already running (pid {pid})")
                log("WARN", f"Removing stale pid file (pid {pid} is not running)")
                self.store.clear_pid()

            proc = self._launch(self.build_command())
            self.store.write_pid(proc.pid)
            log("INFO", f"Hypervisor started (pid {proc.pid})")
            self._assert_running(proc)

            ip = self.wait_until_ready(identity)
            log("SUCCESS", f"VM is running at {ip}")
            return VMStatus(VMState.RUNNING, pid=proc.pid, ip=ip)

    def _launch(self, cmd: List[str]) -> subprocess.Popen:
        log("DEBUG", f"Running: {' '.join(cmd)}")
        try:
            with open(self.store.console_log, "ab") as console:
                return subprocess.Popen(
                    cmd,
                    cwd=self.store.root,
                    stdin=subprocess.DEVNULL,
                    stdout=console,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
        except OSError as exc:
            raise SubprocessLaunchFailure(f"Failed to launch {cmd[0]}: {exc}")

    def _assert_running(self, proc: subprocess.Popen) -> None:
        time.sleep(self.settings.launch_grace)
        if proc.poll() is None:
            return
        self.store.clear_pid()
        tail = ""
        try:
            tail = self.store.console_log.read_text(errors="replace")[-2000:].strip()
        except OSError:
            pass
        if tail:
            log("ERROR", f"Hypervisor output:\n{tail}")
        raise SubprocessLaunchFailure(f"Hypervisor exited prematurely (code {proc.returncode})")

    def wait_until_ready(self, identity: VMIdentity) -> str:
        """Poll for a DHCP lease, then for the guest's TLS credentials."""
        policy: RetryPolicy = self.settings.start_policy
        deadline = None if policy.timeout is None else time.monotonic() + policy.timeout
        log("INFO", "Waiting for the guest to acquire an IP address...")
        ip: Optional[str] = None
        try:
            while True:
                if ip is None:
                    ip = self.resolver(identity.mac)
                    if ip is not None:
                        log("INFO", f"Guest leased {ip}; fetching docker TLS credentials...")
                if ip is not None and copy_certs(self.store, ip, self.settings.guest_user):
                    return ip
                if deadline is not None and time.monotonic() >= deadline:
                    waited = "TLS credentials" if ip else "a DHCP lease"
                    raise StartupTimeout(
                        f"Guest did not provide {waited} within {int(policy.timeout or 0)}s "
                        "(the VM may still be booting; check 'dhyve status')"
                    )
                time.sleep(policy.interval)
        except KeyboardInterrupt:
            raise OperationCancelled("Interrupted while waiting for the guest; the VM is still starting")

    def stop(self) -> None:
        with self.store.lock():
            pid = self.store.read_pid()
            if pid is None:
                raise NotRunning("VM is not running")
            identity = self.store.load_identity()
            if not self.is_hypervisor(pid, identity):
                log("WARN", f"Pid {pid} is no longer this VM's hypervisor; removing stale pid file")
                self.store.clear_pid()
                return

            log("INFO", f"Stopping VM (pid {pid})")
            self._signal(pid, signal.SIGTERM)
            self._wait_for_exit(pid)
            self.store.clear_pid()
            log("SUCCESS", "VM stopped")

    def _signal(self, pid: int, signum: int) -> None:
        if not self.settings.use_sudo:
            try:
                os.kill(pid, signum)
                return
            except ProcessLookupError:
                return
            except PermissionError:
                log("DEBUG", f"Not permitted to signal pid {pid}; retrying with sudo")
        run(["sudo", "kill", f"-{int(signum)}", str(pid)], check=False)

    def _wait_for_exit(self, pid: int) -> None:
        policy: RetryPolicy = self.settings.stop_policy
        deadline = None if policy.timeout is None else time.monotonic() + policy.timeout
        try:
            while pid_alive(pid):
                if deadline is not None and time.monotonic() >= deadline:
                    raise ManagerError(
                        f"Hypervisor (pid {pid}) did not exit within {int(policy.timeout or 0)}s; still stopping"
                    )
                time.sleep(policy.interval)
        except KeyboardInterrupt:
            raise OperationCancelled(f"Interrupted while waiting for pid {pid} to exit; the VM is still stopping")
