"""CLI entry points for dhyve."""

from __future__ import annotations

import argparse
import dataclasses
import shlex
from typing import List, Optional

from dhyve.config import build_vm_config, load_settings, make_store
from dhyve.exceptions import ManagerError, NotRunning
from dhyve.images import initialize, upgrade
from dhyve.models import Settings, VMState
from dhyve.remote import docker_env, run_ssh
from dhyve.store import ConfigStore
from dhyve.utils import log
from dhyve.vm import VMController


def cmd_init(args: argparse.Namespace, store: ConfigStore, settings: Settings) -> int:
    cfg = build_vm_config(memory=args.memory, disk_size_gb=args.disk, cpu_count=args.cpus)
    initialize(store, cfg, settings, force=args.force)
    return 0


def cmd_up(args: argparse.Namespace, store: ConfigStore, settings: Settings) -> int:
    controller = VMController(store, settings)
    status = controller.start()
    print(f"dhyve {settings.name}: {status.describe()}")
    print(f"Run 'eval $(dhyve --name {settings.name} env)' to point docker at the VM")
    return 0


def cmd_down(args: argparse.Namespace, store: ConfigStore, settings: Settings) -> int:
    VMController(store, settings).stop()
    return 0


def cmd_status(args: argparse.Namespace, store: ConfigStore, settings: Settings) -> int:
    status = VMController(store, settings).status()
    print(status.describe())
    return 0


def _running_ip(store: ConfigStore, settings: Settings) -> str:
    status = VMController(store, settings).status()
    if status.state == VMState.UNINITIALIZED:
        store.load_identity()  # raises NotInitialized
    if status.state not in (VMState.RUNNING, VMState.STARTING):
        raise NotRunning(f"VM is {status.describe()}; run 'dhyve up' first")
    if not status.ip:
        raise NotRunning("VM has not acquired an IP address yet")
    return status.ip


def cmd_ssh(args: argparse.Namespace, store: ConfigStore, settings: Settings) -> int:
    ip = _running_ip(store, settings)
    return run_ssh(store, ip, settings.guest_user, args.command)


def cmd_env(args: argparse.Namespace, store: ConfigStore, settings: Settings) -> int:
    ip = _running_ip(store, settings)
    for key, value in docker_env(store, ip, settings.docker_port).items():
        print(f"export {key}={shlex.quote(value)}")
    print("# Run this command to configure your shell:")
    print(f"# eval $(dhyve --name {settings.name} env)")
    return 0


def cmd_config(args: argparse.Namespace, store: ConfigStore, settings: Settings) -> int:
    identity = store.load_identity()
    cfg = store.load_config()
    print(f"  root: {store.root}")
    for name, value in dataclasses.asdict(identity).items():
        print(f"  {name}: {value}")
    for name, value in dataclasses.asdict(cfg).items():
        print(f"  {name}: {value}")
    return 0


def cmd_destroy(args: argparse.Namespace, store: ConfigStore, settings: Settings) -> int:
    controller = VMController(store, settings)
    if controller.status().state in (VMState.RUNNING, VMState.STARTING):
        controller.stop()
    with store.lock():
        store.destroy()
    log("SUCCESS", f"Removed {store.root}")
    return 0


def cmd_upgrade(args: argparse.Namespace, store: ConfigStore, settings: Settings) -> int:
    upgrade(store, settings)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="dhyve", description="Run a docker host VM on xhyve")
    parser.add_argument("--home", help="Directory holding VM config roots (default: $DHYVE_HOME or ~/.dhyve)")
    parser.add_argument("--name", help="VM name (default: $DHYVE_NAME or 'default')")
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")
    sub.required = True

    init = sub.add_parser("init", help="Create the VM: identity, disk, keys and boot images")
    init.add_argument("-m", "--memory", help="Memory size, e.g. 1G or 2048M")
    init.add_argument("-d", "--disk", help="Data disk size in GiB")
    init.add_argument("-c", "--cpus", help="Number of virtual CPUs")
    init.add_argument("-f", "--force", action="store_true", help="Recreate an existing VM")
    init.set_defaults(func=cmd_init)

    for names, func, text in (
        (("up", "start"), cmd_up, "Start the VM and wait until docker is reachable"),
        (("down", "stop"), cmd_down, "Stop the VM"),
    ):
        p = sub.add_parser(names[0], aliases=list(names[1:]), help=text)
        p.set_defaults(func=func)

    sub.add_parser("status", help="Show whether the VM is running").set_defaults(func=cmd_status)
    ssh = sub.add_parser("ssh", help="Open a shell (or run a command) in the VM")
    ssh.add_argument("command", nargs=argparse.REMAINDER, help="Command to run instead of a shell")
    ssh.set_defaults(func=cmd_ssh)
    sub.add_parser("env", help="Print shell exports for the docker client").set_defaults(func=cmd_env)
    sub.add_parser("config", help="Show the persisted VM configuration").set_defaults(func=cmd_config)
    sub.add_parser("destroy", help="Stop the VM and delete all of its files").set_defaults(func=cmd_destroy)
    sub.add_parser("upgrade", help="Download the latest boot images").set_defaults(func=cmd_upgrade)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = load_settings(home=args.home, name=args.name)
        store = make_store(settings)
        return args.func(args, store, settings)
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        import traceback

        traceback.print_exc()
        return 1
