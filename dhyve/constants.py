"""Global constants and path configuration for dhyve."""

from __future__ import annotations

import os
import re
from pathlib import Path

DEFAULT_HOME = Path("~/.dhyve").expanduser()
DEFAULT_VM_NAME = "default"
DEFAULT_HYPERVISOR = "xhyve"
UUID2MAC_HELPER = "uuid2mac"
DEFAULT_LEASE_FILE = Path("/var/db/dhcpd_leases")
DEFAULT_GUEST_USER = "docker"
DEFAULT_DOCKER_PORT = 2376

DEFAULT_MEMORY = "1G"
DEFAULT_DISK_SIZE_GB = 20
DEFAULT_CPUS = 1
DEFAULT_KERNEL_CMDLINE = "earlyprintk=serial console=ttyS0 acpi=off norandmaps=1 loglevel=3 user=docker"

DEFAULT_KERNEL_URL = "https://github.com/nlf/dhyve-os/releases/latest/download/bzImage"
DEFAULT_INITRD_URL = "https://github.com/nlf/dhyve-os/releases/latest/download/rootfs.cpio.xz"

# Polling (seconds)
DEFAULT_START_TIMEOUT = 300.0
DEFAULT_POLL_INTERVAL = 1.0
DEFAULT_STOP_INTERVAL = 0.5
LAUNCH_GRACE_PERIOD = 0.5

# Files inside a VM config root
IDENTITY_FILE = "identity.yaml"
CONFIG_FILE = "config.yaml"
ARGS_FILE = "args"
CMDLINE_FILE = "cmdline"
PID_FILE = "pid"
PRIVATE_KEY_FILE = "id_rsa"
PUBLIC_KEY_FILE = "id_rsa.pub"
CERTS_DIR = "certs"
KERNEL_FILE = "vmlinuz"
INITRD_FILE = "initrd.img"
DISK_FILE = "disk.img"
CONSOLE_LOG_FILE = "console.log"

# Client credentials the guest docker daemon generates for us
GUEST_CERT_DIR = ".docker"
CERT_FILES = ("ca.pem", "cert.pem", "key.pem")

# boot2docker formats a data disk that starts with this marker and then
# unpacks the tar stream that follows it into the docker user's home.
DISK_FORMAT_MAGIC = b"boot2docker, please format-me"

TRUTHY = {"1", "true", "yes", "on"}
MAC_ADDRESS_RE = re.compile(r"^[0-9a-f]{2}(:[0-9a-f]{2}){5}$")
MEMORY_RE = re.compile(r"^\d+[KMGTkmgt]?$")

_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in TRUTHY
