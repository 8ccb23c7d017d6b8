"""DHCP lease database lookup for dhyve.

The macOS bootpd writes one brace-delimited record per lease, appending in
chronological order::

    {
        name=boot2docker
        ip_address=192.168.64.2
        hw_address=1,8:0:27:a:b:c
        identifier=1,8:0:27:a:b:c
        lease=0x5c1e4f2a
    }

Hardware addresses are stored without leading zeros in each octet, so
lookups normalize the MAC the same way first.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Dict, Iterable, Optional

from dhyve.exceptions import IOFailure
from dhyve.utils import log

_LEADING_ZERO_RE = re.compile(r"(^|:)0(?=[0-9a-f])")


def normalize_mac(mac: str) -> str:
    """Drop one leading zero from every octet (``08:0a:...`` -> ``8:a:...``)."""
    return _LEADING_ZERO_RE.sub(r"\1", mac.strip().lower())


def parse_leases(lines: Iterable[str]) -> Dict[str, str]:
    """Return a mapping of normalized hardware address to the most recent IP."""
    leases: Dict[str, str] = {}
    current_hw = ""
    current_ip = ""
    for raw in lines:
        line = raw.strip()
        if line in ("{", "}"):
            # record boundary: an incomplete record must not pair with the next one
            current_hw = current_ip = ""
            continue
        key, sep, value = line.partition("=")
        if not sep:
            continue
        if key == "ip_address":
            current_ip = value.strip()
        elif key == "hw_address":
            # "<hardware type>,<address>"
            current_hw = normalize_mac(value.partition(",")[2] or value)
        else:
            continue
        if current_hw and current_ip:
            leases[current_hw] = current_ip
            current_hw = current_ip = ""
    return leases


def resolve(hardware_address: str, lease_file: Path) -> Optional[str]:
    """Return the IP leased to ``hardware_address``, or None if it has none yet."""
    try:
        with open(lease_file, encoding="utf-8", errors="replace") as fh:
            leases = parse_leases(fh)
    except FileNotFoundError:
        log("DEBUG", f"Lease file {lease_file} does not exist yet")
        return None
    except OSError as exc:
        raise IOFailure(f"Cannot read lease file {lease_file}: {exc}")
    return leases.get(normalize_mac(hardware_address))


class LeaseResolver:
    """Callable wrapper binding :func:`resolve` to one lease file."""

    def __init__(self, lease_file: Path) -> None:
        self.lease_file = lease_file

    def __call__(self, hardware_address: str) -> Optional[str]:
        return resolve(hardware_address, self.lease_file)
