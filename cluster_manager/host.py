# /*
# Copyright 2026 The Grove Authors.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
# */

"""Host environment probe: OS, architecture, advertise IP, and resources."""

from __future__ import annotations

import ipaddress
import os
from dataclasses import dataclass
from pathlib import Path

import sh

from cluster_manager import logger
from cluster_manager.constants import MIN_CPUS, MIN_MEMORY_GB, OS_RELEASE_FILE
from cluster_manager.errors import PreconditionError

# -- Architecture aliases reported by uname -m --
ARCH_ALIASES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv7l": "arm",
    "armhf": "arm",
    "armv7": "arm",
    "i386": "386",
    "i686": "386",
    "ppc64le": "ppc64le",
    "s390x": "s390x",
}

# -- OS families for package-based backends --
DEBIAN_FAMILY = frozenset({"ubuntu", "debian"})
RHEL_FAMILY = frozenset({"rhel", "centos", "rocky", "almalinux", "fedora"})


@dataclass(frozen=True)
class OsInfo:
    id: str
    version_id: str
    family: str


def is_root() -> bool:
    return os.geteuid() == 0


def detect_arch(machine: str | None = None) -> str:
    """Map the kernel machine name to a release-artifact architecture.

    Args:
        machine: Value of ``uname -m``; probed when omitted.

    Returns:
        One of amd64, arm64, arm, 386, ppc64le, s390x.

    Raises:
        PreconditionError: If the architecture is not supported.
    """
    if machine is None:
        machine = str(sh.uname("-m")).strip()
    try:
        return ARCH_ALIASES[machine]
    except KeyError as err:
        raise PreconditionError(f"Unsupported architecture: {machine}") from err


def parse_os_release(text: str) -> OsInfo:
    """Parse ``/etc/os-release`` content into an OsInfo.

    Raises:
        PreconditionError: If the distribution is neither Debian nor RHEL family.
    """
    fields: dict[str, str] = {}
    for line in text.splitlines():
        key, sep, value = line.partition("=")
        if sep:
            fields[key.strip()] = value.strip().strip('"')
    os_id = fields.get("ID", "").lower()
    version_id = fields.get("VERSION_ID", "")
    if os_id in DEBIAN_FAMILY:
        return OsInfo(os_id, version_id, "debian")
    if os_id in RHEL_FAMILY:
        major = version_id.split(".")[0]
        if os_id != "fedora" and major.isdigit() and int(major) < 8:
            raise PreconditionError(f"{os_id} {version_id} is too old, version 8 or newer is required")
        return OsInfo(os_id, version_id, "rhel")
    raise PreconditionError(f"Unsupported operating system: {os_id or 'unknown'}")


def detect_os(path: Path = OS_RELEASE_FILE) -> OsInfo:
    """Detect the host distribution from os-release."""
    if not path.exists():
        raise PreconditionError(f"Cannot detect operating system: {path} not found")
    return parse_os_release(path.read_text())


# ============================================================================
# Advertise IP detection
# ============================================================================

def _is_usable_ipv4(candidate: str) -> bool:
    try:
        addr = ipaddress.IPv4Address(candidate)
    except ValueError:
        return False
    return not addr.is_loopback and not addr.is_unspecified


def _ip_from_route() -> str | None:
    output = str(sh.ip("route", "get", "1.1.1.1"))
    tokens = output.split()
    if "src" in tokens:
        idx = tokens.index("src")
        if idx + 1 < len(tokens):
            return tokens[idx + 1]
    return None


def _ip_from_hostname() -> str | None:
    for token in str(sh.hostname("-I")).split():
        if _is_usable_ipv4(token):
            return token
    return None


def _ip_from_addr_show() -> str | None:
    for line in str(sh.ip("addr", "show")).splitlines():
        parts = line.split()
        if len(parts) >= 2 and parts[0] == "inet":
            candidate = parts[1].split("/")[0]
            if _is_usable_ipv4(candidate):
                return candidate
    return None


IP_PROBES = (_ip_from_route, _ip_from_hostname, _ip_from_addr_show)


def detect_host_ip(override: str | None = None) -> str:
    """Return the address the local registry is advertised on.

    Precedence: explicit override (``RF_LOCAL_REGISTRY`` or ``--registry-ip``),
    then the source address of the default route, then ``hostname -I``, then
    the first non-loopback address of ``ip addr show``.

    Args:
        override: Address to use as-is when set.

    Returns:
        IPv4 address or hostname.

    Raises:
        PreconditionError: If no usable address can be found.
    """
    if override:
        return override
    for probe in IP_PROBES:
        try:
            candidate = probe()
        except (sh.ErrorReturnCode, sh.CommandNotFound) as exc:
            logger.debug("IP probe %s failed: %s", probe.__name__, exc)
            continue
        if candidate and _is_usable_ipv4(candidate):
            return candidate
    raise PreconditionError("Could not detect a host IP address. Set RF_LOCAL_REGISTRY or pass --registry-ip.")


# ============================================================================
# Resources
# ============================================================================

def check_resources(min_cpus: int = MIN_CPUS, min_memory_gb: int = MIN_MEMORY_GB) -> None:
    """Verify the host has enough CPUs and memory for a control plane.

    Raises:
        PreconditionError: If either requirement is not met.
    """
    cpus = os.cpu_count() or 0
    if cpus < min_cpus:
        raise PreconditionError(f"At least {min_cpus} CPUs are required, found {cpus}")
    mem_kb = 0
    with open("/proc/meminfo") as f:
        for line in f:
            if line.startswith("MemTotal:"):
                mem_kb = int(line.split()[1])
                break
    if mem_kb < min_memory_gb * 1024 * 1024 * 0.9:
        raise PreconditionError(f"At least {min_memory_gb}GB of memory is required")
