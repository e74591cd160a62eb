"""Execution environment detection.

Decides whether packet filtering can be configured here at all, and
finds the host bridge network the container must keep talking to.
"""

from __future__ import annotations

import ipaddress
import logging
import platform
from dataclasses import dataclass
from pathlib import Path

from egresswall.commands import Runner, check, missing_tools, run
from egresswall.controller import FirewallController
from egresswall.errors import FirewallError

logger = logging.getLogger(__name__)

PROC_VERSION = Path("/proc/version")


@dataclass(frozen=True)
class Capability:
    """Whether the packet filter is usable, and why not if it isn't."""

    available: bool
    reason: str = ""


def is_linux() -> bool:
    return platform.system() == "Linux"


def is_wsl2(proc_version: Path = PROC_VERSION) -> bool:
    """True when running under WSL2 (kernel string mentions Microsoft)."""
    try:
        return "microsoft" in proc_version.read_text().lower()
    except OSError:
        return False


def detect_capability(
    controller: FirewallController,
    *,
    check_tools: bool = True,
    proc_version: Path = PROC_VERSION,
) -> Capability:
    """Probe the packet filter without changing it.

    Never raises: every failure is reported as ``available=False`` so the
    caller can skip initialization and defer to the host's own controls.
    """
    # WSL2 kernels do not provide the netfilter support this needs.
    if is_wsl2(proc_version):
        return Capability(False, "WSL2 detected")

    if check_tools:
        if not is_linux():
            return Capability(False, f"unsupported platform {platform.system()}")
        missing = missing_tools()
        if missing:
            return Capability(False, f"missing tools: {', '.join(missing)}")

    try:
        controller.probe()
    except (FirewallError, OSError) as exc:
        return Capability(False, f"iptables not available: {exc}")
    return Capability(True)


def detect_host_network(runner: Runner = run) -> ipaddress.IPv4Network:
    """Return the /24 around the default gateway (the host bridge).

    Raises:
        FirewallError: If there is no IPv4 default route.
    """
    out = check(runner(["ip", "route"])).stdout
    for line in out.splitlines():
        parts = line.split()
        if len(parts) >= 3 and parts[0] == "default" and parts[1] == "via":
            try:
                gateway = ipaddress.IPv4Address(parts[2])
            except ValueError:
                continue
            network = ipaddress.IPv4Network(f"{gateway}/24", strict=False)
            logger.info("Host network detected as: %s", network)
            return network
    raise FirewallError("Failed to detect host IP: no IPv4 default route")
