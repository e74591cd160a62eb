"""Packet-filter controller: the only code that mutates kernel state.

The pipeline talks to a :class:`FirewallController`; the production
implementation, :class:`IptablesController`, drives ``iptables`` and
``ipset`` through a :data:`~egresswall.commands.Runner`. Tests swap in a
recording controller so the sequence of mutations can be asserted
without root.
"""

from __future__ import annotations

import logging
import shlex
from dataclasses import dataclass, field
from typing import Protocol

from egresswall.commands import Runner, check, run

logger = logging.getLogger(__name__)

FILTER_CHAINS: tuple[str, ...] = ("INPUT", "OUTPUT", "FORWARD")
FLUSHED_TABLES: tuple[str, ...] = ("filter", "nat", "mangle")

# Docker's embedded DNS server inside user-defined networks.
DOCKER_DNS_IP = "127.0.0.11"
DOCKER_NAT_CHAINS: tuple[str, ...] = ("DOCKER_OUTPUT", "DOCKER_POSTROUTING")


@dataclass(frozen=True)
class Rule:
    """One iptables rule, appended to ``chain`` in ``table``."""

    chain: str
    args: tuple[str, ...]
    table: str = "filter"
    comment: str = ""

    def argv(self) -> list[str]:
        cmd = ["iptables"]
        if self.table != "filter":
            cmd += ["-t", self.table]
        return cmd + ["-A", self.chain, *self.args]

    def __str__(self) -> str:
        return " ".join(self.argv()[1:])


@dataclass
class ChainSummary:
    """Policy and rule count for one filter chain."""

    name: str
    policy: str = "-"
    rules: int = 0


@dataclass
class FilterStatus:
    """Snapshot of the filter table and allow-list set."""

    chains: dict[str, ChainSummary] = field(default_factory=dict)
    set_exists: bool = False
    set_members: list[str] = field(default_factory=list)


class FirewallController(Protocol):
    """Operations the initializer performs on the packet filter."""

    def probe(self) -> None:
        """Raise if the packet filter cannot be listed."""

    def save_nat_rules(self, match: str) -> list[str]:
        """Return nat-table rules (``-A ...`` lines) containing ``match``."""

    def reset(self, set_name: str) -> None:
        """Flush all tables, recreate ``set_name`` empty, and set DROP policies."""

    def restore_nat_rules(self, rules: list[str]) -> None:
        """Re-append previously saved nat-table rules."""

    def allow(self, rule: Rule) -> None:
        """Append one rule."""

    def add_to_set(self, set_name: str, entry: str) -> None:
        """Add an address or CIDR to the set; existing members are not an error."""

    def clear_set(self, set_name: str) -> None:
        """Remove every member of the set."""

    def commit(self) -> None:
        """Append the terminal reject rule for outbound traffic."""

    def status(self, set_name: str) -> FilterStatus:
        """Read back chain policies, rule counts and set members."""


class IptablesController:
    """FirewallController backed by the iptables and ipset binaries."""

    def __init__(self, runner: Runner = run) -> None:
        self._run = runner

    def _check(self, argv: list[str]) -> str:
        return check(self._run(argv)).stdout

    def probe(self) -> None:
        self._check(["iptables", "-L", "-n"])

    def save_nat_rules(self, match: str) -> list[str]:
        out = self._check(["iptables-save", "-t", "nat"])
        return [line.strip() for line in out.splitlines() if match in line and line.startswith("-A ")]

    def reset(self, set_name: str) -> None:
        for table in FLUSHED_TABLES:
            self._check(["iptables", "-t", table, "-F"])
            self._check(["iptables", "-t", table, "-X"])

        # Rules referencing the set are gone, so it can be destroyed now.
        result = self._run(["ipset", "destroy", set_name])
        if not result.ok and "does not exist" not in result.stderr:
            check(result)
        self._check(["ipset", "create", set_name, "hash:net"])

        for chain in FILTER_CHAINS:
            self._check(["iptables", "-P", chain, "DROP"])
        logger.info("Packet filter reset: tables flushed, set %s recreated, policies DROP", set_name)

    def restore_nat_rules(self, rules: list[str]) -> None:
        if not rules:
            return
        for chain in DOCKER_NAT_CHAINS:
            # -N fails only when the chain already exists.
            self._run(["iptables", "-t", "nat", "-N", chain])
        for line in rules:
            self._check(["iptables", "-t", "nat", *shlex.split(line)])

    def allow(self, rule: Rule) -> None:
        logger.debug("allow [%s] %s", rule.comment or "-", rule)
        self._check(rule.argv())

    def add_to_set(self, set_name: str, entry: str) -> None:
        self._check(["ipset", "add", set_name, entry, "-exist"])

    def clear_set(self, set_name: str) -> None:
        self._check(["ipset", "flush", set_name])

    def commit(self) -> None:
        self._check(
            ["iptables", "-A", "OUTPUT", "-j", "REJECT", "--reject-with", "icmp-admin-prohibited"]
        )

    def status(self, set_name: str) -> FilterStatus:
        snapshot = FilterStatus()
        for line in self._check(["iptables", "-S"]).splitlines():
            parts = line.split()
            if len(parts) < 2:
                continue
            chain = snapshot.chains.setdefault(parts[1], ChainSummary(parts[1]))
            if parts[0] == "-P" and len(parts) >= 3:
                chain.policy = parts[2]
            elif parts[0] == "-A":
                chain.rules += 1

        result = self._run(["ipset", "list", set_name])
        if result.ok:
            snapshot.set_exists = True
            snapshot.set_members = parse_ipset_members(result.stdout)
        return snapshot


def parse_ipset_members(output: str) -> list[str]:
    """Extract member entries from ``ipset list`` output."""
    members: list[str] = []
    in_members = False
    for line in output.splitlines():
        line = line.strip()
        if line.startswith("Members:"):
            in_members = True
            continue
        if in_members and line:
            members.append(line.split()[0])
    return members
