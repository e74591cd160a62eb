"""Shared fakes for firewall pipeline tests.

``FakeController`` keeps an in-memory model of the filter table and the
allow-list set, so tests can assert on final state and on the order of
mutations without root or real iptables.
"""

from __future__ import annotations

import ipaddress
from pathlib import Path

import pytest

from egresswall.commands import CommandResult
from egresswall.config import FirewallConfig
from egresswall.controller import ChainSummary, FilterStatus, Rule
from egresswall.errors import CommandError, ResolutionError
from egresswall.sources import AllowListEntry


class FakeController:
    """In-memory FirewallController."""

    def __init__(self, *, probe_error: Exception | None = None, nat_rules: list[str] | None = None):
        self.probe_error = probe_error
        self.nat_rules = list(nat_rules or [])
        self.calls: list[tuple] = []
        self.policies: dict[str, str] = {"INPUT": "ACCEPT", "OUTPUT": "ACCEPT", "FORWARD": "ACCEPT"}
        self.rules: list[Rule] = [Rule("OUTPUT", ("-j", "ACCEPT"), comment="stale")]
        self.sets: dict[str, list[str]] = {}
        self.committed = False
        self.fail_on: str | None = None

    def _record(self, *call) -> None:
        self.calls.append(call)
        if self.fail_on == call[0]:
            raise CommandError(["fake", call[0]], 1, "simulated failure")

    @property
    def mutations(self) -> list[tuple]:
        return [c for c in self.calls if c[0] not in ("probe", "save_nat_rules", "status")]

    def probe(self) -> None:
        self._record("probe")
        if self.probe_error is not None:
            raise self.probe_error

    def save_nat_rules(self, match: str) -> list[str]:
        self._record("save_nat_rules", match)
        return [r for r in self.nat_rules if match in r]

    def reset(self, set_name: str) -> None:
        self._record("reset", set_name)
        self.rules = []
        self.nat_rules = []
        self.sets = {set_name: []}
        self.policies = {c: "DROP" for c in self.policies}
        self.committed = False

    def restore_nat_rules(self, rules: list[str]) -> None:
        self._record("restore_nat_rules", tuple(rules))
        self.nat_rules.extend(rules)

    def allow(self, rule: Rule) -> None:
        self._record("allow", rule)
        self.rules.append(rule)

    def add_to_set(self, set_name: str, entry: str) -> None:
        self._record("add_to_set", set_name, entry)
        members = self.sets[set_name]
        if entry not in members:
            members.append(entry)

    def clear_set(self, set_name: str) -> None:
        self._record("clear_set", set_name)
        self.sets[set_name] = []

    def commit(self) -> None:
        self._record("commit")
        self.committed = True

    def status(self, set_name: str) -> FilterStatus:
        chains = {
            name: ChainSummary(name, policy, sum(1 for r in self.rules if r.chain == name))
            for name, policy in self.policies.items()
        }
        return FilterStatus(
            chains=chains,
            set_exists=set_name in self.sets,
            set_members=list(self.sets.get(set_name, [])),
        )


class FakeSource:
    """AddressSource returning fixed addresses; hostnames mapped to None fail."""

    def __init__(self, table: dict[str, list[str] | None]):
        self.table = table
        self.calls = 0

    def collect(self) -> list[AllowListEntry]:
        self.calls += 1
        entries = []
        for host, addrs in self.table.items():
            if not addrs:
                raise ResolutionError(f"Failed to resolve {host}", hostname=host)
            resolved = {
                ipaddress.ip_network(a) if "/" in a else ipaddress.ip_address(a) for a in addrs
            }
            entries.append(AllowListEntry(host, resolved))
        return entries


class FakeProber:
    """Prober answering from a url -> reachable map."""

    def __init__(self, answers: dict[str, bool] | None = None):
        self.answers = answers or {}
        self.calls: list[str] = []

    def reachable(self, url: str, timeout: float) -> bool:
        self.calls.append(url)
        return self.answers.get(url, False)


def route_runner(output: str = "default via 172.17.0.1 dev eth0\n172.17.0.0/16 dev eth0\n"):
    """Runner that answers ``ip route`` and fails everything else."""

    def _runner(argv: list[str]) -> CommandResult:
        if argv[:2] == ["ip", "route"]:
            return CommandResult(tuple(argv), 0, output, "")
        return CommandResult(tuple(argv), 1, "", "unexpected command")

    return _runner


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def config() -> FirewallConfig:
    return FirewallConfig(
        allowed_domains=["registry.npmjs.org", "api.anthropic.com"],
        include_github_meta=False,
        container_networks=["172.19.0.0/16"],
    )


@pytest.fixture
def controller() -> FakeController:
    return FakeController()


@pytest.fixture
def source() -> FakeSource:
    return FakeSource({
        "registry.npmjs.org": ["104.16.0.34", "104.16.1.34"],
        "api.anthropic.com": ["160.79.104.10"],
    })


@pytest.fixture
def prober(config: FirewallConfig) -> FakeProber:
    return FakeProber({config.verify_blocked_url: False, config.verify_allowed_url: True})


@pytest.fixture
def proc_version(tmp_path: Path) -> Path:
    p = tmp_path / "version"
    p.write_text("Linux version 6.8.0-45-generic (buildd@lcy02-amd64-115)\n")
    return p
