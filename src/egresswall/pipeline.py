"""Firewall initialization pipeline.

A single linear pass::

    DETECT → RESET → STATIC_ALLOW → DYNAMIC_ALLOW → COMMIT → VERIFY

DETECT decides whether to run at all; an unusable packet filter is a
skip, not a failure. Every later stage is fatal on error and the pipeline
stops at the first failure without retrying or rolling back: the DROP
policies installed by RESET stay in place, so a partial run fails closed.
"""

from __future__ import annotations

import ipaddress
import logging
from enum import Enum
from pathlib import Path
from typing import Callable

from pydantic import BaseModel, Field

from egresswall.commands import Runner, run
from egresswall.config import FirewallConfig
from egresswall.controller import DOCKER_DNS_IP, FirewallController, Rule
from egresswall.environment import PROC_VERSION, detect_capability, detect_host_network
from egresswall.errors import FirewallError
from egresswall.sources import AddressSource, AllowListEntry, DnsAddressSource, GitHubMetaSource
from egresswall.verify import HttpProber, Prober, verify_allowed, verify_blocked

logger = logging.getLogger(__name__)


class Stage(str, Enum):
    DETECT = "detect"
    RESET = "reset"
    STATIC_ALLOW = "static_allow"
    DYNAMIC_ALLOW = "dynamic_allow"
    COMMIT = "commit"
    VERIFY = "verify"


class Outcome(str, Enum):
    APPLIED = "applied"
    SKIPPED = "skipped"
    FAILED = "failed"


class StageResult(BaseModel):
    stage: Stage
    ok: bool
    reason: str = ""


class RunReport(BaseModel):
    """Summary of one initializer run."""

    outcome: Outcome
    exit_code: int
    stages: list[StageResult] = Field(default_factory=list)
    entries: dict[str, list[str]] = Field(default_factory=dict)
    set_members: int = 0
    reason: str = ""

    @property
    def failed_stage(self) -> Stage | None:
        for result in self.stages:
            if not result.ok:
                return result.stage
        return None


# ── Rule builders ────────────────────────────────────────────────────────────


def _accept(chain: str, *args: str, comment: str = "") -> Rule:
    return Rule(chain, (*args, "-j", "ACCEPT"), comment=comment)


def static_rules(
    config: FirewallConfig, host_network: ipaddress.IPv4Network | None = None
) -> list[Rule]:
    """Fixed rules needed before any name resolution can happen."""
    dns = str(config.dns_port)
    ssh = str(config.ssh_port)
    rules = [
        _accept("INPUT", "-i", "lo", comment="loopback"),
        _accept("OUTPUT", "-o", "lo", comment="loopback"),
        _accept("INPUT", "-m", "state", "--state", "ESTABLISHED,RELATED", comment="established"),
        _accept("OUTPUT", "-m", "state", "--state", "ESTABLISHED,RELATED", comment="established"),
    ]
    for proto in ("udp", "tcp"):
        rules.append(_accept("OUTPUT", "-p", proto, "--dport", dns, comment="dns"))
        rules.append(_accept("INPUT", "-p", proto, "--sport", dns, comment="dns"))
    rules.append(_accept("OUTPUT", "-p", "tcp", "--dport", ssh, comment="ssh"))
    rules.append(
        _accept(
            "INPUT", "-p", "tcp", "--sport", ssh, "-m", "state", "--state", "ESTABLISHED",
            comment="ssh",
        )
    )

    networks = [str(host_network)] if host_network is not None else []
    networks += [n for n in config.container_networks if n not in networks]
    for net in networks:
        rules.append(_accept("INPUT", "-s", net, comment="private"))
        rules.append(_accept("OUTPUT", "-d", net, comment="private"))
    return rules


def allow_set_rule(config: FirewallConfig) -> Rule:
    """The single rule that lets the allow-list set out on the HTTPS port."""
    return _accept(
        "OUTPUT",
        "-p", "tcp", "--dport", str(config.https_port),
        "-m", "set", "--match-set", config.ipset_name, "dst",
        comment="allow-list",
    )


# ── Initializer ──────────────────────────────────────────────────────────────


class FirewallInitializer:
    """Runs the pipeline against a controller.

    ``sources`` are resolved before anything is added to the set, so a
    resolution failure leaves the set empty. ``remote_sources`` need
    egress to the hosts already allow-listed (GitHub meta is served from
    api.github.com) and are collected after the set rule is installed; if
    one fails the set is flushed back to empty.
    """

    def __init__(
        self,
        config: FirewallConfig,
        controller: FirewallController,
        *,
        sources: list[AddressSource] | None = None,
        remote_sources: list[AddressSource] | None = None,
        prober: Prober | None = None,
        runner: Runner = run,
        check_tools: bool = True,
        proc_version: Path = PROC_VERSION,
    ) -> None:
        self._config = config
        self._controller = controller
        self._runner = runner
        self._check_tools = check_tools
        self._proc_version = proc_version
        self._prober = prober or HttpProber()

        if sources is None:
            hostnames = list(config.allowed_domains)
            if config.include_github_meta and GitHubMetaSource.hostname not in hostnames:
                hostnames.append(GitHubMetaSource.hostname)
            sources = [DnsAddressSource(hostnames)]
        if remote_sources is None:
            remote_sources = []
            if config.include_github_meta:
                remote_sources.append(
                    GitHubMetaSource(config.github_meta_url, config.github_meta_keys)
                )
        self._sources = sources
        self._remote_sources = remote_sources

        self._entries: list[AllowListEntry] = []
        self._added: set[str] = set()

    @property
    def entries(self) -> list[AllowListEntry]:
        return list(self._entries)

    def run(self) -> RunReport:
        self._entries = []
        self._added = set()

        capability = detect_capability(
            self._controller, check_tools=self._check_tools, proc_version=self._proc_version
        )
        if not capability.available:
            logger.warning(
                "%s - skipping firewall initialization", capability.reason or "iptables not available"
            )
            return RunReport(
                outcome=Outcome.SKIPPED,
                exit_code=0,
                stages=[StageResult(stage=Stage.DETECT, ok=True, reason=capability.reason)],
                reason=capability.reason,
            )

        stages: list[tuple[Stage, Callable[[], None]]] = [
            (Stage.RESET, self._reset),
            (Stage.STATIC_ALLOW, self._static_allow),
            (Stage.DYNAMIC_ALLOW, self._dynamic_allow),
            (Stage.COMMIT, self._commit),
        ]
        if self._config.verify_enabled:
            stages.append((Stage.VERIFY, self._verify))
        else:
            logger.warning("Verification disabled - firewall rules applied without self-test")

        results = [StageResult(stage=Stage.DETECT, ok=True)]
        for stage, func in stages:
            result = self._run_stage(stage, func)
            results.append(result)
            if not result.ok:
                return self._report(Outcome.FAILED, 1, results, result.reason)

        logger.info("Firewall initialization complete (%d set entries)", len(self._added))
        return self._report(Outcome.APPLIED, 0, results)

    def _run_stage(self, stage: Stage, func: Callable[[], None]) -> StageResult:
        logger.debug("stage %s: start", stage.value)
        try:
            func()
        except FirewallError as exc:
            exc.stage = exc.stage or stage.value
            logger.error("Firewall initialization failed in stage %s: %s", stage.value, exc)
            return StageResult(stage=stage, ok=False, reason=str(exc))
        logger.debug("stage %s: done", stage.value)
        return StageResult(stage=stage, ok=True)

    def _report(
        self, outcome: Outcome, exit_code: int, stages: list[StageResult], reason: str = ""
    ) -> RunReport:
        return RunReport(
            outcome=outcome,
            exit_code=exit_code,
            stages=stages,
            entries={e.hostname: e.set_entries() for e in self._entries},
            set_members=len(self._added),
            reason=reason,
        )

    # ── Stages ───────────────────────────────────────────────────────────────

    def _reset(self) -> None:
        saved: list[str] = []
        if self._config.preserve_docker_dns:
            saved = self._controller.save_nat_rules(DOCKER_DNS_IP)
        self._controller.reset(self._config.ipset_name)
        if saved:
            logger.info("Restoring %d Docker DNS rules...", len(saved))
            self._controller.restore_nat_rules(saved)
        elif self._config.preserve_docker_dns:
            logger.info("No Docker DNS rules to restore")

    def _static_allow(self) -> None:
        host_network = None
        if self._config.allow_host_network:
            host_network = detect_host_network(self._runner)
        rules = static_rules(self._config, host_network)
        for rule in rules:
            self._controller.allow(rule)
        logger.info("Static allow-list installed (%d rules)", len(rules))

    def _dynamic_allow(self) -> None:
        entries: list[AllowListEntry] = []
        for source in self._sources:
            entries.extend(source.collect())
        for entry in entries:
            self._add_entry(entry)

        self._controller.allow(allow_set_rule(self._config))

        try:
            for source in self._remote_sources:
                for entry in source.collect():
                    self._add_entry(entry)
        except FirewallError:
            self._controller.clear_set(self._config.ipset_name)
            self._added.clear()
            raise

    def _add_entry(self, entry: AllowListEntry) -> None:
        self._entries.append(entry)
        for address in entry.set_entries():
            if address in self._added:
                continue
            logger.info("Adding %s for %s", address, entry.hostname)
            self._controller.add_to_set(self._config.ipset_name, address)
            self._added.add(address)

    def _commit(self) -> None:
        self._controller.commit()
        logger.info("Firewall configuration complete")

    def _verify(self) -> None:
        logger.info("Verifying firewall rules...")
        timeout = self._config.verify_timeout
        verify_blocked(self._prober, self._config.verify_blocked_url, timeout)
        verify_allowed(self._prober, self._config.verify_allowed_url, timeout)
