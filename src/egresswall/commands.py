"""Thin wrapper around the iptables / ipset / ip command-line tools.

Commands are passed as argv lists, never through a shell. The runner is a
plain callable so the controller can be pointed at a recording runner in
dry-run mode and in tests.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
from dataclasses import dataclass
from typing import Callable

from egresswall.errors import CommandError

logger = logging.getLogger(__name__)

REQUIRED_TOOLS: tuple[str, ...] = ("iptables", "iptables-save", "ipset", "ip")

# Per-command ceiling; a wedged netfilter call should not hang startup.
COMMAND_TIMEOUT = 30


@dataclass(frozen=True)
class CommandResult:
    """Outcome of one external command."""

    argv: tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


Runner = Callable[[list[str]], CommandResult]


def run(argv: list[str]) -> CommandResult:
    """Run a command and return its result without raising on failure."""
    logger.debug("exec: %s", " ".join(argv))
    try:
        proc = subprocess.run(
            argv,
            capture_output=True,
            text=True,
            timeout=COMMAND_TIMEOUT,
        )
    except FileNotFoundError:
        return CommandResult(tuple(argv), 127, "", f"{argv[0]}: command not found")
    except subprocess.TimeoutExpired:
        return CommandResult(tuple(argv), 124, "", f"timed out after {COMMAND_TIMEOUT}s")
    return CommandResult(tuple(argv), proc.returncode, proc.stdout, proc.stderr)


def check(result: CommandResult) -> CommandResult:
    """Raise :class:`CommandError` if ``result`` is a failure."""
    if not result.ok:
        raise CommandError(list(result.argv), result.returncode, result.stderr)
    return result


def missing_tools(tools: tuple[str, ...] = REQUIRED_TOOLS) -> list[str]:
    """Return the required binaries that are not on PATH."""
    return [t for t in tools if shutil.which(t) is None]


class DryRunRunner:
    """Runner that records commands instead of executing them.

    ``ip route`` needs no privilege and is passed through to ``runner``
    so host network detection sees the real routing table. Everything
    else is recorded and reported as successful with empty output.
    """

    def __init__(self, runner: Runner = run) -> None:
        self.commands: list[list[str]] = []
        self._runner = runner

    def __call__(self, argv: list[str]) -> CommandResult:
        if argv[:2] == ["ip", "route"]:
            return self._runner(argv)
        self.commands.append(list(argv))
        logger.info("[dry-run] %s", " ".join(argv))
        return CommandResult(tuple(argv), 0)
