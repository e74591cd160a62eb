"""Exception hierarchy for firewall initialization.

Every fatal condition carries the pipeline stage it happened in so the
CLI can report which stage failed.
"""

from __future__ import annotations


class FirewallError(Exception):
    """Base class for fatal firewall initialization errors."""

    def __init__(self, message: str, *, stage: str | None = None) -> None:
        super().__init__(message)
        self.stage = stage


class ConfigError(FirewallError):
    """Configuration file missing, unreadable, or invalid."""


class CommandError(FirewallError):
    """A packet-filter or network tool exited non-zero."""

    def __init__(
        self,
        argv: list[str],
        returncode: int,
        stderr: str = "",
        *,
        stage: str | None = None,
    ) -> None:
        self.argv = list(argv)
        self.returncode = returncode
        self.stderr = stderr.strip()
        message = f"Command failed ({returncode}): {' '.join(self.argv)}"
        if self.stderr:
            message += f": {self.stderr}"
        super().__init__(message, stage=stage)


class ResolutionError(FirewallError):
    """A required hostname or address range could not be resolved."""

    def __init__(self, message: str, *, hostname: str = "", stage: str | None = None) -> None:
        super().__init__(message, stage=stage)
        self.hostname = hostname


class VerificationError(FirewallError):
    """A post-install reachability probe gave the wrong answer."""

    def __init__(self, message: str, *, url: str = "", stage: str | None = None) -> None:
        super().__init__(message, stage=stage)
        self.url = url
