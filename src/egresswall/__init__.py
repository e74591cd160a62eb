"""Default-deny egress firewall for development containers.

At container start the initializer:
- detects whether iptables is usable here (skips cleanly if not)
- flushes existing rules and sets DROP policies
- allows loopback, DNS, SSH, established traffic and private networks
- resolves the allow-listed hostnames into an ipset permitted on 443
- verifies a non-listed host is blocked and a listed one is reachable
"""

from .config import FirewallConfig, load_config
from .controller import FirewallController, IptablesController, Rule
from .errors import CommandError, ConfigError, FirewallError, ResolutionError, VerificationError
from .pipeline import FirewallInitializer, Outcome, RunReport, Stage, StageResult
from .sources import AddressSource, AllowListEntry, DnsAddressSource, GitHubMetaSource
from .verify import HttpProber

__version__ = "0.1.0"

__all__ = [
    "AddressSource",
    "AllowListEntry",
    "CommandError",
    "ConfigError",
    "DnsAddressSource",
    "FirewallConfig",
    "FirewallController",
    "FirewallError",
    "FirewallInitializer",
    "GitHubMetaSource",
    "HttpProber",
    "IptablesController",
    "Outcome",
    "ResolutionError",
    "Rule",
    "RunReport",
    "Stage",
    "StageResult",
    "VerificationError",
    "load_config",
]
