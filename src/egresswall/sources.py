"""Address sources for the dynamic allow-list.

An allow-list is IP based, so every permitted service has to be turned
into addresses at startup. Two sources exist:

- :class:`DnsAddressSource` resolves hostnames through the system resolver.
- :class:`GitHubMetaSource` downloads GitHub's published CIDR ranges.

Both are behind :class:`AddressSource` so a different mechanism can replace
them without changing the pipeline. Addresses are never cached between runs.
"""

from __future__ import annotations

import ipaddress
import logging
import socket
from dataclasses import dataclass, field
from typing import Callable, Protocol

import httpx

from egresswall.errors import ResolutionError

logger = logging.getLogger(__name__)


@dataclass
class AllowListEntry:
    """One permitted service and the addresses it resolved to this run."""

    hostname: str
    resolved_addresses: set[ipaddress.IPv4Address | ipaddress.IPv4Network] = field(
        default_factory=set
    )

    def set_entries(self) -> list[str]:
        """Addresses as ipset entries, sorted for stable ordering."""
        return sorted((str(a) for a in self.resolved_addresses), key=_sort_key)


def _sort_key(entry: str) -> tuple[int, int]:
    net = ipaddress.IPv4Network(entry, strict=False)
    return int(net.network_address), net.prefixlen


class AddressSource(Protocol):
    """Turns configured services into allow-list entries."""

    def collect(self) -> list[AllowListEntry]:
        """Return one entry per service; raise ResolutionError on any failure."""


# ── DNS ──────────────────────────────────────────────────────────────────────

GetAddrInfo = Callable[..., list]


class DnsAddressSource:
    """Resolve hostnames to IPv4 addresses via the standard resolver.

    A hostname that fails to resolve, or resolves to no IPv4 address, is
    fatal: a partial allow-list gives false confidence.
    """

    def __init__(self, hostnames: list[str], getaddrinfo: GetAddrInfo = socket.getaddrinfo) -> None:
        self._hostnames = list(hostnames)
        self._getaddrinfo = getaddrinfo

    def resolve(self, hostname: str) -> set[ipaddress.IPv4Address]:
        logger.info("Resolving %s...", hostname)
        try:
            infos = self._getaddrinfo(hostname, None, socket.AF_INET, socket.SOCK_STREAM)
        except (socket.gaierror, UnicodeError) as exc:
            raise ResolutionError(
                f"Failed to resolve {hostname}: {exc}", hostname=hostname
            ) from exc

        addresses: set[ipaddress.IPv4Address] = set()
        for info in infos:
            raw = info[4][0]
            try:
                addr = ipaddress.ip_address(raw)
            except ValueError as exc:
                raise ResolutionError(
                    f"Invalid IP from DNS for {hostname}: {raw}", hostname=hostname
                ) from exc
            if isinstance(addr, ipaddress.IPv4Address):
                addresses.add(addr)

        if not addresses:
            raise ResolutionError(f"No IPv4 addresses found for {hostname}", hostname=hostname)
        return addresses

    def collect(self) -> list[AllowListEntry]:
        return [AllowListEntry(h, self.resolve(h)) for h in self._hostnames]


# ── GitHub meta ──────────────────────────────────────────────────────────────


class GitHubMetaSource:
    """GitHub's published IPv4 ranges from the ``/meta`` endpoint.

    Only the keys in ``keys`` are used; each must be present. IPv6 ranges
    are skipped and overlapping ranges collapsed.
    """

    hostname = "api.github.com"

    def __init__(
        self,
        url: str = "https://api.github.com/meta",
        keys: list[str] | None = None,
        *,
        timeout: float = 30.0,
        client: httpx.Client | None = None,
    ) -> None:
        self._url = url
        self._keys = keys if keys is not None else ["web", "api", "git"]
        self._timeout = timeout
        self._client = client

    def _fetch(self) -> dict:
        headers = {"Accept": "application/json", "User-Agent": "egresswall/0.1.0"}
        try:
            if self._client is not None:
                resp = self._client.get(self._url, headers=headers, timeout=self._timeout)
            else:
                resp = httpx.get(self._url, headers=headers, timeout=self._timeout)
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise ResolutionError(
                f"Failed to fetch GitHub IP ranges from {self._url}: {exc}",
                hostname=self.hostname,
            ) from exc
        if not isinstance(data, dict):
            raise ResolutionError("GitHub meta response is not an object", hostname=self.hostname)
        return data

    def ranges(self) -> list[ipaddress.IPv4Network]:
        logger.info("Fetching GitHub IP ranges...")
        data = self._fetch()

        networks: list[ipaddress.IPv4Network] = []
        for key in self._keys:
            if key not in data:
                raise ResolutionError(
                    f"GitHub meta response missing '{key}' field", hostname=self.hostname
                )
            values = data[key]
            if not isinstance(values, list):
                raise ResolutionError(
                    f"GitHub meta field '{key}' is not a list", hostname=self.hostname
                )
            for cidr in values:
                if not isinstance(cidr, str):
                    raise ResolutionError(
                        f"Invalid CIDR range from GitHub meta: {cidr!r}", hostname=self.hostname
                    )
                if ":" in cidr:
                    continue
                try:
                    networks.append(ipaddress.IPv4Network(cidr))
                except ValueError as exc:
                    raise ResolutionError(
                        f"Invalid CIDR range from GitHub meta: {cidr}", hostname=self.hostname
                    ) from exc

        collapsed = list(ipaddress.collapse_addresses(networks))
        if not collapsed:
            raise ResolutionError("GitHub meta returned no IPv4 ranges", hostname=self.hostname)
        logger.info("GitHub meta: %d ranges (%d after aggregation)", len(networks), len(collapsed))
        return collapsed

    def collect(self) -> list[AllowListEntry]:
        return [AllowListEntry(self.hostname, set(self.ranges()))]
