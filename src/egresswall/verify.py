"""Post-install reachability probes."""

from __future__ import annotations

import logging
from typing import Protocol

import httpx

from egresswall.errors import VerificationError

logger = logging.getLogger(__name__)


class Prober(Protocol):
    def reachable(self, url: str, timeout: float) -> bool:
        """True if an HTTP exchange with ``url`` completed."""


class HttpProber:
    """Probe URLs with httpx.

    Any HTTP response, including 4xx/5xx, counts as reachable: the
    connection and TLS handshake got through the filter. Network errors
    and timeouts count as unreachable; any other transport failure means
    the probe itself is broken and raises :class:`VerificationError`.
    """

    def __init__(self, client: httpx.Client | None = None) -> None:
        self._client = client

    def reachable(self, url: str, timeout: float) -> bool:
        try:
            if self._client is not None:
                resp = self._client.get(url, timeout=timeout)
            else:
                resp = httpx.get(url, timeout=timeout)
        except (httpx.NetworkError, httpx.TimeoutException) as exc:
            logger.debug("probe %s failed: %s", url, exc)
            return False
        except httpx.TransportError as exc:
            raise VerificationError(f"Cannot probe {url}: {exc}", url=url) from exc
        logger.debug("probe %s -> HTTP %d", url, resp.status_code)
        return True


def verify_blocked(prober: Prober, url: str, timeout: float) -> None:
    """The negative test: ``url`` must not be reachable."""
    if prober.reachable(url, timeout):
        raise VerificationError(
            f"Firewall verification failed - was able to reach {url}", url=url
        )
    logger.info("Firewall verification passed - unable to reach %s as expected", url)


def verify_allowed(prober: Prober, url: str, timeout: float) -> None:
    """The positive test: ``url`` must be reachable."""
    if not prober.reachable(url, timeout):
        raise VerificationError(
            f"Firewall verification failed - unable to reach {url}", url=url
        )
    logger.info("Firewall verification passed - able to reach %s as expected", url)
