"""Firewall configuration model and loader.

Defaults reproduce the devcontainer firewall exactly, so running with no
config file yields the stock allow-list. A YAML file can override any
field; a few environment variables are applied on top for use from
container startup hooks.
"""

from __future__ import annotations

import ipaddress
import logging
import os
from pathlib import Path

import httpx
import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from egresswall.errors import ConfigError

logger = logging.getLogger(__name__)

CONFIG_ENV = "EGRESSWALL_CONFIG"
EXTRA_DOMAINS_ENV = "EGRESSWALL_EXTRA_DOMAINS"
VERIFY_ENV = "EGRESSWALL_VERIFY"

DEFAULT_CONFIG_PATH = Path("/etc/egresswall/config.yaml")

DEFAULT_ALLOWED_DOMAINS: tuple[str, ...] = (
    "registry.npmjs.org",
    "api.anthropic.com",
    "sentry.io",
    "statsig.anthropic.com",
    "statsig.com",
)


class FirewallConfig(BaseModel):
    """Egress allow-list policy."""

    ipset_name: str = "allowed-domains"
    allowed_domains: list[str] = Field(default_factory=lambda: list(DEFAULT_ALLOWED_DOMAINS))

    # ── GitHub meta ranges ───────────────────────────────────────────────────
    # api.github.com sits behind many addresses; its published ranges are
    # added in bulk instead of resolving a handful of A records.
    include_github_meta: bool = True
    github_meta_url: str = "https://api.github.com/meta"
    github_meta_keys: list[str] = Field(default_factory=lambda: ["web", "api", "git"])

    # ── Private networks ─────────────────────────────────────────────────────
    # dev_network from docker-compose (postgres, redis, mailhog, minio).
    container_networks: list[str] = Field(default_factory=lambda: ["172.19.0.0/16"])
    allow_host_network: bool = True

    dns_port: int = 53
    ssh_port: int = 22
    https_port: int = 443

    # Keep Docker's embedded resolver (127.0.0.11) working across the flush.
    preserve_docker_dns: bool = True

    # ── Verification ─────────────────────────────────────────────────────────
    verify_enabled: bool = True
    verify_blocked_url: str = "https://example.com"
    verify_allowed_url: str = "https://api.github.com/zen"
    verify_timeout: float = 5.0

    @field_validator("ipset_name")
    @classmethod
    def _validate_ipset_name(cls, v: str) -> str:
        # ipset names are limited to 31 characters.
        if not v or len(v) > 31 or any(c.isspace() for c in v):
            raise ValueError(f"ipset_name must be 1-31 characters without whitespace: {v!r}")
        return v

    @field_validator("allowed_domains")
    @classmethod
    def _validate_domains(cls, v: list[str]) -> list[str]:
        cleaned: list[str] = []
        for raw in v:
            host = raw.strip().lower().rstrip(".")
            if not host:
                raise ValueError("allowed_domains entries must not be empty")
            if "://" in host or "/" in host:
                raise ValueError(f"allowed_domains entries must be bare hostnames: {raw!r}")
            if host not in cleaned:
                cleaned.append(host)
        return cleaned

    @field_validator("container_networks")
    @classmethod
    def _validate_networks(cls, v: list[str]) -> list[str]:
        networks: list[str] = []
        for cidr in v:
            try:
                net = ipaddress.IPv4Network(cidr.strip(), strict=False)
            except ValueError as exc:
                raise ValueError(f"container_networks entry is not an IPv4 CIDR: {cidr!r}") from exc
            networks.append(str(net))
        return networks

    @field_validator("dns_port", "ssh_port", "https_port")
    @classmethod
    def _validate_port(cls, v: int) -> int:
        if not 1 <= v <= 65535:
            raise ValueError(f"port out of range: {v}")
        return v

    @field_validator("verify_blocked_url", "verify_allowed_url")
    @classmethod
    def _validate_probe_url(cls, v: str) -> str:
        # A URL httpx cannot send reads as unreachable, so the negative test
        # would pass without touching the network.
        try:
            url = httpx.URL(v)
        except httpx.InvalidURL as exc:
            raise ValueError(f"verification URL is invalid: {v!r}") from exc
        if url.scheme not in ("http", "https") or not url.host:
            raise ValueError(f"verification URL must be http(s) with a host: {v!r}")
        return v

    @field_validator("verify_timeout")
    @classmethod
    def _validate_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("verify_timeout must be positive")
        return v


def _truthy(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_config(path: Path | None = None) -> FirewallConfig:
    """Load the firewall configuration.

    Resolution order for the file: explicit ``path``, then
    ``$EGRESSWALL_CONFIG``, then :data:`DEFAULT_CONFIG_PATH` if it exists.
    An explicitly requested file that does not exist is an error; the
    default path is optional.

    Raises:
        ConfigError: If the file cannot be read or fails validation.
    """
    explicit = path is not None or bool(os.environ.get(CONFIG_ENV))
    config_path = path or Path(os.environ.get(CONFIG_ENV) or DEFAULT_CONFIG_PATH)

    raw: dict = {}
    if config_path.exists():
        try:
            with open(config_path) as f:
                raw = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise ConfigError(f"Cannot read config {config_path}: {exc}", stage="config") from exc
        if not isinstance(raw, dict):
            raise ConfigError(f"Config {config_path} must be a mapping", stage="config")
        logger.info("Loaded firewall config from %s", config_path)
    elif explicit:
        raise ConfigError(f"Config file not found: {config_path}", stage="config")

    # Environment variable overrides
    extra = os.environ.get(EXTRA_DOMAINS_ENV)
    if extra:
        domains = raw.get("allowed_domains", list(DEFAULT_ALLOWED_DOMAINS))
        if not isinstance(domains, list):
            raise ConfigError("allowed_domains must be a list of hostnames", stage="config")
        domains = list(domains)
        domains.extend(d for d in extra.split(",") if d.strip())
        raw["allowed_domains"] = domains

    verify = os.environ.get(VERIFY_ENV)
    if verify is not None:
        raw["verify_enabled"] = _truthy(verify)

    try:
        return FirewallConfig(**raw)
    except ValidationError as exc:
        raise ConfigError(f"Invalid firewall config: {exc}", stage="config") from exc
