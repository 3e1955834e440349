# Orion Lockdown
# Copyright (C) 2025 Phoenix Link (Pty) Ltd. All Rights Reserved.
#
# This file is part of Orion Lockdown.
#
# Orion Lockdown is dual-licensed:
#
# 1. Open Source: GNU Affero General Public License v3.0 (AGPL-3.0)
#    You may use, modify, and distribute this file under AGPL-3.0.
#    See LICENSE for the full text.
#
# 2. Commercial: Available from Phoenix Link (Pty) Ltd
#    For proprietary use, SaaS deployment, or enterprise licensing.
#    See LICENSE-ENTERPRISE.md or contact info@phoenixlink.co.za
#
# Contributions require a signed CLA. See COPYRIGHT.md and CLA.md.
"""Lockdown configuration schema.

The allowlist config is baked into the image (or bind-mounted read-only)
and read once at container start. There is no runtime reconfiguration:
changing the allowlist means restarting the container.

Config location: /etc/lockdown/lockdown.yaml  (override: $LOCKDOWN_CONFIG)

Unlike most configs, a broken file is NOT replaced by defaults: a
firewall that silently widens or narrows its policy because of a typo is
worse than one that refuses to start.
"""

from __future__ import annotations

import ipaddress
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

import yaml

from .errors import ConfigError

logger = logging.getLogger("lockdown.config")

# ---------------------------------------------------------------------------
# Default paths
# ---------------------------------------------------------------------------
DEFAULT_CONFIG_PATH = Path(os.environ.get("LOCKDOWN_CONFIG", "/etc/lockdown/lockdown.yaml"))
DEFAULT_RESOLV_CONF = "/etc/resolv.conf"

# ---------------------------------------------------------------------------
# Curated hosts used when no config file exists.
# ---------------------------------------------------------------------------
DEFAULT_ALLOWED_HOSTS: tuple[str, ...] = (
    "registry.npmjs.org",
    "api.anthropic.com",
    "sentry.io",
    "statsig.anthropic.com",
    "statsig.com",
)

GITHUB_META_URL = "https://api.github.com/meta"
GITHUB_META_KEYS: tuple[str, ...] = ("web", "api", "git")

DEFAULT_BLOCKED_PROBE = "https://example.com"

INGRESS_MODES = frozenset({"accept", "drop"})
EGRESS_ACTIONS = frozenset({"drop", "reject"})
FAILURE_SEVERITIES = frozenset({"warn", "error", "abort"})
PROBE_SCHEMES = frozenset({"http", "https", "tcp"})

_LABEL_RE = re.compile(r"^(?!-)[a-z0-9-]{1,63}(?<!-)$")


def is_valid_hostname(hostname: str) -> bool:
    """Check RFC 1123 hostname syntax (a trailing dot is tolerated)."""
    if not hostname or not isinstance(hostname, str):
        return False
    name = hostname.lower().rstrip(".")
    if not name or len(name) > 253:
        return False
    labels = name.split(".")
    # An all-numeric final label means the entry is an address, not a name
    if labels[-1].isdigit():
        return False
    return all(_LABEL_RE.match(label) for label in labels)


def probe_target_error(target: str) -> str | None:
    """Return why ``target`` is not a usable probe, or None if it is.

    Accepted forms are ``http(s)://host[:port][/path]`` and
    ``tcp://host:port``.
    """
    parts = urlsplit(target)
    if parts.scheme not in PROBE_SCHEMES:
        return f"scheme must be one of {sorted(PROBE_SCHEMES)}"
    if not parts.hostname:
        return "missing host"
    try:
        port = parts.port
    except ValueError:
        return "port must be an integer between 0 and 65535"
    if parts.scheme == "tcp" and port is None:
        return "tcp probe needs host and port"
    return None


@dataclass
class GithubMetaConfig:
    """Optional import of GitHub's published address ranges."""

    enabled: bool = False
    url: str = GITHUB_META_URL
    keys: list[str] = field(default_factory=lambda: list(GITHUB_META_KEYS))
    timeout_s: float = 10.0


@dataclass
class VerifyConfig:
    """Post-apply probes."""

    enabled: bool = True
    timeout_s: float = 5.0
    # Empty -> https://<first resolved allowed host>
    allowed: list[str] = field(default_factory=list)
    blocked: list[str] = field(default_factory=lambda: [DEFAULT_BLOCKED_PROBE])


@dataclass
class LockdownConfig:
    """Full lockdown configuration.

    Loaded once per run. Every field has a least-privilege default.
    """

    allowed_hosts: list[str] = field(default_factory=lambda: list(DEFAULT_ALLOWED_HOSTS))
    github_meta: GithubMetaConfig = field(default_factory=GithubMetaConfig)

    # Infrastructure discovery
    fallback_prefix: int = 24
    extra_ranges: list[str] = field(default_factory=list)

    # DNS
    restrict_dns_to_nameservers: bool = False
    resolv_conf: str = DEFAULT_RESOLV_CONF

    allow_ssh: bool = False  # tcp/22, allow-set destinations only
    ingress: str = "accept"  # "accept" leaves ingress to the container runtime
    egress_action: str = "drop"  # "reject" answers with icmp admin-prohibited
    ipv6: bool = False  # False -> all IPv6 egress is denied
    use_ipset: bool = True

    resolve_timeout_s: float = 5.0
    on_resolve_failure: str = "warn"

    verify: VerifyConfig = field(default_factory=VerifyConfig)

    # JSON-lines run history (None = disabled)
    audit_log_path: str | None = None

    def validate(self) -> None:
        """Raise ConfigError if the config cannot produce a sound policy."""
        if not self.allowed_hosts:
            raise ConfigError("allowlist is empty -- refusing to start with nothing reachable")
        invalid = [h for h in self.allowed_hosts if not is_valid_hostname(h)]
        if invalid:
            raise ConfigError(f"invalid hostname(s) in allowlist: {', '.join(map(repr, invalid))}")
        if self.ingress not in INGRESS_MODES:
            raise ConfigError(
                f"ingress must be one of {sorted(INGRESS_MODES)}, got {self.ingress!r}"
            )
        if self.egress_action not in EGRESS_ACTIONS:
            raise ConfigError(
                f"egress_action must be one of {sorted(EGRESS_ACTIONS)}, got {self.egress_action!r}"
            )
        if self.on_resolve_failure not in FAILURE_SEVERITIES:
            raise ConfigError(
                f"on_resolve_failure must be one of {sorted(FAILURE_SEVERITIES)}, "
                f"got {self.on_resolve_failure!r}"
            )
        if not 8 <= self.fallback_prefix <= 32:
            raise ConfigError(
                f"fallback_prefix must be between 8 and 32, got {self.fallback_prefix}"
            )
        if self.resolve_timeout_s <= 0 or self.verify.timeout_s <= 0:
            raise ConfigError("timeouts must be positive")
        for cidr in self.extra_ranges:
            try:
                ipaddress.ip_network(cidr, strict=False)
            except ValueError as exc:
                raise ConfigError(f"invalid extra range {cidr!r}: {exc}") from exc
        if self.github_meta.enabled and not self.github_meta.keys:
            raise ConfigError("github_meta.keys must not be empty when github_meta is enabled")
        if self.verify.enabled and not self.verify.blocked:
            raise ConfigError(
                "verify.blocked must not be empty -- nothing would prove egress is denied"
            )
        for name, targets in (("allowed", self.verify.allowed), ("blocked", self.verify.blocked)):
            for target in targets:
                reason = probe_target_error(target)
                if reason:
                    raise ConfigError(f"invalid verify.{name} target {target!r}: {reason}")

    def normalized_hosts(self) -> list[str]:
        """Lower-cased, de-duplicated hostnames in config order."""
        seen: dict[str, None] = {}
        for host in self.allowed_hosts:
            seen.setdefault(host.strip().lower().rstrip("."), None)
        return list(seen)


def load_config(path: Path | str | None = None) -> LockdownConfig:
    """Load lockdown configuration from a YAML file.

    If the file does not exist, returns the default config (curated host
    list). A file that exists but cannot be parsed raises ConfigError.
    """
    config_path = Path(path) if path else DEFAULT_CONFIG_PATH

    if not config_path.exists():
        logger.info("No lockdown config at %s -- using built-in allowlist", config_path)
        config = LockdownConfig()
        config.validate()
        return config

    try:
        raw = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"cannot read {config_path}: {exc}") from exc

    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError(f"{config_path} must contain a mapping at the top level")

    config = _parse_config(raw)
    config.validate()
    logger.info(
        "Loaded lockdown config from %s (%d hosts)", config_path, len(config.allowed_hosts)
    )
    return config


def _section(raw: dict, name: str) -> dict:
    value = raw.get(name, {})
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"'{name}' must be a mapping")
    return value


def _string_list(value: Any, name: str) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ConfigError(f"'{name}' must be a list of strings")
    return [v.strip() for v in value if v.strip()]


def _bool(section: dict, key: str, default: bool, name: str) -> bool:
    value = section.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"'{name}' must be true or false, got {value!r}")
    return value


def _parse_config(raw: dict) -> LockdownConfig:
    """Parse raw YAML dict into LockdownConfig."""
    try:
        return _build_config(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"invalid value in lockdown config: {exc}") from exc


def _build_config(raw: dict) -> LockdownConfig:
    defaults = LockdownConfig()

    if "allowed_hosts" in raw:
        hosts = _string_list(raw["allowed_hosts"], "allowed_hosts")
    else:
        hosts = list(defaults.allowed_hosts)

    gh_raw = _section(raw, "github_meta")
    github_meta = GithubMetaConfig(
        enabled=_bool(gh_raw, "enabled", False, "github_meta.enabled"),
        url=gh_raw.get("url", GITHUB_META_URL),
        keys=_string_list(gh_raw.get("keys", list(GITHUB_META_KEYS)), "github_meta.keys"),
        timeout_s=float(gh_raw.get("timeout_s", 10.0)),
    )

    infra_raw = _section(raw, "infrastructure")
    dns_raw = _section(raw, "dns")

    verify_raw = _section(raw, "verify")
    verify = VerifyConfig(
        enabled=_bool(verify_raw, "enabled", True, "verify.enabled"),
        timeout_s=float(verify_raw.get("timeout_s", 5.0)),
        allowed=_string_list(verify_raw.get("allowed"), "verify.allowed"),
        blocked=_string_list(
            verify_raw.get("blocked", [DEFAULT_BLOCKED_PROBE]), "verify.blocked"
        ),
    )

    return LockdownConfig(
        allowed_hosts=hosts,
        github_meta=github_meta,
        fallback_prefix=int(infra_raw.get("fallback_prefix", 24)),
        extra_ranges=_string_list(infra_raw.get("extra_ranges"), "infrastructure.extra_ranges"),
        restrict_dns_to_nameservers=_bool(
            dns_raw, "restrict_to_nameservers", False, "dns.restrict_to_nameservers"
        ),
        resolv_conf=str(dns_raw.get("resolv_conf", DEFAULT_RESOLV_CONF)),
        allow_ssh=_bool(raw, "allow_ssh", False, "allow_ssh"),
        ingress=str(raw.get("ingress", "accept")).lower(),
        egress_action=str(raw.get("egress_action", "drop")).lower(),
        ipv6=_bool(raw, "ipv6", False, "ipv6"),
        use_ipset=_bool(raw, "use_ipset", True, "use_ipset"),
        resolve_timeout_s=float(raw.get("resolve_timeout_s", 5.0)),
        on_resolve_failure=str(raw.get("on_resolve_failure", "warn")).lower(),
        verify=verify,
        audit_log_path=raw.get("audit_log_path"),
    )
