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
"""Runtime environment inspection.

Container networking differs between hosts, compose projects and CI
runners, so the ranges the container needs regardless of the allowlist
are discovered fresh on every run and never hardcoded:

  - host network: the kernel's connected route on the default-route
    device (e.g. ``172.17.0.0/16`` on the default bridge). When no such
    route exists, the gateway widened to ``fallback_prefix``.
  - nameservers: from resolv.conf, for the DNS exception.
  - static extras: ``infrastructure.extra_ranges`` from config.

Everything here is read-only. Routes come from ``ip -4 route show``, or
from /proc/net/route when iproute2 is not installed.
"""

from __future__ import annotations

import ipaddress
import logging
import socket
import struct
import subprocess
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from .addresses import InfrastructureRange
from .config import LockdownConfig
from .errors import DiscoveryError
from .log import stage_extra

logger = logging.getLogger("lockdown.environment")

PROC_NET_ROUTE = "/proc/net/route"
DOCKER_EMBEDDED_DNS = ipaddress.IPv4Address("127.0.0.11")

ReadCommand = Callable[[list[str]], str]


@dataclass
class Route:
    """One IPv4 routing table entry."""

    destination: ipaddress.IPv4Network
    device: str
    gateway: ipaddress.IPv4Address | None = None
    scope_link: bool = False

    @property
    def is_default(self) -> bool:
        return self.destination.prefixlen == 0


@dataclass
class Infrastructure:
    """Environment facts injected into the aggregator and compiler."""

    ranges: list[InfrastructureRange] = field(default_factory=list)
    gateway: ipaddress.IPv4Address | None = None
    device: str = ""
    nameservers: list[ipaddress.IPv4Address | ipaddress.IPv6Address] = field(default_factory=list)

    @property
    def uses_docker_dns(self) -> bool:
        return DOCKER_EMBEDDED_DNS in self.nameservers

    def to_dict(self) -> dict:
        return {
            "ranges": [f"{r.network} ({r.reason})" for r in self.ranges],
            "gateway": str(self.gateway) if self.gateway else None,
            "device": self.device,
            "nameservers": [str(n) for n in self.nameservers],
        }


# ---------------------------------------------------------------------------
# Read-only command helper
# ---------------------------------------------------------------------------


def read_command(cmd: list[str], timeout: int = 10) -> str:
    """Run a read-only command and return stdout."""
    result = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout, check=True)
    return result.stdout


# ---------------------------------------------------------------------------
# Parsers
# ---------------------------------------------------------------------------


def parse_ip_route(output: str) -> list[Route]:
    """Parse ``ip -4 route show`` output."""
    routes: list[Route] = []
    for line in output.splitlines():
        tokens = line.split()
        if not tokens:
            continue
        dest = tokens[0]
        if dest in ("unreachable", "blackhole", "prohibit", "throw", "local", "broadcast"):
            continue
        try:
            destination = (
                ipaddress.IPv4Network("0.0.0.0/0")
                if dest == "default"
                else ipaddress.IPv4Network(dest, strict=False)
            )
        except ValueError:
            logger.debug("Skipping unparsable route line: %s", line)
            continue

        gateway = None
        if "via" in tokens:
            try:
                gateway = ipaddress.IPv4Address(tokens[tokens.index("via") + 1])
            except (ValueError, IndexError):
                gateway = None
        device = tokens[tokens.index("dev") + 1] if "dev" in tokens[:-1] else ""
        routes.append(
            Route(
                destination=destination,
                device=device,
                gateway=gateway,
                scope_link="scope" in tokens[:-1] and tokens[tokens.index("scope") + 1] == "link",
            )
        )
    return routes


def parse_proc_net_route(text: str) -> list[Route]:
    """Parse /proc/net/route (little-endian hex addresses)."""

    def _addr(hex_value: str) -> str:
        return socket.inet_ntoa(struct.pack("<L", int(hex_value, 16)))

    routes: list[Route] = []
    for line in text.splitlines()[1:]:
        cols = line.split()
        if len(cols) < 8:
            continue
        iface, dest_hex, gw_hex, _flags, *_rest = cols
        mask_hex = cols[7]
        try:
            destination = ipaddress.IPv4Network(
                f"{_addr(dest_hex)}/{_addr(mask_hex)}", strict=False
            )
            gw = ipaddress.IPv4Address(_addr(gw_hex))
        except (ValueError, struct.error):
            continue
        gateway = None if gw == ipaddress.IPv4Address("0.0.0.0") else gw
        routes.append(
            Route(
                destination=destination,
                device=iface,
                gateway=gateway,
                scope_link=gateway is None and destination.prefixlen > 0,
            )
        )
    return routes


def parse_resolv_conf(text: str) -> list[ipaddress.IPv4Address | ipaddress.IPv6Address]:
    """Extract ``nameserver`` addresses from resolv.conf content."""
    servers: list[ipaddress.IPv4Address | ipaddress.IPv6Address] = []
    for line in text.splitlines():
        parts = line.split("#", 1)[0].split()
        if len(parts) >= 2 and parts[0] == "nameserver":
            try:
                address = ipaddress.ip_address(parts[1].split("%", 1)[0])
            except ValueError:
                logger.warning("Ignoring invalid nameserver entry: %s", parts[1])
                continue
            if address not in servers:
                servers.append(address)
    return servers


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------


def read_routes(run: ReadCommand = read_command, proc_path: str = PROC_NET_ROUTE) -> list[Route]:
    """Read the IPv4 routing table, preferring iproute2."""
    try:
        return parse_ip_route(run(["ip", "-4", "route", "show"]))
    except FileNotFoundError:
        logger.debug("iproute2 not installed, reading %s", proc_path)
    except (subprocess.CalledProcessError, subprocess.TimeoutExpired) as exc:
        logger.warning("'ip route' failed (%s), reading %s", exc, proc_path)
    try:
        return parse_proc_net_route(Path(proc_path).read_text(encoding="utf-8"))
    except OSError as exc:
        raise DiscoveryError(f"cannot read routing table: {exc}") from exc


def discover_infrastructure(
    config: LockdownConfig,
    run: ReadCommand = read_command,
    proc_path: str = PROC_NET_ROUTE,
) -> Infrastructure:
    """Inspect the running container and return its infrastructure ranges.

    Raises:
        DiscoveryError: no default route (the host cannot be located).
    """
    routes = read_routes(run, proc_path)
    defaults = [r for r in routes if r.is_default and r.gateway is not None]
    if not defaults:
        raise DiscoveryError("no default route found -- cannot determine host network")
    if len(defaults) > 1:
        logger.warning(
            "Multiple default routes, using the first",
            extra=stage_extra("environment", routes=len(defaults)),
        )
    default = defaults[0]

    infra = Infrastructure(gateway=default.gateway, device=default.device)

    connected = [
        r
        for r in routes
        if not r.is_default
        and r.device == default.device
        and r.gateway is None
        and default.gateway in r.destination
    ]
    if connected:
        host_net = min(connected, key=lambda r: r.destination.num_addresses).destination
        infra.ranges.append(InfrastructureRange(network=host_net, reason="default-route"))
    else:
        host_net = ipaddress.IPv4Network(
            f"{default.gateway}/{config.fallback_prefix}", strict=False
        )
        infra.ranges.append(InfrastructureRange(network=host_net, reason="gateway"))
        logger.info(
            "No connected route for %s, widening gateway to /%d",
            default.device,
            config.fallback_prefix,
        )

    for cidr in config.extra_ranges:
        infra.ranges.append(
            InfrastructureRange(network=ipaddress.ip_network(cidr, strict=False), reason="static")
        )

    try:
        infra.nameservers = parse_resolv_conf(
            Path(config.resolv_conf).read_text(encoding="utf-8")
        )
    except OSError as exc:
        logger.warning("Cannot read %s: %s", config.resolv_conf, exc)

    logger.info(
        "Host network detected as %s",
        host_net,
        extra=stage_extra(
            "environment",
            gateway=str(default.gateway),
            device=default.device,
            nameservers=len(infra.nameservers),
        ),
    )
    return infra
