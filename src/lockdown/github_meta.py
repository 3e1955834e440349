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
"""GitHub published address ranges.

GitHub fronts git, the web UI and the API with hundreds of addresses that
rotate faster than DNS answers reveal, so resolving ``github.com`` alone
is not enough. GitHub publishes the authoritative CIDR list at
https://api.github.com/meta; this module pulls the requested keys from it.
"""

from __future__ import annotations

import ipaddress
import logging

import httpx

from .addresses import IPNetwork, ResolvedAddress, is_allowable_address
from .config import GithubMetaConfig

logger = logging.getLogger("lockdown.github_meta")


def fetch_github_ranges(
    config: GithubMetaConfig,
    versions: frozenset[int] = frozenset({4}),
    client: httpx.Client | None = None,
) -> list[ResolvedAddress]:
    """Fetch and parse GitHub's meta document.

    Raises:
        httpx.HTTPError: the request failed or returned an error status.
        ValueError: the document is not JSON or lacks a requested key.
    """
    if client is None:
        with httpx.Client(timeout=config.timeout_s) as own_client:
            response = own_client.get(config.url, headers={"Accept": "application/json"})
    else:
        response = client.get(config.url, headers={"Accept": "application/json"})
    response.raise_for_status()

    data = response.json()
    return parse_github_meta(data, config.keys, versions)


def parse_github_meta(
    data: object,
    keys: list[str],
    versions: frozenset[int] = frozenset({4}),
) -> list[ResolvedAddress]:
    """Extract the CIDRs under ``keys`` for the enabled IP versions."""
    if not isinstance(data, dict):
        raise ValueError("GitHub meta response is not an object")
    missing = [k for k in keys if k not in data]
    if missing:
        raise ValueError(f"GitHub meta response missing required fields: {', '.join(missing)}")

    ranges: dict[IPNetwork, str] = {}
    for key in keys:
        entries = data[key]
        if not isinstance(entries, list):
            raise ValueError(f"GitHub meta field {key!r} is not a list")
        for cidr in entries:
            try:
                network = ipaddress.ip_network(str(cidr), strict=False)
            except ValueError:
                logger.warning("Skipping invalid CIDR %r from GitHub meta", cidr)
                continue
            if network.version not in versions:
                continue
            if not is_allowable_address(network.network_address):
                logger.warning("Skipping non-routable GitHub range %s", network)
                continue
            ranges.setdefault(network, f"github-meta:{key}")

    return [ResolvedAddress(network=net, source=src) for net, src in ranges.items()]
