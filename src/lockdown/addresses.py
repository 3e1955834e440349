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
"""Address value types shared by the pipeline stages."""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass

IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address
IPNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network


@dataclass(frozen=True)
class ResolvedAddress:
    """One resolved address or range, tagged with where it came from.

    ``source`` is diagnostic only; matching never looks at it.
    """

    network: IPNetwork
    source: str

    @property
    def version(self) -> int:
        return self.network.version


@dataclass(frozen=True)
class InfrastructureRange:
    """A range the container needs regardless of the allowlist."""

    network: IPNetwork
    reason: str  # "default-route", "gateway", "nameserver", "static"

    @property
    def version(self) -> int:
        return self.network.version


def is_allowable_address(address: IPAddress) -> bool:
    """Reject addresses that can never be a legitimate remote destination."""
    return not (
        address.is_loopback
        or address.is_link_local
        or address.is_multicast
        or address.is_unspecified
        or address.is_reserved
    )
