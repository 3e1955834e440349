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
"""Range aggregator.

Merges resolved addresses and infrastructure ranges into one AllowSet:
identical entries are deduplicated and contiguous or overlapping ranges
are collapsed into the smallest equivalent list of CIDR blocks per
address family. Collapsing only shrinks the kernel set; membership is
the same either way.
"""

from __future__ import annotations

import ipaddress
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from .addresses import InfrastructureRange, IPAddress, IPNetwork, ResolvedAddress
from .log import stage_extra

logger = logging.getLogger("lockdown.aggregator")


@dataclass
class AllowSet:
    """The collapsed set of reachable destinations.

    ``sources`` maps every input network to the tags that contributed
    it, for diagnostics only.
    """

    ipv4: list[ipaddress.IPv4Network] = field(default_factory=list)
    ipv6: list[ipaddress.IPv6Network] = field(default_factory=list)
    sources: dict[IPNetwork, list[str]] = field(default_factory=dict)

    def networks(self, version: int | None = None) -> list[IPNetwork]:
        if version == 4:
            return list(self.ipv4)
        if version == 6:
            return list(self.ipv6)
        return [*self.ipv4, *self.ipv6]

    def contains(self, address: IPAddress | str) -> bool:
        """Membership test for a single destination address."""
        if isinstance(address, str):
            address = ipaddress.ip_address(address)
        pool = self.ipv4 if address.version == 4 else self.ipv6
        return any(address in net for net in pool)

    def __contains__(self, address: object) -> bool:
        if isinstance(address, (str, ipaddress.IPv4Address, ipaddress.IPv6Address)):
            return self.contains(address)
        return False

    def __len__(self) -> int:
        return len(self.ipv4) + len(self.ipv6)

    def membership(self) -> frozenset[IPNetwork]:
        """Order-independent identity, used to compare two runs."""
        return frozenset(self.networks())


def aggregate(
    resolved: Iterable[ResolvedAddress],
    infrastructure: Iterable[InfrastructureRange] = (),
) -> AllowSet:
    """Build the AllowSet from resolver output and infrastructure ranges."""
    sources: dict[IPNetwork, list[str]] = {}
    total = 0
    for entry in resolved:
        total += 1
        tags = sources.setdefault(entry.network, [])
        if entry.source not in tags:
            tags.append(entry.source)
    for infra in infrastructure:
        total += 1
        tags = sources.setdefault(infra.network, [])
        tag = f"infra:{infra.reason}"
        if tag not in tags:
            tags.append(tag)

    v4 = [n for n in sources if n.version == 4]
    v6 = [n for n in sources if n.version == 6]
    allow_set = AllowSet(
        ipv4=sorted(ipaddress.collapse_addresses(v4)),
        ipv6=sorted(ipaddress.collapse_addresses(v6)),
        sources=sources,
    )

    logger.info(
        "Aggregated %d entries into %d ranges",
        total,
        len(allow_set),
        extra=stage_extra("aggregator", ipv4=len(allow_set.ipv4), ipv6=len(allow_set.ipv6)),
    )
    return allow_set
