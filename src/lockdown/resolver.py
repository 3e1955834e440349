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
"""Allowlist resolver.

Turns the configured hostnames into addresses using the system resolver
(``getaddrinfo``, so /etc/hosts and resolv.conf apply exactly as they do
for the workload). Lookups run in parallel daemon threads and share one
deadline: a host that has not answered by then counts as failed, and a
stuck lookup can never hold up container start.

A failed host is not fatal by default. The policy proceeds without its
addresses, which errs toward least privilege. ``on_resolve_failure``
controls how loudly that is reported:

  warn   WARNING log line (default)
  error  ERROR log line
  abort  the run stops with a ResolutionError
"""

from __future__ import annotations

import ipaddress
import logging
import socket
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

import httpx

from .addresses import IPNetwork, ResolvedAddress, is_allowable_address
from .config import GithubMetaConfig
from .errors import ResolutionError
from .github_meta import fetch_github_ranges
from .log import stage_extra

logger = logging.getLogger("lockdown.resolver")

LookupFunc = Callable[..., list]


@dataclass
class ResolutionReport:
    """Outcome of one resolver run."""

    addresses: dict[str, list[ResolvedAddress]] = field(default_factory=dict)
    extra: list[ResolvedAddress] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)
    duration_ms: float = 0.0

    @property
    def resolved_hosts(self) -> list[str]:
        """Hosts that produced at least one address, in config order."""
        return [host for host, addrs in self.addresses.items() if addrs]

    def all_addresses(self) -> list[ResolvedAddress]:
        result = [a for addrs in self.addresses.values() for a in addrs]
        result.extend(self.extra)
        return result

    def to_dict(self) -> dict:
        return {
            "resolved": {h: [str(a.network) for a in addrs] for h, addrs in self.addresses.items()},
            "extra_ranges": len(self.extra),
            "failures": dict(self.failures),
            "duration_ms": round(self.duration_ms, 1),
        }


class Resolver:
    """Resolve AllowedHosts to addresses with a bounded per-host timeout.

    Usage:
        resolver = Resolver(timeout_s=5.0)
        report = resolver.resolve(["api.github.com", "registry.npmjs.org"])
    """

    def __init__(
        self,
        timeout_s: float = 5.0,
        ipv6: bool = False,
        on_failure: str = "warn",
        github_meta: GithubMetaConfig | None = None,
        lookup: LookupFunc | None = None,
        http_client: httpx.Client | None = None,
    ) -> None:
        self._timeout = timeout_s
        self._families = (socket.AF_INET, socket.AF_INET6) if ipv6 else (socket.AF_INET,)
        self._on_failure = on_failure
        self._github_meta = github_meta
        self._lookup = lookup or socket.getaddrinfo
        self._http_client = http_client

    @property
    def versions(self) -> frozenset[int]:
        return frozenset(6 if f == socket.AF_INET6 else 4 for f in self._families)

    # -------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------
    def resolve(self, hosts: Iterable[str]) -> ResolutionReport:
        """Resolve every host and return the joined report.

        Raises:
            ResolutionError: nothing resolved at all, or a failure occurred
                with ``on_failure="abort"``.
        """
        hosts = list(hosts)
        started = time.monotonic()
        report = ResolutionReport()

        outcomes = self._lookup_all(hosts)
        for host in hosts:
            outcome = outcomes.get(host)
            if outcome is None:
                report.addresses[host] = []
                report.failures[host] = f"timed out after {self._timeout:g}s"
            elif isinstance(outcome, str):
                report.addresses[host] = []
                report.failures[host] = outcome
            else:
                report.addresses[host] = outcome
                logger.info(
                    "Resolved %s",
                    host,
                    extra=stage_extra(
                        "resolver",
                        addresses=", ".join(str(a.network.network_address) for a in outcome),
                    ),
                )

        if self._github_meta is not None and self._github_meta.enabled:
            self._add_github_ranges(report)

        report.duration_ms = (time.monotonic() - started) * 1000
        self._report_failures(report)

        if not report.all_addresses():
            raise ResolutionError("no allowed host resolved to a usable address")

        logger.info(
            "Resolved %d/%d hosts",
            len(report.resolved_hosts),
            len(hosts),
            extra=stage_extra(
                "resolver",
                addresses=len(report.all_addresses()),
                failed=len(report.failures),
                duration_ms=report.duration_ms,
            ),
        )
        return report

    # -------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------
    def _lookup_all(self, hosts: list[str]) -> dict[str, list[ResolvedAddress] | str]:
        """Run all lookups concurrently and snapshot what finished in time.

        Values are address lists on success or an error string on failure;
        hosts still pending at the deadline are absent from the result.
        """
        results: dict[str, list[ResolvedAddress] | str] = {}
        lock = threading.Lock()

        def _worker(host: str) -> None:
            try:
                outcome: list[ResolvedAddress] | str = self._lookup_host(host)
            except (socket.gaierror, socket.herror, UnicodeError, OSError) as exc:
                outcome = str(exc) or exc.__class__.__name__
            with lock:
                results[host] = outcome

        threads = [
            threading.Thread(target=_worker, args=(host,), name=f"resolve-{host}", daemon=True)
            for host in hosts
        ]
        for thread in threads:
            thread.start()

        deadline = time.monotonic() + self._timeout
        for thread in threads:
            thread.join(timeout=max(0.0, deadline - time.monotonic()))

        # Late answers after this point are ignored
        with lock:
            return dict(results)

    def _lookup_host(self, host: str) -> list[ResolvedAddress] | str:
        seen: dict[IPNetwork, None] = {}
        for family in self._families:
            try:
                infos = self._lookup(host, None, family, socket.SOCK_STREAM)
            except socket.gaierror as exc:
                # Missing AAAA records are normal when A records exist
                if family == socket.AF_INET6 and seen:
                    continue
                if family == socket.AF_INET and len(self._families) > 1:
                    logger.debug("No IPv4 answer for %s: %s", host, exc)
                    continue
                raise
            for info in infos:
                raw = str(info[4][0]).split("%", 1)[0]
                try:
                    address = ipaddress.ip_address(raw)
                except ValueError:
                    logger.warning("Ignoring unparsable address %r for %s", raw, host)
                    continue
                if address.version not in self.versions:
                    continue
                if not is_allowable_address(address):
                    logger.warning("Ignoring non-routable address %s for %s", address, host)
                    continue
                seen.setdefault(ipaddress.ip_network(address), None)

        if not seen:
            return "no usable address in answer"
        return [ResolvedAddress(network=net, source=host) for net in seen]

    def _add_github_ranges(self, report: ResolutionReport) -> None:
        try:
            ranges = fetch_github_ranges(
                self._github_meta,
                versions=self.versions,
                client=self._http_client,
            )
        except (httpx.HTTPError, ValueError) as exc:
            report.failures["github-meta"] = str(exc) or exc.__class__.__name__
            return
        report.extra.extend(ranges)
        logger.info(
            "Added GitHub meta ranges", extra=stage_extra("resolver", ranges=len(ranges))
        )

    def _report_failures(self, report: ResolutionReport) -> None:
        level = logging.ERROR if self._on_failure in ("error", "abort") else logging.WARNING
        for host, reason in report.failures.items():
            logger.log(
                level,
                "Failed to resolve %s -- excluded from allowlist",
                host,
                extra=stage_extra("resolver", error=reason),
            )
        if report.failures and self._on_failure == "abort":
            raise ResolutionError(
                f"{len(report.failures)} source(s) failed to resolve: "
                f"{', '.join(sorted(report.failures))}"
            )
