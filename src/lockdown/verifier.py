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
"""Post-apply verification.

Proves the applied policy behaves as intended by probing the live
network: every "allowed" probe must connect and every "blocked" probe
must fail, each within a bounded timeout and with no retries. Any other
outcome means the firewall cannot be trusted and the workload must not
start.

Probe targets:
  https://host[/path], http://...   any HTTP response counts as reachable
  tcp://host:port                   a completed TCP handshake counts

HTTP probes ignore proxy environment variables so they test the direct
path the packet filter governs.
"""

from __future__ import annotations

import ipaddress
import logging
import socket
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass
from urllib.parse import urlsplit

import httpx

from .aggregator import AllowSet
from .config import probe_target_error
from .errors import VerificationError
from .log import stage_extra

logger = logging.getLogger("lockdown.verifier")

EXPECT_REACHABLE = "reachable"
EXPECT_BLOCKED = "blocked"


@dataclass
class VerificationResult:
    """Outcome of one probe."""

    target: str
    expected: str  # "reachable" or "blocked"
    reachable: bool
    detail: str = ""
    duration_ms: float = 0.0

    @property
    def passed(self) -> bool:
        return self.reachable == (self.expected == EXPECT_REACHABLE)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["passed"] = self.passed
        data["duration_ms"] = round(self.duration_ms, 1)
        return data


def _literal_host(target: str) -> str:
    return urlsplit(target).hostname or ""


class Verifier:
    """Run allowed/blocked probes against the applied policy.

    Usage:
        verifier = Verifier(["https://api.github.com"], ["https://example.com"], timeout_s=5)
        results = verifier.run(allow_set)
    """

    def __init__(
        self,
        allowed: list[str],
        blocked: list[str],
        timeout_s: float = 5.0,
        http_client: httpx.Client | None = None,
        connect: Callable[..., socket.socket] = socket.create_connection,
    ) -> None:
        self._allowed = list(allowed)
        self._blocked = list(blocked)
        self._timeout = timeout_s
        self._http_client = http_client
        self._connect = connect
        self.results: list[VerificationResult] = []

    def run(self, allow_set: AllowSet | None = None) -> list[VerificationResult]:
        """Probe every target and raise if any result is unexpected.

        Raises:
            VerificationError: a probe is missing or malformed, a blocked
                target lies inside the allow set, an allowed probe failed, or a
                blocked probe succeeded.
        """
        if not self._allowed:
            raise VerificationError("no allowed probe available -- cannot prove egress works")
        if not self._blocked:
            raise VerificationError("no blocked probe configured -- cannot prove egress is denied")
        for target in self._allowed + self._blocked:
            reason = probe_target_error(target)
            if reason:
                raise VerificationError(f"invalid target {target!r}: {reason}")

        if allow_set is not None:
            for target in self._blocked:
                host = _literal_host(target)
                try:
                    address = ipaddress.ip_address(host)
                except ValueError:
                    continue
                if allow_set.contains(address):
                    raise VerificationError(
                        f"blocked probe {target} targets {address}, which is in the allow set"
                    )

        results: list[VerificationResult] = []
        self.results = results
        client = self._http_client or httpx.Client(
            timeout=self._timeout, follow_redirects=False, trust_env=False
        )
        try:
            for target in self._allowed:
                results.append(self._probe(client, target, EXPECT_REACHABLE))
            for target in self._blocked:
                results.append(self._probe(client, target, EXPECT_BLOCKED))
        finally:
            if self._http_client is None:
                client.close()

        failures = [r for r in results if not r.passed]
        if failures:
            summary = "; ".join(
                f"{r.target} expected {r.expected} but was "
                f"{'reachable' if r.reachable else 'unreachable'}"
                for r in failures
            )
            raise VerificationError(f"firewall misconfigured: {summary}")
        return results

    # -------------------------------------------------------------------
    # Probes
    # -------------------------------------------------------------------
    def _probe(self, client: httpx.Client, target: str, expected: str) -> VerificationResult:
        started = time.monotonic()
        if target.startswith("tcp://"):
            reachable, detail = self._probe_tcp(target)
        else:
            reachable, detail = self._probe_http(client, target)
        result = VerificationResult(
            target=target,
            expected=expected,
            reachable=reachable,
            detail=detail,
            duration_ms=(time.monotonic() - started) * 1000,
        )
        level = logging.INFO if result.passed else logging.ERROR
        logger.log(
            level,
            "Probe %s %s (expected %s)",
            target,
            "reachable" if reachable else "unreachable",
            expected,
            extra=stage_extra(
                "verifier",
                passed=result.passed,
                detail=detail,
                duration_ms=result.duration_ms,
            ),
        )
        return result

    def _probe_http(self, client: httpx.Client, url: str) -> tuple[bool, str]:
        try:
            response = client.get(url, timeout=self._timeout)
        except (httpx.UnsupportedProtocol, httpx.InvalidURL) as exc:
            raise VerificationError(f"unusable target {url!r}: {exc}") from exc
        except httpx.TimeoutException:
            return False, f"timed out after {self._timeout:g}s"
        except httpx.TransportError as exc:
            return False, str(exc) or exc.__class__.__name__
        return True, f"HTTP {response.status_code}"

    def _probe_tcp(self, target: str) -> tuple[bool, str]:
        parts = urlsplit(target)
        try:
            sock = self._connect((parts.hostname, parts.port), timeout=self._timeout)
        except socket.timeout:
            return False, f"timed out after {self._timeout:g}s"
        except OSError as exc:
            return False, str(exc) or exc.__class__.__name__
        sock.close()
        return True, "connected"
