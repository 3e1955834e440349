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
"""Policy applier -- the only code that mutates kernel filter state.

Commits a compiled FirewallPolicy as a full-replacement transaction per
address family:

  1. ``ipset restore``: fill a staging set, ``swap`` it with the live
     set, destroy the staging set. The swap is atomic.
  2. ``iptables-restore --noflush``: one commit that redeclares (and so
     flushes) only the owned chains, appends their rules and inserts the
     jump from the built-in chain when it is missing. The kernel accepts
     or rejects the whole table at once.

Chains this tool does not own (Docker's NAT rules, the runtime's own
filter rules) are never flushed or edited.

If any commit fails, every family touched by the transaction is rolled
back to deny-everything (loopback only) and the next family is never
attempted, so a failure can never leave a more permissive policy behind.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from .compiler import (
    HOOKS,
    FirewallPolicy,
    Ruleset,
    deny_all_ruleset,
    render_ipset,
    render_iptables,
)
from .errors import ApplyError, PrivilegeError
from .log import stage_extra

logger = logging.getLogger("lockdown.applier")

CAP_NET_ADMIN = 12
PROC_SELF_STATUS = "/proc/self/status"
PROC_IF_INET6 = "/proc/net/if_inet6"

# version -> (rule tool, restore tool)
TOOLS: dict[int, tuple[str, str]] = {
    4: ("iptables", "iptables-restore"),
    6: ("ip6tables", "ip6tables-restore"),
}

_PERMISSION_MARKERS = ("permission denied", "operation not permitted", "you must be root")


# ---------------------------------------------------------------------------
# Command runner
# ---------------------------------------------------------------------------


class CommandRunner:
    """Runs packet-filter commands; in dry-run mode only logs them."""

    def __init__(self, dry_run: bool = False, timeout: int = 30) -> None:
        self.dry_run = dry_run
        self._timeout = timeout

    def run(
        self,
        cmd: list[str],
        input_text: str | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess:
        if self.dry_run:
            logger.info("[DRY-RUN] %s", " ".join(cmd))
            if input_text:
                logger.debug("[DRY-RUN] input:\n%s", input_text)
            return subprocess.CompletedProcess(cmd, 0, "", "")
        logger.debug("Running %s", " ".join(cmd))
        return subprocess.run(
            cmd,
            input=input_text,
            capture_output=True,
            text=True,
            timeout=self._timeout,
            check=check,
        )


def has_capability(cap: int, status_path: str = PROC_SELF_STATUS) -> bool | None:
    """Check the effective capability set; None if it cannot be read."""
    try:
        text = Path(status_path).read_text(encoding="utf-8")
    except OSError:
        return None
    for line in text.splitlines():
        if line.startswith("CapEff:"):
            try:
                return bool(int(line.split()[1], 16) & (1 << cap))
            except (IndexError, ValueError):
                return None
    return None


# ---------------------------------------------------------------------------
# Applier
# ---------------------------------------------------------------------------


@dataclass
class ApplyReport:
    """What the applier committed."""

    families: list[int] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)
    rule_count: int = 0
    set_members: int = 0
    dry_run: bool = False

    def to_dict(self) -> dict:
        return {
            "families": [f"ipv{v}" for v in self.families],
            "skipped": [f"ipv{v}" for v in self.skipped],
            "rule_count": self.rule_count,
            "set_members": self.set_members,
            "dry_run": self.dry_run,
        }


class PolicyApplier:
    """Commits compiled policies to the kernel.

    Usage:
        applier = PolicyApplier()
        applier.preflight(use_ipset=True)   # before anything else runs
        report = applier.apply(policy)
    """

    def __init__(
        self,
        runner: CommandRunner | None = None,
        dry_run: bool = False,
        status_path: str = PROC_SELF_STATUS,
        if_inet6_path: str = PROC_IF_INET6,
        which: Callable[[str], str | None] = shutil.which,
    ) -> None:
        self._runner = runner or CommandRunner(dry_run=dry_run)
        self._dry_run = dry_run or getattr(self._runner, "dry_run", False) is True
        self._status_path = status_path
        self._if_inet6_path = if_inet6_path
        self._which = which
        self._skip_versions: set[int] = set()

    @property
    def dry_run(self) -> bool:
        return self._dry_run

    # -------------------------------------------------------------------
    # Preflight
    # -------------------------------------------------------------------
    def preflight(self, use_ipset: bool = True) -> None:
        """Verify privilege and tooling without touching kernel state.

        Raises:
            PrivilegeError: CAP_NET_ADMIN is missing or a required tool
                is not installed.
        """
        if self._dry_run:
            logger.info("Dry run -- skipping privilege check", extra=stage_extra("preflight"))
            return

        capable = has_capability(CAP_NET_ADMIN, self._status_path)
        if capable is None:
            capable = os.geteuid() == 0
        if not capable:
            raise PrivilegeError(
                "missing CAP_NET_ADMIN -- run the container with --cap-add=NET_ADMIN"
            )

        required = list(TOOLS[4])
        if use_ipset:
            required.append("ipset")
        missing = [tool for tool in required if self._which(tool) is None]
        if missing:
            raise PrivilegeError(f"required tool(s) not installed: {', '.join(missing)}")

        if any(self._which(tool) is None for tool in TOOLS[6]):
            if self._kernel_has_ipv6():
                raise PrivilegeError(
                    "ip6tables tooling missing but IPv6 is enabled in the kernel -- "
                    "refusing to leave IPv6 egress unfiltered"
                )
            logger.info("IPv6 not present in kernel, skipping IPv6 rules")
            self._skip_versions.add(6)

        logger.info(
            "Privilege check passed",
            extra=stage_extra("preflight", ipset=use_ipset, ipv6=6 not in self._skip_versions),
        )

    def _kernel_has_ipv6(self) -> bool:
        return Path(self._if_inet6_path).exists()

    # -------------------------------------------------------------------
    # Apply
    # -------------------------------------------------------------------
    def apply(self, policy: FirewallPolicy) -> ApplyReport:
        """Commit ``policy``; roll back to deny-all on any failure.

        Raises:
            PrivilegeError: a tool reported insufficient permission.
            ApplyError: the kernel rejected a set or ruleset.
        """
        report = ApplyReport(dry_run=self._dry_run)
        touched: list[int] = []

        for ruleset in policy.rulesets():
            version = ruleset.version
            if version in self._skip_versions:
                report.skipped.append(version)
                continue
            touched.append(version)
            try:
                self._commit(ruleset)
            except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError) as exc:
                detail = _describe(exc)
                logger.error(
                    "IPv%d commit failed -- rolling back to deny-all",
                    version,
                    extra=stage_extra("applier", error=detail),
                )
                rollback_errors = self._rollback(touched)
                message = f"IPv{version} ruleset rejected: {detail}"
                if rollback_errors:
                    message += f"; rollback failed for {', '.join(rollback_errors)}"
                if _is_permission_error(detail):
                    raise PrivilegeError(message, stage="applier") from exc
                raise ApplyError(message) from exc

            report.families.append(version)
            report.rule_count += ruleset.rule_count
            report.set_members += len(ruleset.set_members)
            logger.info(
                "Committed IPv%d policy",
                version,
                extra=stage_extra(
                    "applier",
                    rules=ruleset.rule_count,
                    set_members=len(ruleset.set_members),
                ),
            )

        return report

    def _commit(self, ruleset: Ruleset) -> None:
        _, restore_tool = TOOLS[ruleset.version]
        if ruleset.set_name:
            self._commit_ipset(ruleset)
        missing = tuple(b for b in HOOKS if not self._hook_present(ruleset.version, b))
        self._runner.run([restore_tool, "--noflush"], input_text=render_iptables(ruleset, missing))

    def _commit_ipset(self, ruleset: Ruleset) -> None:
        try:
            self._runner.run(["ipset", "restore"], input_text=render_ipset(ruleset))
        except subprocess.CalledProcessError:
            # Staging set may be half-filled; the live set is untouched
            self._runner.run(["ipset", "destroy", f"{ruleset.set_name}-new"], check=False)
            raise

    def _hook_present(self, version: int, builtin: str) -> bool:
        if self._dry_run:
            return False
        rule_tool, _ = TOOLS[version]
        result = self._runner.run([rule_tool, "-C", builtin, "-j", HOOKS[builtin]], check=False)
        return result.returncode == 0

    def _rollback(self, versions: list[int]) -> list[str]:
        """Install deny-all for each family; return the ones that failed."""
        failed: list[str] = []
        for version in versions:
            deny = deny_all_ruleset(version)
            _, restore_tool = TOOLS[version]
            try:
                missing = tuple(b for b in HOOKS if not self._hook_present(version, b))
                self._runner.run(
                    [restore_tool, "--noflush"], input_text=render_iptables(deny, missing)
                )
            except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError) as exc:
                logger.critical(
                    "Rollback to deny-all failed for IPv%d",
                    version,
                    extra=stage_extra("applier", error=_describe(exc)),
                )
                failed.append(f"ipv{version}")
            else:
                logger.warning(
                    "IPv%d rolled back to deny-all", version, extra=stage_extra("applier")
                )
        return failed


def _describe(exc: BaseException) -> str:
    if isinstance(exc, subprocess.CalledProcessError):
        stderr = (exc.stderr or "").strip() if isinstance(exc.stderr, str) else ""
        return stderr or f"{exc.cmd[0]} exited with status {exc.returncode}"
    if isinstance(exc, subprocess.TimeoutExpired):
        return f"{exc.cmd[0]} timed out after {exc.timeout}s"
    return str(exc)


def _is_permission_error(detail: str) -> bool:
    lowered = detail.lower()
    return any(marker in lowered for marker in _PERMISSION_MARKERS)
