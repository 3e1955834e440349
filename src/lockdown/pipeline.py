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
"""Lockdown pipeline -- governed container-start sequence.

Runs the stages strictly in order, each consuming only the previous
stage's output:

  Stage 1: Preflight     privilege + tooling check           (read-only)
  Stage 2: Environment   default route, host network, DNS    (read-only)
  Stage 3: Resolver      allowlist -> addresses              (read-only)
  Stage 4: Aggregator    addresses + infra -> AllowSet       (pure)
  Stage 5: Compiler      AllowSet -> FirewallPolicy          (pure)
  Stage 6: Applier       FirewallPolicy -> kernel            (MUTATES)
  Stage 7: Verifier      live probes                         (read-only)

Any failure before stage 6 leaves the kernel untouched. A verification
failure leaves the applied policy in place (flushing it could leave the
container unprotected) but the run still fails, so the workload is never
started under a policy that did not prove itself.
"""

from __future__ import annotations

import enum
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from .aggregator import AllowSet, aggregate
from .applier import PolicyApplier
from .audit import AuditLogger, RunRecord
from .compiler import FirewallPolicy, compile_policy
from .config import LockdownConfig
from .environment import Infrastructure, discover_infrastructure
from .errors import EXIT_OK, EXIT_UNEXPECTED, LockdownError
from .log import stage_extra
from .resolver import ResolutionReport, Resolver
from .verifier import Verifier

logger = logging.getLogger("lockdown.pipeline")

GITHUB_ALLOWED_PROBE = "https://api.github.com/zen"


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class Stage(enum.Enum):
    """Pipeline stages."""

    NOT_STARTED = "not_started"
    PREFLIGHT = "preflight"
    ENVIRONMENT = "environment"
    RESOLVER = "resolver"
    AGGREGATOR = "aggregator"
    COMPILER = "compiler"
    APPLIER = "applier"
    VERIFIER = "verifier"
    COMPLETE = "complete"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Status dataclass
# ---------------------------------------------------------------------------
@dataclass
class PipelineStatus:
    """Result of one pipeline run, consumed by the container entrypoint."""

    outcome: str = "not_started"  # "applied", "planned", "verified", "failed"
    stage: str = Stage.NOT_STARTED.value
    failed_stage: str = ""
    error: str = ""
    exit_code: int = EXIT_OK
    resolution: dict[str, Any] | None = None
    infrastructure: dict[str, Any] | None = None
    allow_set_size: int = 0
    rule_count: int = 0
    apply: dict[str, Any] | None = None
    verification: list[dict[str, Any]] = field(default_factory=list)
    duration_ms: float = 0.0
    log: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.exit_code == EXIT_OK

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome,
            "stage": self.stage,
            "failed_stage": self.failed_stage,
            "error": self.error,
            "exit_code": self.exit_code,
            "resolution": self.resolution,
            "infrastructure": self.infrastructure,
            "allow_set_size": self.allow_set_size,
            "rule_count": self.rule_count,
            "apply": self.apply,
            "verification": self.verification,
            "duration_ms": round(self.duration_ms, 1),
            "log": self.log[-50:],
        }


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------
class LockdownPipeline:
    """Resolve, compile, apply and verify the egress policy.

    Usage:
        pipeline = LockdownPipeline(load_config())
        status = pipeline.run()          # full apply + verify
        status = pipeline.plan()         # resolve + compile only
        sys.exit(status.exit_code)
    """

    def __init__(
        self,
        config: LockdownConfig,
        applier: PolicyApplier | None = None,
        resolver: Resolver | None = None,
        verifier_factory: Callable[[list[str], list[str]], Verifier] | None = None,
        discover: Callable[[LockdownConfig], Infrastructure] = discover_infrastructure,
        audit: AuditLogger | None = None,
        dry_run: bool = False,
    ) -> None:
        self._config = config
        self._applier = applier or PolicyApplier(dry_run=dry_run)
        self._resolver = resolver or Resolver(
            timeout_s=config.resolve_timeout_s,
            ipv6=config.ipv6,
            on_failure=config.on_resolve_failure,
            github_meta=config.github_meta,
        )
        self._verifier_factory = verifier_factory or self._default_verifier
        self._discover = discover
        self._owns_audit = audit is None and bool(config.audit_log_path)
        if self._owns_audit:
            audit = AuditLogger(config.audit_log_path)
        self._audit = audit

        self._stage = Stage.NOT_STARTED
        self._status = PipelineStatus()

        # Stage outputs, kept for plan output and tests
        self.infrastructure: Infrastructure | None = None
        self.report: ResolutionReport | None = None
        self.allow_set: AllowSet | None = None
        self.policy: FirewallPolicy | None = None

    @property
    def stage(self) -> Stage:
        return self._stage

    @property
    def status(self) -> PipelineStatus:
        return self._status

    # -------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------
    def run(self, verify: bool | None = None) -> PipelineStatus:
        """Full sequence: preflight -> ... -> apply -> verify."""
        if verify is None:
            verify = self._config.verify.enabled
        return self._execute(apply=True, verify=verify, outcome="applied")

    def plan(self) -> PipelineStatus:
        """Resolve and compile without touching the kernel."""
        return self._execute(apply=False, verify=False, outcome="planned")

    def verify_only(self) -> PipelineStatus:
        """Probe the currently applied policy without changing it."""
        return self._execute(apply=False, verify=True, outcome="verified")

    # -------------------------------------------------------------------
    # Sequence
    # -------------------------------------------------------------------
    def _execute(self, apply: bool, verify: bool, outcome: str) -> PipelineStatus:
        started = time.monotonic()
        self._status = PipelineStatus()
        status = self._status

        try:
            if apply:
                self._enter(Stage.PREFLIGHT)
                self._applier.preflight(use_ipset=self._config.use_ipset)

            self._enter(Stage.ENVIRONMENT)
            self.infrastructure = self._discover(self._config)
            status.infrastructure = self.infrastructure.to_dict()
            self._log(f"  Host network: {', '.join(status.infrastructure['ranges'])}")

            self._enter(Stage.RESOLVER)
            self.report = self._resolver.resolve(self._config.normalized_hosts())
            status.resolution = self.report.to_dict()
            self._log(
                f"  Resolved {len(self.report.resolved_hosts)} host(s), "
                f"{len(self.report.failures)} failed"
            )

            self._enter(Stage.AGGREGATOR)
            self.allow_set = aggregate(self.report.all_addresses(), self.infrastructure.ranges)
            status.allow_set_size = len(self.allow_set)
            self._log(f"  Allow set: {len(self.allow_set)} range(s)")

            self._enter(Stage.COMPILER)
            self.policy = compile_policy(self.allow_set, self.infrastructure, self._config)
            status.rule_count = self.policy.rule_count
            self._log(f"  Compiled {self.policy.rule_count} rule(s)")

            if apply:
                self._enter(Stage.APPLIER)
                apply_report = self._applier.apply(self.policy)
                status.apply = apply_report.to_dict()
                self._log(f"  Committed {', '.join(status.apply['families']) or 'nothing'}")

            if verify:
                self._enter(Stage.VERIFIER)
                if self._applier.dry_run:
                    logger.warning(
                        "Dry run -- skipping verification", extra=stage_extra("verifier")
                    )
                else:
                    self._verify()
            elif apply:
                logger.warning(
                    "Verification disabled -- policy applied but not proven",
                    extra=stage_extra("verifier"),
                )

        except LockdownError as exc:
            self._fail(exc.stage or self._stage.value, str(exc.args[0]), exc.exit_code)
        except Exception as exc:
            logger.exception("Unexpected error", extra=stage_extra(self._stage.value))
            self._fail(self._stage.value, f"unexpected error: {exc}", EXIT_UNEXPECTED)
        else:
            self._stage = Stage.COMPLETE
            status.stage = Stage.COMPLETE.value
            status.outcome = outcome
            self._log(f"Lockdown {outcome}")
            logger.info("Lockdown %s", outcome, extra=stage_extra("pipeline"))
        finally:
            status.duration_ms = (time.monotonic() - started) * 1000

        self._write_audit()
        return status

    def _verify(self) -> None:
        verifier = self._verifier_factory(self._allowed_probes(), list(self._config.verify.blocked))
        try:
            results = verifier.run(self.allow_set)
        finally:
            self._status.verification = [r.to_dict() for r in verifier.results]
        passed = sum(1 for r in results if r.passed)
        self._log(f"  Verification: {passed}/{len(results)} probe(s) passed")

    def _allowed_probes(self) -> list[str]:
        if self._config.verify.allowed:
            return list(self._config.verify.allowed)
        if self.report is not None and self.report.resolved_hosts:
            return [f"https://{self.report.resolved_hosts[0]}"]
        if self.report is not None and self.report.extra:
            return [GITHUB_ALLOWED_PROBE]
        return []

    def _default_verifier(self, allowed: list[str], blocked: list[str]) -> Verifier:
        return Verifier(allowed, blocked, timeout_s=self._config.verify.timeout_s)

    # -------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------
    def _enter(self, stage: Stage) -> None:
        self._stage = stage
        self._status.stage = stage.value
        self._log(f"Stage: {stage.value}")

    def _fail(self, stage: str, message: str, exit_code: int) -> None:
        status = self._status
        status.outcome = "failed"
        status.failed_stage = stage
        status.error = message
        status.exit_code = exit_code
        self._stage = Stage.FAILED
        self._log(f"FAILED at {stage}: {message}")
        logger.error("%s failed: %s", stage, message, extra=stage_extra(stage))

    def _log(self, message: str) -> None:
        self._status.log.append(message)

    def _write_audit(self) -> None:
        if self._audit is None:
            return
        try:
            self._audit.log(RunRecord.from_status(self._status.to_dict()))
        finally:
            if self._owns_audit:
                self._audit.close()
