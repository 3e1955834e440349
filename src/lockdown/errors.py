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
"""Fatal error taxonomy for the lockdown pipeline.

Every fatal condition carries the stage it happened in and the process
exit code the CLI should return. Transient problems (one host failing to
resolve, one probe timing out) are logged, never raised.

Exit codes:
  0  policy applied and verified
  1  unexpected error
  2  structural (config, discovery, resolution)
  3  privilege (cannot modify the packet filter)
  4  apply (kernel rejected the ruleset)
  5  verification (policy does not behave as intended)
"""

from __future__ import annotations

EXIT_OK = 0
EXIT_UNEXPECTED = 1
EXIT_STRUCTURAL = 2
EXIT_PRIVILEGE = 3
EXIT_APPLY = 4
EXIT_VERIFICATION = 5


class LockdownError(Exception):
    """Base class for fatal pipeline errors."""

    stage = "lockdown"
    exit_code = EXIT_UNEXPECTED

    def __init__(self, message: str, stage: str | None = None) -> None:
        super().__init__(message)
        if stage is not None:
            self.stage = stage

    def __str__(self) -> str:
        return f"[{self.stage}] {self.args[0]}"


class ConfigError(LockdownError):
    """Malformed configuration, invalid hostname or empty allowlist."""

    stage = "config"
    exit_code = EXIT_STRUCTURAL


class DiscoveryError(LockdownError):
    """Infrastructure ranges could not be determined from the environment."""

    stage = "environment"
    exit_code = EXIT_STRUCTURAL


class ResolutionError(LockdownError):
    """Resolution produced nothing usable, or a failure was configured as fatal."""

    stage = "resolver"
    exit_code = EXIT_STRUCTURAL


class PrivilegeError(LockdownError):
    """The process lacks the capability to modify packet-filter rules."""

    stage = "preflight"
    exit_code = EXIT_PRIVILEGE


class ApplyError(LockdownError):
    """The kernel rejected the compiled ruleset."""

    stage = "applier"
    exit_code = EXIT_APPLY


class VerificationError(LockdownError):
    """The applied policy does not match the intended allow/deny behaviour."""

    stage = "verifier"
    exit_code = EXIT_VERIFICATION
