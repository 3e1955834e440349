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
"""
Orion Lockdown -- Stage-tagged process logger.

Every stage of the pipeline reports to the standard process log stream
(stderr) so the container runtime captures it next to the workload's own
output. An optional rotating file mirrors the same lines.

FORMAT:
    TIMESTAMP | LEVEL | STAGE | MESSAGE | {structured fields}

USAGE:
    from lockdown.log import setup_logging, stage_extra
    setup_logging("INFO")
    logger.info("Resolved %d hosts", n, extra=stage_extra("resolver", hosts=n))
"""

import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

# =============================================================================
# CONSTANTS
# =============================================================================

MAX_LOG_FILE_BYTES = 10 * 1024 * 1024  # 10 MB per file
LOG_BACKUP_COUNT = 5
ROOT_LOGGER_NAME = "lockdown"


# =============================================================================
# CUSTOM FORMATTER -- human-readable + structured
# =============================================================================


class LockdownLogFormatter(logging.Formatter):
    """
    Format: TIMESTAMP | LEVEL | STAGE | MESSAGE | {structured fields}

    Example:
    2026-02-09T17:30:45.123Z | INFO  | resolver     | Resolved api.github.com | addresses=2
    2026-02-09T17:30:46.500Z | WARN  | resolver     | Lookup failed for pkg.dev | error="timed out"
    2026-02-09T17:30:46.501Z | ERROR | applier      | iptables-restore rejected ruleset
    """

    LEVEL_WIDTH = 5
    STAGE_WIDTH = 12

    _LEVEL_NAMES = {"WARNING": "WARN", "CRITICAL": "CRIT"}

    def format(self, record: logging.LogRecord) -> str:
        now = datetime.now(timezone.utc)
        ts = now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"

        level = self._LEVEL_NAMES.get(record.levelname, record.levelname)
        stage = getattr(record, "stage", None) or _stage_from_name(record.name)
        message = record.getMessage()

        # Structured fields
        fields = getattr(record, "fields", {})
        field_str = ""
        if fields:
            parts = []
            for k, v in fields.items():
                if isinstance(v, str):
                    parts.append(f'{k}="{v}"')
                elif isinstance(v, float):
                    parts.append(f"{k}={v:.3f}")
                else:
                    parts.append(f"{k}={v}")
            field_str = " | " + " ".join(parts)

        line = (
            f"{ts} | {level:<{self.LEVEL_WIDTH}} | "
            f"{stage:<{self.STAGE_WIDTH}} | {message}{field_str}"
        )
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def _stage_from_name(logger_name: str) -> str:
    """``lockdown.resolver`` -> ``resolver``."""
    return logger_name.rsplit(".", 1)[-1] or "lockdown"


def stage_extra(stage: str, **fields: Any) -> dict[str, Any]:
    """Build the ``extra`` mapping understood by LockdownLogFormatter."""
    return {"stage": stage, "fields": fields}


# =============================================================================
# SETUP
# =============================================================================


def setup_logging(
    level: str = "INFO",
    log_file: str | Path | None = None,
    stream=None,
) -> logging.Logger:
    """Configure the ``lockdown`` logger tree.

    Installs a stderr handler and, when ``log_file`` is given, a rotating
    file mirror. Calling it again replaces the handlers instead of
    stacking duplicates.
    """
    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Remove existing handlers to avoid duplicates
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    stream_handler = logging.StreamHandler(stream or sys.stderr)
    stream_handler.setFormatter(LockdownLogFormatter())
    root.addHandler(stream_handler)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            str(path),
            maxBytes=MAX_LOG_FILE_BYTES,
            backupCount=LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
        file_handler.setFormatter(LockdownLogFormatter())
        root.addHandler(file_handler)

    return root
