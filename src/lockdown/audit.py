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
"""Run audit log.

Each pipeline run appends one record, so operators can see when the
policy was (re)applied, what it resolved to and why a start was refused.

Log format: JSON Lines (one JSON object per line) for easy parsing.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import TextIO

logger = logging.getLogger("lockdown.audit")


@dataclass
class RunRecord:
    """A single pipeline run."""

    timestamp: float
    outcome: str  # "applied", "failed", "planned"
    failed_stage: str = ""
    error: str = ""
    resolved: dict[str, list[str]] = field(default_factory=dict)
    failed_hosts: dict[str, str] = field(default_factory=dict)
    allow_set_size: int = 0
    rule_count: int = 0
    verification: list[dict] = field(default_factory=list)
    duration_ms: float = 0.0

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(asdict(self), separators=(",", ":"))

    @classmethod
    def from_status(cls, status: dict) -> RunRecord:
        """Create a record from ``PipelineStatus.to_dict()`` output."""
        resolution = status.get("resolution") or {}
        return cls(
            timestamp=time.time(),
            outcome=status.get("outcome", "failed"),
            failed_stage=status.get("failed_stage", ""),
            error=status.get("error", ""),
            resolved=resolution.get("resolved", {}),
            failed_hosts=resolution.get("failures", {}),
            allow_set_size=status.get("allow_set_size", 0),
            rule_count=status.get("rule_count", 0),
            verification=status.get("verification", []),
            duration_ms=status.get("duration_ms", 0.0),
        )


class AuditLogger:
    """Append-only JSON Lines writer for run records."""

    def __init__(self, log_path: str | Path) -> None:
        self._path = Path(log_path)
        self._lock = threading.Lock()
        self._file: TextIO | None = None

    def _ensure_open(self) -> TextIO:
        """Lazily open the log file."""
        if self._file is None or self._file.closed:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._file = open(self._path, "a", encoding="utf-8")
        return self._file

    def log(self, record: RunRecord) -> None:
        """Append a record. Write failures are logged, never raised."""
        line = record.to_json() + "\n"
        with self._lock:
            try:
                f = self._ensure_open()
                f.write(line)
                f.flush()
            except OSError as exc:
                logger.error("Failed to write audit record: %s", exc)

    def close(self) -> None:
        """Close the log file."""
        with self._lock:
            if self._file and not self._file.closed:
                self._file.close()
                self._file = None

    @property
    def path(self) -> Path:
        """Path to the audit log file."""
        return self._path

    def read_recent(self, n: int = 20) -> list[RunRecord]:
        """Read the N most recent run records."""
        if not self._path.exists():
            return []

        records: list[RunRecord] = []
        try:
            lines = self._path.read_text(encoding="utf-8").strip().splitlines()
            for line in lines[-n:]:
                try:
                    records.append(RunRecord(**json.loads(line)))
                except (json.JSONDecodeError, TypeError):
                    continue
        except OSError as exc:
            logger.error("Failed to read audit log: %s", exc)

        return records

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()
