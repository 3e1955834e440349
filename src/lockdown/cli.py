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
"""Lockdown CLI entry point.

Run once from the container entrypoint, before the workload starts.
Requires CAP_NET_ADMIN.

Usage:
    lockdown [apply] [--config PATH] [--dry-run] [--no-verify] [--status-file PATH]
    lockdown plan    [--config PATH]
    lockdown verify  [--config PATH]
    lockdown history [--config PATH] [-n N]

Exit code 0 means the policy is applied and verified; anything else
means the entrypoint must not start the workload.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import datetime
from pathlib import Path

from . import __version__
from .audit import AuditLogger
from .compiler import render_plan
from .config import load_config
from .errors import EXIT_OK, EXIT_STRUCTURAL, ConfigError
from .log import setup_logging
from .pipeline import LockdownPipeline, PipelineStatus

logger = logging.getLogger("lockdown.cli")

COMMANDS = ("apply", "plan", "verify", "history")
# Options whose next token is a value, never a command name
_VALUE_OPTIONS = frozenset({"--config", "--log-level", "--log-file", "--status-file", "-n"})


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lockdown",
        description="Orion Lockdown -- domain-allowlist egress firewall",
    )
    parser.add_argument("--version", action="version", version=f"orion-lockdown {__version__}")

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        default=None,
        help="Path to lockdown.yaml (default: $LOCKDOWN_CONFIG or /etc/lockdown/lockdown.yaml)",
    )
    common.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )
    common.add_argument("--log-file", default=None, help="Mirror log lines to a rotating file")
    common.add_argument(
        "--status-file",
        default=None,
        help="Write the final pipeline status as JSON to this path",
    )

    sub = parser.add_subparsers(dest="command")

    apply_cmd = sub.add_parser("apply", parents=[common], help="Apply and verify the policy")
    apply_cmd.add_argument(
        "--dry-run",
        action="store_true",
        help="Log the commands instead of changing the packet filter",
    )
    apply_cmd.add_argument(
        "--no-verify",
        action="store_true",
        help="Skip post-apply probes (offline image builds only)",
    )

    sub.add_parser("plan", parents=[common], help="Print the compiled ruleset without applying")
    sub.add_parser("verify", parents=[common], help="Probe the currently applied policy")

    history_cmd = sub.add_parser("history", parents=[common], help="Show recent runs")
    history_cmd.add_argument("-n", type=int, default=10, help="Number of runs (default: 10)")

    return parser


def main(argv: list[str] | None = None) -> int:
    """Entry point for the ``lockdown`` command. Returns the exit code."""
    argv = _normalize_argv(list(sys.argv[1:] if argv is None else argv))

    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(args.log_level, args.log_file)

    try:
        config = load_config(args.config)
    except ConfigError as exc:
        logger.error("config failed: %s", exc.args[0])
        _write_status(
            args.status_file,
            PipelineStatus(
                outcome="failed",
                failed_stage="config",
                error=str(exc.args[0]),
                exit_code=EXIT_STRUCTURAL,
            ),
        )
        return exc.exit_code

    if args.command == "history":
        return _show_history(config.audit_log_path, args.n)

    dry_run = getattr(args, "dry_run", False)
    if dry_run:
        logger.info("Dry run -- no packet-filter changes will be made")
    pipeline = LockdownPipeline(config, dry_run=dry_run)

    if args.command == "plan":
        status = pipeline.plan()
        if status.ok and pipeline.policy is not None:
            sys.stdout.write(render_plan(pipeline.policy))
    elif args.command == "verify":
        status = pipeline.verify_only()
    else:
        status = pipeline.run(verify=False if args.no_verify else None)

    _write_status(args.status_file, status)

    if status.ok:
        logger.info("Lockdown complete (%s)", status.outcome)
    else:
        logger.error(
            "Lockdown aborted at %s -- the workload must not start", status.failed_stage
        )
    return status.exit_code


def _normalize_argv(argv: list[str]) -> list[str]:
    """Put the command first, defaulting to ``apply``.

    The shared options live on each subcommand, so ``lockdown --config x plan``
    is rewritten to ``lockdown plan --config x`` and a bare
    ``lockdown [flags]`` means ``lockdown apply [flags]``.
    """
    expects_value = False
    for index, token in enumerate(argv):
        if expects_value:
            expects_value = False
            continue
        if token in COMMANDS:
            return [token] + argv[:index] + argv[index + 1 :]
        if token in ("-h", "--help", "--version") and index == 0:
            return argv
        expects_value = token in _VALUE_OPTIONS
    return ["apply"] + argv


def _write_status(path: str | None, status: PipelineStatus) -> None:
    if not path:
        return
    target = Path(path)
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(json.dumps(status.to_dict(), indent=2), encoding="utf-8")
    except OSError as exc:
        logger.error("Failed to write status file %s: %s", target, exc)


def _show_history(audit_log_path: str | None, n: int) -> int:
    if not audit_log_path:
        logger.error("audit_log_path is not configured -- no history recorded")
        return EXIT_STRUCTURAL
    records = AuditLogger(audit_log_path).read_recent(n)
    if not records:
        print("No runs recorded.")
        return EXIT_OK
    for record in records:
        when = datetime.fromtimestamp(record.timestamp).strftime("%Y-%m-%d %H:%M:%S")
        line = (
            f"{when}  {record.outcome:<8}  ranges={record.allow_set_size:<4} "
            f"rules={record.rule_count:<4} failed_hosts={len(record.failed_hosts)}"
        )
        if record.failed_stage:
            line += f"  [{record.failed_stage}] {record.error}"
        print(line)
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
