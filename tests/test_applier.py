# Orion Lockdown
# Copyright (C) 2025 Phoenix Link (Pty) Ltd. All Rights Reserved.
"""Tests for the policy applier (no kernel access: commands go to a fake runner)."""

import ipaddress
import subprocess
from unittest.mock import patch

import pytest

from lockdown.addresses import InfrastructureRange, ResolvedAddress
from lockdown.aggregator import aggregate
from lockdown.applier import CommandRunner, PolicyApplier, has_capability
from lockdown.compiler import compile_policy
from lockdown.config import LockdownConfig
from lockdown.environment import Infrastructure
from lockdown.errors import ApplyError, PrivilegeError

CAP_WITH_NET_ADMIN = "Name:\tlockdown\nCapEff:\t00000000a80435fb\n"
CAP_WITHOUT_NET_ADMIN = "Name:\tlockdown\nCapEff:\t00000000a80425fb\n"


class FakeRunner:
    """Records commands; ``fail`` decides which ones raise."""

    dry_run = False

    def __init__(self, fail=None, stderr="iptables-restore: line 7 failed", hooks_present=False):
        self.calls = []
        self._fail = fail or (lambda cmd, text: False)
        self._stderr = stderr
        self._hooks_present = hooks_present

    def run(self, cmd, input_text=None, check=True):
        self.calls.append((list(cmd), input_text))
        if len(cmd) > 1 and cmd[1] == "-C":
            return subprocess.CompletedProcess(cmd, 0 if self._hooks_present else 1, "", "")
        if check and self._fail(cmd, input_text or ""):
            raise subprocess.CalledProcessError(1, cmd, output="", stderr=self._stderr)
        return subprocess.CompletedProcess(cmd, 0, "", "")

    def commands(self):
        return [cmd for cmd, _ in self.calls]

    def input_for(self, tool):
        return [text for cmd, text in self.calls if cmd[0] == tool]


def _policy(**config_kwargs):
    infra = Infrastructure(
        ranges=[InfrastructureRange(ipaddress.ip_network("172.17.0.0/16"), "default-route")],
        gateway=ipaddress.IPv4Address("172.17.0.1"),
        device="eth0",
    )
    resolved = [ResolvedAddress(ipaddress.ip_network("203.0.113.5/32"), "a.example.com")]
    return compile_policy(aggregate(resolved, infra.ranges), infra, LockdownConfig(**config_kwargs))


def _applier(tmp_path, runner, caps=CAP_WITH_NET_ADMIN, tools=None, inet6=True):
    status = tmp_path / "status"
    status.write_text(caps)
    if_inet6 = tmp_path / "if_inet6"
    if inet6:
        if_inet6.write_text("")
    installed = tools if tools is not None else {
        "iptables", "iptables-restore", "ip6tables", "ip6tables-restore", "ipset"
    }
    return PolicyApplier(
        runner=runner,
        status_path=str(status),
        if_inet6_path=str(if_inet6),
        which=lambda tool: f"/usr/sbin/{tool}" if tool in installed else None,
    )


class TestCapability:
    """Tests for has_capability()."""

    def test_present(self, tmp_path):
        path = tmp_path / "status"
        path.write_text(CAP_WITH_NET_ADMIN)
        assert has_capability(12, str(path)) is True

    def test_absent(self, tmp_path):
        path = tmp_path / "status"
        path.write_text(CAP_WITHOUT_NET_ADMIN)
        assert has_capability(12, str(path)) is False

    def test_unreadable(self, tmp_path):
        assert has_capability(12, str(tmp_path / "missing")) is None


class TestPreflight:
    """Tests for PolicyApplier.preflight()."""

    def test_passes_with_capability_and_tools(self, tmp_path):
        runner = FakeRunner()
        _applier(tmp_path, runner).preflight()
        assert runner.calls == []

    def test_missing_capability_raises_before_any_command(self, tmp_path):
        runner = FakeRunner()
        applier = _applier(tmp_path, runner, caps=CAP_WITHOUT_NET_ADMIN)
        with pytest.raises(PrivilegeError, match="CAP_NET_ADMIN") as exc_info:
            applier.preflight()
        assert exc_info.value.exit_code == 3
        assert runner.calls == []

    def test_unreadable_status_falls_back_to_euid(self, tmp_path):
        applier = PolicyApplier(runner=FakeRunner(), status_path=str(tmp_path / "missing"))
        with patch("lockdown.applier.os.geteuid", return_value=1000):
            with pytest.raises(PrivilegeError):
                applier.preflight()

    def test_missing_ipset_raises(self, tmp_path):
        applier = _applier(
            tmp_path,
            FakeRunner(),
            tools={"iptables", "iptables-restore", "ip6tables", "ip6tables-restore"},
        )
        with pytest.raises(PrivilegeError, match="ipset"):
            applier.preflight(use_ipset=True)

    def test_ipset_not_needed_without_sets(self, tmp_path):
        applier = _applier(
            tmp_path,
            FakeRunner(),
            tools={"iptables", "iptables-restore", "ip6tables", "ip6tables-restore"},
        )
        applier.preflight(use_ipset=False)

    def test_missing_ip6tables_with_ipv6_kernel_raises(self, tmp_path):
        applier = _applier(
            tmp_path, FakeRunner(), tools={"iptables", "iptables-restore", "ipset"}
        )
        with pytest.raises(PrivilegeError, match="IPv6"):
            applier.preflight()

    def test_missing_ip6tables_without_ipv6_kernel_skips_family(self, tmp_path):
        runner = FakeRunner()
        applier = _applier(
            tmp_path, runner, tools={"iptables", "iptables-restore", "ipset"}, inet6=False
        )
        applier.preflight()
        report = applier.apply(_policy())
        assert report.families == [4]
        assert report.skipped == [6]
        assert not any(cmd[0].startswith("ip6tables") for cmd in runner.commands())

    def test_dry_run_skips_checks(self, tmp_path):
        applier = PolicyApplier(dry_run=True, status_path=str(tmp_path / "missing"))
        with patch("lockdown.applier.os.geteuid", return_value=1000):
            applier.preflight()
        assert applier.dry_run is True


class TestApply:
    """Tests for PolicyApplier.apply()."""

    def test_commits_both_families(self, tmp_path):
        runner = FakeRunner()
        report = _applier(tmp_path, runner).apply(_policy())
        assert report.families == [4, 6]
        commands = runner.commands()
        assert ["ipset", "restore"] in commands
        assert ["iptables-restore", "--noflush"] in commands
        assert ["ip6tables-restore", "--noflush"] in commands
        assert commands.index(["ipset", "restore"]) < commands.index(
            ["iptables-restore", "--noflush"]
        )

    def test_ipset_input_swaps_atomically(self, tmp_path):
        runner = FakeRunner()
        _applier(tmp_path, runner).apply(_policy())
        (ipset_input,) = runner.input_for("ipset")
        assert "add lockdown-allow4-new 203.0.113.5/32" in ipset_input
        assert "swap lockdown-allow4-new lockdown-allow4" in ipset_input

    def test_hooks_inserted_when_missing(self, tmp_path):
        runner = FakeRunner(hooks_present=False)
        _applier(tmp_path, runner).apply(_policy())
        (v4_input,) = runner.input_for("iptables-restore")
        assert "-I OUTPUT 1 -j LOCKDOWN-OUT" in v4_input
        assert "-I INPUT 1 -j LOCKDOWN-IN" in v4_input

    def test_hooks_not_duplicated_on_rerun(self, tmp_path):
        runner = FakeRunner(hooks_present=True)
        _applier(tmp_path, runner).apply(_policy())
        (v4_input,) = runner.input_for("iptables-restore")
        assert "-I OUTPUT" not in v4_input
        assert ":LOCKDOWN-OUT - [0:0]" in v4_input

    def test_report(self, tmp_path):
        report = _applier(tmp_path, FakeRunner()).apply(_policy())
        data = report.to_dict()
        assert data["families"] == ["ipv4", "ipv6"]
        assert data["set_members"] == 2
        assert data["rule_count"] == _policy().rule_count

    def test_rejected_commit_rolls_back_to_deny_all(self, tmp_path):
        runner = FakeRunner(
            fail=lambda cmd, text: cmd[0] == "iptables-restore" and "ESTABLISHED" in text
        )
        with pytest.raises(ApplyError, match="IPv4 ruleset rejected") as exc_info:
            _applier(tmp_path, runner).apply(_policy())
        assert exc_info.value.exit_code == 4
        restore_inputs = runner.input_for("iptables-restore")
        assert len(restore_inputs) == 2
        rollback = restore_inputs[-1]
        assert "-A LOCKDOWN-OUT -o lo -j ACCEPT" in rollback
        assert "-A LOCKDOWN-OUT -j DROP" in rollback
        assert "ESTABLISHED" not in rollback
        # The failed transaction never reaches IPv6
        assert runner.input_for("ip6tables-restore") == []

    def test_ipv6_failure_rolls_back_both_families(self, tmp_path):
        runner = FakeRunner(
            fail=lambda cmd, text: cmd[0] == "ip6tables-restore" and "ESTABLISHED" in text
        )
        with pytest.raises(ApplyError, match="IPv6"):
            _applier(tmp_path, runner).apply(_policy())
        assert len(runner.input_for("iptables-restore")) == 2
        assert len(runner.input_for("ip6tables-restore")) == 2

    def test_ipset_failure_destroys_staging_set(self, tmp_path):
        runner = FakeRunner(fail=lambda cmd, text: cmd[:2] == ["ipset", "restore"])
        with pytest.raises(ApplyError):
            _applier(tmp_path, runner).apply(_policy())
        assert ["ipset", "destroy", "lockdown-allow4-new"] in runner.commands()
        # Rules are never committed against a half-built set
        assert all("ESTABLISHED" not in t for t in runner.input_for("iptables-restore"))

    def test_permission_denied_is_privilege_error(self, tmp_path):
        runner = FakeRunner(
            fail=lambda cmd, text: cmd[0] == "iptables-restore",
            stderr="iptables-restore: Permission denied (you must be root)",
        )
        with pytest.raises(PrivilegeError) as exc_info:
            _applier(tmp_path, runner).apply(_policy())
        assert exc_info.value.stage == "applier"
        assert exc_info.value.exit_code == 3

    def test_failed_rollback_reported(self, tmp_path):
        runner = FakeRunner(fail=lambda cmd, text: cmd[0] == "iptables-restore")
        with pytest.raises(ApplyError, match="rollback failed for ipv4"):
            _applier(tmp_path, runner).apply(_policy())

    def test_timeout_is_apply_error(self, tmp_path):
        class SlowRunner(FakeRunner):
            def run(self, cmd, input_text=None, check=True):
                if cmd[0] == "ipset":
                    raise subprocess.TimeoutExpired(cmd, 30)
                return super().run(cmd, input_text, check)

        with pytest.raises(ApplyError, match="timed out"):
            _applier(tmp_path, SlowRunner()).apply(_policy())


class TestCommandRunner:
    """Tests for CommandRunner."""

    def test_dry_run_does_not_execute(self):
        with patch("lockdown.applier.subprocess.run") as mock_run:
            result = CommandRunner(dry_run=True).run(["iptables-restore", "--noflush"], "x")
        mock_run.assert_not_called()
        assert result.returncode == 0

    def test_runs_with_input(self):
        with patch("lockdown.applier.subprocess.run") as mock_run:
            CommandRunner(timeout=7).run(["ipset", "restore"], input_text="flush s\n")
        _, kwargs = mock_run.call_args
        assert kwargs["input"] == "flush s\n"
        assert kwargs["timeout"] == 7
        assert kwargs["check"] is True

    def test_dry_run_applier_commits_nothing(self):
        with patch("lockdown.applier.subprocess.run") as mock_run:
            report = PolicyApplier(dry_run=True).apply(_policy())
        mock_run.assert_not_called()
        assert report.dry_run is True
        assert report.families == [4, 6]
