# Orion Lockdown
# Copyright (C) 2025 Phoenix Link (Pty) Ltd. All Rights Reserved.
"""Tests for lockdown configuration loading and validation."""

import pytest
import yaml

from lockdown.config import (
    DEFAULT_ALLOWED_HOSTS,
    DEFAULT_BLOCKED_PROBE,
    GITHUB_META_KEYS,
    LockdownConfig,
    is_valid_hostname,
    load_config,
)
from lockdown.errors import EXIT_STRUCTURAL, ConfigError


def _write(tmp_path, data):
    path = tmp_path / "lockdown.yaml"
    path.write_text(yaml.dump(data) if not isinstance(data, str) else data)
    return path


class TestHostnameValidation:
    """Tests for RFC 1123 hostname checks."""

    def test_plain_hostname(self):
        assert is_valid_hostname("api.github.com") is True

    def test_trailing_dot_tolerated(self):
        assert is_valid_hostname("registry.npmjs.org.") is True

    def test_uppercase_accepted(self):
        assert is_valid_hostname("API.Anthropic.COM") is True

    def test_label_with_leading_hyphen_rejected(self):
        assert is_valid_hostname("-bad.example.com") is False

    def test_underscore_rejected(self):
        assert is_valid_hostname("bad_name.example.com") is False

    def test_ip_literal_rejected(self):
        assert is_valid_hostname("10.0.0.1") is False

    def test_empty_rejected(self):
        assert is_valid_hostname("") is False

    def test_overlong_label_rejected(self):
        assert is_valid_hostname("a" * 64 + ".com") is False

    def test_overlong_name_rejected(self):
        assert is_valid_hostname(".".join(["abcdefghij"] * 26)) is False


class TestLockdownConfig:
    """Tests for LockdownConfig defaults and validation."""

    def test_defaults_are_valid(self):
        config = LockdownConfig()
        config.validate()
        assert config.allowed_hosts == list(DEFAULT_ALLOWED_HOSTS)

    def test_least_privilege_defaults(self):
        config = LockdownConfig()
        assert config.ingress == "accept"
        assert config.egress_action == "drop"
        assert config.ipv6 is False
        assert config.allow_ssh is False
        assert config.github_meta.enabled is False
        assert config.verify.blocked == [DEFAULT_BLOCKED_PROBE]

    def test_empty_allowlist_rejected(self):
        with pytest.raises(ConfigError, match="allowlist is empty"):
            LockdownConfig(allowed_hosts=[]).validate()

    def test_invalid_hostname_rejected(self):
        with pytest.raises(ConfigError, match="bad_host"):
            LockdownConfig(allowed_hosts=["api.github.com", "bad_host"]).validate()

    def test_bad_ingress_rejected(self):
        with pytest.raises(ConfigError, match="ingress"):
            LockdownConfig(ingress="allow").validate()

    def test_bad_egress_action_rejected(self):
        with pytest.raises(ConfigError, match="egress_action"):
            LockdownConfig(egress_action="accept").validate()

    def test_bad_failure_severity_rejected(self):
        with pytest.raises(ConfigError, match="on_resolve_failure"):
            LockdownConfig(on_resolve_failure="ignore").validate()

    def test_fallback_prefix_bounds(self):
        with pytest.raises(ConfigError, match="fallback_prefix"):
            LockdownConfig(fallback_prefix=4).validate()
        with pytest.raises(ConfigError, match="fallback_prefix"):
            LockdownConfig(fallback_prefix=33).validate()

    def test_non_positive_timeout_rejected(self):
        with pytest.raises(ConfigError, match="timeouts"):
            LockdownConfig(resolve_timeout_s=0).validate()

    def test_invalid_extra_range_rejected(self):
        with pytest.raises(ConfigError, match="extra range"):
            LockdownConfig(extra_ranges=["10.0.0.0/40"]).validate()

    @pytest.mark.parametrize(
        "target, reason",
        [
            ("example.com", "scheme must be one of"),
            ("ftp://example.com", "scheme must be one of"),
            ("https://", "missing host"),
            ("tcp://203.0.113.5", "needs host and port"),
            ("tcp://203.0.113.5:https", "port must be an integer"),
            ("https://example.com:99999", "port must be an integer"),
        ],
    )
    def test_malformed_verify_target_rejected(self, target, reason):
        config = LockdownConfig()
        config.verify.blocked = [target]
        with pytest.raises(ConfigError, match=reason):
            config.validate()

    def test_malformed_allowed_target_rejected(self):
        config = LockdownConfig()
        config.verify.allowed = ["api.github.com:443"]
        with pytest.raises(ConfigError, match="invalid verify.allowed target"):
            config.validate()

    def test_well_formed_verify_targets_accepted(self):
        config = LockdownConfig()
        config.verify.allowed = ["https://api.github.com/zen", "http://pypi.org:80"]
        config.verify.blocked = ["tcp://203.0.113.5:443", "https://[2001:db8::1]"]
        config.validate()

    def test_empty_blocked_list_rejected_when_verifying(self):
        config = LockdownConfig()
        config.verify.blocked = []
        with pytest.raises(ConfigError, match="verify.blocked must not be empty"):
            config.validate()

    def test_empty_blocked_list_allowed_without_verification(self):
        config = LockdownConfig()
        config.verify.enabled = False
        config.verify.blocked = []
        config.validate()

    def test_normalized_hosts_dedupes_case_and_trailing_dot(self):
        config = LockdownConfig(allowed_hosts=["API.github.com", "api.github.com.", "sentry.io"])
        assert config.normalized_hosts() == ["api.github.com", "sentry.io"]

    def test_config_error_is_structural(self):
        assert ConfigError("x").exit_code == EXIT_STRUCTURAL


class TestLoadConfig:
    """Tests for YAML loading."""

    def test_missing_file_uses_defaults(self, tmp_path):
        config = load_config(tmp_path / "nope.yaml")
        assert config.allowed_hosts == list(DEFAULT_ALLOWED_HOSTS)

    def test_empty_file_uses_defaults(self, tmp_path):
        config = load_config(_write(tmp_path, ""))
        assert config.allowed_hosts == list(DEFAULT_ALLOWED_HOSTS)

    def test_full_file(self, tmp_path):
        path = _write(
            tmp_path,
            {
                "allowed_hosts": ["api.github.com", "pypi.org"],
                "github_meta": {"enabled": True, "keys": ["git"]},
                "infrastructure": {"fallback_prefix": 16, "extra_ranges": ["10.20.0.0/16"]},
                "dns": {"restrict_to_nameservers": True},
                "allow_ssh": False,
                "ingress": "DROP",
                "egress_action": "reject",
                "ipv6": True,
                "use_ipset": False,
                "resolve_timeout_s": 2,
                "on_resolve_failure": "abort",
                "verify": {"allowed": ["https://pypi.org"], "blocked": ["tcp://1.1.1.1:443"]},
                "audit_log_path": str(tmp_path / "runs.jsonl"),
            },
        )
        config = load_config(path)
        assert config.allowed_hosts == ["api.github.com", "pypi.org"]
        assert config.github_meta.enabled is True
        assert config.github_meta.keys == ["git"]
        assert config.fallback_prefix == 16
        assert config.extra_ranges == ["10.20.0.0/16"]
        assert config.restrict_dns_to_nameservers is True
        assert config.allow_ssh is False
        assert config.ingress == "drop"
        assert config.egress_action == "reject"
        assert config.ipv6 is True
        assert config.use_ipset is False
        assert config.resolve_timeout_s == 2.0
        assert config.on_resolve_failure == "abort"
        assert config.verify.allowed == ["https://pypi.org"]
        assert config.verify.blocked == ["tcp://1.1.1.1:443"]
        assert config.audit_log_path.endswith("runs.jsonl")

    def test_github_meta_keys_default(self, tmp_path):
        config = load_config(_write(tmp_path, {"github_meta": {"enabled": True}}))
        assert config.github_meta.keys == list(GITHUB_META_KEYS)

    def test_single_string_host_accepted(self, tmp_path):
        config = load_config(_write(tmp_path, {"allowed_hosts": "api.github.com"}))
        assert config.allowed_hosts == ["api.github.com"]

    def test_broken_yaml_raises(self, tmp_path):
        with pytest.raises(ConfigError, match="cannot read"):
            load_config(_write(tmp_path, "allowed_hosts: [unclosed"))

    def test_non_mapping_raises(self, tmp_path):
        with pytest.raises(ConfigError, match="mapping"):
            load_config(_write(tmp_path, "- a\n- b\n"))

    def test_section_must_be_mapping(self, tmp_path):
        with pytest.raises(ConfigError, match="'verify' must be a mapping"):
            load_config(_write(tmp_path, {"verify": ["x"]}))

    def test_hosts_must_be_strings(self, tmp_path):
        with pytest.raises(ConfigError, match="allowed_hosts"):
            load_config(_write(tmp_path, {"allowed_hosts": [1, 2]}))

    def test_non_numeric_timeout_raises(self, tmp_path):
        with pytest.raises(ConfigError, match="invalid value"):
            load_config(_write(tmp_path, {"resolve_timeout_s": "soon"}))

    def test_explicit_empty_allowlist_raises(self, tmp_path):
        with pytest.raises(ConfigError, match="allowlist is empty"):
            load_config(_write(tmp_path, {"allowed_hosts": []}))

    @pytest.mark.parametrize(
        "data",
        [
            {"allow_ssh": "false"},
            {"ipv6": "no"},
            {"use_ipset": 1},
            {"dns": {"restrict_to_nameservers": "true"}},
            {"verify": {"enabled": "off"}},
            {"github_meta": {"enabled": "yes please"}},
        ],
    )
    def test_non_boolean_flag_raises(self, tmp_path, data):
        with pytest.raises(ConfigError, match="must be true or false"):
            load_config(_write(tmp_path, data))

    def test_yaml_booleans_accepted(self, tmp_path):
        config = load_config(_write(tmp_path, "allow_ssh: true\nipv6: no\n"))
        assert config.allow_ssh is True
        assert config.ipv6 is False

    def test_unusable_verify_target_raises(self, tmp_path):
        data = {"verify": {"blocked": ["tcp://203.0.113.5:https"]}}
        with pytest.raises(ConfigError, match="invalid verify.blocked target"):
            load_config(_write(tmp_path, data))
