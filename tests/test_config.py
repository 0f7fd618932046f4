"""Tests for configuration loading."""

from pathlib import Path

import pytest

from network_monitor._types import IdentityPolicy, ScanProfile
from network_monitor.config import MonitorConfig, static_config

ENV_VARS = [
    "NETWORK_RANGES", "DEFAULT_NETWORK_RANGE", "SCAN_INTERVAL", "MIN_SCAN_INTERVAL",
    "SCAN_PROFILE", "MAX_CONCURRENT_SCANS", "SCAN_TIMEOUT", "MAX_RETRIES",
    "RETRY_BASE_DELAY", "RETRY_MAX_DELAY", "SIGNIFICANT_CHANGE_THRESHOLD",
    "IDENTITY_POLICY", "HEALTH_CHECK_INTERVAL", "SHUTDOWN_GRACE", "DB_PATH",
    "RETENTION_DAYS", "NMAP_PATH", "ENABLE_SCANNING", "WEBHOOK_URL", "LOG_LEVEL",
]


@pytest.fixture
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestDefaults:
    """Tests for default values."""

    def test_defaults_are_valid(self):
        config = MonitorConfig()

        assert config.validate() == []
        assert config.scan_interval_seconds == 3600
        assert config.max_concurrent_scans == 3
        assert config.default_profile == ScanProfile.DISCOVERY
        assert config.identity_policy == IdentityPolicy.IP

    def test_static_provider(self):
        config = MonitorConfig()

        assert static_config(config)() is config

    def test_scan_targets_default_first_without_repeats(self):
        config = MonitorConfig(
            network_ranges=["192.168.1.0/24", "10.0.0.0/24", "192.168.1.0/24"],
            default_network_range="10.0.0.0/24",
        )

        assert config.scan_targets() == ["10.0.0.0/24", "192.168.1.0/24"]

    def test_scan_targets_without_default(self):
        config = MonitorConfig(network_ranges=["192.168.1.0/24", "10.0.0.0/24"])

        assert config.scan_targets() == ["192.168.1.0/24", "10.0.0.0/24"]
        assert MonitorConfig().scan_targets() == []


class TestFromEnv:
    """Tests for environment loading."""

    def test_reads_variables(self, clean_env, tmp_path):
        clean_env.setenv("NETWORK_RANGES", "192.168.1.0/24, 10.0.0.0/24")
        clean_env.setenv("SCAN_INTERVAL", "600")
        clean_env.setenv("SCAN_PROFILE", "quick")
        clean_env.setenv("MAX_CONCURRENT_SCANS", "5")
        clean_env.setenv("IDENTITY_POLICY", "mac_tracking")
        clean_env.setenv("ENABLE_SCANNING", "false")
        clean_env.setenv("DB_PATH", str(tmp_path / "monitor.db"))
        clean_env.setenv("WEBHOOK_URL", "https://hooks.example.com/x")

        config = MonitorConfig.from_env()

        assert config.network_ranges == ["192.168.1.0/24", "10.0.0.0/24"]
        assert config.default_network_range == "192.168.1.0/24"
        assert config.scan_interval_seconds == 600
        assert config.default_profile == ScanProfile.QUICK
        assert config.max_concurrent_scans == 5
        assert config.identity_policy == IdentityPolicy.MAC_TRACKING
        assert config.enable_scanning is False
        assert config.db_path == tmp_path / "monitor.db"
        assert config.webhook_url == "https://hooks.example.com/x"

    def test_explicit_default_range(self, clean_env):
        clean_env.setenv("NETWORK_RANGES", "192.168.1.0/24")
        clean_env.setenv("DEFAULT_NETWORK_RANGE", "10.0.0.0/24")

        config = MonitorConfig.from_env()

        assert config.default_network_range == "10.0.0.0/24"

    def test_empty_env_gives_defaults(self, clean_env):
        config = MonitorConfig.from_env()

        assert config.network_ranges == []
        assert config.default_network_range is None
        assert config.enable_scanning is True


class TestFromYaml:
    """Tests for YAML loading."""

    def test_reads_sections(self, tmp_path):
        path = tmp_path / "monitor.yaml"
        path.write_text(
            "network_ranges:\n"
            "  - 192.168.1.0/24\n"
            "scan:\n"
            "  interval_seconds: 900\n"
            "  profile: comprehensive\n"
            "  max_concurrent: 2\n"
            "retry:\n"
            "  max_retries: 4\n"
            "  base_delay: 1\n"
            "storage:\n"
            "  retention_days: 7\n"
            "  failure_threshold: 3\n"
            "monitoring:\n"
            "  significant_change_threshold: 5\n"
            "  identity_policy: ip_and_mac\n"
            "paths:\n"
            "  db: /tmp/monitor.db\n"
            "log_level: DEBUG\n"
        )

        config = MonitorConfig.from_yaml(path)

        assert config.default_network_range == "192.168.1.0/24"
        assert config.scan_interval_seconds == 900
        assert config.default_profile == ScanProfile.COMPREHENSIVE
        assert config.max_concurrent_scans == 2
        assert config.max_retries == 4
        assert config.retry_base_delay == 1.0
        assert config.retention_days == 7
        assert config.storage_failure_threshold == 3
        assert config.significant_change_threshold == 5
        assert config.identity_policy == IdentityPolicy.IP_AND_MAC
        assert config.db_path == Path("/tmp/monitor.db")
        assert config.log_level == "DEBUG"
        assert config.validate() == []

    def test_missing_file_gives_defaults(self, tmp_path):
        config = MonitorConfig.from_yaml(tmp_path / "absent.yaml")

        assert config == MonitorConfig()

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")

        config = MonitorConfig.from_yaml(path)

        assert config.network_ranges == []


class TestValidate:
    """Tests for validate()."""

    def test_invalid_range(self):
        config = MonitorConfig(network_ranges=["192.168.1.0/24", "not-a-network"])

        errors = config.validate()

        assert len(errors) == 1
        assert "not-a-network" in errors[0]

    def test_interval_below_minimum(self):
        config = MonitorConfig(scan_interval_seconds=30, min_scan_interval_seconds=60)

        assert any("below the minimum" in e for e in config.validate())

    @pytest.mark.parametrize("field,value", [
        ("max_concurrent_scans", 0),
        ("max_retries", -1),
        ("scan_timeout_seconds", 0),
        ("retention_days", 0),
        ("storage_failure_threshold", 0),
        ("log_level", "CHATTY"),
    ])
    def test_rejects_bad_values(self, field, value):
        config = MonitorConfig(**{field: value})

        assert len(config.validate()) == 1
