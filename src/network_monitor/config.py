"""
Network monitor configuration.

Loaded from environment variables or a YAML file. Values are plain
dataclass fields; call validate() before handing the config to the
orchestrator.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

import yaml

from ._types import IdentityPolicy, ScanProfile
from .validation import is_valid_target

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, str(default)).lower() in ("1", "true", "yes")


@dataclass
class MonitorConfig:
    """Network monitor configuration."""

    # Targets
    network_ranges: list[str] = field(default_factory=list)
    default_network_range: Optional[str] = None

    # Scheduling
    scan_interval_seconds: int = 3600
    min_scan_interval_seconds: int = 60
    default_profile: ScanProfile = ScanProfile.DISCOVERY
    max_concurrent_scans: int = 3
    scan_timeout_seconds: int = 300

    # Scan retries
    max_retries: int = 2
    retry_base_delay: float = 5.0
    retry_max_delay: float = 300.0

    # Change detection
    significant_change_threshold: int = 10
    identity_policy: IdentityPolicy = IdentityPolicy.IP

    # Monitoring
    health_check_interval_seconds: int = 30
    shutdown_grace_seconds: float = 30.0

    # Storage
    db_path: Path = field(default_factory=lambda: Path("/var/lib/network-monitor/snapshots.db"))
    retention_days: int = 30
    storage_retry_attempts: int = 3
    storage_retry_base_delay: float = 0.5
    storage_failure_threshold: int = 5
    storage_reset_timeout: float = 30.0

    # Scanner
    nmap_path: Optional[str] = None
    enable_scanning: bool = True

    # Notifications
    webhook_url: Optional[str] = None
    webhook_timeout_seconds: float = 10.0

    # Logging
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "MonitorConfig":
        """Load configuration from environment variables."""
        config = cls()

        # Network ranges (comma-separated)
        ranges = os.getenv("NETWORK_RANGES", "")
        if ranges:
            config.network_ranges = [r.strip() for r in ranges.split(",") if r.strip()]
        config.default_network_range = os.getenv("DEFAULT_NETWORK_RANGE") or (
            config.network_ranges[0] if config.network_ranges else None
        )

        # Scheduling
        config.scan_interval_seconds = int(os.getenv("SCAN_INTERVAL", "3600"))
        config.min_scan_interval_seconds = int(os.getenv("MIN_SCAN_INTERVAL", "60"))
        config.default_profile = ScanProfile(os.getenv("SCAN_PROFILE", "discovery"))
        config.max_concurrent_scans = int(os.getenv("MAX_CONCURRENT_SCANS", "3"))
        config.scan_timeout_seconds = int(os.getenv("SCAN_TIMEOUT", "300"))

        # Retries
        config.max_retries = int(os.getenv("MAX_RETRIES", "2"))
        config.retry_base_delay = float(os.getenv("RETRY_BASE_DELAY", "5.0"))
        config.retry_max_delay = float(os.getenv("RETRY_MAX_DELAY", "300.0"))

        # Change detection
        config.significant_change_threshold = int(os.getenv("SIGNIFICANT_CHANGE_THRESHOLD", "10"))
        config.identity_policy = IdentityPolicy(os.getenv("IDENTITY_POLICY", "ip"))

        # Monitoring
        config.health_check_interval_seconds = int(os.getenv("HEALTH_CHECK_INTERVAL", "30"))
        config.shutdown_grace_seconds = float(os.getenv("SHUTDOWN_GRACE", "30"))

        # Storage
        if db_path := os.getenv("DB_PATH"):
            config.db_path = Path(db_path)
        config.retention_days = int(os.getenv("RETENTION_DAYS", "30"))

        # Scanner
        config.nmap_path = os.getenv("NMAP_PATH")
        config.enable_scanning = _env_bool("ENABLE_SCANNING", True)

        # Notifications
        config.webhook_url = os.getenv("WEBHOOK_URL")

        # Logging
        config.log_level = os.getenv("LOG_LEVEL", "INFO")

        return config

    @classmethod
    def from_yaml(cls, path: Path) -> "MonitorConfig":
        """Load configuration from YAML file."""
        path = Path(path)
        if not path.exists():
            logger.warning(f"Config file not found: {path}, using defaults")
            return cls()

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        config = cls()

        if "network_ranges" in data:
            config.network_ranges = list(data["network_ranges"] or [])
        config.default_network_range = data.get("default_network_range") or (
            config.network_ranges[0] if config.network_ranges else None
        )

        if "scan" in data:
            s = data["scan"]
            config.scan_interval_seconds = s.get("interval_seconds", 3600)
            config.min_scan_interval_seconds = s.get("min_interval_seconds", 60)
            config.default_profile = ScanProfile(s.get("profile", "discovery"))
            config.max_concurrent_scans = s.get("max_concurrent", 3)
            config.scan_timeout_seconds = s.get("timeout_seconds", 300)
            config.nmap_path = s.get("nmap_path")
            config.enable_scanning = s.get("enabled", True)

        if "retry" in data:
            r = data["retry"]
            config.max_retries = r.get("max_retries", 2)
            config.retry_base_delay = float(r.get("base_delay", 5.0))
            config.retry_max_delay = float(r.get("max_delay", 300.0))

        if "storage" in data:
            s = data["storage"]
            config.retention_days = s.get("retention_days", 30)
            config.storage_retry_attempts = s.get("retry_attempts", 3)
            config.storage_retry_base_delay = float(s.get("retry_base_delay", 0.5))
            config.storage_failure_threshold = s.get("failure_threshold", 5)
            config.storage_reset_timeout = float(s.get("reset_timeout", 30.0))

        if "monitoring" in data:
            m = data["monitoring"]
            config.significant_change_threshold = m.get("significant_change_threshold", 10)
            config.identity_policy = IdentityPolicy(m.get("identity_policy", "ip"))
            config.health_check_interval_seconds = m.get("health_check_interval_seconds", 30)
            config.shutdown_grace_seconds = float(m.get("shutdown_grace_seconds", 30.0))

        if "notifications" in data:
            n = data["notifications"]
            config.webhook_url = n.get("webhook_url")
            config.webhook_timeout_seconds = float(n.get("webhook_timeout_seconds", 10.0))

        if "paths" in data:
            p = data["paths"]
            if "db" in p:
                config.db_path = Path(p["db"])

        config.log_level = data.get("log_level", "INFO")

        return config

    def scan_targets(self) -> list[str]:
        """Ranges to scan on a schedule: the default first, then the rest, without repeats."""
        targets = []
        for target in [self.default_network_range, *self.network_ranges]:
            if target and target not in targets:
                targets.append(target)
        return targets

    def validate(self) -> list[str]:
        """Validate configuration, returning list of errors."""
        errors = []

        for target in self.network_ranges:
            if not is_valid_target(target):
                errors.append(f"Invalid network range: {target}")

        if self.default_network_range and not is_valid_target(self.default_network_range):
            errors.append(f"Invalid default network range: {self.default_network_range}")

        if self.min_scan_interval_seconds < 1:
            errors.append(f"Invalid minimum scan interval: {self.min_scan_interval_seconds}")

        if self.scan_interval_seconds < self.min_scan_interval_seconds:
            errors.append(
                f"Scan interval {self.scan_interval_seconds}s is below the minimum "
                f"of {self.min_scan_interval_seconds}s"
            )

        if self.max_concurrent_scans < 1:
            errors.append(f"max_concurrent_scans must be >= 1: {self.max_concurrent_scans}")

        if self.max_retries < 0:
            errors.append(f"max_retries must be >= 0: {self.max_retries}")

        if self.retry_base_delay < 0 or self.retry_max_delay < self.retry_base_delay:
            errors.append(
                f"Invalid retry delays: base={self.retry_base_delay} max={self.retry_max_delay}"
            )

        if self.scan_timeout_seconds <= 0:
            errors.append(f"Invalid scan timeout: {self.scan_timeout_seconds}")

        if self.significant_change_threshold < 0:
            errors.append(
                f"significant_change_threshold must be >= 0: {self.significant_change_threshold}"
            )

        if self.health_check_interval_seconds <= 0:
            errors.append(f"Invalid health check interval: {self.health_check_interval_seconds}")

        if self.retention_days < 1:
            errors.append(f"retention_days must be >= 1: {self.retention_days}")

        if self.storage_retry_attempts < 1:
            errors.append(f"storage_retry_attempts must be >= 1: {self.storage_retry_attempts}")

        if self.storage_failure_threshold < 1:
            errors.append(
                f"storage_failure_threshold must be >= 1: {self.storage_failure_threshold}"
            )

        if self.log_level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            errors.append(f"Invalid log level: {self.log_level}")

        return errors


# A zero-argument callable returning the current configuration
ConfigProvider = Callable[[], MonitorConfig]


def static_config(config: MonitorConfig) -> ConfigProvider:
    """Wrap an already-built config as a provider."""
    return lambda: config


# Example monitor_config.yaml:
"""
network_ranges:
  - 192.168.1.0/24
default_network_range: 192.168.1.0/24

scan:
  interval_seconds: 3600
  min_interval_seconds: 60
  profile: discovery
  max_concurrent: 3
  timeout_seconds: 300

retry:
  max_retries: 2
  base_delay: 5
  max_delay: 300

storage:
  retention_days: 30

monitoring:
  significant_change_threshold: 10
  identity_policy: ip
  health_check_interval_seconds: 30

notifications:
  webhook_url: https://hooks.example.com/network-changes

paths:
  db: /var/lib/network-monitor/snapshots.db

log_level: INFO
"""
