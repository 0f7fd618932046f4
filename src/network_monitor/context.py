"""
Explicit dependency container for the orchestrator.

Everything the orchestrator talks to is passed in here, so tests can swap
in fakes and nothing relies on module-level singletons.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from .config import ConfigProvider, MonitorConfig, static_config
from .notifications import (
    CompositeNotificationSink,
    LoggingNotificationSink,
    NotificationSink,
    WebhookNotificationSink,
)
from .scanner.base import ScannerAdapter
from .scanner.nmap_scanner import NmapScanner
from .store import SnapshotStore

logger = logging.getLogger(__name__)


@dataclass
class MonitorContext:
    """Dependencies for MonitoringOrchestrator."""
    config_provider: ConfigProvider
    scanner: ScannerAdapter
    store: Optional[SnapshotStore] = None
    notifier: NotificationSink = field(default_factory=LoggingNotificationSink)
    # Builds the store from the loaded config when none is supplied
    store_factory: Callable[[MonitorConfig], SnapshotStore] = field(
        default=lambda config: SnapshotStore(config.db_path)
    )


def build_context(
    config: MonitorConfig,
    scanner: Optional[ScannerAdapter] = None,
) -> MonitorContext:
    """Wire the production dependencies for a config."""
    if scanner is None:
        scanner = NmapScanner(
            nmap_path=config.nmap_path,
            max_workers=config.max_concurrent_scans,
        )

    sinks: list[NotificationSink] = [LoggingNotificationSink()]
    if config.webhook_url:
        sinks.append(WebhookNotificationSink(config.webhook_url, config.webhook_timeout_seconds))
        logger.info(f"Webhook notifications enabled: {config.webhook_url}")

    return MonitorContext(
        config_provider=static_config(config),
        scanner=scanner,
        store=SnapshotStore(config.db_path),
        notifier=CompositeNotificationSink(sinks),
    )
