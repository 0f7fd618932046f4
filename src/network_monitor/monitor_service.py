"""
Network monitor service entry point.

Loads configuration, builds the production context and runs the
orchestrator until SIGTERM/SIGINT. `--scan-once` runs a single manual scan,
prints the resulting change summary as JSON and exits.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

from .config import MonitorConfig
from .context import build_context
from .diff_engine import change_severity, summarize_diff
from .exceptions import MonitorError
from .orchestrator import MonitoringOrchestrator

logger = logging.getLogger(__name__)


class MonitorService:
    """Runs an orchestrator until asked to shut down."""

    def __init__(self, orchestrator: MonitoringOrchestrator):
        self.orchestrator = orchestrator
        self._shutdown_event = asyncio.Event()

    def request_shutdown(self) -> None:
        logger.info("Received shutdown signal")
        self._shutdown_event.set()

    async def run(self) -> None:
        try:
            await self.orchestrator.start()
            logger.info("Network monitor running")
            try:
                await self._shutdown_event.wait()
            finally:
                await self.orchestrator.stop()
        finally:
            self._close_scanner()

    async def scan_once(self, target: Optional[str], timeout: Optional[float]) -> dict:
        try:
            await self.orchestrator.start()
            try:
                snapshot = await self.orchestrator.trigger_manual_scan(target, timeout=timeout)
                result = {"snapshot": snapshot.id, "devices": snapshot.device_count}
                diffs = await self.orchestrator.get_recent_changes(since_hours=1)
                diff = next((d for d in diffs if d.to_snapshot == snapshot.id), None)
                if diff is not None:
                    result["changes"] = summarize_diff(diff)
                    result["severity"] = change_severity(diff)
                    result["summary"] = diff.summary.to_dict()
                return result
            finally:
                await self.orchestrator.stop()
        finally:
            self._close_scanner()

    def _close_scanner(self) -> None:
        # Scanner outlives orchestrator restarts
        self.orchestrator.context.scanner.close()


def load_config(path: Optional[str]) -> MonitorConfig:
    if path:
        return MonitorConfig.from_yaml(Path(path))
    return MonitorConfig.from_env()


def main():
    """Entry point for network-monitor service."""
    import argparse

    parser = argparse.ArgumentParser(description="Network Inventory Monitor")
    parser.add_argument("--config", type=str, help="Path to config file")
    parser.add_argument("--db", type=str, help="Snapshot database path")
    parser.add_argument("--log-level", type=str, default=None, help="Log level")
    parser.add_argument("--scan-once", action="store_true", help="Run one scan and exit")
    parser.add_argument("--target", type=str, help="Target for --scan-once")
    parser.add_argument("--timeout", type=float, default=None, help="Timeout for --scan-once")
    args = parser.parse_args()

    config = load_config(args.config)
    if args.db:
        config.db_path = Path(args.db)
    if args.log_level:
        config.log_level = args.log_level

    # Configure logging
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    errors = config.validate()
    if errors:
        for error in errors:
            logger.error(f"Config error: {error}")
        sys.exit(1)

    if args.scan_once:
        # Only the manual scan; skip the recurring default job
        config.enable_scanning = False

    service = MonitorService(MonitoringOrchestrator(build_context(config)))

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, service.request_shutdown)

    try:
        if args.scan_once:
            result = loop.run_until_complete(service.scan_once(args.target, args.timeout))
            print(json.dumps(result, indent=2))
        else:
            loop.run_until_complete(service.run())
    except MonitorError as e:
        logger.error(f"{e.code}: {e.message}")
        sys.exit(1)
    finally:
        loop.close()


if __name__ == "__main__":
    main()
