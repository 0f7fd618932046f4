"""
Notification sinks for monitoring signals.

Sinks are fire-and-forget from the orchestrator's point of view: a sink
may raise, but the orchestrator logs the failure and carries on.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

import aiohttp

from ._types import SnapshotDiff, now_utc
from .diff_engine import change_severity, summarize_diff

logger = logging.getLogger(__name__)


class NotificationError(Exception):
    """Raised when a sink cannot deliver a signal."""
    pass


@dataclass
class Signal:
    """Base class for orchestrator signals."""
    timestamp: datetime = field(default_factory=now_utc)

    kind = "signal"

    @property
    def message(self) -> str:
        return self.kind

    def to_dict(self) -> dict:
        return {"kind": self.kind, "timestamp": self.timestamp.isoformat()}


@dataclass
class SignificantChange(Signal):
    """A diff whose total change count crossed the alerting threshold."""
    diff: Optional[SnapshotDiff] = None
    threshold: int = 0

    kind = "significant_change"

    @property
    def severity(self) -> str:
        return change_severity(self.diff) if self.diff else "low"

    @property
    def message(self) -> str:
        return summarize_diff(self.diff) if self.diff else "No changes detected"

    def to_dict(self) -> dict:
        data = super().to_dict()
        data.update({
            "severity": self.severity,
            "message": self.message,
            "threshold": self.threshold,
            "diff": self.diff.to_dict() if self.diff else None,
        })
        return data


@dataclass
class ScanFailure(Signal):
    """A scan exhausted its retries."""
    job_id: str = ""
    target: str = ""
    error: str = ""
    attempts: int = 0

    kind = "scan_failed"

    @property
    def message(self) -> str:
        return f"Scan of {self.target} failed after {self.attempts} attempt(s): {self.error}"

    def to_dict(self) -> dict:
        data = super().to_dict()
        data.update({
            "job_id": self.job_id,
            "target": self.target,
            "error": self.error,
            "attempts": self.attempts,
            "message": self.message,
        })
        return data


class NotificationSink(ABC):
    """Receives orchestrator signals."""

    @abstractmethod
    async def notify(self, signal: Signal) -> None:
        pass

    async def close(self) -> None:
        pass


class LoggingNotificationSink(NotificationSink):
    """Writes every signal to the log."""

    def __init__(self, logger_name: str = "network_monitor.alerts"):
        self._logger = logging.getLogger(logger_name)

    async def notify(self, signal: Signal) -> None:
        if isinstance(signal, SignificantChange) and signal.severity == "high":
            self._logger.warning(f"[{signal.kind}] {signal.message}")
        elif isinstance(signal, ScanFailure):
            self._logger.error(f"[{signal.kind}] {signal.message}")
        else:
            self._logger.info(f"[{signal.kind}] {signal.message}")


class WebhookNotificationSink(NotificationSink):
    """POSTs each signal as JSON to a webhook URL."""

    def __init__(self, url: str, timeout: float = 10.0):
        self.url = url
        self.timeout = aiohttp.ClientTimeout(total=timeout)

        # Session will be created when needed
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=self.timeout,
                headers={"User-Agent": "network-monitor"},
            )
            logger.debug("Created new aiohttp session")
        return self._session

    async def notify(self, signal: Signal) -> None:
        session = await self._get_session()
        try:
            async with session.post(self.url, json=signal.to_dict()) as response:
                if response.status >= 400:
                    body = await response.text()
                    raise NotificationError(
                        f"Webhook returned {response.status}: {body[:200]}"
                    )
                logger.debug(f"Webhook delivered {signal.kind} ({response.status})")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise NotificationError(f"Webhook delivery failed: {e}") from e

    async def close(self) -> None:
        """Close the client session."""
        if self._session and not self._session.closed:
            await self._session.close()
            logger.debug("Closed aiohttp session")


class CompositeNotificationSink(NotificationSink):
    """Fans a signal out to several sinks; one failing sink does not block the rest."""

    def __init__(self, sinks: list[NotificationSink]):
        self.sinks = list(sinks)

    async def notify(self, signal: Signal) -> None:
        results = await asyncio.gather(
            *(sink.notify(signal) for sink in self.sinks),
            return_exceptions=True,
        )
        for sink, result in zip(self.sinks, results):
            if isinstance(result, Exception):
                logger.error(f"{type(sink).__name__} failed for {signal.kind}: {result}")

    async def close(self) -> None:
        for sink in self.sinks:
            await sink.close()
