"""
Monitoring orchestrator.

The single entry point an API layer talks to. Owns the lifecycle of the
scheduler, the snapshot store and the diff engine, consumes scheduler
events one at a time, and keeps health and metrics current.

Lifecycle:
    stopped -> starting -> running -> stopping -> stopped
    any failure during start -> error (recover with restart())
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import replace
from datetime import timedelta
from typing import Any, Awaitable, Callable, Optional, TypeVar, Union

from ._types import (
    ComponentHealth,
    HealthLevel,
    HealthStatus,
    MonitoringMetrics,
    NetworkOverview,
    NetworkSnapshot,
    Page,
    Pagination,
    ScanProfile,
    ServiceState,
    SnapshotDiff,
    SnapshotFilter,
    now_utc,
)
from .config import MonitorConfig
from .context import MonitorContext
from .diff_engine import DiffEngine, summarize_diff
from .exceptions import MonitorError, ScanError, ValidationError, WrongStateError
from .notifications import ScanFailure, Signal, SignificantChange
from .resilience import BreakerState, CircuitBreaker, retry
from .scheduler import ScanFailed, ScanScheduler, SnapshotProduced
from .store import SnapshotStore
from .validation import validate_snapshot_id

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Upper bound on how long stop() waits for in-flight notifications
NOTIFICATION_DRAIN_SECONDS = 5.0
HEALTH_PROBE_TIMEOUT = 5.0


class MonitoringOrchestrator:
    """
    Wires scanning, diffing and persistence together.

    All dependencies come from the MonitorContext; the orchestrator builds
    the scheduler and diff engine itself at start() from the loaded config.
    """

    def __init__(self, context: MonitorContext):
        self.context = context
        self.state = ServiceState.STOPPED

        self.config: Optional[MonitorConfig] = None
        self.store: Optional[SnapshotStore] = None
        self.scheduler: Optional[ScanScheduler] = None
        self.diff_engine: Optional[DiffEngine] = None
        self.storage_breaker: Optional[CircuitBreaker] = None

        self._shutdown_event = asyncio.Event()
        self._consumer_task: Optional[asyncio.Task] = None
        self._health_task: Optional[asyncio.Task] = None
        self._notify_tasks: set[asyncio.Task] = set()

        self._metrics = MonitoringMetrics()
        self._health: Optional[HealthStatus] = None
        self._started_mono: Optional[float] = None
        self.default_job_id: Optional[str] = None
        self.range_job_ids: dict[str, str] = {}

    def _set_state(self, state: ServiceState) -> None:
        if state != self.state:
            logger.info(f"Monitor state: {self.state.value} -> {state.value}")
        self.state = state

    def _require_running(self) -> None:
        if self.state != ServiceState.RUNNING:
            raise WrongStateError(
                f"Monitor is {self.state.value}, operation requires running",
                details={"state": self.state.value},
            )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Start monitoring. Only allowed from the stopped state."""
        if self.state != ServiceState.STOPPED:
            raise WrongStateError(f"Cannot start monitor while {self.state.value}")

        self._set_state(ServiceState.STARTING)
        try:
            config = self.context.config_provider()
            errors = config.validate()
            if errors:
                raise ValidationError(
                    f"Invalid configuration: {'; '.join(errors)}",
                    details={"errors": errors},
                )
            self.config = config

            self.storage_breaker = CircuitBreaker(
                "storage",
                failure_threshold=config.storage_failure_threshold,
                reset_timeout=config.storage_reset_timeout,
            )
            self.store = self.context.store or self.context.store_factory(config)
            await retry(
                self.store.connect,
                max_attempts=config.storage_retry_attempts,
                base_delay=config.storage_retry_base_delay,
                description="Storage connect",
            )

            self.diff_engine = DiffEngine(config.identity_policy)
            self.scheduler = ScanScheduler.from_config(self.context.scanner, config)

            self._metrics = MonitoringMetrics()
            self._started_mono = time.monotonic()
            self._shutdown_event = asyncio.Event()
            self._consumer_task = asyncio.create_task(self._consume_events())
            self._health_task = asyncio.create_task(self._health_loop())

            await self.scheduler.start()

            if config.enable_scanning:
                for target in config.scan_targets():
                    is_default = target == config.default_network_range
                    job_id = self.scheduler.schedule(
                        target,
                        config.scan_interval_seconds,
                        config.default_profile,
                        name="default" if is_default else target,
                        run_immediately=True,
                    )
                    self.range_job_ids[target] = job_id
                    if is_default:
                        self.default_job_id = job_id

        except Exception as e:
            logger.error(f"Monitor failed to start: {e}")
            await self._teardown(grace=0)
            self._set_state(ServiceState.ERROR)
            raise

        self._set_state(ServiceState.RUNNING)

    async def stop(self) -> None:
        """Stop monitoring. A no-op when already stopped."""
        if self.state == ServiceState.STOPPED:
            return
        if self.state in (ServiceState.STARTING, ServiceState.STOPPING):
            raise WrongStateError(f"Cannot stop monitor while {self.state.value}")

        self._set_state(ServiceState.STOPPING)
        grace = self.config.shutdown_grace_seconds if self.config else 0.0
        try:
            await self._teardown(grace)
        except Exception as e:
            logger.error(f"Error during shutdown: {e}")
            self._set_state(ServiceState.ERROR)
            raise
        self._set_state(ServiceState.STOPPED)

    async def restart(self) -> None:
        """Stop (from running or error) and start again."""
        await self.stop()
        await self.start()

    async def _teardown(self, grace: float) -> None:
        """Stop whatever was started, in reverse order. Safe on partial starts."""
        self._shutdown_event.set()

        if self._health_task:
            self._health_task.cancel()
            await asyncio.gather(self._health_task, return_exceptions=True)
            self._health_task = None

        if self.scheduler:
            await self.scheduler.stop(grace=grace)

            # Let the consumer finish events that were already produced
            if self._consumer_task and not self._consumer_task.done():
                try:
                    await asyncio.wait_for(self.scheduler.events.join(), timeout=grace)
                except asyncio.TimeoutError:
                    logger.warning(
                        f"{self.scheduler.events.qsize()} event(s) not handled within {grace}s"
                    )

        if self._consumer_task:
            self._consumer_task.cancel()
            await asyncio.gather(self._consumer_task, return_exceptions=True)
            self._consumer_task = None

        if self.scheduler:
            self._fail_unhandled(self.scheduler.events)

        if self._notify_tasks:
            _, pending = await asyncio.wait(
                list(self._notify_tasks),
                timeout=min(grace, NOTIFICATION_DRAIN_SECONDS) if grace else 0.1,
            )
            for task in pending:
                task.cancel()
        await self.context.notifier.close()

        if self.store:
            await self.store.close()

        self.scheduler = None
        self.default_job_id = None
        self.range_job_ids = {}

    @staticmethod
    def _fail_unhandled(queue: asyncio.Queue) -> None:
        """Resolve snapshots left in the queue so manual callers do not wait forever."""
        dropped = 0
        while not queue.empty():
            event = queue.get_nowait()
            if isinstance(event, SnapshotProduced):
                event.fail(ScanError("Monitor stopped before the snapshot was handled"))
                dropped += 1
            queue.task_done()
        if dropped:
            logger.warning(f"Dropped {dropped} unhandled snapshot(s) on shutdown")

    # -------------------------------------------------------------------------
    # Event handling
    # -------------------------------------------------------------------------

    async def _consume_events(self) -> None:
        """Handle scheduler events one at a time, in completion order."""
        queue = self.scheduler.events
        while True:
            event = await queue.get()
            try:
                if isinstance(event, SnapshotProduced):
                    await self._handle_snapshot(event)
                elif isinstance(event, ScanFailed):
                    self._handle_scan_failed(event)
            finally:
                queue.task_done()

    async def _handle_snapshot(self, event: SnapshotProduced) -> None:
        try:
            await self.process_snapshot(event.snapshot)
        except asyncio.CancelledError:
            event.fail(ScanError("Monitor stopped before the snapshot was handled"))
            raise
        except Exception as e:
            # Never let one bad snapshot kill the consumer
            self._metrics.errors_encountered += 1
            logger.error(f"Failed to process snapshot {event.snapshot.id}: {e}")
            event.fail(e)
        else:
            event.ack()

    def _handle_scan_failed(self, event: ScanFailed) -> None:
        self._metrics.scan_failures += 1
        self._metrics.errors_encountered += 1
        self._notify(ScanFailure(
            job_id=event.job_id,
            target=event.target,
            error=event.error,
            attempts=event.attempts,
        ))

    async def process_snapshot(self, snapshot: NetworkSnapshot) -> Optional[SnapshotDiff]:
        """
        Persist a snapshot, diff it against the previous latest and persist
        the diff. Returns the stored diff, or None for the first snapshot.
        """
        await self._storage(lambda: self.store.create(snapshot), "Store snapshot")
        self._metrics.snapshots_stored += 1

        previous = await self._storage(
            lambda: self.store.get_latest(exclude_id=snapshot.id), "Load previous snapshot"
        )

        diff = None
        if previous is not None:
            diff = self.diff_engine.diff(previous, snapshot)
            diff_id = await self._storage(lambda: self.store.create_diff(diff), "Store diff")
            diff = diff.with_id(diff_id)
            self._metrics.diffs_stored += 1
            self._metrics.changes_detected += diff.summary.total_changes

        m = self._metrics
        m.scans_completed += 1
        m.devices_discovered += snapshot.device_count
        m.average_scan_duration += (
            snapshot.metadata.scan_duration - m.average_scan_duration
        ) / m.scans_completed
        m.last_scan_time = snapshot.timestamp
        m.last_update = now_utc()

        if diff is not None:
            logger.info(f"Snapshot {snapshot.id}: {summarize_diff(diff)}")
            threshold = self.config.significant_change_threshold
            if diff.summary.total_changes > threshold:
                m.significant_changes += 1
                logger.warning(
                    f"Significant change detected: {diff.summary.total_changes} changes "
                    f"(threshold {threshold})"
                )
                self._notify(SignificantChange(diff=diff, threshold=threshold))
        else:
            logger.info(f"Baseline snapshot {snapshot.id} stored ({snapshot.device_count} devices)")

        return diff

    async def _storage(self, op: Callable[[], Awaitable[T]], description: str) -> T:
        """Run a store call through the shared retry policy and circuit breaker."""
        config = self.config
        return await self.storage_breaker.call(lambda: retry(
            op,
            max_attempts=config.storage_retry_attempts,
            base_delay=config.storage_retry_base_delay,
            description=description,
        ))

    def _notify(self, signal: Signal) -> None:
        task = asyncio.create_task(self._deliver(signal))
        self._notify_tasks.add(task)
        task.add_done_callback(self._notify_tasks.discard)

    async def _deliver(self, signal: Signal) -> None:
        try:
            await self.context.notifier.notify(signal)
        except Exception as e:
            logger.error(f"Notification for {signal.kind} failed: {e}")

    # -------------------------------------------------------------------------
    # Health
    # -------------------------------------------------------------------------

    async def _health_loop(self) -> None:
        interval = self.config.health_check_interval_seconds
        while not self._shutdown_event.is_set():
            try:
                await self.check_health()
            except Exception as e:
                logger.error(f"Health check error: {e}")
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    async def check_health(self) -> HealthStatus:
        """Probe every component now and refresh metrics."""
        components = [
            await self._check_database(),
            await self._check_scanner(),
            self._check_scheduler(),
            self._check_breaker(),
        ]
        health = HealthStatus.from_components(self.state, components)

        previous = self._health.status if self._health else None
        if health.status != previous:
            if health.status == HealthLevel.HEALTHY:
                logger.info("Monitor health: healthy")
            else:
                unhealthy = [c.name for c in components if not c.healthy]
                logger.warning(f"Monitor health: {health.status.value} ({', '.join(unhealthy)})")
        self._health = health

        await self._refresh_metrics()
        return health

    async def _check_database(self) -> ComponentHealth:
        if self.store is None:
            return ComponentHealth("database", False, "unavailable", "Store not initialized")
        try:
            await asyncio.wait_for(self.store.ping(), HEALTH_PROBE_TIMEOUT)
            return ComponentHealth("database", True, "connected")
        except (MonitorError, asyncio.TimeoutError) as e:
            return ComponentHealth("database", False, "error", str(e) or "Ping timed out")

    async def _check_scanner(self) -> ComponentHealth:
        try:
            available = await asyncio.wait_for(
                self.context.scanner.is_available(), HEALTH_PROBE_TIMEOUT
            )
        except Exception as e:
            return ComponentHealth("scanner", False, "error", str(e))
        if available:
            return ComponentHealth("scanner", True, "available", self.context.scanner.name)
        return ComponentHealth("scanner", False, "unavailable", f"{self.context.scanner.name} not found")

    def _check_scheduler(self) -> ComponentHealth:
        scheduler = self.scheduler
        if scheduler is None or not scheduler.is_running:
            return ComponentHealth("scheduler", False, "stopped")
        return ComponentHealth(
            "scheduler",
            True,
            "running",
            f"{scheduler.running_count} running, {scheduler.queued_count} queued",
        )

    def _check_breaker(self) -> ComponentHealth:
        breaker = self.storage_breaker
        if breaker is None:
            return ComponentHealth("circuit_breaker", False, "uninitialized")
        state = breaker.state
        message = f"{breaker.failure_count}/{breaker.failure_threshold} failures"
        return ComponentHealth("circuit_breaker", state != BreakerState.OPEN, state.value, message)

    async def _refresh_metrics(self) -> None:
        m = self._metrics
        if self.store is not None and self.store.is_connected:
            try:
                m.total_snapshots = await self.store.count()
            except MonitorError as e:
                logger.debug(f"Could not count snapshots: {e}")
        self._fill_live_metrics(m)

    def _fill_live_metrics(self, m: MonitoringMetrics) -> None:
        if self._started_mono is not None and self.state == ServiceState.RUNNING:
            m.uptime_seconds = time.monotonic() - self._started_mono
        if self.scheduler is not None:
            m.active_schedules = sum(1 for j in self.scheduler.list_jobs() if j.enabled)
            m.running_scans = self.scheduler.running_count
            m.queued_scans = self.scheduler.queued_count
        m.last_update = now_utc()

    def get_health(self) -> HealthStatus:
        """Last computed health; an empty unhealthy status before the first check."""
        if self._health is None:
            return HealthStatus.from_components(self.state, [])
        return replace(self._health, state=self.state)

    def get_metrics(self) -> MonitoringMetrics:
        """Snapshot of the running counters."""
        metrics = replace(self._metrics)
        self._fill_live_metrics(metrics)
        return metrics

    # -------------------------------------------------------------------------
    # API operations
    # -------------------------------------------------------------------------

    async def trigger_manual_scan(
        self,
        target: Optional[str] = None,
        profile: Union[ScanProfile, str, None] = None,
        timeout: Optional[float] = None,
    ) -> NetworkSnapshot:
        """
        Scan now and return the snapshot once it has been stored and diffed.

        If `timeout` runs out after the scan finished but before storage did,
        the snapshot is returned and storing carries on in the background.
        """
        self._require_running()
        target = target or self.config.default_network_range
        if not target:
            raise ValidationError("No scan target given and no default network range configured")
        return await self.scheduler.trigger_manual(
            target,
            profile or self.config.default_profile,
            timeout=timeout,
            wait_for_handling=True,
        )

    def schedule_scan(
        self,
        target: str,
        interval: float,
        profile: Union[ScanProfile, str, None] = None,
        name: Optional[str] = None,
    ) -> str:
        self._require_running()
        return self.scheduler.schedule(target, interval, profile, name=name, run_immediately=True)

    async def get_latest_snapshot(self) -> Optional[NetworkSnapshot]:
        self._require_running()
        return await self._storage(lambda: self.store.get_latest(), "Load latest snapshot")

    async def get_snapshot(self, snapshot_id: str) -> NetworkSnapshot:
        self._require_running()
        snapshot_id = validate_snapshot_id(snapshot_id)
        return await self._storage(lambda: self.store.get_by_id(snapshot_id), "Load snapshot")

    async def list_snapshots(
        self,
        filter: Optional[SnapshotFilter] = None,
        pagination: Optional[Pagination] = None,
    ) -> Page:
        self._require_running()
        return await self._storage(lambda: self.store.list(filter, pagination), "List snapshots")

    async def compare_snapshots(self, from_id: str, to_id: str) -> SnapshotDiff:
        """Stored diff for the pair if present, otherwise computed on the fly."""
        self._require_running()
        from_id = validate_snapshot_id(from_id)
        to_id = validate_snapshot_id(to_id)

        stored = await self._storage(lambda: self.store.get_diff(from_id, to_id), "Load diff")
        if stored is not None:
            return stored

        older = await self._storage(lambda: self.store.get_by_id(from_id), "Load snapshot")
        newer = await self._storage(lambda: self.store.get_by_id(to_id), "Load snapshot")
        return self.diff_engine.diff(older, newer)

    async def get_recent_changes(self, since_hours: float = 24) -> list[SnapshotDiff]:
        self._require_running()
        if since_hours <= 0:
            raise ValidationError(f"since_hours must be positive: {since_hours}")
        since = now_utc() - timedelta(hours=since_hours)
        return await self._storage(lambda: self.store.list_recent_diffs(since), "List diffs")

    async def get_network_overview(self, since_hours: float = 24) -> NetworkOverview:
        """
        Device, service and risk counts from the latest snapshot, plus the
        number of changes recorded in the last `since_hours`.
        """
        latest = await self.get_latest_snapshot()
        diffs = await self.get_recent_changes(since_hours)
        return NetworkOverview.from_snapshot(
            latest,
            recent_changes=sum(d.summary.total_changes for d in diffs),
        )

    async def run_retention_sweep(self) -> int:
        """Delete snapshots (and their diffs) older than the retention window."""
        self._require_running()
        cutoff = now_utc() - timedelta(days=self.config.retention_days)
        removed = await self._storage(
            lambda: self.store.delete_older_than(cutoff), "Retention sweep"
        )
        logger.info(f"Retention sweep removed {removed} snapshot(s)")
        return removed

    def describe(self) -> dict[str, Any]:
        """Summary used by the service entry point for status output."""
        return {
            "state": self.state.value,
            "health": self.get_health().to_dict(),
            "metrics": self.get_metrics().to_dict(),
            "breaker": self.storage_breaker.get_state() if self.storage_breaker else None,
        }
