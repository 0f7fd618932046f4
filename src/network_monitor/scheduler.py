"""
Scan job scheduler.

Runs recurring and manual scans against the scanner adapter with a hard
ceiling on concurrent scans. A single dispatch task owns a heap of runs
ordered by (due time, sequence); retries go back onto the same heap with
an exponential backoff delay, so a failing scan never holds a slot while
it waits.

Completed scans are published on `events`, an asyncio.Queue of
SnapshotProduced / ScanFailed records. Each SnapshotProduced carries a
`handled` future that the consumer resolves with ack() or fail().
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional, Union

from ._types import NetworkSnapshot, ScanMetadata, ScanProfile, now_utc
from .config import MonitorConfig
from .exceptions import NotFoundError, ScanError, ValidationError, WrongStateError
from .resilience import compute_backoff
from .scanner.base import ScannerAdapter, merge_devices
from .validation import validate_target

logger = logging.getLogger(__name__)

# Execution history kept in memory
MAX_EXECUTIONS = 100


def _coerce_profile(profile: Union[ScanProfile, str]) -> ScanProfile:
    try:
        return ScanProfile(profile)
    except ValueError:
        raise ValidationError(f"Unknown scan profile: {profile}")


def _retrieve_exception(fut: asyncio.Future) -> None:
    # Mark a failure as observed when nobody awaits the future
    if not fut.cancelled():
        fut.exception()


@dataclass
class ScanJob:
    """A recurring scan registration (or the single run of a manual request)."""
    id: str
    target: str
    profile: ScanProfile
    interval: Optional[float] = None  # seconds; None for manual jobs
    name: Optional[str] = None
    timeout: Optional[float] = None
    enabled: bool = True
    created_at: datetime = field(default_factory=now_utc)
    last_run: Optional[datetime] = None
    next_run: Optional[datetime] = None
    run_count: int = 0
    failure_count: int = 0
    is_running: bool = False

    @property
    def is_manual(self) -> bool:
        return self.interval is None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "target": self.target,
            "profile": self.profile.value,
            "interval": self.interval,
            "timeout": self.timeout,
            "enabled": self.enabled,
            "created_at": self.created_at.isoformat(),
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "next_run": self.next_run.isoformat() if self.next_run else None,
            "run_count": self.run_count,
            "failure_count": self.failure_count,
            "is_running": self.is_running,
        }


@dataclass
class ScanExecution:
    """One run of a job, across all of its attempts."""
    id: str
    job_id: str
    target: str
    profile: ScanProfile
    started_at: datetime
    completed_at: Optional[datetime] = None
    status: str = "running"  # running, completed, failed, cancelled
    attempts: int = 0
    duration: Optional[float] = None
    device_count: Optional[int] = None
    snapshot_id: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "job_id": self.job_id,
            "target": self.target,
            "profile": self.profile.value,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "status": self.status,
            "attempts": self.attempts,
            "duration": self.duration,
            "device_count": self.device_count,
            "snapshot_id": self.snapshot_id,
            "error": self.error,
        }


# =============================================================================
# Events
# =============================================================================

@dataclass
class SnapshotProduced:
    """A scan finished and produced a snapshot."""
    job_id: str
    snapshot: NetworkSnapshot
    manual: bool
    handled: asyncio.Future

    def ack(self) -> None:
        """Consumer finished handling the snapshot."""
        if not self.handled.done():
            self.handled.set_result(None)

    def fail(self, error: BaseException) -> None:
        """Consumer could not handle the snapshot."""
        if not self.handled.done():
            self.handled.set_exception(error)


@dataclass
class ScanFailed:
    """A scan exhausted its retries."""
    job_id: str
    target: str
    profile: ScanProfile
    error: str
    attempts: int
    manual: bool
    timestamp: datetime = field(default_factory=now_utc)


SchedulerEvent = Union[SnapshotProduced, ScanFailed]


@dataclass
class SchedulerMetrics:
    """Scheduler counters."""
    total_jobs: int = 0
    active_jobs: int = 0
    completed_runs: int = 0
    failed_runs: int = 0
    average_duration: float = 0.0
    next_scheduled_run: Optional[datetime] = None
    last_completed_run: Optional[datetime] = None
    running: int = 0
    queued: int = 0
    peak_concurrency: int = 0

    def to_dict(self) -> dict:
        return {
            "total_jobs": self.total_jobs,
            "active_jobs": self.active_jobs,
            "completed_runs": self.completed_runs,
            "failed_runs": self.failed_runs,
            "average_duration": self.average_duration,
            "next_scheduled_run": (
                self.next_scheduled_run.isoformat() if self.next_scheduled_run else None
            ),
            "last_completed_run": (
                self.last_completed_run.isoformat() if self.last_completed_run else None
            ),
            "running": self.running,
            "queued": self.queued,
            "peak_concurrency": self.peak_concurrency,
        }


class _Run:
    """Scheduler-internal state of one queued or in-flight run."""

    def __init__(self, job: ScanJob, generation: int, future: Optional[asyncio.Future] = None):
        self.job = job
        self.generation = generation
        self.future = future
        self.attempt = 0
        self.errors: list[str] = []
        self.started_mono: Optional[float] = None
        self.execution: Optional[ScanExecution] = None
        self.task: Optional[asyncio.Task] = None
        self.cancelled = False


class ScanScheduler:
    """
    Schedules scans and bounds how many run at once.

    Nothing runs until start(). Recurring jobs registered while stopped are
    seeded when the dispatch loop starts; manual triggers need a running
    scheduler.
    """

    def __init__(
        self,
        scanner: ScannerAdapter,
        max_concurrent_scans: int = 3,
        max_retries: int = 2,
        retry_base_delay: float = 5.0,
        retry_max_delay: float = 300.0,
        min_scan_interval: float = 60.0,
        default_timeout: Optional[float] = 300.0,
        default_profile: ScanProfile = ScanProfile.DISCOVERY,
    ):
        if max_concurrent_scans < 1:
            raise ValidationError("max_concurrent_scans must be >= 1")
        self.scanner = scanner
        self.max_concurrent_scans = max_concurrent_scans
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self.min_scan_interval = min_scan_interval
        self.default_timeout = default_timeout
        self.default_profile = default_profile

        self.events: asyncio.Queue = asyncio.Queue()

        self._jobs: dict[str, ScanJob] = {}
        self._heap: list[tuple[float, int, _Run]] = []
        self._seq = itertools.count()
        self._pending_jobs: set[str] = set()
        self._in_flight: set[_Run] = set()
        self._executions: deque[ScanExecution] = deque(maxlen=MAX_EXECUTIONS)

        # Shared across restarts; an abandoned scan holds its slot until it returns
        self._semaphore = asyncio.Semaphore(max_concurrent_scans)
        self._wakeup = asyncio.Event()
        self._dispatcher: Optional[asyncio.Task] = None
        self._running = False
        self._generation = 0

        self._completed_runs = 0
        self._failed_runs = 0
        self._total_duration = 0.0
        self._last_completed: Optional[datetime] = None
        self._peak_concurrency = 0

    @classmethod
    def from_config(cls, scanner: ScannerAdapter, config: MonitorConfig) -> "ScanScheduler":
        return cls(
            scanner,
            max_concurrent_scans=config.max_concurrent_scans,
            max_retries=config.max_retries,
            retry_base_delay=config.retry_base_delay,
            retry_max_delay=config.retry_max_delay,
            min_scan_interval=config.min_scan_interval_seconds,
            default_timeout=config.scan_timeout_seconds,
            default_profile=config.default_profile,
        )

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def running_count(self) -> int:
        return len(self._in_flight)

    @property
    def queued_count(self) -> int:
        return len(self._heap)

    def _now(self) -> float:
        return asyncio.get_running_loop().time()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Start the dispatch loop and seed every enabled recurring job."""
        if self._running:
            return
        self._running = True
        self._generation += 1
        self._wakeup = asyncio.Event()

        for job in self._jobs.values():
            if job.enabled:
                self._seed(job, delay=0.0)

        self._dispatcher = asyncio.create_task(self._dispatch_loop())
        logger.info(
            f"Scan scheduler started ({len(self._jobs)} jobs, "
            f"max {self.max_concurrent_scans} concurrent)"
        )

    async def stop(self, grace: Optional[float] = None) -> None:
        """
        Stop dispatching and cancel in-flight scans.

        Scans still running after `grace` seconds are abandoned; whatever
        they return later is discarded. Queued and in-flight manual requests
        fail with ScanError. Recurring jobs stay registered.
        """
        if not self._running:
            return
        logger.info("Stopping scan scheduler")
        self._running = False
        self._generation += 1

        if self._dispatcher:
            self._dispatcher.cancel()
            try:
                await self._dispatcher
            except asyncio.CancelledError:
                pass
            self._dispatcher = None

        # Fail queued manual requests
        for _, _, run in self._heap:
            if run.future and not run.future.done():
                run.future.set_exception(ScanError("Scheduler stopped before the scan ran"))
        self._heap.clear()
        self._pending_jobs.clear()

        tasks = [run.task for run in self._in_flight if run.task and not run.task.done()]
        for task in tasks:
            task.cancel()
        for run in self._in_flight:
            if run.future and not run.future.done():
                run.future.set_exception(ScanError(f"Scan of {run.job.target} was cancelled"))
        if tasks:
            _, still_running = await asyncio.wait(tasks, timeout=grace)
            if still_running:
                logger.warning(
                    f"Abandoning {len(still_running)} scan(s) still running after "
                    f"{grace}s grace period"
                )
        self._in_flight.clear()
        for job in self._jobs.values():
            job.is_running = False
            job.next_run = None

        logger.info("Scan scheduler stopped")

    # -------------------------------------------------------------------------
    # Job registration
    # -------------------------------------------------------------------------

    def schedule(
        self,
        target: str,
        interval: float,
        profile: Union[ScanProfile, str, None] = None,
        name: Optional[str] = None,
        timeout: Optional[float] = None,
        run_immediately: bool = False,
    ) -> str:
        """
        Register a recurring scan. Returns the job id.

        The first occurrence is due one interval from now, or immediately
        with run_immediately.
        """
        target = validate_target(target)
        profile = _coerce_profile(profile or self.default_profile)
        if interval is None or interval < self.min_scan_interval:
            raise ValidationError(
                f"Scan interval {interval}s is below the minimum of {self.min_scan_interval}s",
                details={"interval": interval, "min_interval": self.min_scan_interval},
            )
        if timeout is not None and timeout <= 0:
            raise ValidationError(f"Invalid scan timeout: {timeout}")

        job = ScanJob(
            id=str(uuid.uuid4()),
            target=target,
            profile=profile,
            interval=float(interval),
            name=name,
            timeout=timeout,
        )
        self._jobs[job.id] = job
        logger.info(f"Scheduled {profile.value} scan of {target} every {interval}s (job {job.id})")

        if self._running:
            self._seed(job, delay=0.0 if run_immediately else job.interval)
        return job.id

    def unschedule(self, job_id: str) -> None:
        """Remove a recurring job. A run already in flight finishes normally."""
        job = self._jobs.pop(job_id, None)
        if job is None:
            raise NotFoundError(f"Scan job not found: {job_id}")
        self._pending_jobs.discard(job_id)
        logger.info(f"Unscheduled job {job_id}")

    def enable(self, job_id: str) -> None:
        job = self.get_job(job_id)
        if job.enabled:
            return
        job.enabled = True
        if self._running:
            self._seed(job, delay=0.0)

    def disable(self, job_id: str) -> None:
        job = self.get_job(job_id)
        job.enabled = False
        job.next_run = None

    def get_job(self, job_id: str) -> ScanJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise NotFoundError(f"Scan job not found: {job_id}")
        return job

    def list_jobs(self) -> list[ScanJob]:
        return list(self._jobs.values())

    def get_executions(self, job_id: Optional[str] = None, limit: int = 10) -> list[ScanExecution]:
        """Most recent executions first."""
        executions = [
            e for e in reversed(self._executions)
            if job_id is None or e.job_id == job_id
        ]
        return executions[:limit]

    def get_metrics(self) -> SchedulerMetrics:
        next_runs = [
            j.next_run for j in self._jobs.values()
            if j.enabled and j.next_run is not None
        ]
        finished = self._completed_runs + self._failed_runs
        return SchedulerMetrics(
            total_jobs=len(self._jobs),
            active_jobs=sum(1 for j in self._jobs.values() if j.enabled),
            completed_runs=self._completed_runs,
            failed_runs=self._failed_runs,
            average_duration=self._total_duration / finished if finished else 0.0,
            next_scheduled_run=min(next_runs) if next_runs else None,
            last_completed_run=self._last_completed,
            running=self.running_count,
            queued=self.queued_count,
            peak_concurrency=self._peak_concurrency,
        )

    # -------------------------------------------------------------------------
    # Manual scans
    # -------------------------------------------------------------------------

    async def trigger_manual(
        self,
        target: str,
        profile: Union[ScanProfile, str, None] = None,
        timeout: Optional[float] = None,
        wait_for_handling: bool = False,
    ) -> NetworkSnapshot:
        """
        Run a one-shot scan as soon as a slot is free and return its snapshot.

        `timeout` bounds the whole wait, queueing and retries included.
        Raises ScanError when the scan fails after all retries or the
        timeout expires before the scan completes. With wait_for_handling,
        a timeout that expires while the consumer is still handling the
        snapshot returns the snapshot instead.
        """
        target = validate_target(target)
        profile = _coerce_profile(profile or self.default_profile)
        if not self._running:
            raise WrongStateError("Scan scheduler is not running")

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout is not None else None
        job = ScanJob(id=str(uuid.uuid4()), target=target, profile=profile)
        run = _Run(job, self._generation, future=loop.create_future())
        self._push(run, delay=0.0)
        logger.info(f"Manual {profile.value} scan of {target} queued (job {job.id})")

        def remaining() -> Optional[float]:
            return None if deadline is None else max(0.0, deadline - loop.time())

        try:
            event = await asyncio.wait_for(asyncio.shield(run.future), remaining())
        except asyncio.TimeoutError:
            self._cancel_run(run)
            raise ScanError(
                f"Manual scan of {target} did not complete within {timeout}s",
                details={"target": target, "job_id": job.id},
            )

        if wait_for_handling:
            try:
                await asyncio.wait_for(asyncio.shield(event.handled), remaining())
            except asyncio.TimeoutError:
                # The scan itself succeeded; storing and diffing carry on
                logger.warning(
                    f"Snapshot {event.snapshot.id} from manual scan of {target} "
                    f"still being handled after {timeout}s"
                )
        return event.snapshot

    def _cancel_run(self, run: _Run) -> None:
        run.cancelled = True
        if run.future and not run.future.done():
            run.future.cancel()
        if run.task and not run.task.done():
            run.task.cancel()

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    def _seed(self, job: ScanJob, delay: float) -> None:
        if job.id in self._pending_jobs:
            return
        self._pending_jobs.add(job.id)
        self._push(_Run(job, self._generation), delay)

    def _push(self, run: _Run, delay: float) -> None:
        due = self._now() + delay
        if run.attempt == 0 and not run.job.is_manual:
            run.job.next_run = now_utc() + timedelta(seconds=delay)
        heapq.heappush(self._heap, (due, next(self._seq), run))
        self._wakeup.set()

    def _runnable(self, run: _Run) -> bool:
        if run.cancelled or run.generation != self._generation:
            return False
        if run.job.is_manual:
            return True
        job = self._jobs.get(run.job.id)
        return job is not None and job.enabled

    async def _dispatch_loop(self) -> None:
        """Admit due runs while slots are free; sleep until the next due time or a wakeup."""
        while self._running:
            self._wakeup.clear()
            now = self._now()

            while self._heap and self._heap[0][0] <= now and not self._semaphore.locked():
                _, _, run = heapq.heappop(self._heap)
                if not self._runnable(run):
                    if not run.job.is_manual:
                        self._pending_jobs.discard(run.job.id)
                    continue
                await self._semaphore.acquire()
                self._launch(run)

            timeout = None
            if self._heap and not self._semaphore.locked():
                timeout = max(0.0, self._heap[0][0] - self._now())
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout)
            except asyncio.TimeoutError:
                pass

    def _launch(self, run: _Run) -> None:
        job = run.job
        if run.attempt == 0:
            run.started_mono = self._now()
            run.execution = ScanExecution(
                id=str(uuid.uuid4()),
                job_id=job.id,
                target=job.target,
                profile=job.profile,
                started_at=now_utc(),
            )
            self._executions.append(run.execution)
            job.last_run = run.execution.started_at
            job.next_run = None
        job.is_running = True

        self._in_flight.add(run)
        self._peak_concurrency = max(self._peak_concurrency, len(self._in_flight))
        run.task = asyncio.create_task(self._execute(run, self._semaphore))

    async def _execute(self, run: _Run, semaphore: asyncio.Semaphore) -> None:
        job = run.job
        execution = run.execution
        execution.attempts = run.attempt + 1
        timeout = job.timeout or self.default_timeout

        try:
            logger.debug(f"Scan attempt {run.attempt + 1} for job {job.id} ({job.target})")
            try:
                devices = await asyncio.wait_for(
                    self.scanner.scan(job.target, job.profile, timeout), timeout
                )
            except asyncio.TimeoutError:
                raise ScanError(f"Scan of {job.target} timed out after {timeout}s")

            if self._abandoned(run):
                logger.debug(f"Discarding result of abandoned scan for job {job.id}")
                return
            self._on_success(run, devices)

        except asyncio.CancelledError:
            self._abandoned(run, force=True)
            raise
        except Exception as e:
            # Any adapter failure counts as a failed attempt
            if self._abandoned(run):
                return
            self._on_failure(run, e)
        finally:
            job.is_running = False
            self._in_flight.discard(run)
            semaphore.release()
            self._wakeup.set()

    def _abandoned(self, run: _Run, force: bool = False) -> bool:
        """Mark the execution cancelled if the run was stopped or abandoned."""
        if not force and run.generation == self._generation and not run.cancelled:
            return False
        run.execution.status = "cancelled"
        run.execution.completed_at = now_utc()
        if run.future and not run.future.done():
            run.future.set_exception(ScanError(f"Scan of {run.job.target} was cancelled"))
        return True

    def _on_success(self, run: _Run, devices: list) -> None:
        job = run.job
        execution = run.execution
        duration = self._now() - run.started_mono

        snapshot = NetworkSnapshot.create(
            merge_devices(devices),
            metadata=ScanMetadata(
                scan_duration=duration,
                scan_type=job.profile,
                target=job.target,
                errors=tuple(run.errors),
                attempts=run.attempt + 1,
            ),
        )

        execution.status = "completed"
        execution.completed_at = now_utc()
        execution.duration = duration
        execution.device_count = snapshot.device_count
        execution.snapshot_id = snapshot.id

        job.run_count += 1
        self._completed_runs += 1
        self._total_duration += duration
        self._last_completed = execution.completed_at

        handled = asyncio.get_running_loop().create_future()
        handled.add_done_callback(_retrieve_exception)
        event = SnapshotProduced(
            job_id=job.id,
            snapshot=snapshot,
            manual=job.is_manual,
            handled=handled,
        )
        self.events.put_nowait(event)
        logger.info(
            f"Scan of {job.target} completed: {snapshot.device_count} devices "
            f"in {duration:.1f}s (attempt {run.attempt + 1})"
        )

        if run.future and not run.future.done():
            run.future.set_result(event)
        self._schedule_next(run)

    def _on_failure(self, run: _Run, error: Exception) -> None:
        job = run.job
        run.errors.append(str(error))

        if run.attempt < self.max_retries and self._running:
            delay = compute_backoff(run.attempt, self.retry_base_delay, self.retry_max_delay)
            logger.warning(
                f"Scan of {job.target} failed (attempt {run.attempt + 1}/"
                f"{self.max_retries + 1}): {error}; retrying in {delay:.1f}s"
            )
            run.attempt += 1
            self._push(run, delay)
            return

        execution = run.execution
        duration = self._now() - run.started_mono
        execution.status = "failed"
        execution.completed_at = now_utc()
        execution.duration = duration
        execution.error = str(error)

        job.failure_count += 1
        self._failed_runs += 1
        self._total_duration += duration

        logger.error(
            f"Scan of {job.target} failed after {run.attempt + 1} attempt(s): {error}"
        )
        self.events.put_nowait(ScanFailed(
            job_id=job.id,
            target=job.target,
            profile=job.profile,
            error=str(error),
            attempts=run.attempt + 1,
            manual=job.is_manual,
        ))

        if run.future and not run.future.done():
            run.future.set_exception(ScanError(
                f"Scan of {job.target} failed after {run.attempt + 1} attempt(s): {error}",
                details={"job_id": job.id, "errors": list(run.errors)},
            ))
        self._schedule_next(run)

    def _schedule_next(self, run: _Run) -> None:
        """Queue the next occurrence of a recurring job after a terminal outcome."""
        job = run.job
        if job.is_manual:
            return
        self._pending_jobs.discard(job.id)
        if not self._running or self._jobs.get(job.id) is not job or not job.enabled:
            return
        due = run.started_mono + job.interval
        self._seed(job, delay=max(0.0, due - self._now()))


