"""Tests for the scan scheduler."""

import asyncio

import pytest

from network_monitor._types import ScanProfile
from network_monitor.exceptions import (
    NotFoundError,
    ScanError,
    ValidationError,
    WrongStateError,
)
from network_monitor.scheduler import ScanFailed, ScanScheduler, SnapshotProduced

from conftest import FakeScanner, make_device, wait_until

TARGET = "192.168.1.0/24"


def make_scheduler(scanner, **kwargs) -> ScanScheduler:
    kwargs.setdefault("max_retries", 2)
    kwargs.setdefault("retry_base_delay", 0.01)
    kwargs.setdefault("retry_max_delay", 0.05)
    kwargs.setdefault("min_scan_interval", 0.01)
    return ScanScheduler(scanner, **kwargs)


async def next_event(scheduler, timeout=2.0):
    return await asyncio.wait_for(scheduler.events.get(), timeout)


class StubbornScanner(FakeScanner):
    """Keeps scanning through the first cancellation, like a blocking tool call."""

    async def scan(self, target, profile, timeout=None):
        self.calls.append((target, profile))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            try:
                await asyncio.sleep(self.delay)
            except asyncio.CancelledError:
                await asyncio.sleep(self.delay)
            return list(self.devices)
        finally:
            self.active -= 1


class TestConcurrencyCeiling:
    """Tests for the concurrent scan limit."""

    @pytest.mark.asyncio
    async def test_never_exceeds_ceiling(self):
        scanner = FakeScanner(devices=[make_device("10.0.0.1")], delay=0.05)
        scheduler = make_scheduler(scanner, max_concurrent_scans=2)
        await scheduler.start()
        try:
            snapshots = await asyncio.gather(*[
                scheduler.trigger_manual(f"10.0.0.{i}") for i in range(1, 6)
            ])
        finally:
            await scheduler.stop()

        assert len(snapshots) == 5
        assert len(scanner.calls) == 5
        assert scanner.max_active == 2
        assert scheduler.get_metrics().peak_concurrency == 2

    @pytest.mark.asyncio
    async def test_single_slot_serializes_scans(self):
        scanner = FakeScanner(delay=0.02)
        scheduler = make_scheduler(scanner, max_concurrent_scans=1)
        await scheduler.start()
        try:
            await asyncio.gather(*[
                scheduler.trigger_manual(f"10.0.0.{i}") for i in range(1, 4)
            ])
        finally:
            await scheduler.stop()

        assert scanner.max_active == 1

    @pytest.mark.asyncio
    async def test_abandoned_scan_keeps_slot_across_restart(self):
        scanner = StubbornScanner(devices=[make_device("10.0.0.1")], delay=0.2)
        scheduler = make_scheduler(scanner, max_concurrent_scans=1)
        await scheduler.start()
        first = asyncio.create_task(scheduler.trigger_manual("10.0.0.1"))
        await wait_until(lambda: scanner.active == 1)

        await scheduler.stop(grace=0.05)
        await scheduler.start()
        try:
            snapshot = await scheduler.trigger_manual("10.0.0.2", timeout=2.0)
        finally:
            await scheduler.stop()

        with pytest.raises(ScanError):
            await asyncio.wait_for(first, 1.0)
        assert snapshot.metadata.target == "10.0.0.2"
        assert len(scanner.calls) == 2
        assert scanner.max_active == 1

    def test_zero_ceiling_rejected(self):
        with pytest.raises(ValidationError):
            ScanScheduler(FakeScanner(), max_concurrent_scans=0)


class TestManualScans:
    """Tests for trigger_manual."""

    @pytest.mark.asyncio
    async def test_returns_snapshot_and_publishes_event(self, scanner):
        scheduler = make_scheduler(scanner)
        await scheduler.start()
        try:
            snapshot = await scheduler.trigger_manual(TARGET, profile="quick")
        finally:
            await scheduler.stop()

        assert snapshot.device_count == 2
        assert snapshot.metadata.scan_type == ScanProfile.QUICK
        assert snapshot.metadata.target == TARGET
        assert snapshot.metadata.attempts == 1
        assert scanner.calls == [(TARGET, ScanProfile.QUICK)]

        event = scheduler.events.get_nowait()
        assert isinstance(event, SnapshotProduced)
        assert event.manual
        assert event.snapshot is snapshot

    @pytest.mark.asyncio
    async def test_requires_running_scheduler(self, scanner):
        scheduler = make_scheduler(scanner)

        with pytest.raises(WrongStateError):
            await scheduler.trigger_manual(TARGET)

    @pytest.mark.asyncio
    async def test_invalid_target(self, scanner):
        scheduler = make_scheduler(scanner)
        await scheduler.start()
        try:
            with pytest.raises(ValidationError):
                await scheduler.trigger_manual("not-an-ip")
            with pytest.raises(ValidationError):
                await scheduler.trigger_manual(TARGET, profile="stealth")
        finally:
            await scheduler.stop()

        assert scanner.calls == []

    @pytest.mark.asyncio
    async def test_timeout_raises_scan_error(self):
        scanner = FakeScanner(delay=1.0)
        scheduler = make_scheduler(scanner)
        await scheduler.start()
        try:
            with pytest.raises(ScanError):
                await scheduler.trigger_manual(TARGET, timeout=0.05)
        finally:
            await scheduler.stop()

    @pytest.mark.asyncio
    async def test_slow_handling_returns_snapshot(self, scanner):
        scheduler = make_scheduler(scanner)
        await scheduler.start()
        try:
            snapshot = await scheduler.trigger_manual(
                TARGET, timeout=0.1, wait_for_handling=True
            )
            event = await next_event(scheduler)
        finally:
            await scheduler.stop()

        # Nobody acknowledged the event, yet the scan itself succeeded
        assert event.snapshot is snapshot
        assert not event.handled.done()
        assert scheduler.get_executions()[0].status == "completed"

    @pytest.mark.asyncio
    async def test_handling_failure_reaches_caller(self, scanner):
        scheduler = make_scheduler(scanner)
        await scheduler.start()
        try:
            call = asyncio.create_task(
                scheduler.trigger_manual(TARGET, timeout=2.0, wait_for_handling=True)
            )
            event = await next_event(scheduler)
            event.fail(ScanError("could not store snapshot"))

            with pytest.raises(ScanError, match="could not store snapshot"):
                await call
        finally:
            await scheduler.stop()

    @pytest.mark.asyncio
    async def test_duplicate_devices_merged(self):
        scanner = FakeScanner(devices=[
            make_device("10.0.0.1", ports=[(22, "tcp")]),
            make_device("10.0.0.1", ports=[(80, "tcp")], hostname="web"),
        ])
        scheduler = make_scheduler(scanner)
        await scheduler.start()
        try:
            snapshot = await scheduler.trigger_manual(TARGET)
        finally:
            await scheduler.stop()

        assert snapshot.device_count == 1
        device = snapshot.get_device("10.0.0.1")
        assert device.hostname == "web"
        assert {p.number for p in device.ports} == {22, 80}


class TestRetries:
    """Tests for retry behavior."""

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failure(self, scanner):
        scanner.fail_times = 1
        scheduler = make_scheduler(scanner)
        await scheduler.start()
        try:
            snapshot = await scheduler.trigger_manual(TARGET)
        finally:
            await scheduler.stop()

        assert len(scanner.calls) == 2
        assert snapshot.metadata.attempts == 2
        assert len(snapshot.metadata.errors) == 1

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self):
        scanner = FakeScanner(fail_times=100)
        scheduler = make_scheduler(scanner, max_retries=2)
        await scheduler.start()
        try:
            with pytest.raises(ScanError):
                await scheduler.trigger_manual(TARGET)
        finally:
            await scheduler.stop()

        # One initial attempt plus two retries
        assert len(scanner.calls) == 3
        event = scheduler.events.get_nowait()
        assert isinstance(event, ScanFailed)
        assert event.attempts == 3
        assert event.manual

        execution = scheduler.get_executions()[0]
        assert execution.status == "failed"
        assert execution.attempts == 3
        assert scheduler.get_metrics().failed_runs == 1

    @pytest.mark.asyncio
    async def test_no_retries_when_disabled(self):
        scanner = FakeScanner(fail_times=100)
        scheduler = make_scheduler(scanner, max_retries=0)
        await scheduler.start()
        try:
            with pytest.raises(ScanError):
                await scheduler.trigger_manual(TARGET)
        finally:
            await scheduler.stop()

        assert len(scanner.calls) == 1


class TestRecurringJobs:
    """Tests for recurring schedules."""

    def test_interval_below_minimum_rejected(self, scanner):
        scheduler = ScanScheduler(scanner, min_scan_interval=60)

        with pytest.raises(ValidationError):
            scheduler.schedule(TARGET, interval=30)

    def test_invalid_target_rejected(self, scanner):
        scheduler = ScanScheduler(scanner)

        with pytest.raises(ValidationError):
            scheduler.schedule("300.1.1.1", interval=3600)

    @pytest.mark.asyncio
    async def test_registered_jobs_run_on_start(self, scanner):
        scheduler = make_scheduler(scanner)
        job_id = scheduler.schedule(TARGET, interval=3600, name="lan")

        await scheduler.start()
        try:
            event = await next_event(scheduler)
        finally:
            await scheduler.stop()

        assert isinstance(event, SnapshotProduced)
        assert event.job_id == job_id
        assert not event.manual
        assert scheduler.get_job(job_id).run_count == 1

    @pytest.mark.asyncio
    async def test_first_run_waits_one_interval(self, scanner):
        scheduler = make_scheduler(scanner)
        await scheduler.start()
        try:
            job_id = scheduler.schedule(TARGET, interval=3600)
            await asyncio.sleep(0.05)
            job = scheduler.get_job(job_id)
        finally:
            await scheduler.stop()

        assert scanner.calls == []
        assert job.run_count == 0

    @pytest.mark.asyncio
    async def test_continues_after_failure(self, scanner):
        scanner.fail_times = 1
        scheduler = make_scheduler(scanner, max_retries=0)
        await scheduler.start()
        try:
            job_id = scheduler.schedule(TARGET, interval=0.05, run_immediately=True)
            first = await next_event(scheduler)
            second = await next_event(scheduler)
        finally:
            await scheduler.stop()

        assert isinstance(first, ScanFailed)
        assert isinstance(second, SnapshotProduced)
        assert first.job_id == second.job_id == job_id
        job = scheduler.get_job(job_id)
        assert job.failure_count == 1
        assert job.run_count >= 1

    @pytest.mark.asyncio
    async def test_disabled_job_does_not_run(self, scanner):
        scheduler = make_scheduler(scanner)
        job_id = scheduler.schedule(TARGET, interval=3600)
        scheduler.disable(job_id)

        await scheduler.start()
        try:
            await asyncio.sleep(0.05)
        finally:
            await scheduler.stop()

        assert scanner.calls == []
        assert not scheduler.get_job(job_id).enabled

    @pytest.mark.asyncio
    async def test_enable_runs_job(self, scanner):
        scheduler = make_scheduler(scanner)
        job_id = scheduler.schedule(TARGET, interval=3600)
        scheduler.disable(job_id)
        await scheduler.start()
        try:
            scheduler.enable(job_id)
            event = await next_event(scheduler)
        finally:
            await scheduler.stop()

        assert event.job_id == job_id

    def test_unschedule(self, scanner):
        scheduler = ScanScheduler(scanner)
        job_id = scheduler.schedule(TARGET, interval=3600)

        scheduler.unschedule(job_id)

        assert scheduler.list_jobs() == []
        with pytest.raises(NotFoundError):
            scheduler.get_job(job_id)
        with pytest.raises(NotFoundError):
            scheduler.unschedule(job_id)

    def test_job_to_dict(self, scanner):
        scheduler = ScanScheduler(scanner)
        job_id = scheduler.schedule(TARGET, interval=3600, profile="comprehensive")

        data = scheduler.get_job(job_id).to_dict()

        assert data["target"] == TARGET
        assert data["profile"] == "comprehensive"
        assert data["interval"] == 3600.0


class TestShutdown:
    """Tests for stop()."""

    @pytest.mark.asyncio
    async def test_stop_fails_pending_manual_scans(self):
        scanner = FakeScanner(delay=0.5)
        scheduler = make_scheduler(scanner, max_concurrent_scans=1)
        await scheduler.start()
        running = asyncio.create_task(scheduler.trigger_manual("10.0.0.1"))
        queued = asyncio.create_task(scheduler.trigger_manual("10.0.0.2"))
        await asyncio.sleep(0.05)

        await scheduler.stop(grace=1.0)

        with pytest.raises(ScanError):
            await running
        with pytest.raises(ScanError):
            await queued
        assert scanner.calls == [("10.0.0.1", ScanProfile.DISCOVERY)]
        assert not scheduler.is_running
        assert scheduler.running_count == 0
        assert scheduler.queued_count == 0

    @pytest.mark.asyncio
    async def test_late_result_of_abandoned_scan_is_discarded(self):
        scanner = StubbornScanner(devices=[make_device("10.0.0.1")], delay=0.1)
        scheduler = make_scheduler(scanner)
        scheduler.schedule(TARGET, 3600)
        await scheduler.start()
        await wait_until(lambda: scanner.active == 1)

        await scheduler.stop(grace=0.01)
        assert scanner.active == 1

        await wait_until(lambda: scanner.active == 0)
        await asyncio.sleep(0.05)

        assert scheduler.events.empty()
        assert scheduler.get_metrics().completed_runs == 0
        execution = scheduler.get_executions()[0]
        assert execution.status == "cancelled"
        assert execution.snapshot_id is None

    @pytest.mark.asyncio
    async def test_stop_fails_manual_scan_that_ignores_cancellation(self):
        scanner = StubbornScanner(delay=0.1)
        scheduler = make_scheduler(scanner)
        await scheduler.start()
        call = asyncio.create_task(scheduler.trigger_manual(TARGET))
        await wait_until(lambda: scanner.active == 1)

        await scheduler.stop(grace=0.01)

        with pytest.raises(ScanError):
            await asyncio.wait_for(call, 1.0)

    @pytest.mark.asyncio
    async def test_restart_after_stop(self, scanner):
        scheduler = make_scheduler(scanner)
        await scheduler.start()
        await scheduler.stop()
        await scheduler.start()
        try:
            snapshot = await scheduler.trigger_manual(TARGET)
        finally:
            await scheduler.stop()

        assert snapshot.device_count == 2

    @pytest.mark.asyncio
    async def test_stop_when_not_running_is_noop(self, scanner):
        scheduler = make_scheduler(scanner)

        await scheduler.stop()

        assert not scheduler.is_running


class TestExecutions:
    """Tests for execution history and metrics."""

    @pytest.mark.asyncio
    async def test_history_newest_first(self, scanner):
        scheduler = make_scheduler(scanner)
        await scheduler.start()
        try:
            first = await scheduler.trigger_manual("10.0.0.1")
            second = await scheduler.trigger_manual("10.0.0.2")
        finally:
            await scheduler.stop()

        executions = scheduler.get_executions()
        assert [e.snapshot_id for e in executions] == [second.id, first.id]
        assert all(e.status == "completed" for e in executions)
        assert scheduler.get_executions(limit=1)[0].target == "10.0.0.2"

        metrics = scheduler.get_metrics()
        assert metrics.completed_runs == 2
        assert metrics.failed_runs == 0
        assert metrics.to_dict()["completed_runs"] == 2
