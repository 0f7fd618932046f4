"""Shared fixtures for network monitor tests."""

import asyncio
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Optional

import pytest

from network_monitor._types import Device, Port, PortState, ScanProfile, Service
from network_monitor.exceptions import ScanError
from network_monitor.scanner.base import ScannerAdapter

BASE_TIME = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def make_device(ip: str, ports=(), services=(), **kwargs) -> Device:
    """Build a device; ports are (number, protocol) pairs or Port objects."""
    port_objs = tuple(
        p if isinstance(p, Port) else Port(number=p[0], protocol=p[1], state=PortState.OPEN)
        for p in ports
    )
    kwargs.setdefault("last_seen", BASE_TIME)
    return Device(ip=ip, ports=port_objs, services=tuple(services), **kwargs)


def ts(minutes: int = 0) -> datetime:
    return BASE_TIME + timedelta(minutes=minutes)


async def wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


class FakeScanner(ScannerAdapter):
    """
    In-memory scanner adapter.

    Returns `devices` for every target (or whatever `handler` returns), fails
    the first `fail_times` calls, and records how many scans overlap.
    """

    def __init__(
        self,
        devices: Optional[list[Device]] = None,
        delay: float = 0.0,
        fail_times: int = 0,
        handler: Optional[Callable[[str, int], list[Device]]] = None,
    ):
        self.devices = devices or []
        self.delay = delay
        self.fail_times = fail_times
        self.handler = handler
        self.available = True
        self.calls: list[tuple[str, ScanProfile]] = []
        self.active = 0
        self.max_active = 0
        self.closed = False

    @property
    def name(self) -> str:
        return "fake"

    async def scan(self, target, profile, timeout=None):
        self.calls.append((target, profile))
        call_number = len(self.calls)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if call_number <= self.fail_times:
                raise ScanError(f"simulated failure {call_number}")
            if self.handler:
                return self.handler(target, call_number)
            return list(self.devices)
        finally:
            self.active -= 1

    async def is_available(self) -> bool:
        return self.available

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def db_path():
    """Temporary database path, cleaned up with its WAL files."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        path = Path(f.name)

    yield path

    # Cleanup
    path.unlink(missing_ok=True)
    path.with_suffix(".db-wal").unlink(missing_ok=True)
    path.with_suffix(".db-shm").unlink(missing_ok=True)


@pytest.fixture
def scanner():
    return FakeScanner(devices=[
        make_device("192.168.1.10", ports=[(22, "tcp")], services=[Service(port=22, name="ssh")]),
        make_device("192.168.1.20"),
    ])
