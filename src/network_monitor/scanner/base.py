"""
Base class for scanner adapters.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Iterable, Optional

from .._types import Device, Port, RiskLevel, ScanProfile, Service

HIGH_RISK_SERVICES = {"telnet", "ftp", "rsh", "rlogin", "snmp"}
LEGACY_OS_MARKERS = ("windows xp", "windows 2000", "windows 2003", "windows 7", "windows vista")


class ScannerAdapter(ABC):
    """
    Wraps an external scanning tool.

    Implementations return a normalized device list and raise ScanError
    when the tool fails or times out.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Name of this scanner."""
        pass

    @abstractmethod
    async def scan(
        self,
        target: str,
        profile: ScanProfile,
        timeout: Optional[float] = None,
    ) -> list[Device]:
        """Scan `target` with the given profile."""
        pass

    async def is_available(self) -> bool:
        """Check if the underlying tool can be invoked."""
        return True

    def close(self) -> None:
        """Release resources held by the adapter."""
        pass


def assess_risk(device: Device) -> RiskLevel:
    """Score a device from its open ports, services and OS."""
    score = 0

    # Many open ports increase risk
    score += min(len(device.open_ports) * 2, 20)

    if any(s.name.lower() in HIGH_RISK_SERVICES for s in device.services):
        score += 30

    if device.os_info and device.os_info.name:
        os_name = device.os_info.name.lower()
        if any(marker in os_name for marker in LEGACY_OS_MARKERS):
            score += 25

    if score >= 50:
        return RiskLevel.HIGH
    if score >= 25:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def _merge_pair(existing: Device, device: Device) -> Device:
    """Merge two records for the same IP, preferring non-None values."""
    ports: dict[tuple[int, str], Port] = {p.key: p for p in existing.ports}
    for port in device.ports:
        ports.setdefault(port.key, port)

    services: dict[int, Service] = {s.port: s for s in existing.services}
    for service in device.services:
        current = services.get(service.port)
        # Prefer the fingerprint that carries a version
        if current is None or (not current.version and service.version):
            services[service.port] = service

    return replace(
        existing,
        mac=existing.mac or device.mac,
        hostname=existing.hostname or device.hostname,
        vendor=existing.vendor or device.vendor,
        os_info=existing.os_info or device.os_info,
        ports=tuple(sorted(ports.values(), key=lambda p: p.key)),
        services=tuple(sorted(services.values(), key=lambda s: s.port)),
        last_seen=max(existing.last_seen, device.last_seen),
        is_active=existing.is_active or device.is_active,
        risk_level=existing.risk_level or device.risk_level,
    )


def merge_devices(devices: Iterable[Device]) -> list[Device]:
    """Deduplicate devices by IP, preferring richer data. Order of first appearance is kept."""
    by_ip: dict[str, Device] = {}
    for device in devices:
        if device.ip in by_ip:
            by_ip[device.ip] = _merge_pair(by_ip[device.ip], device)
        else:
            by_ip[device.ip] = device
    return list(by_ip.values())
