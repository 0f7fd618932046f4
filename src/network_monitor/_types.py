"""
Type definitions for the network monitor.

These dataclasses define the core domain model: devices as reported by a
scan, immutable point-in-time snapshots, and the diffs computed between
them. Health and metrics types are owned by the orchestrator and are never
persisted.
"""

from __future__ import annotations

import hashlib
import ipaddress
import json
import uuid
from collections import Counter
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Optional

from .exceptions import ValidationError


def now_utc() -> datetime:
    """Get current UTC timestamp (replaces deprecated datetime.utcnow())."""
    return datetime.now(timezone.utc)


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


def _parse_dt(s: Optional[str]) -> Optional[datetime]:
    if not s:
        return None
    dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


class PortState(str, Enum):
    """State of a port as reported by the scanner."""
    OPEN = "open"
    CLOSED = "closed"
    FILTERED = "filtered"


class ScanProfile(str, Enum):
    """Named preset controlling scan depth and speed."""
    QUICK = "quick"
    DISCOVERY = "discovery"
    COMPREHENSIVE = "comprehensive"


class RiskLevel(str, Enum):
    """Coarse risk rating for a device."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ChangeType(str, Enum):
    """Kind of change recorded for a device between two snapshots."""
    DEVICE_JOINED = "device_joined"
    DEVICE_LEFT = "device_left"
    DEVICE_CHANGED = "device_changed"
    DEVICE_INACTIVE = "device_inactive"
    PORT_OPENED = "port_opened"
    PORT_CLOSED = "port_closed"
    SERVICE_CHANGED = "service_changed"
    OS_CHANGED = "os_changed"


class IdentityPolicy(str, Enum):
    """How devices are matched between two snapshots."""
    IP = "ip"                      # IP only; MAC change is a property change
    IP_AND_MAC = "ip_and_mac"      # same IP, different MAC -> left + joined
    MAC_TRACKING = "mac_tracking"  # moved device (same MAC, new IP) -> changed


class ServiceState(str, Enum):
    """Orchestrator lifecycle state."""
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


class HealthLevel(str, Enum):
    """Aggregate health rating."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


# =============================================================================
# Devices
# =============================================================================

@dataclass(frozen=True)
class Port:
    """A port observed on a device."""
    number: int
    protocol: str = "tcp"
    state: PortState = PortState.OPEN
    service: Optional[str] = None
    banner: Optional[str] = None

    @property
    def key(self) -> tuple[int, str]:
        return (self.number, self.protocol)

    def to_dict(self) -> dict:
        return {
            "number": self.number,
            "protocol": self.protocol,
            "state": self.state.value,
            "service": self.service,
            "banner": self.banner,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Port":
        return cls(
            number=int(data["number"]),
            protocol=data.get("protocol", "tcp"),
            state=PortState(data.get("state", "open")),
            service=data.get("service"),
            banner=data.get("banner"),
        )


@dataclass(frozen=True)
class Service:
    """A service fingerprinted on a port."""
    port: int
    name: str
    product: Optional[str] = None
    version: Optional[str] = None
    protocol: str = "tcp"
    confidence: Optional[int] = None  # 0-100

    def to_dict(self) -> dict:
        return {
            "port": self.port,
            "name": self.name,
            "product": self.product,
            "version": self.version,
            "protocol": self.protocol,
            "confidence": self.confidence,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Service":
        return cls(
            port=int(data["port"]),
            name=data.get("name", ""),
            product=data.get("product"),
            version=data.get("version"),
            protocol=data.get("protocol", "tcp"),
            confidence=data.get("confidence"),
        )


@dataclass(frozen=True)
class OSInfo:
    """Operating system fingerprint."""
    name: Optional[str] = None
    version: Optional[str] = None
    family: Optional[str] = None
    accuracy: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "version": self.version,
            "family": self.family,
            "accuracy": self.accuracy,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "OSInfo":
        return cls(
            name=data.get("name"),
            version=data.get("version"),
            family=data.get("family"),
            accuracy=data.get("accuracy"),
        )


@dataclass(frozen=True)
class Device:
    """
    A device as seen by one scan.

    The IP address is the identity key within a snapshot.
    """
    ip: str
    mac: Optional[str] = None
    hostname: Optional[str] = None
    vendor: Optional[str] = None
    os_info: Optional[OSInfo] = None
    ports: tuple[Port, ...] = ()
    services: tuple[Service, ...] = ()
    last_seen: datetime = field(default_factory=now_utc)
    is_active: bool = True
    risk_level: Optional[RiskLevel] = None

    def __post_init__(self):
        # Accept lists from callers but store tuples so snapshots stay immutable
        if not isinstance(self.ports, tuple):
            object.__setattr__(self, "ports", tuple(self.ports))
        if not isinstance(self.services, tuple):
            object.__setattr__(self, "services", tuple(self.services))

    @property
    def open_ports(self) -> list[Port]:
        return [p for p in self.ports if p.state == PortState.OPEN]

    def to_dict(self) -> dict:
        return {
            "ip": self.ip,
            "mac": self.mac,
            "hostname": self.hostname,
            "vendor": self.vendor,
            "os_info": self.os_info.to_dict() if self.os_info else None,
            "ports": [p.to_dict() for p in self.ports],
            "services": [s.to_dict() for s in self.services],
            "last_seen": _iso(self.last_seen),
            "is_active": self.is_active,
            "risk_level": self.risk_level.value if self.risk_level else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Device":
        os_info = data.get("os_info")
        risk = data.get("risk_level")
        return cls(
            ip=data["ip"],
            mac=data.get("mac"),
            hostname=data.get("hostname"),
            vendor=data.get("vendor"),
            os_info=OSInfo.from_dict(os_info) if os_info else None,
            ports=tuple(Port.from_dict(p) for p in data.get("ports", [])),
            services=tuple(Service.from_dict(s) for s in data.get("services", [])),
            last_seen=_parse_dt(data.get("last_seen")) or now_utc(),
            is_active=bool(data.get("is_active", True)),
            risk_level=RiskLevel(risk) if risk else None,
        )


# =============================================================================
# Snapshots
# =============================================================================

@dataclass(frozen=True)
class ScanMetadata:
    """How a snapshot was produced."""
    scan_duration: float = 0.0  # seconds
    scan_type: ScanProfile = ScanProfile.DISCOVERY
    target: Optional[str] = None
    errors: tuple[str, ...] = ()
    attempts: int = 1

    def to_dict(self) -> dict:
        return {
            "scan_duration": self.scan_duration,
            "scan_type": self.scan_type.value,
            "target": self.target,
            "errors": list(self.errors),
            "attempts": self.attempts,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ScanMetadata":
        return cls(
            scan_duration=float(data.get("scan_duration", 0.0)),
            scan_type=ScanProfile(data.get("scan_type", "discovery")),
            target=data.get("target"),
            errors=tuple(data.get("errors", [])),
            attempts=int(data.get("attempts", 1)),
        )


def ip_sort_key(ip: str) -> tuple:
    """Numeric IP ordering, IPv4 before IPv6, unparseable values last."""
    try:
        addr = ipaddress.ip_address(ip)
        return (addr.version, int(addr), "")
    except ValueError:
        return (99, 0, ip)


def compute_checksum(devices: Iterable[Device]) -> str:
    """Content hash of a device list, independent of input order."""
    ordered = sorted(devices, key=lambda d: ip_sort_key(d.ip))
    payload = json.dumps(
        [d.to_dict() for d in ordered],
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(payload.encode()).hexdigest()


@dataclass(frozen=True)
class NetworkSnapshot:
    """
    Immutable record of all discovered devices at one point in time.

    Use NetworkSnapshot.create() so the derived fields (device_count,
    total_ports, checksum) are computed from the device list exactly once.
    """
    id: str
    timestamp: datetime
    device_count: int
    total_ports: int
    checksum: str
    devices: tuple[Device, ...]
    metadata: ScanMetadata = field(default_factory=ScanMetadata)

    @classmethod
    def create(
        cls,
        devices: Iterable[Device],
        metadata: Optional[ScanMetadata] = None,
        timestamp: Optional[datetime] = None,
        snapshot_id: Optional[str] = None,
    ) -> "NetworkSnapshot":
        devices = tuple(devices)
        seen: set[str] = set()
        for device in devices:
            if device.ip in seen:
                raise ValidationError(f"Duplicate device IP in snapshot: {device.ip}")
            seen.add(device.ip)

        return cls(
            id=snapshot_id or str(uuid.uuid4()),
            timestamp=timestamp or now_utc(),
            device_count=len(devices),
            total_ports=sum(len(d.ports) for d in devices),
            checksum=compute_checksum(devices),
            devices=devices,
            metadata=metadata or ScanMetadata(),
        )

    def get_device(self, ip: str) -> Optional[Device]:
        for device in self.devices:
            if device.ip == ip:
                return device
        return None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "timestamp": _iso(self.timestamp),
            "device_count": self.device_count,
            "total_ports": self.total_ports,
            "checksum": self.checksum,
            "devices": [d.to_dict() for d in self.devices],
            "metadata": self.metadata.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "NetworkSnapshot":
        """Rebuild a stored snapshot; derived fields are recomputed."""
        devices = tuple(Device.from_dict(d) for d in data.get("devices", []))
        return cls(
            id=data["id"],
            timestamp=_parse_dt(data["timestamp"]) or now_utc(),
            device_count=len(devices),
            total_ports=sum(len(d.ports) for d in devices),
            checksum=data.get("checksum") or compute_checksum(devices),
            devices=devices,
            metadata=ScanMetadata.from_dict(data.get("metadata") or {}),
        )


# =============================================================================
# Diffs
# =============================================================================

@dataclass(frozen=True)
class PortDiff:
    """Port-level change on a device."""
    port: int
    protocol: str
    change_type: str  # added, removed, state_changed
    old_state: Optional[PortState] = None
    new_state: Optional[PortState] = None

    def to_dict(self) -> dict:
        return {
            "port": self.port,
            "protocol": self.protocol,
            "change_type": self.change_type,
            "old_state": self.old_state.value if self.old_state else None,
            "new_state": self.new_state.value if self.new_state else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PortDiff":
        old_state = data.get("old_state")
        new_state = data.get("new_state")
        return cls(
            port=int(data["port"]),
            protocol=data.get("protocol", "tcp"),
            change_type=data["change_type"],
            old_state=PortState(old_state) if old_state else None,
            new_state=PortState(new_state) if new_state else None,
        )


@dataclass(frozen=True)
class ServiceDiff:
    """Service-level change on a device."""
    port: int
    change_type: str  # added, removed, changed
    old_service: Optional[Service] = None
    new_service: Optional[Service] = None

    def to_dict(self) -> dict:
        return {
            "port": self.port,
            "change_type": self.change_type,
            "old_service": self.old_service.to_dict() if self.old_service else None,
            "new_service": self.new_service.to_dict() if self.new_service else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ServiceDiff":
        old = data.get("old_service")
        new = data.get("new_service")
        return cls(
            port=int(data["port"]),
            change_type=data["change_type"],
            old_service=Service.from_dict(old) if old else None,
            new_service=Service.from_dict(new) if new else None,
        )


@dataclass(frozen=True)
class PropertyChange:
    """Scalar property change on a device."""
    property: str
    old_value: Any = None
    new_value: Any = None

    def to_dict(self) -> dict:
        return {
            "property": self.property,
            "old_value": self.old_value,
            "new_value": self.new_value,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PropertyChange":
        return cls(
            property=data["property"],
            old_value=data.get("old_value"),
            new_value=data.get("new_value"),
        )


@dataclass(frozen=True)
class DeviceDiff:
    """All changes recorded for one device."""
    device_ip: str
    change_type: ChangeType
    device_added: Optional[Device] = None
    device_removed: Optional[Device] = None
    port_changes: tuple[PortDiff, ...] = ()
    service_changes: tuple[ServiceDiff, ...] = ()
    property_changes: tuple[PropertyChange, ...] = ()

    def to_dict(self) -> dict:
        return {
            "device_ip": self.device_ip,
            "change_type": self.change_type.value,
            "device_added": self.device_added.to_dict() if self.device_added else None,
            "device_removed": self.device_removed.to_dict() if self.device_removed else None,
            "port_changes": [p.to_dict() for p in self.port_changes],
            "service_changes": [s.to_dict() for s in self.service_changes],
            "property_changes": [c.to_dict() for c in self.property_changes],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DeviceDiff":
        added = data.get("device_added")
        removed = data.get("device_removed")
        return cls(
            device_ip=data["device_ip"],
            change_type=ChangeType(data["change_type"]),
            device_added=Device.from_dict(added) if added else None,
            device_removed=Device.from_dict(removed) if removed else None,
            port_changes=tuple(PortDiff.from_dict(p) for p in data.get("port_changes", [])),
            service_changes=tuple(
                ServiceDiff.from_dict(s) for s in data.get("service_changes", [])
            ),
            property_changes=tuple(
                PropertyChange.from_dict(c) for c in data.get("property_changes", [])
            ),
        )


@dataclass(frozen=True)
class DiffSummary:
    """Change counters; total_changes is always derived from the others."""
    devices_added: int = 0
    devices_removed: int = 0
    devices_changed: int = 0
    ports_changed: int = 0
    services_changed: int = 0

    @property
    def total_changes(self) -> int:
        return (
            self.devices_added
            + self.devices_removed
            + self.devices_changed
            + self.ports_changed
            + self.services_changed
        )

    def to_dict(self) -> dict:
        return {
            "devices_added": self.devices_added,
            "devices_removed": self.devices_removed,
            "devices_changed": self.devices_changed,
            "ports_changed": self.ports_changed,
            "services_changed": self.services_changed,
            "total_changes": self.total_changes,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DiffSummary":
        # total_changes from the payload is ignored on purpose
        return cls(
            devices_added=int(data.get("devices_added", 0)),
            devices_removed=int(data.get("devices_removed", 0)),
            devices_changed=int(data.get("devices_changed", 0)),
            ports_changed=int(data.get("ports_changed", 0)),
            services_changed=int(data.get("services_changed", 0)),
        )


@dataclass(frozen=True)
class SnapshotDiff:
    """Computed delta between two snapshots."""
    from_snapshot: str
    to_snapshot: str
    timestamp: datetime
    summary: DiffSummary = field(default_factory=DiffSummary)
    device_changes: tuple[DeviceDiff, ...] = ()
    id: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not self.device_changes

    def with_id(self, diff_id: str) -> "SnapshotDiff":
        return replace(self, id=diff_id)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "from_snapshot": self.from_snapshot,
            "to_snapshot": self.to_snapshot,
            "timestamp": _iso(self.timestamp),
            "summary": self.summary.to_dict(),
            "device_changes": [d.to_dict() for d in self.device_changes],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SnapshotDiff":
        return cls(
            id=data.get("id"),
            from_snapshot=data["from_snapshot"],
            to_snapshot=data["to_snapshot"],
            timestamp=_parse_dt(data["timestamp"]) or now_utc(),
            summary=DiffSummary.from_dict(data.get("summary") or {}),
            device_changes=tuple(
                DeviceDiff.from_dict(d) for d in data.get("device_changes", [])
            ),
        )


# =============================================================================
# Queries
# =============================================================================

@dataclass
class SnapshotFilter:
    """Filter for listing snapshots."""
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    scan_type: Optional[ScanProfile] = None
    min_devices: Optional[int] = None


@dataclass
class Pagination:
    """Offset pagination."""
    limit: int = 50
    offset: int = 0

    def __post_init__(self):
        if self.limit < 1 or self.limit > 1000:
            raise ValidationError(f"limit must be between 1 and 1000, got {self.limit}")
        if self.offset < 0:
            raise ValidationError(f"offset must be >= 0, got {self.offset}")


@dataclass
class Page:
    """One page of results."""
    items: list
    total: int
    limit: int
    offset: int

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.items) < self.total


# =============================================================================
# Health and metrics
# =============================================================================

@dataclass
class ComponentHealth:
    """Health of one orchestrator component."""
    name: str
    healthy: bool
    status: str
    message: str = ""
    last_check: datetime = field(default_factory=now_utc)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "healthy": self.healthy,
            "status": self.status,
            "message": self.message,
            "last_check": _iso(self.last_check),
        }


@dataclass
class HealthStatus:
    """Aggregate health of the orchestrator."""
    status: HealthLevel
    state: ServiceState
    timestamp: datetime = field(default_factory=now_utc)
    components: list[ComponentHealth] = field(default_factory=list)

    @classmethod
    def from_components(
        cls,
        state: ServiceState,
        components: list[ComponentHealth],
    ) -> "HealthStatus":
        if components and all(c.healthy for c in components):
            level = HealthLevel.HEALTHY
        elif any(c.healthy for c in components):
            level = HealthLevel.DEGRADED
        else:
            level = HealthLevel.UNHEALTHY
        return cls(status=level, state=state, components=components)

    def get_component(self, name: str) -> Optional[ComponentHealth]:
        for component in self.components:
            if component.name == name:
                return component
        return None

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "state": self.state.value,
            "timestamp": _iso(self.timestamp),
            "components": [c.to_dict() for c in self.components],
        }


@dataclass
class MonitoringMetrics:
    """Running counters maintained by the orchestrator."""
    uptime_seconds: float = 0.0
    scans_completed: int = 0
    scan_failures: int = 0
    devices_discovered: int = 0
    changes_detected: int = 0
    significant_changes: int = 0
    snapshots_stored: int = 0
    diffs_stored: int = 0
    errors_encountered: int = 0
    average_scan_duration: float = 0.0
    last_scan_time: Optional[datetime] = None
    total_snapshots: int = 0
    active_schedules: int = 0
    running_scans: int = 0
    queued_scans: int = 0
    last_update: datetime = field(default_factory=now_utc)

    def to_dict(self) -> dict:
        return {
            "uptime_seconds": self.uptime_seconds,
            "scans_completed": self.scans_completed,
            "scan_failures": self.scan_failures,
            "devices_discovered": self.devices_discovered,
            "changes_detected": self.changes_detected,
            "significant_changes": self.significant_changes,
            "snapshots_stored": self.snapshots_stored,
            "diffs_stored": self.diffs_stored,
            "errors_encountered": self.errors_encountered,
            "average_scan_duration": self.average_scan_duration,
            "last_scan_time": _iso(self.last_scan_time),
            "total_snapshots": self.total_snapshots,
            "active_schedules": self.active_schedules,
            "running_scans": self.running_scans,
            "queued_scans": self.queued_scans,
            "last_update": _iso(self.last_update),
        }


# Services listed in a network overview
TOP_SERVICES_LIMIT = 5


@dataclass
class NetworkOverview:
    """What the network looks like as of the latest snapshot."""
    total_devices: int = 0
    active_devices: int = 0
    recent_changes: int = 0
    last_scan_time: Optional[datetime] = None
    top_services: list[tuple[str, int]] = field(default_factory=list)
    risk_summary: dict[RiskLevel, int] = field(
        default_factory=lambda: {level: 0 for level in RiskLevel}
    )

    @classmethod
    def from_snapshot(
        cls,
        snapshot: Optional["NetworkSnapshot"],
        recent_changes: int = 0,
    ) -> "NetworkOverview":
        if snapshot is None:
            return cls(recent_changes=recent_changes)

        service_counts = Counter(s.name for d in snapshot.devices for s in d.services)
        risk_summary = {level: 0 for level in RiskLevel}
        for device in snapshot.devices:
            if device.risk_level is not None:
                risk_summary[device.risk_level] += 1

        return cls(
            total_devices=snapshot.device_count,
            active_devices=sum(1 for d in snapshot.devices if d.is_active),
            recent_changes=recent_changes,
            last_scan_time=snapshot.timestamp,
            top_services=service_counts.most_common(TOP_SERVICES_LIMIT),
            risk_summary=risk_summary,
        )

    def to_dict(self) -> dict:
        return {
            "total_devices": self.total_devices,
            "active_devices": self.active_devices,
            "recent_changes": self.recent_changes,
            "last_scan_time": _iso(self.last_scan_time),
            "top_services": [{"name": n, "count": c} for n, c in self.top_services],
            "risk_summary": {level.value: n for level, n in self.risk_summary.items()},
        }


# Ports whose appearance on the network is treated as high risk
SECURITY_SENSITIVE_PORTS = frozenset({
    21,    # FTP
    22,    # SSH
    23,    # Telnet
    80,    # HTTP
    443,   # HTTPS
    3306,  # MySQL
    3389,  # RDP
    5432,  # PostgreSQL
})
