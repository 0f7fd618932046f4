"""
Network Monitor - continuous network inventory with change detection.

Periodically scans configured networks, records each result as an
immutable snapshot, and diffs every new snapshot against the previous one
to report devices that joined, left or changed.

Architecture:
    ScanScheduler      - runs scans with a concurrency ceiling and retries
    DiffEngine         - pure snapshot comparison
    SnapshotStore      - SQLite snapshot and diff history
    MonitoringOrchestrator - lifecycle, event handling, health, metrics
"""

__version__ = "0.1.0"

from ._types import (
    ChangeType,
    Device,
    DeviceDiff,
    DiffSummary,
    HealthStatus,
    IdentityPolicy,
    MonitoringMetrics,
    NetworkSnapshot,
    OSInfo,
    Port,
    PortState,
    ScanMetadata,
    ScanProfile,
    Service,
    ServiceState,
    SnapshotDiff,
)
from .config import MonitorConfig
from .context import MonitorContext, build_context
from .diff_engine import DiffEngine, change_severity, diff_snapshots, summarize_diff
from .exceptions import (
    CircuitOpenError,
    ConflictError,
    InfrastructureError,
    MonitorError,
    NotFoundError,
    ScanError,
    ServiceUnavailableError,
    ValidationError,
    WrongStateError,
)
from .orchestrator import MonitoringOrchestrator
from .scheduler import ScanFailed, ScanScheduler, SnapshotProduced
from .store import SnapshotStore

__all__ = [
    "__version__",
    "ChangeType",
    "Device",
    "DeviceDiff",
    "DiffSummary",
    "HealthStatus",
    "IdentityPolicy",
    "MonitoringMetrics",
    "NetworkSnapshot",
    "OSInfo",
    "Port",
    "PortState",
    "ScanMetadata",
    "ScanProfile",
    "Service",
    "ServiceState",
    "SnapshotDiff",
    "MonitorConfig",
    "MonitorContext",
    "build_context",
    "DiffEngine",
    "change_severity",
    "diff_snapshots",
    "summarize_diff",
    "CircuitOpenError",
    "ConflictError",
    "InfrastructureError",
    "MonitorError",
    "NotFoundError",
    "ScanError",
    "ServiceUnavailableError",
    "ValidationError",
    "WrongStateError",
    "MonitoringOrchestrator",
    "ScanFailed",
    "ScanScheduler",
    "SnapshotProduced",
    "SnapshotStore",
]
