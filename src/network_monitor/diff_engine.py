"""
Snapshot diff engine.

Compares two snapshots and reports which devices joined, left or changed,
down to individual ports, services and scalar properties. Diffing is pure:
the same pair of snapshots always produces an identical SnapshotDiff, and
the engine never touches storage.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from ._types import (
    SECURITY_SENSITIVE_PORTS,
    ChangeType,
    Device,
    DeviceDiff,
    DiffSummary,
    IdentityPolicy,
    NetworkSnapshot,
    PortDiff,
    PortState,
    PropertyChange,
    Service,
    ServiceDiff,
    SnapshotDiff,
    ip_sort_key,
)
from .validation import is_valid_mac

logger = logging.getLogger(__name__)

# OS accuracy must move by at least this much to be reported
OS_ACCURACY_THRESHOLD = 10

_CHANGE_TYPE_ORDER = {ct: i for i, ct in enumerate(ChangeType)}


def _plain(value: Any) -> Any:
    """Enum members are reported by value so diffs serialize cleanly."""
    return getattr(value, "value", value)


def _os_field(device: Device, name: str) -> Any:
    return getattr(device.os_info, name) if device.os_info else None


def _service_differs(old: Service, new: Service) -> bool:
    return (old.name, old.product, old.version) != (new.name, new.product, new.version)


def _mac_key(mac: Optional[str]) -> Optional[str]:
    """Canonical form of a MAC for comparison; invalid values compare as given."""
    if mac and is_valid_mac(mac):
        return mac.lower().replace("-", ":")
    return mac


class DiffEngine:
    """
    Computes SnapshotDiff values.

    The identity policy decides how devices are matched across snapshots
    when MAC addresses disagree; see IdentityPolicy.
    """

    def __init__(self, identity_policy: IdentityPolicy = IdentityPolicy.IP):
        self.identity_policy = identity_policy

    def diff(self, from_snapshot: NetworkSnapshot, to_snapshot: NetworkSnapshot) -> SnapshotDiff:
        old_map = {d.ip: d for d in from_snapshot.devices}
        new_map = {d.ip: d for d in to_snapshot.devices}

        joined = [new_map[ip] for ip in new_map if ip not in old_map]
        left = [old_map[ip] for ip in old_map if ip not in new_map]
        changes: list[DeviceDiff] = []

        for ip in new_map:
            if ip not in old_map:
                continue
            old, new = old_map[ip], new_map[ip]
            if self.identity_policy == IdentityPolicy.IP_AND_MAC and old.mac and new.mac \
                    and _mac_key(old.mac) != _mac_key(new.mac):
                # Different hardware behind the same address
                left.append(old)
                joined.append(new)
                continue
            device_diff = self.compare_devices(old, new)
            if device_diff:
                changes.append(device_diff)

        if self.identity_policy == IdentityPolicy.MAC_TRACKING:
            moved, joined, left = self._match_moved(joined, left)
            changes.extend(moved)

        for device in joined:
            changes.append(DeviceDiff(
                device_ip=device.ip,
                change_type=ChangeType.DEVICE_JOINED,
                device_added=device,
            ))
        for device in left:
            changes.append(DeviceDiff(
                device_ip=device.ip,
                change_type=ChangeType.DEVICE_LEFT,
                device_removed=device,
            ))

        changes.sort(key=lambda c: (ip_sort_key(c.device_ip), _CHANGE_TYPE_ORDER[c.change_type]))

        changed = [
            c for c in changes
            if c.change_type not in (ChangeType.DEVICE_JOINED, ChangeType.DEVICE_LEFT)
        ]
        summary = DiffSummary(
            devices_added=len(joined),
            devices_removed=len(left),
            devices_changed=len(changed),
            ports_changed=sum(len(c.port_changes) for c in changed),
            services_changed=sum(len(c.service_changes) for c in changed),
        )

        logger.debug(
            f"Diff {from_snapshot.id} -> {to_snapshot.id}: {summary.total_changes} changes"
        )

        return SnapshotDiff(
            from_snapshot=from_snapshot.id,
            to_snapshot=to_snapshot.id,
            timestamp=to_snapshot.timestamp,
            summary=summary,
            device_changes=tuple(changes),
        )

    def _match_moved(
        self,
        joined: list[Device],
        left: list[Device],
    ) -> tuple[list[DeviceDiff], list[Device], list[Device]]:
        """Pair departed and arrived devices that share a unique MAC."""

        def by_mac(devices: list[Device]) -> dict[str, Device]:
            counts: dict[str, int] = {}
            for d in devices:
                if d.mac:
                    counts[_mac_key(d.mac)] = counts.get(_mac_key(d.mac), 0) + 1
            return {
                _mac_key(d.mac): d for d in devices
                if d.mac and counts[_mac_key(d.mac)] == 1
            }

        left_by_mac = by_mac(left)
        joined_by_mac = by_mac(joined)

        moved = []
        paired_old: set[str] = set()
        paired_new: set[str] = set()
        for mac, new in joined_by_mac.items():
            old = left_by_mac.get(mac)
            if old is None:
                continue
            device_diff = self.compare_devices(old, new, include_ip=True)
            if device_diff:
                moved.append(device_diff)
            paired_old.add(old.ip)
            paired_new.add(new.ip)

        return (
            moved,
            [d for d in joined if d.ip not in paired_new],
            [d for d in left if d.ip not in paired_old],
        )

    def compare_devices(
        self,
        old: Device,
        new: Device,
        include_ip: bool = False,
    ) -> Optional[DeviceDiff]:
        """Compare two records of the same device; None when nothing changed."""
        port_changes = self._compare_ports(old, new)
        service_changes = self._compare_services(old, new)
        property_changes = self._compare_properties(old, new, include_ip)

        if not (port_changes or service_changes or property_changes):
            return None

        return DeviceDiff(
            device_ip=new.ip,
            change_type=self._change_type(port_changes, service_changes, property_changes),
            port_changes=tuple(port_changes),
            service_changes=tuple(service_changes),
            property_changes=tuple(property_changes),
        )

    def _compare_ports(self, old: Device, new: Device) -> list[PortDiff]:
        old_ports = {p.key: p for p in old.ports}
        new_ports = {p.key: p for p in new.ports}
        changes = []

        for key in sorted(set(old_ports) | set(new_ports)):
            number, protocol = key
            before = old_ports.get(key)
            after = new_ports.get(key)
            if before is None:
                changes.append(PortDiff(number, protocol, "added", new_state=after.state))
            elif after is None:
                changes.append(PortDiff(number, protocol, "removed", old_state=before.state))
            elif before.state != after.state:
                changes.append(PortDiff(
                    number, protocol, "state_changed",
                    old_state=before.state, new_state=after.state,
                ))
        return changes

    def _compare_services(self, old: Device, new: Device) -> list[ServiceDiff]:
        old_services = {s.port: s for s in old.services}
        new_services = {s.port: s for s in new.services}
        changes = []

        for port in sorted(set(old_services) | set(new_services)):
            before = old_services.get(port)
            after = new_services.get(port)
            if before is None:
                changes.append(ServiceDiff(port, "added", new_service=after))
            elif after is None:
                changes.append(ServiceDiff(port, "removed", old_service=before))
            elif _service_differs(before, after):
                changes.append(ServiceDiff(port, "changed", old_service=before, new_service=after))
        return changes

    def _compare_properties(
        self,
        old: Device,
        new: Device,
        include_ip: bool,
    ) -> list[PropertyChange]:
        changes = []

        def check(name: str, before: Any, after: Any) -> None:
            if before != after:
                changes.append(PropertyChange(name, _plain(before), _plain(after)))

        if include_ip:
            check("ip", old.ip, new.ip)
        check("hostname", old.hostname, new.hostname)
        if _mac_key(old.mac) != _mac_key(new.mac):
            changes.append(PropertyChange("mac", old.mac, new.mac))
        check("vendor", old.vendor, new.vendor)
        check("risk_level", old.risk_level, new.risk_level)
        check("is_active", old.is_active, new.is_active)
        check("os_info.name", _os_field(old, "name"), _os_field(new, "name"))
        check("os_info.version", _os_field(old, "version"), _os_field(new, "version"))
        check("os_info.family", _os_field(old, "family"), _os_field(new, "family"))

        old_acc = _os_field(old, "accuracy")
        new_acc = _os_field(new, "accuracy")
        if old_acc is None or new_acc is None:
            check("os_info.accuracy", old_acc, new_acc)
        elif abs(old_acc - new_acc) >= OS_ACCURACY_THRESHOLD:
            changes.append(PropertyChange("os_info.accuracy", old_acc, new_acc))

        return changes

    @staticmethod
    def _change_type(
        port_changes: list[PortDiff],
        service_changes: list[ServiceDiff],
        property_changes: list[PropertyChange],
    ) -> ChangeType:
        if any(c.property.startswith("os_info.") for c in property_changes):
            return ChangeType.OS_CHANGED
        if service_changes:
            return ChangeType.SERVICE_CHANGED
        if any(p.new_state == PortState.OPEN for p in port_changes):
            return ChangeType.PORT_OPENED
        if port_changes:
            return ChangeType.PORT_CLOSED
        if any(c.property == "is_active" and c.new_value is False for c in property_changes):
            return ChangeType.DEVICE_INACTIVE
        return ChangeType.DEVICE_CHANGED


def diff_snapshots(
    from_snapshot: NetworkSnapshot,
    to_snapshot: NetworkSnapshot,
    identity_policy: IdentityPolicy = IdentityPolicy.IP,
) -> SnapshotDiff:
    """Diff two snapshots with a throwaway engine."""
    return DiffEngine(identity_policy).diff(from_snapshot, to_snapshot)


def _plural(count: int, noun: str) -> str:
    return f"{count} {noun}{'s' if count > 1 else ''}"


def summarize_diff(diff: SnapshotDiff) -> str:
    """One-line human readable summary, e.g. "2 devices added, 1 port change"."""
    s = diff.summary
    parts = []
    if s.devices_added:
        parts.append(f"{_plural(s.devices_added, 'device')} added")
    if s.devices_removed:
        parts.append(f"{_plural(s.devices_removed, 'device')} removed")
    if s.devices_changed:
        parts.append(f"{_plural(s.devices_changed, 'device')} changed")
    if s.ports_changed:
        parts.append(_plural(s.ports_changed, "port change"))
    if s.services_changed:
        parts.append(_plural(s.services_changed, "service change"))

    if not parts:
        return "No changes detected"
    return ", ".join(parts)


def change_severity(diff: SnapshotDiff) -> str:
    """Rate a diff as "low", "medium" or "high"."""
    s = diff.summary

    if s.devices_added >= 5 or s.devices_removed >= 3:
        return "high"

    for change in diff.device_changes:
        if change.device_added and len(change.device_added.open_ports) >= 10:
            return "high"
        if any(
            p.port in SECURITY_SENSITIVE_PORTS and p.change_type == "added"
            for p in change.port_changes
        ):
            return "high"

    if s.total_changes >= 10 or s.devices_added >= 2 or s.ports_changed >= 5:
        return "medium"

    return "low"
