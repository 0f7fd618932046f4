"""
Scan target validation.

A target is a single IP address, a CIDR network, or an address range
written either as "192.168.1.10-192.168.1.50" or "192.168.1.10-50".
Space-separated combinations of these are accepted, as nmap does.
"""

from __future__ import annotations

import ipaddress
import re
import uuid

from .exceptions import ValidationError

_MAC_RE = re.compile(r"^([0-9A-Fa-f]{2}[:-]){5}[0-9A-Fa-f]{2}$")

# Refuse to scan anything larger than a /16 in one job
MAX_TARGET_ADDRESSES = 65536


def _validate_range(part: str) -> int:
    start_s, end_s = part.split("-", 1)
    try:
        start = ipaddress.IPv4Address(start_s.strip())
    except ValueError:
        raise ValidationError(f"Invalid range start: {part}")

    end_s = end_s.strip()
    if end_s.isdigit():
        # Short form: last octet only
        octet = int(end_s)
        if octet > 255:
            raise ValidationError(f"Invalid range end: {part}")
        end = ipaddress.IPv4Address(
            ".".join(str(start).split(".")[:3] + [str(octet)])
        )
    else:
        try:
            end = ipaddress.IPv4Address(end_s)
        except ValueError:
            raise ValidationError(f"Invalid range end: {part}")

    if int(end) < int(start):
        raise ValidationError(f"Range end precedes start: {part}")
    return int(end) - int(start) + 1


def _validate_part(part: str) -> int:
    """Validate one target token, returning the number of addresses it covers."""
    if "/" in part:
        try:
            network = ipaddress.ip_network(part, strict=False)
        except ValueError:
            raise ValidationError(f"Invalid CIDR network: {part}")
        return network.num_addresses

    if "-" in part:
        return _validate_range(part)

    try:
        ipaddress.ip_address(part)
    except ValueError:
        raise ValidationError(f"Invalid IP address: {part}")
    return 1


def validate_target(target: str) -> str:
    """
    Validate a scan target and return it normalized (whitespace collapsed).

    Raises ValidationError for malformed targets or targets that would
    cover more than MAX_TARGET_ADDRESSES addresses.
    """
    if not isinstance(target, str) or not target.strip():
        raise ValidationError("Scan target must be a non-empty string")

    parts = target.split()
    total = sum(_validate_part(p) for p in parts)
    if total > MAX_TARGET_ADDRESSES:
        raise ValidationError(
            f"Scan target too large: {total} addresses (max {MAX_TARGET_ADDRESSES})",
            details={"target": target},
        )
    return " ".join(parts)


def is_valid_target(target: str) -> bool:
    try:
        validate_target(target)
        return True
    except ValidationError:
        return False


def is_valid_mac(mac: str) -> bool:
    return bool(mac and _MAC_RE.match(mac))


def validate_snapshot_id(snapshot_id: str) -> str:
    """Snapshot ids are UUID strings."""
    try:
        uuid.UUID(str(snapshot_id))
    except ValueError:
        raise ValidationError(f"Invalid snapshot id: {snapshot_id}")
    return str(snapshot_id)
