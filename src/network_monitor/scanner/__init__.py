"""Scanner adapters."""

from .base import ScannerAdapter, assess_risk, merge_devices
from .nmap_scanner import NmapScanner, PROFILE_ARGUMENTS

__all__ = [
    "ScannerAdapter",
    "NmapScanner",
    "PROFILE_ARGUMENTS",
    "assess_risk",
    "merge_devices",
]
