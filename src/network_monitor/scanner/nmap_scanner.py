"""
Nmap scanner adapter.

Runs python-nmap's PortScanner in a thread pool (it is synchronous) and
normalizes each host into a Device. Profiles map to fixed argument sets.
"""

from __future__ import annotations

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from typing import Optional

import nmap

from .._types import Device, OSInfo, Port, PortState, ScanProfile, Service, now_utc
from ..exceptions import ScanError
from .base import ScannerAdapter, assess_risk

logger = logging.getLogger(__name__)


PROFILE_ARGUMENTS = {
    ScanProfile.QUICK: "-T4 -F",
    ScanProfile.DISCOVERY: "-sn",
    ScanProfile.COMPREHENSIVE: "-sS -sV -O --top-ports 1000 -T4",
}


def _to_int(value) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class NmapScanner(ScannerAdapter):
    """
    Scan networks with nmap.

    Each scan() call runs one nmap invocation in the executor. The adapter
    itself has no concurrency limit; the scheduler bounds how many scans
    run at once.
    """

    def __init__(
        self,
        nmap_path: Optional[str] = None,
        host_timeout: int = 60,
        max_workers: int = 4,
    ):
        """
        Initialize nmap scanner.

        Args:
            nmap_path: Explicit path to the nmap binary (searched on PATH if None)
            host_timeout: Timeout per host in seconds
            max_workers: Thread pool size for blocking nmap calls
        """
        self.nmap_path = nmap_path
        self.host_timeout = host_timeout
        self._executor = ThreadPoolExecutor(max_workers=max_workers)

    @property
    def name(self) -> str:
        return "nmap"

    async def is_available(self) -> bool:
        """Check if nmap is available."""
        try:
            result = await asyncio.create_subprocess_exec(
                "which", self.nmap_path or "nmap",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            await result.wait()
            return result.returncode == 0
        except OSError:
            return False

    async def scan(
        self,
        target: str,
        profile: ScanProfile,
        timeout: Optional[float] = None,
    ) -> list[Device]:
        """Scan a target, raising ScanError on tool failure or timeout."""
        loop = asyncio.get_running_loop()
        logger.info(f"Scanning {target} (profile={profile.value})")

        try:
            devices = await asyncio.wait_for(
                loop.run_in_executor(self._executor, self._scan_target, target, profile, timeout),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            raise ScanError(
                f"Scan of {target} timed out after {timeout}s",
                details={"target": target, "profile": profile.value},
            )

        logger.info(f"Nmap scan of {target} found {len(devices)} hosts")
        return devices

    def build_arguments(self, profile: ScanProfile) -> str:
        return f"{PROFILE_ARGUMENTS[profile]} --host-timeout {self.host_timeout}s"

    def _scan_target(
        self,
        target: str,
        profile: ScanProfile,
        timeout: Optional[float],
    ) -> list[Device]:
        """
        Run nmap against one target (runs in thread pool).

        This is a blocking operation that should not be called from async code.
        """
        args = self.build_arguments(profile)
        logger.debug(f"Running nmap: {target} {args}")

        try:
            if self.nmap_path:
                scanner = nmap.PortScanner(nmap_search_path=(self.nmap_path,))
            else:
                scanner = nmap.PortScanner()
            scanner.scan(hosts=target, arguments=args, timeout=int(timeout) if timeout else 0)
        except nmap.PortScannerTimeout as e:
            raise ScanError(f"Scan of {target} timed out: {e}", details={"target": target})
        except nmap.PortScannerError as e:
            raise ScanError(f"Nmap failed for {target}: {e}", details={"target": target})

        devices = []
        for host in scanner.all_hosts():
            try:
                device = self._parse_host(scanner, host)
                if device:
                    devices.append(device)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Error parsing host {host}: {e}")

        return devices

    def _parse_host(self, scanner, host: str) -> Optional[Device]:
        """Parse nmap results for a single host."""
        host_info = scanner[host]

        # Check host state
        if host_info.state() != "up":
            return None

        # Get hostname
        hostname = None
        if "hostnames" in host_info:
            for hn in host_info["hostnames"]:
                if hn.get("name"):
                    hostname = hn["name"]
                    break

        # Get MAC address and vendor
        mac = None
        vendor = None
        if "addresses" in host_info:
            mac = host_info["addresses"].get("mac")
        if "vendor" in host_info and mac:
            vendor = host_info["vendor"].get(mac)

        # Get OS info from the best match
        os_info = None
        if "osmatch" in host_info and host_info["osmatch"]:
            best_match = host_info["osmatch"][0]
            family = None
            version = None
            if "osclass" in best_match and best_match["osclass"]:
                os_class = best_match["osclass"][0]
                family = os_class.get("osfamily")
                version = os_class.get("osgen")
            os_info = OSInfo(
                name=best_match.get("name"),
                version=version,
                family=family,
                accuracy=_to_int(best_match.get("accuracy")),
            )

        # Get ports and services
        ports = []
        services = []
        for proto in ["tcp", "udp"]:
            if proto not in host_info:
                continue
            for number, port_info in sorted(host_info[proto].items()):
                state = port_info.get("state", "")
                if state not in ("open", "closed", "filtered"):
                    continue
                service_name = port_info.get("name") or None
                ports.append(Port(
                    number=int(number),
                    protocol=proto,
                    state=PortState(state),
                    service=service_name,
                    banner=port_info.get("extrainfo") or None,
                ))
                if state == "open" and service_name:
                    services.append(Service(
                        port=int(number),
                        name=service_name,
                        product=port_info.get("product") or None,
                        version=port_info.get("version") or None,
                        protocol=proto,
                        confidence=_to_int(port_info.get("conf")),
                    ))

        device = Device(
            ip=host,
            mac=mac,
            hostname=hostname,
            vendor=vendor,
            os_info=os_info,
            ports=tuple(ports),
            services=tuple(services),
            last_seen=now_utc(),
            is_active=True,
        )
        return replace(device, risk_level=assess_risk(device))

    def close(self) -> None:
        self._executor.shutdown(wait=False)
