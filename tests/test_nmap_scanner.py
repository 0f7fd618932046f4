"""Tests for the nmap scanner adapter."""

import time

import nmap
import pytest

from network_monitor._types import PortState, RiskLevel, ScanProfile, Service
from network_monitor.exceptions import ScanError
from network_monitor.scanner import NmapScanner, PROFILE_ARGUMENTS, assess_risk, merge_devices

from conftest import make_device


class FakeHost(dict):
    """Mimics python-nmap's PortScannerHostDict."""

    def state(self):
        return self["status"]["state"]


HOSTS = {
    "192.168.1.10": FakeHost({
        "status": {"state": "up"},
        "hostnames": [{"name": "", "type": ""}, {"name": "legacy01", "type": "PTR"}],
        "addresses": {"ipv4": "192.168.1.10", "mac": "AA:BB:CC:DD:EE:FF"},
        "vendor": {"AA:BB:CC:DD:EE:FF": "Dell"},
        "osmatch": [{
            "name": "Microsoft Windows XP SP3",
            "accuracy": "96",
            "osclass": [{"osfamily": "Windows", "osgen": "XP"}],
        }],
        "tcp": {
            23: {"state": "open", "name": "telnet", "product": "", "version": "",
                 "extrainfo": "", "conf": "3"},
            22: {"state": "open", "name": "ssh", "product": "OpenSSH", "version": "8.9",
                 "extrainfo": "protocol 2.0", "conf": "10"},
            8080: {"state": "closed", "name": "http-proxy", "product": "", "version": "",
                   "extrainfo": "", "conf": "3"},
        },
    }),
    "192.168.1.20": FakeHost({
        "status": {"state": "down"},
        "addresses": {"ipv4": "192.168.1.20"},
    }),
}


class FakePortScanner:
    """Stand-in for nmap.PortScanner."""

    instances = []

    def __init__(self, *args, **kwargs):
        self.kwargs = kwargs
        self.scans = []
        FakePortScanner.instances.append(self)

    def scan(self, hosts, arguments, timeout=0):
        self.scans.append((hosts, arguments, timeout))

    def all_hosts(self):
        return sorted(HOSTS)

    def __getitem__(self, host):
        return HOSTS[host]


class FailingPortScanner(FakePortScanner):
    def scan(self, hosts, arguments, timeout=0):
        raise nmap.PortScannerError("nmap program was not found in path")


@pytest.fixture
def fake_nmap(monkeypatch):
    FakePortScanner.instances = []
    monkeypatch.setattr(nmap, "PortScanner", FakePortScanner)
    return FakePortScanner


class TestArguments:
    """Tests for profile arguments."""

    def test_every_profile_has_arguments(self):
        assert set(PROFILE_ARGUMENTS) == set(ScanProfile)

    def test_host_timeout_appended(self):
        scanner = NmapScanner(host_timeout=30)

        args = scanner.build_arguments(ScanProfile.QUICK)

        assert args == "-T4 -F --host-timeout 30s"
        scanner.close()


class TestParsing:
    """Tests for converting nmap output into devices."""

    def test_parses_up_hosts_only(self, fake_nmap):
        scanner = NmapScanner()

        devices = scanner._scan_target("192.168.1.0/24", ScanProfile.COMPREHENSIVE, 120)
        scanner.close()

        assert [d.ip for d in devices] == ["192.168.1.10"]
        hosts, arguments, timeout = fake_nmap.instances[0].scans[0]
        assert hosts == "192.168.1.0/24"
        assert arguments.startswith(PROFILE_ARGUMENTS[ScanProfile.COMPREHENSIVE])
        assert timeout == 120

    def test_device_fields(self, fake_nmap):
        scanner = NmapScanner()

        device = scanner._scan_target("192.168.1.10", ScanProfile.COMPREHENSIVE, None)[0]
        scanner.close()

        assert device.hostname == "legacy01"
        assert device.mac == "AA:BB:CC:DD:EE:FF"
        assert device.vendor == "Dell"
        assert device.os_info.name == "Microsoft Windows XP SP3"
        assert device.os_info.family == "Windows"
        assert device.os_info.accuracy == 96
        assert [p.number for p in device.ports] == [22, 23, 8080]
        assert device.ports[2].state == PortState.CLOSED
        assert device.ports[0].banner == "protocol 2.0"
        assert {s.name for s in device.services} == {"ssh", "telnet"}
        ssh = next(s for s in device.services if s.port == 22)
        assert ssh.product == "OpenSSH"
        assert ssh.version == "8.9"
        assert ssh.confidence == 10
        # Telnet plus a legacy OS
        assert device.risk_level == RiskLevel.HIGH

    def test_nmap_error_becomes_scan_error(self, monkeypatch):
        monkeypatch.setattr(nmap, "PortScanner", FailingPortScanner)
        scanner = NmapScanner()

        with pytest.raises(ScanError):
            scanner._scan_target("192.168.1.0/24", ScanProfile.QUICK, None)
        scanner.close()

    def test_explicit_nmap_path(self, fake_nmap):
        scanner = NmapScanner(nmap_path="/opt/nmap/bin/nmap")

        scanner._scan_target("192.168.1.10", ScanProfile.QUICK, None)
        scanner.close()

        assert fake_nmap.instances[0].kwargs == {"nmap_search_path": ("/opt/nmap/bin/nmap",)}


class TestAsyncScan:
    """Tests for the async scan() wrapper."""

    @pytest.mark.asyncio
    async def test_scan_runs_in_executor(self, fake_nmap):
        scanner = NmapScanner()

        devices = await scanner.scan("192.168.1.0/24", ScanProfile.QUICK, timeout=5)
        scanner.close()

        assert len(devices) == 1

    @pytest.mark.asyncio
    async def test_timeout_raises_scan_error(self, monkeypatch):
        scanner = NmapScanner()
        monkeypatch.setattr(scanner, "_scan_target", lambda *args: time.sleep(0.3) or [])

        with pytest.raises(ScanError):
            await scanner.scan("192.168.1.0/24", ScanProfile.QUICK, timeout=0.05)
        scanner.close()


class TestRisk:
    """Tests for risk scoring and merging."""

    def test_quiet_host_is_low_risk(self):
        assert assess_risk(make_device("10.0.0.1", ports=[(443, "tcp")])) == RiskLevel.LOW

    def test_open_port_score_is_capped(self):
        ports = [(p, "tcp") for p in range(1000, 1050)]

        assert assess_risk(make_device("10.0.0.1", ports=ports)) == RiskLevel.LOW

    def test_telnet_is_medium(self):
        device = make_device(
            "10.0.0.1", ports=[(23, "tcp")], services=[Service(port=23, name="telnet")]
        )

        assert assess_risk(device) == RiskLevel.MEDIUM

    def test_merge_keeps_first_appearance_order(self):
        merged = merge_devices([
            make_device("10.0.0.2"),
            make_device("10.0.0.1"),
            make_device("10.0.0.2", mac="AA:BB:CC:DD:EE:FF"),
        ])

        assert [d.ip for d in merged] == ["10.0.0.2", "10.0.0.1"]
        assert merged[0].mac == "AA:BB:CC:DD:EE:FF"
