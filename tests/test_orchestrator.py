"""Tests for the phased discovery pipeline."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from device_discovery._types import (
    AdvertisementCategory,
    ChangeKind,
    ChangeSeverity,
    DeviceType,
    ScanDepth,
    Snapshot,
)
from device_discovery.diff import compare
from device_discovery.discovery.base import DiscoveredService
from device_discovery.discovery.mdns_browser import BrowseKind, BrowseResult
from device_discovery.identity import IdentityResolver
from device_discovery.inventory import DeviceInventory
from device_discovery.orchestrator import PHASES, DiscoveryOrchestrator

HAP = AdvertisementCategory.HAP
AIRPLAY = AdvertisementCategory.AIRPLAY


class FakeBrowser:
    """Browser that replays a fixed list of results."""

    def __init__(self, results=(), error=None):
        self.results = list(results)
        self.error = error
        self.calls = []

    async def browse(self, categories, duration):
        self.calls.append((list(categories), duration))
        if self.error is not None:
            raise self.error
        for result in self.results:
            yield result


def found(name, category=HAP):
    return BrowseResult(name=name, category=category)


def resolved(name, address, category=HAP, hostname=None, **properties):
    return BrowseResult(
        name=name,
        category=category,
        kind=BrowseKind.RESOLVED,
        address=address,
        hostname=hostname,
        properties=properties,
    )


def lost(name, category=HAP):
    return BrowseResult(name=name, category=category, kind=BrowseKind.LOST)


def make_prober(ports=None, available=True):
    prober = MagicMock()
    prober.name = "nmap"
    prober.is_available = AsyncMock(return_value=available)
    prober.probe = AsyncMock(return_value=ports or {})
    return prober


def make_secondary(services=(), available=True):
    secondary = MagicMock()
    secondary.name = "dns-sd"
    secondary.is_available = AsyncMock(return_value=available)
    secondary.discover = AsyncMock(return_value=list(services))
    return secondary


BROWSE_RESULTS = [
    found("Eve._hap._tcp.local."),
    resolved("Eve._hap._tcp.local.", "10.0.0.5", md="Eve Energy", ci="7"),
    found("Living Room TV._airplay._tcp.local.", AIRPLAY),
    resolved("Living Room TV._airplay._tcp.local.", "10.0.0.6", AIRPLAY),
]

HUE = DiscoveredService(
    name="Hue Bridge 1A2B",
    address="10.0.0.40",
    txt={"md": "BSB002", "ci": "2"},
    source="dns-sd",
)


def make_orchestrator(browser=None, prober=None, secondary=None, **kwargs):
    return DiscoveryOrchestrator(
        browser=browser or FakeBrowser(BROWSE_RESULTS),
        resolver=IdentityResolver(),
        inventory=DeviceInventory(),
        port_prober=prober,
        secondary=secondary,
        **kwargs,
    )


class TestPipeline:
    """Tests for a complete run."""

    @pytest.mark.asyncio
    async def test_full_run(self):
        """Should combine browse, port and dns-sd results."""
        prober = make_prober({"10.0.0.5": [80, 443]})
        orchestrator = make_orchestrator(prober=prober, secondary=make_secondary([HUE]))

        result = await orchestrator.run()

        assert [d.address for d in result.devices] == ["10.0.0.5", "10.0.0.6", "10.0.0.40"]
        assert result.status == "Discovery complete - 3 devices found"
        assert result.succeeded
        assert result.browse_addresses == {"10.0.0.5", "10.0.0.6"}
        assert result.probed_addresses == {"10.0.0.5"}
        assert result.dnssd_addresses == {"10.0.0.40"}

        eve, tv, hue = result.devices
        assert eve.display_name == "Eve Energy"
        assert eve.category == "Outlet"
        assert eve.open_ports == [80, 443]
        assert eve.services == {"_hap._tcp"}

        assert tv.display_name == "Living Room TV"
        assert tv.category == "AirPlay Device"

        assert hue.manufacturer == "Apple"
        assert hue.device_type == DeviceType.IOT
        assert hue.display_name == "BSB002"
        assert hue.category == "Bridge"
        assert hue.services == {"_hap._tcp"}

    @pytest.mark.asyncio
    async def test_probe_targets_browsed_addresses(self):
        """Should probe browsed addresses on the configured ports."""
        prober = make_prober()
        orchestrator = make_orchestrator(prober=prober, enrichment_ports=[80, 8080])

        await orchestrator.run()

        prober.probe.assert_awaited_once_with(["10.0.0.5", "10.0.0.6"], [80, 8080])

    @pytest.mark.asyncio
    async def test_depth_sets_window(self):
        """Should browse for the depth's window."""
        browser = FakeBrowser()
        orchestrator = make_orchestrator(browser=browser, categories=[HAP])

        await orchestrator.run(ScanDepth.DEEP)

        assert browser.calls == [([HAP], 30.0)]

    @pytest.mark.asyncio
    async def test_dnssd_only_device_without_model(self):
        """Should name a dns-sd-only device after its advertised name."""
        service = DiscoveredService(name="Mystery Plug", address="10.0.0.77")
        orchestrator = make_orchestrator(browser=FakeBrowser(), secondary=make_secondary([service]))

        result = await orchestrator.run()

        device = result.devices[0]
        assert device.display_name == "Mystery Plug"
        assert device.category == "HomeKit Accessory"

    @pytest.mark.asyncio
    async def test_lost_device_is_dropped(self):
        """Should not report a device whose advertisement went away."""
        browser = FakeBrowser(BROWSE_RESULTS[:2] + [lost("Eve._hap._tcp.local.")])
        orchestrator = make_orchestrator(browser=browser)

        result = await orchestrator.run()

        assert result.devices == []

    @pytest.mark.asyncio
    async def test_unavailable_sources_are_skipped(self):
        """Should skip sources that report themselves unavailable."""
        prober = make_prober(available=False)
        secondary = make_secondary([HUE], available=False)
        orchestrator = make_orchestrator(prober=prober, secondary=secondary)

        result = await orchestrator.run()

        prober.probe.assert_not_awaited()
        secondary.discover.assert_not_awaited()
        assert len(result.devices) == 2
        assert result.succeeded


class TestFailures:
    """Tests for phase failure handling."""

    @pytest.mark.asyncio
    async def test_browse_failure_still_finishes(self):
        """Should record the error and still use dns-sd results."""
        browser = FakeBrowser(error=RuntimeError("multicast unavailable"))
        orchestrator = make_orchestrator(browser=browser, secondary=make_secondary([HUE]))

        result = await orchestrator.run()

        assert result.errors == ["browse: multicast unavailable"]
        assert result.status.startswith("Discovery completed with errors")
        assert [d.address for d in result.devices] == ["10.0.0.40"]
        assert orchestrator.progress.fraction == 1.0

    @pytest.mark.asyncio
    async def test_probe_failure_is_recorded(self):
        """Should keep devices when enrichment raises."""
        prober = make_prober()
        prober.probe.side_effect = RuntimeError("probe crashed")
        orchestrator = make_orchestrator(prober=prober)

        result = await orchestrator.run()

        assert result.errors == ["enrich: probe crashed"]
        assert len(result.devices) == 2


class TestTrust:
    """Tests for the trusted device list."""

    @pytest.mark.asyncio
    async def test_untrusted_devices_are_rogue(self):
        """Should flag devices missing from a non-empty trusted list."""
        orchestrator = make_orchestrator(trusted_devices=["10.0.0.5"])

        result = await orchestrator.run()

        flags = {d.address: d.rogue for d in result.devices}
        assert flags == {"10.0.0.5": False, "10.0.0.6": True}

    @pytest.mark.asyncio
    async def test_empty_trusted_list_flags_nothing(self):
        """Should not flag anything without a trusted list."""
        result = await make_orchestrator().run()

        assert not any(d.rogue for d in result.devices)


class TestSubscribers:
    """Tests for progress and device subscribers."""

    @pytest.mark.asyncio
    async def test_progress_is_monotonic(self):
        """Should report non-decreasing progress ending at 1.0."""
        orchestrator = make_orchestrator(secondary=make_secondary([HUE]))
        reports = []
        orchestrator.subscribe_progress(reports.append)

        await orchestrator.run()

        fractions = [p.fraction for p in reports]
        assert fractions == sorted(fractions)
        assert fractions[-1] == 1.0
        assert [name for name, _, _ in PHASES] == list(dict.fromkeys(p.phase for p in reports))

    @pytest.mark.asyncio
    async def test_devices_published_before_completion(self):
        """Should deliver the device list before the final progress report."""
        orchestrator = make_orchestrator()
        events = []
        orchestrator.subscribe_devices(lambda devices: events.append(("devices", len(devices))))
        orchestrator.subscribe_progress(lambda p: events.append(("progress", p.fraction)))

        await orchestrator.run()

        assert events[-2:] == [("devices", 2), ("progress", 1.0)]

    @pytest.mark.asyncio
    async def test_failing_subscriber_is_ignored(self):
        """Should finish the scan when a subscriber raises."""
        orchestrator = make_orchestrator()

        def broken(_):
            raise ValueError("subscriber bug")

        orchestrator.subscribe_progress(broken)
        orchestrator.subscribe_devices(broken)

        result = await orchestrator.run()

        assert len(result.devices) == 2

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        """Should stop delivering after unsubscribe."""
        orchestrator = make_orchestrator()
        reports = []
        unsubscribe = orchestrator.subscribe_progress(reports.append)
        unsubscribe()
        unsubscribe()

        await orchestrator.run()

        assert reports == []


class TestRepeatedScans:
    """Tests for state carried from one scan to the next."""

    @staticmethod
    async def scan_twice(orchestrator, between=None):
        first = Snapshot.capture((await orchestrator.run()).devices)
        if between is not None:
            between()
        second_result = await orchestrator.run()
        return second_result, compare(first, Snapshot.capture(second_result.devices))

    @pytest.mark.asyncio
    async def test_closed_port_is_removed(self):
        """Should report a port that was open last scan and is closed now."""
        prober = make_prober()
        prober.probe.side_effect = [{"10.0.0.5": [22, 80]}, {"10.0.0.5": [80]}]
        orchestrator = make_orchestrator(prober=prober)

        result, comparison = await self.scan_twice(orchestrator)

        assert orchestrator.inventory.get("10.0.0.5").open_ports == [80]
        assert result.probed_addresses == {"10.0.0.5"}
        assert [(c.address, c.kind, c.detail) for c in comparison.changes] == [
            ("10.0.0.5", ChangeKind.PORTS_CHANGED, "Ports changed: Removed 22"),
        ]

    @pytest.mark.asyncio
    async def test_host_with_nothing_open_clears_ports(self):
        """Should clear every port when the host now has nothing open."""
        prober = make_prober()
        prober.probe.side_effect = [{"10.0.0.5": [22, 80]}, {"10.0.0.5": []}]
        orchestrator = make_orchestrator(prober=prober)

        result, comparison = await self.scan_twice(orchestrator)

        assert orchestrator.inventory.get("10.0.0.5").open_ports == []
        assert result.probed_addresses == set()
        assert [c.detail for c in comparison.changes] == ["Ports changed: Removed 22, 80"]

    @pytest.mark.asyncio
    async def test_unreported_host_keeps_ports(self):
        """Should keep ports for a host the port scan did not report on."""
        prober = make_prober()
        prober.probe.side_effect = [{"10.0.0.5": [22, 80]}, {}]
        orchestrator = make_orchestrator(prober=prober)

        _, comparison = await self.scan_twice(orchestrator)

        assert orchestrator.inventory.get("10.0.0.5").open_ports == [22, 80]
        assert not comparison.has_changes

    @pytest.mark.asyncio
    async def test_hostname_change_is_reported(self):
        """Should carry the resolved host into the inventory and diff it."""
        browser = FakeBrowser([resolved("Eve._hap._tcp.local.", "10.0.0.5", hostname="Eve-1.local")])
        orchestrator = make_orchestrator(browser=browser)

        def rename():
            browser.results = [resolved("Eve._hap._tcp.local.", "10.0.0.5", hostname="Eve-2.local")]

        result, comparison = await self.scan_twice(orchestrator, rename)

        assert result.devices[0].hostname == "Eve-2.local"
        assert [(c.kind, c.detail) for c in comparison.changes] == [
            (ChangeKind.HOSTNAME_CHANGED, "Hostname changed: 'Eve-1.local' -> 'Eve-2.local'"),
        ]

    @pytest.mark.asyncio
    async def test_dnssd_hostname(self):
        """Should take the hostname of a dns-sd-only device from its lookup."""
        service = DiscoveredService(name="Mystery Plug", address="10.0.0.77", hostname="Mystery-Plug.local")
        orchestrator = make_orchestrator(browser=FakeBrowser(), secondary=make_secondary([service]))

        result = await orchestrator.run()

        assert result.devices[0].hostname == "Mystery-Plug.local"

    @pytest.mark.asyncio
    async def test_missing_device_goes_offline(self):
        """Should keep a device that was not seen and mark it offline."""
        browser = FakeBrowser(BROWSE_RESULTS)
        orchestrator = make_orchestrator(browser=browser)

        def drop_tv():
            browser.results = BROWSE_RESULTS[:2]

        result, comparison = await self.scan_twice(orchestrator, drop_tv)

        assert {d.address: d.online for d in result.devices} == {"10.0.0.5": True, "10.0.0.6": False}
        assert [d.address for d in result.online_devices] == ["10.0.0.5"]
        assert result.status == "Discovery complete - 1 devices found"
        assert [(c.address, c.kind, c.detail, c.severity) for c in comparison.changes] == [
            ("10.0.0.6", ChangeKind.STATUS_CHANGED, "Device went offline", ChangeSeverity.WARNING),
        ]

        browser.results = BROWSE_RESULTS
        before = Snapshot.capture(result.devices)
        result = await orchestrator.run()
        comparison = compare(before, Snapshot.capture(result.devices))

        assert all(d.online for d in result.devices)
        assert [c.detail for c in comparison.changes] == ["Device came online"]

    @pytest.mark.asyncio
    async def test_display_name_follows_current_advertisement(self):
        """Should rename a device when a new name advertises from its address."""
        browser = FakeBrowser([resolved("Eve._hap._tcp.local.", "10.0.0.5")])
        orchestrator = make_orchestrator(browser=browser)

        def rename():
            browser.results = [resolved("Eve Plug._hap._tcp.local.", "10.0.0.5")]

        result, _ = await self.scan_twice(orchestrator, rename)

        assert result.devices[0].display_name == "Eve Plug"
