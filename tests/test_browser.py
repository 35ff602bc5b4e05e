"""Tests for the multi-category mDNS browser."""

import asyncio
import functools
import time
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from zeroconf import ServiceStateChange

from device_discovery._types import AdvertisementCategory
from device_discovery.discovery.mdns_browser import (
    BrowseKind,
    ResolvedEndpoint,
    ServiceDiscoveryBrowser,
)

HAP = AdvertisementCategory.HAP
AIRPLAY = AdvertisementCategory.AIRPLAY
ADDED = ServiceStateChange.Added
REMOVED = ServiceStateChange.Removed


class FakeServiceBrowser:
    """Replays scripted state changes through the zeroconf handler."""

    def __init__(self, zc, service_type, handlers, script):
        self.service_type = service_type
        self.cancelled = False
        loop = asyncio.get_running_loop()
        for delay, name, state in script.get(service_type, []):
            loop.call_later(delay, functools.partial(
                handlers[0],
                zeroconf=zc,
                service_type=service_type,
                name=name,
                state_change=state,
            ))

    async def async_cancel(self):
        self.cancelled = True


class ScriptedBrowser(ServiceDiscoveryBrowser):
    """Browser with scripted address resolution."""

    def __init__(self, script, resolutions=None, delays=None, resolve_timeout=0.5):
        self.browsers = []
        self.zeroconf = MagicMock()
        self.zeroconf.async_close = AsyncMock()
        self.resolutions = resolutions or {}
        self.delays = delays or {}
        self.attempts = []
        self.cancelled_attempts = []

        def browser_factory(zc, service_type, handlers):
            browser = FakeServiceBrowser(zc, service_type, handlers, script)
            self.browsers.append(browser)
            return browser

        super().__init__(
            resolve_timeout=resolve_timeout,
            zeroconf_factory=lambda: self.zeroconf,
            browser_factory=browser_factory,
        )

    async def _attempt_resolution(self, aiozc, name, category):
        self.attempts.append((name, category))
        try:
            await asyncio.sleep(self.delays.get(name, 0))
        except asyncio.CancelledError:
            self.cancelled_attempts.append(name)
            raise
        return self.resolutions.get(name)


async def collect(browser, categories, duration):
    return [result async for result in browser.browse(categories, duration)]


class TestBrowse:
    """Tests for browsing and resolution."""

    @pytest.mark.asyncio
    async def test_found_and_resolved(self):
        """Should yield FOUND then RESOLVED with TXT properties and host."""
        browser = ScriptedBrowser(
            {HAP.service_type: [(0.01, "Eve._hap._tcp.local.", ADDED)]},
            resolutions={
                "Eve._hap._tcp.local.": ResolvedEndpoint("10.0.0.5", {"md": "Eve"}, "Eve-Energy.local"),
            },
        )

        results = await collect(browser, [HAP], duration=0.2)

        assert [r.kind for r in results] == [BrowseKind.FOUND, BrowseKind.RESOLVED]
        assert results[1].address == "10.0.0.5"
        assert results[1].properties == {"md": "Eve"}
        assert results[1].category == HAP
        assert results[1].hostname == "Eve-Energy.local"

    @pytest.mark.asyncio
    async def test_all_categories_browsed_and_cancelled(self):
        """Should start one browser per category and cancel all at the end."""
        browser = ScriptedBrowser({})

        await collect(browser, list(AdvertisementCategory), duration=0.05)

        assert len(browser.browsers) == 6
        assert all(b.cancelled for b in browser.browsers)
        browser.zeroconf.async_close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_one_resolution_per_result(self):
        """Should start a single resolution for repeated announcements."""
        name = "Eve._hap._tcp.local."
        browser = ScriptedBrowser(
            {HAP.service_type: [(0.01, name, ADDED), (0.02, name, ADDED), (0.03, name, ADDED)]},
            resolutions={name: ResolvedEndpoint("10.0.0.5")},
            delays={name: 0.05},
        )

        results = await collect(browser, [HAP], duration=0.2)

        assert browser.attempts == [(name, HAP)]
        assert [r.kind for r in results].count(BrowseKind.FOUND) == 1

    @pytest.mark.asyncio
    async def test_same_name_in_two_categories(self):
        """Should treat each category's advertisement as its own result."""
        browser = ScriptedBrowser({
            HAP.service_type: [(0.01, "TV._hap._tcp.local.", ADDED)],
            AIRPLAY.service_type: [(0.01, "TV._airplay._tcp.local.", ADDED)],
        })

        results = await collect(browser, [HAP, AIRPLAY], duration=0.1)

        found = {(r.name, r.category) for r in results if r.kind is BrowseKind.FOUND}
        assert found == {("TV._hap._tcp.local.", HAP), ("TV._airplay._tcp.local.", AIRPLAY)}
        assert len(browser.attempts) == 2

    @pytest.mark.asyncio
    async def test_resolution_timeout_keeps_device(self):
        """Should keep an unresolved device and cancel the slow attempt."""
        name = "Sleepy._hap._tcp.local."
        browser = ScriptedBrowser(
            {HAP.service_type: [(0.01, name, ADDED)]},
            resolutions={name: ResolvedEndpoint("10.0.0.9")},
            delays={name: 5.0},
            resolve_timeout=0.1,
        )

        started = time.monotonic()
        results = await collect(browser, [HAP], duration=0.3)
        elapsed = time.monotonic() - started

        assert [r.kind for r in results] == [BrowseKind.FOUND]
        assert results[0].address is None
        assert browser.cancelled_attempts == [name]
        assert elapsed < 1.0

    @pytest.mark.asyncio
    async def test_in_flight_resolution_finishes_after_window(self):
        """Should still deliver resolutions that finish in the grace period."""
        name = "Late._hap._tcp.local."
        browser = ScriptedBrowser(
            {HAP.service_type: [(0.05, name, ADDED)]},
            resolutions={name: ResolvedEndpoint("10.0.0.7")},
            delays={name: 0.25},
            resolve_timeout=0.5,
        )

        results = await collect(browser, [HAP], duration=0.1)

        assert [r.kind for r in results] == [BrowseKind.FOUND, BrowseKind.RESOLVED]
        assert results[1].address == "10.0.0.7"

    @pytest.mark.asyncio
    async def test_removed_reports_lost(self):
        """Should yield LOST for goodbye packets."""
        name = "Eve._hap._tcp.local."
        browser = ScriptedBrowser({
            HAP.service_type: [(0.01, name, ADDED), (0.05, name, REMOVED)],
        })

        results = await collect(browser, [HAP], duration=0.15)

        assert [r.kind for r in results] == [BrowseKind.FOUND, BrowseKind.LOST]

    @pytest.mark.asyncio
    async def test_window_is_fixed(self):
        """Should stop at the window even if advertisements keep coming."""
        script = {
            HAP.service_type: [(0.02 * i, f"Device {i}._hap._tcp.local.", ADDED) for i in range(1, 6)]
            + [(1.0, "Too Late._hap._tcp.local.", ADDED)],
        }
        browser = ScriptedBrowser(script)

        started = time.monotonic()
        results = await collect(browser, [HAP], duration=0.3)
        elapsed = time.monotonic() - started

        names = {r.name for r in results}
        assert "Too Late._hap._tcp.local." not in names
        assert len([r for r in results if r.kind is BrowseKind.FOUND]) == 5
        assert elapsed < 0.9

    @pytest.mark.asyncio
    async def test_failed_attempt_is_not_retried(self):
        """Should give up after one failed attempt."""
        name = "Broken._hap._tcp.local."

        class FailingBrowser(ScriptedBrowser):
            async def _attempt_resolution(self, aiozc, name, category):
                self.attempts.append((name, category))
                raise OSError("connection refused")

        browser = FailingBrowser({HAP.service_type: [(0.01, name, ADDED)]})

        results = await collect(browser, [HAP], duration=0.1)

        assert [r.kind for r in results] == [BrowseKind.FOUND]
        assert len(browser.attempts) == 1


def make_service_info(server="Eve-Energy.local.", found=True):
    info = MagicMock()
    info.async_request = AsyncMock(return_value=found)
    info.properties = {b"md": b"Eve Energy", b"ci": b"7"}
    info.port = 80
    info.server = server
    info.parsed_addresses.return_value = ["fe80::1", "10.0.0.5"]
    return info


class TestAttemptResolution:
    """Tests for a single resolution attempt."""

    @pytest.mark.asyncio
    async def test_reports_peer_properties_and_host(self):
        """Should return the connected peer, TXT properties and SRV target."""
        writer = MagicMock()
        writer.get_extra_info.return_value = ("10.0.0.5", 80)
        writer.wait_closed = AsyncMock()
        open_connection = AsyncMock(return_value=(MagicMock(), writer))
        browser = ServiceDiscoveryBrowser(resolve_timeout=1.0)

        with patch(
            "device_discovery.discovery.mdns_browser.AsyncServiceInfo",
            return_value=make_service_info(),
        ), patch.object(asyncio, "open_connection", open_connection):
            endpoint = await browser._attempt_resolution(MagicMock(), "Eve._hap._tcp.local.", HAP)

        assert endpoint == ResolvedEndpoint(
            "10.0.0.5", {"md": "Eve Energy", "ci": "7"}, "Eve-Energy.local"
        )
        # IPv4 is tried before link-local IPv6
        open_connection.assert_awaited_once_with("10.0.0.5", 80)
        writer.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_unanswered_request(self):
        """Should return None when the service record never arrives."""
        browser = ServiceDiscoveryBrowser(resolve_timeout=0.1)

        with patch(
            "device_discovery.discovery.mdns_browser.AsyncServiceInfo",
            return_value=make_service_info(found=False),
        ):
            assert await browser._attempt_resolution(MagicMock(), "Eve._hap._tcp.local.", HAP) is None
