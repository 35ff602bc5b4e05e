"""
mDNS service-advertisement browsing over a fixed discovery window.

One AsyncServiceBrowser per advertisement category runs concurrently on a
shared AsyncZeroconf. Advertisements arrive asynchronously and never
"finish", so browsing stops when the window elapses rather than when the
network goes quiet.

Every newly seen (name, category) gets exactly one address-resolution
attempt: fetch the service record, then open a transient TCP connection to
each advertised address until one succeeds. The attempt races its own
timer and is cancelled as soon as either side settles. A result that never
resolves is still reported, just without an address.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Callable, Iterable, Optional

from zeroconf import ServiceStateChange
from zeroconf.asyncio import AsyncServiceBrowser, AsyncServiceInfo, AsyncZeroconf

from .._types import AdvertisementCategory
from ..completion import SingleCompletion
from ..metadata import decode_txt_properties

logger = logging.getLogger(__name__)


class BrowseKind(str, Enum):
    """What a browse result reports."""
    FOUND = "found"
    RESOLVED = "resolved"
    LOST = "lost"


@dataclass(frozen=True)
class BrowseResult:
    """One observation from the browser."""
    name: str
    category: AdvertisementCategory
    kind: BrowseKind = BrowseKind.FOUND
    interface: Optional[str] = None
    address: Optional[str] = None
    hostname: Optional[str] = None
    properties: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ResolvedEndpoint:
    """Where a service answered, plus its TXT properties."""
    address: str
    properties: dict[str, str] = field(default_factory=dict)
    hostname: Optional[str] = None


class ServiceDiscoveryBrowser:
    """
    Concurrent multi-category mDNS browser.

    Usage:
        browser = ServiceDiscoveryBrowser(resolve_timeout=5.0)
        async for result in browser.browse(DEFAULT_CATEGORIES, duration=15.0):
            ...
    """

    def __init__(
        self,
        resolve_timeout: float = 5.0,
        zeroconf_factory: Callable[[], AsyncZeroconf] = AsyncZeroconf,
        browser_factory: Callable[..., AsyncServiceBrowser] = AsyncServiceBrowser,
    ):
        """
        Initialize the browser.

        Args:
            resolve_timeout: Bound on each address-resolution attempt, and
                on the grace period after the window closes
            zeroconf_factory: Creates the AsyncZeroconf for a browse
            browser_factory: Creates one service browser per category
        """
        self.resolve_timeout = resolve_timeout
        self._zeroconf_factory = zeroconf_factory
        self._browser_factory = browser_factory

    async def browse(
        self,
        categories: Iterable[AdvertisementCategory],
        duration: float,
    ) -> AsyncIterator[BrowseResult]:
        """
        Browse all categories for `duration` seconds.

        Yields FOUND results as advertisements appear, RESOLVED results as
        addresses arrive and LOST results for goodbye packets. Resolutions
        still in flight when the window closes get up to resolve_timeout
        to finish.
        """
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[BrowseResult] = asyncio.Queue()
        seen: set[tuple[str, AdvertisementCategory]] = set()
        resolutions: set[asyncio.Task] = set()
        browsers: list[AsyncServiceBrowser] = []
        window = {"open": True}

        aiozc = self._zeroconf_factory()

        def _handle_change(
            name: str,
            service_type: str,
            state_change: ServiceStateChange,
        ) -> None:
            if not window["open"]:
                return
            category = AdvertisementCategory.from_service_type(service_type)
            if category is None:
                return
            key = (name, category)

            if state_change is ServiceStateChange.Added:
                if key in seen:
                    return
                seen.add(key)
                queue.put_nowait(BrowseResult(name=name, category=category))
                task = loop.create_task(self._resolve(aiozc, name, category, queue))
                resolutions.add(task)
                task.add_done_callback(resolutions.discard)
            elif state_change is ServiceStateChange.Removed:
                seen.discard(key)
                queue.put_nowait(
                    BrowseResult(name=name, category=category, kind=BrowseKind.LOST)
                )

        def _on_service_state_change(**kwargs) -> None:
            # May run on a zeroconf thread
            loop.call_soon_threadsafe(
                _handle_change,
                kwargs.get("name", ""),
                kwargs.get("service_type", ""),
                kwargs.get("state_change"),
            )

        try:
            for category in categories:
                try:
                    browsers.append(self._browser_factory(
                        aiozc.zeroconf,
                        category.service_type,
                        handlers=[_on_service_state_change],
                    ))
                except Exception as e:
                    logger.error(f"Failed to browse {category.value}: {e}")
            logger.info(f"Browsing {len(browsers)} categories for {duration:g}s")

            deadline = loop.time() + duration
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                try:
                    result = await asyncio.wait_for(queue.get(), timeout=remaining)
                except asyncio.TimeoutError:
                    break
                yield result

            window["open"] = False
            await self._cancel_browsers(browsers)

            in_flight = [t for t in resolutions if not t.done()]
            if in_flight:
                logger.debug(f"Waiting for {len(in_flight)} in-flight resolutions")
                await asyncio.wait(in_flight, timeout=self.resolve_timeout)

            while not queue.empty():
                yield queue.get_nowait()

        finally:
            window["open"] = False
            for task in list(resolutions):
                task.cancel()
            if resolutions:
                await asyncio.gather(*resolutions, return_exceptions=True)
            await self._cancel_browsers(browsers)
            try:
                await aiozc.async_close()
            except Exception as e:
                logger.error(f"Error closing zeroconf: {e}")

    async def _cancel_browsers(self, browsers: list[AsyncServiceBrowser]) -> None:
        while browsers:
            browser = browsers.pop()
            try:
                await browser.async_cancel()
            except Exception as e:
                logger.error(f"Error cancelling browser: {e}")

    async def _resolve(
        self,
        aiozc: AsyncZeroconf,
        name: str,
        category: AdvertisementCategory,
        queue: asyncio.Queue,
    ) -> None:
        """Run one resolution attempt against its timer. Never retries."""
        loop = asyncio.get_running_loop()
        completion: SingleCompletion[Optional[ResolvedEndpoint]] = SingleCompletion(loop)

        attempt = loop.create_task(self._attempt_resolution(aiozc, name, category))

        def _attempt_done(task: asyncio.Task) -> None:
            if task.cancelled():
                return
            if task.exception() is not None:
                logger.debug(f"Resolution failed for {name}: {task.exception()}")
                completion.settle(None)
                return
            completion.settle(task.result())

        attempt.add_done_callback(_attempt_done)
        timer = loop.call_later(self.resolve_timeout, completion.settle, None)

        try:
            endpoint = await completion.wait()
        finally:
            timer.cancel()
            attempt.cancel()

        if endpoint is None:
            logger.debug(f"No address for {name} within {self.resolve_timeout:g}s")
            return

        queue.put_nowait(BrowseResult(
            name=name,
            category=category,
            kind=BrowseKind.RESOLVED,
            address=endpoint.address,
            hostname=endpoint.hostname,
            properties=endpoint.properties,
        ))

    async def _attempt_resolution(
        self,
        aiozc: AsyncZeroconf,
        name: str,
        category: AdvertisementCategory,
    ) -> Optional[ResolvedEndpoint]:
        """
        Fetch the service record and connect to it.

        Returns the peer address of the first connection that reaches an
        established state, the decoded TXT properties and the SRV target host.
        """
        info = AsyncServiceInfo(category.service_type, name)
        if not await info.async_request(aiozc.zeroconf, int(self.resolve_timeout * 1000)):
            return None

        properties = decode_txt_properties(info.properties or {})
        hostname = info.server.rstrip(".") if info.server else None
        if not info.port:
            return None

        # IPv4 first; link-local IPv6 often needs a scope id
        candidates = sorted(info.parsed_addresses(), key=lambda a: ":" in a)
        for candidate in candidates:
            try:
                _, writer = await asyncio.open_connection(candidate, info.port)
            except OSError as e:
                logger.debug(f"Connect to {candidate}:{info.port} failed: {e}")
                continue

            peer = writer.get_extra_info("peername")
            writer.close()
            try:
                await writer.wait_closed()
            except OSError as e:
                logger.debug(f"Error closing probe connection to {candidate}: {e}")
            if peer:
                return ResolvedEndpoint(peer[0], properties, hostname)

        return None
