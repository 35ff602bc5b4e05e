"""
Phased discovery pipeline.

    1. browse     mDNS browse window, results merged by IdentityResolver
    2. import     browsed addresses get baseline inventory records
    3. enrich     targeted port probe against every known address
    4. secondary  dns-sd browse + per-name lookups
    5. union      addresses seen only by dns-sd get a synthesized record
    6. finalize   TXT metadata and trust flags applied, devices from earlier
                  scans not seen this time kept as offline, list published

Each phase reports progress inside its own band of the 0-1 range. A phase
that fails or finds nothing contributes an empty set; the pipeline always
reaches finalize and always returns a device list.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable, Optional, Sequence

from ._types import (
    ACCESSORY_PORTS,
    DEFAULT_CATEGORIES,
    AdvertisementCategory,
    InventoryDevice,
    ScanDepth,
    address_sort_key,
    now_utc,
)
from .discovery.base import DiscoveredService, DiscoveryMethod, PortProber
from .discovery.mdns_browser import BrowseKind, BrowseResult, ServiceDiscoveryBrowser
from .identity import IdentityResolver, canonical_name
from .inventory import DeviceInventory
from .metadata import AccessoryMetadata

logger = logging.getLogger(__name__)


PHASES: tuple[tuple[str, float, float], ...] = (
    ("browse", 0.00, 0.25),
    ("import", 0.25, 0.40),
    ("enrich", 0.40, 0.60),
    ("secondary", 0.60, 0.75),
    ("union", 0.75, 0.85),
    ("finalize", 0.85, 1.00),
)


@dataclass(frozen=True)
class ScanProgress:
    """Overall progress fraction plus a human-readable status line."""
    fraction: float
    status: str
    phase: str


@dataclass
class DiscoveryResult:
    """Outcome of one pipeline run."""
    devices: list[InventoryDevice] = field(default_factory=list)
    status: str = ""
    errors: list[str] = field(default_factory=list)
    browse_addresses: set[str] = field(default_factory=set)
    probed_addresses: set[str] = field(default_factory=set)
    dnssd_addresses: set[str] = field(default_factory=set)
    started_at: datetime = field(default_factory=now_utc)
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return not self.errors

    @property
    def online_devices(self) -> list[InventoryDevice]:
        """Devices seen by this scan; the rest are carried over as offline."""
        return [d for d in self.devices if d.online]


ProgressCallback = Callable[[ScanProgress], None]
DevicesCallback = Callable[[list[InventoryDevice]], None]


class DiscoveryOrchestrator:
    """
    Runs the discovery pipeline over explicitly supplied collaborators.

    Progress and the final device list are delivered to subscribers;
    a failing subscriber is logged and never affects the scan.
    """

    def __init__(
        self,
        browser: ServiceDiscoveryBrowser,
        resolver: IdentityResolver,
        inventory: DeviceInventory,
        port_prober: Optional[PortProber] = None,
        secondary: Optional[DiscoveryMethod] = None,
        categories: Sequence[AdvertisementCategory] = DEFAULT_CATEGORIES,
        depth: ScanDepth = ScanDepth.STANDARD,
        enrichment_ports: Sequence[int] = ACCESSORY_PORTS,
        trusted_devices: Iterable[str] = (),
    ):
        self.browser = browser
        self.resolver = resolver
        self.inventory = inventory
        self.port_prober = port_prober
        self.secondary = secondary
        self.categories = list(categories)
        self.depth = depth
        self.enrichment_ports = list(enrichment_ports)
        self.trusted_devices = set(trusted_devices)

        self._progress_callbacks: list[ProgressCallback] = []
        self._device_callbacks: list[DevicesCallback] = []
        self._progress = ScanProgress(fraction=0.0, status="Idle", phase="idle")

    @property
    def progress(self) -> ScanProgress:
        return self._progress

    def subscribe_progress(self, callback: ProgressCallback) -> Callable[[], None]:
        """Register a progress callback. Returns an unsubscribe function."""
        return self._subscribe(self._progress_callbacks, callback)

    def subscribe_devices(self, callback: DevicesCallback) -> Callable[[], None]:
        """Register a callback for the published device list."""
        return self._subscribe(self._device_callbacks, callback)

    @staticmethod
    def _subscribe(callbacks: list, callback: Callable) -> Callable[[], None]:
        callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in callbacks:
                callbacks.remove(callback)

        return unsubscribe

    async def run(self, depth: Optional[ScanDepth] = None) -> DiscoveryResult:
        """Run all six phases. Never raises for source failures."""
        depth = depth or self.depth
        loop = asyncio.get_running_loop()
        started = loop.time()
        result = DiscoveryResult()
        self._progress = ScanProgress(fraction=0.0, status="Starting discovery", phase="browse")

        # Phase 1: browse
        self._report(0, 0.0, f"Phase 1/6: Browsing {len(self.categories)} service types...")
        keys: set[str] = set()
        try:
            keys = await self._browse(depth)
        except Exception as e:
            self._record_error(result, "browse", e)
        records = [r for r in self.resolver.records() if r.key in keys]
        result.browse_addresses = {r.address for r in records if r.address}
        self._report(0, 1.0, f"Phase 1/6: Found {len(records)} advertised devices")

        # Phase 2: import into inventory
        self._report(1, 0.0, "Phase 2/6: Importing discovered addresses...")
        try:
            created = self.inventory.import_addresses(sorted(result.browse_addresses, key=address_sort_key))
            logger.info(f"Imported {len(result.browse_addresses)} addresses ({created} new)")
        except Exception as e:
            self._record_error(result, "import", e)
        self._report(1, 1.0, f"Phase 2/6: Imported {len(result.browse_addresses)} addresses")

        # Phase 3: port enrichment
        self._report(2, 0.0, "Phase 3/6: Probing accessory ports...")
        try:
            result.probed_addresses = await self._enrich(result.browse_addresses)
        except Exception as e:
            self._record_error(result, "enrich", e)
        self._report(2, 1.0, f"Phase 3/6: Open ports on {len(result.probed_addresses)} devices")

        # Phase 4: secondary dns-sd discovery
        self._report(3, 0.0, "Phase 4/6: Running dns-sd discovery...")
        services: dict[str, DiscoveredService] = {}
        try:
            services = await self._discover_secondary()
        except Exception as e:
            self._record_error(result, "secondary", e)
        result.dnssd_addresses = set(services)
        self._report(3, 1.0, f"Phase 4/6: Found {len(services)} devices via dns-sd")

        # Phase 5: union
        self._report(4, 0.0, "Phase 5/6: Combining discovery results...")
        all_addresses = result.browse_addresses | result.dnssd_addresses
        try:
            self._union(result.browse_addresses, services)
        except Exception as e:
            self._record_error(result, "union", e)
        self._report(4, 1.0, f"Phase 5/6: Combined {len(all_addresses)} unique devices")

        # Phase 6: finalize
        self._report(5, 0.0, "Phase 6/6: Enriching device metadata...")
        try:
            result.devices = self._finalize(all_addresses, keys, services)
        except Exception as e:
            self._record_error(result, "finalize", e)
            result.devices = [
                d for d in (self.inventory.get(a) for a in sorted(all_addresses, key=address_sort_key))
                if d is not None
            ]

        result.duration_seconds = loop.time() - started
        if result.errors:
            result.status = f"Discovery completed with errors ({'; '.join(result.errors)})"
        else:
            result.status = f"Discovery complete - {len(result.online_devices)} devices found"

        self._notify(self._device_callbacks, list(result.devices))
        self._report(5, 1.0, result.status)
        logger.info(f"{result.status} in {result.duration_seconds:.1f}s")
        return result

    async def _browse(self, depth: ScanDepth) -> set[str]:
        """Merge one browse window into the resolver. Returns keys touched."""
        loop = asyncio.get_running_loop()
        window = depth.window_seconds
        started = loop.time()
        keys: set[str] = set()

        async for browse_result in self.browser.browse(self.categories, window):
            self._apply(browse_result, keys)
            elapsed = loop.time() - started
            self._report(0, elapsed / window if window else 1.0, "Phase 1/6: Browsing...")

        return keys

    def _apply(self, browse_result: BrowseResult, keys: set[str]) -> None:
        key = canonical_name(browse_result.name)

        if browse_result.kind is BrowseKind.LOST:
            if self.resolver.mark_disappeared(browse_result.name, browse_result.category):
                keys.discard(key)
            return

        if browse_result.kind is BrowseKind.RESOLVED and browse_result.address:
            if self.resolver.resolve_address(
                browse_result.name,
                browse_result.address,
                metadata=browse_result.properties,
                category=browse_result.category,
                hostname=browse_result.hostname,
            ):
                keys.add(key)
                return

        self.resolver.ingest(
            browse_result.name,
            browse_result.category,
            address=browse_result.address,
            interface=browse_result.interface,
            metadata=browse_result.properties,
            hostname=browse_result.hostname,
        )
        keys.add(key)

    async def _enrich(self, addresses: set[str]) -> set[str]:
        if self.port_prober is None or not addresses:
            return set()
        if not await self.port_prober.is_available():
            logger.warning(f"Port prober {self.port_prober.name} not available")
            return set()

        ports = await self.port_prober.probe(
            sorted(addresses, key=address_sort_key),
            self.enrichment_ports,
        )
        self.inventory.apply_ports(ports)
        return {address for address, open_ports in ports.items() if open_ports}

    async def _discover_secondary(self) -> dict[str, DiscoveredService]:
        if self.secondary is None:
            return {}
        if not await self.secondary.is_available():
            logger.warning(f"Discovery method {self.secondary.name} not available")
            return {}

        services: dict[str, DiscoveredService] = {}
        for service in await self.secondary.discover():
            services.setdefault(service.address, service)
        return services

    def _union(self, browse_addresses: set[str], services: dict[str, DiscoveredService]) -> None:
        for address in sorted(set(services) - browse_addresses, key=address_sort_key):
            if address in self.inventory:
                self.inventory.import_addresses([address])
                continue
            service = services[address]
            metadata = AccessoryMetadata.from_txt(address, service.txt)
            self.inventory.synthesize(
                address,
                display_name=metadata.model or service.name,
                category=metadata.category if metadata.category_id else None,
            )
            logger.debug(f"{address} seen only by {service.source or 'secondary'}")

    def _finalize(
        self,
        addresses: set[str],
        keys: set[str],
        services: dict[str, DiscoveredService],
    ) -> list[InventoryDevice]:
        by_address = self.resolver.by_address(keys)

        devices: list[InventoryDevice] = []
        now = now_utc()
        for address in sorted(addresses, key=address_sort_key):
            device = self.inventory.get(address)
            if device is None:
                continue

            # Names, categories and services come from this scan only
            record = by_address.get(address)
            service = services.get(address)
            txt: dict[str, str] = {}
            hostname: Optional[str] = None
            if record is not None:
                txt.update(record.metadata)
                device.display_name = record.display_name
                device.category = record.category_label
                device.services = set(self.resolver.services_for(address, keys))
                hostname = record.hostname
            else:
                device.services = set()
            if service is not None:
                txt.update(service.txt)
                device.services.add(service.category.value)
                hostname = hostname or service.hostname
                if record is None:
                    device.display_name = service.name
                    device.category = service.category.label

            metadata = AccessoryMetadata.from_txt(address, txt)
            if metadata.model:
                device.display_name = metadata.display_name
            if metadata.category_id:
                device.category = metadata.category
            if hostname:
                device.hostname = hostname

            if self.trusted_devices:
                device.rogue = address not in self.trusted_devices

            device.online = True
            device.last_seen_at = now
            devices.append(device)

        for device in self.inventory.devices():
            if device.address in addresses:
                continue
            if device.online:
                logger.info(f"{device.address} not seen this scan, marking offline")
            device.online = False
            devices.append(device)

        devices.sort(key=lambda d: address_sort_key(d.address))
        self.inventory.replace(devices)
        return devices

    def _report(self, phase_index: int, within: float, status: str) -> None:
        phase, low, high = PHASES[phase_index]
        within = min(max(within, 0.0), 1.0)
        fraction = max(low + (high - low) * within, self._progress.fraction)
        self._progress = ScanProgress(fraction=round(fraction, 4), status=status, phase=phase)
        self._notify(self._progress_callbacks, self._progress)

    def _notify(self, callbacks: list, value) -> None:
        for callback in list(callbacks):
            try:
                callback(value)
            except Exception as e:
                logger.error(f"Error in subscriber callback: {e}")

    def _record_error(self, result: DiscoveryResult, phase: str, error: Exception) -> None:
        logger.error(f"Error in {phase} phase: {error}")
        result.errors.append(f"{phase}: {error}")
