"""
In-memory device inventory keyed by address.

This is the baseline the orchestrator builds up during a scan: the browser's
addresses are imported, the port prober fills in open ports, and dns-sd-only
addresses get a minimal synthesized record.
"""

from __future__ import annotations

import logging
from typing import Iterable, Mapping, Optional

from ._types import DeviceType, InventoryDevice, address_sort_key, now_utc

logger = logging.getLogger(__name__)


class DeviceInventory:
    """Address-keyed collection of InventoryDevice records."""

    def __init__(self):
        self._devices: dict[str, InventoryDevice] = {}

    def import_addresses(self, addresses: Iterable[str]) -> int:
        """
        Give every address a baseline record.

        Known addresses are marked online and seen again. Returns the
        number of new records.
        """
        created = 0
        now = now_utc()
        for address in addresses:
            device = self._devices.get(address)
            if device is None:
                self._devices[address] = InventoryDevice(address=address)
                created += 1
            else:
                device.online = True
                device.last_seen_at = now
        logger.debug(f"Imported addresses, {created} new")
        return created

    def apply_ports(self, ports_by_address: Mapping[str, Iterable[int]]) -> int:
        """
        Record probed open ports, replacing what earlier probes found.

        An empty list means the host answered with nothing open. Addresses
        missing from the mapping were not probed and keep their ports.
        Returns the number of devices updated.
        """
        updated = 0
        for address, ports in ports_by_address.items():
            device = self._devices.get(address)
            if device is None:
                logger.debug(f"Port data for unknown address {address}")
                continue
            device.open_ports = sorted(set(ports))
            updated += 1
        return updated

    def synthesize(
        self,
        address: str,
        display_name: Optional[str] = None,
        category: Optional[str] = None,
    ) -> InventoryDevice:
        """Create a minimal record for an address no primary source reported."""
        device = InventoryDevice(
            address=address,
            manufacturer="Apple",
            device_type=DeviceType.IOT,
            online=True,
            display_name=display_name or address,
            category=category or "HomeKit Accessory",
        )
        self._devices[address] = device
        return device

    def get(self, address: str) -> Optional[InventoryDevice]:
        return self._devices.get(address)

    def devices(self) -> list[InventoryDevice]:
        """All devices in numeric address order."""
        return [self._devices[a] for a in sorted(self._devices, key=address_sort_key)]

    def addresses(self) -> set[str]:
        return set(self._devices)

    def replace(self, devices: Iterable[InventoryDevice]) -> None:
        self._devices = {d.address: d for d in devices}

    def clear(self) -> None:
        self._devices.clear()

    def __contains__(self, address: str) -> bool:
        return address in self._devices

    def __len__(self) -> int:
        return len(self._devices)
