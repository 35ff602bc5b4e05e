"""
Identity reconciliation for streamed discovery results.

One physical device usually co-advertises several categories (an Apple TV
shows up as _airplay, _raop, _companion-link and _hap) and its address may
not resolve every time. Records are therefore keyed by canonical advertised
name, not by address.

Merge policy is upgrade-only:
- unknown key: create the record, emit "discovered"
- strong category arriving for a weak record: replace it, emit "updated"
- same strength with a new address: update the address in place
- anything weaker: may only fill gaps (missing address, hostname or TXT
  keys), never overwrite and never emit

The upgrade keeps what the weak record knew, underneath the strong
signal's own values. Together with gap-filling this makes the final record
for a key depend only on the set of signals seen, not their arrival order.

All mutation happens on the event loop through this object's methods.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Collection, Mapping, Optional

from ._types import (
    AdvertisementCategory,
    DeviceRecord,
    DiscoveryEvent,
    DiscoveryEventKind,
    MergeDecision,
    now_utc,
)
from .metadata import decode_dns_escapes

logger = logging.getLogger(__name__)

UNNAMED_DEVICE = "Unnamed Device"


def canonical_name(name: str) -> str:
    """
    Derive the identity key from an advertised service name.

    "Eve\\032Energy._hap._tcp.local." -> "Eve Energy"
    """
    text = name.strip().rstrip(".")
    if text.endswith(".local"):
        text = text[: -len(".local")]
    for category in AdvertisementCategory:
        suffix = f".{category.value}"
        if text.endswith(suffix):
            text = text[: -len(suffix)]
            break
    text = decode_dns_escapes(text.rstrip(".")).strip()
    return text or UNNAMED_DEVICE


class IdentityResolver:
    """Deduplicated device identity set plus its discovery history."""

    def __init__(self, max_history: Optional[int] = None):
        """
        Args:
            max_history: Keep at most this many events, dropping the
                oldest. None keeps everything.
        """
        self.max_history = max_history
        self._records: dict[str, DeviceRecord] = {}
        self._history: list[DiscoveryEvent] = []

    def ingest(
        self,
        name: str,
        category: AdvertisementCategory,
        address: Optional[str] = None,
        interface: Optional[str] = None,
        metadata: Optional[Mapping[str, str]] = None,
        hostname: Optional[str] = None,
    ) -> MergeDecision:
        """Merge one advertisement into the identity set."""
        key = canonical_name(name)
        existing = self._records.get(key)

        if existing is None:
            record = DeviceRecord(
                key=key,
                display_name=key,
                category=category,
                strong=category.is_strong,
                categories_seen={category},
                address=address,
                interface=interface,
                hostname=hostname,
                metadata=dict(metadata or {}),
            )
            self._records[key] = record
            self._emit(DiscoveryEventKind.DISCOVERED, record)
            logger.info(f"Discovered {key} ({category.value}) at {address or 'unresolved'}")
            return MergeDecision.CREATED

        existing.categories_seen.add(category)

        if category.is_strong and not existing.strong:
            record = DeviceRecord(
                key=key,
                display_name=key,
                category=category,
                strong=True,
                categories_seen=existing.categories_seen,
                address=address or existing.address,
                interface=interface or existing.interface,
                hostname=hostname or existing.hostname,
                metadata={**existing.metadata, **(metadata or {})},
            )
            self._records[key] = record
            self._emit(DiscoveryEventKind.UPDATED, record)
            logger.info(f"Upgraded {key} to {category.value}")
            return MergeDecision.UPGRADED

        if category.is_strong == existing.strong and address and address != existing.address:
            logger.debug(f"Address for {key}: {existing.address} -> {address}")
            existing.address = address
            existing.interface = interface or existing.interface
            existing.hostname = hostname or existing.hostname
            _fill_metadata(existing, metadata)
            return MergeDecision.ADDRESS_UPDATED

        if _fill_gaps(existing, address, interface, hostname, metadata):
            logger.debug(f"Address for {key} filled by {category.value}: {address}")
            return MergeDecision.ADDRESS_UPDATED
        return MergeDecision.IGNORED

    def resolve_address(
        self,
        name: str,
        address: str,
        metadata: Optional[Mapping[str, str]] = None,
        category: Optional[AdvertisementCategory] = None,
        hostname: Optional[str] = None,
    ) -> bool:
        """
        Record a successful address resolution in place. Emits no event.

        When the resolving category is known and weaker than the record,
        it may only fill what is still missing.
        """
        record = self._records.get(canonical_name(name))
        if record is None or not address:
            return False

        if category is not None and record.strong and not category.is_strong:
            return _fill_gaps(record, address, None, hostname, metadata)

        record.address = address
        record.hostname = hostname or record.hostname
        if metadata:
            record.metadata.update(metadata)
        return True

    def mark_disappeared(self, name: str, category: AdvertisementCategory) -> bool:
        """
        Handle a goodbye for (name, category).

        The record is dropped only when its own category went away;
        losing a co-advertised category just forgets that category.
        """
        key = canonical_name(name)
        record = self._records.get(key)
        if record is None:
            return False

        if record.category != category:
            record.categories_seen.discard(category)
            return False

        del self._records[key]
        self._emit(DiscoveryEventKind.DISAPPEARED, record)
        logger.info(f"{key} disappeared ({category.value})")
        return True

    def get(self, name: str) -> Optional[DeviceRecord]:
        return self._records.get(canonical_name(name))

    def records(self) -> list[DeviceRecord]:
        return list(self._records.values())

    def by_address(self, keys: Optional[Collection[str]] = None) -> dict[str, DeviceRecord]:
        """
        Resolved records keyed by address. Strong records win collisions.

        With `keys`, only those records take part.
        """
        result: dict[str, DeviceRecord] = {}
        for record in self._records.values():
            if record.address is None or (keys is not None and record.key not in keys):
                continue
            current = result.get(record.address)
            if current is None or (record.strong and not current.strong):
                result[record.address] = record
        return result

    def addresses(self) -> set[str]:
        return {r.address for r in self._records.values() if r.address}

    def services_for(self, address: str, keys: Optional[Collection[str]] = None) -> list[str]:
        """Every advertised service type seen at an address."""
        services: dict[str, set[str]] = defaultdict(set)
        for record in self._records.values():
            if record.address and (keys is None or record.key in keys):
                services[record.address].update(c.value for c in record.categories_seen)
        return sorted(services.get(address, ()))

    def events(self) -> list[DiscoveryEvent]:
        """History, most recent first."""
        return list(reversed(self._history))

    def clear(self) -> None:
        self._records.clear()
        self._history.clear()

    def __len__(self) -> int:
        return len(self._records)

    def _emit(self, kind: DiscoveryEventKind, record: DeviceRecord) -> None:
        self._history.append(DiscoveryEvent(
            timestamp=now_utc(),
            kind=kind,
            device_name=record.display_name,
            address=record.address,
            category=record.category,
        ))
        if self.max_history is not None and len(self._history) > self.max_history:
            del self._history[: len(self._history) - self.max_history]


def _fill_metadata(record: DeviceRecord, metadata: Optional[Mapping[str, str]]) -> None:
    for key, value in (metadata or {}).items():
        record.metadata.setdefault(key, value)


def _fill_gaps(
    record: DeviceRecord,
    address: Optional[str],
    interface: Optional[str],
    hostname: Optional[str],
    metadata: Optional[Mapping[str, str]],
) -> bool:
    """Fill only what the record lacks. Returns True if the address was filled."""
    filled = False
    if address and record.address is None:
        record.address = address
        record.interface = interface or record.interface
        filled = True
    if hostname and record.hostname is None:
        record.hostname = hostname
    _fill_metadata(record, metadata)
    return filled
