"""
Snapshot comparison.

Devices are matched by address. Every check on a matched pair is
independent, so one device can produce several change events. Events are
ordered by address (numeric IP order) and then stable-sorted so the most
severe come first.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterator

from ._types import (
    SENSITIVE_PORTS,
    ChangeEvent,
    ChangeKind,
    ChangeSeverity,
    DeviceSnapshot,
    Snapshot,
    address_sort_key,
)

logger = logging.getLogger(__name__)


def _by_address(snapshot: Snapshot) -> dict[str, DeviceSnapshot]:
    return {device.address: device for device in snapshot.devices}


def _join(ports: set[int]) -> str:
    return ", ".join(str(p) for p in sorted(ports))


def _device_changes(
    address: str,
    before: DeviceSnapshot,
    after: DeviceSnapshot,
) -> Iterator[ChangeEvent]:
    old_ports = set(before.open_ports)
    new_ports = set(after.open_ports)
    if old_ports != new_ports:
        added = new_ports - old_ports
        removed = old_ports - new_ports
        parts = []
        if added:
            parts.append(f"Added {_join(added)}")
        if removed:
            parts.append(f"Removed {_join(removed)}")
        yield ChangeEvent(
            address=address,
            kind=ChangeKind.PORTS_CHANGED,
            detail=f"Ports changed: {'; '.join(parts)}",
            severity=ChangeSeverity.WARNING if added & SENSITIVE_PORTS else ChangeSeverity.INFO,
        )

    if before.hostname != after.hostname:
        yield ChangeEvent(
            address=address,
            kind=ChangeKind.HOSTNAME_CHANGED,
            detail=f"Hostname changed: '{before.hostname or 'none'}' -> '{after.hostname or 'none'}'",
            severity=ChangeSeverity.INFO,
        )

    if before.online != after.online:
        yield ChangeEvent(
            address=address,
            kind=ChangeKind.STATUS_CHANGED,
            detail="Device came online" if after.online else "Device went offline",
            severity=ChangeSeverity.INFO if after.online else ChangeSeverity.WARNING,
        )

    if not before.rogue and after.rogue:
        yield ChangeEvent(
            address=address,
            kind=ChangeKind.BECAME_UNTRUSTED,
            detail="Device flagged as rogue (previously trusted)",
            severity=ChangeSeverity.CRITICAL,
        )
    elif before.rogue and not after.rogue:
        yield ChangeEvent(
            address=address,
            kind=ChangeKind.BECAME_TRUSTED,
            detail="Device now trusted (was rogue)",
            severity=ChangeSeverity.INFO,
        )


def compare(before: Snapshot, after: Snapshot) -> "Comparison":
    """Compute the change report from `before` to `after`."""
    old = _by_address(before)
    new = _by_address(after)

    changes: list[ChangeEvent] = []
    for address in sorted(old.keys() | new.keys(), key=address_sort_key):
        previous = old.get(address)
        current = new.get(address)

        if previous is None:
            changes.append(ChangeEvent(
                address=address,
                kind=ChangeKind.ADDED,
                detail=f"New device discovered: {current.hostname or address}",
                severity=ChangeSeverity.WARNING if current.rogue else ChangeSeverity.INFO,
            ))
        elif current is None:
            changes.append(ChangeEvent(
                address=address,
                kind=ChangeKind.REMOVED,
                detail=f"Device left network: {previous.hostname or address}",
                severity=ChangeSeverity.INFO,
            ))
        else:
            changes.extend(_device_changes(address, previous, current))

    changes.sort(key=lambda c: c.severity.rank, reverse=True)
    logger.debug(f"Compared {before.id} -> {after.id}: {len(changes)} changes")
    return Comparison(before=before, after=after, changes=tuple(changes))


@dataclass(frozen=True)
class Comparison:
    """
    Two snapshots plus the changes between them.

    The device views are computed from the snapshots and the change list
    each time they are read.
    """
    before: Snapshot
    after: Snapshot
    changes: tuple[ChangeEvent, ...] = ()

    @property
    def new_devices(self) -> list[DeviceSnapshot]:
        old = _by_address(self.before)
        return [d for d in self._ordered(self.after) if d.address not in old]

    @property
    def removed_devices(self) -> list[DeviceSnapshot]:
        new = _by_address(self.after)
        return [d for d in self._ordered(self.before) if d.address not in new]

    @property
    def modified_devices(self) -> list[DeviceSnapshot]:
        old = _by_address(self.before)
        changed = self.changed_addresses
        return [
            d for d in self._ordered(self.after)
            if d.address in old and d.address in changed
        ]

    @property
    def unchanged_devices(self) -> list[DeviceSnapshot]:
        changed = self.changed_addresses
        return [d for d in self._ordered(self.after) if d.address not in changed]

    @property
    def changed_addresses(self) -> set[str]:
        return {c.address for c in self.changes}

    @property
    def has_changes(self) -> bool:
        return bool(self.changes)

    def changes_at_least(self, severity: ChangeSeverity) -> list[ChangeEvent]:
        return [c for c in self.changes if c.severity.rank >= severity.rank]

    def summary(self) -> dict:
        """Counts per view, kind and severity."""
        by_kind: dict[str, int] = {}
        by_severity = {s.value: 0 for s in ChangeSeverity}
        for change in self.changes:
            by_kind[change.kind.value] = by_kind.get(change.kind.value, 0) + 1
            by_severity[change.severity.value] += 1

        return {
            "from": self.before.id,
            "to": self.after.id,
            "new": len(self.new_devices),
            "removed": len(self.removed_devices),
            "modified": len(self.modified_devices),
            "unchanged": len(self.unchanged_devices),
            "total_changes": len(self.changes),
            "by_kind": by_kind,
            "by_severity": by_severity,
            "highest_severity": self.changes[0].severity.value if self.changes else None,
        }

    @staticmethod
    def _ordered(snapshot: Snapshot) -> list[DeviceSnapshot]:
        return sorted(snapshot.devices, key=lambda d: address_sort_key(d.address))
