"""
Device Discovery - multi-source HomeKit / Apple device discovery.

Finds accessories on the local network through several unreliable sources
(mDNS advertisement browsing, dns-sd lookups, a targeted port probe),
reconciles what they report into one deduplicated identity set, and keeps
a bounded history of inventory snapshots that can be compared into a
severity-ranked change report.

Sovereignty:
    - Snapshot history stored locally in /var/lib/device-discovery/snapshots.db
    - Passive discovery plus a connect probe on six accessory ports
"""

__version__ = "1.0.0"

from ._types import (
    AdvertisementCategory,
    ChangeEvent,
    ChangeKind,
    ChangeSeverity,
    DeviceRecord,
    DeviceSnapshot,
    DeviceType,
    DiscoveryEvent,
    DiscoveryEventKind,
    InventoryDevice,
    MergeDecision,
    ScanDepth,
    Snapshot,
)

__all__ = [
    "__version__",
    "AdvertisementCategory",
    "ChangeEvent",
    "ChangeKind",
    "ChangeSeverity",
    "DeviceRecord",
    "DeviceSnapshot",
    "DeviceType",
    "DiscoveryEvent",
    "DiscoveryEventKind",
    "InventoryDevice",
    "MergeDecision",
    "ScanDepth",
    "Snapshot",
]
