"""
Type definitions for the device discovery engine.

These dataclasses and enums define the core domain model for advertisement
discovery, identity reconciliation and inventory snapshots.
"""

from __future__ import annotations

import ipaddress
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def now_utc() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(timezone.utc)


def address_sort_key(address: str) -> tuple:
    """Numeric IP ordering; anything unparseable sorts after, by text."""
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return (1, 0, address)
    return (0, ip.version, int(ip))


class AdvertisementCategory(str, Enum):
    """mDNS service types the browser subscribes to."""
    HAP = "_hap._tcp"                        # HomeKit Accessory Protocol (primary)
    HOMEKIT = "_homekit._tcp"                # HomeKit general
    AIRPLAY = "_airplay._tcp"                # Media streaming
    RAOP = "_raop._tcp"                      # Remote Audio Output (legacy AirPlay audio)
    COMPANION_LINK = "_companion-link._tcp"  # Apple ecosystem companion
    SLEEP_PROXY = "_sleep-proxy._udp"        # Network infrastructure

    @property
    def is_strong(self) -> bool:
        """True when an advertisement in this category proves a genuine accessory."""
        return self in (AdvertisementCategory.HAP, AdvertisementCategory.HOMEKIT)

    @property
    def label(self) -> str:
        """Device category label for this advertisement type."""
        if self == AdvertisementCategory.AIRPLAY:
            return "AirPlay Device"
        if self.is_strong:
            return "HomeKit Accessory"
        if self == AdvertisementCategory.COMPANION_LINK:
            return "Apple Device"
        return "Smart Home Device"

    @property
    def service_type(self) -> str:
        """Fully qualified zeroconf service type."""
        return f"{self.value}.local."

    @classmethod
    def from_service_type(cls, service_type: str) -> Optional["AdvertisementCategory"]:
        """Parse "_hap._tcp", "_hap._tcp." or "_hap._tcp.local." into a category."""
        normalized = service_type.strip().rstrip(".")
        if normalized.endswith(".local"):
            normalized = normalized[: -len(".local")]
        for category in cls:
            if category.value == normalized:
                return category
        return None


# Browsed in this order; the first two are the strong categories.
DEFAULT_CATEGORIES: tuple[AdvertisementCategory, ...] = tuple(AdvertisementCategory)


class ScanDepth(str, Enum):
    """Length of the fixed mDNS discovery window."""
    QUICK = "quick"
    STANDARD = "standard"
    DEEP = "deep"

    @property
    def window_seconds(self) -> float:
        return {
            ScanDepth.QUICK: 5.0,
            ScanDepth.STANDARD: 15.0,
            ScanDepth.DEEP: 30.0,
        }[self]


class DiscoveryEventKind(str, Enum):
    """Kinds of entries in the discovery history."""
    DISCOVERED = "discovered"
    UPDATED = "updated"
    DISAPPEARED = "disappeared"


class MergeDecision(str, Enum):
    """Outcome of ingesting one advertisement into the identity set."""
    CREATED = "created"
    UPGRADED = "upgraded"
    ADDRESS_UPDATED = "address_updated"
    IGNORED = "ignored"


class DeviceType(str, Enum):
    """Inventory device classification."""
    IOT = "iot"
    MEDIA = "media"
    COMPUTER = "computer"
    NETWORK = "network"
    UNKNOWN = "unknown"


class ChangeKind(str, Enum):
    """Kinds of change between two snapshots."""
    ADDED = "added"
    REMOVED = "removed"
    PORTS_CHANGED = "ports_changed"
    HOSTNAME_CHANGED = "hostname_changed"
    STATUS_CHANGED = "status_changed"
    BECAME_UNTRUSTED = "became_untrusted"
    BECAME_TRUSTED = "became_trusted"


class ChangeSeverity(str, Enum):
    """Severity of a change event."""
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    ChangeSeverity.INFO: 0,
    ChangeSeverity.WARNING: 1,
    ChangeSeverity.CRITICAL: 2,
}


@dataclass
class DeviceRecord:
    """
    Canonical identity for one advertised device.

    Keyed by canonical advertised name, not address: a device usually
    co-advertises several categories and its address may be unresolved.
    """
    key: str
    display_name: str
    category: AdvertisementCategory
    strong: bool = False
    categories_seen: set[AdvertisementCategory] = field(default_factory=set)
    address: Optional[str] = None
    interface: Optional[str] = None
    hostname: Optional[str] = None
    discovered_at: datetime = field(default_factory=now_utc)
    metadata: dict[str, str] = field(default_factory=dict)

    @property
    def category_label(self) -> str:
        return self.category.label


@dataclass(frozen=True)
class DiscoveryEvent:
    """Append-only history entry."""
    timestamp: datetime
    kind: DiscoveryEventKind
    device_name: str
    address: Optional[str]
    category: AdvertisementCategory


@dataclass
class InventoryDevice:
    """A device in the inventory, enriched with port data and TXT metadata."""
    address: str
    mac_address: Optional[str] = None
    hostname: Optional[str] = None
    manufacturer: Optional[str] = None
    device_type: DeviceType = DeviceType.UNKNOWN
    open_ports: list[int] = field(default_factory=list)
    online: bool = True
    rogue: bool = False

    display_name: Optional[str] = None
    category: Optional[str] = None
    services: set[str] = field(default_factory=set)

    first_seen_at: datetime = field(default_factory=now_utc)
    last_seen_at: datetime = field(default_factory=now_utc)


@dataclass(frozen=True)
class DeviceSnapshot:
    """Lightweight, immutable view of one device inside a snapshot."""
    address: str
    mac_address: Optional[str] = None
    hostname: Optional[str] = None
    manufacturer: Optional[str] = None
    device_type: str = DeviceType.UNKNOWN.value
    open_ports: tuple[int, ...] = ()
    online: bool = True
    rogue: bool = False

    @classmethod
    def from_device(cls, device: InventoryDevice) -> "DeviceSnapshot":
        return cls(
            address=device.address,
            mac_address=device.mac_address,
            hostname=device.hostname,
            manufacturer=device.manufacturer,
            device_type=device.device_type.value,
            open_ports=tuple(sorted(set(device.open_ports))),
            online=device.online,
            rogue=device.rogue,
        )


@dataclass(frozen=True)
class Snapshot:
    """Inventory of devices captured at the end of one scan cycle."""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=now_utc)
    devices: tuple[DeviceSnapshot, ...] = ()
    device_count: int = 0
    online_count: int = 0
    total_open_ports: int = 0
    duration_seconds: float = 0.0

    @classmethod
    def capture(
        cls,
        devices: list[InventoryDevice],
        duration_seconds: float = 0.0,
    ) -> "Snapshot":
        entries = tuple(DeviceSnapshot.from_device(d) for d in devices)
        return cls(
            devices=entries,
            device_count=len(entries),
            online_count=sum(1 for d in entries if d.online),
            total_open_ports=sum(len(d.open_ports) for d in entries),
            duration_seconds=duration_seconds,
        )


@dataclass(frozen=True)
class ChangeEvent:
    """One discrete difference between two snapshots."""
    address: str
    kind: ChangeKind
    detail: str
    severity: ChangeSeverity


# Remote shell / login / desktop-control ports. Newly opened, they raise
# a ports-changed event to warning.
SENSITIVE_PORTS = frozenset({
    22,    # SSH
    23,    # Telnet
    3389,  # RDP
    5900,  # VNC
})

# Targeted port list for accessory enrichment, instead of a full sweep.
ACCESSORY_PORTS: tuple[int, ...] = (
    80,     # HTTP
    443,    # HTTPS
    5000,   # AirPlay control
    7000,   # AirPlay streaming
    8080,   # Alternate HTTP (bridges)
    49152,  # HAP default
)
