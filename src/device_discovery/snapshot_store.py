"""
Bounded snapshot history.

Keeps the most recent snapshots (50 by default, oldest evicted first) and
persists the whole list as one JSON payload under a fixed store name in a
small SQLite key/value table. WAL mode, same as the device database.

The list only changes in capture() and clear(), which the service calls
after a scan cycle completes, so comparisons never see a half-written
history.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, Optional

from ._types import DeviceSnapshot, InventoryDevice, Snapshot
from .diff import Comparison, compare

logger = logging.getLogger(__name__)


SCHEMA = """
CREATE TABLE IF NOT EXISTS snapshot_store (
    store_name TEXT PRIMARY KEY,
    payload TEXT NOT NULL
);
"""


def _iso_format(dt: datetime) -> str:
    return dt.isoformat()


def _parse_datetime(s: str) -> datetime:
    return datetime.fromisoformat(s)


def device_to_dict(device: DeviceSnapshot) -> dict:
    return {
        "address": device.address,
        "mac_address": device.mac_address,
        "hostname": device.hostname,
        "manufacturer": device.manufacturer,
        "device_type": device.device_type,
        "open_ports": list(device.open_ports),
        "online": device.online,
        "rogue": device.rogue,
    }


def snapshot_to_dict(snapshot: Snapshot) -> dict:
    return {
        "id": snapshot.id,
        "created_at": _iso_format(snapshot.created_at),
        "devices": [device_to_dict(d) for d in snapshot.devices],
        "device_count": snapshot.device_count,
        "online_count": snapshot.online_count,
        "total_open_ports": snapshot.total_open_ports,
        "duration_seconds": snapshot.duration_seconds,
    }


def snapshot_from_dict(data: dict) -> Snapshot:
    devices = tuple(
        DeviceSnapshot(
            address=d["address"],
            mac_address=d.get("mac_address"),
            hostname=d.get("hostname"),
            manufacturer=d.get("manufacturer"),
            device_type=d.get("device_type", "unknown"),
            open_ports=tuple(sorted(set(int(p) for p in d.get("open_ports", [])))),
            online=bool(d.get("online", True)),
            rogue=bool(d.get("rogue", False)),
        )
        for d in data.get("devices", [])
    )
    return Snapshot(
        id=data["id"],
        created_at=_parse_datetime(data["created_at"]),
        devices=devices,
        device_count=int(data.get("device_count", len(devices))),
        online_count=int(data.get("online_count", 0)),
        total_open_ports=int(data.get("total_open_ports", 0)),
        duration_seconds=float(data.get("duration_seconds", 0.0)),
    )


class SnapshotStore:
    """Ring of the most recent snapshots, oldest first."""

    def __init__(
        self,
        db_path: Path | str = "/var/lib/device-discovery/snapshots.db",
        store_name: str = "scan-history",
        max_snapshots: int = 50,
    ):
        self.db_path = Path(db_path)
        self.store_name = store_name
        self.max_snapshots = max_snapshots
        self._snapshots: list[Snapshot] = []
        self._ensure_directory()
        self._init_db()
        self._load()

    def _ensure_directory(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def _init_db(self) -> None:
        with self._get_connection() as conn:
            conn.executescript(SCHEMA)
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.commit()

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def _load(self) -> None:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT payload FROM snapshot_store WHERE store_name = ?",
                (self.store_name,)
            ).fetchone()

        if not row:
            return

        try:
            entries = json.loads(row["payload"])
            snapshots = [snapshot_from_dict(entry) for entry in entries]
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            logger.error(f"Corrupt snapshot history in {self.store_name}, starting empty: {e}")
            return

        self._snapshots = snapshots[-self.max_snapshots:]
        logger.info(f"Loaded {len(self._snapshots)} snapshots from {self.db_path}")

    def _persist(self) -> None:
        payload = json.dumps([snapshot_to_dict(s) for s in self._snapshots])
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO snapshot_store (store_name, payload) VALUES (?, ?)
                ON CONFLICT(store_name) DO UPDATE SET payload = excluded.payload
            """, (self.store_name, payload))
            conn.commit()

    def capture(
        self,
        devices: list[InventoryDevice],
        duration_seconds: float = 0.0,
    ) -> Snapshot:
        """Snapshot the device list, evict beyond retention and persist."""
        snapshot = Snapshot.capture(devices, duration_seconds=duration_seconds)
        self._snapshots.append(snapshot)
        if len(self._snapshots) > self.max_snapshots:
            evicted = len(self._snapshots) - self.max_snapshots
            del self._snapshots[:evicted]
            logger.debug(f"Evicted {evicted} old snapshots")
        self._persist()
        logger.info(
            f"Captured snapshot {snapshot.id}: {snapshot.device_count} devices, "
            f"{snapshot.total_open_ports} open ports"
        )
        return snapshot

    def snapshots(self) -> list[Snapshot]:
        return list(self._snapshots)

    def get(self, snapshot_id: str) -> Optional[Snapshot]:
        for snapshot in self._snapshots:
            if snapshot.id == snapshot_id:
                return snapshot
        return None

    def latest(self) -> Optional[Snapshot]:
        return self._snapshots[-1] if self._snapshots else None

    def previous(self) -> Optional[Snapshot]:
        """The snapshot before the latest one."""
        return self._snapshots[-2] if len(self._snapshots) >= 2 else None

    def between(self, start: datetime, end: datetime) -> list[Snapshot]:
        """Snapshots created within [start, end]."""
        return [s for s in self._snapshots if start <= s.created_at <= end]

    def compare(self, from_id: str, to_id: str) -> Optional[Comparison]:
        """Compare two stored snapshots. None if either id is unknown."""
        before = self.get(from_id)
        after = self.get(to_id)
        if before is None or after is None:
            return None
        return compare(before, after)

    def compare_latest(self) -> Optional[Comparison]:
        """Compare the previous snapshot with the latest one."""
        before = self.previous()
        after = self.latest()
        if before is None or after is None:
            return None
        return compare(before, after)

    def clear(self) -> None:
        self._snapshots.clear()
        self._persist()
        logger.info(f"Cleared snapshot history {self.store_name}")

    def __len__(self) -> int:
        return len(self._snapshots)
