"""
Device discovery configuration.

Loaded from environment variables or a YAML file. Scanning is passive
(mDNS browsing) plus a targeted connect probe against a handful of
accessory ports, so there are no credentials to configure.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from ._types import (
    ACCESSORY_PORTS,
    DEFAULT_CATEGORIES,
    AdvertisementCategory,
    ScanDepth,
)

logger = logging.getLogger(__name__)


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _parse_categories(values: list[str]) -> list[AdvertisementCategory]:
    categories = []
    for value in values:
        category = AdvertisementCategory.from_service_type(str(value))
        if category is None:
            logger.warning(f"Ignoring unknown advertisement category: {value}")
            continue
        if category not in categories:
            categories.append(category)
    return categories


@dataclass
class DiscoveryConfig:
    """Device discovery configuration."""

    # Advertisement browsing
    categories: list[AdvertisementCategory] = field(
        default_factory=lambda: list(DEFAULT_CATEGORIES)
    )
    scan_depth: ScanDepth = ScanDepth.STANDARD
    resolve_timeout_seconds: float = 5.0

    # Port enrichment (connect probe against accessory ports only)
    enable_port_enrichment: bool = True
    enrichment_ports: list[int] = field(default_factory=lambda: list(ACCESSORY_PORTS))
    port_probe_host_timeout_seconds: int = 10

    # Secondary dns-sd discovery
    enable_dnssd_discovery: bool = True
    dnssd_command: str = "/usr/bin/dns-sd"
    dnssd_browse_timeout_seconds: float = 10.0
    dnssd_lookup_timeout_seconds: float = 2.0
    dnssd_max_lookups: int = 50
    dnssd_max_concurrent_lookups: int = 8

    # Snapshot history
    snapshot_db_path: Path = field(
        default_factory=lambda: Path("/var/lib/device-discovery/snapshots.db")
    )
    snapshot_store_name: str = "scan-history"
    max_snapshots: int = 50

    # Addresses considered trusted; everything else is flagged rogue.
    # Empty list disables rogue flagging.
    trusted_devices: list[str] = field(default_factory=list)

    # API server
    api_host: str = "127.0.0.1"
    api_port: int = 8083

    # Logging
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "DiscoveryConfig":
        """Load configuration from environment variables."""
        config = cls()

        if categories := os.getenv("DISCOVERY_CATEGORIES"):
            config.categories = _parse_categories(
                [c.strip() for c in categories.split(",") if c.strip()]
            )
        if depth := os.getenv("SCAN_DEPTH"):
            config.scan_depth = ScanDepth(depth.strip().lower())
        config.resolve_timeout_seconds = float(os.getenv("RESOLVE_TIMEOUT", "5"))

        config.enable_port_enrichment = _parse_bool(os.getenv("ENABLE_PORT_ENRICHMENT", "true"))
        if ports := os.getenv("ENRICHMENT_PORTS"):
            config.enrichment_ports = [int(p.strip()) for p in ports.split(",") if p.strip()]
        config.port_probe_host_timeout_seconds = int(os.getenv("PORT_PROBE_HOST_TIMEOUT", "10"))

        config.enable_dnssd_discovery = _parse_bool(os.getenv("ENABLE_DNSSD", "true"))
        config.dnssd_command = os.getenv("DNSSD_COMMAND", config.dnssd_command)
        config.dnssd_browse_timeout_seconds = float(os.getenv("DNSSD_BROWSE_TIMEOUT", "10"))
        config.dnssd_lookup_timeout_seconds = float(os.getenv("DNSSD_LOOKUP_TIMEOUT", "2"))
        config.dnssd_max_lookups = int(os.getenv("DNSSD_MAX_LOOKUPS", "50"))
        config.dnssd_max_concurrent_lookups = int(os.getenv("DNSSD_MAX_CONCURRENT", "8"))

        if db_path := os.getenv("SNAPSHOT_DB_PATH"):
            config.snapshot_db_path = Path(db_path)
        config.snapshot_store_name = os.getenv("SNAPSHOT_STORE_NAME", config.snapshot_store_name)
        config.max_snapshots = int(os.getenv("MAX_SNAPSHOTS", "50"))

        if trusted := os.getenv("TRUSTED_DEVICES"):
            config.trusted_devices = [t.strip() for t in trusted.split(",") if t.strip()]

        config.api_host = os.getenv("API_HOST", "127.0.0.1")
        config.api_port = int(os.getenv("API_PORT", "8083"))

        config.log_level = os.getenv("LOG_LEVEL", "INFO")

        return config

    @classmethod
    def from_yaml(cls, path: Path) -> "DiscoveryConfig":
        """Load configuration from YAML file."""
        if not path.exists():
            logger.warning(f"Config file not found: {path}, using defaults")
            return cls()

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        config = cls()

        if "browse" in data:
            b = data["browse"]
            if "categories" in b:
                config.categories = _parse_categories(b["categories"] or [])
            if "depth" in b:
                config.scan_depth = ScanDepth(str(b["depth"]).lower())
            config.resolve_timeout_seconds = float(b.get("resolve_timeout", 5.0))

        if "port_enrichment" in data:
            p = data["port_enrichment"]
            config.enable_port_enrichment = p.get("enabled", True)
            if "ports" in p:
                config.enrichment_ports = [int(port) for port in p["ports"]]
            config.port_probe_host_timeout_seconds = int(p.get("host_timeout", 10))

        if "dnssd" in data:
            d = data["dnssd"]
            config.enable_dnssd_discovery = d.get("enabled", True)
            config.dnssd_command = d.get("command", config.dnssd_command)
            config.dnssd_browse_timeout_seconds = float(d.get("browse_timeout", 10.0))
            config.dnssd_lookup_timeout_seconds = float(d.get("lookup_timeout", 2.0))
            config.dnssd_max_lookups = int(d.get("max_lookups", 50))
            config.dnssd_max_concurrent_lookups = int(d.get("max_concurrent", 8))

        if "snapshots" in data:
            s = data["snapshots"]
            if "db" in s:
                config.snapshot_db_path = Path(s["db"])
            config.snapshot_store_name = s.get("store_name", config.snapshot_store_name)
            config.max_snapshots = int(s.get("max_snapshots", 50))

        if "trusted_devices" in data:
            config.trusted_devices = [str(t) for t in data["trusted_devices"] or []]

        if "api" in data:
            a = data["api"]
            config.api_host = a.get("host", "127.0.0.1")
            config.api_port = a.get("port", 8083)

        config.log_level = data.get("log_level", "INFO")

        return config

    def validate(self) -> list[str]:
        """Validate configuration, returning list of errors."""
        errors = []

        if not self.categories:
            errors.append("No advertisement categories configured")

        if self.resolve_timeout_seconds <= 0:
            errors.append(f"Invalid resolve timeout: {self.resolve_timeout_seconds}")

        if self.enable_port_enrichment:
            if not self.enrichment_ports:
                errors.append("Port enrichment enabled but no ports configured")
            for port in self.enrichment_ports:
                if port < 1 or port > 65535:
                    errors.append(f"Invalid enrichment port: {port}")

        if self.dnssd_max_lookups < 0:
            errors.append(f"Invalid dns-sd lookup cap: {self.dnssd_max_lookups}")
        if self.dnssd_max_concurrent_lookups < 1:
            errors.append(
                f"Invalid dns-sd lookup concurrency: {self.dnssd_max_concurrent_lookups}"
            )

        if self.max_snapshots < 1:
            errors.append(f"CRITICAL: Snapshot retention must be positive: {self.max_snapshots}")

        if self.api_port < 1 or self.api_port > 65535:
            errors.append(f"Invalid API port: {self.api_port}")

        return errors


# Example discovery_config.yaml:
"""
# /var/lib/device-discovery/config.yaml

browse:
  categories:
    - "_hap._tcp"
    - "_homekit._tcp"
    - "_airplay._tcp"
  depth: standard
  resolve_timeout: 5

port_enrichment:
  enabled: true
  ports: [80, 443, 5000, 7000, 8080, 49152]
  host_timeout: 10

dnssd:
  enabled: true
  command: "/usr/bin/dns-sd"
  browse_timeout: 10
  lookup_timeout: 2
  max_lookups: 50

snapshots:
  db: "/var/lib/device-discovery/snapshots.db"
  store_name: "scan-history"
  max_snapshots: 50

trusted_devices:
  - "192.168.1.20"
  - "192.168.1.21"

api:
  host: "127.0.0.1"
  port: 8083

log_level: "INFO"
"""
