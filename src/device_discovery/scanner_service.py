"""
Device Discovery Service - scan coordination and HTTP API.

Wires the discovery pipeline, the identity set and the snapshot history
together as explicitly constructed instances. Scans are serialized: a scan
requested while another is running is answered with "busy" instead of
being queued.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
import uuid
from pathlib import Path
from typing import Optional

from aiohttp import web

from ._types import (
    ChangeEvent,
    DiscoveryEvent,
    InventoryDevice,
    ScanDepth,
    now_utc,
)
from .config import DiscoveryConfig
from .diff import Comparison
from .discovery import DnsSdDiscovery, NmapPortProber, ServiceDiscoveryBrowser
from .identity import IdentityResolver
from .inventory import DeviceInventory
from .orchestrator import DiscoveryOrchestrator, ScanProgress
from .snapshot_store import SnapshotStore, snapshot_to_dict
from .tool_runner import ExternalToolRunner

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

EVENT_HISTORY_LIMIT = 1000


def setup_logging(level: str = "INFO") -> None:
    """Configure root logging for the service."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )


def _device_json(device: InventoryDevice) -> dict:
    return {
        "address": device.address,
        "mac_address": device.mac_address,
        "hostname": device.hostname,
        "display_name": device.display_name,
        "manufacturer": device.manufacturer,
        "device_type": device.device_type.value,
        "category": device.category,
        "services": sorted(device.services),
        "open_ports": list(device.open_ports),
        "online": device.online,
        "rogue": device.rogue,
        "first_seen_at": device.first_seen_at.isoformat(),
        "last_seen_at": device.last_seen_at.isoformat(),
    }


def _event_json(event: DiscoveryEvent) -> dict:
    return {
        "timestamp": event.timestamp.isoformat(),
        "kind": event.kind.value,
        "device_name": event.device_name,
        "address": event.address,
        "category": event.category.value,
    }


def _change_json(change: ChangeEvent) -> dict:
    return {
        "address": change.address,
        "kind": change.kind.value,
        "detail": change.detail,
        "severity": change.severity.value,
    }


def _progress_json(progress: ScanProgress) -> dict:
    return {
        "fraction": progress.fraction,
        "status": progress.status,
        "phase": progress.phase,
    }


def _comparison_json(comparison: Comparison) -> dict:
    return {
        "summary": comparison.summary(),
        "changes": [_change_json(c) for c in comparison.changes],
        "new": [d.address for d in comparison.new_devices],
        "removed": [d.address for d in comparison.removed_devices],
        "modified": [d.address for d in comparison.modified_devices],
        "unchanged": [d.address for d in comparison.unchanged_devices],
    }


class DiscoveryService:
    """
    Device discovery service.

    Owns the orchestrator and snapshot store; nothing here is global.
    """

    def __init__(
        self,
        config: DiscoveryConfig,
        orchestrator: Optional[DiscoveryOrchestrator] = None,
        snapshot_store: Optional[SnapshotStore] = None,
        runner: Optional[ExternalToolRunner] = None,
    ):
        """
        Initialize discovery service.

        Args:
            config: Discovery configuration
            orchestrator: Pre-built pipeline (built from config if omitted)
            snapshot_store: Snapshot history (opened from config if omitted)
            runner: External tool runner shared by command-line sources
        """
        self.config = config
        self.runner = runner or ExternalToolRunner()
        self.orchestrator = orchestrator or self._build_orchestrator()
        self.snapshots = snapshot_store or SnapshotStore(
            db_path=config.snapshot_db_path,
            store_name=config.snapshot_store_name,
            max_snapshots=config.max_snapshots,
        )

        self._scan_lock = asyncio.Lock()
        self._last_scan: Optional[dict] = None
        self._running = False
        self._shutdown_event = asyncio.Event()
        self._background: set[asyncio.Task] = set()

        self._api_app: Optional[web.Application] = None
        self._api_runner: Optional[web.AppRunner] = None

    @property
    def resolver(self) -> IdentityResolver:
        return self.orchestrator.resolver

    @property
    def inventory(self) -> DeviceInventory:
        return self.orchestrator.inventory

    @property
    def scanning(self) -> bool:
        return self._scan_lock.locked()

    def _build_orchestrator(self) -> DiscoveryOrchestrator:
        """Build the pipeline from configuration."""
        port_prober = None
        if self.config.enable_port_enrichment:
            port_prober = NmapPortProber(
                host_timeout=self.config.port_probe_host_timeout_seconds,
            )
            logger.info(f"Port enrichment enabled for ports {self.config.enrichment_ports}")

        secondary = None
        if self.config.enable_dnssd_discovery:
            secondary = DnsSdDiscovery(
                runner=self.runner,
                command=self.config.dnssd_command,
                browse_timeout=self.config.dnssd_browse_timeout_seconds,
                lookup_timeout=self.config.dnssd_lookup_timeout_seconds,
                max_lookups=self.config.dnssd_max_lookups,
                max_concurrent=self.config.dnssd_max_concurrent_lookups,
            )
            logger.info(f"dns-sd discovery enabled ({self.config.dnssd_command})")

        return DiscoveryOrchestrator(
            browser=ServiceDiscoveryBrowser(
                resolve_timeout=self.config.resolve_timeout_seconds,
            ),
            resolver=IdentityResolver(max_history=EVENT_HISTORY_LIMIT),
            inventory=DeviceInventory(),
            port_prober=port_prober,
            secondary=secondary,
            categories=self.config.categories,
            depth=self.config.scan_depth,
            enrichment_ports=self.config.enrichment_ports,
            trusted_devices=self.config.trusted_devices,
        )

    async def start(self) -> None:
        """Start the API server, run an initial scan and wait for shutdown."""
        logger.info("Starting Device Discovery Service")
        self._running = True

        await self._start_api_server()

        logger.info("Running initial discovery scan")
        await self.run_scan(triggered_by="startup")

        await self._shutdown_event.wait()
        logger.info("Device Discovery Service stopped")

    async def stop(self) -> None:
        """Stop the service."""
        if not self._running:
            return
        logger.info("Stopping Device Discovery Service")
        self._running = False
        self._shutdown_event.set()

        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

        await self.runner.aclose()

        if self._api_runner:
            await self._api_runner.cleanup()
            self._api_runner = None

    async def run_scan(
        self,
        depth: Optional[ScanDepth] = None,
        triggered_by: str = "manual",
    ) -> dict:
        """
        Run one discovery cycle and capture a snapshot of its result.

        Args:
            depth: Browse window (config default if omitted)
            triggered_by: Who triggered the scan

        Returns:
            Scan result summary, or {"status": "busy"} if a scan is running
        """
        if self._scan_lock.locked():
            logger.info(f"Scan requested by {triggered_by} while another is running")
            return {"status": "busy", "message": "A scan is already running"}

        async with self._scan_lock:
            scan_id = str(uuid.uuid4())
            started_at = now_utc()
            depth = depth or self.config.scan_depth
            logger.info(f"Starting {depth.value} scan (id={scan_id}, triggered_by={triggered_by})")

            try:
                result = await self.orchestrator.run(depth)
            except Exception as e:
                logger.error(f"Scan failed: {e}")
                self._last_scan = {
                    "scan_id": scan_id,
                    "status": "failed",
                    "error": str(e),
                    "triggered_by": triggered_by,
                    "started_at": started_at.isoformat(),
                }
                return self._last_scan

            snapshot = self.snapshots.capture(result.devices, result.duration_seconds)
            comparison = self.snapshots.compare_latest()

            summary = {
                "scan_id": scan_id,
                "status": "completed" if result.succeeded else "completed_with_errors",
                "message": result.status,
                "triggered_by": triggered_by,
                "depth": depth.value,
                "started_at": started_at.isoformat(),
                "duration_seconds": round(result.duration_seconds, 2),
                "devices_found": len(result.online_devices),
                "devices_offline": len(result.devices) - len(result.online_devices),
                "sources": {
                    "browse": len(result.browse_addresses),
                    "ports": len(result.probed_addresses),
                    "dnssd": len(result.dnssd_addresses),
                },
                "errors": list(result.errors),
                "snapshot_id": snapshot.id,
                "changes": comparison.summary() if comparison else None,
            }

            if comparison:
                for change in comparison.changes:
                    if change.severity.rank >= 1:
                        logger.warning(f"{change.address}: {change.detail} ({change.severity.value})")

            self._last_scan = summary
            logger.info(f"Scan completed: {len(result.online_devices)} devices found")
            return summary

    # -------------------------------------------------------------------------
    # API
    # -------------------------------------------------------------------------

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/api/scans/trigger", self._handle_trigger_scan)
        app.router.add_get("/api/scans/status", self._handle_scan_status)
        app.router.add_get("/api/devices", self._handle_list_devices)
        app.router.add_get("/api/events", self._handle_list_events)
        app.router.add_get("/api/snapshots", self._handle_list_snapshots)
        app.router.add_get("/api/snapshots/compare", self._handle_compare_snapshots)
        app.router.add_get("/api/health", self._handle_health)
        return app

    async def _start_api_server(self) -> None:
        """Start API server for on-demand scans."""
        self._api_app = self.create_app()
        self._api_runner = web.AppRunner(self._api_app)
        await self._api_runner.setup()
        site = web.TCPSite(self._api_runner, self.config.api_host, self.config.api_port)
        await site.start()
        logger.info(f"API server started on {self.config.api_host}:{self.config.api_port}")

    async def _handle_trigger_scan(self, request: web.Request) -> web.Response:
        """Handle POST /api/scans/trigger."""
        try:
            data = await request.json() if request.body_exists else {}
            depth_value = data.get("depth")
            try:
                depth = ScanDepth(depth_value) if depth_value else None
            except ValueError:
                return web.json_response(
                    {"status": "error", "message": f"Invalid depth: {depth_value}"},
                    status=400,
                )

            if self.scanning:
                return web.json_response(
                    {"status": "busy", "message": "A scan is already running"},
                    status=409,
                )

            task = asyncio.create_task(self.run_scan(depth=depth, triggered_by="api"))
            self._background.add(task)
            task.add_done_callback(self._background.discard)

            return web.json_response({
                "status": "started",
                "message": f"Scan triggered ({(depth or self.config.scan_depth).value})",
            })

        except Exception as e:
            return web.json_response(
                {"status": "error", "message": str(e)},
                status=500,
            )

    async def _handle_scan_status(self, request: web.Request) -> web.Response:
        """Handle GET /api/scans/status."""
        try:
            return web.json_response({
                "scanning": self.scanning,
                "progress": _progress_json(self.orchestrator.progress),
                "last_scan": self._last_scan,
            })

        except Exception as e:
            return web.json_response(
                {"status": "error", "message": str(e)},
                status=500,
            )

    async def _handle_list_devices(self, request: web.Request) -> web.Response:
        """Handle GET /api/devices."""
        try:
            devices = self.inventory.devices()
            if request.query.get("rogue") == "true":
                devices = [d for d in devices if d.rogue]

            return web.json_response({
                "devices": [_device_json(d) for d in devices],
                "total": len(devices),
            })

        except Exception as e:
            return web.json_response(
                {"status": "error", "message": str(e)},
                status=500,
            )

    async def _handle_list_events(self, request: web.Request) -> web.Response:
        """Handle GET /api/events."""
        try:
            limit = int(request.query.get("limit", "100"))
            events = self.resolver.events()[:limit]

            return web.json_response({
                "events": [_event_json(e) for e in events],
                "total": len(events),
            })

        except Exception as e:
            return web.json_response(
                {"status": "error", "message": str(e)},
                status=500,
            )

    async def _handle_list_snapshots(self, request: web.Request) -> web.Response:
        """Handle GET /api/snapshots."""
        try:
            include_devices = request.query.get("devices") == "true"
            snapshots = []
            for snapshot in reversed(self.snapshots.snapshots()):
                entry = snapshot_to_dict(snapshot)
                if not include_devices:
                    entry.pop("devices")
                snapshots.append(entry)

            return web.json_response({
                "snapshots": snapshots,
                "total": len(snapshots),
            })

        except Exception as e:
            return web.json_response(
                {"status": "error", "message": str(e)},
                status=500,
            )

    async def _handle_compare_snapshots(self, request: web.Request) -> web.Response:
        """Handle GET /api/snapshots/compare?from=<id>&to=<id>."""
        try:
            from_id = request.query.get("from")
            to_id = request.query.get("to")

            if from_id and to_id:
                comparison = self.snapshots.compare(from_id, to_id)
                missing = "Snapshot not found"
            elif from_id or to_id:
                return web.json_response(
                    {"status": "error", "message": "Both 'from' and 'to' are required"},
                    status=400,
                )
            else:
                comparison = self.snapshots.compare_latest()
                missing = "At least two snapshots are required"

            if comparison is None:
                return web.json_response(
                    {"status": "error", "message": missing},
                    status=404,
                )

            return web.json_response(_comparison_json(comparison))

        except Exception as e:
            return web.json_response(
                {"status": "error", "message": str(e)},
                status=500,
            )

    async def _handle_health(self, request: web.Request) -> web.Response:
        """Handle GET /api/health."""
        latest = self.snapshots.latest()

        return web.json_response({
            "status": "ok",
            "service": "device-discovery",
            "devices": len(self.inventory),
            "scanning": self.scanning,
            "snapshots": len(self.snapshots),
            "last_scan": latest.created_at.isoformat() if latest else None,
        })


def main():
    """Entry point for device-discovery service."""
    import argparse

    parser = argparse.ArgumentParser(description="Device Discovery Service")
    parser.add_argument("--config", type=str, help="Path to config file")
    parser.add_argument("--host", type=str, default=None, help="API host")
    parser.add_argument("--port", type=int, default=None, help="API port")
    parser.add_argument("--log-level", type=str, default=None, help="Log level")
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single scan, print the result as JSON and exit",
    )
    args = parser.parse_args()

    # Load configuration
    if args.config:
        config = DiscoveryConfig.from_yaml(Path(args.config))
    else:
        config = DiscoveryConfig.from_env()

    # Override with CLI args
    if args.host:
        config.api_host = args.host
    if args.port:
        config.api_port = args.port
    if args.log_level:
        config.log_level = args.log_level

    setup_logging(config.log_level)

    # Validate
    errors = config.validate()
    if errors:
        for error in errors:
            logger.error(f"Config error: {error}")
        if any("CRITICAL" in e for e in errors):
            sys.exit(1)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    service = DiscoveryService(config)

    if args.once:
        try:
            summary = loop.run_until_complete(service.run_scan(triggered_by="cli"))
            print(json.dumps(summary, indent=2))
        finally:
            loop.run_until_complete(service.runner.aclose())
            loop.close()
        return

    def signal_handler():
        logger.info("Received shutdown signal")
        asyncio.create_task(service.stop())

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, signal_handler)

    try:
        loop.run_until_complete(service.start())
    except KeyboardInterrupt:
        logger.info("Interrupted")
    finally:
        loop.run_until_complete(service.stop())
        loop.close()


if __name__ == "__main__":
    main()
