"""
Nmap-based port enrichment.

Runs a TCP connect scan against a short list of accessory ports for the
addresses the browser found. Much faster than a top-ports sweep, and it
needs no raw-socket privileges.
"""

from __future__ import annotations

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Sequence

import nmap

from .base import PortProber, command_available

logger = logging.getLogger(__name__)


class NmapPortProber(PortProber):
    """Probe a fixed port list with nmap (-sT, no host discovery)."""

    def __init__(
        self,
        host_timeout: int = 10,
        max_workers: int = 2,
    ):
        """
        Initialize the prober.

        Args:
            host_timeout: nmap --host-timeout per host, in seconds
            max_workers: Concurrent nmap invocations
        """
        self.host_timeout = host_timeout
        self._executor = ThreadPoolExecutor(max_workers=max_workers)

    @property
    def name(self) -> str:
        return "nmap"

    async def is_available(self) -> bool:
        return await command_available("nmap")

    async def probe(
        self,
        addresses: Sequence[str],
        ports: Sequence[int],
    ) -> dict[str, list[int]]:
        """
        Return open ports per address.

        Every host nmap finished scanning is present, with an empty list
        when nothing is open. Hosts that timed out are absent. Failures are
        logged and produce an empty result.
        """
        if not addresses or not ports:
            return {}

        loop = asyncio.get_running_loop()
        try:
            logger.info(f"Probing {len(addresses)} hosts on ports {list(ports)}")
            return await loop.run_in_executor(
                self._executor,
                self._scan,
                list(addresses),
                list(ports),
            )
        except Exception as e:
            logger.error(f"Port probe error: {e}")
            return {}

    def _scan(self, addresses: list[str], ports: list[int]) -> dict[str, list[int]]:
        """Run the scan (blocking, runs in thread pool)."""
        scanner = nmap.PortScanner()
        args = f"-sT -Pn --host-timeout {self.host_timeout}s"

        logger.debug(f"Running nmap: {addresses} {ports} {args}")
        scanner.scan(
            hosts=" ".join(addresses),
            ports=",".join(str(p) for p in ports),
            arguments=args,
        )

        results: dict[str, list[int]] = {}
        for host in scanner.all_hosts():
            try:
                open_ports = self._parse_host(scanner, host)
            except Exception as e:
                logger.warning(f"Error parsing host {host}: {e}")
                continue
            results[host] = open_ports

        open_hosts = sum(1 for ports in results.values() if ports)
        logger.info(f"Port probe found open ports on {open_hosts} of {len(results)} hosts")
        return results

    def _parse_host(self, scanner, host: str) -> list[int]:
        host_info = scanner[host]
        if "tcp" not in host_info:
            return []
        return sorted(
            int(port)
            for port, port_info in host_info["tcp"].items()
            if port_info.get("state") == "open"
        )

    def close(self) -> None:
        self._executor.shutdown(wait=False)
