"""
Secondary HomeKit discovery through the dns-sd command-line tool.

Some accessories answer the system resolver but never show up through a
library browser (sleeping Thread border routers, bridges on another
interface). dns-sd catches those:

    dns-sd -B _hap._tcp .                  browse, runs until killed
    dns-sd -L <name> _hap._tcp local.      per-name lookup, runs until killed

Both are bounded by ExternalToolRunner timeouts and parsed line by line.
Lines that do not match are skipped.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import re
import socket
from typing import Optional

from .._types import AdvertisementCategory
from ..metadata import decode_dns_escapes, parse_txt_lines
from ..tool_runner import ExternalToolRunner
from .base import DiscoveredService, DiscoveryMethod, command_available

logger = logging.getLogger(__name__)

SERVICE_TYPE = AdvertisementCategory.HAP.value
_SERVICE_MARKER = f"{SERVICE_TYPE}."

_ADD_COLUMN = re.compile(r"\bAdd\b")
_REACHABLE = re.compile(r"can be reached at (\S+?):(\d+)")
_IPV4 = re.compile(r"\b(?:\d{1,3}\.){3}\d{1,3}\b")


def parse_browse_output(output: str) -> list[str]:
    """
    Extract service instance names from `dns-sd -B` output.

    Example line:
        12:00:01.123  Add  3  6 local.  _hap._tcp.  Eve\\032Energy\\032Strip

    Returns decoded names, deduplicated, in first-seen order.
    """
    names: list[str] = []
    seen: set[str] = set()
    for line in output.splitlines():
        head, marker, tail = line.partition(_SERVICE_MARKER)
        if not marker or not _ADD_COLUMN.search(head):
            continue
        name = decode_dns_escapes(tail.strip()).strip()
        if name and name not in seen:
            seen.add(name)
            names.append(name)
    return names


def _is_ipv4(value: str) -> bool:
    try:
        ipaddress.IPv4Address(value)
    except ValueError:
        return False
    return True


class DnsSdDiscovery(DiscoveryMethod):
    """Address-only HAP discovery via dns-sd browse + per-name lookups."""

    def __init__(
        self,
        runner: ExternalToolRunner,
        command: str = "/usr/bin/dns-sd",
        browse_timeout: float = 10.0,
        lookup_timeout: float = 2.0,
        max_lookups: int = 50,
        max_concurrent: int = 8,
    ):
        """
        Initialize dns-sd discovery.

        Args:
            runner: Shared external tool runner
            command: Path to the dns-sd binary
            browse_timeout: Wall-clock bound for the browse call
            lookup_timeout: Wall-clock bound for each per-name lookup
            max_lookups: Only the first N browsed names are looked up
            max_concurrent: Lookups running at once
        """
        self.runner = runner
        self.command = command
        self.browse_timeout = browse_timeout
        self.lookup_timeout = lookup_timeout
        self.max_lookups = max_lookups
        self.max_concurrent = max_concurrent

    @property
    def name(self) -> str:
        return "dns-sd"

    async def is_available(self) -> bool:
        return await command_available(self.command)

    async def discover(self) -> list[DiscoveredService]:
        """
        Browse for HAP services and resolve each name to an IPv4 address.

        Returns one service per address.
        """
        output = await self.runner.run(
            self.command,
            ["-B", SERVICE_TYPE, "."],
            timeout=self.browse_timeout,
            partial_on_timeout=True,
        )
        names = parse_browse_output(output)
        logger.info(f"dns-sd browse found {len(names)} service names")
        if not names:
            return []

        if len(names) > self.max_lookups:
            logger.info(
                f"Resolving first {self.max_lookups} of {len(names)} dns-sd names"
            )
            names = names[: self.max_lookups]

        semaphore = asyncio.Semaphore(self.max_concurrent)

        async def _bounded(service_name: str) -> Optional[DiscoveredService]:
            async with semaphore:
                return await self.lookup(service_name)

        resolved = await asyncio.gather(*(_bounded(n) for n in names))

        services: dict[str, DiscoveredService] = {}
        for service in resolved:
            if service is not None and service.address not in services:
                services[service.address] = service

        logger.info(f"dns-sd resolved {len(services)} addresses")
        return list(services.values())

    async def lookup(self, service_name: str) -> Optional[DiscoveredService]:
        """Resolve one instance name. Returns None when no address is found."""
        output = await self.runner.run(
            self.command,
            ["-L", service_name, SERVICE_TYPE, "local."],
            timeout=self.lookup_timeout,
            partial_on_timeout=True,
        )
        address, hostname = await self._extract_endpoint(output)
        if address is None:
            logger.debug(f"dns-sd could not resolve {service_name}")
            return None

        logger.debug(f"dns-sd resolved {service_name} -> {address}")
        return DiscoveredService(
            name=service_name,
            address=address,
            category=AdvertisementCategory.HAP,
            txt=parse_txt_lines(output),
            hostname=hostname,
            source=self.name,
        )

    async def _extract_endpoint(self, output: str) -> tuple[Optional[str], Optional[str]]:
        """Return (IPv4 address, target hostname) from lookup output."""
        lines = output.splitlines()
        hostname: Optional[str] = None

        for line in lines:
            match = _REACHABLE.search(line)
            if not match:
                continue
            host = match.group(1).rstrip(".")
            if _is_ipv4(host):
                return host, hostname
            hostname = hostname or host
            resolved = await self._resolve_host(host)
            if resolved:
                return resolved, hostname

        # TXT lines can carry dotted version strings; skip them
        for line in lines:
            if "=" in line:
                continue
            for candidate in _IPV4.findall(line):
                if _is_ipv4(candidate):
                    return candidate, hostname
        return None, hostname

    async def _resolve_host(self, host: str) -> Optional[str]:
        """Resolve a .local target host to IPv4 through the system resolver."""
        loop = asyncio.get_running_loop()
        try:
            infos = await asyncio.wait_for(
                loop.getaddrinfo(host, None, family=socket.AF_INET),
                timeout=self.lookup_timeout,
            )
        except (OSError, asyncio.TimeoutError) as e:
            logger.debug(f"Could not resolve {host}: {e}")
            return None

        for info in infos:
            address = info[4][0]
            if _is_ipv4(address):
                return address
        return None
