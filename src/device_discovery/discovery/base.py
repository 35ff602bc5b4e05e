"""
Base classes for discovery sources.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Sequence

from .._types import AdvertisementCategory, now_utc

logger = logging.getLogger(__name__)


@dataclass
class DiscoveredService:
    """
    An address-bearing service found by a secondary discovery source.

    Lighter than a DeviceRecord: no strength or history, just what the
    source saw.
    """
    name: str
    address: str
    category: AdvertisementCategory = AdvertisementCategory.HAP
    txt: dict[str, str] = field(default_factory=dict)
    hostname: Optional[str] = None
    source: str = ""
    discovered_at: datetime = field(default_factory=now_utc)


class DiscoveryMethod(ABC):
    """Base class for address-only discovery sources."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Name of this discovery method."""
        pass

    @abstractmethod
    async def discover(self) -> list[DiscoveredService]:
        """
        Discover services using this method.

        Returns an empty list rather than raising when nothing is found.
        """
        pass

    async def is_available(self) -> bool:
        """Check if this discovery method is available."""
        return True


class PortProber(ABC):
    """
    Port enrichment collaborator.

    Given addresses and a small port list, reports which ports are open on
    each address. A host that answered with nothing open maps to an empty
    list; an address that could not be probed is omitted, so its earlier
    result stands.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        pass

    @abstractmethod
    async def probe(
        self,
        addresses: Sequence[str],
        ports: Sequence[int],
    ) -> dict[str, list[int]]:
        pass

    async def is_available(self) -> bool:
        return True


async def command_available(command: str) -> bool:
    """Check whether an executable can be found on PATH."""
    try:
        result = await asyncio.create_subprocess_exec(
            "which", command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        await result.wait()
        return result.returncode == 0
    except OSError as e:
        logger.debug(f"Could not check for {command}: {e}")
        return False
