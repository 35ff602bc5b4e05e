"""
Discovery sources.

- mDNS browser: concurrent multi-category advertisement browsing
- dns-sd: secondary HAP discovery through the dns-sd command-line tool
- Port probe: nmap connect scan against accessory ports
"""

from .base import DiscoveredService, DiscoveryMethod, PortProber
from .dnssd_discovery import DnsSdDiscovery, parse_browse_output
from .mdns_browser import BrowseKind, BrowseResult, ServiceDiscoveryBrowser
from .port_probe import NmapPortProber

__all__ = [
    "DiscoveredService",
    "DiscoveryMethod",
    "PortProber",
    "DnsSdDiscovery",
    "parse_browse_output",
    "BrowseKind",
    "BrowseResult",
    "ServiceDiscoveryBrowser",
    "NmapPortProber",
]
