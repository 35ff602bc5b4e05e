"""
HomeKit TXT record metadata.

HAP accessories publish a small set of TXT keys alongside their _hap._tcp
advertisement (md=, ci=, id=, ...). The category id maps onto the HAP
accessory category table.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Mapping, Optional, Union

logger = logging.getLogger(__name__)


HAP_CATEGORIES: dict[int, str] = {
    1: "Other",
    2: "Bridge",
    3: "Fan",
    4: "Garage Door Opener",
    5: "Lightbulb",
    6: "Door Lock",
    7: "Outlet",
    8: "Switch",
    9: "Thermostat",
    10: "Sensor",
    11: "Security System",
    12: "Door",
    13: "Window",
    14: "Window Covering",
    15: "Programmable Switch",
    16: "Range Extender",
    17: "IP Camera",
    18: "Video Doorbell",
    19: "Air Purifier",
    20: "Heater",
    21: "Air Conditioner",
    22: "Humidifier",
    23: "Dehumidifier",
    28: "Sprinkler",
    29: "Faucet",
    30: "Shower System",
    31: "Television",
    32: "Speaker",
}


def decode_txt_properties(
    properties: Mapping[Union[bytes, str], Optional[Union[bytes, str]]],
) -> dict[str, str]:
    """Decode zeroconf TXT properties (bytes keys/values) into plain strings."""
    decoded: dict[str, str] = {}
    for key, value in properties.items():
        if isinstance(key, bytes):
            key = key.decode("utf-8", errors="replace")
        if value is None:
            value = ""
        elif isinstance(value, bytes):
            value = value.decode("utf-8", errors="replace")
        key = key.strip()
        if key:
            decoded[key] = value.strip()
    return decoded


def parse_txt_lines(output: str) -> dict[str, str]:
    """
    Extract key=value TXT records from dns-sd lookup output.

    dns-sd prints every record of a TXT set on one line, escaping embedded
    spaces as "\\ ". Quotes are stripped. Lines without "=" are ignored.
    """
    records: dict[str, str] = {}
    for line in output.splitlines():
        if "=" not in line:
            continue
        for key, value in _TXT_TOKEN.findall(line):
            key = key.replace('"', "").strip()
            value = value.replace("\\ ", " ").replace('"', "").strip()
            if key:
                records[key] = value
    return records


_TXT_TOKEN = re.compile(r"([^\s=]+)=((?:\\ |\S)*)")

_DNS_ESCAPE = re.compile(r"\\(\d{3}|.)", re.DOTALL)


def decode_dns_escapes(text: str) -> str:
    """
    Decode DNS presentation-format escapes ("Eve\\032Energy" -> "Eve Energy").

    \\DDD escapes are decimal byte values, so multi-byte UTF-8 characters
    arrive as several escapes and are reassembled before decoding.
    """
    if "\\" not in text:
        return text

    raw = bytearray()
    position = 0
    for match in _DNS_ESCAPE.finditer(text):
        raw.extend(text[position:match.start()].encode("utf-8"))
        token = match.group(1)
        if token.isdigit() and int(token) <= 255:
            raw.append(int(token))
        else:
            raw.extend(token.encode("utf-8"))
        position = match.end()
    raw.extend(text[position:].encode("utf-8"))
    return raw.decode("utf-8", errors="replace")


@dataclass(frozen=True)
class AccessoryMetadata:
    """Metadata extracted from HomeKit TXT records."""
    address: str
    model: Optional[str] = None             # md=
    protocol_version: Optional[str] = None  # pv=
    category_id: Optional[str] = None       # ci=
    status_flags: Optional[str] = None      # sf=
    feature_flags: Optional[str] = None     # ff=
    device_id: Optional[str] = None         # id=
    config_number: Optional[str] = None     # c#=
    state_number: Optional[str] = None      # s#=
    setup_hash: Optional[str] = None        # sh=

    @classmethod
    def from_txt(cls, address: str, txt: Mapping[str, str]) -> "AccessoryMetadata":
        return cls(
            address=address,
            model=txt.get("md") or None,
            protocol_version=txt.get("pv") or None,
            category_id=txt.get("ci") or None,
            status_flags=txt.get("sf") or None,
            feature_flags=txt.get("ff") or None,
            device_id=txt.get("id") or None,
            config_number=txt.get("c#") or None,
            state_number=txt.get("s#") or None,
            setup_hash=txt.get("sh") or None,
        )

    @property
    def display_name(self) -> str:
        return self.model or self.address

    @property
    def category(self) -> str:
        if not self.category_id:
            return "Unknown"
        try:
            category_id = int(self.category_id)
        except ValueError:
            logger.debug(f"Non-numeric HAP category id: {self.category_id!r}")
            return "Unknown"
        return HAP_CATEGORIES.get(category_id, "Accessory")

