"""
Caller-facing DHCP and netboot records.

These are the projections DHCP/TFTP handlers receive from the backend; the
stores keep their own native records (see dnsmasq.lease and dnsmasq.options).
"""

import ipaddress
import re
from dataclasses import dataclass
from typing import Optional, Union

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

_MAC_SEPARATORS = re.compile(r"[:\-.]")
_HEX = re.compile(r"^[0-9a-f]+$")

# EUI-48, EUI-64 and 20-octet IP over InfiniBand link-layer addresses
_MAC_LENGTHS = (6, 8, 20)


def normalize_mac(mac: str) -> str:
    """
    Normalize a hardware address to lowercase colon-separated form.

    Accepts colon, dash and dotted (Cisco) notation as well as bare hex.
    Raises ValueError for anything else.
    """
    raw = _MAC_SEPARATORS.sub("", str(mac).strip()).lower()
    if not _HEX.match(raw) or len(raw) % 2 or len(raw) // 2 not in _MAC_LENGTHS:
        raise ValueError(f"invalid MAC address: {mac}")
    return ":".join(raw[i:i + 2] for i in range(0, len(raw), 2))


@dataclass(slots=True)
class DHCP:
    """DHCP lease data for a client."""

    mac_address: str
    ip_address: Optional[IPAddress] = None
    hostname: str = ""
    lease_time: int = 0  # seconds
    client_id: str = ""


@dataclass(slots=True)
class Netboot:
    """Netboot policy for a client."""

    allow_netboot: bool = False
    ipxe_script_url: Optional[str] = None
