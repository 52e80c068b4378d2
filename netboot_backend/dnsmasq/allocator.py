"""
Deterministic IP assignment from a pool.

A MAC always hashes to the same starting slot; collisions are resolved by
linear probing, so the same MAC gets the same IP across restarts as long as
the pool and the lease table do not change.
"""

import hashlib
import ipaddress
from dataclasses import dataclass
from typing import AbstractSet, Optional

from netboot_backend.data import IPAddress, normalize_mac
from netboot_backend.errors import ConfigurationError, PoolExhaustedError


@dataclass(frozen=True, slots=True)
class IPPool:
    """An inclusive IPv4 address range."""

    start: ipaddress.IPv4Address
    end: ipaddress.IPv4Address

    def __post_init__(self):
        if int(self.start) > int(self.end):
            raise ConfigurationError(f"invalid IP pool range: start {self.start} > end {self.end}")

    @classmethod
    def from_strings(cls, start: Optional[str], end: Optional[str]) -> "IPPool":
        addrs = []
        for label, value in (("start", start), ("end", end)):
            try:
                addrs.append(ipaddress.IPv4Address((value or "").strip()))
            except ValueError:
                raise ConfigurationError(f"invalid IP pool {label} address: {value}") from None
        return cls(addrs[0], addrs[1])

    @property
    def size(self) -> int:
        return int(self.end) - int(self.start) + 1

    def __contains__(self, ip: object) -> bool:
        if not isinstance(ip, ipaddress.IPv4Address):
            return False
        return int(self.start) <= int(ip) <= int(self.end)

    def __str__(self) -> str:
        return f"{self.start}-{self.end}"


def offset_seed(mac: str) -> int:
    """First 4 bytes of md5(mac) as a big-endian unsigned integer."""
    digest = hashlib.md5(normalize_mac(mac).encode("ascii")).digest()
    return int.from_bytes(digest[:4], "big")


def candidate_ip(pool: IPPool, mac: str) -> ipaddress.IPv4Address:
    """The slot ``mac`` hashes to before any probing."""
    return pool.start + offset_seed(mac) % pool.size


def assign_ip(
    pool: IPPool,
    mac: str,
    occupied: AbstractSet[IPAddress],
    declined: AbstractSet[IPAddress] = frozenset(),
) -> ipaddress.IPv4Address:
    """
    Pick an address for ``mac``.

    ``occupied`` holds addresses leased to *other* MACs and ``declined`` the
    addresses in decline cooldown. Starting at the hashed slot, the pool is
    walked (wrapping at the end) until a free address is found.
    """
    start = int(pool.start)
    first = offset_seed(mac) % pool.size

    for step in range(pool.size):
        ip = ipaddress.IPv4Address(start + (first + step) % pool.size)
        if ip not in occupied and ip not in declined:
            return ip

    raise PoolExhaustedError(f"IP pool exhausted: no available IPs in range {pool}")
