"""
DNSMasq-compatible lease and netboot configuration backend.
"""

from netboot_backend.dnsmasq.backend import Backend
from netboot_backend.dnsmasq.lease import Lease, LeaseManager
from netboot_backend.dnsmasq.options import ConfigManager, DHCPOption, HostEntry

__all__ = [
    "Backend",
    "ConfigManager",
    "DHCPOption",
    "HostEntry",
    "Lease",
    "LeaseManager",
]
