"""
Netboot Backend - DNSMasq-compatible lease and netboot store

Tracks DHCP leases and per-MAC netboot options in DNSMasq/Ironic compatible
files, assigns addresses to unseen machines from a pool, and keeps its cache
in sync with out-of-band edits through filesystem watches.
"""

__version__ = "1.0.0"
__author__ = "Penguin Tech Inc"
