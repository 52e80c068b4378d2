"""
DNSMasq-compatible DHCP lease file management.

Lease file format, one lease per line:

    <expiry-time> <mac-address> <ip-address> <hostname> [<client-id>]

e.g. ``1692123456 aa:bb:cc:dd:ee:ff 192.168.1.100 node-1 01:aa:bb:cc:dd:ee:ff``.
"""

import ipaddress
import os
import threading
import time
from dataclasses import dataclass, replace
from typing import Callable, Dict, Optional, Set, Union

import structlog
from watchdog.events import (
    EVENT_TYPE_CLOSED,
    EVENT_TYPE_CREATED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEvent,
)

from netboot_backend.data import IPAddress, normalize_mac
from netboot_backend.dnsmasq.files import atomic_write, ensure_dir, read_lines
from netboot_backend.dnsmasq.watcher import FileWatcher, event_paths, reload_on_change
from netboot_backend.errors import StorageError
from netboot_backend.metrics import ACTIVE_LEASES

logger = structlog.get_logger()

DECLINE_COOLDOWN_SECONDS = 5 * 60

LEASE_FILE_HEADER = (
    "# DHCP leases file - DNSMasq compatible format",
    "# <expiry-time> <mac-address> <ip-address> <hostname> <client-id>",
)

_WRITE_EVENTS = {EVENT_TYPE_MODIFIED, EVENT_TYPE_CREATED, EVENT_TYPE_MOVED, EVENT_TYPE_CLOSED}


@dataclass(slots=True)
class Lease:
    """A DHCP lease entry."""

    expiry: int  # Unix timestamp
    mac: str
    ip: IPAddress
    hostname: str
    client_id: str = ""
    declined: bool = False
    decline_time: int = 0  # Unix timestamp

    def is_active(self, now: Optional[int] = None) -> bool:
        if now is None:
            now = int(time.time())
        return self.expiry >= now

    def in_decline_cooldown(self, now: int) -> bool:
        return (
            self.declined
            and self.decline_time > 0
            and now - self.decline_time < DECLINE_COOLDOWN_SECONDS
        )

    def to_line(self) -> str:
        line = f"{self.expiry} {self.mac} {self.ip} {self.hostname}"
        if self.client_id:
            line += f" {self.client_id}"
        return line


def parse_lease_line(line: str) -> Lease:
    """Parse one lease line. Raises ValueError on malformed input."""
    fields = line.split()
    if len(fields) < 4:
        raise ValueError(f"invalid lease line format: {line}")

    try:
        expiry = int(fields[0])
    except ValueError:
        raise ValueError(f"invalid expiry time: {fields[0]}") from None

    mac = normalize_mac(fields[1])

    try:
        ip = ipaddress.ip_address(fields[2])
    except ValueError:
        raise ValueError(f"invalid IP address: {fields[2]}") from None

    return Lease(
        expiry=expiry,
        mac=mac,
        ip=ip,
        hostname=fields[3],
        client_id=fields[4] if len(fields) > 4 else "",
    )


def _as_ip(ip: Union[str, IPAddress]) -> IPAddress:
    return ipaddress.ip_address(ip) if isinstance(ip, str) else ip


class LeaseManager:
    """Owns the lease file and its in-memory MAC -> Lease index."""

    def __init__(self, lease_file: str):
        self.lease_file = lease_file
        self._lock = threading.RLock()
        self._leases: Dict[str, Lease] = {}
        self.watcher = FileWatcher("leases")

        try:
            self.load_leases()
        except StorageError:
            self.watcher.close()
            raise

        # Watch the containing directory; the file itself is replaced by rename
        self.watcher.add(os.path.dirname(os.path.abspath(lease_file)))

    def load_leases(self) -> None:
        """
        Replace the in-memory index with the contents of the lease file.

        A missing file means no leases yet. Malformed lines are logged and
        skipped.
        """
        try:
            lines = read_lines(self.lease_file)
        except FileNotFoundError:
            lines = []
        except OSError as e:
            raise StorageError(f"failed to open lease file {self.lease_file}: {e}") from e

        leases: Dict[str, Lease] = {}
        for line_num, line in enumerate(lines, start=1):
            if not line or line.startswith("#"):
                continue
            try:
                lease = parse_lease_line(line)
            except ValueError as e:
                logger.error(
                    "lease_line_parse_failed",
                    file=self.lease_file,
                    line=line_num,
                    content=line,
                    error=str(e),
                )
                continue
            leases[lease.mac] = lease

        with self._lock:
            self._leases = leases

        logger.debug("leases_loaded", file=self.lease_file, count=len(leases))

    def add_lease(
        self,
        mac: str,
        ip: Union[str, IPAddress],
        hostname: str,
        lease_seconds: int,
        client_id: str = "",
    ) -> Lease:
        """Add or replace the lease for ``mac``, expiring ``lease_seconds`` from now."""
        lease = Lease(
            expiry=int(time.time()) + int(lease_seconds),
            mac=normalize_mac(mac),
            ip=_as_ip(ip),
            hostname=hostname,
            client_id=client_id,
        )
        with self._lock:
            self._leases[lease.mac] = lease
        return lease

    def get_lease(self, mac: str) -> Optional[Lease]:
        with self._lock:
            return self._leases.get(normalize_mac(mac))

    def remove_lease(self, mac: str) -> None:
        with self._lock:
            self._leases.pop(normalize_mac(mac), None)

    def mark_ip_declined(self, ip: Union[str, IPAddress]) -> None:
        """Start the decline cooldown for every lease holding ``ip``."""
        ip = _as_ip(ip)
        now = int(time.time())
        with self._lock:
            for lease in self._leases.values():
                if lease.ip == ip:
                    lease.declined = True
                    lease.decline_time = now

    def is_ip_declined(self, ip: Union[str, IPAddress]) -> bool:
        """True while ``ip`` is within its decline cooldown window."""
        ip = _as_ip(ip)
        now = int(time.time())
        with self._lock:
            return any(
                lease.ip == ip and lease.in_decline_cooldown(now)
                for lease in self._leases.values()
            )

    def declined_ips(self) -> Set[IPAddress]:
        """All IPs currently in decline cooldown."""
        now = int(time.time())
        with self._lock:
            return {
                lease.ip for lease in self._leases.values() if lease.in_decline_cooldown(now)
            }

    def clear_declined_ips(self) -> int:
        """Drop the declined flag from leases whose cooldown has passed."""
        now = int(time.time())
        cleared = 0
        with self._lock:
            for lease in self._leases.values():
                if lease.declined and lease.decline_time > 0:
                    if now - lease.decline_time >= DECLINE_COOLDOWN_SECONDS:
                        lease.declined = False
                        lease.decline_time = 0
                        cleared += 1
                        logger.info("declined_status_cleared", mac=lease.mac, ip=str(lease.ip))
        return cleared

    def clean_expired_leases(self) -> int:
        """Delete expired leases from memory."""
        now = int(time.time())
        with self._lock:
            expired = [mac for mac, lease in self._leases.items() if lease.expiry < now]
            for mac in expired:
                del self._leases[mac]
        if expired:
            logger.info("expired_leases_removed", count=len(expired))
        return len(expired)

    def get_active_leases(self) -> Dict[str, Lease]:
        """Snapshot of non-expired leases keyed by MAC."""
        now = int(time.time())
        with self._lock:
            active = {
                mac: replace(lease) for mac, lease in self._leases.items() if lease.expiry >= now
            }
        ACTIVE_LEASES.set(len(active))
        return active

    def save_leases(self) -> None:
        """Write non-expired leases to the lease file atomically."""
        directory = os.path.dirname(os.path.abspath(self.lease_file))
        ensure_dir(directory)

        now = int(time.time())
        with self._lock:
            lines = [
                lease.to_line()
                for _, lease in sorted(self._leases.items())
                if lease.expiry >= now
            ]

        atomic_write(self.lease_file, [*LEASE_FILE_HEADER, *lines])

        # First save creates the directory/file; start watching it now
        self.watcher.add(directory)

    def _is_lease_file_event(self, event: FileSystemEvent) -> bool:
        if event.is_directory or event.event_type not in _WRITE_EVENTS:
            return False
        return os.path.realpath(self.lease_file) in event_paths(event)

    def snapshot(self) -> Dict[str, Lease]:
        """Copy of every held lease, expired ones included."""
        with self._lock:
            return {mac: replace(lease) for mac, lease in self._leases.items()}

    def restore(self, leases: Dict[str, Lease]) -> None:
        """Replace the in-memory index with an earlier snapshot."""
        with self._lock:
            self._leases = {mac: replace(lease) for mac, lease in leases.items()}

    async def start(self, reload: Optional[Callable[[], None]] = None) -> None:
        """
        Reload the lease file whenever it changes on disk.

        ``reload`` replaces ``load_leases`` when the owner needs the reload
        to run under its own lock. Blocks until cancelled.
        """
        await reload_on_change(
            self.watcher, "leases", self._is_lease_file_event, reload or self.load_leases
        )

    def close(self) -> None:
        self.watcher.close()
