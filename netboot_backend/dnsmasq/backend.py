"""
DNSMasq file backend for DHCP and netboot handlers.

Composes the lease store and the host/option store behind the reader,
writer and syncer operations DHCP/TFTP handlers call, and assigns addresses
to unknown MACs when automatic assignment is enabled.
"""

import asyncio
import contextlib
import functools
import ipaddress
import threading
import time
from typing import List, Optional, Tuple, Union
from urllib.parse import urlparse

import structlog

from netboot_backend.arch import default_boot_file
from netboot_backend.config import DEFAULT_LEASE_TIME, BackendConfig
from netboot_backend.data import DHCP, IPAddress, Netboot, normalize_mac
from netboot_backend.dnsmasq.allocator import IPPool, assign_ip
from netboot_backend.dnsmasq.lease import Lease, LeaseManager
from netboot_backend.dnsmasq.options import OPTION_BOOT_FILE, ConfigManager
from netboot_backend.errors import (
    AssignmentNotConfiguredError,
    BackendError,
    RecordNotFoundError,
    StorageError,
)
from netboot_backend.metrics import AUTO_ASSIGNMENTS, BACKEND_REQUESTS

logger = structlog.get_logger()


def _instrumented(operation: str):
    """Count calls of a backend operation by outcome."""

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            try:
                result = await func(*args, **kwargs)
            except RecordNotFoundError:
                BACKEND_REQUESTS.labels(operation=operation, result="not_found").inc()
                raise
            except Exception:
                BACKEND_REQUESTS.labels(operation=operation, result="error").inc()
                raise
            BACKEND_REQUESTS.labels(operation=operation, result="ok").inc()
            return result

        return wrapper

    return decorator


class Backend:
    """
    DHCP/netboot backend stored in DNSMasq-compatible files.

    Every operation that writes to both stores (``put``, automatic
    assignment in ``get_by_mac``, ``sync``) runs as one critical section
    under the backend lock, including the save to disk.
    """

    def __init__(self, config: BackendConfig):
        self.config = config
        self.tftp_server = config.get_tftp_server()
        self.http_server = config.get_http_server()

        # Automatic lease assignment
        self.auto_assign_enabled = config.auto_assign_enabled
        self.default_lease_time = config.default_lease_time or DEFAULT_LEASE_TIME
        self.pool: Optional[IPPool] = None
        if self.auto_assign_enabled and (config.ip_pool_start or config.ip_pool_end):
            self.pool = IPPool.from_strings(config.ip_pool_start, config.ip_pool_end)

        self._lock = threading.RLock()

        self.lease_manager = LeaseManager(config.lease_path)
        try:
            self.config_manager = ConfigManager(config.root_dir)
        except Exception:
            self.lease_manager.close()
            raise

        logger.info(
            "dnsmasq_backend_created",
            root_dir=config.root_dir,
            lease_file=config.lease_path,
            auto_assign=self.auto_assign_enabled,
            pool=str(self.pool) if self.pool else None,
        )

    # Reader

    @_instrumented("get_by_mac")
    async def get_by_mac(self, mac: str) -> Tuple[DHCP, Netboot]:
        """
        Look up the lease and netboot policy for ``mac``.

        Unknown MACs get a lease and default netboot options when automatic
        assignment is enabled; otherwise RecordNotFoundError is raised.
        """
        mac = normalize_mac(mac)

        with self._lock:
            lease = self.lease_manager.get_lease(mac)
            if lease is None and self.auto_assign_enabled:
                lease = self._auto_assign(mac)

            if lease is None:
                raise RecordNotFoundError(mac)

            return self._lease_to_dhcp(lease), self._netboot_data(mac)

    @_instrumented("get_by_ip")
    async def get_by_ip(self, ip: Union[str, IPAddress]) -> Tuple[DHCP, Netboot]:
        """Look up the active lease holding ``ip``. Never assigns."""
        ip = ipaddress.ip_address(ip) if isinstance(ip, str) else ip

        with self._lock:
            for lease in self.lease_manager.get_active_leases().values():
                if lease.ip == ip:
                    return self._lease_to_dhcp(lease), self._netboot_data(lease.mac)

        raise RecordNotFoundError(str(ip))

    @_instrumented("get_keys")
    async def get_keys(self) -> List[str]:
        """MACs of all active leases."""
        return sorted(self.lease_manager.get_active_leases())

    # Writer

    @_instrumented("put")
    async def put(
        self,
        mac: str,
        dhcp: Optional[DHCP] = None,
        netboot: Optional[Netboot] = None,
    ) -> None:
        """
        Set lease and/or netboot state for ``mac`` and persist both stores.

        A DHCP record without an address keeps the MAC's current address
        unless it is in decline cooldown, in which case a new one is
        assigned from the pool.
        """
        mac = normalize_mac(mac)

        with self._lock, self._rollback_on_error():
            if dhcp is not None:
                ip = dhcp.ip_address
                if ip is None:
                    ip = self._reassignable_ip(mac)

                self.lease_manager.add_lease(
                    mac,
                    ip,
                    dhcp.hostname or "*",
                    dhcp.lease_time or DEFAULT_LEASE_TIME,
                    client_id=dhcp.client_id,
                )

            if netboot is not None:
                if netboot.allow_netboot:
                    self.config_manager.add_netboot_options_with_boot_file(
                        mac, self.tftp_server, self.http_server, default_boot_file(mac)
                    )
                else:
                    self.config_manager.disable_netboot(mac)

            self._save()

        logger.info(
            "backend_record_updated",
            mac=mac,
            dhcp=dhcp is not None,
            netboot=None if netboot is None else netboot.allow_netboot,
        )

    async def mark_ip_declined(self, ip: Union[str, IPAddress]) -> None:
        """Withhold ``ip`` from assignment for the decline cooldown."""
        self.lease_manager.mark_ip_declined(ip)
        logger.info("ip_declined", ip=str(ip))

    async def clear_declined_ips(self) -> int:
        return self.lease_manager.clear_declined_ips()

    async def power_cycle(self, mac: str) -> None:
        """Power control is not available for file-backed hosts."""
        logger.debug("power_cycle_not_supported", mac=normalize_mac(mac))

    # Syncer

    @_instrumented("sync")
    async def sync(self) -> None:
        """Drop expired leases and reload both stores from disk."""
        with self._lock:
            self.lease_manager.clean_expired_leases()
            self.lease_manager.load_leases()
            self.config_manager.load_config()

    def reload_leases(self) -> None:
        """Reload the lease file outside any composite update."""
        with self._lock:
            self.lease_manager.load_leases()

    def reload_config(self) -> None:
        """Reload host and option files outside any composite update."""
        with self._lock:
            self.config_manager.load_config()

    # Lifecycle

    async def start(self) -> None:
        """
        Run both stores' file watchers.

        Watcher reloads take the backend lock, so they never land between
        an update and its save. Blocks until cancelled.
        """
        tasks = [
            asyncio.create_task(
                self.lease_manager.start(reload=self.reload_leases), name="lease-watcher"
            ),
            asyncio.create_task(
                self.config_manager.start(reload=self.reload_config), name="config-watcher"
            ),
        ]
        logger.info("dnsmasq_backend_started", root_dir=self.config.root_dir)

        try:
            await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("dnsmasq_backend_stopped")

    def close(self) -> None:
        """Close both stores' watchers, reporting every failure."""
        errors = []
        for name, manager in (
            ("lease manager", self.lease_manager),
            ("config manager", self.config_manager),
        ):
            try:
                manager.close()
            except Exception as e:
                errors.append(f"failed to close {name}: {e}")

        if errors:
            raise BackendError(f"errors closing backend: {'; '.join(errors)}")

    # Internals, called with self._lock held

    def _auto_assign(self, mac: str) -> Lease:
        logger.info("mac_not_found_auto_assigning", mac=mac)

        try:
            ip = self._assign_ip_for_mac(mac)
        except BackendError:
            AUTO_ASSIGNMENTS.labels(result="error").inc()
            raise

        with self._rollback_on_error():
            self.lease_manager.add_lease(mac, ip, f"auto-{mac}", self.default_lease_time)
            self.config_manager.add_netboot_options_with_boot_file(
                mac, self.tftp_server, self.http_server, default_boot_file(mac)
            )
            self._save()

        AUTO_ASSIGNMENTS.labels(result="ok").inc()
        logger.info("lease_auto_assigned", mac=mac, ip=str(ip))

        lease = self.lease_manager.get_lease(mac)
        if lease is None:
            raise RecordNotFoundError(mac)
        return lease

    def _assign_ip_for_mac(self, mac: str) -> ipaddress.IPv4Address:
        if not self.auto_assign_enabled or self.pool is None:
            raise AssignmentNotConfiguredError("automatic IP assignment not configured")

        occupied = {
            lease.ip
            for lease in self.lease_manager.get_active_leases().values()
            if lease.mac != mac
        }
        return assign_ip(self.pool, mac, occupied, self.lease_manager.declined_ips())

    def _reassignable_ip(self, mac: str) -> IPAddress:
        current = self.lease_manager.get_lease(mac)
        if current is not None and not self.lease_manager.is_ip_declined(current.ip):
            return current.ip

        ip = self._assign_ip_for_mac(mac)
        logger.info(
            "lease_reassigned",
            mac=mac,
            previous_ip=str(current.ip) if current else None,
            ip=str(ip),
        )
        return ip

    @contextlib.contextmanager
    def _rollback_on_error(self):
        """Undo the block's in-memory changes if saving them fails."""
        leases = self.lease_manager.snapshot()
        config = self.config_manager.snapshot()
        try:
            yield
        except StorageError:
            self.lease_manager.restore(leases)
            self.config_manager.restore(config)
            # The lease file may already hold the rolled-back change
            try:
                self.lease_manager.save_leases()
            except StorageError as e:
                logger.error("rollback_save_failed", error=str(e))
            raise

    def _save(self) -> None:
        try:
            self.lease_manager.save_leases()
        except StorageError as e:
            raise StorageError(f"failed to save leases: {e}") from e

        try:
            self.config_manager.save_config()
        except StorageError as e:
            raise StorageError(f"failed to save config: {e}") from e

    def _lease_to_dhcp(self, lease: Lease) -> DHCP:
        return DHCP(
            mac_address=lease.mac,
            ip_address=lease.ip,
            hostname=lease.hostname,
            lease_time=max(lease.expiry - int(time.time()), 0),
            client_id=lease.client_id,
        )

    def _netboot_data(self, mac: str) -> Netboot:
        enabled = self.config_manager.is_netboot_enabled(mac)
        netboot = Netboot(allow_netboot=enabled)

        if enabled:
            for option in self.config_manager.get_options(mac):
                if option.option_code == OPTION_BOOT_FILE and option.conditional_tag == "ipxe":
                    parsed = urlparse(option.value)
                    if parsed.scheme and parsed.netloc:
                        netboot.ipxe_script_url = option.value
                    break

        return netboot
