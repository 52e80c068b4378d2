"""
Configuration management for the netboot backend.

Loads configuration from environment variables (or a plain mapping, for
embedding in a larger process config) with validation.
"""

import os
from dataclasses import dataclass, field
from typing import Any, List, Mapping, Optional

import netifaces
from decouple import Csv, UndefinedValueError, config

from netboot_backend.errors import ConfigurationError

DEFAULT_ROOT_DIR = "/shared/dnsmasq"
DEFAULT_LEASE_TIME = 604800  # 1 week


@dataclass(slots=True)
class BackendConfig:
    """DNSMasq backend configuration."""

    # Storage
    root_dir: str = DEFAULT_ROOT_DIR
    lease_file: Optional[str] = None  # defaults to <root_dir>/dnsmasq.leases

    # Boot servers handed out in generated options
    tftp_server: Optional[str] = None
    http_server: Optional[str] = None
    interface: str = "eth0"

    # Automatic lease assignment
    auto_assign_enabled: bool = False
    ip_pool_start: Optional[str] = None
    ip_pool_end: Optional[str] = None
    default_lease_time: int = DEFAULT_LEASE_TIME

    # Accepted for forward compatibility; not yet written into options
    default_gateway: Optional[str] = None
    default_subnet: Optional[str] = None
    default_dns: List[str] = field(default_factory=list)
    default_domain: Optional[str] = None

    # Housekeeping
    decline_sweep_interval: int = 60  # seconds

    # Logging
    log_level: str = "INFO"

    # Metrics
    metrics_enabled: bool = True
    metrics_port: int = 9090

    @classmethod
    def from_env(cls) -> "BackendConfig":
        """Load configuration from environment variables."""

        try:
            root_dir = config("DNSMASQ_ROOT_DIR", default=DEFAULT_ROOT_DIR)
            lease_file = config("DNSMASQ_LEASE_FILE", default=None)

            # Boot servers
            tftp_server = config("DNSMASQ_TFTP_SERVER", default=None)
            http_server = config("DNSMASQ_HTTP_SERVER", default=None)
            interface = config("DNSMASQ_INTERFACE", default="eth0")

            # Automatic assignment
            auto_assign_enabled = config("DNSMASQ_AUTO_ASSIGN_ENABLED", default=False, cast=bool)
            ip_pool_start = config("DNSMASQ_IP_POOL_START", default="192.168.1.100")
            ip_pool_end = config("DNSMASQ_IP_POOL_END", default="192.168.1.200")
            default_lease_time = config(
                "DNSMASQ_DEFAULT_LEASE_TIME", default=DEFAULT_LEASE_TIME, cast=int
            )

            # Network defaults
            default_gateway = config("DNSMASQ_DEFAULT_GATEWAY", default="192.168.1.1")
            default_subnet = config("DNSMASQ_DEFAULT_SUBNET", default="255.255.255.0")
            default_dns = config("DNSMASQ_DEFAULT_DNS", default="8.8.8.8,8.8.4.4", cast=Csv())
            default_domain = config("DNSMASQ_DEFAULT_DOMAIN", default="local")

            decline_sweep_interval = config("DECLINE_SWEEP_INTERVAL", default=60, cast=int)

            # Logging
            log_level = config("LOG_LEVEL", default="INFO")

            # Metrics
            metrics_enabled = config("METRICS_ENABLED", default=True, cast=bool)
            metrics_port = config("METRICS_PORT", default=9090, cast=int)
        except (ValueError, UndefinedValueError) as e:
            raise ConfigurationError(f"Invalid environment configuration: {e}") from e

        if default_lease_time <= 0:
            raise ConfigurationError(
                f"Invalid DNSMASQ_DEFAULT_LEASE_TIME: {default_lease_time}. Must be positive."
            )

        return cls(
            root_dir=root_dir,
            lease_file=lease_file,
            tftp_server=tftp_server,
            http_server=http_server,
            interface=interface,
            auto_assign_enabled=auto_assign_enabled,
            ip_pool_start=ip_pool_start,
            ip_pool_end=ip_pool_end,
            default_lease_time=default_lease_time,
            default_gateway=default_gateway,
            default_subnet=default_subnet,
            default_dns=list(default_dns),
            default_domain=default_domain,
            decline_sweep_interval=decline_sweep_interval,
            log_level=log_level,
            metrics_enabled=metrics_enabled,
            metrics_port=metrics_port,
        )

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> "BackendConfig":
        """
        Build configuration from a ``dnsmasq`` section of a process config.

        Keys follow the on-disk config names (``root_directory``,
        ``tftp_server``, ``ip_pool_start``...). Unknown keys and values of
        the wrong type are ignored, leaving the default in place.
        """
        cfg = cls()

        def _str(key: str) -> Optional[str]:
            value = values.get(key)
            return value if isinstance(value, str) else None

        for key, attr in (
            ("root_directory", "root_dir"),
            ("lease_file", "lease_file"),
            ("tftp_server", "tftp_server"),
            ("http_server", "http_server"),
            ("interface", "interface"),
            ("ip_pool_start", "ip_pool_start"),
            ("ip_pool_end", "ip_pool_end"),
            ("default_gateway", "default_gateway"),
            ("default_subnet", "default_subnet"),
            ("default_domain", "default_domain"),
        ):
            value = _str(key)
            if value is not None:
                setattr(cfg, attr, value)

        auto_assign = values.get("auto_assign_enabled")
        if isinstance(auto_assign, bool):
            cfg.auto_assign_enabled = auto_assign

        lease_time = values.get("default_lease_time")
        if isinstance(lease_time, int) and not isinstance(lease_time, bool) and lease_time > 0:
            cfg.default_lease_time = lease_time

        dns = values.get("default_dns")
        if isinstance(dns, (list, tuple)):
            cfg.default_dns = [s for s in dns if isinstance(s, str)]

        return cfg

    @property
    def lease_path(self) -> str:
        """Path of the DNSMasq lease file."""
        return self.lease_file or os.path.join(self.root_dir, "dnsmasq.leases")

    def get_server_address(self) -> str:
        """Get the address clients should reach this host's boot services on."""
        # Construct from interface IP if possible
        try:
            addrs = netifaces.ifaddresses(self.interface)
            if netifaces.AF_INET in addrs:
                return addrs[netifaces.AF_INET][0]['addr']
        except (ValueError, KeyError, IndexError):
            pass

        # Fallback to localhost (not ideal for production)
        return "127.0.0.1"

    def get_tftp_server(self) -> str:
        """TFTP server written into options 66/150/255 and the IPv6 boot URL."""
        return self.tftp_server or self.get_server_address()

    def get_http_server(self) -> str:
        """HTTP host[:port] serving boot.ipxe."""
        return self.http_server or self.get_server_address()
