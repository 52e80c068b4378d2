"""
Exceptions raised by the netboot backend.

Handlers in the DHCP/TFTP/HTTP layers map these onto protocol failures
(no offer, 404, 500). Parse errors never appear here: malformed lines are
logged and skipped by the stores.
"""


class BackendError(Exception):
    """Base class for all backend errors."""


class RecordNotFoundError(BackendError, LookupError):
    """No active lease exists for the requested MAC or IP."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"record not found: {key}")


class StorageError(BackendError, OSError):
    """Reading or writing the on-disk lease/config files failed."""


class PoolExhaustedError(BackendError):
    """Every address in the pool is leased or in decline cooldown."""


class AssignmentNotConfiguredError(BackendError):
    """Automatic assignment was requested but no pool is configured."""


class ConfigurationError(BackendError, ValueError):
    """Invalid backend configuration (pool bounds, addresses, env values)."""
