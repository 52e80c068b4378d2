"""
Architecture detection for boot file selection.
"""

from netboot_backend.data import normalize_mac

# OUI registrations of Raspberry Pi Trading Ltd.
RASPBERRY_PI_OUIS = (
    "b8:27:eb",
    "dc:a6:32",
    "e4:5f:01",
    "28:cd:c1",
    "d8:3a:dd",
)

BOOT_FILE_ARM64 = "snp.efi"
BOOT_FILE_X86_64 = "ipxe.efi"


def is_raspberry_pi(mac: str) -> bool:
    """Check if the MAC address belongs to a Raspberry Pi."""
    return normalize_mac(mac).startswith(RASPBERRY_PI_OUIS)


def default_boot_file(mac: str) -> str:
    """Pick the iPXE binary a client should chain-load by default."""
    if is_raspberry_pi(mac):
        return BOOT_FILE_ARM64
    return BOOT_FILE_X86_64
