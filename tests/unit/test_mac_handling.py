"""Unit tests for MAC normalisation and architecture detection."""

import pytest

from netboot_backend.arch import default_boot_file, is_raspberry_pi
from netboot_backend.data import normalize_mac


class TestNormalizeMac:
    """Tests for MAC normalisation."""

    @pytest.mark.parametrize("value", [
        "aa:bb:cc:dd:ee:ff",
        "AA:BB:CC:DD:EE:FF",
        "aa-bb-cc-dd-ee-ff",
        "aabb.ccdd.eeff",
        "aabbccddeeff",
        " aa:bb:cc:dd:ee:ff ",
    ])
    def test_normalised_forms(self, value):
        """Test accepted notations normalise to lowercase colon form."""
        assert normalize_mac(value) == "aa:bb:cc:dd:ee:ff"

    def test_eui64(self):
        """Test 8-byte hardware addresses are accepted."""
        assert normalize_mac("02-00-00-00-00-00-00-01") == "02:00:00:00:00:00:00:01"

    @pytest.mark.parametrize("value", ["", "aa:bb:cc", "aa:bb:cc:dd:ee:gg", "aa:bb:cc:dd:ee:f"])
    def test_invalid(self, value):
        """Test malformed addresses raise ValueError."""
        with pytest.raises(ValueError):
            normalize_mac(value)


class TestArchitecture:
    """Tests for boot file selection."""

    @pytest.mark.parametrize("mac", [
        "b8:27:eb:00:00:01",
        "DC:A6:32:00:00:01",
        "e4:5f:01:00:00:01",
        "28:cd:c1:00:00:01",
        "d8:3a:dd:00:00:01",
    ])
    def test_raspberry_pi(self, mac):
        """Test Raspberry Pi OUIs get the ARM64 binary."""
        assert is_raspberry_pi(mac)
        assert default_boot_file(mac) == "snp.efi"

    def test_other_vendor(self):
        """Test everything else gets the x86_64 binary."""
        assert not is_raspberry_pi("00:50:56:00:00:01")
        assert default_boot_file("00:50:56:00:00:01") == "ipxe.efi"
