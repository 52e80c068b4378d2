"""Unit tests for backend configuration loading."""

import pytest

from netboot_backend.config import DEFAULT_LEASE_TIME, BackendConfig
from netboot_backend.errors import ConfigurationError


class TestFromEnv:
    """Tests for environment-based configuration."""

    def test_defaults(self, monkeypatch):
        """Test defaults when nothing is set."""
        monkeypatch.delenv("DNSMASQ_ROOT_DIR", raising=False)
        monkeypatch.delenv("DNSMASQ_AUTO_ASSIGN_ENABLED", raising=False)

        config = BackendConfig.from_env()

        assert config.root_dir == "/shared/dnsmasq"
        assert config.lease_path == "/shared/dnsmasq/dnsmasq.leases"
        assert config.auto_assign_enabled is False
        assert config.default_lease_time == DEFAULT_LEASE_TIME

    def test_env_overrides(self, monkeypatch, temp_dir):
        """Test values are read from the environment."""
        monkeypatch.setenv("DNSMASQ_ROOT_DIR", str(temp_dir))
        monkeypatch.setenv("DNSMASQ_LEASE_FILE", str(temp_dir / "leases"))
        monkeypatch.setenv("DNSMASQ_TFTP_SERVER", "10.0.0.1")
        monkeypatch.setenv("DNSMASQ_AUTO_ASSIGN_ENABLED", "true")
        monkeypatch.setenv("DNSMASQ_IP_POOL_START", "10.0.0.100")
        monkeypatch.setenv("DNSMASQ_IP_POOL_END", "10.0.0.150")
        monkeypatch.setenv("DNSMASQ_DEFAULT_LEASE_TIME", "7200")
        monkeypatch.setenv("DNSMASQ_DEFAULT_DNS", "1.1.1.1, 9.9.9.9")
        monkeypatch.setenv("METRICS_ENABLED", "false")

        config = BackendConfig.from_env()

        assert config.root_dir == str(temp_dir)
        assert config.lease_path == str(temp_dir / "leases")
        assert config.get_tftp_server() == "10.0.0.1"
        assert config.auto_assign_enabled is True
        assert (config.ip_pool_start, config.ip_pool_end) == ("10.0.0.100", "10.0.0.150")
        assert config.default_lease_time == 7200
        assert config.default_dns == ["1.1.1.1", "9.9.9.9"]
        assert config.metrics_enabled is False

    def test_invalid_integer(self, monkeypatch):
        """Test non-numeric integers raise ConfigurationError."""
        monkeypatch.setenv("METRICS_PORT", "ninety")
        with pytest.raises(ConfigurationError):
            BackendConfig.from_env()

    def test_invalid_boolean(self, monkeypatch):
        """Test unrecognised booleans raise ConfigurationError."""
        monkeypatch.setenv("DNSMASQ_AUTO_ASSIGN_ENABLED", "perhaps")
        with pytest.raises(ConfigurationError):
            BackendConfig.from_env()

    @pytest.mark.parametrize("value", ["0", "-5"])
    def test_non_positive_lease_time(self, monkeypatch, value):
        """Test lease time must be positive."""
        monkeypatch.setenv("DNSMASQ_DEFAULT_LEASE_TIME", value)
        with pytest.raises(ConfigurationError):
            BackendConfig.from_env()


class TestFromMapping:
    """Tests for mapping-based configuration."""

    def test_mapping_values(self):
        """Test recognised keys are applied."""
        config = BackendConfig.from_mapping({
            "root_directory": "/srv/dnsmasq",
            "tftp_server": "10.0.0.1",
            "http_server": "10.0.0.1:8080",
            "auto_assign_enabled": True,
            "ip_pool_start": "10.0.0.100",
            "ip_pool_end": "10.0.0.200",
            "default_lease_time": 3600,
            "default_dns": ["10.0.0.53"],
        })

        assert config.root_dir == "/srv/dnsmasq"
        assert config.lease_path == "/srv/dnsmasq/dnsmasq.leases"
        assert config.get_http_server() == "10.0.0.1:8080"
        assert config.auto_assign_enabled is True
        assert config.default_lease_time == 3600
        assert config.default_dns == ["10.0.0.53"]

    def test_wrong_types_ignored(self):
        """Test values of the wrong type leave defaults in place."""
        config = BackendConfig.from_mapping({
            "root_directory": 42,
            "auto_assign_enabled": "yes",
            "default_lease_time": -1,
            "unknown": "value",
        })

        assert config.root_dir == "/shared/dnsmasq"
        assert config.auto_assign_enabled is False
        assert config.default_lease_time == DEFAULT_LEASE_TIME

    def test_server_address_fallback(self):
        """Test an unknown interface falls back to localhost."""
        config = BackendConfig(interface="does-not-exist0")
        assert config.get_tftp_server() == "127.0.0.1"
        assert config.get_http_server() == "127.0.0.1"
