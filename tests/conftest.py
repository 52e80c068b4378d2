#!/usr/bin/env python3
"""
Netboot Backend Testing - Global Test Configuration
Pytest fixtures shared by the store and backend tests
"""

import tempfile
from pathlib import Path

import pytest

from netboot_backend.config import BackendConfig
from netboot_backend.dnsmasq.backend import Backend

TFTP_SERVER = "192.168.1.1"
HTTP_SERVER = "192.168.1.1:8080"


@pytest.fixture(scope='function')
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as temp_path:
        yield Path(temp_path)


@pytest.fixture(scope='function')
def backend_config(temp_dir):
    """Backend configuration rooted in the temporary directory."""
    return BackendConfig(
        root_dir=str(temp_dir),
        tftp_server=TFTP_SERVER,
        http_server=HTTP_SERVER,
        metrics_enabled=False,
    )


@pytest.fixture(scope='function')
def make_backend(backend_config):
    """Factory building backends that are closed after the test."""
    backends = []

    def _make(**overrides):
        for key, value in overrides.items():
            setattr(backend_config, key, value)
        backend = Backend(backend_config)
        backends.append(backend)
        return backend

    yield _make

    for backend in backends:
        backend.close()


@pytest.fixture
def auto_backend(make_backend):
    """Backend with automatic assignment over 192.168.1.100-192.168.1.200."""
    return make_backend(
        auto_assign_enabled=True,
        ip_pool_start="192.168.1.100",
        ip_pool_end="192.168.1.200",
        default_lease_time=3600,
    )
