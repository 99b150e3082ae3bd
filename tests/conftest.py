"""
Shared pytest configuration for certpool tests.

This module configures pytest and imports all fixtures for use in tests.
"""

import inspect
import sys
from pathlib import Path

import pytest
import yaml

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

# Import all fixtures from certpool.testing
from certpool.testing import (
    certificate_authority,
    certificate_client,
    client_certificate,
    mock_tls_backend,
    other_client_certificate,
)

# Re-export fixtures so they're available to all tests
__all__ = [
    "certificate_authority",
    "certificate_client",
    "client_certificate",
    "mock_tls_backend",
    "other_client_certificate",
]


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers",
        "asyncio: mark test as async (automatically applied to async tests)"
    )
    config.addinivalue_line(
        "markers",
        "slow: mark test as slow running"
    )
    config.addinivalue_line(
        "markers",
        "unit: mark test as unit test"
    )


@pytest.fixture
def config_dict():
    """
    Provides a valid client configuration.

    Returns:
        Dict containing a complete ClientConfig
    """
    return {
        "name": "test-client",
        "certificate_policy": "manual",
        "request_timeout_seconds": 15,
        "pool": {
            "enabled": True,
            "max_idle_per_key": 4,
            "max_connections_per_key": 8,
            "idle_timeout_seconds": 30,
        },
        "handshake": {
            "timeout_seconds": 5,
            "tls_min_version": "1.3",
            "certificate_selection": "auto",
        },
        "logging": {
            "level": "DEBUG",
            "format": "json",
        },
        "metrics": {
            "enabled": False,
        },
    }


@pytest.fixture
def temp_config_file(tmp_path, config_dict):
    """
    Create a temporary config file for testing.

    Returns:
        Path to temporary config file
    """
    config_file = tmp_path / "certpool.yaml"
    with open(config_file, "w") as f:
        yaml.dump(config_dict, f)

    return config_file


@pytest.fixture
def pem_files(tmp_path, client_certificate):
    """
    Write the client certificate and key to PEM files.

    Returns:
        Tuple of (certificate path, key path)
    """
    cert_path = tmp_path / "client.crt"
    key_path = tmp_path / "client.key"
    cert_path.write_bytes(client_certificate.certificate_pem())
    key_path.write_bytes(client_certificate.private_key_pem())
    key_path.chmod(0o600)
    return cert_path, key_path


@pytest.fixture
def endpoint():
    """Provides the endpoint most tests talk to."""
    from certpool.transport import Endpoint

    return Endpoint("https", "service.test", 443)


# Hooks for test collection

def pytest_collection_modifyitems(config, items):
    """
    Modify test items during collection.

    Automatically marks async tests with asyncio marker.
    """
    for item in items:
        if inspect.iscoroutinefunction(getattr(item, "function", None)):
            item.add_marker(pytest.mark.asyncio)
