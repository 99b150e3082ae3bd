"""
certpool - Testing Utilities

This module provides an in-memory TLS backend, certificate helpers and
fixtures for testing code built on certpool.

Export all public testing utilities for easy import:
    from certpool.testing import MockTlsBackend, generate_certificate

"""

from .mocks import (
    CertificateAuthority,
    HandshakeRecord,
    MockTlsBackend,
    MockTlsStream,
    generate_certificate,
)

from .fixtures import (
    certificate_authority,
    certificate_client,
    client_certificate,
    mock_tls_backend,
    other_client_certificate,
)

__all__ = [
    # Mocks
    "MockTlsBackend",
    "MockTlsStream",
    "HandshakeRecord",
    "CertificateAuthority",
    "generate_certificate",

    # Fixtures
    "certificate_authority",
    "client_certificate",
    "other_client_certificate",
    "mock_tls_backend",
    "certificate_client",
]
