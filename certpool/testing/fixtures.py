"""
Pytest fixtures for certpool testing.

This module provides reusable pytest fixtures for testing code that uses
CertificateClient. Import these fixtures in your conftest.py or test files.
"""

import pytest
import pytest_asyncio

from certpool.client import CertificateClient
from certpool.certificates.base import ClientCertificate
from certpool.certificates.validation import accept_any_certificate
from .mocks import CertificateAuthority, MockTlsBackend


@pytest.fixture
def certificate_authority() -> CertificateAuthority:
    """
    Provides a throwaway CA for issuing client certificates.

    Example:
        def test_issue(certificate_authority):
            cert = certificate_authority.issue("client-a")
            assert cert.has_private_key
    """
    return CertificateAuthority("certpool test CA")


@pytest.fixture
def client_certificate(certificate_authority) -> ClientCertificate:
    """Provides a valid client certificate with its private key."""
    return certificate_authority.issue("client-a")


@pytest.fixture
def other_client_certificate(certificate_authority) -> ClientCertificate:
    """Provides a second, distinct client certificate from the same CA."""
    return certificate_authority.issue("client-b")


@pytest.fixture
def mock_tls_backend() -> MockTlsBackend:
    """
    Provides an in-memory TLS backend that requests a client certificate.

    Example:
        async def test_presented(mock_tls_backend, client_certificate):
            client = CertificateClient(
                certificates=[client_certificate], backend=mock_tls_backend
            )
            await client.get("https://service.test/")
            assert mock_tls_backend.presented_certificates == [client_certificate]
    """
    return MockTlsBackend(request_client_certificate=True)


@pytest_asyncio.fixture
async def certificate_client(mock_tls_backend, client_certificate):
    """
    Provides a CertificateClient wired to the mock backend.

    The client holds `client_certificate` under MANUAL policy and accepts
    the mock server's certificate. It is closed after the test.
    """
    client = CertificateClient(
        certificates=[client_certificate],
        backend=mock_tls_backend,
        server_certificate_validator=accept_any_certificate,
    )
    async with client:
        yield client
