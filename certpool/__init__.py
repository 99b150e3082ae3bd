"""
certpool

An async HTTPS client library that authenticates with TLS client
certificates and pools the resulting TLS sessions.

Sessions are keyed by endpoint, certificate policy, the certificate offered
and the minimum TLS version, so a session negotiated with one certificate
never carries a request that implies another.

Example:
    from certpool import CertificateClient, ClientCertificate

    cert = ClientCertificate.from_files("client.crt", "client.key")
    async with CertificateClient(certificates=[cert]) as client:
        response = await client.get("https://api.example.com/")
"""

__version__ = "1.0.0"

from certpool.certificates import (
    CertificatePolicy,
    CertificateStore,
    ClientCertificate,
    DirectoryCertificateStore,
    EnvironmentCertificateStore,
    SslPolicyErrors,
    accept_any_certificate,
)
from certpool.client import CertificateClient
from certpool.config import ClientConfig
from certpool.exceptions import (
    BackendUnsupportedError,
    CertPoolError,
    ClientClosedError,
    HandshakeError,
    HandshakeTimeoutError,
    InvalidPolicyError,
    PoolExhaustedError,
    ServerCertificateRejectedError,
    TransportFaultError,
)
from certpool.transport import ConnectionPool, HandshakeNegotiator, PoolKey, RequestDispatcher

__all__ = [
    # Version info
    "__version__",

    # Client
    "CertificateClient",
    "ClientConfig",

    # Certificates
    "CertificatePolicy",
    "ClientCertificate",
    "CertificateStore",
    "EnvironmentCertificateStore",
    "DirectoryCertificateStore",
    "SslPolicyErrors",
    "accept_any_certificate",

    # Transport
    "HandshakeNegotiator",
    "ConnectionPool",
    "PoolKey",
    "RequestDispatcher",

    # Exceptions
    "CertPoolError",
    "InvalidPolicyError",
    "HandshakeError",
    "BackendUnsupportedError",
    "HandshakeTimeoutError",
    "ServerCertificateRejectedError",
    "TransportFaultError",
    "PoolExhaustedError",
    "ClientClosedError",
]
