"""Client certificates for certpool.

This package holds the certificate model, the selection policy, candidate
stores and server certificate validation.

Example:
    >>> from certpool.certificates import CertificateStore, ClientCertificate
    >>>
    >>> store = CertificateStore()
    >>> store.add(ClientCertificate.from_files("client.crt", "client.key"))
    >>> store.candidates()
"""

from .base import CertificatePolicy, ClientCertificate
from .store import (
    CertificateStore,
    DirectoryCertificateStore,
    EnvironmentCertificateStore,
    PlatformCertificateStore,
    candidates_fingerprint,
)
from .validation import (
    ServerCertificateValidator,
    SslPolicyErrors,
    X509ChainVerifier,
    accept_any_certificate,
    hostname_matches,
)


__all__ = [
    # Model
    "CertificatePolicy",
    "ClientCertificate",

    # Stores
    "CertificateStore",
    "PlatformCertificateStore",
    "EnvironmentCertificateStore",
    "DirectoryCertificateStore",
    "candidates_fingerprint",

    # Validation
    "ServerCertificateValidator",
    "SslPolicyErrors",
    "X509ChainVerifier",
    "accept_any_certificate",
    "hostname_matches",
]
