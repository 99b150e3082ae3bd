"""TLS transport for certpool.

This package contains the TLS backends, the handshake negotiator, the
session pool and the request dispatcher that ties them together.
"""

from .backend import (
    CertificateSelector,
    Endpoint,
    HttpcoreTlsBackend,
    RawTlsConnection,
    TlsBackend,
    TlsParameters,
    probe_openssl_backend,
)
from .dispatcher import RequestDispatcher
from .handshake import HandshakeNegotiator, SessionState, TlsSession
from .pool import ConnectionPool, PoolEntry, PoolKey


__all__ = [
    # Backends
    "Endpoint",
    "TlsBackend",
    "TlsParameters",
    "RawTlsConnection",
    "CertificateSelector",
    "HttpcoreTlsBackend",
    "probe_openssl_backend",

    # Handshake
    "HandshakeNegotiator",
    "SessionState",
    "TlsSession",

    # Pooling
    "ConnectionPool",
    "PoolEntry",
    "PoolKey",

    # Dispatch
    "RequestDispatcher",
]
