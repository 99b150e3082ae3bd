"""
Custom exceptions for certpool.

All exceptions inherit from CertPoolError for easy catching of library-specific
errors. Each failure mode of the handshake / pooling pipeline has its own type
so callers can tell a rejected server certificate from a timeout or from a
broken pooled connection.
"""

from typing import Optional


class CertPoolError(Exception):
    """
    Base exception for all certpool errors.

    All library exceptions inherit from this class, allowing users to catch
    any certpool error with a single exception handler.
    """

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({details_str})"
        return self.message


class ConfigurationError(CertPoolError):
    """
    Raised when client configuration is invalid.

    Examples:
        - Invalid YAML in a configuration file
        - max_idle_per_key larger than max_connections_per_key
        - Unknown certificate selection override
    """

    pass


class InvalidPolicyError(CertPoolError, ValueError):
    """
    Raised when a value outside CertificatePolicy is assigned to a client.

    Raised at assignment time, never at handshake time. The previously
    assigned policy stays in effect.
    """

    def __init__(self, value: object):
        super().__init__(
            f"Invalid certificate policy: {value!r}. "
            "Expected 'manual' or 'automatic'",
            details={"value": repr(value)},
        )
        self.value = value


class CertificateError(CertPoolError):
    """
    Raised when a client certificate cannot be loaded or is unusable.

    Examples:
        - Certificate file not found
        - Private key does not match certificate
        - PKCS#12 bundle without a private key
    """

    pass


class CertificateStoreError(CertPoolError):
    """Raised on invalid certificate store operations (e.g. add under Automatic)."""

    pass


class HandshakeError(CertPoolError):
    """
    Base class for failures while establishing a TLS session.

    A handshake error never leaves a session in the connection pool.
    """

    pass


class BackendUnsupportedError(HandshakeError):
    """
    Raised when the TLS backend cannot select client certificates.

    Detected synchronously from the cached capability probe, before any
    network connection is attempted.
    """

    pass


class HandshakeTimeoutError(HandshakeError):
    """Raised when the TLS handshake does not complete within the timeout."""

    pass


class ServerCertificateRejectedError(HandshakeError):
    """
    Raised when the server certificate is not accepted.

    Either the caller-supplied validation callback returned False, or (with no
    callback) the backend's own verification failed.
    """

    pass


class HandshakeFailedError(HandshakeError):
    """Raised when the connection or handshake fails for any other reason."""

    pass


class TransportFaultError(CertPoolError):
    """
    Raised when I/O fails on an established TLS session.

    The faulted session is discarded; sibling sessions for the same pool key
    are left untouched.
    """

    pass


class UnsupportedSchemeError(CertPoolError):
    """Raised when a request targets a URL scheme other than https."""

    pass


class ConnectionPoolError(CertPoolError):
    """Base exception for connection pool errors."""

    pass


class PoolExhaustedError(ConnectionPoolError):
    """Raised when a bounded connection pool has no capacity left."""

    def __init__(self, key: object, max_connections: int):
        super().__init__(
            f"Connection pool exhausted for {key}. "
            f"Max connections: {max_connections}",
            details={"max_connections": max_connections},
        )
        self.key = key
        self.max_connections = max_connections


class SessionStateError(ConnectionPoolError):
    """Raised on an illegal TLS session lifecycle transition."""

    pass


class ClientClosedError(CertPoolError):
    """Raised when a request is sent through a client that has been closed."""

    pass
