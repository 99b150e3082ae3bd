"""
TLS handshake negotiation and session lifecycle.

The HandshakeNegotiator decides which client certificate may be presented,
runs one handshake through a TLS backend, applies the caller's server
certificate validation callback and returns a TlsSession. A failed,
timed-out, rejected or cancelled handshake always closes what it opened and
never yields a session.
"""

import asyncio
import functools
import logging
import time
import uuid
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Optional, Sequence

import httpcore
from cryptography import x509
from cryptography.hazmat.primitives import hashes

from certpool.certificates.base import CertificatePolicy, ClientCertificate
from certpool.certificates.validation import (
    ServerCertificateValidator,
    X509ChainVerifier,
)
from certpool.config import CertificateSelection, HandshakeSettings
from certpool.exceptions import (
    BackendUnsupportedError,
    HandshakeError,
    HandshakeFailedError,
    HandshakeTimeoutError,
    ServerCertificateRejectedError,
    SessionStateError,
)
from .backend import Endpoint, HttpcoreTlsBackend, RawTlsConnection, TlsBackend, TlsParameters

if TYPE_CHECKING:
    from certpool.observability.logging import AuditLogger
    from certpool.observability.metrics import PoolMetrics


logger = logging.getLogger(__name__)


class SessionState(Enum):
    """Lifecycle states of a TLS session."""
    NEGOTIATING = "negotiating"
    ESTABLISHED = "established"  # handshake done, never used
    IN_USE = "in_use"            # owned by exactly one request
    IDLE = "idle"                # parked in the pool
    CLOSED = "closed"


_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.NEGOTIATING: frozenset({SessionState.ESTABLISHED, SessionState.CLOSED}),
    SessionState.ESTABLISHED: frozenset({SessionState.IN_USE, SessionState.CLOSED}),
    SessionState.IN_USE: frozenset({SessionState.IDLE, SessionState.CLOSED}),
    SessionState.IDLE: frozenset({SessionState.IN_USE, SessionState.CLOSED}),
    SessionState.CLOSED: frozenset(),
}


class TlsSession:
    """An authenticated TLS session and the HTTP/1.1 connection over it.

    Records which client certificate was actually presented during the
    handshake; that may be None even under MANUAL policy when the server
    did not ask for one.
    `offered_certificate` is the one that was made available to the
    handshake.
    """

    def __init__(
        self,
        endpoint: Endpoint,
        policy: CertificatePolicy,
        pool_key: Any = None,
        keepalive_expiry: Optional[float] = None,
    ) -> None:
        self.id = uuid.uuid4().hex[:12]
        self.endpoint = endpoint
        self.policy = policy
        self.pool_key = pool_key
        self.protocol_version: Optional[str] = None
        self.peer_certificate: Optional[x509.Certificate] = None
        self.peer_chain: tuple[x509.Certificate, ...] = ()
        self.client_certificate: Optional[ClientCertificate] = None
        self.offered_certificate: Optional[ClientCertificate] = None

        self._keepalive_expiry = keepalive_expiry
        self._stream: Optional[httpcore.AsyncNetworkStream] = None
        self._http: Optional[httpcore.AsyncHTTP11Connection] = None
        self._state = SessionState.NEGOTIATING

        self.created_at = time.monotonic()
        self.last_used = self.created_at
        self.use_count = 0

    def __repr__(self) -> str:
        return (
            f"TlsSession(id={self.id}, endpoint={self.endpoint}, "
            f"state={self._state.value}, client_certificate="
            f"{self.client_certificate_fingerprint or 'none'})"
        )

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_closed(self) -> bool:
        return self._state is SessionState.CLOSED

    @property
    def client_certificate_fingerprint(self) -> Optional[str]:
        if self.client_certificate is None:
            return None
        return self.client_certificate.fingerprint

    @property
    def peer_certificate_fingerprint(self) -> Optional[str]:
        if self.peer_certificate is None:
            return None
        return self.peer_certificate.fingerprint(hashes.SHA256()).hex()

    def transition(self, new_state: SessionState) -> None:
        """Move to `new_state`.

        Raises:
            SessionStateError: If the transition is not allowed
        """
        if new_state not in _TRANSITIONS[self._state]:
            raise SessionStateError(
                f"Illegal session transition {self._state.value} -> {new_state.value}",
                details={"session": self.id},
            )
        self._state = new_state

    def attach(self, raw: RawTlsConnection) -> None:
        """Bind the completed handshake to this session."""
        self._stream = raw.stream
        self.protocol_version = raw.protocol_version
        self.peer_certificate = raw.peer_certificate
        self.peer_chain = raw.peer_chain
        self.client_certificate = raw.client_certificate
        self.offered_certificate = raw.offered_certificate
        self.transition(SessionState.ESTABLISHED)

    @property
    def http_connection(self) -> httpcore.AsyncHTTP11Connection:
        """HTTP/1.1 connection over the TLS stream, created on first use."""
        if self._stream is None or self.is_closed:
            raise SessionStateError(
                f"Session {self.id} has no open stream",
                details={"state": self._state.value},
            )
        if self._http is None:
            self._http = httpcore.AsyncHTTP11Connection(
                origin=self.endpoint.origin,
                stream=self._stream,
                keepalive_expiry=self._keepalive_expiry,
            )
        return self._http

    def is_reusable(self) -> bool:
        """Whether another request may be sent over this session."""
        if self._state in (SessionState.CLOSED, SessionState.NEGOTIATING):
            return False
        if self._http is None:
            return self._stream is not None
        return self._http.is_available() and not self._http.has_expired()

    def is_idle_expired(self, idle_timeout: float) -> bool:
        if self._state is not SessionState.IDLE:
            return False
        return (time.monotonic() - self.last_used) > idle_timeout

    def mark_used(self) -> None:
        self.last_used = time.monotonic()
        self.use_count += 1

    def info(self) -> dict[str, Any]:
        """Summary exposed on responses and in stats."""
        return {
            "session_id": self.id,
            "endpoint": str(self.endpoint),
            "protocol_version": self.protocol_version,
            "client_certificate": self.client_certificate_fingerprint,
            "offered_certificate": (
                self.offered_certificate.fingerprint if self.offered_certificate else None
            ),
            "peer_certificate": self.peer_certificate_fingerprint,
            "use_count": self.use_count,
        }

    async def close(self) -> None:
        """Close the session and its stream. Safe to call more than once."""
        if self._state is SessionState.CLOSED:
            return
        self._state = SessionState.CLOSED

        if self._http is not None:
            await self._http.aclose()
        elif self._stream is not None:
            await self._stream.aclose()

        logger.debug(f"Closed TLS session {self.id} to {self.endpoint}")


class HandshakeNegotiator:
    """Runs TLS handshakes with client certificate selection.

    Whether the backend can present client certificates is decided once, at
    construction, by a capability probe (the backend's own by default) or by
    the `certificate_selection` setting. Policies that need that capability
    fail synchronously with BackendUnsupportedError before any I/O.

    Example:
        negotiator = HandshakeNegotiator(HttpcoreTlsBackend(), HandshakeSettings())
        session = await negotiator.negotiate(
            endpoint, CertificatePolicy.MANUAL, [cert], accept_any_certificate
        )
    """

    def __init__(
        self,
        backend: Optional[TlsBackend] = None,
        settings: Optional[HandshakeSettings] = None,
        capability_probe: Optional[Callable[[], bool]] = None,
        chain_verifier: Optional[X509ChainVerifier] = None,
        keepalive_expiry: Optional[float] = None,
        metrics: Optional["PoolMetrics"] = None,
        audit: Optional["AuditLogger"] = None,
    ) -> None:
        self._backend = backend or HttpcoreTlsBackend()
        self._settings = settings or HandshakeSettings()
        self._verifier = chain_verifier or X509ChainVerifier(self._settings.trust_bundle)
        self._keepalive_expiry = keepalive_expiry
        self._metrics = metrics
        self._audit = audit
        self._supports_selection = self._resolve_capability(capability_probe)

        self._handshake_count = 0
        self._failure_count = 0

    def _resolve_capability(self, probe: Optional[Callable[[], bool]]) -> bool:
        selection = self._settings.certificate_selection
        if selection is CertificateSelection.ENABLED:
            return True
        if selection is CertificateSelection.DISABLED:
            return False
        probe = probe or self._backend.supports_certificate_selection
        return bool(probe())

    @property
    def supports_certificate_selection(self) -> bool:
        return self._supports_selection

    @property
    def handshake_count(self) -> int:
        """Number of handshakes that produced a session."""
        return self._handshake_count

    @property
    def min_tls_version(self) -> str:
        return self._settings.tls_min_version

    def requires_certificate_selection(
        self,
        policy: CertificatePolicy,
        candidates: Sequence[ClientCertificate],
    ) -> bool:
        return policy is CertificatePolicy.AUTOMATIC or bool(candidates)

    def check_supported(
        self,
        policy: CertificatePolicy,
        candidates: Sequence[ClientCertificate],
    ) -> None:
        """Fail fast if the backend cannot honour `policy`.

        Raises:
            BackendUnsupportedError: If certificate selection is needed but
                the backend lacks it
        """
        if self.requires_certificate_selection(policy, candidates) and not self._supports_selection:
            raise BackendUnsupportedError(
                "The TLS backend does not support client certificate selection",
                details={"policy": policy.value, "candidates": len(candidates)},
            )

    def select_certificate(
        self,
        candidates: Sequence[ClientCertificate],
        acceptable_issuers: Sequence[x509.Name] = (),
    ) -> Optional[ClientCertificate]:
        """Pick the first usable candidate for a certificate request.

        A candidate is usable when it has a private key, is inside its
        validity window and matches the acceptable issuers (if any).
        """
        for cert in candidates:
            if not cert.has_private_key:
                logger.debug(f"Skipping {cert.subject}: no private key")
                continue
            if self._settings.skip_expired_certificates and not cert.is_valid_at():
                logger.debug(f"Skipping {cert.subject}: outside validity window")
                continue
            if not cert.matches_issuers(acceptable_issuers):
                logger.debug(f"Skipping {cert.subject}: issuer not acceptable")
                continue
            return cert
        return None

    def _validate_server(
        self,
        endpoint: Endpoint,
        session: TlsSession,
        callback: ServerCertificateValidator,
    ) -> None:
        errors = self._verifier.policy_errors(
            endpoint.host, session.peer_certificate, session.peer_chain
        )
        try:
            accepted = callback(session.peer_certificate, session.peer_chain, errors)
        except Exception as e:
            raise ServerCertificateRejectedError(
                f"Server certificate validation callback failed for {endpoint}: {e}",
                details={"endpoint": str(endpoint), "policy_errors": str(errors)},
            ) from e

        if not accepted:
            raise ServerCertificateRejectedError(
                f"Server certificate rejected for {endpoint}",
                details={"endpoint": str(endpoint), "policy_errors": str(errors)},
            )

    def _record_failure(self, endpoint: Endpoint, outcome: str, error: Exception) -> None:
        self._failure_count += 1
        logger.warning(f"Handshake with {endpoint} failed ({outcome}): {error}")
        if self._metrics:
            self._metrics.record_handshake(outcome)
        if self._audit and isinstance(error, ServerCertificateRejectedError):
            self._audit.audit_certificate_rejected(str(endpoint), error.message)

    async def negotiate(
        self,
        endpoint: Endpoint,
        policy: CertificatePolicy,
        candidates: Sequence[ClientCertificate],
        server_validation_callback: Optional[ServerCertificateValidator] = None,
        pool_key: Any = None,
    ) -> TlsSession:
        """Perform one TLS handshake.

        Args:
            endpoint: Remote peer
            policy: Certificate policy in effect for the request
            candidates: Certificates that may be offered
            server_validation_callback: Decides whether to accept the server
                certificate; None uses the backend's own verification
            pool_key: Key the resulting session will be pooled under

        Returns:
            Session in ESTABLISHED state

        Raises:
            BackendUnsupportedError: Certificate selection unavailable
            HandshakeTimeoutError: Handshake exceeded the timeout
            ServerCertificateRejectedError: Server certificate not accepted
            HandshakeFailedError: Any other connect or handshake failure
        """
        policy = CertificatePolicy.parse(policy)
        candidates = tuple(candidates)
        self.check_supported(policy, candidates)

        session = TlsSession(endpoint, policy, pool_key, self._keepalive_expiry)
        params = TlsParameters(
            min_version=self._settings.minimum_version,
            verify_server=server_validation_callback is None,
            select_certificate=functools.partial(self.select_certificate, candidates),
            timeout=self._settings.timeout_seconds,
            trust_bundle=self._settings.trust_bundle,
        )

        logger.debug(
            f"Negotiating TLS with {endpoint} "
            f"(policy: {policy.value}, candidates: {len(candidates)})"
        )
        start_time = time.monotonic()

        try:
            raw = await asyncio.wait_for(
                self._backend.connect(endpoint, params),
                timeout=self._settings.timeout_seconds,
            )
            session.attach(raw)
            if server_validation_callback is not None:
                self._validate_server(endpoint, session, server_validation_callback)

        except asyncio.CancelledError:
            await session.close()
            logger.info(f"Handshake with {endpoint} cancelled")
            raise
        except asyncio.TimeoutError as e:
            await session.close()
            error = HandshakeTimeoutError(
                f"TLS handshake with {endpoint} timed out",
                details={"timeout": self._settings.timeout_seconds},
            )
            self._record_failure(endpoint, "timeout", error)
            raise error from e
        except HandshakeError as e:
            await session.close()
            outcome = "rejected" if isinstance(e, ServerCertificateRejectedError) else "failed"
            if isinstance(e, HandshakeTimeoutError):
                outcome = "timeout"
            self._record_failure(endpoint, outcome, e)
            raise
        except Exception as e:
            await session.close()
            error = HandshakeFailedError(f"TLS handshake with {endpoint} failed: {e}")
            self._record_failure(endpoint, "failed", error)
            raise error from e

        elapsed = time.monotonic() - start_time
        self._handshake_count += 1

        logger.info(
            f"TLS session {session.id} established with {endpoint} "
            f"({session.protocol_version}, client certificate: "
            f"{session.client_certificate.subject if session.client_certificate else 'none'}, "
            f"{elapsed * 1000:.2f}ms)"
        )
        if self._metrics:
            self._metrics.record_handshake("success", elapsed)
        if self._audit:
            self._audit.audit_handshake(
                endpoint=str(endpoint),
                session_id=session.id,
                protocol_version=session.protocol_version,
                client_certificate=session.client_certificate_fingerprint,
                policy=policy.value,
            )

        return session

    def get_stats(self) -> dict[str, Any]:
        return {
            "handshakes": self._handshake_count,
            "failures": self._failure_count,
            "supports_certificate_selection": self._supports_selection,
        }
