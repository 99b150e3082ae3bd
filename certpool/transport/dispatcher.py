"""
Request dispatch over pooled TLS sessions.

The RequestDispatcher turns one httpx.Request into one HTTP/1.1 exchange:
it derives the pool key from the sending client's certificate policy and
candidates, reuses an idle session for that key or negotiates a new one, and
returns the session to the pool once the response has been read.
"""

import logging
import time
from typing import TYPE_CHECKING, Any, Optional, Protocol

import httpcore
import httpx

from certpool.certificates.base import CertificatePolicy, ClientCertificate
from certpool.certificates.store import CertificateStore, candidates_fingerprint
from certpool.certificates.validation import ServerCertificateValidator
from certpool.exceptions import TransportFaultError, UnsupportedSchemeError
from .backend import Endpoint
from .handshake import HandshakeNegotiator, TlsSession
from .pool import ConnectionPool, PoolKey

if TYPE_CHECKING:
    from certpool.observability.logging import AuditLogger
    from certpool.observability.metrics import PoolMetrics


logger = logging.getLogger(__name__)


TRANSPORT_ERRORS = (
    httpcore.NetworkError,
    httpcore.TimeoutException,
    httpcore.ProtocolError,
    httpcore.ConnectionNotAvailable,
    OSError,
)


class RequestSource(Protocol):
    """What the dispatcher reads from the client sending a request."""

    @property
    def certificate_policy(self) -> CertificatePolicy:
        ...

    @property
    def client_certificates(self) -> CertificateStore:
        ...

    @property
    def server_certificate_validator(self) -> Optional[ServerCertificateValidator]:
        ...


class RequestDispatcher:
    """Sends requests over pooled, certificate-authenticated TLS sessions.

    Example:
        dispatcher = RequestDispatcher(pool, negotiator)
        response = await dispatcher.send(httpx.Request("GET", url), client)
        response.extensions["tls_session"]["reused"]
    """

    def __init__(
        self,
        pool: ConnectionPool,
        negotiator: HandshakeNegotiator,
        request_timeout: float = 30.0,
        reuse_connections: bool = True,
        metrics: Optional["PoolMetrics"] = None,
        audit: Optional["AuditLogger"] = None,
    ) -> None:
        self._pool = pool
        self._negotiator = negotiator
        self._request_timeout = request_timeout
        self._reuse_connections = reuse_connections
        self._metrics = metrics
        self._audit = audit

        self._requests_sent = 0
        self._transport_faults = 0

    def pool_key(
        self,
        endpoint: Endpoint,
        policy: CertificatePolicy,
        candidates: tuple[ClientCertificate, ...],
    ) -> PoolKey:
        return PoolKey(
            endpoint=endpoint,
            policy=policy,
            certificate_fingerprint=candidates_fingerprint(candidates),
            min_tls_version=self._negotiator.min_tls_version,
        )

    async def send(self, request: httpx.Request, client: RequestSource) -> httpx.Response:
        """Send one request on behalf of `client`.

        Args:
            request: Request to send; must target an https URL
            client: Supplies certificate policy, candidates and validator

        Returns:
            Fully read response; `extensions["tls_session"]` describes the
            session that carried it

        Raises:
            UnsupportedSchemeError: URL scheme is not https
            BackendUnsupportedError: Certificate selection unavailable
            HandshakeError: A new session could not be negotiated
            PoolExhaustedError: A configured pool limit is reached
            TransportFaultError: I/O failed on the session
        """
        if request.url.scheme != "https":
            raise UnsupportedSchemeError(
                f"Only https URLs are supported, got {request.url.scheme!r}",
                details={"url": str(request.url)},
            )

        policy = client.certificate_policy
        candidates = client.client_certificates.candidates(policy)
        self._negotiator.check_supported(policy, candidates)

        endpoint = Endpoint.from_url(request.url)
        key = self.pool_key(endpoint, policy, candidates)

        session, reused = await self._obtain_session(
            key, candidates, client.server_certificate_validator
        )

        try:
            response = await self._exchange(session, request)
        except TRANSPORT_ERRORS as e:
            self._transport_faults += 1
            await self._discard(key, session, "transport fault")
            if self._metrics:
                self._metrics.record_request("transport_fault")
            raise TransportFaultError(
                f"Transport fault on session {session.id} to {endpoint}: {e}",
                details={"session": session.id, "error_type": type(e).__name__},
            ) from e
        except BaseException:
            # cancellation or an unexpected error leaves the stream in an unknown state
            await self._discard(key, session, "aborted")
            raise

        self._requests_sent += 1
        if self._metrics:
            self._metrics.record_request("ok")

        if self._reuse_connections and self._pool.settings.enabled:
            await self._pool.release(key, session)
        else:
            await self._discard(key, session, "pooling disabled")

        response.extensions["tls_session"] = {**session.info(), "reused": reused}
        return response

    async def _obtain_session(
        self,
        key: PoolKey,
        candidates: tuple[ClientCertificate, ...],
        validator: Optional[ServerCertificateValidator],
    ) -> tuple[TlsSession, bool]:
        # with reuse disabled nothing is ever parked, so this only reserves
        session = await self._pool.acquire(key)
        if session is not None:
            return session, True

        try:
            session = await self._negotiator.negotiate(
                key.endpoint, key.policy, candidates, validator, pool_key=key
            )
        except BaseException:
            await self._pool.cancel_reservation(key)
            raise

        try:
            await self._pool.register(key, session)
        except BaseException:
            # register only mutates once it holds the key lock, so the
            # reservation is still ours to give back
            await session.close()
            await self._pool.cancel_reservation(key)
            raise
        return session, False

    async def _discard(self, key: PoolKey, session: TlsSession, reason: str) -> None:
        await self._pool.discard(key, session)
        if self._audit:
            self._audit.audit_session_closed(
                endpoint=str(key.endpoint), session_id=session.id, reason=reason
            )

    async def _exchange(self, session: TlsSession, request: httpx.Request) -> httpx.Response:
        body = await request.aread()
        origin = session.endpoint.origin
        timeout = self._request_timeout

        core_request = httpcore.Request(
            method=request.method.encode("ascii"),
            url=httpcore.URL(
                scheme=origin.scheme,
                host=origin.host,
                port=origin.port,
                target=request.url.raw_path,
            ),
            headers=request.headers.raw,
            content=body,
            extensions={"timeout": {"read": timeout, "write": timeout, "pool": timeout}},
        )

        start_time = time.monotonic()
        core_response = await session.http_connection.handle_async_request(core_request)
        try:
            content = await core_response.aread()
        finally:
            await core_response.aclose()

        extensions: dict[str, Any] = {
            key: value
            for key, value in core_response.extensions.items()
            if key in ("http_version", "reason_phrase")
        }
        response = httpx.Response(
            status_code=core_response.status,
            headers=core_response.headers,
            stream=httpx.ByteStream(content),
            request=request,
            extensions=extensions,
        )
        await response.aread()

        logger.debug(
            f"{request.method} {request.url} -> {response.status_code} "
            f"over session {session.id} ({(time.monotonic() - start_time) * 1000:.2f}ms)"
        )
        return response

    def get_stats(self) -> dict[str, Any]:
        return {
            "requests_sent": self._requests_sent,
            "transport_faults": self._transport_faults,
            "reuse_connections": self._reuse_connections,
        }
