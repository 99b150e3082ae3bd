"""
CertificateClient: an async HTTPS client with client certificate
authentication and TLS session pooling.

Each client owns a certificate store, a handshake negotiator, a connection
pool and a request dispatcher. Requests from the same client to the same
endpoint with the same certificate reuse one TLS session; short-lived
clients each negotiate their own.
"""

import logging
from typing import Any, Callable, Optional, Sequence

import httpx
from prometheus_client import CollectorRegistry

from certpool.certificates.base import CertificatePolicy, ClientCertificate
from certpool.certificates.store import CertificateStore, PlatformCertificateStore
from certpool.certificates.validation import ServerCertificateValidator
from certpool.config import ClientConfig
from certpool.exceptions import ClientClosedError
from certpool.observability.logging import AuditLogger
from certpool.observability.metrics import PoolMetrics
from certpool.transport.backend import TlsBackend
from certpool.transport.dispatcher import RequestDispatcher
from certpool.transport.handshake import HandshakeNegotiator
from certpool.transport.pool import ConnectionPool


logger = logging.getLogger(__name__)


class CertificateClient:
    """
    Async HTTPS client that authenticates with client certificates.

    The certificate policy defaults to MANUAL: only certificates added with
    `add_certificate()` (or passed to the constructor) are offered. Under
    AUTOMATIC the platform store decides.

    Example:
        cert = ClientCertificate.from_files("client.crt", "client.key")
        async with CertificateClient(certificates=[cert]) as client:
            response = await client.get("https://api.example.com/health")
            response.extensions["tls_session"]["client_certificate"]
    """

    def __init__(
        self,
        config: Optional[ClientConfig] = None,
        certificates: Optional[Sequence[ClientCertificate]] = None,
        platform_store: Optional[PlatformCertificateStore] = None,
        server_certificate_validator: Optional[ServerCertificateValidator] = None,
        backend: Optional[TlsBackend] = None,
        capability_probe: Optional[Callable[[], bool]] = None,
        metrics: Optional[PoolMetrics] = None,
        audit_logger: Optional[AuditLogger] = None,
    ):
        """
        Initialize the client.

        Args:
            config: Client configuration (defaults apply if omitted)
            certificates: Initial certificates for MANUAL policy
            platform_store: Certificate source for AUTOMATIC policy
            server_certificate_validator: Decides whether to accept server
                certificates; None uses standard verification
            backend: TLS backend (for testing/DI)
            capability_probe: Overrides the backend's certificate selection
                capability probe
            metrics: Prometheus metrics collector
            audit_logger: Audit logger for handshake events
        """
        self._config = config or ClientConfig()
        self._server_certificate_validator = server_certificate_validator
        self._closed = False
        self._started = False

        # Certificates are loaded under MANUAL before switching policy
        self._store = CertificateStore(certificates, platform=platform_store)
        self._store.policy = self._config.certificate_policy

        if metrics is None and self._config.metrics.enabled:
            metrics = PoolMetrics(self._config.name, registry=CollectorRegistry())
        self._metrics = metrics

        if audit_logger is None:
            audit_logger = AuditLogger(
                self._config.name,
                logger=logging.getLogger("certpool.audit"),
                enabled=self._config.logging.audit,
            )
        self._audit = audit_logger

        self._negotiator = HandshakeNegotiator(
            backend=backend,
            settings=self._config.handshake,
            capability_probe=capability_probe,
            keepalive_expiry=self._config.pool.idle_timeout_seconds,
            metrics=self._metrics,
            audit=self._audit,
        )
        self._pool = ConnectionPool(self._config.pool, metrics=self._metrics)
        self._dispatcher = RequestDispatcher(
            self._pool,
            self._negotiator,
            request_timeout=self._config.request_timeout_seconds,
            reuse_connections=self._config.pool.enabled,
            metrics=self._metrics,
            audit=self._audit,
        )

        logger.debug(
            f"CertificateClient '{self._config.name}' created "
            f"(policy: {self._store.policy.value}, certificates: {len(self._store)})"
        )

    @property
    def config(self) -> ClientConfig:
        return self._config

    @property
    def certificate_policy(self) -> CertificatePolicy:
        """Current client certificate policy."""
        return self._store.policy

    @certificate_policy.setter
    def certificate_policy(self, value: CertificatePolicy | str) -> None:
        """
        Set the certificate policy.

        Raises:
            InvalidPolicyError: If value is not a CertificatePolicy; the
                previous policy stays in effect
        """
        policy = CertificatePolicy.parse(value)
        if policy is not self._store.policy:
            logger.info(
                f"Certificate policy changed: {self._store.policy.value} -> {policy.value}"
            )
        self._store.policy = policy

    @property
    def client_certificates(self) -> CertificateStore:
        return self._store

    def add_certificate(self, certificate: ClientCertificate) -> None:
        self._store.add(certificate)

    @property
    def server_certificate_validator(self) -> Optional[ServerCertificateValidator]:
        return self._server_certificate_validator

    @server_certificate_validator.setter
    def server_certificate_validator(
        self, validator: Optional[ServerCertificateValidator]
    ) -> None:
        self._server_certificate_validator = validator

    @property
    def pool(self) -> ConnectionPool:
        return self._pool

    @property
    def negotiator(self) -> HandshakeNegotiator:
        return self._negotiator

    @property
    def metrics(self) -> Optional[PoolMetrics]:
        return self._metrics

    @property
    def handshake_count(self) -> int:
        """Number of TLS sessions this client has negotiated."""
        return self._negotiator.handshake_count

    @property
    def is_closed(self) -> bool:
        return self._closed

    async def start(self) -> None:
        """Start background pool maintenance."""
        if self._closed:
            raise ClientClosedError("Client has been closed")
        if self._started:
            return
        await self._pool.start()
        self._started = True

    async def send(self, request: httpx.Request) -> httpx.Response:
        """
        Send a prepared request.

        Raises:
            ClientClosedError: If the client has been closed
        """
        if self._closed:
            raise ClientClosedError(
                "Cannot send request: client has been closed",
                details={"url": str(request.url)},
            )
        if not self._started:
            await self.start()

        return await self._dispatcher.send(request, self)

    async def request(
        self,
        method: str,
        url: httpx.URL | str,
        **kwargs: Any,
    ) -> httpx.Response:
        """
        Build and send a request.

        Keyword arguments are passed to httpx.Request (headers, params,
        content, data, files, json).
        """
        return await self.send(httpx.Request(method, url, **kwargs))

    async def get(self, url: httpx.URL | str, **kwargs: Any) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: httpx.URL | str, **kwargs: Any) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    async def put(self, url: httpx.URL | str, **kwargs: Any) -> httpx.Response:
        return await self.request("PUT", url, **kwargs)

    async def delete(self, url: httpx.URL | str, **kwargs: Any) -> httpx.Response:
        return await self.request("DELETE", url, **kwargs)

    async def aclose(self) -> None:
        """Close every pooled session. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        await self._pool.stop()
        logger.debug(f"CertificateClient '{self._config.name}' closed")

    def get_stats(self) -> dict[str, Any]:
        return {
            "certificate_policy": self._store.policy.value,
            "handshake": self._negotiator.get_stats(),
            "pool": self._pool.get_stats(),
            "dispatch": self._dispatcher.get_stats(),
        }

    async def __aenter__(self) -> "CertificateClient":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()
