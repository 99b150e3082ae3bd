"""
TLS backends for certpool.

A TLS backend opens a TCP connection and runs the TLS handshake for the
HandshakeNegotiator. The default backend uses httpcore's AnyIO network backend
with Python's ssl module. Backends report whether they can select a client
certificate on the caller's behalf through a capability probe that is
evaluated once per process.
"""

import functools
import logging
import os
import ssl
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional, Protocol, Sequence

import certifi
import httpcore
import httpx
from cryptography import x509

from certpool.certificates.base import ClientCertificate
from certpool.exceptions import (
    HandshakeFailedError,
    HandshakeTimeoutError,
    ServerCertificateRejectedError,
)


logger = logging.getLogger(__name__)


DEFAULT_PORTS = {"https": 443, "http": 80}


@dataclass(frozen=True)
class Endpoint:
    """A remote TLS peer: scheme, host and port."""

    scheme: str
    host: str
    port: int

    @classmethod
    def from_url(cls, url: httpx.URL | str) -> "Endpoint":
        url = httpx.URL(url)
        port = url.port or DEFAULT_PORTS.get(url.scheme)
        if port is None:
            raise ValueError(f"Cannot determine port for URL: {url}")
        return cls(scheme=url.scheme, host=url.host, port=port)

    @property
    def origin(self) -> httpcore.Origin:
        return httpcore.Origin(
            scheme=self.scheme.encode("ascii"),
            host=self.host.encode("idna"),
            port=self.port,
        )

    def __str__(self) -> str:
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"{self.scheme}://{host}:{self.port}"


CertificateSelector = Callable[[Sequence[x509.Name]], Optional[ClientCertificate]]


@dataclass(frozen=True)
class TlsParameters:
    """What the negotiator asks a backend to do for one handshake.

    Attributes:
        min_version: Minimum TLS protocol version
        verify_server: Run the backend's own server verification. False when
            a caller-supplied validation callback decides instead.
        select_certificate: Called with the issuers the server accepts when
            it requests a client certificate; returns the certificate to
            present or None.
        timeout: Connect and handshake timeout in seconds
        trust_bundle: PEM bundle of trusted roots (default: certifi)
    """

    min_version: ssl.TLSVersion
    verify_server: bool
    select_certificate: CertificateSelector
    timeout: float
    trust_bundle: Optional[Path] = None


@dataclass
class RawTlsConnection:
    """Result of a completed handshake, before any HTTP traffic.

    Attributes:
        stream: Network stream carrying the TLS session
        protocol_version: Negotiated protocol, e.g. "TLSv1.3"
        peer_certificate: The server's leaf certificate
        peer_chain: Certificates the server sent, leaf first
        client_certificate: Certificate sent to the server, if any. None when
            the server did not request one, or when the backend cannot tell.
        offered_certificate: Certificate made available to the handshake,
            whether or not the server asked for it
    """

    stream: httpcore.AsyncNetworkStream
    protocol_version: Optional[str]
    peer_certificate: Optional[x509.Certificate]
    peer_chain: tuple[x509.Certificate, ...] = field(default_factory=tuple)
    client_certificate: Optional[ClientCertificate] = None
    offered_certificate: Optional[ClientCertificate] = None


class TlsBackend(Protocol):
    """Protocol for TLS backends."""

    def supports_certificate_selection(self) -> bool:
        """Whether the backend can choose and present client certificates."""
        ...

    async def connect(
        self, endpoint: Endpoint, params: TlsParameters
    ) -> RawTlsConnection:
        """Connect to `endpoint` and complete a TLS handshake.

        Implementations must close any partially opened stream before
        propagating an exception, including cancellation.
        """
        ...


@functools.lru_cache(maxsize=1)
def probe_openssl_backend() -> bool:
    """Check whether Python's ssl module is linked against OpenSSL.

    Client certificate selection is only supported on OpenSSL builds.
    Evaluated once for the process lifetime.
    """
    supported = ssl.OPENSSL_VERSION.startswith("OpenSSL")
    logger.info(
        f"TLS backend {ssl.OPENSSL_VERSION}: client certificate selection "
        f"{'supported' if supported else 'not supported'}"
    )
    return supported


def load_client_certificate(context: ssl.SSLContext, certificate: ClientCertificate) -> None:
    """Load a client certificate into an SSL context.

    The ssl module only reads key material from files, so the PEM data is
    written to a private temporary directory that is removed once loaded.
    """
    with tempfile.TemporaryDirectory(prefix="certpool-") as tmp:
        cert_file = Path(tmp) / "client.crt"
        key_file = Path(tmp) / "client.key"
        cert_file.write_bytes(certificate.certificate_pem())
        fd = os.open(key_file, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "wb") as f:
            f.write(certificate.private_key_pem())
        context.load_cert_chain(certfile=str(cert_file), keyfile=str(key_file))


HANDSHAKE_CONTENT_TYPE = 22
CERTIFICATE_REQUEST_MESSAGE = 13

# CPython's TLS message tracing hook
CAN_OBSERVE_CERTIFICATE_REQUEST = hasattr(ssl.SSLContext, "_msg_callback")


class CertificateRequestObserver:
    """Watches one handshake for the server's CertificateRequest.

    OpenSSL sends a loaded client certificate only when the server asks for
    one, so a request seen during the handshake means the certificate was
    presented. `requested` stays None when the ssl module has no message
    hook and the answer cannot be known.
    """

    def __init__(self, context: ssl.SSLContext) -> None:
        self.requested: Optional[bool] = None
        if CAN_OBSERVE_CERTIFICATE_REQUEST:
            self.requested = False
            context._msg_callback = self._on_message

    def _on_message(self, conn, direction, version, content_type, msg_type, data) -> None:
        if (
            direction == "read"
            and content_type == HANDSHAKE_CONTENT_TYPE
            and msg_type == CERTIFICATE_REQUEST_MESSAGE
        ):
            self.requested = True


def _peer_chain(ssl_object: ssl.SSLObject, leaf_der: bytes) -> list[bytes]:
    # get_unverified_chain() is available from Python 3.13
    get_chain = getattr(ssl_object, "get_unverified_chain", None)
    if get_chain is None:
        return [leaf_der]
    chain = [item for item in get_chain() or () if isinstance(item, bytes)]
    return chain or [leaf_der]


class HttpcoreTlsBackend:
    """TLS backend built on httpcore's network backend and the ssl module.

    OpenSSL does not expose the server's acceptable issuers to Python before
    the handshake, so the certificate is selected up front with no issuer
    restriction and loaded into the context. OpenSSL then presents it when
    the server sends a CertificateRequest.

    Example:
        backend = HttpcoreTlsBackend()
        raw = await backend.connect(Endpoint("https", "example.com", 443), params)
    """

    def __init__(
        self,
        network_backend: Optional[httpcore.AsyncNetworkBackend] = None,
    ) -> None:
        self._network = network_backend or httpcore.AnyIOBackend()

    def supports_certificate_selection(self) -> bool:
        return probe_openssl_backend()

    def build_context(
        self,
        params: TlsParameters,
        certificate: Optional[ClientCertificate],
    ) -> ssl.SSLContext:
        """Create the client SSL context for one handshake."""
        if params.verify_server:
            cafile = str(params.trust_bundle) if params.trust_bundle else certifi.where()
            ctx = ssl.create_default_context(cafile=cafile)
        else:
            # verification is done by the caller's validation callback
            ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
            ctx.check_hostname = False
            ctx.verify_mode = ssl.CERT_NONE

        ctx.minimum_version = params.min_version
        ctx.set_alpn_protocols(["http/1.1"])

        if certificate is not None:
            load_client_certificate(ctx, certificate)

        return ctx

    async def connect(
        self, endpoint: Endpoint, params: TlsParameters
    ) -> RawTlsConnection:
        certificate = params.select_certificate(())
        context = self.build_context(params, certificate)
        observer = CertificateRequestObserver(context)

        try:
            stream = await self._network.connect_tcp(
                endpoint.host, endpoint.port, timeout=params.timeout
            )
        except httpcore.ConnectTimeout as e:
            raise HandshakeTimeoutError(
                f"Timed out connecting to {endpoint}",
                details={"timeout": params.timeout},
            ) from e
        except (httpcore.ConnectError, OSError) as e:
            raise HandshakeFailedError(f"Cannot connect to {endpoint}: {e}") from e

        try:
            tls_stream = await stream.start_tls(
                context, server_hostname=endpoint.host, timeout=params.timeout
            )
        except BaseException as e:
            await stream.aclose()
            if isinstance(e, httpcore.ConnectTimeout):
                raise HandshakeTimeoutError(
                    f"TLS handshake with {endpoint} timed out",
                    details={"timeout": params.timeout},
                ) from e
            if isinstance(e.__cause__, ssl.SSLCertVerificationError):
                raise ServerCertificateRejectedError(
                    f"Server certificate rejected for {endpoint}: {e.__cause__}",
                    details={"endpoint": str(endpoint)},
                ) from e
            if isinstance(e, (httpcore.ConnectError, OSError)):
                raise HandshakeFailedError(
                    f"TLS handshake with {endpoint} failed: {e}"
                ) from e
            raise

        presented = certificate if observer.requested else None
        if certificate is not None and presented is None:
            logger.debug(
                f"Client certificate {certificate.subject} offered to {endpoint} but "
                f"{'not requested' if observer.requested is False else 'not known to be sent'}"
            )

        ssl_object = tls_stream.get_extra_info("ssl_object")
        peer_der = ssl_object.getpeercert(binary_form=True) if ssl_object else None

        peer_certificate = x509.load_der_x509_certificate(peer_der) if peer_der else None
        peer_chain = (
            tuple(x509.load_der_x509_certificate(der) for der in _peer_chain(ssl_object, peer_der))
            if peer_der else ()
        )

        return RawTlsConnection(
            stream=tls_stream,
            protocol_version=ssl_object.version() if ssl_object else None,
            peer_certificate=peer_certificate,
            peer_chain=peer_chain,
            client_certificate=presented,
            offered_certificate=certificate,
        )
