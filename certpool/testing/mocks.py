"""
Mock TLS peers for testing certpool.

This module provides an in-memory TLS backend that models the server side of
a client-certificate handshake, plus helpers that mint throwaway X.509
certificates. No sockets are opened.
"""

import asyncio
import json
import ssl
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional, Sequence

import httpcore
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from certpool.certificates.base import ClientCertificate
from certpool.exceptions import ServerCertificateRejectedError
from certpool.transport.backend import Endpoint, RawTlsConnection, TlsParameters


def _name(common_name: str) -> x509.Name:
    return x509.Name([
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "certpool test"),
        x509.NameAttribute(NameOID.COMMON_NAME, common_name),
    ])


class CertificateAuthority:
    """
    Throwaway certificate authority for tests.

    Example:
        >>> ca = CertificateAuthority("Test CA")
        >>> client = ca.issue("client-a")
        >>> server = ca.issue("localhost", dns_names=["localhost"], server=True)
    """

    def __init__(self, common_name: str = "certpool test CA"):
        self.private_key = ec.generate_private_key(ec.SECP256R1())
        self.name = _name(common_name)

        now = datetime.now(timezone.utc)
        self.certificate = (
            x509.CertificateBuilder()
            .subject_name(self.name)
            .issuer_name(self.name)
            .public_key(self.private_key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - timedelta(days=1))
            .not_valid_after(now + timedelta(days=365))
            .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True,
                    content_commitment=False,
                    key_encipherment=False,
                    data_encipherment=False,
                    key_agreement=False,
                    key_cert_sign=True,
                    crl_sign=True,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=True,
            )
            .add_extension(
                x509.SubjectKeyIdentifier.from_public_key(self.private_key.public_key()),
                critical=False,
            )
            .sign(self.private_key, hashes.SHA256())
        )

    def issue(
        self,
        common_name: str,
        dns_names: Sequence[str] = (),
        server: bool = False,
        not_valid_before: Optional[datetime] = None,
        not_valid_after: Optional[datetime] = None,
        label: Optional[str] = None,
    ) -> ClientCertificate:
        """
        Issue a leaf certificate signed by this CA.

        Args:
            common_name: Subject CN
            dns_names: SubjectAlternativeName DNS entries
            server: Issue for serverAuth instead of clientAuth
            not_valid_before: Start of validity (default: one hour ago)
            not_valid_after: End of validity (default: 30 days from now)
            label: Label of the returned ClientCertificate

        Returns:
            Certificate with its private key and this CA as chain
        """
        key = ec.generate_private_key(ec.SECP256R1())
        now = datetime.now(timezone.utc)

        builder = (
            x509.CertificateBuilder()
            .subject_name(_name(common_name))
            .issuer_name(self.name)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(not_valid_before or now - timedelta(hours=1))
            .not_valid_after(not_valid_after or now + timedelta(days=30))
            .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
            .add_extension(
                x509.ExtendedKeyUsage([
                    ExtendedKeyUsageOID.SERVER_AUTH if server else ExtendedKeyUsageOID.CLIENT_AUTH
                ]),
                critical=False,
            )
            .add_extension(
                x509.AuthorityKeyIdentifier.from_issuer_public_key(self.private_key.public_key()),
                critical=False,
            )
        )
        if dns_names:
            builder = builder.add_extension(
                x509.SubjectAlternativeName([x509.DNSName(n) for n in dns_names]),
                critical=False,
            )

        certificate = builder.sign(self.private_key, hashes.SHA256())
        return ClientCertificate(
            certificate=certificate,
            private_key=key,
            chain=(self.certificate,),
            label=label or common_name,
        )

    def bundle_pem(self) -> bytes:
        return ClientCertificate(self.certificate).certificate_pem()


def generate_certificate(
    common_name: str = "certpool-client",
    authority: Optional[CertificateAuthority] = None,
    expired: bool = False,
) -> ClientCertificate:
    """
    Mint a client certificate with a private key.

    Args:
        common_name: Subject CN
        authority: Issuing CA (a fresh one if omitted)
        expired: Issue a certificate whose validity ended yesterday
    """
    authority = authority or CertificateAuthority()
    if expired:
        now = datetime.now(timezone.utc)
        return authority.issue(
            common_name,
            not_valid_before=now - timedelta(days=30),
            not_valid_after=now - timedelta(days=1),
        )
    return authority.issue(common_name)


class MockTlsStream(httpcore.AsyncNetworkStream):
    """
    In-memory TLS stream that answers HTTP/1.1 requests.

    Every request gets a 200 response whose JSON body reports the client
    certificate presented on this stream and the request's ordinal on it.
    """

    def __init__(
        self,
        client_certificate: Optional[ClientCertificate] = None,
        keep_alive: bool = True,
    ):
        self.client_certificate = client_certificate
        self.keep_alive = keep_alive
        self.closed = False
        self.fail_next_read = False

        self._written = bytearray()
        self._outgoing = bytearray()
        self._answered = 0

    @property
    def requests_received(self) -> int:
        return self._written.count(b" HTTP/1.1\r\n")

    def _response(self) -> bytes:
        self._answered += 1
        fingerprint = self.client_certificate.fingerprint if self.client_certificate else None
        body = json.dumps({
            "client_certificate": fingerprint,
            "connection_request": self._answered,
        }).encode()
        headers = [
            b"HTTP/1.1 200 OK",
            b"Content-Type: application/json",
            b"Content-Length: " + str(len(body)).encode(),
        ]
        if not self.keep_alive:
            headers.append(b"Connection: close")
        return b"\r\n".join(headers) + b"\r\n\r\n" + body

    async def read(self, max_bytes: int, timeout: Optional[float] = None) -> bytes:
        if self.closed:
            raise httpcore.ReadError("stream is closed")
        if self.fail_next_read:
            self.fail_next_read = False
            raise httpcore.ReadError("connection reset by peer")

        if not self._outgoing and self._answered < self.requests_received:
            self._outgoing.extend(self._response())

        chunk = bytes(self._outgoing[:max_bytes])
        del self._outgoing[:max_bytes]
        return chunk

    async def write(self, buffer: bytes, timeout: Optional[float] = None) -> None:
        if self.closed:
            raise httpcore.WriteError("stream is closed")
        self._written.extend(buffer)

    async def aclose(self) -> None:
        self.closed = True

    async def start_tls(
        self,
        ssl_context: ssl.SSLContext,
        server_hostname: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> httpcore.AsyncNetworkStream:
        return self

    def get_extra_info(self, info: str):
        return None


@dataclass
class HandshakeRecord:
    """Record of one completed mock handshake."""

    endpoint: Endpoint
    client_certificate: Optional[ClientCertificate]
    acceptable_issuers: tuple[x509.Name, ...]
    min_version: ssl.TLSVersion
    verify_server: bool


@dataclass
class _ServerIdentity:
    certificate: x509.Certificate
    chain: tuple[x509.Certificate, ...] = field(default_factory=tuple)


class MockTlsBackend:
    """
    In-memory TLS backend that plays the server side of the handshake.

    Features:
    - Requests (or not) a client certificate, with optional acceptable issuers
    - Simulated handshake latency and injected failures
    - Records every connect attempt, handshake and stream

    Example:
        >>> backend = MockTlsBackend()
        >>> client = CertificateClient(certificates=[cert], backend=backend)
        >>> await client.get("https://service.test/")
        >>> backend.handshakes[0].client_certificate == cert
        True
    """

    def __init__(
        self,
        request_client_certificate: bool = True,
        acceptable_issuers: Sequence[x509.Name] = (),
        handshake_delay: float = 0.0,
        fail_with: Optional[BaseException] = None,
        supports_selection: bool = True,
        keep_alive: bool = True,
        server_trusted: bool = True,
        protocol_version: str = "TLSv1.3",
    ):
        """
        Initialize mock backend.

        Args:
            request_client_certificate: Send a CertificateRequest
            acceptable_issuers: Issuer names sent with the request
            handshake_delay: Seconds each handshake takes
            fail_with: Exception raised by every connect attempt
            supports_selection: Result of the capability probe
            keep_alive: Whether the mock server keeps connections open
            server_trusted: Outcome of backend verification when no
                validation callback is installed
            protocol_version: Reported TLS version
        """
        self.request_client_certificate = request_client_certificate
        self.acceptable_issuers = tuple(acceptable_issuers)
        self.handshake_delay = handshake_delay
        self.fail_with = fail_with
        self.supports_selection = supports_selection
        self.keep_alive = keep_alive
        self.server_trusted = server_trusted
        self.protocol_version = protocol_version

        self.connect_attempts = 0
        self.handshakes: list[HandshakeRecord] = []
        self.streams: list[MockTlsStream] = []

        self._server_ca = CertificateAuthority("certpool mock server CA")
        self._server_identities: dict[str, _ServerIdentity] = {}

    def supports_certificate_selection(self) -> bool:
        return self.supports_selection

    @property
    def server_ca(self) -> CertificateAuthority:
        return self._server_ca

    def server_identity(self, host: str) -> _ServerIdentity:
        """Server certificate presented for `host`, minted on first use."""
        if host not in self._server_identities:
            issued = self._server_ca.issue(host, dns_names=[host], server=True)
            self._server_identities[host] = _ServerIdentity(
                certificate=issued.certificate,
                chain=(issued.certificate, *issued.chain),
            )
        return self._server_identities[host]

    @property
    def presented_certificates(self) -> list[Optional[ClientCertificate]]:
        return [record.client_certificate for record in self.handshakes]

    async def connect(self, endpoint: Endpoint, params: TlsParameters) -> RawTlsConnection:
        self.connect_attempts += 1
        if self.fail_with is not None:
            raise self.fail_with

        stream = MockTlsStream(keep_alive=self.keep_alive)
        self.streams.append(stream)

        try:
            if self.handshake_delay:
                await asyncio.sleep(self.handshake_delay)

            if params.verify_server and not self.server_trusted:
                raise ServerCertificateRejectedError(
                    f"Server certificate rejected for {endpoint}: "
                    "unable to get local issuer certificate",
                    details={"endpoint": str(endpoint)},
                )

            certificate = None
            if self.request_client_certificate:
                certificate = params.select_certificate(self.acceptable_issuers)
        except BaseException:
            await stream.aclose()
            raise

        stream.client_certificate = certificate
        self.handshakes.append(
            HandshakeRecord(
                endpoint=endpoint,
                client_certificate=certificate,
                acceptable_issuers=self.acceptable_issuers,
                min_version=params.min_version,
                verify_server=params.verify_server,
            )
        )

        identity = self.server_identity(endpoint.host)
        return RawTlsConnection(
            stream=stream,
            protocol_version=self.protocol_version,
            peer_certificate=identity.certificate,
            peer_chain=identity.chain,
            client_certificate=certificate,
            offered_certificate=certificate,
        )
