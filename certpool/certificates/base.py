"""Client certificate model and certificate selection policy.

A ClientCertificate bundles the leaf certificate, its private key and any
intermediates the client should send alongside it. Certificates are loaded
with the `cryptography` package from PEM files, in-memory PEM data or PKCS#12
bundles.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional, Sequence

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric.types import PrivateKeyTypes
from cryptography.hazmat.primitives.serialization import pkcs12

from certpool.exceptions import CertificateError, InvalidPolicyError


logger = logging.getLogger(__name__)


class CertificatePolicy(str, Enum):
    """How client certificates are chosen for a handshake.

    MANUAL only offers certificates the caller added explicitly.
    AUTOMATIC offers certificates discovered by a platform certificate store.
    """

    MANUAL = "manual"
    AUTOMATIC = "automatic"

    @classmethod
    def parse(cls, value: object) -> "CertificatePolicy":
        """Coerce a policy member or its string value.

        Raises:
            InvalidPolicyError: If value is not a member of the enum
        """
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls(value.lower())
            except ValueError:
                pass
        raise InvalidPolicyError(value)


def _public_key_der(key) -> bytes:
    return key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )


@dataclass(frozen=True, eq=False)
class ClientCertificate:
    """X.509 client credential: leaf certificate, private key and chain.

    Two certificates are equal when their leaf fingerprints are equal.

    Example:
        >>> cert = ClientCertificate.from_files(
        ...     "/etc/certs/client.crt", "/etc/certs/client.key"
        ... )
        >>> cert.fingerprint
        '9f86d0...'
    """

    certificate: x509.Certificate
    private_key: Optional[PrivateKeyTypes] = None
    chain: tuple[x509.Certificate, ...] = field(default_factory=tuple)
    label: Optional[str] = None

    def __post_init__(self) -> None:
        if self.private_key is not None:
            if _public_key_der(self.private_key.public_key()) != _public_key_der(
                self.certificate.public_key()
            ):
                raise CertificateError(
                    "Private key does not match certificate",
                    details={"subject": self.subject},
                )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ClientCertificate):
            return NotImplemented
        return self.fingerprint == other.fingerprint

    def __hash__(self) -> int:
        return hash(self.fingerprint)

    def __repr__(self) -> str:
        return (
            f"ClientCertificate(subject={self.subject!r}, "
            f"fingerprint={self.fingerprint[:16]}...)"
        )

    @property
    def fingerprint(self) -> str:
        """SHA-256 fingerprint of the DER-encoded leaf, lowercase hex."""
        return self.certificate.fingerprint(hashes.SHA256()).hex()

    @property
    def subject(self) -> str:
        return self.certificate.subject.rfc4514_string()

    @property
    def issuer(self) -> str:
        return self.certificate.issuer.rfc4514_string()

    @property
    def not_valid_before(self) -> datetime:
        return self.certificate.not_valid_before_utc

    @property
    def not_valid_after(self) -> datetime:
        return self.certificate.not_valid_after_utc

    @property
    def has_private_key(self) -> bool:
        return self.private_key is not None

    def is_valid_at(self, when: Optional[datetime] = None) -> bool:
        """Check whether `when` (default: now) is inside the validity window."""
        when = when or datetime.now(timezone.utc)
        return self.not_valid_before <= when <= self.not_valid_after

    def matches_issuers(self, acceptable_issuers: Sequence[x509.Name]) -> bool:
        """Check whether the leaf or any chain certificate has an acceptable issuer.

        An empty sequence means the peer did not restrict issuers.
        """
        if not acceptable_issuers:
            return True
        issuers = {self.certificate.issuer}
        issuers.update(cert.issuer for cert in self.chain)
        issuers.update(cert.subject for cert in self.chain)
        return any(name in issuers for name in acceptable_issuers)

    def certificate_pem(self) -> bytes:
        """PEM-encode the leaf followed by the chain."""
        return b"".join(
            cert.public_bytes(serialization.Encoding.PEM)
            for cert in (self.certificate, *self.chain)
        )

    def private_key_pem(self) -> bytes:
        """PEM-encode the private key (unencrypted PKCS#8).

        Raises:
            CertificateError: If the certificate has no private key
        """
        if self.private_key is None:
            raise CertificateError(
                "Certificate has no private key",
                details={"subject": self.subject},
            )
        return self.private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )

    @classmethod
    def from_pem(
        cls,
        cert_data: bytes,
        key_data: Optional[bytes] = None,
        password: Optional[bytes] = None,
        label: Optional[str] = None,
    ) -> "ClientCertificate":
        """Load from PEM data.

        The first certificate in `cert_data` is the leaf, the rest become the
        chain. When `key_data` is omitted the key is read from `cert_data`
        if it holds one.

        Raises:
            CertificateError: If the data cannot be parsed
        """
        try:
            certs = x509.load_pem_x509_certificates(cert_data)
        except ValueError as e:
            raise CertificateError(f"Invalid PEM certificate data: {e}") from e

        if key_data is None and b"PRIVATE KEY" in cert_data:
            key_data = cert_data

        private_key = None
        if key_data is not None:
            try:
                private_key = serialization.load_pem_private_key(
                    key_data, password=password
                )
            except (ValueError, TypeError) as e:
                raise CertificateError(f"Invalid PEM private key: {e}") from e

        return cls(
            certificate=certs[0],
            private_key=private_key,
            chain=tuple(certs[1:]),
            label=label,
        )

    @classmethod
    def from_files(
        cls,
        cert_path: str | Path,
        key_path: Optional[str | Path] = None,
        password: Optional[bytes] = None,
    ) -> "ClientCertificate":
        """Load from PEM files on disk.

        Raises:
            CertificateError: If a file is missing or cannot be parsed
        """
        cert_file = Path(cert_path)
        key_file = Path(key_path) if key_path else None

        missing_files = [
            str(path) for path in (cert_file, key_file)
            if path is not None and not path.exists()
        ]
        if missing_files:
            raise CertificateError(
                f"Certificate files not found: {', '.join(missing_files)}"
            )

        if key_file is not None:
            key_mode = key_file.stat().st_mode
            if key_mode & 0o077:
                logger.warning(
                    f"Private key file {key_file} has overly permissive permissions. "
                    "Recommend chmod 600."
                )

        return cls.from_pem(
            cert_file.read_bytes(),
            key_file.read_bytes() if key_file else None,
            password=password,
            label=cert_file.name,
        )

    @classmethod
    def from_pkcs12(
        cls,
        data: bytes,
        password: Optional[bytes] = None,
        label: Optional[str] = None,
    ) -> "ClientCertificate":
        """Load from a PKCS#12 (.pfx / .p12) bundle.

        Raises:
            CertificateError: If the bundle is invalid or holds no certificate
        """
        try:
            key, cert, additional = pkcs12.load_key_and_certificates(data, password)
        except ValueError as e:
            raise CertificateError(f"Invalid PKCS#12 bundle: {e}") from e

        if cert is None:
            raise CertificateError("PKCS#12 bundle contains no certificate")

        return cls(
            certificate=cert,
            private_key=key,
            chain=tuple(additional or ()),
            label=label,
        )
