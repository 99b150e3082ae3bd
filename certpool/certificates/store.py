"""Certificate stores: where handshake candidates come from.

Manual mode uses certificates added explicitly to a CertificateStore.
Automatic mode asks a PlatformCertificateStore to enumerate what is available
on this machine. Platform store failures degrade to "no candidates" so a
handshake can still proceed without presenting a certificate.
"""

import hashlib
import logging
import os
import threading
from pathlib import Path
from typing import Iterator, Optional, Protocol, Sequence

from certpool.certificates.base import CertificatePolicy, ClientCertificate
from certpool.exceptions import CertificateError, CertificateStoreError


logger = logging.getLogger(__name__)


class PlatformCertificateStore(Protocol):
    """Protocol for platform certificate discovery (Automatic mode)."""

    def enumerate(self) -> Sequence[ClientCertificate]:
        """Return the client certificates available on this platform."""
        ...


class EnvironmentCertificateStore:
    """Platform store that reads one certificate from environment variables.

    Variables:
    - CERTPOOL_CLIENT_CERT_PATH: Path to the PEM certificate (may hold the key)
    - CERTPOOL_CLIENT_KEY_PATH: Path to the PEM private key (optional)

    Example:
        >>> store = EnvironmentCertificateStore()
        >>> store.enumerate()
        [ClientCertificate(subject='CN=client', ...)]
    """

    def __init__(self, prefix: str = "CERTPOOL_"):
        self._prefix = prefix

    def enumerate(self) -> list[ClientCertificate]:
        cert_path = os.environ.get(f"{self._prefix}CLIENT_CERT_PATH")
        key_path = os.environ.get(f"{self._prefix}CLIENT_KEY_PATH")

        if not cert_path:
            logger.debug(f"{self._prefix}CLIENT_CERT_PATH not set, no certificates")
            return []

        return [ClientCertificate.from_files(cert_path, key_path)]


class DirectoryCertificateStore:
    """Platform store that enumerates certificate files in a directory.

    Recognised layouts:
    - `name.crt` with a matching `name.key`
    - `name.pem` holding both certificate and key

    Files that fail to load are skipped with a warning.
    """

    def __init__(self, directory: str | Path):
        self._directory = Path(directory)

    def enumerate(self) -> list[ClientCertificate]:
        if not self._directory.is_dir():
            logger.warning(f"Certificate directory not found: {self._directory}")
            return []

        found: list[ClientCertificate] = []
        for path in sorted(self._directory.iterdir()):
            try:
                if path.suffix == ".crt":
                    key_path = path.with_suffix(".key")
                    if not key_path.exists():
                        continue
                    found.append(ClientCertificate.from_files(path, key_path))
                elif path.suffix == ".pem":
                    cert = ClientCertificate.from_files(path)
                    if cert.has_private_key:
                        found.append(cert)
            except CertificateError as e:
                logger.warning(f"Skipping unreadable certificate {path}: {e}")

        logger.debug(f"Found {len(found)} certificates in {self._directory}")
        return found


def candidates_fingerprint(candidates: Sequence[ClientCertificate]) -> Optional[str]:
    """Identity of a candidate set, used as the certificate part of a pool key.

    One candidate yields its own fingerprint; several yield a digest of the
    ordered fingerprints; none yields None.
    """
    if not candidates:
        return None
    if len(candidates) == 1:
        return candidates[0].fingerprint
    digest = hashlib.sha256()
    for cert in candidates:
        digest.update(bytes.fromhex(cert.fingerprint))
    return digest.hexdigest()


class CertificateStore:
    """Holds candidate client certificates for a client.

    Under MANUAL policy `candidates()` returns exactly the added certificates
    in insertion order. Under AUTOMATIC policy it returns whatever the
    platform store enumerates. Certificates are only ever removed explicitly.

    Example:
        >>> store = CertificateStore()
        >>> store.add(ClientCertificate.from_files("client.crt", "client.key"))
        >>> store.candidates()
        (ClientCertificate(...),)
    """

    def __init__(
        self,
        certificates: Optional[Sequence[ClientCertificate]] = None,
        platform: Optional[PlatformCertificateStore] = None,
        policy: CertificatePolicy = CertificatePolicy.MANUAL,
    ) -> None:
        self._certificates: list[ClientCertificate] = []
        self._platform = platform
        self._policy = CertificatePolicy.parse(policy)
        self._lock = threading.Lock()

        for cert in certificates or ():
            self.add(cert)

    @property
    def policy(self) -> CertificatePolicy:
        return self._policy

    @policy.setter
    def policy(self, value: CertificatePolicy) -> None:
        self._policy = CertificatePolicy.parse(value)

    @property
    def platform(self) -> Optional[PlatformCertificateStore]:
        return self._platform

    def add(self, cert: ClientCertificate) -> None:
        """Append a certificate.

        Adding a certificate that is already present is a no-op.

        Raises:
            CertificateStoreError: If the store is in AUTOMATIC mode
        """
        if self._policy is CertificatePolicy.AUTOMATIC:
            raise CertificateStoreError(
                "Certificates cannot be added while the policy is 'automatic'",
                details={"subject": cert.subject},
            )

        with self._lock:
            if cert in self._certificates:
                logger.debug(f"Certificate already present: {cert.subject}")
                return
            self._certificates = [*self._certificates, cert]

        logger.debug(f"Added client certificate {cert.subject}")

    def remove(self, cert: ClientCertificate) -> bool:
        """Remove a certificate. Returns False if it was not present."""
        with self._lock:
            if cert not in self._certificates:
                return False
            self._certificates = [c for c in self._certificates if c != cert]
        return True

    def clear(self) -> None:
        with self._lock:
            self._certificates = []

    def candidates(
        self, policy: Optional[CertificatePolicy] = None
    ) -> tuple[ClientCertificate, ...]:
        """Certificates eligible for offering during a handshake.

        Args:
            policy: Policy to resolve for (defaults to the store's own policy)

        Returns:
            Ordered snapshot of candidate certificates (may be empty)
        """
        policy = CertificatePolicy.parse(policy) if policy is not None else self._policy

        if policy is CertificatePolicy.MANUAL:
            return tuple(self._certificates)

        if self._platform is None:
            logger.debug("No platform certificate store configured")
            return ()

        try:
            found = tuple(self._platform.enumerate())
        except Exception as e:
            logger.warning(f"Platform certificate enumeration failed: {e}")
            return ()

        logger.debug(f"Platform store offered {len(found)} certificates")
        return found

    def __len__(self) -> int:
        return len(self._certificates)

    def __iter__(self) -> Iterator[ClientCertificate]:
        return iter(tuple(self._certificates))

    def __contains__(self, cert: object) -> bool:
        return cert in self._certificates
