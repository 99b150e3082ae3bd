"""Server certificate validation.

When a caller supplies a server certificate validation callback, OpenSSL's own
verification is turned off and the callback decides. The callback receives the
peer certificate, the chain the peer sent and the SslPolicyErrors that normal
validation would have reported. Path validation itself is delegated to
`cryptography.x509.verification`.
"""

import ipaddress
import logging
from enum import Flag
from functools import cached_property
from pathlib import Path
from typing import Callable, Optional, Sequence

import certifi
from cryptography import x509
from cryptography.x509.oid import NameOID
from cryptography.x509.verification import PolicyBuilder, Store, VerificationError


logger = logging.getLogger(__name__)


class SslPolicyErrors(Flag):
    """Problems found while validating a server certificate."""

    NONE = 0
    REMOTE_CERTIFICATE_NOT_AVAILABLE = 1
    REMOTE_CERTIFICATE_NAME_MISMATCH = 2
    REMOTE_CERTIFICATE_CHAIN_ERRORS = 4


ServerCertificateValidator = Callable[
    [Optional[x509.Certificate], Sequence[x509.Certificate], SslPolicyErrors],
    bool,
]


def accept_any_certificate(
    certificate: Optional[x509.Certificate],
    chain: Sequence[x509.Certificate],
    errors: SslPolicyErrors,
) -> bool:
    """Validator that accepts every server certificate. For test servers only."""
    return True


def _dns_names(certificate: x509.Certificate) -> list[str]:
    try:
        san = certificate.extensions.get_extension_for_class(
            x509.SubjectAlternativeName
        )
    except x509.ExtensionNotFound:
        return []
    return san.value.get_values_for_type(x509.DNSName)


def _ip_addresses(certificate: x509.Certificate) -> list:
    try:
        san = certificate.extensions.get_extension_for_class(
            x509.SubjectAlternativeName
        )
    except x509.ExtensionNotFound:
        return []
    return san.value.get_values_for_type(x509.IPAddress)


def _dns_name_matches(pattern: str, host: str) -> bool:
    pattern = pattern.lower().rstrip(".")
    host = host.lower().rstrip(".")
    if pattern.startswith("*."):
        # wildcard covers exactly one leftmost label
        head, _, rest = host.partition(".")
        return bool(head) and rest == pattern[2:]
    return pattern == host


def hostname_matches(certificate: x509.Certificate, host: str) -> bool:
    """Check `host` against the certificate's subjectAltName entries.

    Falls back to the subject common name only when the certificate carries
    no subjectAltName at all.
    """
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        address = None

    if address is not None:
        return address in _ip_addresses(certificate)

    names = _dns_names(certificate)
    if not names and not _ip_addresses(certificate):
        names = [
            attr.value
            for attr in certificate.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
            if isinstance(attr.value, str)
        ]
    return any(_dns_name_matches(name, host) for name in names)


class X509ChainVerifier:
    """Verifies a server chain against a set of trusted roots.

    Roots come from `trust_bundle` (a PEM file) or, by default, from certifi.
    The bundle is parsed on first use.
    """

    def __init__(self, trust_bundle: Optional[str | Path] = None):
        self._bundle_path = Path(trust_bundle) if trust_bundle else Path(certifi.where())

    @cached_property
    def _store(self) -> Store:
        roots = x509.load_pem_x509_certificates(self._bundle_path.read_bytes())
        logger.debug(f"Loaded {len(roots)} trust anchors from {self._bundle_path}")
        return Store(roots)

    def _subject_for(self, certificate: x509.Certificate, host: str):
        # Name checking is reported separately, so verify the chain against a
        # name the leaf actually carries.
        if hostname_matches(certificate, host):
            try:
                return x509.IPAddress(ipaddress.ip_address(host))
            except ValueError:
                return x509.DNSName(host)
        names = _dns_names(certificate)
        if names:
            return x509.DNSName(names[0].replace("*", "host", 1))
        addresses = _ip_addresses(certificate)
        if addresses:
            return x509.IPAddress(addresses[0])
        return None

    def verify(
        self,
        host: str,
        certificate: x509.Certificate,
        intermediates: Sequence[x509.Certificate] = (),
    ) -> bool:
        """Return True if the chain builds to a trusted root."""
        subject = self._subject_for(certificate, host)
        if subject is None:
            return False

        verifier = PolicyBuilder().store(self._store).build_server_verifier(subject)
        try:
            verifier.verify(certificate, list(intermediates))
        except VerificationError as e:
            logger.debug(f"Chain verification failed for {host}: {e}")
            return False
        return True

    def policy_errors(
        self,
        host: str,
        certificate: Optional[x509.Certificate],
        chain: Sequence[x509.Certificate],
    ) -> SslPolicyErrors:
        """Compute the SslPolicyErrors for a server certificate."""
        if certificate is None:
            return SslPolicyErrors.REMOTE_CERTIFICATE_NOT_AVAILABLE

        errors = SslPolicyErrors.NONE
        if not hostname_matches(certificate, host):
            errors |= SslPolicyErrors.REMOTE_CERTIFICATE_NAME_MISMATCH

        intermediates = [cert for cert in chain if cert != certificate]
        if not self.verify(host, certificate, intermediates):
            errors |= SslPolicyErrors.REMOTE_CERTIFICATE_CHAIN_ERRORS

        return errors
