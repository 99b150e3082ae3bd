"""
certpool - CLI Main Entry Point
"""

import asyncio
import ssl
import time
from pathlib import Path
from typing import Optional

import click
from prometheus_client import CollectorRegistry
from rich.console import Console

from certpool import __version__
from certpool.certificates.base import CertificatePolicy, ClientCertificate
from certpool.certificates.store import (
    DirectoryCertificateStore,
    EnvironmentCertificateStore,
)
from certpool.certificates.validation import accept_any_certificate
from certpool.cli.utils import (
    certificate_summary,
    fail,
    format_duration,
    info,
    print_json,
    print_key_value,
    print_table,
    short_fingerprint,
    success,
    warning,
)
from certpool.client import CertificateClient
from certpool.config import CertificateSelection, ClientConfig
from certpool.exceptions import CertPoolError
from certpool.observability.metrics import PoolMetrics
from certpool.transport.backend import probe_openssl_backend


console = Console()


def _load_config(config_file: Optional[str]) -> ClientConfig:
    if config_file is None:
        return ClientConfig()
    try:
        return ClientConfig.from_file(config_file)
    except CertPoolError as e:
        fail(str(e))


def _load_certificate(
    cert_file: str,
    key_file: Optional[str],
    password: Optional[str],
) -> ClientCertificate:
    secret = password.encode() if password else None
    try:
        if Path(cert_file).suffix.lower() in (".p12", ".pfx"):
            return ClientCertificate.from_pkcs12(
                Path(cert_file).read_bytes(), secret, label=Path(cert_file).name
            )
        return ClientCertificate.from_files(cert_file, key_file, password=secret)
    except CertPoolError as e:
        fail(f"Failed to load certificate: {e}")


@click.group()
@click.version_option(version=__version__, prog_name="certpool")
def cli():
    """
    certpool - Command Line Interface

    Inspect client certificates and issue HTTPS requests authenticated
    with them over pooled TLS sessions.
    """
    pass


@cli.command()
@click.option(
    "--config",
    "-c",
    "config_file",
    type=click.Path(exists=True),
    help="Client configuration file",
)
def probe(config_file):
    """
    Report whether the TLS backend can present client certificates.

    Example:
        certpool probe
    """
    config = _load_config(config_file)
    supported = probe_openssl_backend()
    selection = config.handshake.certificate_selection

    print_key_value(
        {
            "TLS library": ssl.OPENSSL_VERSION,
            "Certificate selection (probe)": "supported" if supported else "not supported",
            "Configured override": selection.value,
            "Minimum TLS version": config.handshake.tls_min_version,
        },
        title="TLS Backend",
    )
    console.print()

    effective = {
        CertificateSelection.ENABLED: True,
        CertificateSelection.DISABLED: False,
    }.get(selection, supported)

    if effective:
        success("Client certificate authentication is available")
    else:
        warning(
            "Client certificate authentication is unavailable: requests that "
            "offer certificates will fail with BackendUnsupportedError"
        )


@cli.command()
@click.argument("cert_file", type=click.Path(exists=True))
@click.option("--key", "-k", "key_file", type=click.Path(exists=True), help="Private key file")
@click.option("--password", "-p", help="Private key or PKCS#12 password")
def inspect(cert_file, key_file, password):
    """
    Show details of a client certificate.

    Accepts PEM files (optionally with a separate key) and PKCS#12 bundles.

    Example:
        certpool inspect client.crt --key client.key
    """
    cert = _load_certificate(cert_file, key_file, password)
    print_key_value(certificate_summary(cert), title=f"Certificate: {cert_file}")
    console.print()

    if not cert.is_valid_at():
        warning("Certificate is outside its validity window and will not be offered")
    elif not cert.has_private_key:
        warning("No private key: certificate cannot be presented")
    else:
        success("Certificate can be used for client authentication")


@cli.command()
@click.argument("config_file", type=click.Path(exists=True))
def validate(config_file):
    """
    Validate a client configuration file.

    Example:
        certpool validate certpool.yaml
    """
    info(f"Validating configuration: {config_file}")
    config = _load_config(config_file)
    print_json(config.model_dump(mode="json"), title="Effective configuration")
    success("Configuration is valid")


@cli.command()
@click.argument("url")
@click.option("--cert", "cert_file", type=click.Path(exists=True), help="Client certificate")
@click.option("--key", "key_file", type=click.Path(exists=True), help="Private key file")
@click.option("--password", help="Private key or PKCS#12 password")
@click.option(
    "--cert-dir",
    type=click.Path(exists=True, file_okay=False),
    help="Certificate directory used by the automatic policy",
)
@click.option(
    "--policy",
    type=click.Choice([p.value for p in CertificatePolicy], case_sensitive=False),
    default=None,
    help="Client certificate policy (default: from config, else manual)",
)
@click.option("--method", "-X", default="GET", show_default=True, help="HTTP method")
@click.option("--count", "-n", type=click.IntRange(min=1), default=1, show_default=True,
              help="Number of requests")
@click.option("--reuse/--no-reuse", default=True, show_default=True,
              help="Send all requests through one client, or one client per request")
@click.option("--insecure", is_flag=True, help="Accept any server certificate")
@click.option(
    "--metrics-port",
    type=click.IntRange(min=1, max=65535),
    default=None,
    help="Serve Prometheus metrics on 127.0.0.1:PORT while requests run",
)
@click.option(
    "--config",
    "-c",
    "config_file",
    type=click.Path(exists=True),
    help="Client configuration file",
)
def request(url, cert_file, key_file, password, cert_dir, policy, method, count, reuse,
            insecure, metrics_port, config_file):
    """
    Send requests presenting a client certificate and report session reuse.

    With --reuse all requests share one client and its TLS session pool;
    with --no-reuse each request uses a fresh client and handshake.

    Example:
        certpool request https://localhost:8443/ --cert client.crt --key client.key -n 3
    """
    config = _load_config(config_file)
    if policy is not None:
        config = config.model_copy(update={"certificate_policy": CertificatePolicy.parse(policy)})

    certificates = [_load_certificate(cert_file, key_file, password)] if cert_file else []
    platform_store = (
        DirectoryCertificateStore(cert_dir) if cert_dir else EnvironmentCertificateStore()
    )
    validator = accept_any_certificate if insecure else None

    if insecure:
        warning("Server certificate verification disabled (--insecure)")

    metrics = None
    if metrics_port is not None:
        metrics = PoolMetrics(config.name, registry=CollectorRegistry())
        metrics.start_exposition_endpoint(port=metrics_port, addr="127.0.0.1")
        info(f"Serving metrics on http://127.0.0.1:{metrics_port}/metrics")

    def make_client() -> CertificateClient:
        return CertificateClient(
            config=config,
            certificates=certificates,
            platform_store=platform_store,
            server_certificate_validator=validator,
            metrics=metrics,
        )

    async def _run() -> tuple[list[dict], int]:
        rows: list[dict] = []
        handshakes = 0

        async def send(client: CertificateClient, number: int) -> None:
            start_time = time.monotonic()
            response = await client.request(method, url)
            session = response.extensions.get("tls_session", {})
            rows.append({
                "request": number,
                "status": response.status_code,
                "session": session.get("session_id"),
                "reused": session.get("reused"),
                "client_certificate": short_fingerprint(session.get("client_certificate")),
                "protocol": session.get("protocol_version"),
                "elapsed": format_duration(time.monotonic() - start_time),
            })

        if reuse:
            async with make_client() as client:
                for number in range(1, count + 1):
                    await send(client, number)
                handshakes = client.handshake_count
        else:
            for number in range(1, count + 1):
                async with make_client() as client:
                    await send(client, number)
                    handshakes += client.handshake_count

        return rows, handshakes

    info(f"Sending {count} {method} request(s) to {url} (policy: {config.certificate_policy.value})")

    try:
        rows, handshakes = asyncio.run(_run())
    except CertPoolError as e:
        fail(f"{type(e).__name__}: {e}")

    console.print()
    print_table(
        rows,
        ["request", "status", "session", "reused", "client_certificate", "protocol", "elapsed"],
        title="Requests",
    )
    console.print()
    success(f"{len(rows)} request(s) completed with {handshakes} TLS handshake(s)")


if __name__ == "__main__":
    cli()
