"""
Prometheus metrics collection for certpool.

Provides metrics for monitoring handshake cost and connection reuse.
"""

from typing import Optional

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    start_http_server,
)


class PoolMetrics:
    """
    Collects and exposes Prometheus metrics for a CertificateClient.

    Metrics include:
    - Handshake counter by outcome (success, timeout, rejected, failed)
    - Handshake duration histogram
    - Session reuse and discard counters
    - Request counter by outcome
    - Idle session gauge

    All metrics carry a `client_name` label.
    """

    def __init__(
        self,
        client_name: str,
        registry: Optional[CollectorRegistry] = None,
        enabled: bool = True,
    ):
        """
        Initialize metrics collector.

        Args:
            client_name: Name of the client (added as label to all metrics)
            registry: Prometheus registry (defaults to global REGISTRY)
            enabled: Whether metrics collection is enabled
        """
        self.client_name = client_name
        self.registry = registry or REGISTRY
        self.enabled = enabled

        if not self.enabled:
            return

        self.handshakes_total = Counter(
            "certpool_handshakes_total",
            "Total number of TLS handshakes",
            ["client_name", "outcome"],
            registry=self.registry,
        )

        self.session_reuses_total = Counter(
            "certpool_session_reuses_total",
            "Requests served by a pooled TLS session",
            ["client_name"],
            registry=self.registry,
        )

        self.session_discards_total = Counter(
            "certpool_session_discards_total",
            "TLS sessions removed from the pool without reuse",
            ["client_name"],
            registry=self.registry,
        )

        self.requests_total = Counter(
            "certpool_requests_total",
            "Total number of requests sent",
            ["client_name", "outcome"],
            registry=self.registry,
        )

        self.handshake_duration_seconds = Histogram(
            "certpool_handshake_duration_seconds",
            "TLS handshake duration in seconds",
            ["client_name"],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
            registry=self.registry,
        )

        self.idle_sessions = Gauge(
            "certpool_idle_sessions",
            "Number of idle pooled TLS sessions",
            ["client_name"],
            registry=self.registry,
        )

    def record_handshake(self, outcome: str, duration: Optional[float] = None) -> None:
        """
        Record a handshake attempt.

        Args:
            outcome: success, timeout, rejected or failed
            duration: Handshake duration in seconds, if it completed
        """
        if not self.enabled:
            return

        self.handshakes_total.labels(
            client_name=self.client_name, outcome=outcome
        ).inc()
        if duration is not None:
            self.handshake_duration_seconds.labels(
                client_name=self.client_name
            ).observe(duration)

    def record_reuse(self) -> None:
        if not self.enabled:
            return
        self.session_reuses_total.labels(client_name=self.client_name).inc()

    def record_discard(self) -> None:
        if not self.enabled:
            return
        self.session_discards_total.labels(client_name=self.client_name).inc()

    def record_request(self, outcome: str) -> None:
        if not self.enabled:
            return
        self.requests_total.labels(
            client_name=self.client_name, outcome=outcome
        ).inc()

    def set_idle_sessions(self, count: int) -> None:
        if not self.enabled:
            return
        self.idle_sessions.labels(client_name=self.client_name).set(count)

    def start_exposition_endpoint(
        self,
        port: int = 9090,
        addr: str = "0.0.0.0",
    ) -> None:
        """
        Start Prometheus metrics exposition HTTP server.

        Args:
            port: Port to listen on (default: 9090)
            addr: Address to bind to (default: 0.0.0.0)
        """
        if not self.enabled:
            return

        start_http_server(port=port, addr=addr, registry=self.registry)
