"""
certpool - Observability Layer

This module provides:
- Prometheus metrics for handshakes and session reuse
- Structured JSON logging
- Security audit events for TLS handshakes
"""

from certpool.observability.logging import AuditLogger, JSONFormatter, setup_logging
from certpool.observability.metrics import PoolMetrics

__all__ = [
    "PoolMetrics",
    "JSONFormatter",
    "AuditLogger",
    "setup_logging",
]
