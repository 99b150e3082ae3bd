"""
Structured JSON logging for certpool.

Provides JSON-formatted logs and a security audit logger for TLS handshake
events.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional


_RECORD_ATTRIBUTES = frozenset({
    "name",
    "msg",
    "args",
    "created",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "module",
    "msecs",
    "message",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "thread",
    "threadName",
    "taskName",
    "exc_info",
    "exc_text",
    "stack_info",
})


class JSONFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Outputs logs in JSON format with standard fields:
    - timestamp: ISO 8601 timestamp
    - level: Log level
    - logger: Logger name
    - message: Log message
    - client_name: Name of the client
    - extra: Additional fields from log record
    """

    def __init__(self, client_name: str, *args, **kwargs):
        """
        Initialize JSON formatter.

        Args:
            client_name: Name of the client (included in all logs)
        """
        super().__init__(*args, **kwargs)
        self.client_name = client_name

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "client_name": self.client_name,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        extra_fields = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RECORD_ATTRIBUTES
        }
        if extra_fields:
            log_data["extra"] = extra_fields

        return json.dumps(log_data, default=str)


class AuditLogger:
    """
    Security audit logger for certpool.

    Records which client certificate was presented to which server, and
    when a server certificate was refused. Events carry structured fields:
    - event_type: HANDSHAKE, CERTIFICATE_REJECTED or SESSION_CLOSED
    - client_name: Name of this client
    - endpoint: Remote peer
    - session_id: TLS session identifier (if a session exists)

    Fingerprints are logged, never key material.
    """

    def __init__(
        self,
        client_name: str,
        logger: Optional[logging.Logger] = None,
        enabled: bool = True,
    ):
        """
        Initialize audit logger.

        Args:
            client_name: Name of the client
            logger: Python logger instance (creates new if not provided)
            enabled: Whether audit events are emitted
        """
        self.client_name = client_name
        self.enabled = enabled

        if logger is None:
            self.logger = logging.getLogger(f"{__name__}.audit")
            self.logger.setLevel(logging.INFO)

            if not self.logger.handlers:
                handler = logging.StreamHandler(sys.stdout)
                handler.setFormatter(JSONFormatter(client_name=client_name))
                self.logger.addHandler(handler)
                self.logger.propagate = False
        else:
            self.logger = logger

    def audit_handshake(
        self,
        endpoint: str,
        session_id: str,
        protocol_version: Optional[str],
        client_certificate: Optional[str],
        policy: str,
    ) -> None:
        """
        Log a completed TLS handshake.

        Args:
            endpoint: Remote peer
            session_id: New session identifier
            protocol_version: Negotiated TLS version
            client_certificate: Fingerprint of the presented certificate, or
                None if no certificate was presented
            policy: Certificate policy in effect
        """
        if not self.enabled:
            return

        self.logger.info(
            "TLS handshake completed",
            extra={
                "event_type": "HANDSHAKE",
                "client_name": self.client_name,
                "endpoint": endpoint,
                "session_id": session_id,
                "protocol_version": protocol_version,
                "client_certificate": client_certificate,
                "policy": policy,
            },
        )

    def audit_certificate_rejected(self, endpoint: str, reason: str) -> None:
        """Log a refused server certificate."""
        if not self.enabled:
            return

        self.logger.warning(
            "Server certificate rejected",
            extra={
                "event_type": "CERTIFICATE_REJECTED",
                "client_name": self.client_name,
                "endpoint": endpoint,
                "reason": reason,
            },
        )

    def audit_session_closed(self, endpoint: str, session_id: str, reason: str) -> None:
        """Log a session dropped outside normal pool expiry."""
        if not self.enabled:
            return

        self.logger.info(
            "TLS session closed",
            extra={
                "event_type": "SESSION_CLOSED",
                "client_name": self.client_name,
                "endpoint": endpoint,
                "session_id": session_id,
                "reason": reason,
            },
        )


def setup_logging(
    client_name: str,
    level: str = "INFO",
    json_format: bool = True,
) -> logging.Logger:
    """
    Setup standard logging configuration for certpool.

    Args:
        client_name: Name of the client
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_format: Use JSON formatter (recommended for production)

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger("certpool")
    logger.setLevel(getattr(logging, level.upper()))

    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)

    if json_format:
        formatter = JSONFormatter(client_name=client_name)
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )

    handler.setFormatter(formatter)
    logger.addHandler(handler)

    return logger
