"""
Configuration management for certpool.

This module provides Pydantic-based configuration models for a
CertificateClient: connection pool limits, handshake behaviour, logging and
metrics.

Configuration can be loaded from:
- YAML files
- Environment variables (for container overrides)
- Direct instantiation (for testing)
"""

import os
import ssl
from enum import Enum
from pathlib import Path
from typing import Any, Literal, Optional, Self

import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

from certpool.certificates.base import CertificatePolicy
from certpool.exceptions import ConfigurationError


class CertificateSelection(str, Enum):
    """Override for the TLS backend capability probe."""

    AUTO = "auto"  # ask the backend probe
    ENABLED = "enabled"
    DISABLED = "disabled"


class PoolSettings(BaseModel):
    """Connection pool configuration."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = Field(
        default=True, description="Return sessions to the pool after use"
    )
    max_idle_per_key: int = Field(
        default=10, ge=1, description="Idle sessions kept per pool key"
    )
    max_connections_per_key: Optional[int] = Field(
        default=None, ge=1, description="Busy + idle sessions per key (None: unbounded)"
    )
    max_total_connections: Optional[int] = Field(
        default=None, ge=1, description="Sessions across all keys (None: unbounded)"
    )
    idle_timeout_seconds: float = Field(
        default=60.0, gt=0, description="Idle session lifetime"
    )
    cleanup_interval_seconds: float = Field(
        default=10.0, gt=0, description="Seconds between idle cleanup runs"
    )

    @model_validator(mode="after")
    def validate_limits(self) -> Self:
        """Idle capacity cannot exceed total capacity."""
        if (
            self.max_connections_per_key is not None
            and self.max_idle_per_key > self.max_connections_per_key
        ):
            raise ValueError(
                "max_idle_per_key must be <= max_connections_per_key"
            )
        if (
            self.max_connections_per_key is not None
            and self.max_total_connections is not None
            and self.max_total_connections < self.max_connections_per_key
        ):
            raise ValueError(
                "max_total_connections must be >= max_connections_per_key"
            )
        return self


class HandshakeSettings(BaseModel):
    """TLS handshake configuration."""

    model_config = ConfigDict(frozen=True)

    timeout_seconds: float = Field(
        default=10.0, gt=0, description="Connect + handshake timeout"
    )
    tls_min_version: Literal["1.2", "1.3"] = Field(
        default="1.2", description="Minimum TLS version"
    )
    certificate_selection: CertificateSelection = Field(
        default=CertificateSelection.AUTO,
        description="Override the backend's client certificate capability probe",
    )
    trust_bundle: Optional[Path] = Field(
        default=None,
        description="PEM bundle of trusted roots (default: certifi)",
    )
    skip_expired_certificates: bool = Field(
        default=True,
        description="Never offer client certificates outside their validity window",
    )

    @field_validator("trust_bundle")
    @classmethod
    def validate_trust_bundle(cls, v: Optional[Path]) -> Optional[Path]:
        """Trust bundle must exist if given."""
        if v is not None and not v.exists():
            raise ValueError(f"Trust bundle not found: {v}")
        return v

    @property
    def minimum_version(self) -> ssl.TLSVersion:
        return {
            "1.2": ssl.TLSVersion.TLSv1_2,
            "1.3": ssl.TLSVersion.TLSv1_3,
        }[self.tls_min_version]


class LoggingSettings(BaseModel):
    """Logging configuration."""

    model_config = ConfigDict(frozen=True)

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Log level"
    )
    format: Literal["json", "text"] = Field(
        default="text", description="Log format"
    )
    audit: bool = Field(default=True, description="Emit handshake audit events")


class MetricsSettings(BaseModel):
    """Metrics configuration."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = Field(default=False, description="Enable Prometheus metrics")


class ClientConfig(BaseModel):
    """
    Complete CertificateClient configuration.

    Example:
        config = ClientConfig.from_file("certpool.yaml")
        config = ClientConfig.from_env()
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(default="certpool", description="Client name used in logs")
    certificate_policy: CertificatePolicy = Field(
        default=CertificatePolicy.MANUAL,
        description="Initial client certificate policy",
    )
    request_timeout_seconds: float = Field(
        default=30.0, gt=0, description="Read/write timeout for the HTTP exchange"
    )
    pool: PoolSettings = Field(
        default_factory=PoolSettings, description="Connection pool settings"
    )
    handshake: HandshakeSettings = Field(
        default_factory=HandshakeSettings, description="Handshake settings"
    )
    logging: LoggingSettings = Field(
        default_factory=LoggingSettings, description="Logging settings"
    )
    metrics: MetricsSettings = Field(
        default_factory=MetricsSettings, description="Metrics settings"
    )

    @classmethod
    def from_file(cls, path: str | Path) -> "ClientConfig":
        """
        Load configuration from YAML file.

        Args:
            path: Path to YAML configuration file

        Returns:
            Validated ClientConfig instance

        Raises:
            ConfigurationError: If file cannot be read or configuration is invalid
        """
        try:
            config_path = Path(path)
            if not config_path.exists():
                raise ConfigurationError(
                    f"Configuration file not found: {path}",
                    details={"path": str(path)},
                )

            with open(config_path) as f:
                data = yaml.safe_load(f)

            if data is None:
                data = {}
            if not isinstance(data, dict):
                raise ConfigurationError(
                    "Configuration file must contain a YAML dictionary",
                    details={"path": str(path)},
                )

            return cls(**data)

        except yaml.YAMLError as e:
            raise ConfigurationError(
                f"Invalid YAML in configuration file: {e}",
                details={"path": str(path), "error": str(e)},
            ) from e
        except Exception as e:
            if isinstance(e, ConfigurationError):
                raise
            raise ConfigurationError(
                f"Failed to load configuration: {e}",
                details={"path": str(path), "error": str(e)},
            ) from e

    @classmethod
    def from_env(cls, prefix: str = "CERTPOOL_") -> "ClientConfig":
        """
        Load configuration from environment variables.

        Variable names follow the pattern: {prefix}{SECTION}_{KEY}. The
        CLIENT section maps to top-level fields.

        Examples:
            CERTPOOL_CLIENT_NAME=billing
            CERTPOOL_CLIENT_CERTIFICATE_POLICY=automatic
            CERTPOOL_POOL_MAX_IDLE_PER_KEY=4
            CERTPOOL_HANDSHAKE_TIMEOUT_SECONDS=5
            CERTPOOL_LOGGING_LEVEL=DEBUG

        Args:
            prefix: Environment variable prefix (default: "CERTPOOL_")

        Returns:
            Validated ClientConfig instance

        Raises:
            ConfigurationError: If a variable holds an invalid value
        """
        env_data: dict[str, Any] = {
            "pool": {},
            "handshake": {},
            "logging": {},
            "metrics": {},
        }
        top_level = {"name", "certificate_policy", "request_timeout_seconds"}

        for key, value in os.environ.items():
            if not key.startswith(prefix):
                continue

            config_path = key[len(prefix):].lower().split("_", 1)
            if len(config_path) != 2:
                continue

            section, field = config_path
            if section == "client" and field in top_level:
                env_data[field] = value
            elif section in env_data and isinstance(env_data[section], dict):
                env_data[section][field] = value

        try:
            return cls(**env_data)
        except Exception as e:
            raise ConfigurationError(
                f"Failed to load configuration from environment: {e}",
                details={"error": str(e)},
            ) from e
