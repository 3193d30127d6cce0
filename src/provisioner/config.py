"""Engine configuration with validation.

Timeouts and retry ceilings are bounded at load time so a misconfigured
environment fails before any cloud call is made.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_NAT_GATEWAY_TIMEOUT_SECONDS = 600
DEFAULT_ENDPOINT_TIMEOUT_SECONDS = 300
DEFAULT_FILE_SYSTEM_TIMEOUT_SECONDS = 300
MIN_WAIT_TIMEOUT_SECONDS = 1
MAX_WAIT_TIMEOUT_SECONDS = 3600

DEFAULT_POLL_INTERVAL_SECONDS = 10.0
MIN_POLL_INTERVAL_SECONDS = 0.01
MAX_POLL_INTERVAL_SECONDS = 300.0

# Security group deletion retry (DependencyViolation while ENIs drain)
DEFAULT_SG_DELETE_MAX_ATTEMPTS = 12
DEFAULT_SG_DELETE_RETRY_DELAY_SECONDS = 5.0
MAX_SG_DELETE_ATTEMPTS = 100
MAX_SG_DELETE_RETRY_DELAY_SECONDS = 300.0

# Classic ELB DescribeTags accepts at most 20 names per call
ELB_TAG_BATCH_SIZE = 20

# Artifacts created by the Kubernetes cloud controller, not by this tool
K8S_CLUSTER_TAG_PREFIX = "kubernetes.io/cluster/"
K8S_ELB_SECURITY_GROUP_PREFIX = "k8s-elb-"

MAX_DOCUMENT_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max cluster document

VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class EngineConfig:
    """Engine configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-deletion.
    """

    region: str = ""

    # Timing
    nat_gateway_timeout_seconds: int = DEFAULT_NAT_GATEWAY_TIMEOUT_SECONDS
    endpoint_timeout_seconds: int = DEFAULT_ENDPOINT_TIMEOUT_SECONDS
    file_system_timeout_seconds: int = DEFAULT_FILE_SYSTEM_TIMEOUT_SECONDS
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS

    # Retry
    sg_delete_max_attempts: int = DEFAULT_SG_DELETE_MAX_ATTEMPTS
    sg_delete_retry_delay_seconds: float = DEFAULT_SG_DELETE_RETRY_DELAY_SECONDS

    # Logging
    json_logs: bool = True
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        for name, value in (
            ("NAT_GATEWAY_TIMEOUT", self.nat_gateway_timeout_seconds),
            ("ENDPOINT_TIMEOUT", self.endpoint_timeout_seconds),
            ("FILE_SYSTEM_TIMEOUT", self.file_system_timeout_seconds),
        ):
            if not MIN_WAIT_TIMEOUT_SECONDS <= value <= MAX_WAIT_TIMEOUT_SECONDS:
                errors.append(
                    f"{name} must be between {MIN_WAIT_TIMEOUT_SECONDS} "
                    f"and {MAX_WAIT_TIMEOUT_SECONDS} seconds"
                )

        if not MIN_POLL_INTERVAL_SECONDS <= self.poll_interval_seconds <= MAX_POLL_INTERVAL_SECONDS:
            errors.append(
                f"POLL_INTERVAL must be between {MIN_POLL_INTERVAL_SECONDS} "
                f"and {MAX_POLL_INTERVAL_SECONDS} seconds"
            )

        if not 1 <= self.sg_delete_max_attempts <= MAX_SG_DELETE_ATTEMPTS:
            errors.append(f"SG_DELETE_MAX_ATTEMPTS must be between 1 and {MAX_SG_DELETE_ATTEMPTS}")

        if not 0 <= self.sg_delete_retry_delay_seconds <= MAX_SG_DELETE_RETRY_DELAY_SECONDS:
            errors.append(
                "SG_DELETE_RETRY_DELAY must be between 0 and "
                f"{MAX_SG_DELETE_RETRY_DELAY_SECONDS} seconds"
            )

        if self.log_level.upper() not in VALID_LOG_LEVELS:
            errors.append(f"LOG_LEVEL must be one of {list(VALID_LOG_LEVELS)}: {self.log_level}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def logging_level(self) -> int:
        return getattr(logging, self.log_level.upper())

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from environment variables.

        Environment Variables:
            AWS_REGION: Region used when the document does not name one
            NAT_GATEWAY_TIMEOUT: Max seconds to wait for NAT gateway deletion (default: 600)
            ENDPOINT_TIMEOUT: Max seconds to wait for VPC endpoint deletion (default: 300)
            FILE_SYSTEM_TIMEOUT: Max seconds to wait for file system state changes (default: 300)
            POLL_INTERVAL: Seconds between status polls (default: 10)
            SG_DELETE_MAX_ATTEMPTS: Security group deletion attempts (default: 12)
            SG_DELETE_RETRY_DELAY: Seconds between deletion attempts (default: 5)
            LOG_FORMAT: "json" or "text" (default: json)
            LOG_LEVEL: Python logging level name (default: INFO)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        log_format = os.environ.get("LOG_FORMAT", "json").lower()
        if log_format not in ("json", "text"):
            raise ConfigurationError(f"LOG_FORMAT must be 'json' or 'text': {log_format}")

        return cls(
            region=os.environ.get("AWS_REGION", os.environ.get("AWS_DEFAULT_REGION", "")),
            nat_gateway_timeout_seconds=get_int(
                "NAT_GATEWAY_TIMEOUT", DEFAULT_NAT_GATEWAY_TIMEOUT_SECONDS
            ),
            endpoint_timeout_seconds=get_int("ENDPOINT_TIMEOUT", DEFAULT_ENDPOINT_TIMEOUT_SECONDS),
            file_system_timeout_seconds=get_int(
                "FILE_SYSTEM_TIMEOUT", DEFAULT_FILE_SYSTEM_TIMEOUT_SECONDS
            ),
            poll_interval_seconds=get_float("POLL_INTERVAL", DEFAULT_POLL_INTERVAL_SECONDS),
            sg_delete_max_attempts=get_int(
                "SG_DELETE_MAX_ATTEMPTS", DEFAULT_SG_DELETE_MAX_ATTEMPTS
            ),
            sg_delete_retry_delay_seconds=get_float(
                "SG_DELETE_RETRY_DELAY", DEFAULT_SG_DELETE_RETRY_DELAY_SECONDS
            ),
            json_logs=log_format == "json",
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
        )
