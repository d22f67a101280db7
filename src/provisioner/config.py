"""Configuration management with validation.

Engine limits are enforced at configuration load time so that a run never
starts with settings the executor or drivers cannot honour.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_MAX_PARALLEL = 4
MIN_MAX_PARALLEL = 1
MAX_MAX_PARALLEL = 32

DEFAULT_MAX_RETRIES = 3
MAX_RETRIES_LIMIT = 10
DEFAULT_RETRY_BACKOFF_SECONDS = 2.0

DEFAULT_OPERATION_TIMEOUT_SECONDS = 1800
MAX_OPERATION_TIMEOUT_SECONDS = 7200

# Tolerated clock drift between the engine and remote token validators
DEFAULT_CLOCK_SKEW_SECONDS = 300
MAX_CLOCK_SKEW_SECONDS = 3600

# 3 bytes = 24 bits of entropy for the shared name suffix
DEFAULT_IDENTIFIER_BYTES = 3
MIN_IDENTIFIER_BYTES = 3
MAX_IDENTIFIER_BYTES = 16

MAX_DECLARATION_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max declaration file
MAX_RESOURCES_PER_RUN = 500

VALID_LOCATION_PATTERN = r"^[a-z]{2,}[a-z0-9]*$"
VALID_SUBSCRIPTION_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"


@dataclass(frozen=True)
class EngineConfig:
    """Engine configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-run.
    """

    location: str | None = None
    subscription_id: str | None = None

    # Concurrency within a batch
    max_parallel: int = DEFAULT_MAX_PARALLEL

    # Driver retry policy for retryable remote failures
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_backoff_seconds: float = DEFAULT_RETRY_BACKOFF_SECONDS

    # Upper bound on a single driver operation
    operation_timeout_seconds: int = DEFAULT_OPERATION_TIMEOUT_SECONDS

    clock_skew_seconds: int = DEFAULT_CLOCK_SKEW_SECONDS
    identifier_bytes: int = DEFAULT_IDENTIFIER_BYTES

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if self.location and not re.match(VALID_LOCATION_PATTERN, self.location.lower()):
            errors.append(f"PROVISIONER_LOCATION must be a valid Azure region: {self.location}")

        if self.subscription_id and not re.match(
            VALID_SUBSCRIPTION_ID_PATTERN, self.subscription_id.lower()
        ):
            errors.append(f"AZURE_SUBSCRIPTION_ID must be a valid GUID: {self.subscription_id}")

        if not (MIN_MAX_PARALLEL <= self.max_parallel <= MAX_MAX_PARALLEL):
            errors.append(
                f"PROVISIONER_MAX_PARALLEL must be between {MIN_MAX_PARALLEL} "
                f"and {MAX_MAX_PARALLEL}"
            )

        if not (0 <= self.max_retries <= MAX_RETRIES_LIMIT):
            errors.append(f"PROVISIONER_MAX_RETRIES must be between 0 and {MAX_RETRIES_LIMIT}")

        if self.retry_backoff_seconds < 0:
            errors.append("PROVISIONER_RETRY_BACKOFF_SECONDS cannot be negative")

        if not (1 <= self.operation_timeout_seconds <= MAX_OPERATION_TIMEOUT_SECONDS):
            errors.append(
                f"PROVISIONER_OPERATION_TIMEOUT must be between 1 "
                f"and {MAX_OPERATION_TIMEOUT_SECONDS} seconds"
            )

        if not (0 <= self.clock_skew_seconds <= MAX_CLOCK_SKEW_SECONDS):
            errors.append(
                f"PROVISIONER_CLOCK_SKEW_SECONDS must be between 0 and {MAX_CLOCK_SKEW_SECONDS}"
            )

        if not (MIN_IDENTIFIER_BYTES <= self.identifier_bytes <= MAX_IDENTIFIER_BYTES):
            errors.append(
                f"PROVISIONER_IDENTIFIER_BYTES must be between {MIN_IDENTIFIER_BYTES} "
                f"and {MAX_IDENTIFIER_BYTES}"
            )

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from environment variables.

        Environment Variables:
            PROVISIONER_LOCATION: Default target region (overridable per run)
            AZURE_SUBSCRIPTION_ID: Subscription used by the Azure drivers
            PROVISIONER_MAX_PARALLEL: Concurrent applies per batch (default: 4)
            PROVISIONER_MAX_RETRIES: Driver retries for retryable errors (default: 3)
            PROVISIONER_RETRY_BACKOFF_SECONDS: Backoff base in seconds (default: 2)
            PROVISIONER_OPERATION_TIMEOUT: Per-operation timeout in seconds (default: 1800)
            PROVISIONER_CLOCK_SKEW_SECONDS: Credential window skew tolerance (default: 300)
            PROVISIONER_IDENTIFIER_BYTES: Random suffix length in bytes (default: 3)
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

        return cls(
            location=os.environ.get("PROVISIONER_LOCATION") or None,
            subscription_id=os.environ.get("AZURE_SUBSCRIPTION_ID") or None,
            max_parallel=get_int("PROVISIONER_MAX_PARALLEL", DEFAULT_MAX_PARALLEL),
            max_retries=get_int("PROVISIONER_MAX_RETRIES", DEFAULT_MAX_RETRIES),
            retry_backoff_seconds=get_float(
                "PROVISIONER_RETRY_BACKOFF_SECONDS", DEFAULT_RETRY_BACKOFF_SECONDS
            ),
            operation_timeout_seconds=get_int(
                "PROVISIONER_OPERATION_TIMEOUT", DEFAULT_OPERATION_TIMEOUT_SECONDS
            ),
            clock_skew_seconds=get_int(
                "PROVISIONER_CLOCK_SKEW_SECONDS", DEFAULT_CLOCK_SKEW_SECONDS
            ),
            identifier_bytes=get_int("PROVISIONER_IDENTIFIER_BYTES", DEFAULT_IDENTIFIER_BYTES),
        )
