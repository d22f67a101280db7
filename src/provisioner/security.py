"""Credentials and run-scoped secrets.

Two separate concerns live here:

- The engine itself authenticates to Azure with a Managed Identity only.
  Client secrets, certificates or passwords in the environment are refused
  before any SDK client is constructed.
- Secret values consumed by resources (storage keys, admin passwords, ...)
  are never written into declarations. They are referenced as
  ${secret.NAME} and pulled from a SecretStore at apply time.

SECURITY INVARIANTS:
1. AZURE_CLIENT_SECRET must never be present in the environment
2. ManagedIdentityCredential is the only credential type handed to drivers
3. Secret values are never logged; only secret names are
"""

from __future__ import annotations

import logging
import os
import re
from typing import Protocol

from azure.identity import ManagedIdentityCredential

logger = logging.getLogger(__name__)

# Environment variables that indicate credential leakage
FORBIDDEN_CREDENTIAL_ENV_VARS: tuple[str, ...] = (
    "AZURE_CLIENT_SECRET",
    "AZURE_CLIENT_CERTIFICATE_PATH",
    "AZURE_CLIENT_CERTIFICATE_PASSWORD",
    "AZURE_USERNAME",
    "AZURE_PASSWORD",
)

SECRET_ENV_PREFIX = "PROVISIONER_SECRET_"

VALID_SECRET_NAME_PATTERN = r"^[A-Za-z_][A-Za-z0-9_]*$"


class SecretlessViolationError(Exception):
    """Raised when a credential secret is found in the engine environment."""

    pass


class SecretNotFoundError(KeyError):
    """Raised when a referenced secret is not available in the store."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "secret not found"


def enforce_secretless_architecture() -> None:
    """Refuse to start when credential secrets are present in the environment.

    Raises:
        SecretlessViolationError: If any credential environment variable is set.
    """
    for env_var in FORBIDDEN_CREDENTIAL_ENV_VARS:
        if os.environ.get(env_var):
            logger.critical(
                "Secretless architecture violation",
                extra={
                    "security_event": "credential_detected",
                    "env_var": env_var,
                    "action": "startup_blocked",
                },
            )
            raise SecretlessViolationError(
                f"SECURITY VIOLATION: {env_var} is set. The provisioner authenticates "
                f"with a managed identity only; remove credential variables from the "
                f"environment."
            )

    logger.info(
        "Secretless architecture verified",
        extra={"security_event": "secretless_verified", "credential_type": "ManagedIdentity"},
    )


def get_managed_identity_credential(client_id: str | None = None) -> ManagedIdentityCredential:
    """Get a ManagedIdentityCredential after verifying the environment.

    Args:
        client_id: Client ID of a user-assigned identity. If None, the
            system-assigned identity is used.

    Raises:
        SecretlessViolationError: If credential environment variables detected.
    """
    enforce_secretless_architecture()

    if client_id:
        logger.info(
            "Using user-assigned managed identity",
            extra={"client_id": client_id[:8] + "..." if len(client_id) > 8 else client_id},
        )
        return ManagedIdentityCredential(client_id=client_id)

    logger.info("Using system-assigned managed identity")
    return ManagedIdentityCredential()


class SecretStore(Protocol):
    """Source of run-scoped secret values."""

    def get(self, name: str) -> str:
        """Return the secret value or raise SecretNotFoundError."""
        ...


class EnvironmentSecretStore:
    """Reads ${secret.NAME} from the PROVISIONER_SECRET_NAME variable.

    The environment is read on every lookup so that a secret injected by an
    orchestrator after start-up is picked up at apply time.
    """

    def __init__(self, prefix: str = SECRET_ENV_PREFIX) -> None:
        self._prefix = prefix

    def get(self, name: str) -> str:
        if not re.match(VALID_SECRET_NAME_PATTERN, name):
            raise SecretNotFoundError(f"Invalid secret name: {name!r}")

        env_var = f"{self._prefix}{name.upper()}"
        value = os.environ.get(env_var)
        if value is None:
            raise SecretNotFoundError(f"Secret '{name}' not found (expected {env_var})")

        logger.debug("Secret resolved from environment", extra={"secret": name})
        return value


class StaticSecretStore:
    """In-memory secret store, used for tests and embedding."""

    def __init__(self, values: dict[str, str] | None = None) -> None:
        self._values = dict(values or {})

    def get(self, name: str) -> str:
        try:
            return self._values[name]
        except KeyError:
            raise SecretNotFoundError(f"Secret '{name}' not found") from None
