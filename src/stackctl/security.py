"""Secretless credential handling for the Azure provider.

The Azure provider authenticates only with a managed identity. Credential
material in the environment (client secrets, certificates, passwords) is a
fatal error: it means some other authentication path could be picked up by
the SDK.

SECURITY INVARIANTS:
1. No credential environment variable may be set when the provider starts
2. ManagedIdentityCredential is the only credential type handed out
"""

from __future__ import annotations

import logging
import os

from azure.identity import ManagedIdentityCredential

from .errors import StackError

logger = logging.getLogger(__name__)

# Environment variables that indicate credential leakage
FORBIDDEN_CREDENTIAL_ENV_VARS: tuple[str, ...] = (
    "AZURE_CLIENT_SECRET",
    "AZURE_CLIENT_CERTIFICATE_PATH",
    "AZURE_CLIENT_CERTIFICATE_PASSWORD",
    "AZURE_USERNAME",
    "AZURE_PASSWORD",
)


class SecretlessViolationError(StackError):
    """Raised when credential material is present in the environment."""

    def __init__(self, env_var: str) -> None:
        self.env_var = env_var
        super().__init__(
            f"Credential variable {env_var} is set. The azure provider authenticates "
            "with a managed identity only; unset the variable and assign an identity "
            "to the host instead."
        )


def enforce_secretless_environment() -> None:
    """Fail if any credential variable is set.

    Raises:
        SecretlessViolationError: On the first forbidden variable found.
    """
    for env_var in FORBIDDEN_CREDENTIAL_ENV_VARS:
        if os.environ.get(env_var):
            logger.critical(
                "Secretless architecture violation",
                extra={
                    "security_event": "credential_detected",
                    "env_var": env_var,
                    "action": "provider_blocked",
                },
            )
            raise SecretlessViolationError(env_var)

    logger.debug(
        "Secretless environment verified",
        extra={"security_event": "secretless_verified", "credential_type": "ManagedIdentity"},
    )


def get_managed_identity_credential(client_id: str | None = None) -> ManagedIdentityCredential:
    """Return a managed identity credential after checking the environment.

    Args:
        client_id: Client ID of a user-assigned identity; the system-assigned
            identity is used when None.

    Raises:
        SecretlessViolationError: If credential variables are set.
    """
    enforce_secretless_environment()

    if client_id:
        logger.info(
            "Using user-assigned managed identity",
            extra={"client_id": client_id[:8] + "..." if len(client_id) > 8 else client_id},
        )
        return ManagedIdentityCredential(client_id=client_id)

    logger.info("Using system-assigned managed identity")
    return ManagedIdentityCredential()
