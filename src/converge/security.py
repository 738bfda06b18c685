"""Credential acquisition with secretless enforcement.

In the default ``managedIdentity`` mode the reconciler runs secretless:
- Authentication uses a Managed Identity (system- or user-assigned)
- NO service principal secrets or passwords are accepted
- Credential environment variables abort startup

SECURITY INVARIANTS (managedIdentity mode):
1. AZURE_CLIENT_SECRET must never be present in the environment
2. ManagedIdentityCredential is the only credential type
3. All authentication flows through Entra ID

The ``default`` mode uses DefaultAzureCredential for workstation runs
(Azure CLI login, VS Code, environment) and logs a warning.
"""

from __future__ import annotations

import logging
import os

from azure.core.credentials import TokenCredential
from azure.identity import DefaultAzureCredential, ManagedIdentityCredential

from .config import CredentialMode

logger = logging.getLogger(__name__)

# Environment variables that indicate credential leakage
FORBIDDEN_CREDENTIAL_ENV_VARS: tuple[str, ...] = (
    "AZURE_CLIENT_SECRET",
    "AZURE_CLIENT_CERTIFICATE_PATH",
    "AZURE_CLIENT_CERTIFICATE_PASSWORD",
    "AZURE_USERNAME",
    "AZURE_PASSWORD",
)

SECRETLESS_VIOLATION_MESSAGE = (
    "SECURITY VIOLATION: {env_var} is set. converge runs with a Managed "
    "Identity in managedIdentity mode and refuses service principal or "
    "password credentials. Remove the credential environment variables and "
    "assign a managed identity with the required RBAC roles, or use "
    "CREDENTIAL_MODE=default for local runs."
)


class SecretlessViolationError(Exception):
    """Raised when a credential secret is found in managedIdentity mode.

    This is a fatal error: the reconciler must not proceed.
    """

    pass


def enforce_secretless_architecture() -> None:
    """Enforce that no credential secrets are present in the environment.

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
            raise SecretlessViolationError(SECRETLESS_VIOLATION_MESSAGE.format(env_var=env_var))

    logger.info(
        "Secretless architecture verified",
        extra={"security_event": "secretless_verified", "credential_type": "ManagedIdentity"},
    )


def get_managed_identity_credential(client_id: str | None = None) -> ManagedIdentityCredential:
    """Get a ManagedIdentityCredential after verifying secretless architecture.

    Args:
        client_id: Client ID of a user-assigned managed identity. If None,
            the system-assigned identity is used.

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


def get_credential(mode: CredentialMode, client_id: str | None = None) -> TokenCredential:
    """Get the credential for the configured mode.

    Raises:
        SecretlessViolationError: In managedIdentity mode, if credential
            environment variables are set.
    """
    if mode == CredentialMode.MANAGED_IDENTITY:
        return get_managed_identity_credential(client_id)

    logger.warning(
        "Using DefaultAzureCredential; secretless enforcement is off",
        extra={"credential_mode": mode.value},
    )
    if client_id:
        return DefaultAzureCredential(managed_identity_client_id=client_id)
    return DefaultAzureCredential()
