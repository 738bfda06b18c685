"""Configuration management with validation.

Limits are enforced at configuration load time so a reconciliation run
never starts with an unbounded retry schedule or worker pool.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any


class CredentialMode(str, Enum):
    """Supported ways of obtaining Azure credentials."""

    MANAGED_IDENTITY = "managedIdentity"
    DEFAULT = "default"


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_MAX_CONCURRENCY = 4
MAX_CONCURRENCY_LIMIT = 64

DEFAULT_RETRY_MAX_ATTEMPTS = 3
MAX_RETRY_ATTEMPTS = 10
DEFAULT_RETRY_BACKOFF_BASE_SECONDS = 5.0
DEFAULT_RETRY_BACKOFF_MAX_SECONDS = 60.0

DEFAULT_OPERATION_TIMEOUT_SECONDS = 1800
DEFAULT_LOCK_TIMEOUT_SECONDS = 0

DEFAULT_RECONCILE_INTERVAL_SECONDS = 300
MIN_RECONCILE_INTERVAL_SECONDS = 30
MAX_RECONCILE_INTERVAL_SECONDS = 3600

DEFAULT_MAX_CHANGES_PER_RUN = 100

# Input limits
MAX_DEFINITION_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max definition file
MAX_STATE_FILE_SIZE_BYTES = 50 * 1024 * 1024

VALID_SUBSCRIPTION_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"


@dataclass(frozen=True)
class Config:
    """Reconciler configuration.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-run.
    """

    # Paths
    definitions_path: Path = field(default_factory=lambda: Path("definitions"))
    state_path: Path = field(default_factory=lambda: Path("converge.state.json"))

    # Azure provider
    subscription_id: str | None = None
    credential_mode: CredentialMode = CredentialMode.MANAGED_IDENTITY
    client_id: str | None = None

    # Execution
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    retry_max_attempts: int = DEFAULT_RETRY_MAX_ATTEMPTS
    retry_backoff_base_seconds: float = DEFAULT_RETRY_BACKOFF_BASE_SECONDS
    retry_backoff_max_seconds: float = DEFAULT_RETRY_BACKOFF_MAX_SECONDS
    operation_timeout_seconds: int = DEFAULT_OPERATION_TIMEOUT_SECONDS
    lock_timeout_seconds: int = DEFAULT_LOCK_TIMEOUT_SECONDS

    # Watch loop
    reconcile_interval_seconds: int = DEFAULT_RECONCILE_INTERVAL_SECONDS

    # Behavior
    max_changes_per_run: int = DEFAULT_MAX_CHANGES_PER_RUN
    dry_run: bool = False

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if self.subscription_id and not re.match(
            VALID_SUBSCRIPTION_ID_PATTERN, self.subscription_id.lower()
        ):
            errors.append(f"AZURE_SUBSCRIPTION_ID must be a valid GUID: {self.subscription_id}")

        if not (1 <= self.max_concurrency <= MAX_CONCURRENCY_LIMIT):
            errors.append(f"MAX_CONCURRENCY must be between 1 and {MAX_CONCURRENCY_LIMIT}")

        if not (1 <= self.retry_max_attempts <= MAX_RETRY_ATTEMPTS):
            errors.append(f"RETRY_MAX_ATTEMPTS must be between 1 and {MAX_RETRY_ATTEMPTS}")

        if self.retry_backoff_base_seconds < 0:
            errors.append("RETRY_BACKOFF_BASE must not be negative")

        if self.retry_backoff_max_seconds < self.retry_backoff_base_seconds:
            errors.append("RETRY_BACKOFF_MAX must be at least RETRY_BACKOFF_BASE")

        if self.operation_timeout_seconds < 1:
            errors.append("OPERATION_TIMEOUT must be at least 1 second")

        if self.lock_timeout_seconds < 0:
            errors.append("LOCK_TIMEOUT must not be negative")

        if not (
            MIN_RECONCILE_INTERVAL_SECONDS
            <= self.reconcile_interval_seconds
            <= MAX_RECONCILE_INTERVAL_SECONDS
        ):
            errors.append(
                f"RECONCILE_INTERVAL must be between {MIN_RECONCILE_INTERVAL_SECONDS} "
                f"and {MAX_RECONCILE_INTERVAL_SECONDS} seconds"
            )

        if self.max_changes_per_run < 1:
            errors.append("MAX_CHANGES_PER_RUN must be at least 1")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    def with_overrides(self, **overrides: Any) -> Config:
        """Return a copy with the given fields replaced (None values skipped)."""
        changes = {key: value for key, value in overrides.items() if value is not None}
        if not changes:
            return self
        return replace(self, **changes)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            DEFINITIONS_PATH: Directory or file with resource definitions
                (default: ./definitions)
            STATE_PATH: State file location (default: ./converge.state.json)
            AZURE_SUBSCRIPTION_ID: Target Azure subscription
            CREDENTIAL_MODE: managedIdentity or default (default: managedIdentity)
            AZURE_CLIENT_ID: Client ID of a user-assigned managed identity
            MAX_CONCURRENCY: Parallel provider operations (default: 4)
            RETRY_MAX_ATTEMPTS: Attempts per action on transient errors (default: 3)
            RETRY_BACKOFF_BASE: First backoff delay in seconds (default: 5)
            RETRY_BACKOFF_MAX: Backoff ceiling in seconds (default: 60)
            OPERATION_TIMEOUT: Timeout per provider operation (default: 1800)
            LOCK_TIMEOUT: Seconds to wait for the state lock, 0 fails fast (default: 0)
            RECONCILE_INTERVAL: Seconds between watch-loop runs (default: 300)
            MAX_CHANGES_PER_RUN: Refuse plans with more changes (default: 100)
            DRY_RUN: If "true", plan without applying (default: false)
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

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        def get_credential_mode(value: str | None) -> CredentialMode:
            if not value:
                return CredentialMode.MANAGED_IDENTITY
            try:
                return CredentialMode(value)
            except ValueError as e:
                valid = [m.value for m in CredentialMode]
                raise ConfigurationError(f"CREDENTIAL_MODE must be one of {valid}: {value}") from e

        return cls(
            definitions_path=Path(os.environ.get("DEFINITIONS_PATH", "definitions")),
            state_path=Path(os.environ.get("STATE_PATH", "converge.state.json")),
            subscription_id=os.environ.get("AZURE_SUBSCRIPTION_ID") or None,
            credential_mode=get_credential_mode(os.environ.get("CREDENTIAL_MODE")),
            client_id=os.environ.get("AZURE_CLIENT_ID") or None,
            max_concurrency=get_int("MAX_CONCURRENCY", DEFAULT_MAX_CONCURRENCY),
            retry_max_attempts=get_int("RETRY_MAX_ATTEMPTS", DEFAULT_RETRY_MAX_ATTEMPTS),
            retry_backoff_base_seconds=get_float(
                "RETRY_BACKOFF_BASE", DEFAULT_RETRY_BACKOFF_BASE_SECONDS
            ),
            retry_backoff_max_seconds=get_float(
                "RETRY_BACKOFF_MAX", DEFAULT_RETRY_BACKOFF_MAX_SECONDS
            ),
            operation_timeout_seconds=get_int(
                "OPERATION_TIMEOUT", DEFAULT_OPERATION_TIMEOUT_SECONDS
            ),
            lock_timeout_seconds=get_int("LOCK_TIMEOUT", DEFAULT_LOCK_TIMEOUT_SECONDS),
            reconcile_interval_seconds=get_int(
                "RECONCILE_INTERVAL", DEFAULT_RECONCILE_INTERVAL_SECONDS
            ),
            max_changes_per_run=get_int("MAX_CHANGES_PER_RUN", DEFAULT_MAX_CHANGES_PER_RUN),
            dry_run=get_bool("DRY_RUN", False),
        )
