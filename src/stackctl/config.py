"""Configuration management with validation.

Bounds are enforced at configuration load time so a bad value fails the run
before any template is read or provider is contacted.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class ProviderKind(str, Enum):
    """Supported provider collaborators."""

    LOCAL = "local"
    AZURE = "azure"


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_PARALLELISM = 4
MAX_PARALLELISM = 64

DEFAULT_OPERATION_TIMEOUT_SECONDS = 600
MAX_OPERATION_TIMEOUT_SECONDS = 6 * 3600

DEFAULT_MAX_RETRIES = 3
MAX_RETRIES_LIMIT = 10
DEFAULT_RETRY_BACKOFF_BASE_SECONDS = 2.0

DEFAULT_LEASE_TTL_SECONDS = 3600
MIN_LEASE_TTL_SECONDS = 30

MAX_TEMPLATE_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max template
MAX_CAPABILITIES_FILE_SIZE_BYTES = 1024 * 1024
MAX_RESOURCES_PER_STACK = 500

# Input validation patterns
VALID_STACK_NAME_PATTERN = r"^[A-Za-z][A-Za-z0-9-]{0,127}$"
VALID_SUBSCRIPTION_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"


@dataclass(frozen=True)
class AzureSettings:
    """Settings for the Azure Resource Manager provider."""

    subscription_id: str = ""
    resource_group: str = ""
    location: str = ""
    client_id: str | None = None


@dataclass(frozen=True)
class Config:
    """Run configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-run.
    """

    stack_name: str
    state_dir: Path = field(default_factory=lambda: Path(".stackctl"))

    provider: ProviderKind = ProviderKind.LOCAL
    local_provider_file: Path | None = None
    capabilities_file: Path | None = None

    # Execution
    parallelism: int = DEFAULT_PARALLELISM
    operation_timeout_seconds: float = DEFAULT_OPERATION_TIMEOUT_SECONDS
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_backoff_base_seconds: float = DEFAULT_RETRY_BACKOFF_BASE_SECONDS
    rollback_on_failure: bool = True
    refresh: bool = False

    # State lease
    lease_ttl_seconds: int = DEFAULT_LEASE_TTL_SECONDS

    # Pseudo parameter values
    region: str = "local"
    account_id: str = "000000000000"
    partition: str = "aws"

    azure: AzureSettings = field(default_factory=AzureSettings)

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.stack_name:
            errors.append("STACK_NAME is required")
        elif not re.match(VALID_STACK_NAME_PATTERN, self.stack_name):
            errors.append(
                f"STACK_NAME must match pattern {VALID_STACK_NAME_PATTERN}: {self.stack_name}"
            )

        if not 1 <= self.parallelism <= MAX_PARALLELISM:
            errors.append(f"PARALLELISM must be between 1 and {MAX_PARALLELISM}")

        if not 0 < self.operation_timeout_seconds <= MAX_OPERATION_TIMEOUT_SECONDS:
            errors.append(
                f"OPERATION_TIMEOUT must be between 0 and {MAX_OPERATION_TIMEOUT_SECONDS} seconds"
            )

        if not 0 <= self.max_retries <= MAX_RETRIES_LIMIT:
            errors.append(f"MAX_RETRIES must be between 0 and {MAX_RETRIES_LIMIT}")

        if self.retry_backoff_base_seconds < 0:
            errors.append("RETRY_BACKOFF_BASE must not be negative")

        if self.lease_ttl_seconds < MIN_LEASE_TTL_SECONDS:
            errors.append(f"LEASE_TTL must be at least {MIN_LEASE_TTL_SECONDS} seconds")
        elif self.lease_ttl_seconds <= self.operation_timeout_seconds:
            errors.append("LEASE_TTL must exceed OPERATION_TIMEOUT")

        if self.capabilities_file is not None and not self.capabilities_file.exists():
            errors.append(f"Capabilities file does not exist: {self.capabilities_file}")

        if self.provider == ProviderKind.AZURE:
            if not self.azure.subscription_id:
                errors.append("AZURE_SUBSCRIPTION_ID is required for the azure provider")
            elif not re.match(VALID_SUBSCRIPTION_ID_PATTERN, self.azure.subscription_id.lower()):
                errors.append(
                    f"AZURE_SUBSCRIPTION_ID must be a valid GUID: {self.azure.subscription_id}"
                )
            if not self.azure.resource_group:
                errors.append("AZURE_RESOURCE_GROUP is required for the azure provider")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def pseudo_parameters(self) -> dict[str, str]:
        """Values for pseudo parameters such as ``AWS::Region``."""
        return {
            "AWS::Region": self.region,
            "AWS::AccountId": self.account_id,
            "AWS::StackName": self.stack_name,
            "AWS::Partition": self.partition,
        }

    @classmethod
    def from_env(cls, stack_name: str | None = None) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            STACKCTL_STACK_NAME: Stack to reconcile (overridden by ``stack_name``)
            STACKCTL_STATE_DIR: Directory for state and lease files (default: .stackctl)
            STACKCTL_PROVIDER: One of local, azure (default: local)
            STACKCTL_LOCAL_PROVIDER_FILE: JSON file backing the local provider
            STACKCTL_CAPABILITIES_FILE: YAML capability table
            STACKCTL_PARALLELISM: Concurrent provider operations (default: 4)
            STACKCTL_OPERATION_TIMEOUT: Per-call deadline in seconds (default: 600)
            STACKCTL_MAX_RETRIES: Retries for transient provider errors (default: 3)
            STACKCTL_RETRY_BACKOFF_BASE: Backoff base in seconds (default: 2)
            STACKCTL_ROLLBACK: Roll back on failure (default: true)
            STACKCTL_REFRESH: Describe applied resources before diffing (default: false)
            STACKCTL_LEASE_TTL: State lease lifetime in seconds (default: 3600)
            STACKCTL_REGION / STACKCTL_ACCOUNT_ID / STACKCTL_PARTITION: pseudo parameters

        Azure Variables:
            AZURE_SUBSCRIPTION_ID, AZURE_RESOURCE_GROUP, AZURE_LOCATION,
            AZURE_CLIENT_ID (user-assigned managed identity)
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

        def get_path(key: str) -> Path | None:
            value = os.environ.get(key)
            return Path(value) if value else None

        def get_provider(value: str | None) -> ProviderKind:
            if not value:
                return ProviderKind.LOCAL
            try:
                return ProviderKind(value.lower())
            except ValueError as e:
                valid = [p.value for p in ProviderKind]
                raise ConfigurationError(f"STACKCTL_PROVIDER must be one of {valid}: {value}") from e

        return cls(
            stack_name=stack_name or os.environ.get("STACKCTL_STACK_NAME", ""),
            state_dir=Path(os.environ.get("STACKCTL_STATE_DIR", ".stackctl")),
            provider=get_provider(os.environ.get("STACKCTL_PROVIDER")),
            local_provider_file=get_path("STACKCTL_LOCAL_PROVIDER_FILE"),
            capabilities_file=get_path("STACKCTL_CAPABILITIES_FILE"),
            parallelism=get_int("STACKCTL_PARALLELISM", DEFAULT_PARALLELISM),
            operation_timeout_seconds=get_float(
                "STACKCTL_OPERATION_TIMEOUT", DEFAULT_OPERATION_TIMEOUT_SECONDS
            ),
            max_retries=get_int("STACKCTL_MAX_RETRIES", DEFAULT_MAX_RETRIES),
            retry_backoff_base_seconds=get_float(
                "STACKCTL_RETRY_BACKOFF_BASE", DEFAULT_RETRY_BACKOFF_BASE_SECONDS
            ),
            rollback_on_failure=get_bool("STACKCTL_ROLLBACK", True),
            refresh=get_bool("STACKCTL_REFRESH", False),
            lease_ttl_seconds=get_int("STACKCTL_LEASE_TTL", DEFAULT_LEASE_TTL_SECONDS),
            region=os.environ.get("STACKCTL_REGION", "local"),
            account_id=os.environ.get("STACKCTL_ACCOUNT_ID", "000000000000"),
            partition=os.environ.get("STACKCTL_PARTITION", "aws"),
            azure=AzureSettings(
                subscription_id=os.environ.get("AZURE_SUBSCRIPTION_ID", ""),
                resource_group=os.environ.get("AZURE_RESOURCE_GROUP", ""),
                location=os.environ.get("AZURE_LOCATION", ""),
                client_id=os.environ.get("AZURE_CLIENT_ID") or None,
            ),
        )
