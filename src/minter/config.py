"""Configuration management with validation.

Every setting is validated when the configuration is built, so a bad
environment fails before any directory call is made.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass

from .convergence import ConvergencePolicy


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Convergence defaults: poll every 5s, give up after 60s
DEFAULT_CONVERGENCE_INTERVAL_SECONDS = 5.0
DEFAULT_CONVERGENCE_TIMEOUT_SECONDS = 60.0
MAX_CONVERGENCE_TIMEOUT_SECONDS = 900.0

DEFAULT_SECRET_VALIDITY_DAYS = 365
MAX_SECRET_VALIDITY_DAYS = 730  # Entra ID recommends <= 24 months

DEFAULT_GRAPH_ENDPOINT = "https://graph.microsoft.com"
DEFAULT_RESOURCE_MANAGER_ENDPOINT = "https://management.azure.com"

VALID_GUID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"


@dataclass(frozen=True)
class MinterConfig:
    """Minter configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Required fields
    tenant_id: str
    subscription_id: str

    # Minter identity. Without a secret the managed identity is used.
    client_id: str | None = None
    client_secret: str | None = None

    # Endpoints
    graph_endpoint: str = DEFAULT_GRAPH_ENDPOINT
    resource_manager_endpoint: str = DEFAULT_RESOURCE_MANAGER_ENDPOINT

    # Timing
    convergence_interval_seconds: float = DEFAULT_CONVERGENCE_INTERVAL_SECONDS
    convergence_timeout_seconds: float = DEFAULT_CONVERGENCE_TIMEOUT_SECONDS

    # Minted credentials
    secret_validity_days: int = DEFAULT_SECRET_VALIDITY_DAYS

    def __post_init__(self) -> None:
        errors: list[str] = []

        if not self.tenant_id:
            errors.append("AZURE_TENANT_ID is required")
        elif not re.match(VALID_GUID_PATTERN, self.tenant_id.lower()):
            errors.append(f"AZURE_TENANT_ID must be a valid GUID: {self.tenant_id}")

        if not self.subscription_id:
            errors.append("AZURE_SUBSCRIPTION_ID is required")
        elif not re.match(VALID_GUID_PATTERN, self.subscription_id.lower()):
            errors.append(f"AZURE_SUBSCRIPTION_ID must be a valid GUID: {self.subscription_id}")

        if self.client_secret and not self.client_id:
            errors.append("AZURE_CLIENT_ID is required when AZURE_CLIENT_SECRET is set")

        for name, endpoint in (
            ("GRAPH_ENDPOINT", self.graph_endpoint),
            ("RESOURCE_MANAGER_ENDPOINT", self.resource_manager_endpoint),
        ):
            if not endpoint.startswith("https://"):
                errors.append(f"{name} must be an https URL: {endpoint}")

        if self.convergence_interval_seconds < 0:
            errors.append("CONVERGENCE_POLL_INTERVAL cannot be negative")
        if not 0 <= self.convergence_timeout_seconds <= MAX_CONVERGENCE_TIMEOUT_SECONDS:
            errors.append(
                f"CONVERGENCE_TIMEOUT must be between 0 and {MAX_CONVERGENCE_TIMEOUT_SECONDS} seconds"
            )

        if not 1 <= self.secret_validity_days <= MAX_SECRET_VALIDITY_DAYS:
            errors.append(
                f"SECRET_VALIDITY_DAYS must be between 1 and {MAX_SECRET_VALIDITY_DAYS}"
            )

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def graph_scope(self) -> str:
        return self.graph_endpoint.rstrip("/") + "/.default"

    @property
    def resource_manager_scope(self) -> str:
        return self.resource_manager_endpoint.rstrip("/") + "/.default"

    def convergence_policy(self) -> ConvergencePolicy:
        return ConvergencePolicy(
            interval_seconds=self.convergence_interval_seconds,
            timeout_seconds=self.convergence_timeout_seconds,
        )

    @classmethod
    def from_env(cls) -> MinterConfig:
        """Load configuration from environment variables.

        Environment Variables:
            AZURE_TENANT_ID: Entra ID tenant holding the applications
            AZURE_SUBSCRIPTION_ID: Subscription the role assignments live in
            AZURE_CLIENT_ID: Client id of the minter's own identity
            AZURE_CLIENT_SECRET: Client secret (client-credential flow)
            GRAPH_ENDPOINT: Microsoft Graph endpoint (default: public cloud)
            RESOURCE_MANAGER_ENDPOINT: ARM endpoint (default: public cloud)
            CONVERGENCE_POLL_INTERVAL: Seconds between convergence attempts (default: 5)
            CONVERGENCE_TIMEOUT: Convergence deadline in seconds (default: 60)
            SECRET_VALIDITY_DAYS: Lifetime of minted secrets (default: 365)
        """

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        return cls(
            tenant_id=os.environ.get("AZURE_TENANT_ID", ""),
            subscription_id=os.environ.get("AZURE_SUBSCRIPTION_ID", ""),
            client_id=os.environ.get("AZURE_CLIENT_ID") or None,
            client_secret=os.environ.get("AZURE_CLIENT_SECRET") or None,
            graph_endpoint=os.environ.get("GRAPH_ENDPOINT", DEFAULT_GRAPH_ENDPOINT),
            resource_manager_endpoint=os.environ.get(
                "RESOURCE_MANAGER_ENDPOINT", DEFAULT_RESOURCE_MANAGER_ENDPOINT
            ),
            convergence_interval_seconds=get_float(
                "CONVERGENCE_POLL_INTERVAL", DEFAULT_CONVERGENCE_INTERVAL_SECONDS
            ),
            convergence_timeout_seconds=get_float(
                "CONVERGENCE_TIMEOUT", DEFAULT_CONVERGENCE_TIMEOUT_SECONDS
            ),
            secret_validity_days=get_int("SECRET_VALIDITY_DAYS", DEFAULT_SECRET_VALIDITY_DAYS),
        )
