"""Pydantic models for directory objects and the install configuration.

These models provide:
1. Type-safe parsing of Graph and ARM payloads
2. Validation at the boundary (fail fast, fail loudly)
3. Clean transformation back to request bodies
"""

from __future__ import annotations

import re
from datetime import datetime
from pathlib import Path
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Azure resource group naming rules
MAX_RESOURCE_GROUP_NAME_LENGTH = 90
VALID_RESOURCE_GROUP_PATTERN = r"^[-\w._()]*[-\w_()]$"

# =============================================================================
# Directory Objects (Microsoft Graph)
# =============================================================================


class PasswordCredential(BaseModel):
    """A time-bounded client secret on an application."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    key_id: str | None = Field(None, alias="keyId")
    display_name: str | None = Field(None, alias="displayName")
    end_date_time: datetime | None = Field(None, alias="endDateTime")
    # Only returned by the call that issued the secret
    secret_text: str | None = Field(None, alias="secretText", repr=False)


class Application(BaseModel):
    """An application registration."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    object_id: str = Field(alias="id")
    app_id: str = Field(alias="appId")
    display_name: str | None = Field(None, alias="displayName")
    password_credentials: list[PasswordCredential] = Field(
        default_factory=list, alias="passwordCredentials"
    )


class ServicePrincipal(BaseModel):
    """The runtime identity derived from an application."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    object_id: str = Field(alias="id")
    app_id: str = Field(alias="appId")
    display_name: str | None = Field(None, alias="displayName")


# =============================================================================
# Authorization Objects (ARM)
# =============================================================================


class RoleDefinition(BaseModel):
    """A read-only role catalog entry."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str
    role_name: str = Field(alias="roleName")

    @classmethod
    def from_sdk(cls, definition: Any) -> RoleDefinition:
        """Build from an azure-mgmt-authorization RoleDefinition."""
        return cls(id=definition.id, role_name=definition.role_name)


# =============================================================================
# Install Configuration
# =============================================================================


class InstallConfig(BaseModel):
    """Install configuration consumed by the minter.

    Example:
        clusterName: cluster-abc
        resourceGroups: [rg-cluster-abc, rg-cluster-abc-network]
        roleName: Contributor
        caBundlePath: /etc/pki/root-ca.pem
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    cluster_name: Annotated[str, Field(min_length=1, max_length=120, alias="clusterName")]
    resource_groups: list[str] = Field(min_length=1, alias="resourceGroups")
    role_name: str = Field("Contributor", alias="roleName")
    regenerate_secret: bool = Field(False, alias="regenerateSecret")
    ca_bundle_path: Path | None = Field(None, alias="caBundlePath")

    @field_validator("resource_groups")
    @classmethod
    def validate_resource_groups(cls, v: list[str]) -> list[str]:
        for name in v:
            if name.startswith("/"):
                # Full scope path, used verbatim
                continue
            if len(name) > MAX_RESOURCE_GROUP_NAME_LENGTH:
                raise ValueError(
                    f"resource group name exceeds {MAX_RESOURCE_GROUP_NAME_LENGTH} characters: {name}"
                )
            if not re.match(VALID_RESOURCE_GROUP_PATTERN, name):
                raise ValueError(f"invalid resource group name: {name}")
        return v
