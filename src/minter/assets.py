"""Install configuration input and minted-credentials output.

The install configuration is a YAML file validated with pydantic. The
minted credentials are persisted as a single named JSON file. A missing
credentials file means "not generated yet" and is not an error; any other
read or parse failure is fatal.

SECURITY: All file reads enforce size limits. The credentials file holds a
client secret and is written with owner-only permissions.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .config import MinterConfig
from .minter import MintResult
from .models import InstallConfig

logger = logging.getLogger(__name__)

MAX_INSTALL_CONFIG_SIZE_BYTES = 1024 * 1024  # 1MB
MAX_CA_BUNDLE_SIZE_BYTES = 256 * 1024
CREDENTIALS_FILENAME = "azure-credentials.json"
CREDENTIALS_FILE_MODE = 0o600


class AssetLoadError(Exception):
    """Raised when an asset exists but cannot be read or parsed."""

    pass


def _read_bounded(path: Path, limit: int) -> bytes:
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise AssetLoadError(f"Failed to stat {path}: {e}") from e

    if file_size > limit:
        raise AssetLoadError(f"{path} exceeds maximum size of {limit} bytes")

    try:
        return path.read_bytes()
    except OSError as e:
        raise AssetLoadError(f"Failed to read {path}: {e}") from e


def load_install_config(path: Path) -> InstallConfig:
    """Load and validate the install configuration.

    Raises:
        AssetLoadError: If the file is missing, too large, or invalid.
    """
    if not path.exists():
        raise AssetLoadError(f"Install config not found: {path}")

    content = _read_bounded(path, MAX_INSTALL_CONFIG_SIZE_BYTES)

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise AssetLoadError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(raw_data, dict):
        raise AssetLoadError(f"Install config must contain a YAML mapping: {path}")

    try:
        install_config = InstallConfig.model_validate(raw_data)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            errors.append(f"  - {loc}: {error['msg']}")
        error_list = "\n".join(errors)
        raise AssetLoadError(f"Validation failed for {path}:\n{error_list}") from e

    logger.info("Loaded install config for cluster '%s' from %s", install_config.cluster_name, path)
    return install_config


class AzureCredentials(BaseModel):
    """Contents of the credentials file."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    tenant_id: str = Field(alias="tenantId")
    subscription_id: str = Field(alias="subscriptionId")
    client_id: str = Field(alias="clientId")
    client_secret: str = Field(alias="clientSecret", repr=False)
    principal_id: str = Field(alias="principalId")
    role_name: str = Field(alias="roleName")
    scopes: list[str] = Field(default_factory=list)
    ca_bundle: str | None = Field(None, alias="caBundle")


class CredentialsAsset:
    """The minted credentials as a persisted file."""

    def __init__(self) -> None:
        self.credentials: AzureCredentials | None = None
        self.data: bytes | None = None

    @property
    def filename(self) -> str:
        return CREDENTIALS_FILENAME

    def load(self, directory: Path) -> bool:
        """Load the credentials file from disk.

        Returns:
            True if loaded, False if the file has not been generated yet.

        Raises:
            AssetLoadError: If the file exists but cannot be read or parsed.
        """
        path = directory / CREDENTIALS_FILENAME
        try:
            data = path.read_bytes()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise AssetLoadError(f"Failed to read {path}: {e}") from e

        try:
            credentials = AzureCredentials.model_validate_json(data)
        except ValidationError as e:
            raise AssetLoadError(f"Failed to parse {path}: {e}") from e

        self.credentials, self.data = credentials, data
        return True

    def generate(
        self,
        result: MintResult,
        config: MinterConfig,
        ca_bundle_path: Path | None = None,
    ) -> None:
        """Build the credentials blob from a mint result.

        An empty secret means the existing secret was kept. In that case
        the secret from the previously loaded file is carried over, if it
        belongs to the same application.

        Raises:
            AssetLoadError: If no secret is available or the CA bundle cannot be read.
        """
        secret = result.client_secret
        if not secret and self.credentials and self.credentials.client_id == result.application.app_id:
            secret = self.credentials.client_secret
        if not secret:
            raise AssetLoadError(
                f"No client secret available for application {result.application.app_id}; "
                "rerun with secret regeneration"
            )

        ca_bundle = None
        if ca_bundle_path is not None:
            ca_bundle = _read_bounded(ca_bundle_path, MAX_CA_BUNDLE_SIZE_BYTES).decode("utf-8")

        self.credentials = AzureCredentials(
            tenant_id=config.tenant_id,
            subscription_id=config.subscription_id,
            client_id=result.application.app_id,
            client_secret=secret,
            principal_id=result.service_principal.object_id,
            role_name=result.role_name,
            scopes=result.scopes,
            ca_bundle=ca_bundle,
        )
        self.data = self.credentials.model_dump_json(by_alias=True, indent=2).encode("utf-8")

    def persist(self, directory: Path) -> Path:
        """Write the generated blob with owner-only permissions."""
        if self.data is None:
            raise ValueError("credentials asset has not been generated")

        directory.mkdir(parents=True, exist_ok=True)
        path = directory / CREDENTIALS_FILENAME
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, CREDENTIALS_FILE_MODE)
        with os.fdopen(fd, "wb") as f:
            f.write(self.data)
        os.chmod(path, CREDENTIALS_FILE_MODE)

        logger.info("Persisted credentials asset to %s", path)
        return path
