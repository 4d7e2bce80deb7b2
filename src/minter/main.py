"""Main entry point for the credentials minter.

Runs one provisioning or teardown request, configured from the environment:

    MINTER_ACTION            provision (default) or teardown
    MINTER_APP_NAME          Application display name
    MINTER_RESOURCE_GROUPS   Comma-separated resource groups (provision)
    MINTER_ROLE              Role to bind (default: Contributor)
    MINTER_REGENERATE_SECRET Rotate the secret of an existing application
    MINTER_INSTALL_CONFIG    YAML install config, replaces the three above
    MINTER_ASSETS_DIR        Where to persist the credentials file

SIGTERM and SIGINT cancel the request. Whatever the directory already
committed stays; nothing is rolled back locally.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from datetime import UTC
from pathlib import Path

from .assets import AssetLoadError, CredentialsAsset, load_install_config
from .config import ConfigurationError, MinterConfig
from .errors import CredentialsError, MinterError
from .minter import CredentialsMinter, MintResult

DEFAULT_ROLE_NAME = "Contributor"

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CREDENTIALS = 2


def setup_logging() -> None:
    """Configure structured logging with JSON output for production."""
    import json
    from datetime import datetime

    class JsonFormatter(logging.Formatter):
        """Format logs as JSON for structured logging."""

        RESERVED = frozenset(
            (
                "name",
                "msg",
                "args",
                "created",
                "filename",
                "funcName",
                "levelname",
                "levelno",
                "lineno",
                "module",
                "msecs",
                "pathname",
                "process",
                "processName",
                "relativeCreated",
                "stack_info",
                "exc_info",
                "exc_text",
                "thread",
                "threadName",
                "taskName",
                "message",
            )
        )

        # Never emitted, whatever a caller passes in extra
        SECRET_FIELDS = frozenset(("client_secret", "secret_text", "clientSecret", "secretText"))

        def format(self, record: logging.LogRecord) -> str:
            log_data = {
                "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
                "level": record.levelname,
                "message": record.getMessage(),
                "logger": record.name,
            }

            for key, value in record.__dict__.items():
                if key in self.RESERVED:
                    continue
                log_data[key] = "[REDACTED]" if key in self.SECRET_FIELDS else value

            if record.exc_info:
                log_data["exception"] = self.formatException(record.exc_info)

            return json.dumps(log_data, default=str)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.INFO)

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("msal").setLevel(logging.WARNING)


def parse_resource_groups(value: str) -> list[str]:
    return [rg.strip() for rg in value.split(",") if rg.strip()]


async def provision(
    minter: CredentialsMinter,
    config: MinterConfig,
    name: str,
    resource_groups: list[str],
    role_name: str,
    regenerate_secret: bool = False,
    assets_dir: Path | None = None,
    ca_bundle_path: Path | None = None,
) -> MintResult:
    """Mint credentials and optionally persist them as an asset.

    When an assets directory is given and no credentials file exists yet,
    a fresh secret is requested so the file can be written.
    """
    asset = CredentialsAsset()
    if assets_dir is not None and not asset.load(assets_dir):
        regenerate_secret = True

    result = await minter.mint(name, resource_groups, role_name, regenerate_secret)

    if assets_dir is not None:
        asset.generate(result, config, ca_bundle_path)
        asset.persist(assets_dir)
    return result


async def main() -> int:
    """Run one request.

    Returns:
        Exit code (0 for success, 1 for failure, 2 for credential failure).
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config = MinterConfig.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return EXIT_FAILURE

    action = os.environ.get("MINTER_ACTION", "provision")
    name = os.environ.get("MINTER_APP_NAME", "")
    resource_groups = parse_resource_groups(os.environ.get("MINTER_RESOURCE_GROUPS", ""))
    role_name = os.environ.get("MINTER_ROLE", DEFAULT_ROLE_NAME)
    regenerate_secret = os.environ.get("MINTER_REGENERATE_SECRET", "").lower() in ("true", "1", "yes")
    assets_dir_value = os.environ.get("MINTER_ASSETS_DIR")
    assets_dir = Path(assets_dir_value) if assets_dir_value else None
    ca_bundle_path: Path | None = None

    install_config_path = os.environ.get("MINTER_INSTALL_CONFIG")
    if install_config_path:
        try:
            install_config = load_install_config(Path(install_config_path))
        except AssetLoadError as e:
            logger.error("Install config loading failed", extra={"error": str(e)})
            return EXIT_FAILURE
        name = install_config.cluster_name
        resource_groups = install_config.resource_groups
        role_name = install_config.role_name
        regenerate_secret = regenerate_secret or install_config.regenerate_secret
        ca_bundle_path = install_config.ca_bundle_path

    if action not in ("provision", "teardown"):
        logger.error("Unknown action", extra={"action": action})
        return EXIT_FAILURE
    if not name:
        logger.error("MINTER_APP_NAME is required")
        return EXIT_FAILURE
    if action == "provision" and not resource_groups:
        logger.error("MINTER_RESOURCE_GROUPS is required for provisioning")
        return EXIT_FAILURE

    logger.info(
        "Starting credentials minter",
        extra={
            "action": action,
            "application": name,
            "subscription_id": config.subscription_id,
        },
    )

    try:
        minter = CredentialsMinter.from_config(config)
    except CredentialsError as e:
        logger.critical("Unable to authenticate", extra={"error": str(e)})
        return EXIT_CREDENTIALS

    if action == "teardown":
        request = asyncio.ensure_future(minter.delete_application(name))
    else:
        request = asyncio.ensure_future(
            provision(
                minter,
                config,
                name,
                resource_groups,
                role_name,
                regenerate_secret=regenerate_secret,
                assets_dir=assets_dir,
                ca_bundle_path=ca_bundle_path,
            )
        )

    loop = asyncio.get_event_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        request.cancel()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    try:
        await request
    except asyncio.CancelledError:
        logger.warning("Request cancelled", extra={"action": action, "application": name})
        return EXIT_FAILURE
    except (MinterError, AssetLoadError) as e:
        logger.error(
            "Request failed",
            extra={"action": action, "error": str(e), "error_type": type(e).__name__},
        )
        return EXIT_FAILURE
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return EXIT_FAILURE

    logger.info("Request completed", extra={"action": action, "application": name})
    return EXIT_OK


def run() -> None:
    """Entry point for the minter service."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
