"""Credential construction and security audit logging.

The minter authenticates with the client-credential flow when a client
secret is configured, and falls back to managed identity otherwise.
Minted secrets are never logged; client ids are truncated.
"""

from __future__ import annotations

import logging

from azure.core.credentials import TokenCredential
from azure.identity import ClientSecretCredential, ManagedIdentityCredential

from .config import MinterConfig

logger = logging.getLogger(__name__)


def mask_identifier(value: str | None) -> str | None:
    """Truncate an identifier for log output."""
    if value is None:
        return None
    return value[:8] + "..." if len(value) > 8 else value


def get_minter_credential(config: MinterConfig) -> TokenCredential:
    """Build the credential the minter authenticates with.

    Args:
        config: Validated minter configuration.

    Returns:
        ClientSecretCredential when a client secret is configured,
        ManagedIdentityCredential otherwise.
    """
    if config.client_secret:
        logger.info(
            "Using client secret credential",
            extra={
                "client_id": mask_identifier(config.client_id),
                "tenant_id": config.tenant_id,
            },
        )
        return ClientSecretCredential(
            tenant_id=config.tenant_id,
            client_id=config.client_id,
            client_secret=config.client_secret,
        )

    if config.client_id:
        logger.info(
            "Using user-assigned managed identity",
            extra={"client_id": mask_identifier(config.client_id)},
        )
        return ManagedIdentityCredential(client_id=config.client_id)

    logger.info("Using system-assigned managed identity")
    return ManagedIdentityCredential()


def log_security_audit_event(
    event_type: str,
    target_resource: str | None = None,
    action: str | None = None,
    result: str | None = None,
) -> None:
    """Log a security-relevant audit event.

    All security events are logged with structured data for SIEM ingestion.

    Args:
        event_type: Type of security event (application, credential, role_assignment).
        target_resource: Directory object or scope being changed.
        action: Action being performed.
        result: Result of the action (success, failure, noop).
    """
    logger.info(
        f"Security audit: {event_type}",
        extra={
            "security_audit": True,
            "event_type": event_type,
            "target_resource": target_resource,
            "action": action,
            "result": result,
        },
    )
