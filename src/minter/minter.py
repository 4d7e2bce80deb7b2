"""Mint resource-scoped service principals.

A CredentialsMinter materializes, for one logical name:
1. An application registration with a client secret
2. The service principal derived from it
3. One role assignment per requested resource group

Every step is idempotent. Existing objects are reused, duplicates are a
hard error, and the two creations that depend on just-created objects
(service principal, role assignment) are retried until the directory has
caught up.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol, TypeVar

from azure.core.exceptions import AzureError

from .config import MinterConfig
from .convergence import (
    ConvergencePolicy,
    classify_role_assignment_create,
    classify_service_principal_create,
    converge,
)
from .directory import DirectoryClient
from .errors import (
    MinterError,
    RemoteOperationError,
    RoleAssignmentError,
    RoleNotFoundError,
)
from .models import Application, PasswordCredential, RoleDefinition, ServicePrincipal
from .resolver import resolve_or_create, select_unique
from .security import log_security_audit_event, mask_identifier

logger = logging.getLogger(__name__)

T = TypeVar("T")

SECRET_DISPLAY_NAME_PREFIX = "minter"


class NameGenerator(Protocol):
    """Source of unique names for secrets and role assignments."""

    def new_name(self) -> str: ...


class UUIDNameGenerator:
    """Random UUID4 names."""

    def new_name(self) -> str:
        return str(uuid.uuid4())


@dataclass
class MintResult:
    """Outcome of a full mint: application, principal and role bindings."""

    application: Application
    service_principal: ServicePrincipal
    client_secret: str
    role_name: str
    scopes: list[str] = field(default_factory=list)

    @property
    def secret_issued(self) -> bool:
        """False when the existing secret was left unchanged."""
        return bool(self.client_secret)


class CredentialsMinter:
    """Provision and tear down resource-scoped service principals."""

    def __init__(
        self,
        directory: DirectoryClient,
        subscription_id: str,
        policy: ConvergencePolicy | None = None,
        name_generator: NameGenerator | None = None,
        secret_validity: timedelta = timedelta(days=365),
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the minter.

        Args:
            directory: Graph and authorization facades.
            subscription_id: Subscription resource groups are resolved in.
            policy: Convergence polling parameters.
            name_generator: Source of secret and role assignment names.
            secret_validity: Lifetime of newly issued secrets.
            clock: Returns the current time, used for secret expiry.
        """
        self._directory = directory
        self._subscription_id = subscription_id
        self._policy = policy or ConvergencePolicy()
        self._names = name_generator or UUIDNameGenerator()
        self._secret_validity = secret_validity
        self._clock = clock or (lambda: datetime.now(UTC))

    @classmethod
    def from_config(
        cls,
        config: MinterConfig,
        directory: DirectoryClient | None = None,
    ) -> CredentialsMinter:
        """Build a minter, authenticating against both endpoints if needed.

        Raises:
            CredentialsError: If a token cannot be obtained.
        """
        return cls(
            directory=directory or DirectoryClient.from_config(config),
            subscription_id=config.subscription_id,
            policy=config.convergence_policy(),
            secret_validity=timedelta(days=config.secret_validity_days),
        )

    async def _call(self, func: Callable[..., T], *args: Any) -> T:
        """Run a blocking SDK call without blocking the event loop."""
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args))

    async def _remote(self, context: str, func: Callable[..., T], *args: Any) -> T:
        """Run a non-convergent remote call, adding context to failures."""
        try:
            return await self._call(func, *args)
        except AzureError as e:
            logger.error(f"{context}: {e}", extra={"error_type": type(e).__name__})
            raise RemoteOperationError(f"{context}: {e}") from e

    def scope_for(self, resource_group: str) -> str:
        """Expand a resource group name to its ARM scope.

        Values that already are a scope path are returned unchanged.
        """
        if resource_group.startswith("/"):
            return resource_group
        return f"/subscriptions/{self._subscription_id}/resourceGroups/{resource_group}"

    # =========================================================================
    # Applications
    # =========================================================================

    async def _issue_secret(self, application: Application) -> PasswordCredential:
        end_date_time = self._clock() + self._secret_validity
        credential = await self._remote(
            f"unable to add a secret to application {application.object_id}",
            self._directory.graph.add_password,
            application.object_id,
            f"{SECRET_DISPLAY_NAME_PREFIX}-{self._names.new_name()}",
            end_date_time,
        )
        if not credential.secret_text:
            raise RemoteOperationError(
                f"no secret returned for application {application.object_id}"
            )
        return credential

    async def create_or_update_application(
        self,
        name: str,
        regenerate_secret: bool = False,
    ) -> tuple[Application, str]:
        """Create the application if absent, optionally rotating its secret.

        Args:
            name: Application display name, unique from our perspective.
            regenerate_secret: Rotate the secret of an existing application.

        Returns:
            Tuple of (application, secret). The secret is empty when an
            existing application that already holds a secret was reused
            without rotation. An existing application with no secret at all
            gets one issued.

        Raises:
            AmbiguousResourceError: If several applications share the name.
            RemoteOperationError: If a directory call fails.
        """
        graph = self._directory.graph

        async def list_matches() -> list[Application]:
            return await self._remote(
                "unable to list applications", graph.list_applications, name
            )

        async def create() -> Application:
            return await self._remote(
                f"unable to create application {name!r}", graph.create_application, name
            )

        application, created = await resolve_or_create(list_matches, create, "application", name)

        if created:
            issued = await self._issue_secret(application)
            log_security_audit_event(
                "application", target_resource=application.object_id, action="create", result="success"
            )
            return application, issued.secret_text

        if not regenerate_secret:
            if application.password_credentials:
                return application, ""
            # A previous run created the application but never got a secret onto it
            logger.warning(f"Application {name!r} has no secret, issuing one")
            issued = await self._issue_secret(application)
            log_security_audit_event(
                "credential", target_resource=application.object_id, action="issue", result="success"
            )
            return application, issued.secret_text

        logger.info(f"Rotating secret of application {name!r}")
        issued = await self._issue_secret(application)
        for previous in application.password_credentials:
            if not previous.key_id:
                continue
            try:
                await self._call(graph.remove_password, application.object_id, previous.key_id)
            except AzureError as e:
                logger.error(
                    f"Secret rotation of application {name!r} left secret {previous.key_id} in place",
                    extra={"issued_key_id": issued.key_id, "error_type": type(e).__name__},
                )
                log_security_audit_event(
                    "credential", target_resource=application.object_id, action="rotate", result="failure"
                )
                raise RemoteOperationError(
                    f"unable to remove secret {previous.key_id} from application {name!r}; "
                    f"new secret {issued.key_id} was issued and is still valid: {e}"
                ) from e
        log_security_audit_event(
            "credential", target_resource=application.object_id, action="rotate", result="success"
        )
        return application, issued.secret_text

    # =========================================================================
    # Service Principals
    # =========================================================================

    async def create_or_get_service_principal(self, app_id: str) -> ServicePrincipal:
        """Return the service principal of an application, creating it if needed.

        Creation is retried while the application has not yet propagated.

        Raises:
            AmbiguousResourceError: If several principals share the app id.
            ConvergenceTimeoutError: If the application never becomes visible.
            RemoteOperationError: If a directory call fails terminally.
        """
        graph = self._directory.graph

        async def list_matches() -> list[ServicePrincipal]:
            return await self._remote(
                "unable to list service principals", graph.list_service_principals, app_id
            )

        async def create() -> ServicePrincipal:
            try:
                principal = await converge(
                    lambda: self._call(graph.create_service_principal, app_id),
                    classify_service_principal_create,
                    self._policy,
                    f"service principal creation for application {app_id}",
                )
            except AzureError as e:
                raise RemoteOperationError(f"unable to create service principal: {e}") from e
            if principal is None:
                raise RemoteOperationError(
                    f"service principal creation for application {app_id} returned nothing"
                )
            return principal

        principal, created = await resolve_or_create(
            list_matches, create, "service principal", app_id
        )
        if created:
            log_security_audit_event(
                "service_principal", target_resource=principal.object_id, action="create", result="success"
            )
        elif principal.display_name:
            logger.info(f"Found service principal {principal.display_name!r}")
        return principal

    # =========================================================================
    # Role Assignments
    # =========================================================================

    async def _resolve_role_definition(self, role_name: str) -> RoleDefinition:
        definitions = await self._remote(
            f"unable to list role definitions named {role_name!r}",
            self._directory.authorization.list_role_definitions,
            f"/subscriptions/{self._subscription_id}",
            role_name,
        )
        definition = select_unique(definitions, "role definition", role_name)
        if definition is None:
            raise RoleNotFoundError(role_name)
        logger.info(f"Found role {role_name!r} under {definition.id!r}")
        return definition

    async def _assign_at_scope(
        self,
        scope: str,
        role_definition: RoleDefinition,
        principal_id: str,
    ) -> None:
        assignment_name = self._names.new_name()
        create = functools.partial(
            self._call,
            self._directory.authorization.create_role_assignment,
            scope,
            assignment_name,
            role_definition.id,
            principal_id,
        )
        await converge(
            create,
            classify_role_assignment_create,
            self._policy,
            f"role assignment {role_definition.role_name!r} at {scope}",
        )

    async def assign_scoped_role(
        self,
        scopes: Sequence[str],
        principal_id: str,
        principal_name: str,
        role_name: str,
    ) -> None:
        """Bind a role to a principal at every requested resource group.

        Every scope is attempted even if an earlier one failed. Scopes that
        were bound stay bound; nothing is rolled back.

        Raises:
            RoleNotFoundError: If no role definition has the name.
            AmbiguousResourceError: If several role definitions have the name.
            RoleAssignmentError: If any scope failed, naming each of them.
        """
        role_definition = await self._resolve_role_definition(role_name)
        principal = f"{principal_name!r} ({principal_id})"

        failures: dict[str, Exception] = {}
        for resource_group in scopes:
            scope = self.scope_for(resource_group)
            try:
                await self._assign_at_scope(scope, role_definition, principal_id)
            except MinterError as e:
                failures[resource_group] = e
            except Exception as e:
                error = RemoteOperationError(f"unable to assign role at {scope}: {e}")
                error.__cause__ = e
                failures[resource_group] = error
            else:
                logger.info(
                    f"Assigned {role_name!r} role scoped to {resource_group!r} "
                    f"to principal {principal}"
                )
                log_security_audit_event(
                    "role_assignment", target_resource=scope, action="assign", result="success"
                )
                continue

            logger.error(
                f"Failed to assign {role_name!r} role scoped to {resource_group!r}",
                extra={"scope": scope, "error": str(failures[resource_group])},
            )
            log_security_audit_event(
                "role_assignment", target_resource=scope, action="assign", result="failure"
            )

        if failures:
            first = next(iter(failures.values()))
            raise RoleAssignmentError(role_name, principal, failures) from first

    # =========================================================================
    # Teardown
    # =========================================================================

    async def delete_application(self, name: str) -> None:
        """Delete the application with the given display name.

        Absent applications are a no-op. Deletion failures are not retried.

        Raises:
            AmbiguousResourceError: If several applications share the name.
            RemoteOperationError: If the lookup or the deletion fails.
        """
        graph = self._directory.graph
        applications = await self._remote(
            "unable to list applications", graph.list_applications, name
        )
        application = select_unique(applications, "application", name)
        if application is None:
            logger.info(f"No application {name!r} found, doing nothing")
            log_security_audit_event("application", target_resource=name, action="delete", result="noop")
            return

        logger.info(f"Deleting application {name!r}")
        await self._remote(
            f"unable to delete application {application.display_name or name} "
            f"({application.object_id})",
            graph.delete_application,
            application.object_id,
        )
        log_security_audit_event(
            "application", target_resource=application.object_id, action="delete", result="success"
        )

    # =========================================================================
    # Full flow
    # =========================================================================

    async def mint(
        self,
        name: str,
        scopes: Sequence[str],
        role_name: str,
        regenerate_secret: bool = False,
    ) -> MintResult:
        """Materialize application, service principal and role bindings."""
        application, secret = await self.create_or_update_application(name, regenerate_secret)
        principal = await self.create_or_get_service_principal(application.app_id)
        await self.assign_scoped_role(
            scopes,
            principal.object_id,
            principal.display_name or name,
            role_name,
        )

        logger.info(
            "Minted credentials",
            extra={
                "application": name,
                "client_id": mask_identifier(application.app_id),
                "secret_issued": bool(secret),
                "scopes": list(scopes),
            },
        )
        return MintResult(
            application=application,
            service_principal=principal,
            client_secret=secret,
            role_name=role_name,
            scopes=list(scopes),
        )
