"""Thin typed access to the directory and authorization services.

Applications and service principals live in Microsoft Graph, which has no
management SDK in our stack; it is called through an azure-core pipeline
with bearer-token authentication. Role definitions and assignments go
through azure-mgmt-authorization.

All calls are blocking. Errors surface as azure.core HttpResponseError with
the service error code parsed into ``error.code``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from azure.core import PipelineClient
from azure.core.credentials import TokenCredential
from azure.core.exceptions import AzureError
from azure.core.pipeline.policies import (
    BearerTokenCredentialPolicy,
    HeadersPolicy,
    HttpLoggingPolicy,
    RetryPolicy,
    UserAgentPolicy,
)
from azure.core.rest import HttpRequest
from azure.mgmt.authorization import AuthorizationManagementClient
from azure.mgmt.authorization.models import RoleAssignmentCreateParameters

from .config import MinterConfig
from .errors import CredentialsError
from .models import Application, PasswordCredential, RoleDefinition, ServicePrincipal
from .security import get_minter_credential

logger = logging.getLogger(__name__)

GRAPH_API_VERSION = "v1.0"
USER_AGENT = "azure-credentials-minter"

# Hard stop on runaway paging
MAX_LIST_PAGES = 50


def odata_quote(value: str) -> str:
    """Quote a string literal for an OData $filter expression."""
    return "'" + value.replace("'", "''") + "'"


def verify_credential(credential: TokenCredential, scope: str, audience: str) -> None:
    """Obtain a token eagerly so authentication problems fail at construction.

    Raises:
        CredentialsError: If no token can be obtained for the scope.
    """
    try:
        credential.get_token(scope)
    except AzureError as e:
        logger.error(
            f"Unable to obtain a token for {audience}",
            extra={"scope": scope, "error_type": type(e).__name__},
        )
        raise CredentialsError(f"unable to obtain a token for {audience}: {e}") from e


class GraphClient:
    """Applications and service principals in Microsoft Graph."""

    def __init__(
        self,
        credential: TokenCredential,
        endpoint: str,
        scope: str,
        pipeline_client: PipelineClient | None = None,
    ) -> None:
        base_url = f"{endpoint.rstrip('/')}/{GRAPH_API_VERSION}"
        self._client = pipeline_client or PipelineClient(
            base_url=base_url,
            policies=[
                HeadersPolicy(),
                UserAgentPolicy(USER_AGENT),
                RetryPolicy(),
                BearerTokenCredentialPolicy(credential, scope),
                HttpLoggingPolicy(),
            ],
        )

    def _send(self, method: str, url: str, **kwargs: Any) -> Any:
        request = HttpRequest(method, url, **kwargs)
        response = self._client.send_request(request)
        response.raise_for_status()
        if response.status_code == 204:
            return None
        return response.json()

    def _list(self, path: str, odata_filter: str) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        page = self._send("GET", self._client.format_url(path), params={"$filter": odata_filter})
        for _ in range(MAX_LIST_PAGES):
            items.extend(page.get("value", []))
            next_link = page.get("@odata.nextLink")
            if not next_link:
                return items
            page = self._send("GET", next_link)
        raise RuntimeError(f"listing {path} exceeded {MAX_LIST_PAGES} pages")

    def list_applications(self, display_name: str) -> list[Application]:
        payload = self._list("/applications", f"displayName eq {odata_quote(display_name)}")
        return [Application.model_validate(item) for item in payload]

    def create_application(self, display_name: str) -> Application:
        body = {"displayName": display_name, "signInAudience": "AzureADMyOrg"}
        return Application.model_validate(
            self._send("POST", self._client.format_url("/applications"), json=body)
        )

    def add_password(
        self,
        object_id: str,
        display_name: str,
        end_date_time: datetime,
    ) -> PasswordCredential:
        """Issue a new client secret. The secret text is only returned here."""
        body = {
            "passwordCredential": {
                "displayName": display_name,
                "endDateTime": end_date_time.isoformat(),
            }
        }
        url = self._client.format_url(f"/applications/{object_id}/addPassword")
        return PasswordCredential.model_validate(self._send("POST", url, json=body))

    def remove_password(self, object_id: str, key_id: str) -> None:
        url = self._client.format_url(f"/applications/{object_id}/removePassword")
        self._send("POST", url, json={"keyId": key_id})

    def delete_application(self, object_id: str) -> None:
        self._send("DELETE", self._client.format_url(f"/applications/{object_id}"))

    def list_service_principals(self, app_id: str) -> list[ServicePrincipal]:
        payload = self._list("/servicePrincipals", f"appId eq {odata_quote(app_id)}")
        return [ServicePrincipal.model_validate(item) for item in payload]

    def create_service_principal(self, app_id: str) -> ServicePrincipal:
        body = {"appId": app_id, "accountEnabled": True}
        return ServicePrincipal.model_validate(
            self._send("POST", self._client.format_url("/servicePrincipals"), json=body)
        )


class AuthorizationClient:
    """Role definitions and role assignments in Azure Resource Manager."""

    def __init__(
        self,
        credential: TokenCredential,
        subscription_id: str,
        endpoint: str,
        scope: str,
        management_client: AuthorizationManagementClient | None = None,
    ) -> None:
        self._client = management_client or AuthorizationManagementClient(
            credential=credential,
            subscription_id=subscription_id,
            base_url=endpoint,
            credential_scopes=[scope],
        )

    def list_role_definitions(self, scope: str, role_name: str) -> list[RoleDefinition]:
        definitions = self._client.role_definitions.list(
            scope=scope,
            filter=f"roleName eq {odata_quote(role_name)}",
        )
        return [RoleDefinition.from_sdk(d) for d in definitions]

    def create_role_assignment(
        self,
        scope: str,
        assignment_name: str,
        role_definition_id: str,
        principal_id: str,
    ) -> None:
        self._client.role_assignments.create(
            scope=scope,
            role_assignment_name=assignment_name,
            parameters=RoleAssignmentCreateParameters(
                role_definition_id=role_definition_id,
                principal_id=principal_id,
                principal_type="ServicePrincipal",
            ),
        )


@dataclass
class DirectoryClient:
    """Bundle of the Graph and authorization facades."""

    graph: GraphClient
    authorization: AuthorizationClient

    @classmethod
    def from_config(
        cls,
        config: MinterConfig,
        credential: TokenCredential | None = None,
    ) -> DirectoryClient:
        """Authenticate against both endpoints and build the facades.

        Raises:
            CredentialsError: If a token cannot be obtained for either endpoint.
        """
        credential = credential or get_minter_credential(config)

        verify_credential(credential, config.graph_scope, "Microsoft Graph")
        verify_credential(credential, config.resource_manager_scope, "Azure Resource Manager")

        return cls(
            graph=GraphClient(credential, config.graph_endpoint, config.graph_scope),
            authorization=AuthorizationClient(
                credential,
                config.subscription_id,
                config.resource_manager_endpoint,
                config.resource_manager_scope,
            ),
        )
