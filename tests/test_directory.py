"""Tests for the Graph and authorization facades."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any
from unittest.mock import MagicMock

import pytest
from azure.core.exceptions import HttpResponseError
from directory_mock import SUBSCRIPTION_ID, TENANT_ID, create_mock_credential, make_http_error

from minter.config import MinterConfig
from minter.directory import (
    AuthorizationClient,
    DirectoryClient,
    GraphClient,
    odata_quote,
    verify_credential,
)
from minter.errors import CredentialsError

GRAPH_BASE = "https://graph.microsoft.com/v1.0"


def make_response(payload: Any = None, status_code: int = 200, error: Exception | None = None) -> MagicMock:
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = payload
    if error is not None:
        response.raise_for_status.side_effect = error
    return response


@pytest.fixture
def pipeline() -> MagicMock:
    pipeline = MagicMock()
    pipeline.format_url.side_effect = lambda path: GRAPH_BASE + path
    return pipeline


@pytest.fixture
def graph(pipeline: MagicMock) -> GraphClient:
    return GraphClient(
        create_mock_credential(),
        "https://graph.microsoft.com",
        "https://graph.microsoft.com/.default",
        pipeline_client=pipeline,
    )


def sent_requests(pipeline: MagicMock) -> list[Any]:
    return [c.args[0] for c in pipeline.send_request.call_args_list]


class TestODataQuote:
    """Tests for OData literal quoting."""

    def test_plain_value(self) -> None:
        assert odata_quote("cluster-abc") == "'cluster-abc'"

    def test_single_quote_escaped(self) -> None:
        """Test embedded quotes cannot break out of the literal."""
        assert odata_quote("o'brien") == "'o''brien'"


class TestGraphClient:
    """Tests for GraphClient request construction and parsing."""

    def test_list_applications_filters_by_display_name(
        self, graph: GraphClient, pipeline: MagicMock
    ) -> None:
        pipeline.send_request.return_value = make_response(
            {"value": [{"id": "obj-1", "appId": "app-1", "displayName": "cluster-abc"}]}
        )

        applications = graph.list_applications("cluster-abc")

        assert [a.object_id for a in applications] == ["obj-1"]
        request = sent_requests(pipeline)[0]
        assert request.method == "GET"
        assert request.url.startswith(f"{GRAPH_BASE}/applications")
        assert "displayName" in request.url

    def test_list_follows_next_link(self, graph: GraphClient, pipeline: MagicMock) -> None:
        """Test paged results are concatenated."""
        next_link = f"{GRAPH_BASE}/applications?$skiptoken=abc"
        pipeline.send_request.side_effect = [
            make_response(
                {
                    "value": [{"id": "obj-1", "appId": "app-1"}],
                    "@odata.nextLink": next_link,
                }
            ),
            make_response({"value": [{"id": "obj-2", "appId": "app-2"}]}),
        ]

        applications = graph.list_applications("cluster-abc")

        assert [a.object_id for a in applications] == ["obj-1", "obj-2"]
        assert sent_requests(pipeline)[1].url == next_link

    def test_create_application_body(self, graph: GraphClient, pipeline: MagicMock) -> None:
        pipeline.send_request.return_value = make_response(
            {"id": "obj-1", "appId": "app-1", "displayName": "cluster-abc"}, status_code=201
        )

        application = graph.create_application("cluster-abc")

        assert application.app_id == "app-1"
        request = sent_requests(pipeline)[0]
        assert request.method == "POST"
        assert request.url == f"{GRAPH_BASE}/applications"
        assert json.loads(request.content) == {
            "displayName": "cluster-abc",
            "signInAudience": "AzureADMyOrg",
        }

    def test_add_password_returns_secret(self, graph: GraphClient, pipeline: MagicMock) -> None:
        pipeline.send_request.return_value = make_response(
            {
                "keyId": "key-1",
                "displayName": "minter-1",
                "endDateTime": "2027-01-01T00:00:00Z",
                "secretText": "s3cr3t",
            }
        )

        credential = graph.add_password(
            "obj-1", "minter-1", datetime(2027, 1, 1, tzinfo=UTC)
        )

        assert credential.secret_text == "s3cr3t"
        assert credential.key_id == "key-1"
        assert sent_requests(pipeline)[0].url == f"{GRAPH_BASE}/applications/obj-1/addPassword"

    def test_delete_application_no_content(self, graph: GraphClient, pipeline: MagicMock) -> None:
        pipeline.send_request.return_value = make_response(status_code=204)

        assert graph.delete_application("obj-1") is None

        request = sent_requests(pipeline)[0]
        assert request.method == "DELETE"
        assert request.url == f"{GRAPH_BASE}/applications/obj-1"

    def test_create_service_principal_body(self, graph: GraphClient, pipeline: MagicMock) -> None:
        pipeline.send_request.return_value = make_response(
            {"id": "sp-1", "appId": "app-1", "displayName": "cluster-abc"}, status_code=201
        )

        principal = graph.create_service_principal("app-1")

        assert principal.object_id == "sp-1"
        assert json.loads(sent_requests(pipeline)[0].content) == {
            "appId": "app-1",
            "accountEnabled": True,
        }

    def test_error_status_raises(self, graph: GraphClient, pipeline: MagicMock) -> None:
        """Test HTTP errors propagate as HttpResponseError."""
        error = make_http_error("Authorization_RequestDenied", "Insufficient privileges", 403)
        pipeline.send_request.return_value = make_response(status_code=403, error=error)

        with pytest.raises(HttpResponseError) as exc_info:
            graph.list_service_principals("app-1")

        assert exc_info.value is error


class TestAuthorizationClient:
    """Tests for AuthorizationClient."""

    @pytest.fixture
    def management(self) -> MagicMock:
        return MagicMock()

    @pytest.fixture
    def authorization(self, management: MagicMock) -> AuthorizationClient:
        return AuthorizationClient(
            create_mock_credential(),
            SUBSCRIPTION_ID,
            "https://management.azure.com",
            "https://management.azure.com/.default",
            management_client=management,
        )

    def test_list_role_definitions(
        self, authorization: AuthorizationClient, management: MagicMock
    ) -> None:
        sdk_definition = MagicMock()
        sdk_definition.id = "/providers/Microsoft.Authorization/roleDefinitions/b24988ac"
        sdk_definition.role_name = "Contributor"
        management.role_definitions.list.return_value = iter([sdk_definition])

        definitions = authorization.list_role_definitions(f"/subscriptions/{SUBSCRIPTION_ID}", "Contributor")

        assert definitions[0].role_name == "Contributor"
        management.role_definitions.list.assert_called_once_with(
            scope=f"/subscriptions/{SUBSCRIPTION_ID}",
            filter="roleName eq 'Contributor'",
        )

    def test_create_role_assignment(
        self, authorization: AuthorizationClient, management: MagicMock
    ) -> None:
        authorization.create_role_assignment("/scope", "name-1", "role-def-1", "principal-1")

        kwargs = management.role_assignments.create.call_args.kwargs
        assert kwargs["scope"] == "/scope"
        assert kwargs["role_assignment_name"] == "name-1"
        assert kwargs["parameters"].role_definition_id == "role-def-1"
        assert kwargs["parameters"].principal_id == "principal-1"
        assert kwargs["parameters"].principal_type == "ServicePrincipal"


class TestCredentialVerification:
    """Tests for eager token acquisition."""

    def test_verify_success(self) -> None:
        credential = create_mock_credential()
        verify_credential(credential, "https://graph.microsoft.com/.default", "Microsoft Graph")
        assert credential.requested_scopes == ["https://graph.microsoft.com/.default"]

    def test_verify_failure_raises_credentials_error(self) -> None:
        credential = create_mock_credential()
        credential.set_failure(message="AADSTS7000215: Invalid client secret")

        with pytest.raises(CredentialsError) as exc_info:
            verify_credential(credential, "https://graph.microsoft.com/.default", "Microsoft Graph")

        assert "Microsoft Graph" in str(exc_info.value)

    def test_from_config_checks_both_endpoints(self) -> None:
        """Test tokens are requested for Graph and ARM separately."""
        credential = create_mock_credential()
        config = MinterConfig(tenant_id=TENANT_ID, subscription_id=SUBSCRIPTION_ID)

        directory = DirectoryClient.from_config(config, credential=credential)

        assert isinstance(directory.graph, GraphClient)
        assert isinstance(directory.authorization, AuthorizationClient)
        assert credential.requested_scopes == [
            "https://graph.microsoft.com/.default",
            "https://management.azure.com/.default",
        ]

    def test_from_config_fails_on_arm_token(self) -> None:
        """Test a resource manager token failure is fatal at construction."""
        credential = create_mock_credential()
        credential.set_failure(scopes={"https://management.azure.com/.default"})
        config = MinterConfig(tenant_id=TENANT_ID, subscription_id=SUBSCRIPTION_ID)

        with pytest.raises(CredentialsError) as exc_info:
            DirectoryClient.from_config(config, credential=credential)

        assert "Azure Resource Manager" in str(exc_info.value)
