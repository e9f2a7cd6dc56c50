"""Tests for the GraphQL compute provisioner.

Uses httpx.MockTransport for deterministic HTTP simulation.  The handler
routes on the GraphQL operation name and records every request.
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable
from typing import Any

import httpx
import pytest
from provisioner.errors import ProviderRejected, ProviderUnavailable
from provisioner.models.job import ResourceHandle, ResourceKind
from provisioner.models.plan import ComputeSizing
from provisioner.models.providers import DeploymentStatus
from provisioner.providers.compute import RailwayComputeProvisioner

_OPERATION_RE = re.compile(r"(?:mutation|query)\s+(\w+)")

Responder = Callable[[dict[str, Any]], httpx.Response]


def _ok(data: dict[str, Any]) -> httpx.Response:
    return httpx.Response(200, json={"data": data})


def _gql_error(message: str, code: str | None = None) -> httpx.Response:
    error: dict[str, Any] = {"message": message}
    if code:
        error["extensions"] = {"code": code}
    return httpx.Response(200, json={"data": None, "errors": [error]})


class _Api:
    """Scriptable fake of the GraphQL endpoint.

    ``routes`` maps an operation name to either a single responder or a
    list of responders consumed one per call.
    """

    def __init__(self) -> None:
        self.requests: list[tuple[str, dict[str, Any]]] = []
        self.routes: dict[str, Responder | list[Responder]] = {
            "serviceCreate": lambda v: _ok({"serviceCreate": {"id": "svc-1", "name": v["input"]["name"]}}),
            "serviceInstanceLimitsUpdate": lambda v: _ok({"serviceInstanceLimitsUpdate": True}),
            "variableCollectionUpsert": lambda v: _ok({"variableCollectionUpsert": True}),
            "serviceInstanceDeployV2": lambda v: _ok({"serviceInstanceDeployV2": "dep-1"}),
            "serviceDelete": lambda v: _ok({"serviceDelete": True}),
            "project": lambda v: _ok(
                {
                    "project": {
                        "environments": {
                            "edges": [
                                {"node": {"id": "env-staging", "name": "staging"}},
                                {"node": {"id": "env-prod", "name": "production"}},
                            ]
                        }
                    }
                }
            ),
        }

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        operation = _OPERATION_RE.search(body["query"]).group(1)
        self.requests.append((operation, body["variables"]))
        route = self.routes[operation]
        if isinstance(route, list):
            route = route.pop(0)
        return route(body["variables"])

    def operations(self) -> list[str]:
        return [name for name, _ in self.requests]


@pytest.fixture
def api() -> _Api:
    return _Api()


def _provisioner(api: _Api, **kwargs: Any) -> RailwayComputeProvisioner:
    client = httpx.AsyncClient(transport=httpx.MockTransport(api.handler))
    defaults: dict[str, Any] = {
        "api_url": "https://railway.test/graphql/v2",
        "token": "rw-token",
        "project_id": "proj-1",
        "source_repo": "acme/runtime",
        "environment_id": "env-prod",
        "poll_interval": 0.001,
        "http_client": client,
    }
    defaults.update(kwargs)
    return RailwayComputeProvisioner(**defaults)


_HANDLE = ResourceHandle(kind=ResourceKind.COMPUTE, resource_id="svc-1")
_SIZING = ComputeSizing(vcpus=0.5, memory_mb=512)


# ---------------------------------------------------------------------------
# Instance lifecycle
# ---------------------------------------------------------------------------


class TestCreateInstance:
    @pytest.mark.asyncio
    async def test_creates_service_and_applies_limits(self, api):
        handle = await _provisioner(api).create_instance("ws_alice_0123abcd", _SIZING)

        assert handle == _HANDLE
        assert api.operations() == ["serviceCreate", "serviceInstanceLimitsUpdate"]
        create_input = api.requests[0][1]["input"]
        assert create_input == {
            "projectId": "proj-1",
            "name": "ws_alice_0123abcd",
            "source": {"repo": "acme/runtime"},
            "branch": "main",
        }
        limits = api.requests[1][1]["input"]
        assert limits["vCPUs"] == 0.5
        assert limits["memoryGB"] == 0.5
        assert limits["environmentId"] == "env-prod"

    @pytest.mark.asyncio
    async def test_sizing_failure_deletes_the_service(self, api):
        api.routes["serviceInstanceLimitsUpdate"] = lambda v: httpx.Response(503, text="busy")

        with pytest.raises(ProviderUnavailable):
            await _provisioner(api).create_instance("ws_alice_0123abcd", _SIZING)

        assert api.operations() == ["serviceCreate", "serviceInstanceLimitsUpdate", "serviceDelete"]
        assert api.requests[-1][1] == {"id": "svc-1"}

    @pytest.mark.asyncio
    async def test_environment_resolved_from_project(self, api):
        provisioner = _provisioner(api, environment_id=None)

        await provisioner.create_instance("ws_alice_0123abcd", _SIZING)
        await provisioner.deploy(_HANDLE)

        assert api.operations().count("project") == 1
        assert api.requests[-1][1]["environmentId"] == "env-prod"

    @pytest.mark.asyncio
    async def test_missing_production_environment_is_rejected(self, api):
        api.routes["project"] = lambda v: _ok({"project": {"environments": {"edges": []}}})

        with pytest.raises(ProviderRejected, match="production"):
            await _provisioner(api, environment_id=None).deploy(_HANDLE)


class TestConfigureAndDeploy:
    @pytest.mark.asyncio
    async def test_configure_sends_every_variable_in_one_call(self, api):
        env = {"WORKSPACE_ID": "ws_alice_0123abcd", "DATABASE_URL": "postgresql://u:p@h/db"}

        await _provisioner(api).configure(_HANDLE, env)

        assert api.operations() == ["variableCollectionUpsert"]
        assert api.requests[0][1]["input"]["variables"] == env
        assert api.requests[0][1]["input"]["serviceId"] == "svc-1"

    @pytest.mark.asyncio
    async def test_deploy_returns_deployment_id(self, api):
        assert await _provisioner(api).deploy(_HANDLE) == "dep-1"

    @pytest.mark.asyncio
    async def test_bearer_token_sent(self, api):
        seen: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.headers.get("Authorization", ""))
            return api.handler(request)

        provisioner = RailwayComputeProvisioner(
            api_url="https://railway.test/graphql/v2",
            token="rw-token",
            project_id="proj-1",
            source_repo="acme/runtime",
            environment_id="env-prod",
            http_client=httpx.AsyncClient(
                transport=httpx.MockTransport(handler),
                headers={"Authorization": "Bearer rw-token"},
            ),
        )
        await provisioner.deploy(_HANDLE)

        assert seen == ["Bearer rw-token"]


# ---------------------------------------------------------------------------
# Deployment polling
# ---------------------------------------------------------------------------


def _status(value: str) -> Responder:
    return lambda v: _ok({"deployment": {"id": v["id"], "status": value}})


class TestAwaitDeployment:
    @pytest.mark.asyncio
    async def test_polls_until_success(self, api):
        api.routes["deployment"] = [_status("BUILDING"), _status("DEPLOYING"), _status("SUCCESS")]

        result = await _provisioner(api).await_deployment("dep-1", timeout=5)

        assert result.succeeded
        assert result.status is DeploymentStatus.SUCCESS
        assert api.operations().count("deployment") == 3

    @pytest.mark.asyncio
    async def test_returns_failure_status(self, api):
        api.routes["deployment"] = [_status("BUILDING"), _status("CRASHED")]

        result = await _provisioner(api).await_deployment("dep-1", timeout=5)

        assert not result.succeeded
        assert result.status is DeploymentStatus.CRASHED

    @pytest.mark.asyncio
    async def test_tolerates_transient_poll_errors(self, api):
        api.routes["deployment"] = [
            lambda v: httpx.Response(502),
            lambda v: httpx.Response(429),
            _status("SUCCESS"),
        ]

        result = await _provisioner(api, max_poll_errors=2).await_deployment("dep-1", timeout=5)

        assert result.succeeded

    @pytest.mark.asyncio
    async def test_gives_up_after_too_many_poll_errors(self, api):
        api.routes["deployment"] = lambda v: httpx.Response(503)

        with pytest.raises(ProviderUnavailable):
            await _provisioner(api, max_poll_errors=2).await_deployment("dep-1", timeout=5)

        assert api.operations().count("deployment") == 3

    @pytest.mark.asyncio
    async def test_times_out_when_never_terminal(self, api):
        api.routes["deployment"] = _status("BUILDING")

        with pytest.raises(TimeoutError):
            await _provisioner(api, poll_interval=0.01).await_deployment("dep-1", timeout=0.05)


# ---------------------------------------------------------------------------
# Public URL and destroy
# ---------------------------------------------------------------------------


class TestPublicUrl:
    @pytest.mark.asyncio
    async def test_reuses_existing_domain(self, api):
        api.routes["domains"] = lambda v: _ok(
            {"domains": {"serviceDomains": [{"domain": "t1.up.railway.app"}], "customDomains": []}}
        )

        url = await _provisioner(api).public_url(_HANDLE)

        assert url == "https://t1.up.railway.app"
        assert "serviceDomainCreate" not in api.operations()

    @pytest.mark.asyncio
    async def test_allocates_domain_when_none(self, api):
        api.routes["domains"] = lambda v: _ok({"domains": {"serviceDomains": [], "customDomains": []}})
        api.routes["serviceDomainCreate"] = lambda v: _ok({"serviceDomainCreate": {"domain": "t2.up.railway.app"}})

        url = await _provisioner(api).public_url(_HANDLE)

        assert url == "https://t2.up.railway.app"
        assert api.requests[-1][1]["input"] == {"serviceId": "svc-1", "environmentId": "env-prod"}


class TestDestroy:
    @pytest.mark.asyncio
    async def test_deletes_service(self, api):
        await _provisioner(api).destroy(_HANDLE)

        assert api.operations() == ["serviceDelete"]

    @pytest.mark.asyncio
    async def test_missing_service_is_not_an_error(self, api):
        api.routes["serviceDelete"] = lambda v: _gql_error("Service not found", "NOT_FOUND")

        await _provisioner(api).destroy(_HANDLE)

    @pytest.mark.asyncio
    async def test_other_errors_propagate(self, api):
        api.routes["serviceDelete"] = lambda v: httpx.Response(500)

        with pytest.raises(ProviderUnavailable):
            await _provisioner(api).destroy(_HANDLE)


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------


class TestErrorClassification:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [500, 502, 503, 408, 429])
    async def test_transient_http_statuses(self, api, status):
        api.routes["serviceInstanceDeployV2"] = lambda v: httpx.Response(status)

        with pytest.raises(ProviderUnavailable) as excinfo:
            await _provisioner(api).deploy(_HANDLE)

        assert excinfo.value.provider == "compute"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [400, 401, 403])
    async def test_permanent_http_statuses(self, api, status):
        api.routes["serviceInstanceDeployV2"] = lambda v: httpx.Response(status)

        with pytest.raises(ProviderRejected):
            await _provisioner(api).deploy(_HANDLE)

    @pytest.mark.asyncio
    async def test_rate_limit_graphql_error_is_transient(self, api):
        api.routes["serviceCreate"] = lambda v: _gql_error("You have hit the rate limit")

        with pytest.raises(ProviderUnavailable):
            await _provisioner(api).create_instance("ws_alice_0123abcd", _SIZING)

    @pytest.mark.asyncio
    async def test_other_graphql_errors_are_rejections(self, api):
        api.routes["serviceCreate"] = lambda v: _gql_error("Problem processing request")

        with pytest.raises(ProviderRejected):
            await _provisioner(api).create_instance("ws_alice_0123abcd", _SIZING)

    @pytest.mark.asyncio
    async def test_network_error_is_transient(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        provisioner = RailwayComputeProvisioner(
            api_url="https://railway.test/graphql/v2",
            token="rw-token",
            project_id="proj-1",
            source_repo="acme/runtime",
            environment_id="env-prod",
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )

        with pytest.raises(ProviderUnavailable):
            await provisioner.deploy(_HANDLE)

    @pytest.mark.asyncio
    async def test_non_json_body_is_transient(self, api):
        api.routes["serviceInstanceDeployV2"] = lambda v: httpx.Response(200, text="<html>gateway</html>")

        with pytest.raises(ProviderUnavailable):
            await _provisioner(api).deploy(_HANDLE)


def test_from_settings_requires_credentials():
    from provisioner.config import Settings

    with pytest.raises(ValueError, match="RAILWAY_TOKEN"):
        RailwayComputeProvisioner.from_settings(Settings(railway_token=None, railway_project_id=None))
