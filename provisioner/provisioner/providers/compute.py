"""Compute provisioner backed by a GraphQL deployment service (Railway).

Each tenant gets its own service inside a shared project.  The service is
built from the runtime repository, configured with a single variable
upsert, deployed, and exposed on a generated public domain.

Error mapping
-------------
* Network errors, HTTP 5xx, 408/423/429, and GraphQL rate-limit errors raise
  :class:`~provisioner.errors.ProviderUnavailable` (retryable).
* Other HTTP 4xx and GraphQL errors raise
  :class:`~provisioner.errors.ProviderRejected`.
* "Not found" on delete is treated as already destroyed.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol, Self

import httpx

from provisioner.config import Settings
from provisioner.errors import ProviderRejected, ProviderUnavailable
from provisioner.models.job import ResourceHandle, ResourceKind
from provisioner.models.plan import ComputeSizing
from provisioner.models.providers import (
    CreateServiceRequest,
    CreateServiceResponse,
    DeleteServiceRequest,
    DeploymentResult,
    DeploymentStatusResponse,
    PublicDomainResponse,
    TriggerDeployRequest,
    TriggerDeployResponse,
    UpdateServiceInstanceRequest,
    UpsertEnvVarsRequest,
)
from provisioner.providers._http import ResourceNotFound, raise_for_response, unavailable_from

logger = logging.getLogger(__name__)

_PROVIDER = "compute"

_PRODUCTION_ENVIRONMENT = "production"

# ---------------------------------------------------------------------------
# GraphQL documents
# ---------------------------------------------------------------------------

_CREATE_SERVICE = """
mutation serviceCreate($input: ServiceCreateInput!) {
  serviceCreate(input: $input) { id name }
}
"""

_UPDATE_LIMITS = """
mutation serviceInstanceLimitsUpdate($input: ServiceInstanceLimitsUpdateInput!) {
  serviceInstanceLimitsUpdate(input: $input)
}
"""

_UPSERT_VARIABLES = """
mutation variableCollectionUpsert($input: VariableCollectionUpsertInput!) {
  variableCollectionUpsert(input: $input)
}
"""

_DEPLOY = """
mutation serviceInstanceDeployV2($serviceId: String!, $environmentId: String!) {
  serviceInstanceDeployV2(serviceId: $serviceId, environmentId: $environmentId)
}
"""

_DEPLOYMENT_STATUS = """
query deployment($id: String!) {
  deployment(id: $id) { id status }
}
"""

_SERVICE_DOMAINS = """
query domains($projectId: String!, $environmentId: String!, $serviceId: String!) {
  domains(projectId: $projectId, environmentId: $environmentId, serviceId: $serviceId) {
    serviceDomains { domain }
    customDomains { domain }
  }
}
"""

_CREATE_DOMAIN = """
mutation serviceDomainCreate($input: ServiceDomainCreateInput!) {
  serviceDomainCreate(input: $input) { domain }
}
"""

_DELETE_SERVICE = """
mutation serviceDelete($id: String!) {
  serviceDelete(id: $id)
}
"""

_PROJECT_ENVIRONMENTS = """
query project($id: String!) {
  project(id: $id) { environments { edges { node { id name } } } }
}
"""


class ComputeProvisioner(Protocol):
    """Interface the orchestrator uses for compute instances."""

    async def create_instance(self, tenant_id: str, sizing: ComputeSizing) -> ResourceHandle: ...

    async def resize(self, handle: ResourceHandle, sizing: ComputeSizing) -> None: ...

    async def configure(self, handle: ResourceHandle, env_vars: dict[str, str]) -> None: ...

    async def deploy(self, handle: ResourceHandle) -> str: ...

    async def await_deployment(self, deployment_id: str, timeout: float) -> DeploymentResult: ...

    async def public_url(self, handle: ResourceHandle) -> str: ...

    async def destroy(self, handle: ResourceHandle) -> None: ...


def _is_rate_limited(errors: list[dict[str, Any]]) -> bool:
    for error in errors:
        code = str((error.get("extensions") or {}).get("code", "")).upper()
        message = str(error.get("message", "")).lower()
        if code in {"RATE_LIMITED", "TOO_MANY_REQUESTS"} or "rate limit" in message:
            return True
    return False


def _is_not_found(errors: list[dict[str, Any]]) -> bool:
    for error in errors:
        code = str((error.get("extensions") or {}).get("code", "")).upper()
        message = str(error.get("message", "")).lower()
        if code == "NOT_FOUND" or "not found" in message:
            return True
    return False


class RailwayComputeProvisioner:
    """Compute provisioner for a Railway-style GraphQL API.

    Parameters
    ----------
    api_url:
        GraphQL endpoint.
    token:
        API token sent as a bearer credential.
    project_id:
        Project that hosts every tenant service.
    source_repo / source_branch:
        Repository the tenant runtime is built from.
    environment_id:
        Target environment.  Resolved from the project's ``production``
        environment on first use when not given.
    poll_interval:
        Seconds between deployment status polls.
    max_poll_errors:
        Consecutive transient poll failures tolerated before giving up.
    timeout:
        Per-request timeout in seconds.
    http_client:
        Optional pre-built client (tests inject one with a mock transport).
    """

    def __init__(
        self,
        *,
        api_url: str,
        token: str,
        project_id: str,
        source_repo: str,
        source_branch: str = "main",
        environment_id: str | None = None,
        poll_interval: float = 10.0,
        max_poll_errors: int = 5,
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_url = api_url
        self._project_id = project_id
        self._source_repo = source_repo
        self._source_branch = source_branch
        self._environment_id = environment_id
        self._poll_interval = poll_interval
        self._max_poll_errors = max_poll_errors
        self._client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
        )
        self._owns_client = http_client is None

    @classmethod
    def from_settings(cls, settings: Settings, http_client: httpx.AsyncClient | None = None) -> Self:
        if settings.railway_token is None or settings.railway_project_id is None:
            raise ValueError("PROVISIONER_RAILWAY_TOKEN and PROVISIONER_RAILWAY_PROJECT_ID must be set")
        return cls(
            api_url=settings.railway_api_url,
            token=settings.railway_token.get_secret_value(),
            project_id=settings.railway_project_id,
            source_repo=settings.source_repo,
            source_branch=settings.source_branch,
            environment_id=settings.railway_environment_id,
            poll_interval=settings.deployment_poll_interval,
            max_poll_errors=settings.deployment_max_poll_errors,
            timeout=settings.http_timeout,
            http_client=http_client,
        )

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # -- Public operations ---------------------------------------------------

    async def create_instance(self, tenant_id: str, sizing: ComputeSizing) -> ResourceHandle:
        """Create a service for *tenant_id* and apply the plan's resource limits.

        If applying the limits fails the new service is deleted before the
        error propagates, so a failed call never leaks an instance.
        """
        request = CreateServiceRequest(
            project_id=self._project_id,
            name=tenant_id,
            source_repo=self._source_repo,
            source_branch=self._source_branch,
        )
        data = await self._execute(_CREATE_SERVICE, request.to_variables(), operation="createService")
        created = CreateServiceResponse.model_validate(data["serviceCreate"])
        handle = ResourceHandle(kind=ResourceKind.COMPUTE, resource_id=created.service_id)
        logger.info("Created compute service %s for %s", created.service_id, tenant_id)

        try:
            await self.resize(handle, sizing)
        except (ProviderUnavailable, ProviderRejected):
            logger.warning("Sizing failed for service %s; deleting it", created.service_id)
            try:
                await self.destroy(handle)
            except (ProviderUnavailable, ProviderRejected) as cleanup_exc:
                logger.error("Could not delete unsized service %s: %r", created.service_id, cleanup_exc)
            raise
        return handle

    async def resize(self, handle: ResourceHandle, sizing: ComputeSizing) -> None:
        request = UpdateServiceInstanceRequest(
            service_id=handle.resource_id,
            environment_id=await self._resolve_environment_id(),
            vcpus=sizing.vcpus,
            memory_mb=sizing.memory_mb,
        )
        await self._execute(_UPDATE_LIMITS, request.to_variables(), operation="updateServiceLimits")

    async def configure(self, handle: ResourceHandle, env_vars: dict[str, str]) -> None:
        """Upsert the full environment in one call; re-applying is harmless."""
        request = UpsertEnvVarsRequest(
            project_id=self._project_id,
            environment_id=await self._resolve_environment_id(),
            service_id=handle.resource_id,
            variables=env_vars,
        )
        await self._execute(_UPSERT_VARIABLES, request.to_variables(), operation="upsertEnvVars")
        logger.info("Configured %d variables on service %s", len(env_vars), handle.resource_id)

    async def deploy(self, handle: ResourceHandle) -> str:
        request = TriggerDeployRequest(
            service_id=handle.resource_id,
            environment_id=await self._resolve_environment_id(),
        )
        data = await self._execute(_DEPLOY, request.to_variables(), operation="triggerDeploy")
        response = TriggerDeployResponse(deployment_id=data["serviceInstanceDeployV2"])
        logger.info("Triggered deployment %s on service %s", response.deployment_id, handle.resource_id)
        return response.deployment_id

    async def await_deployment(self, deployment_id: str, timeout: float) -> DeploymentResult:
        """Poll until *deployment_id* reaches a terminal status.

        Parameters
        ----------
        deployment_id:
            Identifier returned by :meth:`deploy`.
        timeout:
            Hard wall-clock bound in seconds.

        Returns
        -------
        DeploymentResult
            The terminal status.  Callers decide what a non-success means.

        Raises
        ------
        TimeoutError
            If no terminal status is seen within *timeout*.
        ProviderUnavailable
            If more than ``max_poll_errors`` consecutive polls fail.
        """
        loop = asyncio.get_running_loop()
        started = loop.time()
        consecutive_errors = 0

        async with asyncio.timeout(timeout):
            while True:
                try:
                    status = await self._deployment_status(deployment_id)
                    consecutive_errors = 0
                except ProviderUnavailable as exc:
                    consecutive_errors += 1
                    if consecutive_errors > self._max_poll_errors:
                        raise
                    logger.warning(
                        "Poll error for deployment %s (attempt %d/%d): %r",
                        deployment_id,
                        consecutive_errors,
                        self._max_poll_errors,
                        exc,
                    )
                    await asyncio.sleep(self._poll_interval)
                    continue

                if status.status.is_terminal:
                    elapsed = loop.time() - started
                    logger.info(
                        "Deployment %s finished with status %s after %.1fs",
                        deployment_id,
                        status.status.value,
                        elapsed,
                    )
                    return DeploymentResult(
                        deployment_id=deployment_id,
                        status=status.status,
                        elapsed_seconds=elapsed,
                    )

                await asyncio.sleep(self._poll_interval)

    async def public_url(self, handle: ResourceHandle) -> str:
        """Return the service's public URL, allocating a domain on first call."""
        environment_id = await self._resolve_environment_id()
        data = await self._execute(
            _SERVICE_DOMAINS,
            {"projectId": self._project_id, "environmentId": environment_id, "serviceId": handle.resource_id},
            operation="getPublicDomain",
        )
        domains = data.get("domains") or {}
        existing = (domains.get("customDomains") or []) + (domains.get("serviceDomains") or [])
        if existing:
            return PublicDomainResponse.model_validate(existing[0]).url

        data = await self._execute(
            _CREATE_DOMAIN,
            {"input": {"serviceId": handle.resource_id, "environmentId": environment_id}},
            operation="createPublicDomain",
        )
        created = PublicDomainResponse.model_validate(data["serviceDomainCreate"])
        logger.info("Allocated domain %s for service %s", created.domain, handle.resource_id)
        return created.url

    async def destroy(self, handle: ResourceHandle) -> None:
        """Delete the service.  An already-deleted service is not an error."""
        request = DeleteServiceRequest(service_id=handle.resource_id)
        try:
            await self._execute(_DELETE_SERVICE, request.to_variables(), operation="deleteService")
        except ResourceNotFound:
            logger.info("Compute service %s already gone", handle.resource_id)
            return
        logger.info("Deleted compute service %s", handle.resource_id)

    # -- Internals -----------------------------------------------------------

    async def _deployment_status(self, deployment_id: str) -> DeploymentStatusResponse:
        data = await self._execute(_DEPLOYMENT_STATUS, {"id": deployment_id}, operation="getDeploymentStatus")
        return DeploymentStatusResponse.model_validate(data["deployment"])

    async def _resolve_environment_id(self) -> str:
        if self._environment_id is not None:
            return self._environment_id

        data = await self._execute(_PROJECT_ENVIRONMENTS, {"id": self._project_id}, operation="listEnvironments")
        edges = (((data.get("project") or {}).get("environments") or {}).get("edges")) or []
        for edge in edges:
            node = edge.get("node") or {}
            if node.get("name") == _PRODUCTION_ENVIRONMENT:
                self._environment_id = node["id"]
                return self._environment_id
        raise ProviderRejected(
            f"Project {self._project_id} has no {_PRODUCTION_ENVIRONMENT!r} environment",
            provider=_PROVIDER,
        )

    async def _execute(self, query: str, variables: dict[str, Any], *, operation: str) -> dict[str, Any]:
        """POST a GraphQL document and return its ``data`` object."""
        try:
            response = await self._client.post(self._api_url, json={"query": query, "variables": variables})
        except httpx.RequestError as exc:
            raise unavailable_from(exc, provider=_PROVIDER, operation=operation) from exc
        raise_for_response(response, provider=_PROVIDER, operation=operation)

        try:
            body = response.json()
        except ValueError as exc:
            raise ProviderUnavailable(f"{operation} returned a non-JSON body", provider=_PROVIDER) from exc

        errors = body.get("errors") or []
        if errors:
            messages = "; ".join(str(e.get("message", "")) for e in errors)[:300]
            detail = f"{operation} failed: {messages}"
            if _is_rate_limited(errors):
                raise ProviderUnavailable(detail, provider=_PROVIDER)
            if _is_not_found(errors):
                raise ResourceNotFound(detail, provider=_PROVIDER)
            raise ProviderRejected(detail, provider=_PROVIDER)

        data = body.get("data")
        if not isinstance(data, dict):
            raise ProviderRejected(f"{operation} returned no data", provider=_PROVIDER)
        return data
