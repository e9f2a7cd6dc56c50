"""Shared fixtures for provisioner tests.

Provider clients are replaced with in-memory fakes that record every call
into a shared ``journal`` so tests can assert on ordering across providers.
The record store is a real SQLite file (via aiosqlite) and the workspace
builder writes to ``tmp_path``.
"""

from __future__ import annotations

import asyncio
import itertools
from datetime import date
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from provisioner.config import Settings, load_settings
from provisioner.errors import HealthCheckFailed
from provisioner.models.events import UsageDay
from provisioner.models.job import ResourceHandle, ResourceKind
from provisioner.models.plan import ComputeSizing
from provisioner.models.providers import DeploymentResult, DeploymentStatus
from provisioner.orchestrator import ProvisioningOrchestrator
from provisioner.plans import default_catalog
from provisioner.state.sqlite_adapter import create_local_tables, get_local_engine
from provisioner.workspace.builder import WorkspaceBuilder

# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeCompute:
    """In-memory compute provider.

    ``create_errors`` / ``destroy_errors`` are consumed one per call, so a
    test can script e.g. two transient failures followed by success.
    """

    def __init__(self, journal: list[tuple[str, str]]) -> None:
        self.journal = journal
        self.live: dict[str, str] = {}
        self.env: dict[str, dict[str, str]] = {}
        self.sizing: dict[str, ComputeSizing] = {}
        self.create_calls = 0
        self.create_delay = 0.0
        self.create_errors: list[Exception] = []
        self.configure_error: Exception | None = None
        self.destroy_errors: list[Exception] = []
        self.deploy_status = DeploymentStatus.SUCCESS
        self.deploy_hangs = False
        self._ids = itertools.count(1)

    async def create_instance(self, tenant_id: str, sizing: ComputeSizing) -> ResourceHandle:
        self.create_calls += 1
        if self.create_delay:
            await asyncio.sleep(self.create_delay)
        if self.create_errors:
            raise self.create_errors.pop(0)
        service_id = f"svc-{next(self._ids)}"
        self.live[service_id] = tenant_id
        self.sizing[service_id] = sizing
        self.journal.append(("compute.create", service_id))
        return ResourceHandle(kind=ResourceKind.COMPUTE, resource_id=service_id)

    async def resize(self, handle: ResourceHandle, sizing: ComputeSizing) -> None:
        self.journal.append(("compute.resize", handle.resource_id))
        self.sizing[handle.resource_id] = sizing

    async def configure(self, handle: ResourceHandle, env_vars: dict[str, str]) -> None:
        if self.configure_error is not None:
            raise self.configure_error
        self.journal.append(("compute.configure", handle.resource_id))
        self.env.setdefault(handle.resource_id, {}).update(env_vars)

    async def deploy(self, handle: ResourceHandle) -> str:
        self.journal.append(("compute.deploy", handle.resource_id))
        return f"dep-{handle.resource_id}"

    async def await_deployment(self, deployment_id: str, timeout: float) -> DeploymentResult:
        if self.deploy_hangs:
            await asyncio.sleep(3600)
        return DeploymentResult(deployment_id=deployment_id, status=self.deploy_status, elapsed_seconds=0.0)

    async def public_url(self, handle: ResourceHandle) -> str:
        return f"https://{handle.resource_id}.apps.example.test"

    async def destroy(self, handle: ResourceHandle) -> None:
        if self.destroy_errors:
            raise self.destroy_errors.pop(0)
        self.journal.append(("compute.destroy", handle.resource_id))
        self.live.pop(handle.resource_id, None)


class FakeDatabase:
    """In-memory database provider handing out per-tenant connection strings."""

    def __init__(self, journal: list[tuple[str, str]]) -> None:
        self.journal = journal
        self.live: dict[str, str] = {}
        self.schema_applied: list[str] = []
        self.schema_error: Exception | None = None
        self.schema_errors: list[Exception] = []
        self.schema_calls = 0
        self.destroy_errors: list[Exception] = []
        self.usage: dict[str, list[UsageDay]] = {}
        self.usage_queries: list[tuple[str, date]] = []
        self._ids = itertools.count(1)

    async def create_isolated_database(self, tenant_id: str) -> tuple[ResourceHandle, str]:
        branch_id = f"br-{next(self._ids)}"
        self.live[branch_id] = tenant_id
        self.journal.append(("database.create", branch_id))
        uri = f"postgresql://{tenant_id}:pw-{branch_id}@{branch_id}.db.example.test/neondb?sslmode=require"
        return ResourceHandle(kind=ResourceKind.DATABASE, resource_id=branch_id), uri

    async def apply_baseline_schema(self, connection_string: str) -> None:
        self.schema_calls += 1
        if self.schema_error is not None:
            raise self.schema_error
        if self.schema_errors:
            raise self.schema_errors.pop(0)
        self.schema_applied.append(connection_string)

    async def destroy(self, handle: ResourceHandle) -> None:
        if self.destroy_errors:
            raise self.destroy_errors.pop(0)
        self.journal.append(("database.destroy", handle.resource_id))
        self.live.pop(handle.resource_id, None)

    async def usage_since(self, handle: ResourceHandle, since: date) -> list[UsageDay]:
        self.usage_queries.append((handle.resource_id, since))
        return [day for day in self.usage.get(handle.resource_id, []) if day.day >= since]


class FakeProber:
    def __init__(self) -> None:
        self.healthy = True
        self.probed: list[str] = []

    async def wait_until_healthy(self, access_url: str) -> dict[str, Any]:
        self.probed.append(access_url)
        if not self.healthy:
            raise HealthCheckFailed(f"{access_url} never became healthy")
        return {"status": "ok"}


class JournalingWorkspaceBuilder(WorkspaceBuilder):
    """Real builder that also records discards into the shared journal."""

    def __init__(self, journal: list[tuple[str, str]], *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.journal = journal

    async def discard(self, tenant_id: str) -> None:
        self.journal.append(("workspace.discard", tenant_id))
        await super().discard(tenant_id)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings with tiny intervals and every path under ``tmp_path``."""
    return load_settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'state.db'}",
        workspaces_dir=tmp_path / "workspaces",
        archive_dir=tmp_path / "archive",
        retry_base_delay=0.001,
        retry_max_delay=0.01,
        deployment_poll_interval=0.01,
        deployment_timeout_seconds=5.0,
        health_poll_interval=0.01,
        health_timeout_seconds=5.0,
    )


@pytest_asyncio.fixture
async def engine(tmp_path: Path):
    """File-backed SQLite record store, so concurrent sessions really contend."""
    engine = get_local_engine(tmp_path / "state.db")
    await create_local_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def journal() -> list[tuple[str, str]]:
    return []


@pytest.fixture
def compute(journal: list[tuple[str, str]]) -> FakeCompute:
    return FakeCompute(journal)


@pytest.fixture
def database(journal: list[tuple[str, str]]) -> FakeDatabase:
    return FakeDatabase(journal)


@pytest.fixture
def prober() -> FakeProber:
    return FakeProber()


@pytest.fixture
def workspace(journal: list[tuple[str, str]], settings: Settings) -> JournalingWorkspaceBuilder:
    return JournalingWorkspaceBuilder(journal, settings.workspaces_dir, settings.archive_dir)


@pytest.fixture
def orchestrator(
    engine,
    compute: FakeCompute,
    database: FakeDatabase,
    workspace: JournalingWorkspaceBuilder,
    prober: FakeProber,
    settings: Settings,
) -> ProvisioningOrchestrator:
    return ProvisioningOrchestrator(
        engine=engine,
        compute=compute,
        database=database,
        workspace=workspace,
        prober=prober,
        plans=default_catalog(settings),
        settings=settings,
    )
