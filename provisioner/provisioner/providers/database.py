"""Database provisioner backed by a branch-based Postgres service (Neon).

Every tenant gets its own branch of a shared project, which gives it an
isolated Postgres database with its own connection URI.  The baseline
schema is applied through SQLAlchemy with conditional DDL so that
re-applying it to an already initialised branch is harmless.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import date
from typing import Any, Protocol, Self

import httpx
from sqlalchemy import func, select, text
from sqlalchemy.engine import make_url
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import NullPool

from provisioner.config import Settings
from provisioner.errors import ProviderRejected, ProviderUnavailable
from provisioner.models.events import UsageDay
from provisioner.models.job import ResourceHandle, ResourceKind
from provisioner.models.providers import (
    ConnectionUriResponse,
    CreateBranchRequest,
    CreateBranchResponse,
    DeleteBranchRequest,
)
from provisioner.providers._http import ResourceNotFound, raise_for_response, unavailable_from
from provisioner.providers.tenant_schema import ADD_EMBEDDING_COLUMN, tenant_metadata, usage_tracking

logger = logging.getLogger(__name__)

_PROVIDER = "database"

_DEFAULT_PARENT_BRANCH = "main"

EngineFactory = Callable[[str], AsyncEngine]


class DatabaseProvisioner(Protocol):
    """Interface the orchestrator uses for tenant databases."""

    async def create_isolated_database(self, tenant_id: str) -> tuple[ResourceHandle, str]: ...

    async def apply_baseline_schema(self, connection_string: str) -> None: ...

    async def destroy(self, handle: ResourceHandle) -> None: ...

    async def usage_since(self, handle: ResourceHandle, since: date) -> list[UsageDay]: ...


def to_async_url(connection_string: str) -> str:
    """Rewrite a libpq-style Postgres URI for the asyncpg driver.

    ``sslmode`` becomes asyncpg's ``ssl`` and ``channel_binding`` (which
    asyncpg does not accept as a query parameter) is dropped.  Non-Postgres
    URLs are returned unchanged.
    """
    url = make_url(connection_string)
    if url.get_backend_name() != "postgresql":
        return connection_string
    query = dict(url.query)
    sslmode = query.pop("sslmode", None)
    query.pop("channel_binding", None)
    if sslmode is not None:
        query["ssl"] = sslmode
    return url.set(drivername="postgresql+asyncpg", query=query).render_as_string(hide_password=False)


def _default_engine_factory(connection_string: str) -> AsyncEngine:
    return create_async_engine(to_async_url(connection_string), poolclass=NullPool, echo=False)


class NeonDatabaseProvisioner:
    """Database provisioner for a Neon-style REST API.

    Parameters
    ----------
    api_url:
        Root of the REST API, e.g. ``https://console.neon.tech/api/v2``.
    api_key:
        API key sent as a bearer credential.
    project_id:
        Project whose branches hold tenant databases.
    parent_branch_id:
        Branch new tenants are created from.  Discovered (``main`` or the
        project's default branch) on first use when not given.
    database_name / role_name:
        Database and role the connection URI is issued for.
    timeout:
        Per-request timeout in seconds.
    http_client:
        Optional pre-built client (tests inject one with a mock transport).
    engine_factory:
        Builds the engine used by :meth:`apply_baseline_schema`.
    """

    def __init__(
        self,
        *,
        api_url: str,
        api_key: str,
        project_id: str,
        parent_branch_id: str | None = None,
        database_name: str = "neondb",
        role_name: str = "neondb_owner",
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
        engine_factory: EngineFactory | None = None,
    ) -> None:
        self._project_id = project_id
        self._parent_branch_id = parent_branch_id
        self._database_name = database_name
        self._role_name = role_name
        self._engine_factory = engine_factory or _default_engine_factory
        self._client = http_client or httpx.AsyncClient(
            base_url=api_url.rstrip("/"),
            timeout=httpx.Timeout(timeout),
            headers={"Authorization": f"Bearer {api_key}", "Accept": "application/json"},
        )
        self._owns_client = http_client is None

    @classmethod
    def from_settings(cls, settings: Settings, http_client: httpx.AsyncClient | None = None) -> Self:
        if settings.neon_api_key is None or settings.neon_project_id is None:
            raise ValueError("PROVISIONER_NEON_API_KEY and PROVISIONER_NEON_PROJECT_ID must be set")
        return cls(
            api_url=settings.neon_api_url,
            api_key=settings.neon_api_key.get_secret_value(),
            project_id=settings.neon_project_id,
            parent_branch_id=settings.neon_parent_branch_id,
            database_name=settings.neon_database_name,
            role_name=settings.neon_role_name,
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

    async def create_isolated_database(self, tenant_id: str) -> tuple[ResourceHandle, str]:
        """Branch a new database for *tenant_id*.

        Returns
        -------
        tuple[ResourceHandle, str]
            The branch handle and a connection URI scoped to that branch.
            The URI carries a password and must never be logged.
        """
        request = CreateBranchRequest(name=tenant_id, parent_id=await self._resolve_parent_branch_id())
        body = await self._request(
            "POST",
            f"/projects/{self._project_id}/branches",
            operation="createBranch",
            json=request.to_payload(),
        )
        created = CreateBranchResponse.from_body(body)
        handle = ResourceHandle(kind=ResourceKind.DATABASE, resource_id=created.branch_id)
        logger.info("Created database branch %s for %s", created.branch_id, tenant_id)

        try:
            connection_string = await self._connection_uri(created.branch_id)
        except (ProviderUnavailable, ProviderRejected):
            logger.warning("Could not fetch connection URI for branch %s; deleting it", created.branch_id)
            try:
                await self.destroy(handle)
            except (ProviderUnavailable, ProviderRejected) as cleanup_exc:
                logger.error("Could not delete branch %s: %r", created.branch_id, cleanup_exc)
            raise
        return handle, connection_string

    async def apply_baseline_schema(self, connection_string: str) -> None:
        """Create the tenant tables and indexes if they do not exist yet.

        The ``vector`` extension is attempted in its own transaction; when
        it is unavailable a warning is logged and the schema is created
        without the ``embedding`` column.

        Raises
        ------
        ProviderUnavailable
            If the database cannot be reached or the DDL fails.
        """
        engine = self._engine_factory(connection_string)
        try:
            vector_enabled = await self._enable_vector_extension(engine)
            async with engine.begin() as conn:
                await conn.run_sync(tenant_metadata.create_all, checkfirst=True)
                if vector_enabled:
                    await conn.execute(text(ADD_EMBEDDING_COLUMN))
        except (SQLAlchemyError, OSError) as exc:
            raise ProviderUnavailable(
                f"Baseline schema application failed: {type(exc).__name__}",
                provider=_PROVIDER,
            ) from exc
        finally:
            await engine.dispose()
        logger.info("Applied baseline schema (vector=%s)", vector_enabled)

    async def destroy(self, handle: ResourceHandle) -> None:
        """Delete the branch.  An already-deleted branch is not an error."""
        request = DeleteBranchRequest(branch_id=handle.resource_id)
        try:
            await self._request(
                "DELETE",
                f"/projects/{self._project_id}/branches/{request.branch_id}",
                operation="deleteBranch",
            )
        except ResourceNotFound:
            logger.info("Database branch %s already gone", handle.resource_id)
            return
        logger.info("Deleted database branch %s", handle.resource_id)

    async def usage_since(self, handle: ResourceHandle, since: date) -> list[UsageDay]:
        """Return daily usage totals recorded in the branch since *since*, newest first.

        Raises
        ------
        ProviderUnavailable
            If the connection URI cannot be fetched or the query fails.
        """
        connection_string = await self._connection_uri(handle.resource_id)
        stmt = (
            select(
                usage_tracking.c.date,
                func.sum(usage_tracking.c.messages_sent).label("messages_sent"),
                func.sum(usage_tracking.c.api_calls).label("api_calls"),
                func.sum(usage_tracking.c.tokens_used).label("tokens_used"),
            )
            .where(usage_tracking.c.date >= since)
            .group_by(usage_tracking.c.date)
            .order_by(usage_tracking.c.date.desc())
        )
        engine = self._engine_factory(connection_string)
        try:
            async with engine.connect() as conn:
                rows = (await conn.execute(stmt)).all()
        except (SQLAlchemyError, OSError) as exc:
            raise ProviderUnavailable(
                f"Usage query on branch {handle.resource_id} failed: {type(exc).__name__}",
                provider=_PROVIDER,
            ) from exc
        finally:
            await engine.dispose()
        return [
            UsageDay(
                day=row.date,
                messages_sent=int(row.messages_sent or 0),
                api_calls=int(row.api_calls or 0),
                tokens_used=int(row.tokens_used or 0),
            )
            for row in rows
        ]

    # -- Internals -----------------------------------------------------------

    async def _enable_vector_extension(self, engine: AsyncEngine) -> bool:
        if engine.dialect.name != "postgresql":
            logger.warning("Vector extension unsupported on %s; skipping embeddings", engine.dialect.name)
            return False
        try:
            async with engine.begin() as conn:
                await conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
        except DBAPIError as exc:
            logger.warning("Vector extension unavailable, continuing without embeddings: %s", type(exc).__name__)
            return False
        return True

    async def _connection_uri(self, branch_id: str) -> str:
        body = await self._request(
            "GET",
            f"/projects/{self._project_id}/connection_uri",
            operation="getConnectionUri",
            params={
                "branch_id": branch_id,
                "database_name": self._database_name,
                "role_name": self._role_name,
            },
        )
        return ConnectionUriResponse.model_validate(body).uri

    async def _resolve_parent_branch_id(self) -> str:
        if self._parent_branch_id is not None:
            return self._parent_branch_id

        body = await self._request("GET", f"/projects/{self._project_id}/branches", operation="listBranches")
        branches = body.get("branches") or []
        chosen = next((b for b in branches if b.get("name") == _DEFAULT_PARENT_BRANCH), None)
        if chosen is None:
            chosen = next((b for b in branches if b.get("default")), None)
        if chosen is None:
            raise ProviderRejected(f"Project {self._project_id} has no parent branch", provider=_PROVIDER)
        self._parent_branch_id = chosen["id"]
        return self._parent_branch_id

    async def _request(self, method: str, path: str, *, operation: str, **kwargs: Any) -> dict[str, Any]:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.RequestError as exc:
            raise unavailable_from(exc, provider=_PROVIDER, operation=operation) from exc
        raise_for_response(response, provider=_PROVIDER, operation=operation)
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise ProviderUnavailable(f"{operation} returned a non-JSON body", provider=_PROVIDER) from exc
