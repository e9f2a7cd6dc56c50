"""Record-store operations that never call a provider.

Job status lookups and the retention purge only touch the record store
and the workspace archive, so they run without compute or database
provider credentials.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Self

from sqlalchemy.ext.asyncio import AsyncEngine

from provisioner.config import Settings
from provisioner.models.job import ProvisioningJob
from provisioner.state.database import get_engine, get_session
from provisioner.state.repository import ProvisioningJobRepository, TenantRepository
from provisioner.workspace.builder import WorkspaceBuilder

logger = logging.getLogger(__name__)


class ProvisioningRecords:
    """Read job state and purge tenants past their retention window."""

    def __init__(
        self,
        *,
        engine: AsyncEngine,
        workspace: WorkspaceBuilder,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._engine = engine
        self._workspace = workspace
        self._clock = clock or (lambda: datetime.now(UTC))

    @classmethod
    def from_settings(cls, settings: Settings) -> Self:
        return cls(
            engine=get_engine(settings.database_url, settings.database_pool_size, settings.database_max_overflow),
            workspace=WorkspaceBuilder(settings.workspaces_dir, settings.archive_dir),
        )

    async def close(self) -> None:
        await self._engine.dispose()

    async def get_status(self, billing_customer_id: str) -> ProvisioningJob | None:
        """Return the customer's most recent provisioning job."""
        async with get_session(self._engine) as session:
            row = await ProvisioningJobRepository(session).get_latest(billing_customer_id)
            return ProvisioningJob.from_row(row) if row is not None else None

    async def purge_expired(self) -> list[str]:
        """Permanently delete tenants whose retention window has ended.

        Tenants whose teardown never completed are skipped so that their
        handles stay on record.  Returns the purged workspace ids.
        """
        now = self._clock()
        async with get_session(self._engine) as session:
            expired = await TenantRepository(session).list_expired(now)

        purged: list[str] = []
        for tenant in expired:
            if tenant.teardown_completed_at is None:
                logger.warning("Skipping purge of %s: teardown incomplete", tenant.workspace_id)
                continue
            await self._workspace.delete_archive(tenant.workspace_id)
            async with get_session(self._engine) as session:
                await TenantRepository(session).delete(tenant.workspace_id)
            purged.append(tenant.workspace_id)
            logger.info("Purged tenant %s", tenant.workspace_id)
        return purged
