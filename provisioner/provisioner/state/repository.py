"""Repository classes providing access to the provisioner record store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  All writes call ``session.flush()``
so that generated defaults are populated; the caller is responsible for
committing (or relying on the ``get_session`` context manager).
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from provisioner.models.job import JobOutcome, Stage
from provisioner.state.tables import ProvisioningJobTable, TenantTable

logger = logging.getLogger(__name__)


class InvalidStageTransition(RuntimeError):
    """A job was asked to move to a stage its current stage does not allow."""


async def _dialect_insert_nothing(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
) -> Any:
    """Dialect-aware insert with ``ON CONFLICT DO NOTHING``.

    Parameters
    ----------
    session:
        The active async session.
    table:
        The SQLAlchemy table class to insert into.
    values:
        Column-value mapping for the row to insert.
    index_elements:
        Column names of the unique index used for conflict detection.

    Returns
    -------
    The execution result from ``session.execute()``.  ``rowcount`` is zero
    when the insert was suppressed by a conflict.
    """
    bind = session.get_bind()
    dialect_name = getattr(getattr(bind, "dialect", None), "name", "")

    stmt: Any
    if "postgresql" in str(dialect_name):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values)
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values)
    stmt = stmt.on_conflict_do_nothing(index_elements=index_elements)
    return await session.execute(stmt)


# ---------------------------------------------------------------------------
# ProvisioningJobRepository
# ---------------------------------------------------------------------------


class ProvisioningJobRepository:
    """Durable state of provisioning jobs, including the idempotency claim."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, job_id: str) -> ProvisioningJobTable | None:
        return await self._session.get(ProvisioningJobTable, job_id)

    async def get_live(self, billing_customer_id: str) -> ProvisioningJobTable | None:
        """Return the job currently holding the claim for *billing_customer_id*."""
        stmt = select(ProvisioningJobTable).where(ProvisioningJobTable.claim_key == billing_customer_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_latest(self, billing_customer_id: str) -> ProvisioningJobTable | None:
        stmt = (
            select(ProvisioningJobTable)
            .where(ProvisioningJobTable.billing_customer_id == billing_customer_id)
            .order_by(ProvisioningJobTable.created_at.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def claim(
        self,
        *,
        job_id: str,
        billing_customer_id: str,
        billing_subscription_id: str | None,
        customer_email: str,
        plan_price_id: str,
        plan_name: str,
        workspace_id: str,
        api_key_hash: str,
        api_key_prefix: str,
    ) -> bool:
        """Insert a new job in ``RECEIVED`` unless another live job holds the claim.

        Returns ``True`` when this caller won the claim.  The conditional
        insert is atomic in the database, so concurrent callers (in this
        process or another) see exactly one winner.
        """
        now = datetime.now(UTC)
        result = await _dialect_insert_nothing(
            self._session,
            ProvisioningJobTable,
            values={
                "job_id": job_id,
                "claim_key": billing_customer_id,
                "billing_customer_id": billing_customer_id,
                "billing_subscription_id": billing_subscription_id,
                "customer_email": customer_email,
                "plan_price_id": plan_price_id,
                "plan_name": plan_name,
                "workspace_id": workspace_id,
                "stage": Stage.RECEIVED.value,
                "api_key_hash": api_key_hash,
                "api_key_prefix": api_key_prefix,
                "created_at": now,
                "transitioned_at": now,
            },
            index_elements=["claim_key"],
        )
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def transition(self, job_id: str, target: Stage, **fields: Any) -> ProvisioningJobTable:
        """Move *job_id* to *target*, recording any resource handle *fields*.

        Raises
        ------
        InvalidStageTransition
            If the job's current stage does not allow moving to *target*.
        LookupError
            If the job does not exist.
        """
        row = await self.get(job_id)
        if row is None:
            raise LookupError(f"Provisioning job {job_id} not found")
        current = Stage(row.stage)
        if not current.can_transition_to(target):
            raise InvalidStageTransition(f"Job {job_id}: {current.value} -> {target.value} is not allowed")
        row.stage = target.value
        row.transitioned_at = datetime.now(UTC)
        for name, value in fields.items():
            setattr(row, name, value)
        await self._session.flush()
        logger.info("Job %s: %s -> %s", job_id, current.value, target.value)
        return row

    async def complete(self, job_id: str, access_url: str) -> ProvisioningJobTable:
        now = datetime.now(UTC)
        row = await self.transition(job_id, Stage.HEALTHY, access_url=access_url)
        row.outcome = JobOutcome.SUCCEEDED.value
        row.completed_at = now
        await self._session.flush()
        return row

    async def fail(
        self,
        job_id: str,
        *,
        outcome: JobOutcome,
        reason: str,
        detail: str,
        unreleased_handles: list[dict[str, Any]],
    ) -> ProvisioningJobTable:
        """Record the terminal failure and release the claim.

        A job that never reached ``ROLLING_BACK`` (its earlier write was
        lost) is moved through it first, so ``FAILED`` is always reachable
        from a non-terminal stage.
        """
        now = datetime.now(UTC)
        row = await self.get(job_id)
        if row is not None and Stage(row.stage) not in (Stage.ROLLING_BACK, Stage.FAILED, Stage.HEALTHY):
            await self.transition(job_id, Stage.ROLLING_BACK)
        row = await self.transition(
            job_id,
            Stage.FAILED,
            outcome=outcome.value,
            failure_reason=reason,
            failure_detail=detail,
            unreleased_handles=unreleased_handles,
            failed_at=now,
            claim_key=None,
        )
        return row

    async def release_claim(self, billing_customer_id: str) -> None:
        """Drop the live claim so a later event may provision afresh."""
        stmt = (
            update(ProvisioningJobTable)
            .where(ProvisioningJobTable.claim_key == billing_customer_id)
            .values(claim_key=None)
        )
        await self._session.execute(stmt)
        await self._session.flush()

    async def list_recent(self, limit: int = 20) -> list[ProvisioningJobTable]:
        stmt = select(ProvisioningJobTable).order_by(ProvisioningJobTable.created_at.desc()).limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# TenantRepository
# ---------------------------------------------------------------------------


class TenantRepository:
    """Tenant records.  Created on successful provisioning only."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, workspace_id: str) -> TenantTable | None:
        return await self._session.get(TenantTable, workspace_id)

    async def get_active(self, billing_customer_id: str) -> TenantTable | None:
        stmt = select(TenantTable).where(TenantTable.active_key == billing_customer_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_latest(self, billing_customer_id: str) -> TenantTable | None:
        """Return the most recent tenant for a customer, active or not."""
        stmt = (
            select(TenantTable)
            .where(TenantTable.billing_customer_id == billing_customer_id)
            .order_by(TenantTable.created_at.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def create(self, job: ProvisioningJobTable, *, access_url: str) -> TenantTable:
        """Create the active tenant record from a completed job."""
        if job.compute_instance_id is None or job.database_branch_id is None:
            raise ValueError(f"Job {job.job_id} has no compute or database handle")
        row = TenantTable(
            workspace_id=job.workspace_id,
            billing_customer_id=job.billing_customer_id,
            active_key=job.billing_customer_id,
            billing_subscription_id=job.billing_subscription_id,
            customer_email=job.customer_email,
            plan_name=job.plan_name,
            plan_price_id=job.plan_price_id,
            job_id=job.job_id,
            compute_instance_id=job.compute_instance_id,
            database_branch_id=job.database_branch_id,
            access_url=access_url,
            api_key_hash=job.api_key_hash,
            api_key_prefix=job.api_key_prefix,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def update_plan(self, workspace_id: str, *, plan_name: str, plan_price_id: str) -> None:
        stmt = (
            update(TenantTable)
            .where(TenantTable.workspace_id == workspace_id)
            .values(plan_name=plan_name, plan_price_id=plan_price_id, updated_at=datetime.now(UTC))
        )
        await self._session.execute(stmt)
        await self._session.flush()

    async def deactivate(self, workspace_id: str, *, purge_after: datetime) -> None:
        """Mark a tenant inactive.  A no-op for tenants already inactive."""
        now = datetime.now(UTC)
        stmt = (
            update(TenantTable)
            .where(TenantTable.workspace_id == workspace_id, TenantTable.deactivated_at.is_(None))
            .values(active_key=None, deactivated_at=now, purge_after=purge_after, updated_at=now)
        )
        await self._session.execute(stmt)
        await self._session.flush()

    async def mark_teardown_complete(self, workspace_id: str, *, archive_path: str | None) -> None:
        now = datetime.now(UTC)
        stmt = (
            update(TenantTable)
            .where(TenantTable.workspace_id == workspace_id)
            .values(teardown_completed_at=now, archive_path=archive_path, updated_at=now)
        )
        await self._session.execute(stmt)
        await self._session.flush()

    async def list_expired(self, now: datetime) -> list[TenantTable]:
        """Return inactive tenants whose retention window ended before *now*."""
        stmt = select(TenantTable).where(
            TenantTable.deactivated_at.is_not(None),
            TenantTable.purge_after.is_not(None),
            TenantTable.purge_after <= now,
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def delete(self, workspace_id: str) -> None:
        await self._session.execute(delete(TenantTable).where(TenantTable.workspace_id == workspace_id))
        await self._session.flush()
