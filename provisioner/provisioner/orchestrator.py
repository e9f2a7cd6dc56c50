"""Provisioning orchestrator.

Turns a billing event into a working tenant (compute instance, isolated
database, workspace, credential) and tears tenants down on cancellation.

Provisioning is an explicit state machine::

    RECEIVED -> COMPUTE_CREATED -> DATABASE_CREATED -> WORKSPACE_BUILT
             -> CONFIGURED -> DEPLOYED -> HEALTHY

with ``ROLLING_BACK -> FAILED`` reachable from every non-terminal stage.
Each stage is a separate method, and every transition is persisted in its
own short transaction so that the record store always reflects which
resources a job holds.

Idempotency is a single conditional insert on the job table's unique
``claim_key`` column: concurrent events for the same billing customer,
in this process or any other, produce exactly one live job.  The tenant
record is written only in the final transaction, together with the job's
move to ``HEALTHY``, so no partially provisioned tenant is ever visible.

On failure every acquired resource is released in reverse acquisition
order.  Rollback is best-effort: a resource that cannot be released is
logged at error level and stored on the job as an unreleased handle, and
the job ends ``FAILED`` instead of ``ROLLED_BACK``.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Self

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from provisioner.config import Settings
from provisioner.credentials import Credential, derive_workspace_id, generate_credential
from provisioner.errors import (
    DeploymentFailed,
    DeploymentTimedOut,
    ProvisioningError,
)
from provisioner.health import HealthProbe, HealthProber
from provisioner.models.events import (
    BillingEvent,
    DeprovisionReport,
    DeprovisionStep,
    PlanChangeResult,
    ProvisioningResult,
    TenantMeta,
    UsageReport,
)
from provisioner.models.job import JobOutcome, ProvisioningJob, ResourceHandle, ResourceKind, Stage
from provisioner.models.plan import OPTIONAL_SKILLS, PlanTier
from provisioner.plans import PlanCatalog, default_catalog
from provisioner.providers.compute import ComputeProvisioner, RailwayComputeProvisioner
from provisioner.providers.database import DatabaseProvisioner, NeonDatabaseProvisioner
from provisioner.records import ProvisioningRecords
from provisioner.retry import RetryConfig, retry_provider_call
from provisioner.state.database import get_engine, get_session
from provisioner.state.repository import InvalidStageTransition, ProvisioningJobRepository, TenantRepository
from provisioner.workspace.builder import WorkspaceBuilder

logger = logging.getLogger(__name__)

# Claim attempts before giving up when a competing job finishes between our
# conditional insert and the follow-up read.
_MAX_CLAIM_ATTEMPTS = 3


@dataclass
class _JobContext:
    """In-memory state of one running provisioning job."""

    job_id: str
    event: BillingEvent
    plan: PlanTier
    workspace_id: str
    credential: Credential
    stage: Stage = Stage.RECEIVED
    handles: list[ResourceHandle] = field(default_factory=list)
    connection_string: str | None = field(default=None, repr=False)
    deployment_id: str | None = None
    access_url: str | None = None

    def acquire(self, handle: ResourceHandle) -> None:
        self.handles.append(handle)

    def handle(self, kind: ResourceKind) -> ResourceHandle:
        for acquired in self.handles:
            if acquired.kind is kind:
                return acquired
        raise ProvisioningError(f"Job {self.job_id} holds no {kind.value} handle")

    @property
    def log_extra(self) -> dict[str, Any]:
        return {"job_id": self.job_id, "workspace_id": self.workspace_id, "stage": self.stage.value}


def plan_variables(plan: PlanTier) -> dict[str, str]:
    """Environment variables that depend only on the plan."""
    variables = {
        "PLAN_NAME": plan.name,
        "MESSAGE_LIMIT": str(plan.message_limit),
        "MAX_AGENTS": str(plan.agent_limit),
        "FEATURES": ",".join(plan.features),
    }
    for skill in OPTIONAL_SKILLS:
        variables[f"{skill.upper()}_ENABLED"] = "true" if plan.has_feature(skill) else "false"
    return variables


class ProvisioningOrchestrator:
    """Coordinates providers, the workspace builder, and the record store.

    Parameters
    ----------
    engine:
        Engine for the record store holding jobs, claims, and tenants.
    compute / database:
        Provider clients.
    workspace:
        Builder for tenant workspaces.
    prober:
        Health prober used once the deployment succeeds.
    plans:
        Resolves billing price ids to plan tiers.
    settings:
        Retry policy, timeouts, credential prefix, and retention window.
    clock:
        Returns the current time; injectable for tests.
    """

    def __init__(
        self,
        *,
        engine: AsyncEngine,
        compute: ComputeProvisioner,
        database: DatabaseProvisioner,
        workspace: WorkspaceBuilder,
        prober: HealthProbe,
        plans: PlanCatalog,
        settings: Settings,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._engine = engine
        self._compute = compute
        self._database = database
        self._workspace = workspace
        self._prober = prober
        self._plans = plans
        self._settings = settings
        self._clock = clock or (lambda: datetime.now(UTC))
        self._records = ProvisioningRecords(engine=engine, workspace=workspace, clock=self._clock)
        self._retry = RetryConfig(
            max_retries=settings.provider_max_retries,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
        )

    @classmethod
    def from_settings(cls, settings: Settings, engine: AsyncEngine | None = None) -> Self:
        """Wire the production providers from *settings*."""
        compute = RailwayComputeProvisioner.from_settings(settings)
        database = NeonDatabaseProvisioner.from_settings(settings)
        return cls(
            engine=engine
            or get_engine(settings.database_url, settings.database_pool_size, settings.database_max_overflow),
            compute=compute,
            database=database,
            workspace=WorkspaceBuilder(settings.workspaces_dir, settings.archive_dir),
            prober=HealthProber.from_settings(settings),
            plans=default_catalog(settings),
            settings=settings,
        )

    async def close(self) -> None:
        """Close provider HTTP clients that expose ``close()``."""
        for client in (self._compute, self._database, self._prober):
            close = getattr(client, "close", None)
            if close is not None:
                await close()

    # ------------------------------------------------------------------
    # Provisioning
    # ------------------------------------------------------------------

    async def provision(self, event: BillingEvent) -> ProvisioningResult:
        """Provision a tenant for *event*, or return the existing result.

        Returns
        -------
        ProvisioningResult
            On the call that provisions the tenant, carries the plaintext
            ``api_key`` (the only time it is ever returned).  Duplicate
            events get ``already_provisioned=True`` (or ``in_progress=True``
            while the first job is still running) and no key.

        Raises
        ------
        ProvisioningError
            A subclass naming the failure.  Rollback has already run;
            ``unreleased_handles`` lists anything that must be cleaned up
            by hand.
        """
        plan = self._plans.resolve(event.plan_price_id)

        ctx: _JobContext | None = None
        try:
            for _ in range(_MAX_CLAIM_ATTEMPTS):
                existing = await self._existing_result(event.billing_customer_id)
                if existing is not None:
                    return existing
                ctx = await self._claim(event, plan)
                if ctx is not None:
                    break
        except SQLAlchemyError as exc:
            logger.exception("Record store unavailable while claiming %s", event.billing_customer_id)
            raise ProvisioningError(f"Record store unavailable: {type(exc).__name__}") from exc
        if ctx is None:
            raise ProvisioningError(f"Could not claim a job for {event.billing_customer_id}")

        logger.info(
            "Job %s claimed for %s on the %s plan",
            ctx.job_id,
            event.billing_customer_id,
            plan.name,
            extra=ctx.log_extra,
        )

        stages: list[tuple[Stage, Callable[[_JobContext], Awaitable[None]]]] = [
            (Stage.COMPUTE_CREATED, self._create_compute),
            (Stage.DATABASE_CREATED, self._create_database),
            (Stage.WORKSPACE_BUILT, self._build_workspace),
            (Stage.CONFIGURED, self._configure_instance),
            (Stage.DEPLOYED, self._deploy_instance),
        ]
        try:
            for stage, step in stages:
                await step(ctx)
                await self._advance(ctx, stage)
            await self._verify_health(ctx)
            return await self._complete(ctx)
        except ProvisioningError as exc:
            await self._rollback(ctx, exc)
            raise
        except Exception as exc:
            error = ProvisioningError(f"Unexpected {type(exc).__name__} at {ctx.stage.value}: {exc}")
            await self._rollback(ctx, error)
            raise error from exc

    async def _existing_result(self, billing_customer_id: str) -> ProvisioningResult | None:
        async with get_session(self._engine) as session:
            job = await ProvisioningJobRepository(session).get_live(billing_customer_id)
        if job is None:
            return None

        succeeded = job.outcome == JobOutcome.SUCCEEDED.value
        logger.info(
            "Duplicate event for %s: job %s is %s",
            billing_customer_id,
            job.job_id,
            "complete" if succeeded else job.stage,
            extra={"job_id": job.job_id},
        )
        return ProvisioningResult(
            job_id=job.job_id,
            workspace_id=job.workspace_id,
            instance_id=job.compute_instance_id,
            access_url=job.access_url if succeeded else None,
            provisioned_at=job.completed_at,
            already_provisioned=succeeded,
            in_progress=not succeeded,
        )

    async def _claim(self, event: BillingEvent, plan: PlanTier) -> _JobContext | None:
        credential = generate_credential(self._settings.credential_prefix)
        ctx = _JobContext(
            job_id=uuid.uuid4().hex,
            event=event,
            plan=plan,
            workspace_id=derive_workspace_id(event.billing_customer_id),
            credential=credential,
        )
        async with get_session(self._engine) as session:
            won = await ProvisioningJobRepository(session).claim(
                job_id=ctx.job_id,
                billing_customer_id=event.billing_customer_id,
                billing_subscription_id=event.billing_subscription_id,
                customer_email=event.customer_email,
                plan_price_id=plan.price_id,
                plan_name=plan.name,
                workspace_id=ctx.workspace_id,
                api_key_hash=credential.fingerprint,
                api_key_prefix=credential.display_prefix,
            )
        return ctx if won else None

    async def _advance(self, ctx: _JobContext, stage: Stage, **fields: Any) -> None:
        async with get_session(self._engine) as session:
            await ProvisioningJobRepository(session).transition(ctx.job_id, stage, **fields)
        ctx.stage = stage

    # -- Stages ----------------------------------------------------------

    async def _create_compute(self, ctx: _JobContext) -> None:
        handle = await retry_provider_call(
            lambda: self._compute.create_instance(ctx.workspace_id, ctx.plan.sizing),
            self._retry,
            operation="compute.create_instance",
        )
        ctx.acquire(handle)
        await self._record_handle(ctx, compute_instance_id=handle.resource_id)

    async def _create_database(self, ctx: _JobContext) -> None:
        handle, connection_string = await retry_provider_call(
            lambda: self._database.create_isolated_database(ctx.workspace_id),
            self._retry,
            operation="database.create_isolated_database",
        )
        ctx.acquire(handle)
        ctx.connection_string = connection_string
        await self._record_handle(ctx, database_branch_id=handle.resource_id)
        await retry_provider_call(
            lambda: self._database.apply_baseline_schema(connection_string),
            self._retry,
            operation="database.apply_baseline_schema",
        )

    async def _build_workspace(self, ctx: _JobContext) -> None:
        meta = TenantMeta(
            billing_customer_id=ctx.event.billing_customer_id,
            customer_email=ctx.event.customer_email,
            plan_name=ctx.plan.name,
            joined_at=self._clock(),
        )
        handle = await self._workspace.build(ctx.workspace_id, meta, ctx.plan)
        ctx.acquire(handle)

    async def _configure_instance(self, ctx: _JobContext) -> None:
        await self._compute.configure(ctx.handle(ResourceKind.COMPUTE), self._instance_environment(ctx))

    async def _deploy_instance(self, ctx: _JobContext) -> None:
        handle = ctx.handle(ResourceKind.COMPUTE)
        ctx.deployment_id = await self._compute.deploy(handle)
        await self._await_deployment(ctx.deployment_id)

    async def _verify_health(self, ctx: _JobContext) -> None:
        ctx.access_url = await self._compute.public_url(ctx.handle(ResourceKind.COMPUTE))
        await self._prober.wait_until_healthy(ctx.access_url)

    async def _complete(self, ctx: _JobContext) -> ProvisioningResult:
        """Write the tenant record and mark the job healthy in one transaction."""
        if ctx.access_url is None:
            raise ProvisioningError(f"Job {ctx.job_id} has no access URL")
        async with get_session(self._engine) as session:
            job = await ProvisioningJobRepository(session).complete(ctx.job_id, ctx.access_url)
            await TenantRepository(session).create(job, access_url=ctx.access_url)
            completed_at = job.completed_at
        ctx.stage = Stage.HEALTHY
        logger.info("Job %s reached HEALTHY at %s", ctx.job_id, ctx.access_url, extra=ctx.log_extra)
        return ProvisioningResult(
            job_id=ctx.job_id,
            workspace_id=ctx.workspace_id,
            instance_id=ctx.handle(ResourceKind.COMPUTE).resource_id,
            access_url=ctx.access_url,
            api_key=ctx.credential.secret,
            provisioned_at=completed_at,
        )

    async def _record_handle(self, ctx: _JobContext, **fields: str) -> None:
        """Persist a newly acquired handle before anything else can fail."""
        async with get_session(self._engine) as session:
            job = await ProvisioningJobRepository(session).get(ctx.job_id)
            if job is None:
                raise ProvisioningError(f"Job {ctx.job_id} vanished from the record store")
            for name, value in fields.items():
                setattr(job, name, value)

    async def _await_deployment(self, deployment_id: str) -> None:
        timeout = self._settings.deployment_timeout_seconds
        try:
            async with asyncio.timeout(timeout):
                result = await self._compute.await_deployment(deployment_id, timeout)
        except TimeoutError as exc:
            raise DeploymentTimedOut(
                f"Deployment {deployment_id} not terminal after {timeout:.0f}s",
                provider="compute",
            ) from exc
        if not result.succeeded:
            raise DeploymentFailed(
                f"Deployment {deployment_id} ended {result.status.value}",
                provider="compute",
            )

    def _instance_environment(self, ctx: _JobContext) -> dict[str, str]:
        if ctx.connection_string is None:
            raise ProvisioningError(f"Job {ctx.job_id} has no database connection string")
        variables = {
            "WORKSPACE_ID": ctx.workspace_id,
            "BILLING_CUSTOMER_ID": ctx.event.billing_customer_id,
            "CUSTOMER_EMAIL": ctx.event.customer_email,
            "DATABASE_URL": ctx.connection_string,
            "API_KEY_SHA256": ctx.credential.fingerprint,
            "LOG_LEVEL": "info",
        }
        variables.update(plan_variables(ctx.plan))
        if self._settings.model_api_key is not None:
            variables["MODEL_API_KEY"] = self._settings.model_api_key.get_secret_value()
        return variables

    # -- Rollback --------------------------------------------------------

    async def _rollback(self, ctx: _JobContext, error: ProvisioningError) -> None:
        failed_stage = ctx.stage
        error.job_id = ctx.job_id
        logger.error(
            "Job %s failed after %s (%s): %s",
            ctx.job_id,
            failed_stage.value,
            error.reason.value,
            error.detail,
            extra={**ctx.log_extra, "reason": error.reason.value},
        )
        await self._persist_failure_step(ctx, lambda repo: repo.transition(ctx.job_id, Stage.ROLLING_BACK))
        ctx.stage = Stage.ROLLING_BACK

        unreleased: list[dict[str, Any]] = []
        for handle in reversed(ctx.handles):
            try:
                await self._release(handle)
            except Exception as exc:
                unreleased.append({**handle.describe(), "error": type(exc).__name__})
                logger.error(
                    "Rollback of job %s could not release %s %s: %r",
                    ctx.job_id,
                    handle.kind.value,
                    handle.resource_id,
                    exc,
                    extra={**ctx.log_extra, "handles": [handle.describe()]},
                )
            else:
                logger.info("Rollback of job %s released %s %s", ctx.job_id, handle.kind.value, handle.resource_id)

        outcome = JobOutcome.FAILED if unreleased else JobOutcome.ROLLED_BACK
        await self._persist_failure_step(
            ctx,
            lambda repo: repo.fail(
                ctx.job_id,
                outcome=outcome,
                reason=error.reason.value,
                detail=f"{failed_stage.value}: {error.detail}",
                unreleased_handles=unreleased,
            ),
        )
        ctx.stage = Stage.FAILED
        error.unreleased_handles = unreleased

        if unreleased:
            logger.error(
                "Job %s left %d unreleased resource(s); manual cleanup required",
                ctx.job_id,
                len(unreleased),
                extra={**ctx.log_extra, "handles": unreleased},
            )

    async def _release(self, handle: ResourceHandle) -> None:
        if handle.kind is ResourceKind.COMPUTE:
            await self._compute.destroy(handle)
        elif handle.kind is ResourceKind.DATABASE:
            await self._database.destroy(handle)
        else:
            await self._workspace.discard(handle.resource_id)

    async def _persist_failure_step(
        self,
        ctx: _JobContext,
        write: Callable[[ProvisioningJobRepository], Awaitable[object]],
    ) -> None:
        # The original error must still reach the caller when the store is down.
        try:
            async with get_session(self._engine) as session:
                await write(ProvisioningJobRepository(session))
        except (SQLAlchemyError, InvalidStageTransition, LookupError):
            logger.exception("Could not record failure of job %s", ctx.job_id, extra=ctx.log_extra)

    # ------------------------------------------------------------------
    # Plan changes
    # ------------------------------------------------------------------

    async def change_plan(self, billing_customer_id: str, price_id: str) -> PlanChangeResult | None:
        """Move an active tenant to the plan for *price_id* and redeploy.

        Returns ``None`` when the tenant is already on that plan.

        Raises
        ------
        LookupError
            If the customer has no active tenant.
        ProvisioningError
            If a provider step fails.  The tenant keeps its previous plan.
        """
        plan = self._plans.resolve(price_id)
        async with get_session(self._engine) as session:
            tenant = await TenantRepository(session).get_active(billing_customer_id)
        if tenant is None:
            raise LookupError(f"No active tenant for {billing_customer_id}")
        if tenant.plan_price_id == plan.price_id:
            logger.info("Tenant %s already on the %s plan", tenant.workspace_id, plan.name)
            return None

        handle = ResourceHandle(kind=ResourceKind.COMPUTE, resource_id=tenant.compute_instance_id)
        await self._compute.resize(handle, plan.sizing)
        await self._compute.configure(handle, plan_variables(plan))
        await self._workspace.refresh_skills(tenant.workspace_id, plan)
        deployment_id = await self._compute.deploy(handle)
        await self._await_deployment(deployment_id)

        async with get_session(self._engine) as session:
            await TenantRepository(session).update_plan(
                tenant.workspace_id, plan_name=plan.name, plan_price_id=plan.price_id
            )
        logger.info("Tenant %s moved from %s to %s", tenant.workspace_id, tenant.plan_name, plan.name)
        return PlanChangeResult(
            billing_customer_id=billing_customer_id,
            workspace_id=tenant.workspace_id,
            previous_plan=tenant.plan_name,
            new_plan=plan.name,
            deployment_id=deployment_id,
        )

    # ------------------------------------------------------------------
    # Deprovisioning
    # ------------------------------------------------------------------

    async def deprovision(self, billing_customer_id: str) -> DeprovisionReport:
        """Tear down the customer's tenant.

        Destroys compute, destroys the database, archives the workspace,
        then marks the tenant inactive.  Every step runs even if an earlier
        one failed, and every step is idempotent, so re-running finishes
        whatever a previous run left outstanding.

        Raises
        ------
        ProvisioningError
            If the tenant record cannot be read.  No step has run.
        """
        try:
            async with get_session(self._engine) as session:
                tenant = await TenantRepository(session).get_latest(billing_customer_id)
        except SQLAlchemyError as exc:
            logger.exception("Record store unavailable while deprovisioning %s", billing_customer_id)
            raise ProvisioningError(f"Record store unavailable: {type(exc).__name__}") from exc
        if tenant is None:
            logger.warning("No tenant for %s; nothing to deprovision", billing_customer_id)
            return DeprovisionReport(billing_customer_id=billing_customer_id)

        report = DeprovisionReport(
            billing_customer_id=billing_customer_id,
            workspace_id=tenant.workspace_id,
            archive_path=tenant.archive_path,
            purge_after=tenant.purge_after,
        )
        if tenant.teardown_completed_at is not None:
            logger.info("Tenant %s already torn down", tenant.workspace_id)
            return report

        compute = ResourceHandle(kind=ResourceKind.COMPUTE, resource_id=tenant.compute_instance_id)
        database = ResourceHandle(kind=ResourceKind.DATABASE, resource_id=tenant.database_branch_id)
        await self._teardown_step(report, "destroy_compute", lambda: self._compute.destroy(compute))
        await self._teardown_step(report, "destroy_database", lambda: self._database.destroy(database))

        async def _archive() -> None:
            path = await self._workspace.archive(tenant.workspace_id)
            report.archive_path = str(path) if path is not None else None

        await self._teardown_step(report, "archive_workspace", _archive)

        purge_after = tenant.purge_after or self._clock() + timedelta(days=self._settings.tenant_retention_days)

        async def _deactivate() -> None:
            async with get_session(self._engine) as session:
                tenants = TenantRepository(session)
                await tenants.deactivate(tenant.workspace_id, purge_after=purge_after)
                await ProvisioningJobRepository(session).release_claim(billing_customer_id)
                if report.complete:
                    await tenants.mark_teardown_complete(tenant.workspace_id, archive_path=report.archive_path)
            report.purge_after = purge_after

        await self._teardown_step(report, "mark_inactive", _deactivate)

        if report.complete:
            logger.info("Deprovisioned tenant %s", tenant.workspace_id)
        else:
            failed = [step.name for step in report.steps if not step.ok]
            logger.error(
                "Deprovisioning of %s incomplete (%s); re-run to finish",
                tenant.workspace_id,
                ", ".join(failed),
                extra={"workspace_id": tenant.workspace_id},
            )
        return report

    async def _teardown_step(
        self,
        report: DeprovisionReport,
        name: str,
        action: Callable[[], Awaitable[None]],
    ) -> None:
        try:
            await action()
        except Exception as exc:
            logger.error("Deprovision step %s failed for %s: %r", name, report.workspace_id, exc)
            report.steps.append(DeprovisionStep(name=name, ok=False, detail=type(exc).__name__))
        else:
            report.steps.append(DeprovisionStep(name=name, ok=True))

    async def purge_expired(self) -> list[str]:
        """Permanently delete tenants whose retention window has ended."""
        return await self._records.purge_expired()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_status(self, billing_customer_id: str) -> ProvisioningJob | None:
        """Return the customer's most recent provisioning job."""
        return await self._records.get_status(billing_customer_id)

    async def get_usage(self, billing_customer_id: str) -> UsageReport:
        """Return the active tenant's usage for the current calendar month.

        Raises
        ------
        LookupError
            If the customer has no active tenant.
        ProviderUnavailable
            If the tenant database cannot be queried.
        """
        async with get_session(self._engine) as session:
            tenant = await TenantRepository(session).get_active(billing_customer_id)
        if tenant is None:
            raise LookupError(f"No active tenant for {billing_customer_id}")

        period_start = self._clock().date().replace(day=1)
        handle = ResourceHandle(kind=ResourceKind.DATABASE, resource_id=tenant.database_branch_id)
        days = await retry_provider_call(
            lambda: self._database.usage_since(handle, period_start),
            self._retry,
            operation="database.usage_since",
        )
        return UsageReport(
            billing_customer_id=billing_customer_id,
            workspace_id=tenant.workspace_id,
            plan_name=tenant.plan_name,
            message_limit=self._plans.resolve(tenant.plan_price_id).message_limit,
            period_start=period_start,
            days=days,
        )
