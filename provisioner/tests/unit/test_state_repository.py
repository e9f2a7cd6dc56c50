"""Unit tests for provisioner.state.repository.

Runs against a file-backed SQLite database via aiosqlite.

Covers:
- The idempotency claim (sequential and concurrent)
- Guarded stage transitions
- Failure recording and claim release
- Tenant lifecycle: create, plan update, deactivate, expiry, delete
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from uuid import uuid4

import pytest
from provisioner.models.job import JobOutcome, Stage
from provisioner.state.database import get_session
from provisioner.state.repository import InvalidStageTransition, ProvisioningJobRepository, TenantRepository
from sqlalchemy.exc import IntegrityError

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _claim(engine, customer: str = "cus_1", job_id: str | None = None) -> tuple[str, bool]:
    job_id = job_id or uuid4().hex
    async with get_session(engine) as session:
        won = await ProvisioningJobRepository(session).claim(
            job_id=job_id,
            billing_customer_id=customer,
            billing_subscription_id="sub_1",
            customer_email="owner@example.com",
            plan_price_id="price_starter",
            plan_name="Starter",
            workspace_id=f"ws_{customer.removeprefix('cus_')}_{uuid4().hex[:8]}",
            api_key_hash="a" * 64,
            api_key_prefix="tnk_aaaaaaaa",
        )
    return job_id, won


async def _walk_to_healthy(engine, job_id: str) -> None:
    async with get_session(engine) as session:
        repo = ProvisioningJobRepository(session)
        await repo.transition(job_id, Stage.COMPUTE_CREATED, compute_instance_id="svc-1")
        await repo.transition(job_id, Stage.DATABASE_CREATED, database_branch_id="br-1")
        for stage in (Stage.WORKSPACE_BUILT, Stage.CONFIGURED, Stage.DEPLOYED):
            await repo.transition(job_id, stage)
        job = await repo.complete(job_id, "https://svc-1.example.test")
        await TenantRepository(session).create(job, access_url="https://svc-1.example.test")


# ---------------------------------------------------------------------------
# Claims
# ---------------------------------------------------------------------------


class TestClaim:
    @pytest.mark.asyncio
    async def test_first_claim_wins_second_loses(self, engine):
        _, first = await _claim(engine)
        _, second = await _claim(engine)

        assert first is True
        assert second is False

    @pytest.mark.asyncio
    async def test_concurrent_claims_have_one_winner(self, engine):
        outcomes = await asyncio.gather(*(_claim(engine) for _ in range(5)))

        assert sum(won for _, won in outcomes) == 1

    @pytest.mark.asyncio
    async def test_claims_are_per_customer(self, engine):
        _, alice = await _claim(engine, "cus_alice")
        _, bob = await _claim(engine, "cus_bob")

        assert alice and bob

    @pytest.mark.asyncio
    async def test_new_claim_starts_received(self, engine):
        job_id, _ = await _claim(engine)

        async with get_session(engine) as session:
            job = await ProvisioningJobRepository(session).get_live("cus_1")

        assert job.job_id == job_id
        assert job.stage == Stage.RECEIVED.value
        assert job.outcome is None

    @pytest.mark.asyncio
    async def test_fail_releases_the_claim(self, engine):
        job_id, _ = await _claim(engine)
        async with get_session(engine) as session:
            repo = ProvisioningJobRepository(session)
            await repo.transition(job_id, Stage.ROLLING_BACK)
            await repo.fail(
                job_id,
                outcome=JobOutcome.ROLLED_BACK,
                reason="provider_unavailable",
                detail="RECEIVED: 503",
                unreleased_handles=[],
            )

        _, again = await _claim(engine)

        assert again is True

    @pytest.mark.asyncio
    async def test_release_claim_frees_a_succeeded_job(self, engine):
        job_id, _ = await _claim(engine)
        await _walk_to_healthy(engine, job_id)

        async with get_session(engine) as session:
            await ProvisioningJobRepository(session).release_claim("cus_1")

        async with get_session(engine) as session:
            repo = ProvisioningJobRepository(session)
            assert await repo.get_live("cus_1") is None
            assert (await repo.get(job_id)).stage == Stage.HEALTHY.value


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


class TestTransition:
    @pytest.mark.asyncio
    async def test_records_fields_and_timestamp(self, engine):
        job_id, _ = await _claim(engine)

        async with get_session(engine) as session:
            row = await ProvisioningJobRepository(session).transition(
                job_id, Stage.COMPUTE_CREATED, compute_instance_id="svc-9"
            )

        assert row.stage == Stage.COMPUTE_CREATED.value
        assert row.compute_instance_id == "svc-9"
        assert row.transitioned_at >= row.created_at

    @pytest.mark.asyncio
    async def test_backwards_transition_is_refused(self, engine):
        job_id, _ = await _claim(engine)
        async with get_session(engine) as session:
            await ProvisioningJobRepository(session).transition(job_id, Stage.COMPUTE_CREATED)

        with pytest.raises(InvalidStageTransition):
            async with get_session(engine) as session:
                await ProvisioningJobRepository(session).transition(job_id, Stage.RECEIVED)

    @pytest.mark.asyncio
    async def test_failed_requires_rolling_back_first(self, engine):
        job_id, _ = await _claim(engine)

        with pytest.raises(InvalidStageTransition):
            async with get_session(engine) as session:
                await ProvisioningJobRepository(session).transition(job_id, Stage.FAILED)

    @pytest.mark.asyncio
    async def test_terminal_job_cannot_move(self, engine):
        job_id, _ = await _claim(engine)
        await _walk_to_healthy(engine, job_id)

        with pytest.raises(InvalidStageTransition):
            async with get_session(engine) as session:
                await ProvisioningJobRepository(session).transition(job_id, Stage.ROLLING_BACK)

    @pytest.mark.asyncio
    async def test_unknown_job_raises_lookup_error(self, engine):
        with pytest.raises(LookupError):
            async with get_session(engine) as session:
                await ProvisioningJobRepository(session).transition("missing", Stage.COMPUTE_CREATED)

    @pytest.mark.asyncio
    async def test_fail_stores_unreleased_handles(self, engine):
        job_id, _ = await _claim(engine)
        handles = [{"kind": "compute", "resource_id": "svc-1", "endpoint": None, "error": "ProviderUnavailable"}]

        async with get_session(engine) as session:
            repo = ProvisioningJobRepository(session)
            await repo.transition(job_id, Stage.ROLLING_BACK)
            await repo.fail(
                job_id,
                outcome=JobOutcome.FAILED,
                reason="deployment_failed",
                detail="CONFIGURED: crashed",
                unreleased_handles=handles,
            )

        async with get_session(engine) as session:
            row = await ProvisioningJobRepository(session).get(job_id)

        assert row.stage == Stage.FAILED.value
        assert row.outcome == JobOutcome.FAILED.value
        assert row.unreleased_handles == handles
        assert row.failed_at is not None

    @pytest.mark.asyncio
    async def test_fail_passes_through_rolling_back_when_needed(self, engine):
        job_id, _ = await _claim(engine)
        async with get_session(engine) as session:
            await ProvisioningJobRepository(session).transition(job_id, Stage.COMPUTE_CREATED)

        async with get_session(engine) as session:
            await ProvisioningJobRepository(session).fail(
                job_id,
                outcome=JobOutcome.ROLLED_BACK,
                reason="provider_rejected",
                detail="COMPUTE_CREATED: quota",
                unreleased_handles=[],
            )

        async with get_session(engine) as session:
            row = await ProvisioningJobRepository(session).get(job_id)

        assert row.stage == Stage.FAILED.value
        assert row.claim_key is None

    @pytest.mark.asyncio
    async def test_fail_refuses_a_healthy_job(self, engine):
        job_id, _ = await _claim(engine)
        await _walk_to_healthy(engine, job_id)

        with pytest.raises(InvalidStageTransition):
            async with get_session(engine) as session:
                await ProvisioningJobRepository(session).fail(
                    job_id,
                    outcome=JobOutcome.FAILED,
                    reason="internal_error",
                    detail="HEALTHY: late failure",
                    unreleased_handles=[],
                )


# ---------------------------------------------------------------------------
# Tenants
# ---------------------------------------------------------------------------


class TestTenantRepository:
    @pytest.mark.asyncio
    async def test_create_copies_job_fields(self, engine):
        job_id, _ = await _claim(engine)
        await _walk_to_healthy(engine, job_id)

        async with get_session(engine) as session:
            tenant = await TenantRepository(session).get_active("cus_1")

        assert tenant.job_id == job_id
        assert tenant.compute_instance_id == "svc-1"
        assert tenant.database_branch_id == "br-1"
        assert tenant.api_key_hash == "a" * 64
        assert tenant.is_active

    @pytest.mark.asyncio
    async def test_create_requires_both_handles(self, engine):
        job_id, _ = await _claim(engine)

        with pytest.raises(ValueError, match="no compute or database handle"):
            async with get_session(engine) as session:
                job = await ProvisioningJobRepository(session).get(job_id)
                await TenantRepository(session).create(job, access_url="https://x.example.test")

    @pytest.mark.asyncio
    async def test_one_active_tenant_per_customer(self, engine):
        job_id, _ = await _claim(engine)
        await _walk_to_healthy(engine, job_id)

        with pytest.raises(IntegrityError):
            async with get_session(engine) as session:
                job = await ProvisioningJobRepository(session).get(job_id)
                job.workspace_id = "ws_1_deadbeef"
                await TenantRepository(session).create(job, access_url="https://y.example.test")

    @pytest.mark.asyncio
    async def test_update_plan(self, engine):
        job_id, _ = await _claim(engine)
        await _walk_to_healthy(engine, job_id)
        async with get_session(engine) as session:
            tenant = await TenantRepository(session).get_active("cus_1")
            await TenantRepository(session).update_plan(tenant.workspace_id, plan_name="Pro", plan_price_id="price_pro")

        async with get_session(engine) as session:
            tenant = await TenantRepository(session).get_active("cus_1")

        assert tenant.plan_name == "Pro"
        assert tenant.plan_price_id == "price_pro"

    @pytest.mark.asyncio
    async def test_deactivate_and_expiry(self, engine):
        job_id, _ = await _claim(engine)
        await _walk_to_healthy(engine, job_id)
        purge_after = datetime.now(UTC) + timedelta(days=30)
        async with get_session(engine) as session:
            tenants = TenantRepository(session)
            workspace_id = (await tenants.get_active("cus_1")).workspace_id
            await tenants.deactivate(workspace_id, purge_after=purge_after)

        async with get_session(engine) as session:
            tenants = TenantRepository(session)
            assert await tenants.get_active("cus_1") is None
            assert await tenants.list_expired(datetime.now(UTC)) == []
            expired = await tenants.list_expired(purge_after + timedelta(seconds=1))
            assert [t.workspace_id for t in expired] == [workspace_id]

            await tenants.delete(workspace_id)

        async with get_session(engine) as session:
            assert await TenantRepository(session).get(workspace_id) is None

    @pytest.mark.asyncio
    async def test_deactivate_keeps_first_retention_window(self, engine):
        job_id, _ = await _claim(engine)
        await _walk_to_healthy(engine, job_id)
        first = datetime.now(UTC) + timedelta(days=30)
        async with get_session(engine) as session:
            tenants = TenantRepository(session)
            workspace_id = (await tenants.get_active("cus_1")).workspace_id
            await tenants.deactivate(workspace_id, purge_after=first)
            await tenants.deactivate(workspace_id, purge_after=first + timedelta(days=5))

        async with get_session(engine) as session:
            tenant = await TenantRepository(session).get(workspace_id)

        assert abs(tenant.purge_after - first) < timedelta(seconds=1)
