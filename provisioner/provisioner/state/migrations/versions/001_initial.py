"""Create provisioning_jobs and tenants.

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "provisioning_jobs",
        sa.Column("job_id", sa.String(64), primary_key=True),
        sa.Column("claim_key", sa.String(128), nullable=True, unique=True),
        sa.Column("billing_customer_id", sa.String(128), nullable=False),
        sa.Column("billing_subscription_id", sa.String(128), nullable=True),
        sa.Column("customer_email", sa.String(320), nullable=False),
        sa.Column("plan_price_id", sa.String(128), nullable=False),
        sa.Column("plan_name", sa.String(64), nullable=False),
        sa.Column("workspace_id", sa.String(64), nullable=False),
        sa.Column("stage", sa.String(32), nullable=False),
        sa.Column("outcome", sa.String(32), nullable=True),
        sa.Column("compute_instance_id", sa.String(128), nullable=True),
        sa.Column("database_branch_id", sa.String(128), nullable=True),
        sa.Column("access_url", sa.String(512), nullable=True),
        sa.Column("api_key_hash", sa.String(64), nullable=False),
        sa.Column("api_key_prefix", sa.String(32), nullable=False),
        sa.Column("failure_reason", sa.String(64), nullable=True),
        sa.Column("failure_detail", sa.Text(), nullable=True),
        sa.Column(
            "unreleased_handles",
            postgresql.JSONB().with_variant(sa.JSON(), "sqlite"),
            nullable=True,
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("transitioned_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_provisioning_jobs_customer_created",
        "provisioning_jobs",
        ["billing_customer_id", "created_at"],
    )
    op.create_index("ix_provisioning_jobs_stage", "provisioning_jobs", ["stage"])

    op.create_table(
        "tenants",
        sa.Column("workspace_id", sa.String(64), primary_key=True),
        sa.Column("billing_customer_id", sa.String(128), nullable=False),
        sa.Column("active_key", sa.String(128), nullable=True, unique=True),
        sa.Column("billing_subscription_id", sa.String(128), nullable=True),
        sa.Column("customer_email", sa.String(320), nullable=False),
        sa.Column("plan_name", sa.String(64), nullable=False),
        sa.Column("plan_price_id", sa.String(128), nullable=False),
        sa.Column("job_id", sa.String(64), nullable=False),
        sa.Column("compute_instance_id", sa.String(128), nullable=False),
        sa.Column("database_branch_id", sa.String(128), nullable=False),
        sa.Column("access_url", sa.String(512), nullable=False),
        sa.Column("api_key_hash", sa.String(64), nullable=False),
        sa.Column("api_key_prefix", sa.String(32), nullable=False),
        sa.Column("archive_path", sa.String(1024), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("deactivated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("purge_after", sa.DateTime(timezone=True), nullable=True),
        sa.Column("teardown_completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_tenants_billing_customer_id", "tenants", ["billing_customer_id"])


def downgrade() -> None:
    op.drop_index("ix_tenants_billing_customer_id", table_name="tenants")
    op.drop_table("tenants")
    op.drop_index("ix_provisioning_jobs_stage", table_name="provisioning_jobs")
    op.drop_index("ix_provisioning_jobs_customer_created", table_name="provisioning_jobs")
    op.drop_table("provisioning_jobs")
