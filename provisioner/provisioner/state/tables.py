"""SQLAlchemy 2.0 ORM table definitions for the provisioner record store.

All tables use the ``Mapped`` / ``mapped_column`` declaration style.  The
``Base`` declarative base is exported for use by Alembic migrations and the
repository layer.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import JSON, DateTime, Index, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

# Cross-dialect JSON type: JSONB on PostgreSQL, plain JSON (TEXT) on SQLite.
_JsonType = JSONB().with_variant(JSON(), "sqlite")


class UTCDateTime(TypeDecorator):
    """Timezone-aware ``DateTime`` that comes back UTC-aware on SQLite too."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_result_value(self, value, dialect):  # type: ignore[no-untyped-def,override]
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all provisioner tables."""


# ---------------------------------------------------------------------------
# Provisioning jobs
# ---------------------------------------------------------------------------


class ProvisioningJobTable(Base):
    """One attempt to provision a tenant.

    ``claim_key`` holds the billing-customer id while the job is live
    (in flight, or succeeded with the tenant still active) and is ``NULL``
    otherwise.  Its unique index is the cross-process idempotency claim.
    """

    __tablename__ = "provisioning_jobs"

    job_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    claim_key: Mapped[str | None] = mapped_column(String(128), nullable=True, unique=True)
    billing_customer_id: Mapped[str] = mapped_column(String(128), nullable=False)
    billing_subscription_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    customer_email: Mapped[str] = mapped_column(String(320), nullable=False)
    plan_price_id: Mapped[str] = mapped_column(String(128), nullable=False)
    plan_name: Mapped[str] = mapped_column(String(64), nullable=False)
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False)
    stage: Mapped[str] = mapped_column(String(32), nullable=False, default="RECEIVED")
    outcome: Mapped[str | None] = mapped_column(String(32), nullable=True)
    compute_instance_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    database_branch_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    access_url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    api_key_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    api_key_prefix: Mapped[str] = mapped_column(String(32), nullable=False)
    failure_reason: Mapped[str | None] = mapped_column(String(64), nullable=True)
    failure_detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    unreleased_handles: Mapped[list[dict[str, Any]] | None] = mapped_column(_JsonType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=_utcnow)
    transitioned_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=_utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    __table_args__ = (
        Index("ix_provisioning_jobs_customer_created", "billing_customer_id", "created_at"),
        Index("ix_provisioning_jobs_stage", "stage"),
    )


# ---------------------------------------------------------------------------
# Tenants
# ---------------------------------------------------------------------------


class TenantTable(Base):
    """A provisioned tenant, keyed by its immutable workspace identifier.

    ``active_key`` mirrors ``billing_customer_id`` while the tenant is active
    and is cleared on deactivation, so the unique index allows at most one
    active tenant per billing customer while keeping inactive history.
    """

    __tablename__ = "tenants"

    workspace_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    billing_customer_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    active_key: Mapped[str | None] = mapped_column(String(128), nullable=True, unique=True)
    billing_subscription_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    customer_email: Mapped[str] = mapped_column(String(320), nullable=False)
    plan_name: Mapped[str] = mapped_column(String(64), nullable=False)
    plan_price_id: Mapped[str] = mapped_column(String(128), nullable=False)
    job_id: Mapped[str] = mapped_column(String(64), nullable=False)
    compute_instance_id: Mapped[str] = mapped_column(String(128), nullable=False)
    database_branch_id: Mapped[str] = mapped_column(String(128), nullable=False)
    access_url: Mapped[str] = mapped_column(String(512), nullable=False)
    api_key_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    api_key_prefix: Mapped[str] = mapped_column(String(32), nullable=False)
    archive_path: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=_utcnow, onupdate=_utcnow)
    deactivated_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    purge_after: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    teardown_completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    @property
    def is_active(self) -> bool:
        return self.deactivated_at is None
