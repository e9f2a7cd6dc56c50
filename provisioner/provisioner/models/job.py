"""Provisioning job and resource handle models.

A ``ProvisioningJob`` is the durable record of one attempt to provision a
tenant.  Its ``stage`` only moves forward through the happy path, or into
``ROLLING_BACK`` and then ``FAILED``; :meth:`Stage.can_transition_to`
encodes that rule and the repository refuses any other transition.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class Stage(str, Enum):
    """Lifecycle stage of a provisioning job."""

    RECEIVED = "RECEIVED"
    COMPUTE_CREATED = "COMPUTE_CREATED"
    DATABASE_CREATED = "DATABASE_CREATED"
    WORKSPACE_BUILT = "WORKSPACE_BUILT"
    CONFIGURED = "CONFIGURED"
    DEPLOYED = "DEPLOYED"
    HEALTHY = "HEALTHY"
    ROLLING_BACK = "ROLLING_BACK"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (Stage.HEALTHY, Stage.FAILED)

    def can_transition_to(self, target: Stage) -> bool:
        """Return whether moving from this stage to *target* is allowed."""
        if self.is_terminal:
            return False
        if self is Stage.ROLLING_BACK:
            return target is Stage.FAILED
        if target is Stage.ROLLING_BACK:
            return True
        if target is Stage.FAILED:
            return False
        return _HAPPY_PATH.index(target) > _HAPPY_PATH.index(self)


_HAPPY_PATH: list[Stage] = [
    Stage.RECEIVED,
    Stage.COMPUTE_CREATED,
    Stage.DATABASE_CREATED,
    Stage.WORKSPACE_BUILT,
    Stage.CONFIGURED,
    Stage.DEPLOYED,
    Stage.HEALTHY,
]


class JobOutcome(str, Enum):
    """Terminal outcome of a provisioning job."""

    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    ROLLED_BACK = "ROLLED_BACK"


class ResourceKind(str, Enum):
    COMPUTE = "compute"
    DATABASE = "database"
    WORKSPACE = "workspace"


class ResourceHandle(BaseModel):
    """Opaque reference to a resource acquired from a provider."""

    model_config = ConfigDict(frozen=True)

    kind: ResourceKind
    resource_id: str = Field(..., min_length=1, description="Provider-assigned identifier.")
    endpoint: str | None = Field(default=None, description="Public endpoint, if any.")

    def describe(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "resource_id": self.resource_id, "endpoint": self.endpoint}


class ProvisioningJob(BaseModel):
    """Read model of a persisted provisioning job."""

    job_id: str
    billing_customer_id: str
    billing_subscription_id: str | None = None
    workspace_id: str
    plan_name: str
    stage: Stage
    outcome: JobOutcome | None = None
    compute_instance_id: str | None = None
    database_branch_id: str | None = None
    access_url: str | None = None
    api_key_prefix: str | None = None
    failure_reason: str | None = None
    unreleased_handles: list[dict[str, Any]] = Field(default_factory=list)
    created_at: datetime
    transitioned_at: datetime
    completed_at: datetime | None = None
    failed_at: datetime | None = None

    @classmethod
    def from_row(cls, row: Any) -> ProvisioningJob:
        return cls(
            job_id=row.job_id,
            billing_customer_id=row.billing_customer_id,
            billing_subscription_id=row.billing_subscription_id,
            workspace_id=row.workspace_id,
            plan_name=row.plan_name,
            stage=Stage(row.stage),
            outcome=JobOutcome(row.outcome) if row.outcome else None,
            compute_instance_id=row.compute_instance_id,
            database_branch_id=row.database_branch_id,
            access_url=row.access_url,
            api_key_prefix=row.api_key_prefix,
            failure_reason=row.failure_reason,
            unreleased_handles=list(row.unreleased_handles or []),
            created_at=row.created_at,
            transitioned_at=row.transitioned_at,
            completed_at=row.completed_at,
            failed_at=row.failed_at,
        )
