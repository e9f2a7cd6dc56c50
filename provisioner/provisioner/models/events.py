"""Inbound billing events and outbound workflow results."""

from __future__ import annotations

from datetime import date, datetime

from pydantic import BaseModel, Field


class BillingEvent(BaseModel):
    """A subscription-created event, already verified at the transport layer."""

    billing_customer_id: str = Field(..., min_length=1, description="Billing-system customer id.")
    billing_subscription_id: str | None = Field(default=None, description="Subscription id.")
    plan_price_id: str = Field(..., min_length=1, description="Price id of the purchased plan.")
    customer_email: str = Field(..., min_length=3, description="Contact address of the customer.")


class TenantMeta(BaseModel):
    """Tenant context rendered into the workspace."""

    billing_customer_id: str
    customer_email: str
    plan_name: str
    joined_at: datetime


class ProvisioningResult(BaseModel):
    """Outcome handed back to the caller of :meth:`provision`.

    ``api_key`` holds the plaintext credential only on the call that created
    it.  Duplicate events get ``None`` and ``already_provisioned=True``.
    """

    job_id: str
    workspace_id: str
    instance_id: str | None = None
    access_url: str | None = None
    api_key: str | None = Field(default=None, repr=False)
    provisioned_at: datetime | None = None
    already_provisioned: bool = False
    in_progress: bool = False


class DeprovisionStep(BaseModel):
    name: str
    ok: bool
    detail: str | None = None


class DeprovisionReport(BaseModel):
    """Per-step outcome of a deprovisioning run."""

    billing_customer_id: str
    workspace_id: str | None = None
    steps: list[DeprovisionStep] = Field(default_factory=list)
    archive_path: str | None = None
    purge_after: datetime | None = None

    @property
    def complete(self) -> bool:
        return all(step.ok for step in self.steps)


class PlanChangeResult(BaseModel):
    billing_customer_id: str
    workspace_id: str
    previous_plan: str
    new_plan: str
    deployment_id: str


class UsageDay(BaseModel):
    """Usage aggregated over one day of a tenant's ``usage_tracking`` rows."""

    day: date
    messages_sent: int = 0
    api_calls: int = 0
    tokens_used: int = 0


class UsageReport(BaseModel):
    """Usage for the current billing month, newest day first."""

    billing_customer_id: str
    workspace_id: str
    plan_name: str
    message_limit: int = Field(..., description="Monthly message allowance; -1 means unlimited.")
    period_start: date
    days: list[UsageDay] = Field(default_factory=list)

    @property
    def messages_sent(self) -> int:
        return sum(day.messages_sent for day in self.days)

    @property
    def api_calls(self) -> int:
        return sum(day.api_calls for day in self.days)

    @property
    def tokens_used(self) -> int:
        return sum(day.tokens_used for day in self.days)
