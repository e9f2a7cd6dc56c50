"""Domain models for the tenant provisioner."""

from provisioner.models.events import (
    BillingEvent,
    DeprovisionReport,
    DeprovisionStep,
    PlanChangeResult,
    ProvisioningResult,
    TenantMeta,
)
from provisioner.models.job import JobOutcome, ProvisioningJob, ResourceHandle, ResourceKind, Stage
from provisioner.models.plan import ComputeSizing, PlanTier
from provisioner.models.providers import DeploymentResult, DeploymentStatus

__all__ = [
    "BillingEvent",
    "ComputeSizing",
    "DeploymentResult",
    "DeploymentStatus",
    "DeprovisionReport",
    "DeprovisionStep",
    "JobOutcome",
    "PlanChangeResult",
    "PlanTier",
    "ProvisioningJob",
    "ProvisioningResult",
    "ResourceHandle",
    "ResourceKind",
    "Stage",
    "TenantMeta",
]
