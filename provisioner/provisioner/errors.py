"""Error taxonomy for the provisioning workflow.

Every failure that crosses the orchestrator boundary is one of the classes
below.  Each carries a stable ``reason`` code (persisted on the job record
and safe to show to operators) and a generic ``public_message`` that never
includes provider response text, connection strings, or credentials.  The
internal ``detail`` is for logs and the job record only.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class FailureReason(str, Enum):
    """Stable reason codes recorded on failed provisioning jobs."""

    PROVIDER_UNAVAILABLE = "provider_unavailable"
    PROVIDER_REJECTED = "provider_rejected"
    DEPLOYMENT_TIMED_OUT = "deployment_timed_out"
    DEPLOYMENT_FAILED = "deployment_failed"
    HEALTH_CHECK_FAILED = "health_check_failed"
    WORKSPACE_BUILD_FAILED = "workspace_build_failed"
    INTERNAL_ERROR = "internal_error"


_PUBLIC_MESSAGE = "We could not finish setting up your workspace. Our team has been notified."


class ProvisioningError(Exception):
    """Base class for provisioning failures.

    Parameters
    ----------
    detail:
        Internal description of what went wrong.  Logged and stored on the
        job record; never returned to the customer.
    provider:
        Name of the provider that produced the failure, if any.
    """

    reason: FailureReason = FailureReason.INTERNAL_ERROR
    retryable: bool = False

    def __init__(self, detail: str, *, provider: str | None = None) -> None:
        super().__init__(detail)
        self.detail = detail
        self.provider = provider
        # Filled in by the orchestrator once the job id is known and rollback has run.
        self.job_id: str | None = None
        self.unreleased_handles: list[dict[str, Any]] = []

    @property
    def public_message(self) -> str:
        return _PUBLIC_MESSAGE

    def __repr__(self) -> str:
        return f"{type(self).__name__}(reason={self.reason.value!r}, provider={self.provider!r})"


class ProviderUnavailable(ProvisioningError):
    """Transient provider failure: network error, 5xx, rate limit, or lock."""

    reason = FailureReason.PROVIDER_UNAVAILABLE
    retryable = True


class ProviderRejected(ProvisioningError):
    """Permanent provider failure: bad credentials, quota, or invalid request."""

    reason = FailureReason.PROVIDER_REJECTED


class DeploymentTimedOut(ProvisioningError):
    """The deployment did not reach a terminal status within its bound."""

    reason = FailureReason.DEPLOYMENT_TIMED_OUT


class DeploymentFailed(ProvisioningError):
    """The provider reported the deployment as failed or crashed."""

    reason = FailureReason.DEPLOYMENT_FAILED


class HealthCheckFailed(ProvisioningError):
    """The deployed instance never reported healthy within its bound."""

    reason = FailureReason.HEALTH_CHECK_FAILED


class WorkspaceBuildFailed(ProvisioningError):
    """Workspace artifacts could not be rendered or written."""

    reason = FailureReason.WORKSPACE_BUILD_FAILED


class InvalidWorkspaceId(ValueError):
    """A workspace identifier did not match the strict allowlist pattern."""
