"""Typed request and response structures for the provider APIs.

Each remote operation has its own request/response pair so that payloads
are validated on the way in and on the way out.  Provider clients build a
request model, serialise it with ``to_variables()`` / ``to_payload()``, and
parse the response body with ``model_validate``.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class _ProviderModel(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")


# ---------------------------------------------------------------------------
# Compute (GraphQL)
# ---------------------------------------------------------------------------


class CreateServiceRequest(_ProviderModel):
    project_id: str
    name: str
    source_repo: str
    source_branch: str

    def to_variables(self) -> dict[str, Any]:
        return {
            "input": {
                "projectId": self.project_id,
                "name": self.name,
                "source": {"repo": self.source_repo},
                "branch": self.source_branch,
            }
        }


class CreateServiceResponse(_ProviderModel):
    service_id: str = Field(..., alias="id")
    name: str


class UpdateServiceInstanceRequest(_ProviderModel):
    service_id: str
    environment_id: str
    vcpus: float
    memory_mb: int

    def to_variables(self) -> dict[str, Any]:
        return {
            "input": {
                "serviceId": self.service_id,
                "environmentId": self.environment_id,
                "vCPUs": self.vcpus,
                "memoryGB": round(self.memory_mb / 1024, 3),
            }
        }


class UpsertEnvVarsRequest(_ProviderModel):
    project_id: str
    environment_id: str
    service_id: str
    variables: dict[str, str]

    def to_variables(self) -> dict[str, Any]:
        return {
            "input": {
                "projectId": self.project_id,
                "environmentId": self.environment_id,
                "serviceId": self.service_id,
                "variables": dict(self.variables),
            }
        }


class TriggerDeployRequest(_ProviderModel):
    service_id: str
    environment_id: str

    def to_variables(self) -> dict[str, Any]:
        return {"serviceId": self.service_id, "environmentId": self.environment_id}


class TriggerDeployResponse(_ProviderModel):
    deployment_id: str


class DeploymentStatus(str, Enum):
    """Statuses reported by the compute provider for a deployment."""

    QUEUED = "QUEUED"
    INITIALIZING = "INITIALIZING"
    BUILDING = "BUILDING"
    DEPLOYING = "DEPLOYING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    CRASHED = "CRASHED"
    REMOVED = "REMOVED"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, raw: str | None) -> DeploymentStatus:
        try:
            return cls((raw or "").upper())
        except ValueError:
            return cls.UNKNOWN

    @property
    def is_terminal(self) -> bool:
        return self in (
            DeploymentStatus.SUCCESS,
            DeploymentStatus.FAILED,
            DeploymentStatus.CRASHED,
            DeploymentStatus.REMOVED,
        )


class DeploymentStatusResponse(_ProviderModel):
    deployment_id: str = Field(..., alias="id")
    status: DeploymentStatus

    @field_validator("status", mode="before")
    @classmethod
    def _parse_status(cls, value: Any) -> DeploymentStatus:
        return value if isinstance(value, DeploymentStatus) else DeploymentStatus.parse(value)


class DeploymentResult(_ProviderModel):
    deployment_id: str
    status: DeploymentStatus
    elapsed_seconds: float

    @property
    def succeeded(self) -> bool:
        return self.status is DeploymentStatus.SUCCESS


class PublicDomainResponse(_ProviderModel):
    domain: str

    @property
    def url(self) -> str:
        if self.domain.startswith(("http://", "https://")):
            return self.domain
        return f"https://{self.domain}"


class DeleteServiceRequest(_ProviderModel):
    service_id: str

    def to_variables(self) -> dict[str, Any]:
        return {"id": self.service_id}


# ---------------------------------------------------------------------------
# Database (REST)
# ---------------------------------------------------------------------------


class CreateBranchRequest(_ProviderModel):
    name: str
    parent_id: str | None = None

    def to_payload(self) -> dict[str, Any]:
        branch: dict[str, Any] = {"name": self.name}
        if self.parent_id:
            branch["parent_id"] = self.parent_id
        # A read-write endpoint is required for the branch to accept connections.
        return {"branch": branch, "endpoints": [{"type": "read_write"}]}


class CreateBranchResponse(_ProviderModel):
    branch_id: str
    name: str

    @classmethod
    def from_body(cls, body: dict[str, Any]) -> CreateBranchResponse:
        branch = body.get("branch") or {}
        return cls(branch_id=branch["id"], name=branch["name"])


class ConnectionUriResponse(_ProviderModel):
    uri: str = Field(..., min_length=1, repr=False)


class DeleteBranchRequest(_ProviderModel):
    branch_id: str
