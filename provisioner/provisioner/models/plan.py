"""Plan tier models.

A plan tier is immutable once resolved: the orchestrator reads it at the
start of a job and carries the same instance through every stage.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

# Features every runtime ships with; they never get a skill file.
BUILTIN_FEATURES: frozenset[str] = frozenset({"chat", "memory", "web_search"})

# Optional integrations, each backed by a skill definition.
OPTIONAL_SKILLS: tuple[str, ...] = ("gmail", "calendar", "browser", "slack")

# Sentinel feature meaning "every feature".
ALL_FEATURES = "all"

UNLIMITED = -1


class ComputeSizing(BaseModel):
    """Resource limits applied to a tenant's compute instance."""

    model_config = ConfigDict(frozen=True)

    vcpus: float = Field(..., gt=0, description="Virtual CPUs allotted to the instance.")
    memory_mb: int = Field(..., gt=0, description="Memory limit in megabytes.")


class PlanTier(BaseModel):
    """A resolved subscription plan."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1, description="Display name, e.g. 'Starter'.")
    price_id: str = Field(..., min_length=1, description="Billing price identifier.")
    message_limit: int = Field(..., description="Monthly message allowance; -1 is unlimited.")
    agent_limit: int = Field(..., description="Maximum concurrent agents; -1 is unlimited.")
    features: tuple[str, ...] = Field(default=(), description="Enabled feature flags.")
    sizing: ComputeSizing

    def has_feature(self, feature: str) -> bool:
        return ALL_FEATURES in self.features or feature in self.features

    @property
    def skills(self) -> list[str]:
        """Non-built-in features that need a skill definition in the workspace."""
        if ALL_FEATURES in self.features:
            return list(OPTIONAL_SKILLS)
        return [f for f in self.features if f not in BUILTIN_FEATURES]

    @property
    def is_unlimited(self) -> bool:
        return self.agent_limit == UNLIMITED
