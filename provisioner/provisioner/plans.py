"""Plan catalog.

The commercial catalog lives in the billing system; the provisioner only
needs to map a price id to resource limits and feature flags.  Any object
satisfying :class:`PlanCatalog` can be injected into the orchestrator.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Protocol, runtime_checkable

from provisioner.config import Settings
from provisioner.models.plan import UNLIMITED, ComputeSizing, PlanTier

logger = logging.getLogger(__name__)


@runtime_checkable
class PlanCatalog(Protocol):
    """Resolves billing price ids to plan tiers."""

    def resolve(self, price_id: str) -> PlanTier:
        """Return the plan tier for *price_id*."""
        ...


class StaticPlanCatalog:
    """In-memory catalog with a fallback tier for unknown price ids.

    Unknown price ids resolve to the default tier with a warning rather
    than failing the job: the customer has paid, and under-provisioning is
    recoverable through a plan change.
    """

    def __init__(self, plans: Iterable[PlanTier], default_price_id: str) -> None:
        self._plans = {plan.price_id: plan for plan in plans}
        if default_price_id not in self._plans:
            raise ValueError(f"Default price id {default_price_id!r} is not in the catalog")
        self._default_price_id = default_price_id

    def resolve(self, price_id: str) -> PlanTier:
        plan = self._plans.get(price_id)
        if plan is None:
            logger.warning("Unknown price id %s; falling back to default plan", price_id)
            return self._plans[self._default_price_id]
        return plan

    def __iter__(self):  # type: ignore[no-untyped-def]
        return iter(self._plans.values())

    def __len__(self) -> int:
        return len(self._plans)


def default_catalog(settings: Settings) -> StaticPlanCatalog:
    """Build the Starter / Pro / Team catalog keyed by the configured price ids."""
    starter = PlanTier(
        name="Starter",
        price_id=settings.stripe_price_id_starter,
        message_limit=5_000,
        agent_limit=3,
        features=("chat", "memory", "web_search"),
        sizing=ComputeSizing(vcpus=0.5, memory_mb=512),
    )
    pro = PlanTier(
        name="Pro",
        price_id=settings.stripe_price_id_pro,
        message_limit=20_000,
        agent_limit=10,
        features=("chat", "memory", "web_search", "gmail", "calendar", "browser"),
        sizing=ComputeSizing(vcpus=1.0, memory_mb=1024),
    )
    team = PlanTier(
        name="Team",
        price_id=settings.stripe_price_id_team,
        message_limit=100_000,
        agent_limit=UNLIMITED,
        features=("all",),
        sizing=ComputeSizing(vcpus=2.0, memory_mb=2048),
    )
    return StaticPlanCatalog([starter, pro, team], default_price_id=starter.price_id)
