"""Price id to license tier mapping."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass

from tessera.config import PlanConfig
from tessera.errors import UnknownPlanError
from tessera.licensing.tiers import Tier, parse_tier


@dataclass(frozen=True)
class PlanGrant:
    tier: Tier
    is_founder: bool = False


class PlanCatalog:
    """Configured plans; there is no default tier for unknown price ids."""

    def __init__(self, plans: Mapping[str, PlanConfig | PlanGrant]) -> None:
        self._plans: dict[str, PlanGrant] = {}
        for price_id, plan in plans.items():
            if isinstance(plan, PlanGrant):
                self._plans[price_id] = plan
            else:
                self._plans[price_id] = PlanGrant(tier=parse_tier(plan.tier), is_founder=plan.founder)

    def __len__(self) -> int:
        return len(self._plans)

    def __contains__(self, price_id: object) -> bool:
        return price_id in self._plans

    def resolve(self, price_id: str | None) -> PlanGrant:
        if not price_id or price_id not in self._plans:
            raise UnknownPlanError(f"Unknown price id: {price_id!r}")
        return self._plans[price_id]
