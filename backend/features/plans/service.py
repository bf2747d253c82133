"""
backend/features/plans/service.py

Plan catalog.

Handles:
- Static plan definitions (free plus six paid tiers)
- Lookup by id, failing open to the free plan
- Validation of plans that can be purchased

The catalog is process-wide configuration and never mutated at runtime.
"""

from decimal import Decimal
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping

from backend.core.errors import ValidationError
from backend.models.plan import Plan, PlanFeature, UNLIMITED
from backend.models.subscription import FREE_PLAN_ID


def _features(**flags: bool) -> Dict[PlanFeature, bool]:
    values = {feature: False for feature in PlanFeature}
    for key, enabled in flags.items():
        values[PlanFeature(key)] = enabled
    return values


_ALL_PREMIUM = dict(
    premium_games=True,
    premium_materials=True,
    premium_videos=True,
    ai_assistant=True,
    export_reports=True,
    aac_module=True,
)


DEFAULT_PLANS: List[Plan] = [
    Plan(
        plan_id=FREE_PLAN_ID,
        name="Gratuito",
        description="Para conhecer a plataforma",
        price_monthly=Decimal("0"),
        price_annual=Decimal("0"),
        max_students=1,
        max_professionals=1,
        max_reports_per_period=2,
        max_generations_per_period=0,
        features=_features(),
    ),
    Plan(
        plan_id="starter",
        name="Iniciante",
        description="Profissional individual, até 10 alunos",
        price_monthly=Decimal("49.90"),
        price_annual=Decimal("39.90"),
        max_students=10,
        max_professionals=1,
        max_reports_per_period=30,
        max_generations_per_period=50,
        features=_features(**_ALL_PREMIUM),
    ),
    Plan(
        plan_id="basic",
        name="Básico",
        description="Profissional individual, até 30 alunos",
        price_monthly=Decimal("89.90"),
        price_annual=Decimal("71.90"),
        max_students=30,
        max_professionals=1,
        max_reports_per_period=100,
        max_generations_per_period=150,
        features=_features(**_ALL_PREMIUM),
        highlight=True,
        badge="Mais popular",
    ),
    Plan(
        plan_id="professional",
        name="Profissional",
        description="Profissional individual, alunos ilimitados",
        price_monthly=Decimal("149.90"),
        price_annual=Decimal("119.90"),
        max_students=UNLIMITED,
        max_professionals=1,
        max_reports_per_period=UNLIMITED,
        max_generations_per_period=UNLIMITED,
        features=_features(**_ALL_PREMIUM, priority_support=True),
    ),
    Plan(
        plan_id="team_small",
        name="Equipe Pequena",
        description="Até 10 profissionais, até 10 alunos cada",
        price_monthly=Decimal("299.90"),
        price_annual=Decimal("239.90"),
        max_students=10,
        max_professionals=10,
        max_reports_per_period=200,
        max_generations_per_period=300,
        features=_features(**_ALL_PREMIUM),
    ),
    Plan(
        plan_id="team_medium",
        name="Equipe Média",
        description="Até 50 profissionais, até 30 alunos cada",
        price_monthly=Decimal("599.90"),
        price_annual=Decimal("479.90"),
        max_students=30,
        max_professionals=50,
        max_reports_per_period=UNLIMITED,
        max_generations_per_period=UNLIMITED,
        features=_features(**_ALL_PREMIUM, priority_support=True),
        badge="Clínicas e escolas",
    ),
    Plan(
        plan_id="enterprise",
        name="Enterprise",
        description="Profissionais e alunos ilimitados",
        price_monthly=Decimal("999.90"),
        price_annual=Decimal("799.90"),
        max_students=UNLIMITED,
        max_professionals=UNLIMITED,
        max_reports_per_period=UNLIMITED,
        max_generations_per_period=UNLIMITED,
        features=_features(**_ALL_PREMIUM, priority_support=True),
        badge="Institucional",
    ),
]


class PlanCatalog:
    """Immutable plan lookup."""

    def __init__(self, plans: Iterable[Plan], free_plan_id: str = FREE_PLAN_ID):
        by_id = {plan.plan_id: plan for plan in plans}
        if free_plan_id not in by_id:
            raise ValueError(f"Catalog must define the free plan '{free_plan_id}'")
        self._plans: Mapping[str, Plan] = MappingProxyType(by_id)
        self.free_plan_id = free_plan_id

    @property
    def free_plan(self) -> Plan:
        return self._plans[self.free_plan_id]

    def plan_by_id(self, plan_id: str | None) -> Plan:
        """Resolve a plan id; unknown ids resolve to the free plan."""
        if plan_id is None:
            return self.free_plan
        return self._plans.get(plan_id, self.free_plan)

    def is_known(self, plan_id: str | None) -> bool:
        return plan_id in self._plans

    def list_plans(self) -> List[Plan]:
        return list(self._plans.values())

    def paid_plan_ids(self) -> List[str]:
        return [plan_id for plan_id in self._plans if plan_id != self.free_plan_id]

    def require_paid_plan(self, plan_id: str) -> Plan:
        """Return the paid plan for `plan_id` or raise ValidationError."""
        if plan_id == self.free_plan_id:
            raise ValidationError("The free plan cannot be purchased", code="invalid_plan")
        plan = self._plans.get(plan_id)
        if plan is None:
            raise ValidationError(f"Unknown plan: {plan_id}", code="invalid_plan")
        return plan


DEFAULT_CATALOG = PlanCatalog(DEFAULT_PLANS)


def plan_by_id(plan_id: str | None) -> Plan:
    """Module-level shortcut over the default catalog."""
    return DEFAULT_CATALOG.plan_by_id(plan_id)


def list_plans() -> List[Plan]:
    return DEFAULT_CATALOG.list_plans()
