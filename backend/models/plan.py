"""
backend/models/plan.py

Plan model.

Plans are capability tiers (free, starter, basic, ...) with numeric limits,
feature flags and list prices.
"""

from decimal import Decimal
from enum import Enum
from typing import Dict

from pydantic import BaseModel, ConfigDict


# Sentinel for "no limit" on any numeric plan limit
UNLIMITED = -1


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    ANNUAL = "annual"

    @property
    def interval(self) -> str:
        """Provider recurring interval for this cycle."""
        return "year" if self is BillingCycle.ANNUAL else "month"


class PlanFeature(str, Enum):
    PREMIUM_GAMES = "premium_games"
    PREMIUM_MATERIALS = "premium_materials"
    PREMIUM_VIDEOS = "premium_videos"
    AI_ASSISTANT = "ai_assistant"
    EXPORT_REPORTS = "export_reports"
    AAC_MODULE = "aac_module"  # alternative & augmentative communication
    PRIORITY_SUPPORT = "priority_support"


class Plan(BaseModel):
    """
    Plan represents a capability tier.

    Limits use UNLIMITED (-1) for "no limit". `price_annual` is the
    per-month equivalent when billed yearly; see `annual_charge`.
    """
    model_config = ConfigDict(frozen=True)

    plan_id: str
    name: str
    description: str = ""
    price_monthly: Decimal
    price_annual: Decimal
    max_students: int
    max_professionals: int
    max_reports_per_period: int
    max_generations_per_period: int
    features: Dict[PlanFeature, bool]
    highlight: bool = False
    badge: str | None = None

    @property
    def is_free(self) -> bool:
        return self.price_monthly == 0 and self.price_annual == 0

    @property
    def annual_charge(self) -> Decimal:
        return self.price_annual * 12

    def has_feature(self, feature: PlanFeature) -> bool:
        return bool(self.features.get(feature, False))

    def charge_for(self, cycle: BillingCycle) -> Decimal:
        """Amount billed per interval for the given cycle."""
        if cycle is BillingCycle.ANNUAL:
            return self.annual_charge
        return self.price_monthly
