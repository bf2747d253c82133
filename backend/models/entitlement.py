"""
backend/models/entitlement.py

Entitlement view: derived, read-only summary of what an account may do.
"""

from datetime import datetime
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict

from backend.models.plan import Plan, PlanFeature
from backend.models.subscription import SubscriptionStatus, UsageKind


class EntitlementView(BaseModel):
    """
    Remaining values use UNLIMITED (-1) when the plan limit is unlimited,
    otherwise max(0, limit - used).
    """
    model_config = ConfigDict(frozen=True)

    account_id: str
    plan_id: str
    status: SubscriptionStatus
    is_premium: bool
    plan: Plan
    students_used: int
    reports_used_this_period: int
    generations_used_this_period: int
    can_add_student: bool
    remaining: Dict[UsageKind, int]
    features: Dict[PlanFeature, bool]
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    trial_ends_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    def can_use_feature(self, feature: PlanFeature) -> bool:
        return bool(self.features.get(feature, False))

    def remaining_for(self, kind: UsageKind) -> int:
        return self.remaining[kind]
