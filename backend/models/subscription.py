"""
backend/models/subscription.py

Subscription record and partial-update patch.

One record per account. Created lazily on first access with the free plan,
active status and zeroed counters.
"""

from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any

from pydantic import BaseModel, ConfigDict, Field

from backend.models.plan import BillingCycle


FREE_PLAN_ID = "free"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    TRIALING = "trialing"


class UsageKind(str, Enum):
    STUDENT = "student"
    REPORT = "report"
    GENERATION = "generation"

    @property
    def column(self) -> str:
        return _USAGE_COLUMNS[self]


_USAGE_COLUMNS = {
    UsageKind.STUDENT: "students_used",
    UsageKind.REPORT: "reports_used_this_period",
    UsageKind.GENERATION: "generations_used_this_period",
}


class SubscriptionRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    account_id: str
    plan_id: str = FREE_PLAN_ID
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    students_used: int = 0
    reports_used_this_period: int = 0
    generations_used_this_period: int = 0
    trial_ends_at: Optional[datetime] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    provider_customer_id: Optional[str] = None
    provider_subscription_id: Optional[str] = None
    provider_price_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def used(self, kind: UsageKind) -> int:
        return getattr(self, kind.column)


class SubscriptionPatch(BaseModel):
    """
    Partial update for a subscription record.

    Only fields explicitly set are written; setting a field to None clears
    the column. Leaving a field out leaves the column untouched.
    """
    model_config = ConfigDict(frozen=True)

    plan_id: Optional[str] = None
    status: Optional[SubscriptionStatus] = None
    students_used: Optional[int] = Field(default=None, ge=0)
    reports_used_this_period: Optional[int] = Field(default=None, ge=0)
    generations_used_this_period: Optional[int] = Field(default=None, ge=0)
    trial_ends_at: Optional[datetime] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    provider_customer_id: Optional[str] = None
    provider_subscription_id: Optional[str] = None
    provider_price_id: Optional[str] = None

    def values(self) -> Dict[str, Any]:
        """Column values for the fields present in this patch."""
        data = self.model_dump(exclude_unset=True)
        if "status" in data and data["status"] is not None:
            data["status"] = SubscriptionStatus(data["status"]).value
        return data

    def is_empty(self) -> bool:
        return not self.model_fields_set

    def merged(self, other: "SubscriptionPatch") -> "SubscriptionPatch":
        """Combine two patches; fields set on `other` win."""
        data = {k: getattr(self, k) for k in self.model_fields_set}
        data.update({k: getattr(other, k) for k in other.model_fields_set})
        return SubscriptionPatch(**data)


class UpgradeResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    plan_id: str
    plan_name: str
    billing_cycle: BillingCycle
    price: str
    period_end: datetime
