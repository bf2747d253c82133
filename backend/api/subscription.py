"""
Subscription API routes.

- GET  /api/subscription/plans: Plan catalog
- GET  /api/subscription/status: Entitlement view for the caller
- POST /api/subscription/upgrade: Manual upgrade
- POST /api/subscription/cancel: Cancel back to the free plan
- POST /api/subscription/usage: Increment a usage counter
"""
from datetime import datetime
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel

from backend.api.deps import get_catalog, get_subscription_service, get_usage_service
from backend.core.admin_auth import get_admin_actor
from backend.core.auth import get_current_account_id
from backend.core.errors import PermissionError
from backend.features.plans.service import PlanCatalog
from backend.features.subscriptions.service import SubscriptionService
from backend.features.usage.service import UsageService, parse_usage_kind
from backend.models.entitlement import EntitlementView
from backend.models.plan import BillingCycle, Plan


router = APIRouter(prefix="/subscription", tags=["subscription"])


class StatusResponse(BaseModel):
    account_id: str
    plan_id: str
    status: str
    is_premium: bool
    plan: Plan
    students_used: int
    reports_used_this_period: int
    generations_used_this_period: int
    can_add_student: bool
    remaining: Dict[str, int]
    features: Dict[str, bool]
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    trial_ends_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    @classmethod
    def from_view(cls, view: EntitlementView) -> "StatusResponse":
        return cls(
            account_id=view.account_id,
            plan_id=view.plan_id,
            status=view.status.value,
            is_premium=view.is_premium,
            plan=view.plan,
            students_used=view.students_used,
            reports_used_this_period=view.reports_used_this_period,
            generations_used_this_period=view.generations_used_this_period,
            can_add_student=view.can_add_student,
            remaining={kind.value: value for kind, value in view.remaining.items()},
            features={feature.value: enabled for feature, enabled in view.features.items()},
            current_period_start=view.current_period_start,
            current_period_end=view.current_period_end,
            trial_ends_at=view.trial_ends_at,
            cancelled_at=view.cancelled_at,
        )


class UpgradeRequest(BaseModel):
    plan_id: str
    billing_cycle: str = BillingCycle.MONTHLY.value


class UpgradeResponse(BaseModel):
    success: bool = True
    plan_id: str
    plan_name: str
    billing_cycle: str
    price: str
    period_end: datetime


class UsageRequest(BaseModel):
    kind: str


class UsageResponse(BaseModel):
    success: bool = True
    kind: str
    used: int


@router.get("/plans", response_model=List[Plan])
def list_plans(catalog: PlanCatalog = Depends(get_catalog)):
    """All plans with limits and feature flags (public)."""
    return catalog.list_plans()


@router.get("/status", response_model=StatusResponse)
def get_status(
    request: Request,
    account_id: Optional[str] = Query(None, description="Another account (admin only)"),
    caller_id: str = Depends(get_current_account_id),
    service: SubscriptionService = Depends(get_subscription_service),
):
    target = account_id or caller_id
    if target != caller_id and get_admin_actor(request) is None:
        raise PermissionError("Reading another account's subscription requires admin access")
    return StatusResponse.from_view(service.status(target))


@router.post("/upgrade", response_model=UpgradeResponse)
def upgrade(
    body: UpgradeRequest,
    account_id: str = Depends(get_current_account_id),
    service: SubscriptionService = Depends(get_subscription_service),
):
    result = service.upgrade(account_id, body.plan_id, body.billing_cycle)
    return UpgradeResponse(
        plan_id=result.plan_id,
        plan_name=result.plan_name,
        billing_cycle=result.billing_cycle.value,
        price=result.price,
        period_end=result.period_end,
    )


@router.post("/cancel", response_model=StatusResponse)
def cancel(
    account_id: str = Depends(get_current_account_id),
    service: SubscriptionService = Depends(get_subscription_service),
):
    return StatusResponse.from_view(service.cancel(account_id))


@router.post("/usage", response_model=UsageResponse)
def increment_usage(
    body: UsageRequest,
    account_id: str = Depends(get_current_account_id),
    service: UsageService = Depends(get_usage_service),
):
    kind = parse_usage_kind(body.kind)
    record = service.increment_usage(account_id, kind)
    return UsageResponse(kind=kind.value, used=record.used(kind))
