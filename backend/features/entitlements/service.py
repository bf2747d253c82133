"""
backend/features/entitlements/service.py

Entitlement evaluation.

Pure functions of (subscription record, plan catalog). No I/O, no logging:
callers load the record and decide what to do with the verdict.
"""

from typing import Dict, Optional

from backend.core.errors import QuotaExceededError
from backend.features.plans.service import DEFAULT_CATALOG, PlanCatalog
from backend.models.entitlement import EntitlementView
from backend.models.plan import Plan, PlanFeature, UNLIMITED
from backend.models.subscription import SubscriptionRecord, SubscriptionStatus, UsageKind


# Usage kinds that also require a feature flag on the plan
USAGE_FEATURE_GATES: Dict[UsageKind, PlanFeature] = {
    UsageKind.GENERATION: PlanFeature.AI_ASSISTANT,
}


def limit_for(plan: Plan, kind: UsageKind) -> int:
    if kind is UsageKind.STUDENT:
        return plan.max_students
    if kind is UsageKind.REPORT:
        return plan.max_reports_per_period
    return plan.max_generations_per_period


def remaining(limit: int, used: int) -> int:
    """UNLIMITED for an unlimited limit, otherwise max(0, limit - used)."""
    if limit == UNLIMITED:
        return UNLIMITED
    return max(0, limit - used)


def within_limit(limit: int, used: int) -> bool:
    return limit == UNLIMITED or used < limit


def is_premium(record: SubscriptionRecord, catalog: PlanCatalog = DEFAULT_CATALOG) -> bool:
    return record.plan_id != catalog.free_plan_id and record.status is SubscriptionStatus.ACTIVE


def evaluate(record: SubscriptionRecord, catalog: PlanCatalog = DEFAULT_CATALOG) -> EntitlementView:
    """Compute the entitlement view for a subscription record."""
    plan = catalog.plan_by_id(record.plan_id)
    return EntitlementView(
        account_id=record.account_id,
        plan_id=record.plan_id,
        status=record.status,
        is_premium=is_premium(record, catalog),
        plan=plan,
        students_used=record.students_used,
        reports_used_this_period=record.reports_used_this_period,
        generations_used_this_period=record.generations_used_this_period,
        can_add_student=within_limit(plan.max_students, record.students_used),
        remaining={kind: remaining(limit_for(plan, kind), record.used(kind)) for kind in UsageKind},
        features=dict(plan.features),
        current_period_start=record.current_period_start,
        current_period_end=record.current_period_end,
        trial_ends_at=record.trial_ends_at,
        cancelled_at=record.cancelled_at,
    )


def can_use_feature(record: SubscriptionRecord, feature: PlanFeature, catalog: PlanCatalog = DEFAULT_CATALOG) -> bool:
    return catalog.plan_by_id(record.plan_id).has_feature(feature)


def usage_denial(record: SubscriptionRecord, kind: UsageKind, catalog: PlanCatalog = DEFAULT_CATALOG) -> Optional[str]:
    """
    Reason code when one more unit of `kind` is not allowed, else None.

    feature_not_in_plan: the plan lacks the feature the usage depends on.
    quota_exceeded: the counter has reached the plan limit.
    """
    plan = catalog.plan_by_id(record.plan_id)
    gate = USAGE_FEATURE_GATES.get(kind)
    if gate is not None and not plan.has_feature(gate):
        return "feature_not_in_plan"
    if not within_limit(limit_for(plan, kind), record.used(kind)):
        return "quota_exceeded"
    return None


def require_usage_allowed(record: SubscriptionRecord, kind: UsageKind, catalog: PlanCatalog = DEFAULT_CATALOG) -> None:
    reason = usage_denial(record, kind, catalog)
    if reason is None:
        return
    plan = catalog.plan_by_id(record.plan_id)
    if reason == "feature_not_in_plan":
        raise QuotaExceededError(
            f"Plan {plan.plan_id} does not include {kind.value} usage",
            code=reason,
        )
    raise QuotaExceededError(
        f"Plan {plan.plan_id} limit reached for {kind.value} ({limit_for(plan, kind)})",
        code=reason,
    )


def require_feature(record: SubscriptionRecord, feature: PlanFeature, catalog: PlanCatalog = DEFAULT_CATALOG) -> None:
    if not can_use_feature(record, feature, catalog):
        raise QuotaExceededError(
            f"Plan {record.plan_id} does not include {feature.value}",
            code="feature_not_in_plan",
        )
