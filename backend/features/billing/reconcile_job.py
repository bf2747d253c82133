"""
Invariant audit over subscription records.

Runs the same checks as the admin endpoint. Report-only: nothing is
corrected here, every issue is logged for follow-up.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from backend.core.logging import log_event
from backend.features.plans.service import DEFAULT_CATALOG, PlanCatalog
from backend.features.subscriptions.persistence import SubscriptionStore
from backend.models.subscription import SubscriptionRecord, SubscriptionStatus


def find_issues(record: SubscriptionRecord, catalog: PlanCatalog = DEFAULT_CATALOG) -> List[Dict[str, Any]]:
    issues = []

    def issue(kind: str, **details: Any) -> None:
        issues.append({"type": kind, "account_id": record.account_id, "plan_id": record.plan_id, **details})

    if not catalog.is_known(record.plan_id):
        issue("unknown_plan")
    elif (
        record.plan_id != catalog.free_plan_id
        and record.status is SubscriptionStatus.ACTIVE
        and not record.provider_subscription_id
    ):
        issue("paid_active_without_provider_subscription")

    if (
        record.current_period_start is not None
        and record.current_period_end is not None
        and record.current_period_end <= record.current_period_start
    ):
        issue(
            "period_end_not_after_start",
            current_period_start=record.current_period_start.isoformat(),
            current_period_end=record.current_period_end.isoformat(),
        )

    if record.status is SubscriptionStatus.CANCELLED and record.cancelled_at is None:
        issue("cancelled_without_timestamp")

    return issues


def run_reconcile_job(
    store: SubscriptionStore,
    now: Optional[datetime] = None,
    catalog: PlanCatalog = DEFAULT_CATALOG,
) -> Dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    records = store.list_records()

    issues: List[Dict[str, Any]] = []
    for record in records:
        for found in find_issues(record, catalog):
            log_event(
                "warning",
                "billing.invariant.violation",
                account_id=record.account_id,
                error_code=found["type"],
                extra={"plan_id": record.plan_id, "status": record.status.value},
            )
            issues.append(found)

    return {
        "records_checked": len(records),
        "issues_found": len(issues),
        "issues": issues,
        "timestamp": now.isoformat(),
    }
