"""
backend/features/usage/service.py

Usage counters.

Handles:
- Plain increment (callers consult the entitlement evaluator first)
- Guarded consumption: gate and increment in one conditional update
- Feature checks for collaborators

Counters only move backward on period rollover in the billing reconciler.
"""

from datetime import datetime, timezone
from typing import Optional

from backend.core.errors import QuotaExceededError, ValidationError
from backend.core.logging import log_event
from backend.features.entitlements.service import limit_for, require_feature as _require_feature, usage_denial
from backend.features.plans.service import DEFAULT_CATALOG, PlanCatalog
from backend.features.subscriptions.persistence import SubscriptionStore
from backend.models.plan import PlanFeature
from backend.models.subscription import SubscriptionRecord, UsageKind


def parse_usage_kind(value: str) -> UsageKind:
    try:
        return UsageKind(value)
    except ValueError:
        raise ValidationError(
            f"Invalid usage kind: {value} (expected student, report or generation)",
            code="invalid_usage_kind",
        )


class UsageService:
    def __init__(self, store: SubscriptionStore, catalog: PlanCatalog = DEFAULT_CATALOG):
        self.store = store
        self.catalog = catalog

    def increment_usage(self, account_id: str, kind: UsageKind, now: Optional[datetime] = None) -> SubscriptionRecord:
        """
        Add exactly one to the counter for `kind`.

        Loads or creates the record first. Does not enforce the plan limit.
        """
        now = now or datetime.now(timezone.utc)
        self.store.get_or_create(account_id, now=now)
        self.store.increment_usage(account_id, kind, now=now)
        log_event("info", "usage.incremented", account_id=account_id, extra={"kind": kind.value})
        return self.store.get(account_id)

    def consume(self, account_id: str, kind: UsageKind, now: Optional[datetime] = None) -> SubscriptionRecord:
        """
        Check-and-increment as one step.

        Raises:
            QuotaExceededError: feature not in plan, or limit reached
        """
        now = now or datetime.now(timezone.utc)
        record = self.store.get_or_create(account_id, now=now)
        reason = usage_denial(record, kind, self.catalog)
        if reason == "feature_not_in_plan":
            raise QuotaExceededError(
                f"Plan {record.plan_id} does not include {kind.value} usage",
                code=reason,
            )

        limit = limit_for(self.catalog.plan_by_id(record.plan_id), kind)
        if not self.store.increment_usage(account_id, kind, limit=limit, now=now):
            log_event(
                "info",
                "usage.quota_exceeded",
                account_id=account_id,
                error_code="quota_exceeded",
                extra={"kind": kind.value, "limit": limit},
            )
            raise QuotaExceededError(
                f"Plan {record.plan_id} limit reached for {kind.value} ({limit})",
            )
        return self.store.get(account_id)

    def require_feature(self, account_id: str, feature: PlanFeature) -> None:
        record = self.store.get_or_create(account_id)
        _require_feature(record, feature, self.catalog)
