"""
backend/features/subscriptions/service.py

Subscription management operations consumed by the API and collaborators.

Handles:
- Entitlement status (lazily creating the record)
- Manual upgrade, effective immediately
- Cancellation back to the free plan
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from backend.core.logging import log_event
from backend.features.billing.periods import add_interval
from backend.features.billing.service import parse_billing_cycle
from backend.features.entitlements.service import evaluate
from backend.features.plans.service import DEFAULT_CATALOG, PlanCatalog
from backend.features.subscriptions.persistence import SubscriptionStore
from backend.models.entitlement import EntitlementView
from backend.models.plan import BillingCycle
from backend.models.subscription import SubscriptionPatch, SubscriptionStatus, UpgradeResult

logger = logging.getLogger(__name__)


class SubscriptionService:
    def __init__(self, store: SubscriptionStore, catalog: PlanCatalog = DEFAULT_CATALOG):
        self.store = store
        self.catalog = catalog

    def status(self, account_id: str) -> EntitlementView:
        """Entitlement view for the account; fails closed when the store is down."""
        record = self.store.get_or_create(account_id)
        return evaluate(record, self.catalog)

    def upgrade(
        self,
        account_id: str,
        plan_id: str,
        billing_cycle: str = BillingCycle.MONTHLY.value,
        now: Optional[datetime] = None,
    ) -> UpgradeResult:
        """
        Switch to a paid plan without a provider round-trip.

        Paid upgrades normally arrive through the reconciler once the
        provider confirms payment; this path is for manual flows.
        """
        plan = self.catalog.require_paid_plan(plan_id)
        cycle = parse_billing_cycle(billing_cycle)
        now = now or datetime.now(timezone.utc)
        period_end = add_interval(now, cycle.interval)

        self.store.get_or_create(account_id, now=now)
        self.store.apply_patch(
            account_id,
            SubscriptionPatch(
                plan_id=plan.plan_id,
                status=SubscriptionStatus.ACTIVE,
                current_period_start=now,
                current_period_end=period_end,
                cancelled_at=None,
            ),
            now=now,
        )
        log_event("info", "subscription.upgraded", account_id=account_id, extra={"plan_id": plan.plan_id, "billing_cycle": cycle.value})

        price = plan.price_annual if cycle is BillingCycle.ANNUAL else plan.price_monthly
        return UpgradeResult(
            plan_id=plan.plan_id,
            plan_name=plan.name,
            billing_cycle=cycle,
            price=str(price),
            period_end=period_end,
        )

    def cancel(self, account_id: str, now: Optional[datetime] = None) -> EntitlementView:
        """Revert to the free plan immediately, stamping cancelled_at."""
        now = now or datetime.now(timezone.utc)
        self.store.get_or_create(account_id, now=now)
        record = self.store.apply_patch(
            account_id,
            SubscriptionPatch(
                plan_id=self.catalog.free_plan_id,
                status=SubscriptionStatus.ACTIVE,
                cancelled_at=now,
            ),
            now=now,
        )
        log_event("info", "subscription.cancelled", account_id=account_id)
        return evaluate(record, self.catalog)
