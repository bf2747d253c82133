"""
Billing lifecycle reconciler.

Applies verified provider events to subscription records. Every handler
builds its patch without side effects and persists once at the end, so a
redelivered event can be re-applied safely. All transitions overwrite
fields; the only counter movement is the reset to zero on period rollover.
"""
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, Optional, Type

from sqlalchemy.engine import Connection

from backend.core.logging import log_event
from backend.features.billing.periods import add_interval, compute_period_end
from backend.features.billing.provider import (
    BillingEvent,
    CheckoutCompleted,
    InvoicePaid,
    InvoicePaymentFailed,
    SubscriptionDeleted,
    SubscriptionTiming,
    SubscriptionUpdated,
)
from backend.features.plans.service import DEFAULT_CATALOG, PlanCatalog
from backend.features.subscriptions.persistence import SubscriptionStore
from backend.models.plan import BillingCycle
from backend.models.subscription import SubscriptionPatch, SubscriptionRecord, SubscriptionStatus

logger = logging.getLogger(__name__)

# Stored periods at least this long renew yearly when the invoice omits its period
ANNUAL_PERIOD_MIN_DAYS = 300


class ReconcileOutcome(str, Enum):
    APPLIED = "applied"
    UNMATCHED = "unmatched"  # no local record for the provider subscription
    REJECTED = "rejected"  # payload fails a precondition (unknown plan, missing ids)
    IGNORED = "ignored"  # event type or shape we do not act on


def resolve_period_end(timing: Optional[SubscriptionTiming], now: datetime, fallback_interval: str = "month") -> datetime:
    """
    Period end for a subscription schedule.

    cancel_at wins, then an explicit provider period end, then interval
    math from the anchor. Without any timing, one interval from now.
    """
    if timing is None:
        return add_interval(now, fallback_interval)
    if timing.cancel_at is not None:
        return timing.cancel_at
    if timing.period_end is not None and timing.period_end > now:
        return timing.period_end
    return compute_period_end(timing.anchor, timing.interval, timing.interval_count, now=now)


def _cycle_interval(billing_cycle: Optional[str]) -> str:
    try:
        return BillingCycle(billing_cycle).interval
    except ValueError:
        return "month"


def _stored_interval(record: SubscriptionRecord) -> str:
    """Renewal interval implied by the record's current period; monthly when unknown."""
    start, end = record.current_period_start, record.current_period_end
    if start and end and (end - start).days >= ANNUAL_PERIOD_MIN_DAYS:
        return "year"
    return "month"


class BillingReconciler:
    """State machine from provider events to subscription records."""

    def __init__(self, store: SubscriptionStore, catalog: PlanCatalog = DEFAULT_CATALOG):
        self.store = store
        self.catalog = catalog
        self._handlers: Dict[Type[BillingEvent], Callable[..., ReconcileOutcome]] = {
            CheckoutCompleted: self._on_checkout_completed,
            InvoicePaid: self._on_invoice_paid,
            InvoicePaymentFailed: self._on_invoice_payment_failed,
            SubscriptionDeleted: self._on_subscription_deleted,
            SubscriptionUpdated: self._on_subscription_updated,
        }

    def apply(
        self,
        event: BillingEvent,
        now: Optional[datetime] = None,
        conn: Optional[Connection] = None,
    ) -> ReconcileOutcome:
        """
        Apply one event.

        Pass `conn` to run inside the caller's transaction (the webhook
        pipeline does, so the ledger mark commits with the transition).

        Raises:
            StoreUnavailableError: persistence failed; the event must be redelivered
        """
        handler = self._handlers.get(type(event))
        if handler is None:
            logger.info(
                "[billing] event ignored",
                extra={"event_id": event.event_id, "event_type": event.event_type},
            )
            return ReconcileOutcome.IGNORED
        now = now or datetime.now(timezone.utc)
        return handler(event, now, conn)

    # ----- handlers -----

    def _on_checkout_completed(self, event: CheckoutCompleted, now: datetime, conn: Optional[Connection]) -> ReconcileOutcome:
        if not event.subscription_id or not event.account_id:
            return self._reject(event, "checkout without subscription or account id")
        if not self.catalog.is_known(event.plan_id):
            return self._reject(event, f"unknown plan {event.plan_id}", plan_id=event.plan_id)

        patch = SubscriptionPatch(
            plan_id=event.plan_id,
            status=SubscriptionStatus.ACTIVE,
            provider_customer_id=event.customer_id,
            provider_subscription_id=event.subscription_id,
            provider_price_id=event.price_id,
            current_period_start=now,
            current_period_end=resolve_period_end(event.timing, now, _cycle_interval(event.billing_cycle)),
            students_used=0,
            reports_used_this_period=0,
            generations_used_this_period=0,
            cancelled_at=None,
        )
        self.store.upsert(event.account_id, patch, now=now, conn=conn)
        return self._applied(event, event.account_id, plan_id=event.plan_id)

    def _on_invoice_paid(self, event: InvoicePaid, now: datetime, conn: Optional[Connection]) -> ReconcileOutcome:
        record = self._match(event, event.subscription_id, conn)
        if record is None:
            return ReconcileOutcome.UNMATCHED

        period_end = event.period_end or add_interval(now, _stored_interval(record))
        period_start = event.period_start or now
        fields = dict(
            status=SubscriptionStatus.ACTIVE,
            reports_used_this_period=0,
            generations_used_this_period=0,
            cancelled_at=None,
        )
        if period_end > period_start:
            fields.update(current_period_start=period_start, current_period_end=period_end)
        else:
            logger.warning(
                "[billing] invoice period not increasing, period left unchanged",
                extra={"event_id": event.event_id, "account_id": record.account_id},
            )
        self.store.apply_patch(record.account_id, SubscriptionPatch(**fields), now=now, conn=conn)
        return self._applied(event, record.account_id)

    def _on_invoice_payment_failed(self, event: InvoicePaymentFailed, now: datetime, conn: Optional[Connection]) -> ReconcileOutcome:
        record = self._match(event, event.subscription_id, conn)
        if record is None:
            return ReconcileOutcome.UNMATCHED

        patch = SubscriptionPatch(status=SubscriptionStatus.EXPIRED, cancelled_at=None)
        self.store.apply_patch(record.account_id, patch, now=now, conn=conn)
        return self._applied(event, record.account_id)

    def _on_subscription_deleted(self, event: SubscriptionDeleted, now: datetime, conn: Optional[Connection]) -> ReconcileOutcome:
        record = self._match(event, event.subscription_id, conn)
        if record is None:
            return ReconcileOutcome.UNMATCHED

        # Redelivery keeps the first cancellation timestamp
        cancelled_at = record.cancelled_at if record.status is SubscriptionStatus.CANCELLED and record.cancelled_at else now
        patch = SubscriptionPatch(status=SubscriptionStatus.CANCELLED, cancelled_at=cancelled_at)
        self.store.apply_patch(record.account_id, patch, now=now, conn=conn)
        return self._applied(event, record.account_id)

    def _on_subscription_updated(self, event: SubscriptionUpdated, now: datetime, conn: Optional[Connection]) -> ReconcileOutcome:
        if not event.plan_id:
            logger.info(
                "[billing] subscription update without plan id ignored",
                extra={"event_id": event.event_id, "event_type": event.event_type},
            )
            return ReconcileOutcome.IGNORED
        if not self.catalog.is_known(event.plan_id):
            return self._reject(event, f"unknown plan {event.plan_id}", plan_id=event.plan_id)

        record = self._match(event, event.subscription_id, conn)
        if record is None:
            return ReconcileOutcome.UNMATCHED

        fields = dict(
            plan_id=event.plan_id,
            status=SubscriptionStatus.ACTIVE if event.provider_status == "active" else SubscriptionStatus.EXPIRED,
            current_period_end=resolve_period_end(event.timing, now),
            cancelled_at=None,
        )
        if event.price_id:
            fields["provider_price_id"] = event.price_id
        if record.current_period_start is not None and fields["current_period_end"] <= record.current_period_start:
            # Keep end > start: restart the period when the provider end precedes the stored start
            fields["current_period_start"] = now
        self.store.apply_patch(record.account_id, SubscriptionPatch(**fields), now=now, conn=conn)
        return self._applied(event, record.account_id, plan_id=event.plan_id)

    # ----- helpers -----

    def _match(self, event: BillingEvent, subscription_id: Optional[str], conn: Optional[Connection]) -> Optional[SubscriptionRecord]:
        record = None
        if subscription_id:
            record = self.store.find_by_provider_subscription(subscription_id, conn=conn)
        if record is None:
            log_event(
                "info",
                "billing.reconcile.unmatched",
                event_id=event.event_id,
                event_type=event.event_type,
                extra={"provider_subscription_id": subscription_id, "outcome": ReconcileOutcome.UNMATCHED.value},
            )
        return record

    def _reject(self, event: BillingEvent, reason: str, plan_id: Optional[str] = None) -> ReconcileOutcome:
        log_event(
            "warning",
            "billing.reconcile.rejected",
            event_id=event.event_id,
            event_type=event.event_type,
            extra={"reason": reason, "plan_id": plan_id, "outcome": ReconcileOutcome.REJECTED.value},
        )
        return ReconcileOutcome.REJECTED

    def _applied(self, event: BillingEvent, account_id: str, plan_id: Optional[str] = None) -> ReconcileOutcome:
        log_event(
            "info",
            "billing.reconcile.applied",
            account_id=account_id,
            event_id=event.event_id,
            event_type=event.event_type,
            extra={"plan_id": plan_id, "outcome": ReconcileOutcome.APPLIED.value},
        )
        return ReconcileOutcome.APPLIED
