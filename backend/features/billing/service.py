"""
Billing service orchestrator.

Coordinates:
- Hosted checkout and portal sessions
- Post-checkout session verification
- Payment history
- Webhook processing (verify, dedupe, reconcile)

All Stripe-specific code is in stripe_provider.py; state transitions are
in reconciler.py.
"""
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from backend.core.config import Settings, settings as default_settings
from backend.core.errors import (
    NotFoundError,
    PermissionError,
    StoreUnavailableError,
    ValidationError,
    WebhookSignatureError,
)
from backend.core.logging import log_event
from backend.features.billing.ledger import EventLedger
from backend.features.billing.provider import (
    BillingDisabledError,
    BillingProvider,
    CheckoutRequest,
    CheckoutSessionInfo,
    InvoiceSummary,
)
from backend.features.billing.reconciler import BillingReconciler
from backend.features.billing.stripe_provider import StripeProvider
from backend.features.plans.service import DEFAULT_CATALOG, PlanCatalog
from backend.features.subscriptions.persistence import SubscriptionStore
from backend.models.plan import BillingCycle

logger = logging.getLogger(__name__)

INVOICE_HISTORY_LIMIT = 20


def billing_enabled(cfg: Optional[Settings] = None) -> bool:
    """Billing is enabled when a Stripe secret key is configured."""
    cfg = cfg or default_settings
    return bool(cfg.STRIPE_SECRET_KEY)


def build_provider(cfg: Optional[Settings] = None) -> Optional[BillingProvider]:
    """Stripe provider, or None when billing is disabled."""
    cfg = cfg or default_settings
    if not billing_enabled(cfg):
        return None
    return StripeProvider(
        secret_key=cfg.STRIPE_SECRET_KEY,
        webhook_secret=cfg.STRIPE_WEBHOOK_SECRET,
        timeout=cfg.STRIPE_TIMEOUT_SECONDS,
    )


def parse_billing_cycle(value: str) -> BillingCycle:
    try:
        return BillingCycle(value)
    except ValueError:
        raise ValidationError(
            f"Invalid billing cycle: {value} (expected monthly or annual)",
            code="invalid_billing_cycle",
        )


def normalize_origin(origin: str) -> str:
    """Return scheme://host[:port] for a caller-supplied origin."""
    parsed = urlparse(origin or "")
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValidationError(f"Invalid origin: {origin!r}", code="invalid_origin")
    return f"{parsed.scheme}://{parsed.netloc}"


def to_minor_units(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1")))


class BillingService:
    """Provider-backed billing operations for one process."""

    def __init__(
        self,
        store: SubscriptionStore,
        provider: Optional[BillingProvider],
        catalog: PlanCatalog = DEFAULT_CATALOG,
        currency: Optional[str] = None,
        product_prefix: Optional[str] = None,
    ):
        self.store = store
        self.provider = provider
        self.catalog = catalog
        self.currency = (currency or default_settings.BILLING_CURRENCY).lower()
        self.product_prefix = product_prefix or default_settings.CHECKOUT_PRODUCT_PREFIX
        self.reconciler = BillingReconciler(store, catalog)
        self.ledger = EventLedger(store)

    @property
    def enabled(self) -> bool:
        return self.provider is not None

    def _require_provider(self) -> BillingProvider:
        if self.provider is None:
            raise BillingDisabledError("Billing is not configured (STRIPE_SECRET_KEY not set)")
        return self.provider

    # ----- user-initiated -----

    def start_checkout(
        self,
        account_id: str,
        plan_id: str,
        billing_cycle: str,
        origin: str,
        customer_email: Optional[str] = None,
    ) -> str:
        """
        Create a hosted checkout session for a paid plan.

        Validation happens before any provider call.

        Returns:
            Checkout URL

        Raises:
            ValidationError: free/unknown plan, bad billing cycle or origin
            BillingDisabledError: billing not configured
            BillingProviderError: provider failed or timed out
        """
        plan = self.catalog.require_paid_plan(plan_id)
        cycle = parse_billing_cycle(billing_cycle)
        base = normalize_origin(origin)
        provider = self._require_provider()

        record = self.store.get_or_create(account_id)
        request = CheckoutRequest(
            account_id=account_id,
            plan_id=plan.plan_id,
            plan_name=f"{self.product_prefix} - {plan.name}",
            plan_description=plan.description,
            billing_cycle=cycle.value,
            interval=cycle.interval,
            unit_amount=to_minor_units(plan.charge_for(cycle)),
            currency=self.currency,
            success_url=f"{base}/payment/success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{base}/payment/cancel",
            customer_id=record.provider_customer_id,
            customer_email=None if record.provider_customer_id else customer_email,
            metadata={"account_id": account_id, "plan_id": plan.plan_id, "billing_cycle": cycle.value},
        )
        url = provider.create_checkout_session(request)
        log_event(
            "info",
            "billing.checkout.created",
            account_id=account_id,
            extra={"plan_id": plan.plan_id, "billing_cycle": cycle.value},
        )
        return url

    def start_portal(self, account_id: str, origin: str) -> str:
        """Billing portal URL for an account that already has a provider customer."""
        base = normalize_origin(origin)
        provider = self._require_provider()
        record = self.store.get_or_create(account_id)
        if not record.provider_customer_id:
            raise NotFoundError("No billing customer for this account", code="customer_not_found")
        return provider.create_portal_session(record.provider_customer_id, f"{base}/plans")

    def verify_session(self, account_id: str, session_id: str) -> CheckoutSessionInfo:
        if not session_id:
            raise ValidationError("session_id is required")
        provider = self._require_provider()
        info = provider.retrieve_checkout_session(session_id)
        if info is None:
            raise NotFoundError(f"Checkout session not found: {session_id}", code="session_not_found")
        if info.account_id and info.account_id != account_id:
            raise PermissionError("Checkout session belongs to another account")
        return info

    def payment_history(self, account_id: str) -> List[InvoiceSummary]:
        """Invoices newest first; empty before the first paid checkout."""
        record = self.store.get_or_create(account_id)
        if not record.provider_customer_id:
            return []
        provider = self._require_provider()
        return provider.list_invoices(record.provider_customer_id, limit=INVOICE_HISTORY_LIMIT)

    # ----- provider-initiated -----

    def process_webhook(
        self,
        headers: Dict[str, str],
        body: bytes,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Process a billing webhook delivery (idempotent).

        1. Verify signature and parse into a typed event (no state touched)
        2. Acknowledge test probes and already-processed events
        3. Record the attempt in the ledger
        4. Apply the transition and mark the ledger in one transaction

        Returns:
            Acknowledgement body

        Raises:
            WebhookSignatureError: signature invalid or payload malformed
            BillingProviderError / StoreUnavailableError: transient, provider redelivers
        """
        provider = self._require_provider()
        try:
            event = provider.parse_webhook(headers, body)
        except WebhookSignatureError as e:
            log_event(
                "warning",
                "billing.webhook.signature_rejected",
                error_code=e.code,
                extra={"reason": e.message},
            )
            raise

        if event.is_test_probe:
            log_event("info", "billing.webhook.test_event", event_id=event.event_id, event_type=event.event_type)
            return {"received": True, "verified": True}

        if self.ledger.is_processed(event.event_id):
            log_event(
                "info",
                "billing.webhook.duplicate",
                event_id=event.event_id,
                event_type=event.event_type,
            )
            return {"received": True, "duplicate": True}

        now = now or datetime.now(timezone.utc)
        self.ledger.record_attempt(event.event_id, event.event_type, body, now=now)
        try:
            with self.store.transaction() as conn:
                outcome = self.reconciler.apply(event, now=now, conn=conn)
                self.ledger.mark_processed(event.event_id, outcome.value, now=now, conn=conn)
        except Exception as e:
            self._mark_failed(event.event_id, e)
            raise

        return {"received": True}

    def _mark_failed(self, event_id: str, error: Exception) -> None:
        try:
            self.ledger.mark_failed(event_id, f"{type(error).__name__}: {error}")
        except StoreUnavailableError:
            logger.error("[billing] could not record failed event", extra={"event_id": event_id})
