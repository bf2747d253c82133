"""
Stripe billing provider implementation.

Implements BillingProvider protocol using the Stripe API.
Handles webhook signature verification and event parsing.
"""
import json
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Any, List, Optional

import stripe

from backend.core.config import settings
from backend.features.billing.provider import (
    BillingEvent,
    BillingProviderError,
    BillingWebhookError,
    CheckoutCompleted,
    CheckoutRequest,
    CheckoutSessionInfo,
    InvoicePaid,
    InvoicePaymentFailed,
    InvoiceSummary,
    SubscriptionDeleted,
    SubscriptionTiming,
    SubscriptionUpdated,
    UnhandledEvent,
)

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "stripe-signature"
# Seconds a signed payload stays valid (Stripe library default)
SIGNATURE_TOLERANCE = 300


def _field(obj: Any, key: str, default: Any = None) -> Any:
    """Read a key from a dict or StripeObject, tolerating absence and None."""
    if obj is None or isinstance(obj, str):
        return default
    try:
        value = obj[key]
    except (KeyError, IndexError, TypeError):
        return default
    return default if value is None else value


def _ts(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _id_of(value: Any) -> Optional[str]:
    """Expandable fields arrive either as an id string or an expanded object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return _field(value, "id")


def _first_item(subscription: Any) -> Any:
    items = _field(_field(subscription, "items"), "data", [])
    return items[0] if items else None


def subscription_timing(subscription: Any) -> Optional[SubscriptionTiming]:
    """Extract the period schedule from a Stripe subscription payload."""
    anchor = _ts(_field(subscription, "billing_cycle_anchor"))
    if anchor is None:
        return None
    item = _first_item(subscription)
    recurring = _field(_field(item, "price"), "recurring") or _field(item, "plan")
    period_end = _field(subscription, "current_period_end") or _field(item, "current_period_end")
    return SubscriptionTiming(
        anchor=anchor,
        interval=_field(recurring, "interval", "month"),
        interval_count=int(_field(recurring, "interval_count", 1)),
        cancel_at=_ts(_field(subscription, "cancel_at")),
        period_end=_ts(period_end),
    )


def subscription_price_id(subscription: Any) -> Optional[str]:
    return _field(_field(_first_item(subscription), "price"), "id")


def invoice_subscription_id(invoice: Any) -> Optional[str]:
    """Newer API versions nest the subscription under parent.subscription_details."""
    details = _field(_field(invoice, "parent"), "subscription_details")
    return _id_of(_field(details, "subscription")) or _id_of(_field(invoice, "subscription"))


def invoice_service_period(invoice: Any) -> tuple[Optional[datetime], Optional[datetime]]:
    """Service period of the first line item, falling back to the invoice period."""
    lines = _field(_field(invoice, "lines"), "data", [])
    period = _field(lines[0], "period") if lines else None
    start = _field(period, "start") or _field(invoice, "period_start")
    end = _field(period, "end") or _field(invoice, "period_end")
    return _ts(start), _ts(end)


class StripeProvider:
    """Stripe implementation of BillingProvider protocol."""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        """
        Initialize Stripe provider.

        Args:
            secret_key: Stripe secret key (defaults to settings.STRIPE_SECRET_KEY)
            webhook_secret: Stripe webhook secret (defaults to settings.STRIPE_WEBHOOK_SECRET)
            timeout: Single bounded timeout for provider calls, in seconds
        """
        self.secret_key = secret_key or settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET
        self.timeout = timeout or settings.STRIPE_TIMEOUT_SECONDS

        if not self.secret_key:
            raise BillingProviderError("STRIPE_SECRET_KEY not configured")

        stripe.api_key = self.secret_key
        # Fail fast: the user retries by resubmitting, not the SDK
        stripe.max_network_retries = 0
        stripe.default_http_client = stripe.RequestsClient(timeout=self.timeout)

    # ----- outbound calls -----

    def create_checkout_session(self, request: CheckoutRequest) -> str:
        """Create Stripe checkout session with inline recurring price data."""
        product_data: Dict[str, Any] = {
            "name": request.plan_name,
            "metadata": {"plan_id": request.plan_id},
        }
        if request.plan_description:
            product_data["description"] = request.plan_description

        params: Dict[str, Any] = {
            "mode": "subscription",
            "payment_method_types": ["card"],
            "allow_promotion_codes": True,
            "line_items": [
                {
                    "price_data": {
                        "currency": request.currency,
                        "product_data": product_data,
                        "unit_amount": request.unit_amount,
                        "recurring": {"interval": request.interval},
                    },
                    "quantity": 1,
                }
            ],
            "subscription_data": {"metadata": dict(request.metadata)},
            "client_reference_id": request.account_id,
            "metadata": dict(request.metadata),
            "success_url": request.success_url,
            "cancel_url": request.cancel_url,
        }
        if request.customer_id:
            params["customer"] = request.customer_id
        elif request.customer_email:
            params["customer_email"] = request.customer_email

        try:
            session = stripe.checkout.Session.create(**params)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe checkout session creation failed: {e.user_message or e}") from e
        return _field(session, "url")

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        """Create Stripe billing portal session."""
        try:
            session = stripe.billing_portal.Session.create(
                customer=customer_id,
                return_url=return_url,
            )
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe portal session creation failed: {e.user_message or e}") from e
        return _field(session, "url")

    def retrieve_checkout_session(self, session_id: str) -> Optional[CheckoutSessionInfo]:
        try:
            session = stripe.checkout.Session.retrieve(session_id)
        except stripe.InvalidRequestError as e:
            if getattr(e, "code", None) == "resource_missing":
                return None
            raise BillingProviderError(f"Stripe checkout session lookup failed: {e.user_message or e}") from e
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe checkout session lookup failed: {e.user_message or e}") from e

        metadata = _field(session, "metadata", {})
        return CheckoutSessionInfo(
            session_id=_field(session, "id", session_id),
            status=_field(session, "status"),
            account_id=_field(metadata, "account_id") or _field(session, "client_reference_id"),
            plan_id=_field(metadata, "plan_id"),
            billing_cycle=_field(metadata, "billing_cycle"),
        )

    def list_invoices(self, customer_id: str, limit: int = 20) -> List[InvoiceSummary]:
        try:
            invoices = stripe.Invoice.list(customer=customer_id, limit=limit)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe invoice listing failed: {e.user_message or e}") from e

        summaries = []
        for invoice in _field(invoices, "data", []):
            lines = _field(_field(invoice, "lines"), "data", [])
            description = _field(lines[0], "description") if lines else None
            summaries.append(
                InvoiceSummary(
                    invoice_id=_field(invoice, "id"),
                    date=_ts(_field(invoice, "created", 0)),
                    amount=Decimal(_field(invoice, "amount_paid", 0)) / Decimal(100),
                    currency=str(_field(invoice, "currency", "")).upper(),
                    status=_field(invoice, "status"),
                    document_url=_field(invoice, "invoice_pdf"),
                    description=description or "Subscription",
                )
            )
        return summaries

    def retrieve_subscription(self, subscription_id: str) -> Any:
        try:
            return stripe.Subscription.retrieve(subscription_id)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription lookup failed: {e.user_message or e}") from e

    # ----- inbound webhooks -----

    def parse_webhook(self, headers: Dict[str, str], body: bytes) -> BillingEvent:
        """Verify Stripe webhook signature and parse event."""
        if not self.webhook_secret:
            raise BillingWebhookError("STRIPE_WEBHOOK_SECRET not configured")

        lowered = {k.lower(): v for k, v in headers.items()}
        sig_header = lowered.get(SIGNATURE_HEADER)
        if not sig_header:
            raise BillingWebhookError("Missing stripe-signature header")

        try:
            payload = body.decode("utf-8") if isinstance(body, (bytes, bytearray)) else body
        except UnicodeDecodeError as e:
            raise BillingWebhookError("Invalid payload encoding") from e

        try:
            stripe.WebhookSignature.verify_header(
                payload, sig_header, self.webhook_secret, SIGNATURE_TOLERANCE
            )
        except stripe.SignatureVerificationError as e:
            raise BillingWebhookError(f"Invalid signature: {e}") from e

        try:
            event = json.loads(payload)
        except ValueError as e:
            raise BillingWebhookError(f"Invalid payload: {e}") from e
        if not isinstance(event, dict) or "id" not in event or "type" not in event:
            raise BillingWebhookError("Invalid payload: missing event id or type")

        return self._parse_event(event)

    def _parse_event(self, event: Dict[str, Any]) -> BillingEvent:
        """Parse Stripe event into a typed BillingEvent."""
        event_type = event["type"]
        event_id = event["id"]
        data = _field(_field(event, "data"), "object", {})

        if event_type == "checkout.session.completed":
            return self._parse_checkout_completed(event_id, event_type, data)

        if event_type == "invoice.paid":
            period_start, period_end = invoice_service_period(data)
            return InvoicePaid(
                event_id=event_id,
                event_type=event_type,
                subscription_id=invoice_subscription_id(data),
                period_start=period_start,
                period_end=period_end,
            )

        if event_type == "invoice.payment_failed":
            return InvoicePaymentFailed(
                event_id=event_id,
                event_type=event_type,
                subscription_id=invoice_subscription_id(data),
            )

        if event_type == "customer.subscription.deleted":
            return SubscriptionDeleted(
                event_id=event_id,
                event_type=event_type,
                subscription_id=_field(data, "id"),
            )

        if event_type == "customer.subscription.updated":
            return SubscriptionUpdated(
                event_id=event_id,
                event_type=event_type,
                subscription_id=_field(data, "id"),
                plan_id=_field(_field(data, "metadata"), "plan_id"),
                provider_status=_field(data, "status"),
                price_id=subscription_price_id(data),
                timing=subscription_timing(data),
            )

        return UnhandledEvent(event_id=event_id, event_type=event_type)

    def _parse_checkout_completed(self, event_id: str, event_type: str, session: Any) -> CheckoutCompleted:
        metadata = _field(session, "metadata", {})
        subscription_id = _id_of(_field(session, "subscription"))

        timing = None
        price_id = None
        if subscription_id and not event_id.startswith("evt_test_"):
            # Session payloads carry only the id; period and price live on the subscription
            subscription = self.retrieve_subscription(subscription_id)
            timing = subscription_timing(subscription)
            price_id = subscription_price_id(subscription)

        return CheckoutCompleted(
            event_id=event_id,
            event_type=event_type,
            account_id=_field(metadata, "account_id") or _field(session, "client_reference_id"),
            plan_id=_field(metadata, "plan_id"),
            billing_cycle=_field(metadata, "billing_cycle"),
            customer_id=_id_of(_field(session, "customer")),
            subscription_id=subscription_id,
            price_id=price_id,
            timing=timing,
        )
