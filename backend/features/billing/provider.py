"""
Billing provider protocol.

Defines the interface for billing providers (Stripe, etc.) and the typed
events a provider produces after verifying an inbound webhook. Business
logic depends on these types only, never on provider payloads.
"""
from typing import Protocol, Dict, Any, List, Optional
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from backend.core.errors import ServiceUnavailableError, WebhookSignatureError


# ----- typed events -----

@dataclass(frozen=True)
class SubscriptionTiming:
    """Provider subscription schedule used for period-end computation."""
    anchor: datetime
    interval: str  # month | year
    interval_count: int = 1
    cancel_at: Optional[datetime] = None
    period_end: Optional[datetime] = None  # explicit end, when the provider reports one


@dataclass(frozen=True)
class BillingEvent:
    event_id: str
    event_type: str

    @property
    def is_test_probe(self) -> bool:
        """Provider dashboard test deliveries carry ids prefixed evt_test_."""
        return self.event_id.startswith("evt_test_")


@dataclass(frozen=True)
class CheckoutCompleted(BillingEvent):
    account_id: Optional[str]
    plan_id: Optional[str]
    billing_cycle: Optional[str]
    customer_id: Optional[str]
    subscription_id: Optional[str]
    price_id: Optional[str] = None
    timing: Optional[SubscriptionTiming] = None


@dataclass(frozen=True)
class InvoicePaid(BillingEvent):
    subscription_id: Optional[str]
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None


@dataclass(frozen=True)
class InvoicePaymentFailed(BillingEvent):
    subscription_id: Optional[str]


@dataclass(frozen=True)
class SubscriptionDeleted(BillingEvent):
    subscription_id: Optional[str]


@dataclass(frozen=True)
class SubscriptionUpdated(BillingEvent):
    subscription_id: Optional[str]
    plan_id: Optional[str]
    provider_status: Optional[str]
    price_id: Optional[str] = None
    timing: Optional[SubscriptionTiming] = None


@dataclass(frozen=True)
class UnhandledEvent(BillingEvent):
    """Verified event of a type the reconciler does not act on."""


# ----- read models returned by provider calls -----

@dataclass(frozen=True)
class CheckoutRequest:
    account_id: str
    plan_id: str
    plan_name: str
    plan_description: str
    billing_cycle: str
    interval: str
    unit_amount: int  # minor units
    currency: str
    success_url: str
    cancel_url: str
    customer_id: Optional[str] = None
    customer_email: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class CheckoutSessionInfo:
    session_id: str
    status: Optional[str]
    account_id: Optional[str]
    plan_id: Optional[str]
    billing_cycle: Optional[str]


@dataclass(frozen=True)
class InvoiceSummary:
    invoice_id: str
    date: datetime
    amount: Decimal  # major units
    currency: str
    status: Optional[str]
    document_url: Optional[str]
    description: str


class BillingProvider(Protocol):
    """
    Protocol for billing providers.

    Implementations must handle:
    - Checkout session creation and read-back
    - Portal session creation
    - Invoice listing
    - Webhook signature verification and parsing into typed events
    """

    def create_checkout_session(self, request: CheckoutRequest) -> str:
        """
        Create a hosted checkout session.

        Returns:
            Checkout session URL

        Raises:
            BillingProviderError: If session creation fails or times out
        """
        ...

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        """
        Create a billing portal session for customer self-service.

        Returns:
            Portal session URL

        Raises:
            BillingProviderError: If portal session creation fails
        """
        ...

    def retrieve_checkout_session(self, session_id: str) -> Optional[CheckoutSessionInfo]:
        """Read a checkout session back; None when the provider has no such session."""
        ...

    def list_invoices(self, customer_id: str, limit: int = 20) -> List[InvoiceSummary]:
        """List a customer's invoices, newest first."""
        ...

    def parse_webhook(self, headers: Dict[str, str], body: bytes) -> BillingEvent:
        """
        Verify webhook signature and parse event.

        Args:
            headers: HTTP headers (must include signature header)
            body: Raw webhook body (for signature verification)

        Returns:
            Typed billing event

        Raises:
            BillingWebhookError: If signature invalid or payload malformed
            BillingProviderError: If enrichment calls to the provider fail
        """
        ...


class BillingProviderError(ServiceUnavailableError):
    """Provider unreachable, timed out or returned an error."""
    code = "billing_provider_unavailable"


class BillingDisabledError(ServiceUnavailableError):
    code = "billing_disabled"


class BillingWebhookError(WebhookSignatureError):
    """Exception for webhook authenticity/parsing failures."""
    pass
