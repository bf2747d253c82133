"""
Billing API routes.

- POST /api/billing/checkout: Create checkout session
- POST /api/billing/portal: Create portal session
- GET  /api/billing/verify-session: Read a checkout session back
- GET  /api/billing/invoices: Payment history
- POST /api/billing/webhook: Handle Stripe webhooks
"""
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from backend.api.deps import get_billing_service
from backend.core.auth import AccountIdentity, get_current_account_id, get_current_identity
from backend.features.billing.service import BillingService
from backend.models.plan import BillingCycle


router = APIRouter(prefix="/billing", tags=["billing"])


class CheckoutRequest(BaseModel):
    """Request to create checkout session."""
    plan_id: str
    billing_cycle: str = BillingCycle.MONTHLY.value
    origin: str


class PortalRequest(BaseModel):
    """Request to create portal session."""
    origin: str


class UrlResponse(BaseModel):
    """Response with a provider redirect URL."""
    url: str


class SessionStatusResponse(BaseModel):
    status: Optional[str]
    plan_id: Optional[str]
    billing_cycle: Optional[str]


class InvoiceResponse(BaseModel):
    id: str
    date: datetime
    amount: Decimal
    currency: str
    status: Optional[str]
    pdf_url: Optional[str]
    description: str


@router.post("/checkout", response_model=UrlResponse)
def create_checkout(
    body: CheckoutRequest,
    identity: AccountIdentity = Depends(get_current_identity),
    service: BillingService = Depends(get_billing_service),
):
    """
    Create Stripe checkout session.

    Errors:
        400: Invalid plan_id, billing_cycle or origin
        503: Billing disabled or Stripe unavailable
    """
    url = service.start_checkout(
        identity.account_id,
        body.plan_id,
        body.billing_cycle,
        body.origin,
        customer_email=identity.email,
    )
    return UrlResponse(url=url)


@router.post("/portal", response_model=UrlResponse)
def create_portal(
    body: PortalRequest,
    account_id: str = Depends(get_current_account_id),
    service: BillingService = Depends(get_billing_service),
):
    """
    Create Stripe billing portal session.

    Errors:
        404: Account has no billing customer yet
        503: Billing disabled or Stripe unavailable
    """
    return UrlResponse(url=service.start_portal(account_id, body.origin))


@router.get("/verify-session", response_model=SessionStatusResponse)
def verify_session(
    session_id: str = Query(..., min_length=1),
    account_id: str = Depends(get_current_account_id),
    service: BillingService = Depends(get_billing_service),
):
    info = service.verify_session(account_id, session_id)
    return SessionStatusResponse(status=info.status, plan_id=info.plan_id, billing_cycle=info.billing_cycle)


@router.get("/invoices", response_model=List[InvoiceResponse])
def list_invoices(
    account_id: str = Depends(get_current_account_id),
    service: BillingService = Depends(get_billing_service),
):
    return [
        InvoiceResponse(
            id=invoice.invoice_id,
            date=invoice.date,
            amount=invoice.amount,
            currency=invoice.currency,
            status=invoice.status,
            pdf_url=invoice.document_url,
            description=invoice.description,
        )
        for invoice in service.payment_history(account_id)
    ]


@router.post("/webhook")
async def stripe_webhook(request: Request, service: BillingService = Depends(get_billing_service)):
    """
    Handle Stripe webhook events.

    The raw body is read before any parsing so the signature covers the
    exact bytes Stripe sent.

    Returns:
        {"received": true}

    Errors:
        400: Invalid signature or payload
        503: Billing disabled, store or Stripe unavailable (Stripe retries)
        500: Unexpected processing failure (Stripe retries)
    """
    body = await request.body()
    return await run_in_threadpool(service.process_webhook, dict(request.headers), body)
