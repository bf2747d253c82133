"""
Tests for the Stripe provider.

Webhook signatures are computed for real (t=...,v1=HMAC-SHA256) so the
SDK's verification path runs; outbound API calls are patched.
"""
import json
import time
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import patch

import pytest
import stripe

from backend.features.billing.provider import (
    BillingProviderError,
    BillingWebhookError,
    CheckoutCompleted,
    CheckoutRequest,
    InvoicePaid,
    InvoicePaymentFailed,
    SubscriptionDeleted,
    SubscriptionUpdated,
    UnhandledEvent,
)
from backend.features.billing.stripe_provider import StripeProvider

WEBHOOK_SECRET = "whsec_test_secret"


def ts(*args):
    return int(datetime(*args, tzinfo=timezone.utc).timestamp())


@pytest.fixture
def provider():
    return StripeProvider(secret_key="sk_test_dummy", webhook_secret=WEBHOOK_SECRET, timeout=5)


def deliver(provider, stripe_signer, event, secret=WEBHOOK_SECRET, timestamp=None):
    payload = json.dumps(event)
    headers = {"Stripe-Signature": stripe_signer(payload, secret, timestamp)}
    return provider.parse_webhook(headers, payload.encode("utf-8"))


def subscription_payload(**overrides):
    sub = {
        "id": "sub_1",
        "object": "subscription",
        "status": "active",
        "billing_cycle_anchor": ts(2025, 1, 10),
        "cancel_at": None,
        "metadata": {"account_id": "acct_1", "plan_id": "basic", "billing_cycle": "monthly"},
        "items": {
            "data": [
                {
                    "price": {"id": "price_basic", "recurring": {"interval": "month", "interval_count": 1}},
                    "current_period_end": ts(2025, 4, 10),
                }
            ]
        },
    }
    sub.update(overrides)
    return sub


# ----- signature handling -----


def test_missing_signature_header_rejected(provider):
    with pytest.raises(BillingWebhookError) as exc:
        provider.parse_webhook({}, b'{"id": "evt_1", "type": "invoice.paid"}')
    assert exc.value.code == "invalid_signature"
    assert exc.value.status_code == 400


def test_wrong_secret_rejected(provider, stripe_signer):
    with pytest.raises(BillingWebhookError):
        deliver(provider, stripe_signer, {"id": "evt_1", "type": "invoice.paid"}, secret="whsec_other")


def test_stale_timestamp_rejected(provider, stripe_signer):
    with pytest.raises(BillingWebhookError):
        deliver(provider, stripe_signer, {"id": "evt_1", "type": "invoice.paid"}, timestamp=int(time.time()) - 3600)


def test_tampered_body_rejected(provider, stripe_signer):
    payload = json.dumps({"id": "evt_1", "type": "invoice.paid"})
    headers = {"stripe-signature": stripe_signer(payload)}
    with pytest.raises(BillingWebhookError):
        provider.parse_webhook(headers, payload.replace("evt_1", "evt_2").encode())


def test_payload_without_id_rejected(provider, stripe_signer):
    with pytest.raises(BillingWebhookError):
        deliver(provider, stripe_signer, {"type": "invoice.paid"})


def test_missing_webhook_secret_rejected(stripe_signer):
    p = StripeProvider(secret_key="sk_test_dummy", webhook_secret=WEBHOOK_SECRET, timeout=5)
    p.webhook_secret = None
    with pytest.raises(BillingWebhookError):
        deliver(p, stripe_signer, {"id": "evt_1", "type": "invoice.paid"})


def test_non_utf8_body_rejected(provider):
    with pytest.raises(BillingWebhookError) as exc:
        provider.parse_webhook({"Stripe-Signature": "t=1,v1=abc"}, b"\xff\xfe{not utf8")
    assert "encoding" in exc.value.message
    assert exc.value.status_code == 400


# ----- event parsing -----


def test_invoice_paid_parsed_with_line_period(provider, stripe_signer):
    event = {
        "id": "evt_inv_1",
        "type": "invoice.paid",
        "data": {
            "object": {
                "id": "in_1",
                "parent": {"subscription_details": {"subscription": "sub_1"}},
                "period_start": ts(2025, 2, 10),
                "period_end": ts(2025, 3, 10),
                "lines": {"data": [{"period": {"start": ts(2025, 3, 10), "end": ts(2025, 4, 10)}}]},
            }
        },
    }
    parsed = deliver(provider, stripe_signer, event)
    assert isinstance(parsed, InvoicePaid)
    assert parsed.subscription_id == "sub_1"
    assert parsed.period_start == datetime(2025, 3, 10, tzinfo=timezone.utc)
    assert parsed.period_end == datetime(2025, 4, 10, tzinfo=timezone.utc)


def test_invoice_payment_failed_legacy_subscription_field(provider, stripe_signer):
    event = {"id": "evt_f", "type": "invoice.payment_failed", "data": {"object": {"subscription": "sub_9"}}}
    parsed = deliver(provider, stripe_signer, event)
    assert isinstance(parsed, InvoicePaymentFailed)
    assert parsed.subscription_id == "sub_9"


def test_subscription_deleted_parsed(provider, stripe_signer):
    event = {"id": "evt_d", "type": "customer.subscription.deleted", "data": {"object": {"id": "sub_1"}}}
    parsed = deliver(provider, stripe_signer, event)
    assert isinstance(parsed, SubscriptionDeleted)
    assert parsed.subscription_id == "sub_1"


def test_subscription_updated_parsed_with_timing(provider, stripe_signer):
    event = {
        "id": "evt_u",
        "type": "customer.subscription.updated",
        "data": {"object": subscription_payload(cancel_at=ts(2025, 5, 1))},
    }
    parsed = deliver(provider, stripe_signer, event)
    assert isinstance(parsed, SubscriptionUpdated)
    assert parsed.plan_id == "basic"
    assert parsed.provider_status == "active"
    assert parsed.price_id == "price_basic"
    assert parsed.timing.interval == "month"
    assert parsed.timing.anchor == datetime(2025, 1, 10, tzinfo=timezone.utc)
    assert parsed.timing.cancel_at == datetime(2025, 5, 1, tzinfo=timezone.utc)
    assert parsed.timing.period_end == datetime(2025, 4, 10, tzinfo=timezone.utc)


def test_checkout_completed_enriched_from_subscription(provider, stripe_signer):
    event = {
        "id": "evt_c",
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": "cs_1",
                "client_reference_id": "acct_1",
                "customer": "cus_1",
                "subscription": "sub_1",
                "metadata": {"account_id": "acct_1", "plan_id": "basic", "billing_cycle": "monthly"},
            }
        },
    }
    with patch("backend.features.billing.stripe_provider.stripe.Subscription.retrieve", return_value=subscription_payload()) as retrieve:
        parsed = deliver(provider, stripe_signer, event)

    retrieve.assert_called_once_with("sub_1")
    assert isinstance(parsed, CheckoutCompleted)
    assert parsed.account_id == "acct_1"
    assert parsed.plan_id == "basic"
    assert parsed.customer_id == "cus_1"
    assert parsed.subscription_id == "sub_1"
    assert parsed.price_id == "price_basic"
    assert parsed.timing.anchor == datetime(2025, 1, 10, tzinfo=timezone.utc)


def test_checkout_completed_falls_back_to_client_reference(provider, stripe_signer):
    event = {
        "id": "evt_test_c",
        "type": "checkout.session.completed",
        "data": {"object": {"client_reference_id": "acct_2", "subscription": "sub_2", "metadata": {"plan_id": "starter"}}},
    }
    with patch("backend.features.billing.stripe_provider.stripe.Subscription.retrieve") as retrieve:
        parsed = deliver(provider, stripe_signer, event)
    retrieve.assert_not_called()
    assert parsed.account_id == "acct_2"
    assert parsed.is_test_probe


def test_checkout_enrichment_failure_is_transient(provider, stripe_signer):
    event = {
        "id": "evt_c",
        "type": "checkout.session.completed",
        "data": {"object": {"subscription": "sub_1", "metadata": {"account_id": "acct_1", "plan_id": "basic"}}},
    }
    with patch(
        "backend.features.billing.stripe_provider.stripe.Subscription.retrieve",
        side_effect=stripe.APIConnectionError("network down"),
    ):
        with pytest.raises(BillingProviderError) as exc:
            deliver(provider, stripe_signer, event)
    assert exc.value.status_code == 503


def test_unknown_event_type(provider, stripe_signer):
    parsed = deliver(provider, stripe_signer, {"id": "evt_o", "type": "customer.created", "data": {"object": {}}})
    assert isinstance(parsed, UnhandledEvent)
    assert parsed.event_type == "customer.created"


# ----- outbound calls -----


def make_checkout_request(**overrides):
    fields = dict(
        account_id="acct_1",
        plan_id="basic",
        plan_name="Plataforma Inclusiva - Básico",
        plan_description="Profissional individual",
        billing_cycle="annual",
        interval="year",
        unit_amount=86280,
        currency="brl",
        success_url="https://app.test/payment/success?session_id={CHECKOUT_SESSION_ID}",
        cancel_url="https://app.test/payment/cancel",
        metadata={"account_id": "acct_1", "plan_id": "basic", "billing_cycle": "annual"},
    )
    fields.update(overrides)
    return CheckoutRequest(**fields)


def test_create_checkout_session_params(provider):
    with patch(
        "backend.features.billing.stripe_provider.stripe.checkout.Session.create",
        return_value={"url": "https://checkout.stripe.test/cs_1"},
    ) as create:
        url = provider.create_checkout_session(make_checkout_request(customer_email="a@example.com"))

    assert url == "https://checkout.stripe.test/cs_1"
    kwargs = create.call_args.kwargs
    assert kwargs["mode"] == "subscription"
    assert kwargs["allow_promotion_codes"] is True
    assert kwargs["client_reference_id"] == "acct_1"
    assert kwargs["customer_email"] == "a@example.com"
    assert "customer" not in kwargs
    price_data = kwargs["line_items"][0]["price_data"]
    assert price_data["unit_amount"] == 86280
    assert price_data["currency"] == "brl"
    assert price_data["recurring"] == {"interval": "year"}
    assert kwargs["metadata"]["plan_id"] == "basic"
    assert kwargs["subscription_data"]["metadata"]["billing_cycle"] == "annual"


def test_create_checkout_session_reuses_customer(provider):
    with patch(
        "backend.features.billing.stripe_provider.stripe.checkout.Session.create",
        return_value={"url": "https://checkout.stripe.test/cs_2"},
    ) as create:
        provider.create_checkout_session(make_checkout_request(customer_id="cus_1", customer_email="a@example.com"))
    kwargs = create.call_args.kwargs
    assert kwargs["customer"] == "cus_1"
    assert "customer_email" not in kwargs


def test_checkout_provider_error_mapped(provider):
    with patch(
        "backend.features.billing.stripe_provider.stripe.checkout.Session.create",
        side_effect=stripe.APIConnectionError("timeout"),
    ):
        with pytest.raises(BillingProviderError) as exc:
            provider.create_checkout_session(make_checkout_request())
    assert exc.value.code == "billing_provider_unavailable"


def test_retrieve_missing_session_returns_none(provider):
    error = stripe.InvalidRequestError("No such checkout session", "id", code="resource_missing")
    with patch("backend.features.billing.stripe_provider.stripe.checkout.Session.retrieve", side_effect=error):
        assert provider.retrieve_checkout_session("cs_missing") is None


def test_retrieve_session_reads_metadata(provider):
    session = {"id": "cs_1", "status": "complete", "metadata": {"account_id": "acct_1", "plan_id": "basic", "billing_cycle": "monthly"}}
    with patch("backend.features.billing.stripe_provider.stripe.checkout.Session.retrieve", return_value=session):
        info = provider.retrieve_checkout_session("cs_1")
    assert (info.status, info.account_id, info.plan_id, info.billing_cycle) == ("complete", "acct_1", "basic", "monthly")


def test_list_invoices_maps_fields(provider):
    invoices = {
        "data": [
            {
                "id": "in_1",
                "created": ts(2025, 3, 1),
                "amount_paid": 8990,
                "currency": "brl",
                "status": "paid",
                "invoice_pdf": "https://stripe.test/in_1.pdf",
                "lines": {"data": [{"description": "1 × Básico"}]},
            },
            {"id": "in_0", "created": ts(2025, 2, 1), "amount_paid": 0, "currency": "brl", "status": "void", "lines": {"data": []}},
        ]
    }
    with patch("backend.features.billing.stripe_provider.stripe.Invoice.list", return_value=invoices) as list_call:
        result = provider.list_invoices("cus_1")

    list_call.assert_called_once_with(customer="cus_1", limit=20)
    assert result[0].invoice_id == "in_1"
    assert result[0].amount == Decimal("89.90")
    assert result[0].currency == "BRL"
    assert result[0].document_url == "https://stripe.test/in_1.pdf"
    assert result[0].description == "1 × Básico"
    assert result[1].description == "Subscription"
    assert result[1].document_url is None


def test_provider_requires_secret_key():
    with patch("backend.features.billing.stripe_provider.settings") as cfg:
        cfg.STRIPE_SECRET_KEY = None
        with pytest.raises(BillingProviderError):
            StripeProvider(secret_key=None)
