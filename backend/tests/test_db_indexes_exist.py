"""
Test that the required database indexes and constraints exist.

The webhook ledger and the reconciler rely on the unique constraints for
idempotency and subscription matching.
"""

import pytest
from sqlalchemy import inspect, text
from sqlalchemy.exc import IntegrityError


def _unique_columns(inspector, table):
    return {tuple(c["column_names"]) for c in inspector.get_unique_constraints(table)}


def test_subscriptions_constraints(store):
    """Verify subscriptions has one row per account and per provider subscription."""
    inspector = inspect(store.engine)

    uniques = _unique_columns(inspector, "subscriptions")
    assert ("account_id",) in uniques, "Missing UNIQUE on account_id"
    assert ("provider_subscription_id",) in uniques, "Missing UNIQUE on provider_subscription_id"

    indexes = {idx["name"] for idx in inspector.get_indexes("subscriptions")}
    assert "idx_subscriptions_provider_customer_id" in indexes
    assert "idx_subscriptions_plan_status" in indexes


def test_billing_events_constraints(store):
    """Verify the webhook ledger is keyed by provider event id."""
    inspector = inspect(store.engine)

    assert ("provider_event_id",) in _unique_columns(inspector, "billing_events"), \
        "Missing UNIQUE on provider_event_id"

    indexes = {idx["name"] for idx in inspector.get_indexes("billing_events")}
    assert "idx_billing_events_received_at" in indexes
    assert "idx_billing_events_status" in indexes


def test_negative_counters_rejected_by_database(store, fixed_now):
    """Counter CHECK constraints hold even for writes that bypass the models."""
    store.get_or_create("acct_1", now=fixed_now)
    with pytest.raises(IntegrityError):
        with store.engine.begin() as conn:
            conn.execute(text("UPDATE subscriptions SET students_used = -1 WHERE account_id = 'acct_1'"))
