"""Tests for the subscription invariant audit and its admin endpoint."""
import logging
from datetime import timedelta

from fastapi.testclient import TestClient

from backend.features.billing.reconcile_job import find_issues, run_reconcile_job
from backend.main import create_app
from backend.models.subscription import SubscriptionStatus

ADMIN_KEY = "test-admin-key"


def issue_types(record):
    return [issue["type"] for issue in find_issues(record)]


def test_clean_records_have_no_issues(seed):
    assert issue_types(seed("acct_free")) == []
    assert issue_types(seed("acct_paid", plan_id="basic", provider_subscription_id="sub_1")) == []


def test_unknown_plan(seed):
    assert issue_types(seed("acct_1", plan_id="platinum")) == ["unknown_plan"]


def test_paid_active_without_provider_subscription(seed):
    assert issue_types(seed("acct_1", plan_id="basic")) == ["paid_active_without_provider_subscription"]
    # Expired paid plans without a subscription are not flagged
    assert issue_types(seed("acct_2", plan_id="basic", status=SubscriptionStatus.EXPIRED)) == []


def test_inverted_period(seed, fixed_now):
    rec = seed("acct_1", current_period_start=fixed_now, current_period_end=fixed_now - timedelta(days=1))
    assert issue_types(rec) == ["period_end_not_after_start"]


def test_cancelled_without_timestamp(seed):
    rec = seed("acct_1", status=SubscriptionStatus.CANCELLED)
    assert issue_types(rec) == ["cancelled_without_timestamp"]


def test_run_reconcile_job_reports_and_logs(store, seed, fixed_now, caplog):
    seed("acct_ok")
    seed("acct_bad", plan_id="basic")

    with caplog.at_level(logging.WARNING, logger="inclusiva"):
        result = run_reconcile_job(store, now=fixed_now)

    assert result["records_checked"] == 2
    assert result["issues_found"] == 1
    assert result["issues"][0]["account_id"] == "acct_bad"
    assert result["timestamp"] == fixed_now.isoformat()
    violations = [r for r in caplog.records if r.getMessage() == "billing.invariant.violation"]
    assert len(violations) == 1
    # Report-only
    assert store.get("acct_bad").plan_id == "basic"


def test_admin_reconcile_requires_key(client):
    resp = client.get("/api/admin/billing/reconcile")
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "admin_unauthorized"

    resp = client.get("/api/admin/billing/reconcile", headers={"X-Admin-Key": "wrong"})
    assert resp.status_code == 403


def test_admin_reconcile_returns_audit(client, seed):
    seed("acct_bad", plan_id="basic")
    resp = client.get("/api/admin/billing/reconcile", headers={"X-Admin-Key": ADMIN_KEY})

    assert resp.status_code == 200
    body = resp.json()
    assert body["records_checked"] == 1
    assert body["issues"][0]["type"] == "paid_active_without_provider_subscription"


def test_admin_reconcile_without_configured_key(test_settings, store):
    cfg = test_settings.model_copy(update={"ADMIN_KEY": None})
    client = TestClient(create_app(settings=cfg, store=store))

    resp = client.get("/api/admin/billing/reconcile", headers={"X-Admin-Key": ADMIN_KEY})

    assert resp.status_code == 503
    assert resp.json()["error"]["code"] == "admin_auth_unconfigured"
