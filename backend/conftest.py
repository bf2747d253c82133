# backend/conftest.py
import hashlib
import hmac
import os
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import MagicMock

import pytest

# Add backend root to PYTHONPATH
BACKEND_ROOT = Path(__file__).resolve().parent
if str(BACKEND_ROOT.parent) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT.parent))

os.environ.setdefault("SKIP_ENV_VALIDATION", "1")
os.environ.setdefault("ENV", "test")

from fastapi.testclient import TestClient  # noqa: E402

from backend.core.config import Settings  # noqa: E402
from backend.features.subscriptions.persistence import SubscriptionStore  # noqa: E402
from backend.models.subscription import SubscriptionPatch  # noqa: E402

WEBHOOK_SECRET = "whsec_test_secret"
ADMIN_KEY = "test-admin-key"
JWT_SECRET = "test-jwt-secret"


@pytest.fixture
def fixed_now():
    return datetime(2025, 3, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def test_settings():
    """Settings isolated from the developer's .env and shell."""
    return Settings(
        _env_file=None,
        ENV="test",
        DATABASE_URL="sqlite://",
        TEST_DATABASE_URL=None,
        STRIPE_SECRET_KEY="sk_test_dummy",
        STRIPE_WEBHOOK_SECRET=WEBHOOK_SECRET,
        JWT_SECRET=JWT_SECRET,
        ADMIN_KEY=ADMIN_KEY,
    )


@pytest.fixture
def store():
    """In-memory SQLite store; schema created fresh per test."""
    s = SubscriptionStore.from_url("sqlite://")
    s.create_schema()
    yield s
    s.dispose()


@pytest.fixture
def seed(store, fixed_now):
    """Write a subscription record with the given fields."""
    def _seed(account_id: str, **fields):
        return store.upsert(account_id, SubscriptionPatch(**fields), now=fixed_now)
    return _seed


@pytest.fixture
def mock_provider():
    """BillingProvider double; configure return values per test."""
    provider = MagicMock(name="BillingProvider")
    provider.create_checkout_session.return_value = "https://checkout.stripe.test/session"
    provider.create_portal_session.return_value = "https://billing.stripe.test/portal"
    provider.list_invoices.return_value = []
    return provider


@pytest.fixture
def app(test_settings, store, mock_provider):
    from backend.main import create_app
    return create_app(settings=test_settings, store=store, provider=mock_provider)


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def auth_headers():
    def _headers(account_id: str = "acct_1"):
        return {"X-User-Id": account_id}
    return _headers


@pytest.fixture
def stripe_signer():
    """Build a valid stripe-signature header (t=...,v1=HMAC-SHA256)."""
    def _sign(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
        ts = timestamp if timestamp is not None else int(time.time())
        signed = f"{ts}.{payload}".encode("utf-8")
        signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
        return f"t={ts},v1={signature}"
    return _sign
