"""
Health endpoints for operational monitoring. No auth, no secrets.
"""

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import inspect

from backend.api.deps import get_store
from backend.features.subscriptions.persistence import SubscriptionStore

logger = logging.getLogger("inclusiva")

root_router = APIRouter(tags=["health"])

REQUIRED_TABLES = ("subscriptions", "billing_events")


@root_router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@root_router.get("/readyz")
def readyz(store: SubscriptionStore = Depends(get_store)):
    """Readiness check: DB connectivity + required tables."""
    if not store.ping():
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})

    try:
        inspector = inspect(store.engine)
        missing = [t for t in REQUIRED_TABLES if not inspector.has_table(t)]
    except Exception as e:
        logger.error(f"[readyz] table probe failed: {e}")
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})

    if missing:
        detail = f"missing tables: {', '.join(missing)}"
        logger.warning(f"[readyz] {detail}")
        return JSONResponse(status_code=503, content={"status": "error", "detail": detail})
    return {"status": "ok"}
