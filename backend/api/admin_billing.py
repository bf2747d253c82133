"""
Admin-only billing operations router.
Requires X-Admin-Key header for all endpoints.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from backend.api.deps import get_catalog, get_store
from backend.core.admin_auth import AdminActor, require_admin
from backend.features.billing.reconcile_job import run_reconcile_job
from backend.features.plans.service import PlanCatalog
from backend.features.subscriptions.persistence import SubscriptionStore

logger = logging.getLogger("inclusiva.admin_billing")

router = APIRouter(prefix="/admin/billing", tags=["admin-billing"])


class ReconciliationResult(BaseModel):
    """Invariant audit result."""
    records_checked: int
    issues_found: int
    issues: List[Dict[str, Any]]
    timestamp: datetime


@router.get("/reconcile", response_model=ReconciliationResult)
def reconcile_billing(
    actor: AdminActor = Depends(require_admin),
    store: SubscriptionStore = Depends(get_store),
    catalog: PlanCatalog = Depends(get_catalog),
):
    """Report subscription records that violate billing invariants. Makes no changes."""
    logger.info("[admin] running invariant audit", extra={"actor_id": actor.actor_id})
    result = run_reconcile_job(store, catalog=catalog)
    logger.info(f"[admin] invariant audit complete: {result['issues_found']} issues")
    return ReconciliationResult(**result)
