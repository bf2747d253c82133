"""
Webhook delivery ledger.

Every verified provider event is recorded by id before it is applied. An
event already marked processed is acknowledged without touching state
again; a pending or failed one is re-applied on redelivery.
"""
import hashlib
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, insert, update
from sqlalchemy.engine import Connection
from sqlalchemy.exc import IntegrityError

from backend.core.database import billing_events
from backend.features.subscriptions.persistence import SubscriptionStore

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_PROCESSED = "processed"
STATUS_FAILED = "failed"


def payload_hash(body: bytes) -> str:
    return hashlib.sha256(body).hexdigest()


class EventLedger:
    """Ledger rows live beside subscription rows and share the store's engine."""

    def __init__(self, store: SubscriptionStore):
        self.store = store

    def status(self, event_id: str, conn: Optional[Connection] = None) -> Optional[str]:
        with self.store.guard("ledger.status"):
            with self.store.connection(conn) as c:
                row = c.execute(
                    select(billing_events.c.status).where(
                        billing_events.c.provider_event_id == event_id
                    )
                ).first()
        return row.status if row else None

    def is_processed(self, event_id: str) -> bool:
        return self.status(event_id) == STATUS_PROCESSED

    def record_attempt(
        self,
        event_id: str,
        event_type: str,
        body: bytes,
        now: Optional[datetime] = None,
    ) -> None:
        """Insert a pending row, or bump attempts on a redelivery."""
        now = now or datetime.now(timezone.utc)
        with self.store.guard("ledger.record_attempt"):
            try:
                with self.store.engine.begin() as conn:
                    conn.execute(
                        insert(billing_events).values(
                            provider_event_id=event_id,
                            event_type=event_type,
                            received_at=now,
                            payload_hash=payload_hash(body),
                            status=STATUS_PENDING,
                            attempts=1,
                        )
                    )
                return
            except IntegrityError:
                logger.debug("[billing] redelivered event", extra={"event_id": event_id})

            with self.store.engine.begin() as conn:
                conn.execute(
                    update(billing_events)
                    .where(billing_events.c.provider_event_id == event_id)
                    .where(billing_events.c.status != STATUS_PROCESSED)
                    .values(
                        attempts=billing_events.c.attempts + 1,
                        status=STATUS_PENDING,
                        error=None,
                    )
                )

    def mark_processed(
        self,
        event_id: str,
        outcome: str,
        now: Optional[datetime] = None,
        conn: Optional[Connection] = None,
    ) -> None:
        """Mark done. Pass the reconciler's connection so both commit together."""
        with self.store.connection(conn) as c:
            c.execute(
                update(billing_events)
                .where(billing_events.c.provider_event_id == event_id)
                .values(
                    status=STATUS_PROCESSED,
                    outcome=outcome,
                    processed_at=now or datetime.now(timezone.utc),
                    error=None,
                )
            )

    def mark_failed(self, event_id: str, error: str) -> None:
        with self.store.guard("ledger.mark_failed"):
            with self.store.engine.begin() as conn:
                conn.execute(
                    update(billing_events)
                    .where(billing_events.c.provider_event_id == event_id)
                    .values(status=STATUS_FAILED, error=error[:2000])
                )
