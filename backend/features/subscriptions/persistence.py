"""
backend/features/subscriptions/persistence.py

Database-backed storage for subscription records.

The store is constructed once by the entry point and passed to every
component that reads or writes subscription state. Methods accept an
optional connection so callers can group several writes in one
transaction; without one, each call runs in its own transaction.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, List, Optional

from sqlalchemy import select, insert, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from backend.core.database import (
    build_engine,
    check_connection,
    create_all_tables,
    subscriptions,
)
from backend.core.errors import StoreUnavailableError
from backend.models.plan import UNLIMITED
from backend.models.subscription import (
    FREE_PLAN_ID,
    SubscriptionPatch,
    SubscriptionRecord,
    SubscriptionStatus,
    UsageKind,
)

logger = logging.getLogger(__name__)


def utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _to_record(row) -> SubscriptionRecord:
    return SubscriptionRecord(
        account_id=row.account_id,
        plan_id=row.plan_id,
        status=SubscriptionStatus(row.status),
        students_used=row.students_used,
        reports_used_this_period=row.reports_used_this_period,
        generations_used_this_period=row.generations_used_this_period,
        trial_ends_at=utc(row.trial_ends_at),
        current_period_start=utc(row.current_period_start),
        current_period_end=utc(row.current_period_end),
        cancelled_at=utc(row.cancelled_at),
        provider_customer_id=row.provider_customer_id,
        provider_subscription_id=row.provider_subscription_id,
        provider_price_id=row.provider_price_id,
        created_at=utc(row.created_at),
        updated_at=utc(row.updated_at),
    )


class SubscriptionStore:
    """SQLAlchemy Core persistence for subscription records."""

    def __init__(self, engine: Engine):
        self.engine = engine

    @classmethod
    def from_url(cls, database_url: Optional[str] = None) -> "SubscriptionStore":
        return cls(build_engine(database_url))

    def create_schema(self) -> None:
        with self.guard("create_schema"):
            create_all_tables(self.engine)

    def ping(self) -> bool:
        return check_connection(self.engine)

    def dispose(self) -> None:
        self.engine.dispose()

    # ----- transactions -----

    @contextmanager
    def guard(self, operation: str):
        try:
            yield
        except SQLAlchemyError as e:
            logger.error(
                "[subscriptions] store failure",
                extra={"operation": operation, "error": str(e)},
            )
            raise StoreUnavailableError(f"Subscription store unavailable during {operation}") from e

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        """Yield a connection inside one transaction (commit on success)."""
        with self.guard("transaction"):
            with self.engine.begin() as conn:
                yield conn

    @contextmanager
    def connection(self, conn: Optional[Connection] = None) -> Iterator[Connection]:
        """Reuse the caller's connection, or open a one-statement transaction."""
        if conn is not None:
            with self.guard("statement"):
                yield conn
            return
        with self.transaction() as new_conn:
            yield new_conn

    # ----- reads -----

    def get(self, account_id: str, conn: Optional[Connection] = None) -> Optional[SubscriptionRecord]:
        with self.connection(conn) as c:
            row = c.execute(
                select(subscriptions).where(subscriptions.c.account_id == account_id)
            ).first()
        return _to_record(row) if row else None

    def find_by_provider_subscription(
        self, provider_subscription_id: str, conn: Optional[Connection] = None
    ) -> Optional[SubscriptionRecord]:
        with self.connection(conn) as c:
            row = c.execute(
                select(subscriptions).where(
                    subscriptions.c.provider_subscription_id == provider_subscription_id
                )
            ).first()
        return _to_record(row) if row else None

    def list_records(self, conn: Optional[Connection] = None) -> List[SubscriptionRecord]:
        with self.connection(conn) as c:
            rows = c.execute(select(subscriptions).order_by(subscriptions.c.id)).all()
        return [_to_record(row) for row in rows]

    # ----- writes -----

    def get_or_create(self, account_id: str, now: Optional[datetime] = None) -> SubscriptionRecord:
        """
        Load the account's record, creating the free/active/zeroed default.

        Concurrent first accesses race on the unique account_id; the loser
        reads back the winner's row.
        """
        existing = self.get(account_id)
        if existing:
            return existing

        now = now or datetime.now(timezone.utc)
        try:
            with self.engine.begin() as conn:
                conn.execute(insert(subscriptions).values(**self._default_row(account_id, now)))
            logger.info("[subscriptions] record created", extra={"account_id": account_id})
        except IntegrityError:
            logger.debug("[subscriptions] concurrent create", extra={"account_id": account_id})
        except SQLAlchemyError as e:
            raise StoreUnavailableError("Subscription store unavailable during get_or_create") from e

        created = self.get(account_id)
        if created is None:
            raise StoreUnavailableError(f"Subscription record for {account_id} vanished after create")
        return created

    def apply_patch(
        self,
        account_id: str,
        patch: SubscriptionPatch,
        now: Optional[datetime] = None,
        conn: Optional[Connection] = None,
    ) -> Optional[SubscriptionRecord]:
        """Write only the fields present in `patch`. Returns None if no record matched."""
        values = patch.values()
        values["updated_at"] = now or datetime.now(timezone.utc)
        with self.connection(conn) as c:
            result = c.execute(
                update(subscriptions)
                .where(subscriptions.c.account_id == account_id)
                .values(**values)
            )
            if result.rowcount == 0:
                return None
            return self.get(account_id, conn=c)

    def upsert(
        self,
        account_id: str,
        patch: SubscriptionPatch,
        now: Optional[datetime] = None,
        conn: Optional[Connection] = None,
    ) -> SubscriptionRecord:
        """Insert-or-update keyed by account_id."""
        now = now or datetime.now(timezone.utc)
        with self.connection(conn) as c:
            exists = c.execute(
                select(subscriptions.c.id).where(subscriptions.c.account_id == account_id)
            ).first()
            if exists:
                updated = self.apply_patch(account_id, patch, now=now, conn=c)
                if updated is None:
                    raise StoreUnavailableError(f"Subscription record for {account_id} vanished during upsert")
                return updated
            row = self._default_row(account_id, now)
            row.update(patch.values())
            c.execute(insert(subscriptions).values(**row))
            return self.get(account_id, conn=c)

    def increment_usage(
        self,
        account_id: str,
        kind: UsageKind,
        limit: Optional[int] = None,
        now: Optional[datetime] = None,
        conn: Optional[Connection] = None,
    ) -> bool:
        """
        Atomically add 1 to the counter for `kind`.

        With a finite `limit` the update is conditional on counter < limit.
        Returns True when a row was incremented.
        """
        column = subscriptions.c[kind.column]
        stmt = (
            update(subscriptions)
            .where(subscriptions.c.account_id == account_id)
            .values({kind.column: column + 1, "updated_at": now or datetime.now(timezone.utc)})
        )
        if limit is not None and limit != UNLIMITED:
            stmt = stmt.where(column < limit)
        with self.connection(conn) as c:
            result = c.execute(stmt)
        return result.rowcount == 1

    @staticmethod
    def _default_row(account_id: str, now: datetime) -> dict:
        return {
            "account_id": account_id,
            "plan_id": FREE_PLAN_ID,
            "status": SubscriptionStatus.ACTIVE.value,
            "students_used": 0,
            "reports_used_this_period": 0,
            "generations_used_this_period": 0,
            "current_period_start": now,
            "created_at": now,
            "updated_at": now,
        }
