"""
Subscription record store.

Single-row reads and writes against ``user_subscriptions``. Every mutation
is keyed by user id or Stripe customer id, so no cross-row transactions are
needed; concurrent writers rely on the database's row-level atomicity.
"""
import uuid
from enum import Enum
from datetime import datetime, timezone
from typing import Callable, ContextManager, Optional

from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from backend.core.database import get_db_session, user_subscriptions
from backend.features.billing.provider import SubscriptionNotFoundError
from backend.models.plan import PlanId
from backend.models.subscription import SubscriptionRecord, SubscriptionStatus


SessionFactory = Callable[[], ContextManager[Session]]

_DATETIME_FIELDS = (
    "trial_started_at",
    "trial_ends_at",
    "current_period_start",
    "current_period_end",
    "canceled_at",
    "last_event_at",
    "created_at",
    "updated_at",
)

# Fields replaced wholesale by save(); ids and user binding are not among them
_MUTABLE_FIELDS = (
    "stripe_subscription_id",
    "stripe_price_id",
    "plan_id",
    "status",
    "trial_started_at",
    "trial_ends_at",
    "current_period_start",
    "current_period_end",
    "canceled_at",
    "cancel_at_period_end",
    "last_event_at",
)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _row_to_record(row) -> SubscriptionRecord:
    data = dict(row._mapping)
    for field in _DATETIME_FIELDS:
        data[field] = _as_utc(data.get(field))
    return SubscriptionRecord(
        user_id=data["user_id"],
        stripe_customer_id=data["stripe_customer_id"],
        stripe_subscription_id=data["stripe_subscription_id"],
        stripe_price_id=data["stripe_price_id"],
        plan_id=data["plan_id"] or PlanId.FREE,
        status=data["status"] or SubscriptionStatus.INACTIVE,
        trial_started_at=data["trial_started_at"],
        trial_ends_at=data["trial_ends_at"],
        current_period_start=data["current_period_start"],
        current_period_end=data["current_period_end"],
        canceled_at=data["canceled_at"],
        cancel_at_period_end=bool(data["cancel_at_period_end"]),
        last_event_at=data["last_event_at"],
        created_at=data["created_at"],
        updated_at=data["updated_at"],
    )


def _dialect_insert(session: Session):
    """Pick the INSERT construct that supports ON CONFLICT for the bound dialect."""
    name = session.get_bind().dialect.name
    if name == "postgresql":
        return postgresql.insert
    if name == "sqlite":
        return sqlite.insert
    raise NotImplementedError(f"Upsert not supported for dialect '{name}'")


class SubscriptionStore:
    """Persistence for SubscriptionRecord rows."""

    def __init__(self, session_factory: Optional[SessionFactory] = None):
        self._session_factory = session_factory or get_db_session

    def get_by_user(self, user_id: str) -> Optional[SubscriptionRecord]:
        with self._session_factory() as session:
            row = session.execute(
                select(user_subscriptions).where(user_subscriptions.c.user_id == user_id)
            ).first()
            return _row_to_record(row) if row else None

    def get_by_customer(self, customer_id: str) -> Optional[SubscriptionRecord]:
        with self._session_factory() as session:
            row = session.execute(
                select(user_subscriptions).where(user_subscriptions.c.stripe_customer_id == customer_id)
            ).first()
            return _row_to_record(row) if row else None

    def upsert_customer(self, user_id: str, customer_id: str) -> SubscriptionRecord:
        """
        Attach a Stripe customer to the user's record in one conflict-resolving write.

        A new row starts as free/inactive. If two first-time resolutions race,
        the later writer's customer id wins and no duplicate row is created.
        """
        now = datetime.now(timezone.utc)
        with self._session_factory() as session:
            insert = _dialect_insert(session)
            stmt = insert(user_subscriptions).values(
                id=str(uuid.uuid4()),
                user_id=user_id,
                stripe_customer_id=customer_id,
                plan_id=PlanId.FREE.value,
                status=SubscriptionStatus.INACTIVE.value,
                cancel_at_period_end=False,
                created_at=now,
                updated_at=now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[user_subscriptions.c.user_id],
                set_={"stripe_customer_id": customer_id, "updated_at": now},
            )
            session.execute(stmt)

            row = session.execute(
                select(user_subscriptions).where(user_subscriptions.c.user_id == user_id)
            ).first()
            return _row_to_record(row)

    def save(self, record: SubscriptionRecord) -> SubscriptionRecord:
        """
        Replace every mutable field of the row owned by ``record.stripe_customer_id``.

        Raises:
            SubscriptionNotFoundError: if no row carries that customer id
        """
        if not record.stripe_customer_id:
            raise SubscriptionNotFoundError("Cannot save a subscription record without a customer id")

        values = {}
        for field in _MUTABLE_FIELDS:
            value = getattr(record, field)
            values[field] = value.value if isinstance(value, Enum) else value
        values["updated_at"] = datetime.now(timezone.utc)

        with self._session_factory() as session:
            result = session.execute(
                update(user_subscriptions)
                .where(user_subscriptions.c.stripe_customer_id == record.stripe_customer_id)
                .values(**values)
            )
            if result.rowcount == 0:
                raise SubscriptionNotFoundError(
                    f"No subscription record for customer {record.stripe_customer_id}"
                )
            row = session.execute(
                select(user_subscriptions).where(
                    user_subscriptions.c.stripe_customer_id == record.stripe_customer_id
                )
            ).first()
            return _row_to_record(row)
