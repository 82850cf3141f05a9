"""
backend/models/subscription.py

Persisted billing state for one user, replicated from Stripe events.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict

from backend.models.plan import PlanId


class SubscriptionStatus(str, Enum):
    INACTIVE = "inactive"
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"
    # Emitted by Stripe for setup edge cases; stored verbatim
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    PAUSED = "paused"


# Statuses that only make sense while a Stripe subscription exists
LIVE_STATUSES = frozenset({
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.TRIALING,
    SubscriptionStatus.PAST_DUE,
})

# Statuses that grant access to paid features
ENTITLED_STATUSES = frozenset({
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.TRIALING,
})


class SubscriptionRecord(BaseModel):
    """One row of ``user_subscriptions``.

    Reducers never mutate a record; they return ``model_copy(update=...)``.
    """
    model_config = ConfigDict(frozen=True)

    user_id: str
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    stripe_price_id: Optional[str] = None
    plan_id: PlanId = PlanId.FREE
    status: SubscriptionStatus = SubscriptionStatus.INACTIVE
    trial_started_at: Optional[datetime] = None
    trial_ends_at: Optional[datetime] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    cancel_at_period_end: bool = False
    last_event_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def is_consistent(self) -> bool:
        """Live statuses require a Stripe subscription id."""
        if self.status in LIVE_STATUSES:
            return self.stripe_subscription_id is not None
        return True

    @property
    def is_entitled(self) -> bool:
        return self.status in ENTITLED_STATUSES
