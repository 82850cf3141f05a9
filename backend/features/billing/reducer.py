"""
Webhook event reducer.

Pure functions mapping (current record, event payload) to the next record.
No I/O happens here: the service loads the record, calls ``reduce_event``
and persists whatever comes back.

State flow per subscription:
    inactive -> created -> {trialing, active}
             -> updated -> {active, past_due, canceled, ...}
             -> deleted -> canceled (ids cleared, plan free)

All writes are absolute field replacements, so applying the same event twice
yields the same record.
"""
from datetime import datetime
from typing import Callable, Dict, Optional

from backend.features.billing.payloads import (
    EventType,
    InvoicePayload,
    SubscriptionPayload,
    WebhookEvent,
    epoch_to_datetime,
)
from backend.features.plans.registry import PlanRegistry
from backend.models.plan import PlanId
from backend.models.subscription import SubscriptionRecord, SubscriptionStatus


def _subscription_fields(
    record: SubscriptionRecord,
    payload: SubscriptionPayload,
    plans: PlanRegistry,
) -> Dict[str, object]:
    """Field derivation shared by subscription.created/updated and checkout return."""
    price_id = payload.price_id
    plan = plans.by_external_price_id(price_id)
    status = SubscriptionStatus(payload.status) if payload.status else record.status

    return {
        "stripe_subscription_id": payload.id,
        "stripe_price_id": price_id,
        # Unmapped price means misconfiguration; fall back to free instead of failing
        "plan_id": plan.id if plan else PlanId.FREE,
        "status": status,
        "trial_started_at": epoch_to_datetime(payload.trial_start),
        "trial_ends_at": epoch_to_datetime(payload.trial_end),
        "current_period_start": epoch_to_datetime(payload.period_start),
        "current_period_end": epoch_to_datetime(payload.period_end),
        "cancel_at_period_end": payload.cancel_at_period_end,
    }


def apply_subscription_created(
    record: SubscriptionRecord,
    payload: SubscriptionPayload,
    *,
    plans: PlanRegistry,
    occurred_at: Optional[datetime] = None,
) -> SubscriptionRecord:
    fields = _subscription_fields(record, payload, plans)
    fields["last_event_at"] = occurred_at
    return record.model_copy(update=fields)


def apply_subscription_updated(
    record: SubscriptionRecord,
    payload: SubscriptionPayload,
    *,
    plans: PlanRegistry,
    occurred_at: Optional[datetime] = None,
) -> SubscriptionRecord:
    # A scheduled cancellation keeps Stripe's status (still active until period end)
    fields = _subscription_fields(record, payload, plans)
    fields["canceled_at"] = epoch_to_datetime(payload.canceled_at)
    fields["last_event_at"] = occurred_at
    return record.model_copy(update=fields)


def apply_subscription_deleted(
    record: SubscriptionRecord,
    payload: SubscriptionPayload,
    *,
    plans: PlanRegistry,
    occurred_at: Optional[datetime] = None,
) -> SubscriptionRecord:
    return record.model_copy(update={
        "stripe_subscription_id": None,
        "stripe_price_id": None,
        "plan_id": PlanId.FREE,
        "status": SubscriptionStatus.CANCELED,
        "trial_started_at": None,
        "trial_ends_at": None,
        "current_period_start": None,
        "current_period_end": None,
        "canceled_at": occurred_at,
        "cancel_at_period_end": False,
        "last_event_at": occurred_at,
    })


def apply_payment_failed(
    record: SubscriptionRecord,
    payload: InvoicePayload,
    *,
    plans: PlanRegistry,
    occurred_at: Optional[datetime] = None,
) -> Optional[SubscriptionRecord]:
    """
    Mark the current subscription past due.

    Returns None when there is no live subscription to mark, or when the
    invoice belongs to a different subscription than the one on record.
    """
    if not record.stripe_subscription_id:
        return None
    if payload.subscription and payload.subscription != record.stripe_subscription_id:
        return None
    return record.model_copy(update={
        "status": SubscriptionStatus.PAST_DUE,
        "last_event_at": occurred_at,
    })


Reducer = Callable[[SubscriptionRecord, WebhookEvent, PlanRegistry, Optional[datetime]], Optional[SubscriptionRecord]]


def _on_created(record, event, plans, occurred_at):
    return apply_subscription_created(record, event.subscription(), plans=plans, occurred_at=occurred_at)


def _on_updated(record, event, plans, occurred_at):
    return apply_subscription_updated(record, event.subscription(), plans=plans, occurred_at=occurred_at)


def _on_deleted(record, event, plans, occurred_at):
    return apply_subscription_deleted(record, event.subscription(), plans=plans, occurred_at=occurred_at)


def _on_payment_failed(record, event, plans, occurred_at):
    return apply_payment_failed(record, event.invoice(), plans=plans, occurred_at=occurred_at)


def _on_checkout_completed(record, event, plans, occurred_at):
    # subscription.created carries the authoritative state
    return None


REDUCERS: Dict[EventType, Reducer] = {
    EventType.SUBSCRIPTION_CREATED: _on_created,
    EventType.SUBSCRIPTION_UPDATED: _on_updated,
    EventType.SUBSCRIPTION_DELETED: _on_deleted,
    EventType.INVOICE_PAYMENT_FAILED: _on_payment_failed,
    EventType.CHECKOUT_SESSION_COMPLETED: _on_checkout_completed,
}


def is_stale(record: SubscriptionRecord, occurred_at: Optional[datetime]) -> bool:
    """True if the record already reflects an event newer than ``occurred_at``."""
    if occurred_at is None or record.last_event_at is None:
        return False
    return occurred_at < record.last_event_at


def reduce_event(
    record: SubscriptionRecord,
    event: WebhookEvent,
    plans: PlanRegistry,
    occurred_at: Optional[datetime] = None,
) -> Optional[SubscriptionRecord]:
    """Return the next record for ``event``, or None when the event changes nothing."""
    event_type = event.event_type
    if event_type is None:
        return None
    reducer = REDUCERS[event_type]
    when = occurred_at if occurred_at is not None else event.occurred_at
    return reducer(record, event, plans, when)
