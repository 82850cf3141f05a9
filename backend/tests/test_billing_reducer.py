"""Tests for webhook reducers: pure (record, event) -> record transitions."""

from datetime import datetime, timedelta, timezone

from backend.features.billing.payloads import WebhookEvent
from backend.features.billing.reducer import is_stale, reduce_event
from backend.models.plan import PlanId
from backend.models.subscription import SubscriptionRecord, SubscriptionStatus
from backend.tests.mocks import event_dict, subscription_object


def _record(**overrides) -> SubscriptionRecord:
    values = dict(user_id="user_alice", stripe_customer_id="cus_123")
    values.update(overrides)
    return SubscriptionRecord(**values)


def _event(event_type: str, obj: dict, created: int = 1700000100) -> WebhookEvent:
    return WebhookEvent.model_validate(event_dict(event_type, obj, created=created))


def test_created_with_trial(plans):
    event = _event(
        "customer.subscription.created",
        subscription_object(status="trialing", trial_start=1700000000, trial_end=1701209600),
    )
    record = reduce_event(_record(), event, plans)

    assert record.plan_id == PlanId.PLUS
    assert record.status == SubscriptionStatus.TRIALING
    assert record.stripe_subscription_id == "sub_123"
    assert record.stripe_price_id == "price_plus_month"
    assert record.trial_ends_at == datetime.fromtimestamp(1701209600, tz=timezone.utc)
    assert record.current_period_end == datetime.fromtimestamp(1702592000, tz=timezone.utc)
    assert record.last_event_at == event.occurred_at
    assert record.is_consistent()


def test_created_without_trial_leaves_trial_fields_empty(plans):
    record = reduce_event(_record(), _event("customer.subscription.created", subscription_object()), plans)
    assert record.status == SubscriptionStatus.ACTIVE
    assert record.trial_started_at is None
    assert record.trial_ends_at is None


def test_unmapped_price_falls_back_to_free(plans):
    event = _event("customer.subscription.created", subscription_object(price_id="price_legacy"))
    record = reduce_event(_record(), event, plans)
    assert record.plan_id == PlanId.FREE
    assert record.stripe_price_id == "price_legacy"


def test_updated_plan_change(plans):
    current = reduce_event(_record(), _event("customer.subscription.created", subscription_object()), plans)
    event = _event("customer.subscription.updated", subscription_object(price_id="price_pro_year"), created=1700000200)
    record = reduce_event(current, event, plans)
    assert record.plan_id == PlanId.PRO
    assert record.stripe_price_id == "price_pro_year"


def test_scheduled_cancellation_stays_active(plans):
    event = _event(
        "customer.subscription.updated",
        subscription_object(status="active", cancel_at_period_end=True, canceled_at=1700000050),
    )
    record = reduce_event(_record(), event, plans)
    assert record.status == SubscriptionStatus.ACTIVE
    assert record.cancel_at_period_end is True
    assert record.canceled_at == datetime.fromtimestamp(1700000050, tz=timezone.utc)


def test_updated_without_canceled_at_clears_it(plans):
    current = _record(canceled_at=datetime(2023, 1, 1, tzinfo=timezone.utc))
    record = reduce_event(current, _event("customer.subscription.updated", subscription_object()), plans)
    assert record.canceled_at is None


def test_deleted_resets_to_free(plans):
    current = reduce_event(_record(), _event("customer.subscription.created", subscription_object()), plans)
    event = _event("customer.subscription.deleted", subscription_object(status="canceled"), created=1700000300)
    record = reduce_event(current, event, plans)

    assert record.plan_id == PlanId.FREE
    assert record.status == SubscriptionStatus.CANCELED
    assert record.stripe_subscription_id is None
    assert record.stripe_price_id is None
    assert record.current_period_start is None
    assert record.current_period_end is None
    assert record.trial_ends_at is None
    assert record.canceled_at == event.occurred_at
    assert record.cancel_at_period_end is False
    assert record.stripe_customer_id == "cus_123"


def test_payment_failed_only_touches_status(plans):
    current = reduce_event(_record(), _event("customer.subscription.created", subscription_object()), plans)
    event = _event("invoice.payment_failed", {"id": "in_1", "customer": "cus_123"}, created=1700000400)
    record = reduce_event(current, event, plans)

    assert record.status == SubscriptionStatus.PAST_DUE
    assert record.plan_id == current.plan_id
    assert record.current_period_end == current.current_period_end
    assert record.stripe_subscription_id == current.stripe_subscription_id


def test_checkout_completed_changes_nothing(plans):
    event = _event("checkout.session.completed", {"id": "cs_1", "customer": "cus_123"})
    assert reduce_event(_record(), event, plans) is None


def test_unhandled_event_changes_nothing(plans):
    assert reduce_event(_record(), _event("charge.refunded", {"customer": "cus_123"}), plans) is None


def test_reapplying_events_is_idempotent(plans):
    subscribed = _record(stripe_subscription_id="sub_123", status=SubscriptionStatus.ACTIVE)
    events = [
        _event("customer.subscription.created", subscription_object(status="trialing", trial_end=1701209600)),
        _event("customer.subscription.updated", subscription_object(cancel_at_period_end=True)),
        _event("customer.subscription.deleted", subscription_object(status="canceled")),
        _event("invoice.payment_failed", {"id": "in_1", "customer": "cus_123"}),
    ]
    for event in events:
        once = reduce_event(subscribed, event, plans)
        twice = reduce_event(once, event, plans)
        assert once == twice


def test_stale_guard():
    now = datetime(2024, 1, 1, tzinfo=timezone.utc)
    record = _record(last_event_at=now)
    assert is_stale(record, now - timedelta(seconds=1))
    assert not is_stale(record, now)
    assert not is_stale(record, now + timedelta(seconds=1))
    assert not is_stale(_record(), now)
    assert not is_stale(record, None)


def test_payment_failed_without_subscription_changes_nothing(plans):
    event = _event("invoice.payment_failed", {"id": "in_1", "customer": "cus_123"}, created=1700000400)
    assert reduce_event(_record(), event, plans) is None


def test_payment_failed_after_deletion_changes_nothing(plans):
    current = reduce_event(_record(), _event("customer.subscription.created", subscription_object()), plans)
    deleted = reduce_event(
        current,
        _event("customer.subscription.deleted", subscription_object(status="canceled"), created=1700000300),
        plans,
    )
    event = _event(
        "invoice.payment_failed",
        {"id": "in_final", "customer": "cus_123", "subscription": "sub_123"},
        created=1700000400,
    )
    assert reduce_event(deleted, event, plans) is None


def test_payment_failed_for_other_subscription_changes_nothing(plans):
    current = reduce_event(_record(), _event("customer.subscription.created", subscription_object()), plans)
    event = _event(
        "invoice.payment_failed",
        {"id": "in_1", "customer": "cus_123", "subscription": "sub_old"},
        created=1700000400,
    )
    assert reduce_event(current, event, plans) is None


def test_payment_failed_for_matching_subscription(plans):
    current = reduce_event(_record(), _event("customer.subscription.created", subscription_object()), plans)
    event = _event(
        "invoice.payment_failed",
        {"id": "in_1", "customer": "cus_123", "subscription": "sub_123"},
        created=1700000400,
    )
    record = reduce_event(current, event, plans)
    assert record.status == SubscriptionStatus.PAST_DUE
    assert record.is_consistent()


def test_updated_with_created_payload_keeps_state(plans):
    obj = subscription_object(status="trialing", trial_start=1700000000, trial_end=1701209600)
    created = reduce_event(_record(), _event("customer.subscription.created", obj), plans)
    updated = reduce_event(created, _event("customer.subscription.updated", obj, created=1700000200), plans)

    for field in (
        "status",
        "plan_id",
        "stripe_subscription_id",
        "stripe_price_id",
        "trial_started_at",
        "trial_ends_at",
        "current_period_start",
        "current_period_end",
        "cancel_at_period_end",
    ):
        assert getattr(updated, field) == getattr(created, field), field
