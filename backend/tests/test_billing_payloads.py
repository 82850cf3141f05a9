"""Tests for the typed Stripe payload schema."""

from datetime import datetime, timezone

from backend.features.billing.payloads import (
    EventType,
    SubscriptionPayload,
    WebhookEvent,
    epoch_to_datetime,
)
from backend.tests.mocks import event_dict, subscription_object


def test_epoch_conversion_propagates_absence():
    assert epoch_to_datetime(None) is None
    assert epoch_to_datetime(0) is None
    assert epoch_to_datetime(1700000000) == datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)


def test_event_type_parse():
    assert EventType.parse("customer.subscription.updated") == EventType.SUBSCRIPTION_UPDATED
    assert EventType.parse("charge.refunded") is None
    assert EventType.parse(None) is None


def test_subscription_payload_reads_first_item_price():
    payload = SubscriptionPayload.model_validate(subscription_object(price_id="price_pro_month"))
    assert payload.price_id == "price_pro_month"
    assert payload.customer == "cus_123"


def test_subscription_payload_without_items():
    payload = SubscriptionPayload.model_validate(subscription_object(price_id=None))
    assert payload.price_id is None


def test_period_falls_back_to_first_item():
    obj = subscription_object(period_start=None, period_end=None)
    obj["items"]["data"][0]["current_period_start"] = 1700000000
    obj["items"]["data"][0]["current_period_end"] = 1702592000
    payload = SubscriptionPayload.model_validate(obj)
    assert payload.period_start == 1700000000
    assert payload.period_end == 1702592000


def test_expanded_customer_object_is_reduced_to_id():
    obj = subscription_object()
    obj["customer"] = {"id": "cus_expanded", "object": "customer"}
    payload = SubscriptionPayload.model_validate(obj)
    assert payload.customer == "cus_expanded"


def test_null_cancel_at_period_end_is_false():
    obj = subscription_object()
    obj["cancel_at_period_end"] = None
    assert SubscriptionPayload.model_validate(obj).cancel_at_period_end is False


def test_unknown_fields_are_ignored():
    obj = subscription_object()
    obj["livemode"] = False
    obj["latest_invoice"] = "in_1"
    assert SubscriptionPayload.model_validate(obj).id == "sub_123"


def test_webhook_event_accessors():
    event = WebhookEvent.model_validate(
        event_dict("invoice.payment_failed", {"id": "in_1", "customer": "cus_9", "subscription": "sub_9"})
    )
    assert event.event_type == EventType.INVOICE_PAYMENT_FAILED
    assert event.customer_id == "cus_9"
    assert event.invoice().subscription == "sub_9"
    assert event.occurred_at == datetime.fromtimestamp(1700000100, tz=timezone.utc)


def test_checkout_session_accessor():
    event = WebhookEvent.model_validate(
        event_dict(
            "checkout.session.completed",
            {"id": "cs_1", "customer": "cus_1", "subscription": {"id": "sub_1"}, "client_reference_id": "u1"},
        )
    )
    session = event.checkout_session()
    assert session.subscription == "sub_1"
    assert session.client_reference_id == "u1"
