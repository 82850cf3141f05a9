"""
Typed schema for the Stripe webhook payloads this backend consumes.

Every field is optional: Stripe API versions move fields around (period
boundaries moved from the subscription onto its items), so missing data
propagates as None instead of failing the whole event.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class EventType(str, Enum):
    CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["EventType"]:
        """Return the matching member, or None for event types we do not handle."""
        try:
            return cls(value)
        except ValueError:
            return None


def epoch_to_datetime(value: Optional[int]) -> Optional[datetime]:
    """Convert epoch seconds to an aware UTC datetime; absent (or 0) stays None."""
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _expandable_id(value: Any) -> Any:
    if isinstance(value, dict):
        return value.get("id")
    return value


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)


class PriceRef(_Payload):
    id: Optional[str] = None


class SubscriptionItem(_Payload):
    id: Optional[str] = None
    price: Optional[PriceRef] = None
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None


class SubscriptionItemList(_Payload):
    data: List[SubscriptionItem] = Field(default_factory=list)


class SubscriptionPayload(_Payload):
    id: Optional[str] = None
    customer: Optional[str] = None
    status: Optional[str] = None
    items: SubscriptionItemList = Field(default_factory=SubscriptionItemList)
    trial_start: Optional[int] = None
    trial_end: Optional[int] = None
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[int] = None

    @field_validator("customer", mode="before")
    @classmethod
    def _coerce_customer(cls, value: Any) -> Any:
        return _expandable_id(value)

    @field_validator("cancel_at_period_end", mode="before")
    @classmethod
    def _none_is_false(cls, value: Any) -> Any:
        return False if value is None else value

    @property
    def first_item(self) -> Optional[SubscriptionItem]:
        return self.items.data[0] if self.items.data else None

    @property
    def price_id(self) -> Optional[str]:
        item = self.first_item
        if item is None or item.price is None:
            return None
        return item.price.id

    @property
    def period_start(self) -> Optional[int]:
        if self.current_period_start:
            return self.current_period_start
        item = self.first_item
        return item.current_period_start if item else None

    @property
    def period_end(self) -> Optional[int]:
        if self.current_period_end:
            return self.current_period_end
        item = self.first_item
        return item.current_period_end if item else None


class InvoicePayload(_Payload):
    id: Optional[str] = None
    customer: Optional[str] = None
    subscription: Optional[str] = None
    attempt_count: Optional[int] = None

    @field_validator("customer", "subscription", mode="before")
    @classmethod
    def _coerce_ids(cls, value: Any) -> Any:
        return _expandable_id(value)


class CheckoutSessionPayload(_Payload):
    id: Optional[str] = None
    customer: Optional[str] = None
    subscription: Optional[str] = None
    client_reference_id: Optional[str] = None

    @field_validator("customer", "subscription", mode="before")
    @classmethod
    def _coerce_ids(cls, value: Any) -> Any:
        return _expandable_id(value)


class EventData(_Payload):
    object: Dict[str, Any] = Field(default_factory=dict)


class WebhookEvent(_Payload):
    id: str
    type: str
    created: Optional[int] = None
    data: EventData = Field(default_factory=EventData)

    @property
    def event_type(self) -> Optional[EventType]:
        return EventType.parse(self.type)

    @property
    def occurred_at(self) -> Optional[datetime]:
        return epoch_to_datetime(self.created)

    def subscription(self) -> SubscriptionPayload:
        return SubscriptionPayload.model_validate(self.data.object)

    def invoice(self) -> InvoicePayload:
        return InvoicePayload.model_validate(self.data.object)

    def checkout_session(self) -> CheckoutSessionPayload:
        return CheckoutSessionPayload.model_validate(self.data.object)

    @property
    def customer_id(self) -> Optional[str]:
        return _expandable_id(self.data.object.get("customer"))
