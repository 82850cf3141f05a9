"""
Billing service orchestrator.

Coordinates:
- Customer resolution (lazy, idempotent)
- Checkout and portal session creation
- Webhook verification and reduction into subscription records
- Checkout-return synchronization
- Read-side helpers for the dashboard

All Stripe-specific code is in stripe_provider.py; all state transitions
are in reducer.py.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import lru_cache
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PayloadValidationError

from backend.core.config import settings
from backend.core.errors import ValidationError
from backend.core.logging import log_event
from backend.features.billing.payloads import (
    EventType,
    SubscriptionPayload,
    WebhookEvent,
)
from backend.features.billing.provider import (
    BillingDisabledError,
    BillingProvider,
    BillingProviderError,
    BillingWebhookError,
    CheckoutSessionRequest,
    NoBillingCustomerError,
    SubscriptionNotFoundError,
)
from backend.features.billing.reducer import (
    apply_subscription_created,
    is_stale,
    reduce_event,
)
from backend.features.billing.store import SubscriptionStore
from backend.features.billing.stripe_provider import StripeProvider
from backend.features.plans.registry import PlanRegistry, build_plan_registry
from backend.models.plan import PlanId
from backend.models.subscription import SubscriptionRecord, SubscriptionStatus


# Outcome actions reported back to the webhook endpoint
ACTION_APPLIED = "applied"
ACTION_IGNORED = "ignored"
ACTION_STALE = "stale"
ACTION_UNHANDLED = "unhandled"


@dataclass(frozen=True)
class WebhookOutcome:
    """Result of processing one webhook delivery."""
    event_id: str
    event_type: str
    action: str
    customer_id: Optional[str] = None
    record: Optional[SubscriptionRecord] = None


class BillingStatus(BaseModel):
    """What the dashboard shows about a user's plan."""
    model_config = ConfigDict(frozen=True)

    enabled: bool
    plan_id: PlanId
    plan_name: str
    generation_limit: int
    status: SubscriptionStatus
    trial_ends_at: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    has_customer: bool = False


def billing_enabled(settings_obj=None) -> bool:
    """Check if billing is enabled (Stripe configured)."""
    cfg = settings_obj or settings
    return bool(cfg.STRIPE_SECRET_KEY)


def get_provider() -> Optional[BillingProvider]:
    """Get billing provider if billing is enabled."""
    if not billing_enabled():
        return None
    try:
        return StripeProvider()
    except BillingProviderError:
        return None


@lru_cache(maxsize=1)
def get_plan_registry() -> PlanRegistry:
    """Plan registry built once per process from settings."""
    return build_plan_registry(settings)


class BillingService:
    """Billing use cases over an injected store, plan registry and provider."""

    def __init__(
        self,
        store: SubscriptionStore,
        plans: PlanRegistry,
        provider: Optional[BillingProvider] = None,
    ):
        self.store = store
        self.plans = plans
        self.provider = provider

    def _require_provider(self) -> BillingProvider:
        if self.provider is None:
            raise BillingDisabledError(
                "Billing is disabled. Set STRIPE_SECRET_KEY to enable Stripe."
            )
        return self.provider

    # Customers

    def resolve_customer(
        self,
        user_id: str,
        email: Optional[str] = None,
        display_name: Optional[str] = None,
    ) -> str:
        """
        Return the user's Stripe customer id, creating the customer on first use.

        Raises:
            BillingProviderError: If customer creation fails
        """
        existing = self.store.get_by_user(user_id)
        if existing and existing.stripe_customer_id:
            return existing.stripe_customer_id

        provider = self._require_provider()
        customer_id = provider.create_customer(email, display_name, {"user_id": user_id})
        self.store.upsert_customer(user_id, customer_id)

        log_event("info", "billing.customer.created", user_id=user_id, customer_id=customer_id)
        return customer_id

    # Checkout

    def create_checkout(
        self,
        user_id: str,
        email: Optional[str],
        display_name: Optional[str],
        price_id: str,
        success_url: str,
        cancel_url: str,
    ) -> str:
        """
        Start a hosted subscription checkout for ``price_id``.

        Trial days come from the plan that owns the price; the trial is only
        attached when the plan has one.

        Returns:
            Checkout session URL

        Raises:
            ValidationError: If price_id is missing
            BillingProviderError: If Stripe calls fail
        """
        if not price_id:
            raise ValidationError("priceId is required")

        provider = self._require_provider()
        customer_id = self.resolve_customer(user_id, email, display_name)
        trial_days = self.plans.trial_days_for_price(price_id)

        if self.plans.by_external_price_id(price_id) is None:
            log_event(
                "warning",
                "billing.checkout.unknown_price",
                user_id=user_id,
                customer_id=customer_id,
                extra={"price_id": price_id},
            )

        url = provider.create_checkout_session(
            CheckoutSessionRequest(
                customer_id=customer_id,
                price_id=price_id,
                success_url=success_url,
                cancel_url=cancel_url,
                client_reference_id=user_id,
                trial_period_days=trial_days if trial_days and trial_days > 0 else None,
                metadata={"user_id": user_id},
            )
        )
        log_event(
            "info",
            "billing.checkout.created",
            user_id=user_id,
            customer_id=customer_id,
            extra={"price_id": price_id, "trial_days": trial_days},
        )
        return url

    def sync_checkout_session(self, session_id: str) -> SubscriptionRecord:
        """
        Apply the subscription created by a completed checkout session.

        Uses the same derivation as ``customer.subscription.created``. The
        record's ``last_event_at`` is left untouched so later webhooks are
        never discarded because of this pull.

        Raises:
            ValidationError: If session_id is missing
            BillingProviderError: If the session lacks a customer or subscription
            SubscriptionNotFoundError: If the customer has no local record
        """
        if not session_id:
            raise ValidationError("session_id is required")

        provider = self._require_provider()
        snapshot = provider.retrieve_checkout_session(session_id)
        if not snapshot.customer_id:
            raise BillingProviderError(f"Checkout session {session_id} has no customer")
        if not snapshot.subscription:
            raise BillingProviderError(f"Checkout session {session_id} has no subscription")

        record = self.store.get_by_customer(snapshot.customer_id)
        if record is None:
            raise SubscriptionNotFoundError(
                f"No subscription record for customer {snapshot.customer_id}"
            )

        payload = SubscriptionPayload.model_validate(snapshot.subscription)
        updated = apply_subscription_created(
            record, payload, plans=self.plans, occurred_at=record.last_event_at
        )
        saved = self.store.save(updated)
        log_event(
            "info",
            "billing.checkout.synced",
            user_id=saved.user_id,
            customer_id=saved.stripe_customer_id,
            extra={"plan_id": saved.plan_id.value, "status": saved.status.value},
        )
        return saved

    # Portal

    def create_portal_session(self, user_id: str, return_url: str) -> str:
        """
        Open the self-service billing portal for a user who has checked out before.

        Raises:
            NoBillingCustomerError: If the user has no Stripe customer
            BillingProviderError: If Stripe calls fail
        """
        record = self.store.get_by_user(user_id)
        if record is None or not record.stripe_customer_id:
            raise NoBillingCustomerError(user_id)

        provider = self._require_provider()
        configuration_id = provider.ensure_portal_configuration()
        return provider.create_portal_session(
            customer_id=record.stripe_customer_id,
            return_url=return_url,
            configuration_id=configuration_id,
        )

    # Webhooks

    def process_webhook(self, body: bytes, signature: Optional[str]) -> WebhookOutcome:
        """
        Verify and apply one webhook delivery.

        Raises:
            BillingWebhookError: If the signature or payload is invalid (nothing is processed)
            Exception: Storage failures propagate so Stripe retries the delivery
        """
        provider = self._require_provider()
        raw = provider.construct_event(body, signature)
        try:
            event = WebhookEvent.model_validate(raw)
        except PayloadValidationError as e:
            raise BillingWebhookError(f"Invalid event payload: {e}") from e
        return self.apply_event(event)

    def apply_event(self, event: WebhookEvent, now: Optional[datetime] = None) -> WebhookOutcome:
        """Reduce an already-verified event into the customer's record."""
        event_type = event.event_type
        if event_type is None:
            log_event("info", "billing.webhook.unhandled", event_type=event.type, extra={"event_id": event.id})
            return WebhookOutcome(event.id, event.type, ACTION_UNHANDLED)

        customer_id = event.customer_id
        if event_type == EventType.CHECKOUT_SESSION_COMPLETED:
            log_event(
                "info",
                "billing.webhook.checkout_completed",
                customer_id=customer_id,
                event_type=event.type,
                extra={"event_id": event.id, "session_id": event.data.object.get("id")},
            )
            return WebhookOutcome(event.id, event.type, ACTION_IGNORED, customer_id)

        if not customer_id:
            log_event("warning", "billing.webhook.no_customer", event_type=event.type, extra={"event_id": event.id})
            return WebhookOutcome(event.id, event.type, ACTION_IGNORED)

        record = self.store.get_by_customer(customer_id)
        if record is None:
            # Unknown customer: test events or deleted users, never create a record here
            log_event(
                "info",
                "billing.webhook.unknown_customer",
                customer_id=customer_id,
                event_type=event.type,
                extra={"event_id": event.id},
            )
            return WebhookOutcome(event.id, event.type, ACTION_IGNORED, customer_id)

        occurred_at = event.occurred_at or now or datetime.now(timezone.utc)
        if is_stale(record, occurred_at):
            log_event(
                "warning",
                "billing.webhook.stale",
                user_id=record.user_id,
                customer_id=customer_id,
                event_type=event.type,
                extra={
                    "event_id": event.id,
                    "occurred_at": occurred_at.isoformat(),
                    "last_event_at": record.last_event_at.isoformat(),
                },
            )
            return WebhookOutcome(event.id, event.type, ACTION_STALE, customer_id, record)

        next_record = reduce_event(record, event, self.plans, occurred_at)
        if next_record is None:
            return WebhookOutcome(event.id, event.type, ACTION_IGNORED, customer_id, record)

        if not next_record.is_consistent():
            log_event(
                "warning",
                "billing.webhook.inconsistent_record",
                user_id=record.user_id,
                customer_id=customer_id,
                event_type=event.type,
                extra={"event_id": event.id, "status": next_record.status.value},
            )
            return WebhookOutcome(event.id, event.type, ACTION_IGNORED, customer_id, record)

        saved = self.store.save(next_record)
        log_event(
            "info",
            "billing.webhook.applied",
            user_id=saved.user_id,
            customer_id=customer_id,
            event_type=event.type,
            extra={"event_id": event.id, "plan_id": saved.plan_id.value, "status": saved.status.value},
        )
        return WebhookOutcome(event.id, event.type, ACTION_APPLIED, customer_id, saved)

    # Read side

    def get_subscription(self, user_id: str) -> Optional[SubscriptionRecord]:
        return self.store.get_by_user(user_id)

    def get_billing_status(self, user_id: str) -> BillingStatus:
        record = self.store.get_by_user(user_id)
        if record is None:
            plan = self.plans.free
            return BillingStatus(
                enabled=self.provider is not None,
                plan_id=plan.id,
                plan_name=plan.name,
                generation_limit=plan.generation_limit,
                status=SubscriptionStatus.INACTIVE,
            )

        plan = self.plans.by_id(record.plan_id)
        return BillingStatus(
            enabled=self.provider is not None,
            plan_id=plan.id,
            plan_name=plan.name,
            generation_limit=plan.generation_limit,
            status=record.status,
            trial_ends_at=record.trial_ends_at,
            current_period_end=record.current_period_end,
            cancel_at_period_end=record.cancel_at_period_end,
            has_customer=record.stripe_customer_id is not None,
        )

    def has_active_subscription(self, user_id: str) -> bool:
        """Active or trialing."""
        record = self.store.get_by_user(user_id)
        return bool(record and record.is_entitled)

    def is_in_trial(self, user_id: str) -> bool:
        record = self.store.get_by_user(user_id)
        return bool(record and record.status == SubscriptionStatus.TRIALING)

    def can_access_plan(self, user_id: str, required_plan: Union[PlanId, str]) -> bool:
        """True if the user's plan ranks at or above ``required_plan``."""
        required = self.plans.by_id(required_plan)
        record = self.store.get_by_user(user_id)
        if record is None or record.status == SubscriptionStatus.INACTIVE:
            return required.id == PlanId.FREE
        return self.plans.by_id(record.plan_id).rank >= required.rank


def get_billing_service() -> BillingService:
    """FastAPI dependency: wire the service from settings."""
    return BillingService(
        store=SubscriptionStore(),
        plans=get_plan_registry(),
        provider=get_provider(),
    )
