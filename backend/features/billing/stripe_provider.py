"""
Stripe billing provider implementation.

Implements BillingProvider protocol using the Stripe API.
Handles webhook signature verification and payload parsing.
"""
import json
from typing import Dict, Any, Optional
import stripe

from backend.core.config import settings
from backend.features.billing.provider import (
    BillingProviderError,
    BillingWebhookError,
    CheckoutSessionRequest,
    CheckoutSessionSnapshot,
)


# Applied when the account has no portal configuration yet
DEFAULT_PORTAL_CONFIGURATION: Dict[str, Any] = {
    "business_profile": {
        "headline": "Manage your subscription",
    },
    "features": {
        "subscription_update": {
            "enabled": True,
            "default_allowed_updates": ["price", "promotion_code"],
            "proration_behavior": "create_prorations",
        },
        "subscription_cancel": {
            "enabled": True,
            "mode": "at_period_end",
            "cancellation_reason": {
                "enabled": True,
                "options": [
                    "too_expensive",
                    "missing_features",
                    "switched_service",
                    "unused",
                    "other",
                ],
            },
        },
        "payment_method_update": {"enabled": True},
        "invoice_history": {"enabled": True},
    },
}


def _to_plain(obj: Any) -> Optional[Dict[str, Any]]:
    """Convert a StripeObject into plain dicts/lists."""
    if obj is None:
        return None
    if isinstance(obj, str):
        return {"id": obj}
    if isinstance(obj, dict) and not hasattr(obj, "to_dict"):
        return obj
    if hasattr(obj, "to_dict_recursive"):
        return obj.to_dict_recursive()
    return obj.to_dict()


def _object_id(value: Any) -> Optional[str]:
    """Expandable fields arrive either as an id string or as an object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        return value.get("id")
    return getattr(value, "id", None)


class StripeProvider:
    """Stripe implementation of BillingProvider protocol."""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        webhook_tolerance: Optional[int] = None,
    ):
        """
        Initialize Stripe provider.

        Args:
            secret_key: Stripe secret key (defaults to STRIPE_SECRET_KEY setting)
            webhook_secret: Stripe webhook secret (defaults to STRIPE_WEBHOOK_SECRET setting)
            webhook_tolerance: Max age of a signed webhook, in seconds
        """
        self.secret_key = secret_key or settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET
        self.webhook_tolerance = webhook_tolerance or settings.STRIPE_WEBHOOK_TOLERANCE

        if not self.secret_key:
            raise BillingProviderError("STRIPE_SECRET_KEY not configured")

        stripe.api_key = self.secret_key

    def create_customer(self, email: Optional[str], name: Optional[str], metadata: Dict[str, str]) -> str:
        """Create a Stripe customer tagged with the internal user id."""
        customer_data: Dict[str, Any] = {"metadata": dict(metadata)}
        if email:
            customer_data["email"] = email
        if name:
            customer_data["name"] = name

        try:
            customer = stripe.Customer.create(**customer_data)
            return customer.id
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe customer creation failed: {e}") from e

    def create_checkout_session(self, request: CheckoutSessionRequest) -> str:
        """Create Stripe checkout session in subscription mode."""
        params: Dict[str, Any] = {
            "customer": request.customer_id,
            "payment_method_types": ["card"],
            "line_items": [{"price": request.price_id, "quantity": 1}],
            "mode": "subscription",
            "success_url": request.success_url,
            "cancel_url": request.cancel_url,
            "allow_promotion_codes": True,
            "billing_address_collection": "auto",
            "metadata": dict(request.metadata),
        }
        if request.client_reference_id:
            params["client_reference_id"] = request.client_reference_id
        if request.trial_period_days and request.trial_period_days > 0:
            params["subscription_data"] = {"trial_period_days": request.trial_period_days}

        try:
            session = stripe.checkout.Session.create(**params)
            return session.url
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe checkout session creation failed: {e}") from e

    def retrieve_checkout_session(self, session_id: str) -> CheckoutSessionSnapshot:
        """Fetch a checkout session with its customer and subscription."""
        try:
            session = stripe.checkout.Session.retrieve(
                session_id,
                expand=["customer", "subscription"],
            )
            customer_id = _object_id(getattr(session, "customer", None))
            subscription_id = _object_id(getattr(session, "subscription", None))

            subscription = None
            if subscription_id:
                subscription = _to_plain(stripe.Subscription.retrieve(subscription_id))
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe checkout session retrieval failed: {e}") from e

        return CheckoutSessionSnapshot(
            session_id=session_id,
            customer_id=customer_id,
            subscription=subscription,
        )

    def ensure_portal_configuration(self) -> str:
        """Reuse the first portal configuration, creating the default only if none exist."""
        try:
            configurations = stripe.billing_portal.Configuration.list(limit=1)
            if configurations.data:
                return configurations.data[0].id

            configuration = stripe.billing_portal.Configuration.create(**DEFAULT_PORTAL_CONFIGURATION)
            return configuration.id
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe portal configuration failed: {e}") from e

    def create_portal_session(self, customer_id: str, return_url: str, configuration_id: Optional[str] = None) -> str:
        """Create Stripe billing portal session."""
        params: Dict[str, Any] = {"customer": customer_id, "return_url": return_url}
        if configuration_id:
            params["configuration"] = configuration_id

        try:
            session = stripe.billing_portal.Session.create(**params)
            return session.url
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe portal session creation failed: {e}") from e

    def construct_event(self, body: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Verify Stripe webhook signature and parse event."""
        if not self.webhook_secret:
            raise BillingWebhookError("STRIPE_WEBHOOK_SECRET not configured")
        if not signature:
            raise BillingWebhookError("Missing stripe-signature header")

        try:
            payload = body.decode("utf-8") if isinstance(body, (bytes, bytearray)) else body
            stripe.WebhookSignature.verify_header(
                payload, signature, self.webhook_secret, self.webhook_tolerance
            )
            event = json.loads(payload)
        except UnicodeDecodeError as e:
            raise BillingWebhookError(f"Invalid payload encoding: {e}") from e
        except ValueError as e:
            raise BillingWebhookError(f"Invalid payload: {e}") from e
        except stripe.SignatureVerificationError as e:
            raise BillingWebhookError(f"Invalid signature: {e}") from e

        if not isinstance(event, dict):
            raise BillingWebhookError("Invalid payload: event must be a JSON object")
        return event
