"""
Billing provider protocol.

Defines the interface for billing providers (Stripe, etc.).
This allows swapping providers without changing business logic.
"""
from typing import Protocol, Dict, Any, Optional
from dataclasses import dataclass, field

from backend.core.errors import AppError


@dataclass(frozen=True)
class CheckoutSessionRequest:
    """Everything needed to open a hosted subscription checkout."""
    customer_id: str
    price_id: str
    success_url: str
    cancel_url: str
    client_reference_id: Optional[str] = None
    trial_period_days: Optional[int] = None
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class CheckoutSessionSnapshot:
    """Completed checkout session with its subscription resolved."""
    session_id: str
    customer_id: Optional[str]
    subscription: Optional[Dict[str, Any]]


class BillingProvider(Protocol):
    """
    Protocol for billing providers.

    Implementations must handle:
    - Customer creation
    - Checkout session creation and retrieval
    - Portal configuration and session creation
    - Webhook signature verification and parsing
    """

    def create_customer(self, email: Optional[str], name: Optional[str], metadata: Dict[str, str]) -> str:
        """
        Create a billing customer.

        Returns:
            Provider customer ID (e.g., Stripe customer ID)

        Raises:
            BillingProviderError: If customer creation fails
        """
        ...

    def create_checkout_session(self, request: CheckoutSessionRequest) -> str:
        """
        Create a checkout session for a subscription.

        Returns:
            Checkout session URL

        Raises:
            BillingProviderError: If session creation fails
        """
        ...

    def retrieve_checkout_session(self, session_id: str) -> CheckoutSessionSnapshot:
        """
        Fetch a completed checkout session and the subscription it created.

        Raises:
            BillingProviderError: If the session cannot be retrieved
        """
        ...

    def ensure_portal_configuration(self) -> str:
        """
        Return the id of a portal configuration, creating the default one on first use.

        Raises:
            BillingProviderError: If listing or creation fails
        """
        ...

    def create_portal_session(self, customer_id: str, return_url: str, configuration_id: Optional[str] = None) -> str:
        """
        Create a billing portal session for customer self-service.

        Returns:
            Portal session URL

        Raises:
            BillingProviderError: If portal session creation fails
        """
        ...

    def construct_event(self, body: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Verify webhook signature and parse the event body.

        Args:
            body: Raw webhook body (for signature verification)
            signature: Value of the Stripe-Signature header

        Returns:
            Parsed event as a plain dict

        Raises:
            BillingWebhookError: If signature invalid or parsing fails
        """
        ...


class BillingProviderError(Exception):
    """Base exception for billing provider errors."""
    pass


class BillingWebhookError(BillingProviderError):
    """Exception for webhook verification/parsing errors."""
    pass


class NoBillingCustomerError(AppError):
    """User has never checked out, so there is no Stripe customer to manage."""
    code = "no_billing_customer"
    status_code = 400

    def __init__(self, user_id: str, redirect_to: str = "/pricing"):
        super().__init__(
            "No billing customer for this user. Choose a plan first.",
            extra={"redirectTo": redirect_to},
        )
        self.user_id = user_id
        self.redirect_to = redirect_to


class SubscriptionNotFoundError(AppError):
    code = "subscription_not_found"
    status_code = 404


class BillingDisabledError(AppError):
    """Stripe is not configured for this deployment."""
    code = "billing_disabled"
    status_code = 503
