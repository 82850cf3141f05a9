"""
Billing API routes.

Stripe surface:
- POST /api/stripe/checkout: Create checkout session
- GET  /api/stripe/checkout: Checkout return (sync + redirect)
- POST /api/stripe/portal: Create portal session
- POST /api/stripe/webhook: Handle Stripe webhooks

Dashboard surface:
- GET  /api/billing/status: Current user's plan and subscription state
- GET  /api/billing/plans: Plan catalogue for the pricing page
"""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, Query, Request
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, Field

from backend.core.auth import AuthenticatedUser, get_current_user
from backend.core.config import settings
from backend.core.errors import AppError, BillingUnavailableError, ValidationError
from backend.core.logging import log_event
from backend.features.billing.provider import BillingProviderError, BillingWebhookError
from backend.features.billing.service import BillingService, get_billing_service, get_plan_registry
from backend.models.plan import BillingInterval


stripe_router = APIRouter(prefix="/stripe", tags=["stripe"])
router = APIRouter(prefix="/billing", tags=["billing"])


class CheckoutRequest(BaseModel):
    """Request to create checkout session."""
    price_id: Optional[str] = Field(None, alias="priceId")


class UrlResponse(BaseModel):
    """Hosted page to send the browser to."""
    url: str


class BillingStatusResponse(BaseModel):
    """User billing status."""
    enabled: bool
    plan_id: str
    plan_name: str
    generation_limit: int
    status: str
    trial_ends_at: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool
    has_customer: bool


class PlanResponse(BaseModel):
    id: str
    name: str
    description: str
    monthly_price: int
    yearly_price: int
    trial_days: Optional[int] = None
    generation_limit: int
    features: List[str]
    is_popular: bool
    purchasable: bool
    monthly_price_id: Optional[str] = None
    yearly_price_id: Optional[str] = None


def _app_url(path: str) -> str:
    return f"{settings.APP_URL.rstrip('/')}{path}"


@stripe_router.post("/checkout", response_model=UrlResponse)
def create_checkout(
    request: CheckoutRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    service: BillingService = Depends(get_billing_service),
):
    """
    Create Stripe checkout session.

    Returns:
        {"url": "https://checkout.stripe.com/..."}

    Errors:
        401: Not signed in
        400: Missing priceId
        503: Billing disabled (STRIPE_SECRET_KEY not set)
        500: Stripe API error
    """
    try:
        url = service.create_checkout(
            user_id=user.user_id,
            email=user.email,
            display_name=user.display_name,
            price_id=request.price_id or "",
            success_url=_app_url("/api/stripe/checkout?session_id={CHECKOUT_SESSION_ID}"),
            cancel_url=_app_url("/pricing?checkout=canceled"),
        )
    except BillingProviderError as e:
        log_event("error", "billing.checkout.failed", user_id=user.user_id, error_code="billing_unavailable",
                  extra={"reason": str(e)})
        raise BillingUnavailableError("Could not create checkout session") from e
    return {"url": url}


@stripe_router.get("/checkout")
def checkout_return(
    session_id: Optional[str] = Query(None),
    service: BillingService = Depends(get_billing_service),
):
    """
    Stripe redirects here after a successful checkout.

    Pulls the session's subscription so the dashboard is current even if
    webhooks lag, then sends the browser on.
    """
    if not session_id:
        return RedirectResponse(_app_url("/pricing"))

    try:
        service.sync_checkout_session(session_id)
    except Exception as e:
        # The browser always lands on a page; webhooks still deliver the state
        log_event("error", "billing.checkout.sync_failed", extra={"session_id": session_id, "reason": repr(e)})
        return RedirectResponse(_app_url("/pricing?checkout=error"))
    return RedirectResponse(_app_url("/dashboard?checkout=success"))


@stripe_router.post("/portal", response_model=UrlResponse)
def create_portal(
    user: AuthenticatedUser = Depends(get_current_user),
    service: BillingService = Depends(get_billing_service),
):
    """
    Create Stripe billing portal session.

    Errors:
        401: Not signed in
        400: User never checked out ({"redirectTo": "/pricing"})
        500: Stripe API error
    """
    try:
        url = service.create_portal_session(user.user_id, _app_url("/dashboard/settings"))
    except BillingProviderError as e:
        log_event("error", "billing.portal.failed", user_id=user.user_id, error_code="billing_unavailable",
                  extra={"reason": str(e)})
        raise BillingUnavailableError("Could not open the billing portal") from e
    return {"url": url}


@stripe_router.post("/webhook")
async def handle_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None),
    service: BillingService = Depends(get_billing_service),
):
    """
    Handle Stripe webhook events.

    Returns:
        {"received": true}

    Errors:
        400: Invalid signature or payload (nothing processed)
        500: Processing failed (Stripe retries the delivery)
        503: Billing disabled
    """
    # Raw body is required for signature verification
    body = await request.body()

    try:
        outcome = service.process_webhook(body, stripe_signature)
    except BillingWebhookError as e:
        log_event("warning", "billing.webhook.rejected", error_code="invalid_webhook", extra={"reason": str(e)})
        raise ValidationError("Invalid webhook signature or payload", code="invalid_webhook") from e
    except AppError:
        raise
    except Exception as e:
        log_event("error", "billing.webhook.failed", error_code="billing_unavailable", extra={"reason": repr(e)})
        raise BillingUnavailableError("Webhook processing failed") from e

    return {"received": True, "event_id": outcome.event_id, "action": outcome.action}


@router.get("/status", response_model=BillingStatusResponse)
def get_status(
    user: AuthenticatedUser = Depends(get_current_user),
    service: BillingService = Depends(get_billing_service),
):
    """Current plan, subscription status and period boundaries for the signed-in user."""
    status = service.get_billing_status(user.user_id)
    return BillingStatusResponse(
        enabled=status.enabled,
        plan_id=status.plan_id.value,
        plan_name=status.plan_name,
        generation_limit=status.generation_limit,
        status=status.status.value,
        trial_ends_at=status.trial_ends_at,
        current_period_end=status.current_period_end,
        cancel_at_period_end=status.cancel_at_period_end,
        has_customer=status.has_customer,
    )


@router.get("/plans", response_model=List[PlanResponse])
def list_plans():
    """Plan catalogue, cheapest first."""
    registry = get_plan_registry()
    return [
        PlanResponse(
            id=plan.id.value,
            name=plan.name,
            description=plan.description,
            monthly_price=plan.monthly_price,
            yearly_price=plan.yearly_price,
            trial_days=plan.trial_days,
            generation_limit=plan.generation_limit,
            features=list(plan.features),
            is_popular=plan.is_popular,
            purchasable=registry.is_purchasable(plan.id),
            monthly_price_id=plan.price_id_for(BillingInterval.MONTHLY),
            yearly_price_id=plan.price_id_for(BillingInterval.YEARLY),
        )
        for plan in registry.all()
    ]
