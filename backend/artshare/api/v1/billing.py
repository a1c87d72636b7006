"""Billing API endpoints."""

import structlog
from fastapi import APIRouter, Header, HTTPException, Request
from pydantic import BaseModel, Field

from artshare.auth import CurrentUser, OptionalUser
from artshare.errors import BadRequestError
from artshare.models.billing import CreditUsage, SessionResult, SubscriptionInfo
from artshare.services.billing_service import BillingService
from artshare.services.stripe_service import StripeService
from artshare.services.usage_service import UsageService

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


class CheckoutRequest(BaseModel):
    """Checkout session request. Either a Stripe price id or a plan key."""

    price_id: str | None = Field(
        default=None,
        pattern=r"^price_[a-zA-Z0-9]+$",
        description="Stripe price id",
    )
    plan_key: str | None = Field(
        default=None, description="Configured plan key, e.g. artist_monthly"
    )
    email: str | None = Field(default=None, description="Required for guests")


class ConsumeCreditsRequest(BaseModel):
    """AI credits to spend from today's quota."""

    amount: int = Field(default=1, ge=1, le=10_000)


class WebhookResponse(BaseModel):
    """Stripe webhook processing response."""

    received: bool
    processed: bool


def _get_billing_service(request: Request) -> BillingService:
    service = getattr(request.app.state, "billing_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Billing service unavailable")
    return service


def _get_stripe_service(request: Request) -> StripeService:
    service = getattr(request.app.state, "stripe_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Stripe is not configured")
    return service


def _get_usage_service(request: Request) -> UsageService:
    service = getattr(request.app.state, "usage_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Usage tracking unavailable")
    return service


@router.post("/checkout", response_model=SessionResult)
async def create_checkout_session(
    body: CheckoutRequest,
    request: Request,
    user: OptionalUser,
) -> SessionResult:
    """Start a subscription checkout, or open the portal for active subscribers."""
    billing_service = _get_billing_service(request)
    stripe_service = _get_stripe_service(request)

    price_id = body.price_id
    if price_id is None and body.plan_key:
        price_id = stripe_service.resolve_price_id(body.plan_key)
    if not price_id:
        raise BadRequestError("The selected plan is not available.")

    return await billing_service.create_checkout_or_portal_session(
        price_id=price_id,
        email=(user.email if user else None) or body.email,
        user_id=user.id if user else None,
    )


@router.post("/portal", response_model=SessionResult)
async def create_portal_session(request: Request, user: CurrentUser) -> SessionResult:
    """Create a Stripe Customer Portal session for the signed-in user."""
    billing_service = _get_billing_service(request)
    return await billing_service.create_portal_session_for_user(user.id)


@router.get("/subscription", response_model=SubscriptionInfo)
async def subscription_info(request: Request, user: CurrentUser) -> SubscriptionInfo:
    """Return the current plan with today's credit usage."""
    billing_service = _get_billing_service(request)
    return await billing_service.get_subscription_info(user.id)


@router.post("/credits/consume", response_model=CreditUsage)
async def consume_credits(
    body: ConsumeCreditsRequest, request: Request, user: CurrentUser
) -> CreditUsage:
    """Spend AI credits from the signed-in user's daily quota."""
    usage_service = _get_usage_service(request)
    return await usage_service.consume_ai_credits(user.id, body.amount)


@router.post("/webhook", response_model=WebhookResponse)
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
) -> WebhookResponse:
    """Verify a Stripe webhook and reconcile the subscription it describes.

    Processing errors propagate as 5xx so Stripe redelivers the event.
    """
    billing_service = _get_billing_service(request)
    stripe_service = _get_stripe_service(request)
    payload = await request.body()

    try:
        event = stripe_service.verify_webhook_event(payload, stripe_signature)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.warning("stripe_webhook_signature_invalid", error=str(e))
        raise HTTPException(status_code=400, detail="Invalid webhook signature")

    processed = await billing_service.handle_webhook_event(event)
    return WebhookResponse(received=True, processed=processed)
