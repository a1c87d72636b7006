"""Stripe API wrapper (provider adapter). No business logic lives here."""

import asyncio
from datetime import UTC, datetime
from typing import Any

import stripe
import structlog

from artshare.config import StripeConfig
from artshare.constants import PLAN_KEYS
from artshare.errors import InternalBillingError
from artshare.models.billing import ProviderPrice, ProviderSubscription

logger = structlog.get_logger(__name__)

SUBSCRIPTION_EXPAND = ["latest_invoice.lines.data", "items.data.price.product"]


def _to_datetime(timestamp: int | None) -> datetime | None:
    if not timestamp:
        return None
    return datetime.fromtimestamp(timestamp, tz=UTC)


def _as_dict(obj: dict | Any | None) -> dict:
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return obj
    return obj.to_dict()


def object_id(value: str | dict | None) -> str | None:
    """Stripe fields are either an id or an expanded object carrying one."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return _as_dict(value).get("id")


class StripeService:
    """Encapsulates Stripe SDK calls used by the billing services."""

    def __init__(self, config: StripeConfig, *, webhook_tolerance_seconds: int = 300) -> None:
        if not config.secret_key:
            raise ValueError("Stripe secret key is required")

        self.config = config
        self.webhook_tolerance_seconds = webhook_tolerance_seconds
        stripe.api_key = config.secret_key
        if not config.webhook_secret:
            logger.warning(
                "stripe_webhook_secret_missing",
                detail="Real webhooks will fail verification",
            )

    @property
    def price_mapping(self) -> dict[str, str]:
        return {
            "artist_monthly": self.config.price_artist_monthly,
            "artist_yearly": self.config.price_artist_yearly,
            "studio_monthly": self.config.price_studio_monthly,
            "studio_yearly": self.config.price_studio_yearly,
        }

    def resolve_price_id(self, plan_key: str) -> str | None:
        if plan_key not in PLAN_KEYS:
            return None
        return self.price_mapping.get(plan_key) or None

    async def retrieve_subscription(self, subscription_id: str) -> ProviderSubscription:
        try:
            subscription = await asyncio.to_thread(
                stripe.Subscription.retrieve,
                subscription_id,
                expand=SUBSCRIPTION_EXPAND,
            )
        except stripe.StripeError as e:
            logger.error(
                "stripe_retrieve_subscription_failed",
                subscription_id=subscription_id,
                error=str(e),
            )
            raise InternalBillingError(f"Stripe retrieve subscription failed: {e}") from e
        return self.subscription_from_object(subscription)

    async def retrieve_price(self, price_id: str) -> ProviderPrice:
        try:
            price = await asyncio.to_thread(stripe.Price.retrieve, price_id, expand=["product"])
        except stripe.StripeError as e:
            logger.error("stripe_retrieve_price_failed", price_id=price_id, error=str(e))
            raise InternalBillingError(f"Stripe retrieve price failed: {e}") from e
        return self.price_from_object(price)

    async def list_customers_by_email(self, email: str) -> list[str]:
        customers = await asyncio.to_thread(stripe.Customer.list, email=email, limit=1)
        return [str(customer["id"]) for customer in _as_dict(customers).get("data", [])]

    async def create_customer(
        self,
        *,
        email: str,
        name: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> str:
        params: dict[str, Any] = {"email": email}
        if name:
            params["name"] = name
        if metadata:
            params["metadata"] = metadata
        try:
            customer = await asyncio.to_thread(stripe.Customer.create, **params)
        except stripe.StripeError as e:
            logger.error("stripe_create_customer_failed", error=str(e))
            raise InternalBillingError(f"Stripe create customer failed: {e}") from e
        return str(customer.id)

    async def create_checkout_session(
        self,
        *,
        price_id: str,
        customer_id: str | None = None,
        customer_email: str | None = None,
        user_id: str | None = None,
        success_url: str | None = None,
        cancel_url: str | None = None,
    ) -> dict[str, str | None]:
        params: dict[str, Any] = {
            "mode": "subscription",
            "payment_method_types": ["card"],
            "line_items": [{"price": price_id, "quantity": 1}],
            "allow_promotion_codes": True,
            "metadata": {"user_id": user_id or ""},
            "success_url": success_url or self.config.success_url,
            "cancel_url": cancel_url or self.config.cancel_url,
        }
        if user_id:
            params["client_reference_id"] = user_id

        if customer_id:
            params["customer"] = customer_id
        elif customer_email:
            params["customer_email"] = customer_email

        try:
            session = await asyncio.to_thread(stripe.checkout.Session.create, **params)
        except stripe.StripeError as e:
            logger.error("stripe_checkout_session_failed", price_id=price_id, error=str(e))
            raise InternalBillingError(f"Stripe error creating checkout session: {e}") from e
        return {"id": session.id, "url": session.url}

    async def create_billing_portal_session(
        self, *, customer_id: str, return_url: str | None = None
    ) -> dict[str, str | None]:
        try:
            session = await asyncio.to_thread(
                stripe.billing_portal.Session.create,
                customer=customer_id,
                return_url=return_url or self.config.return_url,
            )
        except stripe.StripeError as e:
            logger.error("stripe_portal_session_failed", customer_id=customer_id, error=str(e))
            raise InternalBillingError("Failed to create Stripe customer portal session.") from e
        return {"id": session.id, "url": session.url}

    def verify_webhook_event(self, payload: bytes, signature: str | None) -> dict:
        if not self.config.webhook_secret:
            raise ValueError("Stripe webhook secret is not configured")
        if not signature:
            raise ValueError("Missing Stripe-Signature header")

        event = stripe.Webhook.construct_event(
            payload=payload,
            sig_header=signature,
            secret=self.config.webhook_secret,
            tolerance=self.webhook_tolerance_seconds,
        )
        return _as_dict(event)

    def subscription_from_object(self, subscription_obj: dict | Any) -> ProviderSubscription:
        subscription = _as_dict(subscription_obj)

        items = _as_dict(subscription.get("items")).get("data", [])
        first_item = _as_dict(items[0]) if items else {}
        price = first_item.get("price")
        price_id = object_id(price)
        product_id = None
        if price is not None and not isinstance(price, str):
            product_id = object_id(_as_dict(price).get("product"))

        # Older API versions carry the period on the subscription, newer ones on the item
        period_start = subscription.get("current_period_start") or first_item.get(
            "current_period_start"
        )
        period_end = subscription.get("current_period_end") or first_item.get("current_period_end")

        invoice_start, invoice_end = self._invoice_period(subscription.get("latest_invoice"))

        metadata = _as_dict(subscription.get("metadata"))

        return ProviderSubscription(
            id=str(subscription.get("id", "")),
            customer_id=object_id(subscription.get("customer")),
            status=str(subscription.get("status", "")),
            cancel_at_period_end=bool(subscription.get("cancel_at_period_end", False)),
            price_id=price_id,
            product_id=product_id,
            current_period_start=_to_datetime(period_start),
            current_period_end=_to_datetime(period_end),
            latest_invoice_period_start=invoice_start,
            latest_invoice_period_end=invoice_end,
            metadata={str(k): str(v) for k, v in metadata.items()},
        )

    def price_from_object(self, price_obj: dict | Any) -> ProviderPrice:
        price = _as_dict(price_obj)
        product_id = object_id(price.get("product"))
        if not product_id:
            raise InternalBillingError(f"Stripe price {price.get('id')} has no product")
        recurring = _as_dict(price.get("recurring"))
        return ProviderPrice(
            id=str(price.get("id", "")),
            product_id=product_id,
            recurring_interval=recurring.get("interval"),
        )

    @staticmethod
    def _invoice_period(invoice_obj: str | dict | Any | None) -> tuple[datetime | None, datetime | None]:
        # Unexpanded invoices arrive as a bare id and carry no period
        if invoice_obj is None or isinstance(invoice_obj, str):
            return None, None
        lines = _as_dict(_as_dict(invoice_obj).get("lines")).get("data", [])
        if not lines:
            return None, None
        period = _as_dict(_as_dict(lines[0]).get("period"))
        return _to_datetime(period.get("start")), _to_datetime(period.get("end"))
