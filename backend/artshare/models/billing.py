"""Billing and reconciliation models."""

from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field


class EventSource(str, Enum):
    """Provider notification that triggered a reconciliation."""

    CHECKOUT_COMPLETED = "checkout.session.completed"
    INVOICE_PAID = "invoice.paid"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"


class StatusBucket(str, Enum):
    """Coarse classification of a provider subscription status."""

    ENTITLED = "entitled"
    REVOKED = "revoked"
    UNKNOWN = "unknown"


class FeatureKey(str, Enum):
    """Usage counters tracked per billing cycle."""

    AI_CREDITS = "ai_credits"
    STORAGE_MB = "storage_mb"


class User(BaseModel):
    """Identity record; billing only touches the Stripe customer id."""

    id: str
    email: str | None = None
    full_name: str | None = None
    stripe_customer_id: str | None = None


class Plan(BaseModel):
    """Reference data mapping a Stripe product to an internal plan."""

    id: str
    stripe_product_id: str
    daily_quota_credits: int | None = Field(default=None, ge=0)
    storage_quota_mb: int | None = Field(default=None, ge=0)


class Entitlement(BaseModel):
    """Persisted paid-access grant. At most one per user."""

    user_id: str
    plan_id: str
    expires_at: datetime
    stripe_subscription_id: str
    stripe_price_id: str
    stripe_customer_id: str | None = None
    cancel_at_period_end: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None


class UsageCounter(BaseModel):
    """Per-feature usage within one cycle window."""

    user_id: str
    feature_key: FeatureKey
    used_amount: int = Field(default=0, ge=0)
    cycle_started_at: datetime
    cycle_ends_at: datetime


class ProviderSubscription(BaseModel):
    """Normalized Stripe subscription payload."""

    id: str
    customer_id: str | None = None
    status: str
    cancel_at_period_end: bool = False
    price_id: str | None = None
    product_id: str | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    latest_invoice_period_start: datetime | None = None
    latest_invoice_period_end: datetime | None = None
    metadata: dict[str, str] = Field(default_factory=dict)


class ProviderPrice(BaseModel):
    """Normalized Stripe price payload."""

    id: str
    product_id: str
    recurring_interval: str | None = None


class ReconcileEvent(BaseModel):
    """Normalized view of one provider notification (or a simulated one)."""

    source: EventSource
    customer_id: str | None = None
    subscription_id: str | None = None
    client_reference_id: str | None = None
    metadata_user_id: str | None = None
    simulated: bool = False
    simulated_price_id: str | None = None
    simulated_status: str | None = None

    @property
    def user_reference(self) -> str | None:
        return self.client_reference_id or self.metadata_user_id


class SubscriptionDetails(BaseModel):
    """Canonical subscription state the reconciliation decision is made on."""

    status: str
    price_id: str | None = None
    product_id: str | None = None
    period_start: datetime | None = None
    period_end: datetime | None = None
    cancel_at_period_end: bool = False
    subscription: ProviderSubscription | None = None


class ReconciliationResult(BaseModel):
    """Outcome of a reconciliation. access_updated=False is a no-op, not an error."""

    user: User | None = None
    plan: Plan | None = None
    subscription: ProviderSubscription | None = None
    access_updated: bool = False
    usage_reset: bool = False


class SessionResult(BaseModel):
    """Where the browser should be sent to manage or start a subscription."""

    url: str | None
    type: Literal["checkout", "portal"]
    session_id: str | None = None


class SubscriptionInfo(BaseModel):
    """Subscription summary returned to the frontend."""

    plan_id: str
    expires_at: datetime
    cancel_at_period_end: bool
    ai_credits_used: int = 0
    daily_ai_credit_limit: int | None = None
    storage_quota_mb: int | None = None
    created_at: datetime | None = None


class NotificationMessage(BaseModel):
    """Payload pushed to a user's live connections."""

    type: str
    data: dict[str, Any] = Field(default_factory=dict)


class CreditUsage(BaseModel):
    """Today's AI credit counter after a spend."""

    used_amount: int
    daily_limit: int
    remaining: int
    window_ends_at: datetime
