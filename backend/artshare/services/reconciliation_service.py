"""Subscription entitlement reconciliation.

Turns Stripe lifecycle notifications (and the local simulated activation)
into a single entitlement row per user plus usage-cycle resets. Stripe
delivers at least once and in no particular order, so every decision here
must be safe to replay.
"""

import calendar
from datetime import UTC, datetime

import structlog

from artshare.constants import (
    CUSTOMER_ID_PREFIX,
    ENTITLED_STATUSES,
    REVOKED_STATUSES,
    SUBSCRIPTION_ID_PREFIX,
    SYNTHETIC_SUBSCRIPTION_PREFIX,
    YEARLY_INTERVAL,
)
from artshare.errors import BadRequestError, BillingError, InternalBillingError
from artshare.models.billing import (
    Entitlement,
    EventSource,
    NotificationMessage,
    ReconcileEvent,
    ReconciliationResult,
    StatusBucket,
    SubscriptionDetails,
    User,
)
from artshare.services.entitlement_store import EntitlementStore
from artshare.services.notifier import NullNotifier
from artshare.services.stripe_service import StripeService, object_id

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def classify_status(status: str) -> StatusBucket:
    if status in ENTITLED_STATUSES:
        return StatusBucket.ENTITLED
    if status in REVOKED_STATUSES:
        return StatusBucket.REVOKED
    return StatusBucket.UNKNOWN


def add_months(moment: datetime, months: int) -> datetime:
    """Calendar month arithmetic, clamping the day (Jan 31 + 1 month = Feb 28/29)."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def should_reset_usage(
    *,
    source: EventSource,
    bucket: StatusBucket,
    simulated: bool,
    previous: Entitlement | None,
    plan_id: str,
    subscription_id: str,
    cycle_started_at: datetime,
) -> bool:
    """Decide whether this activation starts a new usage cycle.

    Each trigger is sufficient on its own. When none fires the counters are
    left untouched, which is what keeps redelivered events from handing out
    extra quota.
    """
    if bucket != StatusBucket.ENTITLED:
        return False

    new_cycle = previous is None or cycle_started_at >= previous.expires_at

    if simulated:
        return True
    if source == EventSource.CHECKOUT_COMPLETED:
        # First activation of this subscription; a redelivered completion is not
        return previous is None or previous.stripe_subscription_id != subscription_id
    if source == EventSource.INVOICE_PAID:
        return new_cycle
    if source == EventSource.SUBSCRIPTION_UPDATED:
        return new_cycle or previous.plan_id != plan_id
    return False


class ReconciliationService:
    """Reconciles provider subscription state into local entitlements."""

    def __init__(
        self,
        store: EntitlementStore,
        stripe_service: StripeService,
        *,
        notifier=None,
        now_provider=_utcnow,
    ) -> None:
        self.store = store
        self.stripe_service = stripe_service
        self.notifier = notifier or NullNotifier()
        self.now_provider = now_provider

    async def reconcile(self, event: ReconcileEvent) -> ReconciliationResult:
        """Apply one (possibly simulated) provider event to the user's entitlement."""
        user_ref = event.user_reference
        sub_label = event.subscription_id or ("(simulated)" if event.simulated else "(missing_id)")
        log = logger.bind(
            source=event.source.value,
            customer_id=event.customer_id,
            subscription_id=sub_label,
            user_ref=user_ref,
            simulated=event.simulated,
        )
        log.info("billing_reconcile_started")

        if not event.customer_id and not user_ref:
            log.warning("billing_reconcile_skipped", reason="no customer id or user reference")
            return ReconciliationResult(access_updated=False)
        if not event.subscription_id and not event.simulated:
            log.warning("billing_reconcile_skipped", reason="subscription id required")
            return ReconciliationResult(access_updated=False)

        user: User | None = None
        try:
            user = await self.store.find_user_by_provider_data(event.customer_id, user_ref)
            if user is None:
                log.warning("billing_reconcile_skipped", reason="user not found")
                return ReconciliationResult(access_updated=False)

            log = log.bind(user_id=user.id)
            if event.customer_id and user.stripe_customer_id != event.customer_id:
                await self.store.update_user_customer_id(user.id, event.customer_id)
                user.stripe_customer_id = event.customer_id

            details = await self._subscription_details(event)
            bucket = classify_status(details.status)

            if bucket == StatusBucket.ENTITLED:
                return await self._activate(event, user, details, log)
            if bucket == StatusBucket.REVOKED:
                return await self._deactivate(user, details, log)

            log.warning("billing_status_unhandled", status=details.status)
            return ReconciliationResult(
                user=user, subscription=details.subscription, access_updated=False
            )
        except BillingError as e:
            log.error("billing_reconcile_failed", error=e.message, error_kind=type(e).__name__)
            raise
        except Exception as e:
            log.exception("billing_reconcile_failed", error=str(e))
            raise InternalBillingError(
                "Failed to process subscription event due to an internal error.",
                context={"subscription_id": sub_label},
            ) from e

    async def reconcile_renewal(self, invoice: dict) -> ReconciliationResult | None:
        """Handle ``invoice.paid``. Invoices not tied to a subscription are ignored."""
        invoice_id = invoice.get("id")
        subscription_id = _invoice_subscription_id(invoice)
        customer_id = object_id(invoice.get("customer"))
        metadata_user_id = (invoice.get("metadata") or {}).get("user_id")

        if (
            not subscription_id
            or not customer_id
            or not subscription_id.startswith(SUBSCRIPTION_ID_PREFIX)
            or not customer_id.startswith(CUSTOMER_ID_PREFIX)
        ):
            logger.warning(
                "billing_renewal_skipped",
                invoice_id=invoice_id,
                subscription_id=subscription_id,
                customer_id=customer_id,
            )
            return None

        result = await self.reconcile(
            ReconcileEvent(
                source=EventSource.INVOICE_PAID,
                customer_id=customer_id,
                subscription_id=subscription_id,
                metadata_user_id=metadata_user_id,
            )
        )
        if result.access_updated:
            logger.info(
                "billing_renewal_processed",
                invoice_id=invoice_id,
                subscription_id=subscription_id,
                usage_reset=result.usage_reset,
            )
        else:
            logger.warning(
                "billing_renewal_not_applied",
                invoice_id=invoice_id,
                subscription_id=subscription_id,
            )
        return result

    async def reconcile_cancellation(self, subscription: dict) -> bool:
        """Handle ``customer.subscription.deleted``.

        Returns True when an entitlement was removed. Never raises for a
        missing user or record; the access may already be gone.
        """
        subscription_id = subscription.get("id")
        if not subscription_id or not str(subscription_id).startswith(SUBSCRIPTION_ID_PREFIX):
            logger.error("billing_cancellation_invalid_id", subscription_id=subscription_id)
            return False

        customer_id = object_id(subscription.get("customer"))
        metadata_user_id = (subscription.get("metadata") or {}).get("user_id")
        log = logger.bind(
            subscription_id=subscription_id,
            customer_id=customer_id,
            metadata_user_id=metadata_user_id,
        )

        user = None
        if customer_id or metadata_user_id:
            user = await self.store.find_user_by_provider_data(customer_id, metadata_user_id)

        if user is not None:
            await self.store.delete_entitlement_and_usage(user.id)
            log.info("billing_access_revoked", user_id=user.id)
            await self._notify(user.id, "subscription_removed", {"subscription_id": subscription_id})
            return True

        log.warning("billing_cancellation_user_missing")
        orphan_user_id = await self.store.delete_entitlement_by_subscription_id(subscription_id)
        if orphan_user_id is None:
            log.warning("billing_cancellation_no_entitlement")
            return False

        await self.store.delete_entitlement_and_usage(orphan_user_id)
        log.warning("billing_access_revoked_by_subscription", user_id=orphan_user_id)
        return True

    async def _subscription_details(self, event: ReconcileEvent) -> SubscriptionDetails:
        if event.simulated:
            return await self._simulated_details(event)

        subscription = await self.stripe_service.retrieve_subscription(event.subscription_id)
        period_start = subscription.current_period_start
        period_end = subscription.current_period_end

        if classify_status(subscription.status) == StatusBucket.ENTITLED and (
            period_start is None or period_end is None
        ):
            logger.warning(
                "billing_period_from_latest_invoice", subscription_id=subscription.id
            )
            period_start = period_start or subscription.latest_invoice_period_start
            period_end = period_end or subscription.latest_invoice_period_end
            if period_start is None or period_end is None:
                raise InternalBillingError(
                    "Incomplete subscription details for activation/update.",
                    context={
                        "subscription_id": subscription.id,
                        "period_start": str(period_start),
                        "period_end": str(period_end),
                    },
                )

        return SubscriptionDetails(
            status=subscription.status,
            price_id=subscription.price_id,
            product_id=subscription.product_id,
            period_start=period_start,
            period_end=period_end,
            cancel_at_period_end=subscription.cancel_at_period_end,
            subscription=subscription,
        )

    async def _simulated_details(self, event: ReconcileEvent) -> SubscriptionDetails:
        if not event.simulated_price_id:
            raise BadRequestError(
                "Simulation error: priceId is required for simulated activation."
            )

        price = await self.stripe_service.retrieve_price(event.simulated_price_id)
        period_start = self.now_provider()
        months = 12 if price.recurring_interval == YEARLY_INTERVAL else 1
        return SubscriptionDetails(
            status=event.simulated_status or "active",
            price_id=price.id,
            product_id=price.product_id,
            period_start=period_start,
            period_end=add_months(period_start, months),
            cancel_at_period_end=False,
        )

    async def _activate(
        self, event: ReconcileEvent, user: User, details: SubscriptionDetails, log
    ) -> ReconciliationResult:
        if (
            not details.product_id
            or not details.price_id
            or details.period_start is None
            or details.period_end is None
        ):
            raise InternalBillingError(
                "Incomplete subscription details for activation/update.",
                context={"product_id": details.product_id, "price_id": details.price_id},
            )

        plan = await self.store.find_plan_by_provider_product_id(details.product_id)
        if plan is None:
            raise InternalBillingError(
                f"Configuration error: Plan not found for Stripe Product ID {details.product_id}.",
                context={"product_id": details.product_id},
            )

        expires_at = details.period_end
        cycle_started_at = details.period_start
        subscription_id = event.subscription_id or self._synthetic_subscription_id()

        previous = await self.store.find_entitlement(user.id)
        if previous is not None and expires_at < previous.expires_at:
            # No ordering token from Stripe; last writer wins, but make it visible
            log.warning(
                "billing_expiry_regressed",
                previous_expires_at=previous.expires_at.isoformat(),
                expires_at=expires_at.isoformat(),
            )

        usage_reset = should_reset_usage(
            source=event.source,
            bucket=StatusBucket.ENTITLED,
            simulated=event.simulated,
            previous=previous,
            plan_id=plan.id,
            subscription_id=subscription_id,
            cycle_started_at=cycle_started_at,
        )
        # Counters first: a failed reset must leave the previous expiry in place
        # so a redelivered event still sees the new cycle
        if usage_reset:
            await self.store.reset_usage_for_cycle(user.id, plan, cycle_started_at, expires_at)

        await self.store.upsert_entitlement(
            Entitlement(
                user_id=user.id,
                plan_id=plan.id,
                expires_at=expires_at,
                stripe_subscription_id=subscription_id,
                stripe_price_id=details.price_id,
                stripe_customer_id=event.customer_id or user.stripe_customer_id,
                cancel_at_period_end=details.cancel_at_period_end,
            )
        )

        log.info(
            "billing_access_granted",
            plan_id=plan.id,
            expires_at=expires_at.isoformat(),
            cancel_at_period_end=details.cancel_at_period_end,
            usage_reset=usage_reset,
        )
        await self._notify(
            user.id,
            "subscription_updated",
            {"plan_id": plan.id, "expires_at": expires_at.isoformat()},
        )
        return ReconciliationResult(
            user=user,
            plan=plan,
            subscription=details.subscription,
            access_updated=True,
            usage_reset=usage_reset,
        )

    async def _deactivate(
        self, user: User, details: SubscriptionDetails, log
    ) -> ReconciliationResult:
        await self.store.delete_entitlement_and_usage(user.id)
        log.info("billing_access_revoked", status=details.status)
        await self._notify(user.id, "subscription_removed", {"status": details.status})
        return ReconciliationResult(
            user=user, subscription=details.subscription, access_updated=True
        )

    async def _notify(self, user_id: str, message_type: str, data: dict) -> None:
        try:
            await self.notifier.send_to_user(
                user_id, NotificationMessage(type=message_type, data=data)
            )
        except Exception as e:
            logger.warning("billing_notify_failed", user_id=user_id, error=str(e))

    def _synthetic_subscription_id(self) -> str:
        return f"{SYNTHETIC_SUBSCRIPTION_PREFIX}{int(self.now_provider().timestamp() * 1000)}"


def _invoice_subscription_id(invoice: dict) -> str | None:
    subscription_id = object_id(invoice.get("subscription"))
    if subscription_id:
        return subscription_id
    # Newer API versions nest it under parent.subscription_details
    parent = invoice.get("parent") or {}
    return object_id((parent.get("subscription_details") or {}).get("subscription"))
