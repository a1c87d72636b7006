"""Checkout/portal orchestration and Stripe webhook dispatch."""

import asyncio
from datetime import UTC, datetime

import structlog

from artshare.config import BillingConfig
from artshare.constants import SIMULATED_SUBSCRIPTION_PREFIX
from artshare.errors import BadRequestError, BillingError, NotFoundError
from artshare.models.billing import (
    EventSource,
    FeatureKey,
    ReconcileEvent,
    SessionResult,
    SubscriptionInfo,
    User,
)
from artshare.services.entitlement_store import EntitlementStore
from artshare.services.reconciliation_service import ReconciliationService
from artshare.services.stripe_service import StripeService, object_id

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class BillingService:
    """Sends users to checkout or the billing portal and routes Stripe events."""

    def __init__(
        self,
        store: EntitlementStore,
        stripe_service: StripeService,
        reconciliation: ReconciliationService,
        config: BillingConfig,
        now_provider=_utcnow,
    ) -> None:
        self.store = store
        self.stripe_service = stripe_service
        self.reconciliation = reconciliation
        self.config = config
        self.now_provider = now_provider
        # Strong references so detached simulations are not garbage collected
        self._simulation_tasks: set[asyncio.Task] = set()

    async def create_checkout_or_portal_session(
        self,
        *,
        price_id: str,
        email: str | None = None,
        user_id: str | None = None,
    ) -> SessionResult:
        log = logger.bind(price_id=price_id, user_ref=user_id or email or "guest")
        log.info("billing_session_requested")

        user = await self._resolve_user(user_id, email)
        customer_id = await self._resolve_customer_id(user, user_id, email)
        if not customer_id:
            raise BadRequestError(
                "Cannot initiate session without customer details (email or identified user)."
            )

        if user is not None and await self._has_active_entitlement(user.id):
            log.info("billing_redirect_to_portal", user_id=user.id, customer_id=customer_id)
            portal = await self.stripe_service.create_billing_portal_session(
                customer_id=customer_id
            )
            return SessionResult(url=portal["url"], type="portal", session_id=portal["id"])

        try:
            await self.stripe_service.retrieve_price(price_id)
        except BillingError as e:
            log.warning("billing_price_invalid", error=e.message)
            raise BadRequestError("Invalid subscription plan selected.") from e

        reference_id = user.id if user else user_id
        checkout = await self.stripe_service.create_checkout_session(
            price_id=price_id,
            customer_id=customer_id,
            customer_email=email,
            user_id=reference_id,
        )
        log.info("billing_checkout_created", session_id=checkout["id"], customer_id=customer_id)

        if self.config.simulation_enabled and checkout["id"]:
            self._schedule_simulated_activation(
                session_id=checkout["id"],
                price_id=price_id,
                customer_id=customer_id,
                user_id=reference_id,
            )

        return SessionResult(url=checkout["url"], type="checkout", session_id=checkout["id"])

    async def create_portal_session_for_user(self, user_id: str) -> SessionResult:
        user = await self.store.find_user_by_provider_data(None, user_id)
        if user is None or not user.stripe_customer_id:
            logger.warning("billing_portal_customer_missing", user_id=user_id)
            raise NotFoundError(
                "Billing information not found for this user, or user does not exist."
            )

        portal = await self.stripe_service.create_billing_portal_session(
            customer_id=user.stripe_customer_id
        )
        logger.info(
            "billing_portal_created", user_id=user_id, customer_id=user.stripe_customer_id
        )
        return SessionResult(url=portal["url"], type="portal", session_id=portal["id"])

    async def get_subscription_info(self, user_id: str) -> SubscriptionInfo:
        entitlement = await self.store.find_entitlement(user_id)
        if entitlement is None:
            raise NotFoundError("No active subscription for this user.")

        plan = await self.store.find_plan(entitlement.plan_id)
        usage = await self.store.find_active_usage(
            user_id, FeatureKey.AI_CREDITS, self.now_provider()
        )
        return SubscriptionInfo(
            plan_id=entitlement.plan_id,
            expires_at=entitlement.expires_at,
            cancel_at_period_end=entitlement.cancel_at_period_end,
            ai_credits_used=usage.used_amount if usage else 0,
            daily_ai_credit_limit=plan.daily_quota_credits if plan else None,
            storage_quota_mb=plan.storage_quota_mb if plan else None,
            created_at=entitlement.created_at,
        )

    async def handle_webhook_event(self, event: dict) -> bool:
        """Route a verified Stripe event. Returns False for ignored events."""
        event_type = str(event.get("type", ""))
        event_id = event.get("id")
        data_object = (event.get("data") or {}).get("object") or {}
        log = logger.bind(event_id=event_id, event_type=event_type)

        if event_type == EventSource.CHECKOUT_COMPLETED.value:
            subscription_id = object_id(data_object.get("subscription"))
            customer_id = object_id(data_object.get("customer"))
            if data_object.get("mode") != "subscription" or not subscription_id or not customer_id:
                log.warning(
                    "billing_checkout_not_subscription",
                    session_id=data_object.get("id"),
                    mode=data_object.get("mode"),
                )
                return False
            await self.reconciliation.reconcile(
                ReconcileEvent(
                    source=EventSource.CHECKOUT_COMPLETED,
                    customer_id=customer_id,
                    subscription_id=subscription_id,
                    client_reference_id=data_object.get("client_reference_id"),
                    metadata_user_id=(data_object.get("metadata") or {}).get("user_id"),
                )
            )
        elif event_type == EventSource.INVOICE_PAID.value:
            if await self.reconciliation.reconcile_renewal(data_object) is None:
                log.info("billing_webhook_ignored", reason="invoice not tied to a subscription")
                return False
        elif event_type == EventSource.SUBSCRIPTION_UPDATED.value:
            await self.reconciliation.reconcile(
                ReconcileEvent(
                    source=EventSource.SUBSCRIPTION_UPDATED,
                    customer_id=object_id(data_object.get("customer")),
                    subscription_id=data_object.get("id"),
                    metadata_user_id=(data_object.get("metadata") or {}).get("user_id"),
                )
            )
        elif event_type == EventSource.SUBSCRIPTION_DELETED.value:
            await self.reconciliation.reconcile_cancellation(data_object)
        else:
            log.info("billing_webhook_ignored")
            return False

        log.info("billing_webhook_processed")
        return True

    async def _resolve_user(self, user_id: str | None, email: str | None) -> User | None:
        user = None
        if user_id:
            user = await self.store.find_user_by_provider_data(None, user_id)
        if user is None and email:
            user = await self.store.find_user_by_email(email)
        return user

    async def _resolve_customer_id(
        self, user: User | None, user_id: str | None, email: str | None
    ) -> str | None:
        if user is not None and user.stripe_customer_id:
            return user.stripe_customer_id
        if not email:
            return None

        existing = await self.stripe_service.list_customers_by_email(email)
        if existing:
            if user is not None:
                await self.store.update_user_customer_id(user.id, existing[0])
            return existing[0]

        owner_id = user.id if user else user_id
        customer_id = await self.stripe_service.create_customer(
            email=email,
            name=user.full_name if user else None,
            metadata={"user_id": owner_id} if owner_id else None,
        )
        if user is not None:
            await self.store.update_user_customer_id(user.id, customer_id)
        return customer_id

    async def _has_active_entitlement(self, user_id: str) -> bool:
        entitlement = await self.store.find_entitlement(user_id)
        return (
            entitlement is not None
            and entitlement.expires_at > self.now_provider()
            and not entitlement.cancel_at_period_end
        )

    def _schedule_simulated_activation(
        self,
        *,
        session_id: str,
        price_id: str,
        customer_id: str,
        user_id: str | None,
    ) -> None:
        logger.warning(
            "billing_simulation_scheduled",
            session_id=session_id,
            delay_seconds=self.config.simulation_delay_seconds,
        )
        task = asyncio.create_task(
            self._run_simulated_activation(
                session_id=session_id,
                price_id=price_id,
                customer_id=customer_id,
                user_id=user_id,
            )
        )
        self._simulation_tasks.add(task)
        task.add_done_callback(self._simulation_tasks.discard)

    async def _run_simulated_activation(
        self,
        *,
        session_id: str,
        price_id: str,
        customer_id: str,
        user_id: str | None,
    ) -> None:
        await asyncio.sleep(self.config.simulation_delay_seconds)
        log = logger.bind(session_id=session_id, price_id=price_id, customer_id=customer_id)
        try:
            simulated_subscription_id = (
                f"{SIMULATED_SUBSCRIPTION_PREFIX}{int(self.now_provider().timestamp() * 1000)}"
            )
            result = await self.reconciliation.reconcile(
                ReconcileEvent(
                    source=EventSource.CHECKOUT_COMPLETED,
                    customer_id=customer_id,
                    subscription_id=simulated_subscription_id,
                    client_reference_id=user_id,
                    metadata_user_id=user_id,
                    simulated=True,
                    simulated_price_id=price_id,
                    simulated_status="active",
                )
            )
            log.info("billing_simulation_completed", access_updated=result.access_updated)
        except Exception as e:
            log.exception("billing_simulation_failed", error=str(e))
