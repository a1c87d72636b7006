"""Daily AI credit accounting on top of the entitlement store."""

from datetime import UTC, datetime

import structlog

from artshare.errors import BadRequestError, NotFoundError
from artshare.models.billing import CreditUsage, Entitlement, FeatureKey, Plan, UsageCounter
from artshare.services.entitlement_store import EntitlementStore, daily_window

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class UsageService:
    """Spends daily AI credits and opens each day's credit counter."""

    def __init__(self, store: EntitlementStore, now_provider=_utcnow) -> None:
        self.store = store
        self.now_provider = now_provider

    async def consume_ai_credits(self, user_id: str, amount: int) -> CreditUsage:
        """Spend ``amount`` credits from today's quota.

        Raises:
            BadRequestError: The amount is not positive, the plan carries no
                credit quota, or the spend would exceed today's limit.
            NotFoundError: The user holds no unexpired entitlement.
        """
        if amount <= 0:
            raise BadRequestError("Credit amount must be positive.")

        now = self.now_provider()
        log = logger.bind(user_id=user_id, amount=amount)
        entitlement = await self.store.find_entitlement(user_id)
        if entitlement is None or entitlement.expires_at <= now:
            raise NotFoundError("No active subscription for this user.")

        plan = await self.store.find_plan(entitlement.plan_id)
        if plan is None or plan.daily_quota_credits is None:
            raise BadRequestError("The current plan does not include AI credits.")

        counter = await self._todays_counter(entitlement, now)
        updated = await self.store.consume_usage(
            user_id,
            FeatureKey.AI_CREDITS,
            counter.cycle_started_at,
            amount,
            plan.daily_quota_credits,
        )
        if updated is None:
            log.info(
                "billing_credit_limit_exceeded",
                used_amount=counter.used_amount,
                daily_limit=plan.daily_quota_credits,
            )
            raise BadRequestError("Daily AI credit limit exceeded. Please try again tomorrow.")

        log.info("billing_credits_consumed", used_amount=updated.used_amount)
        return CreditUsage(
            used_amount=updated.used_amount,
            daily_limit=plan.daily_quota_credits,
            remaining=plan.daily_quota_credits - updated.used_amount,
            window_ends_at=updated.cycle_ends_at,
        )

    async def reset_daily_quotas(self) -> int:
        """Open today's credit counter for every active subscriber with a daily quota.

        Meant to run just after midnight UTC. Counters that already exist for
        today are left as they are. Returns how many counters are open for today.
        """
        now = self.now_provider()
        entitlements = await self.store.list_active_entitlements(now)
        plans: dict[str, Plan | None] = {}
        opened = 0

        for entitlement in entitlements:
            if entitlement.plan_id not in plans:
                plans[entitlement.plan_id] = await self.store.find_plan(entitlement.plan_id)
            plan = plans[entitlement.plan_id]
            if plan is None or plan.daily_quota_credits is None:
                continue
            try:
                start, end = daily_window(now, entitlement.expires_at)
                await self.store.ensure_usage_counter(
                    entitlement.user_id, FeatureKey.AI_CREDITS, start, end
                )
                opened += 1
            except Exception as e:
                logger.exception(
                    "billing_daily_reset_failed", user_id=entitlement.user_id, error=str(e)
                )

        logger.info("billing_daily_reset_completed", active=len(entitlements), opened=opened)
        return opened

    async def _todays_counter(self, entitlement: Entitlement, now: datetime) -> UsageCounter:
        counter = await self.store.find_active_usage(
            entitlement.user_id, FeatureKey.AI_CREDITS, now
        )
        if counter is not None:
            return counter
        # First spend of the day before the daily job reached this user
        start, end = daily_window(now, entitlement.expires_at)
        return await self.store.ensure_usage_counter(
            entitlement.user_id, FeatureKey.AI_CREDITS, start, end
        )
