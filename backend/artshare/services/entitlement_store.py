"""Entitlement store contract and its in-memory and Supabase implementations."""

import asyncio
from datetime import UTC, datetime, time
from typing import Protocol

import structlog

from artshare.models.billing import Entitlement, FeatureKey, Plan, UsageCounter, User

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def daily_window(now: datetime, cycle_end: datetime) -> tuple[datetime, datetime]:
    """Today's UTC credit window, cut short when the paid period ends first."""
    start = datetime.combine(now.date(), time.min, tzinfo=UTC)
    end = datetime.combine(now.date(), time.max, tzinfo=UTC)
    return start, min(end, cycle_end)


def usage_windows(
    plan: Plan, cycle_end: datetime, now: datetime
) -> list[tuple[FeatureKey, datetime]]:
    """Counters a plan carries and the end of each counter's window.

    AI credits are a daily quota, so their window closes at the end of the
    current UTC day (never past the paid period). Storage lasts the cycle.
    """
    windows: list[tuple[FeatureKey, datetime]] = []
    if plan.daily_quota_credits is not None:
        _, credits_end = daily_window(now, cycle_end)
        windows.append((FeatureKey.AI_CREDITS, credits_end))
    if plan.storage_quota_mb is not None:
        windows.append((FeatureKey.STORAGE_MB, cycle_end))
    return windows


class EntitlementStore(Protocol):
    """Storage contract for billing state."""

    async def find_user_by_provider_data(
        self, customer_id: str | None = None, internal_id: str | None = None
    ) -> User | None:
        """Find a user by Stripe customer id first, then by internal id."""

    async def find_user_by_email(self, email: str) -> User | None:
        """Find a user by email."""

    async def update_user_customer_id(self, user_id: str, customer_id: str) -> User | None:
        """Record the Stripe customer id against a user."""

    async def find_plan_by_provider_product_id(self, product_id: str) -> Plan | None:
        """Map a Stripe product id to a plan."""

    async def find_plan(self, plan_id: str) -> Plan | None:
        """Fetch a plan by its internal id."""

    async def find_entitlement(self, user_id: str) -> Entitlement | None:
        """Fetch the user's entitlement, if any."""

    async def upsert_entitlement(self, entitlement: Entitlement) -> Entitlement:
        """Insert or replace the user's entitlement (keyed on user_id)."""

    async def reset_usage_for_cycle(
        self, user_id: str, plan: Plan, cycle_start: datetime, cycle_end: datetime
    ) -> list[UsageCounter]:
        """Zero the plan's usage counters for the cycle starting at cycle_start."""

    async def find_active_usage(
        self, user_id: str, feature_key: FeatureKey, at: datetime
    ) -> UsageCounter | None:
        """Newest counter whose window contains ``at``."""


    async def ensure_usage_counter(
        self, user_id: str, feature_key: FeatureKey, cycle_start: datetime, cycle_end: datetime
    ) -> UsageCounter:
        """Create the counter at zero unless one already exists for cycle_start."""

    async def consume_usage(
        self,
        user_id: str,
        feature_key: FeatureKey,
        cycle_start: datetime,
        amount: int,
        limit: int,
    ) -> UsageCounter | None:
        """Add ``amount`` to a counter only while it stays within ``limit``.

        Returns the updated counter, or None when there is no headroom left.
        """

    async def list_active_entitlements(self, at: datetime) -> list[Entitlement]:
        """Entitlements that have not expired at ``at``."""

    async def delete_entitlement_and_usage(self, user_id: str) -> None:
        """Atomically remove the entitlement and all usage for a user."""

    async def delete_entitlement_by_subscription_id(self, subscription_id: str) -> str | None:
        """Remove the entitlement for a subscription.

        Returns the user id the record belonged to, or None if there was none.
        """


class InMemoryEntitlementStore:
    """In-memory store used for tests and local fallback."""

    def __init__(self, now_provider=_utcnow) -> None:
        self.now_provider = now_provider
        self.users: dict[str, User] = {}
        self.plans: dict[str, Plan] = {}
        self.entitlements: dict[str, Entitlement] = {}
        self.usage: dict[tuple[str, FeatureKey, datetime], UsageCounter] = {}
        self.reset_calls: list[tuple[str, str, datetime, datetime]] = []
        self._lock = asyncio.Lock()

    def add_user(self, user: User) -> None:
        self.users[user.id] = user.model_copy(deep=True)

    def add_plan(self, plan: Plan) -> None:
        self.plans[plan.stripe_product_id] = plan.model_copy(deep=True)

    async def find_user_by_provider_data(
        self, customer_id: str | None = None, internal_id: str | None = None
    ) -> User | None:
        if customer_id:
            for user in self.users.values():
                if user.stripe_customer_id == customer_id:
                    return user.model_copy(deep=True)
        if internal_id:
            if customer_id:
                logger.warning(
                    "billing_user_lookup_fallback",
                    customer_id=customer_id,
                    internal_id=internal_id,
                )
            user = self.users.get(internal_id)
            if user:
                return user.model_copy(deep=True)
        return None

    async def find_user_by_email(self, email: str) -> User | None:
        for user in self.users.values():
            if user.email == email:
                return user.model_copy(deep=True)
        return None

    async def update_user_customer_id(self, user_id: str, customer_id: str) -> User | None:
        async with self._lock:
            user = self.users.get(user_id)
            if user is None:
                return None
            user.stripe_customer_id = customer_id
            return user.model_copy(deep=True)

    async def find_plan_by_provider_product_id(self, product_id: str) -> Plan | None:
        plan = self.plans.get(product_id)
        return plan.model_copy(deep=True) if plan else None

    async def find_plan(self, plan_id: str) -> Plan | None:
        for plan in self.plans.values():
            if plan.id == plan_id:
                return plan.model_copy(deep=True)
        return None

    async def find_entitlement(self, user_id: str) -> Entitlement | None:
        entitlement = self.entitlements.get(user_id)
        return entitlement.model_copy(deep=True) if entitlement else None

    async def upsert_entitlement(self, entitlement: Entitlement) -> Entitlement:
        async with self._lock:
            now = self.now_provider()
            stored = entitlement.model_copy(deep=True)
            existing = self.entitlements.get(stored.user_id)
            stored.created_at = existing.created_at if existing else now
            stored.updated_at = now
            self.entitlements[stored.user_id] = stored
            return stored.model_copy(deep=True)

    async def reset_usage_for_cycle(
        self, user_id: str, plan: Plan, cycle_start: datetime, cycle_end: datetime
    ) -> list[UsageCounter]:
        async with self._lock:
            self.reset_calls.append((user_id, plan.id, cycle_start, cycle_end))
            counters = []
            for feature_key, window_end in usage_windows(plan, cycle_end, self.now_provider()):
                counter = UsageCounter(
                    user_id=user_id,
                    feature_key=feature_key,
                    used_amount=0,
                    cycle_started_at=cycle_start,
                    cycle_ends_at=window_end,
                )
                self.usage[(user_id, feature_key, cycle_start)] = counter
                counters.append(counter.model_copy(deep=True))
            return counters

    async def find_active_usage(
        self, user_id: str, feature_key: FeatureKey, at: datetime
    ) -> UsageCounter | None:
        matches = [
            counter
            for (owner, key, _), counter in self.usage.items()
            if owner == user_id
            and key == feature_key
            and counter.cycle_started_at <= at < counter.cycle_ends_at
        ]
        if not matches:
            return None
        newest = max(matches, key=lambda counter: counter.cycle_started_at)
        return newest.model_copy(deep=True)

    async def ensure_usage_counter(
        self, user_id: str, feature_key: FeatureKey, cycle_start: datetime, cycle_end: datetime
    ) -> UsageCounter:
        async with self._lock:
            key = (user_id, feature_key, cycle_start)
            counter = self.usage.get(key)
            if counter is None:
                counter = UsageCounter(
                    user_id=user_id,
                    feature_key=feature_key,
                    used_amount=0,
                    cycle_started_at=cycle_start,
                    cycle_ends_at=cycle_end,
                )
                self.usage[key] = counter
            return counter.model_copy(deep=True)

    async def consume_usage(
        self,
        user_id: str,
        feature_key: FeatureKey,
        cycle_start: datetime,
        amount: int,
        limit: int,
    ) -> UsageCounter | None:
        async with self._lock:
            counter = self.usage.get((user_id, feature_key, cycle_start))
            if counter is None or counter.used_amount > limit - amount:
                return None
            counter.used_amount += amount
            return counter.model_copy(deep=True)

    async def list_active_entitlements(self, at: datetime) -> list[Entitlement]:
        return [
            entitlement.model_copy(deep=True)
            for entitlement in self.entitlements.values()
            if entitlement.expires_at > at
        ]

    async def delete_entitlement_and_usage(self, user_id: str) -> None:
        async with self._lock:
            self.entitlements.pop(user_id, None)
            for key in [key for key in self.usage if key[0] == user_id]:
                del self.usage[key]

    async def delete_entitlement_by_subscription_id(self, subscription_id: str) -> str | None:
        async with self._lock:
            for user_id, entitlement in list(self.entitlements.items()):
                if entitlement.stripe_subscription_id == subscription_id:
                    del self.entitlements[user_id]
                    return user_id
        logger.warning("billing_entitlement_not_found", subscription_id=subscription_id)
        return None


class SupabaseEntitlementStore:
    """Supabase-backed entitlement store.

    Entitlement and usage removal goes through a Postgres function so both
    deletes commit together. Credit spending is a guarded increment in
    another function (see backend/sql/billing_schema.sql).
    """

    def __init__(
        self,
        client,
        *,
        users_table: str = "users",
        plans_table: str = "plans",
        entitlements_table: str = "user_access",
        usage_table: str = "user_usage",
        delete_access_rpc: str = "delete_user_access_and_usage",
        consume_usage_rpc: str = "consume_user_usage",
        now_provider=_utcnow,
    ):
        self.client = client
        self.users_table = users_table
        self.plans_table = plans_table
        self.entitlements_table = entitlements_table
        self.usage_table = usage_table
        self.delete_access_rpc = delete_access_rpc
        self.consume_usage_rpc = consume_usage_rpc
        self.now_provider = now_provider

    async def _first(self, table: str, column: str, value: str) -> dict | None:
        response = (
            await self.client.table(table).select("*").eq(column, value).limit(1).execute()
        )
        rows = response.data or []
        return rows[0] if rows else None

    async def find_user_by_provider_data(
        self, customer_id: str | None = None, internal_id: str | None = None
    ) -> User | None:
        if customer_id:
            row = await self._first(self.users_table, "stripe_customer_id", customer_id)
            if row:
                return User.model_validate(row)
        if internal_id:
            if customer_id:
                logger.warning(
                    "billing_user_lookup_fallback",
                    customer_id=customer_id,
                    internal_id=internal_id,
                )
            row = await self._first(self.users_table, "id", internal_id)
            if row:
                return User.model_validate(row)
        return None

    async def find_user_by_email(self, email: str) -> User | None:
        row = await self._first(self.users_table, "email", email)
        return User.model_validate(row) if row else None

    async def update_user_customer_id(self, user_id: str, customer_id: str) -> User | None:
        logger.warning("billing_customer_id_updated", user_id=user_id, customer_id=customer_id)
        response = (
            await self.client.table(self.users_table)
            .update({"stripe_customer_id": customer_id})
            .eq("id", user_id)
            .execute()
        )
        rows = response.data or []
        return User.model_validate(rows[0]) if rows else None

    async def find_plan_by_provider_product_id(self, product_id: str) -> Plan | None:
        row = await self._first(self.plans_table, "stripe_product_id", product_id)
        return Plan.model_validate(row) if row else None

    async def find_plan(self, plan_id: str) -> Plan | None:
        row = await self._first(self.plans_table, "id", plan_id)
        return Plan.model_validate(row) if row else None

    async def find_entitlement(self, user_id: str) -> Entitlement | None:
        row = await self._first(self.entitlements_table, "user_id", user_id)
        return Entitlement.model_validate(row) if row else None

    async def upsert_entitlement(self, entitlement: Entitlement) -> Entitlement:
        payload = entitlement.model_dump(mode="json", exclude={"created_at"})
        payload["updated_at"] = self.now_provider().isoformat()
        logger.info(
            "billing_entitlement_upsert",
            user_id=entitlement.user_id,
            plan_id=entitlement.plan_id,
            expires_at=payload["expires_at"],
            cancel_at_period_end=entitlement.cancel_at_period_end,
        )
        response = (
            await self.client.table(self.entitlements_table)
            .upsert(payload, on_conflict="user_id")
            .execute()
        )
        rows = response.data or []
        if not rows:
            # Some Supabase responses return no data unless `returning=representation`.
            return entitlement
        return Entitlement.model_validate(rows[0])

    async def reset_usage_for_cycle(
        self, user_id: str, plan: Plan, cycle_start: datetime, cycle_end: datetime
    ) -> list[UsageCounter]:
        counters = [
            UsageCounter(
                user_id=user_id,
                feature_key=feature_key,
                used_amount=0,
                cycle_started_at=cycle_start,
                cycle_ends_at=window_end,
            )
            for feature_key, window_end in usage_windows(plan, cycle_end, self.now_provider())
        ]
        if not counters:
            return []
        await (
            self.client.table(self.usage_table)
            .upsert(
                [counter.model_dump(mode="json") for counter in counters],
                on_conflict="user_id,feature_key,cycle_started_at",
            )
            .execute()
        )
        return counters

    async def find_active_usage(
        self, user_id: str, feature_key: FeatureKey, at: datetime
    ) -> UsageCounter | None:
        response = (
            await self.client.table(self.usage_table)
            .select("*")
            .eq("user_id", user_id)
            .eq("feature_key", feature_key.value)
            .lte("cycle_started_at", at.isoformat())
            .gt("cycle_ends_at", at.isoformat())
            .order("cycle_started_at", desc=True)
            .limit(1)
            .execute()
        )
        rows = response.data or []
        return UsageCounter.model_validate(rows[0]) if rows else None

    async def ensure_usage_counter(
        self, user_id: str, feature_key: FeatureKey, cycle_start: datetime, cycle_end: datetime
    ) -> UsageCounter:
        counter = UsageCounter(
            user_id=user_id,
            feature_key=feature_key,
            used_amount=0,
            cycle_started_at=cycle_start,
            cycle_ends_at=cycle_end,
        )
        await (
            self.client.table(self.usage_table)
            .upsert(
                counter.model_dump(mode="json"),
                on_conflict="user_id,feature_key,cycle_started_at",
                ignore_duplicates=True,
            )
            .execute()
        )
        response = (
            await self.client.table(self.usage_table)
            .select("*")
            .eq("user_id", user_id)
            .eq("feature_key", feature_key.value)
            .eq("cycle_started_at", cycle_start.isoformat())
            .limit(1)
            .execute()
        )
        rows = response.data or []
        return UsageCounter.model_validate(rows[0]) if rows else counter

    async def consume_usage(
        self,
        user_id: str,
        feature_key: FeatureKey,
        cycle_start: datetime,
        amount: int,
        limit: int,
    ) -> UsageCounter | None:
        # Conditional increment runs in Postgres so concurrent spends cannot overshoot
        response = await self.client.rpc(
            self.consume_usage_rpc,
            {
                "target_user_id": user_id,
                "target_feature_key": feature_key.value,
                "target_cycle_started_at": cycle_start.isoformat(),
                "amount": amount,
                "quota": limit,
            },
        ).execute()
        rows = response.data or []
        return UsageCounter.model_validate(rows[0]) if rows else None

    async def list_active_entitlements(self, at: datetime) -> list[Entitlement]:
        response = (
            await self.client.table(self.entitlements_table)
            .select("*")
            .gt("expires_at", at.isoformat())
            .execute()
        )
        return [Entitlement.model_validate(row) for row in response.data or []]

    async def delete_entitlement_and_usage(self, user_id: str) -> None:
        await self.client.rpc(self.delete_access_rpc, {"target_user_id": user_id}).execute()
        logger.info("billing_entitlement_and_usage_deleted", user_id=user_id)

    async def delete_entitlement_by_subscription_id(self, subscription_id: str) -> str | None:
        response = (
            await self.client.table(self.entitlements_table)
            .delete()
            .eq("stripe_subscription_id", subscription_id)
            .execute()
        )
        rows = response.data or []
        if not rows:
            logger.warning("billing_entitlement_not_found", subscription_id=subscription_id)
            return None
        return str(rows[0]["user_id"])
