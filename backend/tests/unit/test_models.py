"""Unit tests for billing models."""

from datetime import UTC, datetime

import pytest
from pydantic import ValidationError

from artshare.models.billing import (
    EventSource,
    NotificationMessage,
    Plan,
    ReconcileEvent,
    UsageCounter,
)


class TestReconcileEvent:
    def test_client_reference_wins_over_metadata(self):
        event = ReconcileEvent(
            source=EventSource.CHECKOUT_COMPLETED,
            client_reference_id="u1",
            metadata_user_id="u2",
        )

        assert event.user_reference == "u1"

    def test_metadata_user_is_fallback(self):
        event = ReconcileEvent(source=EventSource.INVOICE_PAID, metadata_user_id="u2")

        assert event.user_reference == "u2"

    def test_source_accepts_stripe_event_type(self):
        event = ReconcileEvent(source="customer.subscription.updated")

        assert event.source == EventSource.SUBSCRIPTION_UPDATED
        assert event.simulated is False


class TestQuotas:
    def test_plan_quota_cannot_be_negative(self):
        with pytest.raises(ValidationError):
            Plan(id="basic", stripe_product_id="prod_basic", daily_quota_credits=-1)

    def test_usage_cannot_be_negative(self):
        with pytest.raises(ValidationError):
            UsageCounter(
                user_id="u1",
                feature_key="ai_credits",
                used_amount=-3,
                cycle_started_at=datetime(2026, 3, 1, tzinfo=UTC),
                cycle_ends_at=datetime(2026, 3, 2, tzinfo=UTC),
            )


class TestNotificationMessage:
    def test_serializes_for_websocket(self):
        message = NotificationMessage(type="subscription_removed", data={"status": "canceled"})

        assert message.model_dump(mode="json") == {
            "type": "subscription_removed",
            "data": {"status": "canceled"},
        }
