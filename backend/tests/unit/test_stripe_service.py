"""Unit tests for Stripe service wrapper."""

from datetime import UTC, datetime
from types import SimpleNamespace

import pytest

from artshare.config import StripeConfig
from artshare.errors import InternalBillingError
from artshare.services import stripe_service as stripe_service_module
from artshare.services.stripe_service import StripeService, object_id


class FakeStripeError(Exception):
    pass


class FakeStripeModule:
    """Test double for stripe SDK."""

    StripeError = FakeStripeError

    def __init__(self):
        self.api_key = None
        self.calls: dict[str, dict] = {}
        self.fail = False
        self.checkout = SimpleNamespace(Session=SimpleNamespace(create=self._checkout_create))
        self.billing_portal = SimpleNamespace(
            Session=SimpleNamespace(create=self._portal_create)
        )
        self.Webhook = SimpleNamespace(construct_event=self._construct_event)
        self.Subscription = SimpleNamespace(retrieve=self._retrieve_subscription)
        self.Price = SimpleNamespace(retrieve=self._retrieve_price)
        self.Customer = SimpleNamespace(list=self._list_customers, create=self._create_customer)
        self._event = {"id": "evt_1", "type": "invoice.paid", "data": {"object": {}}}
        self._subscription = {
            "id": "sub_1",
            "customer": "cus_1",
            "status": "active",
            "cancel_at_period_end": True,
            "items": {
                "data": [{"price": {"id": "price_month", "product": {"id": "prod_basic"}}}]
            },
            "current_period_start": 1735689600,
            "current_period_end": 1738368000,
            "latest_invoice": "in_1",
            "metadata": {"user_id": "u1"},
        }

    def _record(self, call_name: str, /, **kwargs):
        if self.fail:
            raise FakeStripeError("api down")
        self.calls[call_name] = kwargs

    def _checkout_create(self, **kwargs):
        self._record("checkout", **kwargs)
        return SimpleNamespace(id="cs_1", url="https://checkout.test/session")

    def _portal_create(self, **kwargs):
        self._record("portal", **kwargs)
        return SimpleNamespace(id="bps_1", url="https://billing.test/portal")

    def _construct_event(self, payload, sig_header, secret, tolerance):
        if sig_header == "bad":
            raise RuntimeError("bad signature")
        assert payload == b'{"ok":true}'
        assert secret == "whsec_test"
        assert tolerance == 300
        return self._event

    def _retrieve_subscription(self, subscription_id, expand=None):
        self._record("subscription", id=subscription_id, expand=expand)
        return self._subscription

    def _retrieve_price(self, price_id, expand=None):
        self._record("price", id=price_id, expand=expand)
        return {
            "id": price_id,
            "product": {"id": "prod_basic", "name": "Basic"},
            "recurring": {"interval": "year"},
        }

    def _list_customers(self, **kwargs):
        self._record("customer_list", **kwargs)
        return {"data": [{"id": "cus_existing"}]}

    def _create_customer(self, **kwargs):
        self._record("customer_create", **kwargs)
        return SimpleNamespace(id="cus_new")


def _config(**overrides) -> StripeConfig:
    fields = {
        "secret_key": "sk_test_123",
        "webhook_secret": "whsec_test",
        "price_artist_monthly": "price_artist_m",
        "price_artist_yearly": "price_artist_y",
        "price_studio_monthly": "price_studio_m",
        "price_studio_yearly": "",
        "frontend_url": "https://artshare.test",
    }
    fields.update(overrides)
    return StripeConfig(**fields)


@pytest.fixture
def fake(monkeypatch: pytest.MonkeyPatch) -> FakeStripeModule:
    module = FakeStripeModule()
    monkeypatch.setattr(stripe_service_module, "stripe", module)
    return module


class TestStripeServiceSetup:
    def test_requires_secret_key(self, fake):
        with pytest.raises(ValueError, match="secret key"):
            StripeService(_config(secret_key=""))

    def test_sets_api_key(self, fake):
        StripeService(_config())

        assert fake.api_key == "sk_test_123"

    def test_resolves_configured_plan_keys_only(self, fake):
        service = StripeService(_config())

        assert service.resolve_price_id("artist_monthly") == "price_artist_m"
        assert service.resolve_price_id("studio_yearly") is None
        assert service.resolve_price_id("enterprise") is None


class TestStripeServiceSessions:
    async def test_creates_checkout_session_for_customer(self, fake):
        service = StripeService(_config())

        result = await service.create_checkout_session(
            price_id="price_artist_m", customer_id="cus_1", customer_email="a@b.c", user_id="u1"
        )

        params = fake.calls["checkout"]
        assert result == {"id": "cs_1", "url": "https://checkout.test/session"}
        assert params["mode"] == "subscription"
        assert params["line_items"] == [{"price": "price_artist_m", "quantity": 1}]
        assert params["customer"] == "cus_1"
        assert "customer_email" not in params
        assert params["client_reference_id"] == "u1"
        assert params["metadata"] == {"user_id": "u1"}
        assert params["success_url"] == "https://artshare.test"

    async def test_guest_checkout_uses_email(self, fake):
        service = StripeService(_config(checkout_cancel_url="https://artshare.test/pricing"))

        await service.create_checkout_session(price_id="price_artist_m", customer_email="a@b.c")

        params = fake.calls["checkout"]
        assert params["customer_email"] == "a@b.c"
        assert "client_reference_id" not in params
        assert params["cancel_url"] == "https://artshare.test/pricing"

    async def test_creates_portal_session(self, fake):
        service = StripeService(_config())

        result = await service.create_billing_portal_session(customer_id="cus_1")

        assert result["id"] == "bps_1"
        assert fake.calls["portal"] == {"customer": "cus_1", "return_url": "https://artshare.test"}

    async def test_checkout_failure_is_internal_error(self, fake):
        service = StripeService(_config())
        fake.fail = True

        with pytest.raises(InternalBillingError):
            await service.create_checkout_session(price_id="price_artist_m", customer_id="cus_1")


class TestStripeServiceCustomers:
    async def test_lists_customers_by_email(self, fake):
        service = StripeService(_config())

        assert await service.list_customers_by_email("a@b.c") == ["cus_existing"]
        assert fake.calls["customer_list"] == {"email": "a@b.c", "limit": 1}

    async def test_creates_customer_with_metadata(self, fake):
        service = StripeService(_config())

        customer_id = await service.create_customer(
            email="a@b.c", name="Ada", metadata={"user_id": "u1"}
        )

        assert customer_id == "cus_new"
        assert fake.calls["customer_create"] == {
            "email": "a@b.c",
            "name": "Ada",
            "metadata": {"user_id": "u1"},
        }


class TestStripeServiceRetrieval:
    async def test_retrieves_subscription(self, fake):
        service = StripeService(_config())

        subscription = await service.retrieve_subscription("sub_1")

        assert subscription.id == "sub_1"
        assert subscription.customer_id == "cus_1"
        assert subscription.price_id == "price_month"
        assert subscription.product_id == "prod_basic"
        assert subscription.cancel_at_period_end is True
        assert subscription.current_period_start == datetime(2025, 1, 1, tzinfo=UTC)
        assert subscription.latest_invoice_period_start is None
        assert subscription.metadata == {"user_id": "u1"}
        assert fake.calls["subscription"]["expand"] == [
            "latest_invoice.lines.data",
            "items.data.price.product",
        ]

    async def test_retrieve_subscription_failure_is_internal_error(self, fake):
        service = StripeService(_config())
        fake.fail = True

        with pytest.raises(InternalBillingError, match="retrieve subscription"):
            await service.retrieve_subscription("sub_1")

    async def test_retrieves_price_with_interval(self, fake):
        service = StripeService(_config())

        price = await service.retrieve_price("price_artist_y")

        assert price.product_id == "prod_basic"
        assert price.recurring_interval == "year"


class TestSubscriptionFromObject:
    def test_reads_period_from_item_when_subscription_has_none(self, fake):
        service = StripeService(_config())

        subscription = service.subscription_from_object(
            {
                "id": "sub_2",
                "status": "trialing",
                "customer": {"id": "cus_2"},
                "items": {
                    "data": [
                        {
                            "price": {"id": "price_y", "product": "prod_studio"},
                            "current_period_start": 1735689600,
                            "current_period_end": 1767225600,
                        }
                    ]
                },
            }
        )

        assert subscription.customer_id == "cus_2"
        assert subscription.product_id == "prod_studio"
        assert subscription.current_period_end == datetime(2026, 1, 1, tzinfo=UTC)

    def test_reads_latest_invoice_line_period(self, fake):
        service = StripeService(_config())

        subscription = service.subscription_from_object(
            {
                "id": "sub_3",
                "status": "active",
                "items": {"data": []},
                "latest_invoice": {
                    "id": "in_3",
                    "lines": {
                        "data": [{"period": {"start": 1735689600, "end": 1738368000}}]
                    },
                },
            }
        )

        assert subscription.current_period_start is None
        assert subscription.latest_invoice_period_start == datetime(2025, 1, 1, tzinfo=UTC)
        assert subscription.latest_invoice_period_end == datetime(2025, 2, 1, tzinfo=UTC)

    def test_price_without_product_is_rejected(self, fake):
        service = StripeService(_config())

        with pytest.raises(InternalBillingError):
            service.price_from_object({"id": "price_x", "product": None})


class TestWebhookVerification:
    def test_verifies_webhook_event(self, fake):
        service = StripeService(_config())

        event = service.verify_webhook_event(b'{"ok":true}', "sig_ok")

        assert event["id"] == "evt_1"

    def test_rejects_missing_signature(self, fake):
        service = StripeService(_config())

        with pytest.raises(ValueError, match="Missing Stripe-Signature"):
            service.verify_webhook_event(b'{"ok":true}', None)

    def test_rejects_when_secret_not_configured(self, fake):
        service = StripeService(_config(webhook_secret=""))

        with pytest.raises(ValueError, match="not configured"):
            service.verify_webhook_event(b'{"ok":true}', "sig_ok")

    def test_bad_signature_propagates(self, fake):
        service = StripeService(_config())

        with pytest.raises(RuntimeError):
            service.verify_webhook_event(b'{"ok":true}', "bad")


class TestObjectId:
    def test_accepts_ids_and_expanded_objects(self):
        assert object_id("cus_1") == "cus_1"
        assert object_id({"id": "cus_2", "email": "a@b.c"}) == "cus_2"
        assert object_id(None) is None
