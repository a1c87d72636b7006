"""Unit tests for settings and nested config groups."""

import pytest

from artshare.config import BillingConfig, Settings, StripeConfig


class TestBillingConfig:
    def test_simulation_off_by_default(self):
        assert BillingConfig().simulation_enabled is False

    def test_daily_reset_runs_at_midnight_by_default(self):
        cfg = BillingConfig()

        assert cfg.daily_reset_enabled is True
        assert cfg.daily_reset_hour_utc == 0

    def test_simulation_requires_flag_outside_production(self):
        assert BillingConfig(run_stripe_simulation=True).simulation_enabled is True

    @pytest.mark.parametrize("environment", ["production", "PRODUCTION"])
    def test_simulation_never_runs_in_production(self, environment):
        cfg = BillingConfig(environment=environment, run_stripe_simulation=True)

        assert cfg.is_production is True
        assert cfg.simulation_enabled is False


class TestStripeConfig:
    def test_redirects_fall_back_to_frontend(self):
        cfg = StripeConfig(frontend_url="https://artshare.test")

        assert cfg.success_url == "https://artshare.test"
        assert cfg.cancel_url == "https://artshare.test"
        assert cfg.return_url == "https://artshare.test"

    def test_explicit_redirects_win(self):
        cfg = StripeConfig(
            frontend_url="https://artshare.test",
            checkout_success_url="https://artshare.test/welcome",
        )

        assert cfg.success_url == "https://artshare.test/welcome"
        assert cfg.cancel_url == "https://artshare.test"


class TestSettings:
    def test_nested_groups_read_double_underscore_env(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("STRIPE__SECRET_KEY", "sk_test_env")
        monkeypatch.setenv("STRIPE__PRICE_ARTIST_MONTHLY", "price_env")
        monkeypatch.setenv("BILLING__ENVIRONMENT", "production")
        monkeypatch.setenv("BILLING__SIMULATION_DELAY_SECONDS", "1.5")

        settings = Settings(_env_file=None)

        assert settings.stripe.secret_key == "sk_test_env"
        assert settings.stripe.price_artist_monthly == "price_env"
        assert settings.billing.is_production is True
        assert settings.billing.simulation_delay_seconds == 1.5

    def test_daily_reset_can_be_switched_off(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("BILLING__DAILY_RESET_ENABLED", "false")
        monkeypatch.setenv("BILLING__DAILY_RESET_HOUR_UTC", "3")

        settings = Settings(_env_file=None)

        assert settings.billing.daily_reset_enabled is False
        assert settings.billing.daily_reset_hour_utc == 3
