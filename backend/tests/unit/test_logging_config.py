"""Unit tests for the structlog logging configuration."""

import json
import logging

import structlog

from artshare.logging_config import REDACTED, redact_secrets, setup_logging


class TestSetupLogging:
    def test_setup_logging_runs_without_error_debug(self):
        setup_logging(debug=True)
        logger = structlog.get_logger("test")
        # Should not raise
        logger.info("test_event", key="value")

    def test_setup_logging_runs_without_error_production(self):
        setup_logging(debug=False)
        logger = structlog.get_logger("test")
        # Should not raise
        logger.info("test_event", key="value")

    def test_production_output_is_json_with_environment(self, capsys):
        setup_logging(debug=False, environment="staging")
        structlog.get_logger("test").info("billing_event", subscription_id="sub_1")

        line = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
        assert line["event"] == "billing_event"
        assert line["environment"] == "staging"
        assert line["subscription_id"] == "sub_1"

    def test_quiets_stripe_sdk_outside_debug(self):
        setup_logging(debug=False)

        assert logging.getLogger("stripe").level == logging.WARNING


class TestStructlogContextBinding:
    def test_context_binding_works(self):
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id="test-123", subscription_id="sub_1")

        bound = structlog.contextvars.get_contextvars()
        assert bound["request_id"] == "test-123"
        assert bound["subscription_id"] == "sub_1"

        structlog.contextvars.clear_contextvars()
        assert structlog.contextvars.get_contextvars() == {}

    def test_context_cleared_between_requests(self):
        structlog.contextvars.bind_contextvars(request_id="req-1")
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id="req-2")

        assert structlog.contextvars.get_contextvars()["request_id"] == "req-2"
        structlog.contextvars.clear_contextvars()


class TestRedactSecrets:
    def test_masks_sensitive_keys(self):
        event = redact_secrets(None, "info", {"event": "x", "stripe_signature": "t=1,v1=abc"})

        assert event["stripe_signature"] == REDACTED

    def test_masks_stripe_credentials_under_any_key(self):
        event = redact_secrets(
            None, "info", {"event": "x", "detail": "whsec_123", "key": "sk_live_abc"}
        )

        assert event["detail"] == REDACTED
        assert event["key"] == REDACTED

    def test_leaves_billing_ids_alone(self):
        event = redact_secrets(
            None, "info", {"event": "x", "subscription_id": "sub_1", "customer_id": "cus_1"}
        )

        assert event["subscription_id"] == "sub_1"
        assert event["customer_id"] == "cus_1"
