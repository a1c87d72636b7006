"""structlog configuration module."""

import logging
import sys

import structlog

# Event keys whose values never reach the log stream
SENSITIVE_KEYS = frozenset(
    {"secret_key", "webhook_secret", "stripe_signature", "signature", "authorization", "token"}
)
# Stripe credential prefixes, masked wherever they show up as a value
SECRET_PREFIXES = ("sk_live_", "sk_test_", "rk_live_", "rk_test_", "whsec_")

REDACTED = "[redacted]"


def redact_secrets(_logger, _method_name: str, event_dict: dict) -> dict:
    """Mask Stripe credentials and bearer tokens in log events."""
    for key, value in event_dict.items():
        if key in SENSITIVE_KEYS and value:
            event_dict[key] = REDACTED
        elif isinstance(value, str) and value.startswith(SECRET_PREFIXES):
            event_dict[key] = REDACTED
    return event_dict


def setup_logging(debug: bool = False, environment: str | None = None) -> None:
    """
    Configure structlog and stdlib logging.

    In debug mode: colored, human-readable console output.
    In production mode: JSON output for log aggregation, with structured
    tracebacks so billing failures stay searchable.

    Args:
        debug: If True, use ConsoleRenderer; otherwise use JSONRenderer.
        environment: Deployment name stamped on every event (e.g. "production").
    """

    shared_processors: list = [
        structlog.contextvars.merge_contextvars,  # request_id, method, path (from middleware)
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        redact_secrets,
    ]
    if environment:
        shared_processors.append(_stamp_environment(environment))

    if debug:
        processors = shared_processors + [
            structlog.processors.StackInfoRenderer(),
            structlog.dev.ConsoleRenderer(),
        ]
    else:
        processors = shared_processors + [
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.DEBUG if debug else logging.INFO
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )

    # Stripe's SDK logs through stdlib logging; keep it on the same stream.
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=logging.DEBUG if debug else logging.INFO,
    )
    logging.getLogger("stripe").setLevel(logging.INFO if debug else logging.WARNING)


def _stamp_environment(environment: str):
    def add_environment(_logger, _method_name: str, event_dict: dict) -> dict:
        event_dict.setdefault("environment", environment)
        return event_dict

    return add_environment
