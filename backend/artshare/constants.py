"""
Business logic constants for the artshare billing backend.

These values are stable across environments (dev/staging/prod) and do not
need env-var overrides. For operational parameters that vary per environment
(Stripe keys, simulation switches), see config.py.
"""

API_TITLE = "artshare Billing API"
API_VERSION = "0.1.0"

# --- Stripe subscription statuses ---
# Statuses that grant paid access
ENTITLED_STATUSES = frozenset({"active", "trialing"})
# Statuses that revoke it; anything else is logged and left alone
REVOKED_STATUSES = frozenset({"canceled", "unpaid", "incomplete_expired", "past_due"})

# --- Stripe id conventions ---
SUBSCRIPTION_ID_PREFIX = "sub_"
CUSTOMER_ID_PREFIX = "cus_"
# Simulated checkouts (non-production only)
SIMULATED_SUBSCRIPTION_PREFIX = "sub_sim_"
SYNTHETIC_SUBSCRIPTION_PREFIX = "sim_"

# --- Plan keys accepted at checkout ---
PLAN_KEYS = ("artist_monthly", "artist_yearly", "studio_monthly", "studio_yearly")

# Billing interval that extends a simulated period by a year instead of a month
YEARLY_INTERVAL = "year"
