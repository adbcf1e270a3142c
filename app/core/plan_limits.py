from typing import Dict, Optional

# Plan limits configuration
# Free tier: 10 chat messages per calendar day (UTC). Pro: unlimited.
PLAN_LIMITS: Dict[str, Dict[str, int]] = {
    "free": {
        "max_messages_per_day": 10,
    },
    "pro": {
        "max_messages_per_day": -1,  # -1 means unlimited
    },
}

FREE_DAILY_MESSAGE_LIMIT = PLAN_LIMITS["free"]["max_messages_per_day"]

PLANS = ("free", "pro")
SUBSCRIPTION_STATUSES = ("active", "cancelled", "expired")
PLAN_DURATIONS = ("week", "month", "year")
DEFAULT_PLAN_DURATION = "month"

# Pro price in minor units (paise / cents)
PRO_PRICE_MINOR: Dict[str, int] = {
    "INR": 49900,  # ₹499
    "USD": 900,    # $9
}
# A fixed discount at or above this (major units, INR) covers the full price.
BASE_PRICE_INR = 499
# Floor for discounted orders (₹1 / $1 in minor units)
MIN_ORDER_AMOUNT_MINOR = 100


def get_plan_limit(plan: str, limit_type: str) -> int:
    """Get the limit value for a specific plan and limit type."""
    return PLAN_LIMITS.get(plan, PLAN_LIMITS["free"]).get(limit_type, 0)


def daily_message_limit(plan: str) -> Optional[int]:
    """Daily cap for a plan, or None when unlimited."""
    limit = get_plan_limit(plan, "max_messages_per_day")
    return None if limit == -1 else limit
