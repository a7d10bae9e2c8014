"""Usage quota package: plan resolution and quota checks."""

from twealth.quota.checker import QuotaChecker, QuotaExceededError
from twealth.quota.plans import (
    DEFAULT_PLANS,
    PlanResolver,
    default_plans,
    month_window,
    quota_window,
)

__all__ = [
    "DEFAULT_PLANS",
    "PlanResolver",
    "QuotaChecker",
    "QuotaExceededError",
    "default_plans",
    "month_window",
    "quota_window",
]
