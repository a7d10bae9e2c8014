"""
Subscription, Plan and Usage Models

These models describe who is allowed to do how much:
plans carry the numeric limits, subscriptions bind a user to a plan,
usage records count what was consumed in the current quota period and
add-on credits extend a plan's base limit.

DESIGN DECISION: Limits are plain integers. "Unlimited" is a large
sentinel value rather than None, so every limit comparison is the same
`used < limit` check.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


UNLIMITED = 999999


# =============================================================================
# ENUMS - Finite set of valid values
# =============================================================================

class UsageType(str, Enum):
    """
    Countable usage types.

    Chats and deep analysis are limited by the plan's AI limits,
    the model-tier counters by the per-tier limits.
    Insights are counted but never limited.
    """
    CHATS = "chats"
    DEEP_ANALYSIS = "deep_analysis"
    INSIGHTS = "insights"
    SCOUT_QUERIES = "scout_queries"
    SONNET_QUERIES = "sonnet_queries"
    GPT5_QUERIES = "gpt5_queries"
    OPUS_QUERIES = "opus_queries"

    @property
    def record_field(self) -> str:
        """Name of the UsageRecord counter this type increments."""
        return _USAGE_FIELDS[self]


_USAGE_FIELDS = {
    UsageType.CHATS: "chats_used",
    UsageType.DEEP_ANALYSIS: "deep_analysis_used",
    UsageType.INSIGHTS: "insights_generated",
    UsageType.SCOUT_QUERIES: "scout_queries_used",
    UsageType.SONNET_QUERIES: "sonnet_queries_used",
    UsageType.GPT5_QUERIES: "gpt5_queries_used",
    UsageType.OPUS_QUERIES: "opus_queries_used",
}

USAGE_COUNTER_FIELDS = tuple(_USAGE_FIELDS.values())


class ModelTier(str, Enum):
    """AI model tiers tracked with their own counters."""
    SCOUT = "scout"
    SONNET = "sonnet"
    GPT5 = "gpt5"
    OPUS = "opus"

    @property
    def usage_type(self) -> UsageType:
        return UsageType(f"{self.value}_queries")


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle status."""
    ACTIVE = "active"
    CANCELLED = "cancelled"


class BillingInterval(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class AddOnType(str, Enum):
    """
    Purchasable quota extensions.

    Each add-on type extends exactly one usage type.
    """
    EXTRA_CHATS = "extra_chats"
    EXTRA_DEEP_ANALYSIS = "extra_deep_analysis"

    @property
    def usage_type(self) -> UsageType:
        if self is AddOnType.EXTRA_CHATS:
            return UsageType.CHATS
        return UsageType.DEEP_ANALYSIS

    @classmethod
    def for_usage_type(cls, usage_type: UsageType) -> Optional["AddOnType"]:
        for add_on in cls:
            if add_on.usage_type is usage_type:
                return add_on
        return None


# =============================================================================
# PLAN & SUBSCRIPTION
# =============================================================================

class SubscriptionPlan(BaseModel):
    """
    A subscription tier and its limits.

    Reference data: seeded at startup, rarely mutated.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    name: str = Field(
        ...,
        min_length=1,
        max_length=50,
        description="Normalized plan key (e.g., 'free', 'pro')"
    )
    display_name: str = Field(..., min_length=1, max_length=100)
    description: str = Field(default="", max_length=500)
    price_usd: Decimal = Field(default=Decimal("0.00"), ge=0)
    billing_interval: BillingInterval = BillingInterval.MONTHLY

    # Limits (per quota period)
    ai_chat_limit: int = Field(default=0, ge=0)
    ai_deep_analysis_limit: int = Field(default=0, ge=0)
    scout_limit: int = Field(default=0, ge=0)
    sonnet_limit: int = Field(default=0, ge=0)
    gpt5_limit: int = Field(default=0, ge=0)
    opus_limit: int = Field(default=0, ge=0)

    insights_frequency: str = Field(
        default="never",
        pattern="^(never|weekly|daily)$",
    )
    is_lifetime_limit: bool = Field(
        default=False,
        description="Usage never resets; one record spans the account lifetime"
    )
    features: list[str] = Field(default_factory=list)
    is_active: bool = True
    sort_order: int = 0

    @field_validator("name")
    @classmethod
    def normalize_name(cls, v: str) -> str:
        return v.lower()

    def limit_for(self, usage_type: UsageType) -> Optional[int]:
        """
        Base limit for a usage type.

        Returns None for usage types that are counted but not limited.
        """
        limits = {
            UsageType.CHATS: self.ai_chat_limit,
            UsageType.DEEP_ANALYSIS: self.ai_deep_analysis_limit,
            UsageType.SCOUT_QUERIES: self.scout_limit,
            UsageType.SONNET_QUERIES: self.sonnet_limit,
            UsageType.GPT5_QUERIES: self.gpt5_limit,
            UsageType.OPUS_QUERIES: self.opus_limit,
        }
        return limits.get(usage_type)


class Subscription(BaseModel):
    """
    Binds a user to a plan.

    IMPORTANT: At most one ACTIVE subscription per user is expected.
    This is enforced by lookups filtering on status, not by a constraint.
    """

    id: UUID = Field(default_factory=uuid4)
    user_id: str = Field(..., min_length=1)
    plan_id: UUID
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    current_period_start: datetime
    current_period_end: datetime
    cancelled_at: Optional[datetime] = None
    free_premium: bool = Field(
        default=False,
        description="Override granting unlimited usage regardless of plan"
    )
    billing_customer_id: Optional[str] = None
    billing_subscription_id: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.now)

    @model_validator(mode="after")
    def validate_period(self) -> "Subscription":
        if self.current_period_end < self.current_period_start:
            raise ValueError("current_period_end cannot be before current_period_start")
        return self

    @property
    def is_active(self) -> bool:
        return self.status == SubscriptionStatus.ACTIVE


class ActiveSubscription(BaseModel):
    """A subscription together with its resolved plan."""

    subscription: Subscription
    plan: SubscriptionPlan

    @property
    def user_id(self) -> str:
        return self.subscription.user_id


# =============================================================================
# USAGE
# =============================================================================

class QuotaWindow(BaseModel):
    """
    The period a usage counter accumulates over.

    Monthly windows cover one calendar month. Lifetime windows start at
    the subscription start and end at a far-future sentinel.
    """

    start: datetime
    end: datetime
    is_lifetime: bool = False

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment <= self.end


class UsageRecord(BaseModel):
    """
    Per-user, per-period usage counters.

    One record per (user, window). Records are never deleted, only
    superseded by the next period's record.
    """

    id: UUID = Field(default_factory=uuid4)
    user_id: str
    subscription_id: Optional[UUID] = None
    period_start: datetime
    period_end: datetime

    chats_used: int = Field(default=0, ge=0)
    deep_analysis_used: int = Field(default=0, ge=0)
    insights_generated: int = Field(default=0, ge=0)
    scout_queries_used: int = Field(default=0, ge=0)
    sonnet_queries_used: int = Field(default=0, ge=0)
    gpt5_queries_used: int = Field(default=0, ge=0)
    opus_queries_used: int = Field(default=0, ge=0)

    last_reset_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.now)

    def count_for(self, usage_type: UsageType) -> int:
        return getattr(self, usage_type.record_field)


class AddOnCredit(BaseModel):
    """A purchased allotment extending one usage type's limit."""

    id: UUID = Field(default_factory=uuid4)
    user_id: str = Field(..., min_length=1)
    add_on_type: AddOnType
    quantity: int = Field(..., gt=0)
    purchased_at: datetime = Field(default_factory=datetime.now)
    expires_at: datetime
    is_active: bool = True

    def is_usable(self, now: datetime) -> bool:
        return self.is_active and self.expires_at >= now


class QuotaStatus(BaseModel):
    """
    Result of a quota check.

    This is computed fresh on every call. Nothing here is cached.
    """

    usage_type: UsageType
    allowed: bool
    usage: int = Field(ge=0)
    limit: int = Field(ge=0)

    @property
    def remaining(self) -> int:
        return max(self.limit - self.usage, 0)


class SubscriptionUsage(BaseModel):
    """Subscription, plan and current-period usage in one view."""

    subscription: Subscription
    plan: SubscriptionPlan
    window: QuotaWindow
    usage: Optional[UsageRecord] = None
