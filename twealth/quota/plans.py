"""
Subscription / Plan Resolver

Maps a user to their active subscription and its plan, bootstraps the
default plan for users who have none, and decides the quota window a
usage counter accumulates over.

DESIGN DECISION: Quota windows are derived, never stored separately.
- Monthly plans: the calendar month containing "now"
- Lifetime plans: from the user's first subscription to a far-future
  sentinel, so cancelling or switching plans never opens a fresh window

Because the window is a pure function of (plan, account start, now), the
usage record for a window has a stable natural key, which is what lets
storage create-and-increment it atomically.

KNOWN RACE: two concurrent bootstraps for the same user can both create
a subscription. Lookups then pick the most recently created one.
"""

import calendar
from datetime import datetime, time
from decimal import Decimal
from typing import Callable, Optional

import structlog

from twealth.audit import AuditLogger
from twealth.config import QuotaSettings, get_settings
from twealth.models.subscription import (
    UNLIMITED,
    ActiveSubscription,
    QuotaWindow,
    Subscription,
    SubscriptionPlan,
    SubscriptionStatus,
)
from twealth.services.cache import PlanCache
from twealth.services.storage import NotFoundError, PlanStorageInterface


logger = structlog.get_logger(__name__)


# =============================================================================
# PLAN CATALOGUE
# =============================================================================

DEFAULT_PLANS = (
    {
        "name": "free",
        "display_name": "Twealth Free",
        "description": "Get started with 50 AI chats per month",
        "price_usd": Decimal("0.00"),
        "ai_chat_limit": 50,
        "ai_deep_analysis_limit": 0,
        "scout_limit": 50,
        "insights_frequency": "never",
        "features": ["basic_tracking", "ai_chat", "expense_tracking"],
        "sort_order": 0,
    },
    {
        "name": "pro",
        "display_name": "Twealth Pro",
        "description": "Unlimited chats with monthly deep analysis",
        "price_usd": Decimal("9.99"),
        "ai_chat_limit": UNLIMITED,
        "ai_deep_analysis_limit": 30,
        "scout_limit": UNLIMITED,
        "sonnet_limit": 25,
        "insights_frequency": "daily",
        "features": ["basic_tracking", "ai_chat", "expense_tracking", "deep_analysis", "daily_insights"],
        "sort_order": 1,
    },
    {
        "name": "enterprise",
        "display_name": "Twealth Enterprise",
        "description": "Unlimited chats with extended deep analysis",
        "price_usd": Decimal("49.99"),
        "ai_chat_limit": UNLIMITED,
        "ai_deep_analysis_limit": 90,
        "scout_limit": UNLIMITED,
        "sonnet_limit": 100,
        "insights_frequency": "daily",
        "features": [
            "basic_tracking", "ai_chat", "expense_tracking", "deep_analysis",
            "daily_insights", "priority_support",
        ],
        "sort_order": 2,
    },
)


def default_plans() -> list[SubscriptionPlan]:
    """Fresh plan models for the built-in catalogue."""
    return [SubscriptionPlan(**definition) for definition in DEFAULT_PLANS]


# =============================================================================
# WINDOWS
# =============================================================================

def month_window(now: datetime) -> QuotaWindow:
    """The calendar month containing `now` (first day 00:00 to last day 23:59:59.999999)."""
    last_day = calendar.monthrange(now.year, now.month)[1]
    return QuotaWindow(
        start=datetime(now.year, now.month, 1),
        end=datetime.combine(now.date().replace(day=last_day), time.max),
    )


def quota_window(
    plan: SubscriptionPlan,
    account_start: datetime,
    now: datetime,
    lifetime_end: datetime,
) -> QuotaWindow:
    """
    Window the usage counters accumulate over for this plan.

    `account_start` is when the user's first subscription was created.
    """
    if plan.is_lifetime_limit:
        return QuotaWindow(
            start=account_start,
            end=lifetime_end,
            is_lifetime=True,
        )
    return month_window(now)


# =============================================================================
# RESOLVER
# =============================================================================

class PlanResolver:
    """
    Resolves users to subscriptions and plans.

    Plan lookups go through the injected PlanCache; anything that writes
    plans invalidates it.
    """

    def __init__(
        self,
        storage: PlanStorageInterface,
        plan_cache: Optional[PlanCache] = None,
        audit_logger: Optional[AuditLogger] = None,
        settings: Optional[QuotaSettings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._storage = storage
        self._settings = settings or get_settings().quota
        self._cache = plan_cache or PlanCache(
            ttl_seconds=self._settings.plan_cache_ttl_seconds,
            maxsize=self._settings.plan_cache_size,
        )
        self._audit_logger = audit_logger
        self._clock = clock or datetime.now

    @property
    def settings(self) -> QuotaSettings:
        return self._settings

    def now(self) -> datetime:
        return self._clock()

    async def seed_plans(
        self,
        plans: Optional[list[SubscriptionPlan]] = None,
    ) -> list[SubscriptionPlan]:
        """
        Insert or update the plan catalogue by name.

        Called once at startup. Invalidates the plan cache.
        """
        stored = []
        for plan in plans or default_plans():
            stored.append(await self._storage.save_plan(plan))
        self._cache.invalidate()

        if self._audit_logger:
            await self._audit_logger.log_plans_seeded([p.name for p in stored])
        return stored

    async def get_plan(self, plan_id) -> Optional[SubscriptionPlan]:
        return await self._cache.get_or_load(plan_id, self._storage.get_plan)

    async def get_active_subscription(self, user_id: str) -> Optional[ActiveSubscription]:
        """
        Get the user's active subscription and its plan.

        Returns:
            None if the user has no active subscription
        """
        subscription = await self._storage.get_active_subscription(user_id)
        if subscription is None:
            return None

        plan = await self.get_plan(subscription.plan_id)
        if plan is None:
            raise NotFoundError(
                f"Plan {subscription.plan_id} for subscription {subscription.id} not found"
            )
        return ActiveSubscription(subscription=subscription, plan=plan)

    async def _default_plan(self) -> SubscriptionPlan:
        name = self._settings.default_plan_name
        plan = await self._storage.get_plan_by_name(name)
        if plan is not None:
            return plan

        definition = next((d for d in DEFAULT_PLANS if d["name"] == name), None)
        if definition is None:
            raise NotFoundError(f"Default plan '{name}' is not seeded and has no built-in definition")

        logger.info("default_plan_created", plan=name)
        plan = await self._storage.save_plan(SubscriptionPlan(**definition))
        self._cache.invalidate(plan.id)
        return plan

    def _subscription_period(self, plan: SubscriptionPlan, now: datetime) -> tuple[datetime, datetime]:
        if plan.is_lifetime_limit:
            return now, self._settings.lifetime_period_end
        return now, month_window(now).end

    async def bootstrap_default_subscription(
        self,
        user_id: str,
        correlation_id=None,
    ) -> ActiveSubscription:
        """
        Create an active subscription on the default plan.

        The period is the rest of the current month, or the lifetime
        window for lifetime-limit plans.
        """
        plan = await self._default_plan()
        start, end = self._subscription_period(plan, self.now())

        subscription = await self._storage.create_subscription(Subscription(
            user_id=user_id,
            plan_id=plan.id,
            status=SubscriptionStatus.ACTIVE,
            current_period_start=start,
            current_period_end=end,
            created_at=start,
        ))

        if self._audit_logger:
            await self._audit_logger.log_subscription_bootstrapped(
                user_id=user_id,
                subscription_id=subscription.id,
                plan_name=plan.name,
                correlation_id=correlation_id,
            )
        return ActiveSubscription(subscription=subscription, plan=plan)

    async def ensure_subscription(self, user_id: str, correlation_id=None) -> ActiveSubscription:
        """Get the active subscription, bootstrapping the default one if needed."""
        active = await self.get_active_subscription(user_id)
        if active is None:
            active = await self.bootstrap_default_subscription(user_id, correlation_id)
        return active

    async def change_plan(self, user_id: str, plan_name: str) -> ActiveSubscription:
        """
        Move the user's active subscription to another plan.

        The new period starts now.

        Raises:
            NotFoundError: If the plan doesn't exist
        """
        plan = await self._storage.get_plan_by_name(plan_name)
        if plan is None or not plan.is_active:
            raise NotFoundError(f"Plan not found: {plan_name}")

        active = await self.ensure_subscription(user_id)
        start, end = self._subscription_period(plan, self.now())
        subscription = active.subscription.model_copy(update={
            "plan_id": plan.id,
            "current_period_start": start,
            "current_period_end": end,
        })
        subscription = await self._storage.update_subscription(subscription)

        if self._audit_logger:
            await self._audit_logger.log_subscription_changed(
                user_id=user_id,
                subscription_id=subscription.id,
                plan_name=plan.name,
                status=subscription.status.value,
            )
        return ActiveSubscription(subscription=subscription, plan=plan)

    async def cancel_subscription(self, user_id: str) -> Subscription:
        """
        Cancel the user's active subscription.

        Raises:
            NotFoundError: If the user has no active subscription
        """
        active = await self.get_active_subscription(user_id)
        if active is None:
            raise NotFoundError(f"No active subscription for user {user_id}")

        subscription = active.subscription.model_copy(update={
            "status": SubscriptionStatus.CANCELLED,
            "cancelled_at": self.now(),
        })
        subscription = await self._storage.update_subscription(subscription)

        if self._audit_logger:
            await self._audit_logger.log_subscription_changed(
                user_id=user_id,
                subscription_id=subscription.id,
                plan_name=active.plan.name,
                status=subscription.status.value,
            )
        return subscription

    async def quota_window(
        self,
        active: ActiveSubscription,
        now: Optional[datetime] = None,
    ) -> QuotaWindow:
        account_start = active.subscription.created_at
        if active.plan.is_lifetime_limit:
            first = await self._storage.get_first_subscription(active.subscription.user_id)
            if first is not None:
                account_start = min(account_start, first.created_at)

        return quota_window(
            active.plan,
            account_start,
            now or self.now(),
            self._settings.lifetime_period_end,
        )
