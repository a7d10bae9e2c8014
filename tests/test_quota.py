"""
Tests for plan resolution and quota checks.
"""

from datetime import datetime, timedelta
from uuid import uuid4

import pytest
import pytest_asyncio

from twealth.audit import AuditLogger
from twealth.models.audit import AuditEventType
from twealth.models.subscription import (
    AddOnType,
    ModelTier,
    Subscription,
    SubscriptionPlan,
    SubscriptionStatus,
    UsageType,
)
from twealth.quota import PlanResolver, QuotaChecker, QuotaExceededError
from twealth.quota.plans import month_window
from twealth.services.cache import PlanCache
from twealth.services.storage import InMemoryAuditStorage, NotFoundError
from twealth.validation import ValidationFailedError


@pytest.fixture
def audit_events():
    return InMemoryAuditStorage()


@pytest_asyncio.fixture
async def resolver(storage, audit_events, quota_settings, clock):
    resolver = PlanResolver(
        storage,
        plan_cache=PlanCache(ttl_seconds=60),
        audit_logger=AuditLogger(audit_events),
        settings=quota_settings,
        clock=clock,
    )
    await resolver.seed_plans()
    return resolver


@pytest.fixture
def checker(storage, resolver, audit_events, clock):
    return QuotaChecker(storage, resolver, audit_logger=AuditLogger(audit_events), clock=clock)


async def _use(checker, user_id, usage_type, times):
    for _ in range(times):
        await checker.increment_usage(user_id, usage_type)


class TestWindows:

    def test_month_window_bounds(self):
        window = month_window(datetime(2024, 2, 10, 15, 30))
        assert window.start == datetime(2024, 2, 1)
        assert window.end.date() == datetime(2024, 2, 29).date()
        assert window.contains(datetime(2024, 2, 29, 23, 59))
        assert not window.contains(datetime(2024, 3, 1))


class TestPlanResolver:

    @pytest.mark.asyncio
    async def test_seed_is_idempotent(self, resolver, storage):
        await resolver.seed_plans()
        names = [p.name for p in await storage.list_plans()]
        assert names == ["free", "pro", "enterprise"]

    @pytest.mark.asyncio
    async def test_bootstrap_default_subscription(self, resolver, audit_events, clock):
        active = await resolver.ensure_subscription("u1")

        assert active.plan.name == "free"
        assert active.subscription.status == SubscriptionStatus.ACTIVE
        assert active.subscription.current_period_start == clock()
        assert active.subscription.current_period_end == month_window(clock()).end

        events = await audit_events.get_events(user_id="u1")
        assert events[0].event_type == AuditEventType.SUBSCRIPTION_BOOTSTRAPPED

    @pytest.mark.asyncio
    async def test_ensure_subscription_reuses_existing(self, resolver):
        first = await resolver.ensure_subscription("u1")
        second = await resolver.ensure_subscription("u1")
        assert first.subscription.id == second.subscription.id

    @pytest.mark.asyncio
    async def test_change_plan(self, resolver):
        await resolver.ensure_subscription("u1")
        active = await resolver.change_plan("u1", "Pro")

        assert active.plan.name == "pro"
        assert (await resolver.get_active_subscription("u1")).plan.name == "pro"

    @pytest.mark.asyncio
    async def test_change_to_unknown_plan(self, resolver):
        with pytest.raises(NotFoundError):
            await resolver.change_plan("u1", "platinum")

    @pytest.mark.asyncio
    async def test_cancel_subscription(self, resolver, clock):
        await resolver.ensure_subscription("u1")
        cancelled = await resolver.cancel_subscription("u1")

        assert cancelled.status == SubscriptionStatus.CANCELLED
        assert cancelled.cancelled_at == clock()
        assert await resolver.get_active_subscription("u1") is None

    @pytest.mark.asyncio
    async def test_cancel_without_subscription(self, resolver):
        with pytest.raises(NotFoundError):
            await resolver.cancel_subscription("nobody")


class TestCheckUsageLimit:

    @pytest.mark.asyncio
    async def test_no_subscription_is_denied(self, checker):
        status = await checker.check_usage_limit("nobody", UsageType.CHATS)
        assert (status.allowed, status.usage, status.limit) == (False, 0, 0)

    @pytest.mark.asyncio
    async def test_free_plan_chat_limit(self, checker, resolver):
        """Test that the 50th chat is the last one allowed."""
        await resolver.ensure_subscription("u1")
        await _use(checker, "u1", UsageType.CHATS, 49)

        status = await checker.check_usage_limit("u1", UsageType.CHATS)
        assert (status.allowed, status.usage, status.limit) == (True, 49, 50)

        await checker.increment_usage("u1", UsageType.CHATS)
        status = await checker.check_usage_limit("u1", UsageType.CHATS)
        assert (status.allowed, status.usage, status.limit) == (False, 50, 50)

    @pytest.mark.asyncio
    async def test_zero_limit_is_denied(self, checker, resolver):
        await resolver.ensure_subscription("u1")
        status = await checker.check_usage_limit("u1", UsageType.DEEP_ANALYSIS)
        assert not status.allowed
        assert status.limit == 0

    @pytest.mark.asyncio
    async def test_add_on_credits_raise_limit(self, checker, resolver, clock):
        await resolver.ensure_subscription("u1")
        await _use(checker, "u1", UsageType.CHATS, 50)
        await checker.add_credit("u1", AddOnType.EXTRA_CHATS, 10, clock() + timedelta(days=30))

        status = await checker.check_usage_limit("u1", UsageType.CHATS)
        assert (status.allowed, status.usage, status.limit) == (True, 50, 60)

    @pytest.mark.asyncio
    async def test_expired_credits_are_ignored(self, checker, resolver, clock):
        await resolver.ensure_subscription("u1")
        await checker.add_credit("u1", AddOnType.EXTRA_CHATS, 10, clock() + timedelta(days=1))

        clock.advance(days=2)
        status = await checker.check_usage_limit("u1", UsageType.CHATS)
        assert status.limit == 50

    @pytest.mark.asyncio
    async def test_free_premium_is_unlimited(self, checker, resolver, storage, quota_settings):
        active = await resolver.ensure_subscription("u1")
        await storage.update_subscription(
            active.subscription.model_copy(update={"free_premium": True})
        )
        await _use(checker, "u1", UsageType.CHATS, 3)

        status = await checker.check_usage_limit("u1", UsageType.DEEP_ANALYSIS)
        assert status.allowed
        assert status.limit == quota_settings.unlimited_sentinel

    @pytest.mark.asyncio
    async def test_insights_are_counted_but_unlimited(self, checker, resolver):
        await resolver.ensure_subscription("u1")
        await checker.increment_usage("u1", UsageType.INSIGHTS)

        status = await checker.check_usage_limit("u1", UsageType.INSIGHTS)
        assert status.allowed
        assert status.usage == 1

    @pytest.mark.asyncio
    async def test_usage_resets_with_new_month(self, checker, resolver, clock):
        await resolver.ensure_subscription("u1")
        await _use(checker, "u1", UsageType.CHATS, 50)

        clock.advance(days=20)
        status = await checker.check_usage_limit("u1", UsageType.CHATS)
        assert (status.allowed, status.usage) == (True, 0)


class TestLifetimePlans:

    @pytest_asyncio.fixture
    async def lifetime_user(self, resolver, storage, clock):
        plan = await storage.save_plan(SubscriptionPlan(
            name="starter",
            display_name="Starter",
            ai_chat_limit=5,
            is_lifetime_limit=True,
        ))
        await storage.create_subscription(Subscription(
            user_id="u1",
            plan_id=plan.id,
            current_period_start=clock() - timedelta(days=60),
            current_period_end=datetime(2099, 12, 31),
            created_at=clock() - timedelta(days=60),
        ))
        return "u1"

    @pytest.mark.asyncio
    async def test_usage_survives_month_boundary(self, checker, lifetime_user, clock):
        await _use(checker, lifetime_user, UsageType.CHATS, 5)

        clock.advance(days=45)
        status = await checker.check_usage_limit(lifetime_user, UsageType.CHATS)
        assert (status.allowed, status.usage, status.limit) == (False, 5, 5)

    @pytest.mark.asyncio
    async def test_window_starts_at_first_subscription(self, checker, resolver, lifetime_user, clock):
        summary = await checker.get_subscription_with_usage(lifetime_user)
        assert summary.window.is_lifetime
        assert summary.window.start == clock() - timedelta(days=60)

    @pytest.mark.asyncio
    async def test_resubscribing_keeps_usage(self, checker, resolver, lifetime_user, clock):
        await _use(checker, lifetime_user, UsageType.CHATS, 5)

        await resolver.cancel_subscription(lifetime_user)
        clock.advance(days=1)
        await resolver.ensure_subscription(lifetime_user)
        await resolver.change_plan(lifetime_user, "starter")

        status = await checker.check_usage_limit(lifetime_user, UsageType.CHATS)
        assert (status.allowed, status.usage, status.limit) == (False, 5, 5)

    @pytest.mark.asyncio
    async def test_switching_lifetime_plans_keeps_usage(self, checker, resolver, storage, lifetime_user):
        await storage.save_plan(SubscriptionPlan(
            name="starter_plus",
            display_name="Starter Plus",
            ai_chat_limit=8,
            is_lifetime_limit=True,
        ))
        await _use(checker, lifetime_user, UsageType.CHATS, 5)

        await resolver.change_plan(lifetime_user, "starter_plus")

        status = await checker.check_usage_limit(lifetime_user, UsageType.CHATS)
        assert (status.allowed, status.usage, status.limit) == (True, 5, 8)


class TestRequireQuota:

    @pytest.mark.asyncio
    async def test_raises_when_exhausted(self, checker, resolver, audit_events):
        await resolver.ensure_subscription("u1")
        await _use(checker, "u1", UsageType.SCOUT_QUERIES, 50)

        with pytest.raises(QuotaExceededError) as exc_info:
            await checker.require_quota("u1", UsageType.SCOUT_QUERIES)

        assert exc_info.value.usage == 50
        assert exc_info.value.limit == 50
        events = await audit_events.get_events(user_id="u1")
        assert events[0].event_type == AuditEventType.QUOTA_EXCEEDED

    @pytest.mark.asyncio
    async def test_returns_status_when_allowed(self, checker, resolver):
        await resolver.ensure_subscription("u1")
        status = await checker.require_quota("u1", UsageType.CHATS)
        assert status.remaining == 50


class TestIncrementUsage:

    @pytest.mark.asyncio
    async def test_rejects_non_positive_amount(self, checker, resolver):
        await resolver.ensure_subscription("u1")
        with pytest.raises(ValidationFailedError):
            await checker.increment_usage("u1", UsageType.CHATS, amount=0)

    @pytest.mark.asyncio
    async def test_requires_subscription(self, checker):
        with pytest.raises(NotFoundError):
            await checker.increment_usage("nobody", UsageType.CHATS)

    @pytest.mark.asyncio
    async def test_model_tier_usage(self, checker, resolver):
        await resolver.change_plan("u1", "pro")
        record = await checker.increment_model_usage("u1", ModelTier.SONNET, amount=2)
        assert record.sonnet_queries_used == 2

        status = await checker.check_usage_limit("u1", UsageType.SONNET_QUERIES)
        assert (status.usage, status.limit) == (2, 25)

    @pytest.mark.asyncio
    async def test_reset_usage(self, checker, resolver):
        await resolver.ensure_subscription("u1")
        assert await checker.reset_usage("u1") is None

        await _use(checker, "u1", UsageType.CHATS, 3)
        record = await checker.reset_usage("u1")
        assert record.chats_used == 0


class TestPlanCache:

    @pytest.mark.asyncio
    async def test_hits_until_ttl_expires(self, storage):
        now = [0.0]
        cache = PlanCache(ttl_seconds=10, timer=lambda: now[0])
        plan = await storage.save_plan(SubscriptionPlan(name="free", display_name="Free"))

        await cache.get_or_load(plan.id, storage.get_plan)
        await cache.get_or_load(plan.id, storage.get_plan)
        assert (cache.hits, cache.misses) == (1, 1)

        now[0] = 11.0
        await cache.get_or_load(plan.id, storage.get_plan)
        assert cache.misses == 2

    @pytest.mark.asyncio
    async def test_invalidate(self, storage):
        cache = PlanCache(ttl_seconds=60)
        plan = await storage.save_plan(SubscriptionPlan(name="free", display_name="Free"))
        await cache.get_or_load(plan.id, storage.get_plan)

        cache.invalidate(plan.id)
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_missing_plans_are_not_cached(self, storage):
        cache = PlanCache(ttl_seconds=60)
        assert await cache.get_or_load(uuid4(), storage.get_plan) is None
        assert len(cache) == 0
