"""
Storage contract tests.

Every test runs against both backends through the parametrized
`storage` fixture.
"""

import asyncio
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime, timedelta
from decimal import Decimal
from uuid import uuid4

import pytest

from twealth.models.audit import AuditEventBuilder
from twealth.models.engagement import Notification, NotificationType, UserStreak
from twealth.models.finance import (
    FinancialGoal,
    GoalMilestone,
    GoalStatus,
    Transaction,
    TransactionType,
)
from twealth.models.subscription import (
    AddOnCredit,
    AddOnType,
    QuotaWindow,
    Subscription,
    SubscriptionPlan,
    SubscriptionStatus,
)
from twealth.services.storage import NotFoundError, StorageError


MAY = QuotaWindow(
    start=datetime(2024, 5, 1),
    end=datetime(2024, 5, 31, 23, 59, 59, 999999),
)


def _goal(user_id="u1", **overrides) -> FinancialGoal:
    values = dict(
        user_id=user_id,
        title="Vacation",
        target_amount=Decimal("1000"),
        target_date=date(2024, 12, 31),
        created_at=datetime(2024, 5, 1),
    )
    values.update(overrides)
    return FinancialGoal(**values)


class TestPlanStorage:

    @pytest.mark.asyncio
    async def test_save_plan_upserts_by_name(self, storage):
        first = await storage.save_plan(
            SubscriptionPlan(name="free", display_name="Free", ai_chat_limit=50)
        )
        second = await storage.save_plan(
            SubscriptionPlan(name="free", display_name="Free", ai_chat_limit=60)
        )

        assert second.id == first.id
        stored = await storage.get_plan_by_name("FREE")
        assert stored.ai_chat_limit == 60
        assert len(await storage.list_plans()) == 1

    @pytest.mark.asyncio
    async def test_list_plans_hides_inactive(self, storage):
        await storage.save_plan(SubscriptionPlan(name="free", display_name="Free"))
        await storage.save_plan(
            SubscriptionPlan(name="legacy", display_name="Legacy", is_active=False)
        )

        assert [p.name for p in await storage.list_plans()] == ["free"]
        assert len(await storage.list_plans(active_only=False)) == 2

    @pytest.mark.asyncio
    async def test_active_subscription_is_latest_created(self, storage):
        plan = await storage.save_plan(SubscriptionPlan(name="free", display_name="Free"))
        for day in (1, 2):
            await storage.create_subscription(Subscription(
                user_id="u1",
                plan_id=plan.id,
                current_period_start=datetime(2024, 5, day),
                current_period_end=datetime(2024, 5, 31),
                created_at=datetime(2024, 5, day),
            ))

        active = await storage.get_active_subscription("u1")
        assert active.created_at == datetime(2024, 5, 2)

    @pytest.mark.asyncio
    async def test_cancelled_subscription_is_not_active(self, storage):
        plan = await storage.save_plan(SubscriptionPlan(name="free", display_name="Free"))
        subscription = await storage.create_subscription(Subscription(
            user_id="u1",
            plan_id=plan.id,
            current_period_start=datetime(2024, 5, 1),
            current_period_end=datetime(2024, 5, 31),
        ))
        await storage.update_subscription(
            subscription.model_copy(update={"status": SubscriptionStatus.CANCELLED})
        )

        assert await storage.get_active_subscription("u1") is None

    @pytest.mark.asyncio
    async def test_first_subscription_includes_cancelled(self, storage):
        plan = await storage.save_plan(SubscriptionPlan(name="free", display_name="Free"))
        first = await storage.create_subscription(Subscription(
            user_id="u1",
            plan_id=plan.id,
            status=SubscriptionStatus.CANCELLED,
            current_period_start=datetime(2024, 3, 1),
            current_period_end=datetime(2024, 3, 31),
            created_at=datetime(2024, 3, 1),
        ))
        await storage.create_subscription(Subscription(
            user_id="u1",
            plan_id=plan.id,
            current_period_start=datetime(2024, 5, 1),
            current_period_end=datetime(2024, 5, 31),
            created_at=datetime(2024, 5, 1),
        ))

        assert (await storage.get_first_subscription("u1")).id == first.id
        assert await storage.get_first_subscription("u2") is None

    @pytest.mark.asyncio
    async def test_update_missing_subscription_raises(self, storage):
        with pytest.raises(NotFoundError):
            await storage.update_subscription(Subscription(
                user_id="u1",
                plan_id=uuid4(),
                current_period_start=datetime(2024, 5, 1),
                current_period_end=datetime(2024, 5, 31),
            ))


class TestUsageStorage:

    @pytest.mark.asyncio
    async def test_increment_creates_record(self, storage):
        assert await storage.get_usage_record("u1", MAY) is None

        record = await storage.increment_usage("u1", MAY, "chats_used")

        assert record.chats_used == 1
        assert record.period_start == MAY.start
        assert record.period_end == MAY.end

    @pytest.mark.asyncio
    async def test_increments_accumulate_per_window(self, storage):
        june = QuotaWindow(start=datetime(2024, 6, 1), end=datetime(2024, 6, 30, 23, 59))
        await storage.increment_usage("u1", MAY, "chats_used")
        await storage.increment_usage("u1", MAY, "chats_used", amount=2)
        await storage.increment_usage("u1", june, "chats_used")

        assert (await storage.get_usage_record("u1", MAY)).chats_used == 3
        assert (await storage.get_usage_record("u1", june)).chats_used == 1

    @pytest.mark.asyncio
    async def test_increment_unknown_counter_raises(self, storage):
        with pytest.raises(StorageError):
            await storage.increment_usage("u1", MAY, "tokens_used")

    @pytest.mark.asyncio
    async def test_reset_zeroes_counters(self, storage):
        await storage.increment_usage("u1", MAY, "chats_used", amount=5)
        await storage.increment_usage("u1", MAY, "sonnet_queries_used")

        record = await storage.reset_usage("u1", MAY, datetime(2024, 5, 20))

        assert record.chats_used == 0
        assert record.sonnet_queries_used == 0
        assert record.last_reset_at == datetime(2024, 5, 20)

    @pytest.mark.asyncio
    async def test_reset_without_record(self, storage):
        assert await storage.reset_usage("u1", MAY, datetime(2024, 5, 20)) is None

    @pytest.mark.asyncio
    async def test_active_credits_filter(self, storage):
        now = datetime(2024, 5, 15)
        await storage.add_credit(AddOnCredit(
            user_id="u1", add_on_type=AddOnType.EXTRA_CHATS, quantity=10,
            expires_at=now + timedelta(days=10),
        ))
        await storage.add_credit(AddOnCredit(
            user_id="u1", add_on_type=AddOnType.EXTRA_CHATS, quantity=5,
            expires_at=now - timedelta(days=1),
        ))
        await storage.add_credit(AddOnCredit(
            user_id="u1", add_on_type=AddOnType.EXTRA_DEEP_ANALYSIS, quantity=3,
            expires_at=now + timedelta(days=10),
        ))

        chats = await storage.list_active_credits("u1", now, AddOnType.EXTRA_CHATS)
        assert [c.quantity for c in chats] == [10]
        assert len(await storage.list_active_credits("u1", now)) == 2


CALLERS = 8


def _run_concurrently(make_call, callers=CALLERS):
    """Run `make_call()` coroutines from several threads released together."""
    start = threading.Barrier(callers)

    def worker():
        start.wait()
        return asyncio.run(make_call())

    with ThreadPoolExecutor(max_workers=callers) as pool:
        futures = [pool.submit(worker) for _ in range(callers)]
        return [f.result() for f in futures]


class TestConcurrentWrites:
    """Counters and idempotent inserts under simultaneous callers."""

    def test_concurrent_increments_are_not_lost(self, threaded_storage):
        _run_concurrently(
            lambda: threaded_storage.increment_usage("u1", MAY, "chats_used")
        )

        record = asyncio.run(threaded_storage.get_usage_record("u1", MAY))
        assert record.chats_used == CALLERS

    def test_concurrent_duplicate_milestones_insert_once(self, threaded_storage):
        goal = asyncio.run(threaded_storage.create_goal(_goal()))

        results = _run_concurrently(
            lambda: threaded_storage.insert_milestone_if_absent(GoalMilestone(
                goal_id=goal.id, user_id="u1", milestone=50, amount_at_milestone=Decimal("500")
            ))
        )

        assert len([r for r in results if r is not None]) == 1
        assert len(asyncio.run(threaded_storage.list_milestones(goal.id))) == 1


class TestGoalStorage:

    @pytest.mark.asyncio
    async def test_goal_round_trip(self, storage):
        goal = await storage.create_goal(_goal(current_amount=Decimal("240")))

        stored = await storage.get_goal(goal.id)
        assert stored.current_amount == Decimal("240.00")
        assert stored.target_date == date(2024, 12, 31)

    @pytest.mark.asyncio
    async def test_update_missing_goal_raises(self, storage):
        with pytest.raises(NotFoundError):
            await storage.update_goal(_goal())

    @pytest.mark.asyncio
    async def test_list_goals_by_status(self, storage):
        await storage.create_goal(_goal())
        await storage.create_goal(_goal(title="Car", status=GoalStatus.COMPLETED))
        await storage.create_goal(_goal(user_id="u2"))

        assert len(await storage.list_goals("u1")) == 2
        active = await storage.list_goals("u1", GoalStatus.ACTIVE)
        assert [g.title for g in active] == ["Vacation"]

    @pytest.mark.asyncio
    async def test_list_transactions_newest_first_with_filters(self, storage):
        for day, kind in ((1, TransactionType.INCOME), (10, TransactionType.EXPENSE), (20, TransactionType.EXPENSE)):
            await storage.add_transaction(Transaction(
                user_id="u1",
                amount=Decimal("10"),
                type=kind,
                occurred_at=datetime(2024, 5, day),
            ))

        everything = await storage.list_transactions("u1")
        assert [t.occurred_at.day for t in everything] == [20, 10, 1]

        recent = await storage.list_transactions("u1", since=datetime(2024, 5, 10))
        assert [t.occurred_at.day for t in recent] == [20, 10]

        bounded = await storage.list_transactions(
            "u1", until=datetime(2024, 5, 15), transaction_type=TransactionType.EXPENSE
        )
        assert [t.occurred_at.day for t in bounded] == [10]


class TestMilestoneStorage:

    @pytest.mark.asyncio
    async def test_insert_if_absent_is_idempotent(self, storage):
        goal = await storage.create_goal(_goal())
        milestone = GoalMilestone(
            goal_id=goal.id, user_id="u1", milestone=25, amount_at_milestone=Decimal("240")
        )

        first = await storage.insert_milestone_if_absent(milestone)
        second = await storage.insert_milestone_if_absent(
            milestone.model_copy(update={"id": uuid4(), "amount_at_milestone": Decimal("300")})
        )

        assert first is not None
        assert second is None
        rows = await storage.list_milestones(goal.id)
        assert len(rows) == 1
        assert rows[0].amount_at_milestone == Decimal("240.00")

    @pytest.mark.asyncio
    async def test_mark_milestones_seen(self, storage):
        goal = await storage.create_goal(_goal())
        other = await storage.create_goal(_goal(title="Car"))
        for g in (goal, other):
            await storage.insert_milestone_if_absent(GoalMilestone(
                goal_id=g.id, user_id="u1", milestone=25, amount_at_milestone=Decimal("250")
            ))

        assert await storage.mark_milestones_seen("u1", goal.id) == 1
        unseen = await storage.list_user_milestones("u1", unseen_only=True)
        assert [m.goal_id for m in unseen] == [other.id]
        assert await storage.mark_milestones_seen("u1") == 1


class TestStreakStorage:

    @pytest.mark.asyncio
    async def test_save_streak_overwrites(self, storage):
        await storage.save_streak(UserStreak(user_id="u1", current_streak=1))
        await storage.save_streak(UserStreak(user_id="u1", current_streak=2, longest_streak=2))

        streak = await storage.get_streak("u1")
        assert streak.current_streak == 2
        assert await storage.get_streak("u2") is None

    @pytest.mark.asyncio
    async def test_unlock_achievement_once(self, storage):
        earned_at = datetime(2024, 5, 15)
        assert await storage.unlock_achievement("u1", "streak_7", 7, 7, earned_at)
        assert not await storage.unlock_achievement("u1", "streak_7", 8, 7, earned_at)

        rows = await storage.list_achievements("u1")
        assert len(rows) == 1
        assert rows[0].progress == 7

    @pytest.mark.asyncio
    async def test_unlock_after_progress_rows(self, storage):
        await storage.upsert_achievement_progress("u1", "streak_7", 3, 7)
        await storage.upsert_achievement_progress("u1", "streak_7", 4, 7)

        assert await storage.unlock_achievement("u1", "streak_7", 7, 7, datetime(2024, 5, 15))

        rows = await storage.list_achievements("u1")
        assert len(rows) == 1
        assert rows[0].is_earned

    @pytest.mark.asyncio
    async def test_progress_never_touches_earned_row(self, storage):
        await storage.unlock_achievement("u1", "streak_7", 7, 7, datetime(2024, 5, 15))
        await storage.upsert_achievement_progress("u1", "streak_7", 1, 7)

        rows = await storage.list_achievements("u1")
        assert rows[0].progress == 7


class TestNotificationStorage:

    def _notification(self, created_at: datetime, **overrides) -> Notification:
        values = dict(
            user_id="u1",
            type=NotificationType.BUDGET_WARNING,
            title="Budget Alert",
            message="Over budget",
            data={"overspend": "10.00"},
            created_at=created_at,
        )
        values.update(overrides)
        return Notification(**values)

    @pytest.mark.asyncio
    async def test_has_recent_notification(self, storage):
        await storage.create_notification(self._notification(datetime(2024, 5, 15, 9)))

        assert await storage.has_recent_notification(
            "u1", NotificationType.BUDGET_WARNING, datetime(2024, 5, 15)
        )
        assert not await storage.has_recent_notification(
            "u1", NotificationType.BUDGET_WARNING, datetime(2024, 5, 15, 10)
        )
        assert not await storage.has_recent_notification(
            "u1", NotificationType.RISK_ALERT, datetime(2024, 5, 1)
        )

    @pytest.mark.asyncio
    async def test_recent_notifications_keep_data(self, storage):
        await storage.create_notification(self._notification(datetime(2024, 5, 15, 9)))

        recent = await storage.list_recent_notifications(
            "u1", NotificationType.BUDGET_WARNING, datetime(2024, 5, 15)
        )
        assert recent[0].data == {"overspend": "10.00"}

    @pytest.mark.asyncio
    async def test_inbox_operations(self, storage):
        first = await storage.create_notification(self._notification(datetime(2024, 5, 15, 9)))
        second = await storage.create_notification(self._notification(datetime(2024, 5, 15, 10)))
        third = await storage.create_notification(self._notification(datetime(2024, 5, 15, 11)))

        listed = await storage.list_notifications("u1")
        assert [n.id for n in listed] == [third.id, second.id, first.id]
        assert await storage.count_unread("u1") == 3

        assert await storage.mark_notification_read("u1", first.id, datetime(2024, 5, 15, 12))
        assert not await storage.mark_notification_read("u2", second.id, datetime(2024, 5, 15, 12))
        assert await storage.count_unread("u1") == 2
        unread = await storage.list_notifications("u1", include_read=False)
        assert first.id not in [n.id for n in unread]

        assert await storage.archive_notification("u1", second.id)
        assert [n.id for n in await storage.list_notifications("u1")] == [third.id, first.id]

        assert await storage.mark_all_read("u1", datetime(2024, 5, 15, 13)) == 2
        assert await storage.count_unread("u1") == 0

        assert await storage.delete_notification("u1", third.id)
        assert not await storage.delete_notification("u1", third.id)
        assert [n.id for n in await storage.list_notifications("u1")] == [first.id]


class TestAuditStorage:

    @pytest.mark.asyncio
    async def test_append_and_filter_events(self, audit_storage):
        correlation_id = uuid4()
        await audit_storage.append_event(AuditEventBuilder.quota_exceeded(
            "u1", "chats", 50, 50, correlation_id=correlation_id
        ))
        await audit_storage.append_event(AuditEventBuilder.achievement_unlocked("u2", "streak_7"))

        events = await audit_storage.get_events(user_id="u1")
        assert len(events) == 1
        assert events[0].details["limit"] == 50
        assert len(await audit_storage.get_events(correlation_id=correlation_id)) == 1
