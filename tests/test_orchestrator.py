"""
End-to-end tests for the request flows.

Each test runs against a fully wired engine context on both backends.
"""

from datetime import date, timedelta
from decimal import Decimal
from uuid import uuid4

import pytest

from twealth.config import Settings
from twealth.models.audit import AuditEventType
from twealth.models.engagement import NotificationType
from twealth.models.finance import GoalStatus, TransactionType
from twealth.models.subscription import ModelTier, UsageType
from twealth.orchestrator import create_app_components
from twealth.quota import QuotaExceededError
from twealth.services.storage import NotFoundError
from twealth.validation import ValidationFailedError


class RecordingAdvisor:
    """Stand-in for the AI advisor."""

    def __init__(self, reply="Here is my advice", error=None):
        self.reply = reply
        self.error = error
        self.calls = []

    async def __call__(self, user_id, message):
        self.calls.append((user_id, message))
        if self.error is not None:
            raise self.error
        return self.reply


async def _event_types(context, user_id=None, correlation_id=None):
    events = await context.audit_storage.get_events(
        user_id=user_id, correlation_id=correlation_id, limit=500
    )
    return [e.event_type for e in events]


class TestChatFlow:

    @pytest.mark.asyncio
    async def test_first_message_bootstraps_and_counts(self, context):
        advisor = RecordingAdvisor()

        reply, status = await context.chat.send_message("u1", "How do I save?", advisor)

        assert reply == "Here is my advice"
        assert advisor.calls == [("u1", "How do I save?")]
        assert (status.usage, status.limit) == (1, 50)
        types = await _event_types(context, user_id="u1")
        assert AuditEventType.SUBSCRIPTION_BOOTSTRAPPED in types
        assert AuditEventType.USAGE_INCREMENTED in types

    @pytest.mark.asyncio
    async def test_advisor_not_called_over_quota(self, context):
        advisor = RecordingAdvisor()
        await context.resolver.ensure_subscription("u1")
        await context.checker.increment_usage("u1", UsageType.CHATS, amount=50)

        with pytest.raises(QuotaExceededError):
            await context.chat.send_message("u1", "One more?", advisor)

        assert advisor.calls == []
        status = await context.checker.check_usage_limit("u1", UsageType.CHATS)
        assert status.usage == 50

    @pytest.mark.asyncio
    async def test_failed_advisor_is_not_counted(self, context):
        advisor = RecordingAdvisor(error=RuntimeError("model unavailable"))
        correlation_id = uuid4()

        with pytest.raises(RuntimeError):
            await context.chat.send_message("u1", "Hello", advisor, correlation_id=correlation_id)

        status = await context.checker.check_usage_limit("u1", UsageType.CHATS)
        assert status.usage == 0
        types = await _event_types(context, correlation_id=correlation_id)
        assert AuditEventType.SYSTEM_ERROR in types
        assert AuditEventType.USAGE_INCREMENTED not in types

    @pytest.mark.asyncio
    async def test_deep_analysis_requires_plan(self, context):
        advisor = RecordingAdvisor()

        with pytest.raises(QuotaExceededError):
            await context.chat.send_message("u1", "Analyze me", advisor, deep_analysis=True)

        await context.resolver.change_plan("u1", "pro")
        _, status = await context.chat.send_message("u1", "Analyze me", advisor, deep_analysis=True)

        assert (status.usage_type, status.usage, status.limit) == (UsageType.DEEP_ANALYSIS, 1, 30)
        chats = await context.checker.check_usage_limit("u1", UsageType.CHATS)
        assert chats.usage == 0

    @pytest.mark.asyncio
    async def test_model_tier_is_counted(self, context):
        await context.resolver.change_plan("u1", "pro")

        await context.chat.send_message(
            "u1", "Hi", RecordingAdvisor(), model_tier=ModelTier.SONNET
        )

        summary = await context.checker.get_subscription_with_usage("u1")
        assert summary.usage.chats_used == 1
        assert summary.usage.sonnet_queries_used == 1


class TestGoalFlow:

    @pytest.mark.asyncio
    async def test_create_goal_with_savings(self, context):
        goal, milestones = await context.goals.create_goal(
            "u1", "Vacation", "1000", date(2024, 12, 31), current_amount="300"
        )

        assert goal.current_amount == Decimal("300.00")
        assert [m.milestone for m in milestones] == [25]

    @pytest.mark.asyncio
    async def test_create_goal_rejects_bad_input(self, context):
        with pytest.raises(ValidationFailedError) as exc_info:
            await context.goals.create_goal("u1", "Vacation", "-10", date(2024, 1, 1))

        assert {i.field for i in exc_info.value.issues} == {"target_amount", "target_date"}
        assert AuditEventType.VALIDATION_FAILED in await _event_types(context, user_id="u1")
        assert await context.storage.list_goals("u1") == []

    @pytest.mark.asyncio
    async def test_contributions_reach_completion(self, context):
        goal, _ = await context.goals.create_goal("u1", "Laptop", "1000", date(2024, 12, 31))

        goal, milestones = await context.goals.contribute(goal.id, "520")
        assert [m.milestone for m in milestones] == [25, 50]
        assert str(milestones[-1].amount_at_milestone) == "520.00"

        goal, milestones = await context.goals.contribute(goal.id, "480")
        assert [m.milestone for m in milestones] == [75, 100]
        assert goal.status == GoalStatus.COMPLETED

        notifications = await context.notifications.list_notifications("u1")
        assert [n.type for n in notifications] == [NotificationType.GOAL_COMPLETE]

        # The notification pass must not complete it a second time
        created = await context.notifications.generate("u1")
        assert NotificationType.GOAL_COMPLETE not in [n.type for n in created]

    @pytest.mark.asyncio
    async def test_lowering_amount_keeps_milestones(self, context):
        goal, _ = await context.goals.create_goal(
            "u1", "Car", "1000", date(2024, 12, 31), current_amount="600"
        )

        goal, milestones = await context.goals.update_amount(goal.id, "100")

        assert goal.current_amount == Decimal("100.00")
        assert milestones == []
        ladder = await context.goals.milestone_ladder(goal.id)
        assert [level.reached_at is not None for level in ladder] == [True, True, False, False]

    @pytest.mark.asyncio
    async def test_contribute_rejects_too_precise_amount(self, context):
        goal, _ = await context.goals.create_goal("u1", "Car", "1000", date(2024, 12, 31))

        with pytest.raises(ValidationFailedError):
            await context.goals.contribute(goal.id, "10.005")

        assert (await context.goals.get_goal(goal.id)).current_amount == Decimal("0.00")

    @pytest.mark.asyncio
    async def test_missing_goal(self, context):
        with pytest.raises(NotFoundError):
            await context.goals.contribute(uuid4(), "10")

    @pytest.mark.asyncio
    async def test_progress_report(self, context, clock):
        goal, _ = await context.goals.create_goal(
            "u1", "Car", "1200", clock().date() + timedelta(days=90), current_amount="600"
        )

        report = await context.goals.progress_report(goal.id)

        assert report.current_level == "50%"
        assert report.required_monthly == Decimal("200.00")


class TestTransactionFlow:

    @pytest.mark.asyncio
    async def test_transfer_contributes_to_goal(self, context):
        goal, _ = await context.goals.create_goal("u1", "Vacation", "1000", date(2024, 12, 31))

        transaction, milestones = await context.transactions.record_transaction(
            "u1", "250", TransactionType.TRANSFER, goal_id=goal.id
        )

        assert transaction.goal_id == goal.id
        assert [m.milestone for m in milestones] == [25]
        assert (await context.goals.get_goal(goal.id)).current_amount == Decimal("250.00")

    @pytest.mark.asyncio
    async def test_expense_with_goal_does_not_contribute(self, context):
        goal, _ = await context.goals.create_goal("u1", "Vacation", "1000", date(2024, 12, 31))

        _, milestones = await context.transactions.record_transaction(
            "u1", "250", TransactionType.EXPENSE, goal_id=goal.id
        )

        assert milestones == []
        assert (await context.goals.get_goal(goal.id)).current_amount == Decimal("0.00")

    @pytest.mark.asyncio
    async def test_transfer_to_someone_elses_goal(self, context):
        goal, _ = await context.goals.create_goal("u2", "Vacation", "1000", date(2024, 12, 31))

        with pytest.raises(NotFoundError):
            await context.transactions.record_transaction(
                "u1", "250", TransactionType.TRANSFER, goal_id=goal.id
            )

        assert await context.storage.list_transactions("u1") == []

    @pytest.mark.asyncio
    async def test_invalid_amount_is_not_stored(self, context):
        with pytest.raises(ValidationFailedError):
            await context.transactions.record_transaction("u1", "abc", TransactionType.EXPENSE)

        assert await context.storage.list_transactions("u1") == []

    @pytest.mark.asyncio
    async def test_oversized_amount_is_rejected(self, context):
        with pytest.raises(ValidationFailedError):
            await context.transactions.record_transaction(
                "u1", "10000000000000000000000000000.001", TransactionType.EXPENSE
            )

        assert await context.storage.list_transactions("u1") == []

    @pytest.mark.asyncio
    async def test_transactions_feed_insights(self, context, clock):
        await context.transactions.record_transaction("u1", "1000", TransactionType.INCOME)
        await context.transactions.record_transaction(
            "u1", "1500", TransactionType.EXPENSE, category="Rent"
        )

        summary = await context.summaries.summarize("u1")
        assert summary.net_savings == Decimal("-500.00")

        created = await context.notifications.generate("u1")
        assert NotificationType.BUDGET_WARNING in [n.type for n in created]
        assert NotificationType.TRANSACTION_REMINDER not in [n.type for n in created]


class TestEngagementFlow:

    @pytest.mark.asyncio
    async def test_week_of_check_ins(self, context, clock):
        for day in range(7):
            if day:
                clock.advance(days=1)
            result = await context.engagement.check_in("u1")

        assert result.new_achievements == ["streak_7"]
        streak = await context.engagement.get_streak("u1")
        assert (streak.current_streak, streak.total_check_ins) == (7, 7)
        earned = [a.achievement_id for a in await context.engagement.get_achievements("u1") if a.is_earned]
        assert earned == ["streak_7"]


class TestCreateAppComponents:

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            create_app_components(settings=Settings(), backend="redis")

    @pytest.mark.asyncio
    async def test_start_seeds_plans(self, context):
        plans = await context.storage.list_plans()
        assert [p.name for p in plans] == ["free", "pro", "enterprise"]
