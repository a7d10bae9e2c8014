"""
Tests for the Twealth engine models

Test strategy:
1. Unit tests for individual components (models, validators)
2. Behavioural tests for the engine against both storage backends
3. No real AI calls in tests (advisors are plain async functions)
"""

import json
from datetime import date, datetime, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from twealth.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)
from twealth.models.engagement import UserAchievement, UserStreak
from twealth.models.finance import (
    FinancialGoal,
    GoalMilestone,
    Transaction,
    TransactionType,
    progress_percent,
    to_money,
)
from twealth.models.subscription import (
    AddOnCredit,
    AddOnType,
    ModelTier,
    QuotaStatus,
    Subscription,
    SubscriptionPlan,
    UsageRecord,
    UsageType,
)
from twealth.models.validation import ValidationIssue


class TestSubscriptionModels:
    """Tests for plan, subscription and usage models."""

    def test_plan_name_is_normalized(self):
        """Test that plan names are stripped and lowercased."""
        plan = SubscriptionPlan(name="  Pro ", display_name="Twealth Pro")
        assert plan.name == "pro"

    def test_plan_limit_for_usage_types(self):
        """Test the base limit lookup per usage type."""
        plan = SubscriptionPlan(
            name="free",
            display_name="Free",
            ai_chat_limit=50,
            ai_deep_analysis_limit=3,
            sonnet_limit=5,
        )
        assert plan.limit_for(UsageType.CHATS) == 50
        assert plan.limit_for(UsageType.DEEP_ANALYSIS) == 3
        assert plan.limit_for(UsageType.SONNET_QUERIES) == 5
        assert plan.limit_for(UsageType.INSIGHTS) is None

    def test_plan_rejects_unknown_insights_frequency(self):
        with pytest.raises(ValueError):
            SubscriptionPlan(name="x", display_name="X", insights_frequency="hourly")

    def test_subscription_period_validation(self):
        """Test that a period cannot end before it starts."""
        with pytest.raises(ValueError):
            Subscription(
                user_id="u1",
                plan_id=uuid4(),
                current_period_start=datetime(2024, 5, 31),
                current_period_end=datetime(2024, 5, 1),
            )

    def test_usage_record_counters(self):
        record = UsageRecord(
            user_id="u1",
            period_start=datetime(2024, 5, 1),
            period_end=datetime(2024, 5, 31),
            chats_used=7,
            opus_queries_used=2,
        )
        assert record.count_for(UsageType.CHATS) == 7
        assert record.count_for(UsageType.OPUS_QUERIES) == 2
        assert record.count_for(UsageType.DEEP_ANALYSIS) == 0

    def test_model_tier_maps_to_usage_type(self):
        assert ModelTier.SONNET.usage_type is UsageType.SONNET_QUERIES
        assert ModelTier.GPT5.usage_type.record_field == "gpt5_queries_used"

    def test_add_on_type_mapping(self):
        assert AddOnType.EXTRA_CHATS.usage_type is UsageType.CHATS
        assert AddOnType.for_usage_type(UsageType.DEEP_ANALYSIS) is AddOnType.EXTRA_DEEP_ANALYSIS
        assert AddOnType.for_usage_type(UsageType.SCOUT_QUERIES) is None

    def test_add_on_credit_expiry(self):
        """Test that a credit is usable up to and including its expiry."""
        credit = AddOnCredit(
            user_id="u1",
            add_on_type=AddOnType.EXTRA_CHATS,
            quantity=10,
            expires_at=datetime(2024, 6, 1),
        )
        assert credit.is_usable(datetime(2024, 6, 1))
        assert not credit.is_usable(datetime(2024, 6, 1, 0, 0, 1))

    def test_add_on_credit_rejects_zero_quantity(self):
        with pytest.raises(ValueError):
            AddOnCredit(
                user_id="u1",
                add_on_type=AddOnType.EXTRA_CHATS,
                quantity=0,
                expires_at=datetime(2024, 6, 1),
            )

    def test_quota_status_remaining(self):
        status = QuotaStatus(usage_type=UsageType.CHATS, allowed=False, usage=52, limit=50)
        assert status.remaining == 0


class TestFinanceModels:
    """Tests for goal and transaction models."""

    def test_money_is_quantized(self):
        assert to_money("240") == Decimal("240.00")
        assert to_money(Decimal("0.005")) == Decimal("0.01")

    def test_progress_percent_with_zero_target(self):
        assert progress_percent(Decimal("50"), Decimal("0")) == 0

    def test_goal_amounts_are_quantized(self):
        goal = FinancialGoal(
            user_id="u1",
            title="Vacation",
            target_amount=Decimal("1000"),
            current_amount=Decimal("240"),
            target_date=date(2024, 12, 31),
        )
        assert str(goal.current_amount) == "240.00"
        assert goal.progress_percent == Decimal("24")
        assert goal.remaining_amount == Decimal("760.00")

    def test_goal_rejects_non_positive_target(self):
        with pytest.raises(ValueError):
            FinancialGoal(
                user_id="u1",
                title="Bad",
                target_amount=Decimal("0"),
                target_date=date(2024, 12, 31),
            )

    def test_emergency_fund_detection(self):
        by_title = FinancialGoal(
            user_id="u1",
            title="My Emergency Fund",
            target_amount=Decimal("5000"),
            target_date=date(2025, 1, 1),
        )
        by_category = FinancialGoal(
            user_id="u1",
            title="Rainy day",
            category="Emergency",
            target_amount=Decimal("5000"),
            target_date=date(2025, 1, 1),
        )
        other = FinancialGoal(
            user_id="u1",
            title="Car",
            target_amount=Decimal("5000"),
            target_date=date(2025, 1, 1),
        )
        assert by_title.is_emergency_fund
        assert by_category.is_emergency_fund
        assert not other.is_emergency_fund

    def test_milestone_threshold_validation(self):
        with pytest.raises(ValueError):
            GoalMilestone(
                goal_id=uuid4(),
                user_id="u1",
                milestone=30,
                amount_at_milestone=Decimal("300"),
            )

    def test_transaction_rejects_negative_amount(self):
        with pytest.raises(ValueError):
            Transaction(user_id="u1", amount=Decimal("-5"), type=TransactionType.EXPENSE)


class TestEngagementModels:

    def test_streak_defaults(self):
        streak = UserStreak(user_id="u1")
        assert streak.current_streak == 0
        assert streak.weekly_progress == [False] * 7

    def test_streak_rejects_short_week(self):
        with pytest.raises(ValueError):
            UserStreak(user_id="u1", weekly_progress=[True, False])

    def test_achievement_is_earned(self):
        achievement = UserAchievement(
            user_id="u1", achievement_id="streak_7", progress=3, target=7
        )
        assert not achievement.is_earned
        earned = achievement.model_copy(update={"earned_at": datetime(2024, 5, 15)})
        assert earned.is_earned


class TestAuditModels:
    """Tests for audit-related models."""

    def test_audit_event_creation(self):
        """Test AuditEvent creation."""
        event = AuditEvent(
            event_type=AuditEventType.GOAL_CREATED,
            description="Goal created",
        )
        assert event.severity == AuditSeverity.INFO
        assert event.timestamp.tzinfo == timezone.utc

    def test_audit_event_to_log_dict(self):
        """Test conversion to log dictionary."""
        event = AuditEvent(
            event_type=AuditEventType.USAGE_INCREMENTED,
            user_id="u1",
            description="Counted",
            details={"amount": 1},
        )
        log_dict = event.to_log_dict()
        assert log_dict["event_type"] == "usage_incremented"
        assert log_dict["event_id"] == str(event.event_id)

    def test_audit_event_to_row(self):
        """Test that details are serialized for storage."""
        event = AuditEventBuilder.milestone_reached(
            user_id="u1",
            goal_id=uuid4(),
            milestone=50,
            amount="520.00",
        )
        row = event.to_row()
        assert row["event_type"] == "milestone_reached"
        assert json.loads(row["details_json"])["milestone"] == 50

    def test_builder_quota_exceeded_is_warning(self):
        event = AuditEventBuilder.quota_exceeded(
            user_id="u1", usage_type="chats", usage=50, limit=50
        )
        assert event.event_type == AuditEventType.QUOTA_EXCEEDED
        assert event.severity == AuditSeverity.WARNING

    def test_builder_subscription_changed_uses_status(self):
        event = AuditEventBuilder.subscription_changed(
            user_id="u1",
            subscription_id=uuid4(),
            plan_name="free",
            status="cancelled",
        )
        assert event.event_type == AuditEventType.SUBSCRIPTION_CANCELLED


class TestValidationIssue:

    def test_to_dict(self):
        issue = ValidationIssue(
            field="amount",
            issue_type="too_precise",
            message="Too many decimals",
            suggested_fix="Use 1.23",
        )
        assert issue.severity == "error"
        assert issue.to_dict() == {
            "field": "amount",
            "type": "too_precise",
            "message": "Too many decimals",
        }
