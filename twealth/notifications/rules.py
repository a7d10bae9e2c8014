"""
Notification Rules

Each rule turns already-loaded figures into zero or more notification
drafts. Rules never read or write storage; the generator owns reads,
throttling and persistence.

Amounts in `data` are strings with two decimals and percentages are
rounded floats, so every payload is plain JSON.
"""

import math
from datetime import datetime
from decimal import Decimal
from typing import Optional

from twealth.config import NotificationSettings
from twealth.models.engagement import (
    Notification,
    NotificationCategory,
    NotificationPriority,
    NotificationType,
)
from twealth.models.finance import FinancialGoal, GoalStatus, to_money
from twealth.models.insights import SpendingVolatility, TransactionSummary


def _money(value: Decimal) -> str:
    return str(to_money(value))


def _percent(value: Decimal) -> float:
    return float(Decimal(value).quantize(Decimal("0.1")))


def days_until(target_date, now: datetime) -> int:
    """Days to a goal deadline, rounded up (a deadline later today is 1 day away)."""
    deadline = datetime.combine(target_date, datetime.min.time())
    return math.ceil((deadline - now).total_seconds() / 86400)


# =============================================================================
# DAILY BRIEFING
# =============================================================================

def daily_briefing(
    user_id: str,
    summary: TransactionSummary,
    goals: list[FinancialGoal],
) -> Notification:
    """
    Savings-rate briefing for the trailing window.

    Bands: >=20% strong, >=10% good, >=0% needs attention, <0% negative
    cash flow.
    """
    rate = summary.savings_rate
    net = summary.net_savings
    active_goals = sum(1 for g in goals if g.status == GoalStatus.ACTIVE)
    completed_goals = sum(1 for g in goals if g.status == GoalStatus.COMPLETED)

    if rate >= 20:
        title = "Financial Health: Strong"
        message = (
            f"Your savings rate is {rate:.0f}%, well above the recommended 20%. "
            f"You're on track with {active_goals} active goals. "
            f"Net savings this month: ${_money(net)}."
        )
        priority = NotificationPriority.LOW
    elif rate >= 10:
        title = "Financial Health: Good"
        message = (
            f"Your savings rate is {rate:.0f}%. Consider increasing to 20% for "
            f"stronger financial security. Net savings this month: ${_money(net)}."
        )
        priority = NotificationPriority.NORMAL
    elif rate >= 0:
        title = "Financial Health: Needs Attention"
        message = (
            f"Your savings rate is {rate:.0f}%, below the recommended 20%. "
            "Review your expenses to identify savings opportunities. "
            f"Net savings this month: ${_money(net)}."
        )
        priority = NotificationPriority.HIGH
    else:
        title = "Financial Alert: Negative Cash Flow"
        message = (
            f"You're spending ${_money(abs(net))} more than you're earning this month. "
            "Immediate action needed to prevent debt accumulation."
        )
        priority = NotificationPriority.URGENT

    return Notification(
        user_id=user_id,
        type=NotificationType.DAILY_BRIEFING,
        title=title,
        message=message,
        priority=priority,
        category=NotificationCategory.INSIGHTS,
        data={
            "savings_rate": _percent(rate),
            "total_income": _money(summary.total_income),
            "total_expenses": _money(summary.total_expenses),
            "net_savings": _money(net),
            "active_goals": active_goals,
            "completed_goals": completed_goals,
        },
        action_type="view_transactions",
        action_data={"period": "30d"},
    )


# =============================================================================
# RISK ALERTS
# =============================================================================

def volatility_alert(
    user_id: str,
    volatility: SpendingVolatility,
    settings: NotificationSettings,
) -> Optional[Notification]:
    """Weekly spending swings by more than the threshold around a non-trivial mean."""
    if (
        volatility.volatility_percent <= Decimal(str(settings.volatility_threshold_percent))
        or volatility.average <= Decimal(str(settings.volatility_min_weekly))
    ):
        return None

    return Notification(
        user_id=user_id,
        type=NotificationType.RISK_ALERT,
        title="Risk Alert: Irregular Spending Pattern",
        message=(
            f"Your weekly expenses vary by up to {volatility.volatility_percent:.0f}%. "
            "Establishing a consistent budget can improve financial stability."
        ),
        priority=NotificationPriority.NORMAL,
        category=NotificationCategory.ALERTS,
        data={
            "volatility_percent": _percent(volatility.volatility_percent),
            "average_weekly": _money(volatility.average),
            "weekly_expenses": [_money(w) for w in volatility.weekly_totals],
        },
        action_type="view_transactions",
        action_data={"period": "30d"},
    )


def emergency_fund_alert(
    user_id: str,
    summary: TransactionSummary,
    goals: list[FinancialGoal],
    settings: NotificationSettings,
) -> Optional[Notification]:
    """No active emergency-fund goal while spending is significant."""
    has_emergency_goal = any(
        g.status == GoalStatus.ACTIVE and g.is_emergency_fund for g in goals
    )
    expenses = summary.total_expenses
    if has_emergency_goal or expenses <= Decimal(str(settings.emergency_fund_min_expenses)):
        return None

    # One month of expenses
    recommended = to_money(expenses)
    return Notification(
        user_id=user_id,
        type=NotificationType.RISK_ALERT,
        title="Risk Alert: No Emergency Fund",
        message=(
            "You don't have an emergency fund goal. Financial experts recommend "
            f"saving at least ${recommended} (one month of expenses) for unexpected costs."
        ),
        priority=NotificationPriority.HIGH,
        category=NotificationCategory.ALERTS,
        data={
            "recommended_fund": str(recommended),
            "monthly_expenses": _money(expenses),
        },
        action_type="create_goal",
        action_data={
            "title": "Emergency Fund",
            "target_amount": str(recommended),
            "category": "emergency",
        },
    )


# =============================================================================
# GOALS
# =============================================================================

def goal_deadline_alert(
    goal: FinancialGoal,
    now: datetime,
    settings: NotificationSettings,
) -> Optional[Notification]:
    """A goal close to its deadline but far from its target."""
    if goal.status != GoalStatus.ACTIVE:
        return None

    days_left = days_until(goal.target_date, now)
    progress = goal.progress_percent
    if not (
        0 < days_left <= settings.deadline_window_days
        and progress < Decimal(str(settings.deadline_progress_percent))
    ):
        return None

    daily = to_money((goal.target_amount - goal.current_amount) / days_left)
    return Notification(
        user_id=goal.user_id,
        type=NotificationType.GOAL_DEADLINE,
        title=f'Goal "{goal.title}" needs attention',
        message=(
            f"Only {days_left} days left and you're {progress:.0f}% complete. "
            f"Consider adding ${daily} daily to reach your goal."
        ),
        priority=NotificationPriority.HIGH,
        category=NotificationCategory.GOALS,
        data={
            "goal_id": str(goal.id),
            "days_until_deadline": days_left,
            "progress_percent": _percent(progress),
            "suggested_daily": str(daily),
        },
        action_type="add_transaction",
        action_data={"goal_id": str(goal.id), "amount": str(daily), "type": "transfer"},
    )


def goal_completed(goal: FinancialGoal) -> Notification:
    return Notification(
        user_id=goal.user_id,
        type=NotificationType.GOAL_COMPLETE,
        title=f'Goal completed: "{goal.title}"',
        message=(
            f"You've reached your {goal.title} goal of ${goal.target_amount}. "
            "Time to set a new financial goal."
        ),
        priority=NotificationPriority.HIGH,
        category=NotificationCategory.GOALS,
        data={"goal_id": str(goal.id), "completed_amount": str(goal.target_amount)},
        action_type="create_goal",
        action_data={"suggested_amount": _money(goal.target_amount * Decimal("1.5"))},
    )


def goal_completion_alert(
    goal: FinancialGoal,
    settings: NotificationSettings,
) -> Optional[Notification]:
    """
    "Almost there" between the threshold and 100%, "completed" at 100%.

    The caller flips a completed goal's status.
    """
    if goal.status != GoalStatus.ACTIVE:
        return None

    progress = goal.progress_percent
    if progress >= 100:
        return goal_completed(goal)

    if progress >= Decimal(str(settings.almost_complete_percent)):
        remaining = goal.remaining_amount
        return Notification(
            user_id=goal.user_id,
            type=NotificationType.GOAL_ALMOST_COMPLETE,
            title=f'Almost there: "{goal.title}" is {progress:.0f}% complete',
            message=f"You're so close. Just ${remaining} more to reach your {goal.title} goal.",
            priority=NotificationPriority.NORMAL,
            category=NotificationCategory.GOALS,
            data={
                "goal_id": str(goal.id),
                "progress_percent": _percent(progress),
                "remaining_amount": str(remaining),
            },
            action_type="add_transaction",
            action_data={"goal_id": str(goal.id), "amount": str(remaining), "type": "transfer"},
        )

    return None


# =============================================================================
# TRANSACTIONS & BUDGET
# =============================================================================

def transaction_reminder(user_id: str, inactivity_days: int) -> Notification:
    return Notification(
        user_id=user_id,
        type=NotificationType.TRANSACTION_REMINDER,
        title="Don't forget to track your expenses",
        message=(
            f"You haven't added any transactions in the last {inactivity_days} days. "
            "Keep track of your spending to stay on top of your financial goals."
        ),
        priority=NotificationPriority.NORMAL,
        category=NotificationCategory.TRANSACTIONS,
        data={"days_since_last_transaction": inactivity_days},
        action_type="add_transaction",
        action_data={"type": "expense"},
    )


def budget_warning(user_id: str, summary: TransactionSummary) -> Optional[Notification]:
    """Spending exceeded a positive income over the trailing window."""
    income = summary.total_income
    expenses = summary.total_expenses
    if not (income > 0 and expenses > income):
        return None

    overspend = expenses - income
    overspend_percent = overspend / income * 100
    return Notification(
        user_id=user_id,
        type=NotificationType.BUDGET_WARNING,
        title="Budget Alert: Spending Exceeds Income",
        message=(
            f"Your expenses (${_money(expenses)}) exceeded your income "
            f"(${_money(income)}) by ${_money(overspend)} "
            f"({overspend_percent:.0f}%) this month."
        ),
        priority=NotificationPriority.URGENT,
        category=NotificationCategory.ALERTS,
        data={
            "total_income": _money(income),
            "total_expenses": _money(expenses),
            "overspend": _money(overspend),
            "overspend_percent": _percent(overspend_percent),
        },
        action_type="view_transactions",
        action_data={"period": "30d"},
    )
