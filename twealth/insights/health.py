"""
Financial Health Score

Weighted 0-100 score over five factors:
- Savings rate        30%
- Emergency fund      25%
- Debt ratio          20%
- Net-worth growth    15%
- Budget adherence    10%

Each factor maps a measured value onto a fixed ladder of scores.
Users with no transactions and no goals get a neutral "Getting Started"
score of 50 instead of a misleading zero.
"""

from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Optional

from twealth.insights.summaries import summarize
from twealth.models.finance import FinancialGoal, GoalStatus, Transaction, TransactionType
from twealth.models.insights import HealthComponent, HealthScore
from twealth.services.storage import GoalStorageInterface


WEIGHTS = {
    "savings_rate": Decimal("0.30"),
    "emergency_fund": Decimal("0.25"),
    "debt_ratio": Decimal("0.20"),
    "net_worth_growth": Decimal("0.15"),
    "budget_adherence": Decimal("0.10"),
}

DEBT_CATEGORIES = ("credit card", "loan", "debt", "mortgage")

GETTING_STARTED = "Getting Started"

PRIORITY_NAMES = {
    "savings_rate": "savings rate",
    "emergency_fund": "emergency fund",
    "debt_ratio": "debt management",
    "net_worth_growth": "net worth growth",
    "budget_adherence": "budget adherence",
}


def _round(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def grade_for(overall: int) -> str:
    if overall >= 90:
        return "Excellent"
    if overall >= 75:
        return "Good"
    if overall >= 60:
        return "Fair"
    if overall >= 40:
        return "Needs Improvement"
    return "Critical"


# =============================================================================
# FACTOR LADDERS
# =============================================================================

def score_savings_rate(rate: Decimal, monthly_income: Decimal) -> HealthComponent:
    if rate >= 20:
        score, label = 100, "Excellent"
        rec = "Outstanding! Maintain this rate for long-term wealth building."
    elif rate >= 15:
        score, label = 85, "Very Good"
        rec = "Great job! Consider increasing to 20% to accelerate your goals."
    elif rate >= 10:
        score, label = 70, "Good"
        rec = "Solid foundation. Try to reach 15% by cutting one major expense."
    elif rate >= 5:
        score, label = 50, "Fair"
        rec = (
            f"At {rate:.1f}% you're saving ${monthly_income * rate / 100:.0f}/month. "
            f"Target: ${monthly_income * Decimal('0.15'):.0f}/month (15%)."
        )
    elif rate > 0:
        score, label = 25, "Low"
        rec = (
            f"Only {rate:.1f}% savings rate. Review expenses and start with "
            f"${monthly_income * Decimal('0.05'):.0f}/month minimum."
        )
    else:
        score, label = 0, "Critical"
        rec = "Expenses exceed income. Create an emergency budget and cut discretionary spending."
    return HealthComponent(
        name="savings_rate", score=score, value=rate, label=label, recommendation=rec
    )


def score_emergency_fund(months: Decimal, monthly_expenses: Decimal) -> HealthComponent:
    if months >= 6:
        score, label = 100, "Excellent"
        rec = "You have 6+ months of expenses saved. Focus on investing the excess."
    elif months >= 3:
        score, label = 75, "Good"
        rec = (
            f"Good start at {months:.1f} months. Save "
            f"${monthly_expenses * (6 - months):.0f} more for six months of cover."
        )
    elif months >= 1:
        score, label = 50, "Fair"
        rec = (
            f"Only {months:.1f} months saved. Save "
            f"${monthly_expenses * (3 - months):.0f} more for the 3-month minimum."
        )
    elif months > 0:
        score, label = 25, "Low"
        rec = "Less than one month saved. Build an emergency fund before anything else."
    else:
        score, label = 0, "Critical"
        rec = (
            "No emergency fund. Start with $500-$1,000, then build to "
            f"${monthly_expenses * 3:.0f}-${monthly_expenses * 6:.0f} (3-6 months)."
        )
    return HealthComponent(
        name="emergency_fund", score=score, value=months, label=label, recommendation=rec
    )


def score_debt_ratio(ratio: Decimal) -> HealthComponent:
    if ratio == 0:
        score, label = 100, "Debt Free"
        rec = "No debt payments detected. Maximize savings and investments."
    elif ratio <= 10:
        score, label = 90, "Very Low"
        rec = f"Manageable at {ratio:.1f}%. Consider accelerating payoff to save on interest."
    elif ratio <= 20:
        score, label = 75, "Moderate"
        rec = f"{ratio:.1f}% is acceptable. Pay the highest interest debt first."
    elif ratio <= 36:
        score, label = 50, "High"
        rec = f"{ratio:.1f}% debt ratio. Aim for under 20% and consider consolidation."
    else:
        score, label = 20, "Critical"
        rec = f"{ratio:.1f}% debt ratio exceeds the 36% safe limit. Stop taking on new debt."
    return HealthComponent(
        name="debt_ratio", score=score, value=ratio, label=label, recommendation=rec
    )


def score_net_worth_growth(growth: Decimal) -> HealthComponent:
    if growth >= 5:
        score, label = 100, "Excellent Growth"
        rec = f"{growth:.1f}% month-over-month growth. Keep this momentum."
    elif growth >= 2:
        score, label = 80, "Good Growth"
        rec = f"Solid {growth:.1f}% growth. Compounding at this rate builds real wealth."
    elif growth > 0:
        score, label = 60, "Positive Growth"
        rec = f"{growth:.1f}% growth is positive. Raise your savings rate for faster progress."
    elif growth >= -2:
        score, label = 40, "Stagnant"
        rec = "Net worth is flat. Cut one expense or boost income this month."
    else:
        score, label = 20, "Declining"
        rec = f"{abs(growth):.1f}% decline. Review major expenses now."
    return HealthComponent(
        name="net_worth_growth", score=score, value=growth, label=label, recommendation=rec
    )


def score_budget_adherence(
    monthly_expenses: Decimal,
    budget_estimate: Optional[Decimal],
) -> HealthComponent:
    """
    100 minus the percentage deviation from the planned budget.

    Without a budget the score is 50 if anything was spent, else 100.
    """
    if budget_estimate and budget_estimate > 0:
        deviation = abs((monthly_expenses - budget_estimate) / budget_estimate * 100)
        adherence = max(Decimal("0"), 100 - deviation)
    else:
        adherence = Decimal("50") if monthly_expenses > 0 else Decimal("100")

    if adherence >= 95:
        label, rec = "Excellent", "Spending is within 5% of your plan."
    elif adherence >= 85:
        label, rec = "Good", "Good budget adherence. Minor adjustments will get you to perfect control."
    elif adherence >= 70:
        label = "Fair"
        rec = f"{100 - adherence:.0f}% off budget. Track daily expenses to improve accuracy."
    else:
        label, rec = "Poor", "Significant budget variance. Try the 50/30/20 rule."
    return HealthComponent(
        name="budget_adherence",
        score=_round(adherence),
        value=adherence,
        label=label,
        recommendation=rec,
    )


# =============================================================================
# OVERALL SCORE
# =============================================================================

def getting_started_score(now: datetime) -> HealthScore:
    def neutral(name: str, score: int, label: str, rec: str) -> HealthComponent:
        return HealthComponent(
            name=name, score=score, value=Decimal("0"), label=label, recommendation=rec
        )

    return HealthScore(
        overall=50,
        grade=GETTING_STARTED,
        savings_rate=neutral(
            "savings_rate", 50, GETTING_STARTED,
            "Add your income and expenses to track your savings rate.",
        ),
        emergency_fund=neutral(
            "emergency_fund", 50, GETTING_STARTED,
            "Tell us about your savings to calculate your emergency fund coverage.",
        ),
        debt_ratio=neutral(
            "debt_ratio", 100, "No Debt Detected",
            "No debt payments found. Keep it that way!",
        ),
        net_worth_growth=neutral(
            "net_worth_growth", 50, GETTING_STARTED,
            "As you add transactions we will track your financial growth.",
        ),
        budget_adherence=neutral(
            "budget_adherence", 50, GETTING_STARTED,
            "Set up a budget to see how well you're sticking to it.",
        ),
        summary=(
            "Welcome! Add your first transaction or set up a goal to get "
            "personalized insights and track your progress."
        ),
        top_priority="Start by adding a transaction or creating a savings goal.",
        calculated_at=now,
    )


def _summary_text(overall: int, priority: str, rate: Decimal, months: Decimal) -> str:
    if overall >= 90:
        return (
            f"Outstanding financial health! Your {rate:.0f}% savings rate and "
            f"{months:.1f}-month emergency fund show excellent discipline."
        )
    if overall >= 75:
        return f"Solid financial foundation. Focus on your {priority} to reach excellent status."
    if overall >= 60:
        return f"Fair financial health with room to improve. Your {priority} needs attention."
    if overall >= 40:
        return f"Financial health needs significant improvement. Critical focus area: {priority}."
    return f"Financial health requires urgent action. Start with {priority} immediately."


def calculate_financial_health(
    transactions: list[Transaction],
    goals: list[FinancialGoal],
    now: datetime,
    savings_balance: Optional[Decimal] = None,
    budget_estimate: Optional[Decimal] = None,
) -> HealthScore:
    """
    Score a user's finances.

    Args:
        transactions: At least the last 60 days of transactions
        goals: The user's goals
        now: Reference time for the trailing windows
        savings_balance: Liquid savings; defaults to the amount saved
            across goals that aren't cancelled
        budget_estimate: Planned monthly spending, if the user set one
    """
    if not transactions and not goals:
        return getting_started_score(now)

    current = summarize(transactions, now, days=30)
    monthly_income = current.total_income
    monthly_expenses = current.total_expenses
    if savings_balance is None:
        savings_balance = sum(
            (g.current_amount for g in goals if g.status != GoalStatus.CANCELLED),
            Decimal("0.00"),
        )

    rate = current.savings_rate
    months = savings_balance / monthly_expenses if monthly_expenses > 0 else Decimal("0")

    debt_payments = sum(
        (
            t.amount for t in transactions
            if t.type == TransactionType.EXPENSE
            and t.occurred_at >= current.since
            and any(c in t.category.lower() for c in DEBT_CATEGORIES)
        ),
        Decimal("0.00"),
    )
    debt_ratio = debt_payments / monthly_income * 100 if monthly_income > 0 else Decimal("0")

    previous_start = now - timedelta(days=60)
    previous = [t for t in transactions if previous_start <= t.occurred_at < current.since]
    previous_income = sum(
        (t.amount for t in previous if t.type == TransactionType.INCOME), Decimal("0.00")
    )
    previous_expenses = sum(
        (t.amount for t in previous if t.type == TransactionType.EXPENSE), Decimal("0.00")
    )
    growth = current.net_savings - (previous_income - previous_expenses)
    growth_percent = growth / previous_income * 100 if previous_income > 0 else Decimal("0")

    components = {
        "savings_rate": score_savings_rate(rate, monthly_income),
        "emergency_fund": score_emergency_fund(months, monthly_expenses),
        "debt_ratio": score_debt_ratio(debt_ratio),
        "net_worth_growth": score_net_worth_growth(growth_percent),
        "budget_adherence": score_budget_adherence(monthly_expenses, budget_estimate),
    }
    overall = _round(sum(
        (Decimal(c.score) * WEIGHTS[name] for name, c in components.items()),
        Decimal("0"),
    ))

    # Lowest factor wins; ties go to the heavier weight
    weakest = min(components, key=lambda name: components[name].score)

    return HealthScore(
        overall=overall,
        grade=grade_for(overall),
        summary=_summary_text(overall, PRIORITY_NAMES[weakest], rate, months),
        top_priority=components[weakest].recommendation,
        calculated_at=now,
        **components,
    )


class HealthScorer:
    """Loads a user's data and scores it."""

    def __init__(
        self,
        storage: GoalStorageInterface,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._storage = storage
        self._clock = clock or datetime.now

    async def score(
        self,
        user_id: str,
        savings_balance: Optional[Decimal] = None,
        budget_estimate: Optional[Decimal] = None,
    ) -> HealthScore:
        now = self._clock()
        transactions = await self._storage.list_transactions(
            user_id, since=now - timedelta(days=90)
        )
        goals = await self._storage.list_goals(user_id)
        return calculate_financial_health(
            transactions, goals, now, savings_balance, budget_estimate
        )
