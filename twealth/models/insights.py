"""
Insight Models: transaction summaries and the financial health score

These are read-only projections computed from stored transactions and
goals. Nothing here is persisted.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field


class TransactionSummary(BaseModel):
    """Income and expense totals over a trailing window."""

    since: datetime
    until: datetime
    total_income: Decimal = Decimal("0.00")
    total_expenses: Decimal = Decimal("0.00")
    transaction_count: int = 0

    @property
    def net_savings(self) -> Decimal:
        return self.total_income - self.total_expenses

    @property
    def savings_rate(self) -> Decimal:
        """Net savings as a percentage of income; 0 without income."""
        if self.total_income <= 0:
            return Decimal("0")
        return self.net_savings / self.total_income * 100


class SpendingVolatility(BaseModel):
    """
    Spread of weekly expense totals.

    weekly_totals[0] is the most recent week.
    """

    weekly_totals: list[Decimal] = Field(default_factory=list)
    average: Decimal = Decimal("0")
    max_deviation: Decimal = Decimal("0")
    volatility_percent: Decimal = Decimal("0")


class HealthComponent(BaseModel):
    """One weighted factor of the health score."""

    name: str
    score: int = Field(..., ge=0, le=100)
    value: Decimal
    label: str
    recommendation: str


class HealthScore(BaseModel):
    """Weighted 0-100 financial health score."""

    overall: int = Field(..., ge=0, le=100)
    grade: str
    savings_rate: HealthComponent
    emergency_fund: HealthComponent
    debt_ratio: HealthComponent
    net_worth_growth: HealthComponent
    budget_adherence: HealthComponent
    summary: str
    top_priority: str
    calculated_at: Optional[datetime] = None

    @property
    def components(self) -> list[HealthComponent]:
        return [
            self.savings_rate,
            self.emergency_fund,
            self.debt_ratio,
            self.net_worth_growth,
            self.budget_adherence,
        ]
