"""
Insights Package

Deterministic summaries of a user's transactions and goals.
"""

from twealth.insights.health import HealthScorer, calculate_financial_health, grade_for
from twealth.insights.summaries import (
    TransactionSummarizer,
    days_since_last_transaction,
    expense_volatility,
    summarize,
    weekly_expense_totals,
)

__all__ = [
    "HealthScorer",
    "TransactionSummarizer",
    "calculate_financial_health",
    "days_since_last_transaction",
    "expense_volatility",
    "grade_for",
    "summarize",
    "weekly_expense_totals",
]
