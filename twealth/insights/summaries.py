"""
Transaction Summaries

DESIGN DECISION: Summaries are DETERMINISTIC.
Every figure a notification or health score quotes is computed here
from stored transactions with Decimal arithmetic. Nothing is estimated.

Windows are trailing and measured back from an explicit `now`:
- totals: transactions on or after now - N days
- weekly totals: week i covers [now - (i+1)*7d, now - i*7d)
"""

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Iterable, Optional

from twealth.models.finance import Transaction, TransactionType
from twealth.models.insights import SpendingVolatility, TransactionSummary
from twealth.services.storage import GoalStorageInterface


ZERO = Decimal("0")


def _total(transactions: Iterable[Transaction], transaction_type: TransactionType) -> Decimal:
    return sum(
        (t.amount for t in transactions if t.type == transaction_type),
        Decimal("0.00"),
    )


def summarize(
    transactions: list[Transaction],
    now: datetime,
    days: int = 30,
) -> TransactionSummary:
    """Income and expense totals over the trailing `days`."""
    since = now - timedelta(days=days)
    recent = [t for t in transactions if t.occurred_at >= since]
    return TransactionSummary(
        since=since,
        until=now,
        total_income=_total(recent, TransactionType.INCOME),
        total_expenses=_total(recent, TransactionType.EXPENSE),
        transaction_count=len(recent),
    )


def weekly_expense_totals(
    transactions: list[Transaction],
    now: datetime,
    weeks: int = 4,
) -> list[Decimal]:
    """Expense totals for the trailing `weeks`, most recent week first."""
    totals = []
    for i in range(weeks):
        week_start = now - timedelta(days=(i + 1) * 7)
        week_end = now - timedelta(days=i * 7)
        totals.append(_total(
            (t for t in transactions if week_start <= t.occurred_at < week_end),
            TransactionType.EXPENSE,
        ))
    return totals


def expense_volatility(weekly_totals: list[Decimal]) -> SpendingVolatility:
    """
    Largest deviation from the mean weekly expense, as a percentage of it.

    The percentage is 0 when the mean is 0.
    """
    if not weekly_totals:
        return SpendingVolatility()

    average = sum(weekly_totals, ZERO) / len(weekly_totals)
    max_deviation = max(abs(total - average) for total in weekly_totals)
    percent = max_deviation / average * 100 if average > 0 else ZERO
    return SpendingVolatility(
        weekly_totals=weekly_totals,
        average=average,
        max_deviation=max_deviation,
        volatility_percent=percent,
    )


def days_since_last_transaction(
    transactions: list[Transaction],
    now: datetime,
) -> Optional[int]:
    """Whole days since the most recent transaction, None if there are none."""
    if not transactions:
        return None
    latest = max(t.occurred_at for t in transactions)
    return max((now - latest).days, 0)


def sum_by_category(
    transactions: list[Transaction],
    transaction_type: TransactionType = TransactionType.EXPENSE,
) -> dict[str, Decimal]:
    """Totals per category, largest first."""
    groups: dict[str, Decimal] = {}
    for t in transactions:
        if t.type != transaction_type:
            continue
        key = t.category.lower()
        groups[key] = groups.get(key, Decimal("0.00")) + t.amount
    return dict(sorted(groups.items(), key=lambda item: item[1], reverse=True))


class TransactionSummarizer:
    """
    Loads a user's transactions and summarizes them.

    Each call performs its own read; there is no shared snapshot.
    """

    def __init__(
        self,
        storage: GoalStorageInterface,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._storage = storage
        self._clock = clock or datetime.now

    async def _recent(self, user_id: str, days: int, now: datetime) -> list[Transaction]:
        return await self._storage.list_transactions(
            user_id, since=now - timedelta(days=days)
        )

    async def summarize(self, user_id: str, days: int = 30) -> TransactionSummary:
        now = self._clock()
        return summarize(await self._recent(user_id, days, now), now, days)

    async def volatility(self, user_id: str, weeks: int = 4) -> SpendingVolatility:
        now = self._clock()
        transactions = await self._recent(user_id, weeks * 7, now)
        return expense_volatility(weekly_expense_totals(transactions, now, weeks))

    async def days_since_last_transaction(self, user_id: str) -> Optional[int]:
        return days_since_last_transaction(
            await self._storage.list_transactions(user_id),
            self._clock(),
        )

    async def spending_by_category(self, user_id: str, days: int = 30) -> dict[str, Decimal]:
        now = self._clock()
        return sum_by_category(await self._recent(user_id, days, now))
