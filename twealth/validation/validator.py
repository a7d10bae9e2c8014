"""
Input Validation

DESIGN DECISION: Amounts and dates are validated BEFORE any mutation.
A rejected input never reaches storage, so counters, goals and
milestones only ever see well-formed values.

Checks:
- Amounts are present, finite, positive and have at most two decimals
- Absurd amounts are rejected
- New goals cannot be due in the past
- Usage increments and add-on quantities are positive integers

IMPORTANT: Validation NEVER silently fixes issues.
It reports them and the caller rejects the request.
"""

from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from twealth.models.validation import ValidationIssue


MAX_AMOUNT = Decimal("1000000000")


class ValidationFailedError(Exception):
    """Input was rejected before any mutation happened."""

    def __init__(self, operation: str, issues: list[ValidationIssue]):
        self.operation = operation
        self.issues = issues
        summary = "; ".join(f"{i.field}: {i.message}" for i in issues)
        super().__init__(f"Invalid input for {operation}: {summary}")


class InputValidator:
    """Validates user-supplied amounts, dates and counts."""

    def __init__(self, max_amount: Decimal = MAX_AMOUNT):
        self._max_amount = max_amount

    @staticmethod
    def parse_amount(value: Any) -> Optional[Decimal]:
        """Convert to Decimal, or None if the value isn't a number."""
        if value is None or isinstance(value, bool):
            return None
        try:
            return value if isinstance(value, Decimal) else Decimal(str(value))
        except (InvalidOperation, ValueError):
            return None

    @staticmethod
    def _to_cents(amount: Decimal) -> Optional[Decimal]:
        """Round to two decimals, or None if that needs more digits than the context allows."""
        try:
            return amount.quantize(Decimal("0.01"))
        except InvalidOperation:
            return None

    def check_amount(
        self,
        value: Any,
        field: str = "amount",
        allow_zero: bool = False,
    ) -> list[ValidationIssue]:
        issues = []

        if value is None:
            return [ValidationIssue(
                field=field,
                issue_type="missing",
                message="Amount is required",
            )]

        amount = self.parse_amount(value)
        if amount is None:
            return [ValidationIssue(
                field=field,
                issue_type="invalid_format",
                message=f"'{value}' is not a number",
            )]

        if not amount.is_finite():
            return [ValidationIssue(
                field=field,
                issue_type="invalid_value",
                message="Amount must be a finite number",
            )]

        if amount < 0 or (amount == 0 and not allow_zero):
            issues.append(ValidationIssue(
                field=field,
                issue_type="invalid_value",
                message=(
                    "Amount cannot be negative"
                    if allow_zero
                    else "Amount must be greater than zero"
                ),
            ))

        if amount.as_tuple().exponent < -2:
            rounded = self._to_cents(amount)
            if rounded != amount:
                issues.append(ValidationIssue(
                    field=field,
                    issue_type="too_precise",
                    message="Amount cannot have more than two decimal places",
                    suggested_fix=f"Use {rounded}" if rounded is not None else None,
                ))

        if amount > self._max_amount:
            issues.append(ValidationIssue(
                field=field,
                issue_type="suspicious_value",
                message=f"Amount {amount} is unreasonably large",
            ))

        return issues

    def check_goal(
        self,
        title: str,
        target_amount: Any,
        target_date: Any,
        today: date,
        current_amount: Any = 0,
    ) -> list[ValidationIssue]:
        """Validate the fields of a new goal."""
        issues = []

        if not title or not str(title).strip():
            issues.append(ValidationIssue(
                field="title",
                issue_type="missing",
                message="Goal title is required",
            ))

        issues.extend(self.check_amount(target_amount, field="target_amount"))
        issues.extend(self.check_amount(current_amount, field="current_amount", allow_zero=True))

        if isinstance(target_date, datetime):
            target_date = target_date.date()
        if not isinstance(target_date, date):
            issues.append(ValidationIssue(
                field="target_date",
                issue_type="invalid_format",
                message="Target date must be a date",
            ))
        elif target_date < today:
            issues.append(ValidationIssue(
                field="target_date",
                issue_type="invalid_value",
                message=f"Target date {target_date.isoformat()} is in the past",
            ))

        return issues

    def check_count(self, value: Any, field: str) -> list[ValidationIssue]:
        """Positive integer (usage increments, add-on quantities)."""
        if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            return [ValidationIssue(
                field=field,
                issue_type="invalid_value",
                message=f"{field} must be a positive whole number, got {value!r}",
            )]
        return []

    @staticmethod
    def ensure_valid(operation: str, issues: list[ValidationIssue]) -> None:
        """
        Raise ValidationFailedError if any error-level issue was found.

        Warnings are allowed through.
        """
        errors = [i for i in issues if i.severity == "error"]
        if errors:
            raise ValidationFailedError(operation, errors)
