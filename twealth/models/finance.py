"""
Financial Goal and Transaction Models

DESIGN DECISION: Money is always Decimal, never float.
Amounts snapshotted into milestones are quantized to cents so the stored
value is exactly what the user saw (e.g. "240.00").
"""

from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator


CENTS = Decimal("0.01")

MILESTONE_THRESHOLDS = (25, 50, 75, 100)


def to_money(value) -> Decimal:
    """Quantize any numeric value to two decimal places."""
    return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)


def progress_percent(current: Decimal, target: Decimal) -> Decimal:
    """
    Percentage of target reached.

    Returns 0 when the target is not positive.
    """
    if target <= 0:
        return Decimal("0")
    return current / target * 100


# =============================================================================
# ENUMS
# =============================================================================

class TransactionType(str, Enum):
    INCOME = "income"
    EXPENSE = "expense"
    TRANSFER = "transfer"


class GoalStatus(str, Enum):
    """
    Goal lifecycle.

    A goal flips to COMPLETED once its amount reaches the target.
    """
    ACTIVE = "active"
    COMPLETED = "completed"
    PAUSED = "paused"
    CANCELLED = "cancelled"


# =============================================================================
# CORE MODELS
# =============================================================================

class Transaction(BaseModel):
    """A single income, expense or transfer."""
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    user_id: str = Field(..., min_length=1)
    amount: Decimal = Field(..., gt=0)
    type: TransactionType
    category: str = Field(default="other", max_length=50)
    description: str = Field(default="", max_length=200)
    occurred_at: datetime = Field(default_factory=datetime.now)
    goal_id: Optional[UUID] = Field(
        default=None,
        description="Goal a transfer contributes to"
    )
    created_at: datetime = Field(default_factory=datetime.now)


class FinancialGoal(BaseModel):
    """
    A savings goal.

    current_amount is mutated by contributions. Milestones are detected
    whenever it changes.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    user_id: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1, max_length=100)
    category: str = Field(default="general", max_length=50)
    target_amount: Decimal = Field(..., gt=0)
    current_amount: Decimal = Field(default=Decimal("0.00"), ge=0)
    target_date: date
    status: GoalStatus = GoalStatus.ACTIVE
    created_at: datetime = Field(default_factory=datetime.now)

    @field_validator("target_amount", "current_amount")
    @classmethod
    def quantize_amount(cls, v: Decimal) -> Decimal:
        return to_money(v)

    @property
    def progress_percent(self) -> Decimal:
        return progress_percent(self.current_amount, self.target_amount)

    @property
    def remaining_amount(self) -> Decimal:
        return max(self.target_amount - self.current_amount, Decimal("0.00"))

    @property
    def is_emergency_fund(self) -> bool:
        return (
            "emergency" in self.title.lower()
            or "emergency" in self.category.lower()
        )


class GoalMilestone(BaseModel):
    """
    A percentage threshold crossed by a goal.

    CRITICAL: At most one milestone per (goal_id, milestone).
    Milestones are never deleted or recomputed when the amount drops.
    """

    id: UUID = Field(default_factory=uuid4)
    goal_id: UUID
    user_id: str
    milestone: int
    amount_at_milestone: Decimal
    is_seen: bool = False
    celebrated_at: datetime = Field(default_factory=datetime.now)

    @field_validator("milestone")
    @classmethod
    def validate_threshold(cls, v: int) -> int:
        if v not in MILESTONE_THRESHOLDS:
            raise ValueError(f"Milestone must be one of {MILESTONE_THRESHOLDS}")
        return v

    @field_validator("amount_at_milestone")
    @classmethod
    def quantize_amount(cls, v: Decimal) -> Decimal:
        return to_money(v)


# =============================================================================
# REPORTING MODELS
# =============================================================================

class MilestoneLevel(BaseModel):
    """One rung of a goal's milestone ladder."""

    percentage: int
    label: str
    target_amount: Decimal
    reached: bool
    reached_at: Optional[datetime] = None
    percent_complete: Decimal = Field(
        description="Progress toward this rung, capped at the rung"
    )


class GoalProgressReport(BaseModel):
    """Human-facing summary of where a goal stands."""

    goal_id: UUID
    progress_percent: Decimal
    remaining_amount: Decimal
    days_remaining: int
    is_on_track: bool
    required_monthly: Decimal
    current_level: Optional[str] = None
    next_milestone: Optional[str] = None
    celebration: Optional[str] = None
    message: str
    levels: list[MilestoneLevel] = Field(default_factory=list)
