"""
Engagement Models: streaks, achievements and notifications
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, field_validator


WEEK_DAYS = 7


# =============================================================================
# STREAKS & ACHIEVEMENTS
# =============================================================================

class UserStreak(BaseModel):
    """
    Daily check-in streak for one user.

    One row per user, mutated at most once per calendar day.
    weekly_progress is indexed Sunday=0 .. Saturday=6.
    """

    user_id: str = Field(..., min_length=1)
    current_streak: int = Field(default=0, ge=0)
    longest_streak: int = Field(default=0, ge=0)
    total_check_ins: int = Field(default=0, ge=0)
    last_check_in: Optional[datetime] = None
    weekly_progress: list[bool] = Field(
        default_factory=lambda: [False] * WEEK_DAYS
    )
    updated_at: Optional[datetime] = None

    @field_validator("weekly_progress")
    @classmethod
    def validate_week(cls, v: list[bool]) -> list[bool]:
        if len(v) != WEEK_DAYS:
            raise ValueError(f"weekly_progress must have {WEEK_DAYS} slots")
        return v


class UserAchievement(BaseModel):
    """
    Progress toward (or possession of) one achievement.

    IMPORTANT: Once earned_at is set the row is frozen.
    """

    id: UUID = Field(default_factory=uuid4)
    user_id: str
    achievement_id: str
    progress: int = Field(default=0, ge=0)
    target: int = Field(..., gt=0)
    earned_at: Optional[datetime] = None

    @property
    def is_earned(self) -> bool:
        return self.earned_at is not None


class CheckInResult(BaseModel):
    """What a check-in did."""

    streak_increased: bool
    new_streak: int
    new_achievements: list[str] = Field(default_factory=list)


# =============================================================================
# NOTIFICATIONS
# =============================================================================

class NotificationType(str, Enum):
    """Notification types emitted by the smart generator."""
    DAILY_BRIEFING = "daily_briefing"
    RISK_ALERT = "risk_alert"
    GOAL_DEADLINE = "goal_deadline"
    TRANSACTION_REMINDER = "transaction_reminder"
    BUDGET_WARNING = "budget_warning"
    GOAL_ALMOST_COMPLETE = "goal_almost_complete"
    GOAL_COMPLETE = "goal_complete"


class NotificationPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class NotificationCategory(str, Enum):
    INSIGHTS = "insights"
    GOALS = "goals"
    TRANSACTIONS = "transactions"
    ALERTS = "alerts"


class Notification(BaseModel):
    """
    A user-facing notification.

    Append-only except for the read and archive flags.
    """

    id: UUID = Field(default_factory=uuid4)
    user_id: str = Field(..., min_length=1)
    type: NotificationType
    title: str = Field(..., min_length=1, max_length=200)
    message: str = Field(..., max_length=1000)
    priority: NotificationPriority = NotificationPriority.NORMAL
    category: NotificationCategory = NotificationCategory.INSIGHTS
    data: dict[str, Any] = Field(default_factory=dict)
    action_type: Optional[str] = None
    action_data: dict[str, Any] = Field(default_factory=dict)
    is_read: bool = False
    read_at: Optional[datetime] = None
    is_archived: bool = False
    created_at: datetime = Field(default_factory=datetime.now)
