"""
Streak Tracker

Daily check-in streaks and the achievements they unlock.

State machine over the stored last check-in, compared by calendar date:
- no streak yet (or never checked in) → streak 1
- same day → no-op, streak unchanged
- next day → streak + 1
- any longer gap → streak restarts at 1
Every real check-in increments the cumulative total.

DESIGN DECISION: All date arithmetic uses one injected clock, and the
week is derived from that clock's local date (Sunday = slot 0). The
weekly array is carried forward only while the last check-in falls in
the current week.
"""

from datetime import date, datetime, timedelta
from typing import Callable, Optional

import structlog

from twealth.audit import AuditLogger
from twealth.models.engagement import (
    WEEK_DAYS,
    CheckInResult,
    UserAchievement,
    UserStreak,
)
from twealth.services.storage import StorageError, StreakStorageInterface


logger = structlog.get_logger(__name__)


STREAK_ACHIEVEMENTS = (
    ("streak_7", 7),
    ("streak_30", 30),
)


def week_slot(day: date) -> int:
    """Index of `day` in a Sunday-start week."""
    return (day.weekday() + 1) % WEEK_DAYS


def start_of_week(day: date) -> date:
    return day - timedelta(days=week_slot(day))


def compute_weekly_progress(
    existing: Optional[list[bool]],
    last_check_in: Optional[datetime],
    now: datetime,
) -> list[bool]:
    """
    Weekly check-in flags after checking in at `now`.

    The previous flags survive only if the last check-in happened in
    the current week.
    """
    today = now.date()
    if (
        existing
        and len(existing) == WEEK_DAYS
        and last_check_in is not None
        and last_check_in.date() >= start_of_week(today)
    ):
        progress = list(existing)
    else:
        progress = [False] * WEEK_DAYS
    progress[week_slot(today)] = True
    return progress


class StreakTracker:
    """Advances streaks and unlocks streak achievements."""

    def __init__(
        self,
        storage: StreakStorageInterface,
        audit_logger: Optional[AuditLogger] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._storage = storage
        self._audit_logger = audit_logger
        self._clock = clock or datetime.now

    async def check_in(self, user_id: str) -> CheckInResult:
        """
        Record today's check-in.

        Returns:
            CheckInResult; streak_increased is False only for a repeat
            check-in on the same calendar day
        """
        now = self._clock()
        streak = await self._storage.get_streak(user_id)

        if streak is None or streak.last_check_in is None:
            updated = UserStreak(
                user_id=user_id,
                current_streak=1,
                longest_streak=max(streak.longest_streak if streak else 0, 1),
                total_check_ins=(streak.total_check_ins if streak else 0) + 1,
                last_check_in=now,
                weekly_progress=compute_weekly_progress(None, None, now),
                updated_at=now,
            )
        else:
            diff_days = (now.date() - streak.last_check_in.date()).days
            if diff_days <= 0:
                return CheckInResult(
                    streak_increased=False,
                    new_streak=streak.current_streak,
                    new_achievements=[],
                )

            current = streak.current_streak + 1 if diff_days == 1 else 1
            updated = streak.model_copy(update={
                "current_streak": current,
                "longest_streak": max(streak.longest_streak, current),
                "total_check_ins": streak.total_check_ins + 1,
                "last_check_in": now,
                "weekly_progress": compute_weekly_progress(
                    streak.weekly_progress, streak.last_check_in, now
                ),
                "updated_at": now,
            })

        await self._storage.save_streak(updated)
        unlocked = await self._check_achievements(user_id, updated.current_streak, now)

        if self._audit_logger:
            await self._audit_logger.log_streak_checked_in(
                user_id, updated.current_streak, True
            )

        return CheckInResult(
            streak_increased=True,
            new_streak=updated.current_streak,
            new_achievements=unlocked,
        )

    async def _check_achievements(
        self,
        user_id: str,
        current_streak: int,
        now: datetime,
    ) -> list[str]:
        """
        Unlock reached streak achievements, record progress on the rest.

        Returns the ids unlocked by this call.
        """
        unlocked = []
        for achievement_id, target in STREAK_ACHIEVEMENTS:
            try:
                if current_streak >= target:
                    if await self._storage.unlock_achievement(
                        user_id, achievement_id, current_streak, target, now
                    ):
                        unlocked.append(achievement_id)
                        if self._audit_logger:
                            await self._audit_logger.log_achievement_unlocked(
                                user_id, achievement_id
                            )
                else:
                    await self._storage.upsert_achievement_progress(
                        user_id, achievement_id, current_streak, target
                    )
            except StorageError as e:
                logger.error(
                    "achievement_update_failed",
                    user_id=user_id,
                    achievement_id=achievement_id,
                    error=str(e),
                )
        return unlocked

    async def get_streak(self, user_id: str) -> UserStreak:
        """The user's streak, or an empty one if they never checked in."""
        streak = await self._storage.get_streak(user_id)
        return streak or UserStreak(user_id=user_id)

    async def get_achievements(self, user_id: str) -> list[UserAchievement]:
        return await self._storage.list_achievements(user_id)
