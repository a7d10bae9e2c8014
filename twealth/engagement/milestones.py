"""
Goal Milestone Detector

Given a goal's current and target amount, records each percentage
threshold (25/50/75/100) the goal has crossed, at most once per goal.

Detection runs as a side effect after every amount-changing mutation.

CRITICAL:
- Insertion is idempotent: storage inserts keyed by (goal_id, milestone)
  and does nothing on conflict, so two concurrent triggers cannot record
  the same threshold twice
- A storage failure on one threshold is logged and the remaining
  thresholds are still attempted
- Milestones are never deleted or recomputed when the amount later drops
"""

import math
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional
from uuid import UUID

import structlog

from twealth.audit import AuditLogger
from twealth.models.finance import (
    MILESTONE_THRESHOLDS,
    FinancialGoal,
    GoalMilestone,
    GoalProgressReport,
    MilestoneLevel,
    progress_percent,
    to_money,
)
from twealth.services.storage import GoalStorageInterface, StorageError


logger = structlog.get_logger(__name__)


MILESTONE_LABELS = {
    25: "25% Milestone",
    50: "50% Halfway Mark",
    75: "75% Almost There",
    100: "100% Goal Complete",
}


class MilestoneDetector:
    """Detects and records crossed goal milestones."""

    def __init__(
        self,
        storage: GoalStorageInterface,
        audit_logger: Optional[AuditLogger] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._storage = storage
        self._audit_logger = audit_logger
        self._clock = clock or datetime.now

    async def check_and_create_milestones(
        self,
        user_id: str,
        goal_id: UUID,
        current_amount: Decimal,
        target_amount: Decimal,
        correlation_id: Optional[UUID] = None,
    ) -> list[GoalMilestone]:
        """
        Record every threshold the goal has reached but not yet recorded.

        Args:
            user_id: Goal owner
            goal_id: Goal being checked
            current_amount: Amount saved right now (snapshotted into new rows)
            target_amount: Goal target; a non-positive target counts as 0%

        Returns:
            Only the milestones created by this call, ascending
        """
        current = Decimal(str(current_amount))
        percentage = progress_percent(current, Decimal(str(target_amount)))

        existing = {m.milestone for m in await self._storage.list_milestones(goal_id)}
        created = []

        for threshold in MILESTONE_THRESHOLDS:
            if percentage < threshold or threshold in existing:
                continue

            milestone = GoalMilestone(
                goal_id=goal_id,
                user_id=user_id,
                milestone=threshold,
                amount_at_milestone=to_money(current),
                celebrated_at=self._clock(),
            )
            try:
                inserted = await self._storage.insert_milestone_if_absent(milestone)
            except StorageError as e:
                logger.error(
                    "milestone_insert_failed",
                    goal_id=str(goal_id),
                    milestone=threshold,
                    error=str(e),
                )
                continue

            if inserted is None:
                # Recorded concurrently by another request
                continue

            created.append(inserted)
            if self._audit_logger:
                await self._audit_logger.log_milestone_reached(
                    user_id=user_id,
                    goal_id=goal_id,
                    milestone=threshold,
                    amount=str(inserted.amount_at_milestone),
                    correlation_id=correlation_id,
                )

        return created

    async def get_unseen_milestones(self, user_id: str) -> list[GoalMilestone]:
        return await self._storage.list_user_milestones(user_id, unseen_only=True)

    async def mark_milestones_seen(self, user_id: str, goal_id: Optional[UUID] = None) -> int:
        return await self._storage.mark_milestones_seen(user_id, goal_id)

    async def describe_goal_milestones(self, goal: FinancialGoal) -> list[MilestoneLevel]:
        """
        The goal's milestone ladder.

        Reached rungs carry the time they were recorded, when known.
        """
        recorded = {m.milestone: m for m in await self._storage.list_milestones(goal.id)}
        return milestone_ladder(goal, recorded)

    async def build_progress_report(
        self,
        goal: FinancialGoal,
        now: Optional[datetime] = None,
    ) -> GoalProgressReport:
        recorded = {m.milestone: m for m in await self._storage.list_milestones(goal.id)}
        return build_progress_report(goal, now or self._clock(), recorded)


# =============================================================================
# PURE HELPERS
# =============================================================================

def milestone_ladder(
    goal: FinancialGoal,
    recorded: Optional[dict[int, GoalMilestone]] = None,
) -> list[MilestoneLevel]:
    recorded = recorded or {}
    percent = goal.progress_percent
    levels = []
    for threshold in MILESTONE_THRESHOLDS:
        reached = percent >= threshold
        levels.append(MilestoneLevel(
            percentage=threshold,
            label=MILESTONE_LABELS[threshold],
            target_amount=to_money(goal.target_amount * threshold / 100),
            reached=reached,
            reached_at=recorded[threshold].celebrated_at if threshold in recorded else None,
            percent_complete=min(percent, Decimal(threshold)).quantize(Decimal("0.1")),
        ))
    return levels


def current_level(percent: Decimal) -> Optional[str]:
    """Highest threshold reached, as "25%".."75%" or "complete"."""
    if percent >= 100:
        return "complete"
    for threshold in (75, 50, 25):
        if percent >= threshold:
            return f"{threshold}%"
    return None


def next_milestone_text(percent: Decimal) -> str:
    if percent >= 100:
        return "Goal achieved"
    if percent >= 75:
        return "Next: 100% completion"
    if percent >= 50:
        return "Next: 75% milestone"
    if percent >= 25:
        return "Next: 50% halfway mark"
    return "Next: 25% first milestone"


def celebration_text(level: Optional[str], title: str, percent: Decimal) -> Optional[str]:
    if level is None:
        return None
    if level == "complete":
        return f'GOAL ACHIEVED! "{title}" is complete at {percent:.1f}%. Celebrate this win.'
    messages = {
        "25%": f'Quarter way there! You\'ve saved 25% for "{title}". Momentum is building.',
        "50%": f'Halfway point! You\'re 50% towards "{title}". The finish line is in sight.',
        "75%": f'Three quarters done! You\'re at 75% for "{title}". Almost there, keep pushing.',
    }
    return messages[level]


def motivational_text(percent: Decimal, on_track: bool, days_remaining: int) -> str:
    if percent >= 100:
        return "Incredible discipline! Time to set your next ambitious goal and keep the momentum going."

    remaining = 100 - percent
    if on_track:
        if percent >= 75:
            return f"You're crushing it! Just {remaining:.1f}% to go. The finish line is within reach!"
        if percent >= 50:
            return "Excellent progress! You're on pace to hit your goal. Stay consistent with your contributions."
        if percent >= 25:
            return "Solid foundation! You're on track. Keep up the steady contributions to reach your goal on time."
        return "Great start! You're on schedule. Consistency is key, so stick to your monthly savings plan."

    if days_remaining < 30:
        return (
            f"Critical: {days_remaining} days left, {remaining:.1f}% to go. "
            "Consider a final push or adjust the timeline."
        )
    if days_remaining < 90:
        return (
            f"Behind schedule with {days_remaining} days left. "
            "Increase monthly contributions to hit the target."
        )
    return "Behind pace but recoverable. Reassess and increase monthly contributions to get back on track."


def build_progress_report(
    goal: FinancialGoal,
    now: datetime,
    recorded: Optional[dict[int, GoalMilestone]] = None,
) -> GoalProgressReport:
    """
    Where a goal stands relative to its deadline.

    A goal is on track when its progress is at least 90% of the progress
    expected from the time elapsed since it was created.
    """
    percent = goal.progress_percent
    target_moment = datetime.combine(goal.target_date, datetime.min.time())
    days_remaining = math.ceil((target_moment - now).total_seconds() / 86400)
    months_remaining = max(Decimal(1), Decimal(days_remaining) / 30)

    total_seconds = (target_moment - goal.created_at).total_seconds()
    elapsed_seconds = (now - goal.created_at).total_seconds()
    expected = (
        Decimal(str(elapsed_seconds / total_seconds * 100))
        if total_seconds > 0
        else Decimal(0)
    )
    on_track = percent >= expected * Decimal("0.9")

    level = current_level(percent)
    return GoalProgressReport(
        goal_id=goal.id,
        progress_percent=percent.quantize(Decimal("0.1")),
        remaining_amount=goal.remaining_amount,
        days_remaining=days_remaining,
        is_on_track=on_track,
        required_monthly=to_money(goal.remaining_amount / months_remaining),
        current_level=level,
        next_milestone=next_milestone_text(percent),
        celebration=celebration_text(level, goal.title, percent),
        message=motivational_text(percent, on_track, days_remaining),
        levels=milestone_ladder(goal, recorded),
    )
