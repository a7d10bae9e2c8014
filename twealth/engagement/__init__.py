"""Engagement package: goal milestones and check-in streaks."""

from twealth.engagement.milestones import (
    MILESTONE_LABELS,
    MilestoneDetector,
    build_progress_report,
    milestone_ladder,
)
from twealth.engagement.streaks import (
    STREAK_ACHIEVEMENTS,
    StreakTracker,
    compute_weekly_progress,
)

__all__ = [
    "MILESTONE_LABELS",
    "STREAK_ACHIEVEMENTS",
    "MilestoneDetector",
    "StreakTracker",
    "build_progress_report",
    "compute_weekly_progress",
    "milestone_ladder",
]
