"""
Smart Notification Generator

Runs a fixed battery of rules for one user and persists what they emit.

CRITICAL:
- Each rule is isolated. A rule that raises is logged and audited, and
  the remaining rules still run.
- Each rule is throttled by a "was one of this type created recently"
  guard that runs BEFORE anything is inserted:
    daily briefing        once per calendar day
    risk alerts           once per dedup window, as a pair
    transaction reminder  once per dedup window
    budget warning        once per dedup window
    goal deadline         once per goal per dedup window
    almost complete       once per goal per dedup window
    goal complete         guarded by the goal's status flip
- Each rule performs its own reads. There is no shared snapshot, so
  rules can see slightly different data if it changes mid-dispatch.
"""

from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional
from uuid import UUID

import structlog

from twealth.audit import AuditLogger
from twealth.config import NotificationSettings, get_settings
from twealth.insights.summaries import (
    days_since_last_transaction,
    expense_volatility,
    summarize,
    weekly_expense_totals,
)
from twealth.models.engagement import Notification, NotificationType
from twealth.models.finance import FinancialGoal, GoalStatus
from twealth.notifications import rules
from twealth.services.storage import EngineStorageInterface


logger = structlog.get_logger(__name__)


Rule = Callable[[str, datetime], Awaitable[list[Notification]]]


class SmartNotificationGenerator:
    """Evaluates notification rules and manages the user's inbox."""

    def __init__(
        self,
        storage: EngineStorageInterface,
        audit_logger: Optional[AuditLogger] = None,
        settings: Optional[NotificationSettings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._storage = storage
        self._audit_logger = audit_logger
        self._settings = settings or get_settings().notifications
        self._clock = clock or datetime.now

    @property
    def rules(self) -> list[tuple[str, Rule]]:
        """Rules in evaluation order."""
        return [
            ("daily_briefing", self.daily_briefing),
            ("goal_deadlines", self.goal_deadlines),
            ("transaction_reminder", self.transaction_reminder),
            ("budget_warning", self.budget_warning),
            ("goal_completions", self.goal_completions),
            ("risk_alerts", self.risk_alerts),
        ]

    async def generate_smart_notifications(self, user_id: str) -> list[Notification]:
        """
        Run every rule for the user.

        Returns:
            The notifications created by this pass
        """
        now = self._clock()
        created = []

        for name, rule in self.rules:
            try:
                created.extend(await rule(user_id, now))
            except Exception as e:
                logger.error(
                    "notification_rule_failed",
                    user_id=user_id,
                    rule=name,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                if self._audit_logger:
                    await self._audit_logger.log_notification_rule_failed(
                        user_id, name, str(e)
                    )

        logger.info(
            "notifications_generated",
            user_id=user_id,
            count=len(created),
        )
        return created

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _dedup_since(self, now: datetime) -> datetime:
        return now - timedelta(hours=self._settings.dedup_window_hours)

    async def _save(self, notification: Notification, now: datetime) -> Notification:
        stored = await self._storage.create_notification(
            notification.model_copy(update={"created_at": now})
        )
        if self._audit_logger:
            await self._audit_logger.log_notification_created(
                user_id=stored.user_id,
                notification_id=stored.id,
                notification_type=stored.type.value,
                priority=stored.priority.value,
            )
        return stored

    async def _recently_notified_goals(
        self,
        user_id: str,
        notification_type: NotificationType,
        now: datetime,
    ) -> set[str]:
        recent = await self._storage.list_recent_notifications(
            user_id, notification_type, self._dedup_since(now)
        )
        return {n.data.get("goal_id") for n in recent}

    async def _recent_transactions(self, user_id: str, now: datetime, days: int):
        return await self._storage.list_transactions(
            user_id, since=now - timedelta(days=days)
        )

    # -------------------------------------------------------------------------
    # Rules
    # -------------------------------------------------------------------------

    async def daily_briefing(self, user_id: str, now: datetime) -> list[Notification]:
        start_of_day = datetime.combine(now.date(), datetime.min.time())
        if await self._storage.has_recent_notification(
            user_id, NotificationType.DAILY_BRIEFING, start_of_day
        ):
            return []

        days = self._settings.lookback_days
        summary = summarize(await self._recent_transactions(user_id, now, days), now, days)
        goals = await self._storage.list_goals(user_id)
        return [await self._save(rules.daily_briefing(user_id, summary, goals), now)]

    async def risk_alerts(self, user_id: str, now: datetime) -> list[Notification]:
        if await self._storage.has_recent_notification(
            user_id, NotificationType.RISK_ALERT, self._dedup_since(now)
        ):
            return []

        days = self._settings.lookback_days
        weeks = self._settings.volatility_weeks
        transactions = await self._recent_transactions(user_id, now, max(days, weeks * 7))
        goals = await self._storage.list_goals(user_id)

        drafts = [
            rules.volatility_alert(
                user_id,
                expense_volatility(weekly_expense_totals(transactions, now, weeks)),
                self._settings,
            ),
            rules.emergency_fund_alert(
                user_id, summarize(transactions, now, days), goals, self._settings
            ),
        ]
        return [await self._save(d, now) for d in drafts if d is not None]

    async def goal_deadlines(self, user_id: str, now: datetime) -> list[Notification]:
        notified = await self._recently_notified_goals(
            user_id, NotificationType.GOAL_DEADLINE, now
        )
        created = []
        for goal in await self._storage.list_goals(user_id, GoalStatus.ACTIVE):
            if str(goal.id) in notified:
                continue
            draft = rules.goal_deadline_alert(goal, now, self._settings)
            if draft is not None:
                created.append(await self._save(draft, now))
        return created

    async def transaction_reminder(self, user_id: str, now: datetime) -> list[Notification]:
        inactivity = self._settings.inactivity_days
        recent = await self._recent_transactions(user_id, now, inactivity)
        if days_since_last_transaction(recent, now) is not None:
            return []
        if await self._storage.has_recent_notification(
            user_id, NotificationType.TRANSACTION_REMINDER, self._dedup_since(now)
        ):
            return []
        return [await self._save(rules.transaction_reminder(user_id, inactivity), now)]

    async def budget_warning(self, user_id: str, now: datetime) -> list[Notification]:
        if await self._storage.has_recent_notification(
            user_id, NotificationType.BUDGET_WARNING, self._dedup_since(now)
        ):
            return []

        days = self._settings.lookback_days
        summary = summarize(await self._recent_transactions(user_id, now, days), now, days)
        draft = rules.budget_warning(user_id, summary)
        return [await self._save(draft, now)] if draft is not None else []

    async def goal_completions(self, user_id: str, now: datetime) -> list[Notification]:
        """
        Almost-there and completion notices.

        A completed goal's status is flipped here, which keeps the
        completion notice from firing twice.
        """
        notified = await self._recently_notified_goals(
            user_id, NotificationType.GOAL_ALMOST_COMPLETE, now
        )
        created = []
        for goal in await self._storage.list_goals(user_id, GoalStatus.ACTIVE):
            draft = rules.goal_completion_alert(goal, self._settings)
            if draft is None:
                continue
            if draft.type == NotificationType.GOAL_COMPLETE:
                created.append(await self.notify_goal_completed(goal, trigger="notification_pass"))
            elif str(goal.id) not in notified:
                created.append(await self._save(draft, now))
        return created

    async def notify_goal_completed(
        self,
        goal: FinancialGoal,
        trigger: str = "contribution",
        correlation_id: Optional[UUID] = None,
    ) -> Notification:
        """
        Mark a goal completed and emit its completion notice.

        Callers only pass goals that are still active.
        """
        now = self._clock()
        completed = goal.model_copy(update={"status": GoalStatus.COMPLETED})
        await self._storage.update_goal(completed)

        if self._audit_logger:
            await self._audit_logger.log_goal_completed(
                user_id=goal.user_id,
                goal_id=goal.id,
                trigger=trigger,
                correlation_id=correlation_id,
            )
        return await self._save(rules.goal_completed(completed), now)

    # -------------------------------------------------------------------------
    # Inbox
    # -------------------------------------------------------------------------

    async def list_notifications(
        self,
        user_id: str,
        limit: int = 50,
        offset: int = 0,
        unread_only: bool = False,
    ) -> list[Notification]:
        return await self._storage.list_notifications(
            user_id, limit=limit, offset=offset, include_read=not unread_only
        )

    async def unread_count(self, user_id: str) -> int:
        return await self._storage.count_unread(user_id)

    async def mark_read(self, user_id: str, notification_id: UUID) -> bool:
        """Returns False if the notification doesn't exist or isn't the user's."""
        return await self._storage.mark_notification_read(
            user_id, notification_id, self._clock()
        )

    async def mark_all_read(self, user_id: str) -> int:
        return await self._storage.mark_all_read(user_id, self._clock())

    async def archive(self, user_id: str, notification_id: UUID) -> bool:
        return await self._storage.archive_notification(user_id, notification_id)

    async def delete(self, user_id: str, notification_id: UUID) -> bool:
        return await self._storage.delete_notification(user_id, notification_id)
