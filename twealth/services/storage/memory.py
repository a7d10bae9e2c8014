"""
In-Memory Storage Implementation

Used for tests and local development. Implements exactly the same
contract as the SQL backend, including the atomic increment and the
insert-if-absent operations, so the same contract tests run against both.

IMPORTANT: Every read returns a copy. Callers mutating a returned model
never change stored state without going through an update method.
"""

import threading
from datetime import datetime
from typing import Optional
from uuid import UUID

from twealth.models.audit import AuditEvent
from twealth.models.engagement import (
    Notification,
    NotificationType,
    UserAchievement,
    UserStreak,
)
from twealth.models.finance import (
    FinancialGoal,
    GoalMilestone,
    GoalStatus,
    Transaction,
    TransactionType,
)
from twealth.models.subscription import (
    USAGE_COUNTER_FIELDS,
    AddOnCredit,
    AddOnType,
    QuotaWindow,
    Subscription,
    SubscriptionPlan,
    SubscriptionStatus,
    UsageRecord,
)
from twealth.services.storage.interface import (
    AuditStorageInterface,
    EngineStorageInterface,
    NotFoundError,
    StorageError,
)


def _copy(model):
    return model.model_copy(deep=True) if model is not None else None


class InMemoryEngineStorage(EngineStorageInterface):
    """
    Dict-backed engine storage.

    A single lock serializes every mutation, which is what makes
    increment_usage and the *_if_absent inserts atomic here.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._plans: dict[UUID, SubscriptionPlan] = {}
        self._subscriptions: dict[UUID, Subscription] = {}
        self._usage: dict[tuple[str, datetime, datetime], UsageRecord] = {}
        self._credits: dict[UUID, AddOnCredit] = {}
        self._goals: dict[UUID, FinancialGoal] = {}
        self._transactions: dict[UUID, Transaction] = {}
        self._milestones: dict[tuple[UUID, int], GoalMilestone] = {}
        self._streaks: dict[str, UserStreak] = {}
        self._achievements: dict[tuple[str, str], UserAchievement] = {}
        self._notifications: dict[UUID, Notification] = {}

    # ===== PLANS & SUBSCRIPTIONS =====

    async def save_plan(self, plan: SubscriptionPlan) -> SubscriptionPlan:
        with self._lock:
            existing = next(
                (p for p in self._plans.values() if p.name == plan.name), None
            )
            stored = plan.model_copy(deep=True)
            if existing:
                stored.id = existing.id
            self._plans[stored.id] = stored
            return _copy(stored)

    async def get_plan(self, plan_id: UUID) -> Optional[SubscriptionPlan]:
        return _copy(self._plans.get(plan_id))

    async def get_plan_by_name(self, name: str) -> Optional[SubscriptionPlan]:
        name = name.strip().lower()
        for plan in self._plans.values():
            if plan.name == name:
                return _copy(plan)
        return None

    async def list_plans(self, active_only: bool = True) -> list[SubscriptionPlan]:
        plans = [p for p in self._plans.values() if p.is_active or not active_only]
        return [_copy(p) for p in sorted(plans, key=lambda p: p.sort_order)]

    async def create_subscription(self, subscription: Subscription) -> Subscription:
        with self._lock:
            self._subscriptions[subscription.id] = subscription.model_copy(deep=True)
        return _copy(subscription)

    async def get_active_subscription(self, user_id: str) -> Optional[Subscription]:
        active = [
            s for s in self._subscriptions.values()
            if s.user_id == user_id and s.status == SubscriptionStatus.ACTIVE
        ]
        if not active:
            return None
        return _copy(max(active, key=lambda s: s.created_at))

    async def get_first_subscription(self, user_id: str) -> Optional[Subscription]:
        owned = [s for s in self._subscriptions.values() if s.user_id == user_id]
        if not owned:
            return None
        return _copy(min(owned, key=lambda s: s.created_at))

    async def update_subscription(self, subscription: Subscription) -> Subscription:
        with self._lock:
            if subscription.id not in self._subscriptions:
                raise NotFoundError(f"Subscription not found: {subscription.id}")
            self._subscriptions[subscription.id] = subscription.model_copy(deep=True)
        return _copy(subscription)

    # ===== USAGE =====

    @staticmethod
    def _usage_key(user_id: str, window: QuotaWindow) -> tuple[str, datetime, datetime]:
        return (user_id, window.start, window.end)

    async def get_usage_record(
        self,
        user_id: str,
        window: QuotaWindow,
    ) -> Optional[UsageRecord]:
        return _copy(self._usage.get(self._usage_key(user_id, window)))

    async def increment_usage(
        self,
        user_id: str,
        window: QuotaWindow,
        field: str,
        amount: int = 1,
        subscription_id: Optional[UUID] = None,
    ) -> UsageRecord:
        if field not in USAGE_COUNTER_FIELDS:
            raise StorageError(f"Unknown usage counter: {field}")

        key = self._usage_key(user_id, window)
        with self._lock:
            record = self._usage.get(key)
            if record is None:
                record = UsageRecord(
                    user_id=user_id,
                    subscription_id=subscription_id,
                    period_start=window.start,
                    period_end=window.end,
                )
                self._usage[key] = record
            setattr(record, field, getattr(record, field) + amount)
            return _copy(record)

    async def reset_usage(
        self,
        user_id: str,
        window: QuotaWindow,
        reset_at: datetime,
    ) -> Optional[UsageRecord]:
        with self._lock:
            record = self._usage.get(self._usage_key(user_id, window))
            if record is None:
                return None
            for field in USAGE_COUNTER_FIELDS:
                setattr(record, field, 0)
            record.last_reset_at = reset_at
            return _copy(record)

    async def add_credit(self, credit: AddOnCredit) -> AddOnCredit:
        with self._lock:
            self._credits[credit.id] = credit.model_copy(deep=True)
        return _copy(credit)

    async def list_active_credits(
        self,
        user_id: str,
        now: datetime,
        add_on_type: Optional[AddOnType] = None,
    ) -> list[AddOnCredit]:
        return [
            _copy(c) for c in self._credits.values()
            if c.user_id == user_id
            and c.is_usable(now)
            and (add_on_type is None or c.add_on_type == add_on_type)
        ]

    # ===== GOALS & TRANSACTIONS =====

    async def create_goal(self, goal: FinancialGoal) -> FinancialGoal:
        with self._lock:
            self._goals[goal.id] = goal.model_copy(deep=True)
        return _copy(goal)

    async def get_goal(self, goal_id: UUID) -> Optional[FinancialGoal]:
        return _copy(self._goals.get(goal_id))

    async def update_goal(self, goal: FinancialGoal) -> FinancialGoal:
        with self._lock:
            if goal.id not in self._goals:
                raise NotFoundError(f"Goal not found: {goal.id}")
            self._goals[goal.id] = goal.model_copy(deep=True)
        return _copy(goal)

    async def list_goals(
        self,
        user_id: str,
        status: Optional[GoalStatus] = None,
    ) -> list[FinancialGoal]:
        goals = [
            g for g in self._goals.values()
            if g.user_id == user_id and (status is None or g.status == status)
        ]
        return [_copy(g) for g in sorted(goals, key=lambda g: g.created_at)]

    async def add_transaction(self, transaction: Transaction) -> Transaction:
        with self._lock:
            self._transactions[transaction.id] = transaction.model_copy(deep=True)
        return _copy(transaction)

    async def list_transactions(
        self,
        user_id: str,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        transaction_type: Optional[TransactionType] = None,
    ) -> list[Transaction]:
        matches = [
            t for t in self._transactions.values()
            if t.user_id == user_id
            and (since is None or t.occurred_at >= since)
            and (until is None or t.occurred_at <= until)
            and (transaction_type is None or t.type == transaction_type)
        ]
        matches.sort(key=lambda t: t.occurred_at, reverse=True)
        return [_copy(t) for t in matches]

    # ===== MILESTONES =====

    async def list_milestones(self, goal_id: UUID) -> list[GoalMilestone]:
        rows = [m for (gid, _), m in self._milestones.items() if gid == goal_id]
        return [_copy(m) for m in sorted(rows, key=lambda m: m.milestone)]

    async def insert_milestone_if_absent(
        self,
        milestone: GoalMilestone,
    ) -> Optional[GoalMilestone]:
        key = (milestone.goal_id, milestone.milestone)
        with self._lock:
            if key in self._milestones:
                return None
            self._milestones[key] = milestone.model_copy(deep=True)
        return _copy(milestone)

    async def list_user_milestones(
        self,
        user_id: str,
        unseen_only: bool = False,
    ) -> list[GoalMilestone]:
        rows = [
            m for m in self._milestones.values()
            if m.user_id == user_id and not (unseen_only and m.is_seen)
        ]
        rows.sort(key=lambda m: m.celebrated_at, reverse=True)
        return [_copy(m) for m in rows]

    async def mark_milestones_seen(
        self,
        user_id: str,
        goal_id: Optional[UUID] = None,
    ) -> int:
        count = 0
        with self._lock:
            for m in self._milestones.values():
                if m.user_id != user_id or m.is_seen:
                    continue
                if goal_id is not None and m.goal_id != goal_id:
                    continue
                m.is_seen = True
                count += 1
        return count

    # ===== STREAKS & ACHIEVEMENTS =====

    async def get_streak(self, user_id: str) -> Optional[UserStreak]:
        return _copy(self._streaks.get(user_id))

    async def save_streak(self, streak: UserStreak) -> UserStreak:
        with self._lock:
            self._streaks[streak.user_id] = streak.model_copy(deep=True)
        return _copy(streak)

    async def list_achievements(self, user_id: str) -> list[UserAchievement]:
        rows = [a for (uid, _), a in self._achievements.items() if uid == user_id]
        return [_copy(a) for a in sorted(rows, key=lambda a: a.achievement_id)]

    async def unlock_achievement(
        self,
        user_id: str,
        achievement_id: str,
        progress: int,
        target: int,
        earned_at: datetime,
    ) -> bool:
        key = (user_id, achievement_id)
        with self._lock:
            existing = self._achievements.get(key)
            if existing is None:
                self._achievements[key] = UserAchievement(
                    user_id=user_id,
                    achievement_id=achievement_id,
                    progress=progress,
                    target=target,
                    earned_at=earned_at,
                )
                return True
            if existing.is_earned:
                return False
            existing.progress = progress
            existing.earned_at = earned_at
            return True

    async def upsert_achievement_progress(
        self,
        user_id: str,
        achievement_id: str,
        progress: int,
        target: int,
    ) -> None:
        key = (user_id, achievement_id)
        with self._lock:
            existing = self._achievements.get(key)
            if existing is None:
                self._achievements[key] = UserAchievement(
                    user_id=user_id,
                    achievement_id=achievement_id,
                    progress=progress,
                    target=target,
                )
            elif not existing.is_earned:
                existing.progress = progress

    # ===== NOTIFICATIONS =====

    async def create_notification(self, notification: Notification) -> Notification:
        with self._lock:
            self._notifications[notification.id] = notification.model_copy(deep=True)
        return _copy(notification)

    async def has_recent_notification(
        self,
        user_id: str,
        notification_type: NotificationType,
        since: datetime,
    ) -> bool:
        return any(
            n.user_id == user_id
            and n.type == notification_type
            and n.created_at >= since
            for n in self._notifications.values()
        )

    async def list_recent_notifications(
        self,
        user_id: str,
        notification_type: NotificationType,
        since: datetime,
    ) -> list[Notification]:
        rows = [
            n for n in self._notifications.values()
            if n.user_id == user_id
            and n.type == notification_type
            and n.created_at >= since
        ]
        rows.sort(key=lambda n: n.created_at, reverse=True)
        return [_copy(n) for n in rows]

    async def list_notifications(
        self,
        user_id: str,
        limit: int = 50,
        offset: int = 0,
        include_read: bool = True,
    ) -> list[Notification]:
        rows = [
            n for n in self._notifications.values()
            if n.user_id == user_id
            and not n.is_archived
            and (include_read or not n.is_read)
        ]
        rows.sort(key=lambda n: n.created_at, reverse=True)
        return [_copy(n) for n in rows[offset:offset + limit]]

    async def count_unread(self, user_id: str) -> int:
        return sum(
            1 for n in self._notifications.values()
            if n.user_id == user_id and not n.is_read and not n.is_archived
        )

    def _owned(self, user_id: str, notification_id: UUID) -> Optional[Notification]:
        notification = self._notifications.get(notification_id)
        if notification is None or notification.user_id != user_id:
            return None
        return notification

    async def mark_notification_read(
        self,
        user_id: str,
        notification_id: UUID,
        read_at: datetime,
    ) -> bool:
        with self._lock:
            notification = self._owned(user_id, notification_id)
            if notification is None:
                return False
            notification.is_read = True
            notification.read_at = read_at
            return True

    async def mark_all_read(self, user_id: str, read_at: datetime) -> int:
        count = 0
        with self._lock:
            for n in self._notifications.values():
                if n.user_id == user_id and not n.is_read:
                    n.is_read = True
                    n.read_at = read_at
                    count += 1
        return count

    async def archive_notification(self, user_id: str, notification_id: UUID) -> bool:
        with self._lock:
            notification = self._owned(user_id, notification_id)
            if notification is None:
                return False
            notification.is_archived = True
            return True

    async def delete_notification(self, user_id: str, notification_id: UUID) -> bool:
        with self._lock:
            if self._owned(user_id, notification_id) is None:
                return False
            del self._notifications[notification_id]
            return True


class InMemoryAuditStorage(AuditStorageInterface):
    """Append-only list of audit events."""

    def __init__(self):
        self._events: list[AuditEvent] = []
        self._lock = threading.Lock()

    async def append_event(self, event: AuditEvent) -> bool:
        with self._lock:
            self._events.append(event.model_copy(deep=True))
        return True

    async def get_events(
        self,
        user_id: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        events = [
            e for e in reversed(self._events)
            if (user_id is None or e.user_id == user_id)
            and (correlation_id is None or e.correlation_id == correlation_id)
        ]
        return [_copy(e) for e in events[:limit]]
