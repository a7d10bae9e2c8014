"""
Abstract Storage Interface

DESIGN DECISION: We define an abstract interface for storage operations.
This allows us to:
1. Run the engine against a relational database in production
2. Use in-memory storage for tests and local development
3. Exercise both implementations with the same contract tests
4. Keep business rules decoupled from storage implementation

CRITICAL: Two operations carry concurrency guarantees that every
implementation must honour:
- increment_usage adds to a counter atomically (no read-modify-write)
- the *_if_absent inserts are no-ops on conflict with the natural key
"""

from abc import ABC, abstractmethod
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
    AddOnCredit,
    AddOnType,
    QuotaWindow,
    Subscription,
    SubscriptionPlan,
    UsageRecord,
)


class PlanStorageInterface(ABC):
    """Subscription plans and subscriptions."""

    @abstractmethod
    async def save_plan(self, plan: SubscriptionPlan) -> SubscriptionPlan:
        """
        Insert a plan, or update the existing plan with the same name.

        Returns:
            The stored plan (keeps the existing id on update)
        """
        pass

    @abstractmethod
    async def get_plan(self, plan_id: UUID) -> Optional[SubscriptionPlan]:
        pass

    @abstractmethod
    async def get_plan_by_name(self, name: str) -> Optional[SubscriptionPlan]:
        pass

    @abstractmethod
    async def list_plans(self, active_only: bool = True) -> list[SubscriptionPlan]:
        """List plans ordered by sort_order."""
        pass

    @abstractmethod
    async def create_subscription(self, subscription: Subscription) -> Subscription:
        pass

    @abstractmethod
    async def get_active_subscription(self, user_id: str) -> Optional[Subscription]:
        """
        Get the user's active subscription.

        If several active rows exist (the bootstrap race), the most
        recently created one wins.
        """
        pass

    @abstractmethod
    async def get_first_subscription(self, user_id: str) -> Optional[Subscription]:
        """Get the user's earliest created subscription, whatever its status."""
        pass

    @abstractmethod
    async def update_subscription(self, subscription: Subscription) -> Subscription:
        """
        Replace a stored subscription.

        Raises:
            NotFoundError: If the subscription doesn't exist
        """
        pass


class UsageStorageInterface(ABC):
    """Usage records and add-on credits."""

    @abstractmethod
    async def get_usage_record(
        self,
        user_id: str,
        window: QuotaWindow,
    ) -> Optional[UsageRecord]:
        """
        Get the usage record for exactly this quota window.

        Returns:
            The record, or None if nothing was counted in the window yet
        """
        pass

    @abstractmethod
    async def increment_usage(
        self,
        user_id: str,
        window: QuotaWindow,
        field: str,
        amount: int = 1,
        subscription_id: Optional[UUID] = None,
    ) -> UsageRecord:
        """
        Atomically add `amount` to one counter of the window's record.

        The record is created first if it doesn't exist. Concurrent
        increments for the same user and window never lose updates.

        Args:
            user_id: Owner of the counter
            window: Quota window selecting the record
            field: UsageRecord counter column (e.g. "chats_used")
            amount: Positive increment
            subscription_id: Stored on the record when it is created

        Returns:
            The record after the increment
        """
        pass

    @abstractmethod
    async def reset_usage(
        self,
        user_id: str,
        window: QuotaWindow,
        reset_at: datetime,
    ) -> Optional[UsageRecord]:
        """Zero every counter of the window's record, if one exists."""
        pass

    @abstractmethod
    async def add_credit(self, credit: AddOnCredit) -> AddOnCredit:
        pass

    @abstractmethod
    async def list_active_credits(
        self,
        user_id: str,
        now: datetime,
        add_on_type: Optional[AddOnType] = None,
    ) -> list[AddOnCredit]:
        """List active add-ons whose expiry is not before `now`."""
        pass


class GoalStorageInterface(ABC):
    """Financial goals, transactions and goal milestones."""

    @abstractmethod
    async def create_goal(self, goal: FinancialGoal) -> FinancialGoal:
        pass

    @abstractmethod
    async def get_goal(self, goal_id: UUID) -> Optional[FinancialGoal]:
        pass

    @abstractmethod
    async def update_goal(self, goal: FinancialGoal) -> FinancialGoal:
        """
        Replace a stored goal.

        Raises:
            NotFoundError: If the goal doesn't exist
        """
        pass

    @abstractmethod
    async def list_goals(
        self,
        user_id: str,
        status: Optional[GoalStatus] = None,
    ) -> list[FinancialGoal]:
        pass

    @abstractmethod
    async def add_transaction(self, transaction: Transaction) -> Transaction:
        pass

    @abstractmethod
    async def list_transactions(
        self,
        user_id: str,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        transaction_type: Optional[TransactionType] = None,
    ) -> list[Transaction]:
        """
        List a user's transactions, newest first.

        Args:
            since: Only transactions on or after this moment
            until: Only transactions on or before this moment
            transaction_type: Filter by type
        """
        pass

    @abstractmethod
    async def list_milestones(self, goal_id: UUID) -> list[GoalMilestone]:
        """List a goal's milestones in ascending threshold order."""
        pass

    @abstractmethod
    async def insert_milestone_if_absent(
        self,
        milestone: GoalMilestone,
    ) -> Optional[GoalMilestone]:
        """
        Insert a milestone unless (goal_id, milestone) already exists.

        Returns:
            The inserted milestone, or None if one already existed
        """
        pass

    @abstractmethod
    async def list_user_milestones(
        self,
        user_id: str,
        unseen_only: bool = False,
    ) -> list[GoalMilestone]:
        pass

    @abstractmethod
    async def mark_milestones_seen(
        self,
        user_id: str,
        goal_id: Optional[UUID] = None,
    ) -> int:
        """Returns the number of milestones flipped to seen."""
        pass


class StreakStorageInterface(ABC):
    """Check-in streaks and achievements."""

    @abstractmethod
    async def get_streak(self, user_id: str) -> Optional[UserStreak]:
        pass

    @abstractmethod
    async def save_streak(self, streak: UserStreak) -> UserStreak:
        """Insert or replace the user's streak row."""
        pass

    @abstractmethod
    async def list_achievements(self, user_id: str) -> list[UserAchievement]:
        pass

    @abstractmethod
    async def unlock_achievement(
        self,
        user_id: str,
        achievement_id: str,
        progress: int,
        target: int,
        earned_at: datetime,
    ) -> bool:
        """
        Mark an achievement earned.

        Inserts an earned row if none exists, or sets earned_at on an
        existing progress row. Already-earned rows are left untouched.

        Returns:
            True only for the call that actually earned it
        """
        pass

    @abstractmethod
    async def upsert_achievement_progress(
        self,
        user_id: str,
        achievement_id: str,
        progress: int,
        target: int,
    ) -> None:
        """Record progress toward an achievement that isn't earned yet."""
        pass


class NotificationStorageInterface(ABC):
    """User notifications."""

    @abstractmethod
    async def create_notification(self, notification: Notification) -> Notification:
        pass

    @abstractmethod
    async def has_recent_notification(
        self,
        user_id: str,
        notification_type: NotificationType,
        since: datetime,
    ) -> bool:
        """Was a notification of this type created at or after `since`?"""
        pass

    @abstractmethod
    async def list_recent_notifications(
        self,
        user_id: str,
        notification_type: NotificationType,
        since: datetime,
    ) -> list[Notification]:
        """Notifications of this type created at or after `since`, archived included."""
        pass

    @abstractmethod
    async def list_notifications(
        self,
        user_id: str,
        limit: int = 50,
        offset: int = 0,
        include_read: bool = True,
    ) -> list[Notification]:
        """List non-archived notifications, newest first."""
        pass

    @abstractmethod
    async def count_unread(self, user_id: str) -> int:
        pass

    @abstractmethod
    async def mark_notification_read(
        self,
        user_id: str,
        notification_id: UUID,
        read_at: datetime,
    ) -> bool:
        pass

    @abstractmethod
    async def mark_all_read(self, user_id: str, read_at: datetime) -> int:
        pass

    @abstractmethod
    async def archive_notification(self, user_id: str, notification_id: UUID) -> bool:
        pass

    @abstractmethod
    async def delete_notification(self, user_id: str, notification_id: UUID) -> bool:
        pass


class EngineStorageInterface(
    PlanStorageInterface,
    UsageStorageInterface,
    GoalStorageInterface,
    StreakStorageInterface,
    NotificationStorageInterface,
):
    """
    Everything the engine persists.

    Any storage implementation (in-memory, SQL) must implement all of it.
    """

    async def initialize(self) -> None:
        """Prepare the backend (create tables, open connections)."""
        return None


class AuditStorageInterface(ABC):
    """
    Abstract interface for audit log storage.

    Audit logs are append-only - we never delete or modify them.
    """

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> bool:
        """
        Append an audit event to the log.

        Args:
            event: The audit event to log

        Returns:
            True if logged successfully
        """
        pass

    @abstractmethod
    async def get_events(
        self,
        user_id: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """
        Get audit events, newest first.

        Args:
            user_id: Only events about this user
            correlation_id: Only events from this request flow
            limit: Maximum events to return
        """
        pass


# =============================================================================
# EXCEPTIONS
# =============================================================================

class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class NotFoundError(StorageError):
    """Raised when a requested item is not found."""
    pass


class DuplicateError(StorageError):
    """Raised when trying to create a duplicate item."""
    pass


class ConnectionError(StorageError):
    """Raised when unable to connect to storage backend."""
    pass
