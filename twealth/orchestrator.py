"""
Main Orchestrator for the Twealth engine

This module ties together all the components and defines the
request-scoped flows a web handler calls:
1. Chat (ensure subscription → check quota → call advisor → count usage)
2. Goals (validate → persist → detect milestones → complete)
3. Transactions (validate → persist → contribute transfers to goals)
4. Engagement (daily check-in streaks)
5. Notifications (generate, inbox)

DESIGN DECISION: The orchestrator enforces the boundaries:
- No AI call happens without a passing quota check
- No usage is counted unless the AI call succeeded
- No mutation happens on unvalidated input
- Every step is audited

This is the "glue" that ensures the system works correctly
even when individual components might behave unexpectedly.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable, Optional
from uuid import UUID

from twealth.audit import AuditLogger, configure_logging, create_correlation_id
from twealth.config import Settings, get_settings
from twealth.engagement import MilestoneDetector, StreakTracker
from twealth.insights import HealthScorer, TransactionSummarizer
from twealth.models.engagement import CheckInResult, Notification, UserAchievement, UserStreak
from twealth.models.finance import (
    FinancialGoal,
    GoalMilestone,
    GoalProgressReport,
    GoalStatus,
    MilestoneLevel,
    Transaction,
    TransactionType,
    to_money,
)
from twealth.models.subscription import ModelTier, QuotaStatus, UsageType
from twealth.models.validation import ValidationIssue
from twealth.notifications import SmartNotificationGenerator
from twealth.quota import PlanResolver, QuotaChecker
from twealth.services.cache import PlanCache
from twealth.services.storage import (
    AuditStorageInterface,
    EngineStorageInterface,
    InMemoryAuditStorage,
    InMemoryEngineStorage,
    NotFoundError,
    SqlAuditStorage,
    SqlDatabase,
    SqlEngineStorage,
)
from twealth.validation import InputValidator


Advisor = Callable[[str, str], Awaitable[str]]


async def _ensure_valid(
    validator: InputValidator,
    audit_logger: Optional[AuditLogger],
    operation: str,
    issues: list[ValidationIssue],
    user_id: Optional[str] = None,
    correlation_id: Optional[UUID] = None,
) -> None:
    """Audit rejected input, then raise ValidationFailedError."""
    if audit_logger and any(i.severity == "error" for i in issues):
        await audit_logger.log_validation_failed(
            operation=operation,
            issues=[i.to_dict() for i in issues],
            user_id=user_id,
            correlation_id=correlation_id,
        )
    validator.ensure_valid(operation, issues)


class ChatFlow:
    """
    Orchestrates a chat send.

    Flow:
    1. Ensure the user has a subscription (bootstrap the default plan)
    2. Check quota for the usage type (and model tier, if any)
    3. Call the advisor
    4. Count usage

    The quota check (step 2) runs BEFORE the advisor.
    Usage (step 4) is counted only if the advisor returned.
    """

    def __init__(
        self,
        resolver: PlanResolver,
        checker: QuotaChecker,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._resolver = resolver
        self._checker = checker
        self._audit_logger = audit_logger

    async def send_message(
        self,
        user_id: str,
        message: str,
        advisor: Advisor,
        deep_analysis: bool = False,
        model_tier: Optional[ModelTier] = None,
        correlation_id: Optional[UUID] = None,
    ) -> tuple[str, QuotaStatus]:
        """
        Send a message to the advisor under quota.

        Args:
            advisor: async callable (user_id, message) -> reply

        Returns:
            (reply, quota status after counting)

        Raises:
            QuotaExceededError: If the user is out of quota; the advisor
                is not called
        """
        correlation_id = correlation_id or create_correlation_id()
        usage_type = UsageType.DEEP_ANALYSIS if deep_analysis else UsageType.CHATS

        await self._resolver.ensure_subscription(user_id, correlation_id)
        await self._checker.require_quota(user_id, usage_type, correlation_id)
        if model_tier is not None:
            await self._checker.require_quota(user_id, model_tier.usage_type, correlation_id)

        try:
            reply = await advisor(user_id, message)
        except Exception as e:
            if self._audit_logger:
                await self._audit_logger.log_error(
                    error_type="advisor_failed",
                    error_message=str(e),
                    details={"user_id": user_id, "usage_type": usage_type.value},
                    correlation_id=correlation_id,
                )
            raise

        await self._checker.increment_usage(user_id, usage_type, correlation_id=correlation_id)
        if model_tier is not None:
            await self._checker.increment_model_usage(
                user_id, model_tier, correlation_id=correlation_id
            )

        return reply, await self._checker.check_usage_limit(user_id, usage_type)


class GoalFlow:
    """
    Orchestrates goal mutations.

    Every change to a goal's amount is followed by milestone detection.
    A goal reaching 100% is completed on the spot.
    """

    def __init__(
        self,
        storage: EngineStorageInterface,
        detector: MilestoneDetector,
        generator: SmartNotificationGenerator,
        validator: Optional[InputValidator] = None,
        audit_logger: Optional[AuditLogger] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._storage = storage
        self._detector = detector
        self._generator = generator
        self._validator = validator or InputValidator()
        self._audit_logger = audit_logger
        self._clock = clock or datetime.now

    async def create_goal(
        self,
        user_id: str,
        title: str,
        target_amount: Any,
        target_date: date,
        category: str = "general",
        current_amount: Any = 0,
        correlation_id: Optional[UUID] = None,
    ) -> tuple[FinancialGoal, list[GoalMilestone]]:
        """
        Create a goal.

        A goal created with money already saved gets its milestones
        right away.

        Returns:
            (goal, milestones created)
        """
        correlation_id = correlation_id or create_correlation_id()
        now = self._clock()
        await _ensure_valid(
            self._validator,
            self._audit_logger,
            "create_goal",
            self._validator.check_goal(
                title, target_amount, target_date, now.date(), current_amount
            ),
            user_id,
            correlation_id,
        )

        goal = await self._storage.create_goal(FinancialGoal(
            user_id=user_id,
            title=title,
            category=category,
            target_amount=InputValidator.parse_amount(target_amount),
            current_amount=InputValidator.parse_amount(current_amount),
            target_date=target_date,
            created_at=now,
        ))

        if self._audit_logger:
            await self._audit_logger.log_goal_created(
                user_id, goal.id, goal.title, str(goal.target_amount)
            )

        if goal.current_amount > 0:
            return await self._after_amount_change(goal, correlation_id)
        return goal, []

    async def get_goal(self, goal_id: UUID) -> FinancialGoal:
        """
        Raises:
            NotFoundError: If the goal doesn't exist
        """
        goal = await self._storage.get_goal(goal_id)
        if goal is None:
            raise NotFoundError(f"Goal not found: {goal_id}")
        return goal

    async def contribute(
        self,
        goal_id: UUID,
        amount: Any,
        correlation_id: Optional[UUID] = None,
    ) -> tuple[FinancialGoal, list[GoalMilestone]]:
        """
        Add money to a goal.

        Returns:
            (updated goal, milestones created)
        """
        correlation_id = correlation_id or create_correlation_id()
        goal = await self.get_goal(goal_id)
        await _ensure_valid(
            self._validator,
            self._audit_logger,
            "contribute",
            self._validator.check_amount(amount),
            goal.user_id,
            correlation_id,
        )
        new_amount = goal.current_amount + InputValidator.parse_amount(amount)
        return await self._set_amount(goal, new_amount, correlation_id)

    async def update_amount(
        self,
        goal_id: UUID,
        new_amount: Any,
        correlation_id: Optional[UUID] = None,
    ) -> tuple[FinancialGoal, list[GoalMilestone]]:
        """
        Set a goal's saved amount directly.

        Lowering the amount never removes recorded milestones.
        """
        correlation_id = correlation_id or create_correlation_id()
        goal = await self.get_goal(goal_id)
        await _ensure_valid(
            self._validator,
            self._audit_logger,
            "update_amount",
            self._validator.check_amount(new_amount, "current_amount", allow_zero=True),
            goal.user_id,
            correlation_id,
        )
        return await self._set_amount(
            goal, InputValidator.parse_amount(new_amount), correlation_id
        )

    async def _set_amount(
        self,
        goal: FinancialGoal,
        new_amount: Decimal,
        correlation_id: UUID,
    ) -> tuple[FinancialGoal, list[GoalMilestone]]:
        previous = goal.current_amount
        updated = await self._storage.update_goal(
            goal.model_copy(update={"current_amount": to_money(new_amount)})
        )

        if self._audit_logger:
            await self._audit_logger.log_goal_contribution(
                user_id=updated.user_id,
                goal_id=updated.id,
                previous=str(previous),
                current=str(updated.current_amount),
                correlation_id=correlation_id,
            )
        return await self._after_amount_change(updated, correlation_id)

    async def _after_amount_change(
        self,
        goal: FinancialGoal,
        correlation_id: UUID,
    ) -> tuple[FinancialGoal, list[GoalMilestone]]:
        milestones = await self._detector.check_and_create_milestones(
            goal.user_id,
            goal.id,
            goal.current_amount,
            goal.target_amount,
            correlation_id,
        )

        if goal.status == GoalStatus.ACTIVE and goal.progress_percent >= 100:
            await self._generator.notify_goal_completed(
                goal, trigger="contribution", correlation_id=correlation_id
            )
            goal = await self.get_goal(goal.id)

        return goal, milestones

    async def progress_report(self, goal_id: UUID) -> GoalProgressReport:
        return await self._detector.build_progress_report(await self.get_goal(goal_id))

    async def milestone_ladder(self, goal_id: UUID) -> list[MilestoneLevel]:
        return await self._detector.describe_goal_milestones(await self.get_goal(goal_id))


class TransactionFlow:
    """
    Orchestrates recording a transaction.

    A transfer that names a goal is also a contribution to that goal.
    """

    def __init__(
        self,
        storage: EngineStorageInterface,
        goal_flow: GoalFlow,
        validator: Optional[InputValidator] = None,
        audit_logger: Optional[AuditLogger] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._storage = storage
        self._goal_flow = goal_flow
        self._validator = validator or InputValidator()
        self._audit_logger = audit_logger
        self._clock = clock or datetime.now

    async def record_transaction(
        self,
        user_id: str,
        amount: Any,
        transaction_type: TransactionType,
        category: str = "other",
        description: str = "",
        occurred_at: Optional[datetime] = None,
        goal_id: Optional[UUID] = None,
        correlation_id: Optional[UUID] = None,
    ) -> tuple[Transaction, list[GoalMilestone]]:
        """
        Record a transaction.

        Returns:
            (transaction, milestones created by a goal contribution)

        Raises:
            ValidationFailedError: If the amount is malformed
            NotFoundError: If goal_id names a goal the user doesn't own
        """
        correlation_id = correlation_id or create_correlation_id()
        await _ensure_valid(
            self._validator,
            self._audit_logger,
            "record_transaction",
            self._validator.check_amount(amount),
            user_id,
            correlation_id,
        )

        contributes = goal_id is not None and transaction_type == TransactionType.TRANSFER
        if contributes:
            goal = await self._goal_flow.get_goal(goal_id)
            if goal.user_id != user_id:
                raise NotFoundError(f"Goal not found: {goal_id}")

        now = self._clock()
        transaction = await self._storage.add_transaction(Transaction(
            user_id=user_id,
            amount=InputValidator.parse_amount(amount),
            type=transaction_type,
            category=category,
            description=description,
            occurred_at=occurred_at or now,
            goal_id=goal_id,
            created_at=now,
        ))

        if not contributes:
            return transaction, []

        _, milestones = await self._goal_flow.contribute(
            goal_id, transaction.amount, correlation_id
        )
        return transaction, milestones


class EngagementFlow:
    """Daily check-ins."""

    def __init__(self, tracker: StreakTracker):
        self._tracker = tracker

    async def check_in(self, user_id: str) -> CheckInResult:
        return await self._tracker.check_in(user_id)

    async def get_streak(self, user_id: str) -> UserStreak:
        return await self._tracker.get_streak(user_id)

    async def get_achievements(self, user_id: str) -> list[UserAchievement]:
        return await self._tracker.get_achievements(user_id)


class NotificationFlow:
    """Notification generation and the user's inbox."""

    def __init__(self, generator: SmartNotificationGenerator):
        self._generator = generator

    async def generate(self, user_id: str) -> list[Notification]:
        return await self._generator.generate_smart_notifications(user_id)

    async def list_notifications(
        self,
        user_id: str,
        limit: int = 50,
        offset: int = 0,
        unread_only: bool = False,
    ) -> list[Notification]:
        return await self._generator.list_notifications(user_id, limit, offset, unread_only)

    async def unread_count(self, user_id: str) -> int:
        return await self._generator.unread_count(user_id)

    async def mark_read(self, user_id: str, notification_id: UUID) -> bool:
        return await self._generator.mark_read(user_id, notification_id)

    async def mark_all_read(self, user_id: str) -> int:
        return await self._generator.mark_all_read(user_id)

    async def archive(self, user_id: str, notification_id: UUID) -> bool:
        return await self._generator.archive(user_id, notification_id)

    async def delete(self, user_id: str, notification_id: UUID) -> bool:
        return await self._generator.delete(user_id, notification_id)


@dataclass
class EngineContext:
    """
    Process-wide components.

    Built once at startup by create_app_components and passed by
    reference to request handlers.
    """

    settings: Settings
    storage: EngineStorageInterface
    audit_storage: AuditStorageInterface
    audit_logger: AuditLogger
    plan_cache: PlanCache
    resolver: PlanResolver
    checker: QuotaChecker
    detector: MilestoneDetector
    tracker: StreakTracker
    generator: SmartNotificationGenerator
    summaries: TransactionSummarizer
    health: HealthScorer
    chat: ChatFlow
    goals: GoalFlow
    transactions: TransactionFlow
    engagement: EngagementFlow
    notifications: NotificationFlow
    database: Optional[SqlDatabase] = field(default=None)

    async def start(self) -> None:
        """Create storage structures and seed the plan catalogue."""
        await self.storage.initialize()
        await self.resolver.seed_plans()

    def close(self) -> None:
        if self.database is not None:
            self.database.dispose()


def create_app_components(
    settings: Optional[Settings] = None,
    backend: Optional[str] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> EngineContext:
    """
    Factory function to create all application components.

    Args:
        settings: Defaults to get_settings()
        backend: "memory" or "sql"; defaults to the configured backend
        clock: Time source shared by every component

    Returns:
        EngineContext (call `await context.start()` before use)
    """
    settings = settings or get_settings()
    backend = backend or settings.app.storage_backend
    clock = clock or datetime.now
    configure_logging(settings.app.log_level)

    database = None
    if backend == "sql":
        database = SqlDatabase(settings.database)
        storage = SqlEngineStorage(database)
        audit_storage = SqlAuditStorage(database)
    elif backend == "memory":
        storage = InMemoryEngineStorage()
        audit_storage = InMemoryAuditStorage()
    else:
        raise ValueError(f"Unknown storage backend: {backend}")

    quota_settings = settings.quota
    audit_logger = AuditLogger(audit_storage)
    validator = InputValidator()
    plan_cache = PlanCache(
        ttl_seconds=quota_settings.plan_cache_ttl_seconds,
        maxsize=quota_settings.plan_cache_size,
    )

    resolver = PlanResolver(storage, plan_cache, audit_logger, quota_settings, clock)
    checker = QuotaChecker(storage, resolver, audit_logger, validator, clock)
    detector = MilestoneDetector(storage, audit_logger, clock)
    tracker = StreakTracker(storage, audit_logger, clock)
    generator = SmartNotificationGenerator(
        storage, audit_logger, settings.notifications, clock
    )
    goal_flow = GoalFlow(storage, detector, generator, validator, audit_logger, clock)

    return EngineContext(
        settings=settings,
        storage=storage,
        audit_storage=audit_storage,
        audit_logger=audit_logger,
        plan_cache=plan_cache,
        resolver=resolver,
        checker=checker,
        detector=detector,
        tracker=tracker,
        generator=generator,
        summaries=TransactionSummarizer(storage, clock),
        health=HealthScorer(storage, clock),
        chat=ChatFlow(resolver, checker, audit_logger),
        goals=goal_flow,
        transactions=TransactionFlow(storage, goal_flow, validator, audit_logger, clock),
        engagement=EngagementFlow(tracker),
        notifications=NotificationFlow(generator),
        database=database,
    )
