"""
Audit Logger

DESIGN DECISION: Every quota decision and every side effect of a
mutation (milestone, achievement, notification) is logged.
This provides:
1. Complete traceability
2. Debugging capability for rule evaluators
3. A history of why a user hit a limit

The audit logger:
- Is async to not block main flow
- Gracefully handles failures (a failed audit write never fails a request)
- Supports correlation IDs to trace related events
"""

import logging
from typing import Optional
from uuid import UUID, uuid4

import structlog

from twealth.models.audit import AuditEvent, AuditEventBuilder
from twealth.services.storage import AuditStorageInterface


def configure_logging(level: str = "INFO") -> None:
    """Configure structlog (JSON lines through the stdlib logging module)."""
    log_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", level=log_level)
    logging.getLogger().setLevel(log_level)
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer()
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


class AuditLogger:
    """
    Central audit logging service.

    Logs events both to:
    1. Structured local log (for debugging)
    2. Audit storage (for persistence), when configured
    """

    def __init__(
        self,
        storage: Optional[AuditStorageInterface] = None,
    ):
        """
        Initialize audit logger.

        Args:
            storage: Storage backend for persistence.
                    If None, only logs locally.
        """
        self._storage = storage
        self._logger = structlog.get_logger("twealth.audit")

    async def log(self, event: AuditEvent) -> bool:
        """
        Log an audit event.

        Always logs locally. Persists to storage if available.

        Returns True if storage write succeeded (or no storage configured).
        """
        log_dict = event.to_log_dict()

        if event.severity.value in ("error", "critical"):
            self._logger.error("audit_event", **log_dict)
        elif event.severity.value == "warning":
            self._logger.warning("audit_event", **log_dict)
        elif event.severity.value == "debug":
            self._logger.debug("audit_event", **log_dict)
        else:
            self._logger.info("audit_event", **log_dict)

        if self._storage:
            try:
                return await self._storage.append_event(event)
            except Exception as e:
                # Log failure but don't raise
                self._logger.error(
                    "audit_storage_failed",
                    error=str(e),
                    event_id=str(event.event_id),
                )
                return False

        return True

    async def log_subscription_bootstrapped(
        self,
        user_id: str,
        subscription_id: UUID,
        plan_name: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.subscription_bootstrapped(
            user_id=user_id,
            subscription_id=subscription_id,
            plan_name=plan_name,
            correlation_id=correlation_id,
        ))

    async def log_subscription_changed(
        self,
        user_id: str,
        subscription_id: UUID,
        plan_name: str,
        status: str,
    ) -> None:
        await self.log(AuditEventBuilder.subscription_changed(
            user_id=user_id,
            subscription_id=subscription_id,
            plan_name=plan_name,
            status=status,
        ))

    async def log_plans_seeded(self, plan_names: list[str]) -> None:
        await self.log(AuditEventBuilder.plans_seeded(plan_names))

    async def log_quota_exceeded(
        self,
        user_id: str,
        usage_type: str,
        usage: int,
        limit: int,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a denied quota check."""
        await self.log(AuditEventBuilder.quota_exceeded(
            user_id=user_id,
            usage_type=usage_type,
            usage=usage,
            limit=limit,
            correlation_id=correlation_id,
        ))

    async def log_usage_incremented(
        self,
        user_id: str,
        record_id: UUID,
        usage_type: str,
        amount: int,
        new_value: int,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.usage_incremented(
            user_id=user_id,
            record_id=record_id,
            usage_type=usage_type,
            amount=amount,
            new_value=new_value,
            correlation_id=correlation_id,
        ))

    async def log_usage_reset(self, user_id: str, record_id: UUID) -> None:
        await self.log(AuditEventBuilder.usage_reset(user_id, record_id))

    async def log_add_on_purchased(
        self,
        user_id: str,
        credit_id: UUID,
        add_on_type: str,
        quantity: int,
    ) -> None:
        await self.log(AuditEventBuilder.add_on_purchased(
            user_id=user_id,
            credit_id=credit_id,
            add_on_type=add_on_type,
            quantity=quantity,
        ))

    async def log_goal_created(
        self,
        user_id: str,
        goal_id: UUID,
        title: str,
        target: str,
    ) -> None:
        await self.log(AuditEventBuilder.goal_created(user_id, goal_id, title, target))

    async def log_goal_contribution(
        self,
        user_id: str,
        goal_id: UUID,
        previous: str,
        current: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.goal_contribution(
            user_id=user_id,
            goal_id=goal_id,
            previous=previous,
            current=current,
            correlation_id=correlation_id,
        ))

    async def log_milestone_reached(
        self,
        user_id: str,
        goal_id: UUID,
        milestone: int,
        amount: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a newly recorded goal milestone."""
        await self.log(AuditEventBuilder.milestone_reached(
            user_id=user_id,
            goal_id=goal_id,
            milestone=milestone,
            amount=amount,
            correlation_id=correlation_id,
        ))

    async def log_goal_completed(
        self,
        user_id: str,
        goal_id: UUID,
        trigger: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.goal_completed(
            user_id=user_id,
            goal_id=goal_id,
            trigger=trigger,
            correlation_id=correlation_id,
        ))

    async def log_streak_checked_in(
        self,
        user_id: str,
        new_streak: int,
        increased: bool,
    ) -> None:
        await self.log(AuditEventBuilder.streak_checked_in(user_id, new_streak, increased))

    async def log_achievement_unlocked(self, user_id: str, achievement_id: str) -> None:
        await self.log(AuditEventBuilder.achievement_unlocked(user_id, achievement_id))

    async def log_notification_created(
        self,
        user_id: str,
        notification_id: UUID,
        notification_type: str,
        priority: str,
    ) -> None:
        await self.log(AuditEventBuilder.notification_created(
            user_id=user_id,
            notification_id=notification_id,
            notification_type=notification_type,
            priority=priority,
        ))

    async def log_notification_rule_failed(
        self,
        user_id: str,
        rule: str,
        error_message: str,
    ) -> None:
        """Log a rule evaluator that raised (the rest of the battery still runs)."""
        await self.log(AuditEventBuilder.notification_rule_failed(
            user_id=user_id,
            rule=rule,
            error_message=error_message,
        ))

    async def log_validation_failed(
        self,
        operation: str,
        issues: list[dict],
        user_id: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log validation failure."""
        await self.log(AuditEventBuilder.validation_failed(
            operation=operation,
            issues=issues,
            user_id=user_id,
            correlation_id=correlation_id,
        ))

    async def log_error(
        self,
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log an error."""
        await self.log(AuditEventBuilder.system_error(
            error_type=error_type,
            error_message=error_message,
            details=details,
            correlation_id=correlation_id,
        ))


def create_correlation_id() -> UUID:
    """
    Create a new correlation ID for tracking related events.

    Use this at the start of a new user action (e.g., a chat send).
    Pass it through all subsequent operations.
    """
    return uuid4()
