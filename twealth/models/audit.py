"""
Audit Models for the Twealth Engine

Every quota decision, counter change, milestone and notification is
recorded as an audit event. This provides:
1. Traceability of why a user was (or was not) allowed an AI call
2. Debugging information when a rule misbehaves
3. Ability to reconstruct how a streak or goal reached its state

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.
"""

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuditEventType(str, Enum):
    """
    Types of events we audit.

    Each component of the engine has its own event types.
    """
    # Subscriptions
    SUBSCRIPTION_BOOTSTRAPPED = "subscription_bootstrapped"
    SUBSCRIPTION_CHANGED = "subscription_changed"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    PLANS_SEEDED = "plans_seeded"

    # Quota
    QUOTA_EXCEEDED = "quota_exceeded"
    USAGE_INCREMENTED = "usage_incremented"
    USAGE_RESET = "usage_reset"
    ADD_ON_PURCHASED = "add_on_purchased"

    # Goals
    GOAL_CREATED = "goal_created"
    GOAL_CONTRIBUTION = "goal_contribution"
    MILESTONE_REACHED = "milestone_reached"
    GOAL_COMPLETED = "goal_completed"

    # Streaks
    STREAK_CHECKED_IN = "streak_checked_in"
    ACHIEVEMENT_UNLOCKED = "achievement_unlocked"

    # Notifications
    NOTIFICATION_CREATED = "notification_created"
    NOTIFICATION_RULE_FAILED = "notification_rule_failed"

    # Validation
    VALIDATION_FAILED = "validation_failed"

    # System events
    SYSTEM_ERROR = "system_error"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    A single audit event.

    This is the core unit of our audit trail.
    """

    # Identity
    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    timestamp: datetime = Field(
        default_factory=_utcnow,
        description="When the event occurred (UTC)"
    )

    # Event classification
    event_type: AuditEventType = Field(
        ...,
        description="Type of event"
    )
    severity: AuditSeverity = Field(
        default=AuditSeverity.INFO,
        description="Event severity"
    )

    # Context - who and what is this about?
    user_id: Optional[str] = Field(
        default=None,
        description="User the event concerns"
    )
    entity_type: Optional[str] = Field(
        default=None,
        description="Type of entity (e.g., 'goal', 'usage', 'notification')"
    )
    entity_id: Optional[UUID] = Field(
        default=None,
        description="ID of the entity this event relates to"
    )

    # Correlation - for tracking related events
    correlation_id: Optional[UUID] = Field(
        default=None,
        description="ID to correlate related events (e.g., all events in one chat send)"
    )

    description: str = Field(
        ...,
        max_length=500,
        description="Human-readable description of what happened"
    )
    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Additional event-specific data"
    )

    # Error information (if applicable)
    error_message: Optional[str] = None

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "user_id": self.user_id,
            "entity_type": self.entity_type,
            "entity_id": str(self.entity_id) if self.entity_id else None,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": self.details,
            "error_message": self.error_message,
        }

    def to_row(self) -> dict:
        """
        Convert to a flat row for relational storage.

        Details are JSON-encoded; everything else is a scalar column.
        """
        row = self.to_log_dict()
        row["event_id"] = self.event_id
        row["timestamp"] = self.timestamp
        row["entity_id"] = self.entity_id
        row["correlation_id"] = self.correlation_id
        row["details_json"] = json.dumps(self.details, default=str) if self.details else ""
        del row["details"]
        return row


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.quota_exceeded(user_id, "chats", 50, 50)
        event = AuditEventBuilder.milestone_reached(user_id, goal_id, 25, "240.00")
    """

    @staticmethod
    def subscription_bootstrapped(
        user_id: str,
        subscription_id: UUID,
        plan_name: str,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SUBSCRIPTION_BOOTSTRAPPED,
            user_id=user_id,
            entity_type="subscription",
            entity_id=subscription_id,
            correlation_id=correlation_id,
            description=f"Default subscription created on plan '{plan_name}'",
            details={"plan": plan_name},
        )

    @staticmethod
    def subscription_changed(
        user_id: str,
        subscription_id: UUID,
        plan_name: str,
        status: str,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        event_type = (
            AuditEventType.SUBSCRIPTION_CANCELLED
            if status == "cancelled"
            else AuditEventType.SUBSCRIPTION_CHANGED
        )
        return AuditEvent(
            event_type=event_type,
            user_id=user_id,
            entity_type="subscription",
            entity_id=subscription_id,
            correlation_id=correlation_id,
            description=f"Subscription {status} on plan '{plan_name}'",
            details={"plan": plan_name, "status": status},
        )

    @staticmethod
    def plans_seeded(plan_names: list[str]) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.PLANS_SEEDED,
            entity_type="plan",
            description=f"Seeded {len(plan_names)} subscription plans",
            details={"plans": plan_names},
        )

    @staticmethod
    def quota_exceeded(
        user_id: str,
        usage_type: str,
        usage: int,
        limit: int,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.QUOTA_EXCEEDED,
            severity=AuditSeverity.WARNING,
            user_id=user_id,
            entity_type="usage",
            correlation_id=correlation_id,
            description=f"Quota exceeded for {usage_type}: {usage}/{limit}",
            details={
                "usage_type": usage_type,
                "usage": usage,
                "limit": limit,
            },
        )

    @staticmethod
    def usage_incremented(
        user_id: str,
        record_id: UUID,
        usage_type: str,
        amount: int,
        new_value: int,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.USAGE_INCREMENTED,
            severity=AuditSeverity.DEBUG,
            user_id=user_id,
            entity_type="usage",
            entity_id=record_id,
            correlation_id=correlation_id,
            description=f"{usage_type} +{amount} (now {new_value})",
            details={
                "usage_type": usage_type,
                "amount": amount,
                "new_value": new_value,
            },
        )

    @staticmethod
    def usage_reset(user_id: str, record_id: UUID) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.USAGE_RESET,
            user_id=user_id,
            entity_type="usage",
            entity_id=record_id,
            description="Usage counters reset for the current period",
        )

    @staticmethod
    def add_on_purchased(
        user_id: str,
        credit_id: UUID,
        add_on_type: str,
        quantity: int
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ADD_ON_PURCHASED,
            user_id=user_id,
            entity_type="add_on",
            entity_id=credit_id,
            description=f"Add-on {add_on_type} x{quantity} recorded",
            details={"add_on_type": add_on_type, "quantity": quantity},
        )

    @staticmethod
    def goal_created(user_id: str, goal_id: UUID, title: str, target: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.GOAL_CREATED,
            user_id=user_id,
            entity_type="goal",
            entity_id=goal_id,
            description=f"Goal created: {title} (target {target})",
            details={"title": title, "target_amount": target},
        )

    @staticmethod
    def goal_contribution(
        user_id: str,
        goal_id: UUID,
        previous: str,
        current: str,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.GOAL_CONTRIBUTION,
            user_id=user_id,
            entity_type="goal",
            entity_id=goal_id,
            correlation_id=correlation_id,
            description=f"Goal amount changed {previous} -> {current}",
            details={"previous_amount": previous, "current_amount": current},
        )

    @staticmethod
    def milestone_reached(
        user_id: str,
        goal_id: UUID,
        milestone: int,
        amount: str,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.MILESTONE_REACHED,
            user_id=user_id,
            entity_type="goal",
            entity_id=goal_id,
            correlation_id=correlation_id,
            description=f"Goal reached {milestone}% at {amount}",
            details={"milestone": milestone, "amount_at_milestone": amount},
        )

    @staticmethod
    def goal_completed(
        user_id: str,
        goal_id: UUID,
        trigger: str,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.GOAL_COMPLETED,
            user_id=user_id,
            entity_type="goal",
            entity_id=goal_id,
            correlation_id=correlation_id,
            description=f"Goal marked completed ({trigger})",
            details={"trigger": trigger},
        )

    @staticmethod
    def streak_checked_in(
        user_id: str,
        new_streak: int,
        increased: bool
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.STREAK_CHECKED_IN,
            user_id=user_id,
            entity_type="streak",
            description=f"Check-in: streak {new_streak}" + ("" if increased else " (already checked in)"),
            details={"new_streak": new_streak, "streak_increased": increased},
        )

    @staticmethod
    def achievement_unlocked(user_id: str, achievement_id: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ACHIEVEMENT_UNLOCKED,
            user_id=user_id,
            entity_type="achievement",
            description=f"Achievement unlocked: {achievement_id}",
            details={"achievement_id": achievement_id},
        )

    @staticmethod
    def notification_created(
        user_id: str,
        notification_id: UUID,
        notification_type: str,
        priority: str
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.NOTIFICATION_CREATED,
            user_id=user_id,
            entity_type="notification",
            entity_id=notification_id,
            description=f"Notification created: {notification_type} ({priority})",
            details={"type": notification_type, "priority": priority},
        )

    @staticmethod
    def notification_rule_failed(
        user_id: str,
        rule: str,
        error_message: str
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.NOTIFICATION_RULE_FAILED,
            severity=AuditSeverity.ERROR,
            user_id=user_id,
            entity_type="notification",
            description=f"Notification rule failed: {rule}",
            error_message=error_message,
            details={"rule": rule},
        )

    @staticmethod
    def validation_failed(
        operation: str,
        issues: list[dict],
        user_id: Optional[str] = None,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.VALIDATION_FAILED,
            severity=AuditSeverity.WARNING,
            user_id=user_id,
            correlation_id=correlation_id,
            description=f"Validation failed for {operation} with {len(issues)} issues",
            details={"operation": operation, "issues": issues},
        )

    @staticmethod
    def system_error(
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYSTEM_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"System error: {error_type}",
            error_message=error_message,
            details=details or {},
            correlation_id=correlation_id,
        )
