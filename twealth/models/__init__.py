"""
Data Models Package

This package contains all Pydantic models used by the Twealth engine.
All data flowing through the engine must conform to these schemas.
"""

from twealth.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)
from twealth.models.engagement import (
    CheckInResult,
    Notification,
    NotificationCategory,
    NotificationPriority,
    NotificationType,
    UserAchievement,
    UserStreak,
)
from twealth.models.finance import (
    MILESTONE_THRESHOLDS,
    FinancialGoal,
    GoalMilestone,
    GoalProgressReport,
    GoalStatus,
    MilestoneLevel,
    Transaction,
    TransactionType,
    to_money,
)
from twealth.models.subscription import (
    UNLIMITED,
    ActiveSubscription,
    AddOnCredit,
    AddOnType,
    BillingInterval,
    ModelTier,
    QuotaStatus,
    QuotaWindow,
    Subscription,
    SubscriptionPlan,
    SubscriptionStatus,
    SubscriptionUsage,
    UsageRecord,
    UsageType,
)
from twealth.models.insights import (
    HealthComponent,
    HealthScore,
    SpendingVolatility,
    TransactionSummary,
)
from twealth.models.validation import ValidationIssue

__all__ = [
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
    # Engagement models
    "CheckInResult",
    "Notification",
    "NotificationCategory",
    "NotificationPriority",
    "NotificationType",
    "UserAchievement",
    "UserStreak",
    # Finance models
    "MILESTONE_THRESHOLDS",
    "FinancialGoal",
    "GoalMilestone",
    "GoalProgressReport",
    "GoalStatus",
    "MilestoneLevel",
    "Transaction",
    "TransactionType",
    "to_money",
    # Insight models
    "HealthComponent",
    "HealthScore",
    "SpendingVolatility",
    "TransactionSummary",
    # Subscription models
    "UNLIMITED",
    "ActiveSubscription",
    "AddOnCredit",
    "AddOnType",
    "BillingInterval",
    "ModelTier",
    "QuotaStatus",
    "QuotaWindow",
    "Subscription",
    "SubscriptionPlan",
    "SubscriptionStatus",
    "SubscriptionUsage",
    "UsageRecord",
    "UsageType",
    # Validation
    "ValidationIssue",
]
