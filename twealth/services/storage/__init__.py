"""
Storage Services Package

Provides the abstract storage contract and its two implementations:
in-memory (tests, local development) and SQL (production).
"""

from twealth.services.storage.interface import (
    AuditStorageInterface,
    ConnectionError,
    DuplicateError,
    EngineStorageInterface,
    GoalStorageInterface,
    NotFoundError,
    NotificationStorageInterface,
    PlanStorageInterface,
    StorageError,
    StreakStorageInterface,
    UsageStorageInterface,
)
from twealth.services.storage.memory import (
    InMemoryAuditStorage,
    InMemoryEngineStorage,
)
from twealth.services.storage.sql import (
    SqlAuditStorage,
    SqlDatabase,
    SqlEngineStorage,
)

__all__ = [
    # Interfaces
    "AuditStorageInterface",
    "EngineStorageInterface",
    "GoalStorageInterface",
    "NotificationStorageInterface",
    "PlanStorageInterface",
    "StreakStorageInterface",
    "UsageStorageInterface",
    # Exceptions
    "ConnectionError",
    "DuplicateError",
    "NotFoundError",
    "StorageError",
    # In-memory implementation
    "InMemoryAuditStorage",
    "InMemoryEngineStorage",
    # SQL implementation
    "SqlAuditStorage",
    "SqlDatabase",
    "SqlEngineStorage",
]
