"""Services package."""

from twealth.services.cache import PlanCache
from twealth.services.storage import (
    AuditStorageInterface,
    ConnectionError,
    DuplicateError,
    EngineStorageInterface,
    InMemoryAuditStorage,
    InMemoryEngineStorage,
    NotFoundError,
    SqlAuditStorage,
    SqlDatabase,
    SqlEngineStorage,
    StorageError,
)

__all__ = [
    # Cache
    "PlanCache",
    # Storage services
    "AuditStorageInterface",
    "ConnectionError",
    "DuplicateError",
    "EngineStorageInterface",
    "InMemoryAuditStorage",
    "InMemoryEngineStorage",
    "NotFoundError",
    "SqlAuditStorage",
    "SqlDatabase",
    "SqlEngineStorage",
    "StorageError",
]
