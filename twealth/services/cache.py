"""
Plan Cache

DESIGN DECISION: Plans are reference data read on every quota check, so
lookups go through a TTL cache. The cache is an explicit object owned by
the engine context and passed to whoever needs it, never module state.
Anything that writes plans must call invalidate().
"""

import threading
from typing import Awaitable, Callable, Optional
from uuid import UUID

import structlog
from cachetools import TTLCache

from twealth.models.subscription import SubscriptionPlan


logger = structlog.get_logger(__name__)


class PlanCache:
    """TTL cache of plans keyed by plan id."""

    def __init__(
        self,
        ttl_seconds: int = 300,
        maxsize: int = 64,
        timer: Optional[Callable[[], float]] = None,
    ):
        if timer is None:
            self._cache: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl_seconds)
        else:
            self._cache = TTLCache(maxsize=maxsize, ttl=ttl_seconds, timer=timer)
        self._enabled = ttl_seconds > 0
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    async def get_or_load(
        self,
        plan_id: UUID,
        loader: Callable[[UUID], Awaitable[Optional[SubscriptionPlan]]],
    ) -> Optional[SubscriptionPlan]:
        """
        Return the cached plan, or load it and cache the result.

        Missing plans are not cached.
        """
        if self._enabled:
            with self._lock:
                plan = self._cache.get(plan_id)
            if plan is not None:
                self.hits += 1
                return plan.model_copy(deep=True)

        self.misses += 1
        plan = await loader(plan_id)
        if plan is not None and self._enabled:
            with self._lock:
                self._cache[plan_id] = plan.model_copy(deep=True)
        return plan

    def invalidate(self, plan_id: Optional[UUID] = None) -> None:
        """Drop one plan, or everything when no id is given."""
        with self._lock:
            if plan_id is None:
                self._cache.clear()
            else:
                self._cache.pop(plan_id, None)
        logger.debug("plan_cache_invalidated", plan_id=str(plan_id) if plan_id else "all")

    def __len__(self) -> int:
        return len(self._cache)
