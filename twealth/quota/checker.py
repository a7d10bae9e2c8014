"""
Quota Checker

CRITICAL: The quota check runs BEFORE any AI call, and the increment
runs only after the call succeeded.

check_usage_limit is a pure read computed fresh on every call:
1. No active subscription → denied (usage 0, limit 0)
2. Free-premium override → allowed with the unlimited sentinel
3. used = counter of the current window's record (0 if none yet)
4. limit = plan base limit + unexpired add-on credits for that type
5. allowed = used < limit

DESIGN DECISION: increment_usage delegates to storage's atomic
increment. The counter is never read, modified and written back here,
so concurrent chat sends for one user cannot lose an increment.
"""

from datetime import datetime
from typing import Callable, Optional
from uuid import UUID

from twealth.audit import AuditLogger
from twealth.models.subscription import (
    AddOnCredit,
    AddOnType,
    ModelTier,
    QuotaStatus,
    SubscriptionUsage,
    UsageRecord,
    UsageType,
)
from twealth.quota.plans import PlanResolver
from twealth.services.storage import NotFoundError, UsageStorageInterface
from twealth.validation import InputValidator


class QuotaExceededError(Exception):
    """
    The user is out of quota for a usage type.

    This is the "upgrade required" signal, distinct from other errors.
    """

    def __init__(self, status: QuotaStatus):
        self.status = status
        self.usage_type = status.usage_type
        self.usage = status.usage
        self.limit = status.limit
        super().__init__(
            f"Upgrade required: {status.usage_type.value} quota used "
            f"{status.usage}/{status.limit}"
        )


class QuotaChecker:
    """
    Checks and counts usage against plan limits.
    """

    def __init__(
        self,
        storage: UsageStorageInterface,
        resolver: PlanResolver,
        audit_logger: Optional[AuditLogger] = None,
        validator: Optional[InputValidator] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._storage = storage
        self._resolver = resolver
        self._audit_logger = audit_logger
        self._validator = validator or InputValidator()
        self._clock = clock or resolver.now

    async def _extra_quota(self, user_id: str, usage_type: UsageType, now: datetime) -> int:
        add_on_type = AddOnType.for_usage_type(usage_type)
        if add_on_type is None:
            return 0
        credits = await self._storage.list_active_credits(user_id, now, add_on_type)
        return sum(credit.quantity for credit in credits)

    async def check_usage_limit(self, user_id: str, usage_type: UsageType) -> QuotaStatus:
        """
        Is the user allowed one more unit of `usage_type`?

        Returns:
            QuotaStatus with allowed/usage/limit
        """
        active = await self._resolver.get_active_subscription(user_id)
        if active is None:
            return QuotaStatus(usage_type=usage_type, allowed=False, usage=0, limit=0)

        now = self._clock()
        window = await self._resolver.quota_window(active, now)
        record = await self._storage.get_usage_record(user_id, window)
        used = record.count_for(usage_type) if record else 0
        unlimited = self._resolver.settings.unlimited_sentinel

        if active.subscription.free_premium:
            return QuotaStatus(usage_type=usage_type, allowed=True, usage=used, limit=unlimited)

        base_limit = active.plan.limit_for(usage_type)
        if base_limit is None:
            # Counted, never limited
            return QuotaStatus(usage_type=usage_type, allowed=True, usage=used, limit=unlimited)

        limit = base_limit + await self._extra_quota(user_id, usage_type, now)
        return QuotaStatus(
            usage_type=usage_type,
            allowed=used < limit,
            usage=used,
            limit=limit,
        )

    async def require_quota(
        self,
        user_id: str,
        usage_type: UsageType,
        correlation_id: Optional[UUID] = None,
    ) -> QuotaStatus:
        """
        Check quota and raise if exhausted.

        Raises:
            QuotaExceededError: If the user is out of quota
        """
        status = await self.check_usage_limit(user_id, usage_type)
        if not status.allowed:
            if self._audit_logger:
                await self._audit_logger.log_quota_exceeded(
                    user_id=user_id,
                    usage_type=usage_type.value,
                    usage=status.usage,
                    limit=status.limit,
                    correlation_id=correlation_id,
                )
            raise QuotaExceededError(status)
        return status

    async def increment_usage(
        self,
        user_id: str,
        usage_type: UsageType,
        amount: int = 1,
        correlation_id: Optional[UUID] = None,
    ) -> UsageRecord:
        """
        Atomically add `amount` to the current window's counter.

        The window's record is created on first use.

        Raises:
            ValidationFailedError: If amount isn't a positive integer
            NotFoundError: If the user has no active subscription
        """
        self._validator.ensure_valid(
            "increment_usage", self._validator.check_count(amount, "amount")
        )

        active = await self._resolver.get_active_subscription(user_id)
        if active is None:
            raise NotFoundError(f"No active subscription for user {user_id}")

        window = await self._resolver.quota_window(active, self._clock())
        record = await self._storage.increment_usage(
            user_id,
            window,
            usage_type.record_field,
            amount,
            subscription_id=active.subscription.id,
        )

        if self._audit_logger:
            await self._audit_logger.log_usage_incremented(
                user_id=user_id,
                record_id=record.id,
                usage_type=usage_type.value,
                amount=amount,
                new_value=record.count_for(usage_type),
                correlation_id=correlation_id,
            )
        return record

    async def increment_model_usage(
        self,
        user_id: str,
        model_tier: ModelTier,
        amount: int = 1,
        correlation_id: Optional[UUID] = None,
    ) -> UsageRecord:
        """Count queries against a model tier."""
        return await self.increment_usage(
            user_id, model_tier.usage_type, amount, correlation_id
        )

    async def reset_usage(self, user_id: str) -> Optional[UsageRecord]:
        """Zero the current window's counters. Returns None if nothing was counted yet."""
        active = await self._resolver.get_active_subscription(user_id)
        if active is None:
            return None

        now = self._clock()
        record = await self._storage.reset_usage(
            user_id, await self._resolver.quota_window(active, now), now
        )
        if record and self._audit_logger:
            await self._audit_logger.log_usage_reset(user_id, record.id)
        return record

    async def get_subscription_with_usage(self, user_id: str) -> Optional[SubscriptionUsage]:
        """Subscription, plan and current-window usage for a user."""
        active = await self._resolver.get_active_subscription(user_id)
        if active is None:
            return None

        window = await self._resolver.quota_window(active, self._clock())
        return SubscriptionUsage(
            subscription=active.subscription,
            plan=active.plan,
            window=window,
            usage=await self._storage.get_usage_record(user_id, window),
        )

    async def add_credit(
        self,
        user_id: str,
        add_on_type: AddOnType,
        quantity: int,
        expires_at: datetime,
    ) -> AddOnCredit:
        """Record a purchased add-on credit."""
        self._validator.ensure_valid(
            "add_credit", self._validator.check_count(quantity, "quantity")
        )

        credit = await self._storage.add_credit(AddOnCredit(
            user_id=user_id,
            add_on_type=add_on_type,
            quantity=quantity,
            purchased_at=self._clock(),
            expires_at=expires_at,
        ))

        if self._audit_logger:
            await self._audit_logger.log_add_on_purchased(
                user_id=user_id,
                credit_id=credit.id,
                add_on_type=add_on_type.value,
                quantity=quantity,
            )
        return credit
