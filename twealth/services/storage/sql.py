"""
SQL Storage Implementation (SQLAlchemy)

DESIGN DECISION: A relational database is the production backend because
the engine's two concurrency guarantees map directly onto it:
- atomic counters become `UPDATE ... SET col = col + :amount`
- idempotent inserts become `INSERT ... ON CONFLICT DO NOTHING` against
  a unique constraint on the natural key

TRADEOFFS:
- Methods are async but run blocking SQLAlchemy sessions inline
  (requests are short and scoped to one user)
- Money is stored as text so Decimal values round-trip exactly on SQLite

The implementation follows the abstract interface, so business logic never
imports SQLAlchemy.
"""

import json
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Optional, TypeVar
from uuid import UUID

import structlog
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    Uuid,
    create_engine,
    delete,
    func,
    select,
    text,
    update,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool
from tenacity import retry, stop_after_attempt, wait_exponential

from twealth.config import DatabaseSettings, get_settings
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
    ConnectionError,
    EngineStorageInterface,
    NotFoundError,
    StorageError,
)


logger = structlog.get_logger(__name__)

Base = declarative_base()

T = TypeVar("T")


class Money(TypeDecorator):
    """Decimal stored as its exact string form."""

    impl = String(32)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return None if value is None else str(value)

    def process_result_value(self, value, dialect):
        return None if value is None else Decimal(value)


# =============================================================================
# TABLES
# =============================================================================

class PlanRow(Base):
    __tablename__ = "subscription_plans"

    id = Column(Uuid, primary_key=True)
    name = Column(String(50), nullable=False, unique=True)
    display_name = Column(String(100), nullable=False)
    description = Column(String(500), nullable=False, default="")
    price_usd = Column(Money, nullable=False)
    billing_interval = Column(String(20), nullable=False)
    ai_chat_limit = Column(Integer, nullable=False, default=0)
    ai_deep_analysis_limit = Column(Integer, nullable=False, default=0)
    scout_limit = Column(Integer, nullable=False, default=0)
    sonnet_limit = Column(Integer, nullable=False, default=0)
    gpt5_limit = Column(Integer, nullable=False, default=0)
    opus_limit = Column(Integer, nullable=False, default=0)
    insights_frequency = Column(String(20), nullable=False)
    is_lifetime_limit = Column(Boolean, nullable=False, default=False)
    features = Column(JSON, nullable=False, default=list)
    is_active = Column(Boolean, nullable=False, default=True)
    sort_order = Column(Integer, nullable=False, default=0)


class SubscriptionRow(Base):
    __tablename__ = "user_subscriptions"

    id = Column(Uuid, primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    plan_id = Column(Uuid, ForeignKey("subscription_plans.id"), nullable=False)
    status = Column(String(20), nullable=False)
    current_period_start = Column(DateTime, nullable=False)
    current_period_end = Column(DateTime, nullable=False)
    cancelled_at = Column(DateTime)
    free_premium = Column(Boolean, nullable=False, default=False)
    billing_customer_id = Column(String(100))
    billing_subscription_id = Column(String(100))
    created_at = Column(DateTime, nullable=False)


class UsageRow(Base):
    __tablename__ = "usage_records"
    __table_args__ = (
        UniqueConstraint("user_id", "period_start", "period_end", name="uq_usage_user_period"),
    )

    id = Column(Uuid, primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    subscription_id = Column(Uuid)
    period_start = Column(DateTime, nullable=False)
    period_end = Column(DateTime, nullable=False)
    chats_used = Column(Integer, nullable=False, default=0)
    deep_analysis_used = Column(Integer, nullable=False, default=0)
    insights_generated = Column(Integer, nullable=False, default=0)
    scout_queries_used = Column(Integer, nullable=False, default=0)
    sonnet_queries_used = Column(Integer, nullable=False, default=0)
    gpt5_queries_used = Column(Integer, nullable=False, default=0)
    opus_queries_used = Column(Integer, nullable=False, default=0)
    last_reset_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False)


class AddOnRow(Base):
    __tablename__ = "subscription_add_ons"

    id = Column(Uuid, primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    add_on_type = Column(String(30), nullable=False)
    quantity = Column(Integer, nullable=False)
    purchased_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)


class GoalRow(Base):
    __tablename__ = "financial_goals"

    id = Column(Uuid, primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    title = Column(String(100), nullable=False)
    category = Column(String(50), nullable=False)
    target_amount = Column(Money, nullable=False)
    current_amount = Column(Money, nullable=False)
    target_date = Column(Date, nullable=False)
    status = Column(String(20), nullable=False)
    created_at = Column(DateTime, nullable=False)


class TransactionRow(Base):
    __tablename__ = "transactions"

    id = Column(Uuid, primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    amount = Column(Money, nullable=False)
    type = Column(String(20), nullable=False)
    category = Column(String(50), nullable=False)
    description = Column(String(200), nullable=False, default="")
    occurred_at = Column(DateTime, nullable=False, index=True)
    goal_id = Column(Uuid)
    created_at = Column(DateTime, nullable=False)


class MilestoneRow(Base):
    __tablename__ = "goal_milestones"
    __table_args__ = (
        UniqueConstraint("goal_id", "milestone", name="uq_goal_milestone"),
    )

    id = Column(Uuid, primary_key=True)
    goal_id = Column(Uuid, nullable=False, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    milestone = Column(Integer, nullable=False)
    amount_at_milestone = Column(Money, nullable=False)
    is_seen = Column(Boolean, nullable=False, default=False)
    celebrated_at = Column(DateTime, nullable=False)


class StreakRow(Base):
    __tablename__ = "user_streaks"

    user_id = Column(String(64), primary_key=True)
    current_streak = Column(Integer, nullable=False, default=0)
    longest_streak = Column(Integer, nullable=False, default=0)
    total_check_ins = Column(Integer, nullable=False, default=0)
    last_check_in = Column(DateTime)
    weekly_progress = Column(JSON, nullable=False)
    updated_at = Column(DateTime)


class AchievementRow(Base):
    __tablename__ = "user_achievements"
    __table_args__ = (
        UniqueConstraint("user_id", "achievement_id", name="uq_user_achievement"),
    )

    id = Column(Uuid, primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    achievement_id = Column(String(50), nullable=False)
    progress = Column(Integer, nullable=False, default=0)
    target = Column(Integer, nullable=False)
    earned_at = Column(DateTime)


class NotificationRow(Base):
    __tablename__ = "notifications"

    id = Column(Uuid, primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    type = Column(String(40), nullable=False, index=True)
    title = Column(String(200), nullable=False)
    message = Column(String(1000), nullable=False)
    priority = Column(String(10), nullable=False)
    category = Column(String(20), nullable=False)
    data = Column(JSON, nullable=False, default=dict)
    action_type = Column(String(50))
    action_data = Column(JSON, nullable=False, default=dict)
    is_read = Column(Boolean, nullable=False, default=False)
    read_at = Column(DateTime)
    is_archived = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, index=True)


class AuditRow(Base):
    __tablename__ = "audit_log"

    event_id = Column(Uuid, primary_key=True)
    timestamp = Column(DateTime(timezone=True), nullable=False)
    event_type = Column(String(50), nullable=False)
    severity = Column(String(10), nullable=False)
    user_id = Column(String(64), index=True)
    entity_type = Column(String(30))
    entity_id = Column(Uuid)
    correlation_id = Column(Uuid, index=True)
    description = Column(String(500), nullable=False)
    details_json = Column(Text, nullable=False, default="")
    error_message = Column(Text)


# =============================================================================
# ROW <-> MODEL CONVERSION
# =============================================================================

def _row_values(model) -> dict[str, Any]:
    """Dump a model to column values (enums as their plain values)."""
    return {
        key: value.value if isinstance(value, Enum) else value
        for key, value in model.model_dump().items()
    }


def _to_model(model_cls: type[T], row) -> T:
    return model_cls.model_validate(
        {column.key: getattr(row, column.key) for column in row.__table__.columns}
    )


def _event_to_model(row: AuditRow) -> AuditEvent:
    return AuditEvent(
        event_id=row.event_id,
        timestamp=row.timestamp,
        event_type=row.event_type,
        severity=row.severity,
        user_id=row.user_id,
        entity_type=row.entity_type,
        entity_id=row.entity_id,
        correlation_id=row.correlation_id,
        description=row.description,
        details=json.loads(row.details_json) if row.details_json else {},
        error_message=row.error_message,
    )


# =============================================================================
# DATABASE CLIENT
# =============================================================================

class SqlDatabase:
    """
    Low-level database wrapper.

    Owns the engine and session factory and provides retry logic for the
    startup connection.
    """

    def __init__(self, settings: Optional[DatabaseSettings] = None):
        self._settings = settings or get_settings().database
        self._engine = None
        self._session_factory: Optional[sessionmaker] = None

    def _create_engine(self):
        url = self._settings.url
        if self._settings.is_sqlite:
            # In-memory SQLite lives in one connection; share it across sessions
            if url in ("sqlite://", "sqlite:///:memory:"):
                return create_engine(
                    url,
                    echo=self._settings.echo,
                    poolclass=StaticPool,
                    connect_args={"check_same_thread": False},
                )
            return create_engine(
                url,
                echo=self._settings.echo,
                connect_args={"check_same_thread": False},
            )
        return create_engine(
            url,
            echo=self._settings.echo,
            pool_size=self._settings.pool_size,
            pool_pre_ping=True,
        )

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def connect(self):
        """
        Establish the database connection.

        Verifies connectivity with a trivial query before handing out sessions.
        """
        if self._engine is None:
            engine = self._create_engine()
            try:
                with engine.connect() as conn:
                    conn.execute(text("SELECT 1"))
            except SQLAlchemyError as e:
                engine.dispose()
                raise ConnectionError(f"Failed to connect to database: {e}")
            self._engine = engine
            self._session_factory = sessionmaker(bind=engine, expire_on_commit=False)
            logger.info("database_connected", dialect=engine.dialect.name)
        return self._engine

    def create_schema(self) -> None:
        """Create all tables that don't exist yet."""
        Base.metadata.create_all(self.connect())

    def transaction(self):
        """Session context manager that commits on success and rolls back on error."""
        self.connect()
        return self._session_factory.begin()

    def dispose(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
            self._session_factory = None


def _insert_if_absent(
    session: Session,
    row_cls,
    values: dict[str, Any],
    conflict_columns: list[str],
) -> bool:
    """
    INSERT ... ON CONFLICT DO NOTHING keyed by `conflict_columns`.

    Returns True if a row was inserted.
    """
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert as dialect_insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert as dialect_insert
    else:
        try:
            with session.begin_nested():
                session.add(row_cls(**values))
            return True
        except IntegrityError:
            return False

    stmt = dialect_insert(row_cls).values(**values).on_conflict_do_nothing(
        index_elements=conflict_columns
    )
    return session.execute(stmt).rowcount == 1


# =============================================================================
# STORAGE
# =============================================================================

class SqlEngineStorage(EngineStorageInterface):
    """
    SQLAlchemy implementation of engine storage.

    Every method runs in its own transaction. SQLAlchemy failures are
    logged and re-raised as StorageError.
    """

    def __init__(self, database: Optional[SqlDatabase] = None):
        self._db = database or SqlDatabase()

    async def initialize(self) -> None:
        self._db.create_schema()

    def _run(self, action: str, work: Callable[[Session], T]) -> T:
        try:
            with self._db.transaction() as session:
                return work(session)
        except (NotFoundError, ConnectionError):
            raise
        except SQLAlchemyError as e:
            logger.error("storage_operation_failed", action=action, error=str(e))
            raise StorageError(f"Failed to {action}: {e}") from e

    # ===== PLANS & SUBSCRIPTIONS =====

    async def save_plan(self, plan: SubscriptionPlan) -> SubscriptionPlan:
        def work(session: Session) -> SubscriptionPlan:
            values = _row_values(plan)
            row = session.execute(
                select(PlanRow).where(PlanRow.name == plan.name)
            ).scalar_one_or_none()
            if row is None:
                row = PlanRow(**values)
                session.add(row)
            else:
                values.pop("id")
                for key, value in values.items():
                    setattr(row, key, value)
            session.flush()
            return _to_model(SubscriptionPlan, row)

        return self._run("save plan", work)

    async def get_plan(self, plan_id: UUID) -> Optional[SubscriptionPlan]:
        def work(session: Session) -> Optional[SubscriptionPlan]:
            row = session.get(PlanRow, plan_id)
            return _to_model(SubscriptionPlan, row) if row else None

        return self._run("get plan", work)

    async def get_plan_by_name(self, name: str) -> Optional[SubscriptionPlan]:
        def work(session: Session) -> Optional[SubscriptionPlan]:
            row = session.execute(
                select(PlanRow).where(PlanRow.name == name.strip().lower())
            ).scalar_one_or_none()
            return _to_model(SubscriptionPlan, row) if row else None

        return self._run("get plan by name", work)

    async def list_plans(self, active_only: bool = True) -> list[SubscriptionPlan]:
        def work(session: Session) -> list[SubscriptionPlan]:
            stmt = select(PlanRow).order_by(PlanRow.sort_order)
            if active_only:
                stmt = stmt.where(PlanRow.is_active.is_(True))
            return [_to_model(SubscriptionPlan, r) for r in session.execute(stmt).scalars()]

        return self._run("list plans", work)

    async def create_subscription(self, subscription: Subscription) -> Subscription:
        def work(session: Session) -> Subscription:
            session.add(SubscriptionRow(**_row_values(subscription)))
            return subscription.model_copy(deep=True)

        return self._run("create subscription", work)

    async def get_active_subscription(self, user_id: str) -> Optional[Subscription]:
        def work(session: Session) -> Optional[Subscription]:
            row = session.execute(
                select(SubscriptionRow)
                .where(
                    SubscriptionRow.user_id == user_id,
                    SubscriptionRow.status == SubscriptionStatus.ACTIVE.value,
                )
                .order_by(SubscriptionRow.created_at.desc())
                .limit(1)
            ).scalar_one_or_none()
            return _to_model(Subscription, row) if row else None

        return self._run("get active subscription", work)

    async def get_first_subscription(self, user_id: str) -> Optional[Subscription]:
        def work(session: Session) -> Optional[Subscription]:
            row = session.execute(
                select(SubscriptionRow)
                .where(SubscriptionRow.user_id == user_id)
                .order_by(SubscriptionRow.created_at.asc())
                .limit(1)
            ).scalar_one_or_none()
            return _to_model(Subscription, row) if row else None

        return self._run("get first subscription", work)

    async def update_subscription(self, subscription: Subscription) -> Subscription:
        def work(session: Session) -> Subscription:
            row = session.get(SubscriptionRow, subscription.id)
            if row is None:
                raise NotFoundError(f"Subscription not found: {subscription.id}")
            for key, value in _row_values(subscription).items():
                setattr(row, key, value)
            return subscription.model_copy(deep=True)

        return self._run("update subscription", work)

    # ===== USAGE =====

    @staticmethod
    def _usage_filter(user_id: str, window: QuotaWindow):
        return (
            UsageRow.user_id == user_id,
            UsageRow.period_start == window.start,
            UsageRow.period_end == window.end,
        )

    async def get_usage_record(
        self,
        user_id: str,
        window: QuotaWindow,
    ) -> Optional[UsageRecord]:
        def work(session: Session) -> Optional[UsageRecord]:
            row = session.execute(
                select(UsageRow).where(*self._usage_filter(user_id, window))
            ).scalar_one_or_none()
            return _to_model(UsageRecord, row) if row else None

        return self._run("get usage record", work)

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

        def work(session: Session) -> UsageRecord:
            fresh = UsageRecord(
                user_id=user_id,
                subscription_id=subscription_id,
                period_start=window.start,
                period_end=window.end,
            )
            _insert_if_absent(
                session,
                UsageRow,
                _row_values(fresh),
                ["user_id", "period_start", "period_end"],
            )
            column = getattr(UsageRow, field)
            session.execute(
                update(UsageRow)
                .where(*self._usage_filter(user_id, window))
                .values({column: column + amount})
                .execution_options(synchronize_session=False)
            )
            row = session.execute(
                select(UsageRow)
                .where(*self._usage_filter(user_id, window))
                .execution_options(populate_existing=True)
            ).scalar_one()
            return _to_model(UsageRecord, row)

        return self._run("increment usage", work)

    async def reset_usage(
        self,
        user_id: str,
        window: QuotaWindow,
        reset_at: datetime,
    ) -> Optional[UsageRecord]:
        def work(session: Session) -> Optional[UsageRecord]:
            row = session.execute(
                select(UsageRow).where(*self._usage_filter(user_id, window))
            ).scalar_one_or_none()
            if row is None:
                return None
            for field in USAGE_COUNTER_FIELDS:
                setattr(row, field, 0)
            row.last_reset_at = reset_at
            session.flush()
            return _to_model(UsageRecord, row)

        return self._run("reset usage", work)

    async def add_credit(self, credit: AddOnCredit) -> AddOnCredit:
        def work(session: Session) -> AddOnCredit:
            session.add(AddOnRow(**_row_values(credit)))
            return credit.model_copy(deep=True)

        return self._run("add credit", work)

    async def list_active_credits(
        self,
        user_id: str,
        now: datetime,
        add_on_type: Optional[AddOnType] = None,
    ) -> list[AddOnCredit]:
        def work(session: Session) -> list[AddOnCredit]:
            stmt = select(AddOnRow).where(
                AddOnRow.user_id == user_id,
                AddOnRow.is_active.is_(True),
                AddOnRow.expires_at >= now,
            )
            if add_on_type is not None:
                stmt = stmt.where(AddOnRow.add_on_type == add_on_type.value)
            return [_to_model(AddOnCredit, r) for r in session.execute(stmt).scalars()]

        return self._run("list add-on credits", work)

    # ===== GOALS & TRANSACTIONS =====

    async def create_goal(self, goal: FinancialGoal) -> FinancialGoal:
        def work(session: Session) -> FinancialGoal:
            session.add(GoalRow(**_row_values(goal)))
            return goal.model_copy(deep=True)

        return self._run("create goal", work)

    async def get_goal(self, goal_id: UUID) -> Optional[FinancialGoal]:
        def work(session: Session) -> Optional[FinancialGoal]:
            row = session.get(GoalRow, goal_id)
            return _to_model(FinancialGoal, row) if row else None

        return self._run("get goal", work)

    async def update_goal(self, goal: FinancialGoal) -> FinancialGoal:
        def work(session: Session) -> FinancialGoal:
            row = session.get(GoalRow, goal.id)
            if row is None:
                raise NotFoundError(f"Goal not found: {goal.id}")
            for key, value in _row_values(goal).items():
                setattr(row, key, value)
            return goal.model_copy(deep=True)

        return self._run("update goal", work)

    async def list_goals(
        self,
        user_id: str,
        status: Optional[GoalStatus] = None,
    ) -> list[FinancialGoal]:
        def work(session: Session) -> list[FinancialGoal]:
            stmt = (
                select(GoalRow)
                .where(GoalRow.user_id == user_id)
                .order_by(GoalRow.created_at)
            )
            if status is not None:
                stmt = stmt.where(GoalRow.status == status.value)
            return [_to_model(FinancialGoal, r) for r in session.execute(stmt).scalars()]

        return self._run("list goals", work)

    async def add_transaction(self, transaction: Transaction) -> Transaction:
        def work(session: Session) -> Transaction:
            session.add(TransactionRow(**_row_values(transaction)))
            return transaction.model_copy(deep=True)

        return self._run("add transaction", work)

    async def list_transactions(
        self,
        user_id: str,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        transaction_type: Optional[TransactionType] = None,
    ) -> list[Transaction]:
        def work(session: Session) -> list[Transaction]:
            stmt = (
                select(TransactionRow)
                .where(TransactionRow.user_id == user_id)
                .order_by(TransactionRow.occurred_at.desc())
            )
            if since is not None:
                stmt = stmt.where(TransactionRow.occurred_at >= since)
            if until is not None:
                stmt = stmt.where(TransactionRow.occurred_at <= until)
            if transaction_type is not None:
                stmt = stmt.where(TransactionRow.type == transaction_type.value)
            return [_to_model(Transaction, r) for r in session.execute(stmt).scalars()]

        return self._run("list transactions", work)

    # ===== MILESTONES =====

    async def list_milestones(self, goal_id: UUID) -> list[GoalMilestone]:
        def work(session: Session) -> list[GoalMilestone]:
            stmt = (
                select(MilestoneRow)
                .where(MilestoneRow.goal_id == goal_id)
                .order_by(MilestoneRow.milestone)
            )
            return [_to_model(GoalMilestone, r) for r in session.execute(stmt).scalars()]

        return self._run("list milestones", work)

    async def insert_milestone_if_absent(
        self,
        milestone: GoalMilestone,
    ) -> Optional[GoalMilestone]:
        def work(session: Session) -> Optional[GoalMilestone]:
            inserted = _insert_if_absent(
                session,
                MilestoneRow,
                _row_values(milestone),
                ["goal_id", "milestone"],
            )
            return milestone.model_copy(deep=True) if inserted else None

        return self._run("insert milestone", work)

    async def list_user_milestones(
        self,
        user_id: str,
        unseen_only: bool = False,
    ) -> list[GoalMilestone]:
        def work(session: Session) -> list[GoalMilestone]:
            stmt = (
                select(MilestoneRow)
                .where(MilestoneRow.user_id == user_id)
                .order_by(MilestoneRow.celebrated_at.desc())
            )
            if unseen_only:
                stmt = stmt.where(MilestoneRow.is_seen.is_(False))
            return [_to_model(GoalMilestone, r) for r in session.execute(stmt).scalars()]

        return self._run("list user milestones", work)

    async def mark_milestones_seen(
        self,
        user_id: str,
        goal_id: Optional[UUID] = None,
    ) -> int:
        def work(session: Session) -> int:
            stmt = update(MilestoneRow).where(
                MilestoneRow.user_id == user_id,
                MilestoneRow.is_seen.is_(False),
            )
            if goal_id is not None:
                stmt = stmt.where(MilestoneRow.goal_id == goal_id)
            return session.execute(stmt.values(is_seen=True)).rowcount

        return self._run("mark milestones seen", work)

    # ===== STREAKS & ACHIEVEMENTS =====

    async def get_streak(self, user_id: str) -> Optional[UserStreak]:
        def work(session: Session) -> Optional[UserStreak]:
            row = session.get(StreakRow, user_id)
            return _to_model(UserStreak, row) if row else None

        return self._run("get streak", work)

    async def save_streak(self, streak: UserStreak) -> UserStreak:
        def work(session: Session) -> UserStreak:
            session.merge(StreakRow(**_row_values(streak)))
            return streak.model_copy(deep=True)

        return self._run("save streak", work)

    async def list_achievements(self, user_id: str) -> list[UserAchievement]:
        def work(session: Session) -> list[UserAchievement]:
            stmt = (
                select(AchievementRow)
                .where(AchievementRow.user_id == user_id)
                .order_by(AchievementRow.achievement_id)
            )
            return [_to_model(UserAchievement, r) for r in session.execute(stmt).scalars()]

        return self._run("list achievements", work)

    async def unlock_achievement(
        self,
        user_id: str,
        achievement_id: str,
        progress: int,
        target: int,
        earned_at: datetime,
    ) -> bool:
        def work(session: Session) -> bool:
            earned = UserAchievement(
                user_id=user_id,
                achievement_id=achievement_id,
                progress=progress,
                target=target,
                earned_at=earned_at,
            )
            if _insert_if_absent(
                session,
                AchievementRow,
                _row_values(earned),
                ["user_id", "achievement_id"],
            ):
                return True
            # Consume-once: only a row without earned_at can be flipped
            result = session.execute(
                update(AchievementRow)
                .where(
                    AchievementRow.user_id == user_id,
                    AchievementRow.achievement_id == achievement_id,
                    AchievementRow.earned_at.is_(None),
                )
                .values(progress=progress, earned_at=earned_at)
            )
            return result.rowcount == 1

        return self._run("unlock achievement", work)

    async def upsert_achievement_progress(
        self,
        user_id: str,
        achievement_id: str,
        progress: int,
        target: int,
    ) -> None:
        def work(session: Session) -> None:
            pending = UserAchievement(
                user_id=user_id,
                achievement_id=achievement_id,
                progress=progress,
                target=target,
            )
            if not _insert_if_absent(
                session,
                AchievementRow,
                _row_values(pending),
                ["user_id", "achievement_id"],
            ):
                session.execute(
                    update(AchievementRow)
                    .where(
                        AchievementRow.user_id == user_id,
                        AchievementRow.achievement_id == achievement_id,
                        AchievementRow.earned_at.is_(None),
                    )
                    .values(progress=progress)
                )

        self._run("record achievement progress", work)

    # ===== NOTIFICATIONS =====

    async def create_notification(self, notification: Notification) -> Notification:
        def work(session: Session) -> Notification:
            session.add(NotificationRow(**_row_values(notification)))
            return notification.model_copy(deep=True)

        return self._run("create notification", work)

    async def has_recent_notification(
        self,
        user_id: str,
        notification_type: NotificationType,
        since: datetime,
    ) -> bool:
        def work(session: Session) -> bool:
            count = session.execute(
                select(func.count())
                .select_from(NotificationRow)
                .where(
                    NotificationRow.user_id == user_id,
                    NotificationRow.type == notification_type.value,
                    NotificationRow.created_at >= since,
                )
            ).scalar_one()
            return count > 0

        return self._run("check recent notification", work)

    async def list_recent_notifications(
        self,
        user_id: str,
        notification_type: NotificationType,
        since: datetime,
    ) -> list[Notification]:
        def work(session: Session) -> list[Notification]:
            rows = session.execute(
                select(NotificationRow)
                .where(
                    NotificationRow.user_id == user_id,
                    NotificationRow.type == notification_type.value,
                    NotificationRow.created_at >= since,
                )
                .order_by(NotificationRow.created_at.desc())
            ).scalars()
            return [_to_model(Notification, r) for r in rows]

        return self._run("list recent notifications", work)

    async def list_notifications(
        self,
        user_id: str,
        limit: int = 50,
        offset: int = 0,
        include_read: bool = True,
    ) -> list[Notification]:
        def work(session: Session) -> list[Notification]:
            stmt = (
                select(NotificationRow)
                .where(
                    NotificationRow.user_id == user_id,
                    NotificationRow.is_archived.is_(False),
                )
                .order_by(NotificationRow.created_at.desc())
                .offset(offset)
                .limit(limit)
            )
            if not include_read:
                stmt = stmt.where(NotificationRow.is_read.is_(False))
            return [_to_model(Notification, r) for r in session.execute(stmt).scalars()]

        return self._run("list notifications", work)

    async def count_unread(self, user_id: str) -> int:
        def work(session: Session) -> int:
            return session.execute(
                select(func.count())
                .select_from(NotificationRow)
                .where(
                    NotificationRow.user_id == user_id,
                    NotificationRow.is_read.is_(False),
                    NotificationRow.is_archived.is_(False),
                )
            ).scalar_one()

        return self._run("count unread notifications", work)

    async def mark_notification_read(
        self,
        user_id: str,
        notification_id: UUID,
        read_at: datetime,
    ) -> bool:
        def work(session: Session) -> bool:
            result = session.execute(
                update(NotificationRow)
                .where(
                    NotificationRow.id == notification_id,
                    NotificationRow.user_id == user_id,
                )
                .values(is_read=True, read_at=read_at)
            )
            return result.rowcount == 1

        return self._run("mark notification read", work)

    async def mark_all_read(self, user_id: str, read_at: datetime) -> int:
        def work(session: Session) -> int:
            result = session.execute(
                update(NotificationRow)
                .where(
                    NotificationRow.user_id == user_id,
                    NotificationRow.is_read.is_(False),
                )
                .values(is_read=True, read_at=read_at)
            )
            return result.rowcount

        return self._run("mark all notifications read", work)

    async def archive_notification(self, user_id: str, notification_id: UUID) -> bool:
        def work(session: Session) -> bool:
            result = session.execute(
                update(NotificationRow)
                .where(
                    NotificationRow.id == notification_id,
                    NotificationRow.user_id == user_id,
                )
                .values(is_archived=True)
            )
            return result.rowcount == 1

        return self._run("archive notification", work)

    async def delete_notification(self, user_id: str, notification_id: UUID) -> bool:
        def work(session: Session) -> bool:
            result = session.execute(
                delete(NotificationRow).where(
                    NotificationRow.id == notification_id,
                    NotificationRow.user_id == user_id,
                )
            )
            return result.rowcount == 1

        return self._run("delete notification", work)


class SqlAuditStorage(AuditStorageInterface):
    """Audit trail in the `audit_log` table."""

    def __init__(self, database: Optional[SqlDatabase] = None):
        self._db = database or SqlDatabase()

    async def append_event(self, event: AuditEvent) -> bool:
        try:
            with self._db.transaction() as session:
                session.add(AuditRow(**event.to_row()))
            return True
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to append audit event: {e}") from e

    async def get_events(
        self,
        user_id: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        try:
            with self._db.transaction() as session:
                stmt = select(AuditRow).order_by(AuditRow.timestamp.desc()).limit(limit)
                if user_id is not None:
                    stmt = stmt.where(AuditRow.user_id == user_id)
                if correlation_id is not None:
                    stmt = stmt.where(AuditRow.correlation_id == correlation_id)
                return [_event_to_model(r) for r in session.execute(stmt).scalars()]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to read audit events: {e}") from e
