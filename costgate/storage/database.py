"""Database models and connection management."""

from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Generator, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    create_engine,
)
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from costgate.core.scopes import as_utc

Base = declarative_base()


def to_db_time(when: Optional[datetime]) -> Optional[datetime]:
    """Aware datetime -> naive UTC, the form stored in every DateTime column."""
    if when is None:
        return None
    return as_utc(when).replace(tzinfo=None)


def from_db_time(when: Optional[datetime]) -> Optional[datetime]:
    if when is None:
        return None
    return when.replace(tzinfo=timezone.utc)


def _now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class PriceEntryRow(Base):
    """Dynamic pricing feed. Insert-only; newer effective dates supersede older rows."""

    __tablename__ = "price_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    provider = Column(String, nullable=False)
    model = Column(String, nullable=False)
    unit = Column(String, nullable=False)
    input_rate = Column(Float, nullable=False)
    output_rate = Column(Float, nullable=False)
    currency = Column(String, nullable=False, default="USD")
    effective_date = Column(Date, nullable=False)
    created_at = Column(DateTime, nullable=False, default=_now)

    __table_args__ = (
        Index("ix_price_entries_lookup", "provider", "model", "effective_date"),
    )

    def __repr__(self) -> str:
        return (
            f"<PriceEntryRow({self.provider}/{self.model}, unit={self.unit}, "
            f"effective={self.effective_date})>"
        )


class BudgetScopeRow(Base):
    """Configured scope and its optional (wider) parent."""

    __tablename__ = "budget_scopes"

    kind = Column(String, primary_key=True)
    identifier = Column(String, primary_key=True)
    parent_kind = Column(String, nullable=True)
    parent_identifier = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False, default=_now)


class BudgetLimitRow(Base):
    __tablename__ = "budget_limits"

    scope_key = Column(String, primary_key=True)
    budget_window = Column(String, primary_key=True)
    amount = Column(Float, nullable=False)
    currency = Column(String, nullable=False, default="USD")
    updated_at = Column(DateTime, nullable=False, default=_now)


class AlertConfigRow(Base):
    __tablename__ = "alert_configs"

    scope_key = Column(String, primary_key=True)
    warning = Column(Float, nullable=False)
    critical = Column(Float, nullable=False)
    renotify_cooldown_seconds = Column(Float, nullable=False)
    enabled = Column(Boolean, nullable=False, default=True)


class SpendRecord(Base):
    """Running spend total per (scope, window, bucket). Only ever incremented in SQL."""

    __tablename__ = "spend_records"

    scope_key = Column(String, primary_key=True)
    budget_window = Column(String, primary_key=True)
    bucket = Column(String, primary_key=True)
    total = Column(Float, nullable=False, default=0.0)
    retired = Column(Boolean, nullable=False, default=False)
    updated_at = Column(DateTime, nullable=False, default=_now)

    def __repr__(self) -> str:
        return (
            f"<SpendRecord({self.scope_key}, {self.budget_window}={self.bucket}, "
            f"total=${self.total:.4f}, retired={self.retired})>"
        )


class UsageEventRow(Base):
    """One row per completed request; the primary key is the dedupe key."""

    __tablename__ = "usage_events"

    request_id = Column(String, primary_key=True)
    scope_chain = Column(JSON, nullable=False)
    provider = Column(String, nullable=False, index=True)
    model = Column(String, nullable=False, index=True)
    input_units = Column(Integer, nullable=False)
    output_units = Column(Integer, nullable=False)
    cost = Column(Float, nullable=False)
    currency = Column(String, nullable=False, default="USD")
    pricing_tier = Column(String, nullable=False)
    timestamp = Column(DateTime, nullable=False, index=True)
    recorded_at = Column(DateTime, nullable=False, default=_now)


class AlertStateRow(Base):
    """Last notified severity per (scope, budget type); ``version`` guards writes."""

    __tablename__ = "alert_states"

    scope_key = Column(String, primary_key=True)
    budget_type = Column(String, primary_key=True)
    bucket = Column(String, nullable=False)
    last_severity = Column(String, nullable=False, default="none")
    last_notified_at = Column(DateTime, nullable=True)
    version = Column(Integer, nullable=False, default=1)


class AlertHistoryRow(Base):
    """Every budget alert that was sent, written with the alert state that announced it."""

    __tablename__ = "alert_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    scope_key = Column(String, nullable=False, index=True)
    budget_type = Column(String, nullable=False)
    bucket = Column(String, nullable=False)
    severity = Column(String, nullable=False)
    current_spend = Column(Float, nullable=False)
    limit_amount = Column(Float, nullable=False)
    percentage = Column(Float, nullable=False)
    currency = Column(String, nullable=False, default="USD")
    request_id = Column(String, nullable=True)
    renotification = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=_now, index=True)

    def __repr__(self) -> str:
        return (
            f"<AlertHistoryRow({self.scope_key}, {self.budget_type}={self.bucket}, "
            f"severity={self.severity}, {self.percentage:.1f}%)>"
        )


class AnalyticsRollup(Base):
    __tablename__ = "analytics_rollups"

    granularity = Column(String, primary_key=True)  # "hour" or "day"
    bucket = Column(String, primary_key=True)  # e.g. "2025-01-15T13" or "2025-01-15"
    dimension = Column(String, primary_key=True)  # "provider", "model" or "scope"
    value = Column(String, primary_key=True)
    request_count = Column(Integer, nullable=False, default=0)
    input_units = Column(Integer, nullable=False, default=0)
    output_units = Column(Integer, nullable=False, default=0)
    cost = Column(Float, nullable=False, default=0.0)


class ProcessedEvent(Base):
    """Dedupe record for replay-safe consumers."""

    __tablename__ = "processed_events"

    consumer = Column(String, primary_key=True)
    idempotency_key = Column(String, primary_key=True)
    processed_at = Column(DateTime, nullable=False, default=_now)


class DeadLetterRow(Base):
    __tablename__ = "dead_letters"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(String, nullable=True)
    event_type = Column(String, nullable=False, index=True)
    key = Column(String, nullable=False)
    consumer = Column(String, nullable=False)
    error = Column(Text, nullable=False)
    attempts = Column(Integer, nullable=False)
    payload = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=_now)


def upsert_increment(
    session: Session,
    model: Any,
    key_values: Dict[str, Any],
    increments: Dict[str, Any],
    set_values: Optional[Dict[str, Any]] = None,
) -> None:
    """Insert a row or atomically add ``increments`` to the existing one.

    Renders ``INSERT ... ON CONFLICT (keys) DO UPDATE SET col = col + excluded.col``
    for SQLite and PostgreSQL, so concurrent writers never lose an update.
    """
    dialect = session.get_bind().dialect.name
    if dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    elif dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    else:
        raise NotImplementedError(f"Atomic increments are not supported on {dialect}")

    set_values = set_values or {}
    table = model.__table__
    stmt = insert(table).values(**key_values, **increments, **set_values)
    update = {name: table.c[name] + stmt.excluded[name] for name in increments}
    update.update({name: stmt.excluded[name] for name in set_values})
    session.execute(stmt.on_conflict_do_update(index_elements=list(key_values), set_=update))


class DatabaseManager:
    """Manager for database connections and operations."""

    def __init__(self, database: str):
        """Initialize the database manager.

        Args:
            database: SQLAlchemy URL, or a path to an SQLite database file
        """
        if "://" in database:
            self.url = database
        else:
            path = Path(database).expanduser()
            path.parent.mkdir(parents=True, exist_ok=True)
            self.url = f"sqlite:///{path}"

        connect_args = {}
        if self.url.startswith("sqlite"):
            # Sessions are used from worker threads; writers wait on the file lock.
            connect_args = {"check_same_thread": False, "timeout": 30}

        self.engine = create_engine(
            self.url,
            echo=False,
            pool_pre_ping=True,
            connect_args=connect_args,
        )

        self.SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
            bind=self.engine,
        )

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    def init_db(self) -> None:
        """Create all database tables."""
        Base.metadata.create_all(bind=self.engine)

    def drop_all(self) -> None:
        """Drop all database tables (use with caution!)."""
        Base.metadata.drop_all(bind=self.engine)

    def dispose(self) -> None:
        self.engine.dispose()

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        """Get a database session context manager.

        Commits on success and rolls back on any exception.

        Example:
            with db_manager.get_session() as session:
                session.add(PriceEntryRow(...))
        """
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
