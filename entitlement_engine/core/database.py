"""
Persistence layer: engine, sessions and table definitions.

PostgreSQL in production, a file-backed SQLite database in tests and local
runs. Both support the ON CONFLICT upserts the usage meter and the renewal
log depend on (see dialect_insert). Tables:

- plans / plan_limits: the entitlement catalog
- subscriptions: lifecycle rows, at most one live row per user
- usage_counters / usage_idempotency: per-period metering
- renewal_charges: one row per gateway charge, de-duplicates outcomes
- reconciler_runs: history of sweeps
"""
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional
import logging
import os

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    false,
    select,
    text,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.sql import func

from entitlement_engine.core.config import settings


logger = logging.getLogger("entitlements.database")

metadata = MetaData()

POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 1800
SQLITE_BUSY_TIMEOUT = 30

DEFAULT_DATABASE_URL = "sqlite:///./entitlements.db"

_TRANSIENT_MARKERS = ("database is locked", "could not serialize", "deadlock detected", "busy")

_engine: Optional[Engine] = None
_SessionLocal: Optional[sessionmaker] = None


def get_database_url() -> str:
    # TEST_DATABASE_URL wins so test runs never touch the configured database
    return os.getenv("TEST_DATABASE_URL") or settings.DATABASE_URL or DEFAULT_DATABASE_URL


def _engine_options(url: str) -> Dict[str, Any]:
    options: Dict[str, Any] = {
        "pool_size": POOL_SIZE,
        "max_overflow": MAX_OVERFLOW,
        "pool_timeout": POOL_TIMEOUT,
        "echo": False,
    }
    if url.startswith("sqlite"):
        # Shared across request, scheduler and gateway threads; writers wait on the lock
        options["connect_args"] = {"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT}
    else:
        options.update(pool_recycle=POOL_RECYCLE, pool_pre_ping=True)
    return options


def init_engine(database_url: Optional[str] = None) -> Engine:
    global _engine, _SessionLocal

    url = database_url or get_database_url()
    engine = create_engine(url, **_engine_options(url))
    if engine.dialect.name == "sqlite":
        _install_sqlite_locking(engine)

    _engine = engine
    _SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    logger.info("Database engine ready", extra={"dialect": engine.dialect.name})
    return engine


def _install_sqlite_locking(engine: Engine) -> None:
    """Take the write lock at BEGIN so concurrent writers queue on busy_timeout."""

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # Let SQLAlchemy emit BEGIN itself instead of pysqlite's implicit one
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def get_engine() -> Engine:
    if _engine is None:
        return init_engine()
    return _engine


@contextmanager
def get_db_session() -> Iterator[Session]:
    """
    One unit of work: commit when the block exits cleanly, roll back otherwise.

    Sessions are short-lived and never nested; on SQLite each one holds the
    write lock until it ends.
    """
    if _SessionLocal is None:
        init_engine()
    session = _SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def dialect_insert(session_or_engine, table: Table):
    """INSERT construct with on_conflict_* support for the bound dialect."""
    bind = session_or_engine.get_bind() if isinstance(session_or_engine, Session) else session_or_engine
    if bind.dialect.name == "postgresql":
        return postgresql.insert(table)
    if bind.dialect.name == "sqlite":
        return sqlite.insert(table)
    raise RuntimeError(f"Unsupported dialect for upserts: {bind.dialect.name}")


def is_transient_error(exc: Exception) -> bool:
    """Lock contention, serialization failures and deadlocks; safe to retry."""
    if not isinstance(exc, OperationalError):
        return False
    message = str(getattr(exc, "orig", exc)).lower()
    return any(marker in message for marker in _TRANSIENT_MARKERS)


def create_all_tables() -> None:
    metadata.create_all(bind=get_engine())


def reset_database() -> None:
    """Drop and recreate every table. Tests only."""
    engine = get_engine()
    metadata.drop_all(bind=engine)
    metadata.create_all(bind=engine)


def check_connection() -> bool:
    try:
        with get_engine().connect() as conn:
            conn.execute(select(1))
    except SQLAlchemyError as e:
        logger.warning("Database connection check failed", extra={"error_message": str(e)})
        return False
    return True


LIVE_STATES_SQL = "state IN ('active', 'pending_renewal')"


# Plans table: catalog entries written by the administrative editor
plans = Table(
    'plans',
    metadata,
    Column('plan_id', String(50), primary_key=True),
    Column('name', String(200), nullable=False),
    Column('is_paid', Boolean, nullable=False, server_default=false()),
    Column('monthly_price', Integer, nullable=False, server_default='0'),  # minor units
    Column('currency', String(3), nullable=False, server_default='ARS'),
    Column('is_default', Boolean, nullable=False, server_default=false()),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    # Index for finding default plan
    Index('idx_plans_is_default', 'is_default'),
)

# Plan limits: one row per (plan, feature); value is JSON (-1/"unlimited", bool, int)
plan_limits = Table(
    'plan_limits',
    metadata,
    Column('plan_id', String(50), ForeignKey('plans.plan_id'), nullable=False),
    Column('feature', String(100), nullable=False),
    Column('value', JSON, nullable=False),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('plan_id', 'feature', name='uq_plan_limits_plan_feature'),
    Index('idx_plan_limits_plan_id', 'plan_id'),
)

# Subscriptions: append-only history, one "live" row per user
subscriptions = Table(
    'subscriptions',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False),
    Column('plan_id', String(50), ForeignKey('plans.plan_id'), nullable=False),
    Column('state', String(30), nullable=False),
    Column('origin', String(30), nullable=False),  # signup, payment, downgrade, reactivation
    Column('started_at', DateTime(timezone=True), nullable=False),
    Column('expires_at', DateTime(timezone=True), nullable=True),  # NULL = non-expiring
    Column('auto_renew', Boolean, nullable=False, server_default=false()),
    Column('failed_attempts', Integer, nullable=False, server_default='0'),
    Column('last_observation', Text, nullable=True),
    Column('superseded_by', Integer, nullable=True),
    Column('cancelled_at', DateTime(timezone=True), nullable=True),  # kept after expiry
    Column('gateway_reference_id', String(200), nullable=True),
    Column('pending_charge_key', String(200), nullable=True),
    Column('next_attempt_at', DateTime(timezone=True), nullable=True),
    Column('version', Integer, nullable=False, server_default='1'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    # At most one active/pending_renewal subscription per user
    Index(
        'uq_subscriptions_live_user',
        'user_id',
        unique=True,
        sqlite_where=text(LIVE_STATES_SQL),
        postgresql_where=text(LIVE_STATES_SQL),
    ),
    Index('idx_subscriptions_user_id', 'user_id', 'id'),
    Index('idx_subscriptions_state_expires', 'state', 'expires_at'),
    Index('idx_subscriptions_gateway_ref', 'gateway_reference_id'),
)

# Usage counters: (user, feature, calendar month) -> count
usage_counters = Table(
    'usage_counters',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False),
    Column('feature', String(100), nullable=False),
    Column('period_key', String(7), nullable=False),  # YYYY-MM
    Column('count', Integer, nullable=False, server_default='0'),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('user_id', 'feature', 'period_key', name='uq_usage_counters_key'),
    Index('idx_usage_counters_user_period', 'user_id', 'period_key'),
)

# Usage idempotency: first call for a key records the resulting count
usage_idempotency = Table(
    'usage_idempotency',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False),
    Column('feature', String(100), nullable=False),
    Column('period_key', String(7), nullable=False),
    Column('idempotency_key', String(255), nullable=False),
    Column('count_after', Integer, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('user_id', 'feature', 'period_key', 'idempotency_key', name='uq_usage_idempotency_key'),
)

# Renewal charges: gateway reference -> subscription, outcome de-duplication
renewal_charges = Table(
    'renewal_charges',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('gateway_reference_id', String(200), nullable=False, unique=True),
    Column('subscription_id', Integer, ForeignKey('subscriptions.id'), nullable=False),
    Column('charge_key', String(200), nullable=False),
    Column('amount', Integer, nullable=False),
    Column('currency', String(3), nullable=False),
    Column('checkout_url', Text, nullable=True),
    Column('outcome', String(20), nullable=False, server_default='pending'),
    Column('applied_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_renewal_charges_subscription', 'subscription_id'),
)

# Reconciler runs (job history)
reconciler_runs = Table(
    'reconciler_runs',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('started_at', DateTime(timezone=True), nullable=False),
    Column('finished_at', DateTime(timezone=True), nullable=False),
    Column('status', String(20), nullable=False),
    Column('trigger', String(30), nullable=False),
    Column('stats_json', JSON, nullable=True),
    Index('idx_reconciler_runs_started_at', 'started_at'),
)
