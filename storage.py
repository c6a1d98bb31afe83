"""
Relational storage for orders, checkouts, payments and gateway customers.

Both services run against the database named by ``DATABASE_URL``; every
worker process shares the same rows, and uniqueness (one checkout per parent
correlation id, one checkout per payment, one order per vendor per checkout)
is enforced by constraints rather than by process memory.
"""

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Generator, Optional

from sqlalchemy import (JSON, Column, DateTime, Index, Integer, Numeric, String, UniqueConstraint, create_engine,
                        text)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from service_config import DATABASE_URL, DB_ECHO, DB_MAX_OVERFLOW, DB_POOL_SIZE
from service_logging import log_json

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; every stored timestamp is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class TimestampMixin:
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


# =============================================================================
# ORDER SERVICE TABLES
# =============================================================================

class CheckoutRow(Base):
    """One row per committed checkout; claims the parent id and the payment."""

    __tablename__ = "checkouts"

    parent_order_id = Column(String(128), primary_key=True)
    payment_id = Column(String(128), nullable=False, unique=True)
    consumer_id = Column(String(128), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class OrderRow(Base, TimestampMixin):

    __tablename__ = "orders"

    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String(64), nullable=False, unique=True)
    consumer_id = Column(String(128), nullable=False)
    vendor_id = Column(String(128), nullable=False)
    parent_order_id = Column(String(128), nullable=False)
    payment_id = Column(String(128), nullable=False)
    payment_status = Column(String(32), nullable=False)
    order_status = Column(String(32), nullable=False)
    subtotal_amount = Column(Numeric(14, 4), nullable=False)

    order_items = Column(JSON, nullable=False)
    shipping_address = Column(JSON, nullable=False)
    tracking = Column(JSON, nullable=False)

    __table_args__ = (
        UniqueConstraint("parent_order_id", "vendor_id", name="uq_orders_parent_vendor"),
        Index("idx_orders_consumer", consumer_id),
        Index("idx_orders_vendor", vendor_id),
        Index("idx_orders_payment", payment_id),
        Index("idx_orders_created", "created_at"),
    )


# =============================================================================
# PAYMENT SERVICE TABLES
# =============================================================================

class PaymentRow(Base, TimestampMixin):

    __tablename__ = "payments"

    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String(64), nullable=False, unique=True)
    user_id = Column(String(128), nullable=False)
    order_id = Column(String(128), nullable=False)
    payment_intent_id = Column(String(255), nullable=False, unique=True)
    payment_method_id = Column(String(255), nullable=False)
    amount = Column(Integer, nullable=False)  # smallest currency unit
    currency = Column(String(3), nullable=False)
    status = Column(String(32), nullable=False)
    receipt_url = Column(String(1024))

    __table_args__ = (
        Index("idx_payments_user", user_id),
    )


class GatewayCustomerRow(Base, TimestampMixin):

    __tablename__ = "gateway_customers"

    user_id = Column(String(128), primary_key=True)
    customer_id = Column(String(255), nullable=False, unique=True)


# =============================================================================
# ENGINE AND SESSIONS
# =============================================================================

def create_database_engine(database_url: str = DATABASE_URL, echo: bool = DB_ECHO) -> Engine:
    options = {"echo": echo, "pool_pre_ping": True}

    if database_url.startswith("sqlite"):
        options["connect_args"] = {"check_same_thread": False}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            # One shared connection, otherwise every session sees an empty database
            options["poolclass"] = StaticPool
    else:
        options["pool_size"] = DB_POOL_SIZE
        options["max_overflow"] = DB_MAX_OVERFLOW
        options["pool_recycle"] = 3600

    engine = create_engine(database_url, **options)
    log_json("INFO", "Database engine created",
             dialect=engine.dialect.name, pool=type(engine.pool).__name__)
    return engine


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def init_db(engine: Engine):
    """Create any missing tables."""
    Base.metadata.create_all(bind=engine)
    log_json("INFO", "Database tables ready", tables=sorted(Base.metadata.tables))


def check_db_connection(engine: Engine) -> bool:
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        log_json("WARN", "Database connection check failed", reason=str(e))
        return False


@contextmanager
def session_scope(session_factory: sessionmaker) -> Generator[Session, None, None]:
    """Commit on success, roll back on any error and re-raise it."""
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
