"""SQLAlchemy engine, session factory and ORM tables for the treasury ledger."""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterator, Optional

from sqlalchemy import (
    DateTime,
    Engine,
    Index,
    Integer,
    Numeric,
    String,
    TypeDecorator,
    create_engine,
    event,
    text,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    Session,
    mapped_column,
    sessionmaker,
)
from sqlalchemy.pool import StaticPool

CENTS = Decimal("0.01")
ZERO = Decimal("0.00")


class Money(TypeDecorator):
    """Exact two-place Decimal. SQLite has no decimal type, so it is stored as text there."""

    impl = Numeric
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "sqlite":
            return dialect.type_descriptor(String(32))
        return dialect.type_descriptor(Numeric(18, 2))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        value = Decimal(value).quantize(CENTS)
        return str(value) if dialect.name == "sqlite" else value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return Decimal(value).quantize(CENTS)


MONEY = Money()

_MEMORY_URLS = {"sqlite://", "sqlite:///:memory:", "sqlite+pysqlite://", "sqlite+pysqlite:///:memory:"}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Root declarative base."""


class TimestampMixin:
    """Adds created/updated timestamp columns."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
        nullable=False,
    )


class TreasuryWalletRecord(TimestampMixin, Base):
    __tablename__ = "treasury_wallets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    admin_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    balance: Mapped[Decimal] = mapped_column(MONEY, default=ZERO, nullable=False)
    total_deposited: Mapped[Decimal] = mapped_column(MONEY, default=ZERO, nullable=False)
    total_used: Mapped[Decimal] = mapped_column(MONEY, default=ZERO, nullable=False)
    total_earned: Mapped[Decimal] = mapped_column(MONEY, default=ZERO, nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="active", nullable=False)


class TreasuryTransactionRecord(Base):
    __tablename__ = "treasury_wallet_transactions"
    __table_args__ = (
        Index("ix_treasury_tx_admin_created", "admin_id", "created_at"),
        # A match can only be settled once.
        Index(
            "uq_treasury_tx_settled_match",
            "related_match_id",
            unique=True,
            sqlite_where=text("type = 'settlement'"),
            postgresql_where=text("type = 'settlement'"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    admin_id: Mapped[str] = mapped_column(String(64), nullable=False)
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    description: Mapped[str] = mapped_column(String(255), nullable=False)
    reference: Mapped[Optional[str]] = mapped_column(String(128), unique=True, nullable=True)
    status: Mapped[str] = mapped_column(String(16), default="completed", nullable=False)
    balance_before: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    balance_after: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    related_challenge_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    related_match_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False,
    )


def build_engine(database_url: str, echo: bool = False) -> Engine:
    kwargs: dict = {"echo": echo}
    if database_url.startswith("sqlite"):
        # FastAPI runs sync endpoints in a threadpool.
        kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
        if database_url in _MEMORY_URLS:
            kwargs["poolclass"] = StaticPool
    else:
        kwargs["pool_pre_ping"] = True
    engine = create_engine(database_url, **kwargs)
    if engine.dialect.name == "sqlite":
        _serialize_sqlite_transactions(engine)
    return engine


def _serialize_sqlite_transactions(engine: Engine) -> None:
    """
    SQLite ignores FOR UPDATE and pysqlite defers BEGIN until the first write,
    so two sessions could read the same balance. Take the write lock up front
    with BEGIN IMMEDIATE instead.
    """

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def init_db(engine: Engine) -> None:
    Base.metadata.create_all(engine)


def create_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, expire_on_commit=False, autoflush=False)


@contextmanager
def session_scope(factory: sessionmaker[Session]) -> Iterator[Session]:
    """Yield a Session with commit/rollback handling."""
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
