"""Database base configuration and session management."""

from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, MetaData, create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from ...utils.datetime import utc_now

# Naming convention for constraints (stable names for migrations and error classification)
convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

metadata = MetaData(naming_convention=convention)


class Base(DeclarativeBase):
    """Base class for all database models."""

    metadata = metadata


class IntPKMixin:
    """Integer primary key plus audit timestamps."""

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        onupdate=utc_now,
        nullable=False,
    )


# Database engine and session (configured at runtime)
engine: Engine | None = None
SessionLocal: sessionmaker[Session] | None = None


def _configure_sqlite_connection(dbapi_connection: Any, connection_record: Any) -> None:
    # Transactions are begun explicitly in _begin_immediate, not by the driver
    dbapi_connection.isolation_level = None
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _begin_immediate(connection: Any) -> None:
    # Write lock held from the first statement, reads included
    connection.exec_driver_sql("BEGIN IMMEDIATE")


def create_db_engine(database_url: str, **kwargs: Any) -> Engine:
    """Create an engine.

    SQLite has no row locks and ignores ``FOR UPDATE``. Its connections get
    foreign key enforcement (cascades), and every transaction starts with
    ``BEGIN IMMEDIATE``, holding the write lock from its first read until
    commit or rollback. A writer blocked past the busy timeout gets
    "database is locked", which the payment service retries.
    """
    db_engine = create_engine(database_url, pool_pre_ping=True, **kwargs)
    if db_engine.dialect.name == "sqlite":
        event.listen(db_engine, "connect", _configure_sqlite_connection)
        event.listen(db_engine, "begin", _begin_immediate)
    return db_engine


def init_db(database_url: str = "sqlite:///./fleetpay.db") -> Engine:
    """Initialize database engine and session factory, creating missing tables."""
    global engine, SessionLocal

    # Register every mapped table on the metadata
    from . import models  # noqa: F401

    engine = create_db_engine(database_url)
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    Base.metadata.create_all(bind=engine)
    return engine


def get_session() -> Session:
    """Return a new session from the configured factory."""
    if SessionLocal is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return SessionLocal()

