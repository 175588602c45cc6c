"""Database session management with the context manager pattern.

Usage:
    with db_session() as db:
        payment = service.create_payment(db, data)

The reconciliation engine commits its own units of work; the context manager
only guarantees rollback on error and cleanup on exit.
"""

from collections.abc import Generator
from contextlib import contextmanager

from sqlalchemy.orm import Session

from fleetpay.utils.logging import get_logger

logger = get_logger(__name__)


@contextmanager
def db_session() -> Generator[Session, None, None]:
    """Context manager for database sessions with automatic cleanup.

    Yields:
        Session: SQLAlchemy session

    Raises:
        RuntimeError: If database not initialized
        Exception: Any exception from within the context (after rollback)
    """
    from fleetpay.storage.database.base import get_session

    db = get_session()
    try:
        logger.debug("db_session_created", session_id=id(db))
        yield db
    except Exception as e:
        logger.debug(
            "db_session_error_rollback",
            error=str(e),
            error_type=type(e).__name__,
            session_id=id(db),
        )
        db.rollback()
        raise
    finally:
        logger.debug("db_session_closed", session_id=id(db))
        db.close()
