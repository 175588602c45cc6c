"""Tests for database initialization and the db_session context manager."""

from datetime import date

import pytest

from fleetpay.payment.domain.enums import PaymentCategory
from fleetpay.payment.domain.models import Payment
from fleetpay.storage.database import base
from fleetpay.storage.database.base import get_session, init_db
from fleetpay.storage.session import db_session

pytestmark = pytest.mark.unit


@pytest.fixture
def initialized_db(tmp_path, monkeypatch):
    monkeypatch.setattr(base, "engine", None)
    monkeypatch.setattr(base, "SessionLocal", None)
    engine = init_db(f"sqlite:///{tmp_path / 'fleetpay.db'}")
    yield engine
    engine.dispose()


def _payment(code: str) -> Payment:
    return Payment(
        code=code,
        payment_date=date(2026, 1, 1),
        amount=100,
        category=PaymentCategory.CASH,
        payer_name="Session Test",
    )


def test_get_session_requires_init(monkeypatch):
    monkeypatch.setattr(base, "SessionLocal", None)

    with pytest.raises(RuntimeError, match="init_db"):
        get_session()


def test_commit_persists(initialized_db):
    with db_session() as db:
        db.add(_payment("PM-00001"))
        db.commit()

    with db_session() as db:
        assert db.query(Payment).count() == 1


def test_exception_rolls_back(initialized_db):
    with pytest.raises(ValueError):
        with db_session() as db:
            db.add(_payment("PM-00001"))
            db.flush()
            raise ValueError("abort")

    with db_session() as db:
        assert db.query(Payment).count() == 0


def test_sqlite_foreign_keys_enabled(initialized_db):
    with initialized_db.connect() as connection:
        assert connection.exec_driver_sql("PRAGMA foreign_keys").scalar() == 1


def test_database_package_exports():
    from fleetpay.storage import database

    assert database.__all__ == ["Base", "create_db_engine", "get_session", "init_db"]
    assert not hasattr(database, "get_db")
