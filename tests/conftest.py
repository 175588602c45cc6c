"""
Pytest configuration and global fixtures.

This module provides shared fixtures used across all tests.
"""

from collections.abc import Callable, Generator
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy.orm import Session, sessionmaker

from fleetpay.core.auth import CurrentUser, Role, StaticUserProvider
from fleetpay.core.events import BaseEvent, GlobalEventBus
from fleetpay.payment.application.services import PaymentService
from fleetpay.storage.database.base import Base, create_db_engine
from fleetpay.storage.database.models import Invoice, InvoiceStatus, Reservation
from fleetpay.utils.config import Settings


@pytest.fixture(scope="function")
def db_engine():
    """Create an in-memory SQLite database engine for testing."""
    engine = create_db_engine("sqlite:///:memory:", echo=False)
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(scope="function")
def db_session(db_engine) -> Generator[Session, None, None]:
    """
    Create a database session for testing.

    Each test gets a fresh session with automatic rollback.
    """
    SessionLocal = sessionmaker(bind=db_engine)
    session = SessionLocal()

    yield session

    session.rollback()
    session.close()


@pytest.fixture
def test_settings() -> Settings:
    """Settings isolated from the environment, with near-instant retries."""
    return Settings(
        _env_file=None,
        database_url="sqlite:///:memory:",
        transaction_max_retries=2,
        transaction_retry_base_delay=0.001,
    )


@pytest.fixture
def member_user() -> CurrentUser:
    return CurrentUser(id="u-member", email="member@fleet.test", name="Mia Member", role=Role.MEMBER)


@pytest.fixture
def manager_user() -> CurrentUser:
    return CurrentUser(
        id="u-manager", email="manager@fleet.test", name="Max Manager", role=Role.MANAGER
    )


@pytest.fixture
def event_bus() -> GlobalEventBus:
    """Fresh bus per test (the global singleton is never touched)."""
    return GlobalEventBus()


@pytest.fixture
def published_events(event_bus: GlobalEventBus) -> list[BaseEvent]:
    """Every event published on ``event_bus`` during the test, in order."""
    events: list[BaseEvent] = []
    event_bus.subscribe(BaseEvent, events.append)
    return events


@pytest.fixture
def payment_service(
    test_settings: Settings, manager_user: CurrentUser, event_bus: GlobalEventBus
) -> PaymentService:
    """Service acting as a manager, publishing to the per-test bus."""
    return PaymentService(
        test_settings, user_provider=StaticUserProvider(manager_user), event_bus=event_bus
    )


@pytest.fixture
def make_reservation(db_session: Session) -> Callable[..., Reservation]:
    """Factory for reservations; settled unless ``actual_amount=None``."""
    counter = {"n": 0}

    def _make(
        actual_amount: int | None = 100000,
        tax_amount: int | None = 10000,
        customer_name: str = "Rossi Trasporti",
        settled_at: datetime | None = None,
    ) -> Reservation:
        counter["n"] += 1
        reservation = Reservation(
            reservation_code=f"RS-{counter['n']:05d}",
            customer_name=customer_name,
            actual_amount=actual_amount,
            tax_amount=tax_amount,
            settled_at=settled_at
            or (
                datetime(2026, 3, 1, tzinfo=UTC) + timedelta(hours=counter["n"])
                if actual_amount is not None
                else None
            ),
        )
        db_session.add(reservation)
        db_session.commit()
        db_session.refresh(reservation)
        return reservation

    return _make


@pytest.fixture
def settled_reservation(make_reservation) -> Reservation:
    """Settled reservation with total due 110000 (100000 + 10000 tax)."""
    return make_reservation(actual_amount=100000, tax_amount=10000)


@pytest.fixture
def unsettled_reservation(make_reservation) -> Reservation:
    return make_reservation(actual_amount=None, tax_amount=None)


@pytest.fixture
def open_invoice(db_session: Session, settled_reservation: Reservation) -> Invoice:
    invoice = Invoice(
        invoice_number="INV-2026-0001",
        reservation_id=settled_reservation.id,
        status=InvoiceStatus.ISSUED,
        total_amount=110000,
    )
    db_session.add(invoice)
    db_session.commit()
    db_session.refresh(invoice)
    return invoice


@pytest.fixture
def payment_data() -> Callable[..., dict]:
    """Factory for raw create-payment input."""

    def _data(amount: int = 110000, **overrides) -> dict:
        data = {
            "payment_date": "2026-03-15",
            "amount": amount,
            "category": "BANK_TRANSFER",
            "payer_name": "Rossi Trasporti",
        }
        data.update(overrides)
        return data

    return _data
