"""Tests for default and configured event listeners."""

from datetime import UTC, date, datetime
from unittest.mock import patch

import pytest

from fleetpay.core.events import (
    BaseEvent,
    PaymentCreatedEvent,
    audit_log_listener,
    load_custom_listeners,
    register_default_listeners,
)
from fleetpay.core.events.listeners import _import_listener
from fleetpay.payment.application.schemas import PaymentRead
from fleetpay.payment.domain.enums import PaymentCategory, PaymentStatus

pytestmark = pytest.mark.unit

collected: list[BaseEvent] = []


def collecting_listener(event: BaseEvent) -> None:
    collected.append(event)


NOT_CALLABLE = 42


@pytest.fixture
def created_event() -> PaymentCreatedEvent:
    now = datetime(2026, 3, 1, tzinfo=UTC)
    snapshot = PaymentRead(
        id=1,
        code="PM-00001",
        payment_date=date(2026, 3, 1),
        amount=5000,
        category=PaymentCategory.CASH,
        payer_name="Rossi",
        status=PaymentStatus.UNALLOCATED,
        created_at=now,
        updated_at=now,
    )
    return PaymentCreatedEvent(payment=snapshot, user_id="u-1")


def test_audit_log_listener_logs_serialized_payload(created_event):
    with patch("fleetpay.core.events.listeners.logger") as mock_logger:
        audit_log_listener(created_event)

    mock_logger.info.assert_called_once()
    args, kwargs = mock_logger.info.call_args
    assert args == ("domain_event",)
    assert kwargs["event_type"] == "PaymentCreatedEvent"
    assert kwargs["event_name"] == "payment.created"
    assert kwargs["payment"]["code"] == "PM-00001"
    assert kwargs["payment"]["payment_date"] == "2026-03-01"
    assert kwargs["user_id"] == "u-1"


def test_register_default_listeners_once(event_bus):
    register_default_listeners(event_bus)
    register_default_listeners(event_bus)

    assert event_bus.get_stats()["total_handlers"] == 1
    assert event_bus.is_subscribed(BaseEvent, audit_log_listener)


def test_import_listener_errors():
    with pytest.raises(ImportError):
        _import_listener("no_dots")
    with pytest.raises(ImportError):
        _import_listener("fleetpay.does_not_exist.handler")
    with pytest.raises(ImportError):
        _import_listener(f"{__name__}.missing_attribute")
    with pytest.raises(TypeError):
        _import_listener(f"{__name__}.NOT_CALLABLE")


def test_load_custom_listeners(event_bus, test_settings, created_event):
    settings = test_settings.model_copy(
        update={"event_listeners": f"{__name__}.collecting_listener, broken.path.listener"}
    )
    collected.clear()

    loaded = load_custom_listeners(event_bus, settings)
    event_bus.publish(created_event)

    assert loaded == 1
    assert collected == [created_event]


def test_no_custom_listeners_configured(event_bus, test_settings):
    assert load_custom_listeners(event_bus, test_settings) == 0
