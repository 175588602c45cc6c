"""Tests for PaymentService mutations.

Covers payment creation, header updates, deletion, and the allocation
operations (single, bulk, amend, remove) with their balance rules, plus
transaction rollback and event publication.
"""

from datetime import date

import pytest
from sqlalchemy.exc import OperationalError

from fleetpay.core.auth import StaticUserProvider
from fleetpay.core.events import (
    AllocationRemovedEvent,
    AllocationUpdatedEvent,
    PaymentAllocatedEvent,
    PaymentCreatedEvent,
    PaymentDeletedEvent,
    PaymentUpdatedEvent,
)
from fleetpay.exceptions import (
    ConcurrencyConflictError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from fleetpay.payment.application.services import PaymentService, ledger
from fleetpay.payment.domain.enums import PaymentCategory, PaymentStatus
from fleetpay.payment.domain.models import Payment
from fleetpay.payment.domain.payment_allocation import PaymentAllocation
from fleetpay.storage.database.models import NumberingSequence

pytestmark = pytest.mark.unit


def _allocation_count(db_session) -> int:
    return db_session.query(PaymentAllocation).count()


def _reload(db_session, payment_id: int) -> Payment:
    db_session.expire_all()
    return db_session.get(Payment, payment_id)


class TestCreatePayment:
    """Test payment creation."""

    def test_create_without_allocations(self, payment_service, db_session, payment_data, published_events):
        """A fresh payment is unallocated and gets the first sequential code."""
        payment = payment_service.create_payment(db_session, payment_data(amount=110000))

        assert payment.id is not None
        assert payment.code == "PM-00001"
        assert payment.status == PaymentStatus.UNALLOCATED
        assert payment.category == PaymentCategory.BANK_TRANSFER
        assert payment.allocations == []

        assert len(published_events) == 1
        event = published_events[0]
        assert isinstance(event, PaymentCreatedEvent)
        assert event.event_name == "payment.created"
        assert event.payment.code == "PM-00001"
        assert event.user_id == "u-manager"

    def test_create_with_full_inline_allocation(
        self, payment_service, db_session, payment_data, settled_reservation, published_events
    ):
        """Allocating the whole amount inline yields FULLY_ALLOCATED."""
        payment = payment_service.create_payment(
            db_session,
            payment_data(
                amount=110000,
                allocations=[
                    {"reservation_id": settled_reservation.id, "allocated_amount": 110000}
                ],
            ),
        )

        assert payment.status == PaymentStatus.FULLY_ALLOCATED
        assert len(payment.allocations) == 1
        assert payment.allocations[0].reservation_id == settled_reservation.id
        assert published_events[0].payment.allocations[0].allocated_amount == 110000

    def test_create_with_partial_inline_allocations(
        self, payment_service, db_session, payment_data, make_reservation
    ):
        first = make_reservation(actual_amount=30000, tax_amount=3000)
        second = make_reservation(actual_amount=20000, tax_amount=None)

        payment = payment_service.create_payment(
            db_session,
            payment_data(
                amount=100000,
                allocations=[
                    {"reservation_id": first.id, "allocated_amount": 33000},
                    {"reservation_id": second.id, "allocated_amount": 20000},
                ],
            ),
        )

        assert payment.status == PaymentStatus.PARTIALLY_ALLOCATED
        assert payment.allocated_total == 53000
        assert [a.reservation_id for a in payment.allocations] == [first.id, second.id]

    def test_codes_are_sequential_and_never_reused(self, payment_service, db_session, payment_data):
        """Deleting the newest payment does not free its code."""
        first = payment_service.create_payment(db_session, payment_data())
        second = payment_service.create_payment(db_session, payment_data())
        payment_service.delete_payment(db_session, second.id)

        third = payment_service.create_payment(db_session, payment_data())

        assert first.code == "PM-00001"
        assert second.code == "PM-00002"
        assert third.code == "PM-00003"

    def test_sequence_seeded_from_existing_codes(self, payment_service, db_session, payment_data):
        """Without a sequence row, numbering continues after the highest code."""
        legacy = Payment(
            code="PM-00041",
            payment_date=date(2025, 12, 31),
            amount=1000,
            category=PaymentCategory.CASH,
            payer_name="Legacy import",
            status=PaymentStatus.UNALLOCATED,
        )
        db_session.add(legacy)
        db_session.commit()

        payment = payment_service.create_payment(db_session, payment_data())

        assert payment.code == "PM-00042"
        sequence = db_session.query(NumberingSequence).filter_by(name="PM-").one()
        assert sequence.last_value == 42

    def test_custom_prefix_and_width(self, test_settings, event_bus, db_session, payment_data):
        settings = test_settings.model_copy(
            update={"payment_code_prefix": "PAY-", "payment_code_width": 3}
        )
        service = PaymentService(settings, event_bus=event_bus)

        payment = service.create_payment(db_session, payment_data())

        assert payment.code == "PAY-001"

    def test_inline_total_exceeding_amount_rejected(
        self, payment_service, db_session, payment_data, make_reservation, published_events
    ):
        first = make_reservation()
        second = make_reservation()

        with pytest.raises(ValidationError) as exc_info:
            payment_service.create_payment(
                db_session,
                payment_data(
                    amount=100000,
                    allocations=[
                        {"reservation_id": first.id, "allocated_amount": 60000},
                        {"reservation_id": second.id, "allocated_amount": 50000},
                    ],
                ),
            )

        assert "allocations.1.allocated_amount" in exc_info.value.field_errors
        assert "100000" in exc_info.value.message
        assert db_session.query(Payment).count() == 0
        assert _allocation_count(db_session) == 0
        assert published_events == []

    def test_inline_unknown_reservation_rejected(self, payment_service, db_session, payment_data):
        with pytest.raises(ValidationError) as exc_info:
            payment_service.create_payment(
                db_session,
                payment_data(allocations=[{"reservation_id": 999, "allocated_amount": 1000}]),
            )

        assert "allocations.0.reservation_id" in exc_info.value.field_errors
        assert db_session.query(Payment).count() == 0

    def test_inline_unsettled_reservation_rejected(
        self, payment_service, db_session, payment_data, unsettled_reservation
    ):
        with pytest.raises(ValidationError) as exc_info:
            payment_service.create_payment(
                db_session,
                payment_data(
                    allocations=[
                        {"reservation_id": unsettled_reservation.id, "allocated_amount": 1000}
                    ]
                ),
            )

        assert "allocations.0.reservation_id" in exc_info.value.field_errors
        assert "not settled" in exc_info.value.message

    def test_inline_exceeding_reservation_residual_rejected(
        self, payment_service, db_session, payment_data, settled_reservation
    ):
        with pytest.raises(ValidationError) as exc_info:
            payment_service.create_payment(
                db_session,
                payment_data(
                    amount=200000,
                    allocations=[
                        {"reservation_id": settled_reservation.id, "allocated_amount": 110001}
                    ],
                ),
            )

        assert "reservation's remaining balance (110000)" in exc_info.value.message

    def test_inline_repeated_reservation_rejected_on_item(
        self, payment_service, db_session, payment_data, settled_reservation
    ):
        with pytest.raises(ValidationError) as exc_info:
            payment_service.create_payment(
                db_session,
                payment_data(
                    allocations=[
                        {"reservation_id": settled_reservation.id, "allocated_amount": 10000},
                        {"reservation_id": settled_reservation.id, "allocated_amount": 10000},
                    ]
                ),
            )

        assert list(exc_info.value.field_errors) == ["allocations.1.reservation_id"]
        assert "more than once" in exc_info.value.message
        assert db_session.query(Payment).count() == 0

    def test_duplicate_external_id_rejected(self, payment_service, db_session, payment_data):
        payment_service.create_payment(db_session, payment_data(external_id="TX-1001"))

        with pytest.raises(ValidationError) as exc_info:
            payment_service.create_payment(db_session, payment_data(external_id="TX-1001"))

        assert "external_id" in exc_info.value.field_errors
        assert db_session.query(Payment).count() == 1

    def test_failed_create_does_not_consume_a_code(self, payment_service, db_session, payment_data):
        payment_service.create_payment(db_session, payment_data(external_id="TX-1"))
        with pytest.raises(ValidationError):
            payment_service.create_payment(db_session, payment_data(external_id="TX-1"))

        payment = payment_service.create_payment(db_session, payment_data())

        assert payment.code == "PM-00002"

    def test_schema_errors_are_keyed_by_field_path(self, payment_service, db_session, payment_data):
        with pytest.raises(ValidationError) as exc_info:
            payment_service.create_payment(
                db_session,
                payment_data(
                    amount=-5,
                    payer_name="   ",
                    allocations=[{"reservation_id": 1, "allocated_amount": 0}],
                ),
            )

        field_errors = exc_info.value.field_errors
        assert "amount" in field_errors
        assert "payer_name" in field_errors
        assert "allocations.0.allocated_amount" in field_errors

    def test_zero_amount_payment_is_allowed(self, payment_service, db_session, payment_data):
        payment = payment_service.create_payment(db_session, payment_data(amount=0))

        assert payment.amount == 0
        assert payment.status == PaymentStatus.UNALLOCATED

    def test_member_can_create(self, test_settings, member_user, event_bus, db_session, payment_data):
        service = PaymentService(
            test_settings, user_provider=StaticUserProvider(member_user), event_bus=event_bus
        )

        payment = service.create_payment(db_session, payment_data())

        assert payment.id is not None


class TestUpdatePayment:
    """Test header updates and the allocation floor."""

    def test_update_header_fields(self, payment_service, db_session, payment_data, published_events):
        payment = payment_service.create_payment(db_session, payment_data(amount=50000))

        updated = payment_service.update_payment(
            db_session,
            payment.id,
            payment_data(amount=60000, category="CASH", payer_name="Bianchi", note="  late  "),
        )

        assert updated.amount == 60000
        assert updated.category == PaymentCategory.CASH
        assert updated.payer_name == "Bianchi"
        assert updated.note == "late"
        assert isinstance(published_events[-1], PaymentUpdatedEvent)
        assert published_events[-1].payment.amount == 60000

    def test_amount_below_allocated_total_rejected(
        self, payment_service, db_session, payment_data, settled_reservation, published_events
    ):
        """The header amount can never shrink below the allocated total."""
        payment = payment_service.create_payment(
            db_session,
            payment_data(
                amount=100000,
                allocations=[{"reservation_id": settled_reservation.id, "allocated_amount": 70000}],
            ),
        )
        events_before = len(published_events)

        with pytest.raises(ValidationError) as exc_info:
            payment_service.update_payment(db_session, payment.id, payment_data(amount=60000))

        assert "70000" in exc_info.value.message
        assert "amount" in exc_info.value.field_errors
        assert _reload(db_session, payment.id).amount == 100000
        assert len(published_events) == events_before

    def test_amount_change_recomputes_status(
        self, payment_service, db_session, payment_data, settled_reservation
    ):
        payment = payment_service.create_payment(
            db_session,
            payment_data(
                amount=100000,
                allocations=[{"reservation_id": settled_reservation.id, "allocated_amount": 70000}],
            ),
        )
        assert payment.status == PaymentStatus.PARTIALLY_ALLOCATED

        payment = payment_service.update_payment(db_session, payment.id, payment_data(amount=70000))
        assert payment.status == PaymentStatus.FULLY_ALLOCATED

        payment = payment_service.update_payment(db_session, payment.id, payment_data(amount=90000))
        assert payment.status == PaymentStatus.PARTIALLY_ALLOCATED

    def test_update_missing_payment(self, payment_service, db_session, payment_data):
        with pytest.raises(NotFoundError) as exc_info:
            payment_service.update_payment(db_session, 404, payment_data())

        assert exc_info.value.entity_type == "Payment"

    def test_update_to_taken_external_id(self, payment_service, db_session, payment_data):
        payment_service.create_payment(db_session, payment_data(external_id="TX-A"))
        other = payment_service.create_payment(db_session, payment_data(external_id="TX-B"))

        with pytest.raises(ValidationError) as exc_info:
            payment_service.update_payment(db_session, other.id, payment_data(external_id="TX-A"))

        assert "external_id" in exc_info.value.field_errors
        assert _reload(db_session, other.id).external_id == "TX-B"


class TestDeletePayment:
    """Test deletion and its role requirement."""

    def test_delete_cascades_allocations(
        self, payment_service, db_session, payment_data, settled_reservation, published_events
    ):
        payment = payment_service.create_payment(
            db_session,
            payment_data(
                allocations=[{"reservation_id": settled_reservation.id, "allocated_amount": 40000}]
            ),
        )

        payment_service.delete_payment(db_session, payment.id)

        assert db_session.query(Payment).count() == 0
        assert _allocation_count(db_session) == 0
        event = published_events[-1]
        assert isinstance(event, PaymentDeletedEvent)
        assert event.payment.id == payment.id
        assert len(event.payment.allocations) == 1

    def test_member_cannot_delete(
        self, payment_service, test_settings, member_user, event_bus, db_session, payment_data
    ):
        payment = payment_service.create_payment(db_session, payment_data())
        member_service = PaymentService(
            test_settings, user_provider=StaticUserProvider(member_user), event_bus=event_bus
        )

        with pytest.raises(PermissionDeniedError) as exc_info:
            member_service.delete_payment(db_session, payment.id)

        assert exc_info.value.context["required_role"] == "MANAGER"
        assert db_session.query(Payment).count() == 1

    def test_delete_missing_payment(self, payment_service, db_session):
        with pytest.raises(NotFoundError):
            payment_service.delete_payment(db_session, 404)


class TestAddAllocation:
    """Test single allocations and both balance checks."""

    @pytest.fixture
    def payment(self, payment_service, db_session, payment_data):
        return payment_service.create_payment(db_session, payment_data(amount=100000))

    def test_add_allocation(self, payment_service, db_session, payment, settled_reservation, published_events):
        allocation = payment_service.add_allocation(
            db_session,
            payment.id,
            {"reservation_id": settled_reservation.id, "allocated_amount": 40000, "note": "deposit"},
        )

        assert allocation.id is not None
        assert allocation.allocated_amount == 40000
        assert allocation.note == "deposit"
        assert _reload(db_session, payment.id).status == PaymentStatus.PARTIALLY_ALLOCATED

        event = published_events[-1]
        assert isinstance(event, PaymentAllocatedEvent)
        assert [a.id for a in event.allocations] == [allocation.id]
        assert event.payment.status == PaymentStatus.PARTIALLY_ALLOCATED

    def test_exceeding_payment_remaining_rejected(
        self, payment_service, db_session, payment, make_reservation, published_events
    ):
        """60000 on a 100000 payment already holding 50000 is rejected."""
        first = make_reservation()
        second = make_reservation()
        payment_service.add_allocation(
            db_session, payment.id, {"reservation_id": first.id, "allocated_amount": 50000}
        )
        events_before = len(published_events)

        with pytest.raises(ValidationError) as exc_info:
            payment_service.add_allocation(
                db_session, payment.id, {"reservation_id": second.id, "allocated_amount": 60000}
            )

        assert "payment's remaining balance (50000)" in exc_info.value.message
        assert "allocated_amount" in exc_info.value.field_errors
        assert _allocation_count(db_session) == 1
        assert _reload(db_session, payment.id).status == PaymentStatus.PARTIALLY_ALLOCATED
        assert len(published_events) == events_before

    def test_exceeding_reservation_residual_rejected(
        self, payment_service, db_session, payment_data, settled_reservation
    ):
        """A reservation due 110000 already holding 60000 only accepts 50000 more."""
        other = payment_service.create_payment(db_session, payment_data(amount=200000))
        payment_service.add_allocation(
            db_session, other.id, {"reservation_id": settled_reservation.id, "allocated_amount": 60000}
        )
        payment = payment_service.create_payment(db_session, payment_data(amount=100000))

        with pytest.raises(ValidationError) as exc_info:
            payment_service.add_allocation(
                db_session,
                payment.id,
                {"reservation_id": settled_reservation.id, "allocated_amount": 60000},
            )

        assert "reservation's remaining balance (50000)" in exc_info.value.message
        assert _allocation_count(db_session) == 1

        payment_service.add_allocation(
            db_session, payment.id, {"reservation_id": settled_reservation.id, "allocated_amount": 50000}
        )
        assert _allocation_count(db_session) == 2

    def test_duplicate_pair_rejected_on_reservation_id(
        self, payment_service, db_session, payment, settled_reservation
    ):
        payment_service.add_allocation(
            db_session, payment.id, {"reservation_id": settled_reservation.id, "allocated_amount": 10000}
        )

        with pytest.raises(ValidationError) as exc_info:
            payment_service.add_allocation(
                db_session,
                payment.id,
                {"reservation_id": settled_reservation.id, "allocated_amount": 10000},
            )

        assert "reservation_id" in exc_info.value.field_errors
        assert _allocation_count(db_session) == 1

    def test_unsettled_reservation_rejected(
        self, payment_service, db_session, payment, unsettled_reservation
    ):
        with pytest.raises(ValidationError) as exc_info:
            payment_service.add_allocation(
                db_session,
                payment.id,
                {"reservation_id": unsettled_reservation.id, "allocated_amount": 1000},
            )

        assert "reservation_id" in exc_info.value.field_errors

    def test_unknown_payment(self, payment_service, db_session, settled_reservation):
        with pytest.raises(NotFoundError) as exc_info:
            payment_service.add_allocation(
                db_session, 404, {"reservation_id": settled_reservation.id, "allocated_amount": 1}
            )

        assert exc_info.value.entity_type == "Payment"

    def test_unknown_reservation(self, payment_service, db_session, payment):
        with pytest.raises(NotFoundError) as exc_info:
            payment_service.add_allocation(
                db_session, payment.id, {"reservation_id": 404, "allocated_amount": 1}
            )

        assert exc_info.value.entity_type == "Reservation"

    def test_tagged_with_invoice(
        self, payment_service, db_session, payment, settled_reservation, open_invoice
    ):
        allocation = payment_service.add_allocation(
            db_session,
            payment.id,
            {
                "reservation_id": settled_reservation.id,
                "invoice_id": open_invoice.id,
                "allocated_amount": 1000,
            },
        )

        assert allocation.invoice_id == open_invoice.id

    def test_unknown_invoice_rejected(self, payment_service, db_session, payment, settled_reservation):
        with pytest.raises(ValidationError) as exc_info:
            payment_service.add_allocation(
                db_session,
                payment.id,
                {"reservation_id": settled_reservation.id, "invoice_id": 404, "allocated_amount": 1000},
            )

        assert "invoice_id" in exc_info.value.field_errors
        assert _allocation_count(db_session) == 0

    def test_non_integer_amount_rejected(self, payment_service, db_session, payment, settled_reservation):
        with pytest.raises(ValidationError) as exc_info:
            payment_service.add_allocation(
                db_session,
                payment.id,
                {"reservation_id": settled_reservation.id, "allocated_amount": 10.5},
            )

        assert "allocated_amount" in exc_info.value.field_errors


class TestBulkAllocate:
    """Test all-or-nothing batches."""

    @pytest.fixture
    def payment(self, payment_service, db_session, payment_data):
        return payment_service.create_payment(db_session, payment_data(amount=100000))

    def test_bulk_allocate_in_input_order(
        self, payment_service, db_session, payment, make_reservation, published_events
    ):
        first = make_reservation(actual_amount=50000, tax_amount=None)
        second = make_reservation(actual_amount=50000, tax_amount=None)

        allocations = payment_service.bulk_allocate(
            db_session,
            payment.id,
            {
                "allocations": [
                    {"reservation_id": second.id, "allocated_amount": 50000},
                    {"reservation_id": first.id, "allocated_amount": 50000},
                ]
            },
        )

        assert [a.reservation_id for a in allocations] == [second.id, first.id]
        assert _reload(db_session, payment.id).status == PaymentStatus.FULLY_ALLOCATED

        bulk_events = [e for e in published_events if isinstance(e, PaymentAllocatedEvent)]
        assert len(bulk_events) == 1
        assert len(bulk_events[0].allocations) == 2

    def test_running_total_exceeding_payment_aborts_batch(
        self, payment_service, db_session, payment, make_reservation, published_events
    ):
        first = make_reservation()
        second = make_reservation()
        events_before = len(published_events)

        with pytest.raises(ValidationError) as exc_info:
            payment_service.bulk_allocate(
                db_session,
                payment.id,
                {
                    "allocations": [
                        {"reservation_id": first.id, "allocated_amount": 60000},
                        {"reservation_id": second.id, "allocated_amount": 60000},
                    ]
                },
            )

        assert "allocations.1.allocated_amount" in exc_info.value.field_errors
        assert "(40000)" in exc_info.value.message
        assert _allocation_count(db_session) == 0
        assert _reload(db_session, payment.id).status == PaymentStatus.UNALLOCATED
        assert len(published_events) == events_before

    def test_reservation_residual_counts_other_payments(
        self, payment_service, db_session, payment_data, payment, settled_reservation, make_reservation
    ):
        other = payment_service.create_payment(db_session, payment_data(amount=100000))
        payment_service.add_allocation(
            db_session, other.id, {"reservation_id": settled_reservation.id, "allocated_amount": 100000}
        )
        fresh = make_reservation()

        with pytest.raises(ValidationError) as exc_info:
            payment_service.bulk_allocate(
                db_session,
                payment.id,
                {
                    "allocations": [
                        {"reservation_id": fresh.id, "allocated_amount": 5000},
                        {"reservation_id": settled_reservation.id, "allocated_amount": 20000},
                    ]
                },
            )

        assert "reservation's remaining balance (10000)" in exc_info.value.message
        assert db_session.query(PaymentAllocation).filter_by(payment_id=payment.id).count() == 0

    def test_unknown_reservation_in_batch(self, payment_service, db_session, payment, settled_reservation):
        with pytest.raises(ValidationError) as exc_info:
            payment_service.bulk_allocate(
                db_session,
                payment.id,
                {
                    "allocations": [
                        {"reservation_id": settled_reservation.id, "allocated_amount": 1000},
                        {"reservation_id": 404, "allocated_amount": 1000},
                    ]
                },
            )

        assert "allocations.1.reservation_id" in exc_info.value.field_errors
        assert _allocation_count(db_session) == 0

    def test_repeated_reservation_in_batch(self, payment_service, db_session, payment, settled_reservation):
        with pytest.raises(ValidationError) as exc_info:
            payment_service.bulk_allocate(
                db_session,
                payment.id,
                {
                    "allocations": [
                        {"reservation_id": settled_reservation.id, "allocated_amount": 1000},
                        {"reservation_id": settled_reservation.id, "allocated_amount": 1000},
                    ]
                },
            )

        assert list(exc_info.value.field_errors) == ["allocations.1.reservation_id"]
        assert _allocation_count(db_session) == 0

    def test_empty_batch_rejected(self, payment_service, db_session, payment):
        with pytest.raises(ValidationError) as exc_info:
            payment_service.bulk_allocate(db_session, payment.id, {"allocations": []})

        assert "allocations" in exc_info.value.field_errors

    def test_unknown_payment(self, payment_service, db_session, settled_reservation):
        with pytest.raises(NotFoundError):
            payment_service.bulk_allocate(
                db_session,
                404,
                {"allocations": [{"reservation_id": settled_reservation.id, "allocated_amount": 1}]},
            )


class TestAmendAndRemoveAllocations:
    """Test update_allocation and remove_allocation."""

    def test_reduce_then_remove_last_allocation(
        self, payment_service, db_session, payment_data, settled_reservation, published_events
    ):
        """Shrinking and then removing the only allocation ends UNALLOCATED."""
        payment = payment_service.create_payment(db_session, payment_data(amount=100000))
        allocation = payment_service.add_allocation(
            db_session, payment.id, {"reservation_id": settled_reservation.id, "allocated_amount": 100000}
        )
        assert _reload(db_session, payment.id).status == PaymentStatus.FULLY_ALLOCATED

        updated = payment_service.update_allocation(
            db_session, allocation.id, {"allocated_amount": 30000}
        )
        assert updated.allocated_amount == 30000
        assert _reload(db_session, payment.id).status == PaymentStatus.PARTIALLY_ALLOCATED

        update_event = published_events[-1]
        assert isinstance(update_event, AllocationUpdatedEvent)
        assert update_event.previous_amount == 100000
        assert update_event.allocation.allocated_amount == 30000

        payment_service.remove_allocation(db_session, allocation.id)

        assert _reload(db_session, payment.id).status == PaymentStatus.UNALLOCATED
        assert _allocation_count(db_session) == 0
        remove_event = published_events[-1]
        assert isinstance(remove_event, AllocationRemovedEvent)
        assert remove_event.allocation.id == allocation.id
        assert remove_event.payment.allocations == []

    def test_update_excludes_own_amount_from_payment_balance(
        self, payment_service, db_session, payment_data, make_reservation
    ):
        payment = payment_service.create_payment(db_session, payment_data(amount=100000))
        first = payment_service.add_allocation(
            db_session, payment.id, {"reservation_id": make_reservation().id, "allocated_amount": 50000}
        )
        payment_service.add_allocation(
            db_session, payment.id, {"reservation_id": make_reservation().id, "allocated_amount": 30000}
        )

        payment_service.update_allocation(db_session, first.id, {"allocated_amount": 70000})
        assert _reload(db_session, payment.id).status == PaymentStatus.FULLY_ALLOCATED

        with pytest.raises(ValidationError) as exc_info:
            payment_service.update_allocation(db_session, first.id, {"allocated_amount": 70001})

        assert "payment's remaining balance (70000)" in exc_info.value.message
        db_session.expire_all()
        assert db_session.get(PaymentAllocation, first.id).allocated_amount == 70000

    def test_update_excludes_own_amount_from_reservation_balance(
        self, payment_service, db_session, payment_data, settled_reservation
    ):
        payment = payment_service.create_payment(db_session, payment_data(amount=200000))
        allocation = payment_service.add_allocation(
            db_session, payment.id, {"reservation_id": settled_reservation.id, "allocated_amount": 100000}
        )

        payment_service.update_allocation(db_session, allocation.id, {"allocated_amount": 110000})

        with pytest.raises(ValidationError) as exc_info:
            payment_service.update_allocation(db_session, allocation.id, {"allocated_amount": 110001})

        assert "reservation's remaining balance (110000)" in exc_info.value.message

    def test_reduction_allowed_after_reservation_unsettled(
        self, payment_service, db_session, payment_data, settled_reservation
    ):
        """An allocation on a reservation whose charge was cleared can still be lowered."""
        payment = payment_service.create_payment(db_session, payment_data(amount=110000))
        allocation = payment_service.add_allocation(
            db_session, payment.id, {"reservation_id": settled_reservation.id, "allocated_amount": 110000}
        )
        settled_reservation.actual_amount = None
        settled_reservation.settled_at = None
        db_session.commit()

        updated = payment_service.update_allocation(
            db_session, allocation.id, {"allocated_amount": 10000}
        )

        assert updated.allocated_amount == 10000
        assert _reload(db_session, payment.id).status == PaymentStatus.PARTIALLY_ALLOCATED

        with pytest.raises(ValidationError) as exc_info:
            payment_service.update_allocation(db_session, allocation.id, {"allocated_amount": 10001})

        assert "is not settled" in exc_info.value.message

    def test_update_to_zero_rejected(self, payment_service, db_session, payment_data, settled_reservation):
        payment = payment_service.create_payment(db_session, payment_data())
        allocation = payment_service.add_allocation(
            db_session, payment.id, {"reservation_id": settled_reservation.id, "allocated_amount": 1000}
        )

        with pytest.raises(ValidationError) as exc_info:
            payment_service.update_allocation(db_session, allocation.id, {"allocated_amount": 0})

        assert "allocated_amount" in exc_info.value.field_errors

    def test_update_missing_allocation(self, payment_service, db_session):
        with pytest.raises(NotFoundError):
            payment_service.update_allocation(db_session, 404, {"allocated_amount": 10})

    def test_remove_missing_allocation(self, payment_service, db_session):
        with pytest.raises(NotFoundError):
            payment_service.remove_allocation(db_session, 404)


class TestTransactions:
    """Test retries, rollback and event isolation."""

    def test_lock_conflict_is_retried(self, payment_service, db_session, payment_data, monkeypatch):
        original = ledger.next_payment_code
        calls = {"n": 0}

        def flaky_next_code(db, prefix, width):
            calls["n"] += 1
            if calls["n"] == 1:
                raise OperationalError("UPDATE numbering_sequences", {}, Exception("database is locked"))
            return original(db, prefix, width)

        monkeypatch.setattr(ledger, "next_payment_code", flaky_next_code)

        payment = payment_service.create_payment(db_session, payment_data())

        assert calls["n"] == 2
        assert payment.code == "PM-00001"

    def test_persistent_conflict_surfaces_as_retryable(
        self, payment_service, db_session, payment_data, monkeypatch, published_events
    ):
        def always_locked(db, prefix, width):
            raise OperationalError("UPDATE numbering_sequences", {}, Exception("database is locked"))

        monkeypatch.setattr(ledger, "next_payment_code", always_locked)

        with pytest.raises(ConcurrencyConflictError) as exc_info:
            payment_service.create_payment(db_session, payment_data())

        assert exc_info.value.retryable is True
        assert isinstance(exc_info.value.original_error, OperationalError)
        assert published_events == []

    def test_failing_listener_does_not_undo_commit(
        self, payment_service, db_session, payment_data, event_bus
    ):
        def broken_listener(event):
            raise RuntimeError("listener down")

        event_bus.subscribe(PaymentCreatedEvent, broken_listener)

        payment = payment_service.create_payment(db_session, payment_data())

        assert _reload(db_session, payment.id) is not None

    def test_one_event_per_operation(
        self, payment_service, db_session, payment_data, settled_reservation, published_events
    ):
        payment = payment_service.create_payment(db_session, payment_data(amount=100000))
        allocation = payment_service.add_allocation(
            db_session, payment.id, {"reservation_id": settled_reservation.id, "allocated_amount": 1000}
        )
        payment_service.update_allocation(db_session, allocation.id, {"allocated_amount": 2000})
        payment_service.remove_allocation(db_session, allocation.id)
        payment_service.update_payment(db_session, payment.id, payment_data(amount=90000))
        payment_service.delete_payment(db_session, payment.id)

        assert [type(e) for e in published_events] == [
            PaymentCreatedEvent,
            PaymentAllocatedEvent,
            AllocationUpdatedEvent,
            AllocationRemovedEvent,
            PaymentUpdatedEvent,
            PaymentDeletedEvent,
        ]
