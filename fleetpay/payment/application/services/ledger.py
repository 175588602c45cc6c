"""Transactional building blocks shared by the payment service.

Every function runs inside the caller's open transaction and never commits.
Row locks are taken with ``SELECT ... FOR UPDATE``; callers lock the Payment
first and Reservations in ascending id order.
"""

from collections.abc import Iterable

from sqlalchemy import func
from sqlalchemy.orm import Session

from fleetpay.storage.database.models import NumberingSequence, Reservation
from fleetpay.utils.logging import get_logger

from ...domain.enums import PaymentStatus
from ...domain.models import Payment
from ...domain.payment_allocation import PaymentAllocation
from ...domain.value_objects import ReservationBalance, derive_status

logger = get_logger(__name__)


def lock_payment(db: Session, payment_id: int) -> Payment | None:
    """Load a payment holding its row lock until the transaction ends."""
    return db.query(Payment).filter(Payment.id == payment_id).with_for_update().first()


def lock_reservations(db: Session, reservation_ids: Iterable[int]) -> dict[int, Reservation]:
    """Lock the given reservations in ascending id order.

    Returns the reservations found, keyed by id; missing ids are absent.
    """
    ids = sorted(set(reservation_ids))
    if not ids:
        return {}
    rows = (
        db.query(Reservation)
        .filter(Reservation.id.in_(ids))
        .order_by(Reservation.id)
        .with_for_update()
        .all()
    )
    return {reservation.id: reservation for reservation in rows}


def payment_allocated_total(
    db: Session, payment_id: int, exclude_allocation_id: int | None = None
) -> int:
    """Sum of a payment's allocations, optionally leaving one allocation out."""
    query = db.query(func.coalesce(func.sum(PaymentAllocation.allocated_amount), 0)).filter(
        PaymentAllocation.payment_id == payment_id
    )
    if exclude_allocation_id is not None:
        query = query.filter(PaymentAllocation.id != exclude_allocation_id)
    return int(query.scalar())


def reservation_balance(
    db: Session, reservation: Reservation, exclude_allocation_id: int | None = None
) -> ReservationBalance:
    """Total due on a reservation versus the sum of every allocation referencing it."""
    query = db.query(func.coalesce(func.sum(PaymentAllocation.allocated_amount), 0)).filter(
        PaymentAllocation.reservation_id == reservation.id
    )
    if exclude_allocation_id is not None:
        query = query.filter(PaymentAllocation.id != exclude_allocation_id)
    return ReservationBalance(
        total_amount=reservation.total_due,
        allocated_amount=int(query.scalar()),
    )


def recalculate_status(db: Session, payment: Payment) -> PaymentStatus:
    """Re-derive ``payment.status`` from its amount and the allocations in the store.

    The only place a payment's status is written.
    """
    db.flush()
    status = derive_status(payment.amount, payment_allocated_total(db, payment.id))
    if payment.status != status:
        logger.debug(
            "payment_status_changed",
            payment_id=payment.id,
            old_status=payment.status.value if payment.status else None,
            new_status=status.value,
        )
    payment.status = status
    return status


def _highest_issued_number(db: Session, prefix: str) -> int:
    codes = (
        db.query(Payment.code)
        .filter(Payment.code.startswith(prefix, autoescape=True))
        .order_by(func.length(Payment.code).desc(), Payment.code.desc())
        .limit(20)
        .all()
    )
    for (code,) in codes:
        suffix = code[len(prefix) :]
        if suffix.isdigit():
            return int(suffix)
    return 0


def next_payment_code(db: Session, prefix: str, width: int) -> str:
    """Draw the next payment code (``PM-00001`` style) from the numbering sequence.

    The sequence row is locked and incremented, so a code is issued at most
    once. When no row exists yet it is seeded from the highest existing code.
    """
    sequence = (
        db.query(NumberingSequence)
        .filter(NumberingSequence.name == prefix)
        .with_for_update()
        .first()
    )
    if sequence is None:
        sequence = NumberingSequence(name=prefix, last_value=_highest_issued_number(db, prefix))
        db.add(sequence)
        logger.info("numbering_sequence_seeded", name=prefix, last_value=sequence.last_value)

    sequence.last_value += 1
    db.flush()
    return f"{prefix}{sequence.last_value:0{width}d}"
