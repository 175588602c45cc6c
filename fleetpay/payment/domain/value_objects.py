"""Value objects and pure rules of the payment domain.

Immutable results returned by read operations, plus the status rule that
every mutation applies before committing.
"""

from dataclasses import dataclass, field

from .enums import PaymentStatus


def derive_status(amount: int, total_allocated: int) -> PaymentStatus:
    """Allocation status as a pure function of a payment's amount and allocation total.

    >>> derive_status(100000, 0)
    <PaymentStatus.UNALLOCATED: 'UNALLOCATED'>
    >>> derive_status(100000, 50000)
    <PaymentStatus.PARTIALLY_ALLOCATED: 'PARTIALLY_ALLOCATED'>
    >>> derive_status(100000, 100000)
    <PaymentStatus.FULLY_ALLOCATED: 'FULLY_ALLOCATED'>
    """
    if total_allocated == 0:
        return PaymentStatus.UNALLOCATED
    if total_allocated < amount:
        return PaymentStatus.PARTIALLY_ALLOCATED
    return PaymentStatus.FULLY_ALLOCATED


@dataclass(frozen=True)
class ReservationBalance:
    """Amount due on a reservation versus what payments already cover."""

    total_amount: int
    allocated_amount: int

    @property
    def remaining_amount(self) -> int:
        return self.total_amount - self.allocated_amount


@dataclass(frozen=True)
class ReservationPaymentSummary:
    """Payment situation of one reservation.

    Attributes:
        reservation_id: Reservation the figures refer to
        total_amount: actual_amount + tax_amount (actual counts as 0 while unsettled)
        allocated_amount: Sum of all allocations referencing the reservation
        remaining_amount: total_amount - allocated_amount
        is_settled: Whether actual_amount is known
    """

    reservation_id: int
    total_amount: int
    allocated_amount: int
    remaining_amount: int
    is_settled: bool


@dataclass(frozen=True)
class OpenInvoiceRef:
    id: int
    invoice_number: str


@dataclass(frozen=True)
class UnallocatedReservation:
    """Settled reservation that still has an uncovered balance."""

    id: int
    reservation_code: str
    customer_name: str
    actual_amount: int
    tax_amount: int
    allocated_amount: int
    remaining_amount: int
    invoices: tuple[OpenInvoiceRef, ...] = field(default_factory=tuple)
