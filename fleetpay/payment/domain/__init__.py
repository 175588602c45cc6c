"""Payment domain: entities, enums and pure allocation rules."""

__all__ = [
    "PaymentCategory",
    "PaymentStatus",
    "derive_status",
    "ReservationBalance",
    "ReservationPaymentSummary",
    "UnallocatedReservation",
    "OpenInvoiceRef",
]

from .enums import PaymentCategory, PaymentStatus
from .value_objects import (
    OpenInvoiceRef,
    ReservationBalance,
    ReservationPaymentSummary,
    UnallocatedReservation,
    derive_status,
)
