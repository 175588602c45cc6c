"""Domain model for allocations of a payment against settled reservations."""

from typing import TYPE_CHECKING

from sqlalchemy import CheckConstraint, ForeignKey, Integer, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ...storage.database.base import Base, IntPKMixin

if TYPE_CHECKING:
    from ...storage.database.models import Invoice, Reservation
    from .models import Payment


class PaymentAllocation(IntPKMixin, Base):
    """Slice of one Payment applied to one Reservation, optionally tagged to an Invoice.

    At most one allocation exists per (payment, reservation) pair, and
    ``allocated_amount`` is always strictly positive.
    """

    __tablename__ = "payment_allocations"
    __table_args__ = (
        UniqueConstraint(
            "payment_id", "reservation_id", name="uq_payment_allocations_payment_reservation"
        ),
        CheckConstraint("allocated_amount > 0", name="allocated_amount_positive"),
    )

    payment_id: Mapped[int] = mapped_column(
        ForeignKey("payments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    reservation_id: Mapped[int] = mapped_column(
        ForeignKey("reservations.id"), nullable=False, index=True
    )
    invoice_id: Mapped[int | None] = mapped_column(ForeignKey("invoices.id"), index=True)
    allocated_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    note: Mapped[str | None] = mapped_column(Text)

    payment: Mapped["Payment"] = relationship(back_populates="allocations")
    reservation: Mapped["Reservation"] = relationship(back_populates="allocations")
    invoice: Mapped["Invoice | None"] = relationship()

    def __repr__(self) -> str:
        return (
            f"<PaymentAllocation(id={self.id}, payment_id={self.payment_id}, "
            f"reservation_id={self.reservation_id}, amount={self.allocated_amount})>"
        )
