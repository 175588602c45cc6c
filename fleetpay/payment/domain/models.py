"""Payment entity.

A Payment is one incoming sum of money. Its ``status`` column is never set
by callers: the reconciliation engine recomputes it from ``amount`` and the
allocation total after every change (see ``value_objects.derive_status``).
"""

from datetime import date
from typing import TYPE_CHECKING

from sqlalchemy import CheckConstraint, Date, Enum, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ...storage.database.base import Base, IntPKMixin
from .enums import PaymentCategory, PaymentStatus

if TYPE_CHECKING:
    from .payment_allocation import PaymentAllocation


class Payment(IntPKMixin, Base):
    """Incoming payment that can be split across settled reservations.

    Attributes:
        code: Human-facing sequential code (e.g. ``PM-00001``), never reused
        payment_date: Date the money was received
        amount: Total received, in the smallest currency unit
        category: Channel the money came through
        provider: Optional acquirer / wallet label
        payer_name: Display name of whoever paid
        terminal_ref: Optional reference of the payment terminal used
        external_id: Optional id in an external system (unique when present)
        note: Free text
        status: Derived allocation status
    """

    __tablename__ = "payments"
    __table_args__ = (CheckConstraint("amount >= 0", name="amount_non_negative"),)

    code: Mapped[str] = mapped_column(String(30), unique=True, nullable=False, index=True)
    payment_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    category: Mapped[PaymentCategory] = mapped_column(Enum(PaymentCategory), nullable=False)
    provider: Mapped[str | None] = mapped_column(String(100))
    payer_name: Mapped[str] = mapped_column(String(200), nullable=False)
    terminal_ref: Mapped[str | None] = mapped_column(String(50))
    external_id: Mapped[str | None] = mapped_column(String(100), unique=True)
    note: Mapped[str | None] = mapped_column(Text)

    status: Mapped[PaymentStatus] = mapped_column(
        Enum(PaymentStatus),
        nullable=False,
        default=PaymentStatus.UNALLOCATED,
        index=True,
    )

    # Relationships
    allocations: Mapped[list["PaymentAllocation"]] = relationship(
        back_populates="payment",
        cascade="all, delete-orphan",
        order_by="PaymentAllocation.id",
    )

    @property
    def allocated_total(self) -> int:
        """Sum of the loaded allocations."""
        return sum(a.allocated_amount for a in self.allocations)

    @property
    def remaining_amount(self) -> int:
        return self.amount - self.allocated_total

    def __repr__(self) -> str:
        return f"<Payment(id={self.id}, code='{self.code}', amount={self.amount}, status='{self.status.value}')>"
