"""SQLAlchemy models for the rental records the payment engine reads."""

from __future__ import annotations

from datetime import datetime
from enum import Enum as PyEnum
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, Enum, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, IntPKMixin

if TYPE_CHECKING:
    from ...payment.domain.payment_allocation import PaymentAllocation


class InvoiceStatus(PyEnum):
    """Invoice status."""

    DRAFT = "DRAFT"
    ISSUED = "ISSUED"
    PAID = "PAID"
    OVERDUE = "OVERDUE"
    CANCELLED = "CANCELLED"


OPEN_INVOICE_STATUSES = (InvoiceStatus.ISSUED, InvoiceStatus.OVERDUE)


class Reservation(IntPKMixin, Base):
    """Rental transaction (partial view).

    The full reservation lifecycle is managed elsewhere; the payment engine
    only reads the settlement amounts. ``actual_amount`` stays NULL until the
    rental is settled.
    """

    __tablename__ = "reservations"

    reservation_code: Mapped[str] = mapped_column(String(30), unique=True, nullable=False)
    customer_name: Mapped[str] = mapped_column(String(200), nullable=False)

    # Settlement
    actual_amount: Mapped[int | None] = mapped_column(Integer)
    tax_amount: Mapped[int | None] = mapped_column(Integer)
    settled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Relationships
    invoices: Mapped[list[Invoice]] = relationship(back_populates="reservation")
    allocations: Mapped[list[PaymentAllocation]] = relationship(
        "PaymentAllocation", back_populates="reservation"
    )

    @property
    def is_settled(self) -> bool:
        return self.actual_amount is not None

    @property
    def total_due(self) -> int:
        """Settled charge plus tax; 0 for the charge part while unsettled."""
        return (self.actual_amount or 0) + (self.tax_amount or 0)

    def __repr__(self) -> str:
        return f"<Reservation(id={self.id}, code='{self.reservation_code}', actual_amount={self.actual_amount})>"


class Invoice(IntPKMixin, Base):
    """Invoice issued for a reservation (partial view)."""

    __tablename__ = "invoices"

    invoice_number: Mapped[str] = mapped_column(String(30), unique=True, nullable=False)
    reservation_id: Mapped[int | None] = mapped_column(ForeignKey("reservations.id"), index=True)
    reservation: Mapped[Reservation | None] = relationship(back_populates="invoices")

    status: Mapped[InvoiceStatus] = mapped_column(
        Enum(InvoiceStatus), nullable=False, default=InvoiceStatus.DRAFT
    )
    total_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    def __repr__(self) -> str:
        return f"<Invoice(id={self.id}, number='{self.invoice_number}', status='{self.status.value}')>"


class NumberingSequence(IntPKMixin, Base):
    """Last number issued for a document code prefix.

    The row is locked while a new code is drawn, so numbers are issued once
    even when the document holding the highest number is later deleted.
    """

    __tablename__ = "numbering_sequences"

    name: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    last_value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    def __repr__(self) -> str:
        return f"<NumberingSequence(name='{self.name}', last_value={self.last_value})>"


# Ensure payment models are registered for relationship resolution
from ...payment.domain import models as _payment_models  # noqa: F401,E402
from ...payment.domain import payment_allocation as _payment_allocation  # noqa: F401,E402
