"""Read schemas: detached, immutable snapshots of payment records.

Used as event payloads and by the CLI, so nothing downstream holds on to a
live ORM object bound to a session.
"""

from datetime import date, datetime

from pydantic import BaseModel, ConfigDict

from ..domain.enums import PaymentCategory, PaymentStatus


class AllocationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: int
    payment_id: int
    reservation_id: int
    invoice_id: int | None = None
    allocated_amount: int
    note: str | None = None
    created_at: datetime


class PaymentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: int
    code: str
    payment_date: date
    amount: int
    category: PaymentCategory
    provider: str | None = None
    payer_name: str
    terminal_ref: str | None = None
    external_id: str | None = None
    note: str | None = None
    status: PaymentStatus
    created_at: datetime
    updated_at: datetime
    allocations: list[AllocationRead] = []

    @property
    def allocated_total(self) -> int:
        return sum(a.allocated_amount for a in self.allocations)
