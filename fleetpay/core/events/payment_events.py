"""Payment lifecycle events.

Published once per successful top-level operation, strictly after the
transaction commits. Payloads are detached snapshots plus the acting user id.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import ClassVar

from fleetpay.payment.application.schemas import AllocationRead, PaymentRead

from .base import BaseEvent


@dataclass(frozen=True)
class PaymentEvent(BaseEvent):
    """Common shape of payment events."""

    name: ClassVar[str] = "payment"

    payment: PaymentRead
    user_id: str


@dataclass(frozen=True)
class PaymentCreatedEvent(PaymentEvent):
    """A payment was recorded, possibly with inline allocations."""

    name: ClassVar[str] = "payment.created"


@dataclass(frozen=True)
class PaymentUpdatedEvent(PaymentEvent):
    """Header fields of a payment changed."""

    name: ClassVar[str] = "payment.updated"


@dataclass(frozen=True)
class PaymentDeletedEvent(PaymentEvent):
    """A payment and its allocations were deleted. ``payment`` is the pre-deletion snapshot."""

    name: ClassVar[str] = "payment.deleted"


@dataclass(frozen=True)
class PaymentAllocatedEvent(PaymentEvent):
    """One or more allocations were added (single add or bulk batch)."""

    name: ClassVar[str] = "payment.allocated"

    allocations: tuple[AllocationRead, ...] = ()


@dataclass(frozen=True)
class AllocationUpdatedEvent(PaymentEvent):
    """An allocation amount changed."""

    name: ClassVar[str] = "payment.allocation_updated"

    allocation: AllocationRead | None = None
    previous_amount: int | None = None


@dataclass(frozen=True)
class AllocationRemovedEvent(PaymentEvent):
    """An allocation was removed. ``allocation`` is the removed row's snapshot."""

    name: ClassVar[str] = "payment.allocation_removed"

    allocation: AllocationRead | None = None
