"""Payment reconciliation service.

Records incoming payments and splits them across settled reservations while
keeping both sides of the ledger balanced:

* a payment is never allocated beyond its own amount
* a reservation never receives more than its total due
* ``Payment.status`` always matches the payment's allocation total

Each mutating method is one unit of work: authorize, validate, lock, check,
write, recompute status, commit, then publish exactly one event. Any failure
rolls back the whole unit; lock and serialization conflicts are retried.
"""

from collections.abc import Callable
from typing import Any, TypeVar

from sqlalchemy import func, or_
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session, selectinload

from fleetpay.core.auth import (
    SYSTEM_USER,
    CurrentUser,
    Role,
    StaticUserProvider,
    UserProvider,
    require_role,
)
from fleetpay.core.events import (
    AllocationRemovedEvent,
    AllocationUpdatedEvent,
    BaseEvent,
    EventBus,
    PaymentAllocatedEvent,
    PaymentCreatedEvent,
    PaymentDeletedEvent,
    PaymentUpdatedEvent,
    get_global_event_bus,
)
from fleetpay.exceptions import (
    ConcurrencyConflictError,
    FleetPayError,
    NotFoundError,
    ValidationError,
    wrap_exception,
)
from fleetpay.storage.database.models import OPEN_INVOICE_STATUSES, Invoice, Reservation
from fleetpay.storage.errors import StorageErrorInfo, StorageErrorKind, classify_storage_error
from fleetpay.utils.config import Settings
from fleetpay.utils.logging import LogPerformance, get_logger
from fleetpay.utils.retry import RetryConfig, retry_sync

from ...domain.enums import PaymentCategory, PaymentStatus
from ...domain.models import Payment
from ...domain.payment_allocation import PaymentAllocation
from ...domain.value_objects import (
    OpenInvoiceRef,
    ReservationPaymentSummary,
    UnallocatedReservation,
)
from ..schemas import AllocationRead, PaymentRead
from ..validation import (
    AllocationAmountUpdate,
    AllocationInput,
    BulkAllocationInput,
    PaymentCreate,
    PaymentUpdate,
    parse_input,
)
from . import ledger

logger = get_logger(__name__)

T = TypeVar("T")

_HEADER_FIELDS = (
    "payment_date",
    "amount",
    "category",
    "provider",
    "payer_name",
    "terminal_ref",
    "external_id",
    "note",
)


class PaymentService:
    """Service for payment and allocation operations.

    Example:
        >>> service = PaymentService(settings, user_provider=StaticUserProvider(user))
        >>> with db_session() as db:
        ...     payment = service.create_payment(db, {
        ...         "payment_date": "2026-03-01",
        ...         "amount": 100000,
        ...         "category": "BANK_TRANSFER",
        ...         "payer_name": "Acme Logistics",
        ...     })
        ...     service.add_allocation(db, payment.id, {"reservation_id": 7, "allocated_amount": 40000})
    """

    def __init__(
        self,
        settings: Settings,
        user_provider: UserProvider | None = None,
        event_bus: EventBus | None = None,
    ):
        """Initialize service.

        Args:
            settings: Application settings (numbering, retry policy, query limits)
            user_provider: Returns the acting user; defaults to the system user
            event_bus: Where committed mutations are announced; defaults to the global bus
        """
        self.settings = settings
        self.user_provider = user_provider or StaticUserProvider(SYSTEM_USER)
        self.event_bus = event_bus or get_global_event_bus()
        self.retry_config = RetryConfig(
            max_retries=settings.transaction_max_retries,
            base_delay=settings.transaction_retry_base_delay,
            max_delay=max(2.0, settings.transaction_retry_base_delay),
            retryable_exceptions=(ConcurrencyConflictError,),
        )

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    def create_payment(self, db: Session, data: PaymentCreate | dict[str, Any]) -> Payment:
        """Record a new payment, optionally allocating it in the same transaction.

        Inline allocations are processed in input order. The payment gets the
        next code from the numbering sequence.

        Args:
            db: Database session
            data: Payment header plus optional ``allocations``

        Returns:
            The committed Payment

        Raises:
            PermissionDeniedError: If the acting user is below MEMBER
            ValidationError: Malformed input, unknown or unsettled reservation,
                balance exceeded on either side, duplicate external id
        """
        user = self._authorize(Role.MEMBER, "create payments")
        payload = parse_input(PaymentCreate, data)

        def work() -> Payment:
            code = ledger.next_payment_code(
                db, self.settings.payment_code_prefix, self.settings.payment_code_width
            )
            payment = Payment(
                code=code,
                status=PaymentStatus.UNALLOCATED,
                **payload.model_dump(include=set(_HEADER_FIELDS)),
            )
            db.add(payment)
            db.flush()

            reservations = ledger.lock_reservations(
                db, (item.reservation_id for item in payload.allocations)
            )
            running_total = 0
            seen: set[int] = set()
            for index, item in enumerate(payload.allocations):
                prefix = f"allocations.{index}."
                running_total += item.allocated_amount
                if running_total > payment.amount:
                    raise ValidationError(
                        f"Total of allocations exceeds the payment amount ({payment.amount})",
                        field=f"{prefix}allocated_amount",
                    )
                self._reject_repeated_reservation(item, seen, prefix)
                reservation = reservations.get(item.reservation_id)
                if reservation is None:
                    raise ValidationError(
                        f"Reservation {item.reservation_id} not found",
                        field=f"{prefix}reservation_id",
                    )
                self._insert_allocation(db, payment, reservation, item, field_prefix=prefix)

            ledger.recalculate_status(db, payment)
            return payment

        payment = self._run_unit_of_work(
            db, "create_payment", work, self._payment_unique_error
        )

        logger.info(
            "payment_created",
            payment_id=payment.id,
            code=payment.code,
            amount=payment.amount,
            allocations=len(payload.allocations),
            status=payment.status.value,
            user_id=user.id,
        )
        self._notify(PaymentCreatedEvent(payment=self._snapshot(payment), user_id=user.id))
        return payment

    def update_payment(
        self, db: Session, payment_id: int, data: PaymentUpdate | dict[str, Any]
    ) -> Payment:
        """Replace a payment's header fields.

        The amount may not drop below what is already allocated.

        Raises:
            NotFoundError: If the payment does not exist
            ValidationError: Malformed input, amount below the allocation
                total, duplicate external id
        """
        user = self._authorize(Role.MEMBER, "update payments")
        if db.get(Payment, payment_id) is None:
            raise NotFoundError(
                f"Payment {payment_id} not found", entity_type="Payment", entity_id=payment_id
            )
        payload = parse_input(PaymentUpdate, data)

        def work() -> Payment:
            payment = self._lock_payment_or_raise(db, payment_id)
            allocated = ledger.payment_allocated_total(db, payment.id)
            if payload.amount < allocated:
                raise ValidationError(
                    f"Amount cannot be lower than the amount already allocated ({allocated})",
                    field="amount",
                )
            for name in _HEADER_FIELDS:
                setattr(payment, name, getattr(payload, name))
            ledger.recalculate_status(db, payment)
            return payment

        payment = self._run_unit_of_work(
            db, "update_payment", work, self._payment_unique_error
        )

        logger.info(
            "payment_updated",
            payment_id=payment.id,
            amount=payment.amount,
            status=payment.status.value,
            user_id=user.id,
        )
        self._notify(PaymentUpdatedEvent(payment=self._snapshot(payment), user_id=user.id))
        return payment

    def delete_payment(self, db: Session, payment_id: int) -> None:
        """Delete a payment together with its allocations (MANAGER or above)."""
        user = self._authorize(Role.MANAGER, "delete payments")

        def work() -> PaymentRead:
            payment = self._lock_payment_or_raise(db, payment_id)
            snapshot = self._snapshot(payment)
            db.delete(payment)
            db.flush()
            return snapshot

        snapshot = self._run_unit_of_work(
            db, "delete_payment", work, self._payment_unique_error
        )

        logger.info(
            "payment_deleted",
            payment_id=snapshot.id,
            code=snapshot.code,
            allocations=len(snapshot.allocations),
            user_id=user.id,
        )
        self._notify(PaymentDeletedEvent(payment=snapshot, user_id=user.id))

    # ------------------------------------------------------------------
    # Allocations
    # ------------------------------------------------------------------

    def add_allocation(
        self, db: Session, payment_id: int, data: AllocationInput | dict[str, Any]
    ) -> PaymentAllocation:
        """Allocate part of a payment to one settled reservation.

        Raises:
            NotFoundError: Unknown payment or reservation
            ValidationError: Unsettled reservation, balance exceeded on either
                side, reservation already allocated on this payment
        """
        user = self._authorize(Role.MEMBER, "allocate payments")
        payload = parse_input(AllocationInput, data)

        def work() -> PaymentAllocation:
            payment = self._lock_payment_or_raise(db, payment_id)
            reservation = ledger.lock_reservations(db, [payload.reservation_id]).get(
                payload.reservation_id
            )
            if reservation is None:
                raise NotFoundError(
                    f"Reservation {payload.reservation_id} not found",
                    entity_type="Reservation",
                    entity_id=payload.reservation_id,
                )
            allocation = self._insert_allocation(db, payment, reservation, payload)
            ledger.recalculate_status(db, payment)
            return allocation

        allocation = self._run_unit_of_work(
            db,
            "add_allocation",
            work,
            lambda info: self._allocation_unique_error(info, pair_field="reservation_id"),
        )

        payment = allocation.payment
        logger.info(
            "payment_allocated",
            payment_id=payment.id,
            allocation_id=allocation.id,
            reservation_id=allocation.reservation_id,
            amount=allocation.allocated_amount,
            status=payment.status.value,
            user_id=user.id,
        )
        self._notify(
            PaymentAllocatedEvent(
                payment=self._snapshot(payment),
                user_id=user.id,
                allocations=(AllocationRead.model_validate(allocation),),
            )
        )
        return allocation

    def bulk_allocate(
        self, db: Session, payment_id: int, data: BulkAllocationInput | dict[str, Any]
    ) -> list[PaymentAllocation]:
        """Apply several allocations of one payment atomically.

        Items are checked in input order against the payment's running total
        and each reservation's own residual (earlier items of the batch
        included). A single rejected item aborts the whole batch.

        Returns:
            The created allocations, in input order
        """
        user = self._authorize(Role.MEMBER, "allocate payments")
        payload = parse_input(BulkAllocationInput, data)

        def work() -> list[PaymentAllocation]:
            payment = self._lock_payment_or_raise(db, payment_id)
            reservations = ledger.lock_reservations(
                db, (item.reservation_id for item in payload.allocations)
            )
            created = []
            seen: set[int] = set()
            for index, item in enumerate(payload.allocations):
                prefix = f"allocations.{index}."
                self._reject_repeated_reservation(item, seen, prefix)
                reservation = reservations.get(item.reservation_id)
                if reservation is None:
                    raise ValidationError(
                        f"Reservation {item.reservation_id} not found",
                        field=f"{prefix}reservation_id",
                    )
                created.append(
                    self._insert_allocation(db, payment, reservation, item, field_prefix=prefix)
                )
            ledger.recalculate_status(db, payment)
            return created

        with LogPerformance("bulk_allocate", logger):
            allocations = self._run_unit_of_work(
                db, "bulk_allocate", work, self._allocation_unique_error
            )

        payment = allocations[0].payment
        logger.info(
            "payment_bulk_allocated",
            payment_id=payment.id,
            count=len(allocations),
            total=sum(a.allocated_amount for a in allocations),
            status=payment.status.value,
            user_id=user.id,
        )
        self._notify(
            PaymentAllocatedEvent(
                payment=self._snapshot(payment),
                user_id=user.id,
                allocations=tuple(AllocationRead.model_validate(a) for a in allocations),
            )
        )
        return allocations

    def update_allocation(
        self,
        db: Session,
        allocation_id: int,
        data: AllocationAmountUpdate | dict[str, Any],
    ) -> PaymentAllocation:
        """Change the amount of an existing allocation.

        An increase is checked against both residuals, leaving the allocation's
        current amount out. A reduction is always accepted.
        """
        user = self._authorize(Role.MEMBER, "update allocations")
        payload = parse_input(AllocationAmountUpdate, data)

        def work() -> tuple[PaymentAllocation, int]:
            current = self._get_allocation_or_raise(db, allocation_id)
            payment = self._lock_payment_or_raise(db, current.payment_id)
            reservation = ledger.lock_reservations(db, [current.reservation_id])[
                current.reservation_id
            ]
            allocation = self._lock_allocation_or_raise(db, allocation_id)
            previous_amount = allocation.allocated_amount

            # A reduction can only lower both totals
            if payload.allocated_amount > previous_amount:
                self._check_balances(
                    db,
                    payment,
                    reservation,
                    payload.allocated_amount,
                    field="allocated_amount",
                    exclude_allocation_id=allocation.id,
                )
            allocation.allocated_amount = payload.allocated_amount
            ledger.recalculate_status(db, payment)
            return allocation, previous_amount

        allocation, previous_amount = self._run_unit_of_work(
            db, "update_allocation", work, self._allocation_unique_error
        )

        payment = allocation.payment
        logger.info(
            "allocation_updated",
            allocation_id=allocation.id,
            payment_id=payment.id,
            previous_amount=previous_amount,
            amount=allocation.allocated_amount,
            status=payment.status.value,
            user_id=user.id,
        )
        self._notify(
            AllocationUpdatedEvent(
                payment=self._snapshot(payment),
                user_id=user.id,
                allocation=AllocationRead.model_validate(allocation),
                previous_amount=previous_amount,
            )
        )
        return allocation

    def remove_allocation(self, db: Session, allocation_id: int) -> None:
        """Delete one allocation and recompute its payment's status."""
        user = self._authorize(Role.MEMBER, "remove allocations")

        def work() -> tuple[Payment, AllocationRead]:
            current = self._get_allocation_or_raise(db, allocation_id)
            payment = self._lock_payment_or_raise(db, current.payment_id)
            allocation = self._lock_allocation_or_raise(db, allocation_id)
            removed = AllocationRead.model_validate(allocation)
            if allocation in payment.allocations:
                payment.allocations.remove(allocation)
            db.delete(allocation)
            ledger.recalculate_status(db, payment)
            return payment, removed

        payment, removed = self._run_unit_of_work(
            db, "remove_allocation", work, self._allocation_unique_error
        )

        logger.info(
            "allocation_removed",
            allocation_id=removed.id,
            payment_id=payment.id,
            amount=removed.allocated_amount,
            status=payment.status.value,
            user_id=user.id,
        )
        self._notify(
            AllocationRemovedEvent(
                payment=self._snapshot(payment), user_id=user.id, allocation=removed
            )
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def list_payments(
        self,
        db: Session,
        status: PaymentStatus | None = None,
        category: PaymentCategory | None = None,
        search: str | None = None,
        skip: int = 0,
        limit: int = 50,
    ) -> tuple[list[Payment], int]:
        """List payments, newest code first.

        ``search`` matches code, payer name, external id and provider
        (case-insensitive substring).

        Returns:
            (payments on this page, total matching)
        """
        self._authorize(Role.MEMBER, "view payments")

        query = db.query(Payment)
        if status:
            query = query.filter(Payment.status == status)
        if category:
            query = query.filter(Payment.category == category)
        if search and search.strip():
            pattern = f"%{search.strip()}%"
            query = query.filter(
                or_(
                    Payment.code.ilike(pattern),
                    Payment.payer_name.ilike(pattern),
                    Payment.external_id.ilike(pattern),
                    Payment.provider.ilike(pattern),
                )
            )

        total = query.count()
        payments = (
            query.options(selectinload(Payment.allocations))
            .order_by(Payment.code.desc())
            .offset(skip)
            .limit(limit)
            .all()
        )
        return payments, total

    def get_payment(self, db: Session, payment_id: int) -> Payment:
        """Get a payment with its allocations (and their reservations) loaded."""
        self._authorize(Role.MEMBER, "view payments")
        payment = (
            db.query(Payment)
            .options(
                selectinload(Payment.allocations).selectinload(PaymentAllocation.reservation),
                selectinload(Payment.allocations).selectinload(PaymentAllocation.invoice),
            )
            .filter(Payment.id == payment_id)
            .first()
        )
        if payment is None:
            raise NotFoundError(
                f"Payment {payment_id} not found", entity_type="Payment", entity_id=payment_id
            )
        return payment

    def get_reservation_payment_summary(
        self, db: Session, reservation_id: int
    ) -> ReservationPaymentSummary:
        """Total due, allocated and remaining amounts of one reservation.

        Unsettled reservations are reported too: their charge counts as 0 and
        ``is_settled`` is False.
        """
        self._authorize(Role.MEMBER, "view payments")
        reservation = db.get(Reservation, reservation_id)
        if reservation is None:
            raise NotFoundError(
                f"Reservation {reservation_id} not found",
                entity_type="Reservation",
                entity_id=reservation_id,
            )
        balance = ledger.reservation_balance(db, reservation)
        return ReservationPaymentSummary(
            reservation_id=reservation.id,
            total_amount=balance.total_amount,
            allocated_amount=balance.allocated_amount,
            remaining_amount=balance.remaining_amount,
            is_settled=reservation.is_settled,
        )

    def get_unallocated_reservations(
        self, db: Session, limit: int | None = None
    ) -> list[UnallocatedReservation]:
        """Settled reservations with an uncovered balance, newest settlement first.

        Each entry carries its residual and its open (issued or overdue) invoices.
        """
        self._authorize(Role.MEMBER, "view payments")
        limit = limit or self.settings.unallocated_reservations_limit

        allocated = (
            db.query(
                PaymentAllocation.reservation_id.label("reservation_id"),
                func.sum(PaymentAllocation.allocated_amount).label("allocated"),
            )
            .group_by(PaymentAllocation.reservation_id)
            .subquery()
        )
        allocated_amount = func.coalesce(allocated.c.allocated, 0)
        total_due = Reservation.actual_amount + func.coalesce(Reservation.tax_amount, 0)

        rows = (
            db.query(Reservation, allocated_amount)
            .outerjoin(allocated, allocated.c.reservation_id == Reservation.id)
            .filter(Reservation.actual_amount.is_not(None))
            .filter(total_due - allocated_amount > 0)
            .order_by(Reservation.settled_at.desc().nulls_last(), Reservation.id.desc())
            .limit(limit)
            .all()
        )

        invoices_by_reservation: dict[int, list[OpenInvoiceRef]] = {}
        if rows:
            invoices = (
                db.query(Invoice)
                .filter(Invoice.reservation_id.in_([r.id for r, _ in rows]))
                .filter(Invoice.status.in_(OPEN_INVOICE_STATUSES))
                .order_by(Invoice.invoice_number)
                .all()
            )
            for invoice in invoices:
                invoices_by_reservation.setdefault(invoice.reservation_id, []).append(
                    OpenInvoiceRef(id=invoice.id, invoice_number=invoice.invoice_number)
                )

        return [
            UnallocatedReservation(
                id=reservation.id,
                reservation_code=reservation.reservation_code,
                customer_name=reservation.customer_name,
                actual_amount=reservation.actual_amount,
                tax_amount=reservation.tax_amount or 0,
                allocated_amount=int(allocated_sum),
                remaining_amount=reservation.total_due - int(allocated_sum),
                invoices=tuple(invoices_by_reservation.get(reservation.id, ())),
            )
            for reservation, allocated_sum in rows
        ]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _authorize(self, minimum: Role, action: str) -> CurrentUser:
        user = self.user_provider()
        require_role(user, minimum, action)
        return user

    def _run_unit_of_work(
        self,
        db: Session,
        operation: str,
        work: Callable[[], T],
        unique_error: Callable[[StorageErrorInfo], ValidationError],
    ) -> T:
        """Run ``work`` and commit, retrying the whole unit on lock conflicts.

        Domain errors roll back and propagate unchanged. Storage errors are
        classified: conflicts become ConcurrencyConflictError (retried),
        unique violations become ValidationError via ``unique_error``.
        """

        def attempt() -> T:
            try:
                result = work()
                db.commit()
                return result
            except FleetPayError as e:
                db.rollback()
                logger.warning(
                    "operation_rejected",
                    operation=operation,
                    error=e.message,
                    error_type=type(e).__name__,
                    **e.context,
                )
                raise
            except DBAPIError as e:
                db.rollback()
                info = classify_storage_error(e)
                if info.kind is StorageErrorKind.CONFLICT or (
                    info.kind is StorageErrorKind.UNIQUE_VIOLATION
                    and info.table == "numbering_sequences"
                ):
                    raise wrap_exception(
                        e,
                        "Transaction aborted by a concurrent update",
                        exception_class=ConcurrencyConflictError,
                        operation=operation,
                    ) from e
                if info.kind is StorageErrorKind.UNIQUE_VIOLATION:
                    error = unique_error(info)
                    logger.warning(
                        "unique_violation",
                        operation=operation,
                        table=info.table,
                        columns=list(info.columns),
                    )
                    raise error from e
                raise
            except Exception:
                db.rollback()
                raise

        def on_retry(error: Exception, attempt_number: int) -> None:
            logger.warning("transaction_retry", operation=operation, attempt=attempt_number)

        return retry_sync(attempt, config=self.retry_config, on_retry=on_retry)

    def _insert_allocation(
        self,
        db: Session,
        payment: Payment,
        reservation: Reservation,
        item: AllocationInput,
        field_prefix: str = "",
    ) -> PaymentAllocation:
        self._check_balances(
            db,
            payment,
            reservation,
            item.allocated_amount,
            field=f"{field_prefix}allocated_amount",
            settled_field=f"{field_prefix}reservation_id",
        )
        if item.invoice_id is not None and db.get(Invoice, item.invoice_id) is None:
            raise ValidationError(
                f"Invoice {item.invoice_id} not found", field=f"{field_prefix}invoice_id"
            )

        allocation = PaymentAllocation(
            payment=payment,
            reservation_id=reservation.id,
            invoice_id=item.invoice_id,
            allocated_amount=item.allocated_amount,
            note=item.note,
        )
        db.add(allocation)
        db.flush()
        return allocation

    def _reject_repeated_reservation(
        self, item: AllocationInput, seen: set[int], field_prefix: str
    ) -> None:
        if item.reservation_id in seen:
            raise ValidationError(
                f"Reservation {item.reservation_id} appears more than once in the allocations",
                field=f"{field_prefix}reservation_id",
            )
        seen.add(item.reservation_id)

    def _check_balances(
        self,
        db: Session,
        payment: Payment,
        reservation: Reservation,
        amount: int,
        *,
        field: str,
        settled_field: str = "reservation_id",
        exclude_allocation_id: int | None = None,
    ) -> None:
        if not reservation.is_settled:
            raise ValidationError(
                f"Reservation {reservation.reservation_code} is not settled; "
                "only settled reservations can receive payments",
                field=settled_field,
            )

        payment_remaining = payment.amount - ledger.payment_allocated_total(
            db, payment.id, exclude_allocation_id
        )
        if amount > payment_remaining:
            raise ValidationError(
                f"Allocated amount exceeds the payment's remaining balance ({payment_remaining})",
                field=field,
            )

        balance = ledger.reservation_balance(db, reservation, exclude_allocation_id)
        if amount > balance.remaining_amount:
            raise ValidationError(
                "Allocated amount exceeds the reservation's remaining balance "
                f"({balance.remaining_amount})",
                field=field,
            )

    def _lock_payment_or_raise(self, db: Session, payment_id: int) -> Payment:
        payment = ledger.lock_payment(db, payment_id)
        if payment is None:
            raise NotFoundError(
                f"Payment {payment_id} not found", entity_type="Payment", entity_id=payment_id
            )
        return payment

    def _get_allocation_or_raise(self, db: Session, allocation_id: int) -> PaymentAllocation:
        allocation = db.get(PaymentAllocation, allocation_id)
        if allocation is None:
            raise NotFoundError(
                f"Allocation {allocation_id} not found",
                entity_type="PaymentAllocation",
                entity_id=allocation_id,
            )
        return allocation

    def _lock_allocation_or_raise(self, db: Session, allocation_id: int) -> PaymentAllocation:
        allocation = (
            db.query(PaymentAllocation)
            .filter(PaymentAllocation.id == allocation_id)
            .populate_existing()
            .with_for_update()
            .first()
        )
        if allocation is None:
            raise NotFoundError(
                f"Allocation {allocation_id} not found",
                entity_type="PaymentAllocation",
                entity_id=allocation_id,
            )
        return allocation

    def _payment_unique_error(self, info: StorageErrorInfo) -> ValidationError:
        if info.involves("external_id"):
            return ValidationError(
                "A payment with this external id already exists", field="external_id"
            )
        return self._allocation_unique_error(info)

    def _allocation_unique_error(
        self, info: StorageErrorInfo, pair_field: str | None = None
    ) -> ValidationError:
        if info.involves("payment_id", "reservation_id"):
            return ValidationError(
                "This reservation is already allocated on the payment", field=pair_field
            )
        if info.involves("code"):
            return ValidationError("Payment code already in use, please try again")
        return ValidationError("A record with the same unique value already exists")

    def _snapshot(self, payment: Payment) -> PaymentRead:
        return PaymentRead.model_validate(payment)

    def _notify(self, event: BaseEvent) -> None:
        """Publish after commit; a failing bus never undoes the committed work."""
        try:
            self.event_bus.publish(event)
        except Exception as e:
            logger.error(
                "event_publish_failed",
                event_type=type(event).__name__,
                error=str(e),
                exc_info=True,
            )
