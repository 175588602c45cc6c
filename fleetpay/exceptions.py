"""Exception hierarchy for fleetpay.

Every error raised by the reconciliation engine derives from ``FleetPayError``
and carries a human-readable message plus a ``context`` dict for structured
logging. Callers receive exactly one of the typed errors below; anything else
(connectivity problems, programming errors) propagates unchanged.

Usage:
    from fleetpay.exceptions import ValidationError, NotFoundError

    try:
        service.add_allocation(db, payment_id, data)
    except ValidationError as e:
        logger.warning("allocation_rejected", error=str(e), fields=e.field_errors)
"""

from __future__ import annotations

from typing import Any


class FleetPayError(Exception):
    """Base exception for all fleetpay errors.

    Attributes:
        message: Human-readable error message
        context: Additional context for debugging (dict)
        original_error: Original exception if wrapped
    """

    def __init__(
        self,
        message: str,
        *,
        context: dict[str, Any] | None = None,
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}
        self.original_error = original_error

    def __str__(self) -> str:
        base = self.message
        if self.context:
            ctx_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base = f"{base} ({ctx_str})"
        if self.original_error:
            base = f"{base} [caused by: {type(self.original_error).__name__}]"
        return base

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(message={self.message!r}, context={self.context!r})"


# =============================================================================
# Validation & Input Errors
# =============================================================================


class ValidationError(FleetPayError):
    """Raised when input is malformed or a business rule rejects it.

    Covers both schema-level failures (missing or malformed fields) and
    business-rule violations (remaining balance exceeded, reservation not
    settled, duplicate allocation pair, duplicate external id).

    Attributes:
        field_errors: Field path -> list of messages, for form re-display.
            Nested paths are dotted, e.g. ``allocations.0.allocated_amount``.
    """

    def __init__(
        self,
        message: str,
        *,
        field_errors: dict[str, list[str]] | None = None,
        field: str | None = None,
        **kwargs: Any,
    ) -> None:
        self.field_errors: dict[str, list[str]] = dict(field_errors or {})
        if field:
            self.field_errors.setdefault(field, []).append(message)
        context = kwargs.get("context", {})
        if self.field_errors:
            context["fields"] = ",".join(sorted(self.field_errors))
        kwargs["context"] = context
        super().__init__(message, **kwargs)


# =============================================================================
# Lookup & Authorization Errors
# =============================================================================


class NotFoundError(FleetPayError):
    """Raised when a referenced payment, reservation or allocation does not exist.

    Args:
        entity_type: Type of entity (e.g., "Payment", "Reservation")
        entity_id: ID of the missing entity
    """

    def __init__(
        self,
        message: str,
        *,
        entity_type: str | None = None,
        entity_id: int | str | None = None,
        **kwargs: Any,
    ) -> None:
        context = kwargs.get("context", {})
        if entity_type:
            context["entity_type"] = entity_type
        if entity_id is not None:
            context["entity_id"] = str(entity_id)
        kwargs["context"] = context
        super().__init__(message, **kwargs)
        self.entity_type = entity_type
        self.entity_id = entity_id


class PermissionDeniedError(FleetPayError):
    """Raised when the acting user's role is below an operation's minimum."""

    def __init__(
        self,
        message: str,
        *,
        required_role: str | None = None,
        actual_role: str | None = None,
        **kwargs: Any,
    ) -> None:
        context = kwargs.get("context", {})
        if required_role:
            context["required_role"] = required_role
        if actual_role:
            context["actual_role"] = actual_role
        kwargs["context"] = context
        super().__init__(message, **kwargs)


# =============================================================================
# Database & Persistence Errors
# =============================================================================


class DatabaseError(FleetPayError):
    """Base class for database-related errors."""


class ConcurrencyConflictError(DatabaseError):
    """Raised when a transaction was aborted by a lock or serialization conflict.

    The unit of work left no trace in the store and may be retried as-is.
    """

    retryable = True


# =============================================================================
# Utility Functions
# =============================================================================


def wrap_exception(
    error: Exception,
    message: str,
    *,
    exception_class: type[FleetPayError] = FleetPayError,
    **context: Any,
) -> FleetPayError:
    """Wrap an external exception in the fleetpay hierarchy.

    Example:
        try:
            session.commit()
        except OperationalError as e:
            raise wrap_exception(
                e,
                "Transaction aborted by a concurrent writer",
                exception_class=ConcurrencyConflictError,
                payment_id=42,
            )
    """
    return exception_class(
        message,
        context=context,
        original_error=error,
    )


__all__ = [
    "FleetPayError",
    "ValidationError",
    "NotFoundError",
    "PermissionDeniedError",
    "DatabaseError",
    "ConcurrencyConflictError",
    "wrap_exception",
]
