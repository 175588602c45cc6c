"""Payment application services."""

__all__ = ["PaymentService"]

from .payment_service import PaymentService
