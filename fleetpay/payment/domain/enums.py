"""Enumerations for the payment domain."""

from enum import Enum


class PaymentStatus(str, Enum):
    """Allocation status of a payment, derived from its allocations."""

    UNALLOCATED = "UNALLOCATED"
    PARTIALLY_ALLOCATED = "PARTIALLY_ALLOCATED"
    FULLY_ALLOCATED = "FULLY_ALLOCATED"


class PaymentCategory(str, Enum):
    """How the money was received."""

    BANK_TRANSFER = "BANK_TRANSFER"
    CASH = "CASH"
    CREDIT_CARD = "CREDIT_CARD"
    ELECTRONIC_MONEY = "ELECTRONIC_MONEY"
    QR_PAYMENT = "QR_PAYMENT"
    CHECK = "CHECK"
    OTHER = "OTHER"
