"""Input models for payment operations.

Schema-level checks only: required fields, types, ranges, and enum
membership. Nothing here touches the database; balance and existence rules
are enforced by the service inside its transaction.
"""

from datetime import date
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, Field, StrictInt, field_validator
from pydantic import ValidationError as PydanticValidationError

from fleetpay.exceptions import ValidationError

from ..domain.enums import PaymentCategory

ModelT = TypeVar("ModelT", bound=BaseModel)

GENERAL_ERROR_KEY = "_general"

_OPTIONAL_TEXT_FIELDS = ("provider", "terminal_ref", "external_id", "note")


class _InputModel(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


class AllocationInput(_InputModel):
    """One allocation: part of a payment applied to a settled reservation."""

    reservation_id: int = Field(gt=0)
    invoice_id: int | None = Field(default=None, gt=0)
    allocated_amount: StrictInt = Field(ge=1)
    note: str | None = None

    @field_validator("note", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value


class _PaymentHeader(_InputModel):
    payment_date: date
    amount: StrictInt = Field(ge=0)
    category: PaymentCategory
    provider: str | None = Field(default=None, max_length=100)
    payer_name: str = Field(min_length=1, max_length=200)
    terminal_ref: str | None = Field(default=None, max_length=50)
    external_id: str | None = Field(default=None, max_length=100)
    note: str | None = None

    @field_validator(*_OPTIONAL_TEXT_FIELDS, mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value


class PaymentCreate(_PaymentHeader):
    """New payment, optionally allocated in the same step."""

    allocations: list[AllocationInput] = Field(default_factory=list)

    @field_validator("allocations", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return [] if value is None else value


class PaymentUpdate(_PaymentHeader):
    """Replacement header fields of an existing payment (allocations untouched)."""


class BulkAllocationInput(_InputModel):
    allocations: list[AllocationInput] = Field(min_length=1)


class AllocationAmountUpdate(_InputModel):
    allocated_amount: StrictInt = Field(ge=1)


def to_field_errors(exc: PydanticValidationError) -> dict[str, list[str]]:
    """Map pydantic errors to ``{"dotted.path": [messages]}``.

    Errors without a location (model-level) are keyed ``_general``.
    """
    field_errors: dict[str, list[str]] = {}
    for error in exc.errors():
        path = ".".join(str(part) for part in error["loc"]) or GENERAL_ERROR_KEY
        field_errors.setdefault(path, []).append(error["msg"])
    return field_errors


def parse_input(model: type[ModelT], raw: ModelT | dict[str, Any]) -> ModelT:
    """Validate ``raw`` against ``model``.

    Instances of ``model`` are returned unchanged.

    Raises:
        ValidationError: With ``field_errors`` keyed by dotted field path
    """
    if isinstance(raw, model):
        return raw
    try:
        return model.model_validate(raw)
    except PydanticValidationError as e:
        raise ValidationError(
            "Input validation failed",
            field_errors=to_field_errors(e),
        ) from e
