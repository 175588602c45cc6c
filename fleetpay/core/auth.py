"""Authorization gate.

Session lookup is owned by the host application; the payment engine only
needs the acting user and an ordered role check. Plug a provider into the
service:

    service = PaymentService(settings, user_provider=StaticUserProvider(user))

or any zero-argument callable returning a ``CurrentUser``.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from enum import IntEnum

from fleetpay.exceptions import PermissionDeniedError


class Role(IntEnum):
    """User roles, ordered by privilege."""

    MEMBER = 1
    MANAGER = 2
    ADMIN = 3


@dataclass(frozen=True)
class CurrentUser:
    id: str
    email: str
    name: str
    role: Role


UserProvider = Callable[[], CurrentUser]


class StaticUserProvider:
    """Always returns the same user (CLI sessions, background jobs, tests)."""

    def __init__(self, user: CurrentUser) -> None:
        self.user = user

    def __call__(self) -> CurrentUser:
        return self.user


def has_role(user: CurrentUser, minimum: Role) -> bool:
    """True when ``user`` holds ``minimum`` or any higher role."""
    return user.role >= minimum


def require_role(user: CurrentUser, minimum: Role, action: str = "perform this action") -> None:
    """Raise PermissionDeniedError unless ``user`` holds at least ``minimum``."""
    if not has_role(user, minimum):
        raise PermissionDeniedError(
            f"{minimum.name.lower()} role or higher is required to {action}",
            required_role=minimum.name,
            actual_role=user.role.name,
        )


SYSTEM_USER = CurrentUser(
    id="system",
    email="system@localhost",
    name="System",
    role=Role.ADMIN,
)
