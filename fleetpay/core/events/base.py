"""Base event system infrastructure.

Provides the immutable event base class and the in-process event bus the
payment engine publishes to after each committed mutation.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol
from uuid import UUID, uuid4

import structlog

logger = structlog.get_logger("events")


@dataclass(frozen=True)
class BaseEvent:
    """Base class for all domain events.

    All events are immutable (frozen dataclass) and include standard metadata:
    - event_id: Unique identifier for this event instance
    - occurred_at: Timestamp when the event occurred (UTC)
    - context: Optional additional context data
    """

    event_id: UUID = field(default_factory=uuid4, init=False)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(UTC), init=False)
    context: dict[str, Any] | None = field(default=None, kw_only=True)

    @property
    def event_name(self) -> str:
        """Dotted name of the event (e.g. ``payment.created``)."""
        return getattr(self, "name", type(self).__name__)


class EventBus(Protocol):
    """Contract of the event notifier consumed by services."""

    def subscribe(
        self,
        event_type: type[BaseEvent],
        handler: Callable[[BaseEvent], Any],
        priority: int = 0,
    ) -> None: ...

    def unsubscribe(
        self,
        event_type: type[BaseEvent],
        handler: Callable[[BaseEvent], Any],
    ) -> None: ...

    def publish(self, event: BaseEvent) -> None: ...


@dataclass
class _HandlerRegistration:
    handler: Callable[[BaseEvent], Any]
    priority: int


class GlobalEventBus:
    """In-memory publish/subscribe bus.

    Features:
    - Priority-based handler execution (higher priority = executed first)
    - Event type filtering, including subclasses of the subscribed type
    - Error isolation: a failing handler is logged and the remaining
      handlers still run; ``publish`` never raises because of a handler

    Example:
        >>> bus = GlobalEventBus()
        >>> bus.subscribe(PaymentCreatedEvent, notify_accounting, priority=10)
        >>> bus.publish(PaymentCreatedEvent(payment=snapshot, user_id="u-1"))
    """

    def __init__(self) -> None:
        self._handlers: dict[type[BaseEvent], list[_HandlerRegistration]] = defaultdict(list)
        self._event_count: dict[str, int] = defaultdict(int)

    def subscribe(
        self,
        event_type: type[BaseEvent],
        handler: Callable[[BaseEvent], Any],
        priority: int = 0,
    ) -> None:
        """Register a handler for the given event type (and its subclasses)."""
        self._handlers[event_type].append(_HandlerRegistration(handler=handler, priority=priority))
        self._handlers[event_type].sort(key=lambda r: r.priority, reverse=True)

        logger.debug(
            "handler_registered",
            event_type=event_type.__name__,
            handler=getattr(handler, "__name__", repr(handler)),
            priority=priority,
        )

    def unsubscribe(
        self,
        event_type: type[BaseEvent],
        handler: Callable[[BaseEvent], Any],
    ) -> None:
        """Remove a handler for the given event type."""
        if event_type in self._handlers:
            self._handlers[event_type] = [
                reg for reg in self._handlers[event_type] if reg.handler != handler
            ]

    def is_subscribed(self, event_type: type[BaseEvent], handler: Callable[[BaseEvent], Any]) -> bool:
        return any(reg.handler == handler for reg in self._handlers.get(event_type, []))

    def publish(self, event: BaseEvent) -> None:
        """Deliver an event to every matching handler, isolating handler failures."""
        event_name = type(event).__name__
        self._event_count[event_name] += 1

        logger.info(
            "event_published",
            event_type=event_name,
            event_id=str(event.event_id),
            occurred_at=event.occurred_at.isoformat(),
        )

        handlers = self._get_handlers_for_event(event)
        if not handlers:
            logger.debug("no_handlers_found", event_type=event_name)
            return

        for registration in handlers:
            handler_name = getattr(registration.handler, "__name__", repr(registration.handler))
            try:
                registration.handler(event)
                logger.debug(
                    "handler_executed",
                    event_type=event_name,
                    handler=handler_name,
                    priority=registration.priority,
                )
            except Exception as e:
                logger.error(
                    "handler_failed",
                    event_type=event_name,
                    handler=handler_name,
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )

    def _get_handlers_for_event(self, event: BaseEvent) -> list[_HandlerRegistration]:
        handlers: list[_HandlerRegistration] = []

        for event_type, registrations in self._handlers.items():
            if isinstance(event, event_type):
                handlers.extend(registrations)

        handlers.sort(key=lambda r: r.priority, reverse=True)
        return handlers

    def get_stats(self) -> dict[str, Any]:
        """Event counts and handler counts."""
        return {
            "total_handlers": sum(len(regs) for regs in self._handlers.values()),
            "event_types": len(self._handlers),
            "events_published": dict(self._event_count),
            "total_events": sum(self._event_count.values()),
        }


_global_event_bus: GlobalEventBus | None = None


def get_global_event_bus() -> GlobalEventBus:
    """Get the global event bus singleton instance."""
    global _global_event_bus
    if _global_event_bus is None:
        _global_event_bus = GlobalEventBus()
        logger.info("global_event_bus_initialized")
    return _global_event_bus
