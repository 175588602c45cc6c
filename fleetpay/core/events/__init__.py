"""Domain event system for fleetpay.

Services publish one immutable event per committed mutation; listeners
subscribe by event type (subclasses included) through the in-process bus.

Example:
    >>> from fleetpay.core.events import PaymentCreatedEvent, get_global_event_bus
    >>> bus = get_global_event_bus()
    >>> bus.subscribe(PaymentCreatedEvent, notify_accounting)
"""

from __future__ import annotations

__all__ = [
    # Base
    "BaseEvent",
    "EventBus",
    "GlobalEventBus",
    "get_global_event_bus",
    # Payment events
    "PaymentEvent",
    "PaymentCreatedEvent",
    "PaymentUpdatedEvent",
    "PaymentDeletedEvent",
    "PaymentAllocatedEvent",
    "AllocationUpdatedEvent",
    "AllocationRemovedEvent",
    # Listeners
    "audit_log_listener",
    "register_default_listeners",
    "load_custom_listeners",
    "initialize_event_system",
]

from .base import BaseEvent, EventBus, GlobalEventBus, get_global_event_bus
from .listeners import (
    audit_log_listener,
    initialize_event_system,
    load_custom_listeners,
    register_default_listeners,
)
from .payment_events import (
    AllocationRemovedEvent,
    AllocationUpdatedEvent,
    PaymentAllocatedEvent,
    PaymentCreatedEvent,
    PaymentDeletedEvent,
    PaymentEvent,
    PaymentUpdatedEvent,
)
