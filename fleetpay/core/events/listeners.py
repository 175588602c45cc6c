"""Default event listeners and registration utilities.

Provides the audit logging listener and loading of custom listeners from
configuration.
"""

from __future__ import annotations

import importlib
from collections.abc import Callable
from typing import Any

import structlog
from pydantic import BaseModel

from fleetpay.utils.config import Settings, get_settings

from .base import BaseEvent, GlobalEventBus, get_global_event_bus

logger = structlog.get_logger("event_listeners")


def _serialize(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, tuple | list):
        return [_serialize(item) for item in value]
    return value


def audit_log_listener(event: BaseEvent) -> None:
    """Write every event to the structured audit log.

    Args:
        event: The event to log
    """
    event_data = {
        key: _serialize(value)
        for key, value in vars(event).items()
        if key not in ("event_id", "occurred_at")
    }

    logger.info(
        "domain_event",
        event_type=event.__class__.__name__,
        event_name=event.event_name,
        event_id=str(event.event_id),
        occurred_at=event.occurred_at.isoformat(),
        **event_data,
    )


def register_default_listeners(event_bus: GlobalEventBus | None = None) -> None:
    """Register the audit logging listener on the event bus (once)."""
    event_bus = event_bus or get_global_event_bus()

    if not event_bus.is_subscribed(BaseEvent, audit_log_listener):
        event_bus.subscribe(BaseEvent, audit_log_listener, priority=-100)
        logger.info("default_listeners_registered", listeners=["audit_log_listener"])


def _import_listener(path: str) -> Callable[[BaseEvent], Any]:
    """Import a listener function from a dotted Python path.

    Raises:
        ImportError: If module or attribute not found
        TypeError: If imported object is not callable
    """
    try:
        module_name, attr_name = path.rsplit(".", 1)
    except ValueError:
        raise ImportError(f"Invalid listener path '{path}'. Expected format: 'module.function'")

    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ImportError(f"Could not import module '{module_name}': {e}")

    if not hasattr(module, attr_name):
        raise ImportError(f"Module '{module_name}' has no attribute '{attr_name}'")

    handler = getattr(module, attr_name)

    if not callable(handler):
        raise TypeError(f"Listener '{path}' is not callable (type: {type(handler).__name__})")

    return handler


def load_custom_listeners(
    event_bus: GlobalEventBus | None = None,
    settings: Settings | None = None,
) -> int:
    """Load custom event listeners from configuration.

    Reads ``FLEETPAY_EVENT_LISTENERS`` (comma-separated dotted paths) and
    subscribes each listener to every event. Paths that fail to import are
    logged and skipped.

    Returns:
        Number of listeners successfully loaded

    Example:
        # In .env file:
        FLEETPAY_EVENT_LISTENERS=accounting.hooks.on_payment,ops.metrics.track

        >>> load_custom_listeners()
        2
    """
    event_bus = event_bus or get_global_event_bus()
    settings = settings or get_settings()

    if not settings.event_listeners:
        logger.debug("no_custom_listeners_configured")
        return 0

    listener_paths = [path.strip() for path in settings.event_listeners.split(",") if path.strip()]

    loaded_count = 0
    for path in listener_paths:
        try:
            handler = _import_listener(path)
        except (ImportError, TypeError) as e:
            logger.error(
                "custom_listener_load_failed",
                listener=path,
                error=str(e),
                error_type=type(e).__name__,
            )
            continue

        if not event_bus.is_subscribed(BaseEvent, handler):
            event_bus.subscribe(BaseEvent, handler, priority=0)
        logger.info("custom_listener_loaded", listener=path)
        loaded_count += 1

    logger.info(
        "custom_listeners_loaded", total=loaded_count, failed=len(listener_paths) - loaded_count
    )

    return loaded_count


def initialize_event_system(settings: Settings | None = None) -> GlobalEventBus:
    """Initialize the global event bus with default and custom listeners.

    Main entry point for wiring events at application startup (the CLI calls
    it once per process).
    """
    settings = settings or get_settings()
    event_bus = get_global_event_bus()

    register_default_listeners(event_bus)
    custom_count = load_custom_listeners(event_bus, settings)

    logger.info(
        "event_system_initialized",
        default_listeners=1,
        custom_listeners=custom_count,
    )

    return event_bus
