"""
Event bus for engine, gateway and scheduler notifications.
"""
from __future__ import annotations

from collections import defaultdict
from typing import Any, Callable, Coroutine

from core.logger import get_logger

log = get_logger("event_bus")

Handler = Callable[[str, dict[str, Any]], Coroutine[Any, Any, None]]

# Event names
STOP_CONFIGURED = "trailing_stop_configured"
CONFIGURE_REJECTED = "configure_rejected"
STOP_UPDATED = "trailing_stop_updated"
UPDATE_FAILED = "update_failed"
ORDER_SETTLED = "order_settled"
EXECUTION_FAILED = "execution_failed"
ENGINE_PAUSED = "engine_paused"
ENGINE_UNPAUSED = "engine_unpaused"
CYCLE_COMPLETED = "cycle_completed"

ALL_EVENTS = (
    STOP_CONFIGURED,
    CONFIGURE_REJECTED,
    STOP_UPDATED,
    UPDATE_FAILED,
    ORDER_SETTLED,
    EXECUTION_FAILED,
    ENGINE_PAUSED,
    ENGINE_UNPAUSED,
    CYCLE_COMPLETED,
)


class EventBus:
    """
    Publish-subscribe event bus for async event handling.

    Handlers receive the event name and its payload, so a single handler can
    be subscribed to several events (the audit log uses this).

    Usage:
        bus = EventBus()

        async def on_update(event, data):
            print(f"{event}: {data['new_stop_price']}")

        bus.subscribe(STOP_UPDATED, on_update)
        await bus.publish(STOP_UPDATED, {"new_stop_price": 980})
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[Handler]] = defaultdict(list)

    def subscribe(self, event_type: str, handler: Handler) -> None:
        """
        Subscribe a handler to an event type.

        Args:
            event_type: Event name to subscribe to
            handler: Async function called with (event_type, data)
        """
        self._subscribers[event_type].append(handler)
        log.debug(f"Subscribed handler to '{event_type}' event")

    def subscribe_all(self, handler: Handler) -> None:
        """Subscribe a handler to every known event."""
        for event_type in ALL_EVENTS:
            self.subscribe(event_type, handler)

    def unsubscribe(self, event_type: str, handler: Handler) -> None:
        if handler in self._subscribers[event_type]:
            self._subscribers[event_type].remove(handler)
            log.debug(f"Unsubscribed handler from '{event_type}' event")

    async def publish(self, event_type: str, data: dict[str, Any] | None = None) -> None:
        """
        Publish an event to all subscribers, in subscription order.

        A failing handler is logged and does not prevent the remaining
        handlers from running; the publisher never sees handler errors.

        Args:
            event_type: Event name to publish
            data: Event payload
        """
        handlers = list(self._subscribers.get(event_type, []))
        if not handlers:
            log.debug(f"No subscribers for '{event_type}' event")
            return

        payload = data or {}
        for handler in handlers:
            try:
                await handler(event_type, payload)
            except Exception as e:
                log.error(f"Handler for '{event_type}' failed: {e}")

    def clear(self, event_type: str | None = None) -> None:
        """
        Clear all subscribers for an event type or all events.

        Args:
            event_type: Event name to clear, or None to clear all
        """
        if event_type:
            self._subscribers[event_type] = []
        else:
            self._subscribers.clear()
