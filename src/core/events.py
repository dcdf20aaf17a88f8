"""DomainEventBus - in-process publish/subscribe for registry lifecycle events.

The webhook registry announces every mutation (``webhook:created``,
``webhook:updated``, ``webhook:deleted``) with the full updated entity so
observability collaborators (audit trails, caches, realtime dashboards) can
react without the registry knowing about them. The dispatcher announces
``delivery:enqueued`` with the new deliveries, which the app uses to wake the
delivery scheduler early.

Design:
- Singleton via get_event_bus() - one instance per process.
- Handlers may be plain callables or coroutine functions.
- Publishing is fire-and-forget from the publisher's perspective: a failing
  subscriber is logged but never propagated back into the registry call.

Usage:
    bus = get_event_bus()

    async def on_created(event: DomainEvent) -> None:
        ...

    bus.subscribe("webhook:created", on_created)
    await bus.publish("webhook:created", webhook)
"""

from __future__ import annotations

import inspect
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import structlog

log = structlog.get_logger(__name__)

WEBHOOK_CREATED = "webhook:created"
WEBHOOK_UPDATED = "webhook:updated"
WEBHOOK_DELETED = "webhook:deleted"
DELIVERIES_ENQUEUED = "delivery:enqueued"

# Subscribe with this name to receive every event
ALL_EVENTS = "*"


@dataclass(frozen=True)
class DomainEvent:
    """A single published event."""

    name: str
    entity: Any
    occurred_at: datetime = field(default_factory=lambda: datetime.now(UTC))


EventHandler = Callable[[DomainEvent], Awaitable[None] | None]


class DomainEventBus:
    """Routes published events to the handlers subscribed for their name."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, name: str, handler: EventHandler) -> None:
        """Register a handler for an event name (or ALL_EVENTS)."""
        self._handlers[name].append(handler)

    def unsubscribe(self, name: str, handler: EventHandler) -> None:
        """Remove a previously registered handler; unknown handlers are ignored."""
        handlers = self._handlers.get(name, [])
        if handler in handlers:
            handlers.remove(handler)

    def clear(self) -> None:
        self._handlers.clear()

    async def publish(self, name: str, entity: Any) -> DomainEvent:
        """Deliver an event to its subscribers, in registration order."""
        event = DomainEvent(name=name, entity=entity)
        handlers = [*self._handlers.get(name, []), *self._handlers.get(ALL_EVENTS, [])]

        for handler in handlers:
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                log.warning(
                    "events.handler_failed",
                    event_name=name,
                    handler=getattr(handler, "__qualname__", repr(handler)),
                    error=str(exc),
                )

        log.debug("events.published", event_name=name, handler_count=len(handlers))
        return event


_bus: DomainEventBus | None = None


def get_event_bus() -> DomainEventBus:
    """Return the application-wide DomainEventBus singleton."""
    global _bus
    if _bus is None:
        _bus = DomainEventBus()
    return _bus
