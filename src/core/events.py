"""
Lead Reminders — Event System.
In-process pub/sub bus connecting the socket layer (presence events)
and the scheduler (in-app reminder signals) without coupling them.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Coroutine
from uuid import uuid4

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    # Reminder events
    REMINDER_FIRED = "reminder.fired"
    REMINDER_IN_APP = "reminder.in_app"
    REMINDER_RESOLVED = "reminder.resolved"
    # Presence events (emitted by the socket layer)
    PRESENCE_PAGE_ENTER = "presence.page_enter"
    PRESENCE_PAGE_LEAVE = "presence.page_leave"
    PRESENCE_HEARTBEAT = "presence.heartbeat"
    PRESENCE_DISCONNECT = "presence.disconnect"
    # System events
    SYSTEM_STARTUP = "system.startup"
    SYSTEM_SHUTDOWN = "system.shutdown"


@dataclass
class Event:
    """System event."""
    id: str = field(default_factory=lambda: str(uuid4()))
    type: EventType | str = ""
    source: str = ""  # Who emitted
    data: dict = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


# Type alias for event handlers
EventHandler = Callable[[Event], Coroutine[Any, Any, None]]


def _type_name(event_type: EventType | str) -> str:
    return event_type.value if isinstance(event_type, EventType) else event_type


class EventBus:
    """
    Pub/sub event bus for internal event-driven communication.
    Handlers run concurrently; a failing handler never breaks the emitter.
    """

    def __init__(self, max_log_size: int = 10_000):
        self._handlers: dict[str, list[EventHandler]] = {}
        self._event_log: list[Event] = []
        self._max_log_size = max_log_size

    def on(self, event_type: EventType | str, handler: EventHandler):
        """Subscribe a handler to an event type ("*" for all)."""
        name = _type_name(event_type)
        self._handlers.setdefault(name, []).append(handler)
        logger.debug(f"EventBus: handler registered for '{name}'")

    def off(self, event_type: EventType | str, handler: EventHandler):
        """Unsubscribe a handler."""
        name = _type_name(event_type)
        if name in self._handlers:
            self._handlers[name] = [h for h in self._handlers[name] if h != handler]

    async def emit(self, event: Event):
        """Emit an event to all subscribed handlers."""
        self._event_log.append(event)
        if len(self._event_log) > self._max_log_size:
            self._event_log = self._event_log[-self._max_log_size:]

        name = _type_name(event.type)
        all_handlers = self._handlers.get(name, []) + self._handlers.get("*", [])
        if not all_handlers:
            return

        results = await asyncio.gather(*(h(event) for h in all_handlers), return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.error(f"EventBus handler error on '{name}': {result}")

    async def emit_simple(self, event_type: EventType | str, source: str = "", data: dict | None = None):
        """Convenience method to emit a simple event."""
        await self.emit(Event(type=event_type, source=source, data=data or {}))

    def get_recent_events(self, event_type: EventType | str | None = None, limit: int = 50) -> list[Event]:
        """Get recent events, newest first."""
        events = self._event_log
        if event_type:
            name = _type_name(event_type)
            events = [e for e in events if _type_name(e.type) == name]
        return sorted(events, key=lambda e: e.timestamp, reverse=True)[:limit]

    def clear(self):
        """Drop all handlers and the event log."""
        self._handlers.clear()
        self._event_log.clear()


# Singleton
event_bus = EventBus()
