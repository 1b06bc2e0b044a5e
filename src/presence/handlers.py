"""
Lead Reminders — Presence Event Handlers.
Connects socket-layer connection events to the PresenceRegistry and runs
the staleness sweeper.

Call Path:
  socket "page-enter" / "page-leave" / "ping" / "disconnect"
    → EventBus.emit("presence.*", {user_id, connection_id})
      → on_*_event(event)
        → presence_registry.mark_on_page / mark_off_page / touch / remove
"""

import asyncio
import logging
from datetime import timedelta

from src.core.events import Event, EventBus, EventType, event_bus
from src.presence.registry import PresenceRegistry, presence_registry

logger = logging.getLogger(__name__)


# ============================================
# Direct entry points (socket layer calls these)
# ============================================

def on_page_enter(user_id: str, connection_id: str, registry: PresenceRegistry = presence_registry) -> None:
    registry.mark_on_page(user_id, connection_id)


def on_page_leave(user_id: str, registry: PresenceRegistry = presence_registry) -> None:
    registry.mark_off_page(user_id)


def on_heartbeat(user_id: str, registry: PresenceRegistry = presence_registry) -> None:
    registry.touch(user_id)


def on_disconnect(user_id: str, registry: PresenceRegistry = presence_registry) -> None:
    registry.remove(user_id)


# ============================================
# EventBus handlers
# ============================================

def make_presence_handlers(registry: PresenceRegistry = presence_registry) -> dict[EventType, object]:
    """Build EventBus handlers bound to a registry, keyed by event type."""

    async def on_page_enter_event(event: Event):
        user_id = event.data.get("user_id")
        if not user_id:
            logger.warning(f"Presence: page_enter without user_id (source={event.source})")
            return
        on_page_enter(user_id, event.data.get("connection_id", ""), registry)

    async def on_page_leave_event(event: Event):
        user_id = event.data.get("user_id")
        if user_id:
            on_page_leave(user_id, registry)

    async def on_heartbeat_event(event: Event):
        user_id = event.data.get("user_id")
        if user_id:
            on_heartbeat(user_id, registry)

    async def on_disconnect_event(event: Event):
        user_id = event.data.get("user_id")
        if user_id:
            on_disconnect(user_id, registry)

    return {
        EventType.PRESENCE_PAGE_ENTER: on_page_enter_event,
        EventType.PRESENCE_PAGE_LEAVE: on_page_leave_event,
        EventType.PRESENCE_HEARTBEAT: on_heartbeat_event,
        EventType.PRESENCE_DISCONNECT: on_disconnect_event,
    }


def register_presence_handlers(
    bus: EventBus = event_bus,
    registry: PresenceRegistry = presence_registry,
) -> None:
    """
    Register presence handlers with the EventBus.
    Called from main.py lifespan startup.
    """
    for event_type, handler in make_presence_handlers(registry).items():
        bus.on(event_type, handler)
    logger.info(f"Presence handlers registered on EventBus (page='{registry.page}')")


# ============================================
# Sweeper
# ============================================

class PresenceSweeper:
    """
    Periodically removes stale presence records so users whose socket died
    without a disconnect event stop suppressing email reminders.
    Runs on its own timer, independent of the reminder tick.
    """

    def __init__(
        self,
        registry: PresenceRegistry = presence_registry,
        interval_minutes: float = 10,
        stale_after: timedelta | None = None,
    ):
        self._registry = registry
        self.interval_minutes = interval_minutes
        self.stale_after = stale_after
        self._running = False
        self._task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self):
        """Start the sweep loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._sweep_loop())
        logger.info(f"PresenceSweeper started (interval: {self.interval_minutes}m)")

    async def stop(self):
        """Stop the sweep loop."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("PresenceSweeper stopped")

    def sweep_once(self) -> int:
        return self._registry.sweep(self.stale_after)

    async def _sweep_loop(self):
        while self._running:
            await asyncio.sleep(self.interval_minutes * 60)
            try:
                self.sweep_once()
            except Exception as e:
                logger.error(f"Presence sweep error: {e}")
