"""
Lead Reminders — In-app reminder channel.
Used instead of email when the agent is looking at the leads page: the
reminder is queued in the user's in-app inbox and a REMINDER_IN_APP event
is emitted for the socket layer to push.
"""

import logging
from datetime import datetime, timezone
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from src.core.events import Event, EventBus, EventType, event_bus
from src.reminders.models import ReminderPayload

logger = logging.getLogger(__name__)


class InAppNotification(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    user_id: str
    tenant_id: str
    lead_id: str
    title: str
    content: str
    priority: str = "medium"
    interval_key: str = ""
    delivered: bool = False
    delivered_at: datetime | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class InAppNotifier:
    """
    Per-user in-app reminder inbox.
    In-memory; the socket layer drains it through the REMINDER_IN_APP event.
    """

    def __init__(self, bus: EventBus = event_bus, max_per_user: int = 200):
        self._bus = bus
        self._max_per_user = max_per_user
        self._queue: dict[str, list[InAppNotification]] = {}  # user_id → notifications

    async def notify(self, payload: ReminderPayload) -> InAppNotification:
        """Queue a reminder for the user and signal the socket layer."""
        notification = InAppNotification(
            user_id=payload.recipient_user_id,
            tenant_id=payload.tenant_id,
            lead_id=payload.lead_id,
            title="Lead Reminder",
            content=payload.body.splitlines()[0] if payload.body else payload.subject,
            priority=payload.priority,
            interval_key=payload.interval_key,
        )

        queue = self._queue.setdefault(payload.recipient_user_id, [])
        queue.append(notification)
        if len(queue) > self._max_per_user:
            del queue[: len(queue) - self._max_per_user]

        await self._bus.emit(Event(
            type=EventType.REMINDER_IN_APP,
            source="reminder_scheduler",
            data={
                "notification_id": str(notification.id),
                "user_id": notification.user_id,
                "tenant_id": notification.tenant_id,
                "lead_id": notification.lead_id,
                "title": notification.title,
                "content": notification.content,
                "priority": notification.priority,
                "interval": notification.interval_key,
            },
        ))

        logger.info("In-app reminder queued", extra={"props": {
            "to": notification.user_id, "lead_id": notification.lead_id,
            "interval": notification.interval_key,
        }})
        return notification

    # ============================================
    # Retrieval
    # ============================================

    async def get_pending(self, user_id: str) -> list[InAppNotification]:
        return [n for n in self._queue.get(user_id, []) if not n.delivered]

    async def get_all(self, user_id: str, limit: int = 50) -> list[InAppNotification]:
        notifications = self._queue.get(user_id, [])
        return sorted(notifications, key=lambda n: n.created_at, reverse=True)[:limit]

    async def mark_delivered(self, notification_id: UUID, user_id: str) -> bool:
        for n in self._queue.get(user_id, []):
            if n.id == notification_id:
                n.delivered = True
                n.delivered_at = datetime.now(timezone.utc)
                return True
        return False

    async def mark_all_delivered(self, user_id: str) -> int:
        count = 0
        now = datetime.now(timezone.utc)
        for n in self._queue.get(user_id, []):
            if not n.delivered:
                n.delivered = True
                n.delivered_at = now
                count += 1
        return count

    async def clear(self, user_id: str):
        self._queue[user_id] = []


# Singleton
in_app_notifier = InAppNotifier()
