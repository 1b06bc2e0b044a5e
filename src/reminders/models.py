"""
Lead Reminders — Domain models.
"""

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field, field_validator


def ensure_utc(value: datetime) -> datetime:
    """Naive datetimes are assumed to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ReminderStatus(str, Enum):
    PENDING = "pending"
    RESOLVED = "resolved"


class DeliveryChannel(str, Enum):
    EMAIL = "email"
    IN_APP = "in_app"


class ReminderInterval(BaseModel):
    """How far ahead of the due time a notification fires."""
    hours: float
    label: str = ""

    @property
    def key(self) -> str:
        """Idempotency key of this interval within one due time, e.g. '24h', '0.5h'."""
        return f"{round(self.hours, 2):g}h"

    def display_label(self) -> str:
        if self.label:
            return self.label
        if self.hours < 1:
            return f"{round(self.hours * 60):g} minutes"
        return f"{self.hours:g} hour" + ("" if self.hours == 1 else "s")


class ReminderTimelineConfig(BaseModel):
    """Per-tenant reminder lead times. Intervals are kept sorted, longest first."""
    tenant_id: str
    enabled: bool = True
    intervals: list[ReminderInterval] = Field(default_factory=list)
    notification_email: str = ""

    def active_intervals(self) -> list[ReminderInterval]:
        """Intervals the scheduler evaluates; none while disabled."""
        if not self.enabled:
            return []
        return sorted(self.intervals, key=lambda i: i.hours, reverse=True)

    def max_hours(self) -> float:
        return max((i.hours for i in self.intervals), default=0.0)


class LeadReminder(BaseModel):
    """Reminder attached to a lead, with the intervals already notified for its due time."""
    lead_id: str
    tenant_id: str
    due_at: datetime
    owner_user_id: str
    owner_email: str | None = None
    lead_name: str = ""
    lead_email: str | None = None
    lead_phone: str | None = None
    message: str = ""
    fired_intervals: set[str] = Field(default_factory=set)
    status: ReminderStatus = ReminderStatus.PENDING
    version: int = 0

    @field_validator("due_at")
    @classmethod
    def _normalize_due_at(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @property
    def is_resolved(self) -> bool:
        return self.status == ReminderStatus.RESOLVED


class ReminderPayload(BaseModel):
    """Rendered reminder handed to a NotificationDispatcher."""
    lead_id: str
    tenant_id: str
    recipient_user_id: str
    recipient_email: str | None = None
    interval_key: str
    interval_label: str
    due_at: datetime
    subject: str
    body: str
    html_body: str = ""
    priority: str = "medium"  # high | medium | low
    metadata: dict = Field(default_factory=dict)
