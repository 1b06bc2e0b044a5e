"""
Lead Reminders — Notification dispatch.
Renders a reminder payload and sends it out-of-band (email).

Flow:
  ReminderScheduler (agent not on the leads page)
    → render_payload(reminder, interval, config, now)
      → NotificationDispatcher.send(payload, timeout)
        → EmailDispatcher → aiosmtplib → STARTTLS → SEND
"""

import html
import logging
import math
from abc import ABC, abstractmethod
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

import aiosmtplib

from src.core.config import settings
from src.reminders.models import LeadReminder, ReminderInterval, ReminderPayload, ReminderTimelineConfig

logger = logging.getLogger(__name__)


class DispatchError(Exception):
    """A notification could not be delivered (transport error, no recipient, ...)."""


class NotificationDispatcher(ABC):
    """Sends a rendered reminder to its recipient."""

    @abstractmethod
    async def send(self, payload: ReminderPayload, timeout: float) -> bool:
        """
        Deliver the payload within `timeout` seconds.
        Returns True when delivered; raises DispatchError on failure.
        """
        ...


def _priority(hours_left: int) -> str:
    if hours_left <= 2:
        return "high"
    if hours_left <= 24:
        return "medium"
    return "low"


def render_payload(
    reminder: LeadReminder,
    interval: ReminderInterval,
    config: ReminderTimelineConfig,
    now: datetime,
) -> ReminderPayload:
    """Build the reminder message for one fired interval."""
    hours_left = max(0, math.ceil((reminder.due_at - now).total_seconds() / 3600))
    label = interval.display_label()
    lead_name = reminder.lead_name or f"Lead {reminder.lead_id}"
    note = reminder.message or "Follow up required"
    due = reminder.due_at.strftime("%Y-%m-%d %H:%M UTC")

    lines = [
        f"Reminder: {lead_name} - {note}",
        f"Due at {due} ({label} notice).",
        "",
    ]
    if reminder.lead_email:
        lines.append(f"Email: {reminder.lead_email}")
    if reminder.lead_phone:
        lines.append(f"Phone: {reminder.lead_phone}")
    body = "\n".join(lines).rstrip()

    html_body = "".join(f"<p>{html.escape(line)}</p>" for line in lines if line)

    return ReminderPayload(
        lead_id=reminder.lead_id,
        tenant_id=reminder.tenant_id,
        recipient_user_id=reminder.owner_user_id,
        recipient_email=reminder.owner_email or config.notification_email or None,
        interval_key=interval.key,
        interval_label=label,
        due_at=reminder.due_at,
        subject=f"Lead reminder: {lead_name} ({label})",
        body=body,
        html_body=html_body,
        priority=_priority(hours_left),
        metadata={"hours_left": hours_left},
    )


class EmailDispatcher(NotificationDispatcher):
    """SMTP delivery through aiosmtplib."""

    def __init__(
        self,
        host: str = settings.SMTP_HOST,
        port: int = settings.SMTP_PORT,
        username: str = settings.SMTP_USERNAME,
        password: str = settings.SMTP_PASSWORD,
        sender: str = settings.SMTP_FROM,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.sender = sender

    def build_message(self, payload: ReminderPayload) -> MIMEMultipart:
        mime_msg = MIMEMultipart("alternative")
        mime_msg["From"] = self.sender
        mime_msg["To"] = payload.recipient_email or ""
        mime_msg["Subject"] = payload.subject
        if payload.priority == "high":
            mime_msg["X-Priority"] = "1"
        mime_msg.attach(MIMEText(payload.body, "plain", "utf-8"))
        if payload.html_body:
            mime_msg.attach(MIMEText(payload.html_body, "html", "utf-8"))
        return mime_msg

    async def send(self, payload: ReminderPayload, timeout: float) -> bool:
        if not payload.recipient_email:
            raise DispatchError(f"No recipient email for lead {payload.lead_id} (user {payload.recipient_user_id})")

        try:
            await aiosmtplib.send(
                self.build_message(payload),
                hostname=self.host,
                port=self.port,
                username=self.username or None,
                password=self.password or None,
                use_tls=(self.port == 465),
                start_tls=(self.port not in (25, 465)),
                timeout=timeout,
            )
        except aiosmtplib.SMTPException as e:
            raise DispatchError(f"SMTP send failed for lead {payload.lead_id}: {e}") from e

        logger.info(f"Reminder email sent for lead {payload.lead_id} → {payload.recipient_email}", extra={"props": {
            "tenant_id": payload.tenant_id, "interval": payload.interval_key, "priority": payload.priority,
        }})
        return True
