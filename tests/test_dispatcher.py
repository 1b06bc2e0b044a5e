"""
Tests for reminder rendering, the email dispatcher and the in-app channel.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import aiosmtplib
import pytest

from src.core.events import EventBus, EventType
from src.reminders.dispatcher import DispatchError, EmailDispatcher, render_payload
from src.reminders.in_app import InAppNotifier
from src.reminders.models import LeadReminder, ReminderInterval, ReminderTimelineConfig

DUE = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)


def make_reminder(**fields) -> LeadReminder:
    data = dict(
        lead_id="lead-1",
        tenant_id="acme",
        due_at=DUE,
        owner_user_id="agent-1",
        owner_email="agent1@acme.test",
        lead_name="Jane <Prospect>",
        lead_phone="+1 555 0100",
        message="Send the pricing deck",
    )
    data.update(fields)
    return LeadReminder(**data)


class TestRenderPayload:
    def setup_method(self):
        self.config = ReminderTimelineConfig(tenant_id="acme", notification_email="sales@acme.test")

    def test_payload_fields(self):
        interval = ReminderInterval(hours=24, label="24 hours")
        payload = render_payload(make_reminder(), interval, self.config, DUE - timedelta(hours=24))

        assert payload.interval_key == "24h"
        assert payload.recipient_email == "agent1@acme.test"
        assert payload.subject == "Lead reminder: Jane <Prospect> (24 hours)"
        assert payload.body.splitlines()[0] == "Reminder: Jane <Prospect> - Send the pricing deck"
        assert "Phone: +1 555 0100" in payload.body
        assert "&lt;Prospect&gt;" in payload.html_body
        assert payload.metadata["hours_left"] == 24
        assert payload.priority == "medium"

    def test_priority_by_hours_left(self):
        interval = ReminderInterval(hours=1)
        assert render_payload(make_reminder(), interval, self.config, DUE - timedelta(hours=1)).priority == "high"
        assert render_payload(make_reminder(), interval, self.config, DUE - timedelta(hours=48)).priority == "low"
        assert render_payload(make_reminder(), interval, self.config, DUE + timedelta(hours=1)).metadata["hours_left"] == 0

    def test_tenant_email_fallback_and_defaults(self):
        reminder = make_reminder(owner_email=None, lead_name="", message="")
        payload = render_payload(reminder, ReminderInterval(hours=0.5), self.config, DUE)
        assert payload.recipient_email == "sales@acme.test"
        assert payload.body.startswith("Reminder: Lead lead-1 - Follow up required")
        assert payload.interval_label == "30 minutes"

    def test_no_recipient_at_all(self):
        config = ReminderTimelineConfig(tenant_id="acme")
        payload = render_payload(make_reminder(owner_email=None), ReminderInterval(hours=1), config, DUE)
        assert payload.recipient_email is None


class TestEmailDispatcher:
    def setup_method(self):
        self.dispatcher = EmailDispatcher(
            host="smtp.acme.test", port=587, username="bot", password="secret", sender="reminders@acme.test",
        )
        self.config = ReminderTimelineConfig(tenant_id="acme")

    def test_build_message(self):
        payload = render_payload(make_reminder(), ReminderInterval(hours=1), self.config, DUE - timedelta(hours=1))
        message = self.dispatcher.build_message(payload)
        assert message["To"] == "agent1@acme.test"
        assert message["From"] == "reminders@acme.test"
        assert message["X-Priority"] == "1"
        assert len(message.get_payload()) == 2

    @pytest.mark.asyncio
    async def test_send_uses_smtp(self):
        payload = render_payload(make_reminder(), ReminderInterval(hours=1), self.config, DUE - timedelta(hours=1))
        with patch("src.reminders.dispatcher.aiosmtplib.send", new=AsyncMock()) as smtp_send:
            assert await self.dispatcher.send(payload, timeout=5) is True
        kwargs = smtp_send.await_args.kwargs
        assert kwargs["hostname"] == "smtp.acme.test"
        assert kwargs["start_tls"] is True
        assert kwargs["timeout"] == 5

    @pytest.mark.asyncio
    async def test_send_without_recipient_raises(self):
        payload = render_payload(make_reminder(owner_email=None), ReminderInterval(hours=1), self.config, DUE)
        with pytest.raises(DispatchError):
            await self.dispatcher.send(payload, timeout=5)

    @pytest.mark.asyncio
    async def test_smtp_error_wrapped(self):
        payload = render_payload(make_reminder(), ReminderInterval(hours=1), self.config, DUE)
        failing = AsyncMock(side_effect=aiosmtplib.SMTPException("relay denied"))
        with patch("src.reminders.dispatcher.aiosmtplib.send", new=failing):
            with pytest.raises(DispatchError):
                await self.dispatcher.send(payload, timeout=5)


class TestInAppNotifier:
    def setup_method(self):
        self.bus = EventBus()
        self.notifier = InAppNotifier(bus=self.bus, max_per_user=3)
        self.config = ReminderTimelineConfig(tenant_id="acme")

    @pytest.mark.asyncio
    async def test_notify_queues_and_emits(self):
        payload = render_payload(make_reminder(), ReminderInterval(hours=2), self.config, DUE - timedelta(hours=2))
        notification = await self.notifier.notify(payload)

        assert notification.content == "Reminder: Jane <Prospect> - Send the pricing deck"
        assert notification.priority == "high"
        events = self.bus.get_recent_events(EventType.REMINDER_IN_APP)
        assert len(events) == 1
        assert events[0].data["notification_id"] == str(notification.id)

    @pytest.mark.asyncio
    async def test_inbox_bounded_and_delivery_tracking(self):
        for hours in (1, 2, 3, 4):
            payload = render_payload(make_reminder(), ReminderInterval(hours=hours), self.config, DUE)
            await self.notifier.notify(payload)

        pending = await self.notifier.get_pending("agent-1")
        assert [n.interval_key for n in pending] == ["2h", "3h", "4h"]

        assert await self.notifier.mark_delivered(pending[0].id, "agent-1") is True
        assert await self.notifier.mark_all_delivered("agent-1") == 2
        assert await self.notifier.get_pending("agent-1") == []
        assert len(await self.notifier.get_all("agent-1")) == 3

        await self.notifier.clear("agent-1")
        assert await self.notifier.get_all("agent-1") == []
