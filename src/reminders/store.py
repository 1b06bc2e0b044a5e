"""
Lead Reminders — Persistence contracts.

ReminderStore and ReminderTimelineConfigStore are implemented by the
surrounding CRM; the in-memory versions here back single-process runs and
tests. The SQL versions live in src/reminders/sql_store.py.

Idempotency boundary: commit_fired_interval adds a key to fired_intervals
at most once per (lead_id, due_at, interval_key). A commit against a due
time that no longer matches (rescheduled) or a key already present fails
with ReminderConflictError.
"""

import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta

from src.reminders.models import LeadReminder, ReminderStatus, ReminderTimelineConfig, ensure_utc
from src.reminders.timeline import default_timeline, validate_config

logger = logging.getLogger(__name__)


class ReminderStoreError(Exception):
    """Store unavailable or write failed; the record stays untouched and is retried next tick."""


class ReminderConflictError(ReminderStoreError):
    """Compare-and-swap rejected: already marked, rescheduled, resolved or missing."""


class ReminderStore(ABC):
    """Persisted lead reminders and their sent-markers."""

    @abstractmethod
    async def load_due_candidates(self, now: datetime, horizon: timedelta) -> list[LeadReminder]:
        """Pending reminders with due_at <= now + horizon (overdue ones included)."""
        ...

    @abstractmethod
    async def commit_fired_interval(
        self,
        lead_id: str,
        due_at: datetime,
        interval_key: str | None,
        new_status: ReminderStatus,
    ) -> LeadReminder:
        """
        Atomically add `interval_key` (None = status-only) to the reminder
        and set its status. Returns the stored record.
        """
        ...

    @abstractmethod
    async def get(self, lead_id: str) -> LeadReminder | None:
        ...

    @abstractmethod
    async def upsert(self, reminder: LeadReminder) -> LeadReminder:
        """Create or replace a reminder. A changed due_at clears fired_intervals and reopens it."""
        ...

    @abstractmethod
    async def cancel(self, lead_id: str) -> bool:
        """Resolve a reminder without firing anything further."""
        ...

    async def reschedule(self, lead_id: str, due_at: datetime) -> LeadReminder | None:
        """Move a reminder to a new due time (clears fired_intervals)."""
        current = await self.get(lead_id)
        if current is None:
            return None
        return await self.upsert(current.model_copy(update={"due_at": ensure_utc(due_at)}))


class ReminderTimelineConfigStore(ABC):
    """Per-tenant reminder timeline configuration."""

    @abstractmethod
    async def get(self, tenant_id: str) -> ReminderTimelineConfig:
        """Tenant config; the default is created and persisted on first sight."""
        ...

    @abstractmethod
    async def put(self, tenant_id: str, config: ReminderTimelineConfig) -> ReminderTimelineConfig:
        """Validate and replace the tenant config wholesale."""
        ...

    @abstractmethod
    async def reset_to_default(self, tenant_id: str) -> ReminderTimelineConfig:
        """Discard the custom intervals and persist the default timeline."""
        ...


def apply_upsert(existing: LeadReminder | None, incoming: LeadReminder) -> LeadReminder:
    """
    Merge rule shared by the stores for a user setting a lead's reminder.

    A new due time re-arms every interval. Setting the same due time again
    keeps the fired markers (no interval re-sends) but reopens a cancelled or
    resolved reminder; an overdue one simply resolves again on the next tick.
    """
    if existing is None:
        return incoming.model_copy(update={"version": 0, "status": ReminderStatus.PENDING})
    fired = set() if existing.due_at != incoming.due_at else set(existing.fired_intervals)
    return incoming.model_copy(update={
        "fired_intervals": fired,
        "status": ReminderStatus.PENDING,
        "version": existing.version + 1,
    })


# ============================================
# In-memory implementations
# ============================================

class InMemoryReminderStore(ReminderStore):
    """Dict-backed store. Records are copied in and out so callers never share state."""

    def __init__(self):
        self._reminders: dict[str, LeadReminder] = {}
        self._lock = threading.Lock()

    async def load_due_candidates(self, now: datetime, horizon: timedelta) -> list[LeadReminder]:
        limit = ensure_utc(now) + horizon
        with self._lock:
            due = [
                r.model_copy(deep=True)
                for r in self._reminders.values()
                if r.status == ReminderStatus.PENDING and r.due_at <= limit
            ]
        return sorted(due, key=lambda r: r.due_at)

    async def commit_fired_interval(
        self,
        lead_id: str,
        due_at: datetime,
        interval_key: str | None,
        new_status: ReminderStatus,
    ) -> LeadReminder:
        due_at = ensure_utc(due_at)
        with self._lock:
            current = self._reminders.get(lead_id)
            if current is None:
                raise ReminderConflictError(f"Reminder for lead {lead_id} not found")
            if current.due_at != due_at:
                raise ReminderConflictError(f"Reminder for lead {lead_id} was rescheduled")
            if current.status == ReminderStatus.RESOLVED:
                raise ReminderConflictError(f"Reminder for lead {lead_id} is already resolved")
            if interval_key is not None and interval_key in current.fired_intervals:
                raise ReminderConflictError(f"Interval {interval_key} already fired for lead {lead_id}")

            fired = set(current.fired_intervals)
            if interval_key is not None:
                fired.add(interval_key)
            updated = current.model_copy(update={
                "fired_intervals": fired,
                "status": new_status,
                "version": current.version + 1,
            })
            self._reminders[lead_id] = updated
            return updated.model_copy(deep=True)

    async def get(self, lead_id: str) -> LeadReminder | None:
        with self._lock:
            reminder = self._reminders.get(lead_id)
            return reminder.model_copy(deep=True) if reminder else None

    async def upsert(self, reminder: LeadReminder) -> LeadReminder:
        with self._lock:
            stored = apply_upsert(self._reminders.get(reminder.lead_id), reminder)
            self._reminders[reminder.lead_id] = stored
            return stored.model_copy(deep=True)

    async def cancel(self, lead_id: str) -> bool:
        with self._lock:
            current = self._reminders.get(lead_id)
            if current is None:
                return False
            self._reminders[lead_id] = current.model_copy(update={
                "status": ReminderStatus.RESOLVED,
                "version": current.version + 1,
            })
        logger.info(f"Reminder for lead {lead_id} cancelled")
        return True

    async def delete(self, lead_id: str) -> bool:
        """Lead deleted upstream (cascade)."""
        with self._lock:
            return self._reminders.pop(lead_id, None) is not None


class InMemoryTimelineConfigStore(ReminderTimelineConfigStore):
    def __init__(self, default_notification_email: str = ""):
        self._configs: dict[str, ReminderTimelineConfig] = {}
        self._default_email = default_notification_email
        self._lock = threading.Lock()

    async def get(self, tenant_id: str) -> ReminderTimelineConfig:
        with self._lock:
            config = self._configs.get(tenant_id)
            if config is None:
                config = default_timeline(tenant_id, self._default_email)
                self._configs[tenant_id] = config
                logger.info(f"Timeline: created default configuration for tenant {tenant_id}")
            return config.model_copy(deep=True)

    async def put(self, tenant_id: str, config: ReminderTimelineConfig) -> ReminderTimelineConfig:
        normalized = validate_config(config.model_copy(update={"tenant_id": tenant_id}))
        with self._lock:
            self._configs[tenant_id] = normalized
        logger.info(f"Timeline: tenant {tenant_id} updated ({len(normalized.intervals)} intervals, enabled={normalized.enabled})")
        return normalized.model_copy(deep=True)

    async def reset_to_default(self, tenant_id: str) -> ReminderTimelineConfig:
        with self._lock:
            previous = self._configs.get(tenant_id)
            email = previous.notification_email if previous else self._default_email
            config = default_timeline(tenant_id, email)
            self._configs[tenant_id] = config
        logger.info(f"Timeline: tenant {tenant_id} reset to default")
        return config.model_copy(deep=True)
