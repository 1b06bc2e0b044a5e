"""
Lead Reminders — SQL stores.
SQLAlchemy async implementations of the reminder and timeline stores.
Tables are created by migrations/001_lead_reminders.sql.

Fired-interval commits are a compare-and-swap on (lead_id, due_at, version):
a concurrent writer or a reschedule makes the UPDATE match zero rows and the
commit fails with ReminderConflictError instead of double-marking.
"""

import json
import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.reminders.models import (
    LeadReminder,
    ReminderInterval,
    ReminderStatus,
    ReminderTimelineConfig,
    ensure_utc,
)
from src.reminders.store import (
    ReminderConflictError,
    ReminderStore,
    ReminderStoreError,
    ReminderTimelineConfigStore,
    apply_upsert,
)
from src.reminders.timeline import default_timeline, validate_config

logger = logging.getLogger(__name__)

_REMINDER_COLUMNS = (
    "lead_id, tenant_id, owner_user_id, owner_email, lead_name, lead_email, lead_phone, "
    "message, due_at, fired_intervals, status, version"
)


def to_db_timestamp(value: datetime) -> str:
    """Fixed-width UTC string; compares correctly as text."""
    return ensure_utc(value).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def from_db_timestamp(value: str) -> datetime:
    return ensure_utc(datetime.fromisoformat(value))


def _row_to_reminder(row) -> LeadReminder:
    m = row._mapping
    return LeadReminder(
        lead_id=m["lead_id"],
        tenant_id=m["tenant_id"],
        owner_user_id=m["owner_user_id"],
        owner_email=m["owner_email"],
        lead_name=m["lead_name"] or "",
        lead_email=m["lead_email"],
        lead_phone=m["lead_phone"],
        message=m["message"] or "",
        due_at=from_db_timestamp(m["due_at"]),
        fired_intervals=set(json.loads(m["fired_intervals"] or "[]")),
        status=ReminderStatus(m["status"]),
        version=m["version"],
    )


def _reminder_params(reminder: LeadReminder) -> dict:
    return {
        "lead_id": reminder.lead_id,
        "tenant_id": reminder.tenant_id,
        "owner_user_id": reminder.owner_user_id,
        "owner_email": reminder.owner_email,
        "lead_name": reminder.lead_name,
        "lead_email": reminder.lead_email,
        "lead_phone": reminder.lead_phone,
        "message": reminder.message,
        "due_at": to_db_timestamp(reminder.due_at),
        "fired_intervals": json.dumps(sorted(reminder.fired_intervals)),
        "status": reminder.status.value,
        "version": reminder.version,
        "updated_at": to_db_timestamp(datetime.now(timezone.utc)),
    }


class SqlReminderStore(ReminderStore):
    """Reminder store over the `lead_reminders` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def load_due_candidates(self, now: datetime, horizon: timedelta) -> list[LeadReminder]:
        query = f"""
            SELECT {_REMINDER_COLUMNS}
            FROM lead_reminders
            WHERE status = :status AND due_at <= :limit
            ORDER BY due_at
        """
        try:
            async with self._session_factory() as session:
                result = await session.execute(text(query), {
                    "status": ReminderStatus.PENDING.value,
                    "limit": to_db_timestamp(ensure_utc(now) + horizon),
                })
                return [_row_to_reminder(row) for row in result.fetchall()]
        except SQLAlchemyError as e:
            raise ReminderStoreError(f"Failed to load due reminders: {e}") from e

    async def _fetch(self, session: AsyncSession, lead_id: str) -> LeadReminder | None:
        result = await session.execute(
            text(f"SELECT {_REMINDER_COLUMNS} FROM lead_reminders WHERE lead_id = :lead_id"),
            {"lead_id": lead_id},
        )
        row = result.fetchone()
        return _row_to_reminder(row) if row else None

    async def commit_fired_interval(
        self,
        lead_id: str,
        due_at: datetime,
        interval_key: str | None,
        new_status: ReminderStatus,
    ) -> LeadReminder:
        due_at = ensure_utc(due_at)
        try:
            async with self._session_factory() as session:
                current = await self._fetch(session, lead_id)
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

                update_query = """
                    UPDATE lead_reminders
                    SET fired_intervals = :fired, status = :status,
                        version = version + 1, updated_at = :updated_at
                    WHERE lead_id = :lead_id AND due_at = :due_at
                      AND version = :version AND status = :pending
                """
                result = await session.execute(text(update_query), {
                    "fired": json.dumps(sorted(fired)),
                    "status": new_status.value,
                    "updated_at": to_db_timestamp(datetime.now(timezone.utc)),
                    "lead_id": lead_id,
                    "due_at": to_db_timestamp(due_at),
                    "version": current.version,
                    "pending": ReminderStatus.PENDING.value,
                })
                if result.rowcount != 1:
                    await session.rollback()
                    raise ReminderConflictError(f"Concurrent update on reminder for lead {lead_id}")
                await session.commit()

                return current.model_copy(update={
                    "fired_intervals": fired,
                    "status": new_status,
                    "version": current.version + 1,
                })
        except SQLAlchemyError as e:
            raise ReminderStoreError(f"Failed to commit interval for lead {lead_id}: {e}") from e

    async def get(self, lead_id: str) -> LeadReminder | None:
        try:
            async with self._session_factory() as session:
                return await self._fetch(session, lead_id)
        except SQLAlchemyError as e:
            raise ReminderStoreError(f"Failed to load reminder for lead {lead_id}: {e}") from e

    async def upsert(self, reminder: LeadReminder) -> LeadReminder:
        try:
            async with self._session_factory() as session:
                existing = await self._fetch(session, reminder.lead_id)
                stored = apply_upsert(existing, reminder)
                params = _reminder_params(stored)

                if existing is None:
                    query = f"""
                        INSERT INTO lead_reminders ({_REMINDER_COLUMNS}, updated_at)
                        VALUES (:lead_id, :tenant_id, :owner_user_id, :owner_email, :lead_name,
                                :lead_email, :lead_phone, :message, :due_at, :fired_intervals,
                                :status, :version, :updated_at)
                    """
                    await session.execute(text(query), params)
                else:
                    query = """
                        UPDATE lead_reminders
                        SET tenant_id = :tenant_id, owner_user_id = :owner_user_id,
                            owner_email = :owner_email, lead_name = :lead_name,
                            lead_email = :lead_email, lead_phone = :lead_phone,
                            message = :message, due_at = :due_at,
                            fired_intervals = :fired_intervals, status = :status,
                            version = :version, updated_at = :updated_at
                        WHERE lead_id = :lead_id AND version = :expected_version
                    """
                    result = await session.execute(text(query), {**params, "expected_version": existing.version})
                    if result.rowcount != 1:
                        await session.rollback()
                        raise ReminderConflictError(f"Concurrent update on reminder for lead {reminder.lead_id}")
                await session.commit()
                return stored
        except SQLAlchemyError as e:
            raise ReminderStoreError(f"Failed to save reminder for lead {reminder.lead_id}: {e}") from e

    async def cancel(self, lead_id: str) -> bool:
        query = """
            UPDATE lead_reminders
            SET status = :resolved, version = version + 1, updated_at = :updated_at
            WHERE lead_id = :lead_id
        """
        try:
            async with self._session_factory() as session:
                result = await session.execute(text(query), {
                    "resolved": ReminderStatus.RESOLVED.value,
                    "updated_at": to_db_timestamp(datetime.now(timezone.utc)),
                    "lead_id": lead_id,
                })
                await session.commit()
        except SQLAlchemyError as e:
            raise ReminderStoreError(f"Failed to cancel reminder for lead {lead_id}: {e}") from e
        if result.rowcount:
            logger.info(f"Reminder for lead {lead_id} cancelled")
        return bool(result.rowcount)


def _row_to_config(row) -> ReminderTimelineConfig:
    m = row._mapping
    return ReminderTimelineConfig(
        tenant_id=m["tenant_id"],
        enabled=bool(m["enabled"]),
        intervals=[ReminderInterval(**i) for i in json.loads(m["intervals"])],
        notification_email=m["notification_email"] or "",
    )


class SqlTimelineConfigStore(ReminderTimelineConfigStore):
    """Timeline store over the `reminder_timelines` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], default_notification_email: str = ""):
        self._session_factory = session_factory
        self._default_email = default_notification_email

    async def _select(self, session: AsyncSession, tenant_id: str) -> ReminderTimelineConfig | None:
        result = await session.execute(
            text("SELECT tenant_id, enabled, intervals, notification_email FROM reminder_timelines WHERE tenant_id = :tenant_id"),
            {"tenant_id": tenant_id},
        )
        row = result.fetchone()
        return _row_to_config(row) if row else None

    async def _write(self, session: AsyncSession, config: ReminderTimelineConfig, replace: bool) -> None:
        conflict = (
            "DO UPDATE SET enabled = excluded.enabled, intervals = excluded.intervals, "
            "notification_email = excluded.notification_email, updated_at = excluded.updated_at"
            if replace else "DO NOTHING"
        )
        query = f"""
            INSERT INTO reminder_timelines (tenant_id, enabled, intervals, notification_email, updated_at)
            VALUES (:tenant_id, :enabled, :intervals, :notification_email, :updated_at)
            ON CONFLICT (tenant_id) {conflict}
        """
        await session.execute(text(query), {
            "tenant_id": config.tenant_id,
            "enabled": config.enabled,
            "intervals": json.dumps([i.model_dump() for i in config.intervals]),
            "notification_email": config.notification_email,
            "updated_at": to_db_timestamp(datetime.now(timezone.utc)),
        })

    async def get(self, tenant_id: str) -> ReminderTimelineConfig:
        try:
            async with self._session_factory() as session:
                config = await self._select(session, tenant_id)
                if config is not None:
                    return config
                await self._write(session, default_timeline(tenant_id, self._default_email), replace=False)
                await session.commit()
                logger.info(f"Timeline: created default configuration for tenant {tenant_id}")
                return await self._select(session, tenant_id)
        except SQLAlchemyError as e:
            raise ReminderStoreError(f"Failed to load timeline for tenant {tenant_id}: {e}") from e

    async def put(self, tenant_id: str, config: ReminderTimelineConfig) -> ReminderTimelineConfig:
        normalized = validate_config(config.model_copy(update={"tenant_id": tenant_id}))
        try:
            async with self._session_factory() as session:
                await self._write(session, normalized, replace=True)
                await session.commit()
        except SQLAlchemyError as e:
            raise ReminderStoreError(f"Failed to save timeline for tenant {tenant_id}: {e}") from e
        logger.info(f"Timeline: tenant {tenant_id} updated ({len(normalized.intervals)} intervals, enabled={normalized.enabled})")
        return normalized

    async def reset_to_default(self, tenant_id: str) -> ReminderTimelineConfig:
        try:
            async with self._session_factory() as session:
                previous = await self._select(session, tenant_id)
                email = previous.notification_email if previous else self._default_email
                config = default_timeline(tenant_id, email)
                await self._write(session, config, replace=True)
                await session.commit()
        except SQLAlchemyError as e:
            raise ReminderStoreError(f"Failed to reset timeline for tenant {tenant_id}: {e}") from e
        logger.info(f"Timeline: tenant {tenant_id} reset to default")
        return config
