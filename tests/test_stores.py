"""
Tests for the reminder stores: compare-and-swap commits, upsert/reschedule
rules, and the SQL implementation against a SQLite database.
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError

from src.infra.database import create_session_factory
from src.infra.migrate_all import run_migrations, split_sql_statements
from src.reminders.models import LeadReminder, ReminderStatus, ReminderTimelineConfig
from src.reminders.sql_store import (
    SqlReminderStore,
    SqlTimelineConfigStore,
    from_db_timestamp,
    to_db_timestamp,
)
from src.reminders.store import (
    InMemoryReminderStore,
    ReminderConflictError,
    apply_upsert,
)

DUE = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)


def make_reminder(lead_id: str = "lead-1", due_at: datetime = DUE, **fields) -> LeadReminder:
    data = dict(
        lead_id=lead_id,
        tenant_id="acme",
        due_at=due_at,
        owner_user_id="agent-1",
        owner_email="agent1@acme.test",
        lead_name="Jane Prospect",
    )
    data.update(fields)
    return LeadReminder(**data)


class TestApplyUpsert:
    def test_new_reminder_starts_at_version_zero(self):
        stored = apply_upsert(None, make_reminder(version=7))
        assert stored.version == 0
        assert stored.status == ReminderStatus.PENDING

    def test_same_due_time_keeps_fired_intervals(self):
        existing = make_reminder(fired_intervals={"24h"}, version=3)
        stored = apply_upsert(existing, make_reminder(message="call back"))
        assert stored.fired_intervals == {"24h"}
        assert stored.message == "call back"
        assert stored.version == 4

    def test_new_due_time_rearms(self):
        existing = make_reminder(fired_intervals={"24h"}, status=ReminderStatus.RESOLVED, version=3)
        stored = apply_upsert(existing, make_reminder(due_at=DUE + timedelta(days=1)))
        assert stored.fired_intervals == set()
        assert stored.status == ReminderStatus.PENDING

    def test_setting_cancelled_reminder_again_reopens_it(self):
        existing = make_reminder(fired_intervals={"24h"}, status=ReminderStatus.RESOLVED, version=2)
        stored = apply_upsert(existing, make_reminder())
        assert stored.status == ReminderStatus.PENDING
        assert stored.fired_intervals == {"24h"}


class TestInMemoryReminderStore:
    def setup_method(self):
        self.store = InMemoryReminderStore()

    @pytest.mark.asyncio
    async def test_commit_marks_once(self):
        await self.store.upsert(make_reminder())
        stored = await self.store.commit_fired_interval("lead-1", DUE, "24h", ReminderStatus.PENDING)
        assert stored.fired_intervals == {"24h"}

        with pytest.raises(ReminderConflictError):
            await self.store.commit_fired_interval("lead-1", DUE, "24h", ReminderStatus.PENDING)

    @pytest.mark.asyncio
    async def test_commit_against_old_due_time_rejected(self):
        await self.store.upsert(make_reminder())
        await self.store.reschedule("lead-1", DUE + timedelta(hours=3))
        with pytest.raises(ReminderConflictError):
            await self.store.commit_fired_interval("lead-1", DUE, "1h", ReminderStatus.PENDING)

    @pytest.mark.asyncio
    async def test_commit_on_resolved_rejected(self):
        await self.store.upsert(make_reminder())
        await self.store.commit_fired_interval("lead-1", DUE, None, ReminderStatus.RESOLVED)
        with pytest.raises(ReminderConflictError):
            await self.store.commit_fired_interval("lead-1", DUE, "1h", ReminderStatus.PENDING)

    @pytest.mark.asyncio
    async def test_commit_missing_lead_rejected(self):
        with pytest.raises(ReminderConflictError):
            await self.store.commit_fired_interval("nobody", DUE, "1h", ReminderStatus.PENDING)

    @pytest.mark.asyncio
    async def test_load_due_candidates_respects_horizon_and_status(self):
        await self.store.upsert(make_reminder("soon", DUE))
        await self.store.upsert(make_reminder("later", DUE + timedelta(days=30)))
        await self.store.upsert(make_reminder("overdue", DUE - timedelta(days=2)))
        await self.store.upsert(make_reminder("done", DUE))
        await self.store.cancel("done")

        candidates = await self.store.load_due_candidates(DUE - timedelta(hours=10), timedelta(hours=169))

        assert [r.lead_id for r in candidates] == ["overdue", "soon"]

    @pytest.mark.asyncio
    async def test_returned_records_are_copies(self):
        await self.store.upsert(make_reminder())
        loaded = await self.store.get("lead-1")
        loaded.fired_intervals.add("24h")
        assert (await self.store.get("lead-1")).fired_intervals == set()

    @pytest.mark.asyncio
    async def test_cancel_and_delete(self):
        await self.store.upsert(make_reminder())
        assert await self.store.cancel("lead-1") is True
        assert (await self.store.get("lead-1")).is_resolved
        assert await self.store.cancel("missing") is False
        assert await self.store.delete("lead-1") is True
        assert await self.store.get("lead-1") is None

    @pytest.mark.asyncio
    async def test_cancel_then_set_same_due_time_is_loaded_again(self):
        await self.store.upsert(make_reminder())
        await self.store.cancel("lead-1")
        assert await self.store.load_due_candidates(DUE, timedelta(hours=1)) == []

        await self.store.upsert(make_reminder())

        candidates = await self.store.load_due_candidates(DUE - timedelta(hours=2), timedelta(hours=169))
        assert [r.lead_id for r in candidates] == ["lead-1"]
        assert candidates[0].status == ReminderStatus.PENDING

    @pytest.mark.asyncio
    async def test_naive_due_time_treated_as_utc(self):
        await self.store.upsert(make_reminder(due_at=datetime(2026, 5, 1, 12, 0)))
        assert (await self.store.get("lead-1")).due_at == DUE


# ============================================
# SQL stores (SQLite via aiosqlite)
# ============================================

class StartingDatabaseFactory:
    """Session factory that fails like a database still starting up."""

    def __init__(self, factory, failures: int):
        self.factory = factory
        self.failures = failures
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.failures:
            self.failures -= 1
            raise OperationalError("SELECT 1", {}, Exception("the database system is starting up"))
        return self.factory()


async def make_sql_stores(tmp_path):
    factory = create_session_factory(f"sqlite+aiosqlite:///{tmp_path / 'reminders.db'}")
    await run_migrations(factory, max_retries=1)
    return factory, SqlReminderStore(factory), SqlTimelineConfigStore(factory, default_notification_email="ops@acme.test")


class TestSqlStores:
    def test_timestamp_format_round_trips_and_sorts(self):
        early = to_db_timestamp(DUE)
        late = to_db_timestamp(DUE + timedelta(microseconds=1))
        assert early < late
        assert from_db_timestamp(early) == DUE

    def test_split_sql_statements(self):
        sql = "-- comment\nCREATE TABLE a (x INT);\n\nCREATE INDEX i ON a (x);\n"
        assert split_sql_statements(sql) == ["CREATE TABLE a (x INT)", "CREATE INDEX i ON a (x)"]

    @pytest.mark.asyncio
    async def test_reminder_lifecycle(self, tmp_path):
        factory, store, _ = await make_sql_stores(tmp_path)
        try:
            await store.upsert(make_reminder(lead_email="jane@example.test"))
            loaded = await store.get("lead-1")
            assert loaded.due_at == DUE
            assert loaded.lead_email == "jane@example.test"
            assert loaded.version == 0

            stored = await store.commit_fired_interval("lead-1", DUE, "24h", ReminderStatus.PENDING)
            assert stored.fired_intervals == {"24h"}
            with pytest.raises(ReminderConflictError):
                await store.commit_fired_interval("lead-1", DUE, "24h", ReminderStatus.PENDING)

            await store.commit_fired_interval("lead-1", DUE, "1h", ReminderStatus.RESOLVED)
            loaded = await store.get("lead-1")
            assert loaded.fired_intervals == {"24h", "1h"}
            assert loaded.status == ReminderStatus.RESOLVED
            assert await store.load_due_candidates(DUE, timedelta(hours=1)) == []
        finally:
            await factory.kw["bind"].dispose()

    @pytest.mark.asyncio
    async def test_reschedule_clears_marks(self, tmp_path):
        factory, store, _ = await make_sql_stores(tmp_path)
        try:
            await store.upsert(make_reminder())
            await store.commit_fired_interval("lead-1", DUE, "24h", ReminderStatus.PENDING)

            moved = await store.reschedule("lead-1", DUE + timedelta(days=2))
            assert moved.fired_intervals == set()

            with pytest.raises(ReminderConflictError):
                await store.commit_fired_interval("lead-1", DUE, "1h", ReminderStatus.PENDING)

            candidates = await store.load_due_candidates(DUE, timedelta(hours=169))
            assert [r.lead_id for r in candidates] == ["lead-1"]
            assert candidates[0].fired_intervals == set()
        finally:
            await factory.kw["bind"].dispose()

    @pytest.mark.asyncio
    async def test_cancel(self, tmp_path):
        factory, store, _ = await make_sql_stores(tmp_path)
        try:
            await store.upsert(make_reminder())
            assert await store.cancel("lead-1") is True
            assert await store.cancel("missing") is False
            assert (await store.get("lead-1")).status == ReminderStatus.RESOLVED
        finally:
            await factory.kw["bind"].dispose()

    @pytest.mark.asyncio
    async def test_timeline_store(self, tmp_path):
        factory, _, configs = await make_sql_stores(tmp_path)
        try:
            default = await configs.get("acme")
            assert [i.key for i in default.intervals] == ["24h", "2h", "1h", "0.5h"]
            assert default.notification_email == "ops@acme.test"

            await configs.put("acme", ReminderTimelineConfig(
                tenant_id="acme", intervals=[{"hours": 4}, {"hours": 48}], notification_email="sales@acme.test",
            ))
            stored = await configs.get("acme")
            assert [i.hours for i in stored.intervals] == [48, 4]

            reset = await configs.reset_to_default("acme")
            assert reset.notification_email == "sales@acme.test"
            assert [i.hours for i in (await configs.get("acme")).intervals] == [24, 2, 1, 0.5]
        finally:
            await factory.kw["bind"].dispose()

    @pytest.mark.asyncio
    async def test_migrations_retry_while_database_starts(self, tmp_path):
        factory = create_session_factory(f"sqlite+aiosqlite:///{tmp_path / 'reminders.db'}")
        starting = StartingDatabaseFactory(factory, failures=2)
        try:
            await run_migrations(starting, max_retries=5, retry_interval=0)
            assert starting.calls == 3
            store = SqlReminderStore(factory)
            await store.upsert(make_reminder())
            assert await store.get("lead-1") is not None
        finally:
            await factory.kw["bind"].dispose()

    @pytest.mark.asyncio
    async def test_migrations_give_up_after_max_retries(self):
        starting = StartingDatabaseFactory(factory=None, failures=10)
        with pytest.raises(RuntimeError):
            await run_migrations(starting, max_retries=3, retry_interval=0)
        assert starting.calls == 3

    @pytest.mark.asyncio
    async def test_migrations_are_idempotent(self, tmp_path):
        factory, store, _ = await make_sql_stores(tmp_path)
        try:
            await store.upsert(make_reminder())
            await run_migrations(factory, max_retries=1)
            assert await store.get("lead-1") is not None
        finally:
            await factory.kw["bind"].dispose()
