"""
Lead Reminders — Reminder Scheduler.
Turns "the clock passed a lead-time threshold" into at most one
notification attempt per (lead, due time, interval).

Flow (every tick):
  ReminderStore.load_due_candidates(now, horizon)
    → partition by lead_id onto a fixed worker
      → per reminder: tenant timeline → newly due intervals (longest first)
        → ReminderStore.commit_fired_interval(...)   (mark BEFORE sending)
          → PresenceRegistry.is_on_page(owner)
              yes → InAppNotifier.notify(payload)
              no  → NotificationDispatcher.send(payload, timeout)

Marking before sending means a crash or a failed send can lose a
notification but never duplicates one. A reminder whose due time has
passed and has no interval left that could still fire is resolved and
never loaded again.
"""

import asyncio
import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable

from src.core.config import settings
from src.core.events import Event, EventBus, EventType, event_bus
from src.infra.metrics import (
    DISPATCH_FAILURES,
    REMINDERS_FIRED,
    REMINDERS_RESOLVED,
    STORE_FAILURES,
    TICK_CANDIDATES,
    track_tick,
)
from src.presence.registry import PresenceRegistry
from src.reminders.dispatcher import DispatchError, NotificationDispatcher, render_payload
from src.reminders.in_app import InAppNotifier
from src.reminders.models import (
    DeliveryChannel,
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
)
from src.reminders.timeline import MAX_HOURS

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TickReport:
    """What one tick did."""
    started_at: datetime
    candidates: int = 0
    fired: list[tuple[str, str, str]] = field(default_factory=list)  # (lead_id, interval_key, channel)
    resolved: list[str] = field(default_factory=list)
    dispatch_failures: int = 0
    conflicts: int = 0
    errors: int = 0

    def to_dict(self) -> dict:
        return {
            "started_at": self.started_at.isoformat(),
            "candidates": self.candidates,
            "fired": len(self.fired),
            "resolved": len(self.resolved),
            "dispatch_failures": self.dispatch_failures,
            "conflicts": self.conflicts,
            "errors": self.errors,
        }


class ReminderScheduler:
    """
    Periodic reminder evaluation.

    Features:
    - Background loop ticks every `tick_seconds` (default 60s)
    - Records are partitioned by a stable lead_id hash onto `workers`
      asyncio workers, so a record is never processed twice in one tick
    - Intervals are evaluated longest lead time first
    - One bad record (store error, dispatcher error) never blocks the batch
    """

    def __init__(
        self,
        store: ReminderStore,
        config_store: ReminderTimelineConfigStore,
        dispatcher: NotificationDispatcher,
        presence: PresenceRegistry,
        in_app: InAppNotifier,
        bus: EventBus = event_bus,
        tick_seconds: float = settings.REMINDER_TICK_SECONDS,
        window: timedelta = timedelta(minutes=settings.REMINDER_WINDOW_MINUTES),
        guard: timedelta = timedelta(hours=settings.REMINDER_GUARD_HOURS),
        workers: int = settings.REMINDER_WORKERS,
        dispatch_timeout: float = settings.REMINDER_DISPATCH_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._config_store = config_store
        self._dispatcher = dispatcher
        self._presence = presence
        self._in_app = in_app
        self._bus = bus
        self.tick_seconds = tick_seconds
        self.window = window
        self.guard = guard
        self.workers = max(1, workers)
        self.dispatch_timeout = dispatch_timeout
        self._clock = clock
        self._task: asyncio.Task | None = None
        self._running = False
        self._tick_lock = asyncio.Lock()
        self.last_report: TickReport | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def horizon(self) -> timedelta:
        """Lookahead for loading candidates: the longest allowed lead time plus guard."""
        return timedelta(hours=MAX_HOURS) + self.guard

    # ============================================
    # Lifecycle
    # ============================================

    async def start(self) -> None:
        """Start the background tick loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._scheduler_loop())
        logger.info(f"Reminder scheduler started (tick={self.tick_seconds}s, workers={self.workers})")

    async def stop(self) -> None:
        """Stop the background tick loop."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Reminder scheduler stopped")

    async def _scheduler_loop(self) -> None:
        while self._running:
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Reminder scheduler error: {e}", exc_info=True)
            await asyncio.sleep(self.tick_seconds)

    # ============================================
    # Tick
    # ============================================

    def partition(self, lead_id: str) -> int:
        """Stable worker index for a lead (independent of PYTHONHASHSEED)."""
        digest = hashlib.md5(lead_id.encode("utf-8")).hexdigest()
        return int(digest, 16) % self.workers

    @track_tick
    async def tick(self, now: datetime | None = None) -> TickReport:
        """Run one evaluation pass. `now` defaults to the scheduler clock."""
        async with self._tick_lock:
            now = ensure_utc(now or self._clock())
            report = TickReport(started_at=now)

            try:
                candidates = await self._store.load_due_candidates(now, self.horizon)
            except ReminderStoreError as e:
                STORE_FAILURES.labels(operation="load", error_type=type(e).__name__).inc()
                logger.error(f"Reminder tick skipped, store unavailable: {e}")
                report.errors += 1
                self.last_report = report
                return report

            report.candidates = len(candidates)
            TICK_CANDIDATES.set(len(candidates))

            buckets: list[list[LeadReminder]] = [[] for _ in range(self.workers)]
            for reminder in candidates:
                buckets[self.partition(reminder.lead_id)].append(reminder)

            configs: dict[str, ReminderTimelineConfig] = {}
            await asyncio.gather(*(
                self._run_worker(bucket, now, report, configs) for bucket in buckets if bucket
            ))

            if report.fired or report.resolved or report.errors:
                logger.info("Reminder tick completed", extra={"props": report.to_dict()})
            self.last_report = report
            return report

    async def _run_worker(
        self,
        bucket: list[LeadReminder],
        now: datetime,
        report: TickReport,
        configs: dict[str, ReminderTimelineConfig],
    ) -> None:
        for reminder in bucket:
            try:
                await self._process(reminder, now, report, configs)
            except Exception as e:
                report.errors += 1
                logger.error(f"Reminder for lead {reminder.lead_id} failed: {e}", exc_info=True)

    async def _get_config(self, tenant_id: str, configs: dict[str, ReminderTimelineConfig]) -> ReminderTimelineConfig:
        if tenant_id not in configs:
            configs[tenant_id] = await self._config_store.get(tenant_id)
        return configs[tenant_id]

    # ============================================
    # Per-reminder state machine
    # ============================================

    def trigger_at(self, reminder: LeadReminder, interval: ReminderInterval) -> datetime:
        return reminder.due_at - timedelta(hours=interval.hours)

    def is_due(self, reminder: LeadReminder, interval: ReminderInterval, now: datetime) -> bool:
        """trigger_at <= now < trigger_at + window."""
        trigger_at = self.trigger_at(reminder, interval)
        return trigger_at <= now < trigger_at + self.window

    def _window_open(self, reminder: LeadReminder, interval: ReminderInterval, now: datetime) -> bool:
        """The interval can still fire now or on a later tick."""
        return now < self.trigger_at(reminder, interval) + self.window

    async def _process(
        self,
        reminder: LeadReminder,
        now: datetime,
        report: TickReport,
        configs: dict[str, ReminderTimelineConfig],
    ) -> None:
        try:
            config = await self._get_config(reminder.tenant_id, configs)
        except ReminderStoreError as e:
            report.errors += 1
            STORE_FAILURES.labels(operation="config", error_type=type(e).__name__).inc()
            logger.error(f"Timeline for tenant {reminder.tenant_id} unavailable, skipping lead {reminder.lead_id}: {e}")
            return

        overdue = now > reminder.due_at

        if not config.enabled:
            # Disabled tenants fire nothing; future reminders keep their state for re-enabling
            if overdue:
                await self._commit(reminder, None, ReminderStatus.RESOLVED, report)
            return

        intervals = config.active_intervals()
        if reminder.due_at - now > timedelta(hours=config.max_hours()) + self.guard:
            return

        unfired = [i for i in intervals if i.key not in reminder.fired_intervals]
        due = [i for i in unfired if self.is_due(reminder, i, now)]
        still_open = [i for i in unfired if i not in due and self._window_open(reminder, i, now)]
        resolves = overdue and not still_open

        if not due:
            if resolves:
                await self._commit(reminder, None, ReminderStatus.RESOLVED, report)
            return

        for position, interval in enumerate(due):
            last = position == len(due) - 1
            status = ReminderStatus.RESOLVED if (last and resolves) else ReminderStatus.PENDING
            if not await self._commit(reminder, interval.key, status, report):
                return
            await self._deliver(reminder, interval, config, now, report)

    async def _commit(
        self,
        reminder: LeadReminder,
        interval_key: str | None,
        status: ReminderStatus,
        report: TickReport,
    ) -> bool:
        """Persist one mark (and/or status). False = skip the rest of this record for this tick."""
        try:
            await self._store.commit_fired_interval(reminder.lead_id, reminder.due_at, interval_key, status)
        except ReminderConflictError as e:
            report.conflicts += 1
            STORE_FAILURES.labels(operation="commit", error_type="conflict").inc()
            logger.warning(f"Reminder commit rejected for lead {reminder.lead_id}: {e}")
            return False
        except ReminderStoreError as e:
            report.errors += 1
            STORE_FAILURES.labels(operation="commit", error_type=type(e).__name__).inc()
            logger.error(f"Reminder commit failed for lead {reminder.lead_id}, retrying next tick: {e}")
            return False

        if status == ReminderStatus.RESOLVED:
            report.resolved.append(reminder.lead_id)
            REMINDERS_RESOLVED.inc()
            await self._bus.emit(Event(
                type=EventType.REMINDER_RESOLVED,
                source="reminder_scheduler",
                data={"lead_id": reminder.lead_id, "tenant_id": reminder.tenant_id},
            ))
            logger.info(f"Reminder for lead {reminder.lead_id} resolved")
        return True

    async def _deliver(
        self,
        reminder: LeadReminder,
        interval: ReminderInterval,
        config: ReminderTimelineConfig,
        now: datetime,
        report: TickReport,
    ) -> None:
        """Send one already-marked interval. Failures are logged, never retried."""
        payload = render_payload(reminder, interval, config, now)

        if self._presence.is_on_page(reminder.owner_user_id):
            channel = DeliveryChannel.IN_APP
            await self._in_app.notify(payload)
        else:
            channel = DeliveryChannel.EMAIL
            try:
                delivered = await asyncio.wait_for(
                    self._dispatcher.send(payload, self.dispatch_timeout),
                    timeout=self.dispatch_timeout,
                )
                if not delivered:
                    report.dispatch_failures += 1
                    DISPATCH_FAILURES.labels(reason="undelivered").inc()
                    logger.warning(f"Reminder {interval.key} for lead {reminder.lead_id} not delivered")
            except asyncio.TimeoutError:
                report.dispatch_failures += 1
                DISPATCH_FAILURES.labels(reason="timeout").inc()
                logger.warning(f"Reminder {interval.key} for lead {reminder.lead_id} timed out after {self.dispatch_timeout}s")
            except DispatchError as e:
                report.dispatch_failures += 1
                DISPATCH_FAILURES.labels(reason="error").inc()
                logger.warning(f"Reminder {interval.key} for lead {reminder.lead_id} dispatch failed: {e}")
            except Exception as e:
                # Interval is already marked fired; unexpected transport errors are not retried either
                report.dispatch_failures += 1
                DISPATCH_FAILURES.labels(reason="error").inc()
                logger.error(f"Reminder {interval.key} for lead {reminder.lead_id} dispatcher crashed: {e}", exc_info=True)

        report.fired.append((reminder.lead_id, interval.key, channel.value))
        REMINDERS_FIRED.labels(channel=channel.value).inc()
        await self._bus.emit(Event(
            type=EventType.REMINDER_FIRED,
            source="reminder_scheduler",
            data={
                "lead_id": reminder.lead_id,
                "tenant_id": reminder.tenant_id,
                "user_id": reminder.owner_user_id,
                "interval": interval.key,
                "channel": channel.value,
                "due_at": reminder.due_at.isoformat(),
            },
        ))
        logger.info(f"Reminder {interval.key} fired for lead {reminder.lead_id} via {channel.value}")

    # ============================================
    # Manual test notification
    # ============================================

    async def send_test_notification(
        self,
        tenant_id: str,
        user_id: str,
        email: str | None = None,
    ) -> bool:
        """
        Send a sample reminder straight through the dispatcher, bypassing the
        tick and the store. Used to verify a tenant's notification setup.
        Raises DispatchError (or asyncio.TimeoutError) on failure.
        """
        config = await self._config_store.get(tenant_id)
        now = self._clock()
        intervals = config.active_intervals() or config.intervals
        interval = intervals[-1] if intervals else ReminderInterval(hours=1, label="1 hour")
        sample = LeadReminder(
            lead_id="test-notification",
            tenant_id=tenant_id,
            due_at=now + timedelta(hours=interval.hours),
            owner_user_id=user_id,
            owner_email=email,
            lead_name="Test Lead",
            message="This is a test reminder notification",
        )
        payload = render_payload(sample, interval, config, now)
        delivered = await asyncio.wait_for(
            self._dispatcher.send(payload, self.dispatch_timeout),
            timeout=self.dispatch_timeout,
        )
        logger.info(f"Test notification for tenant {tenant_id} → {payload.recipient_email}: delivered={delivered}")
        return delivered
