"""
Lead Reminders — Service wiring.
Builds the stores, dispatcher and scheduler from settings.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.core.config import settings
from src.core.events import EventBus, event_bus
from src.presence.handlers import PresenceSweeper
from src.presence.registry import PresenceRegistry, presence_registry
from src.reminders.dispatcher import EmailDispatcher, NotificationDispatcher
from src.reminders.in_app import InAppNotifier, in_app_notifier
from src.reminders.scheduler import ReminderScheduler
from src.reminders.store import (
    InMemoryReminderStore,
    InMemoryTimelineConfigStore,
    ReminderStore,
    ReminderTimelineConfigStore,
)
from src.reminders.sql_store import SqlReminderStore, SqlTimelineConfigStore

logger = logging.getLogger(__name__)


@dataclass
class ReminderServices:
    store: ReminderStore
    config_store: ReminderTimelineConfigStore
    dispatcher: NotificationDispatcher
    presence: PresenceRegistry
    in_app: InAppNotifier
    scheduler: ReminderScheduler
    sweeper: PresenceSweeper
    bus: EventBus


def build_reminder_services(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    dispatcher: NotificationDispatcher | None = None,
    presence: PresenceRegistry = presence_registry,
    in_app: InAppNotifier = in_app_notifier,
    bus: EventBus = event_bus,
) -> ReminderServices:
    """SQL stores when a session factory is given, in-memory stores otherwise."""
    if session_factory is not None:
        store: ReminderStore = SqlReminderStore(session_factory)
        config_store: ReminderTimelineConfigStore = SqlTimelineConfigStore(session_factory)
        logger.info("Reminder services: SQL stores")
    else:
        store = InMemoryReminderStore()
        config_store = InMemoryTimelineConfigStore()
        logger.info("Reminder services: in-memory stores (no DATABASE_URL)")

    dispatcher = dispatcher or EmailDispatcher()
    scheduler = ReminderScheduler(
        store=store,
        config_store=config_store,
        dispatcher=dispatcher,
        presence=presence,
        in_app=in_app,
        bus=bus,
    )
    sweeper = PresenceSweeper(
        registry=presence,
        interval_minutes=settings.PRESENCE_SWEEP_MINUTES,
        stale_after=timedelta(minutes=settings.PRESENCE_STALE_MINUTES),
    )
    return ReminderServices(
        store=store,
        config_store=config_store,
        dispatcher=dispatcher,
        presence=presence,
        in_app=in_app,
        scheduler=scheduler,
        sweeper=sweeper,
        bus=bus,
    )
