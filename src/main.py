"""
Lead Reminders — FastAPI Application.
Reminder scheduler + presence sweeper lifecycle, reminders API, health and metrics.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware

from src.api.reminders import router as reminders_router
from src.core.config import settings
from src.core.events import EventType
from src.infra.logging_config import setup_logging
from src.infra.metrics import get_metrics
from src.presence.handlers import register_presence_handlers
from src.reminders.services import ReminderServices, build_reminder_services

logger = logging.getLogger(__name__)


async def _build_services() -> ReminderServices:
    """SQL-backed services when DATABASE_URL is set (migrations applied first)."""
    if not settings.DATABASE_URL:
        return build_reminder_services()

    from src.infra.database import get_session_factory
    from src.infra.migrate_all import run_migrations

    session_factory = get_session_factory()
    await run_migrations(session_factory)
    return build_reminder_services(session_factory=session_factory)


def create_app(services: ReminderServices | None = None, start_background: bool = True) -> FastAPI:
    """
    Build the application.

    Args:
        services: Pre-built services (tests); built from settings when None.
        start_background: Start the reminder scheduler and presence sweeper loops.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown events."""
        if services is None:
            setup_logging(
                level=settings.LOG_LEVEL,
                log_file=settings.LOG_FILE,
                json_format=settings.LOG_JSON,
                environment=settings.ENVIRONMENT,
                version=settings.VERSION,
            )
        reminder_services = services or await _build_services()
        app.state.reminders = reminder_services

        # Socket layer emits presence.* events → PresenceRegistry
        register_presence_handlers(reminder_services.bus, reminder_services.presence)

        if start_background:
            # Background loop evaluates due reminders every REMINDER_TICK_SECONDS
            await reminder_services.scheduler.start()
            # Stale presence records removed every PRESENCE_SWEEP_MINUTES
            await reminder_services.sweeper.start()

        await reminder_services.bus.emit_simple(EventType.SYSTEM_STARTUP, source="main")
        logger.info(f"Lead reminders v{settings.VERSION} started ({settings.ENVIRONMENT})")

        yield

        await reminder_services.bus.emit_simple(EventType.SYSTEM_SHUTDOWN, source="main")
        if start_background:
            await reminder_services.scheduler.stop()
            await reminder_services.sweeper.stop()
        if services is None and settings.DATABASE_URL:
            from src.infra.database import dispose_engine
            await dispose_engine()
        logger.info("Lead reminders stopped")

    app = FastAPI(
        title="Lead Reminders",
        version=settings.VERSION,
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(reminders_router)

    @app.get("/health")
    async def health():
        reminder_services: ReminderServices | None = getattr(app.state, "reminders", None)
        return {
            "status": "ok",
            "version": settings.VERSION,
            "scheduler_running": bool(reminder_services and reminder_services.scheduler.is_running),
            "presence_records": len(reminder_services.presence) if reminder_services else 0,
        }

    @app.get("/metrics")
    async def metrics():
        payload, content_type = get_metrics()
        return Response(content=payload, media_type=content_type)

    return app


app = create_app()
