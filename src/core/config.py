"""
Lead Reminders — Centralized Configuration.
Uses pydantic-settings to load from .env with type safety.
"""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration loaded from environment variables."""

    # === App ===
    ENVIRONMENT: str = "development"
    VERSION: str = "0.1.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = "logs/reminders.log"
    LOG_JSON: bool = True

    # === Database ===
    # Empty = in-memory stores (single process, dev/tests)
    DATABASE_URL: str = ""

    # === Reminder Scheduler ===
    REMINDER_TICK_SECONDS: int = 60
    REMINDER_WINDOW_MINUTES: float = 5.0  # how late a missed tick may still fire
    REMINDER_GUARD_HOURS: float = 1.0  # extra lookahead covering scheduler downtime
    REMINDER_WORKERS: int = 4
    REMINDER_DISPATCH_TIMEOUT_SECONDS: float = 10.0

    # === Presence ===
    PRESENCE_TARGET_PAGE: str = "leads"
    PRESENCE_STALE_MINUTES: int = 60
    PRESENCE_SWEEP_MINUTES: int = 10

    # === SMTP (email dispatcher) ===
    SMTP_HOST: str = "localhost"
    SMTP_PORT: int = 587
    SMTP_USERNAME: str = ""
    SMTP_PASSWORD: str = ""
    SMTP_FROM: str = "reminders@localhost"

    # === CORS ===
    CORS_ORIGINS: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    model_config = {"env_file": ".env", "case_sensitive": True}


settings = Settings()
