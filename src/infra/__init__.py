"""
Lead Reminders — Infrastructure module.
Logging, metrics, and database access.
"""

from src.infra.logging_config import setup_logging
from src.infra.metrics import (
    get_metrics,
    track_tick,
    REMINDERS_FIRED,
    DISPATCH_FAILURES,
    STORE_FAILURES,
    PRESENCE_RECORDS,
)

__all__ = [
    "setup_logging",
    "get_metrics",
    "track_tick",
    "REMINDERS_FIRED",
    "DISPATCH_FAILURES",
    "STORE_FAILURES",
    "PRESENCE_RECORDS",
]
