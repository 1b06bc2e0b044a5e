"""
Lead Reminders — Prometheus Metrics.
Scheduler, dispatch and presence metrics exposed at /metrics.
"""

import logging
import time
from functools import wraps

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)

logger = logging.getLogger(__name__)

# ============================================
# Application Info
# ============================================
APP_INFO = Info("lead_reminders", "Lead reminder scheduler info")
APP_INFO.info({"version": "0.1.0"})

# ============================================
# Scheduler Metrics
# ============================================
REMINDERS_FIRED = Counter(
    "lead_reminders_fired_total",
    "Reminder intervals fired",
    ["channel"],  # email | in_app
)

REMINDERS_RESOLVED = Counter(
    "lead_reminders_resolved_total",
    "Lead reminders transitioned to resolved",
)

DISPATCH_FAILURES = Counter(
    "lead_reminders_dispatch_failures_total",
    "Failed notification dispatch attempts",
    ["reason"],  # timeout | error | undelivered
)

STORE_FAILURES = Counter(
    "lead_reminders_store_failures_total",
    "Reminder store failures",
    ["operation", "error_type"],
)

TICK_LATENCY = Histogram(
    "lead_reminders_tick_duration_seconds",
    "Scheduler tick duration in seconds",
    buckets=[0.05, 0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0],
)

TICK_CANDIDATES = Gauge(
    "lead_reminders_tick_candidates",
    "Pending reminders loaded by the last tick",
)

# ============================================
# Presence Metrics
# ============================================
PRESENCE_RECORDS = Gauge(
    "lead_reminders_presence_records",
    "Presence records currently tracked",
)

PRESENCE_SWEPT = Counter(
    "lead_reminders_presence_swept_total",
    "Stale presence records removed by the sweeper",
)


# ============================================
# Helpers
# ============================================

def track_tick(func):
    """Decorator recording the duration of a scheduler tick."""
    @wraps(func)
    async def wrapper(*args, **kwargs):
        start = time.perf_counter()
        try:
            return await func(*args, **kwargs)
        finally:
            TICK_LATENCY.observe(time.perf_counter() - start)
    return wrapper


def get_metrics() -> tuple[bytes, str]:
    """Return the Prometheus exposition payload and its content type."""
    return generate_latest(), CONTENT_TYPE_LATEST
