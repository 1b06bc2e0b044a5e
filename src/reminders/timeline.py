"""
Lead Reminders — Reminder timeline configuration.
Validation and normalization of a tenant's reminder lead times.

Rules:
  - finite, and 0.1 < hours <= 168 (one week) after rounding to 2 decimals
  - at most 10 entries (checked on the raw input)
  - at least one entry while the timeline is enabled
  - entries equal after rounding to 2 decimals are near-duplicates: the
    first one in input order is kept, later ones are dropped silently
  - the result is sorted by hours, longest lead time first
"""

import logging
import math
from typing import Iterable

from src.reminders.models import ReminderInterval, ReminderTimelineConfig

logger = logging.getLogger(__name__)

MIN_HOURS = 0.1
MAX_HOURS = 168.0
MAX_INTERVALS = 10
ROUND_DIGITS = 2

DEFAULT_INTERVALS = (
    ReminderInterval(hours=24, label="24 hours"),
    ReminderInterval(hours=2, label="2 hours"),
    ReminderInterval(hours=1, label="1 hour"),
    ReminderInterval(hours=0.5, label="30 minutes"),
)


class TimelineValidationError(ValueError):
    """Rejected reminder timeline configuration."""

    def __init__(self, message: str, field: str = "intervals"):
        super().__init__(message)
        self.field = field


def _coerce(item: ReminderInterval | dict | float | int) -> ReminderInterval:
    if isinstance(item, ReminderInterval):
        return item
    if isinstance(item, dict):
        return ReminderInterval(**item)
    return ReminderInterval(hours=float(item))


def validate_intervals(
    intervals: Iterable[ReminderInterval | dict | float | int],
    enabled: bool = True,
) -> list[ReminderInterval]:
    """
    Validate and normalize an interval list.

    Returns:
        Intervals sorted descending by hours, near-duplicates removed.

    Raises:
        TimelineValidationError: on any rule violation.
    """
    items = [_coerce(i) for i in intervals]

    if len(items) > MAX_INTERVALS:
        raise TimelineValidationError(f"At most {MAX_INTERVALS} intervals allowed, got {len(items)}")
    if enabled and not items:
        raise TimelineValidationError("At least one interval is required while reminders are enabled")

    for item in items:
        if not math.isfinite(item.hours):
            raise TimelineValidationError(f"Interval hours must be a finite number, got {item.hours}")
        # Range is checked on the stored (rounded) value
        rounded = round(item.hours, ROUND_DIGITS)
        if rounded <= MIN_HOURS or rounded > MAX_HOURS:
            raise TimelineValidationError(
                f"Interval {item.hours:g}h out of range: must be > {MIN_HOURS:g}h and <= {MAX_HOURS:g}h"
            )

    seen: set[float] = set()
    normalized: list[ReminderInterval] = []
    for item in items:
        rounded = round(item.hours, ROUND_DIGITS)
        if rounded in seen:
            logger.debug(f"Timeline: dropping near-duplicate interval {item.hours}h")
            continue
        seen.add(rounded)
        normalized.append(ReminderInterval(hours=rounded, label=item.label or ""))

    normalized.sort(key=lambda i: i.hours, reverse=True)
    return [ReminderInterval(hours=i.hours, label=i.display_label()) for i in normalized]


def validate_config(config: ReminderTimelineConfig) -> ReminderTimelineConfig:
    """Return a normalized copy of a full tenant configuration."""
    intervals = validate_intervals(config.intervals, enabled=config.enabled)
    return config.model_copy(update={"intervals": intervals})


def default_timeline(tenant_id: str, notification_email: str = "") -> ReminderTimelineConfig:
    """Baseline configuration: 24h, 2h, 1h and 30 minutes ahead, enabled."""
    return ReminderTimelineConfig(
        tenant_id=tenant_id,
        enabled=True,
        intervals=[i.model_copy() for i in DEFAULT_INTERVALS],
        notification_email=notification_email,
    )
