"""
Lead Reminders — Presence Registry.
Tracks which agents currently have the target page open, so a triggered
reminder can be shown in-app instead of sent by email.

Writers are the socket connection handlers (one per live connection event);
readers are the reminder scheduler and other notification paths. Every
operation holds the lock for a single record read/write only.
"""

import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable

from src.core.config import settings
from src.infra.metrics import PRESENCE_RECORDS, PRESENCE_SWEPT

logger = logging.getLogger(__name__)

DEFAULT_STALE_AFTER = timedelta(hours=1)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class PresenceRecord:
    """Last known presence of one user. Absence of a record means offline."""
    user_id: str
    connection_id: str
    last_seen_at: datetime
    on_target_page: bool


class PresenceRegistry:
    """
    In-memory, thread-safe map user_id → PresenceRecord (last write wins).

    A record older than `stale_after` is reported as offline by the readers
    even before the sweeper removes it.
    """

    def __init__(
        self,
        page: str = "leads",
        stale_after: timedelta = DEFAULT_STALE_AFTER,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.page = page
        self.stale_after = stale_after
        self._clock = clock
        self._records: dict[str, PresenceRecord] = {}
        self._lock = threading.Lock()

    # ============================================
    # Writers
    # ============================================

    def mark_on_page(self, user_id: str, connection_id: str) -> None:
        """User opened the target page on `connection_id`."""
        record = PresenceRecord(
            user_id=user_id,
            connection_id=connection_id,
            last_seen_at=self._clock(),
            on_target_page=True,
        )
        with self._lock:
            self._records[user_id] = record
            size = len(self._records)
        PRESENCE_RECORDS.set(size)
        logger.debug(f"Presence: {user_id} entered '{self.page}' (connection {connection_id})")

    def mark_off_page(self, user_id: str) -> None:
        """User navigated away but is still connected. No-op without a record."""
        now = self._clock()
        with self._lock:
            record = self._records.get(user_id)
            if record is None:
                return
            self._records[user_id] = replace(record, on_target_page=False, last_seen_at=now)
        logger.debug(f"Presence: {user_id} left '{self.page}'")

    def touch(self, user_id: str) -> None:
        """Heartbeat: refresh last_seen_at without changing page state."""
        now = self._clock()
        with self._lock:
            record = self._records.get(user_id)
            if record is not None:
                self._records[user_id] = replace(record, last_seen_at=now)

    def remove(self, user_id: str) -> None:
        """User disconnected. Idempotent."""
        with self._lock:
            removed = self._records.pop(user_id, None)
            size = len(self._records)
        if removed is not None:
            PRESENCE_RECORDS.set(size)
            logger.debug(f"Presence: {user_id} disconnected")

    def sweep(self, stale_after: timedelta | None = None) -> int:
        """Remove records not seen within `stale_after`. Returns how many were removed."""
        cutoff = self._clock() - (self.stale_after if stale_after is None else stale_after)
        with self._lock:
            candidates = [uid for uid, rec in self._records.items() if rec.last_seen_at < cutoff]

        removed = 0
        for user_id in candidates:
            with self._lock:
                record = self._records.get(user_id)
                # Re-check: the user may have been refreshed since the scan
                if record is not None and record.last_seen_at < cutoff:
                    del self._records[user_id]
                    removed += 1

        with self._lock:
            size = len(self._records)
        PRESENCE_RECORDS.set(size)
        if removed:
            PRESENCE_SWEPT.inc(removed)
            logger.info(f"Presence: swept {removed} stale records from '{self.page}'")
        return removed

    # ============================================
    # Readers
    # ============================================

    def get(self, user_id: str) -> PresenceRecord | None:
        with self._lock:
            return self._records.get(user_id)

    def _is_fresh(self, record: PresenceRecord, now: datetime) -> bool:
        return now - record.last_seen_at <= self.stale_after

    def is_on_page(self, user_id: str) -> bool:
        """True only for a fresh record with on_target_page set; unknown means offline."""
        record = self.get(user_id)
        if record is None:
            return False
        return record.on_target_page and self._is_fresh(record, self._clock())

    def filter_not_on_page(self, user_ids: Iterable[str]) -> list[str]:
        """Users that need an out-of-band notification, in input order."""
        return [uid for uid in user_ids if not self.is_on_page(uid)]

    def users_on_page(self) -> list[str]:
        now = self._clock()
        with self._lock:
            records = list(self._records.values())
        return [r.user_id for r in records if r.on_target_page and self._is_fresh(r, now)]

    def snapshot(self, user_ids: Iterable[str]) -> dict[str, dict]:
        """Presence info per user, for status endpoints."""
        now = self._clock()
        result = {}
        for uid in user_ids:
            record = self.get(uid)
            if record is None:
                result[uid] = {"on_target_page": False, "last_seen_at": None}
            else:
                result[uid] = {
                    "on_target_page": record.on_target_page and self._is_fresh(record, now),
                    "last_seen_at": record.last_seen_at.isoformat(),
                }
        return result

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


# Singleton shared by the socket handlers and the reminder scheduler
presence_registry = PresenceRegistry(
    page=settings.PRESENCE_TARGET_PAGE,
    stale_after=timedelta(minutes=settings.PRESENCE_STALE_MINUTES),
)
