"""
Lead Reminders — Reminders API.
Timeline configuration, lead reminder writes, the in-app reminder inbox,
test notification and presence/scheduler status for the CRM front-end.
"""

import asyncio
import logging
from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel, Field

from src.reminders.dispatcher import DispatchError
from src.reminders.models import LeadReminder, ReminderInterval, ReminderTimelineConfig
from src.reminders.services import ReminderServices
from src.reminders.store import ReminderStoreError
from src.reminders.timeline import TimelineValidationError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/reminders", tags=["reminders"])


def _services(request: Request) -> ReminderServices:
    return request.app.state.reminders


# ============================================
# Schemas
# ============================================

class TimelineUpdate(BaseModel):
    enabled: bool = True
    intervals: list[ReminderInterval] = Field(default_factory=list)
    notification_email: str = ""


class ReminderUpsert(BaseModel):
    tenant_id: str
    due_at: datetime
    owner_user_id: str
    owner_email: str | None = None
    lead_name: str = ""
    lead_email: str | None = None
    lead_phone: str | None = None
    message: str = ""


class NotificationTestRequest(BaseModel):
    tenant_id: str
    user_id: str
    email: str | None = None


class InboxReadRequest(BaseModel):
    notification_id: UUID | None = None  # None = mark all


# ============================================
# Timeline configuration
# ============================================

@router.get("/timeline/{tenant_id}", response_model=ReminderTimelineConfig)
async def get_timeline(tenant_id: str, request: Request):
    try:
        return await _services(request).config_store.get(tenant_id)
    except ReminderStoreError as e:
        logger.error(f"Timeline read failed for tenant {tenant_id}: {e}")
        raise HTTPException(status_code=503, detail="Reminder configuration unavailable")


@router.put("/timeline/{tenant_id}", response_model=ReminderTimelineConfig)
async def put_timeline(tenant_id: str, body: TimelineUpdate, request: Request):
    config = ReminderTimelineConfig(
        tenant_id=tenant_id,
        enabled=body.enabled,
        intervals=body.intervals,
        notification_email=body.notification_email,
    )
    try:
        return await _services(request).config_store.put(tenant_id, config)
    except TimelineValidationError as e:
        raise HTTPException(status_code=422, detail={"field": e.field, "message": str(e)})
    except ReminderStoreError as e:
        logger.error(f"Timeline write failed for tenant {tenant_id}: {e}")
        raise HTTPException(status_code=503, detail="Reminder configuration unavailable")


@router.post("/timeline/{tenant_id}/reset", response_model=ReminderTimelineConfig)
async def reset_timeline(tenant_id: str, request: Request):
    try:
        return await _services(request).config_store.reset_to_default(tenant_id)
    except ReminderStoreError as e:
        logger.error(f"Timeline reset failed for tenant {tenant_id}: {e}")
        raise HTTPException(status_code=503, detail="Reminder configuration unavailable")


# ============================================
# Lead reminders
# ============================================

@router.put("/leads/{lead_id}", response_model=LeadReminder)
async def set_lead_reminder(lead_id: str, body: ReminderUpsert, request: Request):
    """Create or reschedule a lead's reminder. A new due time re-arms every interval."""
    reminder = LeadReminder(lead_id=lead_id, **body.model_dump())
    try:
        return await _services(request).store.upsert(reminder)
    except ReminderStoreError as e:
        logger.error(f"Reminder write failed for lead {lead_id}: {e}")
        raise HTTPException(status_code=503, detail="Reminder store unavailable")


@router.get("/leads/{lead_id}", response_model=LeadReminder)
async def get_lead_reminder(lead_id: str, request: Request):
    reminder = await _services(request).store.get(lead_id)
    if reminder is None:
        raise HTTPException(status_code=404, detail="Reminder not found")
    return reminder


@router.delete("/leads/{lead_id}")
async def cancel_lead_reminder(lead_id: str, request: Request):
    if not await _services(request).store.cancel(lead_id):
        raise HTTPException(status_code=404, detail="Reminder not found")
    return {"status": "cancelled", "lead_id": lead_id}


# ============================================
# In-app reminder inbox
# ============================================

@router.get("/inbox/{user_id}")
async def get_inbox(
    user_id: str,
    request: Request,
    pending_only: bool = Query(default=False),
    limit: int = Query(default=50, ge=1, le=200),
):
    """In-app reminders for a user, newest first. Used by the notification center."""
    in_app = _services(request).in_app
    pending = await in_app.get_pending(user_id)
    if pending_only:
        notifications = sorted(pending, key=lambda n: n.created_at, reverse=True)[:limit]
    else:
        notifications = await in_app.get_all(user_id, limit=limit)
    return {
        "user_id": user_id,
        "unread": len(pending),
        "notifications": [n.model_dump(mode="json") for n in notifications],
    }


@router.post("/inbox/{user_id}/read")
async def mark_inbox_read(user_id: str, body: InboxReadRequest, request: Request):
    """Mark one in-app reminder (notification_id) or all of them (no id) as read."""
    in_app = _services(request).in_app
    if body.notification_id is None:
        marked = await in_app.mark_all_delivered(user_id)
    else:
        if not await in_app.mark_delivered(body.notification_id, user_id):
            raise HTTPException(status_code=404, detail="Notification not found")
        marked = 1
    return {"user_id": user_id, "marked": marked}


@router.delete("/inbox/{user_id}")
async def clear_inbox(user_id: str, request: Request):
    await _services(request).in_app.clear(user_id)
    return {"user_id": user_id, "cleared": True}


# ============================================
# Test notification / status
# ============================================

@router.post("/test-notification")
async def send_test_notification(body: NotificationTestRequest, request: Request):
    """Send a sample reminder through the dispatcher, outside the scheduler."""
    scheduler = _services(request).scheduler
    try:
        delivered = await scheduler.send_test_notification(body.tenant_id, body.user_id, body.email)
    except DispatchError as e:
        raise HTTPException(status_code=502, detail=str(e))
    except asyncio.TimeoutError:
        raise HTTPException(status_code=504, detail="Notification dispatch timed out")
    return {"delivered": delivered}


@router.get("/presence")
async def get_presence(request: Request, user_ids: str = Query(default="")):
    presence = _services(request).presence
    ids = [uid.strip() for uid in user_ids.split(",") if uid.strip()]
    return {
        "page": presence.page,
        "on_page": presence.users_on_page(),
        "users": presence.snapshot(ids),
    }


@router.get("/scheduler")
async def get_scheduler_status(request: Request):
    scheduler = _services(request).scheduler
    report = scheduler.last_report
    return {
        "running": scheduler.is_running,
        "tick_seconds": scheduler.tick_seconds,
        "last_tick": report.to_dict() if report else None,
    }
