"""Admin endpoints for the notification queue."""
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from salon_notify.backend.auth import admin_actor, get_current_admin
from salon_notify.backend.config import get_settings
from salon_notify.backend.deps import get_db
from salon_notify.backend.models.notification import NotificationRequest
from salon_notify.backend.services import queue
from salon_notify.backend.services.audit import list_audit
from salon_notify.backend.services.notification_settings import resolve_notification_settings
from salon_notify.backend.utils.api_errors import ok

logger = logging.getLogger(__name__)
router = APIRouter()


def _iso(v: datetime | None) -> str | None:
    return v.isoformat() if v else None


def serialize_request(n: NotificationRequest) -> dict:
    return {
        "id": n.id,
        "type": n.type,
        "channel": n.channel,
        "status": n.status,
        "recipient_id": n.recipient_id,
        "recipient_email": n.recipient_email,
        "recipient_phone": n.recipient_phone,
        "correlation_id": n.correlation_id,
        "scheduled_for": _iso(n.scheduled_for),
        "deadline_at": _iso(n.deadline_at),
        "attempts": n.attempts,
        "max_attempts": n.max_attempts,
        "last_error": n.last_error,
        "last_failure_type": n.last_failure_type,
        "provider": n.provider,
        "provider_message_id": n.provider_message_id,
        "cancel_reason": n.cancel_reason,
        "created_at": _iso(n.created_at),
        "sent_at": _iso(n.sent_at),
        "failed_at": _iso(n.failed_at),
        "cancelled_at": _iso(n.cancelled_at),
    }


class EnqueueBody(BaseModel):
    type: str
    channel: str
    recipient_id: str | None = None
    recipient_email: str | None = None
    recipient_phone: str | None = None
    template_data: dict = Field(default_factory=dict)
    correlation_id: str | None = None
    scheduled_for: datetime | None = None
    deadline_at: datetime | None = None
    consent_type: str | None = None
    location_id: str | None = None
    dedupe: bool = True


class AppointmentBody(BaseModel):
    id: str
    customer_id: str | None = None
    email: str | None = None
    phone: str | None = None
    start: datetime
    location_id: str | None = None
    template_data: dict = Field(default_factory=dict)
    types: list[str] = Field(default_factory=lambda: ["email"])
    send_confirmation: bool = True


class RescheduleBody(AppointmentBody):
    old_start: datetime


class CancelBody(BaseModel):
    reason: str | None = None


class DailyScheduleBody(BaseModel):
    staff_id: str
    email: str
    name: str
    location_id: str | None = None
    appointments: list[dict] = Field(default_factory=list)


def _naive_utc(v: datetime | None) -> datetime | None:
    if v is None or v.tzinfo is None:
        return v
    return v.astimezone(timezone.utc).replace(tzinfo=None)


def _appointment(body: AppointmentBody) -> dict:
    return {
        "id": body.id,
        "customer_id": body.customer_id,
        "email": body.email,
        "phone": body.phone,
        "start": _naive_utc(body.start),
        "location_id": body.location_id,
        "template_data": body.template_data,
    }


@router.get("")
def list_notifications(
    status: str | None = Query(None),
    channel: str | None = Query(None),
    type: str | None = Query(None),
    correlation_id: str | None = Query(None),
    recipient_id: str | None = Query(None),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    _: dict = Depends(get_current_admin),
):
    rows, total = queue.list_requests(
        db,
        status=status,
        channel=channel,
        notification_type=type,
        correlation_id=correlation_id,
        recipient_id=recipient_id,
        limit=limit,
        offset=offset,
    )
    return ok({"items": [serialize_request(n) for n in rows], "total": total, "limit": limit, "offset": offset})


@router.get("/stats")
def notification_stats(
    days: int = Query(7, ge=1, le=365),
    db: Session = Depends(get_db),
    _: dict = Depends(get_current_admin),
):
    return ok(queue.get_statistics(db, days=days))


@router.get("/{notification_id}")
def get_notification(
    notification_id: int,
    db: Session = Depends(get_db),
    _: dict = Depends(get_current_admin),
):
    n = queue.get_notification(db, notification_id)
    audit = [
        {"event_type": a.event_type, "details": a.details, "created_at": _iso(a.created_at)}
        for a in list_audit(db, notification_id)
    ]
    return ok({**serialize_request(n), "template_data": n.template_data, "audit": audit})


@router.post("")
def enqueue_notification(
    body: EnqueueBody,
    db: Session = Depends(get_db),
    _: dict = Depends(get_current_admin),
):
    settings = resolve_notification_settings(db, location_id=body.location_id)
    req = queue.NotificationInput(
        type=body.type,
        channel=body.channel,
        recipient_id=body.recipient_id,
        recipient_email=body.recipient_email,
        recipient_phone=body.recipient_phone,
        template_data=body.template_data,
        correlation_id=body.correlation_id,
        scheduled_for=_naive_utc(body.scheduled_for),
        deadline_at=_naive_utc(body.deadline_at),
        consent_type=body.consent_type,
        budget_scope="location" if body.location_id else "global",
        budget_scope_id=body.location_id,
        dedupe=body.dedupe,
    )
    return ok(queue.enqueue(db, req, settings).as_dict())


@router.post("/{notification_id}/cancel")
def cancel_notification(
    notification_id: int,
    body: CancelBody | None = None,
    db: Session = Depends(get_db),
    _: dict = Depends(get_current_admin),
):
    reason = (body.reason if body else None) or "cancelled_by_admin"
    return ok({"id": notification_id, "cancelled": queue.cancel(db, notification_id, reason=reason)})


@router.post("/appointments")
def schedule_appointment(
    body: AppointmentBody,
    db: Session = Depends(get_db),
    _: dict = Depends(get_current_admin),
):
    settings = resolve_notification_settings(db, location_id=body.location_id)
    results = queue.schedule_appointment_notifications(
        db, _appointment(body), settings, types=tuple(body.types), send_confirmation=body.send_confirmation
    )
    return ok({"results": [r.as_dict() for r in results]})


@router.post("/appointments/{appointment_id}/reschedule")
def reschedule_appointment(
    appointment_id: str,
    body: RescheduleBody,
    db: Session = Depends(get_db),
    _: dict = Depends(get_current_admin),
):
    if body.id != appointment_id:
        raise HTTPException(status_code=400, detail="appointment id mismatch")
    settings = resolve_notification_settings(db, location_id=body.location_id)
    out = queue.reschedule_appointment(
        db, _appointment(body), _naive_utc(body.old_start), settings, types=tuple(body.types)
    )
    return ok(out)


@router.post("/appointments/{appointment_id}/cancel")
def cancel_appointment(
    appointment_id: str,
    body: CancelBody | None = None,
    db: Session = Depends(get_db),
    _: dict = Depends(get_current_admin),
):
    reason = (body.reason if body else None) or "appointment_cancelled"
    count = queue.cancel_for_correlation(db, appointment_id, reason=reason)
    return ok({"correlation_id": appointment_id, "cancelled": count})


@router.post("/daily-schedule")
def schedule_daily_schedule(
    body: DailyScheduleBody,
    db: Session = Depends(get_db),
    _: dict = Depends(get_current_admin),
):
    settings = resolve_notification_settings(db, location_id=body.location_id)
    staff = {
        "id": body.staff_id,
        "email": body.email,
        "name": body.name,
        "location_id": body.location_id,
        "appointments": body.appointments,
    }
    return ok(queue.schedule_staff_daily_schedule(db, staff, settings).as_dict())


@router.post("/process-now")
def process_now(
    limit: int | None = Query(None, ge=1, le=500),
    payload: dict = Depends(get_current_admin),
):
    s = get_settings()
    try:
        from redis import Redis
        from rq import Queue

        r = Redis(host=s.redis_host, port=s.redis_port)
        q = Queue(s.rq_notifications_queue_name or "notifications", connection=r)
        job = q.enqueue("salon_notify.worker.jobs.process_notifications_batch", limit)
    except Exception as e:
        logger.exception("process_now_enqueue_failed")
        raise HTTPException(status_code=503, detail=f"queue unavailable: {e}")
    logger.info("process_now_enqueued job_id=%s actor=%s", job.id, admin_actor(payload))
    return ok({"job_id": job.id})
