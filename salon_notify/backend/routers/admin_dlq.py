"""Admin endpoints for the dead-letter store."""
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from salon_notify.backend.auth import admin_actor, get_current_admin
from salon_notify.backend.deps import get_db
from salon_notify.backend.models.dead_letter import DeadLetterItem
from salon_notify.backend.services import dead_letter
from salon_notify.backend.utils.api_errors import ok

router = APIRouter()

_RETRY_ERRORS = {
    "not_found": (404, "Dead letter item not found"),
    "already_resolved": (409, "Dead letter item already resolved"),
    "not_retry_eligible": (409, "Failure type is not retry eligible"),
    "recipient_suppressed": (409, "Recipient is on the suppression list"),
}


def _iso(v: datetime | None) -> str | None:
    return v.isoformat() if v else None


def serialize_item(item: DeadLetterItem) -> dict:
    return {
        "id": item.id,
        "original_notification_id": item.original_notification_id,
        "type": item.type,
        "channel": item.channel,
        "recipient_id": item.recipient_id,
        "recipient_email": item.recipient_email,
        "recipient_phone": item.recipient_phone,
        "correlation_id": item.correlation_id,
        "failure_type": item.failure_type,
        "failure_reason": item.failure_reason,
        "is_permanent": item.is_permanent,
        "retry_eligible": item.retry_eligible,
        "total_attempts": item.total_attempts,
        "last_attempt_at": _iso(item.last_attempt_at),
        "resolved_at": _iso(item.resolved_at),
        "resolved_by": item.resolved_by,
        "resolution_action": item.resolution_action,
        "resolution_notes": item.resolution_notes,
        "retry_notification_id": item.retry_notification_id,
        "created_at": _iso(item.created_at),
    }


class RetryBody(BaseModel):
    updated_email: str | None = None
    updated_phone: str | None = None
    notes: str | None = None


class ResolveBody(BaseModel):
    action: str
    notes: str | None = None


@router.get("")
def list_dead_letters(
    failure_type: str | None = Query(None),
    channel: str | None = Query(None),
    resolved: bool | None = Query(None),
    retry_eligible: bool | None = Query(None),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    _: dict = Depends(get_current_admin),
):
    rows, total = dead_letter.list_items(
        db,
        failure_type=failure_type,
        channel=channel,
        resolved=resolved,
        retry_eligible=retry_eligible,
        limit=limit,
        offset=offset,
    )
    return ok({"items": [serialize_item(i) for i in rows], "total": total, "limit": limit, "offset": offset})


@router.get("/stats")
def dead_letter_stats(db: Session = Depends(get_db), _: dict = Depends(get_current_admin)):
    return ok(dead_letter.get_stats(db))


@router.get("/{dlq_id}")
def get_dead_letter(dlq_id: int, db: Session = Depends(get_db), _: dict = Depends(get_current_admin)):
    item = dead_letter.get_item(db, dlq_id)
    return ok({**serialize_item(item), "template_data": item.template_data, "failure_details": item.failure_details})


@router.post("/{dlq_id}/retry")
def retry_dead_letter(
    dlq_id: int,
    body: RetryBody | None = None,
    db: Session = Depends(get_db),
    payload: dict = Depends(get_current_admin),
):
    body = body or RetryBody()
    outcome = dead_letter.retry(
        db,
        dlq_id,
        updated_email=body.updated_email,
        updated_phone=body.updated_phone,
        notes=body.notes,
        actor=admin_actor(payload),
    )
    if not outcome.success:
        status, message = _RETRY_ERRORS.get(outcome.error or "", (400, outcome.error or "retry failed"))
        raise HTTPException(status_code=status, detail=message)
    return ok({"dlq_id": dlq_id, "new_notification_id": outcome.new_notification_id})


@router.post("/{dlq_id}/resolve")
def resolve_dead_letter(
    dlq_id: int,
    body: ResolveBody,
    db: Session = Depends(get_db),
    payload: dict = Depends(get_current_admin),
):
    try:
        item = dead_letter.resolve(db, dlq_id, body.action, notes=body.notes, actor=admin_actor(payload))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return ok(serialize_item(item))


@router.post("/cleanup")
def cleanup_dead_letters(
    older_than_days: int = Query(30, ge=1, le=3650),
    db: Session = Depends(get_db),
    _: dict = Depends(get_current_admin),
):
    return ok({"deleted": dead_letter.cleanup(db, older_than_days=older_than_days)})
