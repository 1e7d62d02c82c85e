"""Admin endpoints for stored webhook events."""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from salon_notify.backend.auth import get_current_admin
from salon_notify.backend.deps import get_db
from salon_notify.backend.models.webhook_event import WebhookEvent
from salon_notify.backend.services import webhooks
from salon_notify.backend.utils.api_errors import ok

router = APIRouter()


def serialize_event(e: WebhookEvent) -> dict:
    return {
        "id": e.id,
        "provider": e.provider,
        "provider_event_id": e.provider_event_id,
        "event_type": e.event_type,
        "notification_id": e.notification_id,
        "provider_message_id": e.provider_message_id,
        "recipient": e.recipient,
        "status": e.status,
        "error_code": e.error_code,
        "error_message": e.error_message,
        "bounce_type": e.bounce_type,
        "webhook_verified": e.webhook_verified,
        "processed": e.processed,
        "processing_error": e.processing_error,
        "received_at": e.received_at.isoformat() if e.received_at else None,
        "processed_at": e.processed_at.isoformat() if e.processed_at else None,
    }


@router.get("")
def list_webhook_events(
    provider: str | None = Query(None),
    processed: bool | None = Query(None),
    event_type: str | None = Query(None),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    _: dict = Depends(get_current_admin),
):
    rows, total = webhooks.list_events(
        db, provider=provider, processed=processed, event_type=event_type, limit=limit, offset=offset
    )
    return ok({"items": [serialize_event(e) for e in rows], "total": total, "limit": limit, "offset": offset})


@router.post("/{event_id}/reprocess")
def reprocess_webhook_event(event_id: int, db: Session = Depends(get_db), _: dict = Depends(get_current_admin)):
    return ok(webhooks.reprocess(db, event_id).as_dict())
