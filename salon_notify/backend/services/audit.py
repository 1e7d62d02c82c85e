"""Notification audit trail."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from salon_notify.backend.models.notification import NotificationAudit

logger = logging.getLogger(__name__)


def record_audit(
    db: Session,
    notification_id: int | None,
    event_type: str,
    details: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> None:
    """Stage an audit row in the caller's transaction; the caller commits."""
    db.add(
        NotificationAudit(
            notification_id=notification_id,
            event_type=event_type,
            details=details or {},
            created_at=now or datetime.utcnow(),
        )
    )
    logger.info("notification_%s id=%s %s", event_type, notification_id, details or "")


def list_audit(db: Session, notification_id: int) -> list[NotificationAudit]:
    return list(
        db.execute(
            select(NotificationAudit)
            .where(NotificationAudit.notification_id == notification_id)
            .order_by(NotificationAudit.created_at.asc(), NotificationAudit.id.asc())
        ).scalars().all()
    )
