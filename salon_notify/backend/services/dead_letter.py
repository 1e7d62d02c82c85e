"""Dead letter store: exhausted or permanently rejected notifications."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from salon_notify.backend.models.dead_letter import RESOLUTION_ACTIONS, DeadLetterItem
from salon_notify.backend.models.notification import STATUS_PENDING, NotificationRequest
from salon_notify.backend.services.audit import record_audit
from salon_notify.backend.services.consent import add_suppression, check_suppression
from salon_notify.backend.services.errors import DeadLetterNotFound
from salon_notify.backend.services.failures import SendFailure
from salon_notify.backend.services.retry_config import resolve_retry_policy

logger = logging.getLogger(__name__)


@dataclass
class RetryOutcome:
    success: bool
    new_notification_id: int | None = None
    error: str | None = None


def move_to_dead_letter(
    db: Session,
    notification: NotificationRequest,
    failure: SendFailure,
    now: datetime | None = None,
) -> DeadLetterItem:
    """Snapshot the request into the store. Staged only; the queue commits."""
    now = now or datetime.utcnow()
    item = DeadLetterItem(
        original_notification_id=notification.id,
        type=notification.type,
        channel=notification.channel,
        recipient_id=notification.recipient_id,
        recipient_email=notification.recipient_email,
        recipient_phone=notification.recipient_phone,
        template_name=notification.template_name,
        template_data=dict(notification.template_data or {}),
        correlation_id=notification.correlation_id,
        budget_scope=notification.budget_scope or "global",
        budget_scope_id=notification.budget_scope_id or "",
        failure_reason=failure.message[:500] if failure.message else failure.type.value,
        failure_details={
            "code": failure.code,
            "provider": notification.provider,
            "provider_message_id": notification.provider_message_id,
        },
        failure_type=failure.type.value,
        is_permanent=failure.type.is_permanent,
        retry_eligible=failure.type.retry_eligible,
        total_attempts=notification.attempts or 0,
        last_error_message=notification.last_error,
        last_attempt_at=notification.last_attempt_at or now,
        created_at=now,
    )
    db.add(item)
    return item


def get_item(db: Session, dlq_id: int) -> DeadLetterItem:
    item = db.get(DeadLetterItem, dlq_id)
    if item is None:
        raise DeadLetterNotFound(f"Dead letter item {dlq_id} not found")
    return item


def retry(
    db: Session,
    dlq_id: int,
    updated_email: str | None = None,
    updated_phone: str | None = None,
    notes: str | None = None,
    actor: str | None = None,
    now: datetime | None = None,
) -> RetryOutcome:
    """Create a fresh request from the item and resolve it as manual_retry."""
    now = now or datetime.utcnow()
    item = db.get(DeadLetterItem, dlq_id)
    if item is None:
        return RetryOutcome(False, error="not_found")
    if item.resolved_at is not None:
        return RetryOutcome(False, error="already_resolved")
    if not item.retry_eligible:
        return RetryOutcome(False, error="not_retry_eligible")
    email = updated_email or item.recipient_email
    phone = updated_phone or item.recipient_phone
    target = check_suppression(
        db,
        email=email if item.type == "email" else None,
        phone=phone if item.type == "sms" else None,
    )
    if target.is_suppressed:
        return RetryOutcome(False, error="recipient_suppressed")

    policy = resolve_retry_policy(db, channel=item.channel)
    fresh = NotificationRequest(
        type=item.type,
        channel=item.channel,
        recipient_id=item.recipient_id,
        recipient_email=email,
        recipient_phone=phone,
        template_name=item.template_name,
        template_data=dict(item.template_data or {}),
        correlation_id=item.correlation_id,
        dedupe_key=None,
        budget_scope=item.budget_scope or "global",
        budget_scope_id=item.budget_scope_id or "",
        status=STATUS_PENDING,
        scheduled_for=now,
        attempts=0,
        max_attempts=policy.max_attempts,
        created_at=now,
    )
    db.add(fresh)
    db.flush()
    item.resolved_at = now
    item.resolved_by = actor
    item.resolution_action = "manual_retry"
    item.resolution_notes = notes
    item.retry_notification_id = fresh.id
    if updated_email:
        item.recipient_email = updated_email
    if updated_phone:
        item.recipient_phone = updated_phone
    record_audit(db, fresh.id, "queued", {"source": "dead_letter_retry", "dlq_id": item.id}, now=now)
    db.commit()
    logger.info("dead_letter_retried dlq_id=%s new_notification_id=%s actor=%s", item.id, fresh.id, actor)
    return RetryOutcome(True, new_notification_id=fresh.id)


def resolve(
    db: Session,
    dlq_id: int,
    action: str,
    notes: str | None = None,
    actor: str | None = None,
    now: datetime | None = None,
) -> DeadLetterItem:
    """Resolve without retrying. `suppressed` also blocks the address."""
    if action not in RESOLUTION_ACTIONS or action == "manual_retry":
        raise ValueError(f"invalid resolution action {action}")
    now = now or datetime.utcnow()
    item = get_item(db, dlq_id)
    if item.resolved_at is not None:
        return item
    item.resolved_at = now
    item.resolved_by = actor
    item.resolution_action = action
    item.resolution_notes = notes
    db.commit()
    if action == "suppressed":
        add_suppression(
            db,
            email=item.recipient_email if item.type == "email" else None,
            phone=item.recipient_phone if item.type == "sms" else None,
            suppression_type="admin_block",
            source="admin_action",
            reason=notes or f"dead letter {item.id}: {item.failure_reason}",
            suppressed_by=actor,
        )
    db.refresh(item)
    logger.info("dead_letter_resolved dlq_id=%s action=%s actor=%s", item.id, action, actor)
    return item


def list_items(
    db: Session,
    failure_type: str | None = None,
    channel: str | None = None,
    resolved: bool | None = None,
    retry_eligible: bool | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[DeadLetterItem], int]:
    conds = []
    if failure_type:
        conds.append(DeadLetterItem.failure_type == failure_type)
    if channel:
        conds.append(DeadLetterItem.channel == channel)
    if resolved is True:
        conds.append(DeadLetterItem.resolved_at.is_not(None))
    elif resolved is False:
        conds.append(DeadLetterItem.resolved_at.is_(None))
    if retry_eligible is not None:
        conds.append(DeadLetterItem.retry_eligible == retry_eligible)
    total = db.execute(select(func.count(DeadLetterItem.id)).where(*conds)).scalar() or 0
    rows = db.execute(
        select(DeadLetterItem)
        .where(*conds)
        .order_by(DeadLetterItem.created_at.desc(), DeadLetterItem.id.desc())
        .offset(offset)
        .limit(limit)
    ).scalars().all()
    return list(rows), int(total)


def get_stats(db: Session, now: datetime | None = None) -> dict[str, Any]:
    now = now or datetime.utcnow()
    total = db.execute(select(func.count(DeadLetterItem.id))).scalar() or 0
    by_type = dict(
        db.execute(
            select(DeadLetterItem.failure_type, func.count(DeadLetterItem.id)).group_by(DeadLetterItem.failure_type)
        ).all()
    )
    by_channel = dict(
        db.execute(
            select(DeadLetterItem.channel, func.count(DeadLetterItem.id)).group_by(DeadLetterItem.channel)
        ).all()
    )
    recent = db.execute(
        select(func.count(DeadLetterItem.id)).where(DeadLetterItem.created_at >= now - timedelta(hours=24))
    ).scalar() or 0
    retry_eligible = db.execute(
        select(func.count(DeadLetterItem.id)).where(
            DeadLetterItem.retry_eligible.is_(True), DeadLetterItem.resolved_at.is_(None)
        )
    ).scalar() or 0
    resolved_rows = db.execute(
        select(DeadLetterItem.created_at, DeadLetterItem.resolved_at).where(DeadLetterItem.resolved_at.is_not(None))
    ).all()
    resolved = len(resolved_rows)
    avg_hours = None
    if resolved_rows:
        secs = sum((r.resolved_at - r.created_at).total_seconds() for r in resolved_rows)
        avg_hours = round(secs / resolved / 3600, 2)
    return {
        "total": int(total),
        "by_failure_type": {k: int(v) for k, v in by_type.items()},
        "by_channel": {k: int(v) for k, v in by_channel.items()},
        "recent_failures": int(recent),
        "retry_eligible": int(retry_eligible),
        "resolved": resolved,
        "unresolved": int(total) - resolved,
        "resolution_rate": round(resolved / total * 100, 1) if total else 0.0,
        "avg_resolution_time_hours": avg_hours,
    }


def cleanup(db: Session, older_than_days: int = 30, now: datetime | None = None) -> int:
    """Delete resolved items resolved more than `older_than_days` ago."""
    now = now or datetime.utcnow()
    cutoff = now - timedelta(days=max(1, int(older_than_days)))
    res = db.execute(
        delete(DeadLetterItem)
        .where(DeadLetterItem.resolved_at.is_not(None), DeadLetterItem.resolved_at < cutoff)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    deleted = int(res.rowcount or 0)
    if deleted:
        logger.info("dead_letter_cleanup deleted=%s older_than_days=%s", deleted, older_than_days)
    return deleted


def resolve_for_address(
    db: Session,
    email: str | None,
    phone: str | None,
    action: str,
    notes: str,
    actor: str = "webhook",
    now: datetime | None = None,
) -> int:
    """Resolve open items for an address that is now suppressed; used by webhooks."""
    now = now or datetime.utcnow()
    conds = [DeadLetterItem.resolved_at.is_(None)]
    if email:
        conds.append(func.lower(DeadLetterItem.recipient_email) == email.lower())
    elif phone:
        conds.append(DeadLetterItem.recipient_phone == phone)
    else:
        return 0
    items = db.execute(select(DeadLetterItem).where(*conds)).scalars().all()
    for item in items:
        item.resolved_at = now
        item.resolved_by = actor
        item.resolution_action = action
        item.resolution_notes = notes
    return len(items)
