"""Notification queue: enqueue policy pipeline and the delivery state machine.

pending -> sending -> sent | failed;  pending | sending -> cancelled.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any
from zoneinfo import ZoneInfo

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from salon_notify.backend.models.notification import (
    CHANNELS,
    NOTIFICATION_TYPES,
    OPEN_STATUSES,
    STATUS_CANCELLED,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_SENDING,
    STATUS_SENT,
    TERMINAL_STATUSES,
    NotificationAudit,
    NotificationRequest,
)
from salon_notify.backend.services import budget
from salon_notify.backend.services.audit import record_audit
from salon_notify.backend.services.consent import (
    ConsentError,
    add_suppression,
    consent_type_for_channel,
    evaluate,
)
from salon_notify.backend.services.dead_letter import move_to_dead_letter
from salon_notify.backend.services.errors import NotificationError, NotificationNotFound
from salon_notify.backend.services.failures import FailureType, SendFailure
from salon_notify.backend.services.notification_settings import (
    NotificationSettings,
    resolve_notification_settings,
)
from salon_notify.backend.services.retry_config import attempt_limit, compute_backoff, resolve_retry_policy
from salon_notify.backend.services.scheduling import (
    check_short_window,
    next_local_time,
    next_month_start,
    resolve_send_time,
    to_local,
)

logger = logging.getLogger(__name__)


@dataclass
class NotificationInput:
    type: str
    channel: str
    recipient_id: str | None = None
    recipient_email: str | None = None
    recipient_phone: str | None = None
    template_data: dict[str, Any] = field(default_factory=dict)
    template_name: str | None = None
    correlation_id: str | None = None
    scheduled_for: datetime | None = None
    deadline_at: datetime | None = None
    consent_type: str | None = None
    budget_scope: str = "global"
    budget_scope_id: str | None = None
    dedupe: bool = True
    dedupe_key: str | None = None


@dataclass
class EnqueueResult:
    notification_id: int | None = None
    skipped: bool = False
    reason: str | None = None
    scheduled_for: datetime | None = None
    delayed: bool = False
    budget_warning: bool = False
    notes: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["scheduled_for"] = self.scheduled_for.isoformat() if self.scheduled_for else None
        return out


def _skip(reason: str, **kw) -> EnqueueResult:
    logger.info("notification_skipped reason=%s", reason)
    return EnqueueResult(skipped=True, reason=reason, **kw)


def build_dedupe_key(
    recipient_id: str | None,
    notification_type: str,
    channel: str,
    correlation_id: str | None,
    at: datetime,
    window_hours: int = 24,
) -> str:
    """Requests of the same kind for the same entity inside one window share a key.

    The bucket is the epoch-aligned floor of `at` (naive UTC) to the window.
    """
    window = max(1, int(window_hours)) * 3600
    epoch = int((at - datetime(1970, 1, 1)).total_seconds())
    bucket = epoch // window
    return f"{recipient_id or 'anon'}_{channel}_{notification_type}_{correlation_id or 'general'}_{window_hours}h{bucket}"


def _settings_for(db: Session, n: NotificationRequest) -> NotificationSettings:
    location_id = n.budget_scope_id if n.budget_scope == "location" else None
    user_id = n.budget_scope_id if n.budget_scope == "user" else None
    return resolve_notification_settings(db, location_id=location_id, user_id=user_id)


def _has_active_duplicate(db: Session, dedupe_key: str) -> bool:
    found = db.execute(
        select(NotificationRequest.id)
        .where(NotificationRequest.dedupe_key == dedupe_key, NotificationRequest.status != STATUS_CANCELLED)
        .limit(1)
    ).scalar_one_or_none()
    return found is not None


def enqueue(
    db: Session,
    req: NotificationInput,
    settings: NotificationSettings,
    now: datetime | None = None,
) -> EnqueueResult:
    """Run the policy pipeline and insert a pending row.

    Order: channel enabled, consent/suppression, dedupe, budget, short-window
    deadline, quiet hours. Business rejections come back as skipped results.
    """
    now = now or datetime.utcnow()
    if req.type not in NOTIFICATION_TYPES:
        raise NotificationError(f"unsupported notification type {req.type}", code="invalid_type")
    if req.channel not in CHANNELS:
        raise NotificationError(f"unsupported channel {req.channel}", code="invalid_channel")
    if not settings.type_enabled(req.type):
        return _skip(f"{req.type} notifications disabled")

    consent_type = req.consent_type or consent_type_for_channel(req.channel)
    decision = evaluate(db, req.recipient_id, req.recipient_email, req.recipient_phone, req.type, consent_type)
    if not decision.can_send:
        return _skip(decision.reason or "blocked")

    desired = req.scheduled_for or now
    if desired < now:
        desired = now

    dedupe_key = req.dedupe_key
    if dedupe_key is None and req.dedupe:
        dedupe_key = build_dedupe_key(
            req.recipient_id, req.type, req.channel, req.correlation_id, desired, settings.dedupe_window_hours
        )
    if dedupe_key and _has_active_duplicate(db, dedupe_key):
        return _skip(f"duplicate notification ({dedupe_key})")

    notes: list[str] = []
    send_at = desired
    delayed = False
    check = budget.check_and_reserve(db, req.type, req.budget_scope, req.budget_scope_id, settings, now)
    if not check.can_send:
        if settings.budget_cap_behavior == "delay":
            send_at = max(send_at, next_month_start(now, settings.timezone))
            delayed = True
            notes.append(f"budget_delay: {check.reason}")
        else:
            return _skip(f"budget exceeded: {check.reason}", budget_warning=True)

    sw = check_short_window(
        send_at, req.deadline_at, settings.short_window_threshold_hours, settings.short_window_policy, now
    )
    if sw.skip:
        return _skip(sw.reason or "short_window", budget_warning=check.warning)
    if sw.in_short_window:
        notes.append(sw.reason or "short_window")

    if not sw.bypass_quiet_hours:
        st = resolve_send_time(
            send_at,
            settings.timezone,
            settings.quiet_hours_start,
            settings.quiet_hours_end,
            settings.quiet_hours_enabled,
        )
        if st.delayed:
            if req.deadline_at is not None and st.send_at >= req.deadline_at:
                if settings.short_window_policy == "skip":
                    return _skip("quiet hours would delay past deadline", budget_warning=check.warning)
                notes.append("quiet_hours_ignored_for_deadline")
            else:
                send_at = st.send_at
                delayed = True
                notes.append(st.reason or "quiet_hours")

    policy = resolve_retry_policy(db, channel=req.channel)
    row = NotificationRequest(
        type=req.type,
        channel=req.channel,
        recipient_id=str(req.recipient_id) if req.recipient_id is not None else None,
        recipient_email=req.recipient_email,
        recipient_phone=req.recipient_phone,
        template_name=req.template_name or req.channel,
        template_data=dict(req.template_data or {}),
        correlation_id=str(req.correlation_id) if req.correlation_id is not None else None,
        dedupe_key=dedupe_key,
        budget_scope=req.budget_scope or "global",
        budget_scope_id="" if (req.budget_scope or "global") == "global" else str(req.budget_scope_id or ""),
        status=STATUS_PENDING,
        scheduled_for=send_at,
        deadline_at=req.deadline_at,
        attempts=0,
        max_attempts=policy.max_attempts,
        created_at=now,
        updated_at=now,
    )
    db.add(row)
    try:
        db.flush()
        record_audit(db, row.id, "queued", {"scheduled_for": send_at.isoformat(), "notes": notes}, now=now)
        db.commit()
    except IntegrityError:
        # lost a race with an identical enqueue on the dedupe index
        db.rollback()
        return _skip(f"duplicate notification ({dedupe_key})")
    return EnqueueResult(
        notification_id=row.id,
        scheduled_for=send_at,
        delayed=delayed,
        budget_warning=check.warning,
        notes=notes,
    )


def claim_due(db: Session, limit: int = 50, now: datetime | None = None) -> list[NotificationRequest]:
    """Claim up to `limit` due rows. Each claim is a conditional UPDATE; losers get rowcount 0."""
    now = now or datetime.utcnow()
    candidate_ids = db.execute(
        select(NotificationRequest.id)
        .where(
            NotificationRequest.status == STATUS_PENDING,
            NotificationRequest.scheduled_for <= now,
            NotificationRequest.attempts < NotificationRequest.max_attempts,
        )
        .order_by(NotificationRequest.scheduled_for.asc(), NotificationRequest.id.asc())
        .limit(limit)
    ).scalars().all()
    claimed: list[int] = []
    for nid in candidate_ids:
        res = db.execute(
            update(NotificationRequest)
            .where(NotificationRequest.id == nid, NotificationRequest.status == STATUS_PENDING)
            .values(
                status=STATUS_SENDING,
                first_attempt_at=func.coalesce(NotificationRequest.first_attempt_at, now),
                last_attempt_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if res.rowcount == 1:
            claimed.append(nid)
    db.commit()
    if not claimed:
        return []
    return list(
        db.execute(
            select(NotificationRequest)
            .where(NotificationRequest.id.in_(claimed))
            .order_by(NotificationRequest.scheduled_for.asc(), NotificationRequest.id.asc())
            .execution_options(populate_existing=True)
        ).scalars().all()
    )


def get_notification(db: Session, notification_id: int) -> NotificationRequest:
    n = db.get(NotificationRequest, notification_id)
    if n is None:
        raise NotificationNotFound(f"Notification {notification_id} not found")
    return n


def report_success(
    db: Session,
    notification_id: int,
    provider_message_id: str | None = None,
    provider: str | None = None,
    settings: NotificationSettings | None = None,
    now: datetime | None = None,
) -> NotificationRequest:
    """sending -> sent and count the send in the budget ledger.

    A request cancelled while in flight keeps its cancelled status but the
    send still happened, so it is recorded and counted.
    """
    now = now or datetime.utcnow()
    n = get_notification(db, notification_id)
    if n.status == STATUS_SENT:
        return n
    n.provider_message_id = provider_message_id or n.provider_message_id
    n.provider = provider or n.provider
    n.sent_at = now
    n.updated_at = now
    if n.status == STATUS_SENDING:
        n.status = STATUS_SENT
        record_audit(db, n.id, "sent", {"provider": provider, "provider_message_id": provider_message_id}, now=now)
    else:
        logger.warning("notification_sent_in_state id=%s status=%s", n.id, n.status)
        record_audit(db, n.id, "sent", {"provider": provider, "status_kept": n.status}, now=now)
    db.commit()
    budget.commit(db, n.type, n.budget_scope, n.budget_scope_id, settings or _settings_for(db, n), now)
    db.refresh(n)
    return n


def _suppress_for_failure(db: Session, n: NotificationRequest, failure: SendFailure) -> None:
    if failure.type == FailureType.HARD_BOUNCE:
        sup_type, source = "bounce", "bounce_handler"
    elif failure.type == FailureType.INVALID_RECIPIENT:
        sup_type, source = "invalid", "provider_feedback"
    else:
        return
    try:
        add_suppression(
            db,
            email=n.recipient_email if n.type == "email" else None,
            phone=n.recipient_phone if n.type == "sms" else None,
            suppression_type=sup_type,
            source=source,
            reason=f"{failure.type.value}: {failure.message}"[:500],
            suppressed_by="delivery_worker",
        )
    except ConsentError:
        logger.warning("suppression_skipped_no_address id=%s", n.id)


def report_failure(
    db: Session,
    notification_id: int,
    failure: SendFailure,
    now: datetime | None = None,
) -> NotificationRequest:
    """Count the attempt, then either schedule a retry with backoff or dead-letter the request."""
    now = now or datetime.utcnow()
    n = get_notification(db, notification_id)
    if n.status in (STATUS_SENT, STATUS_FAILED):
        logger.warning("notification_failure_ignored id=%s status=%s", n.id, n.status)
        return n
    attempts_before = int(n.attempts or 0)
    n.attempts = min(attempts_before + 1, int(n.max_attempts or 1))
    n.last_error = (failure.message or failure.type.value)[:1000]
    n.last_failure_type = failure.type.value
    n.updated_at = now

    if n.status == STATUS_CANCELLED:
        # cooperative cancel: the in-flight attempt is recorded, nothing is rescheduled
        record_audit(db, n.id, "failed", {"failure": failure.as_dict(), "cancelled": True}, now=now)
        db.commit()
        return n

    policy = resolve_retry_policy(db, channel=n.channel, provider=n.provider)
    limit = min(int(n.max_attempts or 1), attempt_limit(policy, failure.type))
    next_at = now + compute_backoff(policy, attempts_before)
    # age counts from the first send attempt, not from enqueue
    first_attempt = n.first_attempt_at or n.last_attempt_at or now
    too_old = next_at > first_attempt + timedelta(hours=policy.max_age_hours)

    if failure.type.is_permanent or n.attempts >= limit or too_old:
        n.status = STATUS_FAILED
        n.failed_at = now
        record_audit(db, n.id, "failed", {"failure": failure.as_dict(), "attempts": n.attempts}, now=now)
        item = move_to_dead_letter(db, n, failure, now)
        db.flush()
        record_audit(db, n.id, "moved_to_dlq", {"dlq_id": item.id, "permanent": failure.type.is_permanent}, now=now)
        db.commit()
        logger.warning(
            "notification_dead_lettered id=%s dlq_id=%s failure_type=%s attempts=%s",
            n.id, item.id, failure.type.value, n.attempts,
        )
        _suppress_for_failure(db, n, failure)
    else:
        n.status = STATUS_PENDING
        n.scheduled_for = next_at
        record_audit(
            db, n.id, "retry",
            {"failure": failure.as_dict(), "attempts": n.attempts, "next_attempt_at": next_at.isoformat()},
            now=now,
        )
        db.commit()
    db.refresh(n)
    return n


def cancel(db: Session, notification_id: int, reason: str | None = None, now: datetime | None = None) -> bool:
    """pending/sending -> cancelled. Terminal rows are left alone (returns False)."""
    now = now or datetime.utcnow()
    res = db.execute(
        update(NotificationRequest)
        .where(NotificationRequest.id == notification_id, NotificationRequest.status.in_(OPEN_STATUSES))
        .values(status=STATUS_CANCELLED, cancelled_at=now, cancel_reason=reason, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        db.rollback()
        if db.get(NotificationRequest, notification_id) is None:
            raise NotificationNotFound(f"Notification {notification_id} not found")
        return False
    record_audit(db, notification_id, "cancelled", {"reason": reason}, now=now)
    db.commit()
    return True


def cancel_for_correlation(
    db: Session,
    correlation_id: str,
    reason: str | None = None,
    channels: tuple[str, ...] | None = None,
    now: datetime | None = None,
) -> int:
    """Cancel every open request for an appointment; returns how many were cancelled."""
    now = now or datetime.utcnow()
    conds = [
        NotificationRequest.correlation_id == str(correlation_id),
        NotificationRequest.status.in_(OPEN_STATUSES),
    ]
    if channels:
        conds.append(NotificationRequest.channel.in_(channels))
    ids = db.execute(select(NotificationRequest.id).where(*conds)).scalars().all()
    count = 0
    for nid in ids:
        res = db.execute(
            update(NotificationRequest)
            .where(NotificationRequest.id == nid, NotificationRequest.status.in_(OPEN_STATUSES))
            .values(status=STATUS_CANCELLED, cancelled_at=now, cancel_reason=reason, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount == 1:
            record_audit(db, nid, "cancelled", {"reason": reason}, now=now)
            count += 1
    db.commit()
    return count


def _appointment_payload(appointment: dict[str, Any]) -> dict[str, Any]:
    start: datetime = appointment["start"]
    data = dict(appointment.get("template_data") or {})
    data.setdefault("appointmentDate", start.strftime("%d.%m.%Y"))
    data.setdefault("appointmentTime", start.strftime("%H:%M"))
    return data


def schedule_appointment_notifications(
    db: Session,
    appointment: dict[str, Any],
    settings: NotificationSettings,
    types: tuple[str, ...] = ("email",),
    send_confirmation: bool = True,
    now: datetime | None = None,
) -> list[EnqueueResult]:
    """Confirmation now and a reminder `reminder_hours_before` the appointment.

    `appointment` keys: id, customer_id, email, phone, start (naive UTC),
    template_data, location_id.
    """
    now = now or datetime.utcnow()
    start: datetime = appointment["start"]
    data = _appointment_payload(appointment)
    location_id = appointment.get("location_id")
    results: list[EnqueueResult] = []
    for t in types:
        base = dict(
            type=t,
            recipient_id=appointment.get("customer_id"),
            recipient_email=appointment.get("email"),
            recipient_phone=appointment.get("phone"),
            template_data=data,
            correlation_id=appointment.get("id"),
            budget_scope="location" if location_id else "global",
            budget_scope_id=location_id,
        )
        if send_confirmation:
            results.append(
                enqueue(db, NotificationInput(channel="appointment_confirmation", scheduled_for=now, **base), settings, now)
            )
        remind_at = start - timedelta(hours=settings.reminder_hours_before)
        if start > now:
            results.append(
                enqueue(
                    db,
                    NotificationInput(
                        channel="appointment_reminder",
                        scheduled_for=max(remind_at, now),
                        deadline_at=start,
                        **base,
                    ),
                    settings,
                    now,
                )
            )
    return results


def reschedule_appointment(
    db: Session,
    appointment: dict[str, Any],
    old_start: datetime,
    settings: NotificationSettings,
    types: tuple[str, ...] = ("email",),
    now: datetime | None = None,
) -> dict[str, Any]:
    """Cancel open notifications for the appointment, send a change notice, schedule a new reminder."""
    now = now or datetime.utcnow()
    cancelled = cancel_for_correlation(db, appointment["id"], reason="appointment_rescheduled", now=now)
    data = _appointment_payload(appointment)
    data.setdefault("oldAppointmentDate", old_start.strftime("%d.%m.%Y"))
    data.setdefault("oldAppointmentTime", old_start.strftime("%H:%M"))
    data.setdefault("newAppointmentDate", data["appointmentDate"])
    data.setdefault("newAppointmentTime", data["appointmentTime"])
    location_id = appointment.get("location_id")
    results = []
    for t in types:
        results.append(
            enqueue(
                db,
                NotificationInput(
                    type=t,
                    channel="appointment_reschedule",
                    recipient_id=appointment.get("customer_id"),
                    recipient_email=appointment.get("email"),
                    recipient_phone=appointment.get("phone"),
                    template_data=data,
                    correlation_id=appointment.get("id"),
                    scheduled_for=now,
                    budget_scope="location" if location_id else "global",
                    budget_scope_id=location_id,
                    # a second reschedule on the same day must still notify
                    dedupe_key=None,
                    dedupe=False,
                ),
                settings,
                now,
            )
        )
    results.extend(
        schedule_appointment_notifications(
            db, {**appointment, "template_data": data}, settings, types=types, send_confirmation=False, now=now
        )
    )
    return {"cancelled": cancelled, "results": [r.as_dict() for r in results]}


def schedule_staff_daily_schedule(
    db: Session,
    staff: dict[str, Any],
    settings: NotificationSettings,
    now: datetime | None = None,
) -> EnqueueResult:
    """Queue the staff day overview for the next `daily_schedule_time` (salon local time).

    `staff` keys: id, email, name, appointments (list of dicts), location_id.
    Email only; one per staff member and local day.
    """
    now = now or datetime.utcnow()
    if not settings.send_daily_schedule:
        return _skip("daily schedule disabled")
    send_at = next_local_time(settings.daily_schedule_time, settings.timezone, now)
    day = to_local(send_at, ZoneInfo(settings.timezone)).date()
    appointments = list(staff.get("appointments") or [])
    data = {
        "staffName": staff.get("name"),
        "date": day.strftime("%d.%m.%Y"),
        "appointments": appointments,
        "totalAppointments": len(appointments),
    }
    location_id = staff.get("location_id")
    return enqueue(
        db,
        NotificationInput(
            type="email",
            channel="staff_daily_schedule",
            recipient_id=staff.get("id"),
            recipient_email=staff.get("email"),
            template_data=data,
            correlation_id=f"staff-{staff.get('id')}-{day.isoformat()}",
            scheduled_for=send_at,
            budget_scope="location" if location_id else "global",
            budget_scope_id=location_id,
        ),
        settings,
        now,
    )


def list_requests(
    db: Session,
    status: str | None = None,
    channel: str | None = None,
    notification_type: str | None = None,
    correlation_id: str | None = None,
    recipient_id: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[NotificationRequest], int]:
    conds = []
    if status:
        conds.append(NotificationRequest.status == status)
    if channel:
        conds.append(NotificationRequest.channel == channel)
    if notification_type:
        conds.append(NotificationRequest.type == notification_type)
    if correlation_id:
        conds.append(NotificationRequest.correlation_id == str(correlation_id))
    if recipient_id:
        conds.append(NotificationRequest.recipient_id == str(recipient_id))
    total = db.execute(select(func.count(NotificationRequest.id)).where(*conds)).scalar() or 0
    rows = db.execute(
        select(NotificationRequest)
        .where(*conds)
        .order_by(NotificationRequest.id.desc())
        .offset(offset)
        .limit(limit)
    ).scalars().all()
    return list(rows), int(total)


def get_statistics(db: Session, days: int = 7, now: datetime | None = None) -> dict[str, Any]:
    now = now or datetime.utcnow()
    since = now - timedelta(days=max(1, int(days)))
    by_status = dict(
        db.execute(
            select(NotificationRequest.status, func.count(NotificationRequest.id))
            .where(NotificationRequest.created_at >= since)
            .group_by(NotificationRequest.status)
        ).all()
    )
    by_type = dict(
        db.execute(
            select(NotificationRequest.type, func.count(NotificationRequest.id))
            .where(NotificationRequest.created_at >= since)
            .group_by(NotificationRequest.type)
        ).all()
    )
    by_channel = dict(
        db.execute(
            select(NotificationRequest.channel, func.count(NotificationRequest.id))
            .where(NotificationRequest.created_at >= since)
            .group_by(NotificationRequest.channel)
        ).all()
    )
    due = db.execute(
        select(func.count(NotificationRequest.id)).where(
            NotificationRequest.status == STATUS_PENDING, NotificationRequest.scheduled_for <= now
        )
    ).scalar() or 0
    total = sum(int(v) for v in by_status.values())
    sent = int(by_status.get(STATUS_SENT, 0))
    failed = int(by_status.get(STATUS_FAILED, 0))
    finished = sent + failed
    return {
        "days": days,
        "total": total,
        "by_status": {k: int(v) for k, v in by_status.items()},
        "by_type": {k: int(v) for k, v in by_type.items()},
        "by_channel": {k: int(v) for k, v in by_channel.items()},
        "due_now": int(due),
        "success_rate": round(sent / finished * 100, 1) if finished else None,
    }


def cleanup_terminal(db: Session, older_than_days: int = 90, now: datetime | None = None) -> int:
    """Delete terminal rows (and their audit rows) last touched before the retention window."""
    now = now or datetime.utcnow()
    cutoff = now - timedelta(days=max(1, int(older_than_days)))
    ids = db.execute(
        select(NotificationRequest.id).where(
            NotificationRequest.status.in_(TERMINAL_STATUSES),
            NotificationRequest.updated_at < cutoff,
        )
    ).scalars().all()
    if not ids:
        return 0
    db.execute(
        delete(NotificationAudit)
        .where(NotificationAudit.notification_id.in_(ids))
        .execution_options(synchronize_session=False)
    )
    # dead letter rows keep their snapshot; the FK is ON DELETE SET NULL
    db.execute(
        delete(NotificationRequest)
        .where(NotificationRequest.id.in_(ids))
        .execution_options(synchronize_session=False)
    )
    db.commit()
    logger.info("notification_cleanup deleted=%s older_than_days=%s", len(ids), older_than_days)
    return len(ids)
