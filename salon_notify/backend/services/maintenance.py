"""Periodic maintenance: recover stuck sends, expire stale requests, prune old rows."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import select

from salon_notify.backend.config import get_settings
from salon_notify.backend.database import get_session_factory
from salon_notify.backend.models.notification import STATUS_PENDING, STATUS_SENDING, NotificationRequest
from salon_notify.backend.services import dead_letter, queue
from salon_notify.backend.services.failures import timeout_failure
from salon_notify.backend.services.retry_config import resolve_retry_policy

logger = logging.getLogger(__name__)
_MAINTENANCE_LOCK_KEY = "notify_maintenance:lock"


def run_maintenance_once(
    stale_sending_seconds: int = 900,
    retention_days: int = 90,
    dlq_retention_days: int = 30,
    batch_limit: int = 500,
    now: datetime | None = None,
) -> dict:
    """Return counters for one maintenance pass."""
    factory = get_session_factory()
    now = now or datetime.utcnow()
    cutoff = now - timedelta(seconds=max(60, int(stale_sending_seconds)))
    result = {
        "stuck_sending_recovered": 0,
        "expired_cancelled": 0,
        "requests_deleted": 0,
        "dlq_deleted": 0,
    }

    with factory() as db:
        # worker died between claim and report
        stuck_ids = db.execute(
            select(NotificationRequest.id).where(
                NotificationRequest.status == STATUS_SENDING,
                NotificationRequest.last_attempt_at < cutoff,
            ).limit(batch_limit)
        ).scalars().all()
        for nid in stuck_ids:
            queue.report_failure(db, nid, timeout_failure("stuck_sending_timeout"), now)
            result["stuck_sending_recovered"] += 1

        policy = resolve_retry_policy(db)
        max_age_cutoff = now - timedelta(hours=policy.max_age_hours)
        expired_ids = db.execute(
            select(NotificationRequest.id).where(
                NotificationRequest.status == STATUS_PENDING,
                NotificationRequest.scheduled_for < max_age_cutoff,
            ).limit(batch_limit)
        ).scalars().all()
        for nid in expired_ids:
            if queue.cancel(db, nid, reason="expired", now=now):
                result["expired_cancelled"] += 1

        result["requests_deleted"] = queue.cleanup_terminal(db, older_than_days=retention_days, now=now)
        result["dlq_deleted"] = dead_letter.cleanup(db, older_than_days=dlq_retention_days, now=now)

    if any(result.values()):
        logger.info("notify_maintenance %s", result)
    return result


def run_maintenance_cycle() -> dict:
    """Single guarded maintenance cycle with Redis lock."""
    s = get_settings()
    try:
        from redis import Redis

        r = Redis(host=s.redis_host, port=s.redis_port)
        lock_ttl = max(30, int((s.maintenance_interval_seconds or 300) * 0.9))
        if not r.set(_MAINTENANCE_LOCK_KEY, "1", nx=True, ex=lock_ttl):
            return {"skipped": "lock_not_acquired"}
    except Exception:
        # without the lock a concurrent pass only repeats idempotent work
        logger.exception("notify_maintenance_lock_unavailable")
    try:
        return run_maintenance_once(
            stale_sending_seconds=s.stale_sending_seconds,
            retention_days=s.notification_retention_days,
            dlq_retention_days=s.dlq_retention_days,
        )
    except Exception:
        logger.exception("notify_maintenance_failed")
        return {"error": "maintenance_failed"}
