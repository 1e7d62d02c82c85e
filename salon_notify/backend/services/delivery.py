"""Delivery worker: claim due notifications, render, send concurrently, report outcomes."""
from __future__ import annotations

import logging
import math
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import func, select

from salon_notify.backend.config import get_settings
from salon_notify.backend.database import get_session_factory
from salon_notify.backend.models.notification import STATUS_FAILED, STATUS_PENDING, NotificationRequest
from salon_notify.backend.services import queue
from salon_notify.backend.services.failures import FailureType, SendFailure, timeout_failure
from salon_notify.backend.services.notification_settings import resolve_notification_settings
from salon_notify.backend.services.retry_config import resolve_retry_policy
from salon_notify.backend.services.senders import Sender, SendResult, get_sender
from salon_notify.backend.services.templates import TemplateError, render_notification

logger = logging.getLogger(__name__)


@dataclass
class _Job:
    notification_id: int
    type: str
    recipient: str
    subject: str | None
    body: str


def _attempts_last_minute(db, now: datetime) -> int:
    return int(
        db.execute(
            select(func.count(NotificationRequest.id)).where(
                NotificationRequest.last_attempt_at >= now - timedelta(minutes=1)
            )
        ).scalar() or 0
    )


def _prepare(db, row: NotificationRequest, now: datetime) -> _Job | None:
    """Render a claimed row; rows that cannot be sent are reported as failures here."""
    recipient = row.recipient_address
    if not recipient:
        queue.report_failure(db, row.id, SendFailure(FailureType.INVALID_RECIPIENT, "missing recipient address"), now)
        return None
    try:
        msg = render_notification(row.type, row.channel, row.template_data)
    except TemplateError as e:
        queue.report_failure(db, row.id, SendFailure(FailureType.UNKNOWN, f"template_error: {e}", e.code), now)
        return None
    return _Job(row.id, row.type, recipient, msg.subject, msg.body)


def _safe_send(sender: Sender, job: _Job) -> SendResult:
    try:
        return sender.send(job.type, job.recipient, job.subject, job.body, notification_id=job.notification_id)
    except Exception as e:
        logger.exception("sender_exception notification_id=%s", job.notification_id)
        return SendResult(False, "unknown", failure=SendFailure(FailureType.UNKNOWN, f"sender_exception: {e}"[:500]))


def process_due_notifications(
    sender: Sender | None = None,
    limit: int | None = None,
    now: datetime | None = None,
    max_workers: int | None = None,
    send_timeout: float | None = None,
) -> dict:
    """One worker pass. Sender errors never escape; they become report_failure calls."""
    s = get_settings()
    sender = sender or get_sender(s)
    now = now or datetime.utcnow()
    max_workers = max(1, int(max_workers or s.worker_max_concurrency))
    send_timeout = float(send_timeout or s.send_timeout_seconds)
    result = {
        "claimed": 0,
        "sent": 0,
        "failed": 0,
        "retried": 0,
        "dead_lettered": 0,
        "timeouts": 0,
        "rate_limited": False,
    }
    factory = get_session_factory()

    with factory() as db:
        ns = resolve_notification_settings(db)
        policy = resolve_retry_policy(db)
        batch = int(limit or ns.batch_size)
        allowance = policy.rate_limit_per_minute - _attempts_last_minute(db, now)
        if allowance <= 0:
            result["rate_limited"] = True
            return result
        batch = min(batch, allowance)
        rows = queue.claim_due(db, limit=batch, now=now)
        result["claimed"] = len(rows)
        jobs: list[_Job] = []
        for row in rows:
            job = _prepare(db, row, now)
            if job is None:
                result["failed"] += 1
                _count_outcome(db, row.id, result)
            else:
                jobs.append(job)

    if not jobs:
        return result

    outcomes: dict[int, SendResult] = {}
    ex = ThreadPoolExecutor(max_workers=min(max_workers, len(jobs)))
    try:
        futures = {ex.submit(_safe_send, sender, job): job for job in jobs}
        rounds = math.ceil(len(jobs) / min(max_workers, len(jobs)))
        done, _pending = wait(futures, timeout=send_timeout * rounds + 1)
        for fut in done:
            outcomes[futures[fut].notification_id] = fut.result()
    finally:
        ex.shutdown(wait=False, cancel_futures=True)

    with factory() as db:
        for job in jobs:
            outcome = outcomes.get(job.notification_id)
            try:
                if outcome is None:
                    result["timeouts"] += 1
                    result["failed"] += 1
                    queue.report_failure(db, job.notification_id, timeout_failure(), now)
                    _count_outcome(db, job.notification_id, result)
                elif outcome.success:
                    queue.report_success(
                        db, job.notification_id, outcome.provider_message_id, outcome.provider, now=now
                    )
                    result["sent"] += 1
                else:
                    n = db.get(NotificationRequest, job.notification_id)
                    if n is not None and outcome.provider:
                        n.provider = outcome.provider
                    failure = outcome.failure or SendFailure(FailureType.UNKNOWN, "send_failed")
                    queue.report_failure(db, job.notification_id, failure, now)
                    result["failed"] += 1
                    _count_outcome(db, job.notification_id, result)
            except Exception:
                db.rollback()
                logger.exception("delivery_report_failed notification_id=%s", job.notification_id)
    logger.info("delivery_pass %s", result)
    return result


def _count_outcome(db, notification_id: int, result: dict) -> None:
    n = db.get(NotificationRequest, notification_id)
    if n is None:
        return
    if n.status == STATUS_FAILED:
        result["dead_lettered"] += 1
    elif n.status == STATUS_PENDING:
        result["retried"] += 1
