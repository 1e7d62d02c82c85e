"""Delivery-provider webhooks: parsing, signature checks, idempotent ingestion."""
from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from salon_notify.backend.models.notification import STATUS_FAILED, STATUS_SENDING, STATUS_SENT, NotificationRequest
from salon_notify.backend.models.webhook_event import WebhookEvent
from salon_notify.backend.services import queue
from salon_notify.backend.services.audit import record_audit
from salon_notify.backend.services.consent import add_suppression, normalize_email, normalize_phone
from salon_notify.backend.services.dead_letter import resolve_for_address
from salon_notify.backend.services.errors import WebhookEventNotFound
from salon_notify.backend.services.failures import TWILIO_RECIPIENT_CODES

logger = logging.getLogger(__name__)

PROVIDERS = ("mailgun", "twilio", "ses", "sendgrid", "smtp")
EVENT_TYPES = ("delivered", "bounced", "complained", "failed", "unsubscribed", "other")


class WebhookParseError(ValueError):
    pass


@dataclass
class ParsedEvent:
    event_type: str
    provider_event_id: str | None = None
    recipient: str | None = None
    provider_message_id: str | None = None
    notification_id: int | None = None
    status: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    bounce_type: str | None = None
    occurred_at: datetime | None = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class IngestResult:
    accepted: bool
    duplicate: bool = False
    event_id: int | None = None
    processed: bool = False
    error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "accepted": self.accepted,
            "duplicate": self.duplicate,
            "event_id": self.event_id,
            "processed": self.processed,
            "error": self.error,
        }


def payload_hash(payload: Any) -> str:
    """Stable id for payloads that carry no provider event id."""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return "sha256:" + hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _ts(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    try:
        return datetime.fromtimestamp(float(value), tz=timezone.utc).replace(tzinfo=None)
    except (TypeError, ValueError, OverflowError):
        pass
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _int_or_none(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


# --- signatures ---------------------------------------------------------------


def verify_mailgun_signature(signing_key: str, timestamp: str, token: str, signature: str) -> bool:
    if not signing_key or not timestamp or not token or not signature:
        return False
    digest = hmac.new(
        key=signing_key.encode("utf-8"),
        msg=f"{timestamp}{token}".encode("utf-8"),
        digestmod=hashlib.sha256,
    ).hexdigest()
    return hmac.compare_digest(digest, signature)


def twilio_signature(auth_token: str, url: str, params: dict[str, Any]) -> str:
    data = url + "".join(f"{k}{params[k]}" for k in sorted(params))
    mac = hmac.new(auth_token.encode("utf-8"), data.encode("utf-8"), hashlib.sha1)
    return base64.b64encode(mac.digest()).decode("ascii")


def verify_twilio_signature(auth_token: str, url: str, params: dict[str, Any], signature: str | None) -> bool:
    if not auth_token or not signature:
        return False
    return hmac.compare_digest(twilio_signature(auth_token, url, params), signature)


# --- parsers --------------------------------------------------------------------


def parse_mailgun(payload: dict[str, Any]) -> list[ParsedEvent]:
    ev = payload.get("event-data") if isinstance(payload.get("event-data"), dict) else None
    if ev is None:
        raise WebhookParseError("missing event-data")
    kind = str(ev.get("event") or "").lower()
    status = ev.get("delivery-status") if isinstance(ev.get("delivery-status"), dict) else {}
    headers = (ev.get("message") or {}).get("headers") or {}
    user_vars = ev.get("user-variables") or {}
    bounce_type = None
    if kind == "delivered":
        event_type = "delivered"
    elif kind in ("failed", "bounced"):
        event_type = "bounced"
        bounce_type = "hard" if str(ev.get("severity") or "").lower() == "permanent" else "soft"
    elif kind == "complained":
        event_type = "complained"
    elif kind == "unsubscribed":
        event_type = "unsubscribed"
    else:
        event_type = "other"
    return [
        ParsedEvent(
            event_type=event_type,
            provider_event_id=ev.get("id"),
            recipient=ev.get("recipient"),
            provider_message_id=headers.get("message-id"),
            notification_id=_int_or_none(user_vars.get("notification_id")),
            status=kind or None,
            error_code=str(status.get("code")) if status.get("code") is not None else None,
            error_message=status.get("description") or status.get("message") or ev.get("reason"),
            bounce_type=bounce_type,
            occurred_at=_ts(ev.get("timestamp")),
            raw=payload,
        )
    ]


TWILIO_STATUS_EVENTS = {
    "delivered": "delivered",
    "undelivered": "bounced",
    "failed": "failed",
}


def parse_twilio(form: dict[str, Any]) -> list[ParsedEvent]:
    sid = form.get("MessageSid") or form.get("SmsSid")
    status = str(form.get("MessageStatus") or form.get("SmsStatus") or "").lower()
    if not sid or not status:
        raise WebhookParseError("missing MessageSid or MessageStatus")
    code = str(form.get("ErrorCode") or "") or None
    bounce_type = None
    event_type = TWILIO_STATUS_EVENTS.get(status, "other")
    if event_type in ("bounced", "failed"):
        bounce_type = "hard" if code in TWILIO_RECIPIENT_CODES else "soft"
    return [
        ParsedEvent(
            event_type=event_type,
            # one callback per status transition of a message
            provider_event_id=f"{sid}:{status}",
            recipient=form.get("To"),
            provider_message_id=sid,
            status=status,
            error_code=code,
            error_message=form.get("ErrorMessage"),
            bounce_type=bounce_type,
            raw=dict(form),
        )
    ]


def _ses_message(payload: dict[str, Any]) -> dict[str, Any]:
    if payload.get("Type") == "Notification" and payload.get("Message"):
        msg = payload["Message"]
        if isinstance(msg, str):
            try:
                msg = json.loads(msg)
            except ValueError:
                raise WebhookParseError("SNS Message is not JSON")
        if not isinstance(msg, dict):
            raise WebhookParseError("SNS Message is not an object")
        return msg
    return payload


def parse_ses(payload: dict[str, Any]) -> list[ParsedEvent]:
    if payload.get("Type") == "SubscriptionConfirmation":
        return [ParsedEvent(event_type="other", provider_event_id=payload.get("MessageId"), status="subscription", raw=payload)]
    msg = _ses_message(payload)
    kind = str(msg.get("notificationType") or msg.get("eventType") or "").lower()
    mail = msg.get("mail") or {}
    message_id = mail.get("messageId")
    out: list[ParsedEvent] = []
    if kind == "bounce" or (not kind and "bounce" in msg):
        b = msg.get("bounce") or {}
        hard = b.get("bounceType") == "Permanent"
        for r in b.get("bouncedRecipients") or []:
            out.append(ParsedEvent(
                event_type="bounced",
                provider_event_id=f"{b.get('feedbackId') or message_id}:{r.get('emailAddress')}",
                recipient=r.get("emailAddress"),
                provider_message_id=message_id,
                status=b.get("bounceSubType"),
                error_code=r.get("status"),
                error_message=r.get("diagnosticCode") or r.get("action"),
                bounce_type="hard" if hard else "soft",
                occurred_at=_ts(b.get("timestamp")),
                raw=msg,
            ))
    elif kind == "complaint" or (not kind and "complaint" in msg):
        c = msg.get("complaint") or {}
        for r in c.get("complainedRecipients") or []:
            out.append(ParsedEvent(
                event_type="complained",
                provider_event_id=f"{c.get('feedbackId') or message_id}:{r.get('emailAddress')}",
                recipient=r.get("emailAddress"),
                provider_message_id=message_id,
                status=c.get("complaintFeedbackType") or "abuse",
                occurred_at=_ts(c.get("timestamp")),
                raw=msg,
            ))
    elif kind == "delivery":
        d = msg.get("delivery") or {}
        for addr in d.get("recipients") or []:
            out.append(ParsedEvent(
                event_type="delivered",
                provider_event_id=f"{message_id}:delivered:{addr}",
                recipient=addr,
                provider_message_id=message_id,
                status="delivered",
                occurred_at=_ts(d.get("timestamp")),
                raw=msg,
            ))
    else:
        raise WebhookParseError(f"unsupported SES notification {kind or 'unknown'}")
    if not out:
        raise WebhookParseError("SES notification without recipients")
    return out


def parse_sendgrid(payload: Any) -> list[ParsedEvent]:
    events = payload if isinstance(payload, list) else [payload]
    out: list[ParsedEvent] = []
    for ev in events:
        if not isinstance(ev, dict) or not ev.get("event"):
            raise WebhookParseError("SendGrid event without type")
        kind = str(ev["event"]).lower()
        bounce_type = None
        if kind == "delivered":
            event_type = "delivered"
        elif kind in ("bounce", "blocked", "dropped"):
            event_type = "bounced"
            bounce_type = "hard" if kind == "bounce" and ev.get("type", "bounce") == "bounce" else "soft"
        elif kind == "spamreport":
            event_type = "complained"
        elif kind in ("unsubscribe", "group_unsubscribe"):
            event_type = "unsubscribed"
        else:
            event_type = "other"
        sg_id = str(ev.get("sg_message_id") or "").split(".")[0] or None
        out.append(ParsedEvent(
            event_type=event_type,
            provider_event_id=ev.get("sg_event_id"),
            recipient=ev.get("email"),
            provider_message_id=sg_id,
            notification_id=_int_or_none(ev.get("notification_id")),
            status=kind,
            error_code=str(ev.get("status")) if ev.get("status") else None,
            error_message=ev.get("reason"),
            bounce_type=bounce_type,
            occurred_at=_ts(ev.get("timestamp")),
            raw=ev,
        ))
    return out


def parse_generic_bounce(payload: dict[str, Any]) -> list[ParsedEvent]:
    """Bounce reports from a plain SMTP relay: 5xx codes are hard, 4xx soft."""
    email = payload.get("email") or payload.get("recipient")
    if not email:
        raise WebhookParseError("bounce without recipient")
    code = str(payload.get("code") or payload.get("error_code") or payload.get("diagnosticCode") or "").strip()
    if payload.get("complaint"):
        return [ParsedEvent(event_type="complained", provider_event_id=payload.get("id"), recipient=email, raw=payload)]
    if payload.get("permanent") or payload.get("bounceType") == "hard" or code.startswith("5"):
        bounce_type = "hard"
    else:
        bounce_type = "soft"
    return [
        ParsedEvent(
            event_type="bounced",
            provider_event_id=payload.get("id") or payload.get("event_id"),
            recipient=email,
            provider_message_id=payload.get("message_id"),
            notification_id=_int_or_none(payload.get("notification_id")),
            status="bounced",
            error_code=code or None,
            error_message=payload.get("reason") or payload.get("message") or "Unknown bounce",
            bounce_type=bounce_type,
            occurred_at=_ts(payload.get("timestamp")),
            raw=payload,
        )
    ]


PARSERS = {
    "mailgun": parse_mailgun,
    "twilio": parse_twilio,
    "ses": parse_ses,
    "sendgrid": parse_sendgrid,
    "smtp": parse_generic_bounce,
}


# --- ingestion ------------------------------------------------------------------


def _find_notification(db: Session, row: WebhookEvent) -> NotificationRequest | None:
    if row.notification_id:
        n = db.get(NotificationRequest, row.notification_id)
        if n:
            return n
    if row.provider_message_id:
        return db.execute(
            select(NotificationRequest)
            .where(NotificationRequest.provider_message_id == row.provider_message_id)
            .order_by(NotificationRequest.id.desc())
            .limit(1)
        ).scalar_one_or_none()
    return None


def _recipient_address(row: WebhookEvent) -> tuple[str | None, str | None]:
    if row.provider == "twilio":
        return None, normalize_phone(row.recipient)
    return normalize_email(row.recipient), None


def _apply(db: Session, row: WebhookEvent, now: datetime) -> None:
    n = _find_notification(db, row)
    if n is not None and row.notification_id is None:
        row.notification_id = n.id
    email, phone = _recipient_address(row)
    details = {"webhook_event_id": row.id, "provider": row.provider, "status": row.status}

    if row.event_type == "delivered":
        row.delivered_at = row.delivered_at or now
        if n is not None:
            record_audit(db, n.id, "delivered", details, now=now)
            if n.status == STATUS_SENDING:
                # provider confirmed before the worker reported back
                queue.report_success(db, n.id, n.provider_message_id, n.provider, now=now)
    elif row.event_type in ("bounced", "failed"):
        permanent_sms = row.provider == "twilio" and row.error_code in TWILIO_RECIPIENT_CODES
        if n is not None:
            n.last_error = (row.error_message or f"{row.provider} {row.status}")[:1000]
            n.last_failure_type = "hard_bounce" if row.bounce_type == "hard" else "soft_bounce"
            record_audit(db, n.id, "bounced", {**details, "bounce_type": row.bounce_type, "code": row.error_code}, now=now)
            if (row.bounce_type == "hard" or permanent_sms) and n.status in (STATUS_SENT, STATUS_SENDING):
                n.status = STATUS_FAILED
                n.failed_at = now
                n.updated_at = now
                record_audit(db, n.id, "failed", {**details, "source": "provider_feedback"}, now=now)
        if permanent_sms and phone:
            add_suppression(
                db, phone=phone, suppression_type="invalid", source="provider_feedback",
                reason=f"twilio {row.error_code}: {row.error_message or row.status}", suppressed_by="webhook",
            )
            resolve_for_address(db, None, phone, "suppressed", f"twilio error {row.error_code}", now=now)
        elif row.bounce_type == "hard" and email:
            add_suppression(
                db, email=email, suppression_type="bounce", source="bounce_handler",
                reason=f"hard bounce: {row.error_message or row.error_code or 'unknown'}"[:500],
                suppressed_by="webhook",
            )
            resolve_for_address(db, email, None, "suppressed", "hard bounce reported by provider", now=now)
    elif row.event_type == "complained":
        if email or phone:
            add_suppression(
                db, email=email, phone=phone, suppression_type="spam", source="spam_report",
                reason=f"complaint via {row.provider}: {row.status or 'abuse'}", suppressed_by="webhook",
            )
        if n is not None:
            record_audit(db, n.id, "complained", details, now=now)
    elif row.event_type == "unsubscribed":
        if email or phone:
            add_suppression(
                db, email=email, phone=phone, suppression_type="unsubscribe", source="user_unsubscribe",
                reason=f"unsubscribe via {row.provider}", suppressed_by="webhook",
            )


def _process(db: Session, row: WebhookEvent, now: datetime) -> IngestResult:
    try:
        _apply(db, row, now)
        row.processed = True
        row.processed_at = now
        row.processing_error = None
        db.commit()
    except Exception as e:
        db.rollback()
        logger.exception("webhook_processing_failed event_id=%s provider=%s", row.id, row.provider)
        row = db.get(WebhookEvent, row.id)
        row.processed = False
        row.processing_error = str(e)[:500]
        db.commit()
        return IngestResult(accepted=True, event_id=row.id, processed=False, error="processing_failed")
    return IngestResult(accepted=True, event_id=row.id, processed=True)


def ingest(
    db: Session,
    provider: str,
    event: ParsedEvent,
    verified: bool = False,
    rejection: str | None = None,
    now: datetime | None = None,
) -> IngestResult:
    """Store the event once per (provider, provider_event_id) and apply its side effects.

    A repeated delivery is a successful no-op with duplicate=True. A rejected
    event (bad signature) is stored unprocessed with the rejection recorded.
    """
    now = now or datetime.utcnow()
    event_id = event.provider_event_id or payload_hash(event.raw)
    existing = db.execute(
        select(WebhookEvent).where(WebhookEvent.provider == provider, WebhookEvent.provider_event_id == event_id)
    ).scalar_one_or_none()
    if existing is not None:
        return IngestResult(accepted=True, duplicate=True, event_id=existing.id, processed=bool(existing.processed))

    row = WebhookEvent(
        provider=provider,
        provider_event_id=str(event_id)[:255],
        event_type=event.event_type if event.event_type in EVENT_TYPES else "other",
        notification_id=event.notification_id,
        provider_message_id=event.provider_message_id,
        recipient=event.recipient,
        event_data=event.raw,
        status=event.status,
        error_code=event.error_code,
        error_message=event.error_message,
        bounce_type=event.bounce_type,
        delivered_at=event.occurred_at if event.event_type == "delivered" else None,
        webhook_verified=bool(verified),
        processed=False,
        processing_error=rejection,
        received_at=now,
    )
    db.add(row)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = db.execute(
            select(WebhookEvent).where(WebhookEvent.provider == provider, WebhookEvent.provider_event_id == event_id)
        ).scalar_one_or_none()
        return IngestResult(
            accepted=True, duplicate=True, event_id=existing.id if existing else None,
            processed=bool(existing.processed) if existing else False,
        )
    db.refresh(row)
    if rejection:
        logger.warning("webhook_rejected provider=%s event_id=%s reason=%s", provider, row.id, rejection)
        return IngestResult(accepted=True, event_id=row.id, processed=False, error=rejection)
    return _process(db, row, now)


def record_malformed(db: Session, provider: str, raw: Any, error: str, now: datetime | None = None) -> IngestResult:
    """Keep payloads we could not parse so they can be inspected and reprocessed."""
    body = raw if isinstance(raw, dict) else {"raw": raw}
    event = ParsedEvent(event_type="other", raw=body)
    return ingest(db, provider, event, verified=False, rejection=f"malformed: {error}"[:500], now=now)


def ingest_payload(
    db: Session,
    provider: str,
    payload: Any,
    verified: bool = False,
    rejection: str | None = None,
    now: datetime | None = None,
) -> list[IngestResult]:
    if provider not in PARSERS:
        raise ValueError(f"unknown provider {provider}")
    if provider != "sendgrid" and not isinstance(payload, dict):
        return [record_malformed(db, provider, payload, "payload is not an object", now=now)]
    try:
        events = PARSERS[provider](payload)
    except WebhookParseError as e:
        logger.warning("webhook_malformed provider=%s error=%s", provider, e)
        return [record_malformed(db, provider, payload, str(e), now=now)]
    return [ingest(db, provider, ev, verified=verified, rejection=rejection, now=now) for ev in events]


def reprocess(db: Session, event_id: int, now: datetime | None = None) -> IngestResult:
    """Re-run side effects for a stored event that was not processed."""
    now = now or datetime.utcnow()
    row = db.get(WebhookEvent, event_id)
    if row is None:
        raise WebhookEventNotFound(f"Webhook event {event_id} not found")
    if row.processed:
        return IngestResult(accepted=True, duplicate=True, event_id=row.id, processed=True)
    if row.processing_error and row.processing_error.startswith("malformed"):
        try:
            parsed = PARSERS[row.provider](row.event_data or {})
        except WebhookParseError as e:
            row.processing_error = f"malformed: {e}"[:500]
            db.commit()
            return IngestResult(accepted=False, event_id=row.id, error=row.processing_error)
        first = parsed[0]
        row.event_type = first.event_type
        row.recipient = first.recipient
        row.provider_message_id = first.provider_message_id
        row.status = first.status
        row.error_code = first.error_code
        row.error_message = first.error_message
        row.bounce_type = first.bounce_type
    return _process(db, row, now)


def list_events(
    db: Session,
    provider: str | None = None,
    processed: bool | None = None,
    event_type: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[WebhookEvent], int]:
    conds = []
    if provider:
        conds.append(WebhookEvent.provider == provider)
    if processed is not None:
        conds.append(WebhookEvent.processed == processed)
    if event_type:
        conds.append(WebhookEvent.event_type == event_type)
    total = db.execute(select(func.count(WebhookEvent.id)).where(*conds)).scalar() or 0
    rows = db.execute(
        select(WebhookEvent).where(*conds).order_by(WebhookEvent.id.desc()).offset(offset).limit(limit)
    ).scalars().all()
    return list(rows), int(total)
