"""Consent & suppression guard: may this recipient be contacted on this channel?"""
from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from jose import JWTError, jwt
from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from salon_notify.backend.config import get_settings
from salon_notify.backend.models.consent import (
    CONSENT_SOURCES,
    CONSENT_TYPES,
    SUPPRESSION_SOURCES,
    SUPPRESSION_TYPES,
    ConsentRecord,
    SuppressionEntry,
)

logger = logging.getLogger(__name__)

CHANNEL_CONSENT_TYPES = {
    "appointment_reminder": "appointment_reminders",
    "appointment_confirmation": "appointment_confirmations",
    "appointment_cancellation": "appointment_changes",
    "appointment_reschedule": "appointment_changes",
    "staff_daily_schedule": "daily_schedules",
}


class ConsentError(ValueError):
    pass


@dataclass
class GuardDecision:
    can_send: bool
    reason: str | None = None
    suppression_type: str | None = None


@dataclass
class SuppressionCheck:
    is_suppressed: bool
    suppression_type: str | None = None
    reason: str | None = None
    entry_id: int | None = None


def normalize_email(email: str | None) -> str | None:
    if not email:
        return None
    value = email.strip().lower()
    return value or None


def normalize_phone(phone: str | None) -> str | None:
    if not phone:
        return None
    value = "".join(phone.split())
    return value or None


def consent_type_for_channel(channel: str) -> str:
    return CHANNEL_CONSENT_TYPES.get(channel, "appointment_reminders")


def _active_suppression(db: Session, email: str | None, phone: str | None) -> SuppressionEntry | None:
    conds = []
    if email:
        conds.append(SuppressionEntry.email == email)
    if phone:
        conds.append(SuppressionEntry.phone == phone)
    if not conds:
        return None
    return db.execute(
        select(SuppressionEntry)
        .where(or_(*conds), SuppressionEntry.reactivated_at.is_(None))
        .order_by(SuppressionEntry.suppressed_at.desc(), SuppressionEntry.id.desc())
        .limit(1)
    ).scalar_one_or_none()


def check_suppression(db: Session, email: str | None = None, phone: str | None = None) -> SuppressionCheck:
    entry = _active_suppression(db, normalize_email(email), normalize_phone(phone))
    if not entry:
        return SuppressionCheck(is_suppressed=False)
    return SuppressionCheck(
        is_suppressed=True,
        suppression_type=entry.suppression_type,
        reason=entry.reason,
        entry_id=entry.id,
    )


def latest_consent(db: Session, customer_id: str, channel: str, consent_type: str) -> ConsentRecord | None:
    return db.execute(
        select(ConsentRecord)
        .where(
            ConsentRecord.customer_id == str(customer_id),
            ConsentRecord.channel == channel,
            ConsentRecord.consent_type == consent_type,
        )
        .order_by(ConsentRecord.consent_timestamp.desc(), ConsentRecord.id.desc())
        .limit(1)
    ).scalar_one_or_none()


def evaluate(
    db: Session,
    customer_id: str | None,
    email: str | None,
    phone: str | None,
    channel: str,
    consent_type: str,
) -> GuardDecision:
    """Suppression first, then the latest consent record. Missing consent means no."""
    address_email = normalize_email(email) if channel == "email" else None
    address_phone = normalize_phone(phone) if channel == "sms" else None
    if channel == "email" and not address_email:
        return GuardDecision(False, "missing email address")
    if channel == "sms" and not address_phone:
        return GuardDecision(False, "missing phone number")
    sup = _active_suppression(db, address_email, address_phone)
    if sup:
        return GuardDecision(
            False,
            f"Recipient suppressed ({sup.suppression_type}): {sup.reason or 'no reason recorded'}",
            suppression_type=sup.suppression_type,
        )
    if not customer_id:
        return GuardDecision(False, f"no consent for {consent_type} via {channel}: unknown customer")
    rec = latest_consent(db, customer_id, channel, consent_type)
    if rec is None:
        return GuardDecision(False, f"no consent for {consent_type} via {channel}")
    if not rec.consented:
        return GuardDecision(False, f"no consent for {consent_type} via {channel}: withdrawn")
    return GuardDecision(True)


def record_consent(
    db: Session,
    customer_id: str,
    channel: str,
    consent_type: str,
    consented: bool,
    source: str,
    ip_address: str | None = None,
    user_agent: str | None = None,
    updated_by: str | None = None,
    commit: bool = True,
) -> ConsentRecord:
    if channel not in ("email", "sms"):
        raise ConsentError(f"unknown channel {channel}")
    if consent_type not in CONSENT_TYPES:
        raise ConsentError(f"unknown consent type {consent_type}")
    if source not in CONSENT_SOURCES:
        raise ConsentError(f"unknown consent source {source}")
    rec = ConsentRecord(
        customer_id=str(customer_id),
        channel=channel,
        consent_type=consent_type,
        consented=bool(consented),
        consent_source=source,
        consent_timestamp=datetime.utcnow(),
        ip_address=ip_address,
        user_agent=user_agent,
        updated_by=updated_by,
    )
    db.add(rec)
    if commit:
        db.commit()
        db.refresh(rec)
    return rec


def record_bulk_consent(
    db: Session,
    customer_id: str,
    consents: list[dict[str, Any]],
    source: str,
    ip_address: str | None = None,
    user_agent: str | None = None,
    updated_by: str | None = None,
) -> list[ConsentRecord]:
    """All-or-nothing: validation errors roll back the whole batch."""
    out = []
    try:
        for item in consents:
            out.append(
                record_consent(
                    db,
                    customer_id,
                    item.get("channel"),
                    item.get("consent_type"),
                    bool(item.get("consented")),
                    source,
                    ip_address=ip_address,
                    user_agent=user_agent,
                    updated_by=updated_by,
                    commit=False,
                )
            )
        db.commit()
    except ConsentError:
        db.rollback()
        raise
    return out


def get_customer_consent(db: Session, customer_id: str) -> list[ConsentRecord]:
    """Latest record per (channel, consent_type)."""
    rows = db.execute(
        select(ConsentRecord)
        .where(ConsentRecord.customer_id == str(customer_id))
        .order_by(ConsentRecord.consent_timestamp.desc(), ConsentRecord.id.desc())
    ).scalars().all()
    seen: set[tuple[str, str]] = set()
    out = []
    for r in rows:
        k = (r.channel, r.consent_type)
        if k in seen:
            continue
        seen.add(k)
        out.append(r)
    return out


def add_suppression(
    db: Session,
    email: str | None = None,
    phone: str | None = None,
    suppression_type: str = "admin_block",
    source: str = "admin_action",
    reason: str | None = None,
    suppressed_by: str | None = None,
) -> SuppressionEntry:
    """Duplicate-safe: an active entry for the same address is returned as is."""
    email = normalize_email(email)
    phone = normalize_phone(phone)
    if not email and not phone:
        raise ConsentError("email or phone required")
    if suppression_type not in SUPPRESSION_TYPES:
        raise ConsentError(f"unknown suppression type {suppression_type}")
    if source not in SUPPRESSION_SOURCES:
        raise ConsentError(f"unknown suppression source {source}")
    existing = _active_suppression(db, email, phone)
    if existing:
        return existing
    entry = SuppressionEntry(
        email=email,
        phone=phone,
        suppression_type=suppression_type,
        source=source,
        reason=reason,
        suppressed_by=suppressed_by,
        suppressed_at=datetime.utcnow(),
        reactivation_token=secrets.token_urlsafe(24),
    )
    db.add(entry)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = _active_suppression(db, email, phone)
        if existing:
            return existing
        raise
    db.refresh(entry)
    logger.info(
        "suppression_added id=%s type=%s source=%s email=%s phone=%s",
        entry.id, suppression_type, source, bool(email), bool(phone),
    )
    return entry


def reactivate_suppression(
    db: Session,
    entry_id: int | None = None,
    token: str | None = None,
    reactivated_by: str | None = None,
    reason: str | None = None,
) -> SuppressionEntry | None:
    if entry_id is not None:
        entry = db.get(SuppressionEntry, entry_id)
    elif token:
        entry = db.execute(
            select(SuppressionEntry).where(SuppressionEntry.reactivation_token == token)
        ).scalar_one_or_none()
    else:
        raise ConsentError("entry_id or token required")
    if entry is None:
        return None
    if entry.reactivated_at is None:
        entry.reactivated_at = datetime.utcnow()
        entry.reactivated_by = reactivated_by
        entry.reactivation_reason = reason
        db.commit()
        db.refresh(entry)
    return entry


def list_suppressions(
    db: Session,
    limit: int = 100,
    offset: int = 0,
    active_only: bool = True,
    search: str | None = None,
) -> tuple[list[SuppressionEntry], int]:
    q = select(SuppressionEntry)
    cq = select(func.count(SuppressionEntry.id))
    if active_only:
        q = q.where(SuppressionEntry.reactivated_at.is_(None))
        cq = cq.where(SuppressionEntry.reactivated_at.is_(None))
    if search:
        like = f"%{search.strip().lower()}%"
        cond = or_(SuppressionEntry.email.like(like), SuppressionEntry.phone.like(like))
        q = q.where(cond)
        cq = cq.where(cond)
    total = db.execute(cq).scalar() or 0
    rows = db.execute(q.order_by(SuppressionEntry.suppressed_at.desc()).offset(offset).limit(limit)).scalars().all()
    return list(rows), int(total)


def _check_token_scope(channel: str | None, consent_types: list[str]) -> None:
    if channel not in ("email", "sms"):
        raise ConsentError(f"unknown channel {channel}")
    unknown = [t for t in consent_types if t not in CONSENT_TYPES]
    if unknown:
        raise ConsentError(f"unknown consent type {unknown[0]}")


def generate_unsubscribe_token(
    customer_id: str,
    channel: str,
    email: str | None = None,
    phone: str | None = None,
    consent_types: list[str] | None = None,
    expires_days: int = 30,
) -> str:
    """Signed token for one-click unsubscribe links. Empty consent_types means all."""
    _check_token_scope(channel, list(consent_types or []))
    s = get_settings()
    payload = {
        "sub": str(customer_id),
        "type": "unsubscribe",
        "ch": channel,
        "em": normalize_email(email),
        "ph": normalize_phone(phone),
        "ct": list(consent_types or []),
        "exp": datetime.utcnow() + timedelta(days=expires_days),
    }
    return jwt.encode(payload, s.jwt_secret, algorithm=s.jwt_algorithm)


def process_unsubscribe(db: Session, token: str, ip_address: str | None = None) -> dict[str, Any]:
    """Withdraw consent for the token's types and suppress when every type was withdrawn."""
    s = get_settings()
    try:
        payload = jwt.decode(token, s.jwt_secret, algorithms=[s.jwt_algorithm])
    except JWTError:
        return {"success": False, "error": "invalid_or_expired_token"}
    if payload.get("type") != "unsubscribe":
        return {"success": False, "error": "invalid_or_expired_token"}
    customer_id = payload.get("sub")
    channel = payload.get("ch")
    requested = payload.get("ct") or []
    if not isinstance(requested, list):
        return {"success": False, "error": "invalid_token_scope"}
    types = list(requested) or list(CONSENT_TYPES)
    try:
        _check_token_scope(channel, types)
        for ct in types:
            record_consent(
                db, customer_id, channel, ct, False, "unsubscribe_page",
                ip_address=ip_address, commit=False,
            )
    except ConsentError as e:
        db.rollback()
        logger.warning("unsubscribe_rejected customer=%s error=%s", customer_id, e)
        return {"success": False, "error": "invalid_token_scope"}
    db.commit()
    suppressed = False
    email = payload.get("em") if channel == "email" else None
    phone = payload.get("ph") if channel == "sms" else None
    if set(types) >= set(CONSENT_TYPES) and (email or phone):
        add_suppression(
            db,
            email=email,
            phone=phone,
            suppression_type="unsubscribe",
            source="user_unsubscribe",
            reason="unsubscribe link",
        )
        suppressed = True
    logger.info("unsubscribe_processed customer=%s channel=%s types=%s", customer_id, channel, len(types))
    return {"success": True, "customer_id": customer_id, "channel": channel, "types": types, "suppressed": suppressed}
