"""Admin endpoints for consent records and the suppression list."""
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from salon_notify.backend.auth import admin_actor, get_current_admin
from salon_notify.backend.deps import get_db
from salon_notify.backend.models.consent import ConsentRecord, SuppressionEntry
from salon_notify.backend.services import consent
from salon_notify.backend.utils.api_errors import ok

router = APIRouter()


def _iso(v: datetime | None) -> str | None:
    return v.isoformat() if v else None


def serialize_consent(r: ConsentRecord) -> dict:
    return {
        "id": r.id,
        "customer_id": r.customer_id,
        "channel": r.channel,
        "consent_type": r.consent_type,
        "consented": r.consented,
        "consent_source": r.consent_source,
        "consent_timestamp": _iso(r.consent_timestamp),
        "updated_by": r.updated_by,
    }


def serialize_suppression(e: SuppressionEntry) -> dict:
    return {
        "id": e.id,
        "email": e.email,
        "phone": e.phone,
        "suppression_type": e.suppression_type,
        "source": e.source,
        "reason": e.reason,
        "suppressed_at": _iso(e.suppressed_at),
        "suppressed_by": e.suppressed_by,
        "active": e.active,
        "reactivated_at": _iso(e.reactivated_at),
        "reactivated_by": e.reactivated_by,
    }


class ConsentItem(BaseModel):
    channel: str
    consent_type: str
    consented: bool


class ConsentBody(BaseModel):
    consents: list[ConsentItem]
    source: str = "admin_update"


class SuppressionBody(BaseModel):
    email: str | None = None
    phone: str | None = None
    suppression_type: str = "admin_block"
    reason: str | None = None


class ReactivateBody(BaseModel):
    reason: str | None = None
    token: str | None = None


class GuardBody(BaseModel):
    customer_id: str | None = None
    email: str | None = None
    phone: str | None = None
    type: str
    channel: str
    consent_type: str | None = None


class UnsubscribeTokenBody(BaseModel):
    customer_id: str
    type: str
    email: str | None = None
    phone: str | None = None
    consent_types: list[str] = Field(default_factory=list)
    expires_days: int = 30


@router.get("/customers/{customer_id}")
def customer_consent(customer_id: str, db: Session = Depends(get_db), _: dict = Depends(get_current_admin)):
    rows = consent.get_customer_consent(db, customer_id)
    return ok({"customer_id": customer_id, "consents": [serialize_consent(r) for r in rows]})


@router.post("/customers/{customer_id}")
def record_customer_consent(
    customer_id: str,
    body: ConsentBody,
    db: Session = Depends(get_db),
    payload: dict = Depends(get_current_admin),
):
    try:
        rows = consent.record_bulk_consent(
            db,
            customer_id,
            [c.model_dump() for c in body.consents],
            body.source,
            updated_by=admin_actor(payload),
        )
    except consent.ConsentError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return ok({"customer_id": customer_id, "recorded": [serialize_consent(r) for r in rows]})


@router.post("/check")
def check_guard(body: GuardBody, db: Session = Depends(get_db), _: dict = Depends(get_current_admin)):
    consent_type = body.consent_type or consent.consent_type_for_channel(body.channel)
    decision = consent.evaluate(db, body.customer_id, body.email, body.phone, body.type, consent_type)
    return ok({
        "can_send": decision.can_send,
        "reason": decision.reason,
        "suppression_type": decision.suppression_type,
        "consent_type": consent_type,
    })


@router.get("/suppressions")
def list_suppressions(
    active_only: bool = Query(True),
    search: str | None = Query(None),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    _: dict = Depends(get_current_admin),
):
    rows, total = consent.list_suppressions(db, limit=limit, offset=offset, active_only=active_only, search=search)
    return ok({"items": [serialize_suppression(e) for e in rows], "total": total, "limit": limit, "offset": offset})


@router.post("/suppressions")
def add_suppression(
    body: SuppressionBody,
    db: Session = Depends(get_db),
    payload: dict = Depends(get_current_admin),
):
    try:
        entry = consent.add_suppression(
            db,
            email=body.email,
            phone=body.phone,
            suppression_type=body.suppression_type,
            source="admin_action",
            reason=body.reason,
            suppressed_by=admin_actor(payload),
        )
    except consent.ConsentError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return ok(serialize_suppression(entry))


@router.post("/suppressions/{entry_id}/reactivate")
def reactivate_suppression(
    entry_id: int,
    body: ReactivateBody | None = None,
    db: Session = Depends(get_db),
    payload: dict = Depends(get_current_admin),
):
    entry = consent.reactivate_suppression(
        db, entry_id=entry_id, reactivated_by=admin_actor(payload), reason=body.reason if body else None
    )
    if entry is None:
        raise HTTPException(status_code=404, detail="Suppression entry not found")
    return ok(serialize_suppression(entry))


@router.post("/unsubscribe-token")
def unsubscribe_token(body: UnsubscribeTokenBody, _: dict = Depends(get_current_admin)):
    try:
        token = consent.generate_unsubscribe_token(
            body.customer_id,
            body.type,
            email=body.email,
            phone=body.phone,
            consent_types=body.consent_types,
            expires_days=body.expires_days,
        )
    except consent.ConsentError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return ok({"token": token})
