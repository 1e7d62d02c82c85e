"""Public unsubscribe links and token-based reactivation."""
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel
from sqlalchemy.orm import Session

from salon_notify.backend.deps import get_db
from salon_notify.backend.services import consent
from salon_notify.backend.utils.api_errors import ok

router = APIRouter()


class UnsubscribeBody(BaseModel):
    token: str


class ResubscribeBody(BaseModel):
    token: str
    reason: str | None = None


def _unsubscribe(db: Session, token: str, request: Request) -> dict:
    ip = request.client.host if request.client else None
    out = consent.process_unsubscribe(db, token, ip_address=ip)
    if not out.get("success"):
        raise HTTPException(status_code=400, detail=out.get("error") or "invalid_or_expired_token")
    return ok({k: v for k, v in out.items() if k != "success"})


@router.get("/unsubscribe")
def unsubscribe_link(request: Request, token: str = Query(...), db: Session = Depends(get_db)):
    return _unsubscribe(db, token, request)


@router.post("/unsubscribe")
def unsubscribe_post(body: UnsubscribeBody, request: Request, db: Session = Depends(get_db)):
    return _unsubscribe(db, body.token, request)


@router.post("/resubscribe")
def resubscribe(body: ResubscribeBody, db: Session = Depends(get_db)):
    entry = consent.reactivate_suppression(
        db, token=body.token, reactivated_by="recipient", reason=body.reason or "self_service"
    )
    if entry is None:
        raise HTTPException(status_code=404, detail="Unknown reactivation token")
    return ok({"reactivated": True})
