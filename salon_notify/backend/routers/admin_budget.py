"""Admin endpoints for budget usage and scoped notification settings."""
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from salon_notify.backend.auth import admin_actor, get_current_admin
from salon_notify.backend.deps import get_db
from salon_notify.backend.services import budget
from salon_notify.backend.services.notification_settings import (
    SettingsValidationError,
    get_scope_settings,
    put_scope_settings,
    resolve_notification_settings,
)
from salon_notify.backend.utils.api_errors import ok

router = APIRouter()
settings_router = APIRouter()

_SCOPES = ("global", "location", "user")


def _scoped(db: Session, scope: str, scope_id: str | None):
    if scope not in _SCOPES:
        raise HTTPException(status_code=400, detail=f"unknown scope {scope}")
    if scope != "global" and not scope_id:
        raise HTTPException(status_code=400, detail=f"scope {scope} requires scope_id")
    return resolve_notification_settings(
        db,
        location_id=scope_id if scope == "location" else None,
        user_id=scope_id if scope == "user" else None,
    )


@router.get("/usage")
def budget_usage(
    scope: str = Query("global"),
    scope_id: str | None = Query(None),
    db: Session = Depends(get_db),
    _: dict = Depends(get_current_admin),
):
    settings = _scoped(db, scope, scope_id)
    return ok(budget.get_budget_usage(db, scope, scope_id, settings))


@router.get("/alerts")
def budget_alerts(db: Session = Depends(get_db), _: dict = Depends(get_current_admin)):
    settings = resolve_notification_settings(db)
    return ok({"alerts": budget.get_budget_alerts(db, settings)})


@settings_router.get("/notifications")
def read_notification_settings(
    scope: str = Query("global"),
    scope_id: str | None = Query(None),
    db: Session = Depends(get_db),
    _: dict = Depends(get_current_admin),
):
    effective = _scoped(db, scope, scope_id)
    return ok({
        "scope": scope,
        "scope_id": scope_id,
        "overrides": get_scope_settings(db, scope, scope_id),
        "effective": effective.as_dict(),
    })


@settings_router.put("/notifications")
def write_notification_settings(
    body: dict,
    scope: str = Query("global"),
    scope_id: str | None = Query(None),
    db: Session = Depends(get_db),
    payload: dict = Depends(get_current_admin),
):
    _scoped(db, scope, scope_id)
    try:
        overrides = put_scope_settings(db, scope, scope_id, body, updated_by=admin_actor(payload))
    except SettingsValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return ok({"scope": scope, "scope_id": scope_id, "overrides": overrides})
