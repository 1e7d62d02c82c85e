"""Admin endpoints for retry policy."""
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from salon_notify.backend.auth import admin_actor, get_current_admin
from salon_notify.backend.deps import get_db
from salon_notify.backend.services.retry_config import (
    RetryConfigError,
    get_retry_config,
    resolve_retry_policy,
    update_retry_config,
)
from salon_notify.backend.utils.api_errors import ok

router = APIRouter()


class RetryConfigBody(BaseModel):
    scope: str = "global"
    scope_value: str | None = None
    max_attempts: int | None = None
    initial_delay_minutes: int | None = None
    backoff_multiplier: float | None = None
    max_delay_minutes: int | None = None
    hard_bounce_retries: int | None = None
    soft_bounce_retries: int | None = None
    timeout_retries: int | None = None
    rate_limit_retries: int | None = None
    max_age_hours: int | None = None
    rate_limit_per_minute: int | None = None
    rate_limit_burst: int | None = None


@router.get("")
def read_retry_config(
    scope: str = Query("global"),
    scope_value: str | None = Query(None),
    db: Session = Depends(get_db),
    _: dict = Depends(get_current_admin),
):
    try:
        return ok(get_retry_config(db, scope, scope_value).as_dict())
    except RetryConfigError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/effective")
def effective_retry_config(
    channel: str | None = Query(None),
    provider: str | None = Query(None),
    db: Session = Depends(get_db),
    _: dict = Depends(get_current_admin),
):
    return ok(resolve_retry_policy(db, channel=channel, provider=provider).as_dict())


@router.put("")
def write_retry_config(
    body: RetryConfigBody,
    db: Session = Depends(get_db),
    payload: dict = Depends(get_current_admin),
):
    values = body.model_dump(exclude={"scope", "scope_value"}, exclude_none=True)
    try:
        policy = update_retry_config(db, body.scope, body.scope_value, values, updated_by=admin_actor(payload))
    except RetryConfigError as e:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(e))
    return ok(policy.as_dict())
