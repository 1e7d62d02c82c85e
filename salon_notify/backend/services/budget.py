"""Budget ledger: monthly email/SMS counts and costs per scope, soft and hard caps."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from salon_notify.backend.models.budget import BudgetPeriod
from salon_notify.backend.services.notification_settings import NotificationSettings
from salon_notify.backend.services.scheduling import local_period

logger = logging.getLogger(__name__)

BUDGET_SCOPES = ("global", "location", "user")


@dataclass
class BudgetCheck:
    can_send: bool
    usage_pct: float
    limit_reached: bool
    warning: bool = False
    count: int = 0
    limit: int | None = None
    reason: str | None = None


def _norm_scope(scope: str | None, scope_id: str | None) -> tuple[str, str]:
    scope = scope or "global"
    if scope not in BUDGET_SCOPES:
        scope = "global"
    return scope, "" if scope == "global" else str(scope_id or "")


def _period_row(db: Session, scope: str, scope_id: str, year: int, month: int) -> BudgetPeriod | None:
    return db.execute(
        select(BudgetPeriod).where(
            BudgetPeriod.scope == scope,
            BudgetPeriod.scope_id == scope_id,
            BudgetPeriod.year == year,
            BudgetPeriod.month == month,
        )
    ).scalar_one_or_none()


def _ensure_period(db: Session, scope: str, scope_id: str, year: int, month: int) -> None:
    if _period_row(db, scope, scope_id, year, month) is not None:
        return
    db.add(BudgetPeriod(scope=scope, scope_id=scope_id, year=year, month=month))
    try:
        db.commit()
    except IntegrityError:
        # another worker created the row first
        db.rollback()


def _count_for(row: BudgetPeriod | None, notification_type: str) -> int:
    if row is None:
        return 0
    return int((row.email_count if notification_type == "email" else row.sms_count) or 0)


def check_and_reserve(
    db: Session,
    notification_type: str,
    scope: str | None,
    scope_id: str | None,
    settings: NotificationSettings,
    now: datetime | None = None,
) -> BudgetCheck:
    """Read-side budget check. Nothing is reserved; counters move only in commit()."""
    now = now or datetime.utcnow()
    scope, scope_id = _norm_scope(scope, scope_id)
    limit = settings.limit_for(notification_type)
    if limit is None:
        return BudgetCheck(can_send=True, usage_pct=0.0, limit_reached=False)
    year, month = local_period(now, settings.timezone)
    row = _period_row(db, scope, scope_id, year, month)
    count = _count_for(row, notification_type)
    usage = (count / limit) if limit > 0 else 1.0
    usage_pct = round(usage * 100, 2)

    if usage >= 1.0:
        if row is not None and settings.budget_hard_cap and row.hard_cap_reached_at is None:
            row.hard_cap_reached_at = now
            db.commit()
            logger.warning(
                "budget_hard_cap_reached scope=%s scope_id=%s type=%s count=%s limit=%s",
                scope, scope_id, notification_type, count, limit,
            )
        if settings.budget_hard_cap:
            return BudgetCheck(
                can_send=False,
                usage_pct=usage_pct,
                limit_reached=True,
                warning=True,
                count=count,
                limit=limit,
                reason=f"monthly {notification_type} budget exhausted ({count}/{limit})",
            )
        return BudgetCheck(True, usage_pct, True, True, count, limit, "over budget, soft cap")

    warning = usage >= settings.budget_warning_threshold
    if warning and row is not None and row.warning_sent_at is None:
        row.warning_sent_at = now
        db.commit()
        logger.warning(
            "budget_warning scope=%s scope_id=%s type=%s usage_pct=%s",
            scope, scope_id, notification_type, usage_pct,
        )
    return BudgetCheck(True, usage_pct, False, warning, count, limit)


def commit(
    db: Session,
    notification_type: str,
    scope: str | None,
    scope_id: str | None,
    settings: NotificationSettings,
    now: datetime | None = None,
) -> None:
    """Count one confirmed send. The increment is a single UPDATE, safe under concurrent workers."""
    now = now or datetime.utcnow()
    scope, scope_id = _norm_scope(scope, scope_id)
    year, month = local_period(now, settings.timezone)
    _ensure_period(db, scope, scope_id, year, month)
    cost = int(settings.cost_for(notification_type) or 0)
    if notification_type == "email":
        values = {
            "email_count": BudgetPeriod.email_count + 1,
            "email_cost_cents": BudgetPeriod.email_cost_cents + cost,
        }
    else:
        values = {
            "sms_count": BudgetPeriod.sms_count + 1,
            "sms_cost_cents": BudgetPeriod.sms_cost_cents + cost,
        }
    values["updated_at"] = now
    where = (
        BudgetPeriod.scope == scope,
        BudgetPeriod.scope_id == scope_id,
        BudgetPeriod.year == year,
        BudgetPeriod.month == month,
    )
    db.execute(
        update(BudgetPeriod).where(*where).values(**values).execution_options(synchronize_session=False)
    )
    db.commit()

    row = _period_row(db, scope, scope_id, year, month)
    if row is None:
        return
    db.refresh(row)
    for kind in ("email", "sms"):
        lim = settings.limit_for(kind)
        if lim:
            setattr(row, f"{kind}_budget_used_pct", round(_count_for(row, kind) / lim * 100, 2))
    db.commit()


def get_budget_usage(
    db: Session,
    scope: str | None,
    scope_id: str | None,
    settings: NotificationSettings,
    now: datetime | None = None,
) -> dict[str, Any]:
    now = now or datetime.utcnow()
    scope, scope_id = _norm_scope(scope, scope_id)
    year, month = local_period(now, settings.timezone)
    row = _period_row(db, scope, scope_id, year, month)
    out: dict[str, Any] = {"scope": scope, "scope_id": scope_id, "year": year, "month": month}
    for kind in ("email", "sms"):
        count = _count_for(row, kind)
        lim = settings.limit_for(kind)
        pct = round(count / lim * 100, 2) if lim else 0.0
        cost = int(getattr(row, f"{kind}_cost_cents") or 0) if row else 0
        out[kind] = {
            "count": count,
            "limit": lim,
            "cost_cents": cost,
            "usage_pct": pct,
            "warning": bool(lim) and pct >= settings.budget_warning_threshold * 100,
            "limit_reached": bool(lim) and count >= lim,
        }
    out["warning_sent_at"] = row.warning_sent_at.isoformat() if row and row.warning_sent_at else None
    out["hard_cap_reached_at"] = row.hard_cap_reached_at.isoformat() if row and row.hard_cap_reached_at else None
    return out


def get_budget_alerts(db: Session, settings: NotificationSettings, now: datetime | None = None) -> list[dict[str, Any]]:
    """Periods of the current month that crossed the warning threshold or hit the cap."""
    now = now or datetime.utcnow()
    year, month = local_period(now, settings.timezone)
    rows = db.execute(
        select(BudgetPeriod).where(
            BudgetPeriod.year == year,
            BudgetPeriod.month == month,
            or_(BudgetPeriod.warning_sent_at.is_not(None), BudgetPeriod.hard_cap_reached_at.is_not(None)),
        ).order_by(BudgetPeriod.updated_at.desc())
    ).scalars().all()
    out = []
    for r in rows:
        out.append({
            "scope": r.scope,
            "scope_id": r.scope_id,
            "year": r.year,
            "month": r.month,
            "level": "hard_cap" if r.hard_cap_reached_at else "warning",
            "email_count": r.email_count,
            "sms_count": r.sms_count,
            "email_budget_used_pct": float(r.email_budget_used_pct) if r.email_budget_used_pct is not None else None,
            "sms_budget_used_pct": float(r.sms_budget_used_pct) if r.sms_budget_used_pct is not None else None,
            "warning_sent_at": r.warning_sent_at.isoformat() if r.warning_sent_at else None,
            "hard_cap_reached_at": r.hard_cap_reached_at.isoformat() if r.hard_cap_reached_at else None,
        })
    return out
