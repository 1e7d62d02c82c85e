"""Scoped notification settings (global / location / user), stored in app_settings."""
from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass, fields
from datetime import datetime
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy.orm import Session

from salon_notify.backend.models.app_setting import AppSetting

logger = logging.getLogger(__name__)

KEY_PREFIX = "notification_settings"
SCOPES = ("global", "location", "user")


@dataclass
class NotificationSettings:
    email_enabled: bool = True
    sms_enabled: bool = True
    reminder_hours_before: int = 24
    quiet_hours_enabled: bool = True
    quiet_hours_start: str = "21:00"
    quiet_hours_end: str = "08:00"
    timezone: str = "Europe/Zurich"
    monthly_email_limit: int | None = None
    monthly_sms_limit: int | None = None
    budget_warning_threshold: float = 0.80
    budget_hard_cap: bool = True
    budget_cap_behavior: str = "skip"  # skip | delay
    cost_per_email_cents: int = 0
    cost_per_sms_cents: int = 5
    short_window_policy: str = "send"  # send | skip
    short_window_threshold_hours: int = 6
    dedupe_window_hours: int = 24
    batch_size: int = 50
    send_daily_schedule: bool = False
    daily_schedule_time: str = "08:00"

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)

    def limit_for(self, notification_type: str) -> int | None:
        return self.monthly_email_limit if notification_type == "email" else self.monthly_sms_limit

    def cost_for(self, notification_type: str) -> int:
        return self.cost_per_email_cents if notification_type == "email" else self.cost_per_sms_cents

    def type_enabled(self, notification_type: str) -> bool:
        return self.email_enabled if notification_type == "email" else self.sms_enabled


DEFAULTS = NotificationSettings().as_dict()

VALIDATION = {
    "reminder_hours_before": (1, 168),
    "monthly_email_limit": (0, 10_000_000),
    "monthly_sms_limit": (0, 10_000_000),
    "cost_per_email_cents": (0, 1000),
    "cost_per_sms_cents": (0, 1000),
    "short_window_threshold_hours": (0, 72),
    "dedupe_window_hours": (1, 168),
    "batch_size": (1, 500),
}
CHOICES = {
    "budget_cap_behavior": ("skip", "delay"),
    "short_window_policy": ("send", "skip"),
}
_BOOL_KEYS = ("email_enabled", "sms_enabled", "quiet_hours_enabled", "budget_hard_cap", "send_daily_schedule")
_NULLABLE_KEYS = ("monthly_email_limit", "monthly_sms_limit")
_HHMM_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


class SettingsValidationError(ValueError):
    pass


def settings_key(scope: str, scope_id: str | None = None) -> str:
    if scope not in SCOPES:
        raise SettingsValidationError(f"unknown scope {scope}")
    if scope == "global":
        return f"{KEY_PREFIX}:global"
    if not scope_id:
        raise SettingsValidationError(f"scope {scope} requires scope_id")
    return f"{KEY_PREFIX}:{scope}:{scope_id}"


def _raw(db: Session, key: str) -> dict[str, Any]:
    row = db.get(AppSetting, key)
    if not row or not isinstance(row.value_json, dict):
        return {}
    return {k: v for k, v in row.value_json.items() if k in DEFAULTS}


def _build(values: dict[str, Any]) -> NotificationSettings:
    known = {f.name for f in fields(NotificationSettings)}
    return NotificationSettings(**{k: v for k, v in values.items() if k in known})


def resolve_notification_settings(
    db: Session,
    location_id: str | None = None,
    user_id: str | None = None,
) -> NotificationSettings:
    """Defaults, then global, then location, then user overrides (most specific wins)."""
    merged = dict(DEFAULTS)
    merged.update(_raw(db, settings_key("global")))
    if location_id:
        merged.update(_raw(db, settings_key("location", location_id)))
    if user_id:
        merged.update(_raw(db, settings_key("user", user_id)))
    return _build(merged)


def get_scope_settings(db: Session, scope: str, scope_id: str | None = None) -> dict[str, Any]:
    """Only the overrides stored for this exact scope."""
    return _raw(db, settings_key(scope, scope_id))


def _clean(payload: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for k, v in payload.items():
        if k not in DEFAULTS:
            continue
        if k in _BOOL_KEYS:
            out[k] = bool(v)
        elif k in _NULLABLE_KEYS and v is None:
            out[k] = None
        elif k in VALIDATION:
            lo, hi = VALIDATION[k]
            try:
                out[k] = max(lo, min(hi, int(v)))
            except (TypeError, ValueError):
                raise SettingsValidationError(f"{k} must be an integer")
        elif k in CHOICES:
            if v not in CHOICES[k]:
                raise SettingsValidationError(f"{k} must be one of {', '.join(CHOICES[k])}")
            out[k] = v
        elif k in ("quiet_hours_start", "quiet_hours_end", "daily_schedule_time"):
            if not isinstance(v, str) or not _HHMM_RE.match(v):
                raise SettingsValidationError(f"{k} must be HH:MM")
            out[k] = v
        elif k == "timezone":
            try:
                ZoneInfo(str(v))
            except (ZoneInfoNotFoundError, ValueError):
                raise SettingsValidationError(f"unknown timezone {v}")
            out[k] = str(v)
        elif k == "budget_warning_threshold":
            try:
                out[k] = max(0.1, min(1.0, float(v)))
            except (TypeError, ValueError):
                raise SettingsValidationError(f"{k} must be a number")
    return out


def put_scope_settings(
    db: Session,
    scope: str,
    scope_id: str | None,
    payload: dict[str, Any],
    updated_by: str | None = None,
) -> dict[str, Any]:
    """Validate and merge overrides for one scope. Raises SettingsValidationError."""
    key = settings_key(scope, scope_id)
    merged = _raw(db, key)
    merged.update(_clean(payload))
    row = db.get(AppSetting, key)
    now = datetime.utcnow()
    if row:
        row.value_json = merged
        row.updated_at = now
        row.updated_by = updated_by
    else:
        db.add(AppSetting(key=key, value_json=merged, updated_at=now, updated_by=updated_by))
    db.commit()
    logger.info("notification_settings_updated key=%s fields=%s", key, sorted(merged))
    return merged
