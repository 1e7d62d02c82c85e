"""Retry policy: most specific scope wins (provider, channel, global, built-in)."""
from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from salon_notify.backend.models.retry_config import RetryConfig
from salon_notify.backend.services.failures import FailureType

SCOPES = ("global", "channel", "provider")


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    initial_delay_minutes: int = 15
    backoff_multiplier: float = 2.0
    max_delay_minutes: int = 1440
    hard_bounce_retries: int = 0
    soft_bounce_retries: int = 3
    timeout_retries: int = 2
    rate_limit_retries: int = 5
    max_age_hours: int = 48
    rate_limit_per_minute: int = 60
    rate_limit_burst: int = 10
    scope: str = "default"
    scope_value: str = ""

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


VALIDATION = {
    "max_attempts": (1, 10),
    "initial_delay_minutes": (1, 1440),
    "max_delay_minutes": (1, 10080),
    "hard_bounce_retries": (0, 10),
    "soft_bounce_retries": (0, 10),
    "timeout_retries": (0, 10),
    "rate_limit_retries": (0, 20),
    "max_age_hours": (1, 720),
    "rate_limit_per_minute": (1, 10000),
    "rate_limit_burst": (1, 1000),
}


class RetryConfigError(ValueError):
    pass


def _from_row(row: RetryConfig) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=int(row.max_attempts),
        initial_delay_minutes=int(row.initial_delay_minutes),
        backoff_multiplier=float(row.backoff_multiplier),
        max_delay_minutes=int(row.max_delay_minutes),
        hard_bounce_retries=int(row.hard_bounce_retries),
        soft_bounce_retries=int(row.soft_bounce_retries),
        timeout_retries=int(row.timeout_retries),
        rate_limit_retries=int(row.rate_limit_retries),
        max_age_hours=int(row.max_age_hours),
        rate_limit_per_minute=int(row.rate_limit_per_minute),
        rate_limit_burst=int(row.rate_limit_burst),
        scope=row.scope,
        scope_value=row.scope_value or "",
    )


def _row(db: Session, scope: str, scope_value: str | None) -> RetryConfig | None:
    return db.execute(
        select(RetryConfig).where(RetryConfig.scope == scope, RetryConfig.scope_value == (scope_value or ""))
    ).scalar_one_or_none()


def resolve_retry_policy(db: Session, channel: str | None = None, provider: str | None = None) -> RetryPolicy:
    candidates = []
    if provider:
        candidates.append(("provider", provider))
    if channel:
        candidates.append(("channel", channel))
    candidates.append(("global", ""))
    for scope, value in candidates:
        row = _row(db, scope, value)
        if row is not None:
            return _from_row(row)
    return RetryPolicy()


def get_retry_config(db: Session, scope: str = "global", scope_value: str | None = None) -> RetryPolicy:
    """Stored config for exactly this scope, or the built-in defaults."""
    if scope not in SCOPES:
        raise RetryConfigError(f"unknown scope {scope}")
    row = _row(db, scope, scope_value)
    if row is None:
        return RetryPolicy(scope=scope, scope_value=scope_value or "")
    return _from_row(row)


def update_retry_config(
    db: Session,
    scope: str,
    scope_value: str | None,
    payload: dict[str, Any],
    updated_by: str | None = None,
) -> RetryPolicy:
    if scope not in SCOPES:
        raise RetryConfigError(f"unknown scope {scope}")
    if scope != "global" and not scope_value:
        raise RetryConfigError(f"scope {scope} requires scope_value")
    row = _row(db, scope, scope_value)
    if row is None:
        row = RetryConfig(scope=scope, scope_value=scope_value or "")
        base = RetryPolicy()
        for k in VALIDATION:
            setattr(row, k, getattr(base, k))
        row.backoff_multiplier = base.backoff_multiplier
        db.add(row)
    for k, v in payload.items():
        if v is None:
            continue
        if k in VALIDATION:
            lo, hi = VALIDATION[k]
            try:
                n = int(v)
            except (TypeError, ValueError):
                raise RetryConfigError(f"{k} must be an integer")
            if n < lo or n > hi:
                raise RetryConfigError(f"{k} must be between {lo} and {hi}")
            setattr(row, k, n)
        elif k == "backoff_multiplier":
            try:
                m = float(v)
            except (TypeError, ValueError):
                raise RetryConfigError("backoff_multiplier must be a number")
            if m < 1.0 or m > 10.0:
                raise RetryConfigError("backoff_multiplier must be between 1 and 10")
            row.backoff_multiplier = m
    if int(row.initial_delay_minutes) > int(row.max_delay_minutes):
        raise RetryConfigError("initial_delay_minutes must not exceed max_delay_minutes")
    row.updated_by = updated_by
    row.updated_at = datetime.utcnow()
    db.commit()
    db.refresh(row)
    return _from_row(row)


def compute_backoff(policy: RetryPolicy, attempts_before: int) -> timedelta:
    """Delay before the next attempt: initial * multiplier^n, capped at max_delay.

    `attempts_before` is the attempt count before the failure being reported,
    so the first retry waits exactly `initial_delay_minutes`.
    """
    n = max(0, int(attempts_before))
    minutes = policy.initial_delay_minutes * (policy.backoff_multiplier ** n)
    return timedelta(minutes=min(minutes, policy.max_delay_minutes))


def attempt_limit(policy: RetryPolicy, failure_type: FailureType) -> int:
    """Total attempts allowed for a request whose latest failure is `failure_type`."""
    if failure_type.is_permanent:
        return 0
    per_type = {
        FailureType.SOFT_BOUNCE: policy.soft_bounce_retries,
        FailureType.TIMEOUT: policy.timeout_retries,
        FailureType.RATE_LIMITED: policy.rate_limit_retries,
    }.get(failure_type)
    if per_type is None:
        return policy.max_attempts
    return min(policy.max_attempts, 1 + per_type)
