"""Quiet hours, timezone/DST handling and short-window checks.

All inputs and outputs are naive UTC datetimes, like the rest of the storage
layer. Wall-clock reasoning happens in the salon timezone via zoneinfo.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo


@dataclass
class SendTimeDecision:
    send_at: datetime
    delayed: bool
    reason: str | None = None


@dataclass
class ShortWindowDecision:
    in_short_window: bool
    skip: bool
    bypass_quiet_hours: bool
    reason: str | None = None


def parse_hhmm(value: str) -> time:
    hh, mm = value.strip().split(":", 1)
    return time(int(hh), int(mm))


def to_local(utc_naive: datetime, tz: ZoneInfo) -> datetime:
    return utc_naive.replace(tzinfo=timezone.utc).astimezone(tz)


def local_to_utc(day: date, at: time, tz: ZoneInfo) -> datetime:
    """Civil date/time in `tz` to naive UTC, using the offset valid on that date.

    A wall time that does not exist (spring-forward gap) resolves with the
    pre-transition offset, i.e. it lands just after the gap.
    """
    local = datetime.combine(day, at).replace(tzinfo=tz, fold=0)
    return local.astimezone(timezone.utc).replace(tzinfo=None)


def in_quiet_hours(local_t: time, start: time, end: time) -> bool:
    if start == end:
        return False
    if start < end:
        return start <= local_t < end
    # overnight window, e.g. 21:00-08:00
    return local_t >= start or local_t < end


def resolve_send_time(
    desired: datetime,
    tz_name: str,
    quiet_start: str,
    quiet_end: str,
    enabled: bool = True,
) -> SendTimeDecision:
    """Move `desired` out of the quiet window; unchanged when it is already outside."""
    if desired.tzinfo is not None:
        desired = desired.astimezone(timezone.utc).replace(tzinfo=None)
    if not enabled:
        return SendTimeDecision(send_at=desired, delayed=False)
    tz = ZoneInfo(tz_name)
    start = parse_hhmm(quiet_start)
    end = parse_hhmm(quiet_end)
    local = to_local(desired, tz)
    if not in_quiet_hours(local.time(), start, end):
        return SendTimeDecision(send_at=desired, delayed=False)

    target_day = local.date()
    if start > end and local.time() >= start:
        # evening part of an overnight window ends tomorrow
        target_day = target_day + timedelta(days=1)
    send_at = local_to_utc(target_day, end, tz)
    if send_at <= desired:
        # only possible around a DST gap; never move backwards
        send_at = desired
    return SendTimeDecision(
        send_at=send_at,
        delayed=send_at != desired,
        reason=f"quiet_hours {quiet_start}-{quiet_end} {tz_name}",
    )


def check_short_window(
    send_at: datetime,
    deadline_at: datetime | None,
    threshold_hours: int,
    policy: str,
    now: datetime,
) -> ShortWindowDecision:
    """Short window: the remaining time until the deadline is below the threshold.

    policy=send sends as early as possible (quiet hours are bypassed);
    policy=skip drops the notification.
    """
    if deadline_at is None:
        return ShortWindowDecision(False, False, False)
    if send_at >= deadline_at:
        return ShortWindowDecision(True, True, False, "deadline_passed")
    remaining = deadline_at - max(now, send_at)
    if remaining >= timedelta(hours=threshold_hours):
        return ShortWindowDecision(False, False, False)
    if policy == "skip":
        return ShortWindowDecision(True, True, False, "short_window_skip")
    return ShortWindowDecision(True, False, True, "short_window_send")


def next_month_start(now: datetime, tz_name: str) -> datetime:
    """First instant of the next calendar month in `tz_name`, as naive UTC."""
    tz = ZoneInfo(tz_name)
    local = to_local(now, tz)
    if local.month == 12:
        first = date(local.year + 1, 1, 1)
    else:
        first = date(local.year, local.month + 1, 1)
    return local_to_utc(first, time(0, 0), tz)


def local_period(now: datetime, tz_name: str) -> tuple[int, int]:
    """(year, month) of `now` in the salon timezone; budget periods follow local months."""
    local = to_local(now, ZoneInfo(tz_name))
    return local.year, local.month


def next_local_time(hhmm: str, tz_name: str, after: datetime) -> datetime:
    """Next occurrence of wall time `hhmm` strictly after `after` (naive UTC in and out)."""
    tz = ZoneInfo(tz_name)
    at = parse_hhmm(hhmm)
    local = to_local(after, tz)
    candidate = local_to_utc(local.date(), at, tz)
    if candidate <= after:
        candidate = local_to_utc(local.date() + timedelta(days=1), at, tz)
    return candidate
