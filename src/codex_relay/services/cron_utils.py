from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Dict, FrozenSet, Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import dateparser

from codex_relay.domain.errors import ValidationError

DEFAULT_TZ = "UTC"
SEARCH_HORIZON_DAYS = 366 * 5

_MONTH_NAMES: Dict[str, int] = {
    name: idx + 1
    for idx, name in enumerate(["jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec"])
}
_DAY_NAMES: Dict[str, int] = {
    name: idx for idx, name in enumerate(["sun", "mon", "tue", "wed", "thu", "fri", "sat"])
}


@dataclass(frozen=True)
class CronSpec:
    minutes: FrozenSet[int]
    hours: FrozenSet[int]
    days: FrozenSet[int]
    months: FrozenSet[int]
    weekdays: FrozenSet[int]
    days_restricted: bool
    weekdays_restricted: bool

    def matches_day(self, day: date) -> bool:
        if day.month not in self.months:
            return False
        dom_ok = day.day in self.days
        # cron counts Sunday as 0, Python counts Monday as 0.
        dow_ok = ((day.weekday() + 1) % 7) in self.weekdays
        if self.days_restricted and self.weekdays_restricted:
            return dom_ok or dow_ok
        return dom_ok and dow_ok


@dataclass(frozen=True)
class OneShotCron:
    cron: str
    run_at: datetime


def parse_cron(expr: str) -> CronSpec:
    fields = str(expr or "").strip().split()
    if len(fields) != 5:
        raise ValidationError("cron expression must contain 5 fields")
    m_field, h_field, dom_field, mon_field, dow_field = fields
    weekdays = {0 if v == 7 else v for v in _parse_field(dow_field, 0, 7, _DAY_NAMES)}
    return CronSpec(
        minutes=frozenset(_parse_field(m_field, 0, 59)),
        hours=frozenset(_parse_field(h_field, 0, 23)),
        days=frozenset(_parse_field(dom_field, 1, 31)),
        months=frozenset(_parse_field(mon_field, 1, 12, _MONTH_NAMES)),
        weekdays=frozenset(weekdays),
        days_restricted=not dom_field.startswith("*"),
        weekdays_restricted=not dow_field.startswith("*"),
    )


def validate_cron(expr: str) -> str:
    parse_cron(expr)
    return " ".join(str(expr).split())


def resolve_zone(tz_name: Optional[str]) -> ZoneInfo:
    name = str(tz_name or "").strip() or DEFAULT_TZ
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValidationError(f"Unknown timezone: {name}") from exc


def cron_next_run(cron_expr: str, after: datetime, tz_name: Optional[str] = None) -> datetime:
    """First minute matching ``cron_expr`` strictly after ``after``, in UTC.

    Fields are evaluated against wall-clock time in ``tz_name`` (UTC when
    unset); wall times skipped by a DST transition never match.
    """
    spec = parse_cron(cron_expr)
    tz = resolve_zone(tz_name)
    if after.tzinfo is None:
        after = after.replace(tzinfo=timezone.utc)
    local = after.astimezone(tz).replace(tzinfo=None)
    cursor = local.replace(second=0, microsecond=0) + timedelta(minutes=1)
    horizon = cursor + timedelta(days=SEARCH_HORIZON_DAYS)
    while cursor <= horizon:
        if not spec.matches_day(cursor.date()):
            cursor = datetime.combine(cursor.date() + timedelta(days=1), time(0, 0))
            continue
        if cursor.hour not in spec.hours:
            cursor = cursor.replace(minute=0) + timedelta(hours=1)
            continue
        if cursor.minute not in spec.minutes:
            cursor += timedelta(minutes=1)
            continue
        candidate = cursor.replace(tzinfo=tz).astimezone(timezone.utc)
        if candidate.astimezone(tz).replace(tzinfo=None) != cursor or candidate <= after:
            cursor += timedelta(minutes=1)
            continue
        return candidate
    raise ValidationError(f"Could not compute next run for '{cron_expr}'")


def parse_when(text: str, tz_name: Optional[str] = None, now: Optional[datetime] = None) -> Optional[datetime]:
    value = str(text or "").strip()
    if not value:
        return None
    tz = resolve_zone(tz_name)
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        parsed = None
    if parsed is not None:
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=tz)
        return parsed
    base = (now or datetime.now(timezone.utc)).astimezone(tz)
    parsed = dateparser.parse(
        value,
        settings={
            "TIMEZONE": tz.key,
            "TO_TIMEZONE": tz.key,
            "RETURN_AS_TIMEZONE_AWARE": True,
            "RELATIVE_BASE": base.replace(tzinfo=None),
            "PREFER_DATES_FROM": "future",
        },
    )
    return parsed


def build_one_shot_cron(
    at: Union[str, datetime],
    now: Optional[datetime] = None,
    tz_name: Optional[str] = None,
) -> OneShotCron:
    current = now or datetime.now(timezone.utc)
    if current.tzinfo is None:
        current = current.replace(tzinfo=timezone.utc)
    target = parse_when(at, tz_name=tz_name, now=current) if isinstance(at, str) else at
    if target is None:
        raise ValidationError("Invalid --at value. Use ISO date-time, e.g. 2026-02-21T16:00:00+09:00")
    if target.tzinfo is None:
        target = target.replace(tzinfo=resolve_zone(tz_name))
    local = target.astimezone(resolve_zone(tz_name)).replace(second=0, microsecond=0)
    if local <= current:
        raise ValidationError("--at must be a future date-time (minute precision)")
    # Day-of-week stays a wildcard; the run-once flag is what stops a yearly repeat.
    cron = f"{local.minute} {local.hour} {local.day} {local.month} *"
    return OneShotCron(cron=cron, run_at=local.astimezone(timezone.utc))


def _parse_field(token: str, min_value: int, max_value: int, names: Optional[Dict[str, int]] = None) -> set:
    values: set = set()
    for part in str(token or "").split(","):
        part = part.strip().lower()
        if not part:
            raise ValidationError(f"Empty cron field segment in '{token}'")
        step = 1
        has_step = "/" in part
        if has_step:
            part, step_raw = part.split("/", 1)
            step = _to_int(step_raw, token)
            if step <= 0:
                raise ValidationError(f"Invalid cron step in '{token}'")
        if part == "*":
            start, end = min_value, max_value
        elif "-" in part:
            start_raw, end_raw = part.split("-", 1)
            start, end = _field_value(start_raw, token, names), _field_value(end_raw, token, names)
        else:
            start = _field_value(part, token, names)
            end = max_value if has_step else start
        if not (min_value <= start <= max_value and min_value <= end <= max_value) or start > end:
            raise ValidationError(f"Cron field out of range: '{token}'")
        values.update(range(start, end + 1, step))
    return values


def _field_value(raw: str, token: str, names: Optional[Dict[str, int]]) -> int:
    key = raw.strip().lower()
    if names and key in names:
        return names[key]
    return _to_int(key, token)


def _to_int(raw: str, token: str) -> int:
    try:
        return int(raw)
    except ValueError as exc:
        raise ValidationError(f"Invalid cron field: '{token}'") from exc
