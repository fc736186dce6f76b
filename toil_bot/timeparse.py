from __future__ import annotations

import re
from datetime import date, datetime, time, timezone
from zoneinfo import ZoneInfo

from .errors import ValidationError

_DATE_KEY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_CLOCK_RE = re.compile(r"^(\d{1,2}):(\d{2})$")


def parse_iso_utc(value: str | None) -> datetime | None:
    """Parse an ISO timestamp and normalize to UTC."""
    if not value:
        return None

    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        # Stored values should be timezone-aware; treat naive values as UTC for resilience.
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_date_key(value: str) -> str:
    """Validate a ``YYYY-MM-DD`` local date key and return it unchanged."""
    if not _DATE_KEY_RE.match(value or ""):
        raise ValidationError(f"Must be YYYY-MM-DD: {value!r}")
    try:
        date.fromisoformat(value)
    except ValueError as exc:
        raise ValidationError(f"Not a calendar date: {value!r}") from exc
    return value


def parse_user_time(value: str, tz: ZoneInfo, now_utc: datetime) -> datetime:
    """Turn user input into a UTC instant.

    Accepts ``HH:MM`` (local wall-clock time on today's local date) or an
    ISO-8601 timestamp. ISO values without an offset are local wall-clock
    time in ``tz``.
    """
    text = (value or "").strip()
    match = _CLOCK_RE.match(text)
    if match:
        hour, minute = int(match.group(1)), int(match.group(2))
        if hour > 23 or minute > 59:
            raise ValidationError(f"Invalid time of day: {text!r}")
        today_local = now_utc.astimezone(tz).date()
        local = datetime.combine(today_local, time(hour, minute), tzinfo=tz)
        return local.astimezone(timezone.utc)

    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as exc:
        raise ValidationError(f"Expected HH:MM or an ISO-8601 timestamp, got {text!r}") from exc

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=tz)
    return parsed.astimezone(timezone.utc)


def remaining_cooldown_seconds(
    last_run_iso_utc: str | None,
    cooldown_seconds: int,
    now_utc: datetime,
) -> int:
    """Return remaining global cooldown seconds for /report-now."""
    if cooldown_seconds <= 0:
        return 0

    last_run = parse_iso_utc(last_run_iso_utc)
    if last_run is None:
        return 0

    elapsed = int((now_utc.astimezone(timezone.utc) - last_run).total_seconds())
    return max(0, cooldown_seconds - elapsed)
