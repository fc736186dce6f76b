"""Time-off-in-lieu aggregation.

Pure functions over session records and a settings snapshot. Nothing here
reads the clock, the database or the environment: the reference timezone is
always passed in explicitly, and all date keys (``YYYY-MM-DD``) are local
calendar dates in that zone.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import date, datetime, time, timedelta, timezone
from typing import Protocol
from zoneinfo import ZoneInfo

from .models import DailyTotal, DayChunk, PeriodSummary, RoundingRule, SessionDetail, Settings

DEFAULT_TIMEZONE = "Australia/Perth"

_ROUNDING_INTERVALS = {
    RoundingRule.NEAREST_5.value: 5,
    RoundingRule.NEAREST_10.value: 10,
    RoundingRule.NEAREST_15.value: 15,
}


class IntervalLike(Protocol):
    started_at: datetime
    ended_at: datetime | None


class SessionLike(IntervalLike, Protocol):
    id: str
    breaks: Sequence[IntervalLike]


def _as_utc(value: datetime) -> datetime:
    # Stored instants are UTC; a naive value is read as UTC rather than rejected.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _whole_minutes(start: datetime, end: datetime) -> int:
    seconds = (_as_utc(end) - _as_utc(start)).total_seconds()
    if seconds < 0:
        return -int(-seconds // 60)
    return int(seconds // 60)


def apply_rounding(minutes: int, rule: RoundingRule | str) -> int:
    """Snap ``minutes`` to the nearest multiple of the rule's interval.

    Halves round towards positive infinity (125 -> 130 for NEAREST_10).
    ``NONE`` and any unrecognised rule leave the value untouched so that
    legacy stored rule names keep working.
    """
    if isinstance(rule, RoundingRule):
        rule = rule.value
    interval = _ROUNDING_INTERVALS.get(rule) if isinstance(rule, str) else None
    if interval is None:
        return minutes
    return interval * ((2 * minutes + interval) // (2 * interval))


def calculate_break_minutes(breaks: Iterable[IntervalLike]) -> int:
    """Total break time in whole minutes; inverted breaks count as zero."""
    total = 0
    for brk in breaks:
        if brk.ended_at is None:
            continue
        total += max(0, _whole_minutes(brk.started_at, brk.ended_at))
    return total


def calculate_session_minutes(session: IntervalLike) -> int:
    """Net worked minutes: gross span minus breaks, never below zero.

    Open sessions and sessions that end at or before their start yield 0.
    """
    if session.ended_at is None:
        return 0

    gross = _whole_minutes(session.started_at, session.ended_at)
    if gross <= 0:
        return 0

    breaks = getattr(session, "breaks", None) or ()
    return max(0, gross - calculate_break_minutes(breaks))


def split_session_by_day(started_at: datetime, ended_at: datetime, tz: ZoneInfo) -> list[DayChunk]:
    """Partition ``[started_at, ended_at)`` into local calendar days.

    Each day runs up to the local start of the next day (exclusive), so a
    session ending exactly at midnight produces no trailing empty chunk and
    DST days contribute their real elapsed minutes. Only days with at least
    one whole minute are returned, oldest first.
    """
    start = _as_utc(started_at)
    end = _as_utc(ended_at)

    if end <= start:
        return []

    chunks: list[DayChunk] = []
    cursor = start

    while cursor < end:
        local_day = cursor.astimezone(tz).date()
        next_midnight_utc = local_day_start_utc(local_day + timedelta(days=1), tz)

        chunk_end = min(end, next_midnight_utc)
        minutes = _whole_minutes(cursor, chunk_end)
        if minutes > 0:
            chunks.append(DayChunk(date=local_day.isoformat(), minutes=minutes))

        cursor = chunk_end

    return chunks


def _share(session_minutes: int, chunk_minutes: int, total_chunk_minutes: int) -> int:
    # round(session_minutes * chunk / total) with halves going up, in integers.
    if total_chunk_minutes <= 0:
        return 0
    return (2 * session_minutes * chunk_minutes + total_chunk_minutes) // (2 * total_chunk_minutes)


def calculate_daily_totals(
    sessions: Iterable[SessionLike],
    settings: Settings,
    tz: ZoneInfo,
) -> list[DailyTotal]:
    """Aggregate closed sessions into per-day worked and TOIL minutes.

    A session's net minutes are spread over the days its wall-clock span
    touches in proportion to each day's share of the gross span; each share
    is rounded on its own, so the shares may not add back up exactly. The
    session's detail entry is attached to its local start date only. Each
    day's total is rounded per ``settings.rounding_rule`` before being
    compared with ``settings.standard_daily_minutes``.
    """
    totals: dict[str, int] = {}
    details: dict[str, list[SessionDetail]] = {}

    closed = [s for s in sessions if s.ended_at is not None]
    closed.sort(key=lambda s: (_as_utc(s.started_at), str(s.id)))

    for session in closed:
        session_minutes = calculate_session_minutes(session)
        chunks = split_session_by_day(session.started_at, session.ended_at, tz)
        total_chunk_minutes = sum(chunk.minutes for chunk in chunks)
        start_date = local_date_key(session.started_at, tz)

        for chunk in chunks:
            totals[chunk.date] = totals.get(chunk.date, 0) + _share(
                session_minutes, chunk.minutes, total_chunk_minutes
            )
            day_details = details.setdefault(chunk.date, [])

            if chunk.date == start_date:
                day_details.append(
                    SessionDetail(
                        id=session.id,
                        started_at=session.started_at,
                        ended_at=session.ended_at,
                        minutes=session_minutes,
                    )
                )

    days: list[DailyTotal] = []
    for day_key in sorted(totals):
        rounded = apply_rounding(totals[day_key], settings.rounding_rule)
        raw_til = rounded - settings.standard_daily_minutes
        til = raw_til if settings.allow_negative_til else max(0, raw_til)
        days.append(
            DailyTotal(
                date=day_key,
                total_minutes=rounded,
                til_minutes=til,
                sessions=tuple(details[day_key]),
            )
        )
    return days


def summarize_period(days: Sequence[DailyTotal], from_date: str, to_date: str) -> PeriodSummary:
    return PeriodSummary(
        from_date=from_date,
        to_date=to_date,
        days=tuple(days),
        total_worked_minutes=sum(day.total_minutes for day in days),
        total_til_minutes=sum(day.til_minutes for day in days),
    )


def local_date_key(instant: datetime, tz: ZoneInfo) -> str:
    return _as_utc(instant).astimezone(tz).date().isoformat()


def local_day_start_utc(day: date | str, tz: ZoneInfo) -> datetime:
    """UTC instant of local midnight at the start of ``day``."""
    if isinstance(day, str):
        day = date.fromisoformat(day)
    return datetime.combine(day, time.min, tzinfo=tz).astimezone(timezone.utc)


def local_day_end_utc(day: date | str, tz: ZoneInfo) -> datetime:
    """Last representable UTC instant that still falls on local ``day``."""
    if isinstance(day, str):
        day = date.fromisoformat(day)
    return local_day_start_utc(day + timedelta(days=1), tz) - timedelta(microseconds=1)


def format_minutes(minutes: int) -> str:
    """Render minutes as ``h:mm``; negatives get a leading ``-``."""
    sign = "-" if minutes < 0 else ""
    hours, mins = divmod(abs(int(minutes)), 60)
    return f"{sign}{hours}:{mins:02d}"
