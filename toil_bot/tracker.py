from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import replace
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from .db import Database
from .errors import NoOpenSessionError, SessionNotFoundError, ValidationError
from .models import (
    Break,
    ClockInResult,
    CreateSessionResult,
    PeriodSummary,
    RoundingRule,
    Session,
    SessionSource,
    Settings,
)
from .til import (
    calculate_daily_totals,
    calculate_session_minutes,
    local_date_key,
    local_day_end_utc,
    local_day_start_utc,
    summarize_period,
)
from .timeparse import parse_date_key

# A clock-in is treated as a repeat only if the open session started this recently.
OPEN_SESSION_LOOKBACK = timedelta(hours=8)
DEFAULT_SUMMARY_DAYS = 14
MAX_STANDARD_DAILY_MINUTES = 1440

_UNSET = object()


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TimesheetService:
    def __init__(self, db: Database, tz: ZoneInfo, logger: logging.Logger | None = None) -> None:
        self.db = db
        self.tz = tz
        self.logger = logger or logging.getLogger(__name__)

    # -- clocking ---------------------------------------------------------

    def clock_in(
        self,
        started_at_utc: datetime | None = None,
        *,
        location_label: str | None = None,
        latitude: float | None = None,
        longitude: float | None = None,
        notes: str | None = None,
        source: str = SessionSource.MANUAL.value,
        idempotency_key: str | None = None,
        now_utc: datetime | None = None,
    ) -> ClockInResult:
        now = now_utc or utc_now()
        _check_coordinates(latitude, longitude)

        existing = self.db.find_open_session(since_utc=now - OPEN_SESSION_LOOKBACK)
        if existing is not None:
            self.logger.debug("Ignoring duplicate clock-in, session %s still open", existing.id)
            return ClockInResult(session=existing, already_clocked_in=True)

        session = self.db.create_session(
            started_at_utc or now,
            source=source,
            location_label=location_label,
            latitude=latitude,
            longitude=longitude,
            notes=notes,
        )
        self.db.add_audit_event(
            "CLOCK_IN",
            {
                "sessionId": session.id,
                "startedAt": session.started_at,
                "source": source,
                "idempotencyKey": idempotency_key,
            },
        )
        self.logger.info("Clocked in: session=%s started=%s", session.id, session.started_at.isoformat())
        return ClockInResult(session=session, already_clocked_in=False)

    def clock_out(
        self,
        ended_at_utc: datetime | None = None,
        *,
        idempotency_key: str | None = None,
    ) -> Session:
        open_session = self.db.find_open_session()
        if open_session is None:
            raise NoOpenSessionError("No open session found. Please clock in before clocking out.")

        ended = ended_at_utc or utc_now()
        session = self.db.update_session(open_session.id, ended_at=ended)
        self.db.add_audit_event(
            "CLOCK_OUT",
            {"sessionId": session.id, "endedAt": session.ended_at, "idempotencyKey": idempotency_key},
        )
        self.logger.info(
            "Clocked out: session=%s worked=%sm", session.id, calculate_session_minutes(session)
        )
        return session

    # -- manual records ---------------------------------------------------

    def create_session(
        self,
        started_at_utc: datetime,
        ended_at_utc: datetime | None = None,
        *,
        breaks: Sequence[Break] = (),
        location_label: str | None = None,
        latitude: float | None = None,
        longitude: float | None = None,
        notes: str | None = None,
    ) -> CreateSessionResult:
        _check_coordinates(latitude, longitude)

        # Overlaps are reported back, not rejected.
        overlapping = self.db.find_overlapping_session(started_at_utc, ended_at_utc)
        session = self.db.create_session(
            started_at_utc,
            ended_at_utc,
            source=SessionSource.MANUAL.value,
            location_label=location_label,
            latitude=latitude,
            longitude=longitude,
            notes=notes,
            breaks=breaks,
        )
        if overlapping is not None:
            self.logger.warning("Session %s overlaps existing session %s", session.id, overlapping)
        return CreateSessionResult(session=session, overlapping_session_id=overlapping)

    def edit_session(
        self,
        session_id: str,
        *,
        started_at_utc: datetime | object = _UNSET,
        ended_at_utc: datetime | None | object = _UNSET,
        location_label: str | None | object = _UNSET,
        latitude: float | None | object = _UNSET,
        longitude: float | None | object = _UNSET,
        notes: str | None | object = _UNSET,
        breaks: Sequence[Break] | None = None,
    ) -> Session:
        """Apply a partial edit. Omitted fields are left alone; ``breaks`` replaces all breaks."""
        if self.db.get_session(session_id) is None:
            raise SessionNotFoundError(f"Session not found: {session_id}")

        requested = {
            "started_at": started_at_utc,
            "ended_at": ended_at_utc,
            "location_label": location_label,
            "latitude": latitude,
            "longitude": longitude,
            "notes": notes,
        }
        changes = {name: value for name, value in requested.items() if value is not _UNSET}
        _check_coordinates(changes.get("latitude"), changes.get("longitude"))

        if breaks is not None:
            self.db.replace_breaks(session_id, breaks)

        session = self.db.update_session(session_id, source=SessionSource.EDITED.value, **changes)

        audit_changes = dict(changes)
        if breaks is not None:
            audit_changes["breaks"] = [
                {"startedAt": b.started_at, "endedAt": b.ended_at} for b in breaks
            ]
        self.db.add_audit_event("EDIT_SESSION", {"sessionId": session_id, "changes": audit_changes})
        self.logger.info("Edited session %s (%s)", session_id, ", ".join(sorted(audit_changes)) or "no fields")
        return session

    def add_break(self, session_id: str, started_at_utc: datetime, ended_at_utc: datetime) -> Session:
        if self.db.get_session(session_id) is None:
            raise SessionNotFoundError(f"Session not found: {session_id}")

        self.db.add_break(session_id, started_at_utc, ended_at_utc)
        return self.db.get_session(session_id)

    def delete_session(self, session_id: str) -> None:
        existing = self.db.get_session(session_id)
        if existing is None:
            raise SessionNotFoundError(f"Session not found: {session_id}")

        self.db.delete_session(session_id)
        self.db.add_audit_event(
            "DELETE_SESSION",
            {"sessionId": session_id, "startedAt": existing.started_at, "endedAt": existing.ended_at},
        )
        self.logger.info("Deleted session %s", session_id)

    def list_sessions(self, from_date: str | None = None, to_date: str | None = None) -> list[Session]:
        start = local_day_start_utc(parse_date_key(from_date), self.tz) if from_date else None
        end = local_day_end_utc(parse_date_key(to_date), self.tz) if to_date else None
        return self.db.list_sessions(start, end, descending=True)

    # -- settings ---------------------------------------------------------

    def get_settings(self) -> Settings:
        return self.db.get_settings()

    def update_settings(
        self,
        *,
        standard_daily_minutes: int | None = None,
        rounding_rule: str | None = None,
        allow_negative_til: bool | None = None,
        overtime_starts_after_minutes: int | None | object = _UNSET,
        report_footer: str | None = None,
    ) -> Settings:
        current = self.db.get_settings()
        changes: dict = {}

        if standard_daily_minutes is not None:
            if not 1 <= int(standard_daily_minutes) <= MAX_STANDARD_DAILY_MINUTES:
                raise ValidationError(
                    f"standard_daily_minutes must be between 1 and {MAX_STANDARD_DAILY_MINUTES}"
                )
            changes["standard_daily_minutes"] = int(standard_daily_minutes)
        if rounding_rule is not None:
            try:
                changes["rounding_rule"] = RoundingRule(rounding_rule).value
            except ValueError as exc:
                allowed = ", ".join(rule.value for rule in RoundingRule)
                raise ValidationError(f"rounding_rule must be one of {allowed}") from exc
        if allow_negative_til is not None:
            changes["allow_negative_til"] = bool(allow_negative_til)
        if overtime_starts_after_minutes is not _UNSET:
            if overtime_starts_after_minutes is not None and int(overtime_starts_after_minutes) < 0:
                raise ValidationError("overtime_starts_after_minutes must be zero or more")
            changes["overtime_starts_after_minutes"] = overtime_starts_after_minutes
        if report_footer is not None:
            changes["report_footer"] = report_footer

        updated = replace(current, **changes)
        self.db.save_settings(updated)
        self.logger.info("Settings updated: %s", ", ".join(sorted(changes)) or "no changes")
        return updated

    # -- aggregation ------------------------------------------------------

    def summarize(
        self,
        from_date: str | None = None,
        to_date: str | None = None,
        *,
        now_utc: datetime | None = None,
    ) -> PeriodSummary:
        """TOIL totals for sessions that start within the local date range.

        Defaults to the fourteen local days ending today.
        """
        today = (now_utc or utc_now()).astimezone(self.tz).date()
        to_key = parse_date_key(to_date) if to_date else today.isoformat()
        from_key = (
            parse_date_key(from_date)
            if from_date
            else (date.fromisoformat(to_key) - timedelta(days=DEFAULT_SUMMARY_DAYS - 1)).isoformat()
        )
        if from_key > to_key:
            raise ValidationError(f"from date {from_key} is after to date {to_key}")

        sessions = self.db.list_sessions(
            local_day_start_utc(from_key, self.tz),
            local_day_end_utc(to_key, self.tz),
        )
        settings = self.db.get_settings()
        days = calculate_daily_totals(sessions, settings, self.tz)
        return summarize_period(days, from_key, to_key)

    def local_day_key(self, dt_utc: datetime | None = None, *, days_back: int = 0) -> str:
        """Local date key for the day containing ``dt_utc``, shifted back ``days_back`` days."""
        key = local_date_key(dt_utc or utc_now(), self.tz)
        if not days_back:
            return key
        return (date.fromisoformat(key) - timedelta(days=days_back)).isoformat()


def _check_coordinates(latitude: float | None, longitude: float | None) -> None:
    if latitude is not None and not -90 <= latitude <= 90:
        raise ValidationError("latitude must be between -90 and 90")
    if longitude is not None and not -180 <= longitude <= 180:
        raise ValidationError("longitude must be between -180 and 180")
