from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class RoundingRule(str, Enum):
    NONE = "NONE"
    NEAREST_5 = "NEAREST_5"
    NEAREST_10 = "NEAREST_10"
    NEAREST_15 = "NEAREST_15"


class SessionSource(str, Enum):
    MANUAL = "MANUAL"
    EDITED = "EDITED"


@dataclass(frozen=True, slots=True)
class Break:
    started_at: datetime
    ended_at: datetime
    id: int | None = None


@dataclass(frozen=True, slots=True)
class Session:
    id: str
    started_at: datetime
    ended_at: datetime | None = None
    breaks: tuple[Break, ...] = ()
    source: str = SessionSource.MANUAL.value
    location_label: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    notes: str | None = None

    @property
    def is_open(self) -> bool:
        return self.ended_at is None


@dataclass(frozen=True, slots=True)
class Settings:
    standard_daily_minutes: int = 456
    rounding_rule: str = RoundingRule.NONE.value
    allow_negative_til: bool = False
    # Part of the stored contract; daily aggregation does not read it.
    overtime_starts_after_minutes: int | None = None
    report_footer: str = ""


@dataclass(frozen=True, slots=True)
class DayChunk:
    date: str
    minutes: int


@dataclass(frozen=True, slots=True)
class SessionDetail:
    id: str
    started_at: datetime
    ended_at: datetime | None
    minutes: int


@dataclass(frozen=True, slots=True)
class DailyTotal:
    date: str
    total_minutes: int
    til_minutes: int
    sessions: tuple[SessionDetail, ...] = ()


@dataclass(frozen=True, slots=True)
class PeriodSummary:
    from_date: str
    to_date: str
    days: tuple[DailyTotal, ...]
    total_worked_minutes: int
    total_til_minutes: int


@dataclass(frozen=True, slots=True)
class ClockInResult:
    session: Session
    already_clocked_in: bool


@dataclass(frozen=True, slots=True)
class CreateSessionResult:
    session: Session
    overlapping_session_id: str | None = None

    @property
    def warning(self) -> str | None:
        if self.overlapping_session_id is None:
            return None
        return "This session overlaps with an existing session. Please review."


@dataclass(frozen=True, slots=True)
class AuditEvent:
    event_type: str
    created_at: datetime
    payload: dict = field(default_factory=dict)
