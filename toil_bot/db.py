from __future__ import annotations

import json
import sqlite3
import uuid
from collections.abc import Iterable
from datetime import datetime, timezone
from pathlib import Path

from .models import AuditEvent, Break, Session, SessionSource, Settings

SETTINGS_ROW_ID = "singleton"

_SESSION_COLUMNS = (
    "id, started_at_utc, ended_at_utc, source, location_label, latitude, longitude, notes"
)

# Columns callers may change through update_session, mapped to their storage column.
_EDITABLE_SESSION_FIELDS = {
    "started_at": "started_at_utc",
    "ended_at": "ended_at_utc",
    "source": "source",
    "location_label": "location_label",
    "latitude": "latitude",
    "longitude": "longitude",
    "notes": "notes",
}


class Database:
    """Thin SQLite access layer for sessions, breaks, settings and the audit log."""

    def __init__(self, db_path: str | Path) -> None:
        self._conn = sqlite3.connect(str(db_path))
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._closed = False

    def close(self) -> None:
        if self._closed:
            return
        self._conn.close()
        self._closed = True

    def initialize(self) -> None:
        # sessions/breaks: raw clock records; open sessions have a NULL end.
        # settings: single row holding the TOIL policy.
        # audit_log: append-only JSON payloads for clock and edit events.
        # meta: small key/value store for scheduler and cooldown markers.
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS sessions (
              id TEXT PRIMARY KEY,
              started_at_utc TEXT NOT NULL,
              ended_at_utc TEXT,
              source TEXT NOT NULL DEFAULT 'MANUAL',
              location_label TEXT,
              latitude REAL,
              longitude REAL,
              notes TEXT,
              created_at_utc TEXT NOT NULL,
              updated_at_utc TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_sessions_started ON sessions (started_at_utc);

            CREATE TABLE IF NOT EXISTS breaks (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              session_id TEXT NOT NULL REFERENCES sessions (id) ON DELETE CASCADE,
              started_at_utc TEXT NOT NULL,
              ended_at_utc TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS settings (
              id TEXT PRIMARY KEY,
              standard_daily_minutes INTEGER NOT NULL DEFAULT 456,
              rounding_rule TEXT NOT NULL DEFAULT 'NONE',
              allow_negative_til INTEGER NOT NULL DEFAULT 0,
              overtime_starts_after_minutes INTEGER,
              report_footer TEXT NOT NULL DEFAULT ''
            );

            CREATE TABLE IF NOT EXISTS audit_log (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              event_type TEXT NOT NULL,
              payload TEXT NOT NULL,
              created_at_utc TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS meta (
              key TEXT PRIMARY KEY,
              value TEXT NOT NULL
            );
            """
        )
        self._conn.commit()

    # -- sessions ---------------------------------------------------------

    def create_session(
        self,
        started_at: datetime,
        ended_at: datetime | None = None,
        *,
        source: str = SessionSource.MANUAL.value,
        location_label: str | None = None,
        latitude: float | None = None,
        longitude: float | None = None,
        notes: str | None = None,
        breaks: Iterable[Break] = (),
    ) -> Session:
        session_id = uuid.uuid4().hex
        now = _stamp(datetime.now(timezone.utc))
        self._conn.execute(
            f"""
            INSERT INTO sessions ({_SESSION_COLUMNS}, created_at_utc, updated_at_utc)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                session_id,
                _stamp(started_at),
                _stamp(ended_at) if ended_at else None,
                source,
                location_label,
                latitude,
                longitude,
                notes,
                now,
                now,
            ),
        )
        self._insert_breaks(session_id, breaks)
        self._conn.commit()
        return self.get_session(session_id)

    def get_session(self, session_id: str) -> Session | None:
        row = self._conn.execute(
            f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE id = ?",
            (session_id,),
        ).fetchone()
        if row is None:
            return None
        return self._row_to_session(row)

    def find_open_session(self, since_utc: datetime | None = None) -> Session | None:
        """Most recently started open session, optionally no older than ``since_utc``."""
        query = f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE ended_at_utc IS NULL"
        params: tuple = ()
        if since_utc is not None:
            query += " AND started_at_utc >= ?"
            params = (_stamp(since_utc),)
        query += " ORDER BY started_at_utc DESC LIMIT 1"

        row = self._conn.execute(query, params).fetchone()
        if row is None:
            return None
        return self._row_to_session(row)

    def list_sessions(
        self,
        start_utc: datetime | None = None,
        end_utc: datetime | None = None,
        *,
        descending: bool = False,
    ) -> list[Session]:
        """Sessions whose start lies within the inclusive ``[start_utc, end_utc]`` range."""
        clauses: list[str] = []
        params: list[str] = []
        if start_utc is not None:
            clauses.append("started_at_utc >= ?")
            params.append(_stamp(start_utc))
        if end_utc is not None:
            clauses.append("started_at_utc <= ?")
            params.append(_stamp(end_utc))

        query = f"SELECT {_SESSION_COLUMNS} FROM sessions"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += f" ORDER BY started_at_utc {'DESC' if descending else 'ASC'}, id ASC"

        rows = self._conn.execute(query, params).fetchall()
        return [self._row_to_session(row) for row in rows]

    def find_overlapping_session(self, started_at: datetime, ended_at: datetime | None) -> str | None:
        """Id of a closed session overlapping the given span, if any."""
        start = _stamp(started_at)
        conditions = ["(started_at_utc <= ? AND ended_at_utc >= ?)"]
        params = [start, start]
        if ended_at is not None:
            end = _stamp(ended_at)
            conditions.append("(started_at_utc <= ? AND ended_at_utc >= ?)")
            conditions.append("(started_at_utc >= ? AND ended_at_utc <= ?)")
            params.extend([end, end, start, end])

        row = self._conn.execute(
            f"SELECT id FROM sessions WHERE {' OR '.join(conditions)} ORDER BY started_at_utc LIMIT 1",
            params,
        ).fetchone()
        return None if row is None else str(row["id"])

    def update_session(self, session_id: str, **changes) -> Session | None:
        unknown = set(changes) - set(_EDITABLE_SESSION_FIELDS)
        if unknown:
            raise ValueError(f"Unknown session fields: {', '.join(sorted(unknown))}")

        assignments = ["updated_at_utc = ?"]
        params: list = [_stamp(datetime.now(timezone.utc))]
        for name, value in changes.items():
            if isinstance(value, datetime):
                value = _stamp(value)
            assignments.append(f"{_EDITABLE_SESSION_FIELDS[name]} = ?")
            params.append(value)
        params.append(session_id)

        cursor = self._conn.execute(
            f"UPDATE sessions SET {', '.join(assignments)} WHERE id = ?",
            params,
        )
        self._conn.commit()
        if cursor.rowcount == 0:
            return None
        return self.get_session(session_id)

    def delete_session(self, session_id: str) -> bool:
        cursor = self._conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
        self._conn.commit()
        return cursor.rowcount > 0

    # -- breaks -----------------------------------------------------------

    def add_break(self, session_id: str, started_at: datetime, ended_at: datetime) -> None:
        self._insert_breaks(session_id, [Break(started_at=started_at, ended_at=ended_at)])
        self._conn.commit()

    def replace_breaks(self, session_id: str, breaks: Iterable[Break]) -> None:
        self._conn.execute("DELETE FROM breaks WHERE session_id = ?", (session_id,))
        self._insert_breaks(session_id, breaks)
        self._conn.commit()

    def _insert_breaks(self, session_id: str, breaks: Iterable[Break]) -> None:
        self._conn.executemany(
            "INSERT INTO breaks (session_id, started_at_utc, ended_at_utc) VALUES (?, ?, ?)",
            [(session_id, _stamp(b.started_at), _stamp(b.ended_at)) for b in breaks],
        )

    def _breaks_for(self, session_id: str) -> tuple[Break, ...]:
        rows = self._conn.execute(
            """
            SELECT id, started_at_utc, ended_at_utc
            FROM breaks
            WHERE session_id = ?
            ORDER BY started_at_utc, id
            """,
            (session_id,),
        ).fetchall()
        return tuple(
            Break(
                id=row["id"],
                started_at=datetime.fromisoformat(row["started_at_utc"]),
                ended_at=datetime.fromisoformat(row["ended_at_utc"]),
            )
            for row in rows
        )

    def _row_to_session(self, row: sqlite3.Row) -> Session:
        ended = row["ended_at_utc"]
        return Session(
            id=row["id"],
            started_at=datetime.fromisoformat(row["started_at_utc"]),
            ended_at=datetime.fromisoformat(ended) if ended else None,
            breaks=self._breaks_for(row["id"]),
            source=row["source"],
            location_label=row["location_label"],
            latitude=row["latitude"],
            longitude=row["longitude"],
            notes=row["notes"],
        )

    # -- settings ---------------------------------------------------------

    def get_settings(self) -> Settings:
        # Create the singleton with column defaults on first read.
        self._conn.execute("INSERT OR IGNORE INTO settings (id) VALUES (?)", (SETTINGS_ROW_ID,))
        self._conn.commit()
        row = self._conn.execute(
            """
            SELECT standard_daily_minutes, rounding_rule, allow_negative_til,
                   overtime_starts_after_minutes, report_footer
            FROM settings WHERE id = ?
            """,
            (SETTINGS_ROW_ID,),
        ).fetchone()
        return Settings(
            standard_daily_minutes=row["standard_daily_minutes"],
            rounding_rule=row["rounding_rule"],
            allow_negative_til=bool(row["allow_negative_til"]),
            overtime_starts_after_minutes=row["overtime_starts_after_minutes"],
            report_footer=row["report_footer"],
        )

    def save_settings(self, settings: Settings) -> None:
        self._conn.execute(
            """
            INSERT INTO settings (
              id, standard_daily_minutes, rounding_rule, allow_negative_til,
              overtime_starts_after_minutes, report_footer
            )
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id)
            DO UPDATE SET
              standard_daily_minutes=excluded.standard_daily_minutes,
              rounding_rule=excluded.rounding_rule,
              allow_negative_til=excluded.allow_negative_til,
              overtime_starts_after_minutes=excluded.overtime_starts_after_minutes,
              report_footer=excluded.report_footer
            """,
            (
                SETTINGS_ROW_ID,
                settings.standard_daily_minutes,
                settings.rounding_rule,
                int(settings.allow_negative_til),
                settings.overtime_starts_after_minutes,
                settings.report_footer,
            ),
        )
        self._conn.commit()

    # -- audit log --------------------------------------------------------

    def add_audit_event(self, event_type: str, payload: dict, created_at: datetime | None = None) -> None:
        created = created_at or datetime.now(timezone.utc)
        self._conn.execute(
            "INSERT INTO audit_log (event_type, payload, created_at_utc) VALUES (?, ?, ?)",
            (event_type, json.dumps(payload, default=_json_default), _stamp(created)),
        )
        self._conn.commit()

    def list_audit_events(self, limit: int = 50) -> list[AuditEvent]:
        rows = self._conn.execute(
            """
            SELECT event_type, payload, created_at_utc
            FROM audit_log
            ORDER BY id DESC
            LIMIT ?
            """,
            (limit,),
        ).fetchall()
        return [
            AuditEvent(
                event_type=row["event_type"],
                created_at=datetime.fromisoformat(row["created_at_utc"]),
                payload=json.loads(row["payload"]),
            )
            for row in rows
        ]

    # -- meta -------------------------------------------------------------

    def get_meta(self, key: str) -> str | None:
        row = self._conn.execute("SELECT value FROM meta WHERE key = ?", (key,)).fetchone()
        if row is None:
            return None
        return str(row["value"])

    def set_meta(self, key: str, value: str) -> None:
        self._conn.execute(
            """
            INSERT INTO meta (key, value)
            VALUES (?, ?)
            ON CONFLICT(key)
            DO UPDATE SET value=excluded.value
            """,
            (key, value),
        )
        self._conn.commit()


def _to_utc(value: datetime) -> datetime:
    """Normalize a timezone-aware datetime to UTC for storage."""
    if value.tzinfo is None:
        raise ValueError("Datetime must be timezone-aware")
    return value.astimezone(timezone.utc)


def _stamp(value: datetime) -> str:
    # Fixed-width ISO text so lexical order in SQL matches chronological order.
    return _to_utc(value).isoformat(timespec="microseconds")


def _json_default(value):
    if isinstance(value, datetime):
        return _stamp(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")
