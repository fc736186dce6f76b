from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .til import DEFAULT_TIMEZONE

DEFAULT_DB_PATH = "toil_tracker.db"


@dataclass(frozen=True, slots=True)
class Config:
    discord_token: str
    guild_id: int
    report_channel_id: int
    timezone: ZoneInfo
    database_path: Path
    report_now_cooldown_seconds: int


def _required_env(name: str) -> str:
    value = os.getenv(name)
    if not value:
        raise ValueError(f"Missing required environment variable: {name}")
    return value.strip()


def _positive_int(name: str, raw: str) -> int:
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be an integer") from exc

    if parsed <= 0:
        raise ValueError(f"Environment variable {name} must be positive")
    return parsed


def _required_int_env(name: str) -> int:
    return _positive_int(name, _required_env(name))


def _timezone_from_env(name: str) -> ZoneInfo:
    # All date keys and day splits are relative to this single zone.
    tz_name = (os.getenv(name) or DEFAULT_TIMEZONE).strip()
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Invalid timezone in {name}: {tz_name}") from exc


def load_config() -> Config:
    cooldown_raw = os.getenv("REPORT_NOW_COOLDOWN_SECONDS", "3600").strip()

    return Config(
        discord_token=_required_env("DISCORD_TOKEN"),
        guild_id=_required_int_env("GUILD_ID"),
        report_channel_id=_required_int_env("REPORT_CHANNEL_ID"),
        timezone=_timezone_from_env("TIMEZONE"),
        database_path=Path(os.getenv("DATABASE_PATH", DEFAULT_DB_PATH).strip() or DEFAULT_DB_PATH),
        report_now_cooldown_seconds=_positive_int("REPORT_NOW_COOLDOWN_SECONDS", cooldown_raw),
    )
