from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from toil_bot.db import Database

PERTH = ZoneInfo("Australia/Perth")


def utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def perth(*args: int) -> datetime:
    """A Perth wall-clock time expressed as a UTC instant."""
    return datetime(*args, tzinfo=PERTH).astimezone(timezone.utc)


@pytest.fixture
def db():
    database = Database(":memory:")
    database.initialize()
    yield database
    database.close()
