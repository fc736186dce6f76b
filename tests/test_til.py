import random
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from conftest import PERTH, perth, utc
from toil_bot.models import Break, DailyTotal, RoundingRule, Session, Settings
from toil_bot.til import (
    _share,
    apply_rounding,
    calculate_break_minutes,
    calculate_daily_totals,
    calculate_session_minutes,
    format_minutes,
    local_date_key,
    local_day_end_utc,
    local_day_start_utc,
    split_session_by_day,
    summarize_period,
)

DEFAULT_SETTINGS = Settings(standard_daily_minutes=456, rounding_rule="NONE", allow_negative_til=False)


def make_session(session_id: str, start: datetime, end: datetime | None, *breaks: tuple[datetime, datetime]) -> Session:
    return Session(
        id=session_id,
        started_at=start,
        ended_at=end,
        breaks=tuple(Break(started_at=b_start, ended_at=b_end) for b_start, b_end in breaks),
    )


def test_rounding_none_is_passthrough() -> None:
    assert apply_rounding(127, RoundingRule.NONE) == 127
    assert apply_rounding(0, "NONE") == 0
    assert apply_rounding(-43, "NONE") == -43


def test_rounding_nearest_examples() -> None:
    assert apply_rounding(127, "NEAREST_5") == 125
    assert apply_rounding(128, "NEAREST_5") == 130
    assert apply_rounding(124, "NEAREST_10") == 120
    assert apply_rounding(125, "NEAREST_10") == 130
    assert apply_rounding(127, "NEAREST_15") == 120
    assert apply_rounding(112, "NEAREST_15") == 105
    assert apply_rounding(114, "NEAREST_15") == 120
    assert apply_rounding(135, RoundingRule.NEAREST_15) == 135
    assert apply_rounding(0, "NEAREST_15") == 0


def test_rounding_halves_go_towards_positive_infinity() -> None:
    assert apply_rounding(15, "NEAREST_10") == 20
    assert apply_rounding(-15, "NEAREST_10") == -10
    assert apply_rounding(-25, "NEAREST_10") == -20


def test_unknown_rounding_rule_is_ignored() -> None:
    assert apply_rounding(127, "NEAREST_7") == 127
    assert apply_rounding(127, "") == 127
    assert apply_rounding(127, None) == 127


@pytest.mark.parametrize("rule,interval", [("NEAREST_5", 5), ("NEAREST_10", 10), ("NEAREST_15", 15)])
def test_rounding_lands_on_nearest_multiple(rule: str, interval: int) -> None:
    for minutes in range(-60, 1500):
        rounded = apply_rounding(minutes, rule)
        assert rounded % interval == 0
        assert abs(rounded - minutes) * 2 <= interval
        if abs(rounded - minutes) * 2 == interval:
            assert rounded > minutes


def test_break_minutes() -> None:
    assert calculate_break_minutes([]) == 0
    assert calculate_break_minutes([Break(utc(2024, 1, 15, 1, 0), utc(2024, 1, 15, 1, 30))]) == 30
    assert (
        calculate_break_minutes(
            [
                Break(utc(2024, 1, 15, 1, 0), utc(2024, 1, 15, 1, 15)),
                Break(utc(2024, 1, 15, 3, 0), utc(2024, 1, 15, 3, 45)),
            ]
        )
        == 60
    )


def test_inverted_break_counts_as_zero() -> None:
    breaks = [
        Break(utc(2024, 1, 15, 2, 0), utc(2024, 1, 15, 1, 0)),
        Break(utc(2024, 1, 15, 3, 0), utc(2024, 1, 15, 3, 10)),
    ]
    assert calculate_break_minutes(breaks) == 10


def test_break_minutes_drop_partial_minutes() -> None:
    assert calculate_break_minutes([Break(utc(2024, 1, 15, 1, 0, 0), utc(2024, 1, 15, 1, 1, 59))]) == 1


def test_open_session_has_no_minutes() -> None:
    assert calculate_session_minutes(make_session("1", utc(2024, 1, 15), None)) == 0
    assert calculate_session_minutes(make_session("2", datetime.now(timezone.utc), None)) == 0


def test_session_minutes_net_of_breaks() -> None:
    start, end = utc(2024, 1, 15, 0, 0), utc(2024, 1, 15, 8, 0)
    assert calculate_session_minutes(make_session("1", start, end)) == 480

    with_break = make_session("1", start, end, (utc(2024, 1, 15, 4, 0), utc(2024, 1, 15, 4, 30)))
    assert calculate_session_minutes(with_break) == 450


def test_session_ending_before_start_is_zero() -> None:
    assert calculate_session_minutes(make_session("1", utc(2024, 1, 15, 8), utc(2024, 1, 15, 7))) == 0
    assert calculate_session_minutes(make_session("1", utc(2024, 1, 15, 8), utc(2024, 1, 15, 8))) == 0


def test_breaks_cannot_push_session_negative() -> None:
    session = make_session(
        "1",
        utc(2024, 1, 15, 0, 0),
        utc(2024, 1, 15, 1, 0),
        (utc(2024, 1, 15, 0, 0), utc(2024, 1, 15, 0, 50)),
        (utc(2024, 1, 15, 0, 10), utc(2024, 1, 15, 0, 55)),
    )
    assert calculate_session_minutes(session) == 0


def test_split_single_local_day() -> None:
    chunks = split_session_by_day(utc(2024, 1, 15, 0, 0), utc(2024, 1, 15, 9, 0), PERTH)

    assert len(chunks) == 1
    assert chunks[0].date == "2024-01-15"
    assert chunks[0].minutes == 540


def test_split_across_local_midnight() -> None:
    # 22:00 Perth Jan 15 to 02:00 Perth Jan 16 is 14:00-18:00 UTC on Jan 15.
    chunks = split_session_by_day(utc(2024, 1, 15, 14, 0), utc(2024, 1, 15, 18, 0), PERTH)

    assert [(c.date, c.minutes) for c in chunks] == [("2024-01-15", 120), ("2024-01-16", 120)]


def test_split_ending_exactly_at_midnight_has_no_empty_tail() -> None:
    chunks = split_session_by_day(perth(2024, 1, 15, 22, 0), perth(2024, 1, 16, 0, 0), PERTH)

    assert [(c.date, c.minutes) for c in chunks] == [("2024-01-15", 120)]


def test_split_multi_day_span() -> None:
    chunks = split_session_by_day(perth(2024, 1, 15, 20, 0), perth(2024, 1, 17, 4, 0), PERTH)

    assert [(c.date, c.minutes) for c in chunks] == [
        ("2024-01-15", 240),
        ("2024-01-16", 1440),
        ("2024-01-17", 240),
    ]


def test_split_uses_real_length_of_dst_day() -> None:
    tz = ZoneInfo("America/New_York")
    start = datetime(2026, 3, 7, 22, 0, tzinfo=tz)
    end = datetime(2026, 3, 8, 22, 0, tzinfo=tz)

    chunks = split_session_by_day(start, end, tz)

    assert [(c.date, c.minutes) for c in chunks] == [("2026-03-07", 120), ("2026-03-08", 1260)]


def test_split_empty_for_inverted_or_zero_span() -> None:
    assert split_session_by_day(utc(2024, 1, 15, 9), utc(2024, 1, 15, 8), PERTH) == []
    assert split_session_by_day(utc(2024, 1, 15, 9), utc(2024, 1, 15, 9), PERTH) == []


def test_split_reads_naive_datetimes_as_utc() -> None:
    naive = split_session_by_day(datetime(2024, 1, 15, 14, 0), datetime(2024, 1, 15, 18, 0), PERTH)
    aware = split_session_by_day(utc(2024, 1, 15, 14, 0), utc(2024, 1, 15, 18, 0), PERTH)

    assert naive == aware


@pytest.mark.parametrize("start_hour", [0, 5, 13, 15, 23])
@pytest.mark.parametrize("length_minutes", [1, 59, 480, 1439, 1441, 3000])
def test_split_chunks_cover_gross_span(start_hour: int, length_minutes: int) -> None:
    start = utc(2024, 6, 1, start_hour, 0)
    chunks = split_session_by_day(start, start + timedelta(minutes=length_minutes), PERTH)

    assert sum(c.minutes for c in chunks) == length_minutes
    assert all(c.minutes > 0 for c in chunks)
    assert [c.date for c in chunks] == sorted({c.date for c in chunks})


def test_daily_totals_empty() -> None:
    assert calculate_daily_totals([], DEFAULT_SETTINGS, PERTH) == []


def test_share_of_empty_chunk_set_is_zero() -> None:
    assert _share(10, 0, 0) == 0
    assert _share(0, 0, 0) == 0
    assert _share(210, 120, 240) == 105


def test_zero_length_session_contributes_nothing() -> None:
    sessions = [make_session("flat", utc(2024, 1, 15, 1, 0), utc(2024, 1, 15, 1, 0))]

    assert calculate_daily_totals(sessions, DEFAULT_SETTINGS, PERTH) == []


def test_daily_totals_overtime() -> None:
    sessions = [make_session("1", utc(2024, 1, 15, 0, 0), utc(2024, 1, 15, 9, 0))]

    result = calculate_daily_totals(sessions, DEFAULT_SETTINGS, PERTH)

    assert len(result) == 1
    assert result[0].date == "2024-01-15"
    assert result[0].total_minutes == 540
    assert result[0].til_minutes == 84
    assert [(s.id, s.minutes) for s in result[0].sessions] == [("1", 540)]


def test_short_day_is_clamped_to_zero() -> None:
    sessions = [make_session("1", utc(2024, 1, 15, 0, 0), utc(2024, 1, 15, 6, 0))]

    result = calculate_daily_totals(sessions, DEFAULT_SETTINGS, PERTH)

    assert result[0].total_minutes == 360
    assert result[0].til_minutes == 0


def test_short_day_goes_negative_when_allowed() -> None:
    sessions = [make_session("1", utc(2024, 1, 15, 0, 0), utc(2024, 1, 15, 6, 0))]
    settings = Settings(standard_daily_minutes=456, allow_negative_til=True)

    result = calculate_daily_totals(sessions, settings, PERTH)

    assert result[0].til_minutes == -96


def test_rounding_applies_before_til() -> None:
    sessions = [make_session("1", utc(2024, 1, 15, 0, 0), utc(2024, 1, 15, 9, 3))]
    settings = Settings(standard_daily_minutes=456, rounding_rule="NEAREST_15")

    result = calculate_daily_totals(sessions, settings, PERTH)

    assert result[0].total_minutes == 540
    assert result[0].til_minutes == 84
    assert result[0].sessions[0].minutes == 543


def test_rounding_applies_to_day_total_not_each_session() -> None:
    sessions = [
        make_session("a", perth(2024, 1, 15, 8, 0), perth(2024, 1, 15, 9, 7)),
        make_session("b", perth(2024, 1, 15, 13, 0), perth(2024, 1, 15, 14, 7)),
    ]
    settings = Settings(standard_daily_minutes=60, rounding_rule=RoundingRule.NEAREST_15)

    result = calculate_daily_totals(sessions, settings, PERTH)

    assert result[0].total_minutes == 135
    assert result[0].til_minutes == 75


def test_open_sessions_are_skipped() -> None:
    sessions = [
        make_session("open", utc(2024, 1, 15, 0, 0), None),
        make_session("closed", utc(2024, 1, 16, 0, 0), utc(2024, 1, 16, 1, 0)),
    ]

    result = calculate_daily_totals(sessions, DEFAULT_SETTINGS, PERTH)

    assert [day.date for day in result] == ["2024-01-16"]
    assert all(item.id != "open" for day in result for item in day.sessions)


def test_cross_midnight_session_is_spread_proportionally() -> None:
    session = make_session(
        "night",
        perth(2024, 1, 15, 22, 0),
        perth(2024, 1, 16, 2, 0),
        (perth(2024, 1, 15, 23, 30), perth(2024, 1, 16, 0, 0)),
    )

    result = calculate_daily_totals([session], Settings(standard_daily_minutes=60), PERTH)

    assert [(d.date, d.total_minutes, d.til_minutes) for d in result] == [
        ("2024-01-15", 105, 45),
        ("2024-01-16", 105, 45),
    ]
    # Full net figure sits on the start date only.
    assert [(s.id, s.minutes) for s in result[0].sessions] == [("night", 210)]
    assert result[1].sessions == ()


def test_per_chunk_rounding_may_overcount() -> None:
    session = make_session(
        "x",
        perth(2024, 1, 15, 23, 59),
        perth(2024, 1, 16, 0, 1),
        (perth(2024, 1, 15, 23, 59), perth(2024, 1, 16, 0, 0)),
    )

    result = calculate_daily_totals([session], DEFAULT_SETTINGS, PERTH)

    # One net minute split 50/50, each half rounds up.
    assert [d.total_minutes for d in result] == [1, 1]
    assert result[0].sessions[0].minutes == 1


def test_start_day_without_whole_minute_gets_no_detail() -> None:
    session = Session(id="late", started_at=perth(2024, 1, 15, 23, 59, 30), ended_at=perth(2024, 1, 16, 0, 30, 30))

    result = calculate_daily_totals([session], DEFAULT_SETTINGS, PERTH)

    assert [(d.date, d.total_minutes) for d in result] == [("2024-01-16", 31)]
    assert result[0].sessions == ()


def test_sessions_on_several_days_are_sorted_by_date() -> None:
    sessions = [
        make_session("c", perth(2024, 1, 17, 9, 0), perth(2024, 1, 17, 17, 0)),
        make_session("a", perth(2024, 1, 15, 9, 0), perth(2024, 1, 15, 17, 0)),
        make_session("b", perth(2024, 1, 16, 9, 0), perth(2024, 1, 16, 12, 0)),
        make_session("a2", perth(2024, 1, 15, 18, 0), perth(2024, 1, 15, 19, 0)),
    ]

    result = calculate_daily_totals(sessions, DEFAULT_SETTINGS, PERTH)

    assert [d.date for d in result] == ["2024-01-15", "2024-01-16", "2024-01-17"]
    assert [s.id for s in result[0].sessions] == ["a", "a2"]
    assert result[0].total_minutes == 540


def test_daily_totals_do_not_depend_on_input_order() -> None:
    sessions = [
        make_session(str(i), perth(2024, 2, 1 + i % 5, 8 + i % 3, 0), perth(2024, 2, 1 + i % 5, 17, 30 - i))
        for i in range(12)
    ]
    settings = Settings(standard_daily_minutes=456, rounding_rule="NEAREST_5", allow_negative_til=True)
    expected = calculate_daily_totals(sessions, settings, PERTH)

    shuffled = list(sessions)
    random.Random(7).shuffle(shuffled)

    assert calculate_daily_totals(shuffled, settings, PERTH) == expected
    assert calculate_daily_totals(shuffled, settings, PERTH) == expected


def test_daily_totals_respect_the_given_zone() -> None:
    session = make_session("1", utc(2024, 1, 15, 14, 0), utc(2024, 1, 15, 18, 0))

    in_utc = calculate_daily_totals([session], DEFAULT_SETTINGS, ZoneInfo("UTC"))

    assert [(d.date, d.total_minutes) for d in in_utc] == [("2024-01-15", 240)]


def test_summarize_period_sums_days() -> None:
    days = [
        DailyTotal(date="2024-01-15", total_minutes=540, til_minutes=84),
        DailyTotal(date="2024-01-16", total_minutes=360, til_minutes=-96),
    ]

    summary = summarize_period(days, "2024-01-15", "2024-01-21")

    assert summary.total_worked_minutes == 900
    assert summary.total_til_minutes == -12
    assert summary.days == tuple(days)


def test_local_date_helpers() -> None:
    assert local_date_key(utc(2024, 1, 15, 16, 0), PERTH) == "2024-01-16"
    assert local_day_start_utc("2024-01-16", PERTH) == utc(2024, 1, 15, 16, 0)
    assert local_day_end_utc("2024-01-16", PERTH) == utc(2024, 1, 16, 15, 59, 59, 999999)


def test_format_minutes() -> None:
    assert format_minutes(90) == "1:30"
    assert format_minutes(60) == "1:00"
    assert format_minutes(9) == "0:09"
    assert format_minutes(480) == "8:00"
    assert format_minutes(0) == "0:00"
    assert format_minutes(-90) == "-1:30"
    assert format_minutes(-9) == "-0:09"
