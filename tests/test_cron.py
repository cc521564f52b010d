from datetime import datetime, timedelta, timezone

import pytest

from flowkit.cron import CronError, CronSchedule, parse_cron


def test_every_second_fires_one_second_later():
    schedule = parse_cron("* * * * * *")
    start = datetime(2024, 5, 17, 10, 20, 30, 500000)
    assert schedule.next(start) == start.replace(microsecond=0) + timedelta(seconds=1)


def test_daily_time_same_day():
    schedule = parse_cron("0 30 2 * * *")
    assert schedule.next(datetime(2024, 1, 1, 0, 0, 0)) == datetime(2024, 1, 1, 2, 30, 0)


def test_daily_time_rolls_to_next_day():
    schedule = parse_cron("0 30 2 * * *")
    result = schedule.next(datetime(2024, 1, 1, 3, 0, 0))
    assert result == datetime(2024, 1, 1, 2, 30, 0) + timedelta(days=1)


@pytest.mark.parametrize("day", range(1, 15))
def test_weekdays_at_nine(day):
    schedule = parse_cron("0 0 9 * * MON-FRI")
    start = datetime(2024, 6, day, 12, 0, 0)
    result = schedule.next(start)
    assert result > start
    assert result.weekday() < 5
    assert (result.hour, result.minute, result.second) == (9, 0, 0)
    assert result - start <= timedelta(days=3)


def test_step_field():
    schedule = parse_cron("*/15 * * * * *")
    start = datetime(2024, 2, 29, 23, 59, 50)
    result = schedule.next(start)
    assert result.second in {0, 15, 30, 45}
    assert timedelta(0) < result - start <= timedelta(seconds=15)


@pytest.mark.parametrize(
    "expr", ["* * * * * *", "0 0 0 1 1 *", "5,10 */7 1-3 * * SUN", "0 0 12 29 2 *"]
)
def test_next_is_strictly_later_and_matches(expr):
    schedule = parse_cron(expr)
    start = datetime(2023, 12, 31, 23, 59, 59)
    result = schedule.next(start)
    assert result > start
    assert result.second in schedule.seconds
    assert result.minute in schedule.minutes
    assert result.hour in schedule.hours
    assert result.month in schedule.months


def test_names_are_case_insensitive():
    assert parse_cron("0 0 0 * jan sun") == parse_cron("0 0 0 * JAN 0")
    assert parse_cron("0 0 0 * Jan Sun") == parse_cron("0 0 0 * 1 SUN")


def test_question_mark_equals_star():
    assert parse_cron("0 0 0 ? * *") == parse_cron("0 0 0 * * *")


def test_day_of_month_or_weekday_when_both_restricted():
    schedule = parse_cron("0 0 0 13 * FRI")
    moment = datetime(2024, 1, 1)
    for _ in range(20):
        moment = schedule.next(moment)
        assert moment.day == 13 or moment.weekday() == 4


def test_day_of_month_only_when_weekday_is_star():
    schedule = parse_cron("0 0 0 13 * *")
    moment = datetime(2024, 1, 1)
    for _ in range(12):
        moment = schedule.next(moment)
        assert moment.day == 13


def test_impossible_date_returns_none():
    assert parse_cron("0 0 0 30 2 *").next(datetime(2024, 1, 1)) is None


def test_keeps_timezone():
    start = datetime(2024, 3, 1, 8, 0, 0, tzinfo=timezone.utc)
    result = parse_cron("0 0 9 * * *").next(start)
    assert result.tzinfo is timezone.utc
    assert result - start == timedelta(hours=1)


@pytest.mark.parametrize(
    "expr",
    [
        "",
        "invalid",
        "* * * * *",
        "* * * * * * *",
        "60 * * * * *",
        "* * 24 * * *",
        "* * * 0 * *",
        "* * * * 13 *",
        "* * * * * 7",
        "*/0 * * * * *",
        "5-1 * * * * *",
        "a * * * * *",
        "1/2/3 * * * * *",
        "1-2-3 * * * * *",
        "@hourly",
    ],
)
def test_invalid_expressions(expr):
    with pytest.raises(CronError):
        parse_cron(expr)


def test_cron_error_is_value_error():
    with pytest.raises(ValueError):
        parse_cron("not a cron")


def test_parsed_fields():
    schedule = parse_cron("1,2 3-5 */12 1 JAN-MAR MON")
    assert isinstance(schedule, CronSchedule)
    assert schedule.seconds == frozenset({1, 2})
    assert schedule.minutes == frozenset({3, 4, 5})
    assert schedule.hours == frozenset({0, 12})
    assert schedule.months == frozenset({1, 2, 3})
    assert schedule.weekdays == frozenset({1})
    assert not schedule.days_star and not schedule.weekdays_star