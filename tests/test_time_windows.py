"""Tests for schedule parsing and trigger window evaluation."""

from __future__ import annotations

from datetime import datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from fitpool.domain.models import RunType, TriggerType, UnparsableTimePolicy
from fitpool.domain.time_windows import (
    matches_run_type,
    minutes_until,
    parse_clock,
    parse_event_window,
    parse_instant,
    should_fire,
)


KOLKATA = ZoneInfo("Asia/Kolkata")
START = datetime(2026, 11, 20, 10, 0, tzinfo=timezone.utc)
END = START + timedelta(hours=1)


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("7", time(7, 0)),
        ("7:30 pm", time(19, 30)),
        ("7.30 p.m.", time(19, 30)),
        ("12 AM", time(0, 0)),
        ("12:15 PM", time(12, 15)),
        ("19:30", time(19, 30)),
        ("00:00", time(0, 0)),
    ],
)
def test_parse_clock_accepts_common_forms(value, expected) -> None:
    assert parse_clock(value) == expected


@pytest.mark.parametrize("value", ["", "TBD", "13 PM", "0 AM", "24:00", "7:75", "noon"])
def test_parse_clock_rejects_invalid_values(value) -> None:
    assert parse_clock(value) is None


def test_parse_event_window_reads_range_in_local_time() -> None:
    window = parse_event_window("2026-11-20", "10:00 AM - 11:30 AM", KOLKATA)
    assert window is not None
    assert window.start == datetime(2026, 11, 20, 10, 0, tzinfo=KOLKATA)
    assert window.start.astimezone(timezone.utc) == datetime(2026, 11, 20, 4, 30, tzinfo=timezone.utc)
    assert window.duration_minutes == 90


def test_parse_event_window_supports_to_separator() -> None:
    window = parse_event_window("2026-11-20", "6 pm to 7 pm", KOLKATA)
    assert window is not None
    assert (window.start.hour, window.end.hour) == (18, 19)


def test_parse_event_window_rolls_end_past_midnight() -> None:
    window = parse_event_window("2026-11-20", "22:00 - 01:00", KOLKATA)
    assert window is not None
    assert window.end.date().isoformat() == "2026-11-21"
    assert window.duration_minutes == 180


def test_parse_event_window_uses_default_duration_for_single_time() -> None:
    window = parse_event_window("2026-11-20", "7 PM", KOLKATA, default_duration_minutes=45)
    assert window is not None
    assert window.end - window.start == timedelta(minutes=45)


@pytest.mark.parametrize(
    ("event_date", "event_time"),
    [("2026-11-20", "TBD"), ("2026-11-20", ""), ("2026-11-20", None), ("not-a-date", "7 AM")],
)
def test_parse_event_window_returns_none_when_unparsable(event_date, event_time) -> None:
    assert parse_event_window(event_date, event_time, KOLKATA) is None


def test_parse_instant_handles_z_suffix_and_naive_values() -> None:
    assert parse_instant("2026-11-18T12:00:00Z") == datetime(2026, 11, 18, 12, tzinfo=timezone.utc)
    assert parse_instant("2026-11-18T12:00:00") == datetime(2026, 11, 18, 12, tzinfo=timezone.utc)
    assert parse_instant("") is None
    assert parse_instant(None) is None
    assert parse_instant("yesterday") is None


def test_minutes_until_floors_toward_negative() -> None:
    assert minutes_until(START, START - timedelta(seconds=90)) == 1
    assert minutes_until(START, START + timedelta(seconds=30)) == -1


def test_twenty_four_hour_window_boundary() -> None:
    assert should_fire(START - timedelta(minutes=1440), START, END, TriggerType.T_MINUS_24H)
    assert not should_fire(START - timedelta(minutes=1441), START, END, TriggerType.T_MINUS_24H)


def test_forty_eight_hour_window_boundary() -> None:
    assert should_fire(START - timedelta(minutes=2880), START, END, TriggerType.T_MINUS_48H)
    assert not should_fire(START - timedelta(minutes=2881), START, END, TriggerType.T_MINUS_48H)


def test_sixty_minute_window_includes_start_instant() -> None:
    assert should_fire(START, START, END, TriggerType.T_MINUS_60M)
    assert should_fire(START - timedelta(minutes=60), START, END, TriggerType.T_MINUS_60M)
    assert not should_fire(START - timedelta(minutes=61), START, END, TriggerType.T_MINUS_60M)


def test_pre_event_triggers_do_not_fire_after_start() -> None:
    for trigger in (TriggerType.T_MINUS_48H, TriggerType.T_MINUS_24H, TriggerType.T_MINUS_60M):
        assert not should_fire(START + timedelta(minutes=1), START, END, trigger)


def test_already_fired_never_fires_again() -> None:
    assert not should_fire(
        START - timedelta(minutes=30),
        START,
        END,
        TriggerType.T_MINUS_60M,
        already_fired=True,
    )


def test_post_event_fires_strictly_after_end_plus_delay() -> None:
    assert not should_fire(END, START, END, TriggerType.POST_EVENT)
    assert should_fire(END + timedelta(seconds=1), START, END, TriggerType.POST_EVENT)
    assert not should_fire(
        END + timedelta(minutes=10),
        START,
        END,
        TriggerType.POST_EVENT,
        post_event_delay=timedelta(minutes=30),
    )


def test_unparsable_schedule_follows_policy() -> None:
    now = START
    for trigger in TriggerType:
        assert not should_fire(now, None, None, trigger, unparsable_policy=UnparsableTimePolicy.NEVER)
        assert should_fire(now, None, None, trigger, unparsable_policy=UnparsableTimePolicy.ALWAYS)


def test_run_type_splits_at_local_noon() -> None:
    morning = datetime(2026, 11, 20, 11, 59, tzinfo=KOLKATA)
    noon = datetime(2026, 11, 20, 12, 0, tzinfo=KOLKATA)

    assert matches_run_type(morning, RunType.MORNING)
    assert not matches_run_type(morning, RunType.EVENING)
    assert matches_run_type(noon, RunType.EVENING)
    assert not matches_run_type(noon, RunType.MORNING)
    assert matches_run_type(morning, RunType.ALL)
    assert matches_run_type(None, RunType.ALL)


def test_run_type_without_start_follows_policy() -> None:
    assert not matches_run_type(None, RunType.MORNING)
    assert matches_run_type(None, RunType.EVENING, unparsable_policy=UnparsableTimePolicy.ALWAYS)
