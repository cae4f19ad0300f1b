"""Wake-time computation tests."""

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from autoflow.contracts import DelayConfig
from autoflow.delays import compute_wake_time, describe, ensure_utc
from autoflow.errors import ConfigurationError

# A Monday
ENTERED = datetime(2024, 3, 4, 10, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "amount, unit, expected",
    [
        (3, "days", timedelta(days=3)),
        (1.5, "hours", timedelta(minutes=90)),
        (45, "minutes", timedelta(minutes=45)),
        (2, "weeks", timedelta(days=14)),
    ],
)
def test_duration_delays(amount, unit, expected):
    config = DelayConfig(mode="duration", amount=amount, unit=unit)
    assert compute_wake_time(config, ENTERED) == ENTERED + expected


def test_until_time_rolls_over_to_next_day():
    later_today = DelayConfig(mode="until_time", at_time="18:30")
    already_passed = DelayConfig(mode="until_time", at_time="09:00")

    assert compute_wake_time(later_today, ENTERED) == datetime(2024, 3, 4, 18, 30, tzinfo=timezone.utc)
    assert compute_wake_time(already_passed, ENTERED) == datetime(2024, 3, 5, 9, 0, tzinfo=timezone.utc)


def test_until_weekday():
    wednesday = DelayConfig(mode="until_weekday", weekday=2)
    monday = DelayConfig(mode="until_weekday", weekday=0, at_time="14:15")

    assert compute_wake_time(wednesday, ENTERED) == datetime(2024, 3, 6, 9, 0, tzinfo=timezone.utc)
    # same weekday waits a full week
    assert compute_wake_time(monday, ENTERED) == datetime(2024, 3, 11, 14, 15, tzinfo=timezone.utc)


def test_until_date_is_absolute():
    config = DelayConfig(mode="until_date", on_date=datetime(2024, 4, 1, 8, 0))
    assert compute_wake_time(config, ENTERED) == datetime(2024, 4, 1, 8, 0, tzinfo=timezone.utc)
    assert compute_wake_time(config, ENTERED + timedelta(days=10)) == datetime(
        2024, 4, 1, 8, 0, tzinfo=timezone.utc
    )


def test_naive_entry_time_is_treated_as_utc():
    config = DelayConfig(amount=1, unit="hours")
    naive = ENTERED.replace(tzinfo=None)
    assert compute_wake_time(config, naive) == ENTERED + timedelta(hours=1)
    assert ensure_utc(naive) == ENTERED


@pytest.mark.parametrize("at_time", ["25:00", "noon"])
def test_invalid_time_of_day(at_time):
    with pytest.raises(ConfigurationError):
        compute_wake_time(DelayConfig(mode="until_time", at_time=at_time), ENTERED)


@pytest.mark.parametrize(
    "payload",
    [
        {"mode": "duration"},
        {"mode": "until_date"},
        {"mode": "until_time"},
        {"mode": "until_weekday"},
        {"mode": "until_weekday", "weekday": 7},
    ],
)
def test_delay_config_requires_mode_fields(payload):
    with pytest.raises(ValidationError):
        DelayConfig(**payload)


def test_describe():
    assert describe(DelayConfig(amount=7, unit="days")) == "7 days"
    assert describe(DelayConfig(mode="until_weekday", weekday=4)) == "until next Friday"
    assert describe(DelayConfig(mode="until_time", at_time="09:00")) == "until 09:00"
