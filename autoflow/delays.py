"""Wake-time computation for delay steps.

Targets are always computed from the moment the enrollment *entered* the
delay, so re-evaluating a delay later (after a restart, or after the step was
re-targeted) yields the same answer for the same configuration.
"""

from __future__ import annotations

from datetime import datetime, time, timedelta, timezone

from .constants import DEFAULT_WEEKDAY_HOUR
from .contracts import DelayConfig
from .errors import ConfigurationError

_UNIT_SECONDS = {
    "minutes": 60,
    "hours": 3600,
    "days": 86400,
    "weeks": 604800,
}


def ensure_utc(moment: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def _parse_time_of_day(value: str) -> time:
    try:
        hours, minutes = value.strip().split(":")[:2]
        return time(int(hours), int(minutes))
    except (ValueError, AttributeError) as exc:
        raise ConfigurationError(f"Invalid time of day {value!r}; expected HH:MM") from exc


def compute_wake_time(config: DelayConfig, entered_at: datetime) -> datetime:
    """Return the earliest moment the enrollment may continue past the delay."""
    entered_at = ensure_utc(entered_at)

    if config.mode == "duration":
        seconds = float(config.amount or 0) * _UNIT_SECONDS[config.unit]
        return entered_at + timedelta(seconds=seconds)

    if config.mode == "until_date":
        return ensure_utc(config.on_date)

    if config.mode == "until_time":
        tod = _parse_time_of_day(config.at_time or "")
        target = entered_at.replace(
            hour=tod.hour, minute=tod.minute, second=0, microsecond=0
        )
        if target <= entered_at:
            target += timedelta(days=1)
        return target

    if config.mode == "until_weekday":
        tod = (
            _parse_time_of_day(config.at_time)
            if config.at_time
            else time(DEFAULT_WEEKDAY_HOUR, 0)
        )
        days_ahead = (config.weekday - entered_at.weekday()) % 7 or 7
        target_day = entered_at + timedelta(days=days_ahead)
        return target_day.replace(
            hour=tod.hour, minute=tod.minute, second=0, microsecond=0
        )

    raise ConfigurationError(f"Unknown delay mode: {config.mode!r}")


def describe(config: DelayConfig) -> str:
    if config.mode == "duration":
        return f"{config.amount:g} {config.unit}"
    if config.mode == "until_date":
        return f"until {config.on_date.isoformat()}"
    if config.mode == "until_time":
        return f"until {config.at_time}"
    names = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]
    return f"until next {names[config.weekday]}"
