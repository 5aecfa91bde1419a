"""Habit cadence helpers: per-goal targets and the calendar period a completion falls into."""

from __future__ import annotations

import math
from datetime import date, datetime, timedelta
from typing import Any, Literal

Frequency = Literal["daily", "weekly", "monthly"]
VALID_FREQUENCIES: tuple[str, ...] = ("daily", "weekly", "monthly")
DEFAULT_HORIZON_DAYS = 30


def _as_date(value: date | datetime | None) -> date | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    return value


def calculate_frequency_settings(
    target_date: date | datetime | None,
    frequency: str,
    per_period_target: int,
    today: date,
) -> dict[str, Any]:
    """
    Size a habit instance for the goal it is linked to.

    `periods_count` counts whole periods between today and the goal's target
    date (30 days when the goal has none); `target_value` is the number of
    completions that would make the habit 100% for this goal.
    """
    if frequency not in VALID_FREQUENCIES:
        raise ValueError("frequency must be one of: daily, weekly, monthly")
    if per_period_target < 1:
        raise ValueError("per_period_target must be >= 1")

    end = _as_date(target_date)
    days = (end - today).days if end is not None else DEFAULT_HORIZON_DAYS
    days = max(days, 1)

    if frequency == "weekly":
        periods_count = math.ceil(days / 7)
    elif frequency == "monthly":
        periods_count = math.ceil(days / 30)
    else:
        periods_count = days

    periods_count = max(periods_count, 1)
    return {
        "frequency": frequency,
        "per_period_target": per_period_target,
        "periods_count": periods_count,
        "target_value": periods_count * per_period_target,
    }


def normalize_frequency_settings(raw: dict[str, Any] | None) -> dict[str, Any]:
    """Read stored settings, tolerating the camelCase keys older rows were written with."""
    raw = raw or {}
    frequency = str(raw.get("frequency") or "daily")
    if frequency not in VALID_FREQUENCIES:
        frequency = "daily"
    per_period = raw.get("per_period_target", raw.get("perPeriodTarget", 1))
    try:
        per_period_target = max(int(per_period), 1)
    except (TypeError, ValueError):
        per_period_target = 1
    return {"frequency": frequency, "per_period_target": per_period_target}


def period_window(day: date, frequency: str) -> tuple[date, date]:
    """Inclusive local-date bounds of the period containing `day` (weeks start Monday)."""
    if frequency == "weekly":
        start = day - timedelta(days=day.weekday())
        return start, start + timedelta(days=6)
    if frequency == "monthly":
        start = day.replace(day=1)
        next_month = (start + timedelta(days=32)).replace(day=1)
        return start, next_month - timedelta(days=1)
    return day, day
