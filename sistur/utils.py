"""Shared helpers used across the SISTUR engine modules."""
from __future__ import annotations

import calendar
import json
from datetime import date
from typing import Any, Iterable

_MISSING = object()


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return {} if default is _MISSING else default


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def mean(values: Iterable[float]) -> float:
    """Arithmetic mean; raises ValueError on an empty input."""
    items = list(values)
    if not items:
        raise ValueError("mean() of empty sequence")
    return sum(items) / len(items)


def add_months(day: date, months: int) -> date:
    """Shift *day* by whole months, clamping to the last day of the target month."""
    month_index = day.month - 1 + months
    year = day.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return day.replace(year=year, month=month, day=min(day.day, last_day))
