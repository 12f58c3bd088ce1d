# attend75/engine/modules/dates.py

from datetime import date, datetime
from typing import Union

DayLike = Union[date, datetime, str]


def parse_day(value: DayLike) -> date:
    """
    Normalises a calendar day given as a date, a datetime or a 'YYYY-MM-DD' string.
    Any time component is dropped.

    Raises:
        ValueError: if the value cannot be read as a calendar day.
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            # Accept full ISO timestamps too; only the day part matters.
            return date.fromisoformat(value.strip()[:10])
        except ValueError:
            raise ValueError(f"Malformed date: '{value}'. Expected YYYY-MM-DD.")
    raise ValueError(f"Malformed date: {value!r}.")


def weekday_index(day: date) -> int:
    """Day of week with 0=Sunday ... 6=Saturday, the convention used by lecture slots."""
    return day.isoweekday() % 7


def month_key(day: date) -> str:
    """'YYYY-MM' for the given day; comparable as a string with Subject.end_month."""
    return f"{day.year:04d}-{day.month:02d}"
