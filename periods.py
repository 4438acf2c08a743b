import calendar
import re
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Optional

_MONTH_KEY_RE = re.compile(r"^(\d{4})-(\d{2})$")
_DOW = {"MON": 0, "TUE": 1, "WED": 2, "THU": 3, "FRI": 4, "SAT": 5, "SUN": 6}


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date


class TimeRange(str, Enum):
    months3 = "months3"
    months6 = "months6"
    year1 = "year1"

    @property
    def months(self) -> int:
        return {"months3": 3, "months6": 6, "year1": 12}[self.value]


def month_key(d: date) -> str:
    return f"{d.year:04d}-{d.month:02d}"


def parse_month_key(key: str) -> date:
    """Return the first day of a ``YYYY-MM`` month key."""
    match = _MONTH_KEY_RE.match(key or "")
    if not match:
        raise ValueError(f"Invalid month key: {key!r}")
    year, month = int(match.group(1)), int(match.group(2))
    if not 1 <= month <= 12:
        raise ValueError(f"Invalid month key: {key!r}")
    return date(year, month, 1)


def is_month_key(value: Optional[str]) -> bool:
    try:
        parse_month_key(value or "")
    except ValueError:
        return False
    return True


def add_months(d: date, count: int) -> date:
    month_index = (d.year * 12) + (d.month - 1) + count
    year = month_index // 12
    month = (month_index % 12) + 1
    return date(year, month, 1)


def shift_month_key(key: str, count: int) -> str:
    return month_key(add_months(parse_month_key(key), count))


def month_end(d: date) -> date:
    first = d.replace(day=1)
    if first.month == 12:
        next_month = first.replace(year=first.year + 1, month=1)
    else:
        next_month = first.replace(month=first.month + 1)
    return next_month - date.resolution


def month_period(key: str) -> Period:
    start = parse_month_key(key)
    return Period(key, start, month_end(start))


def month_keys_between(start: date, end: date) -> list[str]:
    keys: list[str] = []
    current = start.replace(day=1)
    while current <= end:
        keys.append(month_key(current))
        current = add_months(current, 1)
    return keys


def preceding_month_keys(key: str, count: int = 3) -> list[str]:
    """Month keys of the ``count`` months before ``key``, nearest first."""
    return [shift_month_key(key, -offset) for offset in range(1, count + 1)]


def week_of_month(d: date, week_start: str = "SUN") -> int:
    # Week 1 is the (possibly partial) week that contains the 1st.
    start_dow = _DOW.get(week_start.upper(), 6)
    offset = (d.replace(day=1).weekday() - start_dow) % 7
    return (d.day - 1 + offset) // 7 + 1


def weeks_in_month(key: str, week_start: str = "SUN") -> int:
    return week_of_month(month_end(parse_month_key(key)), week_start)


def chart_window(time_range: TimeRange, today: Optional[date] = None) -> Period:
    """The ``N`` whole months before today's month plus today's month."""
    today = today or date.today()
    start = add_months(today.replace(day=1), -time_range.months)
    return Period(time_range.value, start, month_end(today))


def month_label(key: str) -> str:
    try:
        first = parse_month_key(key)
    except ValueError:
        return key
    return f"{calendar.month_abbr[first.month]} {first.year % 100:02d}"


def sanitize_flow_month(value: str) -> str:
    digits = "".join(ch for ch in value if ch.isdigit())[:6]
    if len(digits) <= 4:
        return digits
    year, month = digits[:4], digits[4:]
    if len(month) == 2:
        month = f"{min(max(int(month), 1), 12):02d}"
    return f"{year}-{month}"


def is_valid_flow_month(value: str) -> bool:
    cleaned = sanitize_flow_month(value)
    return len(cleaned) == 7 and is_month_key(cleaned)
