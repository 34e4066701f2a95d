import re
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Optional

MONTH_KEY_PATTERN = r"^[0-9]{4}-(0[1-9]|1[0-2])-01$"
_MONTH_KEY_RE = re.compile(MONTH_KEY_PATTERN)


@dataclass(frozen=True)
class Period:
    """Half-open interval ``[start, end)`` of naive UTC timestamps."""

    slug: str
    start: datetime
    end: datetime


def naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Convert aware datetimes to naive UTC; naive ones are assumed to be UTC already."""
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def is_month_key(value: str) -> bool:
    return bool(_MONTH_KEY_RE.fullmatch(value or ""))


def parse_month_key(value: str) -> date:
    if not is_month_key(value):
        raise ValueError("Month must be in YYYY-MM-01 format with valid month (01-12)")
    return date.fromisoformat(value)


def month_key(value: date) -> str:
    return value.replace(day=1).isoformat()


def add_months(value: date, count: int) -> date:
    index = value.year * 12 + (value.month - 1) + count
    return date(index // 12, index % 12 + 1, 1)


def month_period(key: str) -> Period:
    first = parse_month_key(key)
    following = add_months(first, 1)
    return Period(
        key,
        datetime(first.year, first.month, 1),
        datetime(following.year, following.month, 1),
    )


def month_label(key: str) -> str:
    return parse_month_key(key).strftime("%B %Y")


def current_month_key(today: Optional[date] = None) -> str:
    return month_key(today or datetime.utcnow().date())
