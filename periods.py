from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional

from errors import ValidationError


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date


def month_start(d: date) -> date:
    return d.replace(day=1)


def add_months(d: date, count: int) -> date:
    month_index = (d.year * 12) + (d.month - 1) + count
    year = month_index // 12
    month = (month_index % 12) + 1
    return date(year, month, 1)


def month_end(d: date) -> date:
    return add_months(d, 1) - date.resolution


def month_key(year: int, month: int) -> str:
    return f"{year:04d}-{month:02d}"


def trailing_months(months: int, *, today: Optional[date] = None) -> Period:
    """The last ``months`` calendar months, current month included."""
    today = today or date.today()
    if months < 1:
        raise ValueError("Window must cover at least one month")
    start = add_months(month_start(today), -(months - 1))
    return Period(f"last_{months}_months", start, month_end(today))


def parse_date(value: Optional[str], field: str) -> Optional[date]:
    if value is None or not value.strip():
        return None
    try:
        return datetime.strptime(value.strip(), "%Y-%m-%d").date()
    except ValueError as exc:
        raise ValidationError(
            f"Please provide {field} in correct format (YYYY-MM-DD)"
        ) from exc


def resolve_range(
    date_from: Optional[str], date_to: Optional[str]
) -> tuple[Optional[date], Optional[date]]:
    start = parse_date(date_from, "dateFrom")
    end = parse_date(date_to, "dateTo")
    if start and end and start > end:
        raise ValidationError("dateFrom must be before dateTo")
    return start, end
