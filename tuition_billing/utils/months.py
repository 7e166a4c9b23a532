import re
from datetime import date, datetime, timezone

from tuition_billing.core.exceptions import ValidationError

MONTH_RE = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")


def validate_month(month: str) -> str:
    if not month or not MONTH_RE.match(month):
        raise ValidationError(f"Invalid month '{month}', expected YYYY-MM")
    return month


def month_range(month: str) -> tuple[date, date]:
    """Returns (first day of month, first day of next month)."""
    validate_month(month)
    year, mon = int(month[:4]), int(month[5:7])
    start = date(year, mon, 1)
    if mon == 12:
        next_start = date(year + 1, 1, 1)
    else:
        next_start = date(year, mon + 1, 1)
    return start, next_start


def month_of(value: datetime | date) -> str:
    return value.strftime("%Y-%m")


def utc_now() -> datetime:
    """Naive UTC, matching how incoming timestamps are stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
