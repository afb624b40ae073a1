import calendar
from datetime import datetime

from app.models.token import TokenDuration

DURATION_MONTHS = {
    TokenDuration.three_months: 3,
    TokenDuration.six_months: 6,
    TokenDuration.one_year: 12,
}


def add_months(value: datetime, months: int) -> datetime:
    """Advance by calendar months, clamping the day to the target month's last day.

    Jan 31 + 1 month -> Feb 28 (or 29); Feb 29 + 12 months -> Feb 28.
    """
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def compute_expiry(created_at: datetime, duration: TokenDuration | str) -> datetime:
    return add_months(created_at, DURATION_MONTHS[TokenDuration(duration)])
