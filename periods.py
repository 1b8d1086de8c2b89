from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings
from recurrence import days_in_month, shift_months


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date

    def contains(self, value: date) -> bool:
        return self.start <= value <= self.end


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def month_period(month: date) -> Period:
    first = month.replace(day=1)
    last = first.replace(day=days_in_month(first.year, first.month))
    return Period(first.strftime("%Y-%m"), first, last)


def parse_month(value: Optional[str], *, today: Optional[date] = None) -> Period:
    if not value:
        return month_period(today or local_today())
    try:
        first = datetime.strptime(value.strip(), "%Y-%m").date()
    except ValueError as exc:
        raise ValueError("Month must use the YYYY-MM format") from exc
    return month_period(first)


def shift_month(period: Period, months: int) -> Period:
    return month_period(shift_months(period.start, months))
