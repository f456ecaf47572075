import datetime
from typing import Callable, Dict, Optional, Tuple

Period = Tuple[datetime.date, datetime.date]


def _fy_start_year(today: datetime.date, fy_start_month: int, fy_start_day: int) -> int:
    if (today.month, today.day) >= (fy_start_month, fy_start_day):
        return today.year
    return today.year - 1


def _fy(start_year: int, fy_start_month: int, fy_start_day: int) -> Period:
    start = datetime.date(start_year, fy_start_month, fy_start_day)
    end = datetime.date(start_year + 1, fy_start_month, fy_start_day) - datetime.timedelta(days=1)
    return start, end


def current_fy(today: datetime.date, fy_start_month: int = 7, fy_start_day: int = 1) -> Period:
    """Fiscal year containing `today`. The default start is 1 July."""
    return _fy(_fy_start_year(today, fy_start_month, fy_start_day), fy_start_month, fy_start_day)


def last_fy(today: datetime.date, fy_start_month: int = 7, fy_start_day: int = 1) -> Period:
    return _fy(_fy_start_year(today, fy_start_month, fy_start_day) - 1, fy_start_month, fy_start_day)


def current_month(today: datetime.date) -> Period:
    start = today.replace(day=1)
    if today.month == 12:
        end = datetime.date(today.year, 12, 31)
    else:
        end = datetime.date(today.year, today.month + 1, 1) - datetime.timedelta(days=1)
    return start, end


def last_month(today: datetime.date) -> Period:
    end = today.replace(day=1) - datetime.timedelta(days=1)
    return end.replace(day=1), end


PERIODS: Dict[str, Callable[..., Period]] = {
    "current-fy": current_fy,
    "last-fy": last_fy,
    "current-month": current_month,
    "last-month": last_month,
}


def period_from_name(name: str, config=None, today: Optional[datetime.date] = None) -> Period:
    """Resolves a preset name like 'last-fy' to a (start, end) pair."""
    if name not in PERIODS:
        raise ValueError(f"Unknown period {name!r}; expected one of {', '.join(PERIODS)}")
    today = today or datetime.date.today()
    if name.endswith("-fy"):
        if config is not None:
            reporting = config.business_rules.reporting
            return PERIODS[name](today, reporting.fy_start_month, reporting.fy_start_day)
        return PERIODS[name](today)
    return PERIODS[name](today)


def format_duration(seconds) -> str:
    """3600 -> '1h', 5400 -> '1h 30m', 2700 -> '45m'."""
    minutes = int(seconds or 0) // 60
    hours, minutes = divmod(minutes, 60)
    if hours and minutes:
        return f"{hours}h {minutes}m"
    if hours:
        return f"{hours}h"
    return f"{minutes}m"
