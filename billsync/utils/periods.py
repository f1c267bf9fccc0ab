import calendar
from datetime import datetime, timezone
from typing import Optional
from dateutil.relativedelta import relativedelta


def from_unix(timestamp) -> Optional[datetime]:
    """Processor unix timestamp to naive UTC datetime"""
    if timestamp is None:
        return None
    return datetime.fromtimestamp(int(timestamp), timezone.utc).replace(tzinfo=None)


def to_unix(value: datetime) -> int:
    """Naive UTC datetime to unix timestamp"""
    return calendar.timegm(value.utctimetuple())


def add_interval(start: datetime, interval: str, count: int = 1) -> datetime:
    """End of a billing period starting at ``start``"""
    interval = getattr(interval, "value", interval)
    if interval == "year":
        return start + relativedelta(years=count)
    if interval == "month":
        return start + relativedelta(months=count)
    if interval == "week":
        return start + relativedelta(weeks=count)
    if interval == "day":
        return start + relativedelta(days=count)
    raise ValueError(f"Unsupported billing interval: {interval}")
