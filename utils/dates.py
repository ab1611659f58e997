from datetime import datetime, timezone

from dateutil.relativedelta import relativedelta


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def add_duration(start: datetime, duration: str) -> datetime:
    """Add one billing period (``month`` or ``year``) to ``start``."""
    if duration == "year":
        return start + relativedelta(years=1)
    if duration == "month":
        return start + relativedelta(months=1)
    raise ValueError(f"Unknown duration: {duration}")


def add_years(start: datetime, years: int) -> datetime:
    return start + relativedelta(years=years)
