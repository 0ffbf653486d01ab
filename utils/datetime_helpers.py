"""
Datetime helper utilities to ensure consistent timezone handling across the application.

All model timestamps are timezone-naive UTC (DateTime(timezone=False)).
Charge schedules are entered by users as DD/MM/YYYY and HH:MM.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple
import logging
import re

logger = logging.getLogger(__name__)

CHARGE_DATE_FORMAT = "%d/%m/%Y"
_TIME_PATTERN = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")


def ensure_naive_datetime(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Convert timezone-aware datetime to naive UTC datetime.

    Example:
        >>> aware_dt = datetime.now(timezone.utc)
        >>> naive_dt = ensure_naive_datetime(aware_dt)
        >>> assert naive_dt.tzinfo is None
    """
    if dt is None:
        return None

    if dt.tzinfo is not None:
        return dt.astimezone(timezone.utc).replace(tzinfo=None)

    return dt


def get_naive_utc_now() -> datetime:
    """Current UTC time as naive datetime"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_charge_schedule(date_value, time_value: str) -> Tuple[datetime, str]:
    """
    Parse a user supplied charge date and time.

    Args:
        date_value: "DD/MM/YYYY" string or a datetime
        time_value: "HH:MM" string

    Returns:
        (charge_date at midnight, normalised "HH:MM")

    Raises:
        ValueError: if either part is malformed
    """
    if isinstance(date_value, datetime):
        charge_date = ensure_naive_datetime(date_value)
    else:
        charge_date = datetime.strptime(str(date_value).strip(), CHARGE_DATE_FORMAT)
    charge_date = charge_date.replace(hour=0, minute=0, second=0, microsecond=0)

    match = _TIME_PATTERN.match(str(time_value or "").strip())
    if not match:
        raise ValueError(f"Invalid time {time_value!r}, expected HH:MM")
    normalised_time = f"{int(match.group(1)):02d}:{match.group(2)}"

    return charge_date, normalised_time


def compute_expiry(charge_date: datetime, charge_time: str, hours: int) -> datetime:
    """Scheduled datetime plus the expiry window"""
    hh, mm = (int(part) for part in charge_time.split(":"))
    scheduled = charge_date.replace(hour=hh, minute=mm, second=0, microsecond=0)
    return scheduled + timedelta(hours=hours)


def format_charge_date(dt: datetime) -> str:
    return dt.strftime(CHARGE_DATE_FORMAT)
