"""Daily refresh window and schedule calculations."""
from datetime import date, datetime, time, timedelta
from typing import Union
from zoneinfo import ZoneInfo

from processor.models import RefreshWindow

TzLike = Union[str, ZoneInfo]


def _zone(tz: TzLike) -> ZoneInfo:
    return tz if isinstance(tz, ZoneInfo) else ZoneInfo(tz)


def localize(now: datetime, tz: TzLike) -> datetime:
    """
    Express an instant in the given timezone.

    Naive datetimes are taken to already be local wall-clock time.
    """
    zone = _zone(tz)
    if now.tzinfo is None:
        return now.replace(tzinfo=zone)
    return now.astimezone(zone)


def _at(day: date, hour: int, minute: int, zone: ZoneInfo) -> datetime:
    return datetime.combine(day, time(hour, minute), tzinfo=zone)


def compute_refresh_window(now: datetime, boundary_hour: int = 4,
                           tz: TzLike = 'Europe/London') -> RefreshWindow:
    """
    Compute the [start, end) window for the cycle that contains ``now``.

    The cycle starts at ``boundary_hour`` on its calendar day and ends one
    millisecond before the boundary on the next calendar day. Before the
    boundary hour, the current cycle is still the previous day's.

    Args:
        now: Current wall-clock instant
        boundary_hour: Local hour at which a new daily cycle begins
        tz: IANA timezone name or ZoneInfo

    Returns:
        RefreshWindow with timezone-aware bounds
    """
    zone = _zone(tz)
    local_now = localize(now, zone)

    cycle_day = local_now.date()
    if local_now.hour < boundary_hour:
        cycle_day -= timedelta(days=1)

    # Built from calendar dates so DST transition days stay 23 or 25 hours
    start = _at(cycle_day, boundary_hour, 0, zone)
    end = _at(cycle_day + timedelta(days=1), boundary_hour, 0, zone)
    return RefreshWindow(start=start, end=end - timedelta(milliseconds=1))


def next_occurrence(now: datetime, hour: int, minute: int,
                    tz: TzLike = 'Europe/London') -> datetime:
    """Return the next local hour:minute strictly after ``now``."""
    zone = _zone(tz)
    local_now = localize(now, zone)
    candidate = _at(local_now.date(), hour, minute, zone)
    if candidate <= local_now:
        candidate = _at(local_now.date() + timedelta(days=1), hour, minute, zone)
    return candidate


def compute_week_window(now: datetime, tz: TzLike = 'Europe/London') -> RefreshWindow:
    """
    Compute the Monday 00:00 to Sunday 23:59:59.999 window containing ``now``.

    The end instant is part of the window.
    """
    zone = _zone(tz)
    local_now = localize(now, zone)
    monday = local_now.date() - timedelta(days=local_now.weekday())
    start = _at(monday, 0, 0, zone)
    end = _at(monday + timedelta(days=7), 0, 0, zone)
    return RefreshWindow(
        start=start, end=end - timedelta(milliseconds=1), inclusive_end=True
    )
