"""Event processor for normalizing coordinates and attendance."""
import logging
import math
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, List, Optional

from processor.models import (
    EventRecord, NormalizedEvent, Point, RefreshWindow, Snapshot
)

logger = logging.getLogger(__name__)

# Sources occasionally hand us typographic minus signs
_MINUS_SIGNS = ('\u2212', '\u2012', '\u2013', '\ufe63', '\uff0d')


def parse_coordinate(value: Any) -> Optional[float]:
    """
    Parse a single coordinate into a finite float.

    Args:
        value: Number, Decimal or numeric string

    Returns:
        Finite float, or None if the value is missing or not numeric
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, str):
        text = value.strip()
        for sign in _MINUS_SIGNS:
            text = text.replace(sign, '-')
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
    elif isinstance(value, (int, float, Decimal)):
        try:
            number = float(value)
        except (OverflowError, InvalidOperation):
            return None
    else:
        return None

    if not math.isfinite(number):
        return None
    return number


def parse_point(lat: Any, lon: Any) -> Optional[Point]:
    """Return a Point if both coordinates are valid, otherwise None."""
    latitude = parse_coordinate(lat)
    longitude = parse_coordinate(lon)
    if latitude is None or longitude is None:
        return None
    return Point(longitude=longitude, latitude=latitude)


def normalize_attendance(value: Any) -> Optional[str]:
    """Render attendance as a string so large integers survive JSON."""
    if value is None:
        return None
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, str):
        return value.strip()
    return str(value)


class EventProcessor:
    """Processor for turning raw event rows into snapshot entries."""

    def normalize_event(self, record: EventRecord) -> NormalizedEvent:
        """
        Normalize a single event record. Never raises.

        Args:
            record: Raw EventRecord from the source adapter

        Returns:
            NormalizedEvent with geometry set only for valid coordinates
        """
        point = parse_point(record.lat, record.lon)
        if point is None and (record.lat is not None or record.lon is not None):
            logger.debug(
                f"Event {record.id} has unusable coordinates: "
                f"lat={record.lat!r} lon={record.lon!r}"
            )
        return NormalizedEvent(
            record=record,
            point=point,
            phq_attendance=normalize_attendance(record.phq_attendance),
        )

    def process_events(self, records: List[EventRecord]) -> List[NormalizedEvent]:
        """
        Normalize every record, preserving order.

        Records with bad coordinates are kept with a null geometry.
        """
        normalized = [self.normalize_event(record) for record in records]
        geo_points = sum(1 for event in normalized if event.point is not None)
        logger.info(
            f"Normalized {len(normalized)} events, "
            f"{geo_points} with valid coordinates"
        )
        return normalized

    def build_snapshot(self, window: RefreshWindow,
                       events: List[NormalizedEvent],
                       now: Optional[datetime] = None) -> Snapshot:
        """Assemble the cached snapshot for a window."""
        return Snapshot(
            window=window,
            events=events,
            timestamp=now or datetime.now(timezone.utc),
        )
