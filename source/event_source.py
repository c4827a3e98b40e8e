"""Event source adapter reading from the events_live table."""
import logging
from typing import List

from sqlalchemy import (
    BigInteger, Column, DateTime, Float, MetaData, String, Table, Text,
    func, select
)
from sqlalchemy.exc import SQLAlchemyError

from processor.errors import SourceUnavailable
from processor.models import EventRecord, RefreshWindow
from storage.connections import ConnectionProvider

logger = logging.getLogger(__name__)

metadata = MetaData()

# Mirrors the columns the refresh job reads; the table is owned elsewhere
events_live = Table(
    'events_live',
    metadata,
    Column('id', String, primary_key=True),
    Column('title', String),
    Column('category', String),
    Column('venue_name', String),
    Column('venue_formatted_address', String),
    Column('start_local', DateTime),
    Column('end_local', DateTime),
    Column('lat', Float),
    Column('lon', String),
    Column('phq_attendance', BigInteger),
    Column('labels', Text),
)


class EventSource:
    """Reads event rows for a refresh window."""

    def __init__(self, provider: ConnectionProvider):
        self.provider = provider

    def fetch_events(self, window: RefreshWindow) -> List[EventRecord]:
        """
        Fetch all events starting inside the window, oldest first.

        The end bound is exclusive unless the window includes its end.

        ``start_local`` is stored as naive local time, so the window bounds
        are compared as local wall-clock values.

        Args:
            window: Refresh window for the current cycle

        Returns:
            List of EventRecord objects ordered by start_local

        Raises:
            SourceUnavailable: If the database cannot be queried
        """
        start = window.start.replace(tzinfo=None)
        end = window.end.replace(tzinfo=None)
        column = events_live.c.start_local
        upper = column <= end if window.inclusive_end else column < end
        query = (
            select(events_live)
            .where(column >= start)
            .where(upper)
            .order_by(events_live.c.start_local.asc())
        )

        logger.info(f"Fetching events between {start.isoformat()} and {end.isoformat()}")
        try:
            with self.provider.engine().connect() as conn:
                rows = conn.execute(query).mappings().all()
        except (SQLAlchemyError, RuntimeError) as e:
            raise SourceUnavailable(f"Failed to fetch events: {e}") from e

        records = [self._row_to_record(row) for row in rows]
        logger.info(f"Fetched {len(records)} events for {window.cache_date}")
        return records

    def count(self) -> int:
        """
        Count all rows in the events table.

        Raises:
            SourceUnavailable: If the database cannot be queried
        """
        try:
            with self.provider.engine().connect() as conn:
                return conn.execute(
                    select(func.count()).select_from(events_live)
                ).scalar_one()
        except (SQLAlchemyError, RuntimeError) as e:
            raise SourceUnavailable(f"Database connection failed: {e}") from e

    @staticmethod
    def _row_to_record(row) -> EventRecord:
        return EventRecord(
            id=str(row['id']),
            title=row['title'],
            category=row['category'],
            venue_name=row['venue_name'],
            venue_formatted_address=row['venue_formatted_address'],
            start_local=row['start_local'],
            end_local=row['end_local'],
            lat=row['lat'],
            lon=row['lon'],
            phq_attendance=row['phq_attendance'],
            labels=row['labels'],
        )
