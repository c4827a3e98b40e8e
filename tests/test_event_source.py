"""Unit tests for the events_live source adapter."""
import logging
from dataclasses import replace
from datetime import datetime

import pytest

from processor.errors import SourceUnavailable
from processor.time_window import compute_refresh_window, compute_week_window
from source.event_source import EventSource
from storage.connections import ConnectionProvider


@pytest.fixture
def window():
    return compute_refresh_window(datetime(2024, 3, 10, 12, 0), 4, 'Europe/London')


class TestEventSource:
    """Test cases for EventSource."""

    def test_fetch_events_filters_to_window_and_orders(
        self, settings, insert_events, make_row, window
    ):
        """Test only rows with start in [start, end) come back, oldest first."""
        insert_events(
            make_row(id='late', start_local=datetime(2024, 3, 10, 21, 0)),
            make_row(id='start-edge', start_local=datetime(2024, 3, 10, 4, 0)),
            make_row(id='before', start_local=datetime(2024, 3, 10, 3, 59, 59)),
            make_row(id='end-edge', start_local=datetime(2024, 3, 11, 3, 59, 59, 999000)),
            make_row(id='last-ms', start_local=datetime(2024, 3, 11, 3, 59, 59, 998000)),
            make_row(id='no-start', start_local=None),
        )

        with ConnectionProvider(settings) as provider:
            records = EventSource(provider).fetch_events(window)

        assert [r.id for r in records] == ['start-edge', 'late', 'last-ms']

    def test_week_window_includes_end_instant(self, settings, insert_events, make_row):
        insert_events(
            make_row(id='monday', start_local=datetime(2024, 3, 4, 0, 0)),
            make_row(id='sunday-end', start_local=datetime(2024, 3, 10, 23, 59, 59, 999000)),
            make_row(id='next-week', start_local=datetime(2024, 3, 11, 0, 0)),
        )
        week = compute_week_window(datetime(2024, 3, 6, 12, 0), 'Europe/London')

        with ConnectionProvider(settings) as provider:
            records = EventSource(provider).fetch_events(week)

        assert [r.id for r in records] == ['monday', 'sunday-end']

    def test_fetch_events_maps_columns(self, settings, insert_events, make_row, window):
        insert_events(make_row(id='evt-1', lat=None, lon='−0.10', phq_attendance=9000000000))

        with ConnectionProvider(settings) as provider:
            record = EventSource(provider).fetch_events(window)[0]

        assert record.id == 'evt-1'
        assert record.lat is None
        assert record.lon == '−0.10'
        assert record.phq_attendance == 9000000000
        assert record.start_local == datetime(2024, 3, 10, 19, 0)
        assert record.venue_name == 'Test Venue'

    def test_empty_window(self, settings, window):
        with ConnectionProvider(settings) as provider:
            assert EventSource(provider).fetch_events(window) == []

    def test_unreachable_database_raises_source_unavailable(self, settings, tmp_path, window):
        broken = replace(
            settings, database_url=f"sqlite:///{tmp_path / 'missing' / 'events.db'}"
        )

        with ConnectionProvider(broken) as provider:
            with pytest.raises(SourceUnavailable):
                EventSource(provider).fetch_events(window)

    def test_missing_database_url_raises_source_unavailable(self, settings, window):
        with ConnectionProvider(replace(settings, database_url=None)) as provider:
            with pytest.raises(SourceUnavailable):
                EventSource(provider).fetch_events(window)

    def test_count(self, settings, insert_events, make_row):
        insert_events(make_row(id='a'), make_row(id='b'))

        with ConnectionProvider(settings) as provider:
            assert EventSource(provider).count() == 2

    def test_slow_queries_are_logged(self, settings, window, caplog):
        slow = replace(settings, slow_query_seconds=0)

        with caplog.at_level(logging.WARNING, logger='storage.connections'):
            with ConnectionProvider(slow) as provider:
                EventSource(provider).fetch_events(window)

        assert any('Slow query detected' in r.message for r in caplog.records)

    def test_reset_recreates_engine(self, settings):
        provider = ConnectionProvider(settings)
        first = provider.engine()

        provider.reset()

        assert provider.engine() is not first
        provider.close()
