"""Shared fixtures: mocked DynamoDB cache table and a SQLite events store."""
from datetime import datetime

import boto3
import pytest
from moto import mock_aws
from sqlalchemy import create_engine, insert

from config import Settings
from source.event_source import events_live, metadata
from storage.connections import ConnectionProvider

TABLE_NAME = 'test-events-cache'
CRON_SECRET = 'test-secret'


def event_row(**overrides):
    """Build a full events_live row with sensible defaults."""
    row = {
        'id': 'evt-1',
        'title': 'Test Event',
        'category': 'concerts',
        'venue_name': 'Test Venue',
        'venue_formatted_address': '1 Test Street, London',
        'start_local': datetime(2024, 3, 10, 19, 0),
        'end_local': datetime(2024, 3, 10, 22, 0),
        'lat': 51.5,
        'lon': '-0.12',
        'phq_attendance': 1200,
        'labels': 'music,live',
    }
    row.update(overrides)
    return row


@pytest.fixture
def aws_credentials(monkeypatch):
    """Fake credentials so boto3 never reaches real AWS."""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_SECURITY_TOKEN', 'testing')
    monkeypatch.setenv('AWS_SESSION_TOKEN', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')


@pytest.fixture
def database_url(tmp_path):
    """SQLite database with an empty events_live table."""
    url = f"sqlite:///{tmp_path / 'events.db'}"
    engine = create_engine(url)
    metadata.create_all(engine)
    engine.dispose()
    return url


@pytest.fixture
def insert_events(database_url):
    """Insert events_live rows into the test database."""
    def _insert(*rows):
        engine = create_engine(database_url)
        with engine.begin() as conn:
            conn.execute(insert(events_live), list(rows))
        engine.dispose()
    return _insert


@pytest.fixture
def settings(database_url):
    return Settings(
        table_name=TABLE_NAME,
        database_url=database_url,
        cron_secret=CRON_SECRET,
        aws_region='us-east-1',
        timeout_seconds=5,
    )


@pytest.fixture
def cache_table(aws_credentials):
    """Create a mock DynamoDB cache table for testing."""
    with mock_aws():
        dynamodb = boto3.resource('dynamodb', region_name='us-east-1')
        table = dynamodb.create_table(
            TableName=TABLE_NAME,
            KeySchema=[
                {'AttributeName': 'pk', 'KeyType': 'HASH'},
                {'AttributeName': 'sk', 'KeyType': 'RANGE'}
            ],
            AttributeDefinitions=[
                {'AttributeName': 'pk', 'AttributeType': 'S'},
                {'AttributeName': 'sk', 'AttributeType': 'S'}
            ],
            BillingMode='PAY_PER_REQUEST'
        )
        yield table


@pytest.fixture
def provider(settings, cache_table):
    with ConnectionProvider(settings) as provider:
        yield provider


@pytest.fixture
def make_row():
    return event_row
