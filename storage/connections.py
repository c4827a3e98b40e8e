"""Owned connection handles for the events database and the DynamoDB cache."""
import logging
import time
from typing import Optional

import boto3
from botocore.config import Config
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url

from config import Settings

logger = logging.getLogger(__name__)


class ConnectionProvider:
    """
    Lazily acquires and releases the database engine and cache table.

    One provider is created per invocation and passed to the components
    that need it. After a transient failure the orchestrator calls
    ``reset()`` so the next attempt starts from fresh connections.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self._engine: Optional[Engine] = None
        self._table = None

    def __enter__(self) -> 'ConnectionProvider':
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def engine(self) -> Engine:
        """Return the SQLAlchemy engine, creating it on first use."""
        if self._engine is None:
            if not self.settings.database_url:
                raise RuntimeError("DATABASE_URL environment variable is not set")
            self._engine = self._create_engine(self.settings.database_url)
            logger.info("Created database engine")
        return self._engine

    def table(self):
        """Return the DynamoDB table resource, creating it on first use."""
        if self._table is None:
            timeout = self.settings.timeout_seconds
            dynamodb = boto3.resource(
                'dynamodb',
                region_name=self.settings.aws_region,
                endpoint_url=self.settings.dynamodb_endpoint_url,
                config=Config(
                    connect_timeout=timeout,
                    read_timeout=timeout,
                    retries={'max_attempts': 2, 'mode': 'standard'}
                )
            )
            self._table = dynamodb.Table(self.settings.table_name)
            logger.info(f"Initialized cache table: {self.settings.table_name}")
        return self._table

    def reset(self) -> None:
        """Drop current handles so the next use reconnects."""
        logger.warning("Resetting database and cache connections")
        self.close()

    def close(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
        self._table = None

    def _create_engine(self, url: str) -> Engine:
        timeout = self.settings.timeout_seconds
        backend = make_url(url).get_backend_name()

        kwargs = {'pool_pre_ping': True}
        if backend == 'sqlite':
            kwargs['connect_args'] = {'timeout': timeout}
        else:
            kwargs['pool_timeout'] = timeout
            if backend == 'postgresql':
                kwargs['connect_args'] = {
                    'connect_timeout': timeout,
                    'options': f"-c statement_timeout={timeout * 1000}"
                }

        engine = create_engine(url, **kwargs)
        self._watch_slow_queries(engine)
        return engine

    def _watch_slow_queries(self, engine: Engine) -> None:
        threshold = self.settings.slow_query_seconds

        @event.listens_for(engine, 'before_cursor_execute')
        def _before(conn, cursor, statement, parameters, context, executemany):
            conn.info.setdefault('query_start_time', []).append(time.perf_counter())

        @event.listens_for(engine, 'after_cursor_execute')
        def _after(conn, cursor, statement, parameters, context, executemany):
            elapsed = time.perf_counter() - conn.info['query_start_time'].pop()
            if elapsed > threshold:
                logger.warning(
                    f"Slow query detected: took {elapsed * 1000:.0f}ms",
                    extra={'statement': statement}
                )
