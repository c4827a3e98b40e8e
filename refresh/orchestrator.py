"""Refresh orchestrator: runs one cache refresh cycle with bounded retry."""
import hmac
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from config import Settings
from processor.errors import (
    CacheError, TransientError, Unauthorized, ValidationFailed
)
from processor.event_processor import EventProcessor
from processor.models import (
    GeoWriteResult, RefreshOutcome, RefreshWindow, RunStatus, Snapshot
)
from processor.time_window import compute_refresh_window, compute_week_window
from source.cronjob_client import CronJobClient
from source.event_source import EventSource
from storage.cache_store import DynamoDBCacheStore
from storage.connections import ConnectionProvider
from storage.geo_index import GeoIndexWriter
from storage.run_status import RunStatusTracker
from storage.snapshot_cache import SnapshotCache

logger = logging.getLogger(__name__)

COMPLETED = 'completed'
RETRY_SCHEDULED = 'retry_scheduled'
FAILED = 'failed'


def _parse_bounded_int(body: Dict[str, Any], name: str, upper: int) -> int:
    value = body.get(name)
    if isinstance(value, bool):
        raise ValidationFailed(f"{name} must be an integer")
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if not isinstance(value, int):
        raise ValidationFailed(f"{name} must be an integer")
    if not 0 <= value <= upper:
        raise ValidationFailed(f"{name} must be between 0 and {upper}")
    return value


def parse_schedule_input(body: Any) -> Tuple[int, int]:
    """
    Validate an hour/minute schedule request body.

    Raises:
        ValidationFailed: If either field is missing or out of range
    """
    if not isinstance(body, dict):
        raise ValidationFailed("Request body must be a JSON object")
    return _parse_bounded_int(body, 'hour', 23), _parse_bounded_int(body, 'minute', 59)


class RefreshOrchestrator:
    """
    Drives fetch, normalize, geo index, snapshot and status bookkeeping.

    The retry counter lives on the run status record. Each trigger runs a
    single attempt; a transient failure records the next retry and tells
    the caller when to call back, up to ``settings.max_retries``.
    """

    def __init__(self, settings: Settings, provider: ConnectionProvider,
                 source: Optional[EventSource] = None,
                 processor: Optional[EventProcessor] = None,
                 store: Optional[DynamoDBCacheStore] = None,
                 cronjob_client: Optional[CronJobClient] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.settings = settings
        self.provider = provider
        self.source = source or EventSource(provider)
        self.processor = processor or EventProcessor()
        store = store or DynamoDBCacheStore(provider)
        self.geo_index = GeoIndexWriter(store, ttl_seconds=settings.snapshot_ttl_seconds)
        self.snapshots = SnapshotCache(store)
        self.status = RunStatusTracker(
            store, timezone_name=settings.timezone, default_hour=settings.boundary_hour
        )
        if cronjob_client is None and settings.cronjob_api_key and settings.cronjob_id:
            cronjob_client = CronJobClient(
                settings.cronjob_api_key, settings.cronjob_id,
                timeout=settings.timeout_seconds
            )
        self.cronjob_client = cronjob_client
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def window(self, now: Optional[datetime] = None) -> RefreshWindow:
        return compute_refresh_window(
            now or self.clock(), self.settings.boundary_hour, self.settings.timezone
        )

    def authorize(self, authorization: Optional[str]) -> None:
        """
        Check the trigger's bearer token against the configured secret.

        Raises:
            Unauthorized: If the header is missing, malformed or wrong
        """
        if not authorization or not authorization.startswith('Bearer '):
            raise Unauthorized('Unauthorized')
        token = authorization[len('Bearer '):].strip()
        secret = self.settings.cron_secret
        if not secret:
            logger.error("CRON_SECRET is not configured; rejecting trigger")
            raise Unauthorized('Invalid token')
        if not hmac.compare_digest(token.encode('utf-8'), secret.encode('utf-8')):
            raise Unauthorized('Invalid token')

    def run(self, authorization: Optional[str]) -> RefreshOutcome:
        """
        Run one refresh cycle for the current window.

        Args:
            authorization: Raw Authorization header from the trigger

        Returns:
            RefreshOutcome with status completed, retry_scheduled or failed

        Raises:
            Unauthorized: Before any state is read or written
        """
        self.authorize(authorization)

        now = self.clock()
        window = self.window(now)
        retry_count = 0
        logger.info(
            f"Refresh started for window {window.cache_date}",
            extra={'window': window.to_dict()}
        )

        try:
            retry_count = self.status.read().retry_count
            self.status.mark_running(retry_count)
            snapshot, geo = self._refresh(window, now)
            self.status.mark_completed(snapshot.total_events)
        except Exception as e:
            return self._handle_failure(e, retry_count)

        logger.info(
            f"Refresh completed for window {window.cache_date}",
            extra={
                'events_count': snapshot.total_events,
                'geo_points': snapshot.total_geo_points,
                'geo_failures': len(geo.failed),
            }
        )
        return RefreshOutcome(
            status=COMPLETED,
            events_count=snapshot.total_events,
            max_retries=self.settings.max_retries,
            message='Events cached successfully',
            geo=geo,
        )

    def _refresh(self, window: RefreshWindow,
                 now: datetime) -> Tuple[Snapshot, GeoWriteResult]:
        records = self.source.fetch_events(window)
        events = self.processor.process_events(records)
        geo = self.geo_index.write(
            window.geo_key,
            [(e.id, e.point.longitude, e.point.latitude) for e in events if e.point]
        )
        snapshot = self.processor.build_snapshot(window, events, now)
        self.snapshots.write(
            window.snapshot_key, snapshot, ttl_seconds=self.settings.snapshot_ttl_seconds
        )
        return snapshot, geo

    def _handle_failure(self, error: Exception, retry_count: int) -> RefreshOutcome:
        max_retries = self.settings.max_retries
        transient = isinstance(error, TransientError)
        if transient:
            logger.error(
                f"Error in cache update: {error}",
                extra={'error_type': type(error).__name__}
            )
        else:
            logger.error(
                f"Unrecoverable error in cache update: {error}",
                exc_info=True,
                extra={'error_type': type(error).__name__}
            )
        self.provider.reset()

        if transient and retry_count < max_retries:
            next_count = retry_count + 1
            delay = self.settings.retry_delay_seconds
            self._record_status(
                lambda: self.status.mark_retry_scheduled(next_count, max_retries, delay)
            )
            return RefreshOutcome.retry_scheduled(
                error, next_count, max_retries, delay, self.clock()
            )

        if transient:
            message = 'Failed to cache events after all retries'
        else:
            message = 'Failed to cache events: error is not retryable'
        self._record_status(lambda: self.status.mark_exhausted(message))
        return RefreshOutcome(
            status=FAILED,
            max_retries=max_retries,
            message=message,
            error=str(error),
            error_type=type(error).__name__,
            high_load=getattr(error, 'high_load', False),
        )

    @staticmethod
    def _record_status(write: Callable[[], RunStatus]) -> None:
        try:
            write()
        except CacheError as e:
            logger.error(f"Could not record run status: {e}")

    def read_daily_events(self, now: Optional[datetime] = None) -> Tuple[Dict[str, Any], bool]:
        """
        Return the snapshot for the current window.

        Serves the cached copy when present; otherwise recomputes the
        pipeline synchronously and caches the result on a best-effort basis.
        Run status is never touched.

        Returns:
            Tuple of (snapshot payload, served from cache)

        Raises:
            SourceUnavailable: If the cache misses and the source fails
        """
        now = now or self.clock()
        window = self.window(now)

        try:
            cached = self.snapshots.read(window.snapshot_key)
        except CacheError as e:
            logger.warning(f"Snapshot cache read failed, recomputing: {e}")
            cached = None
        if cached is not None:
            return cached, True

        logger.info(f"Snapshot cache miss for {window.snapshot_key}, recomputing")
        records = self.source.fetch_events(window)
        events = self.processor.process_events(records)
        snapshot = self.processor.build_snapshot(window, events, now)
        self.geo_index.write(
            window.geo_key,
            [(e.id, e.point.longitude, e.point.latitude) for e in events if e.point]
        )
        try:
            return self.snapshots.write(
                window.snapshot_key, snapshot,
                ttl_seconds=self.settings.snapshot_ttl_seconds
            ), False
        except CacheError as e:
            logger.warning(f"Could not cache recomputed snapshot: {e}")
            return snapshot.to_dict(), False

    def weekly_events(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Return every event starting in the current Monday-to-Sunday week.

        Always read straight from the source; nothing is cached.

        Raises:
            SourceUnavailable: If the source cannot be queried
        """
        now = now or self.clock()
        window = compute_week_window(now, self.settings.timezone)
        records = self.source.fetch_events(window)
        events = self.processor.process_events(records)
        logger.info(f"Found {len(events)} events for the current week")
        return self.processor.build_snapshot(window, events, now).to_dict()

    def nearby_events(self, longitude: float, latitude: float, radius_km: float,
                      now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Return today's indexed events within ``radius_km``, nearest first."""
        window = self.window(now)
        return self.geo_index.search(window.geo_key, longitude, latitude, radius_km)

    def status_report(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Describe the last known run state and the next scheduled run.

        Never raises for cache problems; a default record is synthesized.
        """
        now = now or self.clock()
        if self.cronjob_client is not None:
            external = self.cronjob_client.fetch_status()
            if external is not None:
                return external

        try:
            record = self.status.read()
            next_run = self.status.read_schedule(now).next_run
        except CacheError as e:
            logger.error(f"Failed to read run status: {e}")
            record = RunStatus(message='Run status is temporarily unavailable')
            next_run = None

        report = record.to_dict()
        report['nextRun'] = next_run
        return report

    def update_schedule(self, body: Any, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Validate and persist a new daily trigger time.

        Raises:
            ValidationFailed: If hour or minute is invalid
            CacheError: If the schedule cannot be stored
        """
        hour, minute = parse_schedule_input(body)
        return self.status.write_schedule(hour, minute, now or self.clock()).to_dict()
