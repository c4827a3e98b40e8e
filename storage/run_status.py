"""Run status and schedule records for the refresh job."""
import logging
from datetime import datetime, timezone
from typing import Optional

from processor.models import RunStatus, Schedule
from processor.time_window import next_occurrence
from storage.cache_store import DynamoDBCacheStore

logger = logging.getLogger(__name__)

STATUS_KEY = 'cron:status'
SCHEDULE_KEY = 'cron:schedule'

PENDING = 'pending'
RUNNING = 'running'
COMPLETED = 'completed'
FAILED = 'failed'


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec='milliseconds')


class RunStatusTracker:
    """Reads and writes the single current run status record."""

    def __init__(self, store: DynamoDBCacheStore, timezone_name: str = 'Europe/London',
                 default_hour: int = 4):
        self.store = store
        self.timezone_name = timezone_name
        self.default_hour = default_hour

    def read(self) -> RunStatus:
        """
        Return the current status, creating a pending record if none exists.

        Raises:
            CacheError: If the cache cannot be reached
        """
        data = self.store.get_json(STATUS_KEY)
        if data is None:
            status = RunStatus()
            logger.info("No run status found, creating default record")
            self.store.put_json(STATUS_KEY, status.to_dict())
            return status
        return RunStatus.from_dict(data)

    def write(self, status: str, message: str, retry_count: int = 0,
              events_count: int = 0) -> RunStatus:
        """Replace the current status record."""
        record = RunStatus(
            status=status,
            last_run=_now_iso(),
            events_count=events_count,
            retry_count=retry_count,
            message=message,
        )
        self.store.put_json(STATUS_KEY, record.to_dict())
        logger.info(f"Run status -> {status}: {message}")
        return record

    def mark_running(self, retry_count: int) -> RunStatus:
        return self.write(RUNNING, 'Cache update in progress', retry_count=retry_count)

    def mark_completed(self, events_count: int) -> RunStatus:
        return self.write(
            COMPLETED,
            f"Successfully cached {events_count} events",
            events_count=events_count,
        )

    def mark_retry_scheduled(self, retry_count: int, max_retries: int,
                             retry_after: int) -> RunStatus:
        return self.write(
            FAILED,
            f"Failed to cache events. Retry {retry_count}/{max_retries} "
            f"in {retry_after} seconds.",
            retry_count=retry_count,
        )

    def mark_exhausted(self,
                       message: str = 'Failed to cache events after all retries') -> RunStatus:
        return self.write(FAILED, message)

    def read_schedule(self, now: Optional[datetime] = None) -> Schedule:
        """
        Return the persisted schedule with ``next_run`` rolled forward.

        Falls back to the default boundary hour when nothing is stored.
        """
        now = now or datetime.now(timezone.utc)
        data = self.store.get_json(SCHEDULE_KEY)
        if data is None:
            schedule = Schedule(
                hour=self.default_hour, minute=0, timezone=self.timezone_name
            )
        else:
            schedule = Schedule.from_dict(data)

        schedule.next_run = next_occurrence(
            now, schedule.hour, schedule.minute, schedule.timezone
        ).isoformat()
        return schedule

    def write_schedule(self, hour: int, minute: int,
                       now: Optional[datetime] = None) -> Schedule:
        """Persist a new daily trigger time; inputs must already be validated."""
        now = now or datetime.now(timezone.utc)
        schedule = Schedule(
            hour=hour,
            minute=minute,
            timezone=self.timezone_name,
            next_run=next_occurrence(now, hour, minute, self.timezone_name).isoformat(),
            updated_at=_now_iso(),
        )
        self.store.put_json(SCHEDULE_KEY, schedule.to_dict())
        logger.info(f"Schedule updated to {hour:02d}:{minute:02d}, next run {schedule.next_run}")
        return schedule
