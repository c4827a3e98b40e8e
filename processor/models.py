"""Data models for the cache refresh pipeline."""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat(timespec='milliseconds')


@dataclass(frozen=True)
class EventRecord:
    """Raw event row read from the events store."""
    id: str
    title: Optional[str] = None
    category: Optional[str] = None
    venue_name: Optional[str] = None
    venue_formatted_address: Optional[str] = None
    start_local: Optional[datetime] = None
    end_local: Optional[datetime] = None
    lat: Any = None
    lon: Any = None
    phq_attendance: Any = None
    labels: Optional[str] = None


@dataclass(frozen=True)
class Point:
    """A validated longitude/latitude pair."""
    longitude: float
    latitude: float

    def to_geojson(self) -> Dict[str, Any]:
        # GeoJSON uses [longitude, latitude] order
        return {'type': 'Point', 'coordinates': [self.longitude, self.latitude]}


@dataclass(frozen=True)
class NormalizedEvent:
    """Event record with parsed coordinates and transport-safe attendance."""
    record: EventRecord
    point: Optional[Point]
    phq_attendance: Optional[str]

    @property
    def id(self) -> str:
        return self.record.id

    @property
    def geometry(self) -> Optional[Dict[str, Any]]:
        return self.point.to_geojson() if self.point else None

    def to_dict(self) -> Dict[str, Any]:
        record = self.record
        return {
            'id': record.id,
            'title': record.title,
            'category': record.category,
            'venue_name': record.venue_name,
            'venue_formatted_address': record.venue_formatted_address,
            'start_local': _isoformat(record.start_local),
            'end_local': _isoformat(record.end_local),
            'lat': self.point.latitude if self.point else None,
            'lon': self.point.longitude if self.point else None,
            'phq_attendance': self.phq_attendance,
            'labels': record.labels,
            'geometry': self.geometry,
        }


@dataclass(frozen=True)
class RefreshWindow:
    """
    Interval a query operates over.

    Daily refresh windows are half-open [start, end); the weekly listing
    window includes its end instant.
    """
    start: datetime
    end: datetime
    inclusive_end: bool = False

    @property
    def cache_date(self) -> str:
        return self.start.date().isoformat()

    @property
    def snapshot_key(self) -> str:
        return f"events:{self.cache_date}"

    @property
    def geo_key(self) -> str:
        return f"geo:events:{self.cache_date}"

    def contains(self, value: datetime) -> bool:
        if self.inclusive_end:
            return self.start <= value <= self.end
        return self.start <= value < self.end

    def to_dict(self) -> Dict[str, str]:
        return {'start': _isoformat(self.start), 'end': _isoformat(self.end)}


@dataclass
class Snapshot:
    """Cached payload for one refresh window."""
    window: RefreshWindow
    events: List[NormalizedEvent]
    timestamp: datetime

    @property
    def total_events(self) -> int:
        return len(self.events)

    @property
    def total_geo_points(self) -> int:
        return sum(1 for event in self.events if event.point is not None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': True,
            'data': [event.to_dict() for event in self.events],
            'timestamp': _isoformat(self.timestamp),
            'metadata': {
                'timeRange': self.window.to_dict(),
                'totalEvents': self.total_events,
                'totalGeoPoints': self.total_geo_points,
            },
        }


@dataclass
class RunStatus:
    """Current lifecycle state of the refresh job."""
    status: str = 'pending'
    last_run: Optional[str] = None
    events_count: int = 0
    retry_count: int = 0
    message: str = 'No refresh has run yet'

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status': self.status,
            'lastRun': self.last_run,
            'eventsCount': self.events_count,
            'retryCount': self.retry_count,
            'message': self.message,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RunStatus':
        return cls(
            status=data.get('status', 'pending'),
            last_run=data.get('lastRun'),
            events_count=int(data.get('eventsCount') or 0),
            retry_count=int(data.get('retryCount') or 0),
            message=data.get('message', ''),
        )


@dataclass
class Schedule:
    """Persisted daily trigger time."""
    hour: int
    minute: int
    timezone: str
    next_run: Optional[str] = None
    updated_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'hour': self.hour,
            'minute': self.minute,
            'timezone': self.timezone,
            'nextRun': self.next_run,
            'updatedAt': self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Schedule':
        return cls(
            hour=int(data['hour']),
            minute=int(data['minute']),
            timezone=data['timezone'],
            next_run=data.get('nextRun'),
            updated_at=data.get('updatedAt'),
        )


@dataclass
class GeoWriteResult:
    """Partial outcome of a best-effort geo index write."""
    written: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    removed: List[str] = field(default_factory=list)


@dataclass
class RefreshOutcome:
    """Result of one trigger invocation."""
    status: str
    events_count: int = 0
    retry_count: int = 0
    max_retries: int = 0
    message: str = ''
    error: Optional[str] = None
    error_type: Optional[str] = None
    high_load: bool = False
    retry_after: Optional[int] = None
    next_retry: Optional[datetime] = None
    geo: Optional[GeoWriteResult] = None

    @classmethod
    def retry_scheduled(cls, error: Exception, retry_count: int, max_retries: int,
                        retry_after: int, now: datetime) -> 'RefreshOutcome':
        return cls(
            status='retry_scheduled',
            retry_count=retry_count,
            max_retries=max_retries,
            message=(
                f"Failed to cache events. Retry {retry_count}/{max_retries} "
                f"in {retry_after} seconds."
            ),
            error=str(error),
            error_type=type(error).__name__,
            high_load=getattr(error, 'high_load', False),
            retry_after=retry_after,
            next_retry=now + timedelta(seconds=retry_after),
        )
