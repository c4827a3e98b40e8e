"""AWS Lambda handler for the daily events cache refresh."""
import json
import logging
import math
import time
from typing import Any, Dict, Optional

from config import Settings
from processor.errors import (
    SourceUnavailable, TransientError, Unauthorized, ValidationFailed
)
from refresh.orchestrator import COMPLETED, RETRY_SCHEDULED, RefreshOrchestrator
from storage.connections import ConnectionProvider

# Attributes every LogRecord has; anything else came from ``extra``
_RESERVED_LOG_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {'message', 'asctime'}


# Configure JSON logging
class JsonFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            'timestamp': self.formatTime(record),
            'level': record.levelname,
            'message': record.getMessage(),
            'logger': record.name
        }

        for key, value in vars(record).items():
            if key not in _RESERVED_LOG_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(log_level: str = 'INFO') -> None:
    """
    Configure logging with JSON formatter.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    root_logger = logging.getLogger()

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)

    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))


def _response(status_code: int, body: Dict[str, Any],
              headers: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    return {
        'statusCode': status_code,
        'headers': {'Content-Type': 'application/json', **(headers or {})},
        'body': json.dumps(body, default=str)
    }


def _request_parts(event: Dict[str, Any]):
    """Extract method, path, headers, query and body from REST or HTTP API events."""
    http = event.get('requestContext', {}).get('http', {})
    method = (event.get('httpMethod') or http.get('method') or '').upper()
    path = (event.get('path') or event.get('rawPath') or '').rstrip('/') or '/'
    headers = {k.lower(): v for k, v in (event.get('headers') or {}).items()}
    query = event.get('queryStringParameters') or {}
    body = event.get('body')
    return method, path, headers, query, body


def handle_trigger(orchestrator: RefreshOrchestrator,
                   headers: Dict[str, str]) -> Dict[str, Any]:
    """Run a refresh cycle and shape the outcome into an HTTP response."""
    try:
        outcome = orchestrator.run(headers.get('authorization'))
    except Unauthorized as e:
        return _response(401, {'error': str(e)})

    if outcome.status == COMPLETED:
        return _response(200, {
            'success': True,
            'message': outcome.message,
            'eventsCount': outcome.events_count,
            'geoPointsWritten': len(outcome.geo.written),
            'geoPointsFailed': outcome.geo.failed,
        })

    if outcome.status == RETRY_SCHEDULED:
        body = {
            'error': 'Cache update failed, will retry',
            'error_type': outcome.error_type,
            'retryCount': outcome.retry_count,
            'maxRetries': outcome.max_retries,
            'nextRetry': outcome.next_retry.isoformat(),
        }
        if outcome.high_load:
            body['details'] = (
                'Service is experiencing high load. Please try again in a few moments.'
            )
        return _response(503, body, headers={'Retry-After': str(outcome.retry_after)})

    return _response(500, {
        'error': outcome.message,
        'error_type': outcome.error_type,
    })


def handle_schedule_update(orchestrator: RefreshOrchestrator,
                           body: Optional[str]) -> Dict[str, Any]:
    try:
        payload = json.loads(body) if body else None
    except ValueError:
        return _response(400, {'error': 'Request body must be valid JSON'})

    try:
        schedule = orchestrator.update_schedule(payload)
    except ValidationFailed as e:
        return _response(400, {'error': str(e)})
    except TransientError as e:
        return _response(503, {'error': 'Failed to update schedule', 'details': str(e)},
                         headers={'Retry-After': str(orchestrator.settings.retry_delay_seconds)})
    return _response(200, {'success': True, 'schedule': schedule})


def handle_daily_events(orchestrator: RefreshOrchestrator) -> Dict[str, Any]:
    try:
        payload, cached = orchestrator.read_daily_events()
    except SourceUnavailable as e:
        logging.getLogger(__name__).error(f"Error fetching daily events: {e}")
        return _response(500, {'error': 'Failed to fetch daily events'})
    return _response(200, payload, headers={'X-Cache': 'HIT' if cached else 'MISS'})


def handle_weekly_events(orchestrator: RefreshOrchestrator) -> Dict[str, Any]:
    try:
        payload = orchestrator.weekly_events()
    except SourceUnavailable as e:
        logging.getLogger(__name__).error(f"Error fetching events: {e}")
        return _response(500, {'error': 'Failed to fetch events'})
    return _response(200, payload)


def handle_nearby(orchestrator: RefreshOrchestrator,
                  query: Dict[str, str]) -> Dict[str, Any]:
    try:
        longitude = float(query['lon'])
        latitude = float(query['lat'])
        radius_km = float(query.get('radius_km', '5'))
    except (KeyError, ValueError):
        return _response(400, {'error': 'lon and lat query parameters are required numbers'})
    if not all(math.isfinite(v) for v in (longitude, latitude, radius_km)):
        return _response(400, {'error': 'lon, lat and radius_km must be finite numbers'})
    if radius_km <= 0:
        return _response(400, {'error': 'radius_km must be positive'})

    try:
        hits = orchestrator.nearby_events(longitude, latitude, radius_km)
    except TransientError as e:
        return _response(503, {'error': 'Geo index unavailable', 'details': str(e)})
    return _response(200, {'success': True, 'data': hits, 'count': len(hits)})


def handle_health(orchestrator: RefreshOrchestrator) -> Dict[str, Any]:
    try:
        count = orchestrator.source.count()
    except SourceUnavailable as e:
        return _response(500, {
            'success': False,
            'message': 'Database connection failed',
            'error': str(e)
        })
    return _response(200, {
        'success': True,
        'message': 'Database connection successful',
        'counts': {'eventsLive': count}
    })


def route(orchestrator: RefreshOrchestrator, event: Dict[str, Any]) -> Dict[str, Any]:
    """Dispatch an API Gateway event to its handler."""
    method, path, headers, query, body = _request_parts(event)

    if path == '/api/cron/update-cache' and method == 'POST':
        return handle_trigger(orchestrator, headers)
    if path == '/api/cron/status' and method == 'GET':
        return _response(200, orchestrator.status_report())
    if path == '/api/cron/status' and method in ('PUT', 'POST'):
        return handle_schedule_update(orchestrator, body)
    if path == '/api/daily-events' and method == 'GET':
        return handle_daily_events(orchestrator)
    if path == '/api/daily-events/nearby' and method == 'GET':
        return handle_nearby(orchestrator, query)
    if path == '/api/events' and method == 'GET':
        return handle_weekly_events(orchestrator)
    if path == '/api/health' and method == 'GET':
        return handle_health(orchestrator)
    return _response(404, {'error': f"No route for {method} {path}"})


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Main Lambda handler function for the events cache service.

    Args:
        event: API Gateway proxy event
        context: Lambda context object

    Returns:
        API Gateway proxy response
    """
    logger = logging.getLogger(__name__)
    start_time = time.time()

    try:
        settings = Settings.from_env()
    except (ValueError, KeyError) as e:
        setup_logging()
        logger.error(
            f"Invalid configuration: {e}",
            extra={'error_type': type(e).__name__}
        )
        return _response(500, {
            'error': 'Internal server error',
            'error_type': type(e).__name__,
        })

    setup_logging(settings.log_level)
    try:
        with ConnectionProvider(settings) as provider:
            orchestrator = RefreshOrchestrator(settings, provider)
            response = route(orchestrator, event)
    except Exception as e:
        duration = time.time() - start_time
        logger.error(
            f"Request failed: {str(e)}",
            extra={
                'duration_seconds': round(duration, 2),
                'error_type': type(e).__name__
            },
            exc_info=True
        )
        return _response(500, {
            'error': 'Internal server error',
            'error_type': type(e).__name__,
        })

    logger.info(
        "Request completed",
        extra={
            'status_code': response['statusCode'],
            'duration_seconds': round(time.time() - start_time, 2)
        }
    )
    return response
