"""AWS Lambda handler serving Rapla schedules as iCalendar feeds."""
import json
import logging
import os
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlencode

from processor.calendar_service import CalendarService
from processor.errors import ComputeError, FetchError, FetchReason, InvalidRequest, ParseError
from processor.request_normalizer import DEFAULT_HOST
from scraper.rapla_fetcher import RaplaFetcher
from storage.calendar_cache import CalendarCache


LOG_EXTRA_FIELDS = (
    'request_id', 'status_code', 'cache_age', 'duration_seconds', 'path',
    'error_type', 'cache_ttl_seconds', 'cache_max_size_bytes', 'page_weeks'
)


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

        for field in LOG_EXTRA_FIELDS:
            if hasattr(record, field):
                log_data[field] = getattr(record, field)

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


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Settings:
    """Runtime configuration read from the environment."""
    log_level: str = 'INFO'
    cache_ttl_seconds: int = 3600
    cache_max_size_bytes: int = 100 * 1024 * 1024
    timeout_seconds: int = 30
    page_weeks: int = 26
    upstream_hosts: Tuple[str, ...] = (DEFAULT_HOST,)


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning(f"Ignoring non-integer {name}={raw!r}, using {default}")
        return default
    if value < 0:
        logger.warning(f"Ignoring negative {name}={raw!r}, using {default}")
        return default
    return value


def load_settings() -> Settings:
    """Read settings from environment variables."""
    cache_enabled = os.environ.get('CACHE_ENABLED', 'true').strip().lower() not in ('0', 'false', 'no', 'off')
    max_size_mb = _env_int('CACHE_MAX_SIZE_MB', 100) if cache_enabled else 0

    hosts = tuple(
        host.strip().lower()
        for host in os.environ.get('UPSTREAM_HOSTS', DEFAULT_HOST).split(',')
        if host.strip()
    )

    return Settings(
        log_level=os.environ.get('LOG_LEVEL', 'INFO'),
        cache_ttl_seconds=_env_int('CACHE_TTL_SECONDS', 3600),
        cache_max_size_bytes=max_size_mb * 1024 * 1024,
        timeout_seconds=_env_int('TIMEOUT_SECONDS', 30),
        page_weeks=max(1, _env_int('PAGE_WEEKS', 26)),
        upstream_hosts=hosts or (DEFAULT_HOST,)
    )


def create_service(settings: Settings) -> CalendarService:
    """Build the calendar service and its cache from settings."""
    cache = CalendarCache(
        ttl=settings.cache_ttl_seconds,
        max_size=settings.cache_max_size_bytes
    )
    fetcher = RaplaFetcher(
        timeout=settings.timeout_seconds,
        page_weeks=settings.page_weeks
    )
    return CalendarService(
        fetcher=fetcher,
        cache=cache,
        allowed_hosts=settings.upstream_hosts
    )


# One service, and with it one cache, per warm execution environment.
# Concurrent requests coalesce only within the same environment.
_service: Optional[CalendarService] = None
_settings: Optional[Settings] = None
_service_lock = threading.Lock()


def get_service() -> Tuple[CalendarService, Settings]:
    """Return the environment's calendar service, creating it on first use."""
    global _service, _settings
    with _service_lock:
        if _service is None:
            _settings = load_settings()
            _service = create_service(_settings)
            logger.info(
                "Calendar service initialized",
                extra={
                    'cache_ttl_seconds': _settings.cache_ttl_seconds,
                    'cache_max_size_bytes': _settings.cache_max_size_bytes,
                    'page_weeks': _settings.page_weeks
                }
            )
        return _service, _settings


def reset_service() -> None:
    """Drop the calendar service and its cache."""
    global _service, _settings
    with _service_lock:
        _service = None
        _settings = None


def _request_target(event: Dict[str, Any]) -> Tuple[str, str, str]:
    """Extract (method, path, query) from an API Gateway or function URL event."""
    http_context = event.get('requestContext', {}).get('http', {})
    method = (http_context.get('method') or event.get('httpMethod') or 'GET').upper()

    if 'rawPath' in event:
        return method, event['rawPath'] or '/', event.get('rawQueryString') or ''

    query = urlencode(event.get('queryStringParameters') or {})
    return method, event.get('path') or '/', query


def _error_response(status_code: int, error: Exception, message: str) -> Dict[str, Any]:
    body = {
        'message': message,
        'details': getattr(error, 'details', '') or str(error),
        'error_type': type(error).__name__
    }

    url = getattr(error, 'url', None)
    if url:
        upstream = {'url': url}
        if getattr(error, 'status_code', None) is not None:
            upstream['status_code'] = error.status_code
        body['upstream'] = upstream

    return {
        'statusCode': status_code,
        'headers': {'Content-Type': 'application/json'},
        'body': json.dumps(body)
    }


def fetch_error_status(error: FetchError) -> int:
    """Map an upstream failure to the status code returned to the client."""
    if error.reason == FetchReason.TIMEOUT:
        return 504
    if error.reason == FetchReason.HTTP_STATUS and error.status_code and 400 <= error.status_code < 600:
        return error.status_code
    return 502


def handle_request(
    service: CalendarService,
    event: Dict[str, Any],
    cache_ttl_seconds: int = 0
) -> Dict[str, Any]:
    """
    Serve one calendar request.

    Args:
        service: Calendar service holding the cache
        event: API Gateway (v1 or v2) or function URL event
        cache_ttl_seconds: Max age advertised to HTTP caches

    Returns:
        Response dict with statusCode, headers and body
    """
    method, path, query = _request_target(event)
    if method not in ('GET', 'HEAD'):
        return {
            'statusCode': 405,
            'headers': {'Allow': 'GET, HEAD', 'Content-Type': 'application/json'},
            'body': json.dumps({'message': f"method {method} not allowed"})
        }

    try:
        document = service.get_calendar(path, query)
    except InvalidRequest as e:
        logger.warning(f"Rejected calendar request: {e}", extra={'path': path})
        return _error_response(400, e, e.message)
    except FetchError as e:
        logger.error(f"Upstream fetch failed: {e}", extra={'path': path, 'error_type': e.reason.value})
        return _error_response(fetch_error_status(e), e, e.message)
    except ParseError as e:
        logger.error(
            f"Upstream markup could not be parsed: {e}",
            extra={'path': path, 'error_type': e.reason.value}
        )
        return _error_response(500, e, e.message)
    except ComputeError as e:
        logger.error(f"Calendar computation failed: {e}", extra={'path': path})
        return _error_response(500, e, e.message)

    age = max(0, int((datetime.now(timezone.utc) - document.generated_at).total_seconds()))
    return {
        'statusCode': 200,
        'headers': {
            'Content-Type': 'text/calendar; charset=utf-8',
            'Cache-Control': f"public, max-age={cache_ttl_seconds}",
            'X-Cache-Age': str(age)
        },
        'body': '' if method == 'HEAD' else document.ics
    }


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Main Lambda handler function serving calendar feeds.

    Args:
        event: API Gateway or function URL request event
        context: Lambda context object

    Returns:
        Response dict with statusCode, headers and body
    """
    setup_logging(os.environ.get('LOG_LEVEL', 'INFO'))
    start_time = time.time()
    request_id = getattr(context, 'aws_request_id', None)

    try:
        service, settings = get_service()
        response = handle_request(service, event, settings.cache_ttl_seconds)
    except Exception as e:
        logger.error(
            f"Lambda execution failed: {str(e)}",
            extra={'request_id': request_id, 'error_type': type(e).__name__},
            exc_info=True
        )
        response = _error_response(500, e, 'internal error')

    logger.info(
        "Request completed",
        extra={
            'request_id': request_id,
            'status_code': response['statusCode'],
            'cache_age': response.get('headers', {}).get('X-Cache-Age'),
            'duration_seconds': round(time.time() - start_time, 3),
            'path': event.get('rawPath') or event.get('path')
        }
    )
    return response
