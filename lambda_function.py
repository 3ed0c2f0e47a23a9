"""AWS Lambda handlers for calendar event import and change polling."""
import json
import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests
from botocore.exceptions import BotoCoreError, ClientError

from ingest.remote_calendar import RemoteCalendarFetcher
from ingest.upload import get_headers, get_uploaded_file, parse_upload_event
from notifications.change_log import NotificationQueue
from processor.errors import (
    BatchLimitError, FileTooLargeError, FormatError, PersistenceError, UploadError
)
from processor.event_importer import EventImporter
from processor.event_validator import EventValidator
from storage.event_store import EventStore
from storage.user_directory import UserDirectory

MAX_POLL_LIMIT = 100

# Attributes every LogRecord has; anything else came in through ``extra``
_RESERVED_LOG_ATTRS = set(vars(logging.LogRecord('', 0, '', 0, '', (), None))) | {'message'}


# Configure JSON logging
class JsonFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON, including ``extra`` fields."""
        log_data = {
            'timestamp': self.formatTime(record),
            'level': record.levelname,
            'message': record.getMessage(),
            'logger': record.name
        }

        for key, value in vars(record).items():
            if key not in _RESERVED_LOG_ATTRS and key not in log_data:
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

    # Create new handler with JSON formatter
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)

    # Set log level
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))


def load_config() -> Dict[str, Any]:
    """Read configuration from environment variables."""
    max_title_length = os.environ.get('IMPORT_MAX_TITLE_LENGTH')
    return {
        'events_table': os.environ.get('EVENTS_TABLE', 'calendar-events'),
        'users_table': os.environ.get('USERS_TABLE', 'calendar-users'),
        'updates_table': os.environ.get('UPDATES_TABLE', 'calendar-updates'),
        'updates_log': os.environ.get('UPDATES_LOG', 'calendar_updates'),
        'log_level': os.environ.get('LOG_LEVEL', 'INFO'),
        'max_events': int(os.environ.get('IMPORT_MAX_EVENTS', '20')),
        'max_file_size': int(os.environ.get('IMPORT_MAX_FILE_SIZE', str(5 * 1024 * 1024))),
        'max_title_length': int(max_title_length) if max_title_length else None,
        'fetch_timeout_seconds': int(os.environ.get('FETCH_TIMEOUT_SECONDS', '30')),
        'updates_max_age_hours': float(os.environ.get('UPDATES_MAX_AGE_HOURS', '24')),
        'updates_max_records': int(os.environ.get('UPDATES_MAX_RECORDS', '1000')),
        'cron_max_age_hours': float(os.environ.get('CRON_MAX_AGE_HOURS', '2')),
        'cron_max_records': int(os.environ.get('CRON_MAX_RECORDS', '200')),
    }


@dataclass
class Services:
    """Store handles shared by every invocation in this container."""
    event_store: EventStore
    user_directory: UserDirectory
    notification_queue: NotificationQueue


# One set per container, so the queue's suppression window survives
# between invocations.
_services: Dict[tuple, Services] = {}


def get_services(config: Dict[str, Any]) -> Services:
    key = (
        config['events_table'], config['users_table'],
        config['updates_table'], config['updates_log']
    )
    if key not in _services:
        _services[key] = Services(
            event_store=EventStore(config['events_table']),
            user_directory=UserDirectory(config['users_table']),
            notification_queue=NotificationQueue(
                config['updates_table'],
                log_name=config['updates_log'],
                inline_max_age_hours=config['updates_max_age_hours'],
                inline_max_records=config['updates_max_records']
            )
        )
    return _services[key]


def build_importer(config: Dict[str, Any], services: Services,
                   notify: bool = True) -> EventImporter:
    validator = EventValidator(
        services.user_directory,
        services.event_store,
        max_title_length=config['max_title_length']
    )
    return EventImporter(
        validator,
        services.event_store,
        notification_queue=services.notification_queue if notify else None,
        max_events=config['max_events'],
        max_file_size=config['max_file_size']
    )


def _response(status_code: int, body: Any) -> Dict[str, Any]:
    return {
        'statusCode': status_code,
        'headers': {'Content-Type': 'application/json'},
        'body': json.dumps(body, default=str)
    }


def _error(status_code: int, message: str, error: Optional[Exception] = None,
           **extra) -> Dict[str, Any]:
    body = {'error': message}
    if error is not None:
        body['error_type'] = type(error).__name__
    body.update(extra)
    return _response(status_code, body)


def _http_method(event: Dict[str, Any]) -> str:
    method = event.get('httpMethod')
    if not method:
        method = ((event.get('requestContext') or {}).get('http') or {}).get('method', '')
    return method.upper()


def _acting_user(event: Dict[str, Any]) -> Optional[Dict[str, Optional[str]]]:
    """Identity established by the API Gateway authorizer, if any."""
    authorizer = (event.get('requestContext') or {}).get('authorizer') or {}
    claims = authorizer.get('claims') or (authorizer.get('jwt') or {}).get('claims') or {}
    user_id = claims.get('sub') or authorizer.get('principalId')
    if not user_id:
        return None
    name = claims.get('name') or claims.get('cognito:username')
    return {'id': str(user_id), 'name': name}


def _display_name(user: Dict[str, Optional[str]], user_directory: UserDirectory) -> str:
    if user['name']:
        return user['name']
    record = user_directory.get_user(user['id'])
    return (record or {}).get('name') or user['id']


def import_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Handle POST /import with actions validate, preview, import and formats.

    Args:
        event: API Gateway proxy event with a multipart/form-data body
        context: Lambda context object

    Returns:
        API Gateway proxy response
    """
    config = load_config()
    setup_logging(config['log_level'])
    logger = logging.getLogger(__name__)
    start_time = time.time()

    method = _http_method(event)
    if method == 'OPTIONS':
        return _response(200, {})
    if method != 'POST':
        return _error(405, 'Method not allowed')

    user = _acting_user(event)
    if user is None:
        return _error(401, 'Authentication required')

    query = event.get('queryStringParameters') or {}
    action = query.get('action')

    try:
        services = get_services(config)
        importer = build_importer(config, services)

        if action == 'formats':
            return _response(200, importer.supported_formats())

        form = parse_upload_event(event, config['max_file_size'])
        action = action or form.fields.get('action') or 'import'
        logger.info(
            f"Import request started",
            extra={'action': action, 'user_id': user['id']}
        )

        if action == 'formats':
            return _response(200, importer.supported_formats())

        if action not in ('validate', 'preview', 'import'):
            return _error(
                400, 'Invalid action. Supported actions: validate, import, preview, formats'
            )

        uploaded = get_uploaded_file(form)
        if uploaded is None and form.fields.get('source_url'):
            fetcher = RemoteCalendarFetcher(
                timeout=config['fetch_timeout_seconds'],
                max_size=config['max_file_size']
            )
            uploaded = fetcher.fetch(form.fields['source_url'])
        if uploaded is None:
            return _error(400, 'No file uploaded')

        if action == 'validate':
            return _response(200, importer.validate_file(uploaded.filename, uploaded.content))

        if action == 'preview':
            preview_importer = build_importer(config, services, notify=False)
            return _response(200, preview_importer.preview_file(uploaded.filename, uploaded.content))

        result = importer.import_file(uploaded.filename, uploaded.content, user['id'])

        if result.imported_count > 0:
            try:
                user_name = _display_name(user, services.user_directory)
                services.notification_queue.broadcast_notification(
                    f"{user_name} imported {result.imported_count} events",
                    'info',
                    import_user=user_name,
                    imported_count=result.imported_count,
                    error_count=result.error_count
                )
            except (ClientError, BotoCoreError) as e:
                logger.error(f"Failed to broadcast import notification: {e}")

        logger.info(
            f"Import request completed successfully",
            extra={
                'duration_seconds': round(time.time() - start_time, 2),
                'imported_count': result.imported_count,
                'error_count': result.error_count
            }
        )
        return _response(201, result.to_dict())

    except FileTooLargeError as e:
        return _error(413, str(e), e)

    except (UploadError, FormatError, BatchLimitError) as e:
        logger.warning(f"Import API Error: {e}", extra={'error_type': type(e).__name__})
        return _error(400, str(e), e)

    except PersistenceError as e:
        logger.error(f"Import transaction failed: {e}", exc_info=True)
        return _error(
            500, str(e), e,
            imported_count=0,
            note='No events were imported'
        )

    except requests.RequestException as e:
        logger.error(f"Failed to fetch calendar file: {e}", exc_info=True)
        return _error(502, 'Failed to fetch calendar file', e, detail=str(e))

    except Exception as e:
        logger.error(
            f"Import request failed: {str(e)}",
            extra={
                'duration_seconds': round(time.time() - start_time, 2),
                'error_type': type(e).__name__
            },
            exc_info=True
        )
        return _error(500, 'Import failed', e, detail=str(e))


def _int_param(params: Dict[str, Any], name: str, default: int) -> int:
    value = params.get(name)
    if value is None or value == '':
        return default
    return int(value)


def updates_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Handle GET /updates polling.

    Query parameters:
        lastId: cursor; entries with a greater id are returned
        limit: page size (default 10, at most 100)
        action: ``latest`` for the cursor bootstrap, ``stats`` for totals

    Args:
        event: API Gateway proxy event
        context: Lambda context object

    Returns:
        API Gateway proxy response
    """
    config = load_config()
    setup_logging(config['log_level'])
    logger = logging.getLogger(__name__)

    method = _http_method(event)
    if method == 'OPTIONS':
        return _response(200, {})
    if method != 'GET':
        return _error(405, 'Method not allowed')

    query = event.get('queryStringParameters') or {}
    action = query.get('action')

    try:
        queue = get_services(config).notification_queue

        if action == 'latest':
            return _response(200, {'latest_id': queue.latest_id()})

        if action == 'stats':
            return _response(200, queue.stats())

        try:
            last_id = _int_param(query, 'lastId', None)
            if last_id is None:
                last_id = _int_param(query, 'lastEventId', None)
            if last_id is None:
                last_id = _int_param(get_headers(event), 'last-event-id', 0)
            limit = _int_param(query, 'limit', NotificationQueue.DEFAULT_POLL_LIMIT)
        except ValueError:
            return _error(400, 'lastId and limit must be integers')

        if limit < 1:
            return _error(400, 'limit must be positive')

        entries = queue.poll(last_id, min(limit, MAX_POLL_LIMIT))
        logger.debug(f"Returning {len(entries)} updates after ID {last_id}")
        return _response(200, [entry.to_dict() for entry in entries])

    except (ClientError, BotoCoreError) as e:
        logger.error(
            f"Error fetching calendar updates: {e}",
            extra={'error_type': type(e).__name__},
            exc_info=True
        )
        return _error(500, 'Failed to fetch calendar updates', e)


def cleanup_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Scheduled change log maintenance (EventBridge).

    Args:
        event: EventBridge event payload
        context: Lambda context object

    Returns:
        Response dict with statusCode and the retention report
    """
    config = load_config()
    setup_logging(config['log_level'])
    logger = logging.getLogger(__name__)
    start_time = time.time()

    logger.info(
        f"Scheduled cleanup started",
        extra={
            'updates_table': config['updates_table'],
            'max_age_hours': config['cron_max_age_hours'],
            'max_records': config['cron_max_records']
        }
    )

    try:
        queue = get_services(config).notification_queue
        report = queue.retention.run_scheduled(
            max_age_hours=config['cron_max_age_hours'],
            max_records=config['cron_max_records']
        )
    except Exception as e:
        duration = time.time() - start_time
        logger.error(
            f"Scheduled cleanup failed: {str(e)}",
            extra={
                'duration_seconds': round(duration, 2),
                'error_type': type(e).__name__
            },
            exc_info=True
        )
        return {
            'statusCode': 500,
            'body': json.dumps({
                'message': 'Cleanup failed',
                'error': str(e),
                'error_type': type(e).__name__,
                'duration_seconds': round(duration, 2)
            })
        }

    duration = time.time() - start_time
    logger.info(
        f"Scheduled cleanup completed",
        extra={
            'duration_seconds': round(duration, 2),
            'deleted_count': report.deleted_count,
            'final_count': report.final_count
        }
    )
    return {
        'statusCode': 200,
        'body': json.dumps({
            'message': 'Cleanup completed successfully',
            'report': report.to_dict(),
            'duration_seconds': round(duration, 2)
        })
    }


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Single entry point dispatching on the event shape.

    Scheduled events go to cleanup_handler; HTTP requests are routed by
    path to import_handler (``/import``) or updates_handler (``/updates``).
    """
    if event.get('source') == 'aws.events' or event.get('detail-type') == 'Scheduled Event':
        return cleanup_handler(event, context)

    path = (event.get('rawPath') or event.get('path') or '').rstrip('/')
    if path.endswith('/updates'):
        return updates_handler(event, context)
    if path.endswith('/import'):
        return import_handler(event, context)

    return _error(404, 'Not found')
