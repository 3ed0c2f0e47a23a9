"""Import coordinator: parse, validate, commit atomically, then notify."""
import logging
from typing import Any, Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from ingest.file_parser import detect_format, parse_file_content
from notifications.models import CREATE
from processor.errors import (
    BatchLimitError, ConflictError, EventImportError, FileTooLargeError,
    RecordError, UploadError
)
from processor.event_validator import EventValidator
from processor.models import CanonicalEvent, ImportFailure, ImportResult
from storage.event_store import intervals_overlap

logger = logging.getLogger(__name__)


class EventImporter:
    """Runs one uploaded file through the import pipeline."""

    MAX_EVENTS_PER_IMPORT = 20
    MAX_FILE_SIZE = 5 * 1024 * 1024  # 5MB
    VALIDATE_PREVIEW_SIZE = 5
    DETAILED_PREVIEW_SIZE = 10

    def __init__(self, validator: EventValidator, event_store,
                 notification_queue=None,
                 max_events: int = MAX_EVENTS_PER_IMPORT,
                 max_file_size: int = MAX_FILE_SIZE):
        """
        Initialize the importer.

        Args:
            validator: EventValidator for single records
            event_store: Provides insert_events(events)
            notification_queue: Receives a create entry per stored event;
                None disables notifications (used for previews)
            max_events: Maximum records per batch
            max_file_size: Maximum file size in bytes
        """
        self.validator = validator
        self.event_store = event_store
        self.notification_queue = notification_queue
        self.max_events = max_events
        self.max_file_size = max_file_size

    def check_file(self, filename: str, content: Optional[bytes]) -> None:
        """
        Reject missing, empty and oversized files.

        Raises:
            UploadError: If the file cannot be imported
        """
        if content is None:
            raise UploadError('No file was uploaded')

        size_mb = self.max_file_size // (1024 * 1024)
        if len(content) > self.max_file_size:
            raise FileTooLargeError(
                f"File size exceeds maximum allowed size of {size_mb}MB"
            )

        if len(content) == 0:
            raise UploadError('Uploaded file is empty')

    def parse_file(self, filename: str, content: bytes):
        """Check, detect and parse a file; returns (format, records)."""
        self.check_file(filename, content)
        file_format = detect_format(filename, content)
        records = parse_file_content(content, file_format)
        return file_format, records

    def import_file(self, filename: str, content: bytes,
                    acting_user_id: str) -> ImportResult:
        """
        Import every event of an uploaded file.

        Raises:
            UploadError, FormatError, BatchLimitError: Before any record
                is processed
            PersistenceError: If the commit fails; nothing is imported
        """
        file_format, records = self.parse_file(filename, content)
        logger.info(
            f"Importing {len(records)} {file_format} records from "
            f"'{filename}' for user {acting_user_id}"
        )
        return self.import_events(records, acting_user_id)

    def import_events(self, records: List[Dict[str, Any]],
                      acting_user_id: str) -> ImportResult:
        """
        Validate each record, store the valid ones in one transaction and
        enqueue a create notification per stored event.

        Args:
            records: Raw records in file order
            acting_user_id: User performing the import

        Returns:
            ImportResult with per-record failures

        Raises:
            BatchLimitError: Too many records; nothing is validated
            PersistenceError: Commit failed; nothing is imported
        """
        if len(records) > self.max_events:
            raise BatchLimitError(len(records), self.max_events)

        accepted, errors = self._validate_batch(records)

        stored = self.event_store.insert_events(accepted)

        for event in stored:
            self._notify(event)

        result = ImportResult(
            total_events=len(records),
            imported_events=stored,
            errors=errors
        )
        logger.info(
            f"Import completed by user {acting_user_id}: "
            f"{result.imported_count} events imported, "
            f"{result.error_count} errors"
        )
        return result

    def _validate_batch(self, records: List[Dict[str, Any]]):
        accepted: List[CanonicalEvent] = []
        errors: List[ImportFailure] = []
        user_cache: Dict[str, str] = {}

        for index, record in enumerate(records):
            try:
                event = self.validator.validate_and_process(record, user_cache)
                self._check_batch_conflicts(event, accepted)
                accepted.append(event)
            except RecordError as e:
                logger.warning(f"Rejected import record {index}: {e}")
                errors.append(ImportFailure(
                    index=index,
                    error=str(e),
                    error_type=type(e).__name__,
                    raw_data=record
                ))

        return accepted, errors

    def _check_batch_conflicts(self, event: CanonicalEvent,
                               accepted: List[CanonicalEvent]) -> None:
        for other in accepted:
            if other.owner_id != event.owner_id:
                continue
            if intervals_overlap(other.start, other.end, event.start, event.end):
                raise ConflictError(
                    f"Event conflicts with event '{other.title}' "
                    f"({other.start} - {other.end}) earlier in this file",
                    conflicting_event=other
                )

    def _notify(self, event: CanonicalEvent) -> None:
        # Committed data stays correct if the live-update signal is lost
        if self.notification_queue is None:
            return
        try:
            self.notification_queue.enqueue(CREATE, event.to_dict())
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Failed to enqueue create for event {event.id}: {e}")

    def validate_file(self, filename: str, content: bytes) -> Dict[str, Any]:
        """
        Check format and structure without validating records.

        Returns:
            {valid, format, event_count, preview, within_limits} or
            {valid: False, error}
        """
        try:
            file_format, records = self.parse_file(filename, content)
        except EventImportError as e:
            return {'valid': False, 'error': str(e), 'error_type': type(e).__name__}

        return self._describe(file_format, records)

    def _describe(self, file_format: str, records: List[Dict[str, Any]]) -> Dict[str, Any]:
        return {
            'valid': True,
            'format': file_format,
            'event_count': len(records),
            'preview': records[:self.VALIDATE_PREVIEW_SIZE],
            'within_limits': len(records) <= self.max_events
        }

    def preview_file(self, filename: str, content: bytes) -> Dict[str, Any]:
        """
        Validate the leading records as an import would, without storing
        anything or emitting notifications.
        """
        try:
            file_format, records = self.parse_file(filename, content)
        except EventImportError as e:
            return {'valid': False, 'error': str(e), 'error_type': type(e).__name__}

        validation = self._describe(file_format, records)
        user_cache: Dict[str, str] = {}
        detailed = []

        for index, record in enumerate(records[:self.DETAILED_PREVIEW_SIZE]):
            try:
                event = self.validator.validate_and_process(record, user_cache)
                detailed.append({
                    'index': index,
                    'valid': True,
                    'title': event.title,
                    'start': event.start,
                    'end': event.end,
                    'user_id': event.owner_id
                })
            except RecordError as e:
                detailed.append({
                    'index': index,
                    'valid': False,
                    'error': str(e),
                    'error_type': type(e).__name__,
                    'raw_data': record
                })

        validation['detailed_preview'] = detailed
        return validation

    def supported_formats(self) -> Dict[str, Any]:
        """Static capability description for clients."""
        return {
            'formats': {
                'json': {
                    'name': 'JSON',
                    'extensions': ['.json'],
                    'description': 'JavaScript Object Notation format',
                    'sample': {
                        'title': 'Sample Event',
                        'start': '2030-06-15 10:00:00',
                        'end': '2030-06-15 11:00:00',
                        'user_name': 'John Doe'
                    }
                },
                'csv': {
                    'name': 'CSV',
                    'extensions': ['.csv', '.txt'],
                    'description': 'Comma-separated values format',
                    'sample_headers': 'title,start,end,user_name,description'
                },
                'ics': {
                    'name': 'ICS/iCal',
                    'extensions': ['.ics', '.ical'],
                    'description': 'iCalendar format'
                }
            },
            'limits': {
                'max_file_size': f"{self.max_file_size // (1024 * 1024)}MB",
                'max_events': self.max_events
            },
            'requirements': {
                'title': 'Required - Event title',
                'start': 'Required - Start date/time (future dates only)',
                'end': 'Optional - End date/time (defaults to start time)',
                'user_name': 'Required - Must match existing user name',
                'description': 'Optional - Event description',
                'color': 'Optional - Display color'
            }
        }
