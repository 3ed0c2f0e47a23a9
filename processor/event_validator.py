"""Validation and normalization of raw import records."""
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from processor.errors import ConflictError, ResolutionError, ValidationError
from processor.models import CANONICAL_FORMAT, CanonicalEvent

logger = logging.getLogger(__name__)


class EventValidator:
    """Turns loosely-typed records into CanonicalEvent objects."""

    DATETIME_FORMATS = [
        '%Y-%m-%d %H:%M:%S',     # Canonical
        '%Y-%m-%d %H:%M',
        '%Y-%m-%d',
        '%Y/%m/%d %H:%M:%S',
        '%Y/%m/%d %H:%M',
        '%Y/%m/%d',
        '%m/%d/%Y %H:%M:%S',     # US format
        '%m/%d/%Y %H:%M',
        '%m/%d/%Y %I:%M %p',
        '%m/%d/%Y',
        '%B %d, %Y %I:%M %p',    # Full month name
        '%B %d, %Y %H:%M',
        '%B %d, %Y',
        '%b %d, %Y %I:%M %p',    # Abbreviated month name
        '%b %d, %Y',
    ]

    def __init__(self, user_directory, event_store,
                 clock: Callable[[], datetime] = datetime.now,
                 max_title_length: Optional[int] = None):
        """
        Initialize the validator.

        Args:
            user_directory: Provides get_user_by_name(name)
            event_store: Provides find_conflict(owner_id, start, end)
            clock: Returns the current time for the future-only rule
            max_title_length: Optional cap on title length; None disables it
        """
        self.user_directory = user_directory
        self.event_store = event_store
        self.clock = clock
        self.max_title_length = max_title_length

    def validate_and_process(self, record: Dict[str, Any],
                             user_cache: Dict[str, str]) -> CanonicalEvent:
        """
        Validate a single raw record.

        Args:
            record: Raw record produced by a parser
            user_cache: Name to user id map shared across one batch;
                mutated in place

        Returns:
            CanonicalEvent without id

        Raises:
            ValidationError: Missing fields or bad dates
            ResolutionError: Owner does not exist
            ConflictError: Overlaps an existing booking of the owner
        """
        if not isinstance(record, dict):
            raise ValidationError('Event record must be an object')

        title = self._text(record.get('title'))
        if not title:
            raise ValidationError('Event title is required')

        if self.max_title_length is not None and len(title) > self.max_title_length:
            raise ValidationError(
                f"Event title must be at most {self.max_title_length} characters"
            )

        raw_start = record.get('start')
        if raw_start is None or not str(raw_start).strip():
            raise ValidationError('Event start date/time is required')

        start_dt = self.normalize_datetime(raw_start)
        raw_end = record.get('end')
        if raw_end is None or not str(raw_end).strip():
            end_dt = start_dt
        else:
            end_dt = self.normalize_datetime(raw_end)

        if start_dt <= self.clock():
            raise ValidationError('Only future events can be imported')

        if end_dt < start_dt:
            raise ValidationError('End date must be after start date')

        start = start_dt.strftime(CANONICAL_FORMAT)
        end = end_dt.strftime(CANONICAL_FORMAT)

        owner_id = self.resolve_user_id(record, user_cache)
        self.check_conflicts(owner_id, start, end)

        return CanonicalEvent(
            title=title,
            start=start,
            end=end,
            owner_id=owner_id,
            description=self._text(record.get('description')) or None,
            color=self._text(record.get('color')) or None
        )

    def normalize_datetime(self, value: Any) -> datetime:
        """
        Parse a date/time in any supported format.

        Offsets in ISO-8601 input are dropped, keeping the wall-clock time.

        Args:
            value: Date/time value from the record

        Returns:
            Naive datetime

        Raises:
            ValidationError: If the value cannot be parsed
        """
        text = str(value).strip()

        try:
            parsed = datetime.fromisoformat(text.replace('Z', '+00:00'))
            return parsed.replace(tzinfo=None)
        except ValueError:
            pass

        for fmt in self.DATETIME_FORMATS:
            try:
                return datetime.strptime(text, fmt)
            except ValueError:
                continue

        raise ValidationError(f"Invalid date/time format: {text}")

    def resolve_user_id(self, record: Dict[str, Any], user_cache: Dict[str, str]) -> str:
        """
        Resolve the owning user id from the record's user_name.

        Args:
            record: Raw record
            user_cache: Per-batch name to id cache

        Returns:
            User id

        Raises:
            ValidationError: If no user name is given
            ResolutionError: If the user does not exist
        """
        user_name = self._text(record.get('user_name'))
        if not user_name:
            raise ValidationError('User name is required for event assignment')

        if user_name in user_cache:
            return user_cache[user_name]

        user = self.user_directory.get_user_by_name(user_name)
        if not user:
            raise ResolutionError(
                f"User '{user_name}' not found. "
                "Please ensure all users exist before importing."
            )

        user_cache[user_name] = user['user_id']
        return user['user_id']

    def check_conflicts(self, owner_id: str, start: str, end: str) -> None:
        conflict = self.event_store.find_conflict(owner_id, start, end)
        if conflict:
            raise ConflictError(
                f"Event conflicts with existing event '{conflict.title}' "
                f"({conflict.start} - {conflict.end})",
                conflicting_event=conflict
            )

    @staticmethod
    def _text(value: Any) -> str:
        if value is None:
            return ''
        return str(value).strip()
