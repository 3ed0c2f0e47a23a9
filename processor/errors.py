"""Exceptions raised by the import pipeline and the notification queue."""


class EventImportError(Exception):
    """Base class for import pipeline failures."""


class UploadError(EventImportError):
    """Uploaded file is missing, empty or unreadable."""


class FileTooLargeError(UploadError):
    """Upload exceeds the maximum accepted size."""


class FormatError(EventImportError):
    """File content does not match a supported format or holds no events."""


class BatchLimitError(EventImportError):
    """Batch holds more events than a single import accepts."""

    def __init__(self, count: int, limit: int):
        super().__init__(
            f"Too many events in file. Maximum allowed: {limit}"
        )
        self.count = count
        self.limit = limit


class RecordError(EventImportError):
    """A single record was rejected; never aborts the batch."""


class ValidationError(RecordError):
    """Field-level or date-logic rule failed for a record."""


class ConflictError(RecordError):
    """Record overlaps an existing booking of the same owner."""

    def __init__(self, message: str, conflicting_event=None):
        super().__init__(message)
        self.conflicting_event = conflicting_event


class ResolutionError(RecordError):
    """Referenced user does not exist."""


class PersistenceError(EventImportError):
    """The atomic commit failed; nothing from the batch was stored."""


class SuppressionCheckError(Exception):
    """Persisted duplicate lookback could not be performed."""
