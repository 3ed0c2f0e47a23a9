"""Data models for event import."""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

# Canonical on-the-wire timestamp format; sorts lexicographically.
CANONICAL_FORMAT = '%Y-%m-%d %H:%M:%S'


@dataclass
class CanonicalEvent:
    """Validated and normalized calendar event."""
    title: str
    start: str
    end: str
    owner_id: str
    description: Optional[str] = None
    color: Optional[str] = None
    id: Optional[str] = None
    created_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for API responses and change-log payloads."""
        return {
            'id': self.id,
            'title': self.title,
            'start': self.start,
            'end': self.end,
            'owner_id': self.owner_id,
            'description': self.description,
            'color': self.color,
            'created_at': self.created_at
        }


@dataclass
class ImportFailure:
    """A rejected record, with its raw data so it can be fixed and re-uploaded."""
    index: int
    error: str
    error_type: str
    raw_data: Any

    def to_dict(self) -> Dict[str, Any]:
        return {
            'index': self.index,
            'error': self.error,
            'error_type': self.error_type,
            'raw_data': self.raw_data
        }


@dataclass
class ImportResult:
    """Result of one import batch."""
    total_events: int
    imported_events: List[CanonicalEvent] = field(default_factory=list)
    errors: List[ImportFailure] = field(default_factory=list)

    @property
    def imported_count(self) -> int:
        return len(self.imported_events)

    @property
    def error_count(self) -> int:
        return len(self.errors)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total_events': self.total_events,
            'imported_count': self.imported_count,
            'error_count': self.error_count,
            'imported_events': [event.to_dict() for event in self.imported_events],
            'errors': [error.to_dict() for error in self.errors]
        }
