"""Data models for the change log."""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

# Event types emitted by the calendar itself; callers may use their own.
CREATE = 'create'
UPDATE = 'update'
DELETE = 'delete'
NOTIFICATION = 'notification'
USER_ACTIVITY = 'user_activity'


@dataclass
class ChangeLogEntry:
    """One accepted mutation in the change log."""
    id: int
    event_type: str
    event_data: Any
    created_at: int
    entity_id: Optional[str] = None

    @property
    def created_at_text(self) -> str:
        return datetime.fromtimestamp(self.created_at, tz=timezone.utc).strftime(
            '%Y-%m-%d %H:%M:%S'
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'event_type': self.event_type,
            'event_data': self.event_data,
            'created_at': self.created_at_text
        }


@dataclass
class DuplicatePattern:
    """Same event type and entity seen repeatedly within a window."""
    event_type: str
    entity_id: str
    count: int


@dataclass
class RetentionReport:
    """Outcome of a scheduled retention run."""
    initial_count: int
    deleted_count: int
    final_count: int
    recent_count: int
    rate_alert: bool
    duplicate_patterns: List[DuplicatePattern] = field(default_factory=list)
    messages: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'initial_count': self.initial_count,
            'deleted_count': self.deleted_count,
            'final_count': self.final_count,
            'recent_count': self.recent_count,
            'rate_alert': self.rate_alert,
            'duplicate_patterns': [
                {
                    'event_type': pattern.event_type,
                    'entity_id': pattern.entity_id,
                    'count': pattern.count
                }
                for pattern in self.duplicate_patterns
            ],
            'messages': self.messages
        }
