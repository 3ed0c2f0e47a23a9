"""Append-only change log read by polling clients."""
import json
import logging
import math
import time
from collections import Counter
from typing import Any, Callable, Dict, List, Optional

import boto3
from boto3.dynamodb.conditions import Attr, Key
from botocore.exceptions import BotoCoreError, ClientError

from notifications.models import (
    NOTIFICATION, USER_ACTIVITY, ChangeLogEntry, DuplicatePattern
)
from notifications.retention import RetentionPolicy
from notifications.suppressor import DuplicateSuppressor
from processor.errors import SuppressionCheckError
from storage.schema import CREATED_AT_INDEX

logger = logging.getLogger(__name__)


class NotificationQueue:
    """
    Change log stored in DynamoDB.

    Every entry of a log lives in one partition, sorted by a numeric id
    drawn from an atomic counter, so ``poll`` can page through it with a
    plain cursor. Ids are never reused, even after a purge.
    """

    DEFAULT_POLL_LIMIT = 10
    SEQUENCE_SUFFIX = '#sequence'

    def __init__(self, table_name: str, log_name: str = 'calendar_updates',
                 suppressor: Optional[DuplicateSuppressor] = None,
                 region_name: Optional[str] = None,
                 clock: Callable[[], float] = time.time,
                 inline_cleanup: bool = True,
                 inline_max_age_hours: float = 24,
                 inline_max_records: int = 1000,
                 ttl_hours: Optional[float] = None):
        """
        Initialize DynamoDB table reference and the duplicate suppressor.

        Args:
            table_name: Name of the change log table
            log_name: Partition holding this log's entries
            suppressor: Duplicate suppressor; one wired to this queue's
                persisted lookback is created when omitted
            region_name: AWS region (defaults to the environment)
            clock: Returns the current epoch time
            inline_cleanup: Run retention after every successful enqueue
            inline_max_age_hours: Age threshold for the inline cleanup
            inline_max_records: Count threshold for the inline cleanup
            ttl_hours: If set, entries carry a DynamoDB ``ttl`` attribute
        """
        self.table_name = table_name
        self.log_name = log_name
        self.dynamodb = boto3.resource('dynamodb', region_name=region_name)
        self.table = self.dynamodb.Table(table_name)
        self.clock = clock
        self.inline_cleanup = inline_cleanup
        self.inline_max_age_hours = inline_max_age_hours
        self.inline_max_records = inline_max_records
        self.ttl_hours = ttl_hours
        self.suppressor = suppressor or DuplicateSuppressor(
            lookback=self.has_recent, clock=clock
        )
        self.retention = RetentionPolicy(self)
        logger.info(f"Initialized NotificationQueue for table: {table_name}")

    # Writing

    def enqueue(self, event_type: str, payload: Any) -> bool:
        """
        Append a change notification unless it duplicates a recent one.

        Args:
            event_type: Change type (create, update, delete, ...)
            payload: JSON-serializable event data

        Returns:
            False if suppressed as a duplicate, True if appended
        """
        entity_id = self._entity_id(payload)

        if self.suppressor.should_suppress(event_type, entity_id):
            return False

        entry = self.append(event_type, payload)
        self.suppressor.record(event_type, entity_id)
        logger.info(
            f"Broadcast update {entry.id}: {event_type} for event ID "
            f"{entity_id or 'N/A'}"
        )

        if self.inline_cleanup:
            try:
                self.retention.cleanup(
                    self.inline_max_age_hours, self.inline_max_records
                )
            except (ClientError, BotoCoreError) as e:
                logger.warning(f"Inline change log cleanup failed: {e}")

        return True

    def append(self, event_type: str, payload: Any) -> ChangeLogEntry:
        """
        Write one entry without duplicate checks.

        Args:
            event_type: Change type
            payload: JSON-serializable event data

        Returns:
            The stored ChangeLogEntry
        """
        entity_id = self._entity_id(payload)
        entry_id = self._next_id()
        created_at = int(self.clock())

        item = {
            'log': self.log_name,
            'id': entry_id,
            'event_type': event_type,
            'event_data': json.dumps(payload, default=str),
            'created_at': created_at
        }
        if entity_id is not None:
            item['entity_id'] = entity_id
        if self.ttl_hours:
            item['ttl'] = created_at + int(self.ttl_hours * 3600)

        try:
            self.table.put_item(Item=item)
        except ClientError as e:
            logger.error(f"Error appending {event_type} to change log: {e}")
            raise

        return ChangeLogEntry(
            id=entry_id,
            event_type=event_type,
            event_data=payload,
            created_at=created_at,
            entity_id=entity_id
        )

    def broadcast_notification(self, message: str, level: str = 'info',
                               **extra) -> bool:
        """Broadcast a system notification (info, warning, error)."""
        data = {
            'message': message,
            'type': level,
            'timestamp': int(self.clock())
        }
        data.update(extra)
        return self.enqueue(NOTIFICATION, data)

    def broadcast_user_activity(self, user_id: str, activity: str, **extra) -> bool:
        """Broadcast user activity such as join or leave."""
        data = {
            'userId': user_id,
            'activity': activity,
            'timestamp': int(self.clock())
        }
        data.update(extra)
        return self.enqueue(USER_ACTIVITY, data)

    def _next_id(self) -> int:
        response = self.table.update_item(
            Key={'log': self.log_name + self.SEQUENCE_SUFFIX, 'id': 0},
            UpdateExpression='ADD #seq :one',
            ExpressionAttributeNames={'#seq': 'seq'},
            ExpressionAttributeValues={':one': 1},
            ReturnValues='UPDATED_NEW'
        )
        return int(response['Attributes']['seq'])

    # Reading

    def poll(self, since_id: int = 0, limit: int = DEFAULT_POLL_LIMIT) -> List[ChangeLogEntry]:
        """
        Get entries newer than a cursor.

        Args:
            since_id: Last id the consumer has seen
            limit: Maximum number of entries to return

        Returns:
            Entries with id > since_id in ascending id order; empty when
            there is nothing new
        """
        if limit <= 0:
            return []

        response = self.table.query(
            KeyConditionExpression=(
                Key('log').eq(self.log_name) & Key('id').gt(int(since_id))
            ),
            ScanIndexForward=True,
            Limit=limit
        )
        return [self._item_to_entry(item) for item in response.get('Items', [])]

    def latest_id(self) -> int:
        """Return the highest id in the log, or 0 if it is empty."""
        response = self.table.query(
            KeyConditionExpression=Key('log').eq(self.log_name),
            ScanIndexForward=False,
            ProjectionExpression='#id',
            ExpressionAttributeNames={'#id': 'id'},
            Limit=1
        )
        items = response.get('Items', [])
        return int(items[0]['id']) if items else 0

    def has_recent(self, event_type: str, entity_id: str, since: float) -> bool:
        """
        Check the persisted log for a matching entry created since ``since``.

        ``created_at`` is stored in whole seconds, so the cutoff is rounded up:
        a match is never older than ``since``, at the cost of missing some
        entries written within the first second of the window.

        Raises:
            SuppressionCheckError: If the store cannot be queried
        """
        try:
            items = self._query_all(
                IndexName=CREATED_AT_INDEX,
                KeyConditionExpression=(
                    Key('log').eq(self.log_name) &
                    Key('created_at').gte(math.ceil(since))
                ),
                FilterExpression=(
                    Attr('event_type').eq(event_type) &
                    Attr('entity_id').eq(entity_id)
                )
            )
        except (ClientError, BotoCoreError) as e:
            raise SuppressionCheckError(str(e)) from e
        return bool(items)

    def entity_updates(self, entity_id: str, limit: int = 10) -> List[ChangeLogEntry]:
        """Most recent entries for one entity, newest first."""
        query_args = {
            'KeyConditionExpression': Key('log').eq(self.log_name),
            'FilterExpression': Attr('entity_id').eq(str(entity_id)),
            'ScanIndexForward': False
        }
        entries = []

        response = self.table.query(**query_args)
        while True:
            for item in response.get('Items', []):
                entries.append(self._item_to_entry(item))
                if len(entries) >= limit:
                    return entries
            if 'LastEvaluatedKey' not in response:
                return entries
            response = self.table.query(
                ExclusiveStartKey=response['LastEvaluatedKey'], **query_args
            )

    def count(self) -> int:
        return self._count(KeyConditionExpression=Key('log').eq(self.log_name))

    def count_since(self, seconds: float) -> int:
        """Number of entries created in the last ``seconds``."""
        since = int(self.clock() - seconds)
        return self._count(
            IndexName=CREATED_AT_INDEX,
            KeyConditionExpression=(
                Key('log').eq(self.log_name) & Key('created_at').gte(since)
            )
        )

    def duplicate_patterns(self, window_seconds: float = 600, threshold: int = 10,
                           limit: int = 5) -> List[DuplicatePattern]:
        """
        Find (event type, entity) pairs logged more than ``threshold`` times
        within the last ``window_seconds``.
        """
        since = int(self.clock() - window_seconds)
        items = self._query_all(
            IndexName=CREATED_AT_INDEX,
            KeyConditionExpression=(
                Key('log').eq(self.log_name) & Key('created_at').gte(since)
            )
        )
        counts = Counter(
            (item['event_type'], item['entity_id'])
            for item in items if item.get('entity_id') is not None
        )
        return [
            DuplicatePattern(event_type=event_type, entity_id=entity_id, count=count)
            for (event_type, entity_id), count in counts.most_common()
            if count > threshold
        ][:limit]

    def stats(self) -> Dict[str, Any]:
        """Totals by event type plus the oldest and newest entry times."""
        items = self._query_all(KeyConditionExpression=Key('log').eq(self.log_name))
        by_type = Counter(item['event_type'] for item in items)
        entries = [self._item_to_entry(item) for item in items]

        return {
            'total_updates': len(entries),
            'create_updates': by_type.get('create', 0),
            'update_updates': by_type.get('update', 0),
            'delete_updates': by_type.get('delete', 0),
            'by_type': dict(by_type),
            'oldest_update': min(entries, key=lambda e: e.created_at).created_at_text if entries else None,
            'newest_update': max(entries, key=lambda e: e.created_at).created_at_text if entries else None,
            'latest_id': max((e.id for e in entries), default=0)
        }

    # Deleting

    def delete_older_than(self, cutoff: float) -> int:
        """Delete entries created before the epoch time ``cutoff``."""
        items = self._query_all(
            IndexName=CREATED_AT_INDEX,
            KeyConditionExpression=(
                Key('log').eq(self.log_name) & Key('created_at').lt(int(cutoff))
            ),
            ProjectionExpression='#id',
            ExpressionAttributeNames={'#id': 'id'}
        )
        return self._delete_ids([item['id'] for item in items])

    def trim_to(self, max_records: int) -> int:
        """Delete all but the ``max_records`` highest ids."""
        items = self._query_all(
            KeyConditionExpression=Key('log').eq(self.log_name),
            ScanIndexForward=False,
            ProjectionExpression='#id',
            ExpressionAttributeNames={'#id': 'id'}
        )
        return self._delete_ids([item['id'] for item in items[max(max_records, 0):]])

    def purge(self) -> int:
        """Delete every entry of the log. The id sequence is kept."""
        items = self._query_all(
            KeyConditionExpression=Key('log').eq(self.log_name),
            ProjectionExpression='#id',
            ExpressionAttributeNames={'#id': 'id'}
        )
        return self._delete_ids([item['id'] for item in items])

    def _delete_ids(self, ids: List[Any]) -> int:
        if not ids:
            return 0

        with self.table.batch_writer() as writer:
            for entry_id in ids:
                writer.delete_item(Key={'log': self.log_name, 'id': entry_id})

        logger.debug(f"Deleted {len(ids)} change log entries")
        return len(ids)

    # Helpers

    def _query_all(self, **query_args) -> List[dict]:
        response = self.table.query(**query_args)
        items = response.get('Items', [])

        # Handle pagination
        while 'LastEvaluatedKey' in response:
            response = self.table.query(
                ExclusiveStartKey=response['LastEvaluatedKey'], **query_args
            )
            items.extend(response.get('Items', []))
        return items

    def _count(self, **query_args) -> int:
        response = self.table.query(Select='COUNT', **query_args)
        total = response.get('Count', 0)
        while 'LastEvaluatedKey' in response:
            response = self.table.query(
                Select='COUNT',
                ExclusiveStartKey=response['LastEvaluatedKey'],
                **query_args
            )
            total += response.get('Count', 0)
        return total

    @staticmethod
    def _entity_id(payload: Any) -> Optional[str]:
        if isinstance(payload, dict) and payload.get('id') is not None:
            return str(payload['id'])
        return None

    def _item_to_entry(self, item: dict) -> ChangeLogEntry:
        return ChangeLogEntry(
            id=int(item['id']),
            event_type=item['event_type'],
            event_data=json.loads(item['event_data']),
            created_at=int(item['created_at']),
            entity_id=item.get('entity_id')
        )
