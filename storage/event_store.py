"""DynamoDB-backed store for calendar events."""
import logging
import uuid
from datetime import datetime
from typing import Callable, List, Optional

import boto3
from boto3.dynamodb.conditions import Key
from botocore.exceptions import BotoCoreError, ClientError

from processor.errors import PersistenceError
from processor.models import CANONICAL_FORMAT, CanonicalEvent
from storage.schema import OWNER_START_INDEX

logger = logging.getLogger(__name__)


def intervals_overlap(existing_start: str, existing_end: str,
                      new_start: str, new_end: str) -> bool:
    """
    Booking overlap rule used for conflict detection.

    Canonical timestamps compare correctly as strings.
    """
    return (
        (existing_start <= new_start and existing_end > new_start) or
        (existing_start < new_end and existing_end >= new_end) or
        (existing_start >= new_start and existing_start < new_end)
    )


class EventStore:
    """Manager for the events table."""

    # TransactWriteItems accepts at most 100 actions
    MAX_TRANSACTION_ITEMS = 100

    def __init__(self, table_name: str, region_name: Optional[str] = None,
                 clock: Callable[[], datetime] = datetime.now):
        """
        Initialize DynamoDB resource and table reference.

        Args:
            table_name: Name of the events table
            region_name: AWS region (defaults to the environment)
            clock: Returns the current time; used for created_at
        """
        self.table_name = table_name
        self.dynamodb = boto3.resource('dynamodb', region_name=region_name)
        self.table = self.dynamodb.Table(table_name)
        self.clock = clock
        logger.info(f"Initialized EventStore for table: {table_name}")

    def get_event(self, event_id: str) -> Optional[CanonicalEvent]:
        response = self.table.get_item(Key={'event_id': event_id})
        item = response.get('Item')
        return self._item_to_event(item) if item else None

    def get_events_for_owner(self, owner_id: str,
                             starting_before: Optional[str] = None) -> List[CanonicalEvent]:
        """
        Retrieve an owner's events ordered by start.

        Args:
            owner_id: Owning user id
            starting_before: Only include events whose start is <= this value

        Returns:
            List of CanonicalEvent objects
        """
        condition = Key('owner_id').eq(owner_id)
        if starting_before is not None:
            condition = condition & Key('start').lte(starting_before)

        query_args = {
            'IndexName': OWNER_START_INDEX,
            'KeyConditionExpression': condition
        }
        events = []

        response = self.table.query(**query_args)
        items = response.get('Items', [])
        while 'LastEvaluatedKey' in response:
            response = self.table.query(
                ExclusiveStartKey=response['LastEvaluatedKey'],
                **query_args
            )
            items.extend(response.get('Items', []))

        for item in items:
            events.append(self._item_to_event(item))
        return events

    def find_conflict(self, owner_id: str, start: str, end: str) -> Optional[CanonicalEvent]:
        """
        Find an existing event of the same owner overlapping [start, end].

        Args:
            owner_id: Owning user id
            start: Canonical start timestamp
            end: Canonical end timestamp

        Returns:
            The first conflicting event, or None
        """
        # Every overlapping booking starts no later than the new end
        candidates = self.get_events_for_owner(owner_id, starting_before=end)
        for existing in candidates:
            if intervals_overlap(existing.start, existing.end, start, end):
                return existing
        return None

    def insert_events(self, events: List[CanonicalEvent]) -> List[CanonicalEvent]:
        """
        Insert events atomically; either all are stored or none are.

        Args:
            events: Validated events without ids

        Returns:
            Stored events with id and created_at assigned

        Raises:
            PersistenceError: If the transaction fails
        """
        if not events:
            return []

        if len(events) > self.MAX_TRANSACTION_ITEMS:
            raise PersistenceError(
                f"Cannot insert {len(events)} events in one transaction "
                f"(limit {self.MAX_TRANSACTION_ITEMS})"
            )

        created_at = self.clock().strftime(CANONICAL_FORMAT)
        stored = []
        transact_items = []

        for event in events:
            stored_event = CanonicalEvent(
                id=uuid.uuid4().hex,
                title=event.title,
                start=event.start,
                end=event.end,
                owner_id=event.owner_id,
                description=event.description,
                color=event.color,
                created_at=created_at
            )
            stored.append(stored_event)
            transact_items.append({
                'Put': {
                    'TableName': self.table_name,
                    'Item': self._event_to_item(stored_event),
                    'ConditionExpression': 'attribute_not_exists(event_id)'
                }
            })

        logger.info(f"Writing {len(stored)} events in one transaction")
        try:
            self.dynamodb.meta.client.transact_write_items(
                TransactItems=transact_items
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Event insert transaction failed: {e}")
            raise PersistenceError(
                f"Import failed during database operation: {e}"
            ) from e

        logger.info(f"Successfully wrote {len(stored)} events")
        return stored

    def _item_to_event(self, item: dict) -> CanonicalEvent:
        return CanonicalEvent(
            id=item['event_id'],
            title=item['title'],
            start=item['start'],
            end=item['end'],
            owner_id=item['owner_id'],
            description=item.get('description'),
            color=item.get('color'),
            created_at=item.get('created_at')
        )

    def _event_to_item(self, event: CanonicalEvent) -> dict:
        item = {
            'event_id': event.id,
            'title': event.title,
            'start': event.start,
            'end': event.end,
            'owner_id': event.owner_id,
            'created_at': event.created_at
        }

        # Add optional fields if present
        if event.description:
            item['description'] = event.description
        if event.color:
            item['color'] = event.color

        return item
