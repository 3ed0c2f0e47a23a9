"""DynamoDB table layout for events, users and the change log."""
import logging

from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)

OWNER_START_INDEX = 'owner-start-index'
USER_NAME_INDEX = 'name-index'
CREATED_AT_INDEX = 'created-at-index'


def events_table_definition(table_name: str) -> dict:
    """Event relation keyed by event_id, indexed for per-owner range queries."""
    return {
        'TableName': table_name,
        'KeySchema': [
            {'AttributeName': 'event_id', 'KeyType': 'HASH'}
        ],
        'AttributeDefinitions': [
            {'AttributeName': 'event_id', 'AttributeType': 'S'},
            {'AttributeName': 'owner_id', 'AttributeType': 'S'},
            {'AttributeName': 'start', 'AttributeType': 'S'}
        ],
        'GlobalSecondaryIndexes': [
            {
                'IndexName': OWNER_START_INDEX,
                'KeySchema': [
                    {'AttributeName': 'owner_id', 'KeyType': 'HASH'},
                    {'AttributeName': 'start', 'KeyType': 'RANGE'}
                ],
                'Projection': {'ProjectionType': 'ALL'}
            }
        ],
        'BillingMode': 'PAY_PER_REQUEST'
    }


def users_table_definition(table_name: str) -> dict:
    """User relation keyed by user_id, indexed by display name."""
    return {
        'TableName': table_name,
        'KeySchema': [
            {'AttributeName': 'user_id', 'KeyType': 'HASH'}
        ],
        'AttributeDefinitions': [
            {'AttributeName': 'user_id', 'AttributeType': 'S'},
            {'AttributeName': 'name', 'AttributeType': 'S'}
        ],
        'GlobalSecondaryIndexes': [
            {
                'IndexName': USER_NAME_INDEX,
                'KeySchema': [
                    {'AttributeName': 'name', 'KeyType': 'HASH'}
                ],
                'Projection': {'ProjectionType': 'ALL'}
            }
        ],
        'BillingMode': 'PAY_PER_REQUEST'
    }


def updates_table_definition(table_name: str) -> dict:
    """
    Change log relation.

    All entries of one log share a partition so that ``id`` (the sort key)
    gives a total order; the local index on ``created_at`` backs age-based
    cleanup and the duplicate lookback.
    """
    return {
        'TableName': table_name,
        'KeySchema': [
            {'AttributeName': 'log', 'KeyType': 'HASH'},
            {'AttributeName': 'id', 'KeyType': 'RANGE'}
        ],
        'AttributeDefinitions': [
            {'AttributeName': 'log', 'AttributeType': 'S'},
            {'AttributeName': 'id', 'AttributeType': 'N'},
            {'AttributeName': 'created_at', 'AttributeType': 'N'}
        ],
        'LocalSecondaryIndexes': [
            {
                'IndexName': CREATED_AT_INDEX,
                'KeySchema': [
                    {'AttributeName': 'log', 'KeyType': 'HASH'},
                    {'AttributeName': 'created_at', 'KeyType': 'RANGE'}
                ],
                'Projection': {'ProjectionType': 'ALL'}
            }
        ],
        'BillingMode': 'PAY_PER_REQUEST'
    }


def create_tables(dynamodb, events_table: str, users_table: str,
                  updates_table: str) -> list:
    """
    Create any of the three tables that do not exist yet.

    Args:
        dynamodb: boto3 DynamoDB service resource
        events_table: Events table name
        users_table: Users table name
        updates_table: Change log table name

    Returns:
        Names of the tables that were created
    """
    definitions = [
        events_table_definition(events_table),
        users_table_definition(users_table),
        updates_table_definition(updates_table)
    ]
    created = []

    for definition in definitions:
        try:
            table = dynamodb.create_table(**definition)
            table.wait_until_exists()
            created.append(definition['TableName'])
            logger.info(f"Created table: {definition['TableName']}")
        except ClientError as e:
            if e.response['Error']['Code'] == 'ResourceInUseException':
                logger.info(f"Table already exists: {definition['TableName']}")
                continue
            logger.error(f"Error creating table {definition['TableName']}: {e}")
            raise

    return created
