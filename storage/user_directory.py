"""Read-only user lookup backed by the users table."""
import logging
from typing import Optional

import boto3
from boto3.dynamodb.conditions import Key
from botocore.exceptions import ClientError

from storage.schema import USER_NAME_INDEX

logger = logging.getLogger(__name__)


class UserDirectory:
    """Resolves users by display name. Never creates users."""

    def __init__(self, table_name: str, region_name: Optional[str] = None):
        self.table_name = table_name
        self.dynamodb = boto3.resource('dynamodb', region_name=region_name)
        self.table = self.dynamodb.Table(table_name)

    def get_user_by_name(self, name: str) -> Optional[dict]:
        """
        Look up a user by exact display name.

        Args:
            name: Display name

        Returns:
            User item dictionary, or None if no such user exists
        """
        try:
            response = self.table.query(
                IndexName=USER_NAME_INDEX,
                KeyConditionExpression=Key('name').eq(name),
                Limit=1
            )
        except ClientError as e:
            logger.error(f"Error looking up user '{name}': {e}")
            raise

        items = response.get('Items', [])
        return items[0] if items else None

    def get_user(self, user_id: str) -> Optional[dict]:
        response = self.table.get_item(Key={'user_id': user_id})
        return response.get('Item')
