"""Shared fixtures: mocked DynamoDB tables, seeded users and a fake clock."""
import base64
from datetime import datetime

import boto3
import pytest
from moto import mock_aws

from notifications.change_log import NotificationQueue
from processor.event_validator import EventValidator
from storage.event_store import EventStore
from storage.schema import create_tables
from storage.user_directory import UserDirectory

EVENTS_TABLE = 'test-calendar-events'
USERS_TABLE = 'test-calendar-users'
UPDATES_TABLE = 'test-calendar-updates'

FIXED_NOW = datetime(2025, 1, 1, 12, 0, 0)
EPOCH_NOW = 1_700_000_000.0

USERS = {
    'Alice': 'user-alice',
    'Bob': 'user-bob',
}


class FakeClock:
    """Epoch clock that only moves when told to."""

    def __init__(self, now: float = EPOCH_NOW):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def aws_credentials(monkeypatch):
    """Fake credentials so nothing can reach a real AWS account."""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_SECURITY_TOKEN', 'testing')
    monkeypatch.setenv('AWS_SESSION_TOKEN', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')


@pytest.fixture
def dynamodb():
    """Create the three tables inside a moto mock."""
    with mock_aws():
        resource = boto3.resource('dynamodb', region_name='us-east-1')
        create_tables(resource, EVENTS_TABLE, USERS_TABLE, UPDATES_TABLE)
        yield resource


@pytest.fixture
def users(dynamodb):
    table = dynamodb.Table(USERS_TABLE)
    for name, user_id in USERS.items():
        table.put_item(Item={'user_id': user_id, 'name': name})
    return dict(USERS)


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def event_store(dynamodb):
    return EventStore(EVENTS_TABLE, clock=lambda: FIXED_NOW)


@pytest.fixture
def user_directory(dynamodb, users):
    return UserDirectory(USERS_TABLE)


@pytest.fixture
def validator(user_directory, event_store):
    return EventValidator(user_directory, event_store, clock=lambda: FIXED_NOW)


@pytest.fixture
def notification_queue(dynamodb, fake_clock):
    return NotificationQueue(UPDATES_TABLE, clock=fake_clock, inline_cleanup=False)


@pytest.fixture
def multipart_event():
    """Build an API Gateway proxy event carrying a multipart/form-data body."""

    def build(fields=None, files=None, boundary='----calendarboundary',
              base64_encode=True, method='POST', path='/import', headers=None,
              query=None, claims=None):
        parts = []
        for name, value in (fields or {}).items():
            parts.append(
                f'--{boundary}\r\n'
                f'Content-Disposition: form-data; name="{name}"\r\n\r\n'
                f'{value}\r\n'.encode('utf-8')
            )
        for name, (filename, content) in (files or {}).items():
            parts.append(
                f'--{boundary}\r\n'
                f'Content-Disposition: form-data; name="{name}"; filename="{filename}"\r\n'
                f'Content-Type: application/octet-stream\r\n\r\n'.encode('utf-8')
                + content + b'\r\n'
            )
        body = b''.join(parts) + f'--{boundary}--\r\n'.encode('utf-8')

        event = {
            'httpMethod': method,
            'path': path,
            'headers': {
                'Content-Type': f'multipart/form-data; boundary={boundary}',
                **(headers or {})
            },
            'queryStringParameters': query,
            'body': base64.b64encode(body).decode('ascii') if base64_encode else body.decode('utf-8'),
            'isBase64Encoded': base64_encode,
        }
        if claims is not None:
            event['requestContext'] = {'authorizer': {'claims': claims}}
        return event

    return build
