"""Pytest configuration and shared fixtures."""

import os
from datetime import UTC, datetime, timedelta

import boto3
import pytest
from jose import jwt
from moto import mock_aws

from models.chat import ChatMessage, ChatUser

# Set environment variables before any app imports
os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")
os.environ.setdefault("AWS_SECURITY_TOKEN", "testing")
os.environ.setdefault("AWS_SESSION_TOKEN", "testing")
os.environ["AWS_DEFAULT_REGION"] = "us-west-2"

TEST_JWT_SECRET = "unit-test-secret-key"
MESSAGES_TABLE = "chat-messages-test"
DELIVERY_TABLE = "chat-delivery-test"

BASE_TIME = datetime(2026, 1, 20, 12, 0, tzinfo=UTC)


def make_message(
    message_id: str,
    seconds: int = 0,
    user_id: str = "alice",
    content: str | None = None,
    **kwargs,
) -> ChatMessage:
    """Build a message created ``seconds`` after BASE_TIME."""
    return ChatMessage(
        id=message_id,
        room_id=kwargs.pop("room_id", "room-1"),
        content=content if content is not None else f"message {message_id}",
        created_at=(BASE_TIME + timedelta(seconds=seconds)).isoformat(),
        user=ChatUser(id=user_id, name=kwargs.pop("user_name", user_id.title())),
        **kwargs,
    )


def create_token(user_id: str = "alice", secret: str = TEST_JWT_SECRET) -> str:
    """Create a valid JWT access token for testing authenticated endpoints."""
    payload = {
        "sub": user_id,
        "type": "access",
        "iat": datetime.now(UTC),
        "exp": datetime.now(UTC) + timedelta(hours=1),
    }
    return jwt.encode(payload, secret, algorithm="HS256")


def auth_header(user_id: str = "alice") -> dict:
    """Return an Authorization header dict."""
    return {"Authorization": f"Bearer {create_token(user_id)}"}


@pytest.fixture
def aws_mock():
    """Mock AWS for a single test."""
    with mock_aws():
        yield


@pytest.fixture
def dynamodb(aws_mock):
    return boto3.resource("dynamodb", region_name="us-west-2")


@pytest.fixture
def messages_table(dynamodb):
    """Room messages table: hash room_id, range message_id."""
    table = dynamodb.create_table(
        TableName=MESSAGES_TABLE,
        KeySchema=[
            {"AttributeName": "room_id", "KeyType": "HASH"},
            {"AttributeName": "message_id", "KeyType": "RANGE"},
        ],
        AttributeDefinitions=[
            {"AttributeName": "room_id", "AttributeType": "S"},
            {"AttributeName": "message_id", "AttributeType": "S"},
        ],
        BillingMode="PAY_PER_REQUEST",
    )
    table.wait_until_exists()
    return table


@pytest.fixture
def delivery_table(dynamodb):
    """Delivery pointer table keyed by ``key``."""
    table = dynamodb.create_table(
        TableName=DELIVERY_TABLE,
        KeySchema=[{"AttributeName": "key", "KeyType": "HASH"}],
        AttributeDefinitions=[{"AttributeName": "key", "AttributeType": "S"}],
        BillingMode="PAY_PER_REQUEST",
    )
    table.wait_until_exists()
    return table


class FakeClock:
    """Manually advanced clock for TTL and cooldown tests."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()
