"""Key-value stores with per-key expiry used for delivery pointers."""

import time
from typing import Callable, Protocol

from cachetools import TLRUCache

from utils.dynamodb_utils import (
    expires_at,
    is_expired,
    parse_from_dynamodb,
    prepare_for_dynamodb,
)


class KeyValueStore(Protocol):
    """Narrow interface the delivery tracker depends on."""

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str, ttl_seconds: int) -> None: ...


def _time_to_use(_key, entry, now):
    """TLRUCache time-to-use: each entry carries its own ttl."""
    return now + entry[1]


class MemoryKeyValueStore:
    """In-process store for local development and tests."""

    def __init__(self, maxsize: int = 10000, timer: Callable[[], float] = time.monotonic):
        self._cache: TLRUCache = TLRUCache(maxsize=maxsize, ttu=_time_to_use, timer=timer)

    def get(self, key: str) -> str | None:
        entry = self._cache.get(key)
        return entry[0] if entry else None

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._cache[key] = (value, ttl_seconds)

    def clear(self) -> None:
        self._cache.clear()


class DynamoKeyValueStore:
    """DynamoDB-backed store.

    Items are ``{"key", "value", "expires_at"}``. The table's TTL attribute
    is ``expires_at``; DynamoDB deletes expired items lazily, so reads also
    check the timestamp.
    """

    def __init__(self, table, clock: Callable[[], float] = time.time):
        """Initialize the store.

        Args:
            table: DynamoDB table with a string hash key named ``key``
            clock: Returns the current epoch seconds
        """
        self.table = table
        self.clock = clock

    def get(self, key: str) -> str | None:
        response = self.table.get_item(Key={"key": key})
        item = response.get("Item")
        if not item:
            return None
        item = parse_from_dynamodb(item)
        if is_expired(item, self.clock()):
            return None
        return item.get("value")

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        item = {
            "key": key,
            "value": value,
            "expires_at": expires_at(self.clock(), ttl_seconds),
        }
        self.table.put_item(Item=prepare_for_dynamodb(item))
