"""DynamoDB helpers shared by the message and pointer stores.

DynamoDB returns every number as ``Decimal`` and rejects floats on write, so
items are converted at the store boundary.
"""

from decimal import Decimal
from typing import Any


def decimal_to_python(obj: Any) -> Any:
    """Recursively convert Decimal values to int (whole numbers) or float."""
    if isinstance(obj, Decimal):
        return int(obj) if obj % 1 == 0 else float(obj)
    if isinstance(obj, dict):
        return {key: decimal_to_python(value) for key, value in obj.items()}
    if isinstance(obj, list):
        return [decimal_to_python(item) for item in obj]
    return obj


def python_to_decimal(obj: Any) -> Any:
    """Recursively convert int and float values to Decimal. Bools are kept."""
    if isinstance(obj, bool):
        return obj
    if isinstance(obj, float):
        # str() first so 0.1 is stored as 0.1, not its binary expansion
        return Decimal(str(obj))
    if isinstance(obj, int):
        return Decimal(obj)
    if isinstance(obj, dict):
        return {key: python_to_decimal(value) for key, value in obj.items()}
    if isinstance(obj, list):
        return [python_to_decimal(item) for item in obj]
    return obj


def prepare_for_dynamodb(item: dict[str, Any]) -> dict[str, Any]:
    """Convert an item for ``put_item``, dropping None and empty-string attributes.

    Optional attributes are omitted rather than stored as null.
    """
    compact = {k: v for k, v in item.items() if v is not None and v != ""}
    return python_to_decimal(compact)


def parse_from_dynamodb(item: dict[str, Any]) -> dict[str, Any]:
    return decimal_to_python(item)


def expires_at(now: float, ttl_seconds: int) -> int:
    """Epoch seconds for a DynamoDB TTL attribute."""
    return int(now) + ttl_seconds


def is_expired(item: dict[str, Any], now: float, attribute: str = "expires_at") -> bool:
    """True if the item's TTL attribute has passed.

    DynamoDB deletes expired items lazily (up to days later), so readers must
    check the attribute themselves.
    """
    value = item.get(attribute)
    return value is not None and value <= now


def query_all(table, **kwargs) -> list[dict[str, Any]]:
    """Run a query and follow ``LastEvaluatedKey`` to the last page.

    Args:
        table: boto3 DynamoDB Table resource
        **kwargs: Arguments for ``table.query``

    Returns:
        Every item across all pages, parsed to Python types
    """
    items: list[dict[str, Any]] = []
    while True:
        response = table.query(**kwargs)
        items.extend(parse_from_dynamodb(item) for item in response.get("Items", []))
        last_key = response.get("LastEvaluatedKey")
        if not last_key:
            return items
        kwargs["ExclusiveStartKey"] = last_key
