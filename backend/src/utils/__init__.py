"""Utility functions for the room chat backend."""

from .dynamodb_utils import (
    decimal_to_python,
    expires_at,
    is_expired,
    parse_from_dynamodb,
    prepare_for_dynamodb,
    python_to_decimal,
    query_all,
)

__all__ = [
    "decimal_to_python",
    "python_to_decimal",
    "prepare_for_dynamodb",
    "parse_from_dynamodb",
    "expires_at",
    "is_expired",
    "query_all",
]
