"""Shared DynamoDB utilities.

This package centralizes:
- boto3 client configuration
- record metadata and attribute conversion
- retry/backoff policy around every remote call
- cursor pagination and windowed batch calls
- table creation and readiness polling

"""

from .converters import RecordKey
from .metadata import alias, auto_increment, dynamo_field, hash_key, range_key, registry
from .records import DynamoRecords

__all__ = [
    "DynamoRecords",
    "RecordKey",
    "alias",
    "auto_increment",
    "dynamo_field",
    "hash_key",
    "range_key",
    "registry",
]
