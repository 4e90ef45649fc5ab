"""
Base repository interface.

Repositories wrap one record type so callers never pass the type around.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Generic, Iterable, Iterator, Mapping, TypeVar

from ..db.dynamodb.errors import DdbNotFound
from ..db.dynamodb.records import DynamoRecords

T = TypeVar("T")


class Repository(ABC, Generic[T]):
    """Base repository interface."""

    @abstractmethod
    def get(self, id: Any, range: Any = None) -> T | None:
        """Get a record by key."""

    @abstractmethod
    def list(self, limit: int | None = None, **filters: Any) -> list[T]:
        """List records, optionally capped."""

    @abstractmethod
    def create(self, record: T) -> T:
        """Store a new record."""

    @abstractmethod
    def update(self, id: Any, updates: Mapping[str, Any], range: Any = None) -> T:
        """Update fields of an existing record."""

    @abstractmethod
    def delete(self, id: Any, range: Any = None) -> T | None:
        """Delete a record, returning what was stored."""


class RecordRepository(Repository[T]):
    """Repository over one registered dataclass record type."""

    def __init__(self, record_type: type[T], records: DynamoRecords | None = None):
        self.record_type = record_type
        self.records = records or DynamoRecords()
        self.schema = self.records.register_table(record_type)

    def get(self, id: Any, range: Any = None) -> T | None:
        return self.records.get_item(self.record_type, id, range)

    def get_many(self, keys: Iterable[Any]) -> Iterator[T]:
        return self.records.get_items(self.record_type, keys)

    def list(self, limit: int | None = None, **filters: Any) -> list[T]:
        return list(self.records.scan(self.record_type, limit=limit, **filters))

    def create(self, record: T) -> T:
        self.records.put_item(record)
        return record

    def update(self, id: Any, updates: Mapping[str, Any], range: Any = None) -> T:
        self.records.update_item(self.record_type, id, range, put=dict(updates))
        updated = self.get(id, range)
        if updated is None:
            raise DdbNotFound(
                message=f"{self.schema.name} item not found",
                operation="UpdateItem",
                table_name=self.schema.name,
            )
        return updated

    def delete(self, id: Any, range: Any = None) -> T | None:
        return self.records.delete_item(self.record_type, id, range, return_old=True)
