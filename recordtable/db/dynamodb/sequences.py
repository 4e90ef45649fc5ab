from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from .metadata import TableSchema, hash_key

if TYPE_CHECKING:
    from .records import DynamoRecords


@dataclass
class Seq:
    """One named counter row."""

    __table_name__ = "Seq"

    id: str = hash_key(default="")
    counter: int = 0


class Sequences:
    """Monotonic counters backed by atomic ADD updates on the ``Seq`` table."""

    def __init__(self, records: DynamoRecords):
        self.records = records

    def increment(self, key: str, amount: int = 1) -> int:
        return self.records.increment(Seq, key, "counter", amount)

    def current(self, key: str) -> int:
        seq = self.records.get_item(Seq, key)
        return seq.counter if seq else 0

    def reset(self, key: str, value: int = 0) -> None:
        self.records.put_item(Seq(id=key, counter=int(value)))

    def next_value(self, schema: TableSchema) -> int:
        return self.increment(schema.name)
