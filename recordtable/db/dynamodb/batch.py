from __future__ import annotations

from itertools import islice
from typing import Any, Iterable, Iterator, TypeVar

from ...observability.logging import get_logger
from ...settings import MAX_READ_BATCH_SIZE, MAX_WRITE_BATCH_SIZE
from .converters import AttributeMap, Converters
from .errors import DdbTimeout, ErrorKind
from .metadata import TableSchema
from .retry import ResilientExecutor

T = TypeVar("T")

log = get_logger("ddb_batch")


def batched(iterable: Iterable[T], size: int) -> Iterator[list[T]]:
    """Lazily split ``iterable`` into lists of at most ``size`` items."""
    if size < 1:
        raise ValueError("batch size must be >= 1")
    it = iter(iterable)
    while True:
        chunk = list(islice(it, size))
        if not chunk:
            return
        yield chunk


class BatchOperator:
    """Windowed BatchGetItem / BatchWriteItem over unbounded inputs.

    Windows go out one at a time in input order. Keys or writes the store hands
    back as unprocessed are re-sent for the same window before moving on, until
    the executor's retry budget runs out for that window.
    """

    def __init__(
        self,
        client: Any,
        executor: ResilientExecutor,
        converters: Converters,
        *,
        read_batch_size: int = MAX_READ_BATCH_SIZE,
        write_batch_size: int = MAX_WRITE_BATCH_SIZE,
        consistent_read: bool = True,
    ):
        self.client = client
        self.executor = executor
        self.converters = converters
        self.read_batch_size = max(1, min(MAX_READ_BATCH_SIZE, int(read_batch_size)))
        self.write_batch_size = max(1, min(MAX_WRITE_BATCH_SIZE, int(write_batch_size)))
        self.consistent_read = consistent_read

    def batch_get(
        self,
        schema: TableSchema,
        keys: Iterable[AttributeMap],
        *,
        consistent_read: bool | None = None,
    ) -> Iterator[Any]:
        consistent = self.consistent_read if consistent_read is None else bool(consistent_read)

        for window in batched(keys, self.read_batch_size):
            request_items: dict[str, Any] = {
                schema.name: {"Keys": window, "ConsistentRead": consistent},
            }
            attempt = 0
            started_at = self.executor.now()
            while request_items:
                pending = request_items
                response = self.executor.execute(
                    "BatchGetItem",
                    lambda: self.client.batch_get_item(RequestItems=pending),
                    table_name=schema.name,
                )
                for item in (response.get("Responses") or {}).get(schema.name) or []:
                    yield self.converters.from_store_item(schema, item)

                request_items = response.get("UnprocessedKeys") or {}
                if request_items:
                    attempt += 1
                    self._backoff("BatchGetItem", schema, attempt, request_items, started_at)

    def batch_write(self, schema: TableSchema, write_requests: Iterable[dict[str, Any]]) -> int:
        """Send ``PutRequest`` / ``DeleteRequest`` entries; returns the number of calls made."""
        calls = 0
        for window in batched(write_requests, self.write_batch_size):
            request_items: dict[str, Any] = {schema.name: window}
            attempt = 0
            started_at = self.executor.now()
            while request_items:
                pending = request_items
                response = self.executor.execute(
                    "BatchWriteItem",
                    lambda: self.client.batch_write_item(RequestItems=pending),
                    table_name=schema.name,
                )
                calls += 1
                request_items = response.get("UnprocessedItems") or {}
                if request_items:
                    attempt += 1
                    self._backoff("BatchWriteItem", schema, attempt, request_items, started_at)
        return calls

    def _backoff(
        self, operation: str, schema: TableSchema, attempt: int, unprocessed: dict[str, Any], started_at: float
    ) -> None:
        remaining = sum(len(v["Keys"]) if isinstance(v, dict) else len(v) for v in unprocessed.values())
        budget = self.executor.retry_policy.max_retry_timeout_s
        elapsed = self.executor.now() - started_at
        if elapsed >= budget:
            log.warning(
                "ddb_batch_unprocessed_timeout",
                operation=operation,
                table=schema.name,
                attempts=attempt,
                remaining=remaining,
                elapsed_s=round(elapsed, 3),
            )
            raise DdbTimeout(
                message=f"{remaining} entries still unprocessed after {budget}s for {operation}",
                operation=operation,
                table_name=schema.name,
                code="Unprocessed",
                kind=ErrorKind.SERVICE,
                elapsed_s=elapsed,
            )

        log.info(
            "ddb_batch_unprocessed",
            operation=operation,
            table=schema.name,
            attempt=attempt,
            remaining=remaining,
        )
        self.executor.backoff(attempt)
