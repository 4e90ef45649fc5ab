from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from enum import Enum, unique
from typing import Any, Callable, Iterable

from ...observability.logging import get_logger
from .errors import DdbNotFound, DdbResourceInUse, DdbSchemaError
from .metadata import DynamoType, TableSchema
from .pagination import paginate
from .retry import ResilientExecutor

log = get_logger("ddb_lifecycle")

TABLE_STATUS_ACTIVE = "ACTIVE"


@unique
class BillingMode(str, Enum):
    PAY_PER_REQUEST = "PAY_PER_REQUEST"
    PROVISIONED = "PROVISIONED"


def to_create_table_request(
    schema: TableSchema,
    *,
    billing_mode: BillingMode = BillingMode.PAY_PER_REQUEST,
    read_capacity: int = 10,
    write_capacity: int = 5,
) -> dict[str, Any]:
    """
    https://boto3.amazonaws.com/v1/documentation/api/latest/reference/services/dynamodb/client/create_table.html
    """
    if schema.hash_key is None:
        raise DdbSchemaError(message=f"{schema.name} has no hash key", operation="CreateTable", table_name=schema.name)

    key_schema = [{"AttributeName": schema.hash_key.name, "KeyType": "HASH"}]
    attribute_def = [{"AttributeName": schema.hash_key.name, "AttributeType": DynamoType(schema.hash_key.db_type).value}]
    if schema.range_key is not None:
        key_schema.append({"AttributeName": schema.range_key.name, "KeyType": "RANGE"})
        attribute_def.append(
            {"AttributeName": schema.range_key.name, "AttributeType": DynamoType(schema.range_key.db_type).value}
        )

    args: dict[str, Any] = {
        "TableName": schema.name,
        "KeySchema": key_schema,
        "AttributeDefinitions": attribute_def,
        "BillingMode": billing_mode.value,
    }
    if billing_mode == BillingMode.PROVISIONED:
        args["ProvisionedThroughput"] = {
            "ReadCapacityUnits": int(read_capacity),
            "WriteCapacityUnits": int(write_capacity),
        }
    return args


class TableLifecycle:
    """Creates missing tables and waits for them to turn ACTIVE."""

    def __init__(
        self,
        client: Any,
        executor: ResilientExecutor,
        *,
        poll_interval_s: float = 2.0,
        billing_mode: BillingMode = BillingMode.PAY_PER_REQUEST,
        read_capacity: int = 10,
        write_capacity: int = 5,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.client = client
        self.executor = executor
        self.poll_interval_s = float(poll_interval_s)
        self.billing_mode = billing_mode
        self.read_capacity = read_capacity
        self.write_capacity = write_capacity
        self._sleep = sleep

    def list_table_names(self) -> list[str]:
        return list(
            paginate(
                self.executor,
                "ListTables",
                self.client.list_tables,
                {},
                lambda r: r.get("TableNames") or [],
                token_in="ExclusiveStartTableName",
                token_out="LastEvaluatedTableName",
            )
        )

    def create_table(self, schema: TableSchema) -> bool:
        """Returns False when someone else created the table first."""
        request = to_create_table_request(
            schema,
            billing_mode=self.billing_mode,
            read_capacity=self.read_capacity,
            write_capacity=self.write_capacity,
        )
        try:
            self.executor.execute(
                "CreateTable",
                lambda: self.client.create_table(**request),
                table_name=schema.name,
                rethrow=(DdbResourceInUse,),
            )
        except DdbResourceInUse:
            log.info("ddb_create_table_exists", table=schema.name)
            return False
        log.info("ddb_create_table", table=schema.name)
        return True

    def create_missing(
        self,
        schemas: Iterable[TableSchema],
        *,
        wait_for: Iterable[str] = (),
        cancel: threading.Event | None = None,
    ) -> bool:
        tables = list(schemas or [])
        wait_names = [str(n) for n in wait_for]
        if not tables and not wait_names:
            return False

        existing = set(self.list_table_names()) if tables else set()

        created = False
        for schema in tables:
            if schema.name in existing:
                continue
            created = self.create_table(schema) or created
            if schema.name not in wait_names:
                wait_names.append(schema.name)

        self.wait_until_ready(wait_names, cancel=cancel)
        return created

    def _describe_status(self, table_name: str) -> str | None:
        try:
            response = self.executor.execute(
                "DescribeTable",
                lambda: self.client.describe_table(TableName=table_name),
                table_name=table_name,
                rethrow=(DdbNotFound,),
            )
        except DdbNotFound:
            # DescribeTable is eventually consistent right after CreateTable.
            return None
        return ((response or {}).get("Table") or {}).get("TableStatus")

    def wait_until_ready(self, table_names: Iterable[str], *, cancel: threading.Event | None = None) -> None:
        pending = list(dict.fromkeys(str(n) for n in table_names))
        if not pending:
            return

        rounds = 0
        while True:
            rounds += 1
            with ThreadPoolExecutor(max_workers=min(8, len(pending))) as ex:
                futures = {ex.submit(self._describe_status, name): name for name in pending}
                for fut in as_completed(futures):
                    if fut.result() == TABLE_STATUS_ACTIVE:
                        pending.remove(futures[fut])

            log.debug("ddb_tables_pending", round=rounds, pending=list(pending))

            if not pending:
                return
            if cancel is not None and cancel.is_set():
                log.info("ddb_wait_cancelled", round=rounds, pending=list(pending))
                return

            self._sleep(self.poll_interval_s)

    def delete_tables(self, table_names: Iterable[str]) -> None:
        for name in table_names:
            try:
                self.executor.execute(
                    "DeleteTable",
                    lambda: self.client.delete_table(TableName=name),
                    table_name=name,
                    rethrow=(DdbNotFound,),
                )
                log.info("ddb_delete_table", table=name)
            except DdbNotFound:
                continue
