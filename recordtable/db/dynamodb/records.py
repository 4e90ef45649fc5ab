from __future__ import annotations

import threading
from decimal import Decimal
from typing import Any, Iterable, Iterator, Mapping, TypeVar

from boto3.dynamodb.conditions import ConditionBase, ConditionExpressionBuilder
from boto3.dynamodb.types import TypeSerializer

from ...observability.logging import get_logger
from ...settings import Settings, get_settings
from .batch import BatchOperator
from .client import dynamodb_client
from .converters import Converters, FieldUpdate, RecordKey, UpdateAction, ValueConverter
from .errors import DdbConditionFailed, DdbSchemaError
from .lifecycle import BillingMode, TableLifecycle
from .metadata import MetadataRegistry, TableSchema, registry as default_registry
from .pagination import Page, Paged, decode_next_token, encode_next_token, paginate
from .retry import ResilientExecutor
from .sequences import Seq, Sequences

T = TypeVar("T")

log = get_logger("ddb_records")

_serializer = TypeSerializer()


def _decimalize(value: Any) -> Any:
    # TypeSerializer refuses floats.
    if isinstance(value, float):
        return Decimal(repr(value))
    if isinstance(value, dict):
        return {k: _decimalize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_decimalize(v) for v in value]
    if isinstance(value, (set, frozenset)):
        return {_decimalize(v) for v in value}
    return value


def _serialize_values(values: Mapping[str, Any]) -> dict[str, Any]:
    return {k: _serializer.serialize(_decimalize(v)) for k, v in values.items()}


class _Expressions:
    """Collects condition/filter expressions of one request.

    Condition objects from ``boto3.dynamodb.conditions`` share one builder so
    their placeholders never collide; plain string expressions bring their own
    names and (plain python) values.
    """

    def __init__(self) -> None:
        self._builder = ConditionExpressionBuilder()
        self.names: dict[str, str] = {}
        self.values: dict[str, Any] = {}

    def add(
        self,
        expression: ConditionBase | str,
        *,
        is_key_condition: bool = False,
        names: Mapping[str, str] | None = None,
        values: Mapping[str, Any] | None = None,
    ) -> str:
        if isinstance(expression, ConditionBase):
            built = self._builder.build_expression(expression, is_key_condition=is_key_condition)
            self.names.update(built.attribute_name_placeholders)
            self.values.update(built.attribute_value_placeholders)
            return built.condition_expression
        self.names.update(names or {})
        self.values.update(values or {})
        return str(expression)

    def apply(self, request: dict[str, Any]) -> dict[str, Any]:
        if self.names:
            request["ExpressionAttributeNames"] = {**request.get("ExpressionAttributeNames", {}), **self.names}
        if self.values:
            request["ExpressionAttributeValues"] = {
                **request.get("ExpressionAttributeValues", {}),
                **_serialize_values(self.values),
            }
        return request


class DynamoRecords:
    """Typed record operations over DynamoDB tables.

    Every remote call goes through one ``ResilientExecutor``; tables are
    described by dataclass record types registered with the metadata registry.
    """

    def __init__(
        self,
        client: Any = None,
        *,
        registry: MetadataRegistry | None = None,
        converters: Converters | None = None,
        executor: ResilientExecutor | None = None,
        settings: Settings | None = None,
    ):
        settings = settings or get_settings()
        self.client = client if client is not None else dynamodb_client()
        self.registry = registry or default_registry
        self.converters = converters or Converters(self.registry)
        self.executor = executor or ResilientExecutor()
        self.consistent_read = bool(settings.ddb_consistent_read)
        self.batches = BatchOperator(
            self.client,
            self.executor,
            self.converters,
            read_batch_size=settings.ddb_read_batch_size,
            write_batch_size=settings.ddb_write_batch_size,
            consistent_read=self.consistent_read,
        )
        self.lifecycle = TableLifecycle(
            self.client,
            self.executor,
            poll_interval_s=settings.ddb_poll_table_status_s,
            billing_mode=BillingMode(settings.ddb_billing_mode),
            read_capacity=settings.ddb_read_capacity,
            write_capacity=settings.ddb_write_capacity,
        )
        self.sequences = Sequences(self)

    # --- metadata ---

    def register_table(self, record_type: type) -> TableSchema:
        schema = self.registry.register(record_type)
        if any(f.is_auto_increment for f in schema.fields):
            self.registry.register(Seq)
        return schema

    def register_tables(self, record_types: Iterable[type]) -> list[TableSchema]:
        return [self.register_table(t) for t in record_types]

    def get_table_metadata(self, record_type: type) -> TableSchema:
        return self.registry.get_table(record_type)

    def add_value_converter(self, type_: Any, converter: ValueConverter) -> None:
        self.converters.add_value_converter(type_, converter)

    # --- tables ---

    def get_table_names(self) -> list[str]:
        return self.lifecycle.list_table_names()

    def init_schema(self) -> bool:
        return self.create_missing_tables(self.registry.get_tables())

    def create_missing_tables(
        self,
        tables: Iterable[TableSchema | type],
        *,
        wait_for: Iterable[str] = (),
        cancel: threading.Event | None = None,
    ) -> bool:
        schemas = [t if isinstance(t, TableSchema) else self.registry.get_table(t) for t in tables]
        return self.lifecycle.create_missing(schemas, wait_for=wait_for, cancel=cancel)

    def create_table_if_missing(self, record_type: type, *, cancel: threading.Event | None = None) -> bool:
        return self.create_missing_tables([self.registry.get_table(record_type)], cancel=cancel)

    def wait_for_tables_to_be_ready(self, table_names: Iterable[str], *, cancel: threading.Event | None = None) -> None:
        self.lifecycle.wait_until_ready(table_names, cancel=cancel)

    def delete_table(self, record_type: type) -> None:
        self.lifecycle.delete_tables([self.registry.get_table(record_type).name])

    def delete_tables(self, table_names: Iterable[str]) -> None:
        self.lifecycle.delete_tables(table_names)

    # --- single items ---

    def get_item(
        self,
        record_type: type[T],
        hash: Any,
        range: Any = None,
        *,
        consistent_read: bool | None = None,
    ) -> T | None:
        schema = self.registry.get_table(record_type)
        key = self.converters.to_store_key(schema, hash, range)
        request = {
            "TableName": schema.name,
            "Key": key,
            "ConsistentRead": self.consistent_read if consistent_read is None else bool(consistent_read),
        }
        response = self.executor.execute(
            "GetItem", lambda: self.client.get_item(**request), table_name=schema.name, key=key
        )
        return self.converters.from_store_item(schema, response.get("Item"))

    def put_item(self, record: T, *, return_old: bool = False) -> T | None:
        schema = self.registry.get_table(type(record))
        self.converters.assign_auto_increment(record, schema, self.sequences.next_value)
        request = {
            "TableName": schema.name,
            "Item": self.converters.to_store_item(record, schema),
            "ReturnValues": "ALL_OLD" if return_old else "NONE",
        }
        response = self.executor.execute("PutItem", lambda: self.client.put_item(**request), table_name=schema.name)
        return self.converters.from_store_item(schema, response.get("Attributes"))

    def update_item_non_defaults(self, record: T, *, return_old: bool = False) -> T | None:
        """Write only the fields of ``record`` that differ from their defaults."""
        schema = self.registry.get_table(type(record))
        key = self.converters.key_of(schema, record)
        updates = self.converters.non_default_updates(record, schema)
        if not updates:
            return None

        request = {
            "TableName": schema.name,
            "Key": key,
            "ReturnValues": "ALL_OLD" if return_old else "NONE",
            **self.converters.to_update_expression(updates),
        }
        response = self.executor.execute(
            "UpdateItem", lambda: self.client.update_item(**request), table_name=schema.name, key=key
        )
        return self.converters.from_store_item(schema, response.get("Attributes"))

    def update_item(
        self,
        record_type: type,
        hash: Any,
        range: Any = None,
        *,
        put: Mapping[str, Any] | None = None,
        add: Mapping[str, Any] | None = None,
        delete: Iterable[str] | None = None,
        condition: ConditionBase | str | None = None,
        expression_attribute_names: Mapping[str, str] | None = None,
        expression_attribute_values: Mapping[str, Any] | None = None,
    ) -> bool:
        """PUT / ADD / DELETE individual fields.

        Returns False when ``condition`` did not hold; the item is left as is.
        """
        schema = self.registry.get_table(record_type)
        key = self.converters.to_store_key(schema, hash, range)

        updates: list[FieldUpdate] = []
        for action, entries in (
            (UpdateAction.PUT, list((put or {}).items())),
            (UpdateAction.ADD, list((add or {}).items())),
            (UpdateAction.DELETE, [(name, None) for name in (delete or ())]),
        ):
            for name, value in entries:
                field = schema.get_field(name)
                if field is None:
                    log.warning("ddb_update_unknown_field", table=schema.name, field=name)
                    continue
                updates.append(FieldUpdate(action, field, value))

        if not updates:
            return True

        request: dict[str, Any] = {
            "TableName": schema.name,
            "Key": key,
            "ReturnValues": "NONE",
            **self.converters.to_update_expression(updates),
        }
        if condition is not None:
            exprs = _Expressions()
            request["ConditionExpression"] = exprs.add(
                condition, names=expression_attribute_names, values=expression_attribute_values
            )
            exprs.apply(request)

        try:
            self.executor.execute(
                "UpdateItem",
                lambda: self.client.update_item(**request),
                table_name=schema.name,
                key=key,
                rethrow=(DdbConditionFailed,),
            )
        except DdbConditionFailed:
            return False
        return True

    def update_item_conditional(
        self,
        record_type: type,
        hash: Any,
        range: Any = None,
        *,
        condition_expression: ConditionBase | str,
        put: Mapping[str, Any] | None = None,
        add: Mapping[str, Any] | None = None,
        delete: Iterable[str] | None = None,
        expression_attribute_names: Mapping[str, str] | None = None,
        expression_attribute_values: Mapping[str, Any] | None = None,
    ) -> bool:
        return self.update_item(
            record_type,
            hash,
            range,
            put=put,
            add=add,
            delete=delete,
            condition=condition_expression,
            expression_attribute_names=expression_attribute_names,
            expression_attribute_values=expression_attribute_values,
        )

    def delete_item(self, record_type: type[T], hash: Any, range: Any = None, *, return_old: bool = False) -> T | None:
        schema = self.registry.get_table(record_type)
        key = self.converters.to_store_key(schema, hash, range)
        request = {
            "TableName": schema.name,
            "Key": key,
            "ReturnValues": "ALL_OLD" if return_old else "NONE",
        }
        response = self.executor.execute(
            "DeleteItem", lambda: self.client.delete_item(**request), table_name=schema.name, key=key
        )
        return self.converters.from_store_item(schema, response.get("Attributes"))

    def increment(self, record_type: type, hash: Any, field_name: str, amount: int = 1, *, range: Any = None) -> int:
        schema = self.registry.get_table(record_type)
        field = schema.get_field(field_name)
        if field is None:
            raise DdbSchemaError(
                message=f"{schema.name} has no field {field_name!r}",
                operation="UpdateItem",
                table_name=schema.name,
            )
        key = self.converters.to_store_key(schema, hash, range)
        request = {
            "TableName": schema.name,
            "Key": key,
            "UpdateExpression": "ADD #f :amount",
            "ExpressionAttributeNames": {"#f": field.name},
            "ExpressionAttributeValues": {":amount": _serializer.serialize(int(amount))},
            "ReturnValues": "UPDATED_NEW",
        }
        response = self.executor.execute(
            "UpdateItem", lambda: self.client.update_item(**request), table_name=schema.name, key=key
        )
        return int(Decimal(response["Attributes"][field.name]["N"]))

    def decrement(self, record_type: type, hash: Any, field_name: str, amount: int = 1, *, range: Any = None) -> int:
        return self.increment(record_type, hash, field_name, -amount, range=range)

    # --- batches ---

    def get_items(
        self,
        record_type: type[T],
        keys: Iterable[Any],
        *,
        consistent_read: bool | None = None,
    ) -> Iterator[T]:
        """``keys`` are hash values or ``RecordKey`` pairs."""
        schema = self.registry.get_table(record_type)
        store_keys = (self.converters.to_key(schema, k) for k in keys)
        return self.batches.batch_get(schema, store_keys, consistent_read=consistent_read)

    def put_items(self, record_type: type[T], records: Iterable[T]) -> None:
        schema = self.registry.get_table(record_type)

        def _puts():
            for record in records:
                self.converters.assign_auto_increment(record, schema, self.sequences.next_value)
                yield {"PutRequest": {"Item": self.converters.to_store_item(record, schema)}}

        self.batches.batch_write(schema, _puts())

    def delete_items(self, record_type: type, keys: Iterable[Any]) -> None:
        schema = self.registry.get_table(record_type)
        deletes = ({"DeleteRequest": {"Key": self.converters.to_key(schema, k)}} for k in keys)
        self.batches.batch_write(schema, deletes)

    # --- scan / query ---

    def _scan_request(self, schema: TableSchema, filter: ConditionBase | str | None, request: dict[str, Any]) -> dict[str, Any]:
        req: dict[str, Any] = {"TableName": schema.name, **request}
        if filter is not None:
            exprs = _Expressions()
            req["FilterExpression"] = exprs.add(filter)
            exprs.apply(req)
        return req

    def _query_request(
        self,
        schema: TableSchema,
        key_condition: ConditionBase | str,
        filter: ConditionBase | str | None,
        index_name: str | None,
        request: dict[str, Any],
    ) -> dict[str, Any]:
        req: dict[str, Any] = {"TableName": schema.name, **request}
        exprs = _Expressions()
        req["KeyConditionExpression"] = exprs.add(key_condition, is_key_condition=True)
        if filter is not None:
            req["FilterExpression"] = exprs.add(filter)
        if index_name:
            req["IndexName"] = index_name
        return exprs.apply(req)

    def scan(
        self,
        record_type: type[T],
        *,
        limit: int | None = None,
        filter: ConditionBase | str | None = None,
        **request: Any,
    ) -> Paged[T]:
        """Lazily stream every matching record; ``request`` holds extra Scan arguments."""
        schema = self.registry.get_table(record_type)
        req = self._scan_request(schema, filter, request)
        return Paged(
            lambda: paginate(
                self.executor,
                "Scan",
                self.client.scan,
                req,
                lambda r: (self.converters.from_store_item(schema, it) for it in r.get("Items") or []),
                limit=limit,
                table_name=schema.name,
            )
        )

    def query(
        self,
        record_type: type[T],
        key_condition: ConditionBase | str,
        *,
        limit: int | None = None,
        filter: ConditionBase | str | None = None,
        index_name: str | None = None,
        **request: Any,
    ) -> Paged[T]:
        schema = self.registry.get_table(record_type)
        req = self._query_request(schema, key_condition, filter, index_name, request)
        return Paged(
            lambda: paginate(
                self.executor,
                "Query",
                self.client.query,
                req,
                lambda r: (self.converters.from_store_item(schema, it) for it in r.get("Items") or []),
                limit=limit,
                table_name=schema.name,
            )
        )

    def _page(self, operation: str, call: Any, schema: TableSchema, req: dict[str, Any], limit: int, next_token: str | None) -> Page:
        req["Limit"] = max(1, int(limit or 50))
        lek = decode_next_token(next_token) if next_token else None
        if lek:
            req["ExclusiveStartKey"] = lek

        response = self.executor.execute(operation, lambda: call(**req), table_name=schema.name)
        items = [self.converters.from_store_item(schema, it) for it in response.get("Items") or []]
        return Page(items=items, next_token=encode_next_token(response.get("LastEvaluatedKey")))

    def scan_page(
        self,
        record_type: type[T],
        *,
        limit: int = 50,
        next_token: str | None = None,
        filter: ConditionBase | str | None = None,
        **request: Any,
    ) -> Page[T]:
        schema = self.registry.get_table(record_type)
        req = self._scan_request(schema, filter, request)
        return self._page("Scan", self.client.scan, schema, req, limit, next_token)

    def query_page(
        self,
        record_type: type[T],
        key_condition: ConditionBase | str,
        *,
        limit: int = 50,
        next_token: str | None = None,
        filter: ConditionBase | str | None = None,
        index_name: str | None = None,
        **request: Any,
    ) -> Page[T]:
        schema = self.registry.get_table(record_type)
        req = self._query_request(schema, key_condition, filter, index_name, request)
        return self._page("Query", self.client.query, schema, req, limit, next_token)


__all__ = ["DynamoRecords", "RecordKey"]
