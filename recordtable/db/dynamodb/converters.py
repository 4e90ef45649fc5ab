from __future__ import annotations

import dataclasses
import typing
from abc import ABC, abstractmethod
from collections.abc import Mapping
from collections.abc import Set as AbcSet
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, NamedTuple

from boto3.dynamodb.types import Binary, TypeDeserializer, TypeSerializer

from .errors import DdbConversionError, DdbSchemaError
from .metadata import (
    NUMBER_TYPES,
    DynamoType,
    FieldSchema,
    MetadataRegistry,
    TableSchema,
    field_db_type,
    unwrap_optional,
)

AttributeValue = dict[str, Any]
AttributeMap = dict[str, AttributeValue]


class RecordKey(NamedTuple):
    hash: Any
    range: Any = None


class ValueConverter(ABC):
    """Explicit store representation for a type outside the default type map.

    ``from_attribute_value(to_attribute_value(v), t) == v`` is the converter's
    own round-trip contract.
    """

    @abstractmethod
    def to_attribute_value(self, value: Any) -> AttributeValue: ...

    @abstractmethod
    def from_attribute_value(self, attribute_value: AttributeValue, declared_type: Any) -> Any: ...


class IsoDateTimeConverter(ValueConverter):
    """datetime <-> ISO-8601 string."""

    def to_attribute_value(self, value: Any) -> AttributeValue:
        if not isinstance(value, datetime):
            raise DdbConversionError(message=f"Expected datetime, got {type(value).__name__}")
        return {"S": value.isoformat()}

    def from_attribute_value(self, attribute_value: AttributeValue, declared_type: Any) -> Any:
        try:
            return datetime.fromisoformat(attribute_value["S"])
        except (KeyError, TypeError, ValueError) as e:
            raise DdbConversionError(message=f"Invalid datetime attribute: {attribute_value!r}", cause=e) from e


class EnumNameConverter(ValueConverter):
    """Enum members stored by name."""

    def to_attribute_value(self, value: Any) -> AttributeValue:
        if not isinstance(value, Enum):
            raise DdbConversionError(message=f"Expected Enum, got {type(value).__name__}")
        return {"S": value.name}

    def from_attribute_value(self, attribute_value: AttributeValue, declared_type: Any) -> Any:
        try:
            return declared_type[attribute_value["S"]]
        except (KeyError, TypeError) as e:
            raise DdbConversionError(message=f"Invalid {declared_type!r} attribute: {attribute_value!r}", cause=e) from e


class UpdateAction(str, Enum):
    PUT = "PUT"
    ADD = "ADD"
    DELETE = "DELETE"


@dataclass(frozen=True, slots=True)
class FieldUpdate:
    action: UpdateAction
    field: FieldSchema
    value: Any = None


def _to_decimal(value: Any) -> Decimal:
    if isinstance(value, bool) or not isinstance(value, NUMBER_TYPES):
        raise DdbConversionError(message=f"Expected a number, got {type(value).__name__}")
    # TypeSerializer refuses floats; repr keeps the shortest digits that round-trip.
    d = Decimal(repr(value)) if isinstance(value, float) else Decimal(value)
    if not d.is_finite():
        raise DdbConversionError(message=f"Cannot store non-finite number {value!r}")
    return d


def _from_decimal(d: Decimal, declared: Any) -> Any:
    if declared is float:
        return float(d)
    if declared is Decimal:
        return d
    if d == d.to_integral_value():
        return int(d)
    if declared is int:
        raise DdbConversionError(message=f"Cannot read {d} into an int field")
    return d


def _is_number(v: Any) -> bool:
    return isinstance(v, NUMBER_TYPES) and not isinstance(v, bool)


def _is_dataclass_instance(v: Any) -> bool:
    return dataclasses.is_dataclass(v) and not isinstance(v, type)


class Converters:
    """Native values <-> DynamoDB attribute values, driven by table metadata.

    Values are first shaped to what the declared field type says they are
    (numbers to Decimal, nested records to dicts, converter output unpacked),
    then tagged by boto3's ``TypeSerializer``. Reads go the other way through
    ``TypeDeserializer`` and are coerced back to the declared type.
    """

    def __init__(self, registry: MetadataRegistry):
        self.registry = registry
        self.value_converters: dict[Any, ValueConverter] = {}
        self._serializer = TypeSerializer()
        self._deserializer = TypeDeserializer()

    def add_value_converter(self, type_: Any, converter: ValueConverter) -> None:
        self.value_converters[type_] = converter

    def _converter_for(self, declared: Any, value: Any = None) -> ValueConverter | None:
        if declared in self.value_converters:
            return self.value_converters[declared]
        if value is not None:
            for t in type(value).__mro__:
                if t in self.value_converters:
                    return self.value_converters[t]
        return None

    def _serialize(self, native: Any) -> AttributeValue:
        try:
            return self._serializer.serialize(native)
        except (TypeError, ArithmeticError) as e:
            raise DdbConversionError(message=str(e), cause=e) from e

    def _deserialize(self, av: AttributeValue) -> Any:
        if not isinstance(av, Mapping) or len(av) != 1:
            raise DdbConversionError(message=f"Malformed attribute value {av!r}")
        try:
            return self._deserializer.deserialize(av)
        except (TypeError, ArithmeticError) as e:
            raise DdbConversionError(message=f"Malformed attribute value {av!r}", cause=e) from e

    # --- native -> store ---

    def to_attribute_value(self, field: FieldSchema, value: Any) -> AttributeValue | None:
        native = self._to_native(value, field.type)
        if native is None:
            return None
        return self._serialize(native)

    def _to_native(self, value: Any, declared: Any) -> Any:
        """Shape ``value`` for the serializer; None means "leave it out"."""
        if value is None:
            return None
        declared = unwrap_optional(declared)

        conv = self._converter_for(declared, value)
        if conv is not None:
            return self._deserialize(conv.to_attribute_value(value))

        if declared is None or declared is Any:
            return self._dynamic_native(value)

        db_type, item_type = field_db_type(declared)

        if db_type is DynamoType.STRING:
            if isinstance(value, str):
                return value
            raise DdbConversionError(message=f"No value converter registered for {type(value).__name__}")
        if db_type is DynamoType.BOOL:
            if isinstance(value, bool):
                return value
            raise DdbConversionError(message=f"Expected bool, got {type(value).__name__}")
        if db_type is DynamoType.NUMBER:
            return _to_decimal(value)
        if db_type is DynamoType.BINARY:
            if isinstance(value, (bytes, bytearray)):
                return bytes(value)
            raise DdbConversionError(message=f"Expected bytes, got {type(value).__name__}")
        if db_type in (DynamoType.STRING_SET, DynamoType.NUMBER_SET, DynamoType.BINARY_SET):
            return self._set_native(value, db_type)
        if db_type is DynamoType.MAP:
            return self._map_native(value, item_type)
        if db_type is DynamoType.LIST:
            if isinstance(value, (str, bytes, bytearray, Mapping)) or not hasattr(value, "__iter__"):
                raise DdbConversionError(message=f"Expected a sequence, got {type(value).__name__}")
            return [self._to_native(v, item_type) for v in value]

        raise DdbConversionError(message=f"Unsupported store type {db_type!r}")

    def _set_native(self, value: Any, db_type: DynamoType) -> set[Any] | None:
        if not isinstance(value, AbcSet):
            raise DdbConversionError(message=f"Expected a set, got {type(value).__name__}")
        if not value:
            # DynamoDB rejects empty sets; the field reads back as its empty default.
            return None
        if db_type is DynamoType.STRING_SET:
            if not all(isinstance(v, str) for v in value):
                raise DdbConversionError(message="String set contains non-string values")
            return set(value)
        if db_type is DynamoType.NUMBER_SET:
            return {_to_decimal(v) for v in value}
        if not all(isinstance(v, (bytes, bytearray)) for v in value):
            raise DdbConversionError(message="Binary set contains non-binary values")
        return {bytes(v) for v in value}

    def _map_native(self, value: Any, item_type: Any) -> dict[str, Any]:
        if _is_dataclass_instance(value):
            return self._record_native(value, self.registry.resolve(type(value)))
        if isinstance(value, Mapping):
            out: dict[str, Any] = {}
            for k, v in value.items():
                if not isinstance(k, str):
                    raise DdbConversionError(message=f"Map keys must be strings, got {type(k).__name__}")
                out[k] = self._to_native(v, item_type)
            return out
        raise DdbConversionError(message=f"Expected a mapping, got {type(value).__name__}")

    def _dynamic_native(self, value: Any) -> Any:
        if _is_number(value):
            return _to_decimal(value)
        if isinstance(value, bytearray):
            return bytes(value)
        if isinstance(value, AbcSet):
            if not value:
                return None
            if all(_is_number(v) for v in value):
                return {_to_decimal(v) for v in value}
            return set(value)
        if _is_dataclass_instance(value) or isinstance(value, Mapping):
            return self._map_native(value, Any)
        if isinstance(value, (list, tuple)):
            return [self._to_native(v, Any) for v in value]
        # str, bool and bytes go as they are; the serializer rejects anything else.
        return value

    def _record_native(self, record: Any, schema: TableSchema) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for f in schema.fields:
            native = self._to_native(f.get_value(record), f.type)
            if native is not None:
                out[f.name] = native
        return out

    def to_store_item(self, record: Any, schema: TableSchema) -> AttributeMap:
        item: AttributeMap = {}
        for f in schema.fields:
            try:
                av = self.to_attribute_value(f, f.get_value(record))
            except DdbConversionError as e:
                raise DdbConversionError(
                    message=f"{schema.name}.{f.name}: {e.message}",
                    table_name=schema.name,
                    cause=e,
                ) from e
            if av is not None:
                item[f.name] = av
        return item

    def to_store_key(self, schema: TableSchema, hash: Any, range: Any = None) -> AttributeMap:
        if schema.hash_key is None:
            raise DdbSchemaError(message=f"{schema.name} has no hash key", table_name=schema.name)
        if hash is None:
            raise DdbConversionError(
                message=f"key shape mismatch: {schema.name} requires a hash value",
                table_name=schema.name,
            )
        if range is not None and schema.range_key is None:
            raise DdbConversionError(
                message=f"key shape mismatch: {schema.name} has no range key",
                table_name=schema.name,
            )
        if range is None and schema.range_key is not None:
            raise DdbConversionError(
                message=f"key shape mismatch: {schema.name} requires a range value for {schema.range_key.name}",
                table_name=schema.name,
            )

        key = {schema.hash_key.name: self.to_attribute_value(schema.hash_key, hash)}
        if schema.range_key is not None:
            key[schema.range_key.name] = self.to_attribute_value(schema.range_key, range)
        return key

    def to_key(self, schema: TableSchema, key: Any) -> AttributeMap:
        """Accepts a bare hash value or a ``RecordKey``."""
        if isinstance(key, RecordKey):
            return self.to_store_key(schema, key.hash, key.range)
        return self.to_store_key(schema, key)

    def key_of(self, schema: TableSchema, record: Any) -> AttributeMap:
        hash_value = schema.hash_key.get_value(record) if schema.hash_key else None
        range_value = schema.range_key.get_value(record) if schema.range_key else None
        return self.to_store_key(schema, hash_value, range_value)

    # --- store -> native ---

    def from_attribute_value(self, field: FieldSchema, av: AttributeValue) -> Any:
        declared = unwrap_optional(field.type)
        conv = self._converter_for(declared)
        if conv is None or not isinstance(av, Mapping) or av.get("NULL"):
            return self._from_native(self._deserialize(av), declared)
        return conv.from_attribute_value(av, declared)

    def _from_native(self, value: Any, declared: Any) -> Any:
        if value is None:
            return None
        declared = unwrap_optional(declared)

        conv = self._converter_for(declared)
        if conv is not None:
            return conv.from_attribute_value(self._serialize(value), declared)

        origin = typing.get_origin(declared) or declared
        args = typing.get_args(declared)

        if isinstance(value, str):
            if declared in (None, Any, str):
                return value
            raise DdbConversionError(message=f"No value converter registered for {declared!r}")
        if isinstance(value, bool):
            return value
        if isinstance(value, Decimal):
            return _from_decimal(value, declared)
        if isinstance(value, Binary):
            return bytearray(value.value) if declared is bytearray else bytes(value.value)
        if isinstance(value, AbcSet):
            item_type = args[0] if args else Any
            values = {self._from_native(v, item_type) for v in value}
            return frozenset(values) if origin is frozenset else values
        if isinstance(value, Mapping):
            if isinstance(declared, type) and dataclasses.is_dataclass(declared):
                return self._build_record(self.registry.resolve(declared), value, self._field_from_native)
            value_type = args[1] if len(args) == 2 else Any
            return {k: self._from_native(v, value_type) for k, v in value.items()}
        if isinstance(value, list):
            item_type = args[0] if args else Any
            items = [self._from_native(v, item_type) for v in value]
            if origin is tuple:
                return tuple(items)
            if isinstance(origin, type) and issubclass(origin, AbcSet):
                return origin(items) if origin in (set, frozenset) else set(items)
            return items

        raise DdbConversionError(message=f"Unsupported attribute value {value!r}")

    def _field_from_native(self, field: FieldSchema, value: Any) -> Any:
        return self._from_native(value, field.type)

    def _build_record(
        self, schema: TableSchema, attributes: Mapping[str, Any], read: Callable[[FieldSchema, Any], Any]
    ) -> Any:
        kwargs: dict[str, Any] = {}
        late: list[tuple[FieldSchema, Any]] = []
        for f in schema.fields:
            if f.name in attributes:
                try:
                    value = read(f, attributes[f.name])
                except DdbConversionError as e:
                    raise DdbConversionError(
                        message=f"{schema.name}.{f.name}: {e.message}",
                        table_name=schema.name,
                        cause=e,
                    ) from e
            elif f.has_default or not f.init:
                continue
            else:
                value = None if f.is_optional else f.default_value()

            if f.init:
                kwargs[f.attr] = value
            else:
                late.append((f, value))

        record = schema.type(**kwargs)
        for f, value in late:
            f.set_value(record, value)
        return record

    def from_store_item(self, schema: TableSchema, item: AttributeMap | None) -> Any:
        if not item:
            return None
        return self._build_record(schema, item, self.from_attribute_value)

    # --- updates ---

    def non_default_updates(self, record: Any, schema: TableSchema) -> list[FieldUpdate]:
        out: list[FieldUpdate] = []
        for f in schema.fields:
            if f.is_key:
                continue
            value = f.get_value(record)
            if value is None or value == f.default_value():
                continue
            if isinstance(value, (AbcSet, list, tuple, Mapping)) and not value:
                continue
            out.append(FieldUpdate(UpdateAction.PUT, f, value))
        return out

    def to_update_expression(self, updates: list[FieldUpdate]) -> dict[str, Any]:
        """Render field updates as UpdateExpression request arguments."""
        sets: list[str] = []
        adds: list[str] = []
        removes: list[str] = []
        names: dict[str, str] = {}
        values: AttributeMap = {}

        for i, u in enumerate(updates):
            n = f"#f{i}"
            v = f":u{i}"
            names[n] = u.field.name
            av = None if u.action is UpdateAction.DELETE else self.to_attribute_value(u.field, u.value)
            if av is None:
                removes.append(n)
            elif u.action is UpdateAction.ADD:
                adds.append(f"{n} {v}")
                values[v] = av
            else:
                sets.append(f"{n} = {v}")
                values[v] = av

        clauses: list[str] = []
        if sets:
            clauses.append("SET " + ", ".join(sets))
        if adds:
            clauses.append("ADD " + ", ".join(adds))
        if removes:
            clauses.append("REMOVE " + ", ".join(removes))

        out: dict[str, Any] = {"UpdateExpression": " ".join(clauses)}
        if names:
            out["ExpressionAttributeNames"] = names
        if values:
            out["ExpressionAttributeValues"] = values
        return out

    def assign_auto_increment(self, record: Any, schema: TableSchema, next_value: Callable[[TableSchema], int]) -> None:
        for f in schema.fields:
            if f.is_auto_increment and f.get_value(record) in (None, 0):
                f.set_value(record, int(next_value(schema)))
