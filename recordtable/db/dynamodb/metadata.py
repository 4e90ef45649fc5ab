"""Per-type table metadata.

Record types are plain dataclasses. A schema is built once per type from its
dataclass fields and kept for the life of the process in an append-only
registry. The registry is an immutable mapping that is replaced as a whole;
writers publish a new snapshot only if nobody else published in between, so
readers never wait on writers.
"""

from __future__ import annotations

import dataclasses
import operator
import threading
import types
import typing
from collections.abc import Mapping as AbcMapping
from collections.abc import Sequence as AbcSequence
from collections.abc import Set as AbcSet
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum, unique
from types import MappingProxyType
from typing import Any, Callable, Iterable, Mapping

from ...observability.logging import get_logger
from .errors import DdbSchemaError

log = get_logger("ddb_metadata")

HASH_KEY = "recordtable.hash_key"
RANGE_KEY = "recordtable.range_key"
AUTO_INCREMENT = "recordtable.auto_increment"
ALIAS = "recordtable.alias"

TABLE_NAME_ATTR = "__table_name__"


@unique
class DynamoType(str, Enum):
    STRING = "S"
    NUMBER = "N"
    BINARY = "B"
    BOOL = "BOOL"
    STRING_SET = "SS"
    NUMBER_SET = "NS"
    BINARY_SET = "BS"
    MAP = "M"
    LIST = "L"


KEY_TYPES = (DynamoType.STRING, DynamoType.NUMBER, DynamoType.BINARY)

NUMBER_TYPES: tuple[type, ...] = (int, float, Decimal)

FIELD_TYPE_MAP: dict[Any, DynamoType] = {
    str: DynamoType.STRING,
    bool: DynamoType.BOOL,
    bytes: DynamoType.BINARY,
    bytearray: DynamoType.BINARY,
    int: DynamoType.NUMBER,
    float: DynamoType.NUMBER,
    Decimal: DynamoType.NUMBER,
}

SET_TYPE_MAP: dict[Any, DynamoType] = {
    str: DynamoType.STRING_SET,
    int: DynamoType.NUMBER_SET,
    float: DynamoType.NUMBER_SET,
    Decimal: DynamoType.NUMBER_SET,
    bytes: DynamoType.BINARY_SET,
}


def dynamo_field(
    *,
    hash_key: bool = False,
    range_key: bool = False,
    auto_increment: bool = False,
    alias: str | None = None,
    **field_kwargs: Any,
) -> Any:
    """``dataclasses.field`` with table-mapping markers."""
    metadata = dict(field_kwargs.pop("metadata", None) or {})
    if hash_key:
        metadata[HASH_KEY] = True
    if range_key:
        metadata[RANGE_KEY] = True
    if auto_increment:
        metadata[AUTO_INCREMENT] = True
    if alias:
        metadata[ALIAS] = str(alias)
    return dataclasses.field(metadata=metadata, **field_kwargs)


def hash_key(**field_kwargs: Any) -> Any:
    return dynamo_field(hash_key=True, **field_kwargs)


def range_key(**field_kwargs: Any) -> Any:
    return dynamo_field(range_key=True, **field_kwargs)


def auto_increment(**field_kwargs: Any) -> Any:
    return dynamo_field(auto_increment=True, **field_kwargs)


def alias(name: str, **field_kwargs: Any) -> Any:
    """Store the field under another attribute name."""
    return dynamo_field(alias=name, **field_kwargs)


@dataclass(frozen=True, slots=True)
class FieldSchema:
    name: str
    attr: str
    type: Any
    db_type: DynamoType
    item_type: Any = None
    is_hash_key: bool = False
    is_range_key: bool = False
    is_auto_increment: bool = False
    is_optional: bool = False
    init: bool = True
    # @dataclass reads a bare MISSING default as "no default".
    default: Any = dataclasses.field(default_factory=lambda: dataclasses.MISSING)
    default_factory: Any = dataclasses.field(default_factory=lambda: dataclasses.MISSING)
    getter: Callable[[Any], Any] | None = None
    setter: Callable[[Any, Any], None] | None = None

    @property
    def is_key(self) -> bool:
        return self.is_hash_key or self.is_range_key

    @property
    def has_default(self) -> bool:
        return self.default is not dataclasses.MISSING or self.default_factory is not dataclasses.MISSING

    def get_value(self, instance: Any) -> Any:
        return None if self.getter is None else self.getter(instance)

    def set_value(self, instance: Any, value: Any) -> None:
        if self.setter is not None:
            self.setter(instance, value)

    def default_value(self) -> Any:
        """The value a field holds when nobody set it."""
        if self.default is not dataclasses.MISSING:
            return self.default
        if self.default_factory is not dataclasses.MISSING:
            return self.default_factory()
        if self.type in NUMBER_TYPES:
            return self.type(0)
        if self.type is bool:
            return False
        if self.is_optional:
            return None
        return empty_collection(self.type)


@dataclass(frozen=True, slots=True)
class TableSchema:
    type: type
    name: str
    fields: tuple[FieldSchema, ...]
    hash_key: FieldSchema | None = None
    range_key: FieldSchema | None = None
    is_table: bool = False

    def get_field(self, name: str) -> FieldSchema | None:
        for f in self.fields:
            if f.name == name or f.attr == name:
                return f
        return None

    def as_table(self) -> TableSchema:
        if self.is_table:
            return self
        return dataclasses.replace(self, is_table=True)

    @property
    def referenced_types(self) -> tuple[type, ...]:
        out: list[type] = []
        for f in self.fields:
            for t in _referenced_dataclasses(f.type):
                if t is not self.type and t not in out:
                    out.append(t)
        return tuple(out)


def unwrap_optional(tp: Any) -> Any:
    origin = typing.get_origin(tp)
    if origin is typing.Union or origin is types.UnionType:
        args = [a for a in typing.get_args(tp) if a is not type(None)]
        if len(args) == 1:
            return args[0]
    return tp


def empty_collection(tp: Any) -> Any:
    """The empty value of a set, list or map type; None for anything else."""
    origin = typing.get_origin(tp) or tp
    if not isinstance(origin, type) or dataclasses.is_dataclass(origin):
        return None
    if issubclass(origin, AbcSet):
        return frozenset() if origin is frozenset else set()
    if issubclass(origin, AbcMapping):
        return {}
    if origin is tuple:
        return ()
    if issubclass(origin, AbcSequence) and origin not in (str, bytes, bytearray):
        return []
    return None


def _referenced_dataclasses(tp: Any) -> list[type]:
    tp = unwrap_optional(tp)
    if isinstance(tp, type) and dataclasses.is_dataclass(tp):
        return [tp]
    out: list[type] = []
    for arg in typing.get_args(tp):
        out.extend(_referenced_dataclasses(arg))
    return out


def field_db_type(tp: Any) -> tuple[DynamoType, Any]:
    """Map a declared field type to its store type tag and element type.

    Types outside the table map to ``S``; values of such types need a value
    converter registered against the converter, or writing them fails.
    """
    tp = unwrap_optional(tp)
    if tp in FIELD_TYPE_MAP:
        return FIELD_TYPE_MAP[tp], None

    origin = typing.get_origin(tp) or tp
    args = typing.get_args(tp)

    if isinstance(tp, type) and dataclasses.is_dataclass(tp):
        return DynamoType.MAP, tp

    if isinstance(origin, type) and issubclass(origin, AbcSet):
        item = unwrap_optional(args[0]) if args else str
        if item in SET_TYPE_MAP:
            return SET_TYPE_MAP[item], item
        return DynamoType.LIST, item

    if isinstance(origin, type) and issubclass(origin, AbcMapping):
        return DynamoType.MAP, (args[1] if len(args) == 2 else Any)

    if isinstance(origin, type) and issubclass(origin, AbcSequence) and origin not in (str, bytes, bytearray):
        return DynamoType.LIST, (args[0] if args else Any)

    return DynamoType.STRING, None


def _hash_and_range_fields(
    record_type: type, fields: list[dataclasses.Field]
) -> tuple[dataclasses.Field | None, dataclasses.Field | None]:
    hashes = [f for f in fields if f.metadata.get(HASH_KEY)]
    ranges = [f for f in fields if f.metadata.get(RANGE_KEY)]
    if len(hashes) > 1 or len(ranges) > 1:
        raise DdbSchemaError(
            message=f"Ambiguous key shape on {record_type.__name__}: "
            f"{len(hashes)} hash keys, {len(ranges)} range keys",
            operation="RegisterTable",
        )

    hash_field = hashes[0] if hashes else None
    if hash_field is None:
        hash_field = next((f for f in fields if f.name.lower() == "id"), None)
    if hash_field is None and fields:
        hash_field = fields[0]

    range_field = ranges[0] if ranges else None
    if range_field is not None and range_field is hash_field:
        raise DdbSchemaError(
            message=f"{record_type.__name__}.{range_field.name} cannot be both hash and range key",
            operation="RegisterTable",
        )
    return hash_field, range_field


def _setter(attr: str) -> Callable[[Any, Any], None]:
    def _set(instance: Any, value: Any) -> None:
        object.__setattr__(instance, attr, value)

    return _set


def build_schema(record_type: type, *, is_table: bool = False) -> TableSchema:
    if not (isinstance(record_type, type) and dataclasses.is_dataclass(record_type)):
        raise DdbSchemaError(
            message=f"{getattr(record_type, '__name__', record_type)!s} is not a dataclass record type",
            operation="RegisterTable",
        )

    try:
        hints = typing.get_type_hints(record_type)
    except Exception as e:  # noqa: BLE001
        raise DdbSchemaError(
            message=f"Cannot resolve field types of {record_type.__name__}: {e}",
            operation="RegisterTable",
            cause=e,
        ) from e

    dc_fields = [f for f in dataclasses.fields(record_type)]
    hash_f, range_f = _hash_and_range_fields(record_type, dc_fields)

    out: list[FieldSchema] = []
    for f in dc_fields:
        hinted = hints.get(f.name, Any)
        declared = unwrap_optional(hinted)
        db_type, item_type = field_db_type(declared)
        fs = FieldSchema(
            name=str(f.metadata.get(ALIAS) or f.name),
            attr=f.name,
            type=declared,
            db_type=db_type,
            item_type=item_type,
            is_optional=declared is not hinted,
            is_hash_key=f is hash_f,
            is_range_key=f is range_f,
            is_auto_increment=bool(f.metadata.get(AUTO_INCREMENT)),
            init=f.init,
            default=f.default,
            default_factory=f.default_factory,
            getter=operator.attrgetter(f.name),
            setter=_setter(f.name),
        )
        if fs.is_key and fs.db_type not in KEY_TYPES:
            raise DdbSchemaError(
                message=f"Key field {record_type.__name__}.{f.name} must be a string, number or binary type",
                operation="RegisterTable",
            )
        if fs.is_auto_increment and fs.type is not int:
            raise DdbSchemaError(
                message=f"Auto-increment field {record_type.__name__}.{f.name} must be an int",
                operation="RegisterTable",
            )
        out.append(fs)

    fields_t = tuple(out)
    return TableSchema(
        type=record_type,
        name=str(getattr(record_type, TABLE_NAME_ATTR, None) or record_type.__name__),
        fields=fields_t,
        hash_key=next((x for x in fields_t if x.is_hash_key), None),
        range_key=next((x for x in fields_t if x.is_range_key), None),
        is_table=is_table,
    )


class MetadataRegistry:
    def __init__(self) -> None:
        self._types: Mapping[type, TableSchema] = MappingProxyType({})
        # Guards only the pointer compare+assign of a publish, never a build.
        self._swap_lock = threading.Lock()

    def _compare_and_swap(self, expected: Mapping[type, TableSchema], new: Mapping[type, TableSchema]) -> bool:
        with self._swap_lock:
            if self._types is not expected:
                return False
            self._types = new
            return True

    def _publish(self, additions_for: Callable[[Mapping[type, TableSchema]], dict[type, TableSchema]]) -> None:
        while True:
            snapshot = self._types
            additions = additions_for(snapshot)
            if not additions:
                return
            new = MappingProxyType({**snapshot, **additions})
            if self._compare_and_swap(snapshot, new):
                return
            log.debug("ddb_registry_cas_conflict", types=[t.__name__ for t in additions])

    def snapshot(self) -> Mapping[type, TableSchema]:
        return self._types

    def register(self, record_type: type) -> TableSchema:
        current = self._types.get(record_type)
        table = current.as_table() if current is not None else build_schema(record_type, is_table=True)

        def _additions(snapshot: Mapping[type, TableSchema]) -> dict[type, TableSchema]:
            existing = snapshot.get(record_type)
            if existing is not None and existing.is_table:
                return {}
            return {record_type: table}

        self._publish(_additions)
        self.register_types(*table.referenced_types)
        return self._types[record_type]

    def register_many(self, record_types: Iterable[type]) -> list[TableSchema]:
        return [self.register(t) for t in record_types]

    def register_types(self, *record_types: type) -> None:
        """Register referenced (non-table) types and everything they reference."""
        built: dict[type, TableSchema] = {}
        pending = [t for t in record_types if t not in self._types]
        while pending:
            t = pending.pop()
            if t in built or t in self._types:
                continue
            schema = build_schema(t, is_table=False)
            built[t] = schema
            pending.extend(r for r in schema.referenced_types if r not in built)

        if not built:
            return

        def _additions(snapshot: Mapping[type, TableSchema]) -> dict[type, TableSchema]:
            return {t: s for t, s in built.items() if t not in snapshot}

        self._publish(_additions)

    def resolve(self, record_type: type) -> TableSchema:
        schema = self._types.get(record_type)
        if schema is not None:
            return schema
        self.register_types(record_type)
        return self._types[record_type]

    def get_table(self, record_type: type) -> TableSchema:
        schema = self._types.get(record_type)
        if schema is None or not schema.is_table:
            raise DdbSchemaError(
                message=f"Table has not been registered: {getattr(record_type, '__name__', record_type)!s}",
                operation="GetTable",
            )
        return schema

    def get_tables(self) -> list[TableSchema]:
        return [s for s in self._types.values() if s.is_table]


registry = MetadataRegistry()
