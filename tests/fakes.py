from __future__ import annotations

import copy
import re
from decimal import Decimal
from typing import Any

from botocore.exceptions import ClientError


def client_error(code: str, operation: str, *, status: int = 400, message: str = "fake") -> ClientError:
    return ClientError(
        {
            "Error": {"Code": code, "Message": message},
            "ResponseMetadata": {"HTTPStatusCode": status, "RequestId": "req-1"},
        },
        operation,
    )


def _key_id(key: dict[str, Any]) -> tuple:
    return tuple(sorted((k, repr(v)) for k, v in key.items()))


def _number(av: dict[str, Any]) -> Decimal:
    return Decimal(av["N"])


class FakeDynamoClient:
    """
    Minimal in-memory stand-in for the boto3 low-level DynamoDB client.

    Supports just the request shapes recordtable sends. Expression support is
    tiny: `=` comparisons and attribute_(not_)exists joined by AND.
    """

    def __init__(self, *, page_size: int = 100):
        self.page_size = page_size
        # table name -> (hash key name, range key name | None)
        self.key_schemas: dict[str, tuple[str, str | None]] = {}
        self.tables: dict[str, dict[tuple, dict[str, Any]]] = {}
        # table name -> scripted describe results; None means "not found"
        self.describe_script: dict[str, list[str | None]] = {}
        self.calls: list[tuple[str, dict[str, Any]]] = []
        # operation -> exceptions raised (in order) before serving calls again
        self.failures: dict[str, list[BaseException]] = {}
        # operation -> how many trailing entries to hand back unprocessed, once per call
        self.unprocessed: dict[str, list[int]] = {}

    # --- test helpers ---

    def add_table(self, name: str, hash_key: str, range_key: str | None = None) -> None:
        self.key_schemas[name] = (hash_key, range_key)
        self.tables.setdefault(name, {})

    def fail(self, operation: str, *errors: BaseException) -> None:
        self.failures.setdefault(operation, []).extend(errors)

    def count(self, operation: str) -> int:
        return sum(1 for op, _ in self.calls if op == operation)

    def _record(self, operation: str, kwargs: dict[str, Any]) -> None:
        self.calls.append((operation, copy.deepcopy(kwargs)))
        pending = self.failures.get(operation)
        if pending:
            raise pending.pop(0)

    def _table(self, name: str, operation: str) -> dict[tuple, dict[str, Any]]:
        if name not in self.tables:
            raise client_error("ResourceNotFoundException", operation, message=f"Table {name} not found")
        return self.tables[name]

    def _item_key(self, table: str, item: dict[str, Any]) -> dict[str, Any]:
        hash_name, range_name = self.key_schemas[table]
        key = {hash_name: item[hash_name]}
        if range_name:
            key[range_name] = item[range_name]
        return key

    # --- expressions ---

    def _operand(self, token: str, item: dict[str, Any], names: dict[str, str], values: dict[str, Any]) -> Any:
        token = token.strip()
        if token.startswith(":"):
            return values[token]
        return item.get(names.get(token, token))

    def _matches(
        self,
        expression: str | None,
        item: dict[str, Any],
        names: dict[str, str] | None,
        values: dict[str, Any] | None,
    ) -> bool:
        if not expression:
            return True
        names = names or {}
        values = values or {}
        for clause in re.split(r"\s+AND\s+", expression.strip()):
            clause = clause.strip().strip("()").strip()
            m = re.fullmatch(r"attribute_(not_)?exists\((.+)\)", clause)
            if m:
                present = names.get(m.group(2).strip(), m.group(2).strip()) in item
                if present == bool(m.group(1)):
                    return False
                continue
            left, right = clause.split("=", 1)
            if self._operand(left, item, names, values) != self._operand(right, item, names, values):
                return False
        return True

    # --- items ---

    def get_item(self, **kwargs: Any) -> dict[str, Any]:
        self._record("GetItem", kwargs)
        item = self._table(kwargs["TableName"], "GetItem").get(_key_id(kwargs["Key"]))
        return {"Item": copy.deepcopy(item)} if item is not None else {}

    def put_item(self, **kwargs: Any) -> dict[str, Any]:
        self._record("PutItem", kwargs)
        table = self._table(kwargs["TableName"], "PutItem")
        item = copy.deepcopy(kwargs["Item"])
        old = table.get(_key_id(self._item_key(kwargs["TableName"], item)))
        table[_key_id(self._item_key(kwargs["TableName"], item))] = item
        if kwargs.get("ReturnValues") == "ALL_OLD" and old is not None:
            return {"Attributes": old}
        return {}

    def update_item(self, **kwargs: Any) -> dict[str, Any]:
        self._record("UpdateItem", kwargs)
        table = self._table(kwargs["TableName"], "UpdateItem")
        key = kwargs["Key"]
        names = kwargs.get("ExpressionAttributeNames") or {}
        values = kwargs.get("ExpressionAttributeValues") or {}

        old = table.get(_key_id(key))
        if kwargs.get("ConditionExpression") and not self._matches(
            kwargs["ConditionExpression"], old or {}, names, values
        ):
            raise client_error("ConditionalCheckFailedException", "UpdateItem")

        item = copy.deepcopy(old) if old is not None else copy.deepcopy(key)
        updated: dict[str, Any] = {}
        for action, body in re.findall(r"(SET|ADD|REMOVE) (.*?)(?= (?:SET|ADD|REMOVE) |$)", kwargs["UpdateExpression"]):
            for part in body.split(","):
                part = part.strip()
                if action == "SET":
                    left, right = part.split("=", 1)
                    name = names.get(left.strip(), left.strip())
                    item[name] = updated[name] = values[right.strip()]
                elif action == "ADD":
                    left, right = part.split()
                    name = names.get(left, left)
                    delta = values[right]
                    if "N" in delta:
                        current = _number(item[name]) if name in item else Decimal(0)
                        item[name] = updated[name] = {"N": str(current + _number(delta))}
                    else:
                        (tag, members), = delta.items()
                        merged = set((item.get(name) or {}).get(tag, [])) | set(members)
                        item[name] = updated[name] = {tag: sorted(merged)}
                else:
                    item.pop(names.get(part, part), None)

        table[_key_id(key)] = item
        rv = kwargs.get("ReturnValues")
        if rv == "ALL_OLD" and old is not None:
            return {"Attributes": old}
        if rv == "UPDATED_NEW":
            return {"Attributes": copy.deepcopy(updated)}
        return {}

    def delete_item(self, **kwargs: Any) -> dict[str, Any]:
        self._record("DeleteItem", kwargs)
        old = self._table(kwargs["TableName"], "DeleteItem").pop(_key_id(kwargs["Key"]), None)
        if kwargs.get("ReturnValues") == "ALL_OLD" and old is not None:
            return {"Attributes": old}
        return {}

    # --- batches ---

    def _hold_back(self, operation: str) -> int:
        script = self.unprocessed.get(operation)
        return script.pop(0) if script else 0

    def batch_get_item(self, **kwargs: Any) -> dict[str, Any]:
        self._record("BatchGetItem", kwargs)
        responses: dict[str, list] = {}
        unprocessed: dict[str, Any] = {}
        for name, req in kwargs["RequestItems"].items():
            table = self._table(name, "BatchGetItem")
            keys = list(req["Keys"])
            held = self._hold_back("BatchGetItem")
            served, rest = (keys[:-held], keys[-held:]) if held else (keys, [])
            responses[name] = [copy.deepcopy(table[_key_id(k)]) for k in served if _key_id(k) in table]
            if rest:
                unprocessed[name] = {**req, "Keys": rest}
        return {"Responses": responses, "UnprocessedKeys": unprocessed}

    def batch_write_item(self, **kwargs: Any) -> dict[str, Any]:
        self._record("BatchWriteItem", kwargs)
        unprocessed: dict[str, Any] = {}
        for name, writes in kwargs["RequestItems"].items():
            table = self._table(name, "BatchWriteItem")
            held = self._hold_back("BatchWriteItem")
            served, rest = (writes[:-held], writes[-held:]) if held else (writes, [])
            for w in served:
                if "PutRequest" in w:
                    item = copy.deepcopy(w["PutRequest"]["Item"])
                    table[_key_id(self._item_key(name, item))] = item
                else:
                    table.pop(_key_id(w["DeleteRequest"]["Key"]), None)
            if rest:
                unprocessed[name] = rest
        return {"UnprocessedItems": unprocessed}

    # --- scan / query ---

    def _page(self, table_name: str, items: list[dict[str, Any]], kwargs: dict[str, Any]) -> dict[str, Any]:
        start = 0
        lek = kwargs.get("ExclusiveStartKey")
        if lek:
            ids = [_key_id(self._item_key(table_name, it)) for it in items]
            start = ids.index(_key_id(lek)) + 1
        size = min(int(kwargs.get("Limit") or self.page_size), self.page_size)
        page = items[start : start + size]
        out: dict[str, Any] = {"Items": copy.deepcopy(page), "Count": len(page)}
        if start + size < len(items) and page:
            out["LastEvaluatedKey"] = self._item_key(table_name, page[-1])
        return out

    def scan(self, **kwargs: Any) -> dict[str, Any]:
        self._record("Scan", kwargs)
        name = kwargs["TableName"]
        items = [
            it
            for it in self._table(name, "Scan").values()
            if self._matches(
                kwargs.get("FilterExpression"),
                it,
                kwargs.get("ExpressionAttributeNames"),
                kwargs.get("ExpressionAttributeValues"),
            )
        ]
        return self._page(name, items, kwargs)

    def query(self, **kwargs: Any) -> dict[str, Any]:
        self._record("Query", kwargs)
        name = kwargs["TableName"]
        names = kwargs.get("ExpressionAttributeNames")
        values = kwargs.get("ExpressionAttributeValues")
        items = [
            it
            for it in self._table(name, "Query").values()
            if self._matches(kwargs["KeyConditionExpression"], it, names, values)
            and self._matches(kwargs.get("FilterExpression"), it, names, values)
        ]
        _, range_name = self.key_schemas[name]
        if range_name:
            items.sort(key=lambda it: repr(it.get(range_name)), reverse=not kwargs.get("ScanIndexForward", True))
        return self._page(name, items, kwargs)

    # --- tables ---

    def list_tables(self, **kwargs: Any) -> dict[str, Any]:
        self._record("ListTables", kwargs)
        names = sorted(self.tables)
        start = 0
        if kwargs.get("ExclusiveStartTableName"):
            start = names.index(kwargs["ExclusiveStartTableName"]) + 1
        size = min(int(kwargs.get("Limit") or self.page_size), self.page_size)
        page = names[start : start + size]
        out: dict[str, Any] = {"TableNames": page}
        if start + size < len(names):
            out["LastEvaluatedTableName"] = page[-1]
        return out

    def create_table(self, **kwargs: Any) -> dict[str, Any]:
        self._record("CreateTable", kwargs)
        name = kwargs["TableName"]
        if name in self.tables:
            raise client_error("ResourceInUseException", "CreateTable", message=f"Table already exists: {name}")
        keys = {k["KeyType"]: k["AttributeName"] for k in kwargs["KeySchema"]}
        self.add_table(name, keys["HASH"], keys.get("RANGE"))
        return {"TableDescription": {"TableName": name, "TableStatus": "CREATING"}}

    def describe_table(self, **kwargs: Any) -> dict[str, Any]:
        self._record("DescribeTable", kwargs)
        name = kwargs["TableName"]
        script = self.describe_script.get(name)
        status: str | None
        if script:
            status = script.pop(0)
        else:
            status = "ACTIVE" if name in self.tables else None
        if status is None:
            raise client_error("ResourceNotFoundException", "DescribeTable", message=f"Table {name} not found")
        return {"Table": {"TableName": name, "TableStatus": status}}

    def delete_table(self, **kwargs: Any) -> dict[str, Any]:
        self._record("DeleteTable", kwargs)
        name = kwargs["TableName"]
        self._table(name, "DeleteTable")
        del self.tables[name]
        self.key_schemas.pop(name, None)
        return {"TableDescription": {"TableName": name, "TableStatus": "DELETING"}}
