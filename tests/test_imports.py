from __future__ import annotations

import dataclasses
import importlib

import pytest


@pytest.mark.parametrize(
    "module",
    [
        "recordtable",
        "recordtable.settings",
        "recordtable.observability.logging",
        "recordtable.db.dynamodb",
        "recordtable.db.dynamodb.batch",
        "recordtable.db.dynamodb.client",
        "recordtable.db.dynamodb.converters",
        "recordtable.db.dynamodb.errors",
        "recordtable.db.dynamodb.lifecycle",
        "recordtable.db.dynamodb.metadata",
        "recordtable.db.dynamodb.pagination",
        "recordtable.db.dynamodb.records",
        "recordtable.db.dynamodb.retry",
        "recordtable.db.dynamodb.sequences",
        "recordtable.repositories.base_repository",
        "recordtable.queues.queue_names",
    ],
)
def test_module_imports(module):
    assert importlib.import_module(module) is not None


def test_field_schema_without_a_default_reports_none():
    from recordtable.db.dynamodb.metadata import DynamoType, FieldSchema

    fs = FieldSchema(name="n", attr="n", type=str, db_type=DynamoType.STRING)

    assert fs.default is dataclasses.MISSING
    assert fs.default_factory is dataclasses.MISSING
    assert fs.has_default is False
    assert FieldSchema(name="n", attr="n", type=int, db_type=DynamoType.NUMBER, default=3).default_value() == 3
