from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Ensure the repo root and tests/ are on sys.path so `import recordtable` and
# `import fakes` work without installing the package.
ROOT_DIR = Path(__file__).resolve().parents[1]
TESTS_DIR = Path(__file__).resolve().parent
sys.path.insert(0, str(ROOT_DIR))
sys.path.insert(0, str(TESTS_DIR))

from fakes import FakeDynamoClient  # noqa: E402

from recordtable.db.dynamodb.metadata import MetadataRegistry  # noqa: E402
from recordtable.db.dynamodb.records import DynamoRecords  # noqa: E402
from recordtable.db.dynamodb.retry import ResilientExecutor, RetryPolicy  # noqa: E402
from recordtable.settings import get_settings  # noqa: E402


class FakeClock:
    """Monotonic clock that only moves when something sleeps."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture(autouse=True)
def _fresh_settings(monkeypatch):
    for name in (
        "AWS_REGION",
        "DDB_ENDPOINT_URL",
        "DDB_RETRY_ON_ERROR_CODES",
        "DDB_MAX_RETRY_TIMEOUT_SECONDS",
        "DDB_PAGE_TOKEN_KEY",
    ):
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def executor(clock) -> ResilientExecutor:
    return ResilientExecutor(
        retry_policy=RetryPolicy(max_retry_timeout_s=10.0, base_delay_s=0.5, max_delay_s=2.0),
        clock=clock,
        sleep=clock.sleep,
    )


@pytest.fixture()
def fake_client() -> FakeDynamoClient:
    return FakeDynamoClient()


@pytest.fixture()
def registry() -> MetadataRegistry:
    return MetadataRegistry()


@pytest.fixture()
def records(fake_client, registry, executor) -> DynamoRecords:
    return DynamoRecords(fake_client, registry=registry, executor=executor)
