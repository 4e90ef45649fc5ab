from __future__ import annotations

import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable, TypeVar

from botocore.exceptions import BotoCoreError, ClientError, ParamValidationError

from ...observability.logging import get_logger
from ...settings import DEFAULT_RETRY_ON_ERROR_CODES, Settings, get_settings
from .errors import (
    DdbClientRejected,
    DdbConditionFailed,
    DdbError,
    DdbNotFound,
    DdbResourceInUse,
    DdbRetryable,
    DdbThrottled,
    DdbTimeout,
    DdbValidation,
    ErrorKind,
)

T = TypeVar("T")

log = get_logger("ddb_retry")


class Disposition(str, Enum):
    FATAL = "fatal"
    RETRYABLE = "retryable"


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_retry_timeout_s: float = 60.0
    base_delay_s: float = 0.05
    max_delay_s: float = 5.0

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryPolicy:
        return cls(
            max_retry_timeout_s=float(settings.ddb_max_retry_timeout_s),
            base_delay_s=float(settings.ddb_retry_base_delay_s),
            max_delay_s=float(settings.ddb_retry_max_delay_s),
        )


_THROTTLING_CODES = {
    "ThrottlingException",
    "ProvisionedThroughputExceededException",
    "RequestLimitExceeded",
}


def backoff_delay(policy: RetryPolicy, attempt: int) -> float:
    # Full jitter exponential backoff.
    cap = policy.max_delay_s
    base = policy.base_delay_s
    exp = min(cap, base * (2 ** max(0, attempt - 1)))
    return random.random() * exp


def _aws_request_id_from_client_error(e: ClientError) -> str | None:
    return ((e.response or {}).get("ResponseMetadata") or {}).get("RequestId")


def _status_code_from_client_error(e: ClientError) -> int | None:
    status = ((e.response or {}).get("ResponseMetadata") or {}).get("HTTPStatusCode")
    return int(status) if status is not None else None


def _err_code_from_client_error(e: ClientError) -> str | None:
    return ((e.response or {}).get("Error") or {}).get("Code")


def error_kind(exc: BaseException) -> tuple[ErrorKind, str | None]:
    """Explicit (kind, code) of any error raised by a store call."""
    if isinstance(exc, DdbError):
        return exc.kind, exc.code

    if isinstance(exc, ClientError):
        code = _err_code_from_client_error(exc)
        status = _status_code_from_client_error(exc)
        if status is not None and 400 <= status < 500:
            return ErrorKind.CLIENT, code
        if status is None and code in ("ValidationException", "ConditionalCheckFailedException"):
            return ErrorKind.CLIENT, code
        return ErrorKind.SERVICE, code

    if isinstance(exc, ParamValidationError):
        # Raised before anything is sent; the request itself is malformed.
        return ErrorKind.CLIENT, "ParamValidationError"

    if isinstance(exc, BotoCoreError):
        return ErrorKind.TRANSPORT, exc.__class__.__name__

    return ErrorKind.UNKNOWN, exc.__class__.__name__


def classify(kind: ErrorKind, code: str | None, retry_on_error_codes: Iterable[str]) -> Disposition:
    if kind is ErrorKind.LOCAL:
        return Disposition.FATAL
    if kind is ErrorKind.CLIENT:
        return Disposition.RETRYABLE if code in set(retry_on_error_codes) else Disposition.FATAL
    return Disposition.RETRYABLE


def map_store_error(
    *,
    operation: str,
    table_name: str | None,
    key: dict[str, Any] | None,
    exc: BaseException,
    retryable: bool,
) -> DdbError:
    if isinstance(exc, DdbError):
        return exc

    kind, code = error_kind(exc)
    aws_request_id = _aws_request_id_from_client_error(exc) if isinstance(exc, ClientError) else None
    common: dict[str, Any] = {
        "operation": operation,
        "table_name": table_name,
        "key": key,
        "aws_request_id": aws_request_id,
        "code": code,
        "kind": kind,
        "retryable": retryable,
        "cause": exc,
    }

    if kind is ErrorKind.CLIENT:
        if code == "ConditionalCheckFailedException":
            return DdbConditionFailed(message="DynamoDB conditional check failed", **common)
        if code == "ResourceNotFoundException":
            return DdbNotFound(message="DynamoDB resource not found", **common)
        if code == "ResourceInUseException":
            return DdbResourceInUse(message="DynamoDB resource in use", **common)
        if code in ("ValidationException", "ParamValidationError", "SerializationException"):
            return DdbValidation(message="DynamoDB request validation failed", **common)
        if code in _THROTTLING_CODES:
            return DdbThrottled(message="DynamoDB request throttled", **common)
        return DdbClientRejected(message=f"DynamoDB rejected the request ({code or 'ClientError'})", **common)

    if kind is ErrorKind.TRANSPORT:
        return DdbRetryable(message="DynamoDB client error", **common)

    if kind is ErrorKind.SERVICE:
        return DdbRetryable(message=f"DynamoDB request failed ({code or 'ServiceError'})", **common)

    return DdbRetryable(message=f"Unexpected DynamoDB error ({code})", **common)


class ResilientExecutor:
    """Runs every remote call, retrying transient failures within a wall-clock budget.

    Classification happens fresh on every failed attempt:

    - errors matching a caller ``rethrow`` type are raised at once, unchanged
    - client errors are fatal unless their code is in the retryable set
    - schema / conversion errors are fatal
    - everything else sleeps (full-jitter exponential backoff) and tries again

    Once more than ``max_retry_timeout_s`` has passed since the first attempt the
    call ends with ``DdbTimeout`` wrapping the first failure.
    """

    def __init__(
        self,
        *,
        retry_policy: RetryPolicy | None = None,
        retry_on_error_codes: Iterable[str] | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        settings = get_settings()
        self.retry_policy = retry_policy or RetryPolicy.from_settings(settings)
        if retry_on_error_codes is None:
            retry_on_error_codes = settings.retry_on_error_codes or DEFAULT_RETRY_ON_ERROR_CODES
        self.retry_on_error_codes = frozenset(retry_on_error_codes)
        self._clock = clock
        self._sleep = sleep

    def execute(
        self,
        operation: str,
        fn: Callable[[], T],
        *,
        table_name: str | None = None,
        key: dict[str, Any] | None = None,
        rethrow: tuple[type[BaseException], ...] = (),
        retry_on_error_codes: Iterable[str] | None = None,
    ) -> T:
        codes = self.retry_on_error_codes if retry_on_error_codes is None else frozenset(retry_on_error_codes)
        policy = self.retry_policy

        attempt = 0
        first_error: DdbError | None = None
        started_at = self._clock()

        while True:
            try:
                return fn()
            except Exception as e:  # noqa: BLE001
                attempt += 1
                kind, code = error_kind(e)
                disposition = classify(kind, code, codes)
                mapped = map_store_error(
                    operation=operation,
                    table_name=table_name,
                    key=key,
                    exc=e,
                    retryable=disposition is Disposition.RETRYABLE,
                )

                if (rethrow and isinstance(mapped, rethrow)) or disposition is Disposition.FATAL:
                    if mapped is e:
                        raise
                    raise mapped from e

                if first_error is None:
                    first_error = mapped

                elapsed = self._clock() - started_at
                if elapsed >= policy.max_retry_timeout_s:
                    log.warning(
                        "ddb_retry_timeout",
                        operation=operation,
                        table=table_name,
                        attempts=attempt,
                        elapsed_s=round(elapsed, 3),
                        first_error_code=first_error.code,
                    )
                    raise DdbTimeout(
                        message=f"Exceeded retry timeout of {policy.max_retry_timeout_s}s for {operation}",
                        operation=operation,
                        table_name=table_name,
                        key=key,
                        code=first_error.code,
                        kind=first_error.kind,
                        cause=first_error,
                        elapsed_s=elapsed,
                    ) from first_error

                delay = backoff_delay(policy, attempt)
                log.info(
                    "ddb_retry",
                    operation=operation,
                    table=table_name,
                    attempt=attempt,
                    error_code=code,
                    error_kind=kind.value,
                    sleep_s=round(delay, 3),
                )
                self._sleep(delay)

    def now(self) -> float:
        return self._clock()

    def backoff(self, attempt: int) -> float:
        delay = backoff_delay(self.retry_policy, attempt)
        self._sleep(delay)
        return delay
