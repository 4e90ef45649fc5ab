from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Where a failure came from, as seen by the retry classifier."""

    CLIENT = "client"  # the store rejected the request (HTTP 4xx)
    SERVICE = "service"  # the store failed to serve it (HTTP 5xx)
    TRANSPORT = "transport"  # the request never got a response
    LOCAL = "local"  # schema / conversion problems on our side
    UNKNOWN = "unknown"


@dataclass(slots=True)
class DdbError(Exception):
    """Base error for DynamoDB record operations.

    Every failure that crosses the executor boundary is one of these; raw
    botocore errors are kept in ``cause``.
    """

    message: str
    operation: str | None = None
    table_name: str | None = None
    key: dict[str, Any] | None = None
    aws_request_id: str | None = None
    code: str | None = None
    kind: ErrorKind = ErrorKind.UNKNOWN
    retryable: bool = False
    cause: BaseException | None = None

    def __str__(self) -> str:
        return self.message


@dataclass(slots=True)
class DdbSchemaError(DdbError):
    kind: ErrorKind = ErrorKind.LOCAL


@dataclass(slots=True)
class DdbConversionError(DdbError):
    kind: ErrorKind = ErrorKind.LOCAL


@dataclass(slots=True)
class DdbRetryable(DdbError):
    retryable: bool = True


@dataclass(slots=True)
class DdbThrottled(DdbRetryable):
    pass


@dataclass(slots=True)
class DdbClientRejected(DdbError):
    kind: ErrorKind = ErrorKind.CLIENT


@dataclass(slots=True)
class DdbConditionFailed(DdbClientRejected):
    pass


@dataclass(slots=True)
class DdbNotFound(DdbClientRejected):
    pass


@dataclass(slots=True)
class DdbResourceInUse(DdbClientRejected):
    pass


@dataclass(slots=True)
class DdbValidation(DdbClientRejected):
    pass


@dataclass(slots=True)
class DdbTimeout(DdbError):
    """The retry budget ran out; ``cause`` holds the first error seen."""

    elapsed_s: float = 0.0
