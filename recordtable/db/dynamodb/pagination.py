from __future__ import annotations

import base64
import binascii
import hashlib
import json
import os
from dataclasses import dataclass
from typing import Any, Callable, Generic, Iterable, Iterator, TypeVar

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ...settings import get_settings
from .errors import DdbValidation
from .retry import ResilientExecutor

T = TypeVar("T")

_TOKEN_VERSION = "v1"
_IV_BYTES = 12  # GCM nonce
_TAG_BYTES = 16
_BINARY_MARKER = "__b64__"

# Used when DDB_PAGE_TOKEN_KEY is unset; tokens then only decode in this process.
_PROCESS_TOKEN_KEY = AESGCM.generate_key(bit_length=256)


@dataclass(slots=True)
class Page(Generic[T]):
    items: list[T]
    next_token: str | None


def _json_safe(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return {_BINARY_MARKER: base64.b64encode(bytes(value)).decode("ascii")}
    if isinstance(value, dict):
        return {k: _json_safe(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_json_safe(v) for v in value]
    return value


def _from_json_safe(value: Any) -> Any:
    if isinstance(value, dict):
        if set(value) == {_BINARY_MARKER}:
            return base64.b64decode(value[_BINARY_MARKER])
        return {k: _from_json_safe(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_from_json_safe(v) for v in value]
    return value


def _token_key() -> bytes:
    secret = get_settings().ddb_page_token_key
    if not secret:
        return _PROCESS_TOKEN_KEY
    return hashlib.sha256(secret.encode("utf-8")).digest()  # 32 bytes


def _b64(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _unb64(text: str) -> bytes:
    return base64.urlsafe_b64decode((text + "=" * (-len(text) % 4)).encode("ascii"))


def encode_next_token(last_evaluated_key: dict[str, Any] | None) -> str | None:
    """Seal a LastEvaluatedKey into an opaque, tamper-evident page token."""
    if not last_evaluated_key:
        return None

    raw = json.dumps({"lek": _json_safe(last_evaluated_key)}, separators=(",", ":"), ensure_ascii=False)
    iv = os.urandom(_IV_BYTES)
    sealed = AESGCM(_token_key()).encrypt(iv, raw.encode("utf-8"), _TOKEN_VERSION.encode("ascii"))
    return f"{_TOKEN_VERSION}.{_b64(iv + sealed)}"


def decode_next_token(next_token: str | None) -> dict[str, Any] | None:
    if not next_token:
        return None

    version, _, body = str(next_token).partition(".")
    if version != _TOKEN_VERSION or not body:
        raise DdbValidation(message="Invalid nextToken")

    try:
        data = _unb64(body)
        if len(data) <= _IV_BYTES + _TAG_BYTES:
            raise DdbValidation(message="Invalid nextToken")
        plain = AESGCM(_token_key()).decrypt(data[:_IV_BYTES], data[_IV_BYTES:], version.encode("ascii"))
        payload = json.loads(plain.decode("utf-8"))
    except (InvalidTag, binascii.Error, UnicodeError, ValueError) as e:
        raise DdbValidation(message="Invalid nextToken", cause=e) from e

    if not isinstance(payload, dict):
        raise DdbValidation(message="Invalid nextToken")

    lek = payload.get("lek")
    if lek is None:
        return None
    if not isinstance(lek, dict):
        raise DdbValidation(message="Invalid nextToken")

    return _from_json_safe(lek)


def paginate(
    executor: ResilientExecutor,
    operation: str,
    call: Callable[..., dict[str, Any]],
    request: dict[str, Any],
    extract: Callable[[dict[str, Any]], Iterable[T]],
    *,
    limit: int | None = None,
    token_in: str = "ExclusiveStartKey",
    token_out: str = "LastEvaluatedKey",
    table_name: str | None = None,
) -> Iterator[T]:
    """Stream items of a continuation-token paged call, one page at a time.

    Every page is fetched through ``executor``. With ``limit`` the stream stops
    as soon as that many items were produced, even mid-page; the rest of the
    page is dropped. The generator is single-use; wrap the call in
    ``Paged`` for a sequence that re-issues its remote calls on every pass.
    """
    req = dict(request)
    if limit is not None:
        if limit <= 0:
            return
        req.setdefault("Limit", limit)

    count = 0
    while True:
        page_request = dict(req)
        response = executor.execute(operation, lambda: call(**page_request), table_name=table_name)

        for item in extract(response):
            yield item
            count += 1
            if limit is not None and count >= limit:
                return

        token = response.get(token_out)
        if not token:
            return
        req[token_in] = token


class Paged(Generic[T]):
    """Re-iterable view over a paged call; each pass starts from the first page."""

    __slots__ = ("_factory",)

    def __init__(self, factory: Callable[[], Iterator[T]]):
        self._factory = factory

    def __iter__(self) -> Iterator[T]:
        return self._factory()
