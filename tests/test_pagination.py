from __future__ import annotations

import base64

import pytest

from recordtable.db.dynamodb.errors import DdbValidation
from recordtable.db.dynamodb.pagination import Paged, decode_next_token, encode_next_token, paginate


class PagedSource:
    """Serves ``total`` integers, ``page_size`` per call, with a LastEvaluatedKey cursor."""

    def __init__(self, total: int, page_size: int):
        self.total = total
        self.page_size = page_size
        self.requests: list[dict] = []

    def __call__(self, **kwargs):
        self.requests.append(dict(kwargs))
        start = kwargs.get("ExclusiveStartKey", {}).get("pos", 0)
        end = min(start + self.page_size, self.total)
        out = {"Items": list(range(start, end))}
        if end < self.total:
            out["LastEvaluatedKey"] = {"pos": end}
        return out


def _extract(response):
    return response["Items"]


def test_streams_every_page_in_order(executor):
    source = PagedSource(total=10, page_size=4)

    items = list(paginate(executor, "Scan", source, {"TableName": "T"}, _extract))

    assert items == list(range(10))
    assert len(source.requests) == 3
    assert "ExclusiveStartKey" not in source.requests[0]
    assert source.requests[1]["ExclusiveStartKey"] == {"pos": 4}


def test_limit_stops_mid_page_without_extra_fetches(executor):
    source = PagedSource(total=100, page_size=3)

    items = list(paginate(executor, "Scan", source, {"TableName": "T"}, _extract, limit=7))

    assert items == list(range(7))
    assert len(source.requests) == 3
    assert all(r["Limit"] == 7 for r in source.requests)


def test_explicit_request_limit_is_kept(executor):
    source = PagedSource(total=10, page_size=3)

    list(paginate(executor, "Scan", source, {"TableName": "T", "Limit": 2}, _extract, limit=5))

    assert source.requests[0]["Limit"] == 2


def test_request_is_not_mutated(executor):
    source = PagedSource(total=5, page_size=2)
    request = {"TableName": "T"}

    list(paginate(executor, "Scan", source, request, _extract, limit=3))

    assert request == {"TableName": "T"}


def test_generator_is_lazy(executor):
    source = PagedSource(total=10, page_size=2)

    it = paginate(executor, "Scan", source, {"TableName": "T"}, _extract)
    assert source.requests == []

    assert next(it) == 0
    assert len(source.requests) == 1


def test_zero_limit_fetches_nothing(executor):
    source = PagedSource(total=10, page_size=2)

    assert list(paginate(executor, "Scan", source, {}, _extract, limit=0)) == []
    assert source.requests == []


def test_paged_reissues_calls_on_every_pass(executor):
    source = PagedSource(total=5, page_size=2)
    paged = Paged(lambda: paginate(executor, "Scan", source, {"TableName": "T"}, _extract))

    assert list(paged) == list(paged) == [0, 1, 2, 3, 4]
    assert len(source.requests) == 6


def test_custom_token_names(executor):
    names = ["a", "b", "c", "d", "e"]
    seen = []

    def list_tables(**kwargs):
        seen.append(kwargs)
        start = names.index(kwargs["ExclusiveStartTableName"]) + 1 if "ExclusiveStartTableName" in kwargs else 0
        page = names[start : start + 2]
        out = {"TableNames": page}
        if start + 2 < len(names):
            out["LastEvaluatedTableName"] = page[-1]
        return out

    got = list(
        paginate(
            executor,
            "ListTables",
            list_tables,
            {},
            lambda r: r["TableNames"],
            token_in="ExclusiveStartTableName",
            token_out="LastEvaluatedTableName",
        )
    )

    assert got == names
    assert [s.get("ExclusiveStartTableName") for s in seen] == [None, "b", "d"]


def test_next_token_round_trips_binary_and_numbers():
    lek = {"pk": {"S": "A#1"}, "sk": {"B": b"\x00\xff"}, "n": {"N": "12"}}

    token = encode_next_token(lek)

    assert isinstance(token, str)
    assert "=" not in token
    assert decode_next_token(token) == lek
    assert encode_next_token(None) is None
    assert encode_next_token({}) is None
    assert decode_next_token(None) is None


@pytest.mark.parametrize("token", ["not-base64!!", "e30", "v1.", "v1.AAAA", "v2.eyJsZWsiOnt9fQ"])
def test_malformed_next_token_is_validation_error(token):
    with pytest.raises(DdbValidation):
        decode_next_token(token)


def _body(token):
    body = token.split(".", 1)[1]
    return base64.urlsafe_b64decode(body + "=" * (-len(body) % 4))


def test_next_token_hides_key_values():
    token = encode_next_token({"pk": {"S": "customer-4711"}})

    assert token.startswith("v1.")
    assert b"customer-4711" not in _body(token)
    assert encode_next_token({"pk": {"S": "customer-4711"}}) != token


def test_tampered_next_token_is_rejected():
    token = encode_next_token({"pk": {"S": "A#1"}})
    data = bytearray(_body(token))
    data[-1] ^= 0x01
    forged = "v1." + base64.urlsafe_b64encode(bytes(data)).decode("ascii").rstrip("=")

    with pytest.raises(DdbValidation):
        decode_next_token(forged)


def test_next_token_only_decodes_under_the_key_that_sealed_it(monkeypatch):
    from recordtable.settings import get_settings

    monkeypatch.setenv("DDB_PAGE_TOKEN_KEY", "first-secret")
    get_settings.cache_clear()
    token = encode_next_token({"pk": {"S": "A#1"}})
    assert decode_next_token(token) == {"pk": {"S": "A#1"}}

    monkeypatch.setenv("DDB_PAGE_TOKEN_KEY", "second-secret")
    get_settings.cache_clear()
    with pytest.raises(DdbValidation):
        decode_next_token(token)
