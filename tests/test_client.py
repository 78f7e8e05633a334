"""Tests for the high-level client and the httpx transport."""

from __future__ import annotations

from collections import deque
from typing import Any, Mapping

import httpx
import pytest

from nosqlwire import codec
from nosqlwire.client import ClientConfig, NoSQLClient
from nosqlwire.errors import (
    ErrorCode,
    ResourceError,
    TransientErrorKind,
    TransientServerError,
)
from nosqlwire.operations import OpCode, PutRequest, TableLimits, TableState
from nosqlwire.ratelimit import Direction
from nosqlwire.retry import RetryOptions
from nosqlwire.transport import HttpxTransport, TransportResponse
from nosqlwire.values import Value


class FakeTransport:
    def __init__(self) -> None:
        self.requests: list[tuple[str, bytes, dict[str, str]]] = []
        self._responses: deque[bytes] = deque()
        self.closed = False

    def queue_frame(self, op: OpCode, fields: Mapping[str, Any]) -> None:
        self._responses.append(codec.encode_frame(op, Value.of(fields), codec.V4))

    async def post(self, path: str, body: bytes, headers: Mapping[str, str]) -> TransportResponse:
        self.requests.append((path, body, dict(headers)))
        if not self._responses:
            raise RuntimeError("No response queued")
        return TransportResponse(status=200, body=self._responses.popleft())

    async def close(self) -> None:
        self.closed = True

    def sent(self, index: int) -> tuple[OpCode, Value]:
        _, op, body = codec.decode_frame(self.requests[index][1])
        return op, body["p"]


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _make_client(transport: FakeTransport, **kwargs: Any) -> tuple[NoSQLClient, list[float]]:
    client = NoSQLClient(transport=transport, retry=RetryOptions(attempts=2, initial_delay_ms=1, jitter_ms=0), **kwargs)
    clock = FakeClock()
    sleeps: list[float] = []

    async def fake_sleep(delay: float) -> None:
        sleeps.append(delay)
        clock.now += delay

    client._sleep = fake_sleep
    client._clock = clock
    client.executor._sleep = fake_sleep
    return client, sleeps


@pytest.mark.asyncio
async def test_get_put_delete_round_trip() -> None:
    transport = FakeTransport()
    transport.queue_frame(OpCode.PUT, {"ss": True, "rv": b"v1", "c": {"wu": 1, "wk": 1}})
    transport.queue_frame(OpCode.GET, {"r": {"l": {"id": 7, "name": "grace"}, "rv": b"v1"}})
    transport.queue_frame(OpCode.GET, {})
    transport.queue_frame(OpCode.DELETE, {"ss": True})
    client, _ = _make_client(transport)

    put = await client.put("users", {"id": 7, "name": "grace"})
    found = await client.get("users", {"id": 7})
    missing = await client.get("users", {"id": 8})
    deleted = await client.delete("users", {"id": 7})

    assert put.success and put.version == b"v1"
    assert put.consumed.write_units == 1
    assert found.found and found.row["name"].as_str() == "grace"
    assert not missing.found
    assert deleted.success
    assert [transport.sent(i)[0] for i in range(4)] == [OpCode.PUT, OpCode.GET, OpCode.GET, OpCode.DELETE]


@pytest.mark.asyncio
async def test_put_with_match_version_is_conditional() -> None:
    transport = FakeTransport()
    transport.queue_frame(OpCode.PUT_IF_VERSION, {"ss": False, "ri": {"ev": b"v2"}})
    client, _ = _make_client(transport)

    result = await client.put("users", {"id": 7}, match_version=b"v1")

    assert not result.success
    assert result.existing_version == b"v2"
    op, payload = transport.sent(0)
    assert op is OpCode.PUT_IF_VERSION
    assert payload["mv"].as_bytes() == b"v1"


@pytest.mark.asyncio
async def test_multi_delete_all_follows_continuation_keys() -> None:
    transport = FakeTransport()
    transport.queue_frame(OpCode.MULTI_DELETE, {"nd": 100, "ck": b"more", "c": {"wu": 100}})
    transport.queue_frame(OpCode.MULTI_DELETE, {"nd": 20, "c": {"wu": 20}})
    client, _ = _make_client(transport)

    result = await client.multi_delete_all("orders", {"customer": "c1"})

    assert result.deleted == 120
    assert result.continuation_key is None
    assert result.consumed.write_units == 120
    assert "ck" not in transport.sent(0)[1].data
    assert transport.sent(1)[1]["ck"].as_bytes() == b"more"


@pytest.mark.asyncio
async def test_write_multiple_reports_per_operation_results() -> None:
    transport = FakeTransport()
    transport.queue_frame(OpCode.WRITE_MULTIPLE, {"ws": [{"ss": True, "rv": b"a"}, {"ss": True, "rv": b"b"}]})
    client, _ = _make_client(transport)

    result = await client.write_multiple([PutRequest("orders", {"id": 1}), PutRequest("orders", {"id": 2})])

    assert result.success
    assert [r.version for r in result.results] == [b"a", b"b"]


@pytest.mark.asyncio
async def test_wait_for_table_polls_until_active() -> None:
    transport = FakeTransport()
    transport.queue_frame(OpCode.GET_TABLE, {"n": "users", "as": int(TableState.CREATING)})
    transport.queue_frame(OpCode.GET_TABLE, {"n": "users", "as": int(TableState.CREATING)})
    transport.queue_frame(
        OpCode.GET_TABLE,
        {"n": "users", "as": int(TableState.ACTIVE), "lm": {"ru": 50, "wu": 20, "sg": 1}},
    )
    client, sleeps = _make_client(transport)

    result = await client.wait_for_table("users", poll_interval=0.5)

    assert result.state is TableState.ACTIVE
    assert result.limits == TableLimits.provisioned(50, 20, 1)
    assert sleeps == [0.5, 0.5]
    assert client.rate_limiter.budget("users", Direction.READ).rate == 50


@pytest.mark.asyncio
async def test_wait_for_table_times_out() -> None:
    transport = FakeTransport()
    for _ in range(3):
        transport.queue_frame(OpCode.GET_TABLE, {"n": "users", "as": int(TableState.UPDATING)})
    client, sleeps = _make_client(transport)

    with pytest.raises(TransientServerError) as excinfo:
        await client.wait_for_table("users", wait=2.5, poll_interval=1.0)

    assert excinfo.value.kind is TransientErrorKind.TIMEOUT
    assert sleeps == [1.0, 1.0]


@pytest.mark.asyncio
async def test_waiting_for_drop_accepts_missing_table() -> None:
    transport = FakeTransport()
    transport.queue_frame(OpCode.GET_TABLE, {"n": "users", "as": int(TableState.DROPPING)})
    transport.queue_frame(OpCode.GET_TABLE, {"e": int(ErrorCode.TABLE_NOT_FOUND), "x": "no such table"})
    client, _ = _make_client(transport)

    result = await client.wait_for_table("users", TableState.DROPPED)
    assert result.state is TableState.DROPPED

    transport.queue_frame(OpCode.GET_TABLE, {"e": int(ErrorCode.TABLE_NOT_FOUND), "x": "no such table"})
    with pytest.raises(ResourceError):
        await client.wait_for_table("users")


@pytest.mark.asyncio
async def test_query_merges_partitions_through_the_executor() -> None:
    transport = FakeTransport()
    transport.queue_frame(
        OpCode.PREPARE,
        {"pq": b"compiled", "n": "scores", "dq": {"sf": ["v"], "sp": [{"de": False}]}, "c": {"ru": 1}},
    )
    transport.queue_frame(
        OpCode.QUERY,
        {
            "p1": [
                {"si": 0, "qr": [{"v": 1}, {"v": 3}]},
                {"si": 1, "qr": [{"v": 2}], "ck": b"p1-next"},
            ],
            "c": {"ru": 2},
        },
    )
    transport.queue_frame(OpCode.QUERY, {"qr": [{"v": 4}], "c": {"ru": 1}})
    client, _ = _make_client(transport)

    driver = client.query("SELECT v FROM scores ORDER BY v")
    rows = await driver.collect()

    assert [row["v"].as_int() for row in rows] == [1, 2, 3, 4]
    assert driver.consumed.read_units == 4
    assert driver.prepared.table_name == "scores"
    op, payload = transport.sent(2)
    assert op is OpCode.QUERY
    assert payload["si"].as_int() == 1
    assert payload["ck"].as_bytes() == b"p1-next"


@pytest.mark.asyncio
async def test_list_tables_and_indexes() -> None:
    transport = FakeTransport()
    transport.queue_frame(OpCode.LIST_TABLES, {"tb": ["orders", "users"], "li": 2})
    transport.queue_frame(OpCode.GET_INDEXES, {"ix": [{"m": "by_name", "f": ["name"]}]})
    client, _ = _make_client(transport)

    tables = await client.list_tables()
    indexes = await client.get_indexes("users")

    assert tables.tables == ["orders", "users"]
    assert tables.last_index == 2
    assert [(index.name, index.fields) for index in indexes.indexes] == [("by_name", ["name"])]


@pytest.mark.asyncio
async def test_closed_client_rejects_calls() -> None:
    transport = FakeTransport()
    async with NoSQLClient(transport=transport) as client:
        assert not client.closed

    assert client.closed
    # A caller-supplied transport stays open for its owner.
    assert not transport.closed
    with pytest.raises(RuntimeError):
        await client.get("users", {"id": 1})
    with pytest.raises(RuntimeError):
        client.query("SELECT * FROM users")


@pytest.mark.asyncio
async def test_query_started_before_close_sends_nothing_after_it() -> None:
    transport = FakeTransport()
    client, _ = _make_client(transport)
    driver = client.query("SELECT * FROM users")

    await client.close()

    with pytest.raises(RuntimeError):
        await driver.collect()
    assert transport.requests == []


@pytest.mark.asyncio
async def test_write_waits_for_empty_rate_budget() -> None:
    transport = FakeTransport()
    transport.queue_frame(OpCode.PUT, {"ss": True, "c": {"wu": 1, "wk": 1}})
    client, sleeps = _make_client(transport, rate_limit={"initial_fill": 0.0})
    assert client.executor.rate_limiter is client.rate_limiter
    client.rate_limiter.configure("t", read_units=10, write_units=10)

    result = await client.put("t", {"id": 1})

    assert result.success
    assert sleeps == [pytest.approx(0.1, abs=1e-3)]


def test_client_requires_endpoint_or_transport() -> None:
    with pytest.raises(ValueError):
        NoSQLClient()


def test_config_from_mapping() -> None:
    config = ClientConfig.from_config(
        {
            "endpoint": "https://nosql.example.com",
            "timeout": 5,
            "protocolVersion": 3,
            "retry": {"attempts": 2},
            "rateLimit": {"enabled": False},
        }
    )

    assert config.timeout == 5.0
    assert config.protocol_version == 3
    assert config.retry.attempts == 2
    assert not config.rate_limit.enabled

    client = NoSQLClient(config)
    assert client.protocol_version == 3

    with pytest.raises(ValueError):
        ClientConfig(protocol_version=2)


# ----------------------------------------------------------------------
# HttpxTransport
# ----------------------------------------------------------------------


def _httpx_transport(handler) -> HttpxTransport:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpxTransport("https://nosql.example.com/", client=client)


@pytest.mark.asyncio
async def test_httpx_transport_posts_body_and_headers() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, content=b"reply", headers={"Date": "Fri, 01 Mar 2024 12:00:00 GMT"})

    transport = _httpx_transport(handler)
    reply = await transport.post("/V2/nosql/data", b"frame", {"content-type": "application/octet-stream"})

    assert reply.status == 200
    assert reply.body == b"reply"
    assert reply.header("date") == "Fri, 01 Mar 2024 12:00:00 GMT"
    assert str(seen[0].url) == "https://nosql.example.com/V2/nosql/data"
    assert seen[0].content == b"frame"
    assert seen[0].headers["content-type"] == "application/octet-stream"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "exc, kind",
    [
        (httpx.ConnectTimeout("timed out"), TransientErrorKind.TIMEOUT),
        (httpx.ConnectError("refused"), TransientErrorKind.TRANSPORT),
    ],
)
async def test_httpx_transport_maps_network_failures(exc: Exception, kind: TransientErrorKind) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise exc

    transport = _httpx_transport(handler)
    with pytest.raises(TransientServerError) as excinfo:
        await transport.post("/V2/nosql/data", b"frame", {})

    assert excinfo.value.kind is kind


def test_httpx_transport_requires_endpoint() -> None:
    with pytest.raises(ValueError):
        HttpxTransport("")


@pytest.mark.asyncio
async def test_closing_owned_transport_is_idempotent() -> None:
    transport = HttpxTransport("https://nosql.example.com")
    await transport.close()
    await transport.close()
