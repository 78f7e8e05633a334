"""Tests for the binary wire codec."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Mapping

import pytest

from nosqlwire import codec
from nosqlwire.errors import (
    ErrorCode,
    ProtocolError,
    ProtocolErrorKind,
    ResourceError,
    ThrottleError,
)
from nosqlwire.operations import (
    AggregateFunction,
    DeleteRequest,
    Durability,
    GetRequest,
    GetResult,
    OpCode,
    PrepareRequest,
    PreparedStatement,
    PutOption,
    PutRequest,
    QueryRequest,
    TableState,
    WriteMultipleRequest,
)
from nosqlwire.values import FieldType, Value


def _response(op: OpCode, fields: Mapping[str, Any], version: int = codec.V4) -> bytes:
    return codec.encode_frame(op, Value.of(fields), version)


def _sample_values() -> list[Value]:
    tz = timezone(timedelta(hours=-5, minutes=-30))
    return [
        Value.null(),
        Value.boolean(True),
        Value.boolean(False),
        Value.integer(0),
        Value.integer(120),
        Value.integer(121),
        Value.integer(-119),
        Value.integer(-120),
        Value.integer(2**31 - 1),
        Value.integer(-(2**31)),
        Value.long(2**63 - 1),
        Value.long(-(2**63)),
        Value.double(3.5),
        Value.double(-0.0),
        Value.double(float("inf")),
        Value.number(Decimal("-123.4500")),
        Value.string(""),
        Value.string("héllo wörld"),
        Value.binary(b""),
        Value.binary(bytes(range(256))),
        Value.timestamp(datetime(2024, 2, 29, 23, 59, 59, 123456, tzinfo=timezone.utc)),
        Value.timestamp(datetime(1901, 1, 1, 0, 0, tzinfo=tz)),
        Value.array([]),
        Value.map({}),
        Value.of(
            {
                "id": 42,
                "nested": {"list": [1, "two", None, [3.0, {"deep": b"\xff"}]]},
                "when": datetime(2023, 6, 1, 8, 30, tzinfo=timezone(timedelta(hours=9))),
                "amount": Decimal("1E+40"),
            }
        ),
    ]


@pytest.mark.parametrize("value", _sample_values(), ids=lambda v: v.type.name)
def test_value_round_trip(value: Value) -> None:
    assert codec.decode_value(codec.encode_value(value)) == value


@pytest.mark.parametrize("version", codec.SUPPORTED_VERSIONS)
def test_frame_round_trip_across_versions(version: int) -> None:
    body = Value.map({str(index): value for index, value in enumerate(_sample_values())})
    frame = codec.encode_frame(OpCode.GET, body, version)

    decoded_version, op, decoded = codec.decode_frame(frame)
    assert decoded_version == version
    assert op is OpCode.GET
    assert decoded == body


def test_packed_integer_boundaries() -> None:
    assert codec.encode_value(Value.integer(0)) == bytes([FieldType.INTEGER, 127])
    assert codec.encode_value(Value.integer(120)) == bytes([FieldType.INTEGER, 0xF7])
    assert codec.encode_value(Value.integer(121)) == bytes([FieldType.INTEGER, 0xF8, 0x00])
    assert codec.encode_value(Value.integer(-119)) == bytes([FieldType.INTEGER, 0x08])
    assert codec.encode_value(Value.integer(-120)) == bytes([FieldType.INTEGER, 0x07, 0xFF])
    assert len(codec.encode_value(Value.long(2**63 - 1))) == 10


def test_packed_integers_sort_like_their_values() -> None:
    samples = [-(2**63), -70000, -256, -120, -119, -1, 0, 1, 120, 121, 376, 70000, 2**63 - 1]
    encoded = [codec.encode_value(Value.long(sample))[1:] for sample in samples]
    assert encoded == sorted(encoded)


@pytest.mark.parametrize(
    "number",
    [
        "0",
        "-0",
        "-0.000",
        "123456789012345678901234567890.123456789",
        "1E+999999",
        "-7.5E-999999",
        "1.2345678901234567890123456789E-500",
        "1E+2147483647",
        "-9E-2147483648",
    ],
)
def test_number_preserves_digits_and_scale(number: str) -> None:
    original = Decimal(number)
    decoded = codec.decode_value(codec.encode_value(Value.number(original)))

    assert decoded.type is FieldType.NUMBER
    assert decoded.data.as_tuple() == original.as_tuple()


def test_truncated_request_frame_is_always_reported() -> None:
    request = PutRequest(
        "users",
        {"id": 1, "name": "ada", "tags": ["x", "y"], "balance": Decimal("10.25")},
        option=PutOption.IF_ABSENT,
        ttl_days=3,
        durability=Durability.COMMIT_SYNC,
    )
    frame = codec.encode(request, codec.V4)

    for cut in range(len(frame)):
        with pytest.raises(ProtocolError) as excinfo:
            codec.decode_frame(frame[:cut])
        assert excinfo.value.kind is ProtocolErrorKind.TRUNCATED, cut


def test_truncated_response_frame_is_always_reported() -> None:
    frame = _response(
        OpCode.GET,
        {"c": {"ru": 1, "rk": 1}, "r": {"l": {"id": 1, "name": "ada"}, "rv": b"\x01\x02"}},
    )
    for cut in range(len(frame)):
        with pytest.raises(ProtocolError) as excinfo:
            codec.decode(frame[:cut])
        assert excinfo.value.kind is ProtocolErrorKind.TRUNCATED


@pytest.mark.parametrize("tag", [10, 12, 13, 200])
def test_unknown_tag_is_rejected(tag: int) -> None:
    with pytest.raises(ProtocolError) as excinfo:
        codec.decode_value(bytes([tag, 0, 0]))
    assert excinfo.value.kind is ProtocolErrorKind.UNKNOWN_TAG


@pytest.mark.parametrize(
    "data",
    [
        bytes([FieldType.STRING, 128, 0xFF]),  # invalid UTF-8
        bytes([FieldType.STRING, 126]),  # negative length
        bytes([FieldType.NUMBER, 0, 127, 128, 10]),  # digit out of range
        bytes([FieldType.NUMBER, 0, 127, 127]),  # no digits
        bytes([FieldType.BOOLEAN, 2]),
        bytes([FieldType.INTEGER, 127, 0]),  # trailing byte
    ],
)
def test_malformed_values_are_rejected(data: bytes) -> None:
    with pytest.raises(ProtocolError) as excinfo:
        codec.decode_value(data)
    assert excinfo.value.kind is ProtocolErrorKind.MALFORMED


def test_array_count_larger_than_body_is_malformed() -> None:
    data = bytes([FieldType.ARRAY]) + (4).to_bytes(4, "big") + (9).to_bytes(4, "big")
    with pytest.raises(ProtocolError) as excinfo:
        codec.decode_value(data)
    assert excinfo.value.kind is ProtocolErrorKind.MALFORMED


def test_unsupported_versions_are_rejected() -> None:
    frame = bytearray(_response(OpCode.GET, {}))
    frame[0:2] = (2).to_bytes(2, "big")
    with pytest.raises(ProtocolError) as excinfo:
        codec.decode(bytes(frame))
    assert excinfo.value.kind is ProtocolErrorKind.UNSUPPORTED_VERSION

    with pytest.raises(ProtocolError) as excinfo:
        codec.encode(GetRequest("users", {"id": 1}), 5)
    assert excinfo.value.kind is ProtocolErrorKind.UNSUPPORTED_VERSION

    with pytest.raises(ProtocolError):
        codec.decode(_response(OpCode.GET, {}, codec.V4), codec.V3)


def test_request_header_and_payload_layout() -> None:
    frame = codec.encode(GetRequest("users", {"id": 7}, timeout=2.5), codec.V4)
    version, op, body = codec.decode_frame(frame)

    assert (version, op) == (codec.V4, OpCode.GET)
    header = body["h"]
    assert header["v"] == Value.integer(4)
    assert header["o"] == Value.integer(int(OpCode.GET))
    assert header["t"] == Value.integer(2500)
    assert header["n"] == Value.string("users")
    assert body["p"]["k"] == Value.of({"id": 7})


def test_version_three_omits_newer_fields() -> None:
    put = PutRequest("users", {"id": 1}, durability=Durability.COMMIT_NO_SYNC)
    prepare = PrepareRequest("SELECT * FROM users")

    _, _, v4_put = codec.decode_frame(codec.encode(put, codec.V4))
    _, _, v3_put = codec.decode_frame(codec.encode(put, codec.V3))
    assert "du" in v4_put["p"]
    assert "du" not in v3_put["p"]

    _, _, v4_prepare = codec.decode_frame(codec.encode(prepare, codec.V4))
    _, _, v3_prepare = codec.decode_frame(codec.encode(prepare, codec.V3))
    assert "qv" in v4_prepare["p"]
    assert "qv" not in v3_prepare["p"]


def test_write_multiple_and_query_requests_encode_sub_operations() -> None:
    request = WriteMultipleRequest(
        [PutRequest("users", {"id": 1}), DeleteRequest("users", {"id": 2}, match_version=b"v1")],
        abort_on_fail=True,
    )
    _, op, body = codec.decode_frame(codec.encode(request))
    assert op is OpCode.WRITE_MULTIPLE
    operations = body["p"]["os"].as_list()
    assert [item["o"].as_int() for item in operations] == [OpCode.PUT, OpCode.DELETE_IF_VERSION]

    prepared = PreparedStatement(statement=b"\x01plan", sql="SELECT 1", table_name="users")
    query = QueryRequest(prepared, bind_variables={"$id": 3}, continuation_key=b"ck", partition_id=2)
    _, _, body = codec.decode_frame(codec.encode(query))
    payload = body["p"]
    assert payload["pq"] == Value.binary(b"\x01plan")
    assert payload["ck"] == Value.binary(b"ck")
    assert payload["si"] == Value.integer(2)
    assert payload["bv"][0]["m"] == Value.string("$id")


def test_decode_get_response() -> None:
    frame = _response(
        OpCode.GET,
        {
            "c": {"ru": 2, "rk": 1},
            "r": {"l": {"id": 1, "name": "ada"}, "rv": b"\x09", "xp": 1_700_000_000_000, "md": 1_600_000_000_000},
        },
    )
    response = codec.decode(frame, codec.V4)

    assert response.ok
    result = response.result
    assert isinstance(result, GetResult)
    assert result.found
    assert result.row == Value.of({"id": 1, "name": "ada"})
    assert result.version == b"\x09"
    assert result.expiration == datetime.fromtimestamp(1_700_000_000, tz=timezone.utc)
    assert result.modified == datetime.fromtimestamp(1_600_000_000, tz=timezone.utc)
    assert response.consumed.read_units == 2

    v3 = codec.decode(_response(OpCode.GET, {"r": {"l": {"id": 1}, "md": 1_600_000_000_000}}, codec.V3))
    assert v3.result.modified is None

    missing = codec.decode(_response(OpCode.GET, {"c": {"ru": 1}}))
    assert not missing.result.found


def test_decode_error_responses() -> None:
    throttled = codec.decode(_response(OpCode.PUT, {"e": int(ErrorCode.WRITE_LIMIT_EXCEEDED), "x": "slow down", "rh": 250}))
    assert not throttled.ok
    assert isinstance(throttled.error, ThrottleError)
    assert throttled.error.retry_after == pytest.approx(0.25)

    missing = codec.decode(_response(OpCode.GET, {"e": int(ErrorCode.TABLE_NOT_FOUND), "x": "no table"}))
    assert isinstance(missing.error, ResourceError)
    assert missing.error.code is ErrorCode.TABLE_NOT_FOUND

    version = codec.decode(_response(OpCode.GET, {"e": int(ErrorCode.UNSUPPORTED_PROTOCOL)}))
    assert isinstance(version.error, ProtocolError)
    assert version.error.kind is ProtocolErrorKind.UNSUPPORTED_VERSION


def test_decode_prepare_and_query_responses() -> None:
    prepare = codec.decode(
        _response(
            OpCode.PREPARE,
            {
                "pq": b"\x01\x02",
                "n": "users",
                "dq": {
                    "sf": ["age"],
                    "sp": [{"de": True, "nf": False}],
                    "gb": 1,
                    "ag": ["count"],
                },
            },
        )
    )
    prepared = prepare.result.prepared
    assert prepared.statement == b"\x01\x02"
    assert prepared.table_name == "users"
    assert prepared.plan.sort_fields == ("age",)
    assert prepared.plan.sort_specs[0].descending
    assert prepared.plan.aggregates == (AggregateFunction.COUNT,)
    assert prepared.plan.needs_client_merge

    query = codec.decode(
        _response(
            OpCode.QUERY,
            {
                "c": {"ru": 3},
                "p1": [
                    {"si": 0, "qr": [{"v": 1}], "ck": b"p0"},
                    {"si": 1, "qr": [{"v": 2}]},
                ],
            },
        )
    )
    batch = query.result
    assert [part.partition_id for part in batch.partitions] == [0, 1]
    assert batch.partitions[0].continuation_key == b"p0"
    assert batch.partitions[1].continuation_key is None
    assert batch.partitions[1].rows == [Value.of({"v": 2})]


def test_decode_table_response() -> None:
    response = codec.decode(
        _response(
            OpCode.GET_TABLE,
            {"n": "users", "as": int(TableState.CREATING), "lm": {"ru": 10, "wu": 5, "sg": 1, "mo": 1}, "od": "op-1"},
        )
    )
    table = response.result
    assert table.table_name == "users"
    assert table.state is TableState.CREATING
    assert table.limits.read_units == 10
    assert table.operation_id == "op-1"


def test_response_fields_with_wrong_types_are_malformed() -> None:
    with pytest.raises(ProtocolError) as excinfo:
        codec.decode(_response(OpCode.PUT, {"ss": "yes"}))
    assert excinfo.value.kind is ProtocolErrorKind.MALFORMED
