"""Binary wire codec for values, request frames and response frames.

A frame is a 2-byte big-endian protocol version, a 1-byte operation code
and one tagged Map value. Every value starts with its one-byte
:class:`~nosqlwire.values.FieldType` tag. Integers and lengths use the
sorted packed integer encoding; arrays and maps carry a 4-byte body size
and a 4-byte element count. The functions here keep no state between
calls and may be used concurrently.
"""

from __future__ import annotations

import struct
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Optional

from .errors import NoSQLError, ProtocolError, ProtocolErrorKind, error_from_code
from .operations import (
    AggregateFunction,
    Capacity,
    CapacityMode,
    DeleteRequest,
    DeleteResult,
    GetIndexesRequest,
    GetIndexesResult,
    GetRequest,
    GetResult,
    GetTableRequest,
    IndexInfo,
    ListTablesRequest,
    ListTablesResult,
    MultiDeleteRequest,
    MultiDeleteResult,
    OpCode,
    OperationState,
    PartitionBatch,
    PrepareRequest,
    PrepareResult,
    PreparedStatement,
    PutRequest,
    PutResult,
    QueryBatch,
    QueryPlan,
    QueryRequest,
    Request,
    Response,
    SortSpec,
    SystemRequest,
    SystemResult,
    SystemStatusRequest,
    TableLimits,
    TableRequest,
    TableResult,
    TableState,
    WriteMultipleRequest,
    WriteMultipleResult,
    WriteOperationResult,
)
from .values import INT32_MAX, INT32_MIN, INT64_MAX, INT64_MIN, FieldType, Value

__all__ = [
    "V3",
    "V4",
    "CURRENT_VERSION",
    "SUPPORTED_VERSIONS",
    "encode",
    "decode",
    "encode_value",
    "decode_value",
    "encode_frame",
    "decode_frame",
]

V3 = 3
V4 = 4
CURRENT_VERSION = V4
SUPPORTED_VERSIONS = (V4, V3)

DEFAULT_TIMEOUT_MS = 30_000

_FRAME_HEADER = struct.Struct(">hB")
_INT32 = struct.Struct(">i")
_DOUBLE = struct.Struct(">d")
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_MICROSECOND = timedelta(microseconds=1)
_MAX_OFFSET_MINUTES = 24 * 60

# Field names. Kept terse to keep messages small.
HEADER = "h"
PAYLOAD = "p"
VERSION = "v"
OP_CODE = "o"
TIMEOUT = "t"
TABLE_NAME = "n"
ABORT_ON_FAIL = "a"
BIND_VARIABLES = "bv"
CONSISTENCY = "co"
CONSUMED = "c"
CONTINUATION_KEY = "ck"
DRIVER_QUERY_PLAN = "dq"
DURABILITY = "du"
ERROR_CODE = "e"
EXACT_MATCH = "ec"
EXCEPTION = "x"
EXISTING_VALUE = "el"
EXISTING_VERSION = "ev"
EXPIRATION = "xp"
FIELDS = "f"
GENERATED = "gn"
INDEX = "i"
INDEXES = "ix"
IS_PREPARED = "is"
KEY = "k"
LAST_INDEX = "li"
LIMITS = "lm"
LIMITS_MODE = "mo"
LIST_MAX_TO_READ = "lx"
LIST_START_INDEX = "ls"
MATCH_VERSION = "mv"
MAX_READ_KB = "mr"
MAX_WRITE_KB = "mw"
MODIFIED = "md"
NAME = "m"
NAMESPACE = "ns"
NUMBER_LIMIT = "nl"
NUM_DELETIONS = "nd"
NUM_OPERATIONS = "no"
OPERATIONS = "os"
OPERATION_ID = "od"
PARTITION_ID = "si"
PREPARED_QUERY = "pq"
QUERY_RESULTS = "qr"
QUERY_VERSION = "qv"
REACHED_LIMIT = "re"
READ_KB = "rk"
READ_UNITS = "ru"
RETRY_HINT = "rh"
RETURN_INFO = "ri"
RETURN_ROW = "rr"
ROW = "r"
ROW_VERSION = "rv"
SORT_PHASE1_RESULTS = "p1"
STATEMENT = "st"
STORAGE_GB = "sg"
SUCCESS = "ss"
SYSOP_RESULT = "rs"
SYSOP_STATE = "ta"
TABLES = "tb"
TABLE_SCHEMA = "ac"
TABLE_STATE = "as"
TTL = "tt"
UPDATE_TTL = "ut"
VALUE = "l"
WM_FAILURE = "wf"
WM_FAIL_INDEX = "wi"
WM_FAIL_RESULT = "wr"
WM_SUCCESS = "ws"
WRITE_KB = "wk"
WRITE_UNITS = "wu"

# Query plan sub-fields.
PLAN_SORT_FIELDS = "sf"
PLAN_SORT_SPECS = "sp"
PLAN_DESCENDING = "de"
PLAN_NULLS_FIRST = "nf"
PLAN_GROUP_BY = "gb"
PLAN_AGGREGATES = "ag"
PLAN_PARTITIONED = "pa"

QUERY_VERSION_CURRENT = 4


def _truncated(what: str) -> ProtocolError:
    return ProtocolError(ProtocolErrorKind.TRUNCATED, f"truncated input while reading {what}")


def _malformed(message: str) -> ProtocolError:
    return ProtocolError(ProtocolErrorKind.MALFORMED, message)


# ----------------------------------------------------------------------
# Packed integers
# ----------------------------------------------------------------------


def _pack_int(value: int) -> bytes:
    """Sorted packed integer: one byte for [-119, 120], else a length byte
    followed by the adjusted value in big-endian order."""

    if value < -119:
        adjusted = value + 119
        length = max(1, ((~adjusted).bit_length() + 7) // 8)
        raw = (adjusted & ((1 << (8 * length)) - 1)).to_bytes(length, "big")
        return bytes((0x08 - length,)) + raw
    if value > 120:
        adjusted = value - 121
        length = max(1, (adjusted.bit_length() + 7) // 8)
        return bytes((0xF7 + length,)) + adjusted.to_bytes(length, "big")
    return bytes((value + 127,))


class _Reader:
    """Bounds-checked cursor over one immutable buffer."""

    __slots__ = ("_view", "_pos")

    def __init__(self, data: bytes | memoryview) -> None:
        self._view = memoryview(data)
        self._pos = 0

    @property
    def remaining(self) -> int:
        return len(self._view) - self._pos

    def take(self, size: int, what: str) -> memoryview:
        if size < 0:
            raise _malformed(f"negative length {size} for {what}")
        if size > self.remaining:
            raise _truncated(what)
        chunk = self._view[self._pos : self._pos + size]
        self._pos += size
        return chunk

    def byte(self, what: str) -> int:
        return self.take(1, what)[0]

    def int32(self, what: str) -> int:
        return _INT32.unpack(self.take(4, what))[0]

    def packed(self, what: str, low: int = INT64_MIN, high: int = INT64_MAX) -> int:
        first = self.byte(what)
        if first < 0x08:
            length = 0x08 - first
            raw = self.take(length, what)
            value = int.from_bytes(raw, "big") - (1 << (8 * length)) - 119
        elif first > 0xF7:
            length = first - 0xF7
            value = int.from_bytes(self.take(length, what), "big") + 121
        else:
            value = first - 127
        if not low <= value <= high:
            raise _malformed(f"{what} value {value} out of range")
        return value

    def packed_int32(self, what: str) -> int:
        return self.packed(what, INT32_MIN, INT32_MAX)

    def sized(self, what: str) -> "_Reader":
        """Split off a sub-reader for a length-prefixed container body."""

        size = self.int32(what)
        return _Reader(self.take(size, what))


# ----------------------------------------------------------------------
# Values
# ----------------------------------------------------------------------


def _write_value(out: bytearray, value: Value) -> None:
    kind = value.type
    out.append(kind)
    if kind is FieldType.NULL:
        return
    if kind is FieldType.BOOLEAN:
        out.append(1 if value.data else 0)
    elif kind is FieldType.INTEGER or kind is FieldType.LONG:
        out += _pack_int(value.data)
    elif kind is FieldType.DOUBLE:
        out += _DOUBLE.pack(value.data)
    elif kind is FieldType.STRING:
        _write_bytes(out, value.data.encode("utf-8"))
    elif kind is FieldType.BINARY:
        _write_bytes(out, value.data)
    elif kind is FieldType.NUMBER:
        sign, digits, exponent = value.data.as_tuple()
        out.append(sign)
        out += _pack_int(exponent)
        _write_bytes(out, bytes(digits))
    elif kind is FieldType.TIMESTAMP:
        moment: datetime = value.data
        out += _pack_int((moment - _EPOCH) // _MICROSECOND)
        out += _pack_int(moment.utcoffset() // timedelta(minutes=1))
    elif kind is FieldType.ARRAY:
        _write_container(out, value.data, _write_value)
    elif kind is FieldType.MAP:
        _write_container(out, value.data.items(), _write_entry)
    else:  # pragma: no cover - FieldType is closed
        raise _malformed(f"cannot encode value type {kind!r}")


def _write_entry(out: bytearray, entry: tuple[str, Value]) -> None:
    key, item = entry
    _write_bytes(out, key.encode("utf-8"))
    _write_value(out, item)


def _write_container(out: bytearray, items: Any, write_item: Callable[[bytearray, Any], None]) -> None:
    size_offset = len(out)
    out += b"\x00\x00\x00\x00"
    count = 0
    count_offset = len(out)
    out += b"\x00\x00\x00\x00"
    for item in items:
        write_item(out, item)
        count += 1
    out[count_offset : count_offset + 4] = _INT32.pack(count)
    out[size_offset : size_offset + 4] = _INT32.pack(len(out) - size_offset - 4)


def _write_bytes(out: bytearray, data: bytes) -> None:
    out += _pack_int(len(data))
    out += data


def _read_text(reader: _Reader, what: str) -> str:
    raw = reader.take(reader.packed_int32(what), what)
    try:
        return str(raw, "utf-8")
    except UnicodeDecodeError as exc:
        raise _malformed(f"invalid UTF-8 in {what}") from exc


def _read_value(reader: _Reader) -> Value:
    tag = reader.byte("type tag")
    try:
        kind = FieldType(tag)
    except ValueError:
        raise ProtocolError(ProtocolErrorKind.UNKNOWN_TAG, f"unknown value type tag {tag}") from None

    if kind is FieldType.NULL:
        return Value.null()
    if kind is FieldType.BOOLEAN:
        flag = reader.byte("boolean")
        if flag > 1:
            raise _malformed(f"invalid boolean byte {flag}")
        return Value(FieldType.BOOLEAN, flag == 1)
    if kind is FieldType.INTEGER:
        return Value(FieldType.INTEGER, reader.packed_int32("integer"))
    if kind is FieldType.LONG:
        return Value(FieldType.LONG, reader.packed("long"))
    if kind is FieldType.DOUBLE:
        return Value(FieldType.DOUBLE, _DOUBLE.unpack(reader.take(8, "double"))[0])
    if kind is FieldType.STRING:
        return Value(FieldType.STRING, _read_text(reader, "string"))
    if kind is FieldType.BINARY:
        return Value(FieldType.BINARY, bytes(reader.take(reader.packed_int32("binary"), "binary")))
    if kind is FieldType.NUMBER:
        return Value(FieldType.NUMBER, _read_number(reader))
    if kind is FieldType.TIMESTAMP:
        return Value(FieldType.TIMESTAMP, _read_timestamp(reader))
    if kind is FieldType.ARRAY:
        body = reader.sized("array")
        count = _read_count(body, "array")
        items = tuple(_read_value(body) for _ in range(count))
        _expect_consumed(body, "array")
        return Value(FieldType.ARRAY, items)

    body = reader.sized("map")
    count = _read_count(body, "map")
    entries: dict[str, Value] = {}
    for _ in range(count):
        key = _read_text(body, "map key")
        if key in entries:
            raise _malformed(f"duplicate map key {key!r}")
        entries[key] = _read_value(body)
    _expect_consumed(body, "map")
    return Value(FieldType.MAP, entries)


def _read_count(body: _Reader, what: str) -> int:
    count = body.int32(f"{what} count")
    if count < 0 or count > body.remaining:
        raise _malformed(f"invalid {what} element count {count}")
    return count


def _expect_consumed(body: _Reader, what: str) -> None:
    if body.remaining:
        raise _malformed(f"{body.remaining} unread bytes at end of {what}")


def _read_number(reader: _Reader) -> Decimal:
    sign = reader.byte("number sign")
    if sign > 1:
        raise _malformed(f"invalid number sign byte {sign}")
    exponent = reader.packed_int32("number exponent")
    digits = bytes(reader.take(reader.packed_int32("number digits"), "number digits"))
    if not digits or any(d > 9 for d in digits):
        raise _malformed("invalid number digit sequence")
    return Decimal((sign, tuple(digits), exponent))


def _read_timestamp(reader: _Reader) -> datetime:
    micros = reader.packed("timestamp")
    offset_minutes = reader.packed_int32("timestamp offset")
    if abs(offset_minutes) >= _MAX_OFFSET_MINUTES:
        raise _malformed(f"invalid UTC offset {offset_minutes} minutes")
    try:
        moment = _EPOCH + micros * _MICROSECOND
        return moment.astimezone(timezone(timedelta(minutes=offset_minutes)))
    except OverflowError as exc:
        raise _malformed(f"timestamp {micros} out of range") from exc


def encode_value(value: Value) -> bytes:
    out = bytearray()
    _write_value(out, value)
    return bytes(out)


def decode_value(data: bytes) -> Value:
    reader = _Reader(data)
    value = _read_value(reader)
    if reader.remaining:
        raise _malformed(f"{reader.remaining} trailing bytes after value")
    return value


# ----------------------------------------------------------------------
# Frames
# ----------------------------------------------------------------------


def _check_version(version: int) -> None:
    if version not in SUPPORTED_VERSIONS:
        raise ProtocolError(
            ProtocolErrorKind.UNSUPPORTED_VERSION,
            f"protocol version {version} is not supported",
        )


def encode_frame(op: OpCode, body: Value, version: int) -> bytes:
    _check_version(version)
    if body.type is not FieldType.MAP:
        raise ValueError("frame body must be a map value")
    out = bytearray(_FRAME_HEADER.pack(version, op))
    _write_value(out, body)
    return bytes(out)


def decode_frame(data: bytes) -> tuple[int, OpCode, Value]:
    reader = _Reader(data)
    version, raw_op = _FRAME_HEADER.unpack(reader.take(_FRAME_HEADER.size, "frame header"))
    _check_version(version)
    try:
        op = OpCode(raw_op)
    except ValueError:
        raise _malformed(f"unknown operation code {raw_op}") from None
    body = _read_value(reader)
    if body.type is not FieldType.MAP:
        raise _malformed(f"frame body must be a map, found {body.type.name}")
    if reader.remaining:
        raise _malformed(f"{reader.remaining} trailing bytes after frame")
    return version, op, body


# ----------------------------------------------------------------------
# Requests
# ----------------------------------------------------------------------


def _put_fields(fields: dict[str, Value], request: PutRequest) -> None:
    fields[VALUE] = request.value
    if request.return_row:
        fields[RETURN_ROW] = Value.boolean(True)
    if request.match_version:
        fields[MATCH_VERSION] = Value.binary(request.match_version)
    if request.ttl_days is not None:
        fields[TTL] = Value.integer(request.ttl_days)
    if request.update_ttl:
        fields[UPDATE_TTL] = Value.boolean(True)
    if request.exact_match:
        fields[EXACT_MATCH] = Value.boolean(True)


def _delete_fields(fields: dict[str, Value], request: DeleteRequest) -> None:
    fields[KEY] = request.key
    if request.return_row:
        fields[RETURN_ROW] = Value.boolean(True)
    if request.match_version:
        fields[MATCH_VERSION] = Value.binary(request.match_version)


def _durability(fields: dict[str, Value], durability: Any, version: int) -> None:
    if durability is not None and version >= V4:
        fields[DURABILITY] = Value.integer(int(durability))


def _limits_value(limits: TableLimits) -> Value:
    return Value.map(
        {
            READ_UNITS: Value.integer(limits.read_units),
            WRITE_UNITS: Value.integer(limits.write_units),
            STORAGE_GB: Value.integer(limits.storage_gb),
            LIMITS_MODE: Value.integer(int(limits.mode)),
        }
    )


def _payload(request: Request, version: int) -> dict[str, Value]:
    fields: dict[str, Value] = {}
    if isinstance(request, GetRequest):
        fields[CONSISTENCY] = Value.integer(int(request.consistency))
        fields[KEY] = request.key
    elif isinstance(request, PutRequest):
        _put_fields(fields, request)
        _durability(fields, request.durability, version)
    elif isinstance(request, DeleteRequest):
        _delete_fields(fields, request)
        _durability(fields, request.durability, version)
    elif isinstance(request, MultiDeleteRequest):
        fields[KEY] = request.key
        if request.continuation_key:
            fields[CONTINUATION_KEY] = Value.binary(request.continuation_key)
        if request.max_write_kb:
            fields[MAX_WRITE_KB] = Value.integer(request.max_write_kb)
        _durability(fields, request.durability, version)
    elif isinstance(request, WriteMultipleRequest):
        fields[NUM_OPERATIONS] = Value.integer(len(request.operations))
        fields[ABORT_ON_FAIL] = Value.boolean(request.abort_on_fail)
        operations = []
        for sub in request.operations:
            entry: dict[str, Value] = {OP_CODE: Value.integer(int(sub.op))}
            if isinstance(sub, PutRequest):
                _put_fields(entry, sub)
            else:
                _delete_fields(entry, sub)
            operations.append(Value(FieldType.MAP, entry))
        fields[OPERATIONS] = Value(FieldType.ARRAY, tuple(operations))
        _durability(fields, request.durability, version)
    elif isinstance(request, PrepareRequest):
        fields[STATEMENT] = Value.string(request.statement)
        if version >= V4:
            fields[QUERY_VERSION] = Value.integer(QUERY_VERSION_CURRENT)
    elif isinstance(request, QueryRequest):
        fields[IS_PREPARED] = Value.boolean(True)
        fields[PREPARED_QUERY] = Value.binary(request.prepared.statement)
        fields[CONSISTENCY] = Value.integer(int(request.consistency))
        if request.bind_variables:
            fields[BIND_VARIABLES] = Value(
                FieldType.ARRAY,
                tuple(
                    Value(FieldType.MAP, {NAME: Value.string(name), VALUE: value})
                    for name, value in request.bind_variables.items()
                ),
            )
        if request.continuation_key:
            fields[CONTINUATION_KEY] = Value.binary(request.continuation_key)
        if request.partition_id is not None:
            fields[PARTITION_ID] = Value.integer(request.partition_id)
        if request.limit:
            fields[NUMBER_LIMIT] = Value.integer(request.limit)
        if request.max_read_kb:
            fields[MAX_READ_KB] = Value.integer(request.max_read_kb)
        if version >= V4:
            fields[QUERY_VERSION] = Value.integer(QUERY_VERSION_CURRENT)
    elif isinstance(request, TableRequest):
        if request.statement:
            fields[STATEMENT] = Value.string(request.statement)
        if request.limits is not None:
            fields[LIMITS] = _limits_value(request.limits)
    elif isinstance(request, GetTableRequest):
        if request.operation_id:
            fields[OPERATION_ID] = Value.string(request.operation_id)
    elif isinstance(request, ListTablesRequest):
        if request.start_index:
            fields[LIST_START_INDEX] = Value.integer(request.start_index)
        if request.limit:
            fields[LIST_MAX_TO_READ] = Value.integer(request.limit)
        if request.namespace:
            fields[NAMESPACE] = Value.string(request.namespace)
    elif isinstance(request, GetIndexesRequest):
        if request.index_name:
            fields[INDEX] = Value.string(request.index_name)
    elif isinstance(request, SystemRequest):
        fields[STATEMENT] = Value.string(request.statement)
    elif isinstance(request, SystemStatusRequest):
        fields[OPERATION_ID] = Value.string(request.operation_id)
        if request.statement:
            fields[STATEMENT] = Value.string(request.statement)
    else:
        raise TypeError(f"unsupported request type {type(request).__name__}")
    return fields


def encode(request: Request, version: int = CURRENT_VERSION, *, timeout_ms: Optional[int] = None) -> bytes:
    """Serialize a request into one wire frame for ``version``."""

    _check_version(version)
    if timeout_ms is None:
        timeout_ms = int(request.timeout * 1000) if request.timeout else DEFAULT_TIMEOUT_MS
    header: dict[str, Value] = {
        VERSION: Value.integer(version),
        OP_CODE: Value.integer(int(request.op)),
        TIMEOUT: Value.integer(timeout_ms),
    }
    if request.table_name:
        header[TABLE_NAME] = Value.string(request.table_name)
    body = Value(
        FieldType.MAP,
        {HEADER: Value(FieldType.MAP, header), PAYLOAD: Value(FieldType.MAP, _payload(request, version))},
    )
    return encode_frame(request.op, body, version)


# ----------------------------------------------------------------------
# Responses
# ----------------------------------------------------------------------


class _Fields:
    """Typed view over a decoded response map."""

    __slots__ = ("_entries", "_where")

    def __init__(self, value: Value, where: str) -> None:
        if value.type is not FieldType.MAP:
            raise _malformed(f"{where} must be a map, found {value.type.name}")
        self._entries = value.data
        self._where = where

    def __contains__(self, name: str) -> bool:
        return name in self._entries

    def raw(self, name: str, *types: FieldType) -> Optional[Value]:
        value = self._entries.get(name)
        if value is None or value.is_null:
            return None
        if types and value.type not in types:
            raise _malformed(f"field {self._where}.{name} has unexpected type {value.type.name}")
        return value

    def integer(self, name: str, default: Optional[int] = None) -> Optional[int]:
        value = self.raw(name, FieldType.INTEGER, FieldType.LONG)
        return default if value is None else value.data

    def flag(self, name: str, default: bool = False) -> bool:
        value = self.raw(name, FieldType.BOOLEAN)
        return default if value is None else value.data

    def text(self, name: str) -> Optional[str]:
        value = self.raw(name, FieldType.STRING)
        return None if value is None else value.data

    def blob(self, name: str) -> Optional[bytes]:
        value = self.raw(name, FieldType.BINARY)
        if value is None or not value.data:
            return None
        return value.data

    def section(self, name: str) -> Optional["_Fields"]:
        value = self.raw(name, FieldType.MAP)
        return None if value is None else _Fields(value, f"{self._where}.{name}")

    def row(self, name: str) -> Optional[Value]:
        return self.raw(name, FieldType.MAP)

    def array(self, name: str) -> tuple[Value, ...]:
        value = self.raw(name, FieldType.ARRAY)
        return () if value is None else value.data

    def strings(self, name: str) -> list[str]:
        items = []
        for item in self.array(name):
            if item.type is not FieldType.STRING:
                raise _malformed(f"field {self._where}.{name} must hold strings")
            items.append(item.data)
        return items

    def moment(self, name: str) -> Optional[datetime]:
        millis = self.integer(name)
        if not millis:
            return None
        try:
            return _EPOCH + timedelta(milliseconds=millis)
        except OverflowError as exc:
            raise _malformed(f"field {self._where}.{name} out of range") from exc


def _enum(enum_type: Any, raw: Optional[int], default: Any) -> Any:
    if raw is None:
        return default
    try:
        return enum_type(raw)
    except ValueError:
        raise _malformed(f"invalid {enum_type.__name__} value {raw}") from None


def _consumed(fields: _Fields) -> Capacity:
    section = fields.section(CONSUMED)
    if section is None:
        return Capacity()
    return Capacity(
        read_units=section.integer(READ_UNITS, 0),
        read_kb=section.integer(READ_KB, 0),
        write_units=section.integer(WRITE_UNITS, 0),
        write_kb=section.integer(WRITE_KB, 0),
    )


def _return_info(fields: _Fields) -> tuple[Optional[Value], Optional[bytes]]:
    info = fields.section(RETURN_INFO)
    if info is None:
        return None, None
    return info.row(EXISTING_VALUE), info.blob(EXISTING_VERSION)


def _limits(fields: _Fields) -> Optional[TableLimits]:
    section = fields.section(LIMITS)
    if section is None:
        return None
    return TableLimits(
        read_units=section.integer(READ_UNITS, 0),
        write_units=section.integer(WRITE_UNITS, 0),
        storage_gb=section.integer(STORAGE_GB, 0),
        mode=_enum(CapacityMode, section.integer(LIMITS_MODE), CapacityMode.PROVISIONED),
    )


def _rows(items: tuple[Value, ...], where: str) -> list[Value]:
    for item in items:
        if item.type is not FieldType.MAP:
            raise _malformed(f"{where} rows must be maps, found {item.type.name}")
    return list(items)


def _plan(fields: _Fields) -> Optional[QueryPlan]:
    section = fields.section(DRIVER_QUERY_PLAN)
    if section is None:
        return None
    specs = []
    for item in section.array(PLAN_SORT_SPECS):
        spec = _Fields(item, "plan.sort_spec")
        specs.append(SortSpec(descending=spec.flag(PLAN_DESCENDING), nulls_first=spec.flag(PLAN_NULLS_FIRST)))
    aggregates = []
    for name in section.strings(PLAN_AGGREGATES):
        try:
            aggregates.append(AggregateFunction(name))
        except ValueError:
            raise _malformed(f"unknown aggregate function {name!r}") from None
    try:
        return QueryPlan(
            sort_fields=tuple(section.strings(PLAN_SORT_FIELDS)),
            sort_specs=tuple(specs),
            group_by=section.integer(PLAN_GROUP_BY, 0),
            aggregates=tuple(aggregates),
            partitioned=section.flag(PLAN_PARTITIONED, True),
        )
    except ValueError as exc:
        raise _malformed(f"invalid query plan: {exc}") from exc


def _write_result(fields: _Fields) -> WriteOperationResult:
    existing_value, existing_version = _return_info(fields)
    return WriteOperationResult(
        success=fields.flag(SUCCESS),
        version=fields.blob(ROW_VERSION),
        existing_value=existing_value,
        existing_version=existing_version,
    )


def _decode_result(op: OpCode, fields: _Fields, version: int, consumed: Capacity) -> Any:
    if op is OpCode.GET:
        row = fields.section(ROW)
        if row is None:
            return GetResult(consumed=consumed)
        return GetResult(
            row=row.row(VALUE) or Value.map(),
            version=row.blob(ROW_VERSION),
            expiration=row.moment(EXPIRATION),
            modified=row.moment(MODIFIED) if version >= V4 else None,
            consumed=consumed,
        )
    if op in (OpCode.PUT, OpCode.PUT_IF_ABSENT, OpCode.PUT_IF_PRESENT, OpCode.PUT_IF_VERSION):
        existing_value, existing_version = _return_info(fields)
        return PutResult(
            success=fields.flag(SUCCESS),
            version=fields.blob(ROW_VERSION),
            existing_value=existing_value,
            existing_version=existing_version,
            generated=fields.raw(GENERATED),
            consumed=consumed,
        )
    if op in (OpCode.DELETE, OpCode.DELETE_IF_VERSION):
        existing_value, existing_version = _return_info(fields)
        return DeleteResult(
            success=fields.flag(SUCCESS),
            existing_value=existing_value,
            existing_version=existing_version,
            consumed=consumed,
        )
    if op is OpCode.MULTI_DELETE:
        return MultiDeleteResult(
            deleted=fields.integer(NUM_DELETIONS, 0),
            continuation_key=fields.blob(CONTINUATION_KEY),
            consumed=consumed,
        )
    if op is OpCode.WRITE_MULTIPLE:
        failure = fields.section(WM_FAILURE)
        if failure is not None:
            failed = failure.section(WM_FAIL_RESULT)
            return WriteMultipleResult(
                results=[_write_result(failed)] if failed is not None else [],
                failed_index=failure.integer(WM_FAIL_INDEX, 0),
                consumed=consumed,
            )
        return WriteMultipleResult(
            results=[_write_result(_Fields(item, "write_multiple")) for item in fields.array(WM_SUCCESS)],
            consumed=consumed,
        )
    if op is OpCode.PREPARE:
        statement = fields.blob(PREPARED_QUERY)
        if statement is None:
            raise _malformed("prepare response carries no prepared query")
        prepared = PreparedStatement(
            statement=statement,
            sql=fields.text(STATEMENT) or "",
            table_name=fields.text(TABLE_NAME),
            plan=_plan(fields),
        )
        return PrepareResult(prepared=prepared, consumed=consumed)
    if op is OpCode.QUERY:
        partitions = []
        for item in fields.array(SORT_PHASE1_RESULTS):
            part = _Fields(item, "partition")
            partition_id = part.integer(PARTITION_ID)
            if partition_id is None:
                raise _malformed("partition batch carries no partition id")
            partitions.append(
                PartitionBatch(
                    partition_id=partition_id,
                    rows=_rows(part.array(QUERY_RESULTS), "partition"),
                    continuation_key=part.blob(CONTINUATION_KEY),
                )
            )
        return QueryBatch(
            rows=_rows(fields.array(QUERY_RESULTS), "query"),
            continuation_key=fields.blob(CONTINUATION_KEY),
            partitions=partitions,
            reached_limit=fields.flag(REACHED_LIMIT),
            consumed=consumed,
        )
    if op in (OpCode.TABLE_REQUEST, OpCode.GET_TABLE):
        return TableResult(
            table_name=fields.text(TABLE_NAME),
            state=_enum(TableState, fields.integer(TABLE_STATE), TableState.ACTIVE),
            schema=fields.text(TABLE_SCHEMA),
            limits=_limits(fields),
            operation_id=fields.text(OPERATION_ID),
            consumed=consumed,
        )
    if op is OpCode.LIST_TABLES:
        return ListTablesResult(tables=fields.strings(TABLES), last_index=fields.integer(LAST_INDEX, 0))
    if op is OpCode.GET_INDEXES:
        indexes = []
        for item in fields.array(INDEXES):
            entry = _Fields(item, "index")
            indexes.append(IndexInfo(name=entry.text(NAME) or "", fields=entry.strings(FIELDS)))
        return GetIndexesResult(indexes=indexes)
    return SystemResult(
        state=_enum(OperationState, fields.integer(SYSOP_STATE), OperationState.COMPLETE),
        operation_id=fields.text(OPERATION_ID),
        statement=fields.text(STATEMENT),
        result=fields.text(SYSOP_RESULT),
    )


def decode(data: bytes, version: Optional[int] = None) -> Response:
    """Decode a response frame.

    ``version`` is the protocol version the request was sent with; the
    server may answer with that version or a lower one. Malformed input
    raises :class:`ProtocolError`; a server-reported failure is returned
    on ``Response.error`` for the caller to classify.
    """

    frame_version, op, body = decode_frame(data)
    if version is not None and frame_version > version:
        raise ProtocolError(
            ProtocolErrorKind.UNSUPPORTED_VERSION,
            f"response version {frame_version} is newer than request version {version}",
        )
    version = frame_version
    fields = _Fields(body, "response")
    consumed = _consumed(fields)

    code = fields.integer(ERROR_CODE, 0)
    if code:
        error: NoSQLError = error_from_code(
            code,
            fields.text(EXCEPTION) or "",
            retry_hint_ms=fields.integer(RETRY_HINT),
        )
        return Response(op=op, version=version, consumed=consumed, error=error)

    result = _decode_result(op, fields, version, consumed)
    continuation_key = getattr(result, "continuation_key", None)
    return Response(
        op=op,
        version=version,
        result=result,
        consumed=consumed,
        continuation_key=continuation_key,
    )
