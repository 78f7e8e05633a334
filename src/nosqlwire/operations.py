"""Typed requests and results exchanged with the database service."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any, Mapping, Optional, Sequence, Union

from .errors import NoSQLError
from .values import FieldType, Value

__all__ = [
    "OpCode",
    "Consistency",
    "Durability",
    "PutOption",
    "CapacityMode",
    "TableState",
    "OperationState",
    "AggregateFunction",
    "Capacity",
    "TableLimits",
    "SortSpec",
    "QueryPlan",
    "PreparedStatement",
    "GetRequest",
    "PutRequest",
    "DeleteRequest",
    "MultiDeleteRequest",
    "WriteMultipleRequest",
    "PrepareRequest",
    "QueryRequest",
    "TableRequest",
    "GetTableRequest",
    "ListTablesRequest",
    "GetIndexesRequest",
    "SystemRequest",
    "SystemStatusRequest",
    "Request",
    "GetResult",
    "PutResult",
    "DeleteResult",
    "MultiDeleteResult",
    "WriteOperationResult",
    "WriteMultipleResult",
    "PrepareResult",
    "PartitionBatch",
    "QueryBatch",
    "TableResult",
    "ListTablesResult",
    "IndexInfo",
    "GetIndexesResult",
    "SystemResult",
    "Response",
    "DATA_PATH",
    "QUERY_PATH",
    "TABLE_PATH",
    "SYSTEM_PATH",
    "resource_path",
]

DATA_PATH = "/V2/nosql/data"
QUERY_PATH = "/V2/nosql/query"
TABLE_PATH = "/V2/nosql/table"
SYSTEM_PATH = "/V2/nosql/system"


class OpCode(IntEnum):
    DELETE = 0
    DELETE_IF_VERSION = 1
    GET = 2
    PUT = 3
    PUT_IF_ABSENT = 4
    PUT_IF_PRESENT = 5
    PUT_IF_VERSION = 6
    QUERY = 7
    PREPARE = 8
    WRITE_MULTIPLE = 9
    MULTI_DELETE = 10
    GET_TABLE = 11
    GET_INDEXES = 12
    LIST_TABLES = 14
    TABLE_REQUEST = 15
    SYSTEM_REQUEST = 23
    SYSTEM_STATUS_REQUEST = 24


_QUERY_OPS = {OpCode.QUERY, OpCode.PREPARE}
_TABLE_OPS = {OpCode.GET_TABLE, OpCode.GET_INDEXES, OpCode.LIST_TABLES, OpCode.TABLE_REQUEST}
_SYSTEM_OPS = {OpCode.SYSTEM_REQUEST, OpCode.SYSTEM_STATUS_REQUEST}


def resource_path(op: OpCode) -> str:
    """Return the fixed HTTP resource path for an operation family."""

    if op in _QUERY_OPS:
        return QUERY_PATH
    if op in _TABLE_OPS:
        return TABLE_PATH
    if op in _SYSTEM_OPS:
        return SYSTEM_PATH
    return DATA_PATH


class Consistency(IntEnum):
    ABSOLUTE = 1
    EVENTUAL = 2


class Durability(IntEnum):
    """Commit sync policy for writes. Sent only with protocol version 4."""

    COMMIT_SYNC = 1
    COMMIT_NO_SYNC = 2
    COMMIT_WRITE_NO_SYNC = 3


class PutOption(str, Enum):
    IF_ABSENT = "if_absent"
    IF_PRESENT = "if_present"
    IF_VERSION = "if_version"


class CapacityMode(IntEnum):
    PROVISIONED = 1
    ON_DEMAND = 2


class TableState(IntEnum):
    ACTIVE = 0
    CREATING = 1
    DROPPED = 2
    DROPPING = 3
    UPDATING = 4


class OperationState(IntEnum):
    COMPLETE = 0
    WORKING = 1


class AggregateFunction(str, Enum):
    COUNT = "count"
    SUM = "sum"
    MIN = "min"
    MAX = "max"


@dataclass(slots=True)
class Capacity:
    """Read/write throughput actually billed for one or more round trips."""

    read_units: int = 0
    read_kb: int = 0
    write_units: int = 0
    write_kb: int = 0

    def add(self, other: "Capacity") -> None:
        self.read_units += other.read_units
        self.read_kb += other.read_kb
        self.write_units += other.write_units
        self.write_kb += other.write_kb


@dataclass(slots=True)
class TableLimits:
    read_units: int = 0
    write_units: int = 0
    storage_gb: int = 0
    mode: CapacityMode = CapacityMode.PROVISIONED

    @classmethod
    def provisioned(cls, read_units: int, write_units: int, storage_gb: int) -> "TableLimits":
        return cls(read_units, write_units, storage_gb, CapacityMode.PROVISIONED)

    @classmethod
    def on_demand(cls, storage_gb: int) -> "TableLimits":
        return cls(0, 0, storage_gb, CapacityMode.ON_DEMAND)


@dataclass(frozen=True, slots=True)
class SortSpec:
    descending: bool = False
    nulls_first: bool = False


@dataclass(frozen=True, slots=True)
class QueryPlan:
    """The part of a query plan the server delegates to the client.

    ``group_by`` counts the leading result columns forming the group key;
    each remaining column is combined with the matching entry of
    ``aggregates``.
    """

    sort_fields: tuple[str, ...] = ()
    sort_specs: tuple[SortSpec, ...] = ()
    group_by: int = 0
    aggregates: tuple[AggregateFunction, ...] = ()
    partitioned: bool = True

    def __post_init__(self) -> None:
        if len(self.sort_specs) != len(self.sort_fields):
            raise ValueError("sort_specs must match sort_fields one to one")
        if self.group_by < 0:
            raise ValueError("group_by cannot be negative")

    @property
    def needs_client_merge(self) -> bool:
        return bool(self.sort_fields) or self.group_by > 0 or bool(self.aggregates)


@dataclass(slots=True)
class PreparedStatement:
    """Server-compiled query. ``statement`` is opaque and sent back verbatim."""

    statement: bytes
    sql: str
    table_name: Optional[str] = None
    plan: Optional[QueryPlan] = None


def _as_row(value: Any, what: str) -> Value:
    row = Value.of(value)
    if row.type is not FieldType.MAP:
        raise ValueError(f"{what} must be a map of column name to value")
    return row


def _require_table(table_name: str) -> None:
    if not table_name:
        raise ValueError("table_name must be provided")


# ----------------------------------------------------------------------
# Requests
# ----------------------------------------------------------------------


@dataclass(slots=True)
class GetRequest:
    table_name: str
    key: Value | Mapping[str, Any]
    consistency: Consistency = Consistency.EVENTUAL
    timeout: Optional[float] = None

    def __post_init__(self) -> None:
        _require_table(self.table_name)
        self.key = _as_row(self.key, "key")

    @property
    def op(self) -> OpCode:
        return OpCode.GET


@dataclass(slots=True)
class PutRequest:
    table_name: str
    value: Value | Mapping[str, Any]
    option: Optional[PutOption] = None
    match_version: Optional[bytes] = None
    ttl_days: Optional[int] = None
    update_ttl: bool = False
    return_row: bool = False
    exact_match: bool = False
    durability: Optional[Durability] = None
    timeout: Optional[float] = None

    def __post_init__(self) -> None:
        _require_table(self.table_name)
        self.value = _as_row(self.value, "value")
        if self.option is PutOption.IF_VERSION and not self.match_version:
            raise ValueError("match_version is required for PutOption.IF_VERSION")
        if self.ttl_days is not None and self.ttl_days < 0:
            raise ValueError("ttl_days cannot be negative")

    @property
    def op(self) -> OpCode:
        if self.option is PutOption.IF_ABSENT:
            return OpCode.PUT_IF_ABSENT
        if self.option is PutOption.IF_PRESENT:
            return OpCode.PUT_IF_PRESENT
        if self.option is PutOption.IF_VERSION:
            return OpCode.PUT_IF_VERSION
        return OpCode.PUT


@dataclass(slots=True)
class DeleteRequest:
    table_name: str
    key: Value | Mapping[str, Any]
    match_version: Optional[bytes] = None
    return_row: bool = False
    durability: Optional[Durability] = None
    timeout: Optional[float] = None

    def __post_init__(self) -> None:
        _require_table(self.table_name)
        self.key = _as_row(self.key, "key")

    @property
    def op(self) -> OpCode:
        return OpCode.DELETE_IF_VERSION if self.match_version else OpCode.DELETE


@dataclass(slots=True)
class MultiDeleteRequest:
    table_name: str
    key: Value | Mapping[str, Any]
    continuation_key: Optional[bytes] = None
    max_write_kb: int = 0
    durability: Optional[Durability] = None
    timeout: Optional[float] = None

    def __post_init__(self) -> None:
        _require_table(self.table_name)
        self.key = _as_row(self.key, "key")
        if self.max_write_kb < 0:
            raise ValueError("max_write_kb cannot be negative")

    @property
    def op(self) -> OpCode:
        return OpCode.MULTI_DELETE


@dataclass(slots=True)
class WriteMultipleRequest:
    """Several puts/deletes against one table, executed atomically."""

    operations: Sequence[Union[PutRequest, DeleteRequest]]
    abort_on_fail: bool = False
    durability: Optional[Durability] = None
    timeout: Optional[float] = None

    def __post_init__(self) -> None:
        if not self.operations:
            raise ValueError("operations must not be empty")
        tables = {op.table_name.lower() for op in self.operations}
        if len(tables) != 1:
            raise ValueError("all operations must target the same table")
        for op in self.operations:
            if not isinstance(op, (PutRequest, DeleteRequest)):
                raise TypeError("operations must contain PutRequest or DeleteRequest entries")
        self.operations = list(self.operations)

    @property
    def table_name(self) -> str:
        return self.operations[0].table_name

    @property
    def op(self) -> OpCode:
        return OpCode.WRITE_MULTIPLE


@dataclass(slots=True)
class PrepareRequest:
    statement: str
    timeout: Optional[float] = None

    def __post_init__(self) -> None:
        if not self.statement or not self.statement.strip():
            raise ValueError("statement must be provided")

    @property
    def table_name(self) -> Optional[str]:
        return None

    @property
    def op(self) -> OpCode:
        return OpCode.PREPARE


@dataclass(slots=True)
class QueryRequest:
    """One execution round trip of a prepared query.

    ``partition_id`` targets a single partition stream once the driver is
    merging sorted partition results; ``None`` addresses the query as a whole.
    """

    prepared: PreparedStatement
    bind_variables: Mapping[str, Any] = field(default_factory=dict)
    continuation_key: Optional[bytes] = None
    partition_id: Optional[int] = None
    limit: int = 0
    max_read_kb: int = 0
    consistency: Consistency = Consistency.EVENTUAL
    timeout: Optional[float] = None

    def __post_init__(self) -> None:
        if self.limit < 0:
            raise ValueError("limit cannot be negative")
        if self.max_read_kb < 0:
            raise ValueError("max_read_kb cannot be negative")
        self.bind_variables = {name: Value.of(value) for name, value in self.bind_variables.items()}

    @property
    def table_name(self) -> Optional[str]:
        return self.prepared.table_name

    @property
    def op(self) -> OpCode:
        return OpCode.QUERY


@dataclass(slots=True)
class TableRequest:
    """DDL statement, or a limits change when ``statement`` is omitted."""

    statement: Optional[str] = None
    table_name: Optional[str] = None
    limits: Optional[TableLimits] = None
    timeout: Optional[float] = None

    def __post_init__(self) -> None:
        if not self.statement and self.limits is None:
            raise ValueError("either statement or limits must be provided")
        if self.statement is None and not self.table_name:
            raise ValueError("table_name is required when changing limits")

    @property
    def op(self) -> OpCode:
        return OpCode.TABLE_REQUEST


@dataclass(slots=True)
class GetTableRequest:
    table_name: str
    operation_id: Optional[str] = None
    timeout: Optional[float] = None

    def __post_init__(self) -> None:
        _require_table(self.table_name)

    @property
    def op(self) -> OpCode:
        return OpCode.GET_TABLE


@dataclass(slots=True)
class ListTablesRequest:
    start_index: int = 0
    limit: int = 0
    namespace: Optional[str] = None
    timeout: Optional[float] = None

    def __post_init__(self) -> None:
        if self.start_index < 0 or self.limit < 0:
            raise ValueError("start_index and limit cannot be negative")

    @property
    def table_name(self) -> Optional[str]:
        return None

    @property
    def op(self) -> OpCode:
        return OpCode.LIST_TABLES


@dataclass(slots=True)
class GetIndexesRequest:
    table_name: str
    index_name: Optional[str] = None
    timeout: Optional[float] = None

    def __post_init__(self) -> None:
        _require_table(self.table_name)

    @property
    def op(self) -> OpCode:
        return OpCode.GET_INDEXES


@dataclass(slots=True)
class SystemRequest:
    statement: str
    timeout: Optional[float] = None

    def __post_init__(self) -> None:
        if not self.statement:
            raise ValueError("statement must be provided")

    @property
    def table_name(self) -> Optional[str]:
        return None

    @property
    def op(self) -> OpCode:
        return OpCode.SYSTEM_REQUEST


@dataclass(slots=True)
class SystemStatusRequest:
    operation_id: str
    statement: Optional[str] = None
    timeout: Optional[float] = None

    def __post_init__(self) -> None:
        if not self.operation_id:
            raise ValueError("operation_id must be provided")

    @property
    def table_name(self) -> Optional[str]:
        return None

    @property
    def op(self) -> OpCode:
        return OpCode.SYSTEM_STATUS_REQUEST


Request = Union[
    GetRequest,
    PutRequest,
    DeleteRequest,
    MultiDeleteRequest,
    WriteMultipleRequest,
    PrepareRequest,
    QueryRequest,
    TableRequest,
    GetTableRequest,
    ListTablesRequest,
    GetIndexesRequest,
    SystemRequest,
    SystemStatusRequest,
]


# ----------------------------------------------------------------------
# Results
# ----------------------------------------------------------------------


@dataclass(slots=True)
class GetResult:
    row: Optional[Value] = None
    version: Optional[bytes] = None
    expiration: Optional[datetime] = None
    modified: Optional[datetime] = None
    consumed: Capacity = field(default_factory=Capacity)

    @property
    def found(self) -> bool:
        return self.row is not None


@dataclass(slots=True)
class PutResult:
    success: bool = False
    version: Optional[bytes] = None
    existing_value: Optional[Value] = None
    existing_version: Optional[bytes] = None
    generated: Optional[Value] = None
    consumed: Capacity = field(default_factory=Capacity)


@dataclass(slots=True)
class DeleteResult:
    success: bool = False
    existing_value: Optional[Value] = None
    existing_version: Optional[bytes] = None
    consumed: Capacity = field(default_factory=Capacity)


@dataclass(slots=True)
class MultiDeleteResult:
    deleted: int = 0
    continuation_key: Optional[bytes] = None
    consumed: Capacity = field(default_factory=Capacity)


@dataclass(slots=True)
class WriteOperationResult:
    success: bool = False
    version: Optional[bytes] = None
    existing_value: Optional[Value] = None
    existing_version: Optional[bytes] = None


@dataclass(slots=True)
class WriteMultipleResult:
    results: list[WriteOperationResult] = field(default_factory=list)
    failed_index: Optional[int] = None
    consumed: Capacity = field(default_factory=Capacity)

    @property
    def success(self) -> bool:
        return self.failed_index is None


@dataclass(slots=True)
class PrepareResult:
    prepared: PreparedStatement
    consumed: Capacity = field(default_factory=Capacity)


@dataclass(slots=True)
class PartitionBatch:
    """First batch of one partition stream of a sorted query."""

    partition_id: int
    rows: list[Value] = field(default_factory=list)
    continuation_key: Optional[bytes] = None


@dataclass(slots=True)
class QueryBatch:
    rows: list[Value] = field(default_factory=list)
    continuation_key: Optional[bytes] = None
    partitions: list[PartitionBatch] = field(default_factory=list)
    reached_limit: bool = False
    consumed: Capacity = field(default_factory=Capacity)


@dataclass(slots=True)
class TableResult:
    table_name: Optional[str] = None
    state: TableState = TableState.ACTIVE
    schema: Optional[str] = None
    limits: Optional[TableLimits] = None
    operation_id: Optional[str] = None
    consumed: Capacity = field(default_factory=Capacity)


@dataclass(slots=True)
class ListTablesResult:
    tables: list[str] = field(default_factory=list)
    last_index: int = 0


@dataclass(slots=True)
class IndexInfo:
    name: str
    fields: list[str] = field(default_factory=list)


@dataclass(slots=True)
class GetIndexesResult:
    indexes: list[IndexInfo] = field(default_factory=list)


@dataclass(slots=True)
class SystemResult:
    state: OperationState = OperationState.COMPLETE
    operation_id: Optional[str] = None
    statement: Optional[str] = None
    result: Optional[str] = None


@dataclass(slots=True)
class Response:
    """Decoded response frame.

    ``error`` holds the server-reported failure (already mapped onto the
    error taxonomy) and ``result`` is ``None`` in that case.
    """

    op: OpCode
    version: int
    result: Any = None
    consumed: Capacity = field(default_factory=Capacity)
    continuation_key: Optional[bytes] = None
    error: Optional[NoSQLError] = None

    @property
    def ok(self) -> bool:
        return self.error is None
