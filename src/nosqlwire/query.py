"""Lazy query results over many server round trips.

Queries the server evaluates completely are read by following the
continuation key and concatenating batches. When the prepared plan asks
the client to sort or group, the driver keeps one stream per partition,
holds each stream's next row in a min-heap and refetches a stream only
when its buffered batch runs dry. Aggregates are folded as rows leave the
merge in sorted order, so a group is complete as soon as the key changes.
"""

from __future__ import annotations

import heapq
import itertools
import logging
from collections import deque
from typing import Any, AsyncIterator, Mapping, Optional, Protocol, Union

from .errors import ProtocolError, ProtocolErrorKind
from .operations import (
    AggregateFunction,
    Capacity,
    Consistency,
    PrepareRequest,
    PreparedStatement,
    QueryBatch,
    QueryPlan,
    QueryRequest,
    Response,
    SortSpec,
)
from .values import FieldType, Value, compare_values

__all__ = ["QueryDriver", "QueryPlanState", "RequestRunner"]

logger = logging.getLogger(__name__)

_DEFAULT_SPEC = SortSpec()


class RequestRunner(Protocol):
    async def execute(self, request: Any) -> Response:  # pragma: no cover - protocol definition
        ...


def _compare_column(a: Value, b: Value, spec: SortSpec) -> int:
    if a.is_null or b.is_null:
        if a.is_null and b.is_null:
            return 0
        before = -1 if spec.nulls_first else 1
        return before if a.is_null else -before
    result = compare_values(a, b)
    return -result if spec.descending else result


def _column(row: Value, name: str) -> Value:
    return row.data.get(name) or Value.null()


def _add(a: Value, b: Value) -> Value:
    if a.is_null:
        return b
    if b.is_null:
        return a
    if not (a.is_numeric and b.is_numeric):
        raise TypeError(f"cannot sum {a.type.name} and {b.type.name} values")
    if FieldType.NUMBER in (a.type, b.type):
        return Value.number(a.as_decimal() + b.as_decimal())
    if FieldType.DOUBLE in (a.type, b.type):
        return Value.double(float(a.data) + float(b.data))
    return Value.of(a.data + b.data)


class _PartitionStream:
    __slots__ = ("partition_id", "rows", "continuation_key")

    def __init__(self, partition_id: Optional[int], rows: list[Value], continuation_key: Optional[bytes]) -> None:
        self.partition_id = partition_id
        self.rows = deque(rows)
        self.continuation_key = continuation_key


class _Head:
    """Heap entry holding the next unconsumed row of one stream."""

    __slots__ = ("row", "keys", "stream", "order", "specs")

    def __init__(self, row: Value, keys: list[Value], stream: _PartitionStream, order: int, specs: tuple[SortSpec, ...]) -> None:
        self.row = row
        self.keys = keys
        self.stream = stream
        self.order = order
        self.specs = specs

    def __lt__(self, other: "_Head") -> bool:
        for left, right, spec in zip(self.keys, other.keys, self.specs):
            result = _compare_column(left, right, spec)
            if result:
                return result < 0
        mine = self.stream.partition_id if self.stream.partition_id is not None else -1
        theirs = other.stream.partition_id if other.stream.partition_id is not None else -1
        if mine != theirs:
            return mine < theirs
        return self.order < other.order


class _Group:
    __slots__ = ("key", "columns", "values")

    def __init__(self, key: list[Value], columns: list[str], values: list[Value]) -> None:
        self.key = key
        self.columns = columns
        self.values = values

    def same_key(self, key: list[Value]) -> bool:
        return all(compare_values(a, b) == 0 for a, b in zip(self.key, key))

    def fold(self, values: list[Value], aggregates: tuple[AggregateFunction, ...]) -> None:
        for index, (function, incoming) in enumerate(zip(aggregates, values)):
            current = self.values[index]
            if function in (AggregateFunction.COUNT, AggregateFunction.SUM):
                self.values[index] = _add(current, incoming)
            elif incoming.is_null:
                continue
            elif current.is_null:
                self.values[index] = incoming
            else:
                order = compare_values(incoming, current)
                if (function is AggregateFunction.MIN and order < 0) or (function is AggregateFunction.MAX and order > 0):
                    self.values[index] = incoming

    def to_row(self) -> Value:
        return Value(FieldType.MAP, dict(zip(self.columns, self.key + self.values)))


class QueryPlanState:
    """Per-iteration merge state. A new one is built for every pass."""

    def __init__(self, plan: QueryPlan) -> None:
        self.plan = plan
        self.specs = plan.sort_specs
        self.heap: list[_Head] = []
        self.streams: dict[Optional[int], _PartitionStream] = {}
        self.group: Optional[_Group] = None
        self._sequence = itertools.count()

    def sort_keys(self, row: Value) -> list[Value]:
        if self.plan.sort_fields:
            return [_column(row, name) for name in self.plan.sort_fields]
        # Grouping without an explicit order sorts by the group key.
        return list(row.data.values())[: self.plan.group_by]

    def effective_specs(self) -> tuple[SortSpec, ...]:
        if self.plan.sort_fields:
            return self.specs
        return (_DEFAULT_SPEC,) * self.plan.group_by

    def push(self, stream: _PartitionStream) -> bool:
        if not stream.rows:
            return False
        row = stream.rows.popleft()
        heapq.heappush(self.heap, _Head(row, self.sort_keys(row), stream, next(self._sequence), self.effective_specs()))
        return True

    def pop(self) -> _Head:
        return heapq.heappop(self.heap)

    def accumulate(self, row: Value) -> Optional[Value]:
        """Fold ``row`` into the current group; return the group it completes, if any."""

        columns = list(row.data.keys())
        values = list(row.data.values())
        key = values[: self.plan.group_by]
        aggregated = values[self.plan.group_by :]
        if len(aggregated) != len(self.plan.aggregates):
            raise ProtocolError(
                ProtocolErrorKind.MALFORMED,
                f"row has {len(aggregated)} aggregate columns, plan expects {len(self.plan.aggregates)}"
            )
        if self.group is not None and self.group.same_key(key):
            self.group.fold(aggregated, self.plan.aggregates)
            return None
        finished = self.group.to_row() if self.group is not None else None
        self.group = _Group(key, columns, aggregated)
        return finished

    def flush(self) -> Optional[Value]:
        finished = self.group.to_row() if self.group is not None else None
        self.group = None
        return finished


class QueryDriver:
    """Async iterable of result rows for one query.

    Each ``async for`` starts the query from the beginning; an iteration
    cannot be resumed midway. Leaving an iteration early sends no further
    requests.
    """

    def __init__(
        self,
        runner: RequestRunner,
        statement: Union[str, PreparedStatement],
        *,
        bind_variables: Optional[Mapping[str, Any]] = None,
        limit: int = 0,
        max_read_kb: int = 0,
        consistency: Consistency = Consistency.EVENTUAL,
        timeout: Optional[float] = None,
    ) -> None:
        if limit < 0:
            raise ValueError("limit cannot be negative")
        self._runner = runner
        self._statement = statement
        self._prepared = statement if isinstance(statement, PreparedStatement) else None
        self._bind_variables = dict(bind_variables or {})
        self.limit = limit
        self.max_read_kb = max_read_kb
        self.consistency = consistency
        self.timeout = timeout
        self.consumed = Capacity()

    @property
    def prepared(self) -> Optional[PreparedStatement]:
        return self._prepared

    def __aiter__(self) -> AsyncIterator[Value]:
        return self._iterate()

    async def collect(self) -> list[Value]:
        return [row async for row in self]

    async def _prepare(self) -> PreparedStatement:
        if self._prepared is None:
            statement = str(self._statement)
            response = await self._runner.execute(PrepareRequest(statement, timeout=self.timeout))
            self.consumed.add(response.consumed)
            prepared = response.result.prepared
            if not prepared.sql:
                prepared.sql = statement
            self._prepared = prepared
        return self._prepared

    async def _fetch(
        self,
        prepared: PreparedStatement,
        continuation_key: Optional[bytes] = None,
        partition_id: Optional[int] = None,
    ) -> QueryBatch:
        request = QueryRequest(
            prepared,
            bind_variables=self._bind_variables,
            continuation_key=continuation_key,
            partition_id=partition_id,
            limit=self.limit,
            max_read_kb=self.max_read_kb,
            consistency=self.consistency,
            timeout=self.timeout,
        )
        response = await self._runner.execute(request)
        self.consumed.add(response.consumed)
        return response.result

    async def _iterate(self) -> AsyncIterator[Value]:
        self.consumed = Capacity()
        prepared = await self._prepare()
        plan = prepared.plan
        if plan is None or not plan.needs_client_merge:
            rows = self._concatenate(prepared)
        else:
            rows = self._merge(prepared, plan)

        emitted = 0
        try:
            async for row in rows:
                yield row
                emitted += 1
                if self.limit and emitted >= self.limit:
                    return
        finally:
            await rows.aclose()

    async def _concatenate(self, prepared: PreparedStatement) -> AsyncIterator[Value]:
        continuation_key: Optional[bytes] = None
        while True:
            batch = await self._fetch(prepared, continuation_key)
            for row in batch.rows:
                yield row
            continuation_key = batch.continuation_key
            if continuation_key is None:
                return

    async def _refill(self, prepared: PreparedStatement, stream: _PartitionStream) -> None:
        while not stream.rows and stream.continuation_key is not None:
            logger.debug("Fetching next batch of partition %s", stream.partition_id)
            batch = await self._fetch(prepared, stream.continuation_key, stream.partition_id)
            if stream.partition_id is not None and batch.partitions:
                part = next((p for p in batch.partitions if p.partition_id == stream.partition_id), None)
                if part is None:
                    raise ProtocolError(
                        ProtocolErrorKind.MALFORMED,
                        f"reply for partition {stream.partition_id} carries batches for "
                        f"{[p.partition_id for p in batch.partitions]}",
                    )
                stream.rows.extend(part.rows)
                stream.continuation_key = part.continuation_key
            else:
                stream.rows.extend(batch.rows)
                stream.continuation_key = batch.continuation_key

    async def _merge(self, prepared: PreparedStatement, plan: QueryPlan) -> AsyncIterator[Value]:
        state = QueryPlanState(plan)
        first = await self._fetch(prepared)
        if first.partitions:
            for part in first.partitions:
                state.streams[part.partition_id] = _PartitionStream(part.partition_id, part.rows, part.continuation_key)
        else:
            state.streams[None] = _PartitionStream(None, first.rows, first.continuation_key)
        logger.debug("Merging %d partition streams", len(state.streams))

        for stream in state.streams.values():
            await self._refill(prepared, stream)
            state.push(stream)

        grouping = plan.group_by > 0 or bool(plan.aggregates)
        while state.heap:
            head = state.pop()
            stream = head.stream
            if not stream.rows:
                await self._refill(prepared, stream)
            state.push(stream)

            if not grouping:
                yield head.row
                continue
            finished = state.accumulate(head.row)
            if finished is not None:
                yield finished

        if grouping:
            finished = state.flush()
            if finished is not None:
                yield finished
