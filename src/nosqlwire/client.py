"""Async client for the NoSQL database service."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Optional, Sequence, Union

import httpx

from . import codec
from .auth import Credentials, CredentialProvider, RequestSigner, SigningTarget, StaticCredentialProvider
from .errors import ResourceError, ResourceErrorKind, TransientErrorKind, TransientServerError
from .executor import DEFAULT_REQUEST_TIMEOUT, RequestExecutor
from .operations import (
    Capacity,
    Consistency,
    DeleteRequest,
    DeleteResult,
    Durability,
    GetIndexesRequest,
    GetIndexesResult,
    GetRequest,
    GetResult,
    GetTableRequest,
    ListTablesRequest,
    ListTablesResult,
    MultiDeleteRequest,
    MultiDeleteResult,
    PrepareRequest,
    PreparedStatement,
    PutOption,
    PutRequest,
    PutResult,
    QueryBatch,
    QueryRequest,
    Response,
    SystemRequest,
    SystemResult,
    SystemStatusRequest,
    TableLimits,
    TableRequest,
    TableResult,
    TableState,
    WriteMultipleRequest,
    WriteMultipleResult,
)
from .query import QueryDriver
from .ratelimit import RateLimiter, RateLimitOptions
from .retry import RetryOptions, RetryPolicy
from .transport import HttpTransport, HttpxTransport
from .values import Value

__all__ = ["NoSQLClient", "ClientConfig"]

logger = logging.getLogger(__name__)

DEFAULT_TABLE_WAIT = 60.0
DEFAULT_POLL_INTERVAL = 1.0


@dataclass(slots=True)
class ClientConfig:
    """Connection settings; ``retry`` and ``rate_limit`` accept option objects or mappings."""

    endpoint: str = ""
    timeout: float = DEFAULT_REQUEST_TIMEOUT
    protocol_version: int = codec.CURRENT_VERSION
    retry: RetryOptions = field(default_factory=RetryOptions)
    rate_limit: RateLimitOptions = field(default_factory=RateLimitOptions)

    def __post_init__(self) -> None:
        if self.timeout <= 0:
            raise ValueError("timeout must be positive")
        if self.protocol_version not in codec.SUPPORTED_VERSIONS:
            raise ValueError(f"protocol_version must be one of {codec.SUPPORTED_VERSIONS}")
        self.retry = RetryOptions.from_config(self.retry)
        self.rate_limit = RateLimitOptions.from_config(self.rate_limit)

    @classmethod
    def from_config(cls, config: ClientConfig | Mapping[str, Any] | None) -> "ClientConfig":
        if config is None:
            return cls()
        if isinstance(config, ClientConfig):
            return cls(
                endpoint=config.endpoint,
                timeout=config.timeout,
                protocol_version=config.protocol_version,
                retry=config.retry,
                rate_limit=config.rate_limit,
            )
        version = config.get("protocol_version")
        if version is None:
            version = config.get("protocolVersion", codec.CURRENT_VERSION)
        rate_limit = config.get("rate_limit")
        if rate_limit is None:
            rate_limit = config.get("rateLimit")
        return cls(
            endpoint=str(config.get("endpoint", "")),
            timeout=float(config.get("timeout", DEFAULT_REQUEST_TIMEOUT)),
            protocol_version=int(version),
            retry=RetryOptions.from_config(config.get("retry")),
            rate_limit=RateLimitOptions.from_config(rate_limit),
        )


class NoSQLClient:
    """Typed operations over one service endpoint.

    The client owns its rate budgets and signing key cache; both are shared
    by every concurrent call made through it.
    """

    def __init__(
        self,
        config: ClientConfig | Mapping[str, Any] | None = None,
        *,
        endpoint: Optional[str] = None,
        credentials: Union[Credentials, CredentialProvider, None] = None,
        transport: HttpTransport | None = None,
        retry: RetryOptions | Mapping[str, Any] | None = None,
        rate_limit: RateLimitOptions | Mapping[str, Any] | None = None,
    ) -> None:
        self._config = ClientConfig.from_config(config)
        if endpoint is not None:
            self._config.endpoint = endpoint
        if retry is not None:
            self._config.retry = RetryOptions.from_config(retry)
        if rate_limit is not None:
            self._config.rate_limit = RateLimitOptions.from_config(rate_limit)
        if transport is None and not self._config.endpoint:
            raise ValueError("endpoint must be provided")

        self._owns_transport = transport is None
        self._transport: HttpTransport = transport or HttpxTransport(
            self._config.endpoint, timeout=self._config.timeout
        )
        self._closed = False

        signer = None
        if credentials is not None:
            provider = (
                StaticCredentialProvider(credentials) if isinstance(credentials, Credentials) else credentials
            )
            signer = RequestSigner(provider, SigningTarget(host=self._host()))
        self._signer = signer
        self._rate_limiter = RateLimiter(self._config.rate_limit)
        self._executor = RequestExecutor(
            self._transport,
            signer,
            retry=RetryPolicy(self._config.retry),
            rate_limiter=self._rate_limiter,
            protocol_version=self._config.protocol_version,
            timeout=self._config.timeout,
        )
        self._sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
        self._clock: Callable[[], float] = time.monotonic

    def _host(self) -> str:
        if not self._config.endpoint:
            return "localhost"
        return httpx.URL(self._config.endpoint).netloc.decode("ascii")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def close(self) -> None:
        if self._owns_transport and not self._closed:
            await self._transport.close()
        self._closed = True

    async def __aenter__(self) -> "NoSQLClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def executor(self) -> RequestExecutor:
        return self._executor

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._rate_limiter

    @property
    def protocol_version(self) -> int:
        return self._executor.protocol_version

    def _check_open(self) -> None:
        if self._closed:
            raise RuntimeError("client is closed")

    async def execute(self, request: Any) -> Response:
        """Run one request through the executor; query drivers use this as their runner."""

        self._check_open()
        return await self._executor.execute(request)

    async def _run(self, request: Any) -> Any:
        response = await self.execute(request)
        return response.result

    # ------------------------------------------------------------------
    # Rows
    # ------------------------------------------------------------------

    async def get(
        self,
        table_name: str,
        key: Value | Mapping[str, Any],
        *,
        consistency: Consistency = Consistency.EVENTUAL,
        timeout: Optional[float] = None,
    ) -> GetResult:
        """Read one row. A missing row is a result with ``found == False``."""

        return await self._run(GetRequest(table_name, key, consistency=consistency, timeout=timeout))

    async def put(
        self,
        table_name: str,
        value: Value | Mapping[str, Any],
        *,
        option: Optional[PutOption] = None,
        match_version: Optional[bytes] = None,
        ttl_days: Optional[int] = None,
        update_ttl: bool = False,
        return_row: bool = False,
        exact_match: bool = False,
        durability: Optional[Durability] = None,
        timeout: Optional[float] = None,
    ) -> PutResult:
        if match_version is not None and option is None:
            option = PutOption.IF_VERSION
        request = PutRequest(
            table_name,
            value,
            option=option,
            match_version=match_version,
            ttl_days=ttl_days,
            update_ttl=update_ttl,
            return_row=return_row,
            exact_match=exact_match,
            durability=durability,
            timeout=timeout,
        )
        return await self._run(request)

    async def delete(
        self,
        table_name: str,
        key: Value | Mapping[str, Any],
        *,
        match_version: Optional[bytes] = None,
        return_row: bool = False,
        durability: Optional[Durability] = None,
        timeout: Optional[float] = None,
    ) -> DeleteResult:
        request = DeleteRequest(
            table_name,
            key,
            match_version=match_version,
            return_row=return_row,
            durability=durability,
            timeout=timeout,
        )
        return await self._run(request)

    async def multi_delete(
        self,
        table_name: str,
        key: Value | Mapping[str, Any],
        *,
        continuation_key: Optional[bytes] = None,
        max_write_kb: int = 0,
        durability: Optional[Durability] = None,
        timeout: Optional[float] = None,
    ) -> MultiDeleteResult:
        """Delete rows sharing a shard key; may stop early with a continuation key."""

        request = MultiDeleteRequest(
            table_name,
            key,
            continuation_key=continuation_key,
            max_write_kb=max_write_kb,
            durability=durability,
            timeout=timeout,
        )
        return await self._run(request)

    async def multi_delete_all(
        self,
        table_name: str,
        key: Value | Mapping[str, Any],
        *,
        max_write_kb: int = 0,
        durability: Optional[Durability] = None,
        timeout: Optional[float] = None,
    ) -> MultiDeleteResult:
        """Repeat :meth:`multi_delete` until the server reports no continuation key."""

        total = MultiDeleteResult(consumed=Capacity())
        continuation_key: Optional[bytes] = None
        while True:
            result = await self.multi_delete(
                table_name,
                key,
                continuation_key=continuation_key,
                max_write_kb=max_write_kb,
                durability=durability,
                timeout=timeout,
            )
            total.deleted += result.deleted
            total.consumed.add(result.consumed)
            continuation_key = result.continuation_key
            if continuation_key is None:
                return total

    async def write_multiple(
        self,
        operations: Sequence[Union[PutRequest, DeleteRequest]],
        *,
        abort_on_fail: bool = False,
        durability: Optional[Durability] = None,
        timeout: Optional[float] = None,
    ) -> WriteMultipleResult:
        request = WriteMultipleRequest(
            operations, abort_on_fail=abort_on_fail, durability=durability, timeout=timeout
        )
        return await self._run(request)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def prepare(self, statement: str, *, timeout: Optional[float] = None) -> PreparedStatement:
        result = await self._run(PrepareRequest(statement, timeout=timeout))
        prepared = result.prepared
        if not prepared.sql:
            prepared.sql = statement
        return prepared

    def query(
        self,
        statement: Union[str, PreparedStatement],
        *,
        bind_variables: Optional[Mapping[str, Any]] = None,
        limit: int = 0,
        max_read_kb: int = 0,
        consistency: Consistency = Consistency.EVENTUAL,
        timeout: Optional[float] = None,
    ) -> QueryDriver:
        """Return a lazy ``async for`` iterable over the query's rows."""

        self._check_open()
        return QueryDriver(
            self,
            statement,
            bind_variables=bind_variables,
            limit=limit,
            max_read_kb=max_read_kb,
            consistency=consistency,
            timeout=timeout,
        )

    async def query_batch(
        self,
        prepared: PreparedStatement,
        *,
        bind_variables: Optional[Mapping[str, Any]] = None,
        continuation_key: Optional[bytes] = None,
        limit: int = 0,
        timeout: Optional[float] = None,
    ) -> QueryBatch:
        """Run a single query round trip, leaving pagination to the caller."""

        request = QueryRequest(
            prepared,
            bind_variables=bind_variables or {},
            continuation_key=continuation_key,
            limit=limit,
            timeout=timeout,
        )
        return await self._run(request)

    # ------------------------------------------------------------------
    # Tables and system operations
    # ------------------------------------------------------------------

    async def table_request(
        self,
        statement: Optional[str] = None,
        *,
        table_name: Optional[str] = None,
        limits: Optional[TableLimits] = None,
        timeout: Optional[float] = None,
    ) -> TableResult:
        request = TableRequest(statement, table_name=table_name, limits=limits, timeout=timeout)
        return await self._run(request)

    async def get_table(
        self,
        table_name: str,
        *,
        operation_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> TableResult:
        return await self._run(GetTableRequest(table_name, operation_id=operation_id, timeout=timeout))

    async def wait_for_table(
        self,
        table_name: str,
        state: TableState = TableState.ACTIVE,
        *,
        operation_id: Optional[str] = None,
        wait: float = DEFAULT_TABLE_WAIT,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ) -> TableResult:
        """Poll the table until it reaches ``state`` or ``wait`` seconds pass.

        Waiting for ``DROPPED`` also succeeds once the table is gone.
        """

        if wait <= 0 or poll_interval <= 0:
            raise ValueError("wait and poll_interval must be positive")
        deadline = self._clock() + wait
        while True:
            try:
                result = await self.get_table(table_name, operation_id=operation_id)
            except ResourceError as exc:
                if state is TableState.DROPPED and exc.kind is ResourceErrorKind.NOT_FOUND:
                    return TableResult(table_name=table_name, state=TableState.DROPPED)
                raise
            if result.state is state:
                return result
            if self._clock() + poll_interval > deadline:
                raise TransientServerError(
                    TransientErrorKind.TIMEOUT,
                    f"table {table_name} did not reach {state.name} within {wait:.1f}s "
                    f"(last state {result.state.name})",
                )
            logger.debug("Table %s is %s, waiting for %s", table_name, result.state.name, state.name)
            await self._sleep(poll_interval)

    async def list_tables(
        self,
        *,
        start_index: int = 0,
        limit: int = 0,
        namespace: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> ListTablesResult:
        request = ListTablesRequest(start_index=start_index, limit=limit, namespace=namespace, timeout=timeout)
        return await self._run(request)

    async def get_indexes(
        self,
        table_name: str,
        *,
        index_name: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> GetIndexesResult:
        return await self._run(GetIndexesRequest(table_name, index_name=index_name, timeout=timeout))

    async def system_request(self, statement: str, *, timeout: Optional[float] = None) -> SystemResult:
        return await self._run(SystemRequest(statement, timeout=timeout))

    async def system_status(
        self,
        operation_id: str,
        *,
        statement: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> SystemResult:
        return await self._run(SystemStatusRequest(operation_id, statement=statement, timeout=timeout))
