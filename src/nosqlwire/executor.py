"""Drive one logical request through admission, signing, transport and retries."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import Awaitable, Callable, Optional

from . import codec
from .auth import CONTENT_TYPE, RequestSigner
from .errors import (
    AuthError,
    AuthErrorKind,
    NoSQLError,
    ProtocolError,
    ProtocolErrorKind,
    ResourceError,
    ResourceErrorKind,
    ThrottleError,
    ThrottleErrorKind,
    TransientErrorKind,
    TransientServerError,
    ValidationError,
)
from .operations import (
    Capacity,
    DeleteRequest,
    GetRequest,
    GetTableRequest,
    MultiDeleteRequest,
    PutRequest,
    QueryRequest,
    Request,
    Response,
    TableRequest,
    TableResult,
    WriteMultipleRequest,
    resource_path,
)
from .ratelimit import Direction, RateLimiter
from .retry import RETRYABLE_CATEGORIES, GiveUp, RetryPolicy
from .transport import HttpTransport, TransportResponse

__all__ = ["RequestExecutor", "REQUEST_ID_HEADER", "estimate_units"]

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "x-nosql-request-id"
DEFAULT_REQUEST_TIMEOUT = 30.0


def estimate_units(request: Request) -> Optional[tuple[Direction, int]]:
    """Pre-flight guess of the units a request consumes, for rate admission."""

    if isinstance(request, (GetRequest, QueryRequest)):
        return Direction.READ, 1
    if isinstance(request, WriteMultipleRequest):
        return Direction.WRITE, len(request.operations)
    if isinstance(request, (PutRequest, DeleteRequest, MultiDeleteRequest)):
        return Direction.WRITE, 1
    return None


def _consumed_units(consumed: Capacity, direction: Direction) -> int:
    return consumed.read_units if direction is Direction.READ else consumed.write_units


def _parse_retry_after(raw: Optional[str]) -> Optional[float]:
    if raw is None:
        return None
    try:
        value = float(raw)
    except ValueError:
        return None
    return value if value >= 0 else None


def _status_error(response: TransportResponse) -> NoSQLError:
    status = response.status
    text = response.body[:200].decode("utf-8", "replace") if response.body else ""
    message = f"HTTP {status}: {text}" if text else f"HTTP {status}"
    if status == 429:
        return ThrottleError(
            ThrottleErrorKind.RATE_LIMITED,
            message,
            retry_after=_parse_retry_after(response.header("retry-after")),
        )
    if status in (401, 403):
        return AuthError(AuthErrorKind.SIGNATURE_REJECTED, message, server_date=response.header("date"))
    if status == 404:
        return ResourceError(ResourceErrorKind.NOT_FOUND, message)
    if status >= 500:
        return TransientServerError(TransientErrorKind.SERVER, message)
    if 400 <= status < 500:
        return ValidationError(message)
    return ProtocolError(ProtocolErrorKind.MALFORMED, f"unexpected {message}")


class RequestExecutor:
    """Runs requests against the service with retries and rate admission.

    Safe to share between concurrent tasks; the negotiated protocol version
    only ever moves down.
    """

    def __init__(
        self,
        transport: HttpTransport,
        signer: Optional[RequestSigner] = None,
        *,
        retry: Optional[RetryPolicy] = None,
        rate_limiter: Optional[RateLimiter] = None,
        protocol_version: int = codec.CURRENT_VERSION,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ) -> None:
        if protocol_version not in codec.SUPPORTED_VERSIONS:
            raise ValueError(f"protocol_version must be one of {codec.SUPPORTED_VERSIONS}")
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        self._transport = transport
        self._signer = signer
        self._retry = retry if retry is not None else RetryPolicy()
        self._rate_limiter = rate_limiter if rate_limiter is not None else RateLimiter()
        self._version = protocol_version
        self.timeout = timeout
        self._sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
        self._clock: Callable[[], float] = time.monotonic

    @property
    def protocol_version(self) -> int:
        return self._version

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._rate_limiter

    def _lower_version(self, version: int) -> Optional[int]:
        lower = [candidate for candidate in codec.SUPPORTED_VERSIONS if candidate < version]
        return max(lower) if lower else None

    def _downgrade(self, version: int) -> None:
        if version < self._version:
            logger.debug("Negotiated protocol version lowered from %d to %d", self._version, version)
            self._version = version

    async def execute(self, request: Request, *, estimate: Optional[int] = None) -> Response:
        """Execute ``request`` and return its successful response.

        Retryable failures are retried per the retry policy; every other
        failure, or the last one when retries run out, is raised unchanged.
        """

        timeout = request.timeout or self.timeout
        admission = estimate_units(request)
        if admission is not None and estimate is not None:
            admission = (admission[0], estimate)
        table = request.table_name
        request_id = uuid.uuid4().hex
        started = self._clock()
        attempt = 0
        fell_back = False
        resynced = False

        while True:
            attempt += 1
            version = self._version
            body = codec.encode(request, version, timeout_ms=int(timeout * 1000))

            delay = self._rate_limiter.admit(table, *admission) if admission is not None else 0.0
            consumed = Capacity()
            try:
                if delay > 0:
                    logger.debug("Rate limiting %s on %s for %.3fs", request.op.name, table, delay)
                    await self._sleep(delay)
                logger.debug("Sending %s (attempt %d, version %d)", request.op.name, attempt, version)
                response = await self._send(request, body, version, timeout, request_id)
            except NoSQLError as exc:
                error = exc
            else:
                consumed = response.consumed
                if response.error is None:
                    self._downgrade(response.version)
                    self._apply_limits(request, response)
                    return response
                error = response.error
            finally:
                # Cancellation and failures settle with what the server reported, if anything.
                if admission is not None:
                    direction, units = admission
                    self._rate_limiter.settle(table, direction, units, _consumed_units(consumed, direction))

            if (
                isinstance(error, ProtocolError)
                and error.kind is ProtocolErrorKind.UNSUPPORTED_VERSION
                and not fell_back
            ):
                lower = self._lower_version(version)
                if lower is not None:
                    fell_back = True
                    attempt -= 1
                    self._downgrade(lower)
                    continue

            if (
                isinstance(error, AuthError)
                and error.kind is AuthErrorKind.SIGNATURE_REJECTED
                and not resynced
                and self._signer is not None
                and self._signer.resync(error.server_date)
            ):
                resynced = True
                attempt -= 1
                continue

            elapsed = self._clock() - started
            decision = self._retry.decide(error, attempt, elapsed)
            if isinstance(decision, GiveUp):
                if error.category in RETRYABLE_CATEGORIES:
                    logger.warning("Giving up on %s: %s (%s)", request.op.name, error, decision.reason)
                raise error
            logger.warning(
                "Retrying %s after %s in %.3fs (attempt %d)", request.op.name, error.category.value, decision.delay, attempt
            )
            await self._sleep(decision.delay)

    async def _send(self, request: Request, body: bytes, version: int, timeout: float, request_id: str) -> Response:
        path = resource_path(request.op)
        headers = {"content-type": CONTENT_TYPE, REQUEST_ID_HEADER: request_id}
        if self._signer is not None:
            signature = await self._signer.sign(body, self._signer.now(), path=path)
            headers.update(signature.as_dict())

        try:
            reply = await asyncio.wait_for(self._transport.post(path, body, headers), timeout)
        except asyncio.TimeoutError:
            raise TransientServerError(
                TransientErrorKind.TIMEOUT, f"{request.op.name} timed out after {timeout:.3f}s"
            ) from None

        if reply.status != 200:
            # Error statuses may still carry a protocol error frame.
            if reply.body:
                try:
                    decoded = codec.decode(reply.body, version)
                except ProtocolError:
                    decoded = None
                if decoded is not None and decoded.error is not None:
                    self._attach_date(decoded.error, reply)
                    return decoded
            raise _status_error(reply)

        decoded = codec.decode(reply.body, version)
        if decoded.error is not None:
            self._attach_date(decoded.error, reply)
        return decoded

    @staticmethod
    def _attach_date(error: NoSQLError, reply: TransportResponse) -> None:
        if isinstance(error, AuthError) and error.server_date is None:
            error.server_date = reply.header("date")

    def _apply_limits(self, request: Request, response: Response) -> None:
        result = response.result
        if not isinstance(result, TableResult) or result.limits is None:
            return
        if not isinstance(request, (TableRequest, GetTableRequest)):
            return
        table = result.table_name or request.table_name
        if table:
            self._rate_limiter.configure_limits(table, result.limits)
