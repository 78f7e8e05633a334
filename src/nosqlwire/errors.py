"""Error taxonomy shared by the codec, signer, executor and query driver."""

from __future__ import annotations

from enum import Enum, IntEnum
from typing import Optional

__all__ = [
    "ErrorCategory",
    "ErrorCode",
    "NoSQLError",
    "ProtocolError",
    "ProtocolErrorKind",
    "AuthError",
    "AuthErrorKind",
    "ThrottleError",
    "ThrottleErrorKind",
    "TransientServerError",
    "TransientErrorKind",
    "ValidationError",
    "ResourceError",
    "ResourceErrorKind",
    "classify_error_code",
    "error_from_code",
]


class ErrorCategory(str, Enum):
    PROTOCOL = "protocol"
    AUTH = "auth"
    THROTTLE = "throttle"
    TRANSIENT = "transient"
    VALIDATION = "validation"
    RESOURCE = "resource"


class ErrorCode(IntEnum):
    """Error codes reported by the server in the ``e`` response field."""

    NO_ERROR = 0
    UNKNOWN_OPERATION = 1
    TABLE_NOT_FOUND = 2
    INDEX_NOT_FOUND = 3
    ILLEGAL_ARGUMENT = 4
    ROW_SIZE_LIMIT_EXCEEDED = 5
    KEY_SIZE_LIMIT_EXCEEDED = 6
    BATCH_OP_NUMBER_LIMIT_EXCEEDED = 7
    REQUEST_SIZE_LIMIT_EXCEEDED = 8
    TABLE_EXISTS = 9
    INDEX_EXISTS = 10
    INVALID_AUTHORIZATION = 11
    INSUFFICIENT_PERMISSION = 12
    RESOURCE_EXISTS = 13
    RESOURCE_NOT_FOUND = 14
    TABLE_LIMIT_EXCEEDED = 15
    INDEX_LIMIT_EXCEEDED = 16
    BAD_PROTOCOL_MESSAGE = 17
    EVOLUTION_LIMIT_EXCEEDED = 18
    TABLE_DEPLOYMENT_LIMIT_EXCEEDED = 19
    TENANT_DEPLOYMENT_LIMIT_EXCEEDED = 20
    OPERATION_NOT_SUPPORTED = 21
    ETAG_MISMATCH = 22
    CANNOT_CANCEL_WORK_REQUEST = 23
    UNSUPPORTED_PROTOCOL = 24
    READ_LIMIT_EXCEEDED = 50
    WRITE_LIMIT_EXCEEDED = 51
    SIZE_LIMIT_EXCEEDED = 52
    OPERATION_LIMIT_EXCEEDED = 53
    REQUEST_TIMEOUT = 100
    SERVER_ERROR = 101
    SERVICE_UNAVAILABLE = 102
    TABLE_BUSY = 103
    SECURITY_INFO_UNAVAILABLE = 104
    RETRY_AUTHENTICATION = 105
    UNKNOWN_ERROR = 125
    ILLEGAL_STATE = 126


class ProtocolErrorKind(str, Enum):
    UNKNOWN_TAG = "unknown_tag"
    TRUNCATED = "truncated"
    MALFORMED = "malformed"
    UNSUPPORTED_VERSION = "unsupported_version"


class AuthErrorKind(str, Enum):
    INVALID_KEY = "invalid_key"
    UNSUPPORTED_ALGORITHM = "unsupported_algorithm"
    SIGNATURE_REJECTED = "signature_rejected"


class ThrottleErrorKind(str, Enum):
    READ_LIMIT = "read_limit"
    WRITE_LIMIT = "write_limit"
    OPERATION_LIMIT = "operation_limit"
    RATE_LIMITED = "rate_limited"


class TransientErrorKind(str, Enum):
    TIMEOUT = "timeout"
    TRANSPORT = "transport"
    SERVER = "server"


class ResourceErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    ALREADY_EXISTS = "already_exists"


class NoSQLError(RuntimeError):
    """Base class for every error surfaced by the client."""

    category: ErrorCategory = ErrorCategory.VALIDATION

    def __init__(self, message: str, *, code: ErrorCode | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code

    def __str__(self) -> str:  # pragma: no cover - trivial repr
        if self.code is None:
            return self.message
        return f"{self.code.name}: {self.message}"


class ProtocolError(NoSQLError):
    """Malformed, truncated or otherwise undecodable wire data."""

    category = ErrorCategory.PROTOCOL

    def __init__(
        self,
        kind: ProtocolErrorKind,
        message: str,
        *,
        code: ErrorCode | None = None,
    ) -> None:
        super().__init__(message, code=code)
        self.kind = kind


class AuthError(NoSQLError):
    category = ErrorCategory.AUTH

    def __init__(
        self,
        kind: AuthErrorKind,
        message: str,
        *,
        code: ErrorCode | None = None,
        server_date: Optional[str] = None,
    ) -> None:
        super().__init__(message, code=code)
        self.kind = kind
        self.server_date = server_date


class ThrottleError(NoSQLError):
    """Server-side rate limiting. ``retry_after`` is the server hint in seconds."""

    category = ErrorCategory.THROTTLE

    def __init__(
        self,
        kind: ThrottleErrorKind,
        message: str,
        *,
        code: ErrorCode | None = None,
        retry_after: Optional[float] = None,
    ) -> None:
        super().__init__(message, code=code)
        self.kind = kind
        self.retry_after = retry_after


class TransientServerError(NoSQLError):
    category = ErrorCategory.TRANSIENT

    def __init__(
        self,
        kind: TransientErrorKind,
        message: str,
        *,
        code: ErrorCode | None = None,
    ) -> None:
        super().__init__(message, code=code)
        self.kind = kind


class ValidationError(NoSQLError):
    category = ErrorCategory.VALIDATION


class ResourceError(NoSQLError):
    category = ErrorCategory.RESOURCE

    def __init__(
        self,
        kind: ResourceErrorKind,
        message: str,
        *,
        code: ErrorCode | None = None,
    ) -> None:
        super().__init__(message, code=code)
        self.kind = kind


_NOT_FOUND = {ErrorCode.TABLE_NOT_FOUND, ErrorCode.INDEX_NOT_FOUND, ErrorCode.RESOURCE_NOT_FOUND}
_EXISTS = {ErrorCode.TABLE_EXISTS, ErrorCode.INDEX_EXISTS, ErrorCode.RESOURCE_EXISTS}
_AUTH = {
    ErrorCode.INVALID_AUTHORIZATION,
    ErrorCode.INSUFFICIENT_PERMISSION,
    ErrorCode.RETRY_AUTHENTICATION,
}
_THROTTLE = {
    ErrorCode.READ_LIMIT_EXCEEDED: ThrottleErrorKind.READ_LIMIT,
    ErrorCode.WRITE_LIMIT_EXCEEDED: ThrottleErrorKind.WRITE_LIMIT,
    ErrorCode.OPERATION_LIMIT_EXCEEDED: ThrottleErrorKind.OPERATION_LIMIT,
}
_TRANSIENT = {
    ErrorCode.REQUEST_TIMEOUT,
    ErrorCode.SERVER_ERROR,
    ErrorCode.SERVICE_UNAVAILABLE,
    ErrorCode.TABLE_BUSY,
    ErrorCode.SECURITY_INFO_UNAVAILABLE,
    ErrorCode.UNKNOWN_ERROR,
}
_PROTOCOL = {ErrorCode.BAD_PROTOCOL_MESSAGE, ErrorCode.UNSUPPORTED_PROTOCOL}


def classify_error_code(code: ErrorCode) -> ErrorCategory:
    """Map a server error code to its taxonomy category."""

    if code in _NOT_FOUND or code in _EXISTS:
        return ErrorCategory.RESOURCE
    if code in _AUTH:
        return ErrorCategory.AUTH
    if code in _THROTTLE:
        return ErrorCategory.THROTTLE
    if code in _TRANSIENT:
        return ErrorCategory.TRANSIENT
    if code in _PROTOCOL:
        return ErrorCategory.PROTOCOL
    return ErrorCategory.VALIDATION


def error_from_code(
    raw_code: int,
    message: str,
    *,
    retry_hint_ms: Optional[int] = None,
) -> NoSQLError:
    """Build the exception matching a server-reported error code."""

    try:
        code = ErrorCode(raw_code)
    except ValueError:
        return TransientServerError(
            TransientErrorKind.SERVER,
            f"unrecognized server error code {raw_code}: {message}",
            code=ErrorCode.UNKNOWN_ERROR,
        )

    category = classify_error_code(code)
    if category is ErrorCategory.RESOURCE:
        kind = ResourceErrorKind.NOT_FOUND if code in _NOT_FOUND else ResourceErrorKind.ALREADY_EXISTS
        return ResourceError(kind, message, code=code)
    if category is ErrorCategory.AUTH:
        return AuthError(AuthErrorKind.SIGNATURE_REJECTED, message, code=code)
    if category is ErrorCategory.THROTTLE:
        retry_after = retry_hint_ms / 1000.0 if retry_hint_ms is not None and retry_hint_ms >= 0 else None
        return ThrottleError(_THROTTLE[code], message, code=code, retry_after=retry_after)
    if category is ErrorCategory.TRANSIENT:
        kind = TransientErrorKind.TIMEOUT if code is ErrorCode.REQUEST_TIMEOUT else TransientErrorKind.SERVER
        return TransientServerError(kind, message, code=code)
    if category is ErrorCategory.PROTOCOL:
        kind = (
            ProtocolErrorKind.UNSUPPORTED_VERSION
            if code is ErrorCode.UNSUPPORTED_PROTOCOL
            else ProtocolErrorKind.MALFORMED
        )
        return ProtocolError(kind, message, code=code)
    return ValidationError(message, code=code)
