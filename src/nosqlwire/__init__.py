"""Async Python client for a NoSQL database wire protocol."""

__version__ = "0.1.0"

from .auth import Credentials, CredentialProvider, RequestSigner, SignatureHeaders, SigningContext, SigningTarget, StaticCredentialProvider
from .client import ClientConfig, NoSQLClient
from .codec import CURRENT_VERSION, SUPPORTED_VERSIONS, decode, encode
from .errors import (
    AuthError,
    AuthErrorKind,
    ErrorCategory,
    ErrorCode,
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
from .executor import RequestExecutor
from .operations import (
    AggregateFunction,
    Capacity,
    Consistency,
    DeleteRequest,
    Durability,
    GetRequest,
    PutOption,
    PutRequest,
    QueryPlan,
    SortSpec,
    TableLimits,
    TableState,
)
from .query import QueryDriver
from .ratelimit import Direction, RateLimiter, RateLimitOptions
from .retry import GiveUp, Retry, RetryOptions, RetryPolicy
from .transport import HttpTransport, HttpxTransport, TransportResponse
from .values import FieldType, Value, ValueAccessError, compare_values

__all__ = [
    "NoSQLClient",
    "ClientConfig",
    "Value",
    "FieldType",
    "ValueAccessError",
    "compare_values",
    "encode",
    "decode",
    "CURRENT_VERSION",
    "SUPPORTED_VERSIONS",
    "Credentials",
    "CredentialProvider",
    "StaticCredentialProvider",
    "SigningContext",
    "SigningTarget",
    "SignatureHeaders",
    "RequestSigner",
    "RetryOptions",
    "RetryPolicy",
    "Retry",
    "GiveUp",
    "RateLimiter",
    "RateLimitOptions",
    "Direction",
    "RequestExecutor",
    "QueryDriver",
    "HttpTransport",
    "HttpxTransport",
    "TransportResponse",
    "AggregateFunction",
    "Capacity",
    "Consistency",
    "Durability",
    "GetRequest",
    "PutRequest",
    "DeleteRequest",
    "PutOption",
    "QueryPlan",
    "SortSpec",
    "TableLimits",
    "TableState",
    "NoSQLError",
    "ErrorCategory",
    "ErrorCode",
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
    "__version__",
]
