"""Request signing.

Every request carries an HTTP signature over a fixed header list::

    (request-target) host date content-type content-length x-content-sha256

The signing key is parsed from PEM material supplied by a
:class:`CredentialProvider` and cached until it expires. When several
requests find the cache empty or stale at the same time, they await one
shared derivation.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime, parsedate_to_datetime
from typing import Any, Callable, Optional, Protocol

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ed25519, padding, rsa

from .errors import AuthError, AuthErrorKind

__all__ = [
    "RSA_SHA256",
    "ED25519",
    "Credentials",
    "CredentialProvider",
    "StaticCredentialProvider",
    "SigningContext",
    "SigningTarget",
    "SignatureHeaders",
    "RequestSigner",
]

logger = logging.getLogger(__name__)

RSA_SHA256 = "rsa-sha256"
ED25519 = "ed25519"
SUPPORTED_ALGORITHMS = (RSA_SHA256, ED25519)

SIGNED_HEADERS = ("(request-target)", "host", "date", "content-type", "content-length", "x-content-sha256")
CONTENT_TYPE = "application/octet-stream"
MAX_CLOCK_SKEW = timedelta(seconds=60)


@dataclass(frozen=True, slots=True)
class Credentials:
    """Raw credential material. ``private_key`` is PEM encoded."""

    key_id: str
    private_key: bytes
    algorithm: str = RSA_SHA256
    passphrase: Optional[bytes] = None

    def __repr__(self) -> str:
        return f"Credentials(key_id={self.key_id!r}, algorithm={self.algorithm!r})"


class CredentialProvider(Protocol):
    async def credentials(self) -> Credentials:  # pragma: no cover - protocol definition
        ...


class StaticCredentialProvider:
    """Provider that always returns the same credentials."""

    def __init__(self, credentials: Credentials) -> None:
        self._credentials = credentials

    async def credentials(self) -> Credentials:
        return self._credentials


@dataclass(frozen=True, slots=True)
class SigningTarget:
    """Where signed requests go: host, HTTP method and content type."""

    host: str
    method: str = "post"
    content_type: str = CONTENT_TYPE


@dataclass(frozen=True, slots=True)
class SignatureHeaders:
    authorization: str
    date: str
    content_type: str
    content_length: str
    content_sha256: str

    def as_dict(self) -> dict[str, str]:
        return {
            "authorization": self.authorization,
            "date": self.date,
            "content-type": self.content_type,
            "content-length": self.content_length,
            "x-content-sha256": self.content_sha256,
        }


@dataclass(slots=True)
class SigningContext:
    """Key material reference, key id, algorithm and the cached derived key.

    The derived key is reused until ``expires_at`` on the signer's clock.
    """

    credentials: Credentials
    key: Any
    expires_at: float

    @property
    def key_id(self) -> str:
        return self.credentials.key_id

    @property
    def algorithm(self) -> str:
        return self.credentials.algorithm

    def sign(self, message: bytes) -> bytes:
        if self.algorithm == ED25519:
            return self.key.sign(message)
        return self.key.sign(message, padding.PKCS1v15(), hashes.SHA256())


def _load_key(credentials: Credentials) -> Any:
    if credentials.algorithm not in SUPPORTED_ALGORITHMS:
        raise AuthError(
            AuthErrorKind.UNSUPPORTED_ALGORITHM,
            f"signature algorithm {credentials.algorithm!r} is not supported",
        )
    try:
        key = serialization.load_pem_private_key(credentials.private_key, password=credentials.passphrase)
    except UnsupportedAlgorithm as exc:
        raise AuthError(AuthErrorKind.UNSUPPORTED_ALGORITHM, f"unsupported key type: {exc}") from exc
    except (ValueError, TypeError) as exc:
        raise AuthError(AuthErrorKind.INVALID_KEY, f"unable to load private key: {exc}") from exc

    expected = ed25519.Ed25519PrivateKey if credentials.algorithm == ED25519 else rsa.RSAPrivateKey
    if not isinstance(key, expected):
        raise AuthError(
            AuthErrorKind.INVALID_KEY,
            f"private key type {type(key).__name__} does not match algorithm {credentials.algorithm}",
        )
    return key


class RequestSigner:
    """Build signature headers for outbound request bodies."""

    def __init__(
        self,
        provider: CredentialProvider,
        target: SigningTarget,
        *,
        key_ttl: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if key_ttl <= 0:
            raise ValueError("key_ttl must be positive")
        self._provider = provider
        self._target = target
        self._key_ttl = key_ttl
        self._clock = clock
        self._wall_clock = wall_clock or (lambda: datetime.now(timezone.utc))
        self._key: Optional[SigningContext] = None
        self._refresh: Optional[asyncio.Future[SigningContext]] = None
        self._clock_offset = timedelta(0)
        self.derivations = 0

    @property
    def context(self) -> Optional[SigningContext]:
        """The cached signing key, or ``None`` before the first signature."""

        return self._key

    @property
    def clock_offset(self) -> timedelta:
        return self._clock_offset

    def now(self) -> datetime:
        """Current time corrected by the last clock resynchronization."""

        return self._wall_clock() + self._clock_offset

    def invalidate(self) -> None:
        self._key = None

    def resync(self, server_date: Optional[str]) -> bool:
        """Adopt the server clock when it is more than a minute away from ours.

        Returns ``True`` when the offset changed and a retry is worthwhile.
        """

        if not server_date:
            return False
        try:
            server_now = parsedate_to_datetime(server_date)
        except (TypeError, ValueError):
            logger.debug("Ignoring unparseable server date %r", server_date)
            return False
        if server_now.tzinfo is None:
            server_now = server_now.replace(tzinfo=timezone.utc)
        skew = server_now - self._wall_clock()
        if abs(skew - self._clock_offset) <= MAX_CLOCK_SKEW:
            return False
        logger.warning("Local clock is %.0fs off the server clock, adjusting", skew.total_seconds())
        self._clock_offset = skew
        return True

    async def sign(self, body: bytes, timestamp: datetime, *, path: str) -> SignatureHeaders:
        key = await self._signing_key()

        date = format_datetime(timestamp.astimezone(timezone.utc), usegmt=True)
        digest = base64.b64encode(hashlib.sha256(body).digest()).decode("ascii")
        values = {
            "(request-target)": f"{self._target.method.lower()} {path}",
            "host": self._target.host,
            "date": date,
            "content-type": self._target.content_type,
            "content-length": str(len(body)),
            "x-content-sha256": digest,
        }
        signing_string = "\n".join(f"{name}: {values[name]}" for name in SIGNED_HEADERS)
        signature = base64.b64encode(key.sign(signing_string.encode("utf-8"))).decode("ascii")
        authorization = (
            f'Signature version="1",keyId="{key.key_id}",algorithm="{key.algorithm}",'
            f'headers="{" ".join(SIGNED_HEADERS)}",signature="{signature}"'
        )
        return SignatureHeaders(
            authorization=authorization,
            date=date,
            content_type=self._target.content_type,
            content_length=values["content-length"],
            content_sha256=digest,
        )

    async def _signing_key(self) -> SigningContext:
        key = self._key
        if key is not None and self._clock() < key.expires_at:
            return key
        refresh = self._refresh
        if refresh is None:
            refresh = asyncio.ensure_future(self._derive())
            self._refresh = refresh
            refresh.add_done_callback(self._refresh_done)
        return await asyncio.shield(refresh)

    def _refresh_done(self, future: asyncio.Future[SigningContext]) -> None:
        if self._refresh is future:
            self._refresh = None

    async def _derive(self) -> SigningContext:
        credentials = await self._provider.credentials()
        if not credentials.key_id:
            raise AuthError(AuthErrorKind.INVALID_KEY, "credentials carry no key id")
        key = await asyncio.to_thread(_load_key, credentials)
        self.derivations += 1
        derived = SigningContext(
            credentials=credentials,
            key=key,
            expires_at=self._clock() + self._key_ttl,
        )
        self._key = derived
        logger.debug("Derived signing key %s (%s)", credentials.key_id, credentials.algorithm)
        return derived
