"""HTTP transport for request frames."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Mapping, Optional, Protocol

import httpx

from .errors import TransientErrorKind, TransientServerError

__all__ = ["HttpTransport", "TransportResponse", "HttpxTransport"]

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TransportResponse:
    status: int
    body: bytes = b""
    headers: Mapping[str, str] = field(default_factory=dict)

    def header(self, name: str) -> Optional[str]:
        wanted = name.lower()
        for key, value in self.headers.items():
            if key.lower() == wanted:
                return value
        return None


class HttpTransport(Protocol):
    """Abstraction for posting one binary frame and reading the reply.

    Implementations transmit ``headers`` unmodified and report network
    failures as :class:`~nosqlwire.errors.TransientServerError`.
    """

    async def post(
        self, path: str, body: bytes, headers: Mapping[str, str]
    ) -> TransportResponse:  # pragma: no cover - protocol definition
        ...

    async def close(self) -> None:  # pragma: no cover - protocol definition
        ...


class HttpxTransport:
    """Default transport backed by a lazily created ``httpx.AsyncClient``."""

    def __init__(
        self,
        endpoint: str,
        *,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        if not endpoint:
            raise ValueError("endpoint must be provided")
        self.endpoint = endpoint.rstrip("/")
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    async def post(self, path: str, body: bytes, headers: Mapping[str, str]) -> TransportResponse:
        client = await self._get_client()
        url = f"{self.endpoint}{path}"
        try:
            response = await client.post(url, content=body, headers=dict(headers))
        except httpx.TimeoutException as exc:
            raise TransientServerError(TransientErrorKind.TIMEOUT, f"request to {url} timed out") from exc
        except httpx.RequestError as exc:
            raise TransientServerError(TransientErrorKind.TRANSPORT, f"request to {url} failed: {exc}") from exc
        logger.debug("POST %s -> %s (%d bytes)", url, response.status_code, len(response.content))
        return TransportResponse(
            status=response.status_code,
            body=response.content,
            headers=dict(response.headers),
        )
