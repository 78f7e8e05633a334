"""Retry decisions for failed round trips."""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Union

from .errors import ErrorCategory, NoSQLError, ThrottleError

__all__ = ["RetryOptions", "Retry", "GiveUp", "Decision", "RetryPolicy", "RETRYABLE_CATEGORIES"]

RETRYABLE_CATEGORIES = frozenset({ErrorCategory.THROTTLE, ErrorCategory.TRANSIENT})


def _pick(config: Mapping[str, Any], snake: str, camel: str, default: Any) -> Any:
    value = config.get(snake)
    if value is None:
        value = config.get(camel, default)
    return value


@dataclass(slots=True)
class RetryOptions:
    """Configuration for retrying throttled and transient failures.

    ``jitter_ms`` defaults to ``initial_delay_ms`` and may not exceed it,
    which keeps successive delays non-decreasing.
    """

    attempts: int = 5
    initial_delay_ms: int = 100
    max_delay_ms: int = 5_000
    max_elapsed_ms: int = 30_000
    jitter_ms: Optional[int] = None

    def __post_init__(self) -> None:
        if self.attempts <= 0:
            raise ValueError("retry.attempts must be greater than zero")
        if self.initial_delay_ms < 0:
            raise ValueError("retry.initial_delay_ms cannot be negative")
        if self.max_delay_ms < 0:
            raise ValueError("retry.max_delay_ms cannot be negative")
        if self.max_elapsed_ms < 0:
            raise ValueError("retry.max_elapsed_ms cannot be negative")
        if self.jitter_ms is None:
            self.jitter_ms = self.initial_delay_ms
        if self.jitter_ms < 0:
            raise ValueError("retry.jitter_ms cannot be negative")
        if self.jitter_ms > self.initial_delay_ms:
            raise ValueError("retry.jitter_ms cannot exceed retry.initial_delay_ms")

    @classmethod
    def from_config(cls, config: RetryOptions | Mapping[str, Any] | None) -> "RetryOptions":
        if config is None:
            return cls()
        if isinstance(config, RetryOptions):
            return cls(
                attempts=config.attempts,
                initial_delay_ms=config.initial_delay_ms,
                max_delay_ms=config.max_delay_ms,
                max_elapsed_ms=config.max_elapsed_ms,
                jitter_ms=config.jitter_ms,
            )
        jitter = _pick(config, "jitter_ms", "jitterMs", None)
        return cls(
            attempts=int(config.get("attempts", 5)),
            initial_delay_ms=int(_pick(config, "initial_delay_ms", "initialDelayMs", 100)),
            max_delay_ms=int(_pick(config, "max_delay_ms", "maxDelayMs", 5_000)),
            max_elapsed_ms=int(_pick(config, "max_elapsed_ms", "maxElapsedMs", 30_000)),
            jitter_ms=None if jitter is None else int(jitter),
        )


@dataclass(frozen=True, slots=True)
class Retry:
    delay: float


@dataclass(frozen=True, slots=True)
class GiveUp:
    reason: str


Decision = Union[Retry, GiveUp]


class RetryPolicy:
    """Stateless apart from its random source; safe to share between calls."""

    def __init__(self, options: RetryOptions | Mapping[str, Any] | None = None, *, rng: Optional[random.Random] = None) -> None:
        self.options = RetryOptions.from_config(options)
        self._rng = rng or random.Random()

    def backoff(self, attempt: int) -> float:
        """Delay in seconds before retry number ``attempt`` (1-based)."""

        base = self.options.initial_delay_ms / 1000.0
        cap = self.options.max_delay_ms / 1000.0
        jitter = self._rng.random() * (self.options.jitter_ms or 0) / 1000.0
        # Bound the exponent so huge attempt numbers cannot overflow.
        exponent = min(max(attempt - 1, 0), 62)
        return min(cap, base * (2**exponent) + jitter)

    def decide(
        self,
        error: NoSQLError | ErrorCategory,
        attempt: int,
        elapsed: float,
        retry_after: Optional[float] = None,
    ) -> Decision:
        """Decide whether the ``attempt``-th failed attempt is retried.

        ``elapsed`` is the wall time in seconds spent on the call so far.
        """

        if isinstance(error, NoSQLError):
            category = error.category
            if retry_after is None and isinstance(error, ThrottleError):
                retry_after = error.retry_after
        else:
            category = ErrorCategory(error)

        if category not in RETRYABLE_CATEGORIES:
            return GiveUp(f"{category.value} errors are not retried")
        if attempt >= self.options.attempts:
            return GiveUp(f"gave up after {attempt} attempts")
        if elapsed * 1000.0 >= self.options.max_elapsed_ms:
            return GiveUp(f"gave up after {elapsed:.3f}s")
        if category is ErrorCategory.THROTTLE and retry_after is not None and retry_after >= 0:
            return Retry(retry_after)
        return Retry(self.backoff(attempt))
