"""Client-side token buckets per table and direction.

Admission reserves the estimated units right away and lets the balance go
negative; the caller sleeps for the returned delay, which is how long the
refill takes to pay the debt back. Once the server reports what a request
really consumed, :meth:`RateLimiter.settle` corrects the bucket by the
difference so the long-run debit equals the billed units.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Mapping, Optional

from .operations import CapacityMode, TableLimits

__all__ = ["Direction", "RateLimitOptions", "RateBudget", "RateLimiter"]

logger = logging.getLogger(__name__)


class Direction(str, Enum):
    READ = "read"
    WRITE = "write"


@dataclass(slots=True)
class RateLimitOptions:
    """``initial_fill`` is the fraction of burst capacity a new bucket starts with."""

    enabled: bool = True
    max_tables: int = 1024
    initial_fill: float = 1.0
    burst_seconds: float = 1.0

    def __post_init__(self) -> None:
        if self.max_tables <= 0:
            raise ValueError("rate_limit.max_tables must be greater than zero")
        if not 0.0 <= self.initial_fill <= 1.0:
            raise ValueError("rate_limit.initial_fill must be between 0 and 1")
        if self.burst_seconds <= 0:
            raise ValueError("rate_limit.burst_seconds must be positive")

    @classmethod
    def from_config(cls, config: RateLimitOptions | Mapping[str, Any] | None) -> "RateLimitOptions":
        if config is None:
            return cls()
        if isinstance(config, RateLimitOptions):
            return cls(
                enabled=config.enabled,
                max_tables=config.max_tables,
                initial_fill=config.initial_fill,
                burst_seconds=config.burst_seconds,
            )
        max_tables = config.get("max_tables")
        if max_tables is None:
            max_tables = config.get("maxTables", 1024)
        initial_fill = config.get("initial_fill")
        if initial_fill is None:
            initial_fill = config.get("initialFill", 1.0)
        burst = config.get("burst_seconds")
        if burst is None:
            burst = config.get("burstSeconds", 1.0)
        return cls(
            enabled=bool(config.get("enabled", True)),
            max_tables=int(max_tables),
            initial_fill=float(initial_fill),
            burst_seconds=float(burst),
        )


@dataclass(slots=True)
class RateBudget:
    """One token bucket. ``tokens`` may be negative while requests owe units."""

    rate: float
    capacity: float
    tokens: float
    updated: float

    def refill(self, now: float) -> None:
        elapsed = now - self.updated
        if elapsed > 0:
            self.tokens = min(self.capacity, self.tokens + elapsed * self.rate)
        self.updated = now

    def reserve(self, units: float) -> float:
        self.tokens -= units
        if self.tokens >= 0:
            return 0.0
        return -self.tokens / self.rate


@dataclass(slots=True)
class _TableBudgets:
    read: Optional[RateBudget] = None
    write: Optional[RateBudget] = None
    limits: Optional[TableLimits] = field(default=None, repr=False)

    def pick(self, direction: Direction) -> Optional[RateBudget]:
        return self.read if direction is Direction.READ else self.write


class RateLimiter:
    """Per-client registry of table budgets, bounded with LRU eviction."""

    def __init__(
        self,
        options: RateLimitOptions | Mapping[str, Any] | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.options = RateLimitOptions.from_config(options)
        self._clock = clock
        self._tables: OrderedDict[str, _TableBudgets] = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._tables)

    def __contains__(self, table: object) -> bool:
        if not isinstance(table, str):
            return False
        with self._lock:
            return table.lower() in self._tables

    def configure(self, table: str, read_units: float, write_units: float) -> None:
        """Set per-second budgets for ``table``. Zero means no limit in that direction."""

        if read_units < 0 or write_units < 0:
            raise ValueError("rate limits cannot be negative")
        key = table.lower()
        now = self._clock()
        with self._lock:
            entry = self._tables.get(key) or _TableBudgets()
            entry.read = self._rebuild(entry.read, read_units, now)
            entry.write = self._rebuild(entry.write, write_units, now)
            self._tables[key] = entry
            self._tables.move_to_end(key)
            while len(self._tables) > self.options.max_tables:
                evicted, _ = self._tables.popitem(last=False)
                logger.debug("Evicted rate budget for table %s", evicted)
        logger.debug("Rate budget for %s: %s read/s, %s write/s", table, read_units, write_units)

    def configure_limits(self, table: str, limits: Optional[TableLimits]) -> None:
        """Apply limits reported by a table response."""

        if limits is None or limits.mode is CapacityMode.ON_DEMAND:
            self.forget(table)
            return
        self.configure(table, limits.read_units, limits.write_units)

    def forget(self, table: str) -> None:
        with self._lock:
            self._tables.pop(table.lower(), None)

    def budget(self, table: str, direction: Direction) -> Optional[RateBudget]:
        """Return a refreshed copy of the bucket state, or ``None`` when unlimited."""

        with self._lock:
            entry = self._tables.get(table.lower())
            bucket = entry.pick(direction) if entry is not None else None
            if bucket is None:
                return None
            bucket.refill(self._clock())
            return RateBudget(bucket.rate, bucket.capacity, bucket.tokens, bucket.updated)

    def admit(self, table: Optional[str], direction: Direction, units: float) -> float:
        """Reserve ``units`` and return how long the caller must wait first."""

        if not self.options.enabled or not table or units <= 0:
            return 0.0
        key = table.lower()
        with self._lock:
            entry = self._tables.get(key)
            if entry is None:
                return 0.0
            self._tables.move_to_end(key)
            bucket = entry.pick(direction)
            if bucket is None:
                return 0.0
            bucket.refill(self._clock())
            return bucket.reserve(units)

    def settle(self, table: Optional[str], direction: Direction, estimate: float, actual: float) -> None:
        """Replace a reservation of ``estimate`` units by the ``actual`` consumption."""

        if not self.options.enabled or not table or estimate == actual:
            return
        with self._lock:
            entry = self._tables.get(table.lower())
            bucket = entry.pick(direction) if entry is not None else None
            if bucket is None:
                return
            bucket.refill(self._clock())
            bucket.tokens = min(bucket.capacity, bucket.tokens + estimate - actual)

    def _rebuild(self, bucket: Optional[RateBudget], rate: float, now: float) -> Optional[RateBudget]:
        if rate <= 0:
            return None
        capacity = rate * self.options.burst_seconds
        if bucket is None:
            return RateBudget(rate, capacity, capacity * self.options.initial_fill, now)
        bucket.refill(now)
        bucket.rate = rate
        bucket.capacity = capacity
        bucket.tokens = min(bucket.tokens, capacity)
        return bucket
