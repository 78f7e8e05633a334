"""Tests for per-table token buckets."""

from __future__ import annotations

import pytest

from nosqlwire.operations import TableLimits
from nosqlwire.ratelimit import Direction, RateLimiter, RateLimitOptions


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _limiter(**options) -> tuple[RateLimiter, FakeClock]:
    clock = FakeClock()
    return RateLimiter(RateLimitOptions(**options), clock=clock), clock


def test_half_capacity_from_fresh_bucket_is_immediate() -> None:
    limiter, _ = _limiter()
    limiter.configure("users", read_units=50, write_units=20)

    assert limiter.admit("users", Direction.READ, 25) == 0.0


def test_double_capacity_waits_one_capacity_worth_of_refill() -> None:
    limiter, _ = _limiter()
    limiter.configure("users", read_units=50, write_units=20)

    delay = limiter.admit("users", Direction.READ, 100)
    assert delay == pytest.approx(50 / 50)


def test_empty_bucket_write_waits_for_refill() -> None:
    limiter, clock = _limiter(initial_fill=0.0)
    limiter.configure("orders", read_units=100, write_units=10)

    delay = limiter.admit("orders", Direction.WRITE, 3)
    assert delay == pytest.approx(0.3)

    clock.advance(delay)
    limiter.settle("orders", Direction.WRITE, estimate=3, actual=5)
    budget = limiter.budget("orders", Direction.WRITE)
    assert budget is not None
    assert budget.tokens == pytest.approx(-2.0)


def test_settle_refunds_overestimates() -> None:
    limiter, _ = _limiter()
    limiter.configure("users", read_units=10, write_units=10)

    limiter.admit("users", Direction.WRITE, 4)
    limiter.settle("users", Direction.WRITE, estimate=4, actual=1)

    assert limiter.budget("users", Direction.WRITE).tokens == pytest.approx(9.0)


def test_refill_is_capped_at_burst_capacity() -> None:
    limiter, clock = _limiter()
    limiter.configure("users", read_units=10, write_units=10)

    limiter.admit("users", Direction.READ, 10)
    clock.advance(60)

    assert limiter.budget("users", Direction.READ).tokens == pytest.approx(10.0)


def test_directions_are_independent() -> None:
    limiter, _ = _limiter(initial_fill=0.0)
    limiter.configure("users", read_units=10, write_units=0)

    assert limiter.admit("users", Direction.WRITE, 1000) == 0.0
    assert limiter.admit("users", Direction.READ, 1) == pytest.approx(0.1)


def test_unknown_tables_and_disabled_limiter_are_unlimited() -> None:
    limiter, _ = _limiter()
    assert limiter.admit("other", Direction.READ, 1_000) == 0.0

    disabled, _ = _limiter(enabled=False, initial_fill=0.0)
    disabled.configure("users", read_units=1, write_units=1)
    assert disabled.admit("users", Direction.READ, 1_000) == 0.0


def test_table_names_are_case_insensitive() -> None:
    limiter, _ = _limiter(initial_fill=0.0)
    limiter.configure("Users", read_units=10, write_units=10)

    assert "users" in limiter
    assert limiter.admit("USERS", Direction.READ, 1) == pytest.approx(0.1)


def test_least_recently_used_tables_are_evicted() -> None:
    limiter, _ = _limiter(max_tables=2)
    limiter.configure("a", read_units=1, write_units=1)
    limiter.configure("b", read_units=1, write_units=1)
    limiter.admit("a", Direction.READ, 0.5)
    limiter.configure("c", read_units=1, write_units=1)

    assert "a" in limiter
    assert "b" not in limiter
    assert "c" in limiter
    assert len(limiter) == 2


def test_table_limits_configure_and_clear_budgets() -> None:
    limiter, _ = _limiter()
    limiter.configure_limits("users", TableLimits.provisioned(20, 5, 1))
    assert limiter.budget("users", Direction.WRITE).rate == 5

    limiter.configure_limits("users", TableLimits.on_demand(1))
    assert "users" not in limiter


def test_options_from_config() -> None:
    options = RateLimitOptions.from_config({"maxTables": 8, "initialFill": 0.5})
    assert options.max_tables == 8
    assert options.initial_fill == 0.5

    with pytest.raises(ValueError):
        RateLimitOptions(initial_fill=1.5)
