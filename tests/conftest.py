"""Shared test fixtures."""

from __future__ import annotations

from decimal import Decimal
from pathlib import Path

import pytest

from basketvault.config import Config, PortfolioConfig, load_config
from basketvault.errors import VenueError
from basketvault.gate.cost_oracle import CostReading
from basketvault.sim.market import SimClock
from basketvault.types import QueuedOperation


class FakeOracle:
    """Cost oracle with a settable reading that tracks the clock."""

    def __init__(self, clock: SimClock, cost: Decimal = Decimal("20")) -> None:
        self.cost = cost
        self.error: Exception | None = None
        self.reads = 0
        self._clock = clock

    def read(self) -> CostReading:
        self.reads += 1
        if self.error is not None:
            raise self.error
        return CostReading(value=self.cost, updated_at=self._clock())


class FakeVenue:
    """Scripted venue. ``out=None`` means the pair cannot be quoted."""

    def __init__(self, out: int | None = 0, pool_prices: dict[str, int] | None = None) -> None:
        self.out = out
        self.swap_out: int | None = None
        self.fail = False
        self.fail_assets: set[str] = set()
        self.pool_prices = pool_prices or {}
        self.quote_calls = 0
        self.swaps: list[tuple[int, str, str, int, str, float]] = []

    def quote(self, amount_in: int, asset_in: str, asset_out: str) -> int:
        self.quote_calls += 1
        if self.out is None:
            raise VenueError("no pool")
        return self.out

    def swap(
        self,
        amount_in: int,
        asset_in: str,
        asset_out: str,
        min_out: int,
        recipient: str,
        deadline: float,
    ) -> int:
        if self.fail or asset_in in self.fail_assets or asset_out in self.fail_assets:
            raise VenueError("rejected")
        self.swaps.append((amount_in, asset_in, asset_out, min_out, recipient, deadline))
        return self.out if self.swap_out is None else self.swap_out

    def pool_price(self, asset: str, base: str) -> int | None:
        return self.pool_prices.get(asset)


class RecordingExecutor:
    def __init__(self) -> None:
        self.executed: list[QueuedOperation] = []

    def execute_deferred(self, op: QueuedOperation) -> None:
        self.executed.append(op)


@pytest.fixture
def default_config() -> Config:
    return load_config(Path("/dev/null"))  # All defaults


@pytest.fixture
def clock() -> SimClock:
    return SimClock(start=1_700_000_000.0)


@pytest.fixture
def portfolio() -> PortfolioConfig:
    # No minimum unit so small, readable amounts can be routed
    return PortfolioConfig(min_unit_amount=0)


@pytest.fixture
def oracle(clock: SimClock) -> FakeOracle:
    return FakeOracle(clock)


@pytest.fixture
def cp_venue() -> FakeVenue:
    return FakeVenue(out=100)


@pytest.fixture
def cl_venue() -> FakeVenue:
    return FakeVenue(out=0)
