"""In-memory market for simulation and tests.

AssetBook is the asset-transfer primitive: plain balances keyed by asset and
holder. Two venues trade against pools held in the book:

  ConstantProductVenue       x * y = k, fee in basis points on the input
  ConcentratedLiquidityVenue single-range pool tracked as a Q64.96 square
                             root price and liquidity L, fee in pips (1e-6)

Both venues check the deadline against the injected clock, enforce min_out,
and move tokens through the book so conservation holds across the market.
"""

from __future__ import annotations

import logging
import math
import time
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING

from basketvault.errors import TransferError, VenueError
from basketvault.gate.cost_oracle import CostReading
from basketvault.types import BPS, ONE

if TYPE_CHECKING:
    from basketvault.config import Config

logger = logging.getLogger(__name__)

Q96 = 2**96
PIPS = 1_000_000


class SimClock:
    """Manually advanced clock, callable like ``time.time``."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class AssetBook:
    """Balances per (asset, holder). Transfers fail on overdraft or frozen assets."""

    def __init__(self) -> None:
        self._balances: dict[str, dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._frozen: set[str] = set()

        # Metrics
        self.transfers: int = 0

    def mint(self, asset: str, holder: str, amount: int) -> None:
        if amount < 0:
            raise TransferError(f"Cannot mint negative amount {amount}")
        self._balances[asset][holder] += amount

    def balance_of(self, asset: str, holder: str) -> int:
        return self._balances[asset][holder]

    def move(self, asset: str, src: str, dst: str, amount: int) -> None:
        if amount < 0:
            raise TransferError(f"Negative transfer of {amount} {asset}")
        if asset in self._frozen:
            raise TransferError(f"{asset} transfers are frozen")
        held = self._balances[asset][src]
        if held < amount:
            raise TransferError(f"{src} holds {held} {asset}, cannot send {amount}")
        self._balances[asset][src] = held - amount
        self._balances[asset][dst] += amount
        self.transfers += 1

    def freeze(self, asset: str) -> None:
        self._frozen.add(asset)

    def unfreeze(self, asset: str) -> None:
        self._frozen.discard(asset)

    def supply(self, asset: str) -> int:
        return sum(self._balances[asset].values())


def _pair(asset_a: str, asset_b: str) -> tuple[str, str]:
    return (asset_a, asset_b) if asset_a < asset_b else (asset_b, asset_a)


class _BookVenue:
    """Shared plumbing: halting, deadline and min_out checks, settlement."""

    name = "venue"

    def __init__(self, book: AssetBook, clock: Callable[[], float]) -> None:
        self._book = book
        self._clock = clock
        self._halted = False

        # Metrics
        self.swaps: int = 0
        self.rejections: int = 0

    @property
    def halted(self) -> bool:
        return self._halted

    def halt(self) -> None:
        """Reject every swap until resumed. Quotes keep working."""
        self._halted = True

    def resume(self) -> None:
        self._halted = False

    def _pool_address(self, asset_a: str, asset_b: str) -> str:
        token0, token1 = _pair(asset_a, asset_b)
        return f"{self.name}:{token0}/{token1}"

    def _reject(self, reason: str) -> VenueError:
        self.rejections += 1
        return VenueError(f"{self.name}: {reason}")

    def _precheck(self, amount_in: int, deadline: float) -> None:
        if self._halted:
            raise self._reject("trading halted")
        if self._clock() > deadline:
            raise self._reject("deadline expired")
        if amount_in <= 0:
            raise self._reject(f"invalid amount {amount_in}")

    def _settle(
        self, amount_in: int, amount_out: int, asset_in: str, asset_out: str, recipient: str,
    ) -> None:
        pool = self._pool_address(asset_in, asset_out)
        try:
            self._book.move(asset_in, recipient, pool, amount_in)
        except TransferError as e:
            raise self._reject(f"input transfer failed: {e}") from e
        self._book.move(asset_out, pool, recipient, amount_out)
        self.swaps += 1


class ConstantProductVenue(_BookVenue):
    name = "cp"

    def __init__(
        self,
        book: AssetBook,
        fee_bps: int = 30,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(book, clock)
        self._fee_bps = fee_bps
        self._pools: set[tuple[str, str]] = set()

    def add_pool(self, asset_a: str, asset_b: str, amount_a: int, amount_b: int) -> None:
        self._pools.add(_pair(asset_a, asset_b))
        pool = self._pool_address(asset_a, asset_b)
        self._book.mint(asset_a, pool, amount_a)
        self._book.mint(asset_b, pool, amount_b)

    def reserves(self, asset_in: str, asset_out: str) -> tuple[int, int]:
        if _pair(asset_in, asset_out) not in self._pools:
            raise VenueError(f"cp: no pool for {asset_in}/{asset_out}")
        pool = self._pool_address(asset_in, asset_out)
        return self._book.balance_of(asset_in, pool), self._book.balance_of(asset_out, pool)

    def quote(self, amount_in: int, asset_in: str, asset_out: str) -> int:
        reserve_in, reserve_out = self.reserves(asset_in, asset_out)
        if amount_in <= 0 or reserve_in == 0 or reserve_out == 0:
            return 0
        in_with_fee = amount_in * (BPS - self._fee_bps)
        return in_with_fee * reserve_out // (reserve_in * BPS + in_with_fee)

    def swap(
        self,
        amount_in: int,
        asset_in: str,
        asset_out: str,
        min_out: int,
        recipient: str,
        deadline: float,
    ) -> int:
        self._precheck(amount_in, deadline)
        amount_out = self.quote(amount_in, asset_in, asset_out)
        if amount_out <= 0 or amount_out < min_out:
            raise self._reject(f"output {amount_out} below min_out {min_out}")
        self._settle(amount_in, amount_out, asset_in, asset_out, recipient)
        return amount_out


@dataclass
class _RangePool:
    token0: str
    token1: str
    sqrt_price_x96: int
    liquidity: int


class ConcentratedLiquidityVenue(_BookVenue):
    """Single full-range pool per pair, priced as token1 per token0."""

    name = "cl"

    def __init__(
        self,
        book: AssetBook,
        fee_pips: int = 3000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(book, clock)
        self._fee_pips = fee_pips
        self._pools: dict[tuple[str, str], _RangePool] = {}

    def add_pool(self, asset_a: str, asset_b: str, amount_a: int, amount_b: int) -> None:
        if amount_a <= 0 or amount_b <= 0:
            raise ValueError("pool amounts must be > 0")
        token0, token1 = _pair(asset_a, asset_b)
        amount0, amount1 = (amount_a, amount_b) if token0 == asset_a else (amount_b, amount_a)
        self._pools[(token0, token1)] = _RangePool(
            token0=token0,
            token1=token1,
            sqrt_price_x96=math.isqrt(amount1 * Q96 * Q96 // amount0),
            liquidity=math.isqrt(amount0 * amount1),
        )
        pool = self._pool_address(asset_a, asset_b)
        self._book.mint(token0, pool, amount0)
        self._book.mint(token1, pool, amount1)

    def pool_price(self, asset: str, base: str) -> int | None:
        pool = self._pools.get(_pair(asset, base))
        if pool is None:
            return None
        s = pool.sqrt_price_x96
        if asset == pool.token0:
            return s * s * ONE // (Q96 * Q96)
        return ONE * Q96 * Q96 // (s * s)

    def _simulate(self, amount_in: int, asset_in: str, asset_out: str) -> tuple[_RangePool, int, int]:
        pool = self._pools.get(_pair(asset_in, asset_out))
        if pool is None:
            raise VenueError(f"cl: no pool for {asset_in}/{asset_out}")
        s, liq = pool.sqrt_price_x96, pool.liquidity
        net_in = amount_in * (PIPS - self._fee_pips) // PIPS
        if net_in <= 0 or liq == 0:
            return pool, s, 0
        if asset_in == pool.token0:
            s_next = liq * Q96 * s // (liq * Q96 + net_in * s)
            amount_out = liq * (s - s_next) // Q96
        else:
            s_next = s + net_in * Q96 // liq
            amount_out = liq * Q96 * (s_next - s) // (s * s_next)
        held = self._book.balance_of(asset_out, self._pool_address(asset_in, asset_out))
        return pool, s_next, max(0, min(amount_out, held))

    def quote(self, amount_in: int, asset_in: str, asset_out: str) -> int:
        return self._simulate(amount_in, asset_in, asset_out)[2]

    def swap(
        self,
        amount_in: int,
        asset_in: str,
        asset_out: str,
        min_out: int,
        recipient: str,
        deadline: float,
    ) -> int:
        self._precheck(amount_in, deadline)
        pool, s_next, amount_out = self._simulate(amount_in, asset_in, asset_out)
        if amount_out <= 0 or amount_out < min_out:
            raise self._reject(f"output {amount_out} below min_out {min_out}")
        self._settle(amount_in, amount_out, asset_in, asset_out, recipient)
        pool.sqrt_price_x96 = s_next
        return amount_out


class ScriptedCostOracle:
    """Cost oracle whose reading is set by the caller.

    ``updated_at`` follows the clock unless pinned with ``set_cost(..., at=)``.
    """

    def __init__(
        self,
        cost: Decimal = Decimal("20"),
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._cost = cost
        self._updated_at: float | None = None
        self._clock = clock

        # Metrics
        self.reads: int = 0

    def set_cost(self, cost: Decimal, at: float | None = None) -> None:
        self._cost = cost
        self._updated_at = at

    def read(self) -> CostReading:
        self.reads += 1
        ts = self._clock() if self._updated_at is None else self._updated_at
        return CostReading(value=self._cost, updated_at=ts)


@dataclass
class Market:
    book: AssetBook
    constant_product: ConstantProductVenue
    concentrated: ConcentratedLiquidityVenue
    oracle: ScriptedCostOracle


def build_market(cfg: Config, clock: Callable[[], float] = time.time) -> Market:
    """Seed both venues with a pool per basket asset against the base asset.

    The concentrated pool gets twice the depth of the constant-product pool
    so that larger legs route to it.
    """
    book = AssetBook()
    cp = ConstantProductVenue(book, clock=clock)
    cl = ConcentratedLiquidityVenue(book, clock=clock)
    base = cfg.vault.base_asset
    base_depth = cfg.sim.base_liquidity * ONE
    asset_depth = cfg.sim.asset_liquidity * ONE
    for asset in cfg.vault.basket:
        cp.add_pool(base, asset, base_depth, asset_depth)
        cl.add_pool(base, asset, 2 * base_depth, 2 * asset_depth)
    logger.info(
        "Simulated market: %d assets, %d/%d whole units per pool",
        len(cfg.vault.basket), cfg.sim.base_liquidity, cfg.sim.asset_liquidity,
    )
    return Market(
        book=book,
        constant_product=cp,
        concentrated=cl,
        oracle=ScriptedCostOracle(cfg.sim.low_cost, clock=clock),
    )
