"""Equal-weight basket rebalancer.

Each basket asset is valued in base units (on-hand balance × unit price).
The target for every asset is total_value // asset_count; truncation loss
is left unallocated. Assets above target sell the excess for base, assets
below target buy the deficit with base. Every leg is an independent routed
swap: a failing leg is deferred to the trade queue while the others
proceed, so a rebalance can complete partially and converge over later
passes.

Sells run before buys so their proceeds can fund the deficits. Buys are
clamped to the free base balance.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from basketvault.errors import VenueError
from basketvault.events import EventKind
from basketvault.types import ONE, OperationKind, Side, SwapOutcome

if TYPE_CHECKING:
    from basketvault.config import PortfolioConfig
    from basketvault.events import EventBus
    from basketvault.venue.base import AssetTransfer
    from basketvault.venue.venue_router import VenueRouter

logger = logging.getLogger(__name__)


def equal_weight_targets(values: Sequence[int]) -> list[int]:
    """Per-asset target values. Sum ≤ total, loss < len(values)."""
    if not values:
        return []
    target = sum(values) // len(values)
    return [target] * len(values)


@dataclass
class RebalanceLeg:
    asset: str
    side: Side
    amount_in: int  # asset units for SELL, base units for BUY
    value_delta: int  # |current - target| in base units


@dataclass
class RebalancePlan:
    prices: dict[str, int]
    values: dict[str, int]
    total_value: int
    target_value: int
    legs: list[RebalanceLeg]

    @property
    def truncation_loss(self) -> int:
        return self.total_value - self.target_value * len(self.values)


@dataclass
class RebalanceReport:
    plan: RebalancePlan
    outcomes: list[SwapOutcome] = field(default_factory=list)
    skipped: list[RebalanceLeg] = field(default_factory=list)

    @property
    def executed(self) -> int:
        return sum(1 for o in self.outcomes if o.executed)

    @property
    def queued(self) -> int:
        return sum(1 for o in self.outcomes if not o.executed)


class Rebalancer:
    def __init__(
        self,
        router: VenueRouter,
        transfer: AssetTransfer,
        portfolio: PortfolioConfig,
        free_base: Callable[[], int],
        events: EventBus | None = None,
    ) -> None:
        self._router = router
        self._transfer = transfer
        self._portfolio = portfolio
        self._free_base = free_base
        self._events = events

        # Metrics
        self.rebalances: int = 0

    def unit_price(self, asset: str) -> int:
        """Base units per ONE unit of ``asset``; 0 when unpriceable.

        Concentrated-liquidity pool state first, then a 1-unit
        constant-product quote.
        """
        base = self._portfolio.base_asset
        price = self._router.concentrated.pool_price(asset, base)
        if price is not None:
            return price
        try:
            return self._router.constant_product.quote(ONE, asset, base)
        except VenueError:
            return 0

    def plan(self) -> RebalancePlan:
        engine = self._portfolio.engine_address
        prices: dict[str, int] = {}
        values: dict[str, int] = {}
        for asset in self._portfolio.basket:
            price = self.unit_price(asset)
            prices[asset] = price
            values[asset] = self._transfer.balance_of(asset, engine) * price // ONE

        value_list = list(values.values())
        total = sum(value_list)
        targets = equal_weight_targets(value_list)
        target = targets[0] if targets else 0

        legs: list[RebalanceLeg] = []
        for asset, value in values.items():
            price = prices[asset]
            if price <= 0:
                logger.warning("Rebalance: no price for %s, leaving untouched", asset)
                continue
            if value > target:
                excess = value - target
                legs.append(RebalanceLeg(asset, Side.SELL, excess * ONE // price, excess))
            elif value < target:
                deficit = target - value
                legs.append(RebalanceLeg(asset, Side.BUY, deficit, deficit))

        return RebalancePlan(
            prices=prices, values=values, total_value=total, target_value=target, legs=legs,
        )

    def rebalance(self, initiator: str) -> RebalanceReport:
        plan = self.plan()
        report = RebalanceReport(plan=plan)
        base = self._portfolio.base_asset

        for leg in plan.legs:
            if leg.side != Side.SELL:
                continue
            if not self._router.is_meaningful(leg.amount_in):
                report.skipped.append(leg)
                continue
            report.outcomes.append(self._router.route(
                leg.amount_in, leg.asset, base, OperationKind.REBALANCE, initiator,
            ))

        budget = self._free_base()
        for leg in plan.legs:
            if leg.side != Side.BUY:
                continue
            amount = min(leg.amount_in, budget)
            if not self._router.is_meaningful(amount):
                report.skipped.append(leg)
                continue
            report.outcomes.append(self._router.route(
                amount, base, leg.asset, OperationKind.REBALANCE, initiator,
            ))
            # Queued buys still own their base until the retry resolves
            budget -= amount

        self.rebalances += 1
        logger.info(
            "Rebalance: total=%d target=%d executed=%d queued=%d skipped=%d",
            plan.total_value, plan.target_value, report.executed, report.queued,
            len(report.skipped),
        )
        if self._events is not None:
            self._events.emit(
                EventKind.REBALANCE_COMPLETED,
                initiator=initiator,
                total_value=plan.total_value,
                target_value=plan.target_value,
                executed=report.executed,
                queued=report.queued,
                skipped=len(report.skipped),
            )
        return report
