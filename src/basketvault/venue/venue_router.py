"""Venue Router: best-of-two quotation, slippage bounds, deferred failure.

Routing a swap:
  1. Validate that the amount split across the basket is above the minimum
     meaningful unit (fails fast, no venue is touched).
  2. Read-only quote from the constant-product and concentrated-liquidity
     venues. Higher output wins; ties go to constant-product.
  3. min_out = expected_out * (10000 - slippage_bps) / 10000.
  4. Execute with a short deadline. A venue failure is never retried inline
     and never raised to the caller: a SLIPPAGE_FAILURE entry is queued and
     the outcome reports QUEUED.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TYPE_CHECKING

from basketvault.errors import ValidationError, VenueError
from basketvault.events import EventKind
from basketvault.types import (
    BPS,
    DeferralReason,
    OperationKind,
    Quote,
    SwapOutcome,
    SwapStatus,
    VenueKind,
)

if TYPE_CHECKING:
    from basketvault.config import PortfolioConfig
    from basketvault.events import EventBus
    from basketvault.queueing.trade_queue import TradeQueue
    from basketvault.venue.base import PoolPriceVenue, PricingVenue

logger = logging.getLogger(__name__)


class VenueRouter:
    def __init__(
        self,
        constant_product: PricingVenue,
        concentrated: PoolPriceVenue,
        queue: TradeQueue,
        portfolio: PortfolioConfig,
        events: EventBus | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._venues: dict[VenueKind, PricingVenue] = {
            VenueKind.CONSTANT_PRODUCT: constant_product,
            VenueKind.CONCENTRATED: concentrated,
        }
        self._concentrated = concentrated
        self._queue = queue
        self._portfolio = portfolio
        self._events = events
        self._clock = clock

        # Metrics
        self.swaps_executed: int = 0
        self.swaps_queued: int = 0

    @property
    def concentrated(self) -> PoolPriceVenue:
        return self._concentrated

    @property
    def constant_product(self) -> PricingVenue:
        return self._venues[VenueKind.CONSTANT_PRODUCT]

    # --- Validation ---

    def is_meaningful(self, amount_in: int) -> bool:
        """Whether ``amount_in`` split across the basket exceeds the minimum unit."""
        if amount_in <= 0:
            return False
        return amount_in // self._portfolio.basket_size > self._portfolio.min_unit_amount

    def ensure_meaningful(self, amount_in: int) -> None:
        if not self.is_meaningful(amount_in):
            raise ValidationError(
                f"Swap amount {amount_in} too small for basket of "
                f"{self._portfolio.basket_size} (min unit {self._portfolio.min_unit_amount})",
            )

    # --- Quotation ---

    def get_best_quote(self, amount_in: int, asset_in: str, asset_out: str) -> Quote:
        cp_out = self._quote_or_zero(VenueKind.CONSTANT_PRODUCT, amount_in, asset_in, asset_out)
        cl_out = self._quote_or_zero(VenueKind.CONCENTRATED, amount_in, asset_in, asset_out)
        if cl_out > cp_out:
            return Quote(venue=VenueKind.CONCENTRATED, expected_out=cl_out)
        return Quote(venue=VenueKind.CONSTANT_PRODUCT, expected_out=cp_out)

    def min_acceptable_out(self, expected_out: int) -> int:
        return expected_out * (BPS - self._portfolio.slippage_tolerance_bps) // BPS

    def _quote_or_zero(
        self, venue: VenueKind, amount_in: int, asset_in: str, asset_out: str,
    ) -> int:
        try:
            return max(0, self._venues[venue].quote(amount_in, asset_in, asset_out))
        except VenueError as e:
            logger.debug("No %s quote for %s->%s: %s", venue.value, asset_in, asset_out, e)
            return 0

    # --- Execution ---

    def route(
        self,
        amount_in: int,
        asset_in: str,
        asset_out: str,
        kind: OperationKind,
        initiator: str,
    ) -> SwapOutcome:
        """Validate, quote, and execute; venue failures are queued."""
        self.ensure_meaningful(amount_in)
        quote = self.get_best_quote(amount_in, asset_in, asset_out)
        if quote.expected_out <= 0:
            logger.warning("No liquidity for %s->%s, deferring %d", asset_in, asset_out, amount_in)
            return self._defer(amount_in, asset_in, asset_out, kind, initiator)
        return self.execute_swap(
            quote.venue, amount_in, asset_in, asset_out,
            self.min_acceptable_out(quote.expected_out), kind, initiator,
        )

    def execute_swap(
        self,
        venue: VenueKind,
        amount_in: int,
        asset_in: str,
        asset_out: str,
        min_out: int,
        kind: OperationKind,
        initiator: str,
    ) -> SwapOutcome:
        try:
            amount_out = self._execute(venue, amount_in, asset_in, asset_out, min_out)
        except VenueError as e:
            logger.warning(
                "Swap %s->%s on %s failed (%s), deferring", asset_in, asset_out, venue.value, e,
            )
            return self._defer(amount_in, asset_in, asset_out, kind, initiator)
        return SwapOutcome(
            status=SwapStatus.EXECUTED, amount_in=amount_in, amount_out=amount_out, venue=venue,
        )

    def attempt(self, amount_in: int, asset_in: str, asset_out: str) -> SwapOutcome:
        """Quote and execute without queueing. Raises VenueError on failure."""
        quote = self.get_best_quote(amount_in, asset_in, asset_out)
        if quote.expected_out <= 0:
            raise VenueError(f"No liquidity for {asset_in}->{asset_out}")
        amount_out = self._execute(
            quote.venue, amount_in, asset_in, asset_out,
            self.min_acceptable_out(quote.expected_out),
        )
        return SwapOutcome(
            status=SwapStatus.EXECUTED, amount_in=amount_in, amount_out=amount_out,
            venue=quote.venue,
        )

    def _execute(
        self, venue: VenueKind, amount_in: int, asset_in: str, asset_out: str, min_out: int,
    ) -> int:
        deadline = self._clock() + self._portfolio.deadline_sec
        amount_out = self._venues[venue].swap(
            amount_in, asset_in, asset_out, min_out, self._portfolio.engine_address, deadline,
        )
        if amount_out < min_out:
            raise VenueError(f"Venue returned {amount_out} below min_out {min_out}")
        self.swaps_executed += 1
        if self._events is not None:
            self._events.emit(
                EventKind.SWAP_EXECUTED,
                venue=venue.value,
                asset_in=asset_in,
                asset_out=asset_out,
                amount_in=amount_in,
                amount_out=amount_out,
                min_out=min_out,
            )
        return amount_out

    def _defer(
        self, amount_in: int, asset_in: str, asset_out: str, kind: OperationKind, initiator: str,
    ) -> SwapOutcome:
        op = self._queue.push(
            initiator=initiator,
            kind=kind,
            reason=DeferralReason.SLIPPAGE_FAILURE,
            amount_in=amount_in,
            asset_in=asset_in,
            asset_out=asset_out,
        )
        self.swaps_queued += 1
        return SwapOutcome(status=SwapStatus.QUEUED, amount_in=amount_in, op_id=op.op_id)
