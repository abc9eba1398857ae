"""Cost Gate: decides immediate vs deferred execution.

Stateless. ``decide`` is pure; ``check`` reads the oracle first and lets
OracleError propagate so the calling operation aborts before any effect.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from decimal import Decimal
from typing import TYPE_CHECKING

from basketvault.gate.cost_oracle import validate_reading
from basketvault.types import GateDecision

if TYPE_CHECKING:
    from basketvault.gate.cost_oracle import CostOracle


def decide(current_cost: Decimal, threshold: Decimal) -> GateDecision:
    """Deferred when the cost is strictly above the threshold."""
    if current_cost > threshold:
        return GateDecision.DEFERRED
    return GateDecision.IMMEDIATE


class CostGate:
    def __init__(
        self,
        oracle: CostOracle,
        threshold: Decimal,
        max_age_sec: float = 3600,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._oracle = oracle
        self._threshold = threshold
        self._max_age = max_age_sec
        self._clock = clock

    @property
    def threshold(self) -> Decimal:
        return self._threshold

    def read_cost(self) -> Decimal:
        """Current cost. Raises OracleError on stale or invalid data."""
        return validate_reading(self._oracle.read(), self._clock(), self._max_age)

    def check(self) -> GateDecision:
        return decide(self.read_cost(), self._threshold)
