"""Shared types, enums, and dataclasses used across modules."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum, auto

# One whole asset unit in smallest-unit terms (all assets use 18 decimals)
ONE = 10**18

# Basis-point denominator for fee and slippage rates
BPS = 10_000


class Side(Enum):
    BUY = "buy"
    SELL = "sell"


class OperationKind(Enum):
    DEPOSIT = "deposit"
    REBALANCE = "rebalance"
    LIQUIDATION = "liquidation"


class DeferralReason(Enum):
    COST_GATE = "cost_gate"  # Execution cost above threshold
    SLIPPAGE_FAILURE = "slippage_failure"  # Venue rejected the swap


class GateDecision(Enum):
    IMMEDIATE = auto()
    DEFERRED = auto()


class VenueKind(Enum):
    CONSTANT_PRODUCT = "constant_product"
    CONCENTRATED = "concentrated"


class SwapStatus(Enum):
    EXECUTED = "executed"
    QUEUED = "queued"


@dataclass
class QueuedOperation:
    """A deferred operation waiting in the trade queue.

    Only the queue processor mutates ``retry_count`` and
    ``next_eligible_time``; the latter never decreases.
    """

    initiator: str
    kind: OperationKind
    reason: DeferralReason
    amount_in: int
    asset_in: str = ""
    asset_out: str = ""
    retry_count: int = 0
    next_eligible_time: float = 0.0
    created_at: float = 0.0
    op_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def is_eligible(self, now: float) -> bool:
        return now >= self.next_eligible_time

    @property
    def is_swap(self) -> bool:
        return self.reason == DeferralReason.SLIPPAGE_FAILURE


@dataclass(frozen=True)
class Quote:
    """Best available quote across venues."""

    venue: VenueKind
    expected_out: int


@dataclass(frozen=True)
class SwapOutcome:
    """Result of a routed swap: executed with an output, or queued for retry."""

    status: SwapStatus
    amount_in: int
    amount_out: int = 0
    venue: VenueKind | None = None
    op_id: str = ""

    @property
    def executed(self) -> bool:
        return self.status == SwapStatus.EXECUTED
