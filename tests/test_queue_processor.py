"""Tests for the queue processor state machine."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

import pytest
from conftest import FakeOracle, FakeVenue, RecordingExecutor

from basketvault.config import PortfolioConfig
from basketvault.errors import OracleError, RetryExhausted, ValidationError
from basketvault.events import EventBus, EventKind
from basketvault.gate.cost_gate import CostGate
from basketvault.queueing.queue_processor import QueueProcessor
from basketvault.queueing.trade_queue import TradeQueue
from basketvault.sim.market import SimClock
from basketvault.types import DeferralReason, OperationKind, QueuedOperation
from basketvault.venue.venue_router import VenueRouter

COOLDOWN = 300


@dataclass
class Harness:
    clock: SimClock
    queue: TradeQueue
    oracle: FakeOracle
    cp: FakeVenue
    executor: RecordingExecutor
    events: EventBus
    processor: QueueProcessor

    def push_swap(self, initiator: str = "alice", amount: int = 1000) -> QueuedOperation:
        return self.queue.push(
            initiator, OperationKind.DEPOSIT, DeferralReason.SLIPPAGE_FAILURE, amount,
            "WETH", "WBTC",
        )

    def push_gated(self, initiator: str = "alice", amount: int = 1000) -> QueuedOperation:
        return self.queue.push(
            initiator, OperationKind.DEPOSIT, DeferralReason.COST_GATE, amount, "WETH",
        )

    def wait(self) -> None:
        self.clock.advance(COOLDOWN + 1)


def _harness(max_retries: int = 3) -> Harness:
    clock = SimClock()
    portfolio = PortfolioConfig(
        min_unit_amount=0, max_retry_attempts=max_retries, cooldown_sec=COOLDOWN,
    )
    events = EventBus(clock=clock)
    queue = TradeQueue(cooldown_sec=COOLDOWN, events=events, clock=clock)
    oracle = FakeOracle(clock)
    cp, cl = FakeVenue(out=100), FakeVenue(out=0)
    router = VenueRouter(cp, cl, queue, portfolio, events=events, clock=clock)
    gate = CostGate(oracle, portfolio.cost_threshold, clock=clock)
    executor = RecordingExecutor()
    processor = QueueProcessor(
        queue, router, gate, executor, portfolio, events=events, clock=clock,
    )
    return Harness(clock, queue, oracle, cp, executor, events, processor)


class TestEmptyAndLimits:
    def test_empty_queue_is_noop(self) -> None:
        h = _harness()
        result = h.processor.process_batch(10)
        assert result.counted == 0
        assert result.rescheduled == 0
        assert h.oracle.reads == 0

    def test_negative_limit_rejected(self) -> None:
        h = _harness()
        h.push_swap()
        with pytest.raises(ValidationError):
            h.processor.process_batch(-1)

    def test_zero_limit_touches_nothing(self) -> None:
        h = _harness()
        h.push_swap()
        h.wait()
        h.processor.process_batch(0)
        assert len(h.queue) == 1
        assert h.oracle.reads == 0

    def test_limit_counts_completions_only(self) -> None:
        h = _harness()
        for _ in range(3):
            h.push_swap()
        h.wait()
        result = h.processor.process_batch(1)
        assert len(result.processed) == 1
        assert len(h.queue) == 2

    def test_limit_larger_than_queue(self) -> None:
        h = _harness()
        h.push_swap()
        h.wait()
        result = h.processor.process_batch(50)
        assert len(result.processed) == 1
        assert len(h.queue) == 0

    def test_swapped_entry_scanned_in_same_pass(self) -> None:
        h = _harness()
        for name in ("a", "b", "c"):
            h.push_swap(name)
        h.wait()
        result = h.processor.process_batch(3)
        assert sorted(op.initiator for op in result.processed) == ["a", "b", "c"]
        assert len(h.queue) == 0

    def test_not_yet_eligible_skipped(self) -> None:
        h = _harness()
        h.push_swap()
        result = h.processor.process_batch(5)
        assert result.skipped == 1
        assert len(h.queue) == 1
        assert h.cp.swaps == []


class TestCostGatedEntries:
    def test_rescheduled_while_cost_high(self) -> None:
        h = _harness()
        op = h.push_gated()
        h.wait()
        h.oracle.cost = Decimal("500")
        before = op.next_eligible_time
        result = h.processor.process_batch(5)
        assert result.rescheduled == 1
        assert result.counted == 0
        assert op.retry_count == 0
        assert op.next_eligible_time == h.clock.now + COOLDOWN
        assert op.next_eligible_time > before
        assert h.executor.executed == []
        assert len(h.queue) == 1

    def test_executed_when_cost_recovers(self) -> None:
        h = _harness()
        op = h.push_gated()
        h.wait()
        result = h.processor.process_batch(5)
        assert result.processed == [op]
        assert h.executor.executed == [op]
        assert len(h.queue) == 0
        assert h.events.of_kind(EventKind.OPERATION_PROCESSED)[0].data["op_id"] == op.op_id

    def test_oracle_error_aborts_without_changes(self) -> None:
        h = _harness()
        op = h.push_gated()
        h.wait()
        h.oracle.error = OracleError("stale")
        eligible_at = op.next_eligible_time
        with pytest.raises(OracleError):
            h.processor.process_batch(5)
        assert len(h.queue) == 1
        assert op.next_eligible_time == eligible_at
        assert h.executor.executed == []

    def test_oracle_read_once_per_batch(self) -> None:
        h = _harness()
        for _ in range(4):
            h.push_gated()
        h.wait()
        h.processor.process_batch(4)
        assert h.oracle.reads == 1


class TestSlippageEntries:
    def test_success_removes_entry(self) -> None:
        h = _harness()
        op = h.push_swap(amount=1000)
        h.wait()
        result = h.processor.process_batch(5)
        assert result.processed == [op]
        assert h.cp.swaps[0][:3] == (1000, "WETH", "WBTC")
        processed = h.events.of_kind(EventKind.OPERATION_PROCESSED)[0].data
        assert processed["amount_out"] == 100

    def test_failure_increments_retry_and_reschedules(self) -> None:
        h = _harness()
        op = h.push_swap()
        h.wait()
        h.cp.fail = True
        result = h.processor.process_batch(5)
        assert result.rescheduled == 1
        assert result.counted == 0
        assert op.retry_count == 1
        assert op.next_eligible_time == h.clock.now + COOLDOWN
        assert len(h.queue) == 1

    def test_retries_ignore_cost_spike(self) -> None:
        h = _harness()
        op = h.push_swap()
        h.wait()
        h.oracle.cost = Decimal("500")
        h.processor.process_batch(5)
        assert op not in list(h.queue)

    def test_exhaustion_drops_in_same_pass(self) -> None:
        h = _harness(max_retries=3)
        op = h.push_swap()
        op.retry_count = 2
        h.wait()
        h.cp.fail = True
        result = h.processor.process_batch(5)
        assert len(h.queue) == 0
        assert len(result.dropped) == 1
        exhausted = result.dropped[0]
        assert isinstance(exhausted, RetryExhausted)
        assert exhausted.op is op
        assert op.retry_count == 3
        failed = h.events.of_kind(EventKind.OPERATION_FAILED)[0].data
        assert failed["op_id"] == op.op_id
        assert failed["retry_count"] == 3

    def test_retry_count_bounded_across_passes(self) -> None:
        h = _harness(max_retries=2)
        op = h.push_swap()
        h.cp.fail = True
        for _ in range(5):
            h.wait()
            h.processor.process_batch(5)
        assert op.retry_count == 2
        assert len(h.queue) == 0
        assert h.processor.total_dropped == 1

    def test_single_retry_allowed(self) -> None:
        h = _harness(max_retries=1)
        h.push_swap()
        h.wait()
        h.cp.fail = True
        result = h.processor.process_batch(5)
        assert len(result.dropped) == 1
