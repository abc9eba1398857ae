"""Queue Processor: bounded, best-effort draining of the trade queue.

Per-entry state machine:
  PENDING (now < next_eligible_time)     → skipped
  PENDING, COST_GATE, cost still high    → PENDING (cooldown, retry_count unchanged)
  PENDING, COST_GATE, cost acceptable    → action executed → COMPLETED (removed)
  PENDING, SLIPPAGE_FAILURE              → swap attempted:
      success                            → COMPLETED (removed)
      failure, retries left              → PENDING (retry_count+1, cooldown)
      failure, retry_count >= max        → DROPPED (removed, RetryExhausted)

Only COMPLETED and DROPPED count toward the batch limit. Removal is
swap-with-last, so the entry moved into a freed slot is scanned next.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

from basketvault.errors import RetryExhausted, TransferError, ValidationError, VenueError
from basketvault.events import EventKind, op_payload
from basketvault.types import DeferralReason, GateDecision, QueuedOperation

if TYPE_CHECKING:
    from basketvault.config import PortfolioConfig
    from basketvault.events import EventBus
    from basketvault.gate.cost_gate import CostGate
    from basketvault.queueing.trade_queue import TradeQueue
    from basketvault.venue.venue_router import VenueRouter

logger = logging.getLogger(__name__)


class DeferredActionExecutor(Protocol):
    """Runs the underlying effect of a cost-deferred (non-swap) operation."""

    def execute_deferred(self, op: QueuedOperation) -> None: ...


@dataclass
class BatchResult:
    processed: list[QueuedOperation] = field(default_factory=list)
    dropped: list[RetryExhausted] = field(default_factory=list)
    rescheduled: int = 0
    skipped: int = 0

    @property
    def counted(self) -> int:
        """Entries that consumed batch budget."""
        return len(self.processed) + len(self.dropped)


class QueueProcessor:
    def __init__(
        self,
        queue: TradeQueue,
        router: VenueRouter,
        gate: CostGate,
        executor: DeferredActionExecutor,
        portfolio: PortfolioConfig,
        events: EventBus | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._queue = queue
        self._router = router
        self._gate = gate
        self._executor = executor
        self._max_retries = portfolio.max_retry_attempts
        self._events = events
        self._clock = clock

        # Metrics
        self.batches_run: int = 0
        self.total_processed: int = 0
        self.total_dropped: int = 0

    def process_batch(self, limit: int) -> BatchResult:
        result = BatchResult()
        if limit < 0:
            raise ValidationError(f"Batch limit must be >= 0, got {limit}")
        if len(self._queue) == 0 or limit == 0:
            return result

        limit = min(limit, len(self._queue))
        # One oracle read per pass; OracleError aborts before any entry changes
        cost_deferred = self._gate.check() == GateDecision.DEFERRED
        now = self._clock()

        i = 0
        while i < len(self._queue) and result.counted < limit:
            op = self._queue[i]
            if not op.is_eligible(now):
                result.skipped += 1
                i += 1
                continue

            if op.reason == DeferralReason.COST_GATE:
                if cost_deferred:
                    self._queue.reschedule(op)
                    result.rescheduled += 1
                    i += 1
                    continue
                self._executor.execute_deferred(op)
                self._complete(i, op, result)
                continue

            try:
                outcome = self._router.attempt(op.amount_in, op.asset_in, op.asset_out)
            except (VenueError, TransferError) as e:
                op.retry_count += 1
                if op.retry_count >= self._max_retries:
                    self._drop(i, op, result, e)
                    continue
                logger.info(
                    "Retry %d/%d for op %s failed: %s",
                    op.retry_count, self._max_retries, op.op_id, e,
                )
                self._queue.reschedule(op)
                result.rescheduled += 1
                i += 1
                continue

            self._complete(i, op, result, amount_out=outcome.amount_out)

        self.batches_run += 1
        logger.info(
            "Batch done: processed=%d dropped=%d rescheduled=%d remaining=%d",
            len(result.processed), len(result.dropped), result.rescheduled, len(self._queue),
        )
        return result

    def _complete(
        self, index: int, op: QueuedOperation, result: BatchResult, amount_out: int | None = None,
    ) -> None:
        self._queue.remove_at(index)
        result.processed.append(op)
        self.total_processed += 1
        if self._events is not None:
            extra = {} if amount_out is None else {"amount_out": amount_out}
            self._events.emit(
                EventKind.OPERATION_PROCESSED,
                queue_depth=len(self._queue), **op_payload(op), **extra,
            )

    def _drop(
        self, index: int, op: QueuedOperation, result: BatchResult, cause: Exception,
    ) -> None:
        self._queue.remove_at(index)
        exhausted = RetryExhausted(op)
        exhausted.__cause__ = cause
        result.dropped.append(exhausted)
        self.total_dropped += 1
        logger.error("%s (last error: %s)", exhausted, cause)
        if self._events is not None:
            self._events.emit(
                EventKind.OPERATION_FAILED,
                queue_depth=len(self._queue), error=str(cause), **op_payload(op),
            )
