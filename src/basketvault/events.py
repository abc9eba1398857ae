"""Vault event stream.

Every queue transition and settlement emits a VaultEvent. Queue events carry
the full entry state (op_id, op_kind, reason, retry_count, next_eligible_time)
so the queue can be reconstructed from the log stream alone.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

import orjson

from basketvault.logging_setup import to_wire

if TYPE_CHECKING:
    from basketvault.metrics import MetricsRegistry
    from basketvault.types import QueuedOperation

logger = logging.getLogger(__name__)


class EventKind(Enum):
    OPERATION_QUEUED = "operation_queued"
    OPERATION_RESCHEDULED = "operation_rescheduled"
    OPERATION_PROCESSED = "operation_processed"
    OPERATION_FAILED = "operation_permanently_failed"
    SWAP_EXECUTED = "swap_executed"
    REBALANCE_COMPLETED = "rebalance_completed"
    LIQUIDATION_COMPLETED = "liquidation_completed"
    DEPOSITED = "deposited"
    WITHDRAWN = "withdrawn"
    FEES_CLAIMED = "fees_claimed"


@dataclass(frozen=True)
class VaultEvent:
    kind: EventKind
    ts: float
    data: dict[str, Any]


def op_payload(op: QueuedOperation) -> dict[str, Any]:
    """Serializable view of a queue entry."""
    return {
        "op_id": op.op_id,
        "initiator": op.initiator,
        "op_kind": op.kind.value,
        "reason": op.reason.value,
        "asset_in": op.asset_in,
        "asset_out": op.asset_out,
        "amount_in": op.amount_in,
        "retry_count": op.retry_count,
        "next_eligible_time": op.next_eligible_time,
    }


class EventBus:
    """Fans events out to the log, the metrics registry, and subscribers."""

    def __init__(
        self,
        metrics: MetricsRegistry | None = None,
        clock: Callable[[], float] = time.time,
        history_size: int = 1000,
    ) -> None:
        self._metrics = metrics
        self._clock = clock
        self._history: deque[VaultEvent] = deque(maxlen=history_size)
        self._subscribers: list[Callable[[VaultEvent], None]] = []

    @property
    def history(self) -> list[VaultEvent]:
        return list(self._history)

    def subscribe(self, callback: Callable[[VaultEvent], None]) -> None:
        """Register callback(event) for every emitted event."""
        self._subscribers.append(callback)

    def of_kind(self, kind: EventKind) -> list[VaultEvent]:
        return [e for e in self._history if e.kind == kind]

    def emit(self, kind: EventKind, /, **data: Any) -> VaultEvent:
        event = VaultEvent(kind=kind, ts=self._clock(), data=data)
        self._history.append(event)

        payload = orjson.dumps(to_wire(data), default=str).decode()
        logger.info(
            "%s %s", kind.value, payload,
            extra={"event": {**data, "kind": kind.value, "ts": event.ts}},
        )

        if self._metrics is not None:
            self._metrics.record_event(event)

        for cb in self._subscribers:
            try:
                cb(event)
            except Exception:
                logger.exception("Event subscriber error")

        return event
