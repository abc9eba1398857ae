"""Trade Queue: deferred operations with retry metadata.

Entries live in a flat list in storage order. Removal swaps the target with
the last entry and pops, so it is O(1) but does not preserve relative order
among the remaining entries: draining is best-effort, not strict FIFO.

Entry lifecycle:
  push → PENDING (eligible once now >= next_eligible_time)
  PENDING → reschedule → PENDING (cooldown pushed forward, never back)
  PENDING → remove_at → gone (completed or dropped)
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterator
from typing import TYPE_CHECKING

from basketvault.events import EventKind, op_payload
from basketvault.persistence import atomic_write_json, read_json
from basketvault.types import DeferralReason, OperationKind, QueuedOperation

if TYPE_CHECKING:
    from pathlib import Path

    from basketvault.events import EventBus

logger = logging.getLogger(__name__)


class TradeQueue:
    def __init__(
        self,
        cooldown_sec: float = 300,
        events: EventBus | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._cooldown = cooldown_sec
        self._events = events
        self._clock = clock
        self._entries: list[QueuedOperation] = []

        # Metrics
        self.total_pushed: int = 0
        self.total_removed: int = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __getitem__(self, index: int) -> QueuedOperation:
        return self._entries[index]

    def __iter__(self) -> Iterator[QueuedOperation]:
        return iter(list(self._entries))

    @property
    def cooldown_sec(self) -> float:
        return self._cooldown

    def push(
        self,
        initiator: str,
        kind: OperationKind,
        reason: DeferralReason,
        amount_in: int,
        asset_in: str = "",
        asset_out: str = "",
    ) -> QueuedOperation:
        """Append a new entry, eligible after one cooldown."""
        now = self._clock()
        op = QueuedOperation(
            initiator=initiator,
            kind=kind,
            reason=reason,
            amount_in=amount_in,
            asset_in=asset_in,
            asset_out=asset_out,
            next_eligible_time=now + self._cooldown,
            created_at=now,
        )
        self._entries.append(op)
        self.total_pushed += 1
        logger.info(
            "Queued %s op %s (%s) amount=%d eligible_at=%.0f",
            kind.value, op.op_id, reason.value, amount_in, op.next_eligible_time,
        )
        self._emit(EventKind.OPERATION_QUEUED, op)
        return op

    def reschedule(self, op: QueuedOperation) -> None:
        """Push the entry's eligibility one cooldown into the future."""
        op.next_eligible_time = max(op.next_eligible_time, self._clock() + self._cooldown)
        self._emit(EventKind.OPERATION_RESCHEDULED, op)

    def remove_at(self, index: int) -> QueuedOperation:
        """Swap-with-last removal. The former last entry moves to ``index``."""
        last = len(self._entries) - 1
        if index < 0 or index > last:
            raise IndexError(f"queue index {index} out of range (len={len(self._entries)})")
        removed = self._entries[index]
        if index != last:
            self._entries[index] = self._entries[last]
        self._entries.pop()
        self.total_removed += 1
        return removed

    def pending_amount(self, kind: OperationKind, reason: DeferralReason) -> int:
        """Total ``amount_in`` over entries of the given kind and reason."""
        return sum(
            op.amount_in for op in self._entries
            if op.kind == kind and op.reason == reason
        )

    def eligible(self, now: float | None = None) -> list[QueuedOperation]:
        ts = self._clock() if now is None else now
        return [op for op in self._entries if op.is_eligible(ts)]

    def _emit(self, kind: EventKind, op: QueuedOperation) -> None:
        if self._events is not None:
            self._events.emit(kind, queue_depth=len(self._entries), **op_payload(op))

    # --- Persistence ---

    def save(self, path: Path) -> None:
        atomic_write_json(path, [_op_to_dict(op) for op in self._entries])
        logger.info("Trade queue saved to %s (%d entries)", path, len(self._entries))

    def load(self, path: Path) -> None:
        data = read_json(path)
        if data is None:
            logger.info("No queue file at %s, starting empty", path)
            return
        self._entries = [_dict_to_op(d) for d in data]
        logger.info("Trade queue loaded from %s (%d entries)", path, len(self._entries))


def _op_to_dict(op: QueuedOperation) -> dict:  # type: ignore[type-arg]
    return {
        "op_id": op.op_id,
        "initiator": op.initiator,
        "kind": op.kind.value,
        "reason": op.reason.value,
        "amount_in": op.amount_in,
        "asset_in": op.asset_in,
        "asset_out": op.asset_out,
        "retry_count": op.retry_count,
        "next_eligible_time": op.next_eligible_time,
        "created_at": op.created_at,
    }


def _dict_to_op(d: dict) -> QueuedOperation:  # type: ignore[type-arg]
    return QueuedOperation(
        op_id=d["op_id"],
        initiator=d["initiator"],
        kind=OperationKind(d["kind"]),
        reason=DeferralReason(d["reason"]),
        amount_in=int(d["amount_in"]),
        asset_in=d.get("asset_in", ""),
        asset_out=d.get("asset_out", ""),
        retry_count=int(d.get("retry_count", 0)),
        next_eligible_time=float(d.get("next_eligible_time", 0.0)),
        created_at=float(d.get("created_at", 0.0)),
    )
