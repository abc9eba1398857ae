"""Vault metrics in Prometheus text exposition format.

The EventBus hands every emitted event to ``MetricsRegistry.record_event``,
which maps it onto a small set of series:

  events_total{kind}                          every emitted event
  queue_transitions_total{transition,reason}  trade queue entry lifecycle
  queue_depth                                 entries waiting in the queue
  fee_accrual                                 base fees owed to the collector
  liquidation_dust                            remainder kept by the last liquidation
  swap_amount_out{venue}                      executed swap output (summary)

``simulate --prometheus`` prints the rendered text; ``snapshot`` gives the
same data as a dict for the JSON summary.
"""

from __future__ import annotations

import time
from collections import defaultdict, deque
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from basketvault.events import EventKind

if TYPE_CHECKING:
    from basketvault.events import VaultEvent

Labels = tuple[tuple[str, str], ...]
SeriesKey = tuple[str, Labels]

_QUEUE_TRANSITIONS = {
    EventKind.OPERATION_QUEUED: "queued",
    EventKind.OPERATION_RESCHEDULED: "rescheduled",
    EventKind.OPERATION_PROCESSED: "processed",
    EventKind.OPERATION_FAILED: "failed",
}

_QUANTILES = (0.5, 0.9, 0.99)


def _labels(labels: dict[str, str] | None) -> Labels:
    return tuple(sorted((labels or {}).items()))


class MetricsRegistry:
    """Counters, gauges and bounded summaries keyed by (name, labels).

    Single writer: the vault runs one invocation at a time.
    """

    def __init__(
        self,
        prefix: str = "basketvault",
        window: int = 1000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._prefix = prefix
        self._window = window
        self._clock = clock
        self._counters: dict[SeriesKey, float] = defaultdict(float)
        self._gauges: dict[SeriesKey, float] = {}
        self._summaries: dict[SeriesKey, deque[float]] = {}
        self._started = clock()

    # --- Primitives ---

    def counter_inc(
        self, name: str, value: float = 1.0, labels: dict[str, str] | None = None,
    ) -> None:
        self._counters[(name, _labels(labels))] += value

    def gauge_set(self, name: str, value: float, labels: dict[str, str] | None = None) -> None:
        self._gauges[(name, _labels(labels))] = value

    def histogram_observe(
        self, name: str, value: float, labels: dict[str, str] | None = None,
    ) -> None:
        key = (name, _labels(labels))
        if key not in self._summaries:
            self._summaries[key] = deque(maxlen=self._window)
        self._summaries[key].append(value)

    def counter(self, name: str, labels: dict[str, str] | None = None) -> float:
        return self._counters.get((name, _labels(labels)), 0.0)

    def gauge(self, name: str, labels: dict[str, str] | None = None) -> float:
        return self._gauges.get((name, _labels(labels)), 0.0)

    def observations(self, name: str, labels: dict[str, str] | None = None) -> list[float]:
        return list(self._summaries.get((name, _labels(labels)), ()))

    # --- Vault events ---

    def record_event(self, event: VaultEvent) -> None:
        data = event.data
        self.counter_inc("events_total", labels={"kind": event.kind.value})

        transition = _QUEUE_TRANSITIONS.get(event.kind)
        if transition is not None:
            self.counter_inc(
                "queue_transitions_total",
                labels={"transition": transition, "reason": str(data.get("reason", ""))},
            )
        if "queue_depth" in data:
            self.gauge_set("queue_depth", float(data["queue_depth"]))
        if "fee_accrual" in data:
            self.gauge_set("fee_accrual", float(data["fee_accrual"]))

        if event.kind == EventKind.SWAP_EXECUTED:
            self.histogram_observe(
                "swap_amount_out", float(data.get("amount_out", 0)),
                labels={"venue": str(data.get("venue", ""))},
            )
        elif event.kind == EventKind.LIQUIDATION_COMPLETED:
            self.gauge_set("liquidation_dust", float(data.get("dust", 0)))

    # --- Export ---

    def _series(self, name: str, labels: Labels, suffix: str = "") -> str:
        series = f"{self._prefix}_{name}{suffix}"
        if labels:
            series += "{" + ",".join(f'{k}="{v}"' for k, v in labels) + "}"
        return series

    def format_prometheus(self) -> str:
        lines: list[str] = []
        typed: set[str] = set()

        def declare(name: str, kind: str) -> None:
            if name not in typed:
                typed.add(name)
                lines.append(f"# TYPE {self._prefix}_{name} {kind}")

        for (name, labels), value in sorted(self._counters.items()):
            declare(name, "counter")
            lines.append(f"{self._series(name, labels)} {value}")

        for (name, labels), value in sorted(self._gauges.items()):
            declare(name, "gauge")
            lines.append(f"{self._series(name, labels)} {value}")

        for (name, labels), values in sorted(self._summaries.items()):
            if not values:
                continue
            declare(name, "summary")
            ordered = sorted(values)
            n = len(ordered)
            for q in _QUANTILES:
                quantile_labels = (*labels, ("quantile", str(q)))
                lines.append(
                    f"{self._series(name, quantile_labels)} {ordered[min(int(q * n), n - 1)]}",
                )
            lines.append(f"{self._series(name, labels, '_sum')} {sum(ordered)}")
            lines.append(f"{self._series(name, labels, '_count')} {n}")

        lines.append(f"{self._prefix}_uptime_seconds {self._clock() - self._started:.1f}")
        return "\n".join(lines) + "\n"

    def snapshot(self) -> dict[str, Any]:
        """All series as a JSON-ready dict."""
        summaries: dict[str, Any] = {}
        for (name, labels), values in self._summaries.items():
            if values:
                ordered = sorted(values)
                summaries[self._series(name, labels)] = {
                    "count": len(ordered),
                    "sum": sum(ordered),
                    "p50": ordered[len(ordered) // 2],
                }
        return {
            "counters": {self._series(n, lb): v for (n, lb), v in self._counters.items()},
            "gauges": {self._series(n, lb): v for (n, lb), v in self._gauges.items()},
            "histograms": summaries,
            "uptime_seconds": self._clock() - self._started,
        }
