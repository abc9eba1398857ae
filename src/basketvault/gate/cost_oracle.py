"""Execution cost oracle.

The oracle publishes a single positive cost reading with the time it was
last updated. Readings that are non-positive, unparsable, or older than
``max_age_sec`` are rejected with OracleError; callers never fall back to a
default cost.

HTTP source format (JSON):
    {"cost": "42.5", "updated_at": 1760000000}
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Protocol

import httpx

from basketvault.errors import OracleError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CostReading:
    value: Decimal
    updated_at: float  # unix seconds


class CostOracle(Protocol):
    def read(self) -> CostReading: ...


def validate_reading(reading: CostReading, now: float, max_age_sec: float) -> Decimal:
    """Return the cost value if the reading is usable, else raise OracleError."""
    if not reading.value.is_finite() or reading.value <= 0:
        raise OracleError(f"Invalid cost reading: {reading.value}")
    if not math.isfinite(reading.updated_at):
        raise OracleError(f"Invalid cost timestamp: {reading.updated_at}")
    age = now - reading.updated_at
    if age > max_age_sec:
        raise OracleError(f"Stale cost reading: {age:.0f}s old (max {max_age_sec:.0f}s)")
    if age < 0:
        raise OracleError(f"Cost reading from the future: updated_at={reading.updated_at}")
    return reading.value


class HttpCostOracle:
    """Reads the current execution cost from an HTTP JSON endpoint."""

    def __init__(
        self,
        url: str,
        max_age_sec: float = 3600,
        http_client: httpx.Client | None = None,
        timeout_sec: float = 10.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._url = url
        self._max_age = max_age_sec
        self._client = http_client or httpx.Client(timeout=timeout_sec)
        self._clock = clock

    def read(self) -> CostReading:
        try:
            resp = self._client.get(self._url)
            resp.raise_for_status()
            body = resp.json()
        except httpx.HTTPError as e:
            raise OracleError(f"Cost oracle request failed: {e}") from e
        except ValueError as e:
            raise OracleError(f"Cost oracle returned non-JSON body: {e}") from e

        try:
            reading = CostReading(
                value=Decimal(str(body["cost"])),
                updated_at=float(body["updated_at"]),
            )
        except (KeyError, TypeError, ValueError, InvalidOperation) as e:
            raise OracleError(f"Unexpected cost oracle payload: {body!r}") from e

        validate_reading(reading, self._clock(), self._max_age)
        logger.debug("Cost reading %s (updated_at=%.0f)", reading.value, reading.updated_at)
        return reading

    def close(self) -> None:
        self._client.close()
