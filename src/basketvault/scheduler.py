"""Drain Scheduler: background trigger for the queue processor.

The vault never drains its queue on its own. This asyncio task calls
``Vault.process_queue`` every interval. A tick that fails on the oracle or
collides with another in-flight vault call is logged and skipped; the next
tick tries again.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from basketvault.errors import OracleError, ReentrancyError

if TYPE_CHECKING:
    from basketvault.queueing.queue_processor import BatchResult
    from basketvault.vault import Vault

logger = logging.getLogger(__name__)

DRAIN_INTERVAL_SEC = 60.0


class DrainScheduler:
    """Periodic queue drain.

    Usage:
        scheduler = DrainScheduler(vault, interval=60, batch_size=10)
        task = asyncio.create_task(scheduler.run())
        # ... later ...
        scheduler.stop()
    """

    def __init__(
        self,
        vault: Vault,
        interval: float = DRAIN_INTERVAL_SEC,
        batch_size: int = 10,
        caller: str = "keeper",
    ) -> None:
        self._vault = vault
        self._interval = interval
        self._batch_size = batch_size
        self._caller = caller
        self._running = False

        # Metrics
        self.ticks: int = 0
        self.skipped_ticks: int = 0
        self.processed: int = 0
        self.dropped: int = 0

    @property
    def running(self) -> bool:
        return self._running

    def stop(self) -> None:
        """Signal the scheduler to stop after the current sleep."""
        self._running = False

    def tick(self) -> BatchResult | None:
        """Run one drain. None when the tick was skipped."""
        self.ticks += 1
        try:
            result = self._vault.process_queue(self._batch_size, caller=self._caller)
        except OracleError as e:
            self.skipped_ticks += 1
            logger.warning("Drain skipped, cost oracle unavailable: %s", e)
            return None
        except ReentrancyError as e:
            self.skipped_ticks += 1
            logger.info("Drain skipped, vault busy: %s", e)
            return None
        self.processed += len(result.processed)
        self.dropped += len(result.dropped)
        return result

    async def run(self) -> None:
        """Main loop. Run as a background task."""
        self._running = True
        logger.info(
            "Drain scheduler started (interval=%ss, batch=%d)", self._interval, self._batch_size,
        )
        while self._running:
            try:
                await asyncio.sleep(self._interval)
                if not self._running:
                    break
                if len(self._vault.queue) > 0:
                    self.tick()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Drain tick error")
        logger.info("Drain scheduler stopped")
