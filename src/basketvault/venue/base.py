"""Venue and transfer capabilities consumed by the core."""

from __future__ import annotations

from typing import Protocol


class PricingVenue(Protocol):
    """An exchange offering read-only quotes and deadline-bound swaps."""

    def quote(self, amount_in: int, asset_in: str, asset_out: str) -> int:
        """Expected output for ``amount_in``. Must not mutate venue state.

        Raises VenueError when the pair has no liquidity.
        """
        ...

    def swap(
        self,
        amount_in: int,
        asset_in: str,
        asset_out: str,
        min_out: int,
        recipient: str,
        deadline: float,
    ) -> int:
        """Execute and return the output amount. Raises VenueError on failure."""
        ...


class PoolPriceVenue(PricingVenue, Protocol):
    """Concentrated-liquidity venue that also exposes pool spot prices."""

    def pool_price(self, asset: str, base: str) -> int | None:
        """Base units per ONE unit of ``asset``, or None if no pool exists."""
        ...


class AssetTransfer(Protocol):
    """The asset-transfer primitive. Raises TransferError on failure."""

    def move(self, asset: str, src: str, dst: str, amount: int) -> None: ...

    def balance_of(self, asset: str, holder: str) -> int: ...
