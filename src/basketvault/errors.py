"""Exception hierarchy for the vault core."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from basketvault.types import QueuedOperation


class VaultError(Exception):
    """Base class for all vault errors."""


class ValidationError(VaultError, ValueError):
    """Invalid amount, basket size, or rate out of bounds. No state changed."""


class ReserveError(VaultError):
    """Action would breach the operating reserve or available liquidity."""


class VenueError(VaultError):
    """Venue rejected a quote or swap (slippage, deadline, liquidity)."""


class OracleError(VaultError):
    """Cost oracle reading is stale, invalid, or unreachable."""


class TransferError(VaultError):
    """Asset transfer primitive failed (insufficient balance)."""


class ReentrancyError(VaultError):
    """A mutating entry point was invoked while another is in flight."""


class AuthorizationError(VaultError):
    """Caller is not authorized for the requested action."""


class RetryExhausted(VaultError):
    """Terminal failure of a queued operation after max retry attempts."""

    def __init__(self, op: QueuedOperation) -> None:
        super().__init__(
            f"operation {op.op_id} ({op.kind.value}) dropped after "
            f"{op.retry_count} attempts",
        )
        self.op = op
