"""Balance & Fee Ledger: per-depositor base balances and the fee accrual.

Amounts are integers in base-asset smallest units. Accounts are created
lazily on first credit and stay known (at zero) after they are emptied so
that liquidation can still enumerate them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from basketvault.errors import ValidationError
from basketvault.persistence import atomic_write_json, read_json
from basketvault.types import BPS

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)


def fee_for(amount: int, fee_bps: int) -> int:
    """Fee in smallest units, truncated toward zero."""
    return amount * fee_bps // BPS


@dataclass
class DepositorAccount:
    address: str
    balance: int = 0


class BalanceLedger:
    def __init__(self) -> None:
        self._accounts: dict[str, DepositorAccount] = {}
        self._fee_accrual: int = 0

    @property
    def fee_accrual(self) -> int:
        return self._fee_accrual

    @property
    def accounts(self) -> list[DepositorAccount]:
        return list(self._accounts.values())

    def balance_of(self, address: str) -> int:
        account = self._accounts.get(address)
        return account.balance if account else 0

    def total_balance(self) -> int:
        return sum(a.balance for a in self._accounts.values())

    def credit(self, address: str, amount: int) -> None:
        if amount < 0:
            raise ValidationError(f"Cannot credit negative amount {amount}")
        account = self._accounts.get(address)
        if account is None:
            account = DepositorAccount(address=address)
            self._accounts[address] = account
        account.balance += amount

    def debit(self, address: str, amount: int) -> None:
        balance = self.balance_of(address)
        if amount < 0 or amount > balance:
            raise ValidationError(
                f"Cannot debit {amount} from {address} (balance {balance})",
            )
        self._accounts[address].balance -= amount

    def zero(self, address: str) -> int:
        """Empty an account and return what it held."""
        account = self._accounts.get(address)
        if account is None:
            return 0
        held, account.balance = account.balance, 0
        return held

    def zero_all(self) -> None:
        for account in self._accounts.values():
            account.balance = 0

    def accrue_fee(self, amount: int) -> None:
        if amount < 0:
            raise ValidationError(f"Cannot accrue negative fee {amount}")
        self._fee_accrual += amount

    def take_fees(self) -> int:
        """Zero the fee accrual and return the amount owed."""
        owed, self._fee_accrual = self._fee_accrual, 0
        return owed

    # --- Persistence ---

    def save(self, path: Path) -> None:
        data = {
            "fee_accrual": self._fee_accrual,
            "accounts": {a.address: a.balance for a in self._accounts.values()},
        }
        atomic_write_json(path, data)
        logger.info("Ledger saved to %s (%d accounts)", path, len(self._accounts))

    def load(self, path: Path) -> None:
        data = read_json(path)
        if data is None:
            logger.info("No ledger file at %s, starting fresh", path)
            return
        self._fee_accrual = int(data.get("fee_accrual", 0))
        self._accounts = {
            addr: DepositorAccount(address=addr, balance=int(bal))
            for addr, bal in data.get("accounts", {}).items()
        }
        logger.info("Ledger loaded from %s (%d accounts)", path, len(self._accounts))
