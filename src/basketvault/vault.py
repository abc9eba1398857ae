"""Vault: custody entry points wired over the core components.

Entry points (each runs under the exclusive guard):
  deposit            cost-gated; fee capture, credit, diversify into basket
  withdraw_base      gross debit, net payout, fee accrued
  withdraw_in_kind   proportional basket payout, fee slice sold for base
  liquidate_all      cost-gated basket sale, base distributed pro rata, ledger zeroed
  request_rebalance  cost-gated equal-weight rebalance
  process_queue      drain one batch of the trade queue
  claim_fees         pay the fee accrual to the fee collector

Structural violations (amounts, reserve, authorization, oracle) are raised
before any transfer or ledger mutation. Venue failures never surface: they
become queue entries. Payouts to depositors are all-or-nothing: a failed
transfer returns the moves already made and leaves the ledger untouched.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from basketvault.errors import (
    AuthorizationError,
    ReserveError,
    TransferError,
    ValidationError,
)
from basketvault.events import EventBus, EventKind
from basketvault.gate.cost_gate import CostGate
from basketvault.guard import ExclusiveGuard, exclusive
from basketvault.ledger.balance_ledger import BalanceLedger, fee_for
from basketvault.portfolio.rebalancer import Rebalancer, RebalanceReport
from basketvault.queueing.queue_processor import BatchResult, QueueProcessor
from basketvault.queueing.trade_queue import TradeQueue
from basketvault.types import (
    ONE,
    DeferralReason,
    GateDecision,
    OperationKind,
    QueuedOperation,
    SwapOutcome,
)
from basketvault.venue.venue_router import VenueRouter

if TYPE_CHECKING:
    from pathlib import Path

    from basketvault.config import PortfolioConfig
    from basketvault.gate.cost_oracle import CostOracle
    from basketvault.venue.base import AssetTransfer, PoolPriceVenue, PricingVenue

logger = logging.getLogger(__name__)

# authorize(action, caller) -> bool, supplied by the surrounding service layer
Authorizer = Callable[[str, str], bool]


def _allow_all(action: str, caller: str) -> bool:
    return True


@dataclass
class DepositReceipt:
    user: str
    amount: int
    queued: bool = False
    op_id: str = ""
    fee: int = 0
    credited: int = 0
    legs: list[SwapOutcome] = field(default_factory=list)


@dataclass
class WithdrawalReceipt:
    user: str
    amount: int
    fee: int
    net: int


@dataclass
class InKindReceipt:
    user: str
    share: int  # fraction of the basket, scaled by ONE
    transfers: dict[str, int] = field(default_factory=dict)
    fee_base: int = 0
    retained_fee_slices: dict[str, int] = field(default_factory=dict)


@dataclass
class LiquidationReport:
    pool: int  # distributable base, excluding accrued fees
    fees: int
    payouts: dict[str, int] = field(default_factory=dict)
    collector_share: int = 0
    dust: int = 0
    queued_legs: int = 0

    @property
    def distributed(self) -> int:
        return sum(self.payouts.values()) + self.collector_share + self.fees


class Vault:
    def __init__(
        self,
        portfolio: PortfolioConfig,
        transfer: AssetTransfer,
        constant_product: PricingVenue,
        concentrated: PoolPriceVenue,
        oracle: CostOracle,
        events: EventBus | None = None,
        authorize: Authorizer | None = None,
        batch_size: int = 10,
        oracle_max_age_sec: float = 3600,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._portfolio = portfolio
        self._transfer = transfer
        self._events = events or EventBus(clock=clock)
        self._authorizer = authorize or _allow_all
        self._batch_size = batch_size
        self._guard = ExclusiveGuard()

        self._ledger = BalanceLedger()
        self._queue = TradeQueue(
            cooldown_sec=portfolio.cooldown_sec, events=self._events, clock=clock,
        )
        self._gate = CostGate(
            oracle, portfolio.cost_threshold, max_age_sec=oracle_max_age_sec, clock=clock,
        )
        self._router = VenueRouter(
            constant_product, concentrated, self._queue, portfolio,
            events=self._events, clock=clock,
        )
        self._rebalancer = Rebalancer(
            self._router, transfer, portfolio, free_base=self.free_base, events=self._events,
        )
        self._processor = QueueProcessor(
            self._queue, self._router, self._gate, self, portfolio,
            events=self._events, clock=clock,
        )

    # --- Components ---

    @property
    def portfolio(self) -> PortfolioConfig:
        return self._portfolio

    @property
    def ledger(self) -> BalanceLedger:
        return self._ledger

    @property
    def queue(self) -> TradeQueue:
        return self._queue

    @property
    def router(self) -> VenueRouter:
        return self._router

    @property
    def rebalancer(self) -> Rebalancer:
        return self._rebalancer

    @property
    def processor(self) -> QueueProcessor:
        return self._processor

    @property
    def events(self) -> EventBus:
        return self._events

    # --- Holdings ---

    def base_on_hand(self) -> int:
        return self._transfer.balance_of(self._portfolio.base_asset, self._portfolio.engine_address)

    def pending_deposit_base(self) -> int:
        """Base received for deposits still waiting on the cost gate."""
        return self._queue.pending_amount(OperationKind.DEPOSIT, DeferralReason.COST_GATE)

    def free_base(self) -> int:
        """Base not owed to the fee accrual or to pending deposits."""
        owed = self._ledger.fee_accrual + self.pending_deposit_base()
        return max(0, self.base_on_hand() - owed)

    # --- Entry points ---

    @exclusive
    def deposit(self, user: str, amount: int) -> DepositReceipt:
        self._authorize("deposit", user)
        if amount <= 0:
            raise ValidationError(f"Deposit amount must be > 0, got {amount}")
        self._router.ensure_meaningful(amount)

        projected = self.base_on_hand() + amount
        if projected < self._portfolio.min_operating_reserve:
            raise ReserveError(
                f"Deposit leaves base holdings at {projected}, "
                f"below reserve {self._portfolio.min_operating_reserve}",
            )

        decision = self._gate.check()
        self._transfer.move(
            self._portfolio.base_asset, user, self._portfolio.engine_address, amount,
        )

        if decision == GateDecision.DEFERRED:
            op = self._queue.push(
                initiator=user,
                kind=OperationKind.DEPOSIT,
                reason=DeferralReason.COST_GATE,
                amount_in=amount,
                asset_in=self._portfolio.base_asset,
            )
            return DepositReceipt(user=user, amount=amount, queued=True, op_id=op.op_id)

        return self._settle_deposit(user, amount)

    @exclusive
    def withdraw_base(self, user: str, amount: int) -> WithdrawalReceipt:
        """Debit the gross amount, pay out the net, accrue the fee.

        The balance is reduced by the full requested amount while only
        ``amount - fee`` leaves the vault and the fee is tracked separately.
        """
        self._authorize("withdraw", user)
        if amount <= 0:
            raise ValidationError(f"Withdrawal amount must be > 0, got {amount}")
        balance = self._ledger.balance_of(user)
        if amount > balance:
            raise ValidationError(f"Withdrawal {amount} exceeds balance {balance} of {user}")

        fee = fee_for(amount, self._portfolio.withdrawal_fee_bps)
        net = amount - fee
        # The fee stays in custody, so the whole gross amount must be liquid
        liquid = self.free_base()
        if amount > liquid:
            raise ReserveError(f"Withdrawal {amount} exceeds liquid base {liquid}")

        self._transfer.move(self._portfolio.base_asset, self._portfolio.engine_address, user, net)
        self._ledger.debit(user, amount)
        self._ledger.accrue_fee(fee)

        self._events.emit(
            EventKind.WITHDRAWN,
            user=user, mode="base", amount=amount, fee=fee, net=net,
            balance=self._ledger.balance_of(user), fee_accrual=self._ledger.fee_accrual,
        )
        return WithdrawalReceipt(user=user, amount=amount, fee=fee, net=net)

    @exclusive
    def withdraw_in_kind(self, user: str) -> InKindReceipt:
        self._authorize("withdraw", user)
        balance = self._ledger.balance_of(user)
        if balance <= 0:
            raise ValidationError(f"{user} has no balance to withdraw")

        p = self._portfolio
        share = balance * ONE // self._ledger.total_balance()
        receipt = InKindReceipt(user=user, share=share)

        fee_slices: dict[str, int] = {}
        for asset in p.basket:
            user_amount = self._transfer.balance_of(asset, p.engine_address) * share // ONE
            if user_amount == 0:
                continue
            fee_slice = fee_for(user_amount, p.withdrawal_fee_bps)
            if fee_slice > 0:
                fee_slices[asset] = fee_slice
            if user_amount > fee_slice:
                receipt.transfers[asset] = user_amount - fee_slice

        self._send_all([(asset, user, amount) for asset, amount in receipt.transfers.items()])

        for asset, fee_slice in fee_slices.items():
            sold = self._sell_fee_slice(user, asset, fee_slice)
            if sold is None:
                receipt.retained_fee_slices[asset] = fee_slice
            else:
                receipt.fee_base += sold

        self._ledger.accrue_fee(receipt.fee_base)
        self._ledger.zero(user)

        self._events.emit(
            EventKind.WITHDRAWN,
            user=user, mode="in_kind", amount=balance, share=share,
            fee=receipt.fee_base, transfers=receipt.transfers,
            fee_accrual=self._ledger.fee_accrual,
        )
        return receipt

    @exclusive
    def liquidate_all(self, caller: str) -> LiquidationReport:
        self._authorize("liquidate", caller)
        p = self._portfolio
        cost_deferred = self._gate.check() == GateDecision.DEFERRED

        queued_legs = 0
        for asset in p.basket:
            amount = self._transfer.balance_of(asset, p.engine_address)
            if not self._router.is_meaningful(amount):
                continue
            if cost_deferred:
                self._queue.push(
                    initiator=caller,
                    kind=OperationKind.LIQUIDATION,
                    reason=DeferralReason.COST_GATE,
                    amount_in=amount,
                    asset_in=asset,
                    asset_out=p.base_asset,
                )
                queued_legs += 1
                continue
            outcome = self._router.route(
                amount, asset, p.base_asset, OperationKind.LIQUIDATION, caller,
            )
            if not outcome.executed:
                queued_legs += 1

        fees = self._ledger.fee_accrual
        pool = self.free_base()
        total = self._ledger.total_balance()
        report = LiquidationReport(pool=pool, fees=fees, queued_legs=queued_legs)

        if total > 0:
            for account in self._ledger.accounts:
                if account.balance == 0:
                    continue
                share = pool * account.balance // total
                if account.address == p.fee_collector:
                    report.collector_share = share
                elif share > 0:
                    report.payouts[account.address] = share
        report.dust = pool - sum(report.payouts.values()) - report.collector_share

        moves = [(p.base_asset, address, share) for address, share in report.payouts.items()]
        collector_payout = report.collector_share + fees
        if collector_payout > 0:
            moves.append((p.base_asset, p.fee_collector, collector_payout))
        self._send_all(moves)

        self._ledger.zero_all()
        self._ledger.take_fees()

        logger.info(
            "Liquidation: pool=%d fees=%d accounts=%d dust=%d queued_legs=%d",
            pool, fees, len(report.payouts), report.dust, queued_legs,
        )
        self._events.emit(
            EventKind.LIQUIDATION_COMPLETED,
            caller=caller, pool=pool, fees=fees, payouts=report.payouts,
            collector_share=report.collector_share, dust=report.dust,
            queued_legs=queued_legs, fee_accrual=0,
        )
        return report

    @exclusive
    def request_rebalance(self, caller: str) -> RebalanceReport | QueuedOperation:
        self._authorize("rebalance", caller)
        if self._gate.check() == GateDecision.DEFERRED:
            return self._queue.push(
                initiator=caller,
                kind=OperationKind.REBALANCE,
                reason=DeferralReason.COST_GATE,
                amount_in=0,
            )
        return self._rebalancer.rebalance(caller)

    @exclusive
    def process_queue(self, limit: int | None = None, caller: str = "keeper") -> BatchResult:
        self._authorize("process_queue", caller)
        return self._processor.process_batch(self._batch_size if limit is None else limit)

    @exclusive
    def claim_fees(self, caller: str) -> int:
        self._authorize("claim_fees", caller)
        p = self._portfolio
        owed = self._ledger.fee_accrual
        if owed == 0:
            return 0
        self._transfer.move(p.base_asset, p.engine_address, p.fee_collector, owed)
        self._ledger.take_fees()
        self._events.emit(
            EventKind.FEES_CLAIMED, collector=p.fee_collector, amount=owed, fee_accrual=0,
        )
        return owed

    # --- Deferred actions (called by the queue processor under the guard) ---

    def execute_deferred(self, op: QueuedOperation) -> None:
        if op.kind == OperationKind.DEPOSIT:
            self._settle_deposit(op.initiator, op.amount_in)
        elif op.kind == OperationKind.REBALANCE:
            self._rebalancer.rebalance(op.initiator)
        elif op.kind == OperationKind.LIQUIDATION:
            self._router.route(
                op.amount_in,
                op.asset_in,
                op.asset_out or self._portfolio.base_asset,
                OperationKind.LIQUIDATION,
                op.initiator,
            )

    # --- Internals ---

    def _authorize(self, action: str, caller: str) -> None:
        if not self._authorizer(action, caller):
            raise AuthorizationError(f"{caller} is not authorized to {action}")

    def _settle_deposit(self, user: str, amount: int) -> DepositReceipt:
        p = self._portfolio
        fee = 0 if user == p.owner else fee_for(amount, p.deposit_fee_bps)
        net = amount - fee
        self._ledger.credit(user, net)
        self._ledger.accrue_fee(fee)

        legs: list[SwapOutcome] = []
        per_asset = net // p.basket_size
        if self._router.is_meaningful(per_asset):
            for asset in p.basket:
                legs.append(self._router.route(
                    per_asset, p.base_asset, asset, OperationKind.DEPOSIT, user,
                ))
        else:
            logger.info("Deposit of %d by %s kept in base (legs below minimum unit)", net, user)

        self._events.emit(
            EventKind.DEPOSITED,
            user=user, amount=amount, fee=fee, credited=net,
            balance=self._ledger.balance_of(user), fee_accrual=self._ledger.fee_accrual,
            legs_executed=sum(1 for o in legs if o.executed),
            legs_queued=sum(1 for o in legs if not o.executed),
        )
        return DepositReceipt(user=user, amount=amount, fee=fee, credited=net, legs=legs)

    def _send_all(self, moves: list[tuple[str, str, int]]) -> None:
        """Pay out (asset, recipient, amount) moves from custody as one unit.

        If any move fails, the moves already made are returned to custody
        in reverse order and the TransferError is re-raised.
        """
        engine = self._portfolio.engine_address
        done: list[tuple[str, str, int]] = []
        try:
            for asset, dst, amount in moves:
                self._transfer.move(asset, engine, dst, amount)
                done.append((asset, dst, amount))
        except TransferError as e:
            logger.warning(
                "Payout failed after %d/%d moves (%s), reverting", len(done), len(moves), e,
            )
            for asset, dst, amount in reversed(done):
                self._transfer.move(asset, dst, engine, amount)
            raise

    def _sell_fee_slice(self, user: str, asset: str, fee_slice: int) -> int | None:
        """Sell a withdrawal-fee slice for base. None when it stays in kind."""
        if not self._router.is_meaningful(fee_slice):
            return None
        outcome = self._router.route(
            fee_slice, asset, self._portfolio.base_asset, OperationKind.LIQUIDATION, user,
        )
        return outcome.amount_out if outcome.executed else None

    # --- Persistence ---

    def save_state(self, state_dir: Path) -> None:
        self._ledger.save(state_dir / "ledger.json")
        self._queue.save(state_dir / "queue.json")

    def load_state(self, state_dir: Path) -> None:
        self._ledger.load(state_dir / "ledger.json")
        self._queue.load(state_dir / "queue.json")
