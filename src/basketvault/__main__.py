"""Entry point: ``python -m basketvault [simulate|validate]``.

``simulate`` wires a vault over the in-memory market and walks it through
deposits, a cost spike with deferral, queue drains, a venue outage, a
rebalance, withdrawals and a final liquidation, then prints a summary.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any

import orjson

from basketvault.config import Config, ConfigError, load_config
from basketvault.logging_setup import setup_logging, to_wire

if TYPE_CHECKING:
    from collections.abc import Callable

    from basketvault.vault import Authorizer

logger = logging.getLogger(__name__)

OWNER_ACTIONS = frozenset({"liquidate", "claim_fees"})


# ---------------------------------------------------------------------------
# Component construction
# ---------------------------------------------------------------------------


def owner_authorizer(owner: str) -> Authorizer:
    """Owner-only liquidation and fee claims; everything else is open."""

    def authorize(action: str, caller: str) -> bool:
        if action in OWNER_ACTIONS:
            return caller == owner
        return True

    return authorize


def _build_components(cfg: Config, clock: Callable[[], float]) -> dict[str, Any]:
    """Construct all components from config.  Returns a dict of named objects."""
    from basketvault.events import EventBus
    from basketvault.sim.market import build_market
    from basketvault.vault import Vault

    # Metrics (optional)
    metrics_registry = None
    if cfg.metrics.enabled:
        from basketvault.metrics import MetricsRegistry

        metrics_registry = MetricsRegistry(prefix=cfg.metrics.prefix)

    events = EventBus(metrics=metrics_registry, clock=clock)
    market = build_market(cfg, clock=clock)

    vault = Vault(
        portfolio=cfg.portfolio(),
        transfer=market.book,
        constant_product=market.constant_product,
        concentrated=market.concentrated,
        oracle=market.oracle,
        events=events,
        authorize=owner_authorizer(cfg.vault.owner),
        batch_size=cfg.queue.batch_size,
        oracle_max_age_sec=cfg.cost.max_age_sec,
        clock=clock,
    )

    return {
        "cfg": cfg,
        "vault": vault,
        "market": market,
        "events": events,
        "metrics_registry": metrics_registry,
    }


# ---------------------------------------------------------------------------
# Simulation scenario
# ---------------------------------------------------------------------------


def _run_simulation(cfg: Config, state_dir: Path | None) -> dict[str, Any]:
    from basketvault.portfolio.rebalancer import RebalanceReport
    from basketvault.sim.market import SimClock
    from basketvault.types import ONE

    clock = SimClock()
    c = _build_components(cfg, clock)
    vault = c["vault"]
    market = c["market"]
    book = market.book
    base = cfg.vault.base_asset
    cooldown = cfg.queue.cooldown_sec
    amount = cfg.sim.deposit_amount * ONE

    def drain() -> dict[str, int]:
        clock.advance(cooldown + 1)
        result = vault.process_queue()
        return {
            "processed": len(result.processed),
            "dropped": len(result.dropped),
            "rescheduled": result.rescheduled,
            "remaining": len(vault.queue),
        }

    depositors = [f"depositor-{i}" for i in range(1, cfg.sim.depositors + 1)]
    for user in depositors:
        book.mint(base, user, amount)
        vault.deposit(user, amount)
    logger.info("Phase 1: %d deposits settled", len(depositors))

    # Cost spike: new work is deferred, drains only reschedule
    market.oracle.set_cost(cfg.sim.high_cost)
    late = "depositor-late"
    book.mint(base, late, amount)
    late_receipt = vault.deposit(late, amount)
    vault.request_rebalance(cfg.vault.owner)
    spike_drain = drain()
    logger.info("Phase 2: cost spike, %d entries waiting", len(vault.queue))

    market.oracle.set_cost(cfg.sim.low_cost)
    recovery_drain = drain()
    logger.info("Phase 3: cost recovered")

    # Venue outage: every deposit leg fails and is queued for retry
    market.constant_product.halt()
    market.concentrated.halt()
    outage_user = "depositor-outage"
    book.mint(base, outage_user, amount)
    outage_receipt = vault.deposit(outage_user, amount)
    market.constant_product.resume()
    market.concentrated.resume()
    outage_drain = drain()
    logger.info("Phase 4: venue outage recovered")

    rebalance = vault.request_rebalance(cfg.vault.owner)
    rebalance_summary = None
    if isinstance(rebalance, RebalanceReport):
        rebalance_summary = {
            "total_value": rebalance.plan.total_value,
            "target_value": rebalance.plan.target_value,
            "executed": rebalance.executed,
            "queued": rebalance.queued,
        }

    in_kind = vault.withdraw_in_kind(depositors[0])

    # Base withdrawals draw on liquid base only; most value sits in the basket
    partial = None
    if len(depositors) > 1:
        half = vault.ledger.balance_of(depositors[1]) // 2
        if 0 < half <= vault.free_base():
            partial = vault.withdraw_base(depositors[1], half)
        else:
            logger.info("Skipping base withdrawal of %d, liquid base %d", half, vault.free_base())

    if state_dir is not None:
        vault.save_state(state_dir)

    liquidation = vault.liquidate_all(cfg.vault.owner)

    return {
        "depositors": len(depositors) + 2,
        "late_deposit_queued": late_receipt.queued,
        "outage_legs_queued": sum(1 for leg in outage_receipt.legs if not leg.executed),
        "drains": {
            "during_spike": spike_drain,
            "after_spike": recovery_drain,
            "after_outage": outage_drain,
        },
        "rebalance": rebalance_summary,
        "in_kind_withdrawal": {
            "user": in_kind.user,
            "assets": len(in_kind.transfers),
            "fee_base": in_kind.fee_base,
        },
        "base_withdrawal": None if partial is None else {
            "user": partial.user, "amount": partial.amount, "fee": partial.fee,
        },
        "liquidation": {
            "pool": liquidation.pool,
            "fees": liquidation.fees,
            "accounts_paid": len(liquidation.payouts),
            "dust": liquidation.dust,
            "queued_legs": liquidation.queued_legs,
        },
        "swaps_executed": vault.router.swaps_executed,
        "swaps_queued": vault.router.swaps_queued,
        "queue_remaining": len(vault.queue),
        "metrics": c["metrics_registry"],
    }


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------


def main(argv: list[str] | None = None) -> int:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="basketvault",
        description="Custody and equal-weight rebalancing engine with a deferred trade queue",
    )
    sub = parser.add_subparsers(dest="command")

    # simulate (default)
    sim_parser = sub.add_parser("simulate", help="Run the vault against a simulated market")
    sim_parser.add_argument("--config", "-c", type=str, help="Config file path")
    sim_parser.add_argument("--json-log", action="store_true", help="JSON log output")
    sim_parser.add_argument("--state-dir", type=str, help="Save ledger and queue here")
    sim_parser.add_argument(
        "--prometheus", action="store_true", help="Print metrics in Prometheus text format",
    )

    # validate
    val_parser = sub.add_parser("validate", help="Validate a config file")
    val_parser.add_argument("config", type=str, help="Config file path")

    args = parser.parse_args(argv)
    command = args.command or "simulate"

    if command == "validate":
        try:
            load_config(Path(args.config))
        except (ConfigError, OSError, ValueError) as e:
            print(f"Invalid: {e}", file=sys.stderr)
            return 1
        print(f"{args.config}: OK")
        return 0

    config_path = Path(args.config) if getattr(args, "config", None) else None
    cfg = load_config(config_path)
    prometheus = getattr(args, "prometheus", False)
    if prometheus:
        cfg.metrics.enabled = True
    setup_logging(level=cfg.log_level, json_output=getattr(args, "json_log", False))

    state_dir = getattr(args, "state_dir", None)
    summary = _run_simulation(cfg, Path(state_dir) if state_dir else None)
    metrics = summary.pop("metrics")
    if metrics is not None:
        summary["metrics"] = metrics.snapshot()

    print(orjson.dumps(to_wire(summary), option=orjson.OPT_INDENT_2).decode())
    if prometheus and metrics is not None:
        print(metrics.format_prometheus())
    return 0


if __name__ == "__main__":
    sys.exit(main())
