"""Tests for the CLI entry point."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from pathlib import Path

import orjson
import pytest

from basketvault.__main__ import _build_components, main, owner_authorizer
from basketvault.config import DEFAULT_CONFIG_PATH, Config
from basketvault.sim.market import SimClock


@pytest.fixture(autouse=True)
def _restore_root_logging() -> Iterator[None]:
    # simulate reconfigures the root logger
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


class TestOwnerAuthorizer:
    def test_owner_only_actions(self) -> None:
        authorize = owner_authorizer("owner")
        assert authorize("liquidate", "owner")
        assert not authorize("liquidate", "alice")
        assert not authorize("claim_fees", "alice")
        assert authorize("deposit", "alice")
        assert authorize("process_queue", "keeper")


class TestBuildComponents:
    def test_wires_vault(self) -> None:
        cfg = Config()
        c = _build_components(cfg, SimClock())
        assert c["vault"].portfolio.basket_size == len(cfg.vault.basket)
        assert c["metrics_registry"] is None

    def test_metrics_enabled(self) -> None:
        cfg = Config()
        cfg.metrics.enabled = True
        c = _build_components(cfg, SimClock())
        assert c["metrics_registry"] is not None


class TestValidateCommand:
    def test_valid_file(self, capsys: pytest.CaptureFixture[str]) -> None:
        assert main(["validate", str(DEFAULT_CONFIG_PATH)]) == 0
        assert "OK" in capsys.readouterr().out

    def test_invalid_file(self, tmp_path: Path) -> None:
        path = tmp_path / "bad.toml"
        path.write_text("[vault]\ndeposit_fee_bps = 9000\n")
        assert main(["validate", str(path)]) == 1

    def test_malformed_toml(self, tmp_path: Path) -> None:
        path = tmp_path / "bad.toml"
        path.write_text("[vault\n")
        assert main(["validate", str(path)]) == 1


class TestSimulateCommand:
    def test_scenario_summary(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str],
    ) -> None:
        state_dir = tmp_path / "state"
        assert main(["simulate", "--state-dir", str(state_dir)]) == 0
        summary = orjson.loads(capsys.readouterr().out)
        assert summary["late_deposit_queued"] is True
        assert summary["drains"]["during_spike"]["rescheduled"] == 2
        assert summary["drains"]["after_spike"]["processed"] == 2
        assert summary["outage_legs_queued"] == 10
        assert summary["drains"]["after_outage"]["processed"] == 10
        assert summary["liquidation"]["queued_legs"] == 0
        assert summary["queue_remaining"] == 0
        assert (state_dir / "ledger.json").exists()
        assert (state_dir / "queue.json").exists()

    def test_prometheus_output(self, capsys: pytest.CaptureFixture[str]) -> None:
        assert main(["simulate", "--prometheus"]) == 0
        out = capsys.readouterr().out
        assert 'basketvault_events_total{kind="deposited"}' in out
        assert "basketvault_queue_depth" in out
        assert 'basketvault_queue_transitions_total{reason="cost_gate",transition="queued"}' in out
        summary = orjson.loads(out[: out.index("# TYPE")])
        assert summary["metrics"]["gauges"]["basketvault_queue_depth"] == 0
