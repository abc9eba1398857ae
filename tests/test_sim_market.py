"""Tests for the in-memory market."""

from __future__ import annotations

import pytest

from basketvault.config import Config
from basketvault.errors import TransferError, VenueError
from basketvault.sim.market import (
    AssetBook,
    ConcentratedLiquidityVenue,
    ConstantProductVenue,
    SimClock,
    build_market,
)
from basketvault.types import ONE


class TestAssetBook:
    def test_move(self) -> None:
        book = AssetBook()
        book.mint("WETH", "alice", 100)
        book.move("WETH", "alice", "bob", 40)
        assert book.balance_of("WETH", "alice") == 60
        assert book.balance_of("WETH", "bob") == 40
        assert book.supply("WETH") == 100

    def test_overdraft(self) -> None:
        book = AssetBook()
        book.mint("WETH", "alice", 10)
        with pytest.raises(TransferError):
            book.move("WETH", "alice", "bob", 11)
        assert book.balance_of("WETH", "alice") == 10

    def test_negative_transfer(self) -> None:
        with pytest.raises(TransferError):
            AssetBook().move("WETH", "alice", "bob", -1)

    def test_frozen_asset(self) -> None:
        book = AssetBook()
        book.mint("WETH", "alice", 10)
        book.freeze("WETH")
        with pytest.raises(TransferError, match="frozen"):
            book.move("WETH", "alice", "bob", 1)
        book.unfreeze("WETH")
        book.move("WETH", "alice", "bob", 1)


def _cp(clock: SimClock) -> tuple[AssetBook, ConstantProductVenue]:
    book = AssetBook()
    venue = ConstantProductVenue(book, clock=clock)
    venue.add_pool("WETH", "WBTC", 1000 * ONE, 1000 * ONE)
    book.mint("WETH", "vault", 10 * ONE)
    return book, venue


class TestConstantProductVenue:
    def test_quote_formula(self, clock: SimClock) -> None:
        _, venue = _cp(clock)
        amount = ONE
        in_with_fee = amount * 9970
        expected = in_with_fee * 1000 * ONE // (1000 * ONE * 10_000 + in_with_fee)
        assert venue.quote(amount, "WETH", "WBTC") == expected

    def test_quote_is_read_only(self, clock: SimClock) -> None:
        _, venue = _cp(clock)
        first = venue.quote(ONE, "WETH", "WBTC")
        assert venue.quote(ONE, "WETH", "WBTC") == first
        assert venue.reserves("WETH", "WBTC") == (1000 * ONE, 1000 * ONE)

    def test_swap_moves_tokens(self, clock: SimClock) -> None:
        book, venue = _cp(clock)
        quoted = venue.quote(ONE, "WETH", "WBTC")
        out = venue.swap(ONE, "WETH", "WBTC", quoted, "vault", clock.now + 15)
        assert out == quoted
        assert book.balance_of("WBTC", "vault") == out
        assert book.balance_of("WETH", "vault") == 9 * ONE
        assert venue.reserves("WETH", "WBTC") == (1001 * ONE, 1000 * ONE - out)
        assert book.supply("WETH") == 1010 * ONE

    def test_expired_deadline(self, clock: SimClock) -> None:
        _, venue = _cp(clock)
        with pytest.raises(VenueError, match="deadline"):
            venue.swap(ONE, "WETH", "WBTC", 0, "vault", clock.now - 1)

    def test_min_out_enforced(self, clock: SimClock) -> None:
        _, venue = _cp(clock)
        quoted = venue.quote(ONE, "WETH", "WBTC")
        with pytest.raises(VenueError, match="min_out"):
            venue.swap(ONE, "WETH", "WBTC", quoted + 1, "vault", clock.now + 15)

    def test_missing_pool(self, clock: SimClock) -> None:
        _, venue = _cp(clock)
        with pytest.raises(VenueError, match="no pool"):
            venue.quote(ONE, "WETH", "LINK")

    def test_halted(self, clock: SimClock) -> None:
        _, venue = _cp(clock)
        venue.halt()
        assert venue.quote(ONE, "WETH", "WBTC") > 0
        with pytest.raises(VenueError, match="halted"):
            venue.swap(ONE, "WETH", "WBTC", 0, "vault", clock.now + 15)
        assert venue.rejections == 1

    def test_insufficient_input_is_venue_error(self, clock: SimClock) -> None:
        _, venue = _cp(clock)
        with pytest.raises(VenueError, match="input transfer"):
            venue.swap(100 * ONE, "WETH", "WBTC", 0, "vault", clock.now + 15)


class TestConcentratedLiquidityVenue:
    def test_pool_price_at_parity(self, clock: SimClock) -> None:
        venue = ConcentratedLiquidityVenue(AssetBook(), clock=clock)
        venue.add_pool("WETH", "WBTC", 1000 * ONE, 1000 * ONE)
        assert venue.pool_price("WBTC", "WETH") == ONE

    def test_pool_price_both_orientations(self, clock: SimClock) -> None:
        venue = ConcentratedLiquidityVenue(AssetBook(), clock=clock)
        # 4 WETH per WBTC; WBTC sorts first so it is token0
        venue.add_pool("WETH", "WBTC", 4000 * ONE, 1000 * ONE)
        assert venue.pool_price("WBTC", "WETH") == 4 * ONE
        assert venue.pool_price("WETH", "WBTC") == ONE // 4

    def test_unknown_pool_price(self, clock: SimClock) -> None:
        venue = ConcentratedLiquidityVenue(AssetBook(), clock=clock)
        assert venue.pool_price("LINK", "WETH") is None

    def test_quote_close_to_spot_for_small_trade(self, clock: SimClock) -> None:
        venue = ConcentratedLiquidityVenue(AssetBook(), clock=clock)
        venue.add_pool("WETH", "WBTC", 4000 * ONE, 1000 * ONE)
        out = venue.quote(ONE, "WBTC", "WETH")
        # 0.3% fee plus a little price impact
        assert 3 * ONE < out < 4 * ONE
        assert out > 4 * ONE * 99 // 100

    @pytest.mark.parametrize(("asset_in", "asset_out"), [("WETH", "WBTC"), ("WBTC", "WETH")])
    def test_swap_moves_price(self, clock: SimClock, asset_in: str, asset_out: str) -> None:
        book = AssetBook()
        venue = ConcentratedLiquidityVenue(book, clock=clock)
        venue.add_pool("WETH", "WBTC", 1000 * ONE, 1000 * ONE)
        book.mint(asset_in, "vault", 10 * ONE)
        before = venue.pool_price("WBTC", "WETH")
        out = venue.swap(10 * ONE, asset_in, asset_out, 0, "vault", clock.now + 15)
        assert book.balance_of(asset_out, "vault") == out
        after = venue.pool_price("WBTC", "WETH")
        assert before is not None and after is not None
        if asset_in == "WETH":
            assert after > before
        else:
            assert after < before

    def test_quote_does_not_move_price(self, clock: SimClock) -> None:
        venue = ConcentratedLiquidityVenue(AssetBook(), clock=clock)
        venue.add_pool("WETH", "WBTC", 1000 * ONE, 1000 * ONE)
        venue.quote(50 * ONE, "WETH", "WBTC")
        assert venue.pool_price("WBTC", "WETH") == ONE


class TestBuildMarket:
    def test_pools_for_every_basket_asset(self, clock: SimClock) -> None:
        cfg = Config()
        market = build_market(cfg, clock=clock)
        for asset in cfg.vault.basket:
            assert market.constant_product.quote(ONE, "WETH", asset) > 0
            assert market.concentrated.pool_price(asset, "WETH") == ONE

    def test_oracle_starts_low(self, clock: SimClock) -> None:
        cfg = Config()
        market = build_market(cfg, clock=clock)
        reading = market.oracle.read()
        assert reading.value == cfg.sim.low_cost
        assert reading.updated_at == clock.now
