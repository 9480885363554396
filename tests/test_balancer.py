"""Tests for the portfolio balancer.

Covers snapshot valuation, deviation-driven actions, the interval gate,
trade sizing and configuration validation.
"""

import pytest

from tradegate.clock import ManualClock
from tradegate.models.portfolio import PortfolioConfig, RebalanceAction
from tradegate.models.trading import Position
from tradegate.portfolio.balancer import PortfolioBalancer


def _make_balancer(clock=None, **overrides) -> PortfolioBalancer:
    return PortfolioBalancer(PortfolioConfig(**overrides), clock or ManualClock())


def _eth_only(balancer: PortfolioBalancer) -> None:
    """Whole portfolio in ETH: 1 ETH at 1,300."""
    balancer.update_positions(
        [Position(instrument="ETHUSDT", size=1.0)], {"ETHUSDT": 1300.0},
    )


# ── Snapshot ─────────────────────────────────────────────────────────────


class TestUpdatePositions:
    def test_weights_and_values(self):
        bal = _make_balancer()
        bal.update_positions(
            [Position("BTCUSDT", 0.01), Position("ETHUSDT", -1.0)],
            {"BTCUSDT": 30_000.0, "ETHUSDT": 700.0},
        )
        positions = bal.positions
        assert bal.total_value == pytest.approx(1000.0)
        assert positions["BTCUSDT"].percentage == pytest.approx(0.3)
        assert positions["ETHUSDT"].quantity == 1.0
        assert positions["ETHUSDT"].value == pytest.approx(700.0)

    def test_falls_back_to_mark_price(self):
        bal = _make_balancer()
        bal.update_positions([Position("SOLUSDT", 2.0, mark_price=50.0)], {})
        assert bal.positions["SOLUSDT"].value == 100.0

    def test_snapshot_is_replaced(self):
        bal = _make_balancer()
        _eth_only(bal)
        bal.update_positions([], {})
        assert bal.positions == {}
        assert bal.total_value == 0.0


# ── Rebalancing ──────────────────────────────────────────────────────────


class TestEvaluateRebalancing:
    def test_underweight_btc_buys_its_target(self):
        """Equity 1300, BTC at 0% vs 30% target → buy 390."""
        bal = _make_balancer()
        _eth_only(bal)
        actions = {a.instrument: a for a in bal.evaluate_rebalancing(1300.0)}
        btc = actions["BTCUSDT"]
        assert btc.action == "buy"
        assert btc.amount == pytest.approx(390.0)
        assert btc.priority == pytest.approx(6.0)

    def test_overweight_sells_capped(self):
        bal = _make_balancer(max_trade_amount=500.0)
        _eth_only(bal)
        eth = next(a for a in bal.evaluate_rebalancing(1300.0) if a.instrument == "ETHUSDT")
        assert eth.action == "sell"
        assert eth.amount == 500.0

    def test_sorted_by_priority_and_small_deviations_skipped(self):
        bal = _make_balancer()
        _eth_only(bal)
        actions = bal.evaluate_rebalancing(1300.0)
        priorities = [a.priority for a in actions]
        assert priorities == sorted(priorities, reverse=True)
        assert actions[0].instrument == "ETHUSDT"
        symbols = {a.instrument for a in actions}
        # 3% and 2% targets sit inside the 5% threshold
        assert "MATICUSDT" not in symbols
        assert "DOTUSDT" not in symbols

    def test_min_trade_amount_skips_small_trades(self):
        bal = _make_balancer(min_trade_amount=200.0)
        _eth_only(bal)
        symbols = {a.instrument for a in bal.evaluate_rebalancing(1300.0)}
        assert symbols == {"BTCUSDT", "ETHUSDT"}

    def test_interval_gate(self):
        clock = ManualClock()
        bal = _make_balancer(clock=clock)
        _eth_only(bal)
        assert bal.evaluate_rebalancing(1300.0)
        clock.advance(hours=5)
        assert bal.evaluate_rebalancing(1300.0) == []
        clock.advance(hours=1)
        assert bal.evaluate_rebalancing(1300.0)

    def test_balanced_call_still_restarts_interval(self):
        clock = ManualClock()
        bal = _make_balancer(
            clock=clock,
            symbols=["BTCUSDT"],
            target_allocations={"BTCUSDT": 1.0},
        )
        bal.update_positions([Position("BTCUSDT", 1.0)], {"BTCUSDT": 100.0})
        assert bal.is_rebalance_due() is True
        assert bal.evaluate_rebalancing(100.0) == []
        assert bal.last_rebalance == clock.now()
        assert bal.is_rebalance_due() is False


class TestTradeSizes:
    def test_buy_and_sell_targets(self):
        bal = _make_balancer()
        actions = [
            RebalanceAction("BTCUSDT", "buy", 0.0, 0.0, 390.0, 6.0, ""),
            RebalanceAction("ETHUSDT", "sell", 0.0, 1.0, 2000.0, 15.0, ""),
        ]
        sized = {a.instrument: a for a in bal.calculate_trade_sizes(
            actions, {"BTCUSDT": 39_000.0, "ETHUSDT": 1000.0},
        )}
        assert sized["BTCUSDT"].target_quantity == pytest.approx(0.01)
        assert sized["ETHUSDT"].target_quantity == 0.0

    def test_action_without_price_dropped(self):
        bal = _make_balancer()
        actions = [RebalanceAction("BTCUSDT", "buy", 0.0, 0.0, 390.0, 6.0, "")]
        assert bal.calculate_trade_sizes(actions, {}) == []


# ── Configuration ────────────────────────────────────────────────────────


class TestConfiguration:
    def test_invalid_allocations_rejected_unchanged(self):
        bal = _make_balancer()
        before = bal.config.target_allocations
        with pytest.raises(ValueError, match="sum to 1.0"):
            bal.update_target_allocations({"BTCUSDT": 0.5, "ETHUSDT": 0.3})
        assert bal.config.target_allocations == before

    @pytest.mark.parametrize("allocations", [
        {"BTCUSDT": float("nan")},
        {"BTCUSDT": float("inf"), "ETHUSDT": float("-inf")},
        {"BTCUSDT": 1.2, "ETHUSDT": -0.2},
    ])
    def test_non_finite_or_negative_weights_rejected(self, allocations):
        bal = _make_balancer()
        before = bal.config.target_allocations
        with pytest.raises(ValueError, match="non-negative"):
            bal.update_target_allocations(allocations)
        assert bal.config.target_allocations == before

    def test_allocations_within_tolerance_accepted(self):
        bal = _make_balancer()
        bal.update_target_allocations({"BTCUSDT": 0.5, "ETHUSDT": 0.495})
        assert bal.config.target_allocations["ETHUSDT"] == 0.495

    def test_update_config_validates(self):
        bal = _make_balancer()
        with pytest.raises(ValueError):
            bal.update_config(min_trade_amount=5000.0)
        with pytest.raises(ValueError, match="Unknown"):
            bal.update_config(leverage=3)
        with pytest.raises(ValueError, match="rebalance_threshold"):
            bal.update_config(rebalance_threshold=0)
        bal.update_config(rebalance_interval_hours=12)
        assert bal.config.rebalance_interval_hours == 12

    def test_config_is_a_copy(self):
        bal = _make_balancer()
        bal.config.symbols.append("XRPUSDT")
        assert "XRPUSDT" not in bal.config.symbols


# ── Reports ──────────────────────────────────────────────────────────────


class TestReports:
    def test_portfolio_report(self):
        bal = _make_balancer()
        _eth_only(bal)
        report = bal.get_portfolio_report()
        rows = {r["symbol"]: r for r in report["allocations"]}
        assert report["total_value"] == 1300.0
        assert rows["ETHUSDT"]["status"] == "OVERWEIGHT"
        assert rows["BTCUSDT"]["status"] == "UNDERWEIGHT"
        assert rows["DOTUSDT"]["status"] == "BALANCED"
        assert report["rebalance_needed"] is True
        assert 0.0 <= report["balance_score"] <= 1.0

    def test_recommendations_do_not_touch_gate(self):
        bal = _make_balancer()
        _eth_only(bal)
        recs = bal.get_rebalancing_recommendations(1300.0)
        assert recs["balanced"] is False
        assert recs["recommendations"][0]["symbol"] == "ETHUSDT"
        assert recs["hours_until_next"] == 0.0
        assert bal.last_rebalance is None
