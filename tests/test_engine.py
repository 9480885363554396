"""Tests for the trading engine orchestration.

Verifies the cycle: fetch bars → signals → rank → throttle → execute, plus
the rebalance and auto-balance hooks.  Uses the paper exchange throughout.
"""

from dataclasses import replace

import pytest

from tradegate.ai.confirmation import AIConfirmationGate
from tradegate.api import routers
from tradegate.clock import ManualClock
from tradegate.engine import TradingEngine
from tradegate.exchange.paper import PaperExchange
from tradegate.models.trading import MarketBar, Signal
from tradegate.portfolio.balancer import PortfolioBalancer
from tradegate.portfolio.spot_auto_balancer import SpotAutoBalancer
from tradegate.risk.risk_manager import RiskManager
from tradegate.strategy.opportunity import OpportunityEvaluator
from tradegate.trading.manager import TradingManager, TradingManagerConfig


# ── Helpers ──────────────────────────────────────────────────────────────


class FakeSignalSource:
    """Returns a fixed confidence per instrument; optionally fails for some."""

    def __init__(self, confidences: dict[str, float], fail=()):
        self._confidences = confidences
        self._fail = set(fail)
        self.calls: list[tuple[str, str]] = []

    async def generate(self, bar, instrument, timeframe):
        self.calls.append((instrument, timeframe))
        if instrument in self._fail:
            raise RuntimeError(f"signal model crashed for {instrument}")
        confidence = self._confidences.get(instrument)
        if confidence is None:
            return None
        return Signal(
            timestamp=bar.timestamp,
            instrument=instrument,
            timeframe=timeframe,
            direction="long",
            confidence=confidence,
            source="technical",
        )


def _bar() -> MarketBar:
    return MarketBar(open=100.0, high=100.5, low=99.8, close=100.2, volume=1000.0, timestamp=0.0)


def _make_engine(
    source,
    exchange=None,
    instruments=("BTCUSDT", "ETHUSDT"),
    timeframes=("15m",),
    balancer=None,
    auto_balancer=None,
    clock=None,
) -> TradingEngine:
    clock = clock or ManualClock()
    exchange = exchange or PaperExchange()
    for instrument in instruments:
        for timeframe in timeframes:
            exchange.set_bar(instrument, timeframe, _bar())
    evaluator = OpportunityEvaluator(clock=clock)
    manager = TradingManager(
        account=exchange,
        executor=exchange,
        evaluator=evaluator,
        risk_manager=RiskManager(20.0, 5.0, 5, clock=clock),
        confirmation_gate=AIConfirmationGate(source),
        config=TradingManagerConfig(),
        clock=clock,
    )
    return TradingEngine(
        manager=manager,
        evaluator=evaluator,
        signal_source=source,
        market_data=exchange,
        account=exchange,
        instruments=instruments,
        timeframes=timeframes,
        balancer=balancer,
        auto_balancer=auto_balancer,
        clock=clock,
    )


@pytest.fixture(autouse=True)
def _reset_router_state():
    routers.reset_state()
    yield
    routers.reset_state()


# ── Single cycle ─────────────────────────────────────────────────────────


class TestRunOnce:
    @pytest.mark.asyncio
    async def test_ranks_and_executes(self):
        exchange = PaperExchange()
        engine = _make_engine(FakeSignalSource({"BTCUSDT": 0.85, "ETHUSDT": 0.9}), exchange)
        result = await engine.run_once()

        assert result["action"] == "cycle_complete"
        assert result["opportunities"] == 2
        assert result["executed"] == 2
        # Higher confidence ranks first
        assert [t["instrument"] for t in result["trades"]] == ["ETHUSDT", "BTCUSDT"]
        assert [i.instrument for i in exchange.submitted] == ["ETHUSDT", "BTCUSDT"]
        assert result["rebalance"] is None
        assert result["auto_balance"] is None

    @pytest.mark.asyncio
    async def test_throttles_per_symbol(self):
        exchange = PaperExchange()
        engine = _make_engine(
            FakeSignalSource({"BTCUSDT": 0.9}),
            exchange,
            instruments=("BTCUSDT",),
            timeframes=("15m", "1h"),
        )
        result = await engine.run_once()
        assert result["opportunities"] == 2
        assert len(result["trades"]) == 1
        assert len(exchange.submitted) == 1

    @pytest.mark.asyncio
    async def test_instrument_failure_isolated(self):
        exchange = PaperExchange()
        engine = _make_engine(
            FakeSignalSource({"BTCUSDT": 0.9, "ETHUSDT": 0.9}, fail={"ETHUSDT"}),
            exchange,
        )
        result = await engine.run_once()
        assert result["executed"] == 1
        assert result["errors"][0]["instrument"] == "ETHUSDT"
        assert "crashed" in result["errors"][0]["reason"]
        assert [i.instrument for i in exchange.submitted] == ["BTCUSDT"]

    @pytest.mark.asyncio
    async def test_missing_bar_skips_instrument(self):
        exchange = PaperExchange()
        source = FakeSignalSource({"BTCUSDT": 0.9, "SOLUSDT": 0.9})
        engine = _make_engine(source, exchange, instruments=("BTCUSDT",))
        engine._instruments.append("SOLUSDT")  # no bar published
        result = await engine.run_once()
        assert result["opportunities"] == 1
        assert ("SOLUSDT", "15m") not in source.calls

    @pytest.mark.asyncio
    async def test_second_cycle_respects_active_trade(self):
        exchange = PaperExchange()
        engine = _make_engine(FakeSignalSource({"BTCUSDT": 0.9}), exchange, instruments=("BTCUSDT",))
        await engine.run_once()
        result = await engine.run_once()
        assert result["trades"][0]["action"] == "skipped"
        assert len(exchange.submitted) == 1

    @pytest.mark.asyncio
    async def test_closed_position_settled_and_unlocked(self):
        exchange = PaperExchange()
        engine = _make_engine(FakeSignalSource({"BTCUSDT": 0.9}), exchange, instruments=("BTCUSDT",))
        first = await engine.run_once()
        assert first["closed_trades"] == []

        # Position closed outside the bot, market now 10% lower
        await exchange.open(replace(exchange.submitted[0], direction="short", client_oid="close-1"))
        exchange.set_bar(
            "BTCUSDT", "15m",
            MarketBar(open=90.0, high=90.3, low=90.0, close=90.18, volume=1000.0, timestamp=60.0),
        )
        second = await engine.run_once()

        assert [c["instrument"] for c in second["closed_trades"]] == ["BTCUSDT"]
        assert second["closed_trades"][0]["pnl_percent"] == pytest.approx(-1.05)
        assert engine._manager._risk.state.consecutive_losses == 1
        assert second["trades"][0]["action"] == "executed"
        assert len(exchange.submitted) == 3

    @pytest.mark.asyncio
    async def test_decisions_and_status_published(self):
        engine = _make_engine(FakeSignalSource({"BTCUSDT": 0.9}), instruments=("BTCUSDT",))
        await engine.run_once()
        assert routers._decisions[-1]["instrument"] == "BTCUSDT"
        assert routers._bot_status["cycle_count"] == 1
        assert routers._bot_status["active_trades"] == 1
        assert routers._bot_status["last_executed"] == 1


# ── Rebalancing hooks ────────────────────────────────────────────────────


class TestRebalanceHooks:
    @pytest.mark.asyncio
    async def test_rebalance_on_its_own_gate(self):
        clock = ManualClock()
        exchange = PaperExchange()
        engine = _make_engine(
            FakeSignalSource({}),
            exchange,
            balancer=PortfolioBalancer(clock=clock),
            clock=clock,
        )
        first = await engine.run_once()
        # Only BTC and ETH have prices; the other targets are dropped
        assert [r["instrument"] for r in first["rebalance"]] == ["BTCUSDT", "ETHUSDT"]
        assert all(r["status"] == "success" for r in first["rebalance"])
        assert exchange.submitted[0].quantity == pytest.approx(300.0 / 100.2, abs=1e-6)

        second = await engine.run_once()
        assert second["rebalance"] is None

    @pytest.mark.asyncio
    async def test_auto_balancer_runs(self):
        clock = ManualClock()
        exchange = PaperExchange(spot_balance={"USDT": 100.0})
        engine = _make_engine(
            FakeSignalSource({}),
            exchange,
            auto_balancer=SpotAutoBalancer(exchange, clock=clock),
            clock=clock,
        )
        result = await engine.run_once()
        assert result["auto_balance"]["triggered"] is True
        assert result["auto_balance"]["success_count"] == 6


# ── Loop ─────────────────────────────────────────────────────────────────


class TestRunLoop:
    @pytest.mark.asyncio
    async def test_max_cycles(self):
        engine = _make_engine(FakeSignalSource({}))
        await engine.initialize()
        assert engine.running is True
        results = await engine.run(poll_interval=0, max_cycles=3)
        assert len(results) == 3
        assert engine.cycle_count == 3
        assert routers._bot_status["running"] is False

    @pytest.mark.asyncio
    async def test_stopped_engine_does_not_loop(self):
        engine = _make_engine(FakeSignalSource({}))
        engine.stop()
        assert await engine.run(poll_interval=0, max_cycles=3) == []

    @pytest.mark.asyncio
    async def test_initialize_publishes_status(self):
        engine = _make_engine(FakeSignalSource({}))
        await engine.initialize()
        assert routers._bot_status["balance"] == 1000.0
        assert routers._bot_status["instruments"] == ["BTCUSDT", "ETHUSDT"]
