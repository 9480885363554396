"""Tests for the read-only status API."""

from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from tradegate.api import routers
from tradegate.api.routers import configure_routers, record_decision, update_bot_status
from tradegate.clock import ManualClock
from tradegate.main import app
from tradegate.models.trading import Position
from tradegate.portfolio.balancer import PortfolioBalancer
from tradegate.risk.risk_manager import RiskManager
from tradegate.strategy.opportunity import OpportunityEvaluator

client = TestClient(app)


@pytest.fixture(autouse=True)
def _reset_router_state():
    routers.reset_state()
    yield
    routers.reset_state()


def _balancer() -> PortfolioBalancer:
    bal = PortfolioBalancer(clock=ManualClock())
    bal.update_positions([Position("ETHUSDT", 1.0)], {"ETHUSDT": 1300.0})
    return bal


class TestHealth:
    def test_health(self):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}


class TestStatus:
    def test_default_status(self):
        data = client.get("/status").json()
        assert data["running"] is False
        assert data["cycle_count"] == 0
        assert "trading" not in data

    def test_status_with_manager(self):
        manager = MagicMock()
        manager.get_status.return_value = {"enabled": True, "active_trades": 2}
        configure_routers(manager=manager)
        update_bot_status(running=True, cycle_count=4)
        data = client.get("/status").json()
        assert data["running"] is True
        assert data["cycle_count"] == 4
        assert data["trading"]["active_trades"] == 2


class TestRisk:
    def test_not_configured(self):
        assert "error" in client.get("/risk").json()

    def test_risk_status(self):
        rm = RiskManager(20.0, 5.0, 5, clock=ManualClock())
        rm.update_after_trade(-1.0)
        configure_routers(risk_manager=rm)
        data = client.get("/risk").json()
        assert data["consecutive_losses"] == 1
        assert data["daily_pnl"] == -1.0


class TestDecisions:
    def test_metrics_and_recent(self):
        configure_routers(evaluator=OpportunityEvaluator(clock=ManualClock()))
        for i in range(3):
            record_decision({"instrument": f"SYM{i}", "action": "skipped"})
        data = client.get("/decisions", params={"limit": 2}).json()
        assert data["metrics"]["total_trades_today"] == 0
        assert [d["instrument"] for d in data["recent"]] == ["SYM1", "SYM2"]

    def test_ring_buffer_bounded(self):
        for i in range(60):
            record_decision({"instrument": f"SYM{i}"})
        assert len(routers._decisions) == 50
        assert routers._decisions[0]["instrument"] == "SYM10"

    def test_limit_validated(self):
        assert client.get("/decisions", params={"limit": 0}).status_code == 422


class TestPortfolio:
    def test_report(self):
        configure_routers(balancer=_balancer())
        data = client.get("/portfolio").json()
        assert data["total_value"] == 1300.0
        assert data["rebalance_needed"] is True

    def test_recommendations_default_equity(self):
        bal = _balancer()
        configure_routers(balancer=bal)
        data = client.get("/portfolio/recommendations").json()
        assert data["balanced"] is False
        btc = next(r for r in data["recommendations"] if r["symbol"] == "BTCUSDT")
        assert btc["amount"] == 390.0
        assert bal.last_rebalance is None

    def test_not_configured(self):
        assert "error" in client.get("/portfolio").json()


class TestTrades:
    def test_no_manager(self):
        assert client.get("/trades/active").json() == {"trades": [], "total": 0}

    def test_active_trades(self):
        trade = MagicMock()
        trade.to_dict.return_value = {"order_id": "paper-1"}
        manager = MagicMock()
        manager.get_active_trades.return_value = {"BTCUSDT": trade}
        configure_routers(manager=manager)
        data = client.get("/trades/active").json()
        assert data == {"trades": {"BTCUSDT": {"order_id": "paper-1"}}, "total": 1}


class TestAutoBalancer:
    def test_not_configured(self):
        assert client.get("/auto-balancer").json() == {"enabled": False, "configured": False}

    def test_status(self):
        auto = MagicMock()
        auto.get_status.return_value = {"enabled": True, "last_run": None}
        configure_routers(auto_balancer=auto)
        data = client.get("/auto-balancer").json()
        assert data["configured"] is True
        assert data["enabled"] is True
