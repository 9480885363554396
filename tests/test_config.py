"""Tests for tradegate.config — environment loading, validation and the portfolio file."""

import json

import pytest

from tradegate.config import load_config, load_portfolio_config
from tradegate.models.portfolio import DEFAULT_TARGET_ALLOCATIONS

_VARS = [
    "TRADING_PAIRS",
    "TIMEFRAMES",
    "POLL_INTERVAL_SECONDS",
    "QUOTE_CURRENCY",
    "MAX_EQUITY_RISK",
    "MAX_DAILY_LOSS",
    "MAX_CONSECUTIVE_LOSSES",
    "SIZING_METHOD",
    "MIN_OPPORTUNITY_CONFIDENCE",
    "MIN_EXPECTED_RETURN",
    "MAX_DAILY_TRADES_PER_SYMBOL",
    "MAX_POSITIONS_PER_SYMBOL",
    "AI_CONFIRMATION_REQUIRED",
    "AI_WEIGHT",
    "AI_TIMEFRAME",
    "MIN_USDT_BALANCE",
    "MAX_POSITION_SIZE",
    "MAX_LEVERAGE",
    "MAX_RISK_PER_TRADE",
    "STOP_LOSS_PCT",
    "TAKE_PROFIT_PCT",
    "BALANCE_CACHE_SECONDS",
    "PORTFOLIO_CONFIG_PATH",
    "LOG_LEVEL",
    "HEALTH_PORT",
]


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    """Clear config vars; values loaded from a .env file are undone too."""
    for var in _VARS:
        monkeypatch.setenv(var, "")
        monkeypatch.delenv(var)


def _load(tmp_path):
    # Non-existent env_path so load_dotenv never reads a developer's .env
    return load_config(env_path=str(tmp_path / "nonexistent.env"))


class TestLoadConfig:
    def test_defaults(self, tmp_path):
        cfg = _load(tmp_path)
        assert cfg.trading_pairs[0] == "BTCUSDT"
        assert len(cfg.trading_pairs) == 10
        assert cfg.timeframes == ["15m"]
        assert cfg.poll_interval_seconds == 60
        assert cfg.max_equity_risk == 20.0
        assert cfg.max_daily_loss == 5.0
        assert cfg.max_consecutive_losses == 5
        assert cfg.sizing_method == "fixed"
        assert cfg.ai_confirmation_required is True
        assert cfg.ai_weight == 0.4
        assert cfg.max_position_size == 15.0
        assert cfg.balance_cache_seconds == 30.0
        assert cfg.portfolio_config_path is None
        assert cfg.log_level == "INFO"
        assert cfg.health_port == 8080

    def test_overrides(self, monkeypatch, tmp_path):
        monkeypatch.setenv("TRADING_PAIRS", "BTCUSDT, ETHUSDT")
        monkeypatch.setenv("TIMEFRAMES", "15m,1h")
        monkeypatch.setenv("AI_CONFIRMATION_REQUIRED", "false")
        monkeypatch.setenv("SIZING_METHOD", "Volatility")
        monkeypatch.setenv("LOG_LEVEL", "debug")
        cfg = _load(tmp_path)
        assert cfg.trading_pairs == ["BTCUSDT", "ETHUSDT"]
        assert cfg.timeframes == ["15m", "1h"]
        assert cfg.ai_confirmation_required is False
        assert cfg.sizing_method == "volatility"
        assert cfg.log_level == "DEBUG"

    def test_reads_env_file(self, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text("MAX_LEVERAGE=5\nAI_WEIGHT=0.25\n", encoding="utf-8")
        cfg = load_config(env_path=str(env_file))
        assert cfg.max_leverage == 5
        assert cfg.ai_weight == 0.25

    @pytest.mark.parametrize(
        "var, value",
        [
            ("MAX_EQUITY_RISK", "60"),
            ("MAX_DAILY_LOSS", "0.1"),
            ("MAX_CONSECUTIVE_LOSSES", "25"),
            ("AI_WEIGHT", "1.5"),
            ("MAX_LEVERAGE", "0"),
        ],
    )
    def test_out_of_range_rejected(self, monkeypatch, tmp_path, var, value):
        monkeypatch.setenv(var, value)
        with pytest.raises(ValueError, match=var):
            _load(tmp_path)

    def test_malformed_number_names_variable(self, monkeypatch, tmp_path):
        monkeypatch.setenv("HEALTH_PORT", "eighty")
        with pytest.raises(ValueError, match="HEALTH_PORT"):
            _load(tmp_path)

    def test_unknown_sizing_method(self, monkeypatch, tmp_path):
        monkeypatch.setenv("SIZING_METHOD", "kelly")
        with pytest.raises(ValueError, match="SIZING_METHOD"):
            _load(tmp_path)


class TestPortfolioConfig:
    def test_missing_file_gives_defaults(self, tmp_path):
        cfg = load_portfolio_config(tmp_path / "portfolio.json")
        assert cfg.target_allocations == DEFAULT_TARGET_ALLOCATIONS
        assert load_portfolio_config(None).rebalance_interval_hours == 6.0

    def test_file_overrides(self, tmp_path):
        path = tmp_path / "portfolio.json"
        path.write_text(json.dumps({
            "target_allocations": {"BTCUSDT": 0.6, "ETHUSDT": 0.4},
            "rebalance_threshold": 0.1,
            "max_trade_amount": 250,
        }), encoding="utf-8")
        cfg = load_portfolio_config(path)
        assert cfg.symbols == ["BTCUSDT", "ETHUSDT"]
        assert cfg.rebalance_threshold == 0.1
        assert cfg.max_trade_amount == 250.0
        assert cfg.min_trade_amount == 10.0

    def test_bad_weights_rejected(self, tmp_path):
        path = tmp_path / "portfolio.json"
        path.write_text(json.dumps({"target_allocations": {"BTCUSDT": 0.5}}), encoding="utf-8")
        with pytest.raises(ValueError, match="sum to 1.0"):
            load_portfolio_config(path)

    def test_zero_threshold_rejected(self, tmp_path):
        path = tmp_path / "portfolio.json"
        path.write_text(json.dumps({"rebalance_threshold": 0}), encoding="utf-8")
        with pytest.raises(ValueError, match="rebalance_threshold"):
            load_portfolio_config(path)

    def test_min_above_max_rejected(self, tmp_path):
        path = tmp_path / "portfolio.json"
        path.write_text(
            json.dumps({"min_trade_amount": 500, "max_trade_amount": 100}), encoding="utf-8",
        )
        with pytest.raises(ValueError, match="min_trade_amount"):
            load_portfolio_config(path)

    def test_invalid_json_rejected(self, tmp_path):
        path = tmp_path / "portfolio.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(ValueError, match="Invalid portfolio config"):
            load_portfolio_config(path)
