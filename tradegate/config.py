"""TradeGate — application configuration.

Loads .env variables into a typed config object and validates ranges on
startup.  The portfolio targets live in a separate JSON file.
"""

import json
import os
import pathlib
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

from tradegate.models.portfolio import PortfolioConfig, validate_portfolio_config
from tradegate.trading.manager import DEFAULT_SUPPORTED_PAIRS, SIZING_METHODS


@dataclass(frozen=True)
class Config:
    """Typed configuration loaded from environment variables."""

    trading_pairs: list[str] = field(default_factory=lambda: list(DEFAULT_SUPPORTED_PAIRS))
    timeframes: list[str] = field(default_factory=lambda: ["15m"])
    poll_interval_seconds: int = 60
    quote_currency: str = "USDT"

    # Risk limits (percent)
    max_equity_risk: float = 20.0
    max_daily_loss: float = 5.0
    max_consecutive_losses: int = 5
    sizing_method: str = "fixed"

    # Opportunity thresholds
    min_opportunity_confidence: float = 0.35
    min_expected_return: float = 0.5
    max_daily_trades_per_symbol: int = 15
    max_positions_per_symbol: int = 1

    # AI confirmation
    ai_confirmation_required: bool = True
    ai_weight: float = 0.4
    ai_timeframe: str = "15m"

    # Trading manager
    min_usdt_balance: float = 10.0
    max_position_size: float = 15.0
    max_leverage: int = 10
    max_risk_per_trade: float = 10.0
    stop_loss_pct: float = 2.5
    take_profit_pct: float = 5.0
    balance_cache_seconds: float = 30.0

    portfolio_config_path: Optional[str] = None
    log_level: str = "INFO"
    health_port: int = 8080


def _env(name: str, default: str, cast=str):
    raw = os.environ.get(name, default)
    try:
        return cast(raw)
    except ValueError as exc:
        raise ValueError(f"Invalid value for {name}: {raw!r}") from exc


def _split(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def _bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _check_range(name: str, value: float, low: float, high: float) -> None:
    if not low <= value <= high:
        raise ValueError(f"{name} must be between {low} and {high}, got {value}")


def load_config(env_path: str | None = None) -> Config:
    """Load configuration from environment variables.

    Raises ``ValueError`` naming the offending variable when a value is
    malformed or outside its allowed range.
    """
    load_dotenv(dotenv_path=env_path)
    config = Config(
        trading_pairs=_split(_env("TRADING_PAIRS", ",".join(DEFAULT_SUPPORTED_PAIRS))),
        timeframes=_split(_env("TIMEFRAMES", "15m")),
        poll_interval_seconds=_env("POLL_INTERVAL_SECONDS", "60", int),
        quote_currency=_env("QUOTE_CURRENCY", "USDT"),
        max_equity_risk=_env("MAX_EQUITY_RISK", "20", float),
        max_daily_loss=_env("MAX_DAILY_LOSS", "5", float),
        max_consecutive_losses=_env("MAX_CONSECUTIVE_LOSSES", "5", int),
        sizing_method=_env("SIZING_METHOD", "fixed").strip().lower(),
        min_opportunity_confidence=_env("MIN_OPPORTUNITY_CONFIDENCE", "0.35", float),
        min_expected_return=_env("MIN_EXPECTED_RETURN", "0.5", float),
        max_daily_trades_per_symbol=_env("MAX_DAILY_TRADES_PER_SYMBOL", "15", int),
        max_positions_per_symbol=_env("MAX_POSITIONS_PER_SYMBOL", "1", int),
        ai_confirmation_required=_bool(_env("AI_CONFIRMATION_REQUIRED", "true")),
        ai_weight=_env("AI_WEIGHT", "0.4", float),
        ai_timeframe=_env("AI_TIMEFRAME", "15m"),
        min_usdt_balance=_env("MIN_USDT_BALANCE", "10", float),
        max_position_size=_env("MAX_POSITION_SIZE", "15", float),
        max_leverage=_env("MAX_LEVERAGE", "10", int),
        max_risk_per_trade=_env("MAX_RISK_PER_TRADE", "10", float),
        stop_loss_pct=_env("STOP_LOSS_PCT", "2.5", float),
        take_profit_pct=_env("TAKE_PROFIT_PCT", "5", float),
        balance_cache_seconds=_env("BALANCE_CACHE_SECONDS", "30", float),
        portfolio_config_path=os.environ.get("PORTFOLIO_CONFIG_PATH") or None,
        log_level=_env("LOG_LEVEL", "INFO").upper(),
        health_port=_env("HEALTH_PORT", "8080", int),
    )

    _check_range("MAX_EQUITY_RISK", config.max_equity_risk, 1, 50)
    _check_range("MAX_DAILY_LOSS", config.max_daily_loss, 0.5, 20)
    _check_range("MAX_CONSECUTIVE_LOSSES", config.max_consecutive_losses, 1, 20)
    _check_range("AI_WEIGHT", config.ai_weight, 0.0, 1.0)
    _check_range("MAX_RISK_PER_TRADE", config.max_risk_per_trade, 0.1, 100)
    if config.max_leverage < 1:
        raise ValueError(f"MAX_LEVERAGE must be at least 1, got {config.max_leverage}")
    if config.sizing_method not in SIZING_METHODS:
        raise ValueError(
            f"SIZING_METHOD must be one of {sorted(SIZING_METHODS)}, "
            f"got {config.sizing_method!r}"
        )
    if not config.trading_pairs:
        raise ValueError("TRADING_PAIRS must name at least one instrument")
    if config.poll_interval_seconds < 1:
        raise ValueError("POLL_INTERVAL_SECONDS must be at least 1")

    return config


def load_portfolio_config(path: str | pathlib.Path | None) -> PortfolioConfig:
    """Load portfolio targets from a JSON file over the built-in defaults.

    A missing path or file yields the defaults.  Raises ``ValueError`` when
    the file is not a JSON object or the resulting config is invalid.
    """
    defaults = PortfolioConfig()
    if path is None:
        return defaults
    path = pathlib.Path(path)
    if not path.exists():
        return defaults

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid portfolio config {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ValueError(f"Portfolio config {path} must be a JSON object")

    allocations = {
        str(k): float(v)
        for k, v in data.get("target_allocations", defaults.target_allocations).items()
    }
    config = PortfolioConfig(
        symbols=list(data.get("symbols", list(allocations))),
        target_allocations=allocations,
        rebalance_threshold=float(data.get("rebalance_threshold", defaults.rebalance_threshold)),
        min_trade_amount=float(data.get("min_trade_amount", defaults.min_trade_amount)),
        max_trade_amount=float(data.get("max_trade_amount", defaults.max_trade_amount)),
        rebalance_interval_hours=float(
            data.get("rebalance_interval_hours", defaults.rebalance_interval_hours)
        ),
    )
    validate_portfolio_config(config)
    return config
