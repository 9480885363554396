"""TradeGate — application entry point.

Boots the FastAPI internal status server and provides the CLI entry point
that wires the trading components to a set of exchange collaborators.
"""

import importlib
import logging
from typing import Callable, Optional

from fastapi import FastAPI

from tradegate.ai.confirmation import AIConfirmationGate
from tradegate.api.routers import configure_routers, router, update_bot_status
from tradegate.clock import Clock, SystemClock
from tradegate.config import Config, load_portfolio_config
from tradegate.engine import TradingEngine
from tradegate.portfolio.balancer import PortfolioBalancer
from tradegate.portfolio.spot_auto_balancer import AutoBalancerConfig, SpotAutoBalancer
from tradegate.risk.risk_manager import RiskManager
from tradegate.strategy.opportunity import OpportunityConfig, OpportunityEvaluator
from tradegate.trading.manager import TradingManager, TradingManagerConfig

app = FastAPI(title="TradeGate Internal API", version="0.1.0")
app.include_router(router)

logger = logging.getLogger("tradegate")


@app.get("/health")
async def health():
    """Liveness probe."""
    return {"status": "ok"}


def load_factory(target: str) -> Callable[[Config], dict]:
    """Resolve a ``module:callable`` string to a collaborator factory."""
    module_name, sep, attr = target.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Collaborator factory must look like 'module:callable', got {target!r}")
    module = importlib.import_module(module_name)
    factory = getattr(module, attr, None)
    if not callable(factory):
        raise ValueError(f"{target!r} is not callable")
    return factory


def build_engine(
    config: Config,
    collaborators: dict,
    clock: Optional[Clock] = None,
) -> TradingEngine:
    """Wire every component from *config* and inject them into the API.

    *collaborators* must provide ``account``, ``executor``, ``market_data``
    and ``signal_source``; ``spot`` is optional and enables the spot
    auto-balancer.
    """
    missing = [
        key for key in ("account", "executor", "market_data", "signal_source")
        if collaborators.get(key) is None
    ]
    if missing:
        raise ValueError(f"Missing collaborator(s): {', '.join(missing)}")

    clock = clock or SystemClock()
    risk_manager = RiskManager(
        max_equity_risk=config.max_equity_risk,
        max_daily_loss=config.max_daily_loss,
        max_consecutive_losses=config.max_consecutive_losses,
        clock=clock,
    )
    evaluator = OpportunityEvaluator(
        OpportunityConfig(
            min_confidence=config.min_opportunity_confidence,
            min_expected_return=config.min_expected_return,
            max_daily_trades_per_symbol=config.max_daily_trades_per_symbol,
            max_leverage=config.max_leverage,
        ),
        clock=clock,
    )
    gate = AIConfirmationGate(
        collaborators["signal_source"],
        ai_weight=config.ai_weight,
        timeframe=config.ai_timeframe,
    )
    manager = TradingManager(
        account=collaborators["account"],
        executor=collaborators["executor"],
        evaluator=evaluator,
        risk_manager=risk_manager,
        confirmation_gate=gate,
        config=TradingManagerConfig(
            min_usdt_balance=config.min_usdt_balance,
            max_position_size=config.max_position_size,
            max_leverage=config.max_leverage,
            ai_confirmation_required=config.ai_confirmation_required,
            supported_pairs=list(config.trading_pairs),
            max_risk_per_trade=config.max_risk_per_trade,
            stop_loss_pct=config.stop_loss_pct,
            take_profit_pct=config.take_profit_pct,
            sizing_method=config.sizing_method,
            balance_cache_seconds=config.balance_cache_seconds,
            quote_currency=config.quote_currency,
        ),
        clock=clock,
    )
    balancer = PortfolioBalancer(load_portfolio_config(config.portfolio_config_path), clock)

    auto_balancer = None
    if collaborators.get("spot") is not None:
        auto_balancer = SpotAutoBalancer(
            collaborators["spot"],
            AutoBalancerConfig(quote_currency=config.quote_currency),
            clock,
        )

    configure_routers(
        manager=manager,
        risk_manager=risk_manager,
        evaluator=evaluator,
        balancer=balancer,
        auto_balancer=auto_balancer,
    )
    return TradingEngine(
        manager=manager,
        evaluator=evaluator,
        signal_source=collaborators["signal_source"],
        market_data=collaborators["market_data"],
        account=collaborators["account"],
        instruments=config.trading_pairs,
        timeframes=config.timeframes,
        balancer=balancer,
        auto_balancer=auto_balancer,
        max_positions_per_symbol=config.max_positions_per_symbol,
        clock=clock,
    )


# ── CLI ──────────────────────────────────────────────────────────────────


def _run_cli() -> None:
    """Parse CLI arguments, wire the components and run."""
    import argparse
    import asyncio
    import signal

    from tradegate.config import load_config

    parser = argparse.ArgumentParser(description="TradeGate trading bot")
    parser.add_argument(
        "--env-file",
        default=None,
        help="Path to a .env file (default: search from the working directory)",
    )
    parser.add_argument(
        "--collaborators",
        required=True,
        help=(
            "Collaborator factory as module:callable, returning the account, "
            "executor, market_data and signal_source (and optionally spot)"
        ),
    )
    parser.add_argument(
        "--engine-only",
        action="store_true",
        help="Run the trading engine without the API server",
    )
    parser.add_argument(
        "--max-cycles",
        type=int,
        default=0,
        help="Stop after this many cycles (default: run until interrupted)",
    )
    args = parser.parse_args()

    try:
        config = load_config(args.env_file)
    except ValueError as exc:
        parser.error(str(exc))

    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    try:
        collaborators = load_factory(args.collaborators)(config)
        engine = build_engine(config, collaborators)
    except (ImportError, ValueError) as exc:
        parser.error(str(exc))

    update_bot_status(instruments=list(config.trading_pairs), running=False)

    def handle_shutdown(signum, frame):
        logger.info("Shutdown signal received, stopping gracefully.")
        engine.stop()

    signal.signal(signal.SIGINT, handle_shutdown)

    if args.engine_only:
        asyncio.run(_run_engine_only(engine, config, args.max_cycles))
    else:
        asyncio.run(_run_with_api(engine, config, args.max_cycles))


async def _run_with_api(engine: TradingEngine, config: Config, max_cycles: int) -> None:
    """Start the API server and the trading engine concurrently."""
    import asyncio
    import uvicorn

    logger.info(
        "Starting TradeGate with %d instrument(s) on port %d.",
        len(config.trading_pairs), config.health_port,
    )
    uvi_config = uvicorn.Config(
        app,
        host="0.0.0.0",
        port=config.health_port,
        log_level=config.log_level.lower(),
    )
    server = uvicorn.Server(uvi_config)

    async def _run_engine():
        await engine.initialize()
        await engine.run(config.poll_interval_seconds, max_cycles)

    results = await asyncio.gather(
        server.serve(),
        _run_engine(),
        return_exceptions=True,
    )
    logger.info("TradeGate stopped. Results: %s", results)


async def _run_engine_only(engine: TradingEngine, config: Config, max_cycles: int) -> None:
    """Run the trading engine without starting the API server."""
    logger.info(
        "Starting TradeGate engine (no API) with %d instrument(s).",
        len(config.trading_pairs),
    )
    await engine.initialize()
    await engine.run(config.poll_interval_seconds, max_cycles)
    logger.info("TradeGate engine stopped.")


if __name__ == "__main__":
    _run_cli()
