"""Internal API routers — /status, /risk, /decisions, /portfolio, /trades endpoints.

Read-only.  No business logic: every endpoint delegates to a component
injected at startup through :func:`configure_routers`.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Query

logger = logging.getLogger("tradegate.api")
router = APIRouter()

# ── Shared state (set during app startup) ────────────────────────────────

_DEFAULT_STATUS: dict = {
    "running": False,
    "started_at": None,
    "instruments": [],
    "timeframes": [],
    "balance": None,
    "active_trades": 0,
    "cycle_count": 0,
    "last_cycle_at": None,
    "last_opportunities": 0,
    "last_executed": 0,
}

_bot_status: dict = {**_DEFAULT_STATUS}
_decisions: list = []  # Recent trade decisions (max 50 entries)

_manager = None         # Set via configure_routers()
_risk_manager = None    # Set via configure_routers()
_evaluator = None       # Set via configure_routers()
_balancer = None        # Set via configure_routers()
_auto_balancer = None   # Set via configure_routers()

_MAX_DECISIONS = 50


def configure_routers(
    manager=None,
    risk_manager=None,
    evaluator=None,
    balancer=None,
    auto_balancer=None,
    bot_status: Optional[dict] = None,
) -> None:
    """Inject dependencies from the application startup.

    Args:
        manager: The ``TradingManager``.
        risk_manager: The ``RiskManager``.
        evaluator: The ``OpportunityEvaluator``.
        balancer: Optional ``PortfolioBalancer``.
        auto_balancer: Optional ``SpotAutoBalancer``.
        bot_status: Optional dict merged over the default status.
    """
    global _manager, _risk_manager, _evaluator, _balancer, _auto_balancer  # noqa: PLW0603
    _manager = manager
    _risk_manager = risk_manager
    _evaluator = evaluator
    _balancer = balancer
    _auto_balancer = auto_balancer
    if bot_status is not None:
        _bot_status.update(bot_status)


def reset_state() -> None:
    """Drop injected components and recorded state."""
    configure_routers()
    _bot_status.clear()
    _bot_status.update(_DEFAULT_STATUS)
    _decisions.clear()


def update_bot_status(**fields) -> None:
    """Update individual fields of the engine status dict."""
    _bot_status.update(fields)


def record_decision(decision: dict) -> None:
    """Append a trade decision to the ring buffer (max 50)."""
    _decisions.append(decision)
    if len(_decisions) > _MAX_DECISIONS:
        del _decisions[0]


# ── Endpoints ────────────────────────────────────────────────────────────


@router.get("/status")
async def get_status():
    """Return the engine status plus the trading manager summary."""
    status = dict(_bot_status)
    if _manager is not None:
        status["trading"] = _manager.get_status()
    return status


@router.get("/risk")
async def get_risk():
    """Return the risk manager's counters and limits."""
    if _risk_manager is None:
        return {"error": "Risk manager not configured"}
    return _risk_manager.get_risk_status()


@router.get("/decisions")
async def get_decisions(limit: int = Query(default=20, ge=1, le=50)):
    """Return decision metrics and the most recent trade decisions."""
    metrics = _evaluator.get_decision_metrics() if _evaluator is not None else {}
    return {"metrics": metrics, "recent": list(_decisions[-limit:])}


@router.get("/portfolio")
async def get_portfolio():
    """Return the portfolio allocation report."""
    if _balancer is None:
        return {"error": "Portfolio balancer not configured"}
    return _balancer.get_portfolio_report()


@router.get("/portfolio/recommendations")
async def get_portfolio_recommendations(
    total_equity: Optional[float] = Query(default=None, ge=0),
):
    """Return rebalance recommendations without acting on them.

    Uses the portfolio's current value when *total_equity* is omitted.
    """
    if _balancer is None:
        return {"error": "Portfolio balancer not configured"}
    equity = total_equity if total_equity is not None else _balancer.total_value
    return _balancer.get_rebalancing_recommendations(equity)


@router.get("/trades/active")
async def get_active_trades():
    """Return trades currently holding a per-symbol lock."""
    if _manager is None:
        return {"trades": [], "total": 0}
    trades = {
        instrument: trade.to_dict()
        for instrument, trade in _manager.get_active_trades().items()
    }
    return {"trades": trades, "total": len(trades)}


@router.get("/auto-balancer")
async def get_auto_balancer():
    """Return the spot auto-balancer status."""
    if _auto_balancer is None:
        return {"enabled": False, "configured": False}
    return {**_auto_balancer.get_status(), "configured": True}
