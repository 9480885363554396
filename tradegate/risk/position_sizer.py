"""Position sizing — pure math, no I/O.

Converts equity, risk percentage, price and leverage into a base-asset
quantity.  Sizing fails soft: any arithmetic problem yields ``0.0`` rather
than an exception, so a bad quote can never size a trade.
"""

import logging
import math
from typing import Iterable, Optional, TypeVar

from tradegate.models.trading import Opportunity, PositionIntent

logger = logging.getLogger("tradegate.risk")

_QUANTITY_DECIMALS = 6

# Anything with an ``instrument`` attribute (intents, opportunities).
_T = TypeVar("_T", PositionIntent, Opportunity)


def _finalise(quantity: float) -> float:
    if not math.isfinite(quantity):
        return 0.0
    return max(0.0, round(quantity, _QUANTITY_DECIMALS))


def size_by_risk(
    equity: float,
    max_risk_pct: float,
    price: float,
    leverage: float,
    stop_loss_percent: Optional[float] = None,
) -> float:
    """Calculate position size from a percentage of equity at risk.

    Formula with a stop-loss::

        risk_amount   = equity × (max_risk_pct / 100)
        stop_distance = price × (stop_loss_percent / 100)
        quantity      = (risk_amount / stop_distance) × leverage

    Without a stop-loss the whole risk budget is treated as margin::

        quantity = equity × (max_risk_pct / 100) × leverage / price

    Returns:
        Quantity in base-asset units, rounded to 6 decimals, never negative.
        ``0.0`` on any arithmetic failure (e.g. ``price == 0``).
    """
    try:
        if stop_loss_percent and stop_loss_percent > 0:
            risk_amount = equity * (max_risk_pct / 100.0)
            stop_distance = price * (stop_loss_percent / 100.0)
            quantity = (risk_amount / stop_distance) * leverage
        else:
            max_notional = equity * (max_risk_pct / 100.0) * leverage
            quantity = max_notional / price
        return _finalise(quantity)
    except (ArithmeticError, TypeError, ValueError) as exc:
        logger.error("Error calculating position size: %s", exc)
        return 0.0


def size_by_volatility(
    equity: float,
    max_risk_pct: float,
    price: float,
    leverage: float,
    atr: float,
    atr_multiplier: float = 2.0,
) -> float:
    """Like :func:`size_by_risk` with the stop distance set to ``atr × atr_multiplier``."""
    try:
        risk_amount = equity * (max_risk_pct / 100.0)
        volatility_stop = atr * atr_multiplier
        quantity = (risk_amount / volatility_stop) * leverage
        return _finalise(quantity)
    except (ArithmeticError, TypeError, ValueError) as exc:
        logger.error("Error calculating volatility-based position size: %s", exc)
        return 0.0


def throttle_by_open_positions(
    intents: Iterable[_T],
    max_per_symbol: int,
) -> list[_T]:
    """Keep at most *max_per_symbol* intents per instrument, first seen wins.

    Input order is preserved.
    """
    counts: dict[str, int] = {}
    kept: list[_T] = []
    for intent in intents:
        current = counts.get(intent.instrument, 0)
        if current >= max_per_symbol:
            logger.debug(
                "Throttling %s: max positions (%d) reached",
                intent.instrument, max_per_symbol,
            )
            continue
        counts[intent.instrument] = current + 1
        kept.append(intent)
    return kept
