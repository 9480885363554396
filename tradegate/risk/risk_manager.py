"""Risk manager — daily loss limit, loss-streak lockout, exposure cap.

Pure state machine, no I/O.  All mutable state lives in a single
:class:`RiskState` owned by one :class:`RiskManager` instance; there is no
module-level singleton.
"""

import logging
from dataclasses import dataclass, asdict
from datetime import date
from typing import Iterable, Optional

from tradegate.clock import Clock, SystemClock, today
from tradegate.models.trading import PositionIntent, RiskCheck

logger = logging.getLogger("tradegate.risk")


@dataclass
class RiskState:
    """Mutable risk counters.

    ``daily_pnl`` is a percentage of equity accumulated since
    ``last_reset_date``.
    """

    consecutive_losses: int = 0
    daily_pnl: float = 0.0
    last_reset_date: Optional[date] = None


class RiskManager:
    """Gates proposed positions against equity-risk, daily-loss and
    consecutive-loss limits.

    Args:
        max_equity_risk: Maximum aggregate risk as a percentage of equity.
        max_daily_loss: Daily loss limit in percent (positive number).
        max_consecutive_losses: Loss streak length that halts trading.
        clock: Time source for the lazy daily rollover.
        state: Optional pre-existing state (e.g. restored by the caller).
    """

    def __init__(
        self,
        max_equity_risk: float,
        max_daily_loss: float,
        max_consecutive_losses: int,
        clock: Optional[Clock] = None,
        state: Optional[RiskState] = None,
    ) -> None:
        self._max_equity_risk = max_equity_risk
        self._max_daily_loss = max_daily_loss
        self._max_consecutive_losses = max_consecutive_losses
        self._clock = clock or SystemClock()
        self._state = state or RiskState()
        if self._state.last_reset_date is None:
            self._state.last_reset_date = today(self._clock)

    # ── Queries ──────────────────────────────────────────────────────────

    @property
    def state(self) -> RiskState:
        """A copy of the current risk state."""
        return RiskState(**asdict(self._state))

    @property
    def max_equity_risk(self) -> float:
        return self._max_equity_risk

    @property
    def max_daily_loss(self) -> float:
        return self._max_daily_loss

    @property
    def max_consecutive_losses(self) -> int:
        return self._max_consecutive_losses

    @property
    def risk_limit_reached(self) -> bool:
        """``True`` while either breaker is tripped."""
        return (
            self._state.daily_pnl <= -self._max_daily_loss
            or self._state.consecutive_losses >= self._max_consecutive_losses
        )

    def get_risk_status(self) -> dict:
        """Plain snapshot for display."""
        self._roll_daily_window()
        return {
            "consecutive_losses": self._state.consecutive_losses,
            "daily_pnl": round(self._state.daily_pnl, 4),
            "max_daily_loss": self._max_daily_loss,
            "max_consecutive_losses": self._max_consecutive_losses,
            "max_equity_risk": self._max_equity_risk,
            "last_reset_date": (
                self._state.last_reset_date.isoformat()
                if self._state.last_reset_date else None
            ),
            "risk_limit_reached": self.risk_limit_reached,
        }

    # ── Gate ─────────────────────────────────────────────────────────────

    def check_position_risk(
        self,
        intent: PositionIntent,
        equity: float,
        open_positions: Iterable[PositionIntent],
    ) -> RiskCheck:
        """Decide whether *intent* may be opened.

        Checks, in order: daily loss limit, consecutive-loss lockout, and
        aggregate exposure (existing positions plus the new one).
        """
        self._roll_daily_window()

        if self._state.daily_pnl <= -self._max_daily_loss:
            return RiskCheck(
                allowed=False,
                reason=f"Daily loss limit exceeded: {self._state.daily_pnl:.2f}%",
            )

        if self._state.consecutive_losses >= self._max_consecutive_losses:
            return RiskCheck(
                allowed=False,
                reason=(
                    "Max consecutive losses reached: "
                    f"{self._state.consecutive_losses}"
                ),
            )

        if equity <= 0:
            return RiskCheck(
                allowed=False,
                reason=f"Equity must be positive, got {equity}",
            )

        current_risk = sum(
            position_risk_pct(pos, equity) for pos in open_positions
        )
        total_risk = current_risk + position_risk_pct(intent, equity)
        if total_risk > self._max_equity_risk:
            return RiskCheck(
                allowed=False,
                reason=f"Total risk would exceed limit: {total_risk:.2f}%",
            )

        return RiskCheck(allowed=True)

    # ── Mutation ─────────────────────────────────────────────────────────

    def update_after_trade(self, pnl_percent: float) -> None:
        """Fold a closed trade's P&L (percent of equity) into the counters."""
        self._roll_daily_window()
        self._state.daily_pnl += pnl_percent

        if pnl_percent < 0:
            self._state.consecutive_losses += 1
            logger.warning(
                "Trade loss: %.2f%%, consecutive losses: %d",
                pnl_percent, self._state.consecutive_losses,
            )
        else:
            self._state.consecutive_losses = 0
            logger.info(
                "Trade profit: %.2f%%, consecutive losses reset", pnl_percent,
            )

        logger.info("Daily PnL: %.2f%%", self._state.daily_pnl)

    def force_reset(self) -> None:
        """Zero both counters and restart the daily window (emergency use)."""
        self._state.consecutive_losses = 0
        self._reset_daily()
        logger.warning("Risk manager forcefully reset")

    def _roll_daily_window(self) -> None:
        if today(self._clock) != self._state.last_reset_date:
            self._reset_daily()

    def _reset_daily(self) -> None:
        self._state.daily_pnl = 0.0
        self._state.last_reset_date = today(self._clock)
        logger.info("Daily risk metrics reset")


def position_risk_pct(intent: PositionIntent, equity: float) -> float:
    """Risk of one position as a percentage of *equity*.

    ``quantity × price × leverage`` scaled by the stop-loss distance as a
    fraction of price, or by 1.0 (the whole notional) without a stop.
    """
    price = intent.price or 1.0
    leveraged_notional = intent.quantity * price * intent.leverage
    if intent.stop_loss and intent.price:
        stop_fraction = abs(intent.price - intent.stop_loss) / intent.price
    else:
        stop_fraction = 1.0
    return leveraged_notional * stop_fraction / equity * 100.0
