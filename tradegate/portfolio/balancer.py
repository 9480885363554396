"""Portfolio balancer — keeps a multi-asset portfolio near its target weights.

Holds the latest position snapshot and the target allocation table.  On a
time-gated cadence it turns weight drift into ranked buy/sell actions sized
in quote currency and clamped to the configured trade limits.
"""

import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Iterable, Optional

from tradegate.clock import Clock, SystemClock
from tradegate.models.portfolio import (
    PortfolioConfig,
    PortfolioPosition,
    RebalanceAction,
    validate_allocations,
    validate_portfolio_config,
)
from tradegate.models.trading import Position

logger = logging.getLogger("tradegate.portfolio")

_CONFIG_FIELDS = {
    "symbols",
    "target_allocations",
    "rebalance_threshold",
    "min_trade_amount",
    "max_trade_amount",
    "rebalance_interval_hours",
}


class PortfolioBalancer:
    """Deviation-driven rebalancer.

    Args:
        config: Portfolio configuration.  Defaults to :class:`PortfolioConfig`.
        clock: Time source for the rebalance interval gate.
    """

    def __init__(
        self,
        config: Optional[PortfolioConfig] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._config = config or PortfolioConfig()
        self._clock = clock or SystemClock()
        self._positions: dict[str, PortfolioPosition] = {}
        self._last_rebalance: Optional[datetime] = None

    # ── Snapshot ─────────────────────────────────────────────────────────

    def update_positions(
        self,
        positions: Iterable[Position],
        prices: dict[str, float],
    ) -> None:
        """Replace the snapshot with *positions* valued at *prices*.

        A position without a quoted price falls back to its own mark price.
        """
        positions = list(positions)
        valued: list[tuple[Position, float, float]] = []
        total_value = 0.0
        for pos in positions:
            price = prices.get(pos.instrument) or pos.mark_price or 0.0
            value = abs(pos.size) * price
            valued.append((pos, price, value))
            total_value += value

        snapshot: dict[str, PortfolioPosition] = {}
        for pos, price, value in valued:
            snapshot[pos.instrument] = PortfolioPosition(
                instrument=pos.instrument,
                quantity=abs(pos.size),
                mark_price=price,
                unrealized_pnl=pos.unrealized_pnl or 0.0,
                percentage=value / total_value if total_value > 0 else 0.0,
                value=value,
            )
        self._positions = snapshot
        logger.debug(
            "Portfolio positions updated: total=%.2f positions=%d",
            total_value, len(snapshot),
        )

    @property
    def positions(self) -> dict[str, PortfolioPosition]:
        return dict(self._positions)

    @property
    def last_rebalance(self) -> Optional[datetime]:
        return self._last_rebalance

    @property
    def total_value(self) -> float:
        return sum(p.value for p in self._positions.values())

    # ── Rebalancing ──────────────────────────────────────────────────────

    def hours_since_last_rebalance(self) -> Optional[float]:
        if self._last_rebalance is None:
            return None
        elapsed = self._clock.now() - self._last_rebalance
        return elapsed.total_seconds() / 3600.0

    def is_rebalance_due(self) -> bool:
        hours = self.hours_since_last_rebalance()
        return hours is None or hours >= self._config.rebalance_interval_hours

    def evaluate_rebalancing(self, total_equity: float) -> list[RebalanceAction]:
        """Return rebalance actions sorted by descending priority.

        Returns an empty list inside the rebalance interval.  Any call that
        passes the interval gate restarts the interval, even when no action
        qualifies.
        """
        if not self.is_rebalance_due():
            return []

        hours = self.hours_since_last_rebalance()
        self._last_rebalance = self._clock.now()

        cfg = self._config
        actions: list[RebalanceAction] = []
        for symbol in cfg.symbols:
            target = cfg.target_allocations.get(symbol, 0.0)
            position = self._positions.get(symbol)
            current = position.percentage if position else 0.0
            deviation = abs(current - target)
            if deviation <= cfg.rebalance_threshold:
                continue

            current_value = position.value if position else 0.0
            difference = total_equity * target - current_value
            amount = abs(difference)
            if amount < cfg.min_trade_amount:
                continue

            actions.append(
                RebalanceAction(
                    instrument=symbol,
                    action="buy" if difference > 0 else "sell",
                    target_quantity=0.0,
                    current_quantity=position.quantity if position else 0.0,
                    amount=min(amount, cfg.max_trade_amount),
                    priority=deviation / cfg.rebalance_threshold,
                    reason=(
                        f"{deviation * 100:.1f}% deviation from target "
                        f"({target * 100:.1f}%)"
                    ),
                )
            )

        actions.sort(key=lambda a: a.priority, reverse=True)
        if actions:
            logger.info(
                "Portfolio rebalancing needed: %d action(s), equity=%.2f, "
                "hours since last=%s",
                len(actions), total_equity,
                "never" if hours is None else f"{hours:.1f}",
            )
            for action in actions:
                logger.info(
                    "  %s %s: %.2f (%s)",
                    action.action.upper(), action.instrument, action.amount,
                    action.reason,
                )
        return actions

    def calculate_trade_sizes(
        self,
        actions: Iterable[RebalanceAction],
        prices: dict[str, float],
    ) -> list[RebalanceAction]:
        """Fill in ``target_quantity`` for each action at current prices.

        Actions with no usable price are dropped.
        """
        sized: list[RebalanceAction] = []
        for action in actions:
            price = prices.get(action.instrument)
            if not price:
                position = self._positions.get(action.instrument)
                price = position.mark_price if position else 0.0
            if not price or price <= 0:
                logger.warning(
                    "No price for %s, dropping rebalance action", action.instrument,
                )
                continue
            delta = action.amount / price
            if action.action == "buy":
                target = action.current_quantity + delta
            else:
                target = max(0.0, action.current_quantity - delta)
            sized.append(replace(action, target_quantity=target))
        return sized

    # ── Configuration ────────────────────────────────────────────────────

    @property
    def config(self) -> PortfolioConfig:
        """A copy of the current configuration."""
        return replace(
            self._config,
            symbols=list(self._config.symbols),
            target_allocations=dict(self._config.target_allocations),
        )

    def update_target_allocations(self, allocations: dict[str, float]) -> None:
        """Replace the target weights.

        Raises:
            ValueError: If the weights do not sum to 1.0 ± 0.01.  The current
                        allocations are left unchanged.
        """
        validate_allocations(allocations)
        self._config.target_allocations = dict(allocations)
        logger.info("Target allocations updated: %s", allocations)

    def update_config(self, **changes) -> None:
        """Update configuration fields after validating the result."""
        unknown = set(changes) - _CONFIG_FIELDS
        if unknown:
            raise ValueError(f"Unknown portfolio config field(s): {', '.join(sorted(unknown))}")
        candidate = replace(self.config, **changes)
        validate_portfolio_config(candidate)
        self._config = candidate
        logger.info("Portfolio balancer config updated: %s", sorted(changes))

    # ── Reports ──────────────────────────────────────────────────────────

    def get_portfolio_report(self) -> dict:
        """Current vs target allocation per configured symbol."""
        cfg = self._config
        rows = []
        total_deviation = 0.0
        for symbol in cfg.symbols:
            target = cfg.target_allocations.get(symbol, 0.0)
            position = self._positions.get(symbol)
            current = position.percentage if position else 0.0
            deviation = current - target
            total_deviation += abs(deviation)
            if abs(deviation) > cfg.rebalance_threshold:
                status = "OVERWEIGHT" if deviation > 0 else "UNDERWEIGHT"
            else:
                status = "BALANCED"
            rows.append({
                "symbol": symbol,
                "current": round(current, 4),
                "target": target,
                "deviation": round(deviation, 4),
                "status": status,
                "value": round(position.value if position else 0.0, 2),
            })
        average_deviation = total_deviation / max(len(cfg.symbols), 1)
        return {
            "total_value": round(self.total_value, 2),
            "allocations": rows,
            "balance_score": max(0.0, 1 - average_deviation * 10),
            "rebalance_needed": any(r["status"] != "BALANCED" for r in rows),
            "last_rebalance": (
                self._last_rebalance.isoformat() if self._last_rebalance else None
            ),
        }

    def get_rebalancing_recommendations(self, total_equity: float) -> dict:
        """Imbalanced symbols and amounts, without touching the interval gate."""
        cfg = self._config
        items = []
        for symbol in cfg.symbols:
            target = cfg.target_allocations.get(symbol, 0.0)
            position = self._positions.get(symbol)
            current = position.percentage if position else 0.0
            deviation = abs(current - target)
            if deviation <= cfg.rebalance_threshold:
                continue
            difference = total_equity * target - (position.value if position else 0.0)
            items.append({
                "symbol": symbol,
                "deviation": round(deviation, 4),
                "action": "BUY" if difference > 0 else "SELL",
                "amount": round(abs(difference), 2),
            })
        items.sort(key=lambda i: i["deviation"], reverse=True)

        if self._last_rebalance is None:
            hours_until_next = 0.0
        else:
            next_at = self._last_rebalance + timedelta(hours=cfg.rebalance_interval_hours)
            hours_until_next = max(
                0.0, (next_at - self._clock.now()).total_seconds() / 3600.0,
            )
        return {
            "balanced": not items,
            "recommendations": items,
            "hours_until_next": round(hours_until_next, 2),
        }
