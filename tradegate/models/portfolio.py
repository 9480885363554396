"""Portfolio data models — target allocations, snapshots and rebalance actions."""

import math
from dataclasses import dataclass, field
from typing import Literal

DEFAULT_TARGET_ALLOCATIONS: dict[str, float] = {
    "BTCUSDT": 0.30,
    "ETHUSDT": 0.25,
    "BNBUSDT": 0.15,
    "SOLUSDT": 0.10,
    "ADAUSDT": 0.08,
    "AVAXUSDT": 0.07,
    "MATICUSDT": 0.03,
    "DOTUSDT": 0.02,
}

ALLOCATION_TOLERANCE = 0.01


def validate_allocations(allocations: dict[str, float]) -> None:
    """Raise ``ValueError`` unless the weights are non-negative and sum to 1.0."""
    for symbol, weight in allocations.items():
        if not math.isfinite(weight) or weight < 0:
            raise ValueError(f"Allocation for {symbol} must be a non-negative number, got {weight}")
    total = sum(allocations.values())
    if not abs(total - 1.0) <= ALLOCATION_TOLERANCE:
        raise ValueError(
            f"Target allocations must sum to 1.0, got {total:.3f}"
        )


def validate_portfolio_config(config: "PortfolioConfig") -> None:
    """Raise ``ValueError`` if *config* cannot drive the balancer."""
    validate_allocations(config.target_allocations)
    if not config.rebalance_threshold > 0:
        raise ValueError("rebalance_threshold must be positive")
    if not 0 <= config.min_trade_amount <= config.max_trade_amount:
        raise ValueError("min_trade_amount must be between 0 and max_trade_amount")
    if not config.rebalance_interval_hours >= 0:
        raise ValueError("rebalance_interval_hours must not be negative")


@dataclass
class PortfolioConfig:
    """Configuration of the portfolio balancer.

    The weights are checked when the config is updated through
    the balancer, not continuously.
    """

    symbols: list[str] = field(
        default_factory=lambda: list(DEFAULT_TARGET_ALLOCATIONS.keys())
    )
    target_allocations: dict[str, float] = field(
        default_factory=lambda: dict(DEFAULT_TARGET_ALLOCATIONS)
    )
    rebalance_threshold: float = 0.05  # deviation fraction
    min_trade_amount: float = 10.0  # quote currency
    max_trade_amount: float = 1000.0  # quote currency
    rebalance_interval_hours: float = 6.0

    def to_dict(self) -> dict:
        return {
            "symbols": list(self.symbols),
            "target_allocations": dict(self.target_allocations),
            "rebalance_threshold": self.rebalance_threshold,
            "min_trade_amount": self.min_trade_amount,
            "max_trade_amount": self.max_trade_amount,
            "rebalance_interval_hours": self.rebalance_interval_hours,
        }


@dataclass(frozen=True)
class PortfolioPosition:
    """A position's share of the portfolio at the last snapshot."""

    instrument: str
    quantity: float
    mark_price: float
    unrealized_pnl: float
    percentage: float  # fraction of total portfolio value
    value: float  # in quote currency


@dataclass(frozen=True)
class RebalanceAction:
    """A buy/sell instruction that moves one instrument toward its target."""

    instrument: str
    action: Literal["buy", "sell"]
    target_quantity: float
    current_quantity: float
    amount: float  # in quote currency
    priority: float  # deviation / threshold
    reason: str
