"""Trading data models — typed representations for signals, intents and results."""

from dataclasses import dataclass, field, replace
from typing import Literal, Optional

Direction = Literal["long", "short"]
RiskLevel = Literal["low", "medium", "high"]
Recommendation = Literal["proceed", "wait", "reject"]


@dataclass(frozen=True)
class MarketBar:
    """A single OHLCV bar supplied by the market data source."""

    open: float
    high: float
    low: float
    close: float
    volume: float
    timestamp: float

    @property
    def volatility(self) -> float:
        """Bar range as a fraction of the close (0.0 when close is not positive)."""
        if self.close <= 0:
            return 0.0
        return abs(self.high - self.low) / self.close

    @property
    def price_change(self) -> float:
        """Signed open-to-close move as a fraction of the open."""
        if self.open <= 0:
            return 0.0
        return (self.close - self.open) / self.open


@dataclass(frozen=True)
class Signal:
    """A directional signal produced by a technical or AI signal source."""

    timestamp: float
    instrument: str
    timeframe: str
    direction: Direction
    confidence: float
    source: str
    metadata: dict = field(default_factory=dict)


@dataclass(frozen=True)
class Opportunity:
    """A scored trading opportunity produced by the opportunity evaluator."""

    instrument: str
    signal: Signal
    confidence: float
    expected_return: float  # percent
    risk_score: float  # 0..1
    priority: float
    reason: str
    leverage: int = 1
    timeframe: str = "15m"


@dataclass(frozen=True)
class OrderIntention:
    """A proposed order, sized in quote-currency margin."""

    instrument: str
    direction: Direction
    quantity: float  # quote-currency notional (margin)
    leverage: int
    expected_return: float
    risk_score: float
    timestamp: float
    source: str = "technical"  # "technical" | "ai" | "manual"
    timeframe: Optional[str] = None  # timeframe of the originating signal

    def with_leverage(self, leverage: int) -> "OrderIntention":
        """Return a copy of this intention with a different leverage."""
        return replace(self, leverage=leverage)


@dataclass(frozen=True)
class PositionIntent:
    """An executable position request in base-asset units."""

    instrument: str
    direction: Direction
    quantity: float
    leverage: int = 1
    price: Optional[float] = None
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    order_type: str = "market"
    reduce_only: bool = False
    client_oid: Optional[str] = None


@dataclass(frozen=True)
class Position:
    """An open position as reported by the account collaborator."""

    instrument: str
    size: float
    mark_price: float = 0.0
    unrealized_pnl: float = 0.0


@dataclass(frozen=True)
class AIConfirmationResult:
    """Outcome of a single AI confirmation call."""

    confirmed: bool
    confidence: float
    ai_weight: float
    human_weight: float
    reasoning: str
    risk_assessment: RiskLevel
    recommendation: Recommendation
    alignment_score: float = 0.0


@dataclass(frozen=True)
class RiskCheck:
    """Result of a risk gate evaluation."""

    allowed: bool
    reason: Optional[str] = None


@dataclass(frozen=True)
class OrderResult:
    """Response from the order executor."""

    status: str  # "success" or an exchange-specific failure status
    order_id: Optional[str] = None
    client_oid: Optional[str] = None


@dataclass(frozen=True)
class TradeResult:
    """Structured outcome of one orchestrator call.

    ``action`` is one of ``"executed"``, ``"skipped"``, ``"rejected"`` or
    ``"error"``; ``success`` is ``True`` only for ``"executed"``.
    """

    success: bool
    action: str
    instrument: str
    direction: Optional[Direction] = None
    quantity: float = 0.0
    leverage: int = 1
    ai_confirmed: bool = False
    confidence: float = 0.0
    reasoning: str = ""
    order_id: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "action": self.action,
            "instrument": self.instrument,
            "direction": self.direction,
            "quantity": self.quantity,
            "leverage": self.leverage,
            "ai_confirmed": self.ai_confirmed,
            "confidence": round(self.confidence, 4),
            "reasoning": self.reasoning,
            "order_id": self.order_id,
            "error": self.error,
        }
