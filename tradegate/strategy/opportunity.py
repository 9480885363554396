"""Opportunity evaluator — scores a directional signal into a ranked trade.

Turns (signal, market bar, equity) into an :class:`Opportunity` with a
confidence, an expected return, a risk score and a ranking priority, or
rejects it.  Keeps per-symbol daily trade counts and a short trade history
for success-rate telemetry.
"""

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Optional

from tradegate.clock import Clock, SystemClock, today
from tradegate.models.trading import MarketBar, Opportunity, Signal

logger = logging.getLogger("tradegate.strategy")

_HISTORY_LIMIT = 100


@dataclass(frozen=True)
class OpportunityConfig:
    """Policy thresholds for the evaluator."""

    min_confidence: float = 0.35
    min_expected_return: float = 0.5  # percent
    max_daily_trades_per_symbol: int = 15
    max_leverage: int = 10
    high_volume_threshold: float = 1_000_000.0
    max_confidence: float = 0.95
    max_expected_return: float = 15.0  # percent


@dataclass(frozen=True)
class _TradeRecord:
    timestamp: float
    instrument: str
    direction: str
    confidence: float
    executed: bool


class OpportunityEvaluator:
    """Scores signals and tracks per-symbol trading activity.

    Args:
        config: Thresholds.  Defaults to :class:`OpportunityConfig`.
        clock: Time source for the daily counter rollover.
    """

    def __init__(
        self,
        config: Optional[OpportunityConfig] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._config = config or OpportunityConfig()
        self._clock = clock or SystemClock()
        self._daily_trades: dict[str, int] = {}
        self._history: list[_TradeRecord] = []
        self._counter_date: date = today(self._clock)

    @property
    def config(self) -> OpportunityConfig:
        return self._config

    # ── Evaluation ───────────────────────────────────────────────────────

    def evaluate_opportunity(
        self,
        instrument: str,
        signal: Signal,
        bar: MarketBar,
        equity: float,
    ) -> Optional[Opportunity]:
        """Return a scored opportunity, or ``None`` when there is none.

        Never raises: a failure while scoring is logged and treated as no
        opportunity.
        """
        try:
            self._reset_daily_counters()

            if equity <= 0:
                logger.debug("No equity available to trade %s", instrument)
                return None

            confidence = self.calculate_confidence(signal, bar)
            expected_return = self.calculate_expected_return(signal, bar)
            leverage = self.calculate_leverage(signal.confidence)
            risk_score = self.calculate_risk_score(signal, bar, leverage)

            if (
                confidence < self._config.min_confidence
                or expected_return < self._config.min_expected_return
            ):
                logger.debug(
                    "No opportunity for %s: confidence=%.2f expected_return=%.2f%%",
                    instrument, confidence, expected_return,
                )
                return None

            traded_today = self._daily_trades.get(instrument, 0)
            if traded_today >= self._config.max_daily_trades_per_symbol:
                logger.debug(
                    "Daily trade limit reached for %s: %d/%d",
                    instrument, traded_today,
                    self._config.max_daily_trades_per_symbol,
                )
                return None

            priority = self.calculate_priority(
                instrument, confidence, expected_return, risk_score,
            )
            opportunity = Opportunity(
                instrument=instrument,
                signal=signal,
                confidence=confidence,
                expected_return=expected_return,
                risk_score=risk_score,
                priority=priority,
                reason=_trade_reason(confidence, expected_return, risk_score),
                leverage=leverage,
                timeframe=signal.timeframe or "15m",
            )
            logger.info(
                "Opportunity identified for %s: confidence=%.1f%% "
                "expected_return=%.2f%% risk=%.2f priority=%.2f (%s)",
                instrument, confidence * 100, expected_return, risk_score,
                priority, opportunity.reason,
            )
            return opportunity
        except Exception as exc:
            logger.error(
                "Error evaluating opportunity for %s: %s", instrument, exc,
            )
            return None

    # ── Scoring ──────────────────────────────────────────────────────────

    def calculate_confidence(self, signal: Signal, bar: MarketBar) -> float:
        """Signal confidence boosted by strong moves and heavy volume."""
        confidence = signal.confidence
        move = abs(bar.price_change)
        if move > 0.01:
            confidence += move * 2
        if bar.volume > self._config.high_volume_threshold:
            confidence += 0.1
        return min(self._config.max_confidence, confidence)

    def calculate_expected_return(self, signal: Signal, bar: MarketBar) -> float:
        """Expected return in percent, amplified by bar volatility and capped."""
        base_return = signal.confidence * 5
        adjusted = base_return * (1 + bar.volatility * 2)
        return min(adjusted, self._config.max_expected_return)

    def calculate_leverage(self, signal_confidence: float) -> int:
        """Higher confidence earns more leverage, within [1, max_leverage]."""
        leverage = int(round(signal_confidence * 8))
        return max(1, min(leverage, self._config.max_leverage))

    def calculate_risk_score(
        self,
        signal: Signal,
        bar: MarketBar,
        leverage: int,
    ) -> float:
        """Risk in [0, 1] from leverage, volatility and signal uncertainty."""
        risk = (leverage - 1) * 0.1
        risk += bar.volatility * 2
        risk += (1 - signal.confidence) * 0.3
        return min(max(risk, 0.0), 1.0)

    def calculate_priority(
        self,
        instrument: str,
        confidence: float,
        expected_return: float,
        risk_score: float,
    ) -> float:
        """Ranking score; higher is better.  Never used as a gate."""
        priority = confidence * expected_return * (1 - risk_score / 2)
        if self._daily_trades:
            average = sum(self._daily_trades.values()) / len(self._daily_trades)
            if self._daily_trades.get(instrument, 0) < average:
                priority += 0.5
        return priority

    # ── Telemetry ────────────────────────────────────────────────────────

    def record_trade(self, instrument: str, signal: Signal, executed: bool) -> None:
        """Record the outcome of acting on an opportunity for *instrument*."""
        self._reset_daily_counters()
        self._daily_trades[instrument] = self._daily_trades.get(instrument, 0) + 1
        self._history.append(
            _TradeRecord(
                timestamp=self._clock.now().timestamp(),
                instrument=instrument,
                direction=signal.direction,
                confidence=signal.confidence,
                executed=executed,
            )
        )
        if len(self._history) > _HISTORY_LIMIT:
            self._history = self._history[-_HISTORY_LIMIT:]
        logger.debug(
            "Trade recorded for %s: %d today, %d total",
            instrument, self._daily_trades[instrument],
            sum(self._daily_trades.values()),
        )

    def get_decision_metrics(self) -> dict:
        """Aggregated counters for display.  Side-effect free."""
        cutoff = (self._clock.now() - timedelta(hours=24)).timestamp()
        recent = [t for t in self._history if t.timestamp >= cutoff]
        executed = [t for t in recent if t.executed]
        counts = self._daily_trades if self._counter_date == today(self._clock) else {}
        return {
            "total_trades_today": sum(counts.values()),
            "success_rate": len(executed) / max(len(recent), 1),
            "opportunities_identified": len(recent),
            "trades_executed": len(executed),
            "trades_by_symbol": dict(counts),
            "max_trades_per_symbol": self._config.max_daily_trades_per_symbol,
        }

    def trades_today(self, instrument: str) -> int:
        if self._counter_date != today(self._clock):
            return 0
        return self._daily_trades.get(instrument, 0)

    def _reset_daily_counters(self) -> None:
        current = today(self._clock)
        if current != self._counter_date:
            self._daily_trades.clear()
            self._counter_date = current
            logger.info("Daily trade counters reset")


def _trade_reason(confidence: float, expected_return: float, risk_score: float) -> str:
    parts = []
    if confidence > 0.7:
        parts.append("High confidence signal")
    elif confidence > 0.5:
        parts.append("Moderate confidence signal")
    else:
        parts.append("Speculative opportunity")

    if expected_return > 3:
        parts.append("high return potential")
    elif expected_return > 1.5:
        parts.append("moderate return potential")
    else:
        parts.append("small profit opportunity")

    if risk_score < 0.3:
        parts.append("low risk")
    elif risk_score < 0.6:
        parts.append("moderate risk")
    else:
        parts.append("higher risk")

    return " + ".join(parts)
