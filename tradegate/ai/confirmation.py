"""AI confirmation gate — cross-checks an order against a fresh signal.

Regenerates a signal for the intention's instrument, scores how well it
agrees with the intention, blends an AI weight with a human/technical weight
into a final confidence and decides confirm / reject / wait.

The gate never raises past :meth:`AIConfirmationGate.confirm_order_intention`;
any failure becomes a deterministic rejection carrying the reason.
"""

import logging
from typing import Optional

from tradegate.models.trading import (
    AIConfirmationResult,
    MarketBar,
    OrderIntention,
    RiskLevel,
    Recommendation,
    Signal,
)
from tradegate.signals.base import SignalSourceProtocol

logger = logging.getLogger("tradegate.ai")

DEFAULT_AI_WEIGHT = 0.4
MIN_CONFIDENCE_THRESHOLD = 0.6
MAX_RISK_SCORE = 0.7
MIN_ALIGNMENT = 0.4


class AIConfirmationGate:
    """Confirms or rejects order intentions using an independent signal.

    Args:
        signal_source: Source used to regenerate a signal.
        ai_weight: Share of the final confidence given to the AI view;
                   the remainder goes to the human/technical view.
        timeframe: Timeframe requested from the signal source when the
                   intention does not carry its own.
    """

    def __init__(
        self,
        signal_source: SignalSourceProtocol,
        ai_weight: float = DEFAULT_AI_WEIGHT,
        timeframe: str = "15m",
    ) -> None:
        self._signal_source = signal_source
        self._timeframe = timeframe
        self._ai_weight = DEFAULT_AI_WEIGHT
        self.set_ai_weight(ai_weight)

    # ── Weights ──────────────────────────────────────────────────────────

    @property
    def ai_weight(self) -> float:
        return self._ai_weight

    @property
    def human_weight(self) -> float:
        return 1.0 - self._ai_weight

    def set_ai_weight(self, weight: float) -> None:
        """Change the AI/human split for subsequent calls.

        Raises:
            ValueError: If *weight* is outside ``[0, 1]``.
        """
        if not 0.0 <= weight <= 1.0:
            raise ValueError(f"AI weight must be between 0 and 1, got {weight}")
        self._ai_weight = float(weight)
        logger.info("AI weight set to %.0f%%", weight * 100)

    # ── Confirmation ─────────────────────────────────────────────────────

    async def confirm_order_intention(
        self,
        intention: OrderIntention,
        bar: MarketBar,
    ) -> AIConfirmationResult:
        """Confirm or reject *intention* against a regenerated signal."""
        # Weights are read once so a concurrent update only affects later calls.
        ai_weight = self.ai_weight
        human_weight = self.human_weight
        try:
            logger.info(
                "AI confirmation requested for %s %s order",
                intention.instrument, intention.direction,
            )
            signal = await self._signal_source.generate(
                bar, intention.instrument, intention.timeframe or self._timeframe,
            )
            if signal is None:
                return _rejection(
                    "AI signal generation failed",
                    "AI engine could not generate signal for analysis",
                    ai_weight,
                )

            alignment = alignment_score(intention, signal)
            ai_confidence = adjusted_ai_confidence(signal, bar)
            risk = assess_risk_level(intention, signal, bar)
            final_confidence = blend_confidence(
                ai_confidence,
                alignment,
                intention.expected_return,
                intention.risk_score,
                ai_weight,
                human_weight,
            )
            confirmed = make_decision(
                final_confidence, alignment, risk, intention.risk_score,
            )
            recommendation = recommend(confirmed, final_confidence, risk, alignment)

            result = AIConfirmationResult(
                confirmed=confirmed,
                confidence=final_confidence,
                ai_weight=ai_weight,
                human_weight=human_weight,
                reasoning=_reasoning(intention, alignment, ai_confidence, risk),
                risk_assessment=risk,
                recommendation=recommendation,
                alignment_score=alignment,
            )
            logger.info(
                "AI confirmation %s for %s %s: confidence=%.2f alignment=%.2f "
                "risk=%s recommendation=%s",
                "APPROVED" if confirmed else "REJECTED",
                intention.instrument, intention.direction,
                final_confidence, alignment, risk, recommendation,
            )
            return result
        except Exception as exc:
            logger.error(
                "AI confirmation failed for %s: %s", intention.instrument, exc,
            )
            return _rejection(
                "AI confirmation system error", f"System error: {exc}", ai_weight,
            )


# ── Scoring functions ────────────────────────────────────────────────────


def alignment_score(intention: OrderIntention, signal: Signal) -> float:
    """0.8 on direction match plus confidence bonuses (max 1.0); a flat 0.2 on a mismatch."""
    if intention.direction != signal.direction:
        return 0.2
    score = 0.8
    if signal.confidence > 0.7:
        score += 0.1
    if signal.confidence > 0.8:
        score += 0.1
    return min(1.0, score)


def adjusted_ai_confidence(signal: Signal, bar: MarketBar) -> float:
    """Signal confidence, trimmed in volatile markets and lifted in calm ones."""
    confidence = signal.confidence
    volatility = bar.volatility
    if volatility > 0.05:
        confidence *= 0.9
    elif volatility < 0.01:
        confidence *= 1.1
    return min(1.0, confidence)


def assess_risk_level(
    intention: OrderIntention,
    signal: Signal,
    bar: MarketBar,
) -> RiskLevel:
    """Bucket leverage, intention risk, AI doubt and volatility into a level."""
    score = 0.0
    if intention.leverage > 10:
        score += 0.3
    elif intention.leverage > 5:
        score += 0.2
    if intention.risk_score > 0.6:
        score += 0.3
    if signal.confidence < 0.6:
        score += 0.2
    if bar.volatility > 0.05:
        score += 0.2

    if score > 0.6:
        return "high"
    if score > 0.3:
        return "medium"
    return "low"


def blend_confidence(
    ai_confidence: float,
    alignment: float,
    expected_return: float,
    risk_score: float,
    ai_weight: float = DEFAULT_AI_WEIGHT,
    human_weight: Optional[float] = None,
) -> float:
    """Weighted blend of the AI view and the human/technical view, in [0, 1]."""
    if human_weight is None:
        human_weight = 1.0 - ai_weight
    ai_part = ai_confidence * ai_weight
    human_part = (
        alignment * 0.4
        + min(expected_return / 10, 1) * 0.3
        + (1 - risk_score) * 0.3
    ) * human_weight
    return max(0.0, min(1.0, ai_part + human_part))


def make_decision(
    final_confidence: float,
    alignment: float,
    risk: RiskLevel,
    intention_risk_score: float,
) -> bool:
    if final_confidence < MIN_CONFIDENCE_THRESHOLD:
        return False
    if alignment < MIN_ALIGNMENT:
        return False
    if risk == "high" and intention_risk_score > MAX_RISK_SCORE:
        return False
    if final_confidence > 0.7 and alignment > 0.6:
        return True
    if final_confidence > 0.6 and risk == "low":
        return True
    return False


def recommend(
    confirmed: bool,
    final_confidence: float,
    risk: RiskLevel,
    alignment: float,
) -> Recommendation:
    if not confirmed:
        if final_confidence < 0.4:
            return "reject"
        if alignment < 0.3:
            return "reject"
        return "wait"
    if risk == "high":
        return "wait"
    if final_confidence < 0.6:
        return "wait"
    return "proceed"


def _reasoning(
    intention: OrderIntention,
    alignment: float,
    ai_confidence: float,
    risk: RiskLevel,
) -> str:
    pct = round(alignment * 100)
    if alignment > 0.7:
        parts = [f"AI strongly agrees with {intention.direction} direction ({pct}% alignment)"]
    elif alignment > 0.4:
        parts = [f"AI partially agrees with {intention.direction} direction ({pct}% alignment)"]
    else:
        parts = [f"AI disagrees with {intention.direction} direction ({pct}% alignment)"]
    parts.append(f"AI confidence: {round(ai_confidence * 100)}%")
    parts.append(f"Risk level: {risk.upper()}")
    if intention.leverage > 10:
        parts.append(f"High leverage ({intention.leverage}x) increases risk")
    return ". ".join(parts)


def _rejection(reason: str, details: str, ai_weight: float) -> AIConfirmationResult:
    return AIConfirmationResult(
        confirmed=False,
        confidence=0.0,
        ai_weight=ai_weight,
        human_weight=1.0 - ai_weight,
        reasoning=f"{reason}: {details}",
        risk_assessment="high",
        recommendation="reject",
        alignment_score=0.0,
    )
