"""Trading manager — turns scored opportunities into executed orders.

Composes the opportunity evaluator, risk manager and AI confirmation gate:
checks the quote balance and the per-symbol trade lock, sizes an order
intention, runs the risk gate and (when enabled) the AI gate, then submits
the order with a client order id that is reused on retry.

Every call returns a :class:`TradeResult`; policy rejections and failures
are results, not exceptions.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Iterable, Optional

from tradegate.ai.confirmation import AIConfirmationGate
from tradegate.clock import Clock, SystemClock
from tradegate.exchange.base import AccountProtocol, ExecutorProtocol, new_client_oid
from tradegate.models.portfolio import RebalanceAction
from tradegate.models.trading import (
    AIConfirmationResult,
    MarketBar,
    Opportunity,
    OrderIntention,
    OrderResult,
    PositionIntent,
    Signal,
    TradeResult,
)
from tradegate.risk.position_sizer import size_by_risk, size_by_volatility
from tradegate.risk.risk_manager import RiskManager
from tradegate.store import TTLStore
from tradegate.strategy.opportunity import OpportunityEvaluator

logger = logging.getLogger("tradegate.trading")

DEFAULT_SUPPORTED_PAIRS = [
    "BTCUSDT",
    "ETHUSDT",
    "BNBUSDT",
    "ADAUSDT",
    "SOLUSDT",
    "MATICUSDT",
    "DOTUSDT",
    "AVAXUSDT",
    "LINKUSDT",
    "UNIUSDT",
]

RISK_STRATEGIES: dict[str, float] = {
    "moderate": 10.0,
    "intense": 20.0,
    "risky": 50.0,
}

SIZING_METHODS = {"fixed", "volatility"}

# Position size never exceeds these fractions of the available balance.
_MAX_BALANCE_FRACTION = 0.1
_MAX_BALANCE_USAGE = 0.8
_LEVERAGE_REDUCTION = 0.7


@dataclass
class TradingManagerConfig:
    enabled: bool = True
    min_usdt_balance: float = 10.0
    max_position_size: float = 15.0  # quote currency
    min_position_size: float = 5.0  # quote currency
    max_leverage: int = 10
    ai_confirmation_required: bool = True
    supported_pairs: list[str] = field(
        default_factory=lambda: list(DEFAULT_SUPPORTED_PAIRS)
    )
    max_risk_per_trade: float = 10.0  # percent of balance
    stop_loss_pct: float = 2.5
    take_profit_pct: float = 5.0
    sizing_method: str = "fixed"
    balance_cache_seconds: float = 30.0
    order_retries: int = 2
    quote_currency: str = "USDT"


@dataclass(frozen=True)
class ActiveTrade:
    """An executed order holding the per-symbol trade lock."""

    order_id: Optional[str]
    client_oid: str
    opened_at: float
    intention: OrderIntention
    position: PositionIntent
    ai_confirmation: Optional[AIConfirmationResult] = None

    def to_dict(self) -> dict:
        return {
            "order_id": self.order_id,
            "client_oid": self.client_oid,
            "opened_at": self.opened_at,
            "instrument": self.intention.instrument,
            "direction": self.intention.direction,
            "margin": self.intention.quantity,
            "leverage": self.intention.leverage,
            "quantity": self.position.quantity,
            "entry_price": self.position.price,
            "stop_loss": self.position.stop_loss,
            "take_profit": self.position.take_profit,
            "ai_confirmed": bool(self.ai_confirmation and self.ai_confirmation.confirmed),
        }


class TradingManager:
    """Orchestrates one opportunity from signal to submitted order.

    Args:
        account: Balance and position source.
        executor: Order executor.
        evaluator: Opportunity evaluator (also receives trade outcomes).
        risk_manager: Risk gate.
        confirmation_gate: AI confirmation gate.
        config: Manager settings.
        clock: Time source for timestamps and the balance cache.
    """

    def __init__(
        self,
        account: AccountProtocol,
        executor: ExecutorProtocol,
        evaluator: OpportunityEvaluator,
        risk_manager: RiskManager,
        confirmation_gate: AIConfirmationGate,
        config: Optional[TradingManagerConfig] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._account = account
        self._executor = executor
        self._evaluator = evaluator
        self._risk = risk_manager
        self._gate = confirmation_gate
        self._config = config or TradingManagerConfig()
        self._clock = clock or SystemClock()
        self._balance_cache: TTLStore[float] = TTLStore(
            self._config.balance_cache_seconds, self._clock,
        )
        self._active_trades: TTLStore[ActiveTrade] = TTLStore(None, self._clock)
        # Instruments between a passed precheck and a settled outcome.
        self._pending: set[str] = set()
        logger.info("Trading manager initialised (AI confirmation %s)",
                    "on" if self._config.ai_confirmation_required else "off")

    # ── Entry points ─────────────────────────────────────────────────────

    async def process_trading_opportunity(
        self,
        instrument: str,
        bar: MarketBar,
        signal: Signal,
    ) -> TradeResult:
        """Evaluate *signal* for *instrument* and trade it if everything agrees."""
        try:
            blocked, balance = await self._precheck(instrument)
            if blocked is not None:
                return blocked
            try:
                opportunity = self._evaluator.evaluate_opportunity(
                    instrument, signal, bar, balance,
                )
                if opportunity is None:
                    return _skipped(instrument, "No actionable opportunity", signal.direction)
                return await self._execute(opportunity, bar, balance)
            finally:
                self._pending.discard(instrument)
        except Exception as exc:
            return self._error_result(instrument, signal.direction, exc)

    async def execute_opportunity(
        self,
        opportunity: Opportunity,
        bar: MarketBar,
    ) -> TradeResult:
        """Trade an opportunity that was already scored by the evaluator."""
        instrument = opportunity.instrument
        try:
            blocked, balance = await self._precheck(instrument)
            if blocked is not None:
                return blocked
            try:
                return await self._execute(opportunity, bar, balance)
            finally:
                self._pending.discard(instrument)
        except Exception as exc:
            return self._error_result(instrument, opportunity.signal.direction, exc)

    # ── Pipeline ─────────────────────────────────────────────────────────

    async def _precheck(self, instrument: str) -> tuple[Optional[TradeResult], float]:
        """Run the cheap guards and reserve *instrument* when they pass.

        The caller must release the reservation once the trade is settled.
        """
        cfg = self._config
        if not cfg.enabled:
            logger.debug("Trading is disabled")
            return _skipped(instrument, "Trading disabled"), 0.0

        if instrument not in cfg.supported_pairs:
            logger.debug("Symbol %s not supported for trading", instrument)
            return _skipped(instrument, f"Unsupported pair: {instrument}"), 0.0

        balance = await self.get_usdt_balance()
        if balance < cfg.min_usdt_balance:
            logger.info(
                "Insufficient %s balance: %.2f < %.2f",
                cfg.quote_currency, balance, cfg.min_usdt_balance,
            )
            return _skipped(
                instrument,
                f"Insufficient balance: {balance:.2f} < {cfg.min_usdt_balance:.2f}",
            ), balance

        if instrument in self._active_trades:
            logger.debug("Active trade already exists for %s", instrument)
            return _skipped(instrument, f"Active trade already exists for {instrument}"), balance

        # No await between this check and the reservation below.
        if instrument in self._pending:
            logger.debug("Trade already in progress for %s", instrument)
            return _skipped(instrument, f"Trade already in progress for {instrument}"), balance
        self._pending.add(instrument)
        return None, balance

    async def _execute(
        self,
        opportunity: Opportunity,
        bar: MarketBar,
        balance: float,
    ) -> TradeResult:
        instrument = opportunity.instrument
        signal = opportunity.signal

        intention = self.create_order_intention(opportunity, balance)
        if intention is None:
            return _skipped(instrument, "Position size below minimum", signal.direction)

        client_oid = new_client_oid()
        position = self.build_position_intent(intention, bar, balance, signal, client_oid)
        if position.quantity <= 0:
            return _skipped(instrument, "Sized quantity is zero", intention.direction)

        open_positions = [t.position for _, t in self._active_trades.items()]
        check = self._risk.check_position_risk(position, balance, open_positions)
        if not check.allowed:
            logger.info("Risk manager blocked %s: %s", instrument, check.reason)
            self._evaluator.record_trade(instrument, signal, executed=False)
            return _result_for(intention, "rejected", reasoning=check.reason or "Risk limit")

        confirmation: Optional[AIConfirmationResult] = None
        if self._config.ai_confirmation_required:
            confirmation = await self._gate.confirm_order_intention(intention, bar)
            if not confirmation.confirmed:
                logger.info("AI rejected trade for %s: %s", instrument, confirmation.reasoning)
                self._evaluator.record_trade(instrument, signal, executed=False)
                return _result_for(
                    intention,
                    "rejected",
                    confidence=confirmation.confidence,
                    reasoning=confirmation.reasoning,
                )
            logger.info("AI approved trade for %s: %s", instrument, confirmation.reasoning)

        return await self._submit_trade(intention, position, signal, confirmation)

    async def _submit_trade(
        self,
        intention: OrderIntention,
        position: PositionIntent,
        signal: Signal,
        confirmation: Optional[AIConfirmationResult],
    ) -> TradeResult:
        instrument = intention.instrument
        ai_confirmed = bool(confirmation and confirmation.confirmed)
        confidence = confirmation.confidence if confirmation else 0.0
        logger.info(
            "Executing %s %s: %.2f %s margin @ %dx (%.6f units)",
            instrument, intention.direction, intention.quantity,
            self._config.quote_currency, intention.leverage, position.quantity,
        )
        try:
            order = await self._submit(position)
            if order.status != "success":
                raise RuntimeError(f"Trade execution failed: {order.status}")
        except Exception as exc:
            logger.error("Trade execution failed for %s: %s", instrument, exc)
            self._evaluator.record_trade(instrument, signal, executed=False)
            return _result_for(
                intention,
                "error",
                ai_confirmed=ai_confirmed,
                confidence=confidence,
                reasoning=f"Execution failed: {exc}",
                error=str(exc),
            )

        self._active_trades.set(
            instrument,
            ActiveTrade(
                order_id=order.order_id,
                client_oid=position.client_oid or "",
                opened_at=self._clock.now().timestamp(),
                intention=intention,
                position=position,
                ai_confirmation=confirmation,
            ),
        )
        self._evaluator.record_trade(instrument, signal, executed=True)
        logger.info("Trade executed for %s: order %s", instrument, order.order_id)
        return TradeResult(
            success=True,
            action="executed",
            instrument=instrument,
            direction=intention.direction,
            quantity=intention.quantity,
            leverage=intention.leverage,
            ai_confirmed=ai_confirmed,
            confidence=confidence,
            reasoning=(
                confirmation.reasoning if confirmation else "No AI confirmation required"
            ),
            order_id=order.order_id,
        )

    async def _submit(self, intent: PositionIntent) -> OrderResult:
        """Submit *intent*, retrying with the same client order id."""
        attempts = max(1, self._config.order_retries + 1)
        last_exc: Optional[Exception] = None
        for attempt in range(attempts):
            try:
                return await self._executor.open(intent)
            except Exception as exc:
                last_exc = exc
                logger.warning(
                    "Order %s for %s failed (%s), attempt %d/%d",
                    intent.client_oid, intent.instrument, exc, attempt + 1, attempts,
                )
        raise last_exc  # type: ignore[misc]

    # ── Sizing ───────────────────────────────────────────────────────────

    def create_order_intention(
        self,
        opportunity: Opportunity,
        balance: float,
    ) -> Optional[OrderIntention]:
        """Size a margin-denominated intention, or ``None`` if too small."""
        cfg = self._config
        position_size = min(
            balance * (cfg.max_risk_per_trade / 100.0),
            cfg.max_position_size,
            balance * _MAX_BALANCE_FRACTION,
            balance * _MAX_BALANCE_USAGE,
        )
        if position_size < cfg.min_position_size:
            logger.debug(
                "Position size too small for %s: %.2f", opportunity.instrument, position_size,
            )
            return None

        leverage = max(1, min(opportunity.leverage, cfg.max_leverage))
        intention = OrderIntention(
            instrument=opportunity.instrument,
            direction=opportunity.signal.direction,
            quantity=round(position_size, 2),
            leverage=leverage,
            expected_return=opportunity.expected_return,
            risk_score=opportunity.risk_score,
            timestamp=self._clock.now().timestamp(),
            source=opportunity.signal.source,
            timeframe=opportunity.timeframe,
        )
        if balance > 0 and position_size / balance >= _MAX_BALANCE_FRACTION:
            reduced = max(1, int(round(leverage * _LEVERAGE_REDUCTION)))
            if reduced != leverage:
                intention = intention.with_leverage(reduced)
        return intention

    def build_position_intent(
        self,
        intention: OrderIntention,
        bar: MarketBar,
        balance: float,
        signal: Signal,
        client_oid: str,
    ) -> PositionIntent:
        """Convert margin into base units at the bar close, with SL/TP prices."""
        cfg = self._config
        price = bar.close
        quantity = size_by_risk(intention.quantity, 100.0, price, intention.leverage)

        atr = signal.metadata.get("atr") if signal.metadata else None
        if cfg.sizing_method == "volatility" and atr:
            capped = size_by_volatility(
                balance, cfg.max_risk_per_trade, price, intention.leverage, atr,
            )
            if capped > 0:
                quantity = min(quantity, capped)

        sl = cfg.stop_loss_pct / 100.0
        tp = cfg.take_profit_pct / 100.0
        if intention.direction == "long":
            stop_loss, take_profit = price * (1 - sl), price * (1 + tp)
        else:
            stop_loss, take_profit = price * (1 + sl), price * (1 - tp)

        return PositionIntent(
            instrument=intention.instrument,
            direction=intention.direction,
            quantity=quantity,
            leverage=intention.leverage,
            price=price,
            stop_loss=stop_loss,
            take_profit=take_profit,
            client_oid=client_oid,
        )

    # ── Balance ──────────────────────────────────────────────────────────

    async def get_usdt_balance(self) -> float:
        """Available quote balance, cached for ``balance_cache_seconds``.

        Falls back to the last known value when the account query fails.
        """
        key = self._config.quote_currency
        cached = self._balance_cache.get(key)
        if cached is not None:
            return cached
        try:
            balances = await self._account.get_balance()
            value = float(balances.get(key, 0.0))
            self._balance_cache.set(key, value)
            return value
        except Exception as exc:
            logger.error("Failed to get %s balance: %s", key, exc)
            return self._balance_cache.peek(key, 0.0)

    # ── Trade lifecycle ──────────────────────────────────────────────────

    def complete_trade(self, instrument: str, pnl_percent: float) -> bool:
        """Release the trade lock for *instrument* and feed its P&L to risk."""
        if not self._active_trades.delete(instrument):
            return False
        self._risk.update_after_trade(pnl_percent)
        logger.info("Trade for %s closed at %.2f%%", instrument, pnl_percent)
        return True

    async def reconcile_active_trades(
        self,
        prices: dict[str, float],
        equity: float,
    ) -> list[dict]:
        """Settle active trades whose positions the account no longer reports.

        Realised P&L is taken from the entry price to the latest price in
        *prices*, as a percentage of *equity*, and fed to the risk manager
        through :meth:`complete_trade`.  A trade with no known exit price is
        released without touching the risk counters.
        """
        if not len(self._active_trades):
            return []
        positions = await self._account.get_positions()
        still_open = {p.instrument for p in positions if p.size}

        closed: list[dict] = []
        for instrument, trade in self._active_trades.items():
            if instrument in still_open:
                continue
            exit_price = prices.get(instrument)
            entry_price = trade.position.price
            pnl_percent: Optional[float] = None
            if exit_price and entry_price and equity > 0:
                sign = 1.0 if trade.position.direction == "long" else -1.0
                pnl = sign * (exit_price - entry_price) * trade.position.quantity
                pnl_percent = pnl / equity * 100.0
                self.complete_trade(instrument, pnl_percent)
            else:
                logger.warning(
                    "Position for %s closed with no exit price, releasing lock only",
                    instrument,
                )
                self.remove_active_trade(instrument)
            closed.append({
                "instrument": instrument,
                "order_id": trade.order_id,
                "exit_price": exit_price,
                "pnl_percent": None if pnl_percent is None else round(pnl_percent, 4),
            })
        return closed

    def remove_active_trade(self, instrument: str) -> None:
        self._active_trades.delete(instrument)
        logger.info("Removed active trade for %s", instrument)

    def get_active_trades(self) -> dict[str, ActiveTrade]:
        return dict(self._active_trades.items())

    async def execute_rebalance_actions(
        self,
        actions: Iterable[RebalanceAction],
        prices: dict[str, float],
    ) -> list[dict]:
        """Submit sized rebalance actions; one failure does not stop the rest."""
        results = []
        for action in actions:
            delta = abs(action.target_quantity - action.current_quantity)
            if delta <= 0:
                continue
            intent = PositionIntent(
                instrument=action.instrument,
                direction="long" if action.action == "buy" else "short",
                quantity=round(delta, 6),
                leverage=1,
                price=prices.get(action.instrument),
                reduce_only=action.action == "sell",
                client_oid=new_client_oid("rebalance"),
            )
            try:
                order = await self._submit(intent)
                results.append({
                    "instrument": action.instrument,
                    "action": action.action,
                    "amount": round(action.amount, 2),
                    "status": order.status,
                    "order_id": order.order_id,
                })
            except Exception as exc:
                logger.error("Rebalance %s %s failed: %s", action.action, action.instrument, exc)
                results.append({
                    "instrument": action.instrument,
                    "action": action.action,
                    "amount": round(action.amount, 2),
                    "status": "error",
                    "error": str(exc),
                })
        return results

    # ── Configuration ────────────────────────────────────────────────────

    @property
    def config(self) -> TradingManagerConfig:
        return replace(self._config, supported_pairs=list(self._config.supported_pairs))

    @property
    def confirmation_gate(self) -> AIConfirmationGate:
        return self._gate

    def is_enabled(self) -> bool:
        return self._config.enabled

    def set_enabled(self, enabled: bool) -> None:
        self._config.enabled = enabled
        logger.info("Trading %s", "enabled" if enabled else "disabled")

    def update_config(self, **changes) -> None:
        """Apply validated configuration changes."""
        candidate = replace(self.config, **changes)
        if candidate.max_leverage < 1:
            raise ValueError("max_leverage must be at least 1")
        if candidate.sizing_method not in SIZING_METHODS:
            raise ValueError(
                f"sizing_method must be one of {sorted(SIZING_METHODS)}, "
                f"got {candidate.sizing_method!r}"
            )
        if not 0 < candidate.max_risk_per_trade <= 100:
            raise ValueError("max_risk_per_trade must be in (0, 100]")
        if candidate.balance_cache_seconds != self._config.balance_cache_seconds:
            self._balance_cache = TTLStore(candidate.balance_cache_seconds, self._clock)
        self._config = candidate
        logger.info("Trading configuration updated: %s", sorted(changes))

    def update_risk_strategy(self, strategy: str) -> None:
        """Switch the per-trade risk preset (moderate / intense / risky)."""
        if strategy not in RISK_STRATEGIES:
            raise ValueError(
                f"Unknown risk strategy '{strategy}'. "
                f"Available: {', '.join(RISK_STRATEGIES)}"
            )
        self._config.max_risk_per_trade = RISK_STRATEGIES[strategy]
        logger.info(
            "Risk strategy updated to %s: %.0f%% max risk per trade",
            strategy, self._config.max_risk_per_trade,
        )

    def get_status(self) -> dict:
        cfg = self._config
        return {
            "enabled": cfg.enabled,
            "ai_confirmation_required": cfg.ai_confirmation_required,
            "ai_weight": self._gate.ai_weight,
            "human_weight": self._gate.human_weight,
            "cached_balance": self._balance_cache.peek(cfg.quote_currency),
            "active_trades": len(self._active_trades),
            "max_risk_per_trade": cfg.max_risk_per_trade,
            "max_leverage": cfg.max_leverage,
            "supported_pairs": list(cfg.supported_pairs),
        }

    def _error_result(self, instrument: str, direction, exc: Exception) -> TradeResult:
        logger.error("Trading error for %s: %s", instrument, exc)
        return TradeResult(
            success=False,
            action="error",
            instrument=instrument,
            direction=direction,
            reasoning=f"Error: {exc}",
            error=str(exc),
        )


def _skipped(instrument: str, reason: str, direction=None) -> TradeResult:
    return TradeResult(
        success=False,
        action="skipped",
        instrument=instrument,
        direction=direction,
        reasoning=reason,
    )


def _result_for(intention: OrderIntention, action: str, **fields) -> TradeResult:
    return TradeResult(
        success=False,
        action=action,
        instrument=intention.instrument,
        direction=intention.direction,
        quantity=intention.quantity,
        leverage=intention.leverage,
        **fields,
    )
