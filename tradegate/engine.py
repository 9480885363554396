"""TradeGate — Trading engine (orchestration loop).

Connects market data, the signal source, the opportunity evaluator and the
trading manager into a single polling loop.  Each cycle evaluates every
(instrument, timeframe) pair, settles trades whose positions have closed,
ranks the opportunities and hands them to the manager, then runs the
portfolio balancer and spot auto-balancer on their own time gates.
"""

import asyncio
import logging
from typing import Optional, Sequence

from tradegate.api.routers import record_decision, update_bot_status
from tradegate.clock import Clock, SystemClock
from tradegate.exchange.base import AccountProtocol, MarketDataProtocol
from tradegate.models.trading import MarketBar, Opportunity
from tradegate.portfolio.balancer import PortfolioBalancer
from tradegate.portfolio.spot_auto_balancer import SpotAutoBalancer
from tradegate.risk.position_sizer import throttle_by_open_positions
from tradegate.signals.base import SignalSourceProtocol
from tradegate.strategy.opportunity import OpportunityEvaluator
from tradegate.trading.manager import TradingManager

logger = logging.getLogger("tradegate.engine")


class TradingEngine:
    """Runs one evaluate-rank-execute cycle per call.

    Args:
        manager: Trading manager that executes opportunities.
        evaluator: Opportunity evaluator shared with the manager.
        signal_source: Async signal generator.
        market_data: Latest-bar provider.
        account: Balance / position source used for rebalancing.
        instruments: Instruments to scan each cycle.
        timeframes: Timeframes to scan per instrument.
        balancer: Optional portfolio balancer.
        auto_balancer: Optional spot auto-balancer.
        max_positions_per_symbol: Opportunities forwarded per instrument per cycle.
        clock: Time source.
    """

    def __init__(
        self,
        manager: TradingManager,
        evaluator: OpportunityEvaluator,
        signal_source: SignalSourceProtocol,
        market_data: MarketDataProtocol,
        account: AccountProtocol,
        instruments: Sequence[str],
        timeframes: Sequence[str] = ("15m",),
        balancer: Optional[PortfolioBalancer] = None,
        auto_balancer: Optional[SpotAutoBalancer] = None,
        max_positions_per_symbol: int = 1,
        clock: Optional[Clock] = None,
    ) -> None:
        self._manager = manager
        self._evaluator = evaluator
        self._signal_source = signal_source
        self._market_data = market_data
        self._account = account
        self._instruments = list(instruments)
        self._timeframes = list(timeframes)
        self._balancer = balancer
        self._auto_balancer = auto_balancer
        self._max_per_symbol = max_positions_per_symbol
        self._clock = clock or SystemClock()
        self._running: bool = False
        self._cycle_count: int = 0

    @property
    def instruments(self) -> list[str]:
        return list(self._instruments)

    @property
    def cycle_count(self) -> int:
        return self._cycle_count

    @property
    def running(self) -> bool:
        return self._running

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def initialize(self) -> None:
        """Prime the balance cache and publish the initial status."""
        balance = await self._manager.get_usdt_balance()
        update_bot_status(
            running=True,
            started_at=self._clock.now().isoformat(),
            instruments=self.instruments,
            timeframes=list(self._timeframes),
            balance=balance,
        )
        logger.info(
            "Engine initialised: %d instrument(s) x %d timeframe(s), balance=%.2f",
            len(self._instruments), len(self._timeframes), balance,
        )
        self._running = True

    def stop(self) -> None:
        """Signal the engine to stop after the current cycle."""
        self._running = False

    # ── Polling loop ─────────────────────────────────────────────────────

    async def run(
        self,
        poll_interval: int = 60,
        max_cycles: int = 0,
    ) -> list[dict]:
        """Run the trading loop until stopped.

        Args:
            poll_interval: Seconds between cycles.
            max_cycles: Stop after this many cycles (0 = unlimited).

        Returns:
            List of per-cycle result dicts.
        """
        results: list[dict] = []
        cycle = 0

        while self._running:
            cycle += 1
            try:
                result = await self.run_once()
                results.append(result)
                logger.info(
                    "Cycle %d: %d opportunity(ies), %d executed",
                    cycle, result["opportunities"], result["executed"],
                )
            except Exception as exc:
                logger.error("Cycle %d error: %s", cycle, exc)
                results.append({"action": "error", "reason": str(exc)})

            if max_cycles > 0 and cycle >= max_cycles:
                break

            # Interruptible sleep, checks _running every second
            for _ in range(poll_interval):
                if not self._running:
                    break
                await asyncio.sleep(1)

        update_bot_status(running=False)
        return results

    # ── Single cycle ─────────────────────────────────────────────────────

    async def run_once(self) -> dict:
        """Execute one trading cycle.

        Returns a dict with ``opportunities``, ``executed``, per-instrument
        ``trades`` and ``errors``, the ``closed_trades`` settled this cycle,
        plus the ``rebalance`` and ``auto_balance`` outcomes (``None`` when
        not run).
        """
        self._cycle_count += 1
        balance = await self._manager.get_usdt_balance()

        candidates: list[tuple[Opportunity, MarketBar]] = []
        prices: dict[str, float] = {}
        errors: list[dict] = []

        for instrument in self._instruments:
            for timeframe in self._timeframes:
                try:
                    found = await self._scan(instrument, timeframe, balance, prices)
                except Exception as exc:
                    logger.error(
                        "Evaluation failed for %s %s: %s", instrument, timeframe, exc,
                    )
                    errors.append({
                        "instrument": instrument,
                        "timeframe": timeframe,
                        "action": "error",
                        "reason": str(exc),
                    })
                    continue
                if found is not None:
                    candidates.append(found)

        closed_trades = await self._reconcile(prices, balance)

        candidates.sort(key=lambda c: c[0].priority, reverse=True)
        bars = {id(opp): bar for opp, bar in candidates}
        ranked = throttle_by_open_positions(
            [opp for opp, _ in candidates], self._max_per_symbol,
        )

        trades: list[dict] = []
        for opportunity in ranked:
            result = await self._manager.execute_opportunity(
                opportunity, bars[id(opportunity)],
            )
            entry = result.to_dict()
            entry["priority"] = round(opportunity.priority, 4)
            trades.append(entry)
            record_decision(entry)

        rebalance = await self._run_rebalance(balance, prices)
        auto_balance = await self._run_auto_balance()

        executed = sum(1 for t in trades if t["action"] == "executed")
        update_bot_status(
            running=self._running,
            cycle_count=self._cycle_count,
            last_cycle_at=self._clock.now().isoformat(),
            balance=await self._manager.get_usdt_balance(),
            active_trades=len(self._manager.get_active_trades()),
            last_opportunities=len(candidates),
            last_executed=executed,
        )
        return {
            "action": "cycle_complete",
            "opportunities": len(candidates),
            "executed": executed,
            "trades": trades,
            "errors": errors,
            "closed_trades": closed_trades,
            "rebalance": rebalance,
            "auto_balance": auto_balance,
        }

    async def _scan(
        self,
        instrument: str,
        timeframe: str,
        balance: float,
        prices: dict[str, float],
    ) -> Optional[tuple[Opportunity, MarketBar]]:
        bar = await self._market_data.latest_bar(instrument, timeframe)
        if bar is None:
            logger.debug("No market data for %s %s", instrument, timeframe)
            return None
        prices[instrument] = bar.close

        signal = await self._signal_source.generate(bar, instrument, timeframe)
        if signal is None:
            logger.debug("No signal for %s %s", instrument, timeframe)
            return None

        opportunity = self._evaluator.evaluate_opportunity(
            instrument, signal, bar, balance,
        )
        if opportunity is None:
            return None
        return opportunity, bar

    async def _reconcile(
        self,
        prices: dict[str, float],
        balance: float,
    ) -> list[dict]:
        try:
            closed = await self._manager.reconcile_active_trades(prices, balance)
        except Exception as exc:
            logger.error("Active trade reconciliation failed: %s", exc)
            return []
        for entry in closed:
            logger.info(
                "Trade for %s settled (P&L %s%%)", entry["instrument"], entry["pnl_percent"],
            )
        return closed

    async def _run_rebalance(
        self,
        balance: float,
        prices: dict[str, float],
    ) -> Optional[list[dict]]:
        if self._balancer is None or not self._balancer.is_rebalance_due():
            return None
        try:
            positions = await self._account.get_positions()
            self._balancer.update_positions(positions, prices)
            total_equity = balance + self._balancer.total_value
            actions = self._balancer.evaluate_rebalancing(total_equity)
            sized = self._balancer.calculate_trade_sizes(actions, prices)
            if not sized:
                return []
            return await self._manager.execute_rebalance_actions(sized, prices)
        except Exception as exc:
            logger.error("Portfolio rebalance failed: %s", exc)
            return [{"action": "error", "reason": str(exc)}]

    async def _run_auto_balance(self) -> Optional[dict]:
        if self._auto_balancer is None:
            return None
        try:
            return await self._auto_balancer.check_and_balance()
        except Exception as exc:
            logger.error("Spot auto-balance failed: %s", exc)
            return {"triggered": False, "error": str(exc)}
